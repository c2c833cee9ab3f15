"""Weight penalties added to the training objective."""
from __future__ import annotations
from typing import Union

import numpy as np

from .errors import InvalidParameterError


class Regularizer:
    def penalty(self, w: np.ndarray) -> float:
        raise NotImplementedError

    def gradient(self, w: np.ndarray) -> np.ndarray:
        raise NotImplementedError


class L1L2(Regularizer):
    def __init__(self, l1: float = 0.0, l2: float = 0.0):
        if l1 < 0 or l2 < 0:
            raise InvalidParameterError(f"Regularization factors must be non-negative, got l1={l1}, l2={l2}")
        self.l1 = l1
        self.l2 = l2

    def penalty(self, w):
        total = 0.0
        if self.l1:
            total += self.l1 * float(np.abs(w).sum())
        if self.l2:
            total += self.l2 * float(np.square(w).sum())
        return total

    def gradient(self, w):
        g = np.zeros_like(w)
        if self.l1:
            g += self.l1 * np.sign(w)
        if self.l2:
            g += 2.0 * self.l2 * w
        return g

    def __repr__(self):
        return f"{self.__class__.__name__}(l1={self.l1}, l2={self.l2})"


class L1(L1L2):
    def __init__(self, l1: float = 0.01):
        super().__init__(l1=l1)


class L2(L1L2):
    def __init__(self, l2: float = 0.01):
        super().__init__(l2=l2)


def get(identifier: Union[str, Regularizer, None]):
    if identifier is None or isinstance(identifier, Regularizer):
        return identifier
    if identifier == 'l1':
        return L1()
    if identifier == 'l2':
        return L2()
    if identifier == 'l1_l2':
        return L1L2(0.01, 0.01)
    raise InvalidParameterError(f"Unknown regularizer '{identifier}'")
