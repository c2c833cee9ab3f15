"""Optimizers (pure numpy).

An optimizer is bound to a graph's trainable variables once at compile time
and keeps its slot state keyed by variable name; ``apply_gradients`` then
updates the bound variables in place.
"""
from __future__ import annotations
from typing import Dict, Iterable, List, Optional, Union

import numpy as np

from .errors import IllegalStateError, InvalidParameterError
from .graph import Variable


class Optimizer:
    def __init__(self, lr: float):
        if lr <= 0:
            raise InvalidParameterError(f"Learning rate must be positive, got {lr}")
        self.lr = lr
        self.weight_decay = 0.0
        self.clip_norm: Optional[float] = None
        self.variables: List[Variable] = []
        self.iterations = 0
        self._bound = False

    def configure(self, weight_decay: float = 0.0, clip_norm: Optional[float] = None):
        if weight_decay < 0:
            raise InvalidParameterError(f"weight_decay must be non-negative, got {weight_decay}")
        if clip_norm is not None and clip_norm <= 0:
            raise InvalidParameterError(f"clip_norm must be positive, got {clip_norm}")
        self.weight_decay = weight_decay
        self.clip_norm = clip_norm
        return self

    @property
    def bound(self) -> bool:
        return self._bound

    def bind(self, variables: Iterable[Variable]) -> 'Optimizer':
        """Allocate slot state for ``variables``; an optimizer serves one model."""
        if self.bound:
            raise IllegalStateError(f"{self.__class__.__name__} is already bound to a model")
        self.variables = list(variables)
        self._bound = True
        for v in self.variables:
            self._create_slots(v)
        return self

    def unbind(self) -> None:
        self.variables = []
        self.iterations = 0
        self._bound = False
        self._reset_slots()

    def _create_slots(self, variable: Variable) -> None:
        pass

    def _reset_slots(self) -> None:
        pass

    def _apply_regularization(self, p, g):
        if self.weight_decay > 0:
            g = g + self.weight_decay * p
        if self.clip_norm is not None:
            norm = np.linalg.norm(g)
            if norm > self.clip_norm and norm > 0:
                g = g * (self.clip_norm / norm)
        return g

    def apply_gradients(self, gradients: Dict[str, np.ndarray]) -> None:
        """Update every bound variable that has an entry in ``gradients``."""
        if not self.bound:
            raise IllegalStateError("Optimizer must be bound to variables before applying gradients")
        self.iterations += 1
        for variable in self.variables:
            g = gradients.get(variable.name)
            if g is None:
                continue
            p = variable.value
            g = self._apply_regularization(p, np.asarray(g, dtype=p.dtype))
            self._update(variable, p, g)

    def _update(self, variable: Variable, p: np.ndarray, g: np.ndarray) -> None:
        raise NotImplementedError

    def __repr__(self):
        return f"{self.__class__.__name__}(lr={self.lr})"


class SGD(Optimizer):
    def __init__(self, lr=0.01, momentum=0.0, nesterov=False):
        super().__init__(lr)
        if momentum < 0:
            raise InvalidParameterError(f"momentum must be non-negative, got {momentum}")
        self.momentum = momentum
        self.nesterov = nesterov
        self.v: Dict[str, np.ndarray] = {}

    def _create_slots(self, variable):
        if self.momentum > 0:
            self.v[variable.name] = np.zeros(variable.shape, dtype=variable.dtype)

    def _reset_slots(self):
        self.v = {}

    def _update(self, variable, p, g):
        if self.momentum > 0:
            v = self.momentum * self.v[variable.name] - self.lr * g
            self.v[variable.name] = v
            if self.nesterov:
                p += self.momentum * v - self.lr * g
            else:
                p += v
        else:
            p -= self.lr * g


class Adam(Optimizer):
    def __init__(self, lr=0.001, beta1=0.9, beta2=0.999, eps=1e-7):
        super().__init__(lr)
        self.beta1 = beta1
        self.beta2 = beta2
        self.eps = eps
        self.m: Dict[str, np.ndarray] = {}
        self.v: Dict[str, np.ndarray] = {}

    def _create_slots(self, variable):
        self.m[variable.name] = np.zeros(variable.shape, dtype=variable.dtype)
        self.v[variable.name] = np.zeros(variable.shape, dtype=variable.dtype)

    def _reset_slots(self):
        self.m = {}
        self.v = {}

    def _update(self, variable, p, g):
        t = self.iterations
        m = self.beta1 * self.m[variable.name] + (1 - self.beta1) * g
        v = self.beta2 * self.v[variable.name] + (1 - self.beta2) * (g * g)
        self.m[variable.name] = m
        self.v[variable.name] = v
        m_hat = m / (1 - self.beta1 ** t)
        v_hat = v / (1 - self.beta2 ** t)
        p -= self.lr * m_hat / (np.sqrt(v_hat) + self.eps)


class RMSProp(Optimizer):
    def __init__(self, lr=0.001, rho=0.9, eps=1e-7):
        super().__init__(lr)
        self.rho = rho
        self.eps = eps
        self.s: Dict[str, np.ndarray] = {}

    def _create_slots(self, variable):
        self.s[variable.name] = np.zeros(variable.shape, dtype=variable.dtype)

    def _reset_slots(self):
        self.s = {}

    def _update(self, variable, p, g):
        s = self.rho * self.s[variable.name] + (1 - self.rho) * g * g
        self.s[variable.name] = s
        p -= self.lr * g / (np.sqrt(s) + self.eps)


class Adagrad(Optimizer):
    def __init__(self, lr=0.01, initial_accumulator=0.1, eps=1e-7):
        super().__init__(lr)
        self.initial_accumulator = initial_accumulator
        self.eps = eps
        self.acc: Dict[str, np.ndarray] = {}

    def _create_slots(self, variable):
        self.acc[variable.name] = np.full(variable.shape, self.initial_accumulator, dtype=variable.dtype)

    def _reset_slots(self):
        self.acc = {}

    def _update(self, variable, p, g):
        acc = self.acc[variable.name] + g * g
        self.acc[variable.name] = acc
        p -= self.lr * g / (np.sqrt(acc) + self.eps)


NAME2OPT = {'sgd': SGD, 'adam': Adam, 'rmsprop': RMSProp, 'adagrad': Adagrad}


def get(identifier: Union[str, Optimizer], **kwargs) -> Optimizer:
    if isinstance(identifier, Optimizer):
        return identifier
    if identifier not in NAME2OPT:
        raise InvalidParameterError(f"Unknown optimizer '{identifier}'")
    return NAME2OPT[identifier](**kwargs)
