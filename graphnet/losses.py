"""Loss functions.

``forward(y_pred, y_true)`` returns the batch-mean loss as a float and keeps
what ``backward()`` needs to return the gradient with respect to ``y_pred``.
"""
from __future__ import annotations
from typing import Union

import numpy as np

from .errors import InvalidParameterError, ShapeMismatchError

_EPS = 1e-12


def _match_targets(y_pred: np.ndarray, y_true: np.ndarray) -> np.ndarray:
    y_true = np.asarray(y_true, dtype=y_pred.dtype)
    if y_true.shape == y_pred.shape:
        return y_true
    if y_true.size == y_pred.size and y_true.shape[0] == y_pred.shape[0]:
        return y_true.reshape(y_pred.shape)
    raise ShapeMismatchError(f"Targets of shape {y_true.shape} do not match predictions of shape {y_pred.shape}")


def _is_sparse(y_pred: np.ndarray, y_true: np.ndarray) -> bool:
    """Integer class labels rather than one-hot rows."""
    return y_true.ndim == 1 or (y_true.ndim == 2 and y_true.shape[1] == 1 and y_pred.shape[-1] > 1)


class Loss:
    name = 'loss'
    expects_logits = False

    def forward(self, y_pred, y_true) -> float:
        raise NotImplementedError

    def backward(self) -> np.ndarray:
        raise NotImplementedError

    def __call__(self, y_pred, y_true) -> float:
        return self.forward(y_pred, y_true)

    def __repr__(self):
        return self.name


class SoftmaxCrossEntropyWithLogits(Loss):
    """Softmax followed by categorical cross-entropy; takes raw logits.

    Targets may be one-hot rows or integer class labels.
    """
    name = 'softmax_cross_entropy_with_logits'
    expects_logits = True

    def forward(self, y_pred, y_true):
        y_true = np.asarray(y_true)
        if y_pred.ndim != 2:
            raise ShapeMismatchError(f"Expected logits of shape (batch, classes), got {y_pred.shape}")
        if y_true.shape[0] != y_pred.shape[0]:
            raise ShapeMismatchError(
                f"Got {y_true.shape[0]} targets for a batch of {y_pred.shape[0]} predictions"
            )
        shifted = y_pred - y_pred.max(axis=1, keepdims=True)
        log_probs = shifted - np.log(np.exp(shifted).sum(axis=1, keepdims=True))
        self.probs = np.exp(log_probs)
        if _is_sparse(y_pred, y_true):
            labels = y_true.reshape(-1).astype(np.int64)
            if labels.min() < 0 or labels.max() >= y_pred.shape[1]:
                raise InvalidParameterError(f"Class labels must lie in [0, {y_pred.shape[1]})")
            self.y_true = labels
            return float(-log_probs[np.arange(len(labels)), labels].mean())
        self.y_true = _match_targets(y_pred, y_true)
        return float(-(self.y_true * log_probs).sum(axis=1).mean())

    def backward(self):
        probs = self.probs
        if self.y_true.ndim == 1:
            grad = probs.copy()
            grad[np.arange(len(self.y_true)), self.y_true] -= 1
            return grad / len(self.y_true)
        return (probs - self.y_true) / self.y_true.shape[0]


class BinaryCrossentropy(Loss):
    name = 'binary_crossentropy'

    def __init__(self, from_logits: bool = False):
        self.from_logits = from_logits
        self.expects_logits = from_logits

    def forward(self, y_pred, y_true):
        self.y_true = _match_targets(y_pred, y_true)
        if self.from_logits:
            self.p = 0.5 * (1.0 + np.tanh(0.5 * y_pred))
            loss = np.maximum(y_pred, 0) - y_pred * self.y_true + np.log1p(np.exp(-np.abs(y_pred)))
        else:
            self.p = np.clip(y_pred, _EPS, 1 - _EPS)
            loss = -(self.y_true * np.log(self.p) + (1 - self.y_true) * np.log(1 - self.p))
        return float(loss.mean())

    def backward(self):
        n = self.y_true.size
        if self.from_logits:
            return (self.p - self.y_true) / n
        return (self.p - self.y_true) / (self.p * (1 - self.p)) / n


class MSE(Loss):
    name = 'mse'

    def forward(self, y_pred, y_true):
        self.y_pred = y_pred
        self.y_true = _match_targets(y_pred, y_true)
        return float(np.mean((y_pred - self.y_true) ** 2))

    def backward(self):
        return 2 * (self.y_pred - self.y_true) / self.y_true.size


class MAE(Loss):
    name = 'mae'

    def forward(self, y_pred, y_true):
        self.y_pred = y_pred
        self.y_true = _match_targets(y_pred, y_true)
        return float(np.mean(np.abs(y_pred - self.y_true)))

    def backward(self):
        return np.sign(self.y_pred - self.y_true) / self.y_true.size


class Huber(Loss):
    name = 'huber'

    def __init__(self, delta: float = 1.0):
        if delta <= 0:
            raise InvalidParameterError(f"Huber delta must be positive, got {delta}")
        self.delta = delta

    def forward(self, y_pred, y_true):
        self.y_true = _match_targets(y_pred, y_true)
        self.diff = y_pred - self.y_true
        a = np.abs(self.diff)
        quadratic = 0.5 * a ** 2
        linear = self.delta * (a - 0.5 * self.delta)
        return float(np.mean(np.where(a <= self.delta, quadratic, linear)))

    def backward(self):
        return np.clip(self.diff, -self.delta, self.delta) / self.y_true.size


NAME2LOSS = {
    'softmax_cross_entropy_with_logits': SoftmaxCrossEntropyWithLogits,
    'categorical_crossentropy': SoftmaxCrossEntropyWithLogits,
    'cce': SoftmaxCrossEntropyWithLogits,
    'binary_crossentropy': BinaryCrossentropy,
    'mse': MSE,
    'mean_squared_error': MSE,
    'mae': MAE,
    'mean_absolute_error': MAE,
    'huber': Huber,
}


def get(identifier: Union[str, Loss]) -> Loss:
    if isinstance(identifier, Loss):
        return identifier
    try:
        return NAME2LOSS[identifier]()
    except KeyError:
        raise InvalidParameterError(f"Unknown loss '{identifier}'") from None
