"""Elementwise activation functions with their gradients.

Each activation exposes ``forward(x)`` and ``backward(x, y, grad)`` where
``y`` is the forward output for ``x``; ``backward`` returns the gradient
with respect to ``x``.
"""
from __future__ import annotations
from typing import Union

import numpy as np

from .errors import InvalidParameterError


def _sigmoid(x):
    return 0.5 * (1.0 + np.tanh(0.5 * x))


def _softplus(x):
    return np.logaddexp(0.0, x)


class Activation:
    name = 'activation'

    def forward(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def backward(self, x: np.ndarray, y: np.ndarray, grad: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def __call__(self, x):
        return self.forward(x)

    def __repr__(self):
        return self.name


class Linear(Activation):
    name = 'linear'

    def forward(self, x):
        return x

    def backward(self, x, y, grad):
        return grad


class Relu(Activation):
    name = 'relu'

    def forward(self, x):
        return np.maximum(x, 0)

    def backward(self, x, y, grad):
        return grad * (x > 0)


class Relu6(Activation):
    name = 'relu6'

    def forward(self, x):
        return np.clip(x, 0, 6)

    def backward(self, x, y, grad):
        return grad * ((x > 0) & (x < 6))


class Elu(Activation):
    name = 'elu'

    def __init__(self, alpha: float = 1.0):
        self.alpha = alpha

    def forward(self, x):
        return np.where(x > 0, x, self.alpha * np.expm1(np.minimum(x, 0)))

    def backward(self, x, y, grad):
        return grad * np.where(x > 0, 1.0, y + self.alpha)


class Selu(Activation):
    name = 'selu'
    alpha = 1.6732632423543772
    scale = 1.0507009873554805

    def forward(self, x):
        return self.scale * np.where(x > 0, x, self.alpha * np.expm1(np.minimum(x, 0)))

    def backward(self, x, y, grad):
        return grad * np.where(x > 0, self.scale, y + self.scale * self.alpha)


class Sigmoid(Activation):
    name = 'sigmoid'

    def forward(self, x):
        return _sigmoid(x)

    def backward(self, x, y, grad):
        return grad * y * (1 - y)


class HardSigmoid(Activation):
    name = 'hard_sigmoid'

    def forward(self, x):
        return np.clip(0.2 * x + 0.5, 0, 1)

    def backward(self, x, y, grad):
        return grad * 0.2 * ((x > -2.5) & (x < 2.5))


class Tanh(Activation):
    name = 'tanh'

    def forward(self, x):
        return np.tanh(x)

    def backward(self, x, y, grad):
        return grad * (1 - y ** 2)


class Softmax(Activation):
    name = 'softmax'

    def __init__(self, axis: int = -1):
        self.axis = axis

    def forward(self, x):
        e = np.exp(x - x.max(axis=self.axis, keepdims=True))
        return e / e.sum(axis=self.axis, keepdims=True)

    def backward(self, x, y, grad):
        return y * (grad - (grad * y).sum(axis=self.axis, keepdims=True))


class LogSoftmax(Activation):
    name = 'log_softmax'

    def __init__(self, axis: int = -1):
        self.axis = axis

    def forward(self, x):
        shifted = x - x.max(axis=self.axis, keepdims=True)
        return shifted - np.log(np.exp(shifted).sum(axis=self.axis, keepdims=True))

    def backward(self, x, y, grad):
        return grad - np.exp(y) * grad.sum(axis=self.axis, keepdims=True)


class Softplus(Activation):
    name = 'softplus'

    def forward(self, x):
        return _softplus(x)

    def backward(self, x, y, grad):
        return grad * _sigmoid(x)


class Softsign(Activation):
    name = 'softsign'

    def forward(self, x):
        return x / (1 + np.abs(x))

    def backward(self, x, y, grad):
        return grad / (1 + np.abs(x)) ** 2


class Swish(Activation):
    name = 'swish'

    def forward(self, x):
        return x * _sigmoid(x)

    def backward(self, x, y, grad):
        s = _sigmoid(x)
        return grad * (s + x * s * (1 - s))


class Mish(Activation):
    name = 'mish'

    def forward(self, x):
        return x * np.tanh(_softplus(x))

    def backward(self, x, y, grad):
        t = np.tanh(_softplus(x))
        return grad * (t + x * _sigmoid(x) * (1 - t ** 2))


class Exponential(Activation):
    name = 'exponential'

    def forward(self, x):
        return np.exp(x)

    def backward(self, x, y, grad):
        return grad * y


NAME2ACTIVATION = {cls.name: cls for cls in [
    Linear, Relu, Relu6, Elu, Selu, Sigmoid, HardSigmoid, Tanh, Softmax,
    LogSoftmax, Softplus, Softsign, Swish, Mish, Exponential,
]}


def get(identifier: Union[str, Activation, None]) -> Activation:
    if identifier is None:
        return Linear()
    if isinstance(identifier, Activation):
        return identifier
    try:
        return NAME2ACTIVATION[str(identifier).lower()]()
    except KeyError:
        raise InvalidParameterError(f"Unknown activation '{identifier}'") from None
