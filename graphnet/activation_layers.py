"""Stateless activation layers.

:class:`ActivationLayer` supplies everything such a layer has in common
(no variables, not trainable, identity output shape, recording of the
forward pass); subclasses only implement :meth:`~ActivationLayer.activate`
and :meth:`~ActivationLayer.activation_gradient`.
"""
from __future__ import annotations
from typing import Optional

import numpy as np

from . import activations as activations_module
from .errors import InvalidParameterError
from .layers import Built, Layer, snake_case


class ActivationLayer:
    """Mixin for activation layers; combine as ``class X(ActivationLayer, Layer)``."""
    has_activation = True

    def __init__(self, name: str = ''):
        super().__init__(name)
        self.trainable = False

    def build(self, graph, input_shape):
        """Cache input and output shapes; building again replaces them."""
        if not self.name:
            self.name = snake_case(self.__class__.__name__)
        input_shape = self._normalize_input_shape(input_shape)
        self.state = Built(input_shape, self.compute_output_shape(input_shape))
        return self

    def _create_variables(self, graph, input_shape):
        return {}

    def compute_output_shape(self, input_shape):
        return input_shape

    @property
    def weights(self):
        return {}

    @property
    def param_count(self) -> int:
        return 0

    def activate(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def activation_gradient(self, x: np.ndarray, y: np.ndarray, grad: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def forward(self, tape, inputs, training=False, aux_loss_scale=1.0):
        self._check_input(inputs, self.input_shape)
        y = self.activate(inputs)
        tape.save_for_backward(self.name, inputs, y)
        return y

    def backward(self, tape, grad):
        x, y = tape.saved_tensors(self.name)
        return self.activation_gradient(x, y, grad)


class Activation(ActivationLayer, Layer):
    """Applies a named activation function, e.g. ``Activation('tanh')``."""

    def __init__(self, activation='relu', name: str = ''):
        super().__init__(name)
        self.function = activations_module.get(activation)

    def activate(self, x):
        return self.function.forward(x)

    def activation_gradient(self, x, y, grad):
        return self.function.backward(x, y, grad)

    def __repr__(self):
        return f"Activation(name='{self.name}', function={self.function!r})"


class ReLU(ActivationLayer, Layer):
    """Rectified linear unit with optional cap, leak and threshold.

    ``f(x) = max_value`` for ``x >= max_value``, ``x`` for
    ``threshold <= x < max_value`` and ``negative_slope * (x - threshold)`` otherwise.
    """

    def __init__(self, max_value: Optional[float] = None, negative_slope: float = 0.0,
                 threshold: float = 0.0, name: str = ''):
        super().__init__(name)
        if max_value is not None and max_value < 0:
            raise InvalidParameterError(f"max_value must be non-negative, got {max_value}")
        if negative_slope < 0:
            raise InvalidParameterError(f"negative_slope must be non-negative, got {negative_slope}")
        self.max_value = max_value
        self.negative_slope = negative_slope
        self.threshold = threshold

    def activate(self, x):
        y = np.where(x >= self.threshold, x, self.negative_slope * (x - self.threshold))
        if self.max_value is not None:
            y = np.where(x >= self.max_value, self.max_value, y)
        return y.astype(x.dtype, copy=False)

    def activation_gradient(self, x, y, grad):
        slope = np.where(x >= self.threshold, 1.0, self.negative_slope)
        if self.max_value is not None:
            slope = np.where(x >= self.max_value, 0.0, slope)
        return grad * slope


class LeakyReLU(ActivationLayer, Layer):
    def __init__(self, alpha: float = 0.3, name: str = ''):
        super().__init__(name)
        if alpha < 0:
            raise InvalidParameterError(f"alpha must be non-negative, got {alpha}")
        self.alpha = alpha

    def activate(self, x):
        return np.where(x > 0, x, self.alpha * x)

    def activation_gradient(self, x, y, grad):
        return grad * np.where(x > 0, 1.0, self.alpha)


class ELU(ActivationLayer, Layer):
    def __init__(self, alpha: float = 1.0, name: str = ''):
        super().__init__(name)
        self.function = activations_module.Elu(alpha)

    @property
    def alpha(self):
        return self.function.alpha

    def activate(self, x):
        return self.function.forward(x)

    def activation_gradient(self, x, y, grad):
        return self.function.backward(x, y, grad)


class ThresholdedReLU(ActivationLayer, Layer):
    """``f(x) = x`` for ``x > theta``, else ``0``."""

    def __init__(self, theta: float = 1.0, name: str = ''):
        super().__init__(name)
        if theta < 0:
            raise InvalidParameterError(f"theta must be non-negative, got {theta}")
        self.theta = theta

    def activate(self, x):
        return np.where(x > self.theta, x, 0).astype(x.dtype, copy=False)

    def activation_gradient(self, x, y, grad):
        return grad * (x > self.theta)


class Softmax(ActivationLayer, Layer):
    def __init__(self, axis: int = -1, name: str = ''):
        super().__init__(name)
        self.function = activations_module.Softmax(axis)

    @property
    def axis(self):
        return self.function.axis

    def activate(self, x):
        return self.function.forward(x)

    def activation_gradient(self, x, y, grad):
        return self.function.backward(x, y, grad)


class _FunctionLayer(ActivationLayer, Layer):
    function_class = activations_module.Linear

    def __init__(self, name: str = ''):
        super().__init__(name)
        self.function = self.function_class()

    def activate(self, x):
        return self.function.forward(x)

    def activation_gradient(self, x, y, grad):
        return self.function.backward(x, y, grad)


class Sigmoid(_FunctionLayer):
    function_class = activations_module.Sigmoid


class HardSigmoid(_FunctionLayer):
    function_class = activations_module.HardSigmoid


class Tanh(_FunctionLayer):
    function_class = activations_module.Tanh


class Softplus(_FunctionLayer):
    function_class = activations_module.Softplus


class Swish(_FunctionLayer):
    function_class = activations_module.Swish


class Exponential(_FunctionLayer):
    function_class = activations_module.Exponential
