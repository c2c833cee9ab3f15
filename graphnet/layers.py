"""Layer base class and core layers.

A layer is created with hyperparameters only. :meth:`Layer.build` resolves
shapes and registers the layer's variables in a :class:`~graphnet.graph.Graph`
exactly once, moving the layer from :class:`Unbuilt` to :class:`Built`.
Forward and backward passes read variables through the built state and keep
per-pass data on the :class:`~graphnet.graph.Tape` they are given.
"""
from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

import numpy as np

from . import activations as activations_module
from . import initializers as initializers_module
from . import regularizers as regularizers_module
from .errors import IllegalStateError, InvalidParameterError, ShapeMismatchError
from .graph import Graph, Tape, Variable
from .shape import Shape, make_shape, num_elements, same_features, with_batch


@dataclass(frozen=True)
class Unbuilt:
    pass


@dataclass(frozen=True)
class Built:
    input_shape: Union[Shape, List[Shape]]
    output_shape: Shape
    variables: Dict[str, Variable] = field(default_factory=dict)


UNBUILT = Unbuilt()


def snake_case(name: str) -> str:
    name = re.sub(r'(.)([A-Z][a-z0-9]+)', r'\1_\2', name)
    return re.sub(r'([a-z])([A-Z])', r'\1_\2', name).lower()


class Layer:
    """Abstract layer base class."""
    has_activation = False
    multi_input = False

    def __init__(self, name: str = ''):
        self.name = name
        self.trainable = True
        self.state: Union[Unbuilt, Built] = UNBUILT
        self.inbound: List['Layer'] = []

    def __call__(self, *inbound: 'Layer') -> 'Layer':
        """Wire this layer after ``inbound`` layers in a functional graph."""
        if not inbound:
            raise ValueError(f"{self.__class__.__name__} must be called on at least one layer")
        if len(inbound) > 1 and not self.multi_input:
            raise ValueError(f"{self.__class__.__name__} accepts a single inbound layer, got {len(inbound)}")
        self.inbound = list(inbound)
        return self

    # -- lifecycle -----------------------------------------------------

    @property
    def built(self) -> bool:
        return isinstance(self.state, Built)

    def _built(self) -> Built:
        if not isinstance(self.state, Built):
            raise IllegalStateError(f"Layer '{self.name or self.__class__.__name__}' is not built yet")
        return self.state

    def build(self, graph: Graph, input_shape) -> 'Layer':
        """Resolve shapes and allocate variables. Allowed once per layer."""
        if self.built:
            raise IllegalStateError(
                f"Layer '{self.name}' is already built; a layer cannot be built twice"
            )
        if not self.name:
            self.name = snake_case(self.__class__.__name__)
        input_shape = self._normalize_input_shape(input_shape)
        output_shape = self.compute_output_shape(input_shape)
        variables = self._create_variables(graph, input_shape)
        self.state = Built(input_shape, output_shape, variables)
        return self

    def _normalize_input_shape(self, input_shape):
        if self.multi_input:
            if not isinstance(input_shape, list):
                raise ShapeMismatchError(f"{self.__class__.__name__} expects a list of input shapes")
            return [make_shape(s) for s in input_shape]
        if isinstance(input_shape, list):
            raise ShapeMismatchError(
                f"{self.__class__.__name__} '{self.name}' takes one input, got {len(input_shape)} shapes"
            )
        return make_shape(input_shape)

    def _create_variables(self, graph: Graph, input_shape) -> Dict[str, Variable]:
        return {}

    def add_weight(self, graph: Graph, role: str, shape: Sequence[int], initializer,
                   fan_in: int, fan_out: int) -> Variable:
        return graph.add_variable(f"{self.name}_{role}", shape, initializer, fan_in, fan_out, owner=self)

    def compute_output_shape(self, input_shape) -> Shape:
        return input_shape

    # -- execution -----------------------------------------------------

    def forward(self, tape: Tape, inputs, training: bool = False, aux_loss_scale: float = 1.0):
        raise NotImplementedError

    def backward(self, tape: Tape, grad: np.ndarray):
        raise NotImplementedError

    def _check_input(self, x: np.ndarray, expected: Shape) -> None:
        if not same_features(x.shape, expected):
            raise ShapeMismatchError(
                f"Layer '{self.name}' expects input of shape {expected}, got {x.shape}"
            )

    # -- introspection -------------------------------------------------

    @property
    def input_shape(self):
        return self._built().input_shape

    @property
    def output_shape(self) -> Shape:
        return self._built().output_shape

    @property
    def variables(self) -> Dict[str, Variable]:
        return dict(self._built().variables)

    @property
    def weights(self) -> Dict[str, np.ndarray]:
        """Snapshot copies of the current variable values keyed by variable name."""
        return {v.name: v.numpy() for v in self._built().variables.values()}

    @property
    def param_count(self) -> int:
        return sum(v.size for v in self._built().variables.values())

    def __repr__(self):
        return f"{self.__class__.__name__}(name='{self.name}')"


class Input(Layer):
    """Declares the model input; shape excludes the batch axis."""

    def __init__(self, *dims: int, name: str = ''):
        super().__init__(name)
        if not dims:
            raise InvalidParameterError("Input needs at least one dimension")
        self.shape = with_batch(dims)
        self.trainable = False

    def build(self, graph: Graph, input_shape=None) -> 'Layer':
        return super().build(graph, self.shape if input_shape is None else input_shape)

    def _normalize_input_shape(self, input_shape):
        input_shape = make_shape(input_shape)
        if not same_features(input_shape, self.shape):
            raise ShapeMismatchError(f"Input '{self.name}' declared {self.shape}, got {input_shape}")
        return self.shape

    def forward(self, tape, inputs, training=False, aux_loss_scale=1.0):
        x = np.asarray(inputs)
        self._check_input(x, self.shape)
        return x

    def backward(self, tape, grad):
        return grad

    def __repr__(self):
        return f"Input(name='{self.name}', shape={self.shape})"


class Dense(Layer):
    """Fully connected layer ``activation(x @ kernel + bias)`` on the last axis."""
    has_activation = True

    def __init__(self, units: int = 128, activation='relu', kernel_initializer=None,
                 bias_initializer=None, kernel_regularizer=None, bias_regularizer=None,
                 use_bias: bool = True, input_dim: Optional[int] = None, name: str = ''):
        super().__init__(name)
        if units < 1:
            raise InvalidParameterError(f"Dense units must be positive, got {units}")
        self.units = units
        self.activation = activations_module.get(activation)
        self.kernel_initializer = initializers_module.get(kernel_initializer) or initializers_module.GlorotUniform()
        self.bias_initializer = initializers_module.get(bias_initializer) or initializers_module.Zeros()
        self.kernel_regularizer = regularizers_module.get(kernel_regularizer)
        self.bias_regularizer = regularizers_module.get(bias_regularizer)
        self.use_bias = use_bias
        self.input_dim = input_dim

    def compute_output_shape(self, input_shape):
        if len(input_shape) < 2 or input_shape[-1] is None or input_shape[-1] == 0:
            raise ShapeMismatchError(
                f"Dense '{self.name}' needs a known non-empty feature axis, got input shape {input_shape}"
            )
        if self.input_dim is not None and input_shape[-1] != self.input_dim:
            raise ShapeMismatchError(
                f"Dense '{self.name}' was configured for {self.input_dim} input features, got {input_shape[-1]}"
            )
        return (*input_shape[:-1], self.units)

    def _create_variables(self, graph, input_shape):
        in_features = input_shape[-1]
        variables = {'kernel': self.add_weight(graph, 'kernel', (in_features, self.units),
                                               self.kernel_initializer, in_features, self.units)}
        if self.use_bias:
            variables['bias'] = self.add_weight(graph, 'bias', (self.units,),
                                                self.bias_initializer, in_features, self.units)
        return variables

    @property
    def kernel_shape(self):
        return self._built().variables['kernel'].shape

    @property
    def bias_shape(self):
        bias = self._built().variables.get('bias')
        return None if bias is None else bias.shape

    def forward(self, tape, inputs, training=False, aux_loss_scale=1.0):
        state = self._built()
        x = inputs
        self._check_input(x, state.input_shape)
        kernel = state.variables['kernel'].value
        z = x @ kernel
        if self.use_bias:
            z = z + state.variables['bias'].value
        y = self.activation.forward(z)
        _add_penalties(tape, state, self.kernel_regularizer, self.bias_regularizer, aux_loss_scale)
        tape.save_for_backward(self.name, x, z, y, aux_loss_scale)
        return y

    def backward(self, tape, grad):
        state = self._built()
        x, z, y, scale = tape.saved_tensors(self.name)
        gz = self.activation.backward(z, y, grad)
        kernel = state.variables['kernel']
        tape.accumulate_gradient(
            kernel, x.reshape(-1, x.shape[-1]).T @ gz.reshape(-1, gz.shape[-1])
        )
        if self.use_bias:
            tape.accumulate_gradient(state.variables['bias'], gz.sum(axis=tuple(range(gz.ndim - 1))))
        _add_penalty_gradients(tape, state, self.kernel_regularizer, self.bias_regularizer, scale)
        return gz @ kernel.value.T

    def __repr__(self):
        return (f"Dense(name='{self.name}', units={self.units}, activation={self.activation!r}, "
                f"kernel_initializer={self.kernel_initializer!r}, bias_initializer={self.bias_initializer!r})")


def _add_penalties(tape, state, kernel_regularizer, bias_regularizer, scale):
    if kernel_regularizer is not None:
        tape.add_aux_loss(scale * kernel_regularizer.penalty(state.variables['kernel'].value))
    if bias_regularizer is not None and 'bias' in state.variables:
        tape.add_aux_loss(scale * bias_regularizer.penalty(state.variables['bias'].value))


def _add_penalty_gradients(tape, state, kernel_regularizer, bias_regularizer, scale):
    if kernel_regularizer is not None:
        kernel = state.variables['kernel']
        tape.accumulate_gradient(kernel, scale * kernel_regularizer.gradient(kernel.value))
    if bias_regularizer is not None and 'bias' in state.variables:
        bias = state.variables['bias']
        tape.accumulate_gradient(bias, scale * bias_regularizer.gradient(bias.value))


class Flatten(Layer):
    def __init__(self, name: str = ''):
        super().__init__(name)
        self.trainable = False

    def compute_output_shape(self, input_shape):
        if len(input_shape) <= 2:
            return input_shape
        return (input_shape[0], num_elements(input_shape[1:]))

    def forward(self, tape, inputs, training=False, aux_loss_scale=1.0):
        self._check_input(inputs, self.input_shape)
        tape.save_for_backward(self.name, inputs.shape)
        return inputs.reshape(inputs.shape[0], -1)

    def backward(self, tape, grad):
        orig_shape, = tape.saved_tensors(self.name)
        return grad.reshape(orig_shape)


class Reshape(Layer):
    """Reshape the non-batch axes to ``target_shape``."""

    def __init__(self, target_shape: Sequence[int], name: str = ''):
        super().__init__(name)
        self.target_shape = tuple(target_shape)
        self.trainable = False

    def compute_output_shape(self, input_shape):
        if num_elements(input_shape[1:]) != num_elements(self.target_shape):
            raise ShapeMismatchError(
                f"Cannot reshape {input_shape[1:]} into {self.target_shape} in layer '{self.name}'"
            )
        return (input_shape[0], *self.target_shape)

    def forward(self, tape, inputs, training=False, aux_loss_scale=1.0):
        self._check_input(inputs, self.input_shape)
        return inputs.reshape(inputs.shape[0], *self.target_shape)

    def backward(self, tape, grad):
        return grad.reshape(grad.shape[0], *self.input_shape[1:])


class Dropout(Layer):
    """Inverted dropout; identity outside training."""

    def __init__(self, rate: float = 0.5, seed: Optional[int] = None, name: str = ''):
        super().__init__(name)
        if not 0.0 <= rate < 1.0:
            raise InvalidParameterError(f"Dropout rate must be in [0, 1), got {rate}")
        self.rate = rate
        self.rng = np.random.default_rng(seed)
        self.trainable = False

    def forward(self, tape, inputs, training=False, aux_loss_scale=1.0):
        self._check_input(inputs, self.input_shape)
        if not training or self.rate == 0.0:
            tape.save_for_backward(self.name, None)
            return inputs
        mask = (self.rng.random(inputs.shape) >= self.rate).astype(inputs.dtype) / (1 - self.rate)
        tape.save_for_backward(self.name, mask)
        return inputs * mask

    def backward(self, tape, grad):
        mask, = tape.saved_tensors(self.name)
        return grad if mask is None else grad * mask


class Add(Layer):
    """Elementwise sum of inputs that share one shape."""
    multi_input = True

    def __init__(self, name: str = ''):
        super().__init__(name)
        self.trainable = False

    def compute_output_shape(self, input_shape):
        first = input_shape[0]
        for other in input_shape[1:]:
            if not same_features(first, other):
                raise ShapeMismatchError(f"Add '{self.name}' got mismatched input shapes {input_shape}")
        return first

    def forward(self, tape, inputs, training=False, aux_loss_scale=1.0):
        for x, expected in zip(inputs, self.input_shape):
            self._check_input(x, expected)
        tape.save_for_backward(self.name, len(inputs))
        out = inputs[0]
        for x in inputs[1:]:
            out = out + x
        return out

    def backward(self, tape, grad):
        count, = tape.saved_tensors(self.name)
        return [grad] * count


class Concatenate(Layer):
    """Concatenate inputs along ``axis`` (never the batch axis)."""
    multi_input = True

    def __init__(self, axis: int = -1, name: str = ''):
        super().__init__(name)
        self.axis = axis
        self.trainable = False

    def _axis(self, rank: int) -> int:
        axis = self.axis % rank
        if axis == 0:
            raise InvalidParameterError("Concatenate cannot join along the batch axis")
        return axis

    def compute_output_shape(self, input_shape):
        rank = len(input_shape[0])
        axis = self._axis(rank)
        for s in input_shape:
            if len(s) != rank or any(a != b for i, (a, b) in enumerate(zip(s, input_shape[0]))
                                     if i not in (0, axis)):
                raise ShapeMismatchError(
                    f"Concatenate '{self.name}' inputs disagree off axis {axis}: {input_shape}"
                )
        out = list(input_shape[0])
        out[axis] = sum(s[axis] for s in input_shape)
        return tuple(out)

    def forward(self, tape, inputs, training=False, aux_loss_scale=1.0):
        for x, expected in zip(inputs, self.input_shape):
            self._check_input(x, expected)
        axis = self._axis(inputs[0].ndim)
        tape.save_for_backward(self.name, axis, [x.shape[axis] for x in inputs])
        return np.concatenate(inputs, axis=axis)

    def backward(self, tape, grad):
        axis, sizes = tape.saved_tensors(self.name)
        return np.split(grad, np.cumsum(sizes)[:-1], axis=axis)
