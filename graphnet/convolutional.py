"""2D convolution and pooling layers over NHWC inputs.

Convolution is computed as im2col + GEMM: padded inputs are viewed as
windows, flattened into columns and multiplied by the reshaped kernel so
the heavy lifting lands in BLAS.
"""
from __future__ import annotations
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from . import activations as activations_module
from . import initializers as initializers_module
from . import regularizers as regularizers_module
from .errors import InvalidParameterError, ShapeMismatchError
from .kernels import crop_spatial, extract_patches, pad_spatial, scatter_patches
from .layers import Layer, _add_penalties, _add_penalty_gradients
from .shape import ConvPadding, conv_output_length, padding_amounts

IntPair = Union[int, Sequence[int]]


def _pair(value: IntPair, what: str) -> Tuple[int, int]:
    """Normalize ``3``, ``(3, 3)`` or a four-element NHWC form ``(1, 3, 3, 1)``."""
    if isinstance(value, int):
        pair = (value, value)
    else:
        value = tuple(int(v) for v in value)
        if len(value) == 4:
            value = value[1:3]
        if len(value) != 2:
            raise InvalidParameterError(f"{what} must be an int or a pair, got {value}")
        pair = value
    if min(pair) < 1:
        raise InvalidParameterError(f"{what} values must be >= 1, got {pair}")
    return pair


def _check_nhwc(layer: Layer, input_shape) -> None:
    if len(input_shape) != 4 or None in input_shape[1:]:
        raise ShapeMismatchError(
            f"{layer.__class__.__name__} '{layer.name}' expects (batch, height, width, channels) "
            f"with known spatial and channel sizes, got {input_shape}"
        )


class Conv2D(Layer):
    """2D convolution (cross-correlation) with optional bias and activation.

    Args:
        filters: Number of output channels.
        kernel_size: Height and width of the convolution window.
        strides: Step of the window along height and width.
        dilations: Dilation rate along height and width. Strides above one
            cannot be combined with dilations above one.
        activation: Activation applied after the bias add.
        kernel_initializer: Initializer of the ``(kh, kw, in_channels, filters)`` kernel.
        bias_initializer: Initializer of the ``(filters,)`` bias.
        padding: ``'same'``, ``'valid'`` or ``'full'``.
        use_bias: Whether to add a bias vector.
        input_channels: Optional expected channel count, checked at build time.
    """
    has_activation = True

    def __init__(self, filters: int = 32, kernel_size: IntPair = (3, 3), strides: IntPair = (1, 1),
                 dilations: IntPair = (1, 1), activation='relu', kernel_initializer=None,
                 bias_initializer=None, kernel_regularizer=None, bias_regularizer=None,
                 padding: Union[str, ConvPadding] = ConvPadding.SAME, use_bias: bool = True,
                 input_channels: Optional[int] = None, name: str = ''):
        super().__init__(name)
        if filters < 1:
            raise InvalidParameterError(f"Conv2D filters must be positive, got {filters}")
        self.filters = filters
        self.kernel_size = _pair(kernel_size, 'kernel_size')
        self.strides = _pair(strides, 'strides')
        self.dilations = _pair(dilations, 'dilations')
        if max(self.strides) > 1 and max(self.dilations) > 1:
            raise InvalidParameterError("Strides > 1 cannot be combined with dilations > 1")
        self.activation = activations_module.get(activation)
        self.kernel_initializer = initializers_module.get(kernel_initializer) or initializers_module.HeNormal()
        self.bias_initializer = initializers_module.get(bias_initializer) or initializers_module.HeUniform()
        self.kernel_regularizer = regularizers_module.get(kernel_regularizer)
        self.bias_regularizer = regularizers_module.get(bias_regularizer)
        self.padding = ConvPadding.of(padding)
        self.use_bias = use_bias
        self.input_channels = input_channels

    def compute_output_shape(self, input_shape):
        _check_nhwc(self, input_shape)
        channels = input_shape[3]
        if self.input_channels is not None and channels != self.input_channels:
            raise ShapeMismatchError(
                f"Conv2D '{self.name}' kernel expects {self.input_channels} input channels, got {channels}"
            )
        rows = conv_output_length(input_shape[1], self.kernel_size[0], self.padding,
                                  self.strides[0], self.dilations[0])
        cols = conv_output_length(input_shape[2], self.kernel_size[1], self.padding,
                                  self.strides[1], self.dilations[1])
        return (input_shape[0], rows, cols, self.filters)

    def fans(self, in_channels: int) -> Tuple[int, int]:
        kh, kw = self.kernel_size
        fan_in = in_channels * kh * kw
        fan_out = int(round(self.filters * kh * kw / (self.strides[0] * self.strides[1])))
        return fan_in, fan_out

    def _create_variables(self, graph, input_shape):
        kh, kw = self.kernel_size
        channels = input_shape[3]
        fan_in, fan_out = self.fans(channels)
        variables = {'kernel': self.add_weight(graph, 'kernel', (kh, kw, channels, self.filters),
                                               self.kernel_initializer, fan_in, fan_out)}
        if self.use_bias:
            variables['bias'] = self.add_weight(graph, 'bias', (self.filters,),
                                                self.bias_initializer, fan_in, fan_out)
        return variables

    @property
    def kernel_shape(self):
        return self._built().variables['kernel'].shape

    @property
    def bias_shape(self):
        bias = self._built().variables.get('bias')
        return None if bias is None else bias.shape

    def _pads(self, h: int, w: int):
        pad_h = padding_amounts(h, self.kernel_size[0], self.padding, self.strides[0], self.dilations[0])
        pad_w = padding_amounts(w, self.kernel_size[1], self.padding, self.strides[1], self.dilations[1])
        return pad_h, pad_w

    def forward(self, tape, inputs, training=False, aux_loss_scale=1.0):
        state = self._built()
        x = inputs
        self._check_input(x, state.input_shape)
        batch, h, w, channels = x.shape
        kh, kw = self.kernel_size
        pad_h, pad_w = self._pads(h, w)
        x_p = pad_spatial(x, pad_h, pad_w)
        patches = extract_patches(x_p, self.kernel_size, self.strides, self.dilations)
        out_h, out_w = patches.shape[1], patches.shape[2]
        cols = patches.reshape(batch * out_h * out_w, kh * kw * channels)
        w_col = state.variables['kernel'].value.reshape(-1, self.filters)
        z = cols @ w_col
        if self.use_bias:
            z = z + state.variables['bias'].value
        z = z.reshape(batch, out_h, out_w, self.filters)
        y = self.activation.forward(z)
        _add_penalties(tape, state, self.kernel_regularizer, self.bias_regularizer, aux_loss_scale)
        tape.save_for_backward(self.name, cols, x_p.shape, (pad_h, pad_w), z, y, aux_loss_scale)
        return y

    def backward(self, tape, grad):
        state = self._built()
        cols, padded_shape, (pad_h, pad_w), z, y, scale = tape.saved_tensors(self.name)
        kernel = state.variables['kernel']
        gz = self.activation.backward(z, y, grad)
        batch, out_h, out_w, _ = gz.shape
        g2 = gz.reshape(-1, self.filters)
        tape.accumulate_gradient(kernel, (cols.T @ g2).reshape(kernel.shape))
        if self.use_bias:
            tape.accumulate_gradient(state.variables['bias'], g2.sum(axis=0))
        _add_penalty_gradients(tape, state, self.kernel_regularizer, self.bias_regularizer, scale)
        kh, kw = self.kernel_size
        dcols = (g2 @ kernel.value.reshape(-1, self.filters).T).reshape(
            batch, out_h, out_w, kh, kw, padded_shape[3]
        )
        dx_p = scatter_patches(dcols, padded_shape, self.strides, self.dilations)
        return crop_spatial(dx_p, pad_h, pad_w)

    def __repr__(self):
        return (f"Conv2D(name='{self.name}', filters={self.filters}, kernel_size={self.kernel_size}, "
                f"strides={self.strides}, dilations={self.dilations}, activation={self.activation!r}, "
                f"kernel_initializer={self.kernel_initializer!r}, bias_initializer={self.bias_initializer!r}, "
                f"padding={self.padding.name})")


class _Pool2D(Layer):
    pad_value = 0.0

    def __init__(self, pool_size: IntPair = (2, 2), strides: Optional[IntPair] = None,
                 padding: Union[str, ConvPadding] = ConvPadding.VALID, name: str = ''):
        super().__init__(name)
        self.pool_size = _pair(pool_size, 'pool_size')
        self.strides = self.pool_size if strides is None else _pair(strides, 'strides')
        self.padding = ConvPadding.of(padding)
        self.trainable = False

    def compute_output_shape(self, input_shape):
        _check_nhwc(self, input_shape)
        rows = conv_output_length(input_shape[1], self.pool_size[0], self.padding, self.strides[0])
        cols = conv_output_length(input_shape[2], self.pool_size[1], self.padding, self.strides[1])
        return (input_shape[0], rows, cols, input_shape[3])

    def _windows(self, x):
        self._check_input(x, self.input_shape)
        pad_h = padding_amounts(x.shape[1], self.pool_size[0], self.padding, self.strides[0])
        pad_w = padding_amounts(x.shape[2], self.pool_size[1], self.padding, self.strides[1])
        x_p = pad_spatial(x, pad_h, pad_w, self.pad_value)
        return x_p, (pad_h, pad_w), extract_patches(x_p, self.pool_size, self.strides)

    def __repr__(self):
        return (f"{self.__class__.__name__}(name='{self.name}', pool_size={self.pool_size}, "
                f"strides={self.strides}, padding={self.padding.name})")


class MaxPool2D(_Pool2D):
    pad_value = -np.inf

    def forward(self, tape, inputs, training=False, aux_loss_scale=1.0):
        x_p, pads, patches = self._windows(inputs)
        y = patches.max(axis=(3, 4))
        tape.save_for_backward(self.name, patches, x_p.shape, pads, y)
        return y

    def backward(self, tape, grad):
        patches, padded_shape, (pad_h, pad_w), y = tape.saved_tensors(self.name)
        # ties share the gradient equally
        mask = (patches == y[:, :, :, None, None, :]).astype(grad.dtype)
        mask /= np.maximum(mask.sum(axis=(3, 4), keepdims=True), 1)
        dpatches = mask * grad[:, :, :, None, None, :]
        return crop_spatial(scatter_patches(dpatches, padded_shape, self.strides), pad_h, pad_w)


class AvgPool2D(_Pool2D):
    """Average pooling; padded positions are excluded from each window's mean."""

    def _valid(self, h: int, w: int, pads, dtype):
        ones = pad_spatial(np.ones((1, h, w, 1), dtype=dtype), *pads, value=0.0)
        valid = extract_patches(ones, self.pool_size, self.strides)
        return valid, valid.sum(axis=(3, 4))

    def forward(self, tape, inputs, training=False, aux_loss_scale=1.0):
        x_p, pads, patches = self._windows(inputs)
        valid, counts = self._valid(inputs.shape[1], inputs.shape[2], pads, inputs.dtype)
        y = patches.sum(axis=(3, 4)) / counts
        tape.save_for_backward(self.name, valid, counts, x_p.shape, pads)
        return y

    def backward(self, tape, grad):
        valid, counts, padded_shape, (pad_h, pad_w) = tape.saved_tensors(self.name)
        dpatches = (grad / counts)[:, :, :, None, None, :] * valid
        return crop_spatial(scatter_patches(dpatches, padded_shape, self.strides), pad_h, pad_w)
