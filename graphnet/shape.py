"""Shape helpers and padding-aware output length arithmetic."""
from __future__ import annotations
import enum
from typing import Optional, Sequence, Tuple, Union

from .errors import InvalidShapeError, InvalidParameterError

Shape = Tuple[Optional[int], ...]


class ConvPadding(enum.Enum):
    SAME = 'same'
    VALID = 'valid'
    FULL = 'full'

    @classmethod
    def of(cls, value: Union[str, 'ConvPadding']) -> 'ConvPadding':
        if isinstance(value, ConvPadding):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise InvalidParameterError(
                f"Unknown padding '{value}', expected one of {[p.value for p in cls]}"
            ) from None


def make_shape(dims: Sequence[Optional[int]]) -> Shape:
    """Validate ``dims`` and return it as a tuple.

    Only the leading (batch) dimension may be ``None``; every other
    dimension must be a non-negative integer.
    """
    shape = tuple(dims)
    if not shape:
        raise InvalidShapeError("Shape must have at least one dimension")
    for axis, d in enumerate(shape):
        if d is None:
            if axis != 0:
                raise InvalidShapeError(
                    f"Only the batch axis may be unknown, got None at axis {axis} in {shape}"
                )
            continue
        if isinstance(d, bool) or int(d) != d or d < 0:
            raise InvalidShapeError(f"Invalid dimension {d!r} at axis {axis} in {shape}")
    return tuple(None if d is None else int(d) for d in shape)


def with_batch(dims: Sequence[int]) -> Shape:
    return make_shape((None, *dims))


def num_elements(shape: Sequence[Optional[int]]) -> int:
    n = 1
    for d in shape:
        if d is None:
            raise InvalidShapeError(f"Cannot count elements of partially known shape {tuple(shape)}")
        n *= d
    return n


def same_features(a: Sequence[Optional[int]], b: Sequence[Optional[int]]) -> bool:
    """True when two shapes agree on every axis except the batch axis."""
    return len(a) == len(b) and tuple(a[1:]) == tuple(b[1:])


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


def effective_kernel_size(kernel_size: int, dilation: int = 1) -> int:
    return dilation * (kernel_size - 1) + 1


def conv_output_length(
    input_length: Optional[int],
    kernel_size: int,
    padding: Union[str, ConvPadding],
    stride: int,
    dilation: int = 1,
) -> Optional[int]:
    """Output length of a convolution or pooling window along one axis.

    With ``K' = dilation * (kernel_size - 1) + 1``:
    VALID gives ``ceil((L - K' + 1) / S)``, SAME gives ``ceil(L / S)`` and
    FULL gives ``ceil((L + K' - 1) / S)``.
    """
    if input_length is None:
        return None
    if kernel_size < 1 or stride < 1 or dilation < 1:
        raise InvalidParameterError(
            f"kernel_size, stride and dilation must be >= 1, got {kernel_size}, {stride}, {dilation}"
        )
    padding = ConvPadding.of(padding)
    k = effective_kernel_size(kernel_size, dilation)
    if padding is ConvPadding.VALID:
        length = input_length - k + 1
    elif padding is ConvPadding.SAME:
        length = input_length
    else:
        length = input_length + k - 1
    out = _ceil_div(length, stride)
    if out < 0:
        raise InvalidShapeError(
            f"Negative output length {out} for input length {input_length}, "
            f"kernel {kernel_size}, stride {stride}, dilation {dilation}, padding {padding.name}"
        )
    return out


def padding_amounts(
    input_length: int,
    kernel_size: int,
    padding: Union[str, ConvPadding],
    stride: int,
    dilation: int = 1,
) -> Tuple[int, int]:
    """(before, after) zero padding that realises ``conv_output_length``."""
    padding = ConvPadding.of(padding)
    k = effective_kernel_size(kernel_size, dilation)
    if padding is ConvPadding.VALID:
        return 0, 0
    if padding is ConvPadding.FULL:
        return k - 1, k - 1
    out = conv_output_length(input_length, kernel_size, padding, stride, dilation)
    total = max((out - 1) * stride + k - input_length, 0)
    return total // 2, total - total // 2
