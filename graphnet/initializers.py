"""Weight initializers.

Every initializer is a pure function of ``(fan_in, fan_out, shape, seed)``:
two calls with the same arguments and a seed produce identical arrays.
A seed passed to :meth:`Initializer.initialize` takes precedence over the
one given to the constructor; with neither, values come from fresh OS entropy.
"""
from __future__ import annotations
import math
from typing import Optional, Sequence, Union

import numpy as np

from .errors import InvalidParameterError
from .shape import make_shape

# stddev of a unit normal truncated to [-2, 2]
_TRUNCATED_STDDEV_FACTOR = 0.87962566103423978


class Initializer:
    def __init__(self, seed: Optional[int] = None):
        self.seed = seed

    def initialize(self, fan_in: int, fan_out: int, shape: Sequence[int],
                   seed: Optional[int] = None, dtype=np.float32) -> np.ndarray:
        shape = make_shape(shape)
        if None in shape:
            raise InvalidParameterError(f"Cannot initialize a tensor of unknown shape {shape}")
        rng = np.random.default_rng(self.seed if seed is None else seed)
        return np.asarray(self._generate(fan_in, fan_out, shape, rng), dtype=dtype)

    def __call__(self, fan_in, fan_out, shape, seed=None, dtype=np.float32):
        return self.initialize(fan_in, fan_out, shape, seed=seed, dtype=dtype)

    def _generate(self, fan_in: int, fan_out: int, shape, rng: np.random.Generator) -> np.ndarray:
        raise NotImplementedError

    def __repr__(self):
        return f"{self.__class__.__name__}(seed={self.seed})"


class Zeros(Initializer):
    def _generate(self, fan_in, fan_out, shape, rng):
        return np.zeros(shape)


class Ones(Initializer):
    def _generate(self, fan_in, fan_out, shape, rng):
        return np.ones(shape)


class Constant(Initializer):
    def __init__(self, value: float = 0.0):
        super().__init__()
        self.value = value

    def _generate(self, fan_in, fan_out, shape, rng):
        return np.full(shape, self.value)

    def __repr__(self):
        return f"Constant(value={self.value})"


class Identity(Initializer):
    """Scaled identity matrix; only valid for 2D square shapes."""
    def __init__(self, gain: float = 1.0):
        super().__init__()
        self.gain = gain

    def _generate(self, fan_in, fan_out, shape, rng):
        if len(shape) != 2 or shape[0] != shape[1]:
            raise InvalidParameterError(f"Identity initializer needs a square 2D shape, got {shape}")
        return self.gain * np.eye(shape[0])


class RandomNormal(Initializer):
    def __init__(self, mean: float = 0.0, stddev: float = 0.05, seed: Optional[int] = None):
        super().__init__(seed)
        if stddev < 0:
            raise InvalidParameterError(f"stddev must be non-negative, got {stddev}")
        self.mean = mean
        self.stddev = stddev

    def _generate(self, fan_in, fan_out, shape, rng):
        return rng.normal(self.mean, self.stddev, size=shape)


class RandomUniform(Initializer):
    def __init__(self, minval: float = -0.05, maxval: float = 0.05, seed: Optional[int] = None):
        super().__init__(seed)
        if maxval < minval:
            raise InvalidParameterError(f"maxval ({maxval}) must be >= minval ({minval})")
        self.minval = minval
        self.maxval = maxval

    def _generate(self, fan_in, fan_out, shape, rng):
        return rng.uniform(self.minval, self.maxval, size=shape)


def truncated_normal(rng: np.random.Generator, mean: float, stddev: float, low: float, high: float,
                     shape, max_attempts: int = 1000) -> np.ndarray:
    """Sample N(mean, stddev) and resample every value outside ``[low, high]``."""
    if not low < high:
        raise InvalidParameterError(f"Degenerate truncation range [{low}, {high}]")
    values = rng.normal(mean, stddev, size=shape)
    for _ in range(max_attempts):
        outside = (values < low) | (values > high)
        count = int(outside.sum())
        if count == 0:
            return values
        values[outside] = rng.normal(mean, stddev, size=count)
    raise InvalidParameterError(
        f"Could not draw values inside [{low}, {high}] after {max_attempts} resampling rounds"
    )


class TruncatedNormal(Initializer):
    """Normal distribution truncated to two standard deviations around the mean."""
    def __init__(self, mean: float = 0.0, stddev: float = 0.05, seed: Optional[int] = None):
        super().__init__(seed)
        if stddev <= 0:
            raise InvalidParameterError(f"stddev must be positive, got {stddev}")
        self.mean = mean
        self.stddev = stddev

    def _generate(self, fan_in, fan_out, shape, rng):
        return truncated_normal(rng, self.mean, self.stddev,
                                self.mean - 2 * self.stddev, self.mean + 2 * self.stddev, shape)


class ParametrizedTruncatedNormal(Initializer):
    """Normal distribution truncated to ``[mean + p1 * stddev, mean + p2 * stddev]``."""
    def __init__(self, mean: float = 0.0, stddev: float = 1.0, p1: float = -10.0, p2: float = 10.0,
                 seed: Optional[int] = None, max_attempts: int = 1000):
        super().__init__(seed)
        if stddev <= 0:
            raise InvalidParameterError(f"stddev must be positive, got {stddev}")
        if p1 >= p2:
            raise InvalidParameterError(f"p1 must be strictly less than p2, got p1={p1}, p2={p2}")
        self.mean = mean
        self.stddev = stddev
        self.p1 = p1
        self.p2 = p2
        self.max_attempts = max_attempts

    @property
    def bounds(self):
        return self.mean + self.p1 * self.stddev, self.mean + self.p2 * self.stddev

    def _generate(self, fan_in, fan_out, shape, rng):
        low, high = self.bounds
        return truncated_normal(rng, self.mean, self.stddev, low, high, shape, self.max_attempts)

    def __repr__(self):
        return (f"ParametrizedTruncatedNormal(mean={self.mean}, stddev={self.stddev}, "
                f"p1={self.p1}, p2={self.p2}, seed={self.seed})")


class VarianceScaling(Initializer):
    """Scale-aware initializer: variance ``scale / n`` with ``n`` picked by ``mode``.

    ``mode`` is one of ``fan_in``, ``fan_out``, ``fan_avg``; ``distribution``
    is ``truncated_normal``, ``untruncated_normal`` or ``uniform``.
    """
    MODES = ('fan_in', 'fan_out', 'fan_avg')
    DISTRIBUTIONS = ('truncated_normal', 'untruncated_normal', 'uniform')

    def __init__(self, scale: float = 1.0, mode: str = 'fan_in',
                 distribution: str = 'truncated_normal', seed: Optional[int] = None):
        super().__init__(seed)
        if scale <= 0:
            raise InvalidParameterError(f"scale must be positive, got {scale}")
        if mode not in self.MODES:
            raise InvalidParameterError(f"mode must be one of {self.MODES}, got '{mode}'")
        if distribution not in self.DISTRIBUTIONS:
            raise InvalidParameterError(
                f"distribution must be one of {self.DISTRIBUTIONS}, got '{distribution}'"
            )
        self.scale = scale
        self.mode = mode
        self.distribution = distribution

    def _variance(self, fan_in: int, fan_out: int) -> float:
        if self.mode == 'fan_in':
            n = fan_in
        elif self.mode == 'fan_out':
            n = fan_out
        else:
            n = (fan_in + fan_out) / 2.0
        return self.scale / max(1.0, n)

    def _generate(self, fan_in, fan_out, shape, rng):
        variance = self._variance(fan_in, fan_out)
        if self.distribution == 'truncated_normal':
            stddev = math.sqrt(variance) / _TRUNCATED_STDDEV_FACTOR
            return truncated_normal(rng, 0.0, stddev, -2 * stddev, 2 * stddev, shape)
        if self.distribution == 'untruncated_normal':
            return rng.normal(0.0, math.sqrt(variance), size=shape)
        limit = math.sqrt(3.0 * variance)
        return rng.uniform(-limit, limit, size=shape)

    def __repr__(self):
        return (f"{self.__class__.__name__}(scale={self.scale}, mode='{self.mode}', "
                f"distribution='{self.distribution}', seed={self.seed})")


class GlorotNormal(VarianceScaling):
    def __init__(self, seed: Optional[int] = None):
        super().__init__(1.0, 'fan_avg', 'truncated_normal', seed)


class GlorotUniform(VarianceScaling):
    def __init__(self, seed: Optional[int] = None):
        super().__init__(1.0, 'fan_avg', 'uniform', seed)


class HeNormal(VarianceScaling):
    def __init__(self, seed: Optional[int] = None):
        super().__init__(2.0, 'fan_in', 'truncated_normal', seed)


class HeUniform(VarianceScaling):
    def __init__(self, seed: Optional[int] = None):
        super().__init__(2.0, 'fan_in', 'uniform', seed)


class LeCunNormal(VarianceScaling):
    def __init__(self, seed: Optional[int] = None):
        super().__init__(1.0, 'fan_in', 'truncated_normal', seed)


class LeCunUniform(VarianceScaling):
    def __init__(self, seed: Optional[int] = None):
        super().__init__(1.0, 'fan_in', 'uniform', seed)


NAME2INITIALIZER = {
    'zeros': Zeros, 'ones': Ones, 'identity': Identity,
    'random_normal': RandomNormal, 'random_uniform': RandomUniform,
    'truncated_normal': TruncatedNormal,
    'glorot_normal': GlorotNormal, 'glorot_uniform': GlorotUniform,
    'he_normal': HeNormal, 'he_uniform': HeUniform,
    'lecun_normal': LeCunNormal, 'lecun_uniform': LeCunUniform,
}


def get(identifier: Union[str, Initializer, None]) -> Optional[Initializer]:
    if identifier is None or isinstance(identifier, Initializer):
        return identifier
    try:
        return NAME2INITIALIZER[identifier]()
    except KeyError:
        raise InvalidParameterError(f"Unknown initializer '{identifier}'") from None
