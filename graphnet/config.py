"""Environment-driven settings.

Recognised variables (read once per :func:`load_settings` call):

- ``GRAPHNET_FLOATX``: default float dtype of variables and batches (``float32``).
- ``GRAPHNET_DISABLE_PROGRESS``: ``1`` turns tqdm progress bars off everywhere.

``GRAPHNET_DISABLE_AUTO_THREADS`` is not part of :class:`Settings`: the package
``__init__`` reads it directly, before this module pulls in numpy.
"""
from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Mapping, Optional

import numpy as np

from .errors import InvalidParameterError

_SUPPORTED_FLOATX = ('float16', 'float32', 'float64')


@dataclass(frozen=True)
class Settings:
    floatx: str = 'float32'
    progress: bool = True

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(self.floatx)


def _flag(environ: Mapping[str, str], name: str) -> bool:
    return environ.get(name, '0').strip().lower() in ('1', 'true', 'yes')


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    environ = os.environ if environ is None else environ
    floatx = environ.get('GRAPHNET_FLOATX', 'float32').strip().lower()
    if floatx not in _SUPPORTED_FLOATX:
        raise InvalidParameterError(
            f"GRAPHNET_FLOATX must be one of {_SUPPORTED_FLOATX}, got '{floatx}'"
        )
    return Settings(
        floatx=floatx,
        progress=not _flag(environ, 'GRAPHNET_DISABLE_PROGRESS'),
    )


def resolve_dtype(dtype=None) -> np.dtype:
    """Return ``dtype`` as a numpy float dtype, falling back to the configured default."""
    if dtype is None:
        return load_settings().dtype
    resolved = np.dtype(dtype)
    if resolved.kind != 'f':
        raise InvalidParameterError(f"Model dtype must be a float type, got {resolved}")
    return resolved
