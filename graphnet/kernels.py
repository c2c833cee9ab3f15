"""Patch extraction and gradient scatter kernels for 2D windows (NHWC).

Forward passes use strided views (no copies until reshaped); the backward
scatter is the hot loop and is compiled with numba.
"""
from __future__ import annotations
from typing import Tuple

import numpy as np
from numba import njit


def pad_spatial(x: np.ndarray, pad_h: Tuple[int, int], pad_w: Tuple[int, int],
                value: float = 0.0) -> np.ndarray:
    if pad_h == (0, 0) and pad_w == (0, 0):
        return x
    return np.pad(x, ((0, 0), pad_h, pad_w, (0, 0)), mode='constant', constant_values=value)


def window_count(padded_length: int, kernel: int, stride: int, dilation: int) -> int:
    k = dilation * (kernel - 1) + 1
    return max((padded_length - k) // stride + 1, 0)


def extract_patches(x_padded: np.ndarray, kernel: Tuple[int, int], strides: Tuple[int, int],
                    dilations: Tuple[int, int] = (1, 1)) -> np.ndarray:
    """Strided view of shape ``(N, out_h, out_w, kh, kw, C)`` over a padded NHWC input."""
    batch, h_p, w_p, c = x_padded.shape
    kh, kw = kernel
    sh, sw = strides
    dh, dw = dilations
    out_h = window_count(h_p, kh, sh, dh)
    out_w = window_count(w_p, kw, sw, dw)
    s0, s1, s2, s3 = x_padded.strides
    return np.lib.stride_tricks.as_strided(
        x_padded,
        shape=(batch, out_h, out_w, kh, kw, c),
        strides=(s0, sh * s1, sw * s2, dh * s1, dw * s2, s3),
        writeable=False,
    )


@njit(cache=True)
def _scatter_patches(dpatches, dx_padded, sh, sw, dh, dw):
    n, out_h, out_w, kh, kw, c = dpatches.shape
    for b in range(n):
        for i in range(out_h):
            for j in range(out_w):
                for ki in range(kh):
                    r = i * sh + ki * dh
                    for kj in range(kw):
                        col = j * sw + kj * dw
                        for ch in range(c):
                            dx_padded[b, r, col, ch] += dpatches[b, i, j, ki, kj, ch]


def scatter_patches(dpatches: np.ndarray, padded_shape: Tuple[int, ...], strides: Tuple[int, int],
                    dilations: Tuple[int, int] = (1, 1)) -> np.ndarray:
    """Adjoint of :func:`extract_patches`: sum patch gradients back onto the padded input."""
    dx_padded = np.zeros(padded_shape, dtype=dpatches.dtype)
    _scatter_patches(np.ascontiguousarray(dpatches), dx_padded,
                     strides[0], strides[1], dilations[0], dilations[1])
    return dx_padded


def crop_spatial(x_padded: np.ndarray, pad_h: Tuple[int, int], pad_w: Tuple[int, int]) -> np.ndarray:
    h_p, w_p = x_padded.shape[1], x_padded.shape[2]
    return x_padded[:, pad_h[0]:h_p - pad_h[1], pad_w[0]:w_p - pad_w[1], :]
