"""Utility helpers."""
from __future__ import annotations
from typing import List

import numpy as np


def one_hot(labels: np.ndarray, num_classes: int, dtype=np.float32) -> np.ndarray:
    """Convert integer labels to one-hot rows."""
    labels = np.asarray(labels).reshape(-1).astype(np.int64)
    y = np.zeros((labels.size, num_classes), dtype=dtype)
    y[np.arange(labels.size), labels] = 1
    return y


def format_summary(rows: List[tuple], total: int, trainable: int) -> str:
    """Render ``(name, type, output_shape, params)`` rows as a table."""
    headers = ('Layer', 'Type', 'Output shape', 'Params')
    cells = [headers] + [(str(n), str(t), str(s), str(p)) for n, t, s, p in rows]
    widths = [max(len(r[i]) for r in cells) for i in range(len(headers))]
    line = '-' * (sum(widths) + 3 * (len(widths) - 1))
    out = [line]
    for i, row in enumerate(cells):
        out.append('   '.join(c.ljust(w) for c, w in zip(row, widths)))
        if i == 0:
            out.append(line)
    out.append(line)
    out.append(f"Total params: {total}")
    out.append(f"Trainable params: {trainable}")
    out.append(f"Non-trainable params: {total - trainable}")
    return '\n'.join(out)
