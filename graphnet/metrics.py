"""Batch metrics. A metric maps ``(y_pred, y_true)`` to a float for one batch."""
from __future__ import annotations
from typing import Union

import numpy as np

from .errors import InvalidParameterError
from .losses import _is_sparse, _match_targets


class Metric:
    name = 'metric'

    def __call__(self, y_pred: np.ndarray, y_true: np.ndarray) -> float:
        raise NotImplementedError

    def __repr__(self):
        return self.name


class Accuracy(Metric):
    """Fraction of rows whose arg-max matches the label (integer or one-hot)."""
    name = 'accuracy'

    def __call__(self, y_pred, y_true):
        y_true = np.asarray(y_true)
        if y_pred.ndim == 2 and y_pred.shape[1] == 1:
            # single sigmoid unit
            preds = (y_pred.reshape(-1) > 0.5).astype(np.int64)
            return float(np.mean(preds == y_true.reshape(-1)))
        preds = y_pred.argmax(axis=-1)
        labels = y_true.reshape(-1) if _is_sparse(y_pred, y_true) else y_true.argmax(axis=-1)
        return float(np.mean(preds == labels))


class MeanSquaredError(Metric):
    name = 'mse'

    def __call__(self, y_pred, y_true):
        return float(np.mean((y_pred - _match_targets(y_pred, y_true)) ** 2))


class MeanAbsoluteError(Metric):
    name = 'mae'

    def __call__(self, y_pred, y_true):
        return float(np.mean(np.abs(y_pred - _match_targets(y_pred, y_true))))


NAME2METRIC = {
    'accuracy': Accuracy, 'acc': Accuracy,
    'mse': MeanSquaredError, 'mean_squared_error': MeanSquaredError,
    'mae': MeanAbsoluteError, 'mean_absolute_error': MeanAbsoluteError,
}


def get(identifier: Union[str, Metric]) -> Metric:
    if isinstance(identifier, Metric):
        return identifier
    try:
        return NAME2METRIC[identifier]()
    except KeyError:
        raise InvalidParameterError(f"Unknown metric '{identifier}'") from None
