"""Training hooks and the records returned by ``fit`` and ``evaluate``."""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class EpochRecord:
    epoch: int
    loss: float
    metric: float
    num_batches: int
    val_loss: Optional[float] = None
    val_metric: Optional[float] = None
    lr: Optional[float] = None


@dataclass
class History:
    """Per-epoch training history; ``history['loss']`` gives one column."""
    metric_name: str = 'metric'
    epochs: List[EpochRecord] = field(default_factory=list)

    def append(self, record: EpochRecord) -> None:
        self.epochs.append(record)

    def __getitem__(self, key: str) -> list:
        key = {self.metric_name: 'metric', f'val_{self.metric_name}': 'val_metric'}.get(key, key)
        return [getattr(record, key) for record in self.epochs]

    def __len__(self) -> int:
        return len(self.epochs)

    @property
    def last(self) -> Optional[EpochRecord]:
        return self.epochs[-1] if self.epochs else None


@dataclass
class EvaluationResult:
    loss: float
    metrics: Dict[str, float]
    num_batches: int = 0


class Callback:
    """Base class; override the hooks you need. ``logs`` carries running values."""

    def on_train_begin(self, model) -> None:
        pass

    def on_train_end(self, model, history: History) -> None:
        pass

    def on_epoch_begin(self, model, epoch: int) -> None:
        pass

    def on_epoch_end(self, model, record: EpochRecord) -> None:
        pass

    def on_train_batch_end(self, model, batch: int, batch_size: int, logs: Dict[str, float]) -> None:
        pass

    def on_test_batch_end(self, model, batch: int, batch_size: int, logs: Dict[str, float]) -> None:
        pass
