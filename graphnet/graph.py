"""Variables, the per-model variable graph, execution tapes and sessions.

A :class:`Graph` owns every :class:`Variable` of one model. Layers register
variables while they are built; :meth:`Graph.initialize_variables` then runs
each pending initializer exactly once. A :class:`Session` is the scoped
execution context wrapped around a graph: it hands out :class:`Tape` objects
for forward/backward passes and releases the graph when closed.
"""
from __future__ import annotations
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import resolve_dtype
from .errors import (
    DuplicateVariableNameError, IllegalStateError, ResourceClosedError, ShapeMismatchError,
)
from .shape import make_shape

logger = logging.getLogger(__name__)


class Variable:
    """Named mutable array owned by one layer and registered in one graph."""

    def __init__(self, name: str, shape: Sequence[int], dtype: np.dtype, initializer,
                 fan_in: int, fan_out: int, seed: Optional[int] = None, owner: Any = None,
                 trainable: bool = True):
        self.name = name
        self.shape = make_shape(shape)
        self.dtype = dtype
        self.initializer = initializer
        self.fan_in = fan_in
        self.fan_out = fan_out
        self.seed = seed
        self.owner = owner
        self._trainable = trainable
        self._value: Optional[np.ndarray] = None
        self._released = False

    @property
    def trainable(self) -> bool:
        return self._trainable and getattr(self.owner, 'trainable', True)

    @property
    def initialized(self) -> bool:
        return self._value is not None

    @property
    def size(self) -> int:
        return int(np.prod(self.shape, dtype=np.int64))

    @property
    def value(self) -> np.ndarray:
        """The live backing array; in-place updates are visible to every pass."""
        if self._released:
            raise ResourceClosedError(f"Variable '{self.name}' was released with its model")
        if self._value is None:
            raise IllegalStateError(f"Variable '{self.name}' has not been initialized yet")
        return self._value

    def numpy(self) -> np.ndarray:
        return self.value.copy()

    def assign(self, value) -> None:
        value = np.asarray(value)
        if value.shape != self.shape:
            raise ShapeMismatchError(
                f"Cannot assign array of shape {value.shape} to variable '{self.name}' of shape {self.shape}"
            )
        if self._value is None:
            self._value = value.astype(self.dtype, copy=True)
        else:
            np.copyto(self.value, value, casting='unsafe')

    def _initialize(self) -> None:
        self._value = self.initializer.initialize(
            self.fan_in, self.fan_out, self.shape, seed=self.seed, dtype=self.dtype
        )

    def _release(self) -> None:
        self._value = None
        self._released = True

    def __repr__(self):
        return f"Variable(name='{self.name}', shape={self.shape}, dtype={self.dtype})"


class Graph:
    """Registry of every variable of a model, keyed by unique name."""

    def __init__(self, dtype=None, seed: Optional[int] = None):
        self.dtype = resolve_dtype(dtype)
        self.seed = seed
        self._variables: 'OrderedDict[str, Variable]' = OrderedDict()
        self._pending: List[Variable] = []

    def _derive_seed(self, index: int) -> Optional[int]:
        if self.seed is None:
            return None
        return int(np.random.SeedSequence([self.seed, index]).generate_state(1)[0])

    def add_variable(self, name: str, shape: Sequence[int], initializer, fan_in: int, fan_out: int,
                     owner: Any = None, trainable: bool = True) -> Variable:
        """Register a variable; its initializer runs on the next :meth:`initialize_variables`."""
        if name in self._variables:
            raise DuplicateVariableNameError(name)
        seed = initializer.seed if initializer.seed is not None else self._derive_seed(len(self._variables))
        variable = Variable(name, shape, self.dtype, initializer, fan_in, fan_out,
                            seed=seed, owner=owner, trainable=trainable)
        self._variables[name] = variable
        self._pending.append(variable)
        logger.debug("Registered variable %s shape=%s initializer=%r", name, variable.shape, initializer)
        return variable

    def initialize_variables(self) -> int:
        """Run every pending initializer once; returns how many variables were initialized."""
        pending, self._pending = self._pending, []
        for variable in pending:
            variable._initialize()
        return len(pending)

    @property
    def variables(self) -> List[Variable]:
        return list(self._variables.values())

    @property
    def trainable_variables(self) -> List[Variable]:
        return [v for v in self._variables.values() if v.trainable]

    def get_variable(self, name: str) -> Variable:
        try:
            return self._variables[name]
        except KeyError:
            raise KeyError(f"No variable named '{name}' in graph") from None

    def __contains__(self, name: str) -> bool:
        return name in self._variables

    def __len__(self) -> int:
        return len(self._variables)

    def clear(self) -> None:
        """Forget every registered variable, e.g. after a failed model build."""
        self._variables.clear()
        self._pending.clear()

    def release(self) -> None:
        for variable in self._variables.values():
            variable._release()
        self._pending.clear()


@dataclass
class Tape:
    """Record of one forward pass, consumed by the matching backward pass.

    Layers stash what their backward step needs under their own name and
    accumulate variable gradients here instead of on themselves, so the
    same layer objects can serve any number of passes.
    """

    training: bool = False
    aux_loss_scale: float = 1.0
    _saved: Dict[str, Tuple[Any, ...]] = field(default_factory=dict)
    _gradients: 'OrderedDict[str, np.ndarray]' = field(default_factory=OrderedDict)
    _aux_losses: List[float] = field(default_factory=list)

    def save_for_backward(self, owner: str, *values: Any) -> None:
        self._saved[owner] = values

    def saved_tensors(self, owner: str) -> Tuple[Any, ...]:
        try:
            return self._saved[owner]
        except KeyError:
            raise IllegalStateError(f"No forward pass recorded for '{owner}' on this tape") from None

    def accumulate_gradient(self, variable: Variable, grad: np.ndarray) -> None:
        if variable.name in self._gradients:
            self._gradients[variable.name] = self._gradients[variable.name] + grad
        else:
            self._gradients[variable.name] = grad

    def gradient(self, variable: Variable) -> Optional[np.ndarray]:
        return self._gradients.get(variable.name)

    @property
    def gradients(self) -> Dict[str, np.ndarray]:
        return dict(self._gradients)

    def add_aux_loss(self, value: float) -> None:
        self._aux_losses.append(float(value))

    @property
    def aux_loss(self) -> float:
        return float(sum(self._aux_losses))


class Session:
    """Scoped execution context owning a model's graph."""

    def __init__(self, graph: Graph):
        self.graph = graph
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def check_open(self) -> None:
        if self._closed:
            raise ResourceClosedError("Session is closed; the model can no longer be used")

    def tape(self, training: bool = False, aux_loss_scale: float = 1.0) -> Tape:
        self.check_open()
        return Tape(training=training, aux_loss_scale=aux_loss_scale)

    def close(self) -> bool:
        """Release the graph. Returns False when the session was already closed."""
        if self._closed:
            return False
        self.graph.release()
        self._closed = True
        logger.info("Session closed, released %d variables", len(self.graph))
        return True

    def __enter__(self) -> 'Session':
        self.check_open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
