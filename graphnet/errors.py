"""Exception types raised by graphnet."""
from __future__ import annotations


class GraphnetError(Exception):
    """Base class for all graphnet errors."""


class ShapeMismatchError(GraphnetError, ValueError):
    """Input shape is incompatible with a layer at build or forward time."""


class InvalidShapeError(GraphnetError, ValueError):
    """A shape is malformed or a computed dimension is negative."""


class InvalidParameterError(GraphnetError, ValueError):
    """A hyperparameter or call argument is outside its valid range."""


class DuplicateVariableNameError(GraphnetError, ValueError):
    """Two variables were registered under the same name in one graph."""

    def __init__(self, name: str):
        super().__init__(f"Variable '{name}' is already registered in this graph")
        self.name = name


class IllegalStateError(GraphnetError, RuntimeError):
    """An operation was called in a lifecycle state that does not allow it."""


class ResourceClosedError(IllegalStateError):
    """The model (or its session) was used after being closed."""
