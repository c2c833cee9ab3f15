"""graphnet - Keras-style layers, models and training loops on numpy.

Provides:
- Layers (Input, Dense, Conv2D, pooling, Flatten, Reshape, Dropout, Add, Concatenate)
- Activation layers (ReLU, LeakyReLU, ELU, Softmax, Sigmoid, Tanh, ...)
- Weight initializers (Glorot, He, LeCun, truncated normal, constants)
- Sequential and Functional models with build, compile, fit, evaluate, predict
- Optimizers (SGD, Adam, RMSProp, Adagrad), losses and metrics
- Threaded in-memory Dataset batching
- HDF5 weight export/import via h5py

Models own their variables through a session; use them as context managers
or call ``close()`` when done.
"""
import os as _os


def _auto_configure_threads():
    """Set BLAS / OpenMP thread counts to all available CPU cores if user
    hasn't specified them. Must run before NumPy loads heavy backends.

    Environment vars respected (won't override if already set):
    OMP_NUM_THREADS, OPENBLAS_NUM_THREADS, MKL_NUM_THREADS, NUMEXPR_NUM_THREADS.
    Disable by setting GRAPHNET_DISABLE_AUTO_THREADS=1.
    """
    if _os.environ.get('GRAPHNET_DISABLE_AUTO_THREADS', '0').strip().lower() in ('1', 'true', 'yes'):
        return
    cores = _os.cpu_count() or 1
    for var in [
        'OMP_NUM_THREADS', 'OPENBLAS_NUM_THREADS', 'MKL_NUM_THREADS', 'NUMEXPR_NUM_THREADS'
    ]:
        if var not in _os.environ:
            _os.environ[var] = str(cores)


_auto_configure_threads()

from . import (  # noqa: E402
    activation_layers, activations, callbacks, convolutional, data, errors, graph,
    initializers, io, layers, losses, metrics, model, optim, regularizers, shape, utils,
)
from .activation_layers import (  # noqa: E402
    ELU, Activation, Exponential, HardSigmoid, LeakyReLU, ReLU, Sigmoid, Softmax, Softplus,
    Swish, Tanh, ThresholdedReLU,
)
from .callbacks import Callback, EvaluationResult, History  # noqa: E402
from .convolutional import AvgPool2D, Conv2D, MaxPool2D  # noqa: E402
from .data import Dataset  # noqa: E402
from .errors import (  # noqa: E402
    DuplicateVariableNameError, GraphnetError, IllegalStateError, InvalidParameterError,
    InvalidShapeError, ResourceClosedError, ShapeMismatchError,
)
from .graph import Graph, Session, Tape, Variable  # noqa: E402
from .layers import Add, Concatenate, Dense, Dropout, Flatten, Input, Layer, Reshape  # noqa: E402
from .model import Functional, Model, ModelState, Sequential  # noqa: E402
from .shape import ConvPadding  # noqa: E402

__all__ = [
    'activation_layers', 'activations', 'callbacks', 'convolutional', 'data', 'errors', 'graph',
    'initializers', 'io', 'layers', 'losses', 'metrics', 'model', 'optim', 'regularizers',
    'shape', 'utils',
    'Activation', 'ELU', 'Exponential', 'HardSigmoid', 'LeakyReLU', 'ReLU', 'Sigmoid', 'Softmax',
    'Softplus', 'Swish', 'Tanh', 'ThresholdedReLU',
    'Callback', 'EvaluationResult', 'History',
    'AvgPool2D', 'Conv2D', 'MaxPool2D', 'ConvPadding',
    'Dataset',
    'DuplicateVariableNameError', 'GraphnetError', 'IllegalStateError', 'InvalidParameterError',
    'InvalidShapeError', 'ResourceClosedError', 'ShapeMismatchError',
    'Graph', 'Session', 'Tape', 'Variable',
    'Add', 'Concatenate', 'Dense', 'Dropout', 'Flatten', 'Input', 'Layer', 'Reshape',
    'Functional', 'Model', 'ModelState', 'Sequential',
    '_auto_configure_threads',
]
