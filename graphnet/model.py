"""Model containers: graph construction, compilation and the train/eval/predict loops.

A model moves through ``CREATED -> BUILT -> COMPILED``:

- ``build()`` threads shapes through the layers in dependency order, builds
  every layer exactly once and runs the graph's variable initializers;
- ``compile()`` binds a loss, a metric and an optimizer to the built graph;
- ``fit()``/``evaluate()`` need a compiled model, ``predict()`` a built one.

Each model owns one :class:`~graphnet.graph.Graph` wrapped in a
:class:`~graphnet.graph.Session`, acquired at construction and released by
``close()`` or on leaving a ``with`` block.
"""
from __future__ import annotations
import enum
import logging
import warnings
from collections import OrderedDict, defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from tqdm import tqdm

from . import io
from . import losses as losses_module
from . import metrics as metrics_module
from . import optim as optim_module
from .activations import Softmax as SoftmaxFunction
from .activation_layers import Softmax as SoftmaxLayer
from .callbacks import Callback, EpochRecord, EvaluationResult, History
from .config import load_settings
from .data import Dataset, _check_batch_size
from .errors import IllegalStateError, InvalidParameterError, ShapeMismatchError
from .graph import Graph, Session, Tape
from .layers import UNBUILT, Input, Layer, snake_case
from .shape import same_features
from .utils import format_summary

logger = logging.getLogger(__name__)


class ModelState(enum.Enum):
    CREATED = 1
    BUILT = 2
    COMPILED = 3


def _assign_names(layers: Sequence[Layer]) -> None:
    taken = set()
    for layer in layers:
        if layer.name:
            if layer.name in taken:
                raise ValueError(f"Duplicate layer name '{layer.name}'")
            taken.add(layer.name)
    counters: Dict[str, int] = defaultdict(int)
    for layer in layers:
        if layer.name:
            continue
        base = snake_case(layer.__class__.__name__)
        while True:
            counters[base] += 1
            candidate = f"{base}_{counters[base]}"
            if candidate not in taken:
                break
        layer.name = candidate
        taken.add(candidate)


def _argmax(out: np.ndarray):
    classes = np.argmax(out, axis=-1)
    return int(classes) if classes.ndim == 0 else classes


class Model:
    """Orchestrates a DAG of layers wired through their ``inbound`` lists.

    ``layers`` must be topologically ordered and start with the single
    :class:`~graphnet.layers.Input`. Prefer :meth:`Sequential.of` or
    :meth:`Functional.of` over calling this directly.
    """

    def __init__(self, layers: Sequence[Layer], seed: Optional[int] = None, dtype=None):
        layers = list(layers)
        if not layers:
            raise ValueError("A model needs at least one layer")
        if not isinstance(layers[0], Input):
            raise ValueError(
                f"The first layer must be an Input declaration, got {layers[0].__class__.__name__}"
            )
        _assign_names(layers)
        self.layers: List[Layer] = layers
        self._inbound: Dict[str, List[str]] = {}
        self._link()
        self._graph = Graph(dtype=dtype, seed=seed)
        self._session = Session(self._graph)
        self.state = ModelState.CREATED
        self.loss: Optional[losses_module.Loss] = None
        self.metric: Optional[metrics_module.Metric] = None
        self.optimizer: Optional[optim_module.Optimizer] = None

    def _link(self) -> None:
        seen = set()
        consumed = set()
        for index, layer in enumerate(self.layers):
            if isinstance(layer, Input):
                if index != 0:
                    raise ValueError(f"Only one Input is supported, found a second one: '{layer.name}'")
                self._inbound[layer.name] = []
            else:
                if not layer.inbound:
                    raise ValueError(f"Layer '{layer.name}' is not connected to any inbound layer")
                for parent in layer.inbound:
                    if parent.name not in seen:
                        raise ValueError(
                            f"Layer '{layer.name}' consumes '{parent.name}', which is not an earlier layer of this model"
                        )
                    consumed.add(parent.name)
                self._inbound[layer.name] = [p.name for p in layer.inbound]
            seen.add(layer.name)
        sinks = [layer.name for layer in self.layers if layer.name not in consumed]
        if len(sinks) != 1:
            raise ValueError(f"A model needs exactly one output layer, found {sinks}")
        if sinks[0] != self.layers[-1].name:
            raise ValueError(f"The output layer '{sinks[0]}' must come last")

    # -- state ---------------------------------------------------------

    @property
    def graph(self) -> Graph:
        return self._graph

    @property
    def closed(self) -> bool:
        return self._session.closed

    @property
    def input_layer(self) -> Input:
        return self.layers[0]

    @property
    def output_layer(self) -> Layer:
        return self.layers[-1]

    def _require(self, state: ModelState, action: str) -> None:
        self._session.check_open()
        if self.state.value < state.value:
            hint = 'build()' if state is ModelState.BUILT else 'compile()'
            raise IllegalStateError(f"Cannot {action}: the model is {self.state.name}, call {hint} first")

    def get_layer(self, name: str) -> Layer:
        for layer in self.layers:
            if layer.name == name:
                return layer
        raise KeyError(f"No layer named '{name}'")

    # -- lifecycle -----------------------------------------------------

    def build(self) -> 'Model':
        """Resolve shapes and allocate every variable exactly once."""
        self._session.check_open()
        if self.state is not ModelState.CREATED:
            raise IllegalStateError("Model is already built")
        shapes: Dict[str, tuple] = {}
        built: List[Layer] = []
        try:
            for layer in self.layers:
                parents = self._inbound[layer.name]
                if not parents:
                    layer.build(self._graph)
                elif layer.multi_input:
                    layer.build(self._graph, [shapes[p] for p in parents])
                else:
                    layer.build(self._graph, shapes[parents[0]])
                built.append(layer)
                shapes[layer.name] = layer.output_shape
        except Exception:
            # leave the model CREATED so build() can be retried
            for layer in built:
                layer.state = UNBUILT
            self._graph.clear()
            raise
        count = self._graph.initialize_variables()
        self.state = ModelState.BUILT
        logger.info("Built %s with %d layers, %d variables, %d parameters",
                    self.__class__.__name__, len(self.layers), count, self.param_count)
        return self

    def compile(self, optimizer: Union[str, optim_module.Optimizer] = 'adam',
                loss: Union[str, losses_module.Loss] = 'softmax_cross_entropy_with_logits',
                metric: Union[str, metrics_module.Metric] = 'accuracy',
                weight_decay: float = 0.0, clip_norm: Optional[float] = None, **opt_kwargs) -> 'Model':
        """Bind loss, metric and optimizer to the built graph."""
        self._require(ModelState.BUILT, 'compile')
        if self.state is ModelState.COMPILED:
            raise IllegalStateError("Model is already compiled; call reset_compilation() to recompile")
        loss = losses_module.get(loss)
        metric = metrics_module.get(metric)
        optimizer = optim_module.get(optimizer, **opt_kwargs)
        if weight_decay or clip_norm is not None:
            optimizer.configure(weight_decay=weight_decay, clip_norm=clip_norm)
        if loss.expects_logits and self._ends_with_softmax():
            warnings.warn(
                f"Loss '{loss.name}' expects logits but the output layer '{self.output_layer.name}' "
                f"applies softmax", stacklevel=2
            )
        optimizer.bind(self._graph.trainable_variables)
        self.loss, self.metric, self.optimizer = loss, metric, optimizer
        self.state = ModelState.COMPILED
        logger.info("Compiled with optimizer=%r loss=%r metric=%r", optimizer, loss, metric)
        return self

    def reset_compilation(self) -> None:
        """Drop the compiled loss, metric and optimizer; variables keep their values."""
        self._session.check_open()
        if self.state is not ModelState.COMPILED:
            return
        self.optimizer.unbind()
        self.loss = self.metric = self.optimizer = None
        self.state = ModelState.BUILT

    def _ends_with_softmax(self) -> bool:
        out = self.output_layer
        return isinstance(out, SoftmaxLayer) or isinstance(getattr(out, 'activation', None), SoftmaxFunction)

    def close(self) -> None:
        """Release the session and every variable. Safe to call more than once."""
        if self._session.close():
            if self.optimizer is not None:
                self.optimizer.unbind()
            logger.info("Closed %s", self.__class__.__name__)

    def __enter__(self) -> 'Model':
        self._session.check_open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    # -- graph execution -----------------------------------------------

    def _forward(self, tape: Tape, x: np.ndarray, training: bool) -> Tuple[np.ndarray, Dict[str, np.ndarray]]:
        outputs: Dict[str, np.ndarray] = OrderedDict()
        for layer in self.layers:
            parents = self._inbound[layer.name]
            if not parents:
                inputs = x
            elif layer.multi_input:
                inputs = [outputs[p] for p in parents]
            else:
                inputs = outputs[parents[0]]
            outputs[layer.name] = layer.forward(tape, inputs, training=training,
                                                aux_loss_scale=tape.aux_loss_scale)
        return outputs[self.output_layer.name], outputs

    def _backward(self, tape: Tape, grad: np.ndarray) -> None:
        grads: Dict[str, np.ndarray] = {self.output_layer.name: grad}
        for layer in reversed(self.layers):
            g = grads.pop(layer.name, None)
            parents = self._inbound[layer.name]
            if g is None or not parents:
                continue
            g_in = layer.backward(tape, g)
            if not layer.multi_input:
                g_in = [g_in]
            for parent, gp in zip(parents, g_in):
                grads[parent] = grads[parent] + gp if parent in grads else gp

    def _prepare_x(self, x) -> np.ndarray:
        x = np.asarray(x, dtype=self._graph.dtype)
        if not same_features(x.shape, self.input_layer.shape):
            raise ShapeMismatchError(
                f"Expected inputs of shape {self.input_layer.shape}, got {x.shape}"
            )
        return x

    def _check_dataset(self, dataset: Dataset, what: str) -> None:
        if len(dataset) == 0:
            raise InvalidParameterError(f"{what} dataset is empty")
        if not same_features((None, *dataset.x.shape[1:]), self.input_layer.shape):
            raise ShapeMismatchError(
                f"{what} features of shape {dataset.x.shape} do not match model input {self.input_layer.shape}"
            )

    def _train_step(self, x: np.ndarray, y: np.ndarray) -> Tuple[float, float]:
        tape = self._session.tape(training=True)
        out, _ = self._forward(tape, x, training=True)
        loss_val = self.loss.forward(out, y) + tape.aux_loss
        self._backward(tape, self.loss.backward())
        self.optimizer.apply_gradients(tape.gradients)
        return loss_val, self.metric(out, y)

    def _test_step(self, x: np.ndarray, y: np.ndarray) -> Tuple[float, float]:
        tape = self._session.tape(training=False)
        out, _ = self._forward(tape, x, training=False)
        return self.loss.forward(out, y) + tape.aux_loss, self.metric(out, y)

    # -- training / evaluation -----------------------------------------

    def fit(self, dataset: Dataset, epochs: int = 1, batch_size: int = 32,
            validation_dataset: Optional[Dataset] = None, validation_batch_size: Optional[int] = None,
            shuffle: bool = False, seed: Optional[int] = None, callbacks: Iterable[Callback] = (),
            verbose: bool = True, early_stopping: bool = False, patience: int = 10,
            min_delta: float = 0.0, lr_schedule: Optional[str] = None, lr_factor: float = 0.5,
            lr_patience: int = 5, lr_min: float = 1e-6) -> History:
        """Train for ``epochs`` passes over ``dataset``.

        Every epoch runs one forward + backward + optimizer step per batch of
        ``batch_size`` samples (the last batch may be smaller) and, when
        ``validation_dataset`` is given, a forward-only validation pass.
        ``early_stopping`` and ``lr_schedule='plateau'`` watch the validation
        loss if there is one, the training loss otherwise.

        Returns:
            History with one :class:`EpochRecord` per completed epoch.
        """
        self._require(ModelState.COMPILED, 'fit')
        _check_batch_size(batch_size)
        if validation_batch_size is not None:
            _check_batch_size(validation_batch_size)
        if epochs < 1:
            raise InvalidParameterError(f"epochs must be >= 1, got {epochs}")
        if lr_schedule not in (None, 'plateau'):
            raise InvalidParameterError(f"Unknown lr_schedule '{lr_schedule}'")
        self._check_dataset(dataset, 'Training')
        if validation_dataset is not None:
            self._check_dataset(validation_dataset, 'Validation')
        callbacks = list(callbacks)
        progress = verbose and load_settings().progress
        metric_name = self.metric.name
        history = History(metric_name=metric_name)
        best = np.inf
        epochs_no_improve = 0
        lr_wait = 0
        for cb in callbacks:
            cb.on_train_begin(self)
        for epoch in range(epochs):
            for cb in callbacks:
                cb.on_epoch_begin(self, epoch)
            batches = dataset.batches(batch_size, shuffle=shuffle,
                                      seed=None if seed is None else seed + epoch)
            loss_sum = metric_sum = 0.0
            seen = 0
            num_batches = 0
            with tqdm(batches, total=dataset.num_batches(batch_size),
                      desc=f"Epoch {epoch + 1}/{epochs}", disable=not progress) as pbar:
                for index, (xb, yb) in enumerate(pbar):
                    xb = self._prepare_x(xb)
                    loss_val, metric_val = self._train_step(xb, yb)
                    size = len(xb)
                    seen += size
                    num_batches += 1
                    loss_sum += loss_val * size
                    metric_sum += metric_val * size
                    for cb in callbacks:
                        cb.on_train_batch_end(self, index, size, {'loss': loss_val, metric_name: metric_val})
                    pbar.set_postfix({'loss': loss_sum / seen, metric_name: metric_sum / seen})

            record = EpochRecord(epoch=epoch + 1, loss=loss_sum / seen, metric=metric_sum / seen,
                                 num_batches=num_batches, lr=getattr(self.optimizer, 'lr', None))
            if validation_dataset is not None:
                val = self._evaluate(validation_dataset, validation_batch_size or batch_size)
                record.val_loss = val.loss
                record.val_metric = val.metrics[metric_name]
            history.append(record)
            for cb in callbacks:
                cb.on_epoch_end(self, record)
            if progress:
                tqdm.write(self._format_record(record))

            monitored = record.val_loss if record.val_loss is not None else record.loss
            if monitored < best - min_delta:
                best = monitored
                epochs_no_improve = 0
                lr_wait = 0
            else:
                epochs_no_improve += 1
                lr_wait += 1

            if lr_schedule == 'plateau' and lr_wait >= lr_patience and self.optimizer.lr > lr_min:
                old_lr = self.optimizer.lr
                self.optimizer.lr = max(lr_min, self.optimizer.lr * lr_factor)
                lr_wait = 0
                logger.info("Learning rate reduced from %g to %g", old_lr, self.optimizer.lr)

            if early_stopping and epochs_no_improve >= patience:
                logger.info("Early stopping at epoch %d, best monitored loss %.4f", epoch + 1, best)
                break
        for cb in callbacks:
            cb.on_train_end(self, history)
        return history

    def _format_record(self, record: EpochRecord) -> str:
        name = self.metric.name
        line = f"epoch {record.epoch}: loss={record.loss:.4f} {name}={record.metric:.4f}"
        if record.val_loss is not None:
            line += f" val_loss={record.val_loss:.4f} val_{name}={record.val_metric:.4f}"
        return line

    def evaluate(self, dataset: Dataset, batch_size: int = 32, verbose: bool = False,
                 callbacks: Iterable[Callback] = ()) -> EvaluationResult:
        """Forward-only pass; loss and metric are averaged weighting each batch by its size."""
        self._require(ModelState.COMPILED, 'evaluate')
        _check_batch_size(batch_size)
        self._check_dataset(dataset, 'Evaluation')
        return self._evaluate(dataset, batch_size, verbose and load_settings().progress, list(callbacks))

    def _evaluate(self, dataset: Dataset, batch_size: int, progress: bool = False,
                  callbacks: Sequence[Callback] = ()) -> EvaluationResult:
        metric_name = self.metric.name
        loss_sum = metric_sum = 0.0
        seen = 0
        num_batches = 0
        with tqdm(dataset.batches(batch_size), total=dataset.num_batches(batch_size),
                  desc="Evaluate", disable=not progress) as pbar:
            for index, (xb, yb) in enumerate(pbar):
                xb = self._prepare_x(xb)
                loss_val, metric_val = self._test_step(xb, yb)
                size = len(xb)
                seen += size
                num_batches += 1
                loss_sum += loss_val * size
                metric_sum += metric_val * size
                for cb in callbacks:
                    cb.on_test_batch_end(self, index, size, {'loss': loss_val, metric_name: metric_val})
        return EvaluationResult(loss=loss_sum / seen, metrics={metric_name: metric_sum / seen},
                                num_batches=num_batches)

    # -- inference -----------------------------------------------------

    def _as_batch(self, x) -> Tuple[np.ndarray, bool]:
        x = np.asarray(x, dtype=self._graph.dtype)
        single = x.ndim == len(self.input_layer.shape) - 1
        if single:
            x = x[None, ...]
        if len(x) == 0:
            raise InvalidParameterError("Cannot predict on an empty batch")
        return self._prepare_x(x), single

    def predict(self, x, batch_size: Optional[int] = None) -> np.ndarray:
        """Forward pass in inference mode; a single unbatched sample is accepted."""
        self._require(ModelState.BUILT, 'predict')
        x, single = self._as_batch(x)
        if batch_size is None:
            batch_size = max(len(x), 1)
        _check_batch_size(batch_size)
        outs = []
        for start in range(0, len(x), batch_size):
            out, _ = self._forward(self._session.tape(training=False), x[start:start + batch_size], training=False)
            outs.append(out)
        out = np.concatenate(outs, axis=0)
        return out[0] if single else out

    def predict_classes(self, x, batch_size: Optional[int] = None):
        """Index of the highest output per sample; an ``int`` for a single sample."""
        return _argmax(self.predict(x, batch_size=batch_size))

    def predict_and_get_activations(self, x, classes: bool = False):
        """Predict and also return every layer's output keyed by layer name.

        With ``classes=True`` the prediction is the class index, as from
        :meth:`predict_classes`, instead of the raw output.
        """
        self._require(ModelState.BUILT, 'predict')
        x, single = self._as_batch(x)
        out, outputs = self._forward(self._session.tape(training=False), x, training=False)
        activations = OrderedDict(
            (name, value[0] if single else value)
            for name, value in outputs.items() if self._inbound[name]
        )
        out = out[0] if single else out
        return (_argmax(out) if classes else out), activations

    # -- weights -------------------------------------------------------

    @property
    def weights(self) -> Dict[str, Dict[str, np.ndarray]]:
        """``{layer_name: {variable_name: array}}`` snapshot for every layer with variables."""
        self._require(ModelState.BUILT, 'read weights')
        return OrderedDict((layer.name, layer.weights) for layer in self.layers if layer.variables)

    def load_weights(self, source: Union[str, Mapping[str, Mapping[str, np.ndarray]]]) -> None:
        """Assign weights from an HDF5 file or an in-memory ``weights`` mapping."""
        self._require(ModelState.BUILT, 'load weights')
        weights = io.load_weights_hdf5(source) if isinstance(source, str) else source
        for layer_name, values in weights.items():
            variables = {v.name: v for v in self.get_layer(layer_name).variables.values()}
            for name, value in values.items():
                if name not in variables:
                    raise InvalidParameterError(f"Layer '{layer_name}' has no variable '{name}'")
                variables[name].assign(value)

    def export_weights(self, path: str) -> None:
        io.save_weights_hdf5(path, self.weights)

    @property
    def param_count(self) -> int:
        return sum(layer.param_count for layer in self.layers if layer.built)

    def summary(self, print_fn=print) -> str:
        self._require(ModelState.BUILT, 'summarize')
        rows = [(layer.name, layer.__class__.__name__, layer.output_shape, layer.param_count)
                for layer in self.layers]
        trainable = sum(v.size for v in self._graph.trainable_variables)
        text = format_summary(rows, self.param_count, trainable)
        if print_fn is not None:
            print_fn(text)
        return text

    def __repr__(self):
        return f"{self.__class__.__name__}(layers={len(self.layers)}, state={self.state.name}, closed={self.closed})"


class Sequential(Model):
    """Linear stack of layers starting with an :class:`~graphnet.layers.Input`."""

    @classmethod
    def of(cls, *layers: Layer, seed: Optional[int] = None, dtype=None) -> 'Sequential':
        if not layers:
            raise ValueError("Sequential.of needs at least one layer")
        if not isinstance(layers[0], Input):
            raise ValueError(
                f"The first layer must be an Input declaration, got {layers[0].__class__.__name__}"
            )
        for previous, layer in zip(layers, layers[1:]):
            if layer.multi_input:
                raise ValueError(f"{layer.__class__.__name__} needs several inputs and cannot be stacked")
            layer.inbound = [previous]
        return cls(layers, seed=seed, dtype=dtype)

    def add(self, layer: Layer) -> 'Sequential':
        self._session.check_open()
        if self.state is not ModelState.CREATED:
            raise IllegalStateError("Layers can only be added before the model is built")
        if layer.multi_input or isinstance(layer, Input):
            raise ValueError(f"{layer.__class__.__name__} cannot be appended to a Sequential model")
        layer.inbound = [self.layers[-1]]
        layers = self.layers + [layer]
        _assign_names(layers)
        self.layers = layers
        self._inbound[layer.name] = [self.layers[-2].name]
        return self


def _topological(layers: Sequence[Layer]) -> List[Layer]:
    """Order ``layers`` so every layer follows its inbound layers, keeping given order on ties."""
    index = {id(layer): i for i, layer in enumerate(layers)}
    for layer in layers:
        for parent in layer.inbound:
            if id(parent) not in index:
                raise ValueError(f"Layer {layer!r} consumes {parent!r}, which was not passed to the model")
    pending = {id(layer): len(layer.inbound) for layer in layers}
    consumers: Dict[int, List[Layer]] = defaultdict(list)
    for layer in layers:
        for parent in layer.inbound:
            consumers[id(parent)].append(layer)
    ready = [layer for layer in layers if pending[id(layer)] == 0]
    ordered: List[Layer] = []
    while ready:
        ready.sort(key=lambda layer: index[id(layer)])
        layer = ready.pop(0)
        ordered.append(layer)
        for child in consumers[id(layer)]:
            pending[id(child)] -= 1
            if pending[id(child)] == 0:
                ready.append(child)
    if len(ordered) != len(layers):
        raise ValueError("Layer graph contains a cycle")
    return ordered


class Functional(Model):
    """DAG of layers wired with call syntax, e.g. ``Dense(4)(inputs)``."""

    @classmethod
    def of(cls, *layers: Layer, seed: Optional[int] = None, dtype=None) -> 'Functional':
        if not layers:
            raise ValueError("Functional.of needs at least one layer")
        if not isinstance(layers[0], Input):
            raise ValueError(
                f"The first layer must be an Input declaration, got {layers[0].__class__.__name__}"
            )
        return cls(_topological(layers), seed=seed, dtype=dtype)

    @classmethod
    def from_output(cls, output: Layer, seed: Optional[int] = None, dtype=None) -> 'Functional':
        """Collect every layer ``output`` depends on and build a model from them."""
        ordered: List[Layer] = []
        visited = set()
        on_path = set()

        def visit(layer: Layer) -> None:
            if id(layer) in visited:
                return
            if id(layer) in on_path:
                raise ValueError("Layer graph contains a cycle")
            on_path.add(id(layer))
            for parent in layer.inbound:
                visit(parent)
            on_path.discard(id(layer))
            visited.add(id(layer))
            ordered.append(layer)

        visit(output)
        inputs = [layer for layer in ordered if isinstance(layer, Input)]
        if len(inputs) != 1:
            raise ValueError(f"A functional model needs exactly one Input, found {len(inputs)}")
        ordered.remove(inputs[0])
        return cls([inputs[0]] + ordered, seed=seed, dtype=dtype)
