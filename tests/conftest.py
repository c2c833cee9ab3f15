import numpy as np
import pytest

from graphnet.graph import Graph, Tape


@pytest.fixture(autouse=True)
def _quiet_progress(monkeypatch):
    """Keep tqdm bars out of test output."""
    monkeypatch.setenv('GRAPHNET_DISABLE_PROGRESS', '1')


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def graph():
    """float64 graph so finite differences stay accurate."""
    return Graph(dtype='float64', seed=7)


@pytest.fixture
def build(graph):
    """Build a layer on the shared graph and initialize its variables."""
    def _build(layer, input_shape):
        layer.build(graph, input_shape)
        graph.initialize_variables()
        return layer
    return _build


def _numeric_grad(fn, x, eps=1e-6):
    grad = np.zeros_like(x)
    it = np.nditer(x, flags=['multi_index'])
    while not it.finished:
        idx = it.multi_index
        orig = x[idx]
        x[idx] = orig + eps
        f_plus = fn()
        x[idx] = orig - eps
        f_minus = fn()
        x[idx] = orig
        grad[idx] = (f_plus - f_minus) / (2 * eps)
        it.iternext()
    return grad


@pytest.fixture
def grad_check(rng):
    """Compare a layer's analytic input/variable gradients with central differences."""
    def _check(layer, x, rtol=1e-5, atol=1e-6):
        tape = Tape(training=False)
        y = layer.forward(tape, x)
        upstream = rng.normal(size=y.shape)
        dx = layer.backward(tape, upstream)

        def objective():
            return float((layer.forward(Tape(), x) * upstream).sum())

        np.testing.assert_allclose(dx, _numeric_grad(objective, x), rtol=rtol, atol=atol)
        for variable in layer.variables.values():
            np.testing.assert_allclose(
                tape.gradient(variable), _numeric_grad(objective, variable.value), rtol=rtol, atol=atol
            )
        return tape
    return _check
