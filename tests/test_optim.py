import numpy as np
import pytest

from graphnet import optim
from graphnet.errors import IllegalStateError, InvalidParameterError
from graphnet.graph import Graph
from graphnet.initializers import Constant


@pytest.fixture
def variable():
    graph = Graph(dtype='float64')
    v = graph.add_variable('w', (3,), Constant(1.0), 3, 3)
    graph.initialize_variables()
    return v


class TestOptimizerBinding:
    def test_apply_requires_binding(self, variable):
        with pytest.raises(IllegalStateError):
            optim.SGD().apply_gradients({'w': np.ones(3)})

    def test_bind_once(self, variable):
        opt = optim.SGD().bind([variable])
        with pytest.raises(IllegalStateError):
            opt.bind([variable])
        opt.unbind()
        opt.bind([variable])

    def test_binding_without_variables_counts(self):
        opt = optim.Adam().bind([])
        assert opt.bound
        opt.apply_gradients({})
        assert opt.iterations == 1

    def test_missing_gradient_skips_variable(self, variable):
        opt = optim.SGD(lr=0.1).bind([variable])
        opt.apply_gradients({})
        np.testing.assert_array_equal(variable.value, np.ones(3))


class TestUpdateRules:
    def test_sgd(self, variable):
        optim.SGD(lr=0.1).bind([variable]).apply_gradients({'w': np.array([1.0, 2.0, 3.0])})
        np.testing.assert_allclose(variable.value, [0.9, 0.8, 0.7])

    def test_sgd_momentum(self, variable):
        opt = optim.SGD(lr=0.1, momentum=0.9).bind([variable])
        opt.apply_gradients({'w': np.ones(3)})
        opt.apply_gradients({'w': np.ones(3)})
        # v1 = -0.1, v2 = 0.9 * -0.1 - 0.1 = -0.19
        np.testing.assert_allclose(variable.value, np.full(3, 1.0 - 0.1 - 0.19))

    def test_sgd_nesterov(self, variable):
        opt = optim.SGD(lr=0.1, momentum=0.9, nesterov=True).bind([variable])
        opt.apply_gradients({'w': np.ones(3)})
        np.testing.assert_allclose(variable.value, np.full(3, 0.81))
        opt.apply_gradients({'w': np.ones(3)})
        # v2 = -0.19, step = 0.9 * v2 - 0.1 = -0.271
        np.testing.assert_allclose(variable.value, np.full(3, 0.81 - 0.271))

    def test_adam_first_step_is_lr_sized(self, variable):
        optim.Adam(lr=0.01).bind([variable]).apply_gradients({'w': np.array([5.0, -3.0, 0.5])})
        np.testing.assert_allclose(variable.value, [0.99, 1.01, 0.99], rtol=1e-5)

    @pytest.mark.parametrize("name, lr", [('sgd', 0.1), ('adam', 0.01), ('rmsprop', 0.01), ('adagrad', 0.5)])
    def test_minimizes_quadratic(self, variable, name, lr):
        opt = optim.get(name, lr=lr).bind([variable])
        for _ in range(200):
            opt.apply_gradients({'w': 2 * variable.value})
        assert np.abs(variable.value).max() < 0.1

    def test_weight_decay_and_clipping(self, variable):
        opt = optim.SGD(lr=1.0).configure(weight_decay=0.5).bind([variable])
        opt.apply_gradients({'w': np.zeros(3)})
        np.testing.assert_allclose(variable.value, np.full(3, 0.5))

        opt = optim.SGD(lr=1.0).configure(clip_norm=1.0).bind([variable])
        opt.apply_gradients({'w': np.array([3.0, 4.0, 0.0])})
        np.testing.assert_allclose(variable.value, [0.5 - 0.6, 0.5 - 0.8, 0.5])


class TestLookup:
    def test_get_with_kwargs(self):
        opt = optim.get('sgd', lr=0.5, momentum=0.9)
        assert isinstance(opt, optim.SGD)
        assert opt.lr == 0.5 and opt.momentum == 0.9

    def test_unknown(self):
        with pytest.raises(InvalidParameterError):
            optim.get('lbfgs')

    def test_invalid_lr(self):
        with pytest.raises(InvalidParameterError):
            optim.SGD(lr=0.0)
