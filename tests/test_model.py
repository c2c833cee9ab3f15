import numpy as np
import pytest

from graphnet.activation_layers import ReLU, Softmax
from graphnet.callbacks import Callback
from graphnet.convolutional import Conv2D, MaxPool2D
from graphnet.data import Dataset
from graphnet.errors import (
    IllegalStateError, InvalidParameterError, ResourceClosedError, ShapeMismatchError,
)
from graphnet.initializers import Constant
from graphnet.layers import Add, Concatenate, Dense, Flatten, Input
from graphnet.model import Functional, ModelState, Sequential
from graphnet.optim import SGD


def small_model(**kwargs):
    return Sequential.of(Input(3), Dense(4, activation='tanh'), Dense(2, activation='linear'),
                         seed=0, dtype='float64', **kwargs)


@pytest.fixture
def regression_data(rng):
    x = rng.normal(size=(10, 3))
    y = rng.normal(size=(10, 2))
    return Dataset(x, y)


class RecordingCallback(Callback):
    def __init__(self):
        self.events = []
        self.batch_sizes = []

    def on_train_begin(self, model):
        self.events.append('train_begin')

    def on_epoch_end(self, model, record):
        self.events.append(f'epoch_{record.epoch}')

    def on_train_batch_end(self, model, batch, batch_size, logs):
        self.batch_sizes.append(batch_size)

    def on_train_end(self, model, history):
        self.events.append('train_end')


class TestConstruction:
    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            Sequential.of()

    def test_first_layer_must_be_input(self):
        with pytest.raises(ValueError):
            Sequential.of(Dense(2), Dense(2))

    def test_names_assigned_per_type(self):
        model = Sequential.of(Input(3), Dense(4), Dense(2), ReLU())
        assert [layer.name for layer in model.layers] == ['input_1', 'dense_1', 'dense_2', 're_lu_1']

    def test_explicit_names_kept_and_skipped(self):
        model = Sequential.of(Input(3), Dense(4, name='dense_1'), Dense(2))
        assert [layer.name for layer in model.layers] == ['input_1', 'dense_1', 'dense_2']

    def test_duplicate_names_rejected(self):
        with pytest.raises(ValueError):
            Sequential.of(Input(3), Dense(4, name='d'), Dense(2, name='d'))

    def test_add_before_build(self):
        model = Sequential.of(Input(3))
        model.add(Dense(2))
        model.build()
        assert model.output_layer.output_shape == (None, 2)
        with pytest.raises(IllegalStateError):
            model.add(Dense(2))

    def test_starts_created(self):
        assert small_model().state is ModelState.CREATED


class TestLifecycle:
    def test_compile_before_build(self):
        model = small_model()
        with pytest.raises(IllegalStateError):
            model.compile()

    def test_build_twice(self):
        model = small_model().build()
        with pytest.raises(IllegalStateError):
            model.build()

    def test_failed_build_can_be_retried(self):
        model = Sequential.of(Input(4), Dense(3), Dense(2, input_dim=5), seed=0)
        with pytest.raises(ShapeMismatchError):
            model.build()
        assert model.state is ModelState.CREATED
        assert not any(layer.built for layer in model.layers)
        assert len(model.graph) == 0
        model.layers[2].input_dim = None
        model.build()
        assert model.state is ModelState.BUILT
        assert len(model.graph) == 4

    def test_compile_twice_needs_reset(self):
        model = small_model().build()
        model.compile(optimizer='sgd', loss='mse', metric='mse')
        with pytest.raises(IllegalStateError):
            model.compile(optimizer='sgd', loss='mse', metric='mse')
        model.reset_compilation()
        assert model.state is ModelState.BUILT
        model.compile(optimizer='adam', loss='mae', metric='mae')
        assert model.state is ModelState.COMPILED

    def test_fit_requires_compile(self, regression_data):
        model = small_model().build()
        with pytest.raises(IllegalStateError):
            model.fit(regression_data)
        with pytest.raises(IllegalStateError):
            model.evaluate(regression_data)

    def test_predict_requires_build(self):
        with pytest.raises(IllegalStateError):
            small_model().predict(np.zeros((1, 3)))

    def test_closed_model_rejects_everything(self, regression_data):
        model = small_model().build()
        model.compile(optimizer='sgd', loss='mse', metric='mse')
        model.close()
        assert model.closed
        with pytest.raises(ResourceClosedError):
            model.predict(np.zeros((1, 3)))
        with pytest.raises(ResourceClosedError):
            model.fit(regression_data)
        with pytest.raises(ResourceClosedError):
            model.weights
        with pytest.raises(ResourceClosedError):
            model.layers[1].variables['kernel'].value
        model.close()

    def test_context_manager_closes(self):
        with small_model() as model:
            model.build()
            assert not model.closed
        assert model.closed

    def test_softmax_output_with_logits_loss_warns(self):
        model = Sequential.of(Input(3), Dense(2, activation='linear'), Softmax()).build()
        with pytest.warns(UserWarning):
            model.compile(optimizer='sgd', loss='softmax_cross_entropy_with_logits')

    def test_parameter_count(self):
        model = small_model().build()
        assert model.param_count == (3 * 4 + 4) + (4 * 2 + 2)
        assert 'Total params: 26' in model.summary(print_fn=None)


class TestTraining:
    def test_one_sgd_step_matches_numpy(self, rng):
        x = rng.normal(size=(4, 3))
        y = rng.normal(size=(4, 2))
        model = Sequential.of(Input(3), Dense(2, activation='linear'), seed=3, dtype='float64').build()
        model.compile(optimizer=SGD(lr=0.1), loss='mse', metric='mse')
        kernel = model.weights['dense_1']['dense_1_kernel']
        bias = model.weights['dense_1']['dense_1_bias']

        pred = x @ kernel + bias
        grad = 2 * (pred - y) / pred.size
        expected_kernel = kernel - 0.1 * x.T @ grad
        expected_bias = bias - 0.1 * grad.sum(axis=0)

        history = model.fit(Dataset(x, y), epochs=1, batch_size=4, verbose=False)
        np.testing.assert_allclose(model.weights['dense_1']['dense_1_kernel'], expected_kernel, atol=1e-6)
        np.testing.assert_allclose(model.weights['dense_1']['dense_1_bias'], expected_bias, atol=1e-6)
        assert history['loss'][0] == pytest.approx(np.mean((pred - y) ** 2))

    def test_one_sgd_step_through_hidden_relu(self, rng):
        x = rng.normal(size=(6, 4))
        y = rng.normal(size=(6, 2))
        model = Sequential.of(Input(4), Dense(3, activation='relu'), Dense(2, activation='linear'),
                              seed=5, dtype='float64').build()
        model.compile(optimizer=SGD(lr=0.05), loss='mse', metric='mse')
        w = model.weights
        k1, b1 = w['dense_1']['dense_1_kernel'], w['dense_1']['dense_1_bias']
        k2, b2 = w['dense_2']['dense_2_kernel'], w['dense_2']['dense_2_bias']

        h_pre = x @ k1 + b1
        h = np.maximum(h_pre, 0)
        pred = h @ k2 + b2
        g = 2 * (pred - y) / pred.size
        g_hidden = (g @ k2.T) * (h_pre > 0)

        model.fit(Dataset(x, y), epochs=1, batch_size=6, verbose=False)
        after = model.weights
        np.testing.assert_allclose(after['dense_2']['dense_2_kernel'], k2 - 0.05 * h.T @ g, atol=1e-6)
        np.testing.assert_allclose(after['dense_2']['dense_2_bias'], b2 - 0.05 * g.sum(axis=0), atol=1e-6)
        np.testing.assert_allclose(after['dense_1']['dense_1_kernel'], k1 - 0.05 * x.T @ g_hidden, atol=1e-6)
        np.testing.assert_allclose(after['dense_1']['dense_1_bias'], b1 - 0.05 * g_hidden.sum(axis=0),
                                   atol=1e-6)

    def test_history_and_callbacks(self, regression_data):
        model = small_model().build()
        model.compile(optimizer='sgd', loss='mse', metric='mse')
        callback = RecordingCallback()
        history = model.fit(regression_data, epochs=3, batch_size=4, callbacks=[callback], verbose=False)
        assert len(history) == 3
        assert [r.num_batches for r in history.epochs] == [3, 3, 3]
        assert callback.events == ['train_begin', 'epoch_1', 'epoch_2', 'epoch_3', 'train_end']
        assert callback.batch_sizes == [4, 4, 2] * 3
        assert len(history['mse']) == 3

    def test_training_reduces_loss(self, rng):
        x = rng.normal(size=(64, 3))
        y = x @ np.array([[1.0], [-2.0], [0.5]])
        model = Sequential.of(Input(3), Dense(1, activation='linear'), seed=0, dtype='float64').build()
        model.compile(optimizer=SGD(lr=0.1), loss='mse', metric='mae')
        history = model.fit(Dataset(x, y), epochs=20, batch_size=16, verbose=False)
        assert history['loss'][-1] < 0.1 * history['loss'][0]

    def test_validation_metrics_recorded(self, regression_data):
        model = small_model().build()
        model.compile(optimizer='sgd', loss='mse', metric='mse')
        train, val = regression_data.split(0.8)
        history = model.fit(train, epochs=2, batch_size=3, validation_dataset=val, verbose=False)
        assert all(r.val_loss is not None for r in history.epochs)
        assert len(history['val_mse']) == 2

    def test_invalid_arguments(self, regression_data):
        model = small_model().build()
        model.compile(optimizer='sgd', loss='mse', metric='mse')
        with pytest.raises(InvalidParameterError):
            model.fit(regression_data, batch_size=0)
        with pytest.raises(InvalidParameterError):
            model.fit(regression_data, epochs=0)
        with pytest.raises(InvalidParameterError):
            model.fit(regression_data, lr_schedule='cosine')

    def test_feature_mismatch_detected_before_training(self, rng):
        model = small_model().build()
        model.compile(optimizer='sgd', loss='mse', metric='mse')
        before = model.weights
        with pytest.raises(ShapeMismatchError):
            model.fit(Dataset(rng.normal(size=(4, 5)), rng.normal(size=(4, 2))))
        np.testing.assert_array_equal(model.weights['dense_1']['dense_1_kernel'],
                                      before['dense_1']['dense_1_kernel'])

    def test_early_stopping(self, regression_data):
        model = Sequential.of(Input(3), Dense(2, activation='linear'), seed=0, dtype='float64').build()
        # a zero-size step never improves the monitored loss
        model.compile(optimizer=SGD(lr=1e-300), loss='mse', metric='mse')
        history = model.fit(regression_data, epochs=20, batch_size=10, early_stopping=True,
                            patience=2, verbose=False)
        assert len(history) == 3

    def test_plateau_reduces_learning_rate(self, regression_data):
        model = Sequential.of(Input(3), Dense(2, activation='linear'), seed=0, dtype='float64').build()
        model.compile(optimizer=SGD(lr=1e-300), loss='mse', metric='mse')
        model.fit(regression_data, epochs=4, batch_size=10, lr_schedule='plateau', lr_patience=1,
                  lr_factor=0.5, lr_min=0.0, verbose=False)
        assert model.optimizer.lr < 1e-300


class TestEvaluate:
    def test_batch_weighted_average(self, rng):
        model = Sequential.of(Input(1), Dense(1, activation='linear', kernel_initializer=Constant(1.0)),
                              dtype='float64').build()
        model.compile(optimizer='sgd', loss='mae', metric='mae')
        x = np.array([[0.0], [0.0], [0.0], [0.0], [0.0]])
        y = np.array([[1.0], [1.0], [1.0], [1.0], [6.0]])
        result = model.evaluate(Dataset(x, y), batch_size=4)
        # batches of 4 (mae 1) and 1 (mae 6): (4 * 1 + 1 * 6) / 5
        assert result.loss == pytest.approx(2.0)
        assert result.metrics['mae'] == pytest.approx(2.0)
        assert result.num_batches == 2

    def test_does_not_change_weights(self, regression_data):
        model = small_model().build()
        model.compile(optimizer='sgd', loss='mse', metric='mse')
        before = model.weights
        model.evaluate(regression_data)
        np.testing.assert_array_equal(model.weights['dense_2']['dense_2_kernel'],
                                      before['dense_2']['dense_2_kernel'])


class TestPredict:
    def test_single_sample_and_batches(self, rng):
        model = small_model().build()
        x = rng.normal(size=(7, 3))
        full = model.predict(x)
        assert full.shape == (7, 2)
        np.testing.assert_allclose(model.predict(x, batch_size=3), full)
        np.testing.assert_allclose(model.predict(x[0]), full[0])

    def test_classes(self):
        model = Sequential.of(Input(3), Dense(3, activation='linear', kernel_initializer=Constant(0.0)),
                              dtype='float64').build()
        model.load_weights({'dense_1': {'dense_1_kernel': np.eye(3), 'dense_1_bias': np.zeros(3)}})
        x = np.array([[0.1, 0.9, 0.3], [2.0, -1.0, 0.0], [0.0, 0.0, 5.0]])
        np.testing.assert_array_equal(model.predict_classes(x), [1, 0, 2])
        np.testing.assert_array_equal(model.predict_classes(x, batch_size=2), [1, 0, 2])
        assert model.predict_classes(x[2]) == 2
        assert isinstance(model.predict_classes(x[2]), int)

    def test_classes_with_activations(self):
        model = small_model().build()
        x = np.array([0.5, -0.2, 1.0])
        prediction, activations = model.predict_and_get_activations(x, classes=True)
        assert prediction == int(np.argmax(model.predict(x)))
        assert activations['dense_2'].shape == (2,)

    def test_wrong_features(self):
        model = small_model().build()
        with pytest.raises(ShapeMismatchError):
            model.predict(np.zeros((2, 4)))

    def test_activations_for_every_layer(self, rng):
        model = small_model().build()
        x = rng.normal(size=(2, 3))
        out, activations = model.predict_and_get_activations(x)
        assert list(activations) == ['dense_1', 'dense_2']
        assert activations['dense_1'].shape == (2, 4)
        np.testing.assert_allclose(activations['dense_2'], out)

    def test_convolutional_stack(self, rng):
        model = Sequential.of(
            Input(8, 8, 1),
            Conv2D(filters=4, kernel_size=3),
            MaxPool2D(),
            Flatten(),
            Dense(3, activation='linear'),
            seed=0,
        ).build()
        assert [layer.name for layer in model.layers] == [
            'input_1', 'conv2d_1', 'max_pool2d_1', 'flatten_1', 'dense_1'
        ]
        out = model.predict(rng.normal(size=(2, 8, 8, 1)))
        assert out.shape == (2, 3)
        assert out.dtype == np.float32


class TestFunctional:
    def test_residual_graph_gradients_sum(self, rng):
        inputs = Input(3)
        hidden = Dense(3, activation='tanh')(inputs)
        merged = Add()(inputs, hidden)
        output = Dense(1, activation='linear')(merged)
        model = Functional.from_output(output, seed=0, dtype='float64').build()
        assert model.layers[0] is inputs
        assert model.output_layer is output

        model.compile(optimizer=SGD(lr=0.05), loss='mse', metric='mse')
        x = rng.normal(size=(32, 3))
        y = x.sum(axis=1, keepdims=True)
        history = model.fit(Dataset(x, y), epochs=30, batch_size=8, verbose=False)
        assert history['loss'][-1] < history['loss'][0]

    def test_of_sorts_layers(self):
        inputs = Input(4)
        left = Dense(2)(inputs)
        right = Dense(3)(inputs)
        joined = Concatenate()(left, right)
        model = Functional.of(inputs, joined, right, left).build()
        assert model.output_layer is joined
        assert joined.output_shape == (None, 5)

    def test_two_outputs_rejected(self):
        inputs = Input(4)
        Dense(2)(inputs)
        other = Dense(3)(inputs)
        with pytest.raises(ValueError):
            Functional.of(inputs, other, Dense(1)(inputs))

    def test_disconnected_layer_rejected(self):
        with pytest.raises(ValueError):
            Functional.of(Input(4), Dense(2))
