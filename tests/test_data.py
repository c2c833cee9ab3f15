import numpy as np
import pytest

from graphnet.data import Dataset
from graphnet.errors import InvalidParameterError
from graphnet.utils import one_hot


@pytest.fixture
def dataset():
    x = np.arange(10 * 3, dtype=float).reshape(10, 3)
    y = np.arange(10)
    return Dataset(x, y)


class TestDataset:
    def test_length_mismatch(self):
        with pytest.raises(InvalidParameterError):
            Dataset(np.zeros((3, 2)), np.zeros(4))

    def test_accessors(self, dataset):
        assert len(dataset) == 10
        np.testing.assert_array_equal(dataset.get_x(2), [6, 7, 8])
        assert dataset.get_y(2) == 2

    def test_split(self, dataset):
        train, test = dataset.split(0.7)
        assert (len(train), len(test)) == (7, 3)
        np.testing.assert_array_equal(test.y, [7, 8, 9])

    def test_split_shuffled_is_a_partition(self, dataset):
        train, test = dataset.split(0.5, shuffle=True, seed=3)
        assert sorted(np.concatenate([train.y, test.y]).tolist()) == list(range(10))

    @pytest.mark.parametrize("fraction", [0.0, 1.0, 1.5])
    def test_split_fraction_bounds(self, dataset, fraction):
        with pytest.raises(InvalidParameterError):
            dataset.split(fraction)


class TestBatches:
    @pytest.mark.parametrize("batch_size, expected", [(1, 10), (3, 4), (5, 2), (10, 1), (32, 1)])
    def test_batch_count(self, dataset, batch_size, expected):
        batches = list(dataset.batches(batch_size))
        assert len(batches) == expected == dataset.num_batches(batch_size)

    def test_partial_last_batch_kept_in_order(self, dataset):
        batches = list(dataset.batches(4, num_threads=2))
        assert [len(yb) for _, yb in batches] == [4, 4, 2]
        np.testing.assert_array_equal(np.concatenate([yb for _, yb in batches]), np.arange(10))

    def test_shuffle_with_seed_is_reproducible(self, dataset):
        first = np.concatenate([yb for _, yb in dataset.batches(3, shuffle=True, seed=5)])
        second = np.concatenate([yb for _, yb in dataset.batches(3, shuffle=True, seed=5)])
        np.testing.assert_array_equal(first, second)
        assert sorted(first.tolist()) == list(range(10))

    def test_preprocess_applied(self, dataset):
        xb, _ = next(dataset.batches(2, preprocess=lambda x: x * 0))
        assert not xb.any()

    @pytest.mark.parametrize("batch_size", [0, -1, 2.5])
    def test_invalid_batch_size(self, dataset, batch_size):
        with pytest.raises(InvalidParameterError):
            list(dataset.batches(batch_size))


class TestOneHot:
    def test_rows(self):
        np.testing.assert_array_equal(one_hot(np.array([2, 0]), 3), [[0, 0, 1], [1, 0, 0]])
