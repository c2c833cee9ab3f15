import math

import numpy as np
import pytest

from graphnet import initializers
from graphnet.errors import InvalidParameterError


class TestDeterminism:
    @pytest.mark.parametrize("name", sorted(initializers.NAME2INITIALIZER))
    def test_same_seed_same_values(self, name):
        init = initializers.get(name)
        a = init.initialize(6, 6, (6, 6), seed=42)
        b = init.initialize(6, 6, (6, 6), seed=42)
        np.testing.assert_array_equal(a, b)
        assert a.shape == (6, 6)

    def test_call_seed_overrides_constructor_seed(self):
        init = initializers.RandomNormal(seed=1)
        np.testing.assert_array_equal(init(3, 3, (3, 3), seed=5),
                                      initializers.RandomNormal(seed=5)(3, 3, (3, 3)))

    def test_dtype(self):
        out = initializers.GlorotUniform(seed=0).initialize(4, 4, (4, 4), dtype=np.float64)
        assert out.dtype == np.float64


class TestConstants:
    def test_zeros_ones_constant(self):
        assert not initializers.Zeros()(2, 2, (2, 2)).any()
        assert (initializers.Ones()(2, 2, (2, 2)) == 1).all()
        assert (initializers.Constant(0.5)(2, 2, (3,)) == 0.5).all()

    def test_identity(self):
        np.testing.assert_array_equal(initializers.Identity(2.0)(3, 3, (3, 3)), 2.0 * np.eye(3))
        with pytest.raises(InvalidParameterError):
            initializers.Identity()(3, 3, (3, 3, 3))


class TestTruncatedNormal:
    def test_values_within_two_stddev(self):
        out = initializers.TruncatedNormal(mean=1.0, stddev=0.5, seed=0)(100, 100, (100, 100))
        assert out.min() >= 0.0 and out.max() <= 2.0

    def test_parametrized_bounds(self):
        init = initializers.ParametrizedTruncatedNormal(mean=0.0, stddev=1.0, p1=-0.5, p2=1.5, seed=3)
        out = init(50, 50, (50, 50))
        assert init.bounds == (-0.5, 1.5)
        assert out.min() >= -0.5 and out.max() <= 1.5

    def test_p1_not_below_p2_rejected(self):
        with pytest.raises(InvalidParameterError):
            initializers.ParametrizedTruncatedNormal(p1=1.0, p2=1.0)
        with pytest.raises(InvalidParameterError):
            initializers.ParametrizedTruncatedNormal(p1=2.0, p2=1.0)

    def test_helper_gives_up_after_max_attempts(self):
        rng = np.random.default_rng(0)
        with pytest.raises(InvalidParameterError):
            initializers.truncated_normal(rng, 0.0, 1.0, 50.0, 51.0, (10,), max_attempts=3)


class TestVarianceScaling:
    def test_he_uniform_limit(self):
        out = initializers.HeUniform(seed=0)(fan_in=50, fan_out=10, shape=(50, 10), dtype=np.float64)
        assert np.abs(out).max() <= math.sqrt(6.0 / 50)

    def test_glorot_uniform_limit(self):
        out = initializers.GlorotUniform(seed=0)(fan_in=30, fan_out=10, shape=(30, 10), dtype=np.float64)
        assert np.abs(out).max() <= math.sqrt(6.0 / 40)

    def test_he_normal_is_truncated(self):
        stddev = math.sqrt(2.0 / 64) / 0.87962566103423978
        out = initializers.HeNormal(seed=0)(fan_in=64, fan_out=8, shape=(64, 64), dtype=np.float64)
        assert np.abs(out).max() <= 2 * stddev

    def test_invalid_mode(self):
        with pytest.raises(InvalidParameterError):
            initializers.VarianceScaling(mode='fan_sum')

    def test_unknown_name(self):
        with pytest.raises(InvalidParameterError):
            initializers.get('orthogonal_ish')
