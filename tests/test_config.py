import os

import numpy as np
import pytest

import graphnet
from graphnet.config import load_settings, resolve_dtype
from graphnet.errors import InvalidParameterError


class TestSettings:
    def test_defaults(self):
        settings = load_settings({})
        assert settings.floatx == 'float32'
        assert settings.dtype == np.float32
        assert settings.progress

    def test_environment_overrides(self):
        settings = load_settings({
            'GRAPHNET_FLOATX': 'float64',
            'GRAPHNET_DISABLE_PROGRESS': 'true',
        })
        assert settings.dtype == np.float64
        assert not settings.progress

    def test_unsupported_floatx(self):
        with pytest.raises(InvalidParameterError):
            load_settings({'GRAPHNET_FLOATX': 'int8'})


class TestResolveDtype:
    def test_default_follows_environment(self, monkeypatch):
        monkeypatch.setenv('GRAPHNET_FLOATX', 'float64')
        assert resolve_dtype() == np.float64

    def test_explicit(self):
        assert resolve_dtype('float16') == np.float16

    def test_integer_rejected(self):
        with pytest.raises(InvalidParameterError):
            resolve_dtype('int32')


class TestAutoThreads:
    def test_fills_unset_thread_counts(self, monkeypatch):
        monkeypatch.delenv('GRAPHNET_DISABLE_AUTO_THREADS', raising=False)
        monkeypatch.setenv('OMP_NUM_THREADS', '1')
        monkeypatch.delenv('OMP_NUM_THREADS')
        monkeypatch.setenv('MKL_NUM_THREADS', '3')
        graphnet._auto_configure_threads()
        assert os.environ['OMP_NUM_THREADS'] == str(os.cpu_count() or 1)
        assert os.environ['MKL_NUM_THREADS'] == '3'

    def test_disabled_by_environment(self, monkeypatch):
        monkeypatch.setenv('GRAPHNET_DISABLE_AUTO_THREADS', '1')
        monkeypatch.setenv('OMP_NUM_THREADS', '1')
        monkeypatch.delenv('OMP_NUM_THREADS')
        graphnet._auto_configure_threads()
        assert 'OMP_NUM_THREADS' not in os.environ
