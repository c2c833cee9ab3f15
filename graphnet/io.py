"""HDF5 export and import of model weights.

File layout: one group per layer, one dataset per variable, e.g.
``/dense_1/dense_1_kernel``.
"""
from __future__ import annotations
from typing import Dict, Mapping

import h5py
import numpy as np

WeightMap = Dict[str, Dict[str, np.ndarray]]


def save_weights_hdf5(path: str, weights: Mapping[str, Mapping[str, np.ndarray]]) -> None:
    with h5py.File(path, 'w') as f:
        for layer_name, variables in weights.items():
            group = f.create_group(layer_name)
            for name, value in variables.items():
                group.create_dataset(name, data=value)


def load_weights_hdf5(path: str) -> WeightMap:
    with h5py.File(path, 'r') as f:
        return {layer_name: {name: group[name][()] for name in group.keys()}
                for layer_name, group in f.items()}
