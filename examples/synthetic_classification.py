"""Synthetic Classification Script

Train a small dense network on three Gaussian blobs, then inspect weights
and intermediate activations.

Classes: 3
Samples: 3,000 (95% train / 5% validation split, separate test set)
"""
import logging
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import numpy as np
from graphnet import Dataset, Dense, Input, Sequential


def make_blobs(n: int, seed: int):
    rng = np.random.default_rng(seed)
    centers = np.array([[0.0, 3.0], [3.0, -2.0], [-3.0, -2.0]])
    labels = rng.integers(0, len(centers), size=n)
    x = centers[labels] + rng.normal(scale=0.8, size=(n, 2))
    return Dataset(x.astype(np.float32), labels)


def main():
    logging.basicConfig(level=logging.INFO, format='%(levelname)s %(name)s: %(message)s')

    train_full, test = make_blobs(3000, seed=0), make_blobs(500, seed=1)
    train, val = train_full.split(0.95, shuffle=True, seed=0)
    print(f"Training: {len(train)} samples")
    print(f"Validation: {len(val)} samples")
    print(f"Test: {len(test)} samples")
    print()

    with Sequential.of(
        Input(2),
        Dense(32, activation='relu'),
        Dense(16, activation='relu'),
        Dense(3, activation='linear'),
        seed=42,
    ) as model:
        model.build()
        model.summary()
        model.compile(optimizer='adam', loss='softmax_cross_entropy_with_logits', metric='accuracy',
                      lr=0.01)

        history = model.fit(
            train,
            epochs=10,
            batch_size=64,
            validation_dataset=val,
            shuffle=True,
            seed=0,
            early_stopping=True,
            patience=3,
            lr_schedule='plateau',
        )
        print(f"Final train accuracy: {history['accuracy'][-1]:.4f}")

        result = model.evaluate(test, batch_size=128)
        print(f"Test loss: {result.loss:.4f}")
        print(f"Test accuracy: {result.metrics['accuracy']:.4f}")

        hidden = model.layers[1]
        kernel = model.weights[hidden.name][f"{hidden.name}_kernel"]
        print(f"First hidden kernel {kernel.shape}, mean |w| = {np.abs(kernel).mean():.4f}")

        prediction, activations = model.predict_and_get_activations(test.get_x(0), classes=True)
        print(f"First test sample: predicted class {prediction}, label {test.get_y(0)}")
        for name, value in activations.items():
            print(f"  {name}: {np.round(value, 3)}")

        model.export_weights(os.path.join(os.path.dirname(os.path.abspath(__file__)), 'blobs_weights.h5'))


if __name__ == '__main__':
    main()
