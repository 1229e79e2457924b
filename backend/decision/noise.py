"""
Seeded 1-D gradient (Perlin) noise.

Smooth in ``x`` with values in ``[-1, 1]``; the same seed always yields the
same field.
"""
import math

import numpy as np

TABLE_SIZE = 256


def _fade(t: float) -> float:
    return t * t * t * (t * (t * 6 - 15) + 10)


class PerlinNoise1D:
    def __init__(self, seed: int):
        rng = np.random.default_rng(seed)
        perm = rng.permutation(TABLE_SIZE)
        self._perm = np.concatenate([perm, perm])
        self._gradients = rng.uniform(-1.0, 1.0, TABLE_SIZE)

    def _gradient(self, lattice: int) -> float:
        return float(self._gradients[self._perm[lattice & (TABLE_SIZE - 1)]])

    def __call__(self, x: float) -> float:
        x0 = math.floor(x)
        t = x - x0
        d0 = self._gradient(x0) * t
        d1 = self._gradient(x0 + 1) * (t - 1.0)
        # Raw 1-D Perlin lies in [-0.5, 0.5]
        value = 2.0 * (d0 + _fade(t) * (d1 - d0))
        return max(-1.0, min(1.0, value))
