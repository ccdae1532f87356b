"""
Entrywise train/test hold-out over the observed entries of a ratings matrix.

## Public API:

- `make_test_split(...)`     — hold out a fraction of observed entries
- `matrix_from_indices(...)` — NaN matrix filled at given flat indices

## Typical usage:

```python
import numpy as np
from macau.splits import make_test_split

R = np.load("data/ratings.npy")     # NaN = missing
R_train, R_test, test_idx = make_test_split(R, test_fraction=0.2, seed=42)
```
"""

from __future__ import annotations

from typing import Tuple

import numpy as np


def matrix_from_indices(
    shape: Tuple[int, int],
    flat_idx: np.ndarray,
    flat_vals: np.ndarray
) -> np.ndarray:
    """
    Build a matrix of given shape from flat indices and values.

    Args:
        shape: Desired shape of the output matrix.
        flat_idx: 1D array of flat indices into the matrix.
        flat_vals: 1D array of values corresponding to flat_idx.

    Returns:
        Matrix of given shape with values at specified indices and NaN elsewhere.
    """
    M = np.full(shape[0] * shape[1], np.nan, dtype=float)
    M[flat_idx] = flat_vals
    return M.reshape(shape)


def make_test_split(
    R: np.ndarray,
    test_fraction: float = 0.2,
    seed: int = 42
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Hold out a random fraction of the observed entries of R.

    Args:
        R: (m x n) rating matrix with NaN for missing entries.
        test_fraction: Fraction of observed entries moved to the test matrix,
                       in (0, 1).
        seed: Random seed for shuffling.

    Returns:
        Tuple of (R_train, R_test, test_idx) where:
            R_train: Training rating matrix (NaN elsewhere).
            R_test: Test rating matrix (NaN elsewhere).
            test_idx: Sorted flat indices of the held-out entries.
    """
    if not 0.0 < test_fraction < 1.0:
        raise ValueError(f"test_fraction must be in (0, 1), got {test_fraction}.")

    rng = np.random.default_rng(seed)

    obs = np.flatnonzero(~np.isnan(R))
    rng.shuffle(obs)

    n_test = int(round(test_fraction * obs.size))
    test_idx = np.sort(obs[:n_test])
    train_idx = np.sort(obs[n_test:])

    R_train = matrix_from_indices(R.shape, train_idx, R.ravel()[train_idx])
    R_test = matrix_from_indices(R.shape, test_idx, R.ravel()[test_idx])

    return R_train, R_test, test_idx
