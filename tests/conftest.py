from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure `import macau...` works when pytest uses importlib import mode.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(0)


@pytest.fixture
def spd() -> np.ndarray:
    """A small, well-conditioned precision matrix."""
    return np.array([[2.0, 0.5],
                     [0.5, 1.0]])


@pytest.fixture
def low_rank_ratings() -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """(R, U_true, V_true): 40 x 30 rank-2 ratings, half observed, NaN elsewhere."""
    gen = np.random.default_rng(123)
    U = gen.normal(size=(2, 40))
    V = gen.normal(size=(2, 30))
    R = U.T @ V + 3.0 + 0.1 * gen.standard_normal((40, 30))
    R[gen.random((40, 30)) < 0.5] = np.nan
    return R, U, V
