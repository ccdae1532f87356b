"""
Dense linear algebra and data helpers shared by the sampler modules.

## Public API:

- `cholesky_lower(...)`  — lower Cholesky factor, raises NumericalDegeneracy
- `solve_lower(...)`     — solve L x = b for lower-triangular L
- `solve_upper(...)`     — solve L^T x = b for the same factor L
- `cholesky_solve(...)`  — solve A x = b for SPD A
- `to_sparse(...)`       — NaN-masked dense matrix -> scipy.sparse COO
- `compute_rmse(...)`    — RMSE over observed (non-NaN) entries
- `read_data(...)`       — load a `.npy` array
"""

from __future__ import annotations

import numpy as np
import scipy.sparse as sp
from scipy.linalg import LinAlgError, cho_factor, cho_solve, solve_triangular

from macau.errors import NumericalDegeneracy


def cholesky_lower(A: np.ndarray) -> np.ndarray:
    """Lower Cholesky factor of a symmetric positive definite matrix.

    Only the lower triangle of `A` is read.

    Args:
        A: Symmetric positive definite matrix (k x k).

    Returns:
        Lower-triangular L with A = L @ L.T (upper triangle zeroed).

    Raises:
        NumericalDegeneracy: If A is not positive definite.
    """
    try:
        L, _ = cho_factor(A, lower=True, check_finite=False)
    except LinAlgError as exc:
        raise NumericalDegeneracy(f"Cholesky decomposition failed: {exc}") from exc
    return np.tril(L)


def solve_lower(L: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Solve L x = b."""
    return solve_triangular(L, b, lower=True, check_finite=False)


def solve_upper(L: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Solve L^T x = b, where L is the lower Cholesky factor."""
    return solve_triangular(L, b, lower=True, trans="T", check_finite=False)


def cholesky_solve(A: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Solve Ax = b with Cholesky.

    Args:
        A: Symmetric positive definite matrix.
        b: Right-hand side vector or matrix.

    Returns:
        Solution x.

    Raises:
        NumericalDegeneracy: If A is not positive definite.
    """
    try:
        factor = cho_factor(A, lower=True, check_finite=False)
    except LinAlgError as exc:
        raise NumericalDegeneracy(f"Cholesky decomposition failed: {exc}") from exc
    return cho_solve(factor, b, check_finite=False)


def to_sparse(R: np.ndarray | sp.spmatrix) -> sp.coo_matrix:
    """
    Convert a ratings matrix to a sparse matrix of its observed entries.

    Args:
        R: (m x n) dense matrix with NaN for missing entries, or any
           scipy.sparse matrix (returned as COO with duplicates summed;
           explicit zeros are kept).

    Returns:
        COO matrix holding only the observed entries.
    """
    if sp.issparse(R):
        coo = sp.coo_matrix(R, dtype=float, copy=True)
        coo.sum_duplicates()
        return coo

    R = np.asarray(R, dtype=float)
    if R.ndim != 2:
        raise ValueError(f"Ratings must be a 2-D matrix, got shape {R.shape}.")
    rows, cols = np.nonzero(~np.isnan(R))
    return sp.coo_matrix((R[rows, cols], (rows, cols)), shape=R.shape)


def compute_rmse(R_true: np.ndarray, R_pred: np.ndarray) -> float:
    """
    Compute Root Mean Squared Error (RMSE) between true and predicted ratings.
    Missing entries (NaN) are ignored.

    Args:
        R_true: Ground truth ratings matrix (with NaN for missing).
        R_pred: Predicted ratings matrix.

    Returns:
        RMSE value (float).
    """
    mask = ~np.isnan(R_true)
    if not np.any(mask):
        raise ValueError("No observed ratings in R_true.")

    return float(np.sqrt(np.mean((R_true[mask] - R_pred[mask]) ** 2)))


def read_data(file_path: str) -> np.ndarray:
    """
    Load a matrix from `.npy` file.

    Args:
        file_path: Path to .npy file containing np.ndarray.

    Returns:
        Loaded array.
    """
    return np.load(file_path)
