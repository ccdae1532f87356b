"""
Side-information preparation.

Features are regressed onto the latent factors by the Macau prior, so their
scale directly sets how strongly the ridge penalty lambda_beta bites.
This module standardizes a feature matrix before it reaches the prior. It
supports optional median imputation; without it, NaN/Inf raises an error.
Constant columns and empty rows are clipped with a small epsilon.

## Public API:

- normalize_feature(...) : normalize one (n_entities x d) matrix.

## Typical usage

```
import numpy as np
from macau.features import normalize_feature

genres = np.array([[1, 0, 0],
                   [0, 1, 0],
                   [1, 0, 1]], dtype=float)
years  = np.array([1995, 2002, 2010], dtype=float)

G = normalize_feature(genres, method="row_l2")
Y = normalize_feature(years,  method="col_zscore", impute="col_median")
```
"""

from __future__ import annotations

import numpy as np
import scipy.sparse as sp

DEFAULT_EPS = 1e-8

DENSE_METHODS = {"none", "row_l1", "row_l2", "col_zscore", "col_minmax"}
SPARSE_METHODS = {"none", "row_l1", "row_l2"}


def _as_2d(X: np.ndarray) -> np.ndarray:
    """Ensure shape (n_entities, d)."""
    if X.ndim == 1:
        return X.reshape(-1, 1)
    return X


def _impute_col_median_inplace(X: np.ndarray) -> None:
    """In-place column-median imputation for NaN/Inf values."""
    X[~np.isfinite(X)] = np.nan
    if not np.isnan(X).any():
        return
    med = np.nanmedian(X, axis=0)
    # all-NaN columns fall back to zeros
    med = np.where(np.isfinite(med), med, 0.0)
    nan_rows, nan_cols = np.where(np.isnan(X))
    X[nan_rows, nan_cols] = med[nan_cols]


def _row_scale(X: np.ndarray | sp.spmatrix, norms: np.ndarray, eps: float):
    """Divide each row of X by max(norm, eps)."""
    inv = 1.0 / np.maximum(np.asarray(norms).ravel(), eps)
    if sp.issparse(X):
        return sp.csr_matrix(sp.diags(inv) @ X)
    return X * inv[:, None]


def _row_l1(X, eps: float):
    return _row_scale(X, abs(X).sum(axis=1), eps)


def _row_l2(X, eps: float):
    if sp.issparse(X):
        return _row_scale(X, np.sqrt(X.multiply(X).sum(axis=1)), eps)
    return _row_scale(X, np.sqrt(np.sum(X * X, axis=1)), eps)


def _col_zscore(X: np.ndarray, eps: float) -> np.ndarray:
    mu = np.mean(X, axis=0, keepdims=True)
    sd = np.std(X, axis=0, keepdims=True)
    sd = np.where(sd < eps, 1.0, sd)
    return (X - mu) / sd


def _col_minmax(X: np.ndarray, eps: float) -> np.ndarray:
    """Column-wise min-max normalization to [0, 1]."""
    mn = np.min(X, axis=0, keepdims=True)
    mx = np.max(X, axis=0, keepdims=True)
    return (X - mn) / np.maximum(mx - mn, eps)


def normalize_feature(
    X: np.ndarray | sp.spmatrix,
    method: str = "none",
    *,
    impute: str = "none",
    eps: float = DEFAULT_EPS,
) -> np.ndarray | sp.csr_matrix:
    """
    Normalize a side-information matrix with optional median imputation.

    Args:
        X : Feature matrix with one row per entity. Dense (n,) or (n, d),
            or a scipy.sparse matrix.
        method:
            - "none"       : return X after optional imputation
            - "row_l1"     : make each row L1-normalized (sum = 1)
            - "row_l2"     : make each row L2-normalized (norm = 1)
            - "col_zscore" : z-score each column (dense only)
            - "col_minmax" : scale each column to [0, 1] (dense only)
        impute:
            - "none"       : do not impute; NaN/Inf raises ValueError
            - "col_median" : replace NaN/Inf by column medians (dense only)
        eps: Numerical stability constant (avoids division by zero).

    Returns:
        Normalized float64 matrix (CSR if X was sparse). X is not modified.
    """
    if method not in DENSE_METHODS:
        raise ValueError(f"Unknown method '{method}'.")
    if impute not in {"none", "col_median"}:
        raise ValueError(f"Unknown impute '{impute}'.")

    if sp.issparse(X):
        if method not in SPARSE_METHODS or impute != "none":
            raise ValueError(f"method='{method}', impute='{impute}' would "
                             f"densify a sparse feature matrix.")
        X = sp.csr_matrix(X, dtype=float, copy=True)
        if not np.isfinite(X.data).all():
            raise ValueError("Input feature contains NaN/Inf.")
        if method == "none":
            return X
        return _row_l1(X, eps) if method == "row_l1" else _row_l2(X, eps)

    X = _as_2d(np.array(X, dtype=float, copy=True))
    if impute == "col_median":
        _impute_col_median_inplace(X)
    elif not np.isfinite(X).all():
        raise ValueError("Input feature contains NaN/Inf and impute='none'.")

    if method == "row_l1":
        return _row_l1(X, eps)
    if method == "row_l2":
        return _row_l2(X, eps)
    if method == "col_zscore":
        return _col_zscore(X, eps)
    if method == "col_minmax":
        return _col_minmax(X, eps)
    return X
