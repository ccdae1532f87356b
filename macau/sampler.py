"""
Conditional Gibbs update of latent factor columns.

For entity n with observations (j, r_nj) and counterpart factors s_j:

    P      = Lambda + alpha * sum_j s_j s_j^T
    b      = Lambda @ mu + alpha * sum_j (r_nj - mean_value) * s_j
    u_n    ~ N(P^-1 b, P^-1)

With P = L L^T the draw is u_n = L^-T (L^-1 b + z), z ~ N(0, I).

Observations for entity n live in column n of a CSC matrix whose row indices
point at columns of the counterpart factor matrix `samples`. Each update
reads `samples` and writes only column n of `U`, which is what makes the
per-entity loop in `sample_latents` safe to run in worker threads.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import scipy.sparse as sp

from macau.errors import NumericalDegeneracy
from macau.helpers import cholesky_lower, solve_lower, solve_upper

logger = logging.getLogger(__name__)


def observed_entries(
    n: int,
    mat: sp.csc_matrix,
    samples: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    """Counterpart factors (k x n_obs) and values (n_obs,) of column n."""
    start, end = mat.indptr[n], mat.indptr[n + 1]
    return samples[:, mat.indices[start:end]], mat.data[start:end]


def posterior_precision(
    cols: np.ndarray,
    alpha: float,
    Lambda: np.ndarray
) -> np.ndarray:
    """
    Accumulate Lambda + alpha * cols @ cols.T.

    Only the lower triangle is accumulated; the upper triangle keeps
    whatever `Lambda` had there and is not valid until factorization.

    Args:
        cols: Counterpart factors of the observed entries (k x n_obs).
        alpha: Observation precision.
        Lambda: Prior precision (k x k).

    Returns:
        Accumulated precision matrix (k x k).
    """
    MM = np.array(Lambda, dtype=float, copy=True)
    lower = np.tril_indices_from(MM)
    MM[lower] += alpha * (cols @ cols.T)[lower]
    return MM


def sample_latent(
    U: np.ndarray,
    n: int,
    mat: sp.csc_matrix,
    mean_value: float,
    samples: np.ndarray,
    alpha: float,
    mu: np.ndarray,
    Lambda: np.ndarray,
    noise: np.ndarray | None = None,
    rng: np.random.Generator | None = None
) -> np.ndarray:
    """
    Draw a new latent vector for entity n and store it in U[:, n].

    Args:
        U: Latent matrix being sampled (k x N); only column n is written.
        n: Entity index.
        mat: Observations (N_counterpart x N), CSC; column n holds the
             entries of entity n.
        mean_value: Global mean subtracted from every observed value.
        samples: Counterpart factors (k x N_counterpart).
        alpha: Observation precision (> 0).
        mu: Prior mean for this entity (k,).
        Lambda: Prior precision (k x k), SPD.
        noise: Standard normal perturbation (k,). Drawn from `rng` if None;
               pass zeros to get the posterior mean.
        rng: Random generator used when `noise` is None.

    Returns:
        The new column (also written into U).

    Raises:
        NumericalDegeneracy: If the posterior precision is not positive
            definite. U is left untouched in that case.
    """
    num_latent = U.shape[0]
    cols, values = observed_entries(n, mat, samples)

    MM = posterior_precision(cols, alpha, Lambda)
    rr = cols @ ((values - mean_value) * alpha)

    L = cholesky_lower(MM)

    rr = rr + Lambda @ mu
    rr = solve_lower(L, rr)
    if noise is None:
        if rng is None:
            rng = np.random.default_rng()
        noise = rng.standard_normal(num_latent)
    rr = rr + noise
    rr = solve_upper(L, rr)

    U[:, n] = rr
    return rr


def sample_latents(
    U: np.ndarray,
    mat: sp.csc_matrix,
    mean_value: float,
    samples: np.ndarray,
    alpha: float,
    mu: np.ndarray,
    Lambda: np.ndarray,
    rng: np.random.Generator,
    offsets: np.ndarray | None = None,
    n_workers: int = 1
) -> np.ndarray:
    """
    Resample every column of U in place.

    Perturbations for all columns are drawn up front from `rng`, so the
    result for a fixed seed does not depend on `n_workers`. Columns are split
    into disjoint contiguous blocks, one block per worker.

    Args:
        U: Latent matrix (k x N), updated in place. Must not be resized
           while this runs.
        mat: Observations (N_counterpart x N), CSC.
        mean_value: Global mean of the observations.
        samples: Counterpart factors (k x N_counterpart), read-only.
        alpha: Observation precision.
        mu: Prior mean (k,).
        Lambda: Prior precision (k x k).
        rng: Random generator.
        offsets: Optional per-entity prior mean offsets (k x N), added to mu.
        n_workers: Number of worker threads (1 runs in the caller's thread).

    Returns:
        U.

    Raises:
        NumericalDegeneracy: On the first column whose posterior precision
            is not positive definite. Remaining blocks stop early.
    """
    num_latent, N = U.shape
    if mat.shape[1] != N:
        raise ValueError(f"Observation matrix has {mat.shape[1]} columns; "
                         f"expected {N}.")
    noise = rng.standard_normal((num_latent, N))
    abort = threading.Event()

    def _sample_block(block: np.ndarray) -> None:
        for n in block:
            if abort.is_set():
                return
            mu_n = mu if offsets is None else mu + offsets[:, n]
            try:
                sample_latent(U, n, mat, mean_value, samples, alpha,
                              mu_n, Lambda, noise=noise[:, n])
            except NumericalDegeneracy:
                abort.set()
                logger.error(f"Posterior precision of column {n} is not "
                             f"positive definite.")
                raise

    if n_workers <= 1 or N < 2:
        _sample_block(np.arange(N))
        return U

    blocks = [b for b in np.array_split(np.arange(N), n_workers) if b.size]
    with ThreadPoolExecutor(max_workers=len(blocks)) as pool:
        futures = [pool.submit(_sample_block, b) for b in blocks]
        for fut in futures:
            fut.result()

    return U
