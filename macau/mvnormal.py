"""
Random draws used by the Gibbs sampler.

All functions take an explicit `np.random.Generator` so that a fixed seed
reproduces a whole sampling run.

## Public API:

- `mvnormal_prec(...)`       — draws from N(0, Lambda^-1) given Lambda
- `wishart(...)`             — Wishart draw with given scale and df
- `normal_wishart(...)`      — joint (mu, Lambda) draw from a Normal-Wishart
- `cond_normal_wishart(...)` — Normal-Wishart posterior given samples
"""

from __future__ import annotations

from typing import Tuple

import numpy as np
from scipy import stats

from macau.helpers import cholesky_lower, cholesky_solve, solve_upper


def mvnormal_prec(
    rng: np.random.Generator,
    Lambda: np.ndarray,
    count: int
) -> np.ndarray:
    """
    Draw `count` independent vectors from N(0, Lambda^-1).

    With Lambda = L L^T, x = L^-T z has covariance L^-T L^-1 = Lambda^-1.

    Args:
        rng: Random generator.
        Lambda: Precision matrix (k x k), SPD.
        count: Number of draws.

    Returns:
        (k x count) matrix, one draw per column.

    Raises:
        NumericalDegeneracy: If Lambda is not positive definite.
    """
    L = cholesky_lower(Lambda)
    z = rng.standard_normal((Lambda.shape[0], count))
    return solve_upper(L, z)


def wishart(
    rng: np.random.Generator,
    scale: np.ndarray,
    df: float
) -> np.ndarray:
    """Draw from Wishart(scale, df); df must exceed k - 1."""
    W = stats.wishart.rvs(df=df, scale=scale, random_state=rng)
    return np.atleast_2d(W)


def normal_wishart(
    rng: np.random.Generator,
    mu: np.ndarray,
    kappa: float,
    T: np.ndarray,
    nu: float
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Draw (mu, Lambda) from a Normal-Wishart distribution.

        Lambda ~ Wishart(T, nu)
        mu     ~ N(mu, (kappa * Lambda)^-1)

    Args:
        rng: Random generator.
        mu: Location (k,).
        kappa: Pseudo-count scaling the precision of the mean.
        T: Wishart scale matrix (k x k).
        nu: Wishart degrees of freedom.

    Returns:
        Tuple (mu_draw, Lambda_draw).
    """
    Lambda = wishart(rng, T, nu)
    mu_draw = mu + mvnormal_prec(rng, kappa * Lambda, 1)[:, 0]
    return mu_draw, Lambda


def cond_normal_wishart(
    rng: np.random.Generator,
    U: np.ndarray,
    mu0: np.ndarray,
    b0: float,
    WI: np.ndarray,
    df: float
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Sample (mu, Lambda) from the Normal-Wishart posterior given samples U.

    With N columns in U, column mean Ubar and scatter
    S = sum_i (u_i - Ubar)(u_i - Ubar)^T:

        mu_c   = (b0 * mu0 + N * Ubar) / (b0 + N)
        b_c    = b0 + N
        T_c    = (WI + S + b0 * N / (b0 + N) * (mu0 - Ubar)(mu0 - Ubar)^T)^-1
        nu_c   = df + N

    Args:
        rng: Random generator.
        U: Samples, one per column (k x N). N must be positive.
        mu0: Prior mean (k,).
        b0: Prior pseudo-count.
        WI: Inverse of the prior Wishart scale (k x k).
        df: Prior degrees of freedom.

    Returns:
        Tuple (mu, Lambda) drawn from the posterior.
    """
    k, N = U.shape
    Ubar = U.mean(axis=1)
    C = U - Ubar[:, None]
    S = C @ C.T

    mu_c = (b0 * mu0 + N * Ubar) / (b0 + N)
    b_c = b0 + N
    mu_m = mu0 - Ubar
    b_m = (b0 * N) / (b0 + N)

    X = WI + S + b_m * np.outer(mu_m, mu_m)
    T_c = cholesky_solve(X, np.eye(k))
    T_c = (T_c + T_c.T) / 2

    return normal_wishart(rng, mu_c, b_c, T_c, df + N)
