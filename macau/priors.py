"""
Priors on latent factor columns.

Two priors share one contract used by the session:

- `state`                   : current `PriorState` (mean, precision)
- `update_prior(U)`         : redraw the hyperparameters from the latents
- `sample_latents(U, ...)`  : resample every column of U under the prior

`NormalPrior` is the plain Normal-Wishart prior (BPMF). `MacauPrior` adds
side information: the prior mean of entity n is mu + Uhat[:, n] with
Uhat = beta @ F^T, and beta is redrawn every update by Bayesian ridge
regression of the latents onto the features F.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import LinearOperator, cg

from macau.config import SideInfoConfig
from macau.errors import NumericalDegeneracy, UnimplementedConfiguration
from macau.helpers import cholesky_lower, solve_lower, solve_upper
from macau.mvnormal import cond_normal_wishart, mvnormal_prec
from macau.sampler import sample_latents

# Initial prior precision is INIT_PRECISION * I
INIT_PRECISION = 10.0
# Prior pseudo-count of the Normal-Wishart hyperprior
B0 = 2.0

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class PriorState:
    """Prior mean (k,) and precision (k x k) handed to the row sampler."""
    mean: np.ndarray
    precision: np.ndarray


@dataclass(frozen=True, eq=False)
class WishartPriorParameters:
    """Fixed Normal-Wishart hyperprior: mean, pseudo-count, inverse scale, df."""
    mu0: np.ndarray
    b0: float
    WI: np.ndarray
    df: float

    @classmethod
    def default(cls, num_latent: int) -> WishartPriorParameters:
        mu0 = np.zeros(num_latent)
        WI = np.eye(num_latent)
        mu0.setflags(write=False)
        WI.setflags(write=False)
        return cls(mu0=mu0, b0=B0, WI=WI, df=float(num_latent))


def _initial_state(num_latent: int) -> PriorState:
    return PriorState(
        mean=np.zeros(num_latent),
        precision=INIT_PRECISION * np.eye(num_latent),
    )


class NormalPrior:
    """Normal-Wishart prior shared by all columns of a latent matrix."""

    def __init__(self, num_latent: int) -> None:
        self.num_latent = int(num_latent)
        self.hyper = WishartPriorParameters.default(self.num_latent)
        self.state = _initial_state(self.num_latent)

    def update(
        self,
        U: np.ndarray,
        rng: np.random.Generator
    ) -> PriorState:
        """
        Draw a new (mean, precision) from the Normal-Wishart posterior of U.

        Args:
            U: Current latents (k x N), N > 0.
            rng: Random generator.

        Returns:
            The new PriorState (not yet published; see update_prior).
        """
        h = self.hyper
        mu, Lambda = cond_normal_wishart(rng, U, h.mu0, h.b0, h.WI, h.df)
        return PriorState(mean=mu, precision=Lambda)

    def update_prior(
        self,
        U: np.ndarray,
        rng: np.random.Generator
    ) -> PriorState:
        """Update and publish the prior state."""
        self.state = self.update(U, rng)
        return self.state

    def sample_latents(
        self,
        U: np.ndarray,
        mat: sp.csc_matrix,
        mean_value: float,
        samples: np.ndarray,
        alpha: float,
        rng: np.random.Generator,
        n_workers: int = 1
    ) -> np.ndarray:
        """Resample every column of U under the current prior state."""
        return sample_latents(U, mat, mean_value, samples, alpha,
                              self.state.mean, self.state.precision, rng,
                              n_workers=n_workers)


class MacauPrior:
    """
    Normal-Wishart prior whose mean is regressed on side information.

    Model for entity n with feature row f_n:

        u_n ~ N(mu + beta @ f_n, Lambda^-1)
        beta[d] ~ N(0, (lambda_beta * Lambda)^-1)   (columnwise, coupled)

    `Uhat = beta @ F^T` is a cache derived from `beta`; it is recomputed
    every time beta is redrawn and committed together with it.
    """

    def __init__(
        self,
        num_latent: int,
        features: np.ndarray | sp.spmatrix,
        lambda_beta: float = 5.0,
        precompute_gram: bool = True,
        cg_tol: float = 1e-6,
        cg_maxiter: int | None = None
    ) -> None:
        """
        Initialize the prior.

        Args:
            num_latent: Latent dimension k.
            features: Side information F (N x num_feat), dense or sparse.
            lambda_beta: Ridge penalty on beta (must be > 0).
            precompute_gram: Cache F^T F once and solve for beta with
                Cholesky; otherwise solve with conjugate gradients.
            cg_tol: Relative tolerance of the CG solver.
            cg_maxiter: Iteration cap of the CG solver (None = SciPy default).
        """
        self.num_latent = int(num_latent)
        self.hyper = WishartPriorParameters.default(self.num_latent)
        self.state = _initial_state(self.num_latent)

        self.F = features if sp.issparse(features) else np.asarray(features, dtype=float)
        if self.F.ndim != 2:
            raise ValueError(f"Features must be 2-D, got shape {self.F.shape}.")
        self.num_feat = self.F.shape[1]

        self.lambda_beta = float(lambda_beta)
        self.use_FtF = bool(precompute_gram)
        self.cg_tol = cg_tol
        self.cg_maxiter = cg_maxiter

        self.FtF: np.ndarray | None = None
        if self.use_FtF:
            FtF = self.F.T @ self.F
            self.FtF = FtF.toarray() if sp.issparse(FtF) else np.asarray(FtF)

        self.beta = np.zeros((self.num_latent, self.num_feat))
        self.Uhat = self.compute_uhat(self.beta)

    @classmethod
    def from_config(
        cls,
        num_latent: int,
        features: np.ndarray | sp.spmatrix,
        side: SideInfoConfig
    ) -> MacauPrior:
        return cls(num_latent, features,
                   lambda_beta=side.lambda_beta,
                   precompute_gram=side.precompute_gram,
                   cg_tol=side.cg_tol,
                   cg_maxiter=side.cg_maxiter)

    def compute_uhat(self, beta: np.ndarray) -> np.ndarray:
        """Uhat = beta @ F^T, shape (k x N)."""
        return np.asarray(self.F @ beta.T).T

    def _features_t_mul(self, Y: np.ndarray) -> np.ndarray:
        """Y @ F for Y of shape (k x N)."""
        return np.asarray(self.F.T @ Y.T).T

    def _solve_beta_cg(self, Ft_y: np.ndarray) -> np.ndarray:
        """Solve K beta[d] = Ft_y[d] per latent dimension with CG."""
        F = self.F
        lam = self.lambda_beta

        def _matvec(x: np.ndarray) -> np.ndarray:
            x = np.ravel(x)
            return np.asarray(F.T @ (F @ x)).ravel() + lam * x

        K = LinearOperator((self.num_feat, self.num_feat), matvec=_matvec,
                           dtype=float)
        beta = np.empty_like(Ft_y)
        for d in range(self.num_latent):
            x, info = cg(K, Ft_y[d], x0=self.beta[d], rtol=self.cg_tol,
                         maxiter=self.cg_maxiter)
            if info < 0 or not np.all(np.isfinite(x)):
                raise NumericalDegeneracy(f"CG for beta[{d}] broke down "
                                          f"(info={info}).")
            if info > 0:
                logger.warning(f"CG for beta[{d}] did not converge in "
                               f"{info} iterations.")
            beta[d] = x
        return beta

    def sample_beta(
        self,
        U: np.ndarray,
        state: PriorState,
        rng: np.random.Generator
    ) -> np.ndarray:
        """
        Draw beta from its conditional posterior given U and the prior state.

            Ft_y = ((U + E1) - mu) @ F + sqrt(lambda_beta) * E2
            beta = Ft_y @ (F^T F + lambda_beta * I)^-1

        where columns of E1 (N) and E2 (num_feat) are N(0, Lambda^-1) draws.

        Raises:
            NumericalDegeneracy: If F^T F + lambda_beta * I is not positive
                definite (non-positive lambda_beta) or CG breaks down.
        """
        L = None
        if self.use_FtF:
            K = self.FtF + self.lambda_beta * np.eye(self.num_feat)
            L = cholesky_lower(K)
        elif not self.lambda_beta > 0:
            # Without lambda_beta > 0 the CG operator may be indefinite
            raise NumericalDegeneracy(f"lambda_beta must be positive, "
                                      f"got {self.lambda_beta}.")

        mu, Lambda = state.mean, state.precision
        E1 = mvnormal_prec(rng, Lambda, U.shape[1])
        E2 = mvnormal_prec(rng, Lambda, self.num_feat)
        Ft_y = (self._features_t_mul((U + E1) - mu[:, None])
                + np.sqrt(self.lambda_beta) * E2)

        if L is not None:
            return solve_upper(L, solve_lower(L, Ft_y.T)).T
        return self._solve_beta_cg(Ft_y)

    def update(
        self,
        U: np.ndarray,
        rng: np.random.Generator
    ) -> Tuple[PriorState, np.ndarray, np.ndarray]:
        """
        Draw new hyperparameters, beta and Uhat given the latents U.

        The Wishart inverse scale is inflated by lambda_beta * beta beta^T and
        the degrees of freedom by the number of features, so large
        coefficients shrink the precision posterior.

        Args:
            U: Current latents (k x N).
            rng: Random generator.

        Returns:
            Tuple (state, beta, Uhat), not yet published (see update_prior).
        """
        h = self.hyper
        resid = U - self.Uhat
        WI = h.WI + self.lambda_beta * (self.beta @ self.beta.T)
        mu, Lambda = cond_normal_wishart(rng, resid, h.mu0, h.b0, WI,
                                         h.df + self.num_feat)
        state = PriorState(mean=mu, precision=Lambda)
        beta = self.sample_beta(U, state, rng)
        return state, beta, self.compute_uhat(beta)

    def update_prior(
        self,
        U: np.ndarray,
        rng: np.random.Generator
    ) -> PriorState:
        """Update and publish state, beta and Uhat together."""
        self.state, self.beta, self.Uhat = self.update(U, rng)
        return self.state

    def sample_latents(
        self,
        U: np.ndarray,
        mat: sp.csc_matrix,
        mean_value: float,
        samples: np.ndarray,
        alpha: float,
        rng: np.random.Generator,
        n_workers: int = 1
    ) -> np.ndarray:
        """Resample every column of U with per-column prior mean mu + Uhat[:, n]."""
        return sample_latents(U, mat, mean_value, samples, alpha,
                              self.state.mean, self.state.precision, rng,
                              offsets=self.Uhat, n_workers=n_workers)

    def beta_norm(self) -> float:
        return float(np.linalg.norm(self.beta))


def make_prior(
    kind: str,
    num_latent: int,
    features: np.ndarray | sp.spmatrix | None = None,
    side: SideInfoConfig | None = None
) -> NormalPrior | MacauPrior:
    """
    Build a prior by name.

    Args:
        kind: "normal" (plain Normal-Wishart) or "macau" (side information).
        num_latent: Latent dimension.
        features: Side information, required for "macau".
        side: Side-information settings; defaults to SideInfoConfig().

    Returns:
        The prior instance.

    Raises:
        UnimplementedConfiguration: For any other kind.
        ValueError: If "macau" is requested without features.
    """
    if kind == "normal":
        return NormalPrior(num_latent)
    if kind == "macau":
        if features is None:
            raise ValueError("The 'macau' prior requires side features.")
        return MacauPrior.from_config(num_latent, features,
                                      side or SideInfoConfig())
    raise UnimplementedConfiguration(f"Unknown prior '{kind}'; "
                                     f"expected 'normal' or 'macau'.")
