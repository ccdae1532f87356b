"""
Gibbs sampling for Bayesian matrix factorization with optional side
information (BPMF / Macau).

Overview
--------
We model a partially observed rating matrix R (shape m x n) as

    R[i, j] ~ N(mean_value + U[:, i] @ V[:, j], 1 / alpha)

where:
- U ∈ R^{k x m} are row (user) latent factors, one column per row entity,
- V ∈ R^{k x n} are column (item) latent factors,
- mean_value is the mean of the observed training entries,
- alpha is the observation noise precision.

Each side carries a prior on its latent columns:
- `NormalPrior`: u_i ~ N(mu, Lambda^-1) with a Normal-Wishart hyperprior,
- `MacauPrior`:  u_i ~ N(mu + beta @ f_i, Lambda^-1) for side features f_i.

One Gibbs iteration alternates strictly:

    (1) update row prior from U        (2) resample every column of U
    (3) update column prior from V     (4) resample every column of V

After `burnin` iterations each sample contributes to the posterior-mean
prediction; test RMSE of the averaged and of the current sample is
recorded in `history`.

Quick start
-----------
>>> import numpy as np
>>> from macau.config import MacauConfig, CoreConfig, SideInfoConfig
>>> from macau.session import Macau
>>>
>>> R = np.load("data/ratings_train.npy")   # (m, n), NaN = missing
>>> R_test = np.load("data/ratings_test.npy")
>>> G = np.load("data/genres.npy")          # (n, d) item features
>>>
>>> cfg = MacauConfig(
...     core=CoreConfig(num_latent=10, burnin=50, nsamples=200, alpha=2.0),
...     cols=SideInfoConfig(lambda_beta=5.0),
... )
>>> model = Macau(cfg).fit(R, R_test=R_test, col_features=G)
>>> R_hat = model.predict_full()             # posterior-mean m x n matrix
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd
import scipy.sparse as sp
from tqdm import trange

from macau.config import MacauConfig, SideInfoConfig
from macau.helpers import to_sparse
from macau.priors import MacauPrior, NormalPrior, make_prior

# Scale for random init of factors
SCALE_FACTOR = 0.1

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
)
logger = logging.getLogger(__name__)


def _validate_features(
    name: str,
    X: np.ndarray | sp.spmatrix,
    n_expected: int
) -> None:
    """Raise ValueError on wrong row count or non-finite values."""
    if X.shape[0] != n_expected:
        raise ValueError(f"Feature '{name}' has {X.shape[0]} rows; "
                         f"expected {n_expected}.")
    values = X.data if sp.issparse(X) else np.asarray(X, dtype=float)
    if not np.isfinite(values).all():
        raise ValueError(f"Feature '{name}' contains NaN/Inf values.")


class Macau:
    """
    Gibbs sampler for Bayesian matrix factorization.

    Training:
        fit(R, R_test, row_features, col_features) runs burnin + nsamples
        Gibbs iterations and collects posterior samples.

    Inference:
        predict(rows, cols) and predict_full() return posterior-mean
        predictions averaged over the collected samples.
    """

    def __init__(self, config: MacauConfig) -> None:
        """
        Initialize the sampler.

        Args:
            config: MacauConfig dataclass with hyperparameters.
        """
        if config is None:
            raise ValueError("MacauConfig must be provided.")
        self.cfg = config

        core = self.cfg.core
        self.num_latent = int(core.num_latent)
        self.burnin = int(core.burnin)
        self.nsamples = int(core.nsamples)
        self.alpha = float(core.alpha)
        self.random_state = core.random_state
        self.n_workers = int(core.n_workers)
        self.keep_samples = bool(core.keep_samples)

        # Learned state (set in fit)
        self.U: np.ndarray | None = None           # (k, m)
        self.V: np.ndarray | None = None           # (k, n)
        self.mean_value: float = 0.0
        self.row_prior: NormalPrior | MacauPrior | None = None
        self.col_prior: NormalPrior | MacauPrior | None = None
        self.samples: list[tuple[np.ndarray, np.ndarray]] = []
        self.test_predictions: np.ndarray | None = None

        # Training history
        self.history: dict[str, list[float]] = {
            "rmse_avg": [],
            "rmse_1sample": [],
            "U_norm": [],
            "V_norm": [],
            "beta_rows_norm": [],
            "beta_cols_norm": [],
        }

    def _build_prior(
        self,
        side: str,
        features: np.ndarray | sp.spmatrix | None,
        side_cfg: SideInfoConfig | None,
        n_entities: int
    ) -> NormalPrior | MacauPrior:
        """Pick the Macau prior when features are given, else the plain one."""
        if features is None:
            if side_cfg is not None:
                logger.warning(f"SideInfoConfig given for {side} but no "
                               f"{side} features; using the plain prior.")
            return make_prior("normal", self.num_latent)

        _validate_features(side, features, n_entities)
        return make_prior("macau", self.num_latent, features, side_cfg)

    @staticmethod
    def _beta_norm(prior: NormalPrior | MacauPrior) -> float:
        if isinstance(prior, MacauPrior):
            return prior.beta_norm()
        return float("nan")

    def fit(
        self,
        R: np.ndarray | sp.spmatrix,
        R_test: np.ndarray | sp.spmatrix | None = None,
        row_features: np.ndarray | sp.spmatrix | None = None,
        col_features: np.ndarray | sp.spmatrix | None = None,
        verbose: int = 1
    ) -> Macau:
        """
        Run the Gibbs sampler.

        Args:
            R: (m x n) training ratings, NaN for missing, or a scipy.sparse
               matrix of observed entries.
            R_test: Optional test ratings in the same format and shape.
            row_features: Optional side information for rows (m x d_r).
            col_features: Optional side information for columns (n x d_c).
            verbose: Verbosity level (0 = silent, 1 = info).

        Returns:
            The fitted model.

        Raises:
            ValueError: On empty training data, mismatched shapes or bad
                        feature matrices.
            NumericalDegeneracy: If any Cholesky factorization fails; the
                        run is aborted.
        """
        rng = np.random.default_rng(self.random_state)

        train = to_sparse(R)
        m, n = train.shape
        if train.nnz == 0:
            raise ValueError("No observed ratings in R.")

        self.mean_value = float(train.data.mean())

        # Column i of `by_row` holds row entity i's entries, and vice versa
        by_row = sp.csc_matrix(train.T)             # (n, m)
        by_col = sp.csc_matrix(train)               # (m, n)

        test = None
        if R_test is not None:
            test = to_sparse(R_test)
            if test.shape != (m, n):
                raise ValueError(f"R_test has shape {test.shape}; "
                                 f"expected {(m, n)}.")
            if test.nnz == 0:
                test = None

        self.row_prior = self._build_prior("rows", row_features,
                                           self.cfg.rows, m)
        self.col_prior = self._build_prior("cols", col_features,
                                           self.cfg.cols, n)

        k = self.num_latent
        self.U = np.asfortranarray(rng.normal(scale=SCALE_FACTOR, size=(k, m)))
        self.V = np.asfortranarray(rng.normal(scale=SCALE_FACTOR, size=(k, n)))
        self.samples = []
        for values in self.history.values():
            values.clear()

        pred_avg = np.zeros(test.nnz) if test is not None else None
        n_collected = 0

        n_iters = self.burnin + self.nsamples
        if verbose == 0:
            iterator = range(n_iters)
        else:
            iterator = trange(n_iters, desc="Gibbs iterations")
            logger.info(f"Starting Gibbs sampling: m={m}, n={n}, "
                        f"nnz={train.nnz}, num_latent={k}, "
                        f"burnin={self.burnin}, nsamples={self.nsamples}, "
                        f"alpha={self.alpha}, "
                        f"row_prior={type(self.row_prior).__name__}, "
                        f"col_prior={type(self.col_prior).__name__}, "
                        f"n_workers={self.n_workers}, "
                        f"random_state={self.random_state}")

        for it in iterator:
            # (1)-(2) rows
            self.row_prior.update_prior(self.U, rng)
            self.row_prior.sample_latents(self.U, by_row, self.mean_value,
                                          self.V, self.alpha, rng,
                                          n_workers=self.n_workers)

            # (3)-(4) columns
            self.col_prior.update_prior(self.V, rng)
            self.col_prior.sample_latents(self.V, by_col, self.mean_value,
                                          self.U, self.alpha, rng,
                                          n_workers=self.n_workers)

            collecting = it >= self.burnin
            if collecting:
                n_collected += 1
                if self.keep_samples:
                    self.samples.append((self.U.copy(), self.V.copy()))

            rmse_1 = rmse_avg = float("nan")
            if test is not None:
                pred = (np.sum(self.U[:, test.row] * self.V[:, test.col], axis=0)
                        + self.mean_value)
                rmse_1 = float(np.sqrt(np.mean((test.data - pred) ** 2)))
                if collecting:
                    pred_avg += (pred - pred_avg) / n_collected
                    rmse_avg = float(np.sqrt(np.mean((test.data - pred_avg) ** 2)))

            self.history["rmse_avg"].append(rmse_avg)
            self.history["rmse_1sample"].append(rmse_1)
            self.history["U_norm"].append(float(np.linalg.norm(self.U)))
            self.history["V_norm"].append(float(np.linalg.norm(self.V)))
            self.history["beta_rows_norm"].append(self._beta_norm(self.row_prior))
            self.history["beta_cols_norm"].append(self._beta_norm(self.col_prior))

            if verbose > 0 and test is not None:
                iterator.set_postfix(rmse=rmse_avg if collecting else rmse_1)
            logger.debug(f"Iter {it + 1}: RMSE {rmse_avg:.4f} "
                         f"(1samp: {rmse_1:.4f}) "
                         f"U: {self.history['U_norm'][-1]:.2e} "
                         f"V: {self.history['V_norm'][-1]:.2e}")

        self.test_predictions = pred_avg

        if verbose > 0:
            final = self.history["rmse_avg"][-1] if self.history["rmse_avg"] else float("nan")
            logger.info(f"Gibbs sampling finished. Final test RMSE: {final:.4f}")

        return self

    def _check_samples(self) -> None:
        if self.U is None or self.V is None:
            raise RuntimeError("Model must be fitted before prediction.")
        if not self.samples:
            raise RuntimeError("No posterior samples stored; fit with "
                               "keep_samples=True and nsamples > 0.")

    def predict(self, rows: np.ndarray, cols: np.ndarray) -> np.ndarray:
        """
        Posterior-mean predictions for (row, column) index pairs.

        Args:
            rows: Row indices.
            cols: Column indices (same length as rows).

        Returns:
            Predicted ratings averaged over the stored posterior samples.

        Raises:
            RuntimeError: If the model is not fitted or kept no samples.
            ValueError: If indices are out of range or their shapes differ.
        """
        self._check_samples()
        rows = np.asarray(rows, dtype=int)
        cols = np.asarray(cols, dtype=int)
        if rows.shape != cols.shape:
            raise ValueError(f"rows and cols must have the same shape; got "
                             f"{rows.shape} and {cols.shape}.")
        m, n = self.U.shape[1], self.V.shape[1]
        if rows.size and (rows.min() < 0 or rows.max() >= m
                          or cols.min() < 0 or cols.max() >= n):
            raise ValueError(f"Indices out of range for a {m} x {n} matrix.")

        preds = np.zeros(rows.shape[0], dtype=float)
        for U, V in self.samples:
            preds += np.sum(U[:, rows] * V[:, cols], axis=0)
        return preds / len(self.samples) + self.mean_value

    def predict_full(self) -> np.ndarray:
        """
        Return the completed (m x n) matrix averaged over posterior samples.

        Raises:
            RuntimeError: If the model is not fitted or kept no samples.
        """
        self._check_samples()
        R_hat = np.zeros((self.U.shape[1], self.V.shape[1]))
        for U, V in self.samples:
            R_hat += U.T @ V
        return R_hat / len(self.samples) + self.mean_value

    def history_frame(self) -> pd.DataFrame:
        """Training history as a DataFrame indexed by iteration (1-based)."""
        df = pd.DataFrame(self.history)
        df.index = pd.RangeIndex(1, len(df) + 1, name="iteration")
        df["phase"] = np.where(df.index > self.burnin, "sample", "burnin")
        return df
