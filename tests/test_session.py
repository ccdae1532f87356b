from __future__ import annotations

import numpy as np
import pytest

from macau.config import CoreConfig, MacauConfig, SideInfoConfig
from macau.errors import NumericalDegeneracy
from macau.helpers import compute_rmse, to_sparse
from macau.priors import MacauPrior, NormalPrior
from macau.session import Macau
from macau.splits import make_test_split


def _config(**core) -> MacauConfig:
    params = dict(num_latent=3, burnin=30, nsamples=30, alpha=10.0,
                  random_state=0)
    params.update(core)
    return MacauConfig(core=CoreConfig(**params))


@pytest.fixture
def split(low_rank_ratings):
    R, _, _ = low_rank_ratings
    R_train, R_test, _ = make_test_split(R, test_fraction=0.2, seed=1)
    return R_train, R_test


def test_recovers_low_rank_structure(split) -> None:
    R_train, R_test = split
    model = Macau(_config()).fit(R_train, R_test=R_test, verbose=0)

    test = to_sparse(R_test)
    baseline = np.sqrt(np.mean((test.data - model.mean_value) ** 2))

    assert model.history["rmse_avg"][-1] < 0.6 * baseline
    assert compute_rmse(R_test, model.predict_full()) < 0.6 * baseline


def test_history_and_samples(split) -> None:
    R_train, R_test = split
    model = Macau(_config(burnin=5, nsamples=7)).fit(R_train, R_test=R_test,
                                                     verbose=0)

    for values in model.history.values():
        assert len(values) == 12
    assert np.all(np.isnan(model.history["rmse_avg"][:5]))
    assert np.all(np.isfinite(model.history["rmse_avg"][5:]))
    assert np.all(np.isfinite(model.history["rmse_1sample"]))
    assert np.all(np.isnan(model.history["beta_rows_norm"]))
    assert len(model.samples) == 7

    df = model.history_frame()
    assert list(df.index) == list(range(1, 13))
    assert (df["phase"] == "burnin").sum() == 5
    assert (df["phase"] == "sample").sum() == 7


def test_predict_averages_stored_samples(split) -> None:
    R_train, R_test = split
    model = Macau(_config(burnin=3, nsamples=4)).fit(R_train, R_test=R_test,
                                                     verbose=0)
    test = to_sparse(R_test)

    preds = model.predict(test.row, test.col)

    np.testing.assert_allclose(preds, model.test_predictions, rtol=1e-10)
    full = model.predict_full()
    assert full.shape == R_train.shape
    np.testing.assert_allclose(full[test.row, test.col], preds)


def test_workers_do_not_change_the_chain(split) -> None:
    R_train, _ = split
    serial = Macau(_config(burnin=2, nsamples=2)).fit(R_train, verbose=0)
    threaded = Macau(_config(burnin=2, nsamples=2, n_workers=3)).fit(R_train,
                                                                     verbose=0)

    np.testing.assert_allclose(serial.U, threaded.U)
    np.testing.assert_allclose(serial.V, threaded.V)


def test_side_information_uses_macau_prior(low_rank_ratings, split) -> None:
    _, _, V_true = low_rank_ratings
    R_train, R_test = split
    features = V_true.T + 0.05 * np.random.default_rng(0).standard_normal((30, 2))

    cfg = _config(burnin=5, nsamples=5)
    cfg.cols = SideInfoConfig(lambda_beta=5.0)
    model = Macau(cfg).fit(R_train, R_test=R_test, col_features=features,
                           verbose=0)

    assert isinstance(model.row_prior, NormalPrior)
    assert isinstance(model.col_prior, MacauPrior)
    assert np.all(np.isfinite(model.history["beta_cols_norm"]))
    np.testing.assert_allclose(model.col_prior.Uhat,
                               model.col_prior.beta @ features.T)


def test_feature_validation(split) -> None:
    R_train, _ = split
    model = Macau(_config(burnin=1, nsamples=1))

    with pytest.raises(ValueError):
        model.fit(R_train, row_features=np.ones((3, 2)), verbose=0)

    bad = np.ones((30, 2))
    bad[0, 0] = np.inf
    with pytest.raises(ValueError, match="NaN/Inf"):
        model.fit(R_train, col_features=bad, verbose=0)

    bad[0, 0] = np.nan
    with pytest.raises(ValueError, match="NaN/Inf"):
        model.fit(R_train, col_features=bad, verbose=0)


def test_degenerate_posterior_aborts_fit(split) -> None:
    R_train, _ = split
    model = Macau(_config(burnin=1, nsamples=1, alpha=-1e6))

    with pytest.raises(NumericalDegeneracy):
        model.fit(R_train, verbose=0)


def test_predict_requires_fit_and_samples(split) -> None:
    R_train, _ = split
    with pytest.raises(RuntimeError):
        Macau(_config()).predict_full()

    model = Macau(_config(burnin=1, nsamples=1, keep_samples=False))
    model.fit(R_train, verbose=0)
    with pytest.raises(RuntimeError):
        model.predict(np.array([0]), np.array([0]))


def test_predict_rejects_out_of_range(split) -> None:
    R_train, _ = split
    model = Macau(_config(burnin=1, nsamples=1)).fit(R_train, verbose=0)

    with pytest.raises(ValueError):
        model.predict(np.array([40]), np.array([0]))


def test_predict_rejects_mismatched_indices(split) -> None:
    R_train, _ = split
    model = Macau(_config(burnin=1, nsamples=1)).fit(R_train, verbose=0)

    with pytest.raises(ValueError, match="same shape"):
        model.predict(np.array([0, 1]), np.array([0]))
    with pytest.raises(ValueError, match="same shape"):
        model.predict(np.array([0]), np.array([], dtype=int))


def test_rejects_empty_and_mismatched_inputs(split) -> None:
    R_train, _ = split
    with pytest.raises(ValueError):
        Macau(_config()).fit(np.full((4, 3), np.nan), verbose=0)
    with pytest.raises(ValueError):
        Macau(_config()).fit(R_train, R_test=np.ones((2, 2)), verbose=0)
