from __future__ import annotations

import numpy as np
import pytest
import scipy.sparse as sp
from scipy.linalg import cholesky, solve_triangular

from macau.errors import NumericalDegeneracy
from macau.sampler import (
    observed_entries,
    posterior_precision,
    sample_latent,
    sample_latents,
)


def _one_observation() -> sp.csc_matrix:
    # Column 0 (entity 0) observed 5.0 against counterpart 0; entity 1 empty.
    return sp.csc_matrix(([5.0], ([0], [0])), shape=(1, 2))


def test_single_observation_matches_closed_form() -> None:
    c = 2.0
    samples = np.array([[c]])
    U = np.zeros((1, 2))

    out = sample_latent(U, 0, _one_observation(), 0.0, samples, 1.0,
                        np.zeros(1), np.eye(1), noise=np.zeros(1))

    precision = 1.0 + c ** 2
    assert out[0] == pytest.approx(5.0 * c / precision)
    assert U[0, 0] == pytest.approx(5.0 * c / precision)
    assert U[0, 1] == 0.0


def test_single_observation_perturbation_scaled_by_cholesky_factor() -> None:
    c = 2.0
    U = np.zeros((1, 2))
    sample_latent(U, 0, _one_observation(), 0.0, np.array([[c]]), 1.0,
                  np.zeros(1), np.eye(1), noise=np.ones(1))

    precision = 1.0 + c ** 2
    assert U[0, 0] == pytest.approx(5.0 * c / precision + 1.0 / np.sqrt(precision))


def test_mean_value_and_alpha_enter_the_linear_term() -> None:
    U = np.zeros((1, 2))
    sample_latent(U, 0, _one_observation(), 1.0, np.array([[1.0]]), 3.0,
                  np.zeros(1), np.eye(1), noise=np.zeros(1))

    # precision 1 + 3 * 1, linear term 3 * (5 - 1)
    assert U[0, 0] == pytest.approx(12.0 / 4.0)


def test_row_without_observations_draws_from_prior(spd) -> None:
    mu = np.array([1.0, -2.0])
    z = np.array([0.3, -1.1])
    mat = sp.csc_matrix((3, 2))
    U = np.zeros((2, 2))

    sample_latent(U, 1, mat, 0.0, np.ones((2, 3)), 1.0, mu, spd, noise=z)

    L = cholesky(spd, lower=True)
    expected = mu + solve_triangular(L.T, z, lower=False)
    np.testing.assert_allclose(U[:, 1], expected)
    np.testing.assert_array_equal(U[:, 0], 0.0)


def test_rows_without_observations_follow_prior_distribution(spd) -> None:
    N = 4000
    mu = np.array([1.0, -2.0])
    U = np.zeros((2, N))
    mat = sp.csc_matrix((3, N))
    samples = np.random.default_rng(1).normal(size=(2, 3))

    sample_latents(U, mat, 0.0, samples, 1.0, mu, spd,
                   np.random.default_rng(2))

    cov = np.linalg.inv(spd)
    se = np.sqrt(np.diag(cov) / N)
    assert np.all(np.abs(U.mean(axis=1) - mu) < 5 * se)
    np.testing.assert_allclose(np.cov(U), cov, atol=0.08)


def test_posterior_precision_is_spd(rng, spd) -> None:
    samples = rng.normal(size=(2, 50))
    for n_obs in (0, 1, 5, 50):
        cols = samples[:, :n_obs]
        MM = posterior_precision(cols, 0.5, spd)
        # eigvalsh reads the lower triangle only
        assert np.all(np.linalg.eigvalsh(MM, UPLO="L") > 0)
        full = np.tril(MM) + np.tril(MM, -1).T
        np.testing.assert_allclose(full, spd + 0.5 * cols @ cols.T)


def test_observed_entries_reads_one_column(rng) -> None:
    mat = sp.csc_matrix(np.array([[1.0, 0.0],
                                  [0.0, 2.0],
                                  [3.0, 0.0]]))
    samples = rng.normal(size=(2, 3))

    cols, values = observed_entries(0, mat, samples)

    np.testing.assert_array_equal(values, [1.0, 3.0])
    np.testing.assert_array_equal(cols, samples[:, [0, 2]])


def test_degenerate_precision_raises_without_writing() -> None:
    U = np.full((1, 2), 7.0)
    mat = sp.csc_matrix((1, 2))

    with pytest.raises(NumericalDegeneracy):
        sample_latent(U, 1, mat, 0.0, np.ones((1, 1)), 1.0,
                      np.zeros(1), np.array([[-1.0]]), noise=np.zeros(1))

    np.testing.assert_array_equal(U, 7.0)


@pytest.mark.parametrize("n_workers", [1, 2])
def test_degenerate_row_aborts_round(n_workers: int) -> None:
    # Entity 0 has an observation that makes its precision positive
    # (-1 + 5 * 1), entity 1 has none and keeps the negative prior.
    U = np.full((1, 2), 7.0)
    mat = _one_observation()

    with pytest.raises(NumericalDegeneracy):
        sample_latents(U, mat, 0.0, np.ones((1, 1)), 5.0, np.zeros(1),
                       np.array([[-1.0]]), np.random.default_rng(0),
                       n_workers=n_workers)

    assert U[0, 1] == 7.0


def test_parallel_matches_serial(rng, spd) -> None:
    samples = rng.normal(size=(2, 25))
    mat = sp.random(25, 60, density=0.3, format="csc", random_state=3)
    mu = np.array([0.2, -0.1])

    U1 = np.asfortranarray(np.zeros((2, 60)))
    U4 = np.asfortranarray(np.zeros((2, 60)))
    sample_latents(U1, mat, 0.5, samples, 2.0, mu, spd,
                   np.random.default_rng(9), n_workers=1)
    sample_latents(U4, mat, 0.5, samples, 2.0, mu, spd,
                   np.random.default_rng(9), n_workers=4)

    np.testing.assert_allclose(U1, U4)


def test_offsets_shift_the_prior_mean(spd) -> None:
    N = 3
    U = np.zeros((2, N))
    offsets = np.arange(2 * N, dtype=float).reshape(2, N)
    mat = sp.csc_matrix((4, N))

    sample_latents(U, mat, 0.0, np.ones((2, 4)), 1.0, np.zeros(2), 1e12 * spd,
                   np.random.default_rng(0), offsets=offsets)

    np.testing.assert_allclose(U, offsets, atol=1e-4)


def test_shape_mismatch_raises(spd) -> None:
    with pytest.raises(ValueError):
        sample_latents(np.zeros((2, 3)), sp.csc_matrix((4, 5)), 0.0,
                       np.ones((2, 4)), 1.0, np.zeros(2), spd,
                       np.random.default_rng(0))
