from __future__ import annotations

import numpy as np
import pytest

from macau.errors import NumericalDegeneracy
from macau.mvnormal import cond_normal_wishart, mvnormal_prec, wishart


def test_mvnormal_prec_covariance_is_inverse_precision(spd) -> None:
    draws = mvnormal_prec(np.random.default_rng(0), spd, 20000)

    assert draws.shape == (2, 20000)
    np.testing.assert_allclose(np.cov(draws), np.linalg.inv(spd), atol=0.05)
    np.testing.assert_allclose(draws.mean(axis=1), 0.0, atol=0.05)


def test_mvnormal_prec_rejects_indefinite_matrix() -> None:
    with pytest.raises(NumericalDegeneracy):
        mvnormal_prec(np.random.default_rng(0), np.array([[1.0, 2.0],
                                                          [2.0, 1.0]]), 3)


def test_wishart_one_dimensional_is_2d() -> None:
    W = wishart(np.random.default_rng(0), np.eye(1), 3.0)
    assert W.shape == (1, 1)
    assert W[0, 0] > 0


def test_cond_normal_wishart_is_reproducible(rng) -> None:
    U = rng.normal(size=(3, 50))
    args = (U, np.zeros(3), 2.0, np.eye(3), 3.0)

    mu1, L1 = cond_normal_wishart(np.random.default_rng(5), *args)
    mu2, L2 = cond_normal_wishart(np.random.default_rng(5), *args)

    np.testing.assert_array_equal(mu1, mu2)
    np.testing.assert_array_equal(L1, L2)
    assert mu1.shape == (3,)
    assert L1.shape == (3, 3)
    np.testing.assert_allclose(L1, L1.T)
    assert np.all(np.linalg.eigvalsh(L1) > 0)


def test_cond_normal_wishart_concentrates_on_data() -> None:
    gen = np.random.default_rng(2)
    center = np.array([1.5, -0.5])
    U = center[:, None] + 0.1 * gen.standard_normal((2, 5000))

    mu, Lambda = cond_normal_wishart(gen, U, np.zeros(2), 2.0, np.eye(2), 2.0)

    np.testing.assert_allclose(mu, center, atol=0.05)
    # empirical precision is 1 / 0.01 = 100, shrunk by WI and the prior-mean term
    assert np.all((np.diag(Lambda) > 80) & (np.diag(Lambda) < 120))
