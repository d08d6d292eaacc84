"""Tests for the PSIS-LOO module (scprop.mc._psis_loo).

Validates the Pareto tail fitting, single-observation smoothing, and the
full PSIS-LOO computation including k̂ diagnostics and elpd estimates.
"""

import pytest
import numpy as np

from scprop.mc._psis_loo import (
    _n_tail,
    _fit_gpd,
    _smooth_log_weights,
    compute_psis_loo,
    psis_loo_summary,
)


# --------------------------------------------------------------------------
# Fixtures
# --------------------------------------------------------------------------


@pytest.fixture
def well_behaved_log_liks():
    """Log-likelihood matrix with well-behaved IS weights.

    All log-liks drawn from a moderate-variance normal → k̂ should be low.
    """
    rng = np.random.default_rng(42)
    S, n = 500, 100
    return rng.normal(-3.0, 0.3, size=(S, n))


@pytest.fixture
def constant_log_liks():
    """All samples agree → no tail smoothing needed."""
    S, n = 200, 50
    return np.full((S, n), -2.0)


# --------------------------------------------------------------------------
# _n_tail
# --------------------------------------------------------------------------


def test_n_tail_minimum():
    """Should be at least 5."""
    assert _n_tail(10) >= 5


def test_n_tail_large_S():
    """For S=1000, M = min(200, ceil(3 * sqrt(1000))) = 95."""
    assert _n_tail(1000) == 95


# --------------------------------------------------------------------------
# _fit_gpd
# --------------------------------------------------------------------------


def test_fit_gpd_returns_two_floats():
    rng = np.random.default_rng(0)
    k, sigma = _fit_gpd(rng.exponential(1.0, size=50))
    assert isinstance(k, float)
    assert isinstance(sigma, float)
    assert sigma > 0
    assert -2.0 <= k <= 2.0


def test_fit_gpd_constant_input():
    """Degenerate input falls back to a positive scale."""
    k, sigma = _fit_gpd(np.zeros(20))
    assert k == 0.0
    assert sigma > 0 and np.isfinite(sigma)


# --------------------------------------------------------------------------
# _smooth_log_weights
# --------------------------------------------------------------------------


def test_smoothing_keeps_bulk():
    """Only the M largest weights change."""
    rng = np.random.default_rng(12)
    S = 300
    log_w = rng.normal(0.0, 0.5, size=S)
    M = _n_tail(S)
    bulk_idx = np.argsort(log_w)[: S - M]

    smoothed, k_hat = _smooth_log_weights(log_w)
    assert smoothed.shape == log_w.shape
    assert isinstance(k_hat, float)
    np.testing.assert_array_equal(smoothed[bulk_idx], log_w[bulk_idx])


def test_smoothing_flat_weights():
    smoothed, k_hat = _smooth_log_weights(np.full(100, 1.5))
    assert k_hat == 0.0
    np.testing.assert_array_equal(smoothed, 1.5)


# --------------------------------------------------------------------------
# compute_psis_loo
# --------------------------------------------------------------------------


def test_psis_loo_output_keys(well_behaved_log_liks):
    result = compute_psis_loo(well_behaved_log_liks)
    expected = {"elpd_loo", "p_loo", "looic", "elpd_loo_i", "k_hat", "lppd", "n_bad"}
    assert expected == set(result.keys())
    assert result["elpd_loo_i"].shape == (100,)
    assert result["k_hat"].shape == (100,)


def test_psis_loo_identities(well_behaved_log_liks):
    result = compute_psis_loo(well_behaved_log_liks)
    assert np.isfinite(result["elpd_loo"])
    assert result["looic"] == pytest.approx(-2.0 * result["elpd_loo"])
    assert result["p_loo"] == pytest.approx(result["lppd"] - result["elpd_loo"])
    assert result["elpd_loo"] <= result["lppd"] + 1e-6


def test_psis_loo_k_hat_well_behaved(well_behaved_log_liks):
    """With low-variance log-liks, most k̂ should be < 0.7."""
    result = compute_psis_loo(well_behaved_log_liks)
    assert result["n_bad"] / well_behaved_log_liks.shape[1] < 0.1


def test_psis_loo_constant_logliks(constant_log_liks):
    """Zero posterior variance: LOO equals the in-sample lppd."""
    result = compute_psis_loo(constant_log_liks)
    assert np.isfinite(result["elpd_loo"])
    assert abs(result["p_loo"]) < 0.1


def test_psis_loo_flattens_observation_axes():
    """(draws, n_samples, n_groups) input is treated as n_samples * n_groups
    observations."""
    rng = np.random.default_rng(3)
    log_liks = rng.normal(-4.0, 0.2, size=(200, 4, 3))
    flat = compute_psis_loo(log_liks.reshape(200, 12))
    grid = compute_psis_loo(log_liks)
    assert grid["elpd_loo"] == pytest.approx(flat["elpd_loo"])


def test_psis_loo_observed_mask():
    rng = np.random.default_rng(4)
    log_liks = rng.normal(-4.0, 0.2, size=(200, 4, 3))
    observed = np.ones((4, 3), dtype=bool)
    observed[0, 0] = False
    result = compute_psis_loo(log_liks, observed=observed)
    assert result["k_hat"].shape == (11,)


def test_psis_loo_masked_pair_matches_dropped_column():
    """Masking (sample 1, group 2) equals dropping flat position 1 * 3 + 2."""
    rng = np.random.default_rng(5)
    log_liks = rng.normal(-4.0, 0.2, size=(200, 4, 3))
    observed = np.ones((4, 3), dtype=bool)
    observed[1, 2] = False
    masked = compute_psis_loo(log_liks, observed=observed)
    dropped = compute_psis_loo(np.delete(log_liks.reshape(200, 12), 5, axis=1))
    np.testing.assert_allclose(masked["elpd_loo_i"], dropped["elpd_loo_i"])
    assert masked["lppd"] == pytest.approx(dropped["lppd"])


def test_psis_loo_rejects_mismatched_mask():
    log_liks = np.zeros((50, 4, 3))
    with pytest.raises(ValueError, match="observed mask shape"):
        compute_psis_loo(log_liks, observed=np.ones(12, dtype=bool))


def test_psis_loo_rejects_vector():
    with pytest.raises(ValueError):
        compute_psis_loo(np.zeros(10))


def test_psis_loo_accepts_jax_array(well_behaved_log_liks):
    import jax.numpy as jnp

    result = compute_psis_loo(jnp.array(well_behaved_log_liks))
    assert np.isfinite(result["elpd_loo"])


# --------------------------------------------------------------------------
# psis_loo_summary
# --------------------------------------------------------------------------


def test_psis_loo_summary(well_behaved_log_liks):
    result = compute_psis_loo(well_behaved_log_liks)
    text = psis_loo_summary(result)
    assert isinstance(text, str)
    assert "elpd_loo" in text
    assert "n=100 observations" in text
