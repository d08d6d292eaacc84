"""Tests for Bayesian error control (scprop.de._error_control)."""

import numpy as np
import pytest

from scprop.de import compute_bayesian_fdr, compute_pefp, find_pH0_threshold

# --------------------------------------------------------------------------
# compute_bayesian_fdr
# --------------------------------------------------------------------------


def test_fdr_cumulative_mean():
    fdr = compute_bayesian_fdr(np.array([0.2, 0.0, 0.1]))
    np.testing.assert_allclose(fdr, [0.1, 0.0, 0.05])


def test_fdr_keeps_shape_and_nan():
    pH0 = np.array([[0.4, np.nan], [0.0, 0.2]])
    fdr = compute_bayesian_fdr(pH0)
    assert fdr.shape == (2, 2)
    assert np.isnan(fdr[0, 1])
    np.testing.assert_allclose(fdr[1], [0.0, 0.1])
    assert fdr[0, 0] == pytest.approx(0.2)


def test_fdr_all_nan():
    assert np.isnan(compute_bayesian_fdr(np.full(3, np.nan))).all()


# --------------------------------------------------------------------------
# compute_pefp
# --------------------------------------------------------------------------


def test_pefp_of_called_set():
    pH0 = np.array([0.01, 0.03, 0.5])
    assert compute_pefp(pH0, np.array([True, True, False])) == pytest.approx(0.02)


def test_pefp_nothing_called():
    assert compute_pefp(np.array([0.1, 0.2]), np.array([False, False])) == 0.0


# --------------------------------------------------------------------------
# find_pH0_threshold
# --------------------------------------------------------------------------


def test_threshold_largest_valid_set():
    pH0 = np.array([0.0, 0.02, 0.05, 0.3, 0.9])
    threshold = find_pH0_threshold(pH0, target_pefp=0.05)
    # Means of the sorted prefixes: 0, 0.01, 0.0233, 0.0925, ...
    assert threshold == pytest.approx(0.05)
    called = pH0 <= threshold
    assert compute_pefp(pH0, called) <= 0.05


def test_threshold_nothing_qualifies():
    assert find_pH0_threshold(np.array([0.5, 0.6]), target_pefp=0.05) == -np.inf
    assert find_pH0_threshold(np.array([]), target_pefp=0.05) == -np.inf
