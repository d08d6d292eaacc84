"""Tests for posterior predictive simulation (scprop.sampling)."""

import numpy as np
import pandas as pd
import pytest

from scprop import (
    CountTable,
    FormulaError,
    MalformedInputError,
    SimulationMode,
    posterior_predictive_check,
    predict_proportions,
    remove_unwanted_variation,
    simulate,
)
from scprop.sampling import ReplicateDataset, _round_preserving_totals

# --------------------------------------------------------------------------
# Replicate sequences
# --------------------------------------------------------------------------


def test_replicate_totals_match_fitted_totals(fitted_type):
    replicates = simulate(fitted_type, 4)
    assert len(replicates) == 4
    for replicate in replicates:
        assert isinstance(replicate, ReplicateDataset)
        np.testing.assert_array_equal(
            replicate.counts.sum(axis=1), fitted_type.count_table.totals
        )
        np.testing.assert_allclose(replicate.proportions.sum(axis=1), 1.0, rtol=1e-5)


@pytest.mark.parametrize("mode", list(SimulationMode))
def test_modes_preserve_totals(fitted_type, mode):
    replicate = simulate(fitted_type, 2, mode=mode)[1]
    np.testing.assert_array_equal(
        replicate.counts.sum(axis=1), fitted_type.count_table.totals
    )
    assert replicate.table.groups == fitted_type.groups


@pytest.mark.parametrize("mode", list(SimulationMode))
def test_bimodal_fit_simulates(fitted_bimodal, mode):
    """Hyperprior draws pick a mixture component per group."""
    replicate = simulate(fitted_bimodal, 2, mode=mode, seed=5)[0]
    np.testing.assert_array_equal(
        replicate.counts.sum(axis=1), fitted_bimodal.count_table.totals
    )
    assert np.all(replicate.counts >= 0)


def test_replicates_are_restartable(fitted_type):
    replicates = simulate(fitted_type, 3, seed=11)
    first = replicates[2].counts
    np.testing.assert_array_equal(replicates[2].counts, first)
    np.testing.assert_array_equal(replicates[-1].counts, first)
    # A fresh sequence with the same seed gives the same replicate
    again = simulate(fitted_type, 3, seed=11)
    np.testing.assert_array_equal(again[2].counts, first)
    np.testing.assert_array_equal(list(replicates)[2].counts, first)


def test_replicates_differ_across_indices(fitted_type):
    replicates = simulate(fitted_type, 2, seed=3)
    assert not np.array_equal(replicates[0].counts, replicates[1].counts)


def test_sequence_indexing(fitted_type):
    replicates = simulate(fitted_type, 5)
    assert [r.index for r in replicates[1:4]] == [1, 2, 3]
    with pytest.raises(IndexError):
        replicates[5]
    with pytest.raises(IndexError):
        replicates[-6]


def test_draws_spread_over_posterior(fitted_type):
    replicates = simulate(fitted_type, 4)
    draws = [r.draw for r in replicates]
    assert draws == sorted(set(draws))
    assert max(draws) < fitted_type.n_draws


def test_scalar_and_new_totals(fitted_type):
    replicate = simulate(fitted_type, 1, totals=1000)[0]
    np.testing.assert_array_equal(replicate.counts.sum(axis=1), 1000)


def test_new_covariates(fitted_type):
    covariates = pd.DataFrame(
        {"type": ["healthy", "cancer"], "batch": ["b0", "b1"], "age": [40.0, 50.0]},
        index=["new1", "new2"],
    )
    replicate = simulate(fitted_type, 1, covariates=covariates, totals=[500, 700])[0]
    assert replicate.table.samples == ("new1", "new2")
    np.testing.assert_array_equal(replicate.counts.sum(axis=1), [500, 700])


def test_reduced_formulas(fitted_type):
    replicate = simulate(
        fitted_type, 1, composition_formula="~ 1", variability_formula="~ 1"
    )[0]
    np.testing.assert_array_equal(
        replicate.counts.sum(axis=1), fitted_type.count_table.totals
    )


def test_invalid_arguments(fitted_type):
    with pytest.raises(ValueError):
        simulate(fitted_type, 0)
    with pytest.raises(MalformedInputError):
        simulate(fitted_type, 1, totals=[1, 2])
    with pytest.raises(MalformedInputError):
        simulate(fitted_type, 1, totals=-5)
    with pytest.raises(FormulaError):
        simulate(fitted_type, 1, composition_formula="~ type + donor")
    with pytest.raises(FormulaError):
        simulate(fitted_type, 1, variability_formula="~ (1 | batch)")
    with pytest.raises(ValueError):
        simulate(fitted_type, 1, mode="prior")


# --------------------------------------------------------------------------
# Derived summaries
# --------------------------------------------------------------------------


def test_posterior_predictive_check(fitted_type):
    table = posterior_predictive_check(fitted_type, number_of_draws=20)
    assert len(table) == 6 * 3
    assert {"observed", "mean", "lower", "upper", "within", "excluded"} <= set(
        table.columns
    )
    assert (table["lower"] <= table["upper"]).all()
    assert not table["excluded"].any()


def test_predict_proportions_fitted_samples(fitted_type):
    table = predict_proportions(fitted_type)
    assert list(table.columns) == ["sample", "group", "mean", "median", "lower", "upper"]
    assert len(table) == 6 * 3
    sums = table.groupby("sample")["mean"].sum()
    np.testing.assert_allclose(sums.to_numpy(), 1.0, rtol=1e-5)
    assert (table["lower"] <= table["median"]).all()
    assert (table["median"] <= table["upper"]).all()


def test_predict_proportions_new_covariates(fitted_type):
    covariates = pd.DataFrame({"type": ["healthy", "cancer"]}, index=["h", "c"])
    table = predict_proportions(fitted_type, covariates)
    assert set(table["sample"]) == {"h", "c"}


def test_predict_proportions_hyperprior(fitted_type):
    table = predict_proportions(fitted_type, mode="hyperprior")
    assert table["mean"].between(0, 1).all()


def test_intercept_only_prediction_is_shared(fitted_type):
    table = predict_proportions(fitted_type, composition_formula="~ 1")
    spread = table.groupby("group")["mean"].agg(lambda x: x.max() - x.min())
    np.testing.assert_allclose(spread.to_numpy(), 0.0, atol=1e-6)


def test_unseen_level_rejected(fitted_type):
    covariates = pd.DataFrame({"type": ["metastatic"]}, index=["m"])
    with pytest.raises(FormulaError):
        predict_proportions(fitted_type, covariates)


# --------------------------------------------------------------------------
# Removing unwanted variation
# --------------------------------------------------------------------------


def test_round_preserving_totals():
    values = np.array([[1.4, 1.3, 2.3], [0.5, 0.5, 0.0]])
    rounded = _round_preserving_totals(values, np.array([5, 1]))
    np.testing.assert_array_equal(rounded.sum(axis=1), [5, 1])
    np.testing.assert_array_equal(rounded[0], [2, 1, 2])


def test_remove_unwanted_variation_preserves_totals(fitted_type):
    adjusted = remove_unwanted_variation(fitted_type, "~ 1")
    assert isinstance(adjusted, CountTable)
    np.testing.assert_array_equal(adjusted.totals, fitted_type.count_table.totals)
    assert adjusted.samples == fitted_type.count_table.samples
    assert (adjusted.counts >= 0).all()


def test_remove_nothing_is_identity(fitted_type):
    adjusted = remove_unwanted_variation(fitted_type, "~ type")
    np.testing.assert_array_equal(adjusted.counts, fitted_type.count_table.counts)
