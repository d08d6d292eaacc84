"""Tests for formula parsing and design schemas (scprop.formula)."""

import numpy as np
import pandas as pd
import pytest

from scprop import FormulaError, MalformedInputError
from scprop.formula import (
    INTERCEPT,
    CovariateTerm,
    DesignSchema,
    RandomInterceptTerm,
    parse_formula,
    validate_designs,
)

# --------------------------------------------------------------------------
# Fixtures
# --------------------------------------------------------------------------


@pytest.fixture
def covariates():
    return pd.DataFrame(
        {
            "type": ["healthy", "cancer", "healthy", "benign"],
            "batch": ["b1", "b1", "b2", "b2"],
            "age": [30.0, 45.0, 52.0, 61.0],
            "treated": [True, False, True, False],
        },
        index=pd.Index(["s1", "s2", "s3", "s4"], name="sample"),
    )


# --------------------------------------------------------------------------
# Parser
# --------------------------------------------------------------------------


def test_parse_main_effects():
    formula = parse_formula("~ type + age")
    assert formula.intercept
    assert formula.fixed == (CovariateTerm("type"), CovariateTerm("age"))
    assert formula.random == ()


def test_parse_random_intercept():
    formula = parse_formula("~ type + (1 | batch)")
    assert formula.random == (RandomInterceptTerm("batch"),)
    assert formula.covariates == ("type", "batch")


@pytest.mark.parametrize("text", ["~ 0 + type", "~ type - 1", "~ type + 0", "~ -1 + type"])
def test_parse_without_intercept(text):
    formula = parse_formula(text)
    assert not formula.intercept
    assert formula.fixed_covariates == ("type",)


def test_parse_intercept_only():
    formula = parse_formula("~ 1")
    assert formula.intercept
    assert formula.covariates == ()


def test_parse_backtick_name():
    formula = parse_formula("~ `disease state` + age")
    assert formula.fixed_covariates == ("disease state", "age")
    assert str(formula) == "~ 1 + `disease state` + age"


def test_parse_duplicates_collapsed():
    formula = parse_formula("~ type + type + (1 | batch) + (1 | batch)")
    assert formula.fixed_covariates == ("type",)
    assert formula.random_groupings == ("batch",)


def test_parse_passes_formula_through():
    formula = parse_formula("~ type")
    assert parse_formula(formula) is formula


def test_parse_term_subtraction():
    assert parse_formula("~ type + age - age").fixed_covariates == ("type",)
    # Subtracting an absent term is a no-op
    assert parse_formula("~ type - age").fixed_covariates == ("type",)


def test_parse_quoted_name():
    formula = parse_formula("~ Q('disease state') + (1 | `sequencing batch`)")
    assert formula.fixed_covariates == ("disease state",)
    assert formula.random_groupings == ("sequencing batch",)


def test_model_desc_round_trip():
    formula = parse_formula("~ `disease state` + age")
    desc = formula.model_desc()
    assert [t.name() for t in desc.rhs_termlist] == [
        "Intercept",
        "Q('disease state')",
        "age",
    ]
    assert parse_formula(formula.model_desc().describe()) == formula


@pytest.mark.parametrize(
    "text",
    [
        "type + age",
        "~ type +",
        "~ type * age",
        "~ (1 | )",
        "~ (2 | batch)",
        "~ 2",
        "~ type:age",
        "~ log(age)",
        "y ~ type",
        "",
    ],
)
def test_parse_errors(text):
    with pytest.raises(FormulaError):
        parse_formula(text)


# --------------------------------------------------------------------------
# Design schema
# --------------------------------------------------------------------------


def test_treatment_coding_with_intercept(covariates):
    schema = DesignSchema.from_formula("~ type", covariates)
    assert schema.column_names == (INTERCEPT, "typecancer", "typehealthy")
    # levels - 1 + 1 columns
    assert schema.n_columns == covariates["type"].nunique()
    np.testing.assert_array_equal(schema.baseline_mask, [True, False, False])


def test_full_coding_without_intercept(covariates):
    schema = DesignSchema.from_formula("~ 0 + type + batch", covariates)
    assert schema.column_names == (
        "typebenign",
        "typecancer",
        "typehealthy",
        "batchb2",
    )
    np.testing.assert_array_equal(schema.baseline_mask, [True, True, True, False])
    X = schema.build(covariates)
    # One-to-one: every sample has exactly one baseline column set
    np.testing.assert_array_equal(X[:, :3].sum(axis=1), 1.0)


def test_numeric_and_boolean_covariates(covariates):
    schema = DesignSchema.from_formula("~ age + treated", covariates)
    assert schema.column_names == (INTERCEPT, "age", "treatedTrue")
    assert schema.numeric == ("age",)
    X = schema.build(covariates)
    np.testing.assert_allclose(X[:, 1], covariates["age"].to_numpy())
    np.testing.assert_array_equal(X[:, 2], [1.0, 0.0, 1.0, 0.0])


def test_category_order_sets_reference(covariates):
    covariates = covariates.assign(
        type=pd.Categorical(
            covariates["type"], categories=["healthy", "benign", "cancer"]
        )
    )
    schema = DesignSchema.from_formula("~ type", covariates)
    assert schema.column_names == (INTERCEPT, "typebenign", "typecancer")


def test_build_matrix_values(covariates):
    schema = DesignSchema.from_formula("~ type", covariates)
    X = schema.build(covariates)
    expected = np.array(
        [
            [1.0, 0.0, 1.0],
            [1.0, 1.0, 0.0],
            [1.0, 0.0, 1.0],
            [1.0, 0.0, 0.0],
        ]
    )
    np.testing.assert_array_equal(X, expected)


def test_build_new_covariates(covariates):
    schema = DesignSchema.from_formula("~ type", covariates)
    new = pd.DataFrame({"type": ["cancer"]}, index=["new"])
    np.testing.assert_array_equal(schema.build(new), [[1.0, 1.0, 0.0]])


def test_build_unseen_level(covariates):
    schema = DesignSchema.from_formula("~ type", covariates)
    new = pd.DataFrame({"type": ["metastatic"]}, index=["new"])
    with pytest.raises(FormulaError, match="not seen"):
        schema.build(new)


def test_unknown_covariate(covariates):
    with pytest.raises(FormulaError, match="unknown covariates"):
        DesignSchema.from_formula("~ donor", covariates)


def test_missing_values_rejected(covariates):
    covariates = covariates.assign(age=[30.0, np.nan, 52.0, 61.0])
    with pytest.raises(MalformedInputError):
        DesignSchema.from_formula("~ age", covariates)


def test_empty_design_rejected(covariates):
    with pytest.raises(FormulaError, match="empty design"):
        DesignSchema.from_formula("~ 0", covariates)


def test_random_effect_index(covariates):
    schema = DesignSchema.from_formula("~ type + (1 | batch)", covariates)
    assert schema.random_effects[0].levels == ("b1", "b2")
    np.testing.assert_array_equal(
        schema.random_effect_index(covariates)[:, 0], [0, 0, 1, 1]
    )
    new = pd.DataFrame({"type": ["cancer"], "batch": ["b9"]}, index=["new"])
    assert schema.random_effect_index(new)[0, 0] == -1


def test_reduced_mask(covariates):
    schema = DesignSchema.from_formula("~ type + age + (1 | batch)", covariates)
    mask = schema.reduced_mask("~ type")
    np.testing.assert_array_equal(mask, [True, True, True, False])
    # Baseline columns survive even an intercept-only reduction
    np.testing.assert_array_equal(
        schema.reduced_mask("~ 1"), [True, False, False, False]
    )


def test_reduced_mask_rejects_new_covariates(covariates):
    schema = DesignSchema.from_formula("~ type", covariates)
    with pytest.raises(FormulaError):
        schema.reduced_mask("~ type + age")


# --------------------------------------------------------------------------
# Cross-formula validation
# --------------------------------------------------------------------------


def test_variability_subset_accepted():
    validate_designs(parse_formula("~ type + age"), parse_formula("~ type"))


@pytest.mark.parametrize(
    "variability, message",
    [
        ("~ batch", "absent from the composition"),
        ("~ type + (1 | batch)", "random effects"),
        ("~ 0 + type", "intercept"),
    ],
)
def test_variability_rejected(variability, message):
    with pytest.raises(FormulaError, match=message):
        validate_designs(
            parse_formula("~ type + age"), parse_formula(variability)
        )
