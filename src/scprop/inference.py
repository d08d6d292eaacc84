"""
Model fitting entry points for SCPROP.

``fit`` validates observations and formulas, resolves both designs, samples
the posterior with parallel NUTS chains and packages an immutable
``FittedModel``. ``refit`` re-samples an existing fit with a new set of
excluded observations.
"""

import threading
import warnings
from typing import Optional, Sequence, Union

import numpy as np
from jax import numpy as jnp
from numpyro.infer.util import log_likelihood

from .core.count_table import (
    CountTable,
    FormatAdapter,
    GROUP_COLUMN,
    SAMPLE_COLUMN,
    from_records,
    normalize_counts,
)
from .errors import ConvergenceWarning, MalformedInputError
from .formula.design import DesignSchema, validate_designs
from .formula.parser import parse_formula
from .formula.terms import Formula
from .mcmc.diagnostics import assess_convergence, chain_samples, summarize_chains
from .mcmc.inference_engine import MCMCInferenceEngine, merge_chains
from .mcmc.results import FittedModel
from .models.compositional import ModelData, compositional_model, identified_sites
from .models.config import FitConfig

__all__ = ["fit", "refit", "build_model_data"]

# ==============================================================================
# Inputs
# ==============================================================================


def _as_count_table(
    observations,
    sample_col: str,
    group_col: str,
    count_col: Optional[str],
    covariate_cols: Optional[Sequence[str]],
) -> CountTable:
    if isinstance(observations, CountTable):
        table = observations
    elif isinstance(observations, FormatAdapter):
        table = from_records(observations)
    else:
        table = normalize_counts(
            observations,
            sample_col=sample_col,
            group_col=group_col,
            count_col=count_col,
            covariate_cols=covariate_cols,
        )
    if table.n_groups < 2:
        raise MalformedInputError(
            f"At least two cell groups are required, got {table.n_groups}"
        )
    return table


# ------------------------------------------------------------------------------


def build_model_data(
    table: CountTable,
    composition_schema: DesignSchema,
    variability_schema: DesignSchema,
) -> ModelData:
    """Design matrices and random-effect structure for a count table."""
    return ModelData(
        X=composition_schema.build(table.covariates),
        Xv=variability_schema.build(table.covariates),
        totals=table.totals,
        baseline=composition_schema.baseline_mask,
        re_index=composition_schema.random_effect_index(table.covariates),
        re_names=tuple(g.covariate for g in composition_schema.random_effects),
        re_levels=tuple(g.n_levels for g in composition_schema.random_effects),
        n_groups=table.n_groups,
    )


# ==============================================================================
# Sampling
# ==============================================================================


def _sample_posterior(
    table: CountTable,
    composition_schema: DesignSchema,
    variability_schema: DesignSchema,
    data: ModelData,
    configuration: FitConfig,
    outlier_mask: np.ndarray,
    cancel_event: Optional[threading.Event],
) -> FittedModel:
    mcmc_config = configuration.mcmc
    bimodal = configuration.bimodal_mean_variability_association
    observed = ~outlier_mask

    if configuration.verbose:
        print(
            f"Running MCMC inference: {mcmc_config.n_chains} chains on "
            f"{table.n_samples} samples x {table.n_groups} groups..."
        )

    chains = MCMCInferenceEngine.run_inference(
        data=data,
        priors=configuration.priors,
        counts=table.counts,
        mask=observed,
        bimodal=bimodal,
        n_samples=mcmc_config.n_samples,
        n_warmup=mcmc_config.n_warmup,
        n_chains=mcmc_config.n_chains,
        seed=mcmc_config.seed,
        cores=configuration.cores,
        mcmc_kwargs=mcmc_config.mcmc_kwargs,
        cancel_event=cancel_event,
        verbose=configuration.verbose,
    )
    samples = merge_chains(chains)

    # Convergence diagnostics over identified sites only
    diagnostics = summarize_chains(chains, identified_sites(data, bimodal))
    n_divergences = sum(c.n_divergences for c in chains)
    messages, error = assess_convergence(
        diagnostics,
        n_divergences,
        max_r_hat=mcmc_config.max_r_hat,
        min_n_eff=mcmc_config.min_n_eff,
    )

    pointwise = None
    if configuration.enable_loo:
        if configuration.verbose:
            print("Computing pointwise log-likelihoods...")
        pointwise = np.asarray(
            log_likelihood(
                compositional_model,
                {k: jnp.asarray(v) for k, v in samples.items()},
                data=data,
                priors=configuration.priors,
                bimodal=bimodal,
                counts=jnp.asarray(table.counts, dtype=jnp.int32),
                mask=jnp.asarray(observed),
            )["counts"]
        )

    fitted = FittedModel(
        samples=samples,
        chain_samples=chain_samples(chains),
        diagnostics=diagnostics,
        convergence_warnings=messages,
        convergence_error=error,
        n_divergences=n_divergences,
        outlier_mask=outlier_mask,
        count_table=table,
        composition_schema=composition_schema,
        variability_schema=variability_schema,
        model_data=data,
        config=configuration,
        pointwise_log_likelihood=pointwise,
    )

    if error is not None:
        if configuration.raise_on_convergence_failure:
            raise error
        warnings.warn(str(error), ConvergenceWarning, stacklevel=3)
    elif messages:
        warnings.warn("; ".join(messages), ConvergenceWarning, stacklevel=3)

    if configuration.verbose:
        print(f"Done: {fitted.n_draws} draws, {n_divergences} divergences")
    return fitted


# ==============================================================================
# Public API
# ==============================================================================


def fit(
    observations,
    composition_formula: Union[str, Formula],
    variability_formula: Union[str, Formula] = "~ 1",
    configuration: Optional[FitConfig] = None,
    *,
    sample_col: str = SAMPLE_COLUMN,
    group_col: str = GROUP_COLUMN,
    count_col: Optional[str] = None,
    covariate_cols: Optional[Sequence[str]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> FittedModel:
    """Fit the compositional model to cell-group counts.

    Parameters
    ----------
    observations : CountTable, FormatAdapter or DataFrame-like
        Counts. Raw records are normalised with ``normalize_counts`` using
        ``sample_col``, ``group_col``, ``count_col`` and ``covariate_cols``.
    composition_formula : str or Formula
        Formula of the composition (mean proportion) predictor, e.g.
        ``"~ type + (1 | batch)"``.
    variability_formula : str or Formula, default="~ 1"
        Formula of the variability (log-concentration) predictor. Its
        covariates must appear in the composition formula.
    configuration : FitConfig, optional
        Fit settings. Defaults to ``FitConfig()``.
    cancel_event : threading.Event, optional
        Setting the event aborts the fit before the next chain starts.

    Returns
    -------
    FittedModel
        Immutable posterior. Convergence failures are attached as
        ``convergence_error`` and emitted as ``ConvergenceWarning``.

    Raises
    ------
    MalformedInputError
        If the observations are malformed.
    FormulaError
        If either formula is invalid or unresolvable.
    ConvergenceError
        If sampling did not converge and
        ``configuration.raise_on_convergence_failure`` is set.
    FitCancelledError
        If ``cancel_event`` was set during the fit.

    Examples
    --------
    >>> fitted = fit(cells, "~ type")        # one row per cell
    >>> fitted.samples["beta"].shape          # (draws, columns, groups)
    """
    configuration = configuration or FitConfig()
    table = _as_count_table(
        observations, sample_col, group_col, count_col, covariate_cols
    )

    # Resolve formulas before any inference work
    composition = parse_formula(composition_formula)
    variability = parse_formula(variability_formula)
    validate_designs(composition, variability)
    composition_schema = DesignSchema.from_formula(composition, table.covariates)
    variability_schema = DesignSchema.from_formula(variability, table.covariates)
    data = build_model_data(table, composition_schema, variability_schema)

    outlier_mask = np.zeros(table.counts.shape, dtype=bool)
    return _sample_posterior(
        table,
        composition_schema,
        variability_schema,
        data,
        configuration,
        outlier_mask,
        cancel_event,
    )


# ------------------------------------------------------------------------------


def refit(
    fitted: FittedModel,
    outlier_mask: np.ndarray,
    cancel_event: Optional[threading.Event] = None,
) -> FittedModel:
    """Re-sample a fitted model with a new set of excluded observations.

    Parameters
    ----------
    fitted : FittedModel
        Previous fit; its data, designs and configuration are reused.
    outlier_mask : array-like of bool, shape ``(n_samples, n_groups)``
        True for observations excluded from the likelihood.

    Returns
    -------
    FittedModel
        A new fit; ``fitted`` is left untouched.
    """
    outlier_mask = np.asarray(outlier_mask, dtype=bool)
    if outlier_mask.shape != fitted.count_table.counts.shape:
        raise MalformedInputError(
            f"Outlier mask shape {outlier_mask.shape} does not match counts "
            f"{fitted.count_table.counts.shape}"
        )
    return _sample_posterior(
        fitted.count_table,
        fitted.composition_schema,
        fitted.variability_schema,
        fitted.model_data,
        fitted.config,
        outlier_mask.copy(),
        cancel_event,
    )
