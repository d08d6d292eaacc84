"""
Posterior predictive simulation for SCPROP.

Replicate datasets are drawn from a fitted model: per-group proportions from
the beta distributions of the fitted composition and variability predictors,
normalised to the simplex, then a multinomial draw of each sample's total, so
replicate totals equal the conditioning totals exactly.
"""

from collections.abc import Sequence as SequenceABC
from dataclasses import dataclass
from typing import Hashable, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from jax import numpy as jnp
from jax import random
from jax.nn import softmax

import numpyro.distributions as dist

from .core.count_table import CountTable
from .errors import FormulaError, MalformedInputError
from .formula.terms import Formula
from .formula.parser import parse_formula
from .mcmc.results import FittedModel
from .models.compositional import (
    beta_binomial_concentrations,
    composition_predictor,
    random_effect_site,
    random_scale_site,
)
from .models.config import SimulationMode

__all__ = [
    "ReplicateDataset",
    "ReplicateSequence",
    "simulate",
    "posterior_predictive_check",
    "predict_proportions",
    "remove_unwanted_variation",
]

# ------------------------------------------------------------------------------
# Conditioning data
# ------------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class _Conditioning:
    """Design rows, totals and term masks a simulation is conditioned on."""

    samples: Tuple[Hashable, ...]
    covariates: pd.DataFrame
    X: np.ndarray
    Xv: np.ndarray
    re_index: np.ndarray
    totals: np.ndarray
    beta_mask: np.ndarray
    gamma_mask: np.ndarray
    random_kept: Tuple[bool, ...]


def _conditioning(
    fitted: FittedModel,
    covariates: Optional[pd.DataFrame],
    totals,
    composition_formula: Optional[Union[str, Formula]],
    variability_formula: Optional[Union[str, Formula]],
) -> _Conditioning:
    comp_schema = fitted.composition_schema
    var_schema = fitted.variability_schema

    if covariates is None:
        covariates = fitted.count_table.covariates
        default_totals = fitted.count_table.totals
    else:
        covariates = pd.DataFrame(covariates)
        # Groupings left out of new covariates count as unseen levels
        absent = [
            g.covariate
            for g in comp_schema.random_effects
            if g.covariate not in covariates.columns
        ]
        if absent:
            covariates = covariates.assign(**{name: None for name in absent})
        # New samples are conditioned on the average fitted depth
        default_totals = np.full(
            len(covariates), int(round(fitted.count_table.totals.mean()))
        )

    if totals is None:
        totals = default_totals
    totals = np.asarray(totals)
    if totals.ndim == 0:
        totals = np.full(len(covariates), int(totals))
    if totals.shape != (len(covariates),):
        raise MalformedInputError(
            f"Expected {len(covariates)} totals, got shape {totals.shape}"
        )
    if (totals < 0).any() or not np.all(np.floor(totals) == totals):
        raise MalformedInputError("Totals must be non-negative integers")

    if composition_formula is None:
        beta_mask = np.ones(comp_schema.n_columns, dtype=bool)
        random_kept = tuple(True for _ in comp_schema.random_effects)
    else:
        reduced = parse_formula(composition_formula)
        beta_mask = comp_schema.reduced_mask(reduced)
        random_kept = tuple(
            g.covariate in reduced.random_groupings for g in comp_schema.random_effects
        )

    if variability_formula is None:
        gamma_mask = np.ones(var_schema.n_columns, dtype=bool)
    else:
        reduced = parse_formula(variability_formula)
        if reduced.random:
            raise FormulaError(
                f"Variability formula {reduced} cannot declare random effects"
            )
        gamma_mask = var_schema.reduced_mask(reduced)

    return _Conditioning(
        samples=tuple(covariates.index),
        covariates=covariates,
        X=comp_schema.build(covariates),
        Xv=var_schema.build(covariates),
        re_index=comp_schema.random_effect_index(covariates),
        totals=totals.astype(np.int64),
        beta_mask=beta_mask,
        gamma_mask=gamma_mask,
        random_kept=random_kept,
    )


# ------------------------------------------------------------------------------
# Coefficients per mode
# ------------------------------------------------------------------------------


def _centred(x: jnp.ndarray) -> jnp.ndarray:
    return x - x.mean(axis=-1, keepdims=True)


def _hyperprior_coefficients(
    fitted: FittedModel, draw: int, key: jnp.ndarray
) -> Tuple[jnp.ndarray, jnp.ndarray, List[jnp.ndarray]]:
    """Group coefficients redrawn from one draw of the global hyperparameters."""
    s = fitted.samples
    data = fitted.model_data
    K = data.n_groups
    P, Pv = data.X.shape[1], data.Xv.shape[1]
    keys = random.split(key, 4 + len(data.re_names))

    beta_scale = jnp.asarray(s["beta_scale"][draw])
    beta = _centred(beta_scale[:, None] * random.normal(keys[0], (P, K)))
    baseline_abundance = (jnp.asarray(data.X) @ beta).mean(axis=0)

    sd = s["assoc_sd"][draw]
    intercept = jnp.asarray(s["assoc_intercept"][draw])
    slope = jnp.asarray(s["assoc_slope"][draw])
    if fitted.config.bimodal_mean_variability_association:
        weight = s["assoc_weight"][draw]
        component = random.bernoulli(keys[1], 1.0 - weight, (K,)).astype(int)
        line = intercept[component] + slope[component] * baseline_abundance
    else:
        line = intercept + slope * baseline_abundance
    gamma0 = line + sd * random.normal(keys[2], (K,))
    if Pv > 1:
        gamma_scale = jnp.asarray(s["gamma_scale"][draw])
        slopes = gamma_scale[:, None] * random.normal(keys[3], (Pv - 1, K))
        gamma = jnp.concatenate([gamma0[None, :], slopes], axis=0)
    else:
        gamma = gamma0[None, :]

    random_effects = []
    for f, (name, n_levels) in enumerate(zip(data.re_names, data.re_levels)):
        scale = s[random_scale_site(name)][draw]
        random_effects.append(
            _centred(scale * random.normal(keys[4 + f], (n_levels, K)))
        )
    return beta, gamma, random_effects


def _coefficients(
    fitted: FittedModel,
    mode: SimulationMode,
    draw: int,
    key: jnp.ndarray,
) -> Tuple[jnp.ndarray, jnp.ndarray, List[jnp.ndarray]]:
    if mode is SimulationMode.HYPERPRIOR:
        return _hyperprior_coefficients(fitted, draw, key)
    beta = jnp.asarray(fitted.samples["beta"][draw])
    gamma = jnp.asarray(fitted.samples["gamma"][draw])
    if mode is SimulationMode.NO_RANDOM_EFFECTS:
        random_effects = [
            jnp.zeros(fitted.samples[random_effect_site(name)].shape[1:])
            for name in fitted.model_data.re_names
        ]
    else:
        random_effects = [
            jnp.asarray(fitted.samples[random_effect_site(name)][draw])
            for name in fitted.model_data.re_names
        ]
    return beta, gamma, random_effects


def _predictors(
    cond: _Conditioning,
    beta: jnp.ndarray,
    gamma: jnp.ndarray,
    random_effects: List[jnp.ndarray],
) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """Composition and log-variability predictors with omitted terms zeroed."""
    beta = beta * jnp.asarray(cond.beta_mask, dtype=beta.dtype)[:, None]
    gamma = gamma * jnp.asarray(cond.gamma_mask, dtype=gamma.dtype)[:, None]
    kept = tuple(
        u if keep else jnp.zeros_like(u)
        for u, keep in zip(random_effects, cond.random_kept)
    )
    eta = composition_predictor(
        jnp.asarray(cond.X), beta, jnp.asarray(cond.re_index), kept
    )
    log_phi = jnp.asarray(cond.Xv) @ gamma
    return eta, log_phi


def _draw_indices(n_replicates: int, n_draws: int) -> np.ndarray:
    """Posterior draw behind each replicate, evenly spread over the chains."""
    if n_replicates <= n_draws:
        return (np.arange(n_replicates) * n_draws) // n_replicates
    return np.arange(n_replicates) % n_draws


# ==============================================================================
# Replicates
# ==============================================================================


@dataclass(frozen=True, eq=False)
class ReplicateDataset:
    """One simulated dataset.

    Attributes
    ----------
    index : int
        Position in its sequence.
    draw : int
        Posterior draw the replicate was generated from.
    table : CountTable
        Simulated counts with the conditioning samples and covariates.
    proportions : np.ndarray
        Simplex proportions the counts were drawn from, ``(n_samples, K)``.
    """

    index: int
    draw: int
    table: CountTable
    proportions: np.ndarray

    @property
    def counts(self) -> np.ndarray:
        return self.table.counts


# ------------------------------------------------------------------------------


class ReplicateSequence(SequenceABC):
    """Lazy, finite, restartable sequence of replicate datasets.

    Replicate ``i`` is generated on access from a key derived from the seed
    and ``i`` alone, so repeated or out-of-order access returns identical
    datasets.
    """

    def __init__(
        self,
        fitted: FittedModel,
        number_of_draws: int,
        mode: SimulationMode,
        conditioning: _Conditioning,
        seed: int = 0,
    ):
        self.fitted = fitted
        self.mode = mode
        self.seed = seed
        self._n = number_of_draws
        self._cond = conditioning
        self._draws = _draw_indices(number_of_draws, fitted.n_draws)
        self._key = random.PRNGKey(seed)

    def __len__(self) -> int:
        return self._n

    def __getitem__(self, index):
        if isinstance(index, slice):
            return [self[i] for i in range(*index.indices(self._n))]
        if index < 0:
            index += self._n
        if not 0 <= index < self._n:
            raise IndexError(f"Replicate index {index} out of range")
        return self._generate(int(index))

    def _generate(self, index: int) -> ReplicateDataset:
        draw = int(self._draws[index])
        key_coef, key_beta, key_multi = random.split(
            random.fold_in(self._key, index), 3
        )
        beta, gamma, random_effects = _coefficients(
            self.fitted, self.mode, draw, key_coef
        )
        eta, log_phi = _predictors(self._cond, beta, gamma, random_effects)
        alpha, beta_conc = beta_binomial_concentrations(eta, log_phi)

        p = dist.Beta(alpha, beta_conc).sample(key_beta)
        p = jnp.clip(p, 1e-30, None)
        p = p / p.sum(axis=-1, keepdims=True)

        totals = self._cond.totals
        counts = dist.Multinomial(
            total_count=jnp.asarray(totals),
            probs=p,
            total_count_max=int(totals.max()) if totals.size else 0,
        ).sample(key_multi)

        table = CountTable(
            counts=np.asarray(counts, dtype=np.int64),
            samples=self._cond.samples,
            groups=self.fitted.groups,
            covariates=self._cond.covariates,
        )
        return ReplicateDataset(index, draw, table, np.asarray(p))

    def __repr__(self) -> str:
        return (
            f"ReplicateSequence(n={self._n}, mode={self.mode.value}, "
            f"samples={len(self._cond.samples)})"
        )


# ------------------------------------------------------------------------------


def simulate(
    fitted: FittedModel,
    number_of_draws: int,
    mode: Union[str, SimulationMode] = SimulationMode.POSTERIOR,
    covariates: Optional[pd.DataFrame] = None,
    totals=None,
    composition_formula: Optional[Union[str, Formula]] = None,
    variability_formula: Optional[Union[str, Formula]] = None,
    seed: int = 0,
) -> ReplicateSequence:
    """Posterior predictive replicate datasets.

    Parameters
    ----------
    fitted : FittedModel
        Fitted model to simulate from.
    number_of_draws : int
        Number of replicate datasets.
    mode : {"posterior", "no_random_effects", "hyperprior"}
        ``posterior`` uses every posterior quantity; ``no_random_effects``
        ignores sample-level random intercepts; ``hyperprior`` redraws the
        group coefficients from the posterior global hyperparameters.
    covariates : pd.DataFrame, optional
        Per-sample covariates to condition on (index = sample ids). Defaults
        to the fitted samples.
    totals : int or array-like, optional
        Per-sample totals. Defaults to the fitted totals, or to the average
        fitted total for new covariates.
    composition_formula, variability_formula : str or Formula, optional
        Reduced formulas; terms they omit are zeroed. Baseline columns are
        always kept.
    seed : int, default=0
        Seed; replicate ``i`` depends only on ``seed`` and ``i``.

    Returns
    -------
    ReplicateSequence
        Lazy sequence of ``ReplicateDataset``.

    Raises
    ------
    FormulaError
        If a reduced formula references covariates the fit does not use, or
        new covariates hold unseen factor levels.
    MalformedInputError
        If totals are malformed.
    """
    if number_of_draws <= 0:
        raise ValueError(f"number_of_draws must be positive, got {number_of_draws}")
    mode = SimulationMode(mode)
    conditioning = _conditioning(
        fitted, covariates, totals, composition_formula, variability_formula
    )
    return ReplicateSequence(fitted, number_of_draws, mode, conditioning, seed=seed)


# ==============================================================================
# Derived summaries
# ==============================================================================


def posterior_predictive_check(
    fitted: FittedModel,
    number_of_draws: int = 200,
    credible_level: float = 0.95,
    seed: int = 0,
) -> pd.DataFrame:
    """Observed counts against posterior predictive replicate intervals.

    Returns
    -------
    pd.DataFrame
        One row per (sample, group) with ``observed``, replicate ``mean``,
        ``lower`` and ``upper`` bounds, ``within`` (observed inside the
        interval) and ``excluded`` (outlier mask of the fit).
    """
    replicates = simulate(fitted, number_of_draws, seed=seed)
    counts = np.stack([r.counts for r in replicates])
    tail = 0.5 * (1.0 - credible_level)
    lower, upper = np.quantile(counts, [tail, 1.0 - tail], axis=0)

    long = fitted.count_table.to_long()[["sample", "group", "count"]]
    long = long.rename(columns={"count": "observed"})
    long["mean"] = counts.mean(axis=0).ravel()
    long["lower"] = lower.ravel()
    long["upper"] = upper.ravel()
    long["within"] = (long["observed"] >= long["lower"]) & (
        long["observed"] <= long["upper"]
    )
    long["excluded"] = np.asarray(fitted.outlier_mask).ravel()
    return long


# ------------------------------------------------------------------------------


def _proportion_draws(
    fitted: FittedModel, cond: _Conditioning, mode: SimulationMode, seed: int = 0
) -> np.ndarray:
    """Expected proportions per posterior draw, ``(draws, n_samples, K)``."""
    if mode is SimulationMode.HYPERPRIOR:
        key = random.PRNGKey(seed)
        draws = []
        for d in range(fitted.n_draws):
            beta, gamma, random_effects = _coefficients(
                fitted, mode, d, random.fold_in(key, d)
            )
            eta, _ = _predictors(cond, beta, gamma, random_effects)
            draws.append(softmax(eta, axis=-1))
        return np.asarray(jnp.stack(draws))

    # Posterior draws: every draw at once
    samples = fitted.samples
    random_effects = [
        jnp.asarray(samples[random_effect_site(name)])
        for name in fitted.model_data.re_names
    ]
    if mode is SimulationMode.NO_RANDOM_EFFECTS:
        random_effects = [jnp.zeros_like(u) for u in random_effects]
    eta, _ = _predictors(
        cond, jnp.asarray(samples["beta"]), jnp.asarray(samples["gamma"]), random_effects
    )
    return np.asarray(softmax(eta, axis=-1))


def predict_proportions(
    fitted: FittedModel,
    covariates: Optional[pd.DataFrame] = None,
    mode: Union[str, SimulationMode] = SimulationMode.POSTERIOR,
    composition_formula: Optional[Union[str, Formula]] = None,
    credible_level: float = 0.95,
) -> pd.DataFrame:
    """Posterior summaries of expected cell-group proportions.

    Parameters
    ----------
    fitted : FittedModel
        Fitted model.
    covariates : pd.DataFrame, optional
        Covariates to predict for (index = sample ids). Defaults to the
        fitted samples; unseen random-effect levels contribute nothing.
    mode : str or SimulationMode
        Which posterior quantities enter the prediction.
    composition_formula : str or Formula, optional
        Reduced formula; omitted terms are zeroed.
    credible_level : float, default=0.95
        Mass of the equal-tailed interval.

    Returns
    -------
    pd.DataFrame
        One row per (sample, group) with ``mean``, ``median``, ``lower`` and
        ``upper``.
    """
    cond = _conditioning(fitted, covariates, None, composition_formula, None)
    draws = _proportion_draws(fitted, cond, SimulationMode(mode))
    tail = 0.5 * (1.0 - credible_level)
    lower, median, upper = np.quantile(draws, [tail, 0.5, 1.0 - tail], axis=0)

    index = pd.MultiIndex.from_product(
        [list(cond.samples), list(fitted.groups)], names=["sample", "group"]
    )
    return pd.DataFrame(
        {
            "mean": draws.mean(axis=0).ravel(),
            "median": median.ravel(),
            "lower": lower.ravel(),
            "upper": upper.ravel(),
        },
        index=index,
    ).reset_index()


# ------------------------------------------------------------------------------


def _round_preserving_totals(values: np.ndarray, totals: np.ndarray) -> np.ndarray:
    """Largest-remainder rounding of each row to its integer total."""
    floored = np.floor(values).astype(np.int64)
    shortfall = totals - floored.sum(axis=1)
    remainders = values - floored
    out = floored.copy()
    for s in range(values.shape[0]):
        if shortfall[s] > 0:
            top = np.argsort(-remainders[s], kind="stable")[: shortfall[s]]
            out[s, top] += 1
    return out


def remove_unwanted_variation(
    fitted: FittedModel, keep_formula: Union[str, Formula]
) -> CountTable:
    """Counts adjusted to retain only the effects of ``keep_formula``.

    Observed proportions are rescaled by the ratio of the posterior mean
    expected proportions under the reduced and the full predictor,
    renormalised, and redistributed over each sample's total.

    Parameters
    ----------
    fitted : FittedModel
        Fitted model.
    keep_formula : str or Formula
        Effects to keep, e.g. ``"~ type"`` to remove batch random effects.

    Returns
    -------
    CountTable
        Adjusted counts with unchanged samples, groups, covariates and
        per-sample totals.
    """
    full = _conditioning(fitted, None, None, None, None)
    reduced = _conditioning(fitted, None, None, keep_formula, None)
    mode = SimulationMode.POSTERIOR
    full_p = _proportion_draws(fitted, full, mode).mean(axis=0)
    kept_p = _proportion_draws(fitted, reduced, mode).mean(axis=0)

    table = fitted.count_table
    adjusted = table.proportions * kept_p / full_p
    adjusted = adjusted / adjusted.sum(axis=1, keepdims=True)
    counts = _round_preserving_totals(adjusted * table.totals[:, None], table.totals)
    return table.with_counts(counts)
