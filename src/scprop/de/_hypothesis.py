"""Posterior tests of composition and variability effects.

An effect is a design column or a linear contrast over design columns,
evaluated on the posterior draws of the composition coefficients ``beta``
(logit scale) and, when it is expressible in the variability design, of the
variability coefficients ``gamma`` (log-concentration scale). For every cell
group the posterior of the effect is summarised by its median, an
equal-tailed credible interval and the probability that its magnitude
exceeds a minimal-effect threshold.
"""

import warnings
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from ..errors import ConvergenceWarning, UnknownContrastError
from ..formula.contrast import LinearContrast, parse_contrast
from ..mcmc.results import FittedModel
from ..models.config import EffectKind, HypothesisTestConfig
from ._error_control import compute_bayesian_fdr
from .results import EffectEstimate, HypothesisTestResult

# --------------------------------------------------------------------------
# Posterior summaries
# --------------------------------------------------------------------------


def effect_draws(coefficients: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """Draws of a linear effect, shape ``(draws, n_groups)``.

    Parameters
    ----------
    coefficients : np.ndarray, shape ``(draws, columns, n_groups)``
    weights : np.ndarray, shape ``(columns,)``
    """
    return np.einsum("dpk,p->dk", np.asarray(coefficients), weights)


def summarize_effect(
    draws: np.ndarray, threshold: float, credible_level: float = 0.95
) -> Dict[str, np.ndarray]:
    """Median, credible interval and effect probability per group.

    Parameters
    ----------
    draws : np.ndarray, shape ``(draws, n_groups)``
        Posterior draws of the effect.
    threshold : float
        Minimal effect magnitude.
    credible_level : float, default=0.95
        Mass of the equal-tailed interval.

    Returns
    -------
    dict
        ``estimate``, ``lower``, ``upper``, ``probability`` and ``pH0``
        arrays of shape ``(n_groups,)``.
    """
    tail = 0.5 * (1.0 - credible_level)
    lower, estimate, upper = np.quantile(draws, [tail, 0.5, 1.0 - tail], axis=0)
    probability = (np.abs(draws) > threshold).mean(axis=0)
    return {
        "estimate": estimate,
        "lower": lower,
        "upper": upper,
        "probability": probability,
        "pH0": 1.0 - probability,
    }


# --------------------------------------------------------------------------
# Effect resolution
# --------------------------------------------------------------------------


_BOTH_KINDS = (EffectKind.COMPOSITION, EffectKind.VARIABILITY)


def _default_contrasts(
    fitted: FittedModel,
) -> List[Tuple[LinearContrast, Tuple[EffectKind, ...]]]:
    """Default effects of each kind, tested only in that kind.

    Non-baseline columns are tested as they are. The levels of a full-coded
    factor (a formula without intercept) are baselines, so each is compared
    with the factor's first level instead.
    """
    schemas = {
        EffectKind.COMPOSITION: fitted.composition_schema,
        EffectKind.VARIABILITY: fitted.variability_schema,
    }
    defaults = []
    for kind, schema in schemas.items():
        for column in schema.columns:
            if not column.baseline:
                defaults.append((LinearContrast.from_column(column.name), (kind,)))
        for coding in schema.factors:
            if coding.reference is not None:
                continue
            first, *others = [
                c.name for c in schema.columns if c.covariate == coding.covariate
            ]
            for name in others:
                contrast = LinearContrast(
                    label=f"{name} - {first}", weights=((name, 1.0), (first, -1.0))
                )
                defaults.append((contrast, (kind,)))
    if not defaults:
        # Intercept-only composition: test the baseline columns themselves
        defaults = [
            (LinearContrast.from_column(name), _BOTH_KINDS)
            for name in fitted.composition_schema.column_names
        ]
    return defaults


def _resolve_contrasts(
    fitted: FittedModel,
    contrasts: Optional[Union[str, LinearContrast, Sequence[Union[str, LinearContrast]]]],
) -> List[Tuple[LinearContrast, Tuple[EffectKind, ...]]]:
    if contrasts is None:
        return _default_contrasts(fitted)
    if isinstance(contrasts, (str, LinearContrast)):
        contrasts = [contrasts]

    composition_columns = fitted.columns(EffectKind.COMPOSITION)
    resolved = []
    for contrast in contrasts:
        if isinstance(contrast, LinearContrast):
            for name in contrast.columns:
                if name not in composition_columns:
                    raise UnknownContrastError(name, composition_columns)
            resolved.append((contrast, _BOTH_KINDS))
        else:
            resolved.append((parse_contrast(contrast, composition_columns), _BOTH_KINDS))
    return resolved


# --------------------------------------------------------------------------
# Public API
# --------------------------------------------------------------------------


def hypothesis_test(
    fitted: FittedModel,
    contrasts=None,
    config: Optional[HypothesisTestConfig] = None,
) -> HypothesisTestResult:
    """Test composition and variability effects of a fitted model.

    Parameters
    ----------
    fitted : FittedModel
        Posterior to test.
    contrasts : str, LinearContrast or sequence of them, optional
        Effects to test. Strings are linear expressions over composition
        design column names, e.g. ``"typecancer - typehealthy"``. By default
        every non-baseline column is tested in its own design only (``c_``
        for composition columns, ``v_`` for variability columns), and the
        levels of a full-coded factor are tested against its first level.
    config : HypothesisTestConfig, optional
        Credible level, minimal-effect thresholds and confidence level.

    Returns
    -------
    HypothesisTestResult
        Composition (``c_``) estimates for every effect and group, plus
        variability (``v_``) estimates for effects expressible in the
        variability design.

    Raises
    ------
    UnknownContrastError
        If a contrast references a column absent from the composition design.
    FormulaError
        If a contrast expression is malformed or non-linear.

    Warns
    -----
    ConvergenceWarning
        If the fit is degraded; every estimate then carries
        ``degraded=True``.

    Examples
    --------
    >>> result = hypothesis_test(fitted, ["typecancer - typehealthy"])
    >>> result.to_dataframe()[["parameter", "group", "c_effect", "c_FDR"]]
    """
    config = config or HypothesisTestConfig()
    resolved = _resolve_contrasts(fitted, contrasts)
    degraded = fitted.is_degraded
    if degraded:
        warnings.warn(
            "Hypothesis test on a fit that did not converge; estimates are "
            f"degraded ({fitted.convergence_error})",
            ConvergenceWarning,
            stacklevel=2,
        )

    groups = tuple(fitted.groups)
    composition_columns = fitted.columns(EffectKind.COMPOSITION)
    variability_columns = fitted.columns(EffectKind.VARIABILITY)
    thresholds = {
        EffectKind.COMPOSITION: config.composition_threshold,
        EffectKind.VARIABILITY: config.variability_threshold,
    }

    # Summaries per kind: list of (contrast, summary dict)
    summaries: Dict[EffectKind, List[Tuple[LinearContrast, Dict[str, np.ndarray]]]] = {
        EffectKind.COMPOSITION: [],
        EffectKind.VARIABILITY: [],
    }
    for contrast, kinds in resolved:
        if EffectKind.COMPOSITION in kinds and contrast.is_resolvable(
            composition_columns
        ):
            draws = effect_draws(
                fitted.coefficients(EffectKind.COMPOSITION),
                contrast.vector(composition_columns),
            )
            summaries[EffectKind.COMPOSITION].append(
                (
                    contrast,
                    summarize_effect(
                        draws, thresholds[EffectKind.COMPOSITION], config.credible_level
                    ),
                )
            )
        if EffectKind.VARIABILITY in kinds and contrast.is_resolvable(
            variability_columns
        ):
            draws = effect_draws(
                fitted.coefficients(EffectKind.VARIABILITY),
                contrast.vector(variability_columns),
            )
            summaries[EffectKind.VARIABILITY].append(
                (
                    contrast,
                    summarize_effect(
                        draws, thresholds[EffectKind.VARIABILITY], config.credible_level
                    ),
                )
            )

    estimates: List[EffectEstimate] = []
    for kind, entries in summaries.items():
        if not entries:
            continue
        # FDR over every effect and group of this kind
        fdr = compute_bayesian_fdr(np.stack([s["pH0"] for _, s in entries]))
        for (contrast, summary), fdr_row in zip(entries, fdr):
            for g, group in enumerate(groups):
                estimates.append(
                    EffectEstimate(
                        label=contrast.label,
                        group=group,
                        kind=kind,
                        estimate=float(summary["estimate"][g]),
                        lower=float(summary["lower"][g]),
                        upper=float(summary["upper"][g]),
                        probability=float(summary["probability"][g]),
                        pH0=float(summary["pH0"][g]),
                        fdr=float(fdr_row[g]),
                        significant=bool(
                            summary["probability"][g] > config.confidence
                        ),
                        degraded=degraded,
                    )
                )

    n_outliers = {group: int(n) for group, n in zip(groups, fitted.n_outliers)}
    return HypothesisTestResult(
        estimates=tuple(estimates),
        labels=tuple(c.label for c, _ in resolved),
        groups=groups,
        config=config,
        degraded=degraded,
        n_outliers=n_outliers,
    )
