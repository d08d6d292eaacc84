"""
Outlier detection by posterior predictive checks with iterative refits.

Every observation (one sample's count of one cell group) is compared with its
posterior predictive distribution. Observations in the extreme tails are
flagged, excluded from the likelihood and the model is refitted; the cycle
repeats until the flagged set stops changing or the pass budget is spent.
"""

import threading
from dataclasses import dataclass, replace
from typing import FrozenSet, Hashable, List, Optional, Tuple

import numpy as np
from jax import random
from jax import numpy as jnp
from numpyro.infer import Predictive

from .inference import refit
from .mcmc.results import FittedModel
from .models.compositional import compositional_model
from .models.config import OutlierConfig, OutlierStage

__all__ = [
    "OutlierFlag",
    "OutlierPass",
    "OutlierDetector",
    "detect_and_refit",
    "posterior_predictive_counts",
    "tail_probabilities",
]

# ==============================================================================
# Flags
# ==============================================================================


@dataclass(frozen=True)
class OutlierFlag:
    """Outlier decision for one (sample, cell group) observation.

    Attributes
    ----------
    sample, group : hashable
        Observation labels.
    is_outlier : bool
        Whether the observation is excluded from the likelihood.
    probability : float
        Outlier probability, ``1 - tail_probability``.
    tail_probability : float
        Two-sided mid-p posterior predictive tail probability.
    """

    sample: Hashable
    group: Hashable
    is_outlier: bool
    probability: float
    tail_probability: float


@dataclass(frozen=True, eq=False)
class OutlierPass:
    """Record of one flagging pass."""

    number: int
    stage: OutlierStage
    flags: FrozenSet[OutlierFlag]
    mask: np.ndarray
    model: FittedModel

    @property
    def n_flagged(self) -> int:
        return int(self.mask.sum())


# ==============================================================================
# Posterior predictive checks
# ==============================================================================


def _thinned(samples, n_draws: int):
    total = next(iter(samples.values())).shape[0]
    if n_draws >= total:
        return {k: jnp.asarray(v) for k, v in samples.items()}
    idx = np.linspace(0, total - 1, n_draws).round().astype(int)
    return {k: jnp.asarray(np.asarray(v)[idx]) for k, v in samples.items()}


def posterior_predictive_counts(
    fitted: FittedModel, n_draws: int = 1_000, seed: int = 0
) -> np.ndarray:
    """Replicate counts from the fitted model's posterior predictive.

    Each observation is replicated from its own beta-binomial, conditioned on
    the observed sample total.

    Returns
    -------
    np.ndarray
        Replicate counts, shape ``(draws, n_samples, n_groups)``.
    """
    predictive = Predictive(
        compositional_model,
        posterior_samples=_thinned(fitted.samples, n_draws),
        return_sites=["counts"],
    )
    replicates = predictive(
        random.PRNGKey(seed),
        data=fitted.model_data,
        priors=fitted.config.priors,
        bimodal=fitted.config.bimodal_mean_variability_association,
    )["counts"]
    return np.asarray(replicates)


# ------------------------------------------------------------------------------


def tail_probabilities(observed: np.ndarray, replicates: np.ndarray) -> np.ndarray:
    """Two-sided mid-p tail probability of each observation.

    ``2 * min(P(rep < y) + P(rep = y) / 2, P(rep > y) + P(rep = y) / 2)``,
    capped at 1.

    Parameters
    ----------
    observed : np.ndarray, shape ``(n_samples, n_groups)``
    replicates : np.ndarray, shape ``(draws, n_samples, n_groups)``
    """
    observed = np.asarray(observed)[None]
    below = (replicates < observed).mean(axis=0)
    equal = (replicates == observed).mean(axis=0)
    above = (replicates > observed).mean(axis=0)
    lower = below + 0.5 * equal
    upper = above + 0.5 * equal
    return np.minimum(1.0, 2.0 * np.minimum(lower, upper))


# ------------------------------------------------------------------------------


def flag_outliers(
    fitted: FittedModel, config: OutlierConfig, seed: int
) -> Tuple[FrozenSet[OutlierFlag], np.ndarray]:
    """Flags for every observation and the corresponding exclusion mask."""
    replicates = posterior_predictive_counts(
        fitted, n_draws=config.n_predictive_draws, seed=seed
    )
    tail = tail_probabilities(fitted.count_table.counts, replicates)
    mask = tail < config.threshold

    table = fitted.count_table
    flags = frozenset(
        OutlierFlag(
            sample=table.samples[s],
            group=table.groups[g],
            is_outlier=bool(mask[s, g]),
            probability=float(1.0 - tail[s, g]),
            tail_probability=float(tail[s, g]),
        )
        for s in range(table.n_samples)
        for g in range(table.n_groups)
    )
    return flags, mask


def _consistent_with(
    flags: FrozenSet[OutlierFlag], fitted: FittedModel
) -> FrozenSet[OutlierFlag]:
    """Flags whose ``is_outlier`` is the exclusion ``fitted`` was fitted with."""
    table = fitted.count_table
    rows = {sample: s for s, sample in enumerate(table.samples)}
    cols = {group: g for g, group in enumerate(table.groups)}
    mask = fitted.outlier_mask
    return frozenset(
        replace(f, is_outlier=bool(mask[rows[f.sample], cols[f.group]])) for f in flags
    )


# ==============================================================================
# State machine
# ==============================================================================


class OutlierDetector:
    """Bounded flag/refit state machine.

    The supplied fit is pass 1 (stage ``INITIAL_FIT``). Each ``step`` flags
    the current model (``FLAGGING``) and then either stops or refits with the
    new exclusions (``REFIT``). It stops as ``CONVERGED`` when the flagged set
    equals the set the current model was fitted with, and as ``EXHAUSTED``
    after ``max_passes`` fits. The final flags carry the most recent pass's
    probabilities; their ``is_outlier`` always matches the exclusions of the
    final model, so an exhausted run does not report the unfitted proposal.

    Parameters
    ----------
    fitted : FittedModel
        Initial fit.
    config : OutlierConfig, optional
        Threshold, pass budget and predictive draw settings.
    cancel_event : threading.Event, optional
        Forwarded to every refit.

    Examples
    --------
    >>> detector = OutlierDetector(fitted, OutlierConfig(threshold=0.01))
    >>> model, flags = detector.run()
    >>> [p.n_flagged for p in detector.history]
    [2, 2]
    """

    def __init__(
        self,
        fitted: FittedModel,
        config: Optional[OutlierConfig] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.config = config or OutlierConfig()
        self.cancel_event = cancel_event
        self._model = fitted
        self._fits = 1
        self._stage = OutlierStage.INITIAL_FIT
        self._history: List[OutlierPass] = []
        self._flags: Optional[FrozenSet[OutlierFlag]] = None

    # --------------------------------------------------------------------------

    @property
    def stage(self) -> OutlierStage:
        return self._stage

    @property
    def model(self) -> FittedModel:
        """Most recent fitted model."""
        return self._model

    @property
    def flags(self) -> Optional[FrozenSet[OutlierFlag]]:
        """Flags of the most recent pass, or None before the first pass."""
        return self._flags

    @property
    def history(self) -> Tuple[OutlierPass, ...]:
        """Every flagging pass, oldest first."""
        return tuple(self._history)

    @property
    def done(self) -> bool:
        return self._stage.is_terminal

    # --------------------------------------------------------------------------

    def step(self) -> OutlierStage:
        """Advance by one flagging pass, refitting if another pass follows.

        Returns the stage reached; terminal stages are returned unchanged.
        """
        if self.done:
            return self._stage

        verbose = self._model.config.verbose
        self._stage = OutlierStage.FLAGGING
        flags, mask = flag_outliers(
            self._model, self.config, seed=self.config.seed + len(self._history)
        )
        if verbose:
            print(
                f"Outlier pass {len(self._history) + 1}: {int(mask.sum())} "
                f"observations flagged"
            )

        if np.array_equal(mask, self._model.outlier_mask):
            self._stage = OutlierStage.CONVERGED
        elif self._fits >= self.config.max_passes:
            self._stage = OutlierStage.EXHAUSTED
        else:
            self._stage = OutlierStage.REFIT

        # exhausted: is_outlier follows the mask of the model that is returned
        self._flags = (
            _consistent_with(flags, self._model)
            if self._stage is OutlierStage.EXHAUSTED
            else flags
        )

        self._history.append(
            OutlierPass(
                number=len(self._history) + 1,
                stage=self._stage,
                flags=flags,
                mask=mask,
                model=self._model,
            )
        )

        if self._stage is OutlierStage.REFIT:
            self._model = refit(self._model, mask, cancel_event=self.cancel_event)
            self._fits += 1
        return self._stage

    # --------------------------------------------------------------------------

    def run(self) -> Tuple[FittedModel, FrozenSet[OutlierFlag]]:
        """Step until a terminal stage; return the final model and flags."""
        while not self.done:
            self.step()
        return self._model, self._flags


# ------------------------------------------------------------------------------


def detect_and_refit(
    fitted: FittedModel,
    threshold: float = 0.01,
    max_passes: int = 3,
    config: Optional[OutlierConfig] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Tuple[FittedModel, FrozenSet[OutlierFlag]]:
    """Flag posterior predictive outliers and refit until stable.

    Parameters
    ----------
    fitted : FittedModel
        Initial fit.
    threshold : float, default=0.01
        Tail probability below which an observation is flagged.
    max_passes : int, default=3
        Maximum number of fits, the initial one included.
    config : OutlierConfig, optional
        Base configuration; ``threshold`` and ``max_passes`` override it.

    Returns
    -------
    model : FittedModel
        Final fit. If the first pass changes nothing, this is ``fitted``
        itself.
    flags : frozenset of OutlierFlag
        Decision for every observation. Probabilities come from the most
        recent pass; ``is_outlier`` matches ``model.outlier_mask``.
    """
    base = (config or OutlierConfig()).model_dump()
    config = OutlierConfig(**{**base, "threshold": threshold, "max_passes": max_passes})
    return OutlierDetector(fitted, config, cancel_event=cancel_event).run()
