"""Structured results of composition and variability hypothesis tests.

- ``EffectEstimate`` holds the posterior summary of one effect (a design
  column or a linear contrast) in one cell group.
- ``HypothesisTestResult`` collects every estimate of a test run together
  with the degraded status of the fit and the number of excluded
  observations per group, and renders them as a wide table with ``c_``
  (composition) and ``v_`` (variability) columns.
"""

from dataclasses import dataclass
from typing import Dict, Hashable, List, Optional, Tuple

import numpy as np
import pandas as pd

from ..models.config import EffectKind, HypothesisTestConfig
from ._error_control import compute_pefp, find_pH0_threshold

# Per-kind columns of the wide table, in display order
_STAT_COLUMNS = (
    "effect",
    "lower",
    "upper",
    "probability",
    "pH0",
    "FDR",
    "significant",
)


# --------------------------------------------------------------------------
# Single estimate
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class EffectEstimate:
    """Posterior summary of one effect in one cell group.

    Attributes
    ----------
    label : str
        Design column name or contrast expression.
    group : hashable
        Cell group.
    kind : EffectKind
        Composition (logit scale) or variability (log-concentration scale).
    estimate : float
        Posterior median.
    lower, upper : float
        Equal-tailed credible interval bounds.
    probability : float
        Posterior probability that ``|effect|`` exceeds the threshold.
    pH0 : float
        ``1 - probability``.
    fdr : float
        Bayesian false discovery rate at this effect's ``pH0``.
    significant : bool
        ``probability`` exceeds the confidence level.
    degraded : bool
        The fit behind the estimate failed its convergence diagnostics.
    """

    label: str
    group: Hashable
    kind: EffectKind
    estimate: float
    lower: float
    upper: float
    probability: float
    pH0: float
    fdr: float
    significant: bool
    degraded: bool = False


# --------------------------------------------------------------------------
# Test results
# --------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class HypothesisTestResult:
    """Every effect estimate of one hypothesis test run.

    Attributes
    ----------
    estimates : tuple of EffectEstimate
        Composition estimates first, then variability estimates; within a
        kind, ordered by label then group.
    labels : tuple of str
        Tested effects, in request order.
    groups : tuple
        Cell groups.
    config : HypothesisTestConfig
        Thresholds and levels used.
    degraded : bool
        The underlying fit failed its convergence diagnostics.
    n_outliers : Mapping of group to int
        Observations excluded as outliers, per cell group.
    """

    estimates: Tuple[EffectEstimate, ...]
    labels: Tuple[str, ...]
    groups: Tuple[Hashable, ...]
    config: HypothesisTestConfig
    degraded: bool
    n_outliers: Dict[Hashable, int]

    # ----------------------------------------------------------------------

    def of_kind(self, kind: EffectKind) -> Tuple[EffectEstimate, ...]:
        """Estimates of one kind."""
        kind = EffectKind(kind)
        return tuple(e for e in self.estimates if e.kind is kind)

    def for_label(self, label: str) -> Tuple[EffectEstimate, ...]:
        """Estimates of one effect, every kind and group."""
        return tuple(e for e in self.estimates if e.label == label)

    def get(
        self, label: str, group: Hashable, kind: EffectKind = EffectKind.COMPOSITION
    ) -> EffectEstimate:
        """The estimate of ``label`` in ``group``.

        Raises
        ------
        KeyError
            If no such estimate exists.
        """
        kind = EffectKind(kind)
        for e in self.estimates:
            if e.label == label and e.group == group and e.kind is kind:
                return e
        raise KeyError((label, group, kind.value))

    def significant(
        self, kind: Optional[EffectKind] = None
    ) -> Tuple[EffectEstimate, ...]:
        """Significant estimates, optionally of one kind."""
        pool = self.estimates if kind is None else self.of_kind(kind)
        return tuple(e for e in pool if e.significant)

    # ----------------------------------------------------------------------
    # Error control
    # ----------------------------------------------------------------------

    def compute_pefp(self, kind: EffectKind = EffectKind.COMPOSITION) -> float:
        """PEFP of the significant estimates of one kind."""
        pool = self.of_kind(kind)
        return compute_pefp(
            np.array([e.pH0 for e in pool]), np.array([e.significant for e in pool])
        )

    def call_effects(
        self, target_pefp: float = 0.05, kind: EffectKind = EffectKind.COMPOSITION
    ) -> Tuple[EffectEstimate, ...]:
        """Largest set of estimates whose PEFP stays within ``target_pefp``."""
        pool = self.of_kind(kind)
        threshold = find_pH0_threshold(np.array([e.pH0 for e in pool]), target_pefp)
        return tuple(e for e in pool if e.pH0 <= threshold)

    # ----------------------------------------------------------------------
    # Tabular views
    # ----------------------------------------------------------------------

    def to_dataframe(self) -> pd.DataFrame:
        """Wide table: one row per (effect, group).

        Columns are ``c_<stat>`` and ``v_<stat>`` for ``effect``, ``lower``,
        ``upper``, ``probability``, ``pH0``, ``FDR`` and ``significant``,
        followed by ``n_outliers`` and ``degraded``. Statistics that were not
        estimated (for example ``v_`` columns of a contrast absent from the
        variability design) are NaN.
        """
        rows: Dict[Tuple[str, Hashable], Dict[str, object]] = {}
        for label in self.labels:
            for group in self.groups:
                row: Dict[str, object] = {"parameter": label, "group": group}
                for kind in EffectKind:
                    for stat in _STAT_COLUMNS:
                        row[f"{kind.prefix}{stat}"] = np.nan
                row["n_outliers"] = self.n_outliers.get(group, 0)
                row["degraded"] = self.degraded
                rows[(label, group)] = row

        for e in self.estimates:
            row = rows[(e.label, e.group)]
            prefix = e.kind.prefix
            row[f"{prefix}effect"] = e.estimate
            row[f"{prefix}lower"] = e.lower
            row[f"{prefix}upper"] = e.upper
            row[f"{prefix}probability"] = e.probability
            row[f"{prefix}pH0"] = e.pH0
            row[f"{prefix}FDR"] = e.fdr
            row[f"{prefix}significant"] = e.significant

        return pd.DataFrame(list(rows.values()))

    def summary(self, kind: EffectKind = EffectKind.COMPOSITION) -> str:
        """Short text summary of one kind of effect."""
        kind = EffectKind(kind)
        pool = self.of_kind(kind)
        n_sig = sum(e.significant for e in pool)
        lines: List[str] = [
            f"{kind.value.capitalize()} effects",
            "=" * 40,
            f"  effects tested : {len(pool)}",
            f"  significant    : {n_sig}",
            f"  PEFP           : {self.compute_pefp(kind):.3f}",
        ]
        if self.degraded:
            lines.append(
                "\n  WARNING: the fit did not converge; estimates are degraded."
            )
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"HypothesisTestResult(effects={len(self.labels)}, "
            f"groups={len(self.groups)}, estimates={len(self.estimates)}, "
            f"degraded={self.degraded})"
        )
