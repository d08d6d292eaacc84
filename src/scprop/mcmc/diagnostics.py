"""
Convergence diagnostics for multi-chain posterior samples.

Split R-hat and effective sample size come from ``numpyro.diagnostics`` and
are computed element-wise for every monitored site.
"""

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from numpyro.diagnostics import effective_sample_size, split_gelman_rubin

from ..errors import ConvergenceError
from .inference_engine import ChainResult

# ==============================================================================
# Per-site summaries
# ==============================================================================


def summarize_chains(
    chains: List[ChainResult], sites: Sequence[str]
) -> pd.DataFrame:
    """Element-wise posterior summary and convergence statistics.

    Parameters
    ----------
    chains : list of ChainResult
        Per-chain samples, in chain order.
    sites : sequence of str
        Sites to summarise; sites absent from the samples are skipped.

    Returns
    -------
    pd.DataFrame
        One row per scalar element with columns ``site``, ``index``,
        ``mean``, ``sd``, ``r_hat`` and ``n_eff``.
    """
    rows = []
    ordered = sorted(chains, key=lambda c: c.chain)
    for site in sites:
        if site not in ordered[0].samples:
            continue
        # (chains, draws, *event)
        stacked = np.stack([c.samples[site] for c in ordered], axis=0)
        stacked = stacked.astype(np.float64)
        r_hat = np.asarray(split_gelman_rubin(stacked))
        n_eff = np.asarray(effective_sample_size(stacked))
        mean = stacked.mean(axis=(0, 1))
        sd = stacked.std(axis=(0, 1))
        for index in np.ndindex(*stacked.shape[2:]):
            rows.append(
                {
                    "site": site,
                    "index": index,
                    "mean": float(mean[index]),
                    "sd": float(sd[index]),
                    "r_hat": float(r_hat[index]),
                    "n_eff": float(n_eff[index]),
                }
            )
    return pd.DataFrame(rows, columns=["site", "index", "mean", "sd", "r_hat", "n_eff"])


# ==============================================================================
# Convergence assessment
# ==============================================================================


def assess_convergence(
    diagnostics: pd.DataFrame,
    n_divergences: int,
    max_r_hat: float,
    min_n_eff: float,
) -> Tuple[Tuple[str, ...], Optional[ConvergenceError]]:
    """Compare diagnostics with their thresholds.

    Sites whose samples have zero variance (for example a constant
    deterministic) yield NaN statistics and are ignored.

    Returns
    -------
    messages : tuple of str
        Human-readable convergence warnings, possibly empty.
    error : ConvergenceError or None
        Set when R-hat or the effective sample size fails its threshold.
    """
    messages: List[str] = []
    r_hat = diagnostics["r_hat"].to_numpy(dtype=float)
    n_eff = diagnostics["n_eff"].to_numpy(dtype=float)
    worst_r_hat = float(np.nanmax(r_hat)) if np.isfinite(r_hat).any() else None
    worst_n_eff = float(np.nanmin(n_eff)) if np.isfinite(n_eff).any() else None

    failed = False
    if worst_r_hat is not None and worst_r_hat > max_r_hat:
        failed = True
        bad_sites = sorted(set(diagnostics.loc[r_hat > max_r_hat, "site"]))
        messages.append(
            f"Split R-hat {worst_r_hat:.3f} exceeds {max_r_hat} at sites {bad_sites}"
        )
    if worst_n_eff is not None and worst_n_eff < min_n_eff:
        failed = True
        bad_sites = sorted(set(diagnostics.loc[n_eff < min_n_eff, "site"]))
        messages.append(
            f"Effective sample size {worst_n_eff:.1f} below {min_n_eff} at "
            f"sites {bad_sites}"
        )
    if n_divergences > 0:
        messages.append(f"{n_divergences} divergent transitions after warmup")

    error = None
    if failed:
        error = ConvergenceError(
            "Posterior sampling did not converge: " + "; ".join(messages),
            max_r_hat=worst_r_hat,
            min_n_eff=worst_n_eff,
            n_divergences=n_divergences,
        )
    return tuple(messages), error


# ------------------------------------------------------------------------------


def site_summary(diagnostics: pd.DataFrame) -> pd.DataFrame:
    """Worst R-hat and effective sample size per site."""
    return diagnostics.groupby("site", sort=False).agg(
        max_r_hat=("r_hat", "max"), min_n_eff=("n_eff", "min")
    )


def chain_samples(chains: List[ChainResult]) -> Tuple[Dict[str, np.ndarray], ...]:
    """Per-chain sample dictionaries, in chain order."""
    return tuple(c.samples for c in sorted(chains, key=lambda c: c.chain))
