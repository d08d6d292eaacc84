"""Pareto-smoothed importance sampling leave-one-out cross-validation.

Each observation is one (sample, cell group) count. Its leave-one-out
predictive density is approximated from the posterior draws by importance
re-weighting with ratios ``1 / p(y_i | theta^s)``; the largest ratios are
replaced by quantiles of a generalized Pareto distribution fitted to the tail,
and the fitted shape ``k_hat`` is kept as a per-observation reliability
diagnostic (``k_hat >= 0.7`` is unreliable).

References
----------
Vehtari, Gelman, Gabry (2017), "Practical Bayesian model evaluation using
    leave-one-out cross-validation and WAIC." Statistics and Computing.
"""

from typing import Dict, Optional, Tuple

import numpy as np
from scipy import stats
from scipy.special import logsumexp

# Pareto shape above which an observation's LOO estimate is unreliable
K_HAT_THRESHOLD = 0.7

# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _n_tail(n_draws: int) -> int:
    """Tail size ``M = min(S // 5, ceil(3 sqrt(S)))``, at least 5."""
    return max(5, min(n_draws // 5, int(np.ceil(3.0 * np.sqrt(n_draws)))))


def _fit_gpd(excess: np.ndarray) -> Tuple[float, float]:
    """Fit a generalized Pareto distribution (``loc=0``) to tail excesses.

    Returns
    -------
    k_hat : float
        Pareto shape.
    sigma_hat : float
        Pareto scale.
    """
    excess = excess[excess > 0]
    if len(excess) < 5:
        spread = float(np.std(excess)) if len(excess) > 1 else 1e-8
        return 0.0, max(spread, 1e-8)

    try:
        k_hat, _, sigma_hat = stats.genpareto.fit(excess, floc=0.0)
    except (ValueError, RuntimeError, FloatingPointError):
        # Method of moments: mean = s / (1 - k), var = s^2 / ((1 - k)^2 (1 - 2k))
        mu = float(np.mean(excess))
        s2 = float(np.var(excess, ddof=1))
        if s2 < 1e-10 or mu < 1e-10:
            return 0.0, mu + 1e-8
        k_hat = float(np.clip(0.5 * (1.0 - mu**2 / s2), -2.0, 0.49))
        return k_hat, max(mu * (1.0 - k_hat), 1e-8)
    return float(np.clip(k_hat, -2.0, 2.0)), float(max(sigma_hat, 1e-8))


def _smooth_log_weights(log_weights: np.ndarray) -> Tuple[np.ndarray, float]:
    """Pareto-smooth the raw log importance weights of one observation."""
    S = len(log_weights)
    if np.ptp(log_weights) < 1e-10:
        return log_weights.copy(), 0.0

    M = _n_tail(S)
    order = np.argsort(log_weights)
    sorted_lw = log_weights[order]
    cutoff = sorted_lw[S - M - 1] if S > M else sorted_lw[0]

    # Tail on the weight scale, relative to the cutoff
    tail_w = np.exp(sorted_lw[S - M:] - cutoff)
    k_hat, sigma_hat = _fit_gpd(tail_w - tail_w[0])

    probs = (np.arange(1, M + 1) - 0.5) / M
    if abs(k_hat) < 1e-6:
        smoothed = tail_w[0] - sigma_hat * np.log1p(-probs)
    else:
        smoothed = tail_w[0] + stats.genpareto.ppf(
            probs, k_hat, loc=0.0, scale=sigma_hat
        )
    smoothed_lw = cutoff + np.log(np.maximum(smoothed, 1e-300))
    smoothed_lw = np.minimum(smoothed_lw, min(sorted_lw[-1], 0.75 * np.log(S)))

    out = log_weights.copy()
    out[order[S - M:]] = smoothed_lw
    return out, float(k_hat)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def compute_psis_loo(
    log_liks: np.ndarray,
    observed: Optional[np.ndarray] = None,
) -> Dict[str, np.ndarray]:
    """PSIS-LOO statistics from pointwise log-likelihoods.

    Parameters
    ----------
    log_liks : array-like, shape ``(S, ...)``
        Log-likelihood of every observation under every posterior draw. The
        first axis indexes the ``S`` draws; all trailing axes are flattened
        in C order into observations. A fitted model's
        ``(draws, n_samples, n_groups)`` array can be passed directly: each
        (sample, cell group) pair is one observation, and flat position
        ``s * n_groups + g`` holds sample ``s`` and group ``g``.
    observed : array-like of bool, optional
        Mask with the shape of the trailing axes of ``log_liks`` (for a fitted
        model, its ``(n_samples, n_groups)`` outlier mask inverted). Pairs
        marked False are dropped before any smoothing, so they contribute to
        neither ``elpd_loo`` nor ``lppd`` and get no ``k_hat``. All
        observations are kept when omitted.

    Returns
    -------
    dict
        ``elpd_loo``, ``p_loo``, ``looic``, ``lppd`` (floats), ``n_bad``
        (int, observations with ``k_hat >= 0.7``), and per-observation
        ``elpd_loo_i`` and ``k_hat`` arrays. The arrays are 1-D over the kept
        observations only, in flattened order; their length is the number
        of True entries of ``observed``.

    Raises
    ------
    ValueError
        If ``log_liks`` has no observation axis, or ``observed`` does not
        match its trailing shape.

    Notes
    -----
    Models fitted with different outlier exclusions are comparable only over
    the same observations; ``compare_models`` passes the union of their
    exclusions as ``observed`` for every model.

    Examples
    --------
    >>> rng = np.random.default_rng(0)
    >>> result = compute_psis_loo(rng.normal(-3.0, 0.5, size=(500, 20)))
    >>> result["k_hat"].shape
    (20,)
    >>> observed = np.ones((4, 5), dtype=bool)
    >>> observed[0, 2] = False
    >>> grid = rng.normal(-3.0, 0.5, size=(500, 4, 5))
    >>> compute_psis_loo(grid, observed=observed)["k_hat"].shape
    (19,)
    """
    log_liks = np.asarray(log_liks, dtype=np.float64)
    if log_liks.ndim < 2:
        raise ValueError(
            f"log_liks must have a draw axis and observations, got shape "
            f"{log_liks.shape}"
        )
    S = log_liks.shape[0]
    if observed is not None:
        observed = np.asarray(observed, dtype=bool)
        if observed.shape != log_liks.shape[1:]:
            raise ValueError(
                f"observed mask shape {observed.shape} does not match the "
                f"observation shape {log_liks.shape[1:]}"
            )
    log_liks = log_liks.reshape(S, -1)
    if observed is not None:
        log_liks = log_liks[:, observed.reshape(-1)]
    n = log_liks.shape[1]

    k_hat = np.zeros(n)
    elpd_loo_i = np.zeros(n)
    for i in range(n):
        smoothed_lw, k_hat[i] = _smooth_log_weights(-log_liks[:, i])
        elpd_loo_i[i] = logsumexp(smoothed_lw + log_liks[:, i]) - logsumexp(
            smoothed_lw
        )

    lppd = float(np.sum(logsumexp(log_liks, axis=0) - np.log(S)))
    elpd_loo = float(np.sum(elpd_loo_i))
    return {
        "elpd_loo": elpd_loo,
        "p_loo": lppd - elpd_loo,
        "looic": -2.0 * elpd_loo,
        "elpd_loo_i": elpd_loo_i,
        "k_hat": k_hat,
        "lppd": lppd,
        "n_bad": int(np.sum(k_hat >= K_HAT_THRESHOLD)),
    }


def psis_loo_summary(result: dict) -> str:
    """Multi-line text summary of :func:`compute_psis_loo` output."""
    k = result["k_hat"]
    n = max(len(k), 1)
    n_good = int(np.sum(k < 0.5))
    n_ok = int(np.sum((k >= 0.5) & (k < K_HAT_THRESHOLD)))
    n_bad = int(np.sum(k >= K_HAT_THRESHOLD))

    lines = [
        "PSIS-LOO Summary",
        "=" * 40,
        f"  elpd_loo : {result['elpd_loo']:.2f}",
        f"  p_loo    : {result['p_loo']:.2f}",
        f"  LOO-IC   : {result['looic']:.2f}",
        "",
        f"  Pareto k diagnostics (n={len(k)} observations):",
        f"    k < 0.5        (good) : {n_good:5d}  ({100 * n_good / n:5.1f}%)",
        f"    0.5 <= k < 0.7 (ok)   : {n_ok:5d}  ({100 * n_ok / n:5.1f}%)",
        f"    k >= 0.7       (bad)  : {n_bad:5d}  ({100 * n_bad / n:5.1f}%)",
    ]
    if n_bad > 0:
        lines.append(
            f"\n  WARNING: {n_bad} observations have k >= 0.7; their LOO "
            "contributions may be unreliable."
        )
    return "\n".join(lines)
