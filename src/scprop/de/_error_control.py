"""Bayesian error control for effect testing.

Every tested effect carries ``pH0``, the posterior probability that its
magnitude is at most the minimal-effect threshold. Error-rate estimates are
built from these probabilities directly, without frequentist corrections.

Key concepts
------------
- **Bayesian FDR**: the expected proportion of false discoveries when calling
  every effect whose ``pH0`` is at most the effect's own ``pH0``; the
  cumulative mean of the sorted ``pH0`` values.
- **PEFP** (posterior expected false discovery proportion) of a given call
  set: the mean ``pH0`` of the called effects.
"""

import numpy as np

# --------------------------------------------------------------------------
# Bayesian FDR per effect
# --------------------------------------------------------------------------


def compute_bayesian_fdr(pH0: np.ndarray) -> np.ndarray:
    """Bayesian FDR of each effect.

    For the effect ranked ``k``-th by ascending ``pH0``, the FDR is the
    mean ``pH0`` of the ``k`` best-ranked effects. NaN entries are ignored
    and stay NaN.

    Parameters
    ----------
    pH0 : array-like
        Posterior null probabilities, any shape.

    Returns
    -------
    np.ndarray
        FDR values with the shape of ``pH0``.

    Examples
    --------
    >>> compute_bayesian_fdr(np.array([0.2, 0.0, 0.1]))
    array([0.1 , 0.  , 0.05])
    """
    pH0 = np.asarray(pH0, dtype=float)
    flat = pH0.ravel()
    fdr = np.full(flat.shape, np.nan)
    finite = np.flatnonzero(np.isfinite(flat))
    if finite.size == 0:
        return fdr.reshape(pH0.shape)

    order = finite[np.argsort(flat[finite], kind="stable")]
    fdr[order] = np.cumsum(flat[order]) / np.arange(1, order.size + 1)
    return fdr.reshape(pH0.shape)


# --------------------------------------------------------------------------
# Posterior expected false discovery proportion (PEFP)
# --------------------------------------------------------------------------


def compute_pefp(pH0: np.ndarray, called: np.ndarray) -> float:
    """Posterior expected false discovery proportion of a call set.

    ``PEFP = sum(pH0 of called effects) / (# called effects)``; 0 when
    nothing is called.

    Parameters
    ----------
    pH0 : array-like
        Posterior null probabilities.
    called : array-like of bool
        Which effects are called, same shape as ``pH0``.
    """
    pH0 = np.asarray(pH0, dtype=float)
    called = np.asarray(called, dtype=bool) & np.isfinite(pH0)
    n_called = int(called.sum())
    if n_called == 0:
        return 0.0
    return float(pH0[called].sum() / n_called)


# --------------------------------------------------------------------------
# Threshold that controls PEFP
# --------------------------------------------------------------------------


def find_pH0_threshold(pH0: np.ndarray, target_pefp: float = 0.05) -> float:
    """Largest ``pH0`` cut-off whose call set keeps PEFP at most the target.

    Effects with ``pH0 <= threshold`` form the largest set, ranked by
    ascending ``pH0``, whose mean ``pH0`` does not exceed ``target_pefp``.
    Returns ``-inf`` when even the best effect exceeds the target, so that
    no effect is called.
    """
    pH0 = np.asarray(pH0, dtype=float).ravel()
    pH0 = np.sort(pH0[np.isfinite(pH0)])
    if pH0.size == 0:
        return -np.inf
    pefps = np.cumsum(pH0) / np.arange(1, pH0.size + 1)
    valid = np.flatnonzero(pefps <= target_pefp)
    if valid.size == 0:
        return -np.inf
    return float(pH0[valid[-1]])
