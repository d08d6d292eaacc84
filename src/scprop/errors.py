"""
Exception and warning taxonomy for SCPROP.

Validation errors (``MalformedInputError``, ``FormulaError``) are raised at the
component boundary that owns the input, before any inference work starts.
``ConvergenceError`` describes a sampling-diagnostics failure; by default it is
attached to the fitted model and reported as a ``ConvergenceWarning`` instead
of being raised.
"""

from typing import Optional, Sequence


class ScpropError(Exception):
    """Base class for all SCPROP errors."""


# ------------------------------------------------------------------------------


class MalformedInputError(ScpropError, ValueError):
    """Count data has the wrong shape or invalid values."""


# ------------------------------------------------------------------------------


class FormulaError(ScpropError, ValueError):
    """A composition, variability or contrast expression cannot be resolved."""


# ------------------------------------------------------------------------------


class UnknownContrastError(FormulaError):
    """A contrast references a factor level that is not a design column."""

    def __init__(self, name: str, available: Sequence[str]):
        self.name = name
        self.available = tuple(available)
        super().__init__(
            f"Contrast references unknown parameter '{name}'. "
            f"Available parameters: {list(self.available)}"
        )


# ------------------------------------------------------------------------------


class ConvergenceError(ScpropError, RuntimeError):
    """Posterior sampling diagnostics exceeded their thresholds.

    Parameters
    ----------
    message : str
        Human-readable description of the failure.
    max_r_hat : float, optional
        Largest split R-hat over the monitored sites.
    min_n_eff : float, optional
        Smallest effective sample size over the monitored sites.
    n_divergences : int, default=0
        Number of divergent transitions after warmup.
    """

    def __init__(
        self,
        message: str,
        max_r_hat: Optional[float] = None,
        min_n_eff: Optional[float] = None,
        n_divergences: int = 0,
    ):
        self.max_r_hat = max_r_hat
        self.min_n_eff = min_n_eff
        self.n_divergences = n_divergences
        super().__init__(message)


# ------------------------------------------------------------------------------


class FitCancelledError(ScpropError, RuntimeError):
    """A fit was cancelled between chains; partial results were discarded."""


# ------------------------------------------------------------------------------


class ConvergenceWarning(UserWarning):
    """Emitted when a fit, or an estimate derived from it, did not converge."""
