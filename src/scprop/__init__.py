"""
SCPROP: Single-cell Compositional Proportion analysis

A Bayesian method for identifying differences in cell-type composition and
composition variability across samples from single-cell cell-type counts.
"""

__version__ = "0.1.0"

from .errors import (
    ScpropError,
    MalformedInputError,
    FormulaError,
    UnknownContrastError,
    ConvergenceError,
    ConvergenceWarning,
    FitCancelledError,
)
from .core import CountTable, FormatAdapter, normalize_counts, from_records
from .formula import DesignSchema, LinearContrast, parse_contrast, parse_formula
from .models.config import (
    FitConfig,
    PriorConfig,
    MCMCConfig,
    OutlierConfig,
    HypothesisTestConfig,
    EffectKind,
    SimulationMode,
    OutlierStage,
)
from .mcmc import FittedModel
from .inference import fit, refit
from .outliers import OutlierDetector, OutlierFlag, OutlierPass, detect_and_refit
from .de import EffectEstimate, HypothesisTestResult, hypothesis_test
from .sampling import (
    ReplicateDataset,
    ReplicateSequence,
    posterior_predictive_check,
    predict_proportions,
    remove_unwanted_variation,
    simulate,
)
from .mc import ModelComparison, compare_models

__all__ = [
    # Data
    "CountTable",
    "FormatAdapter",
    "normalize_counts",
    "from_records",
    # Formulas
    "DesignSchema",
    "LinearContrast",
    "parse_formula",
    "parse_contrast",
    # Configuration
    "FitConfig",
    "PriorConfig",
    "MCMCConfig",
    "OutlierConfig",
    "HypothesisTestConfig",
    "EffectKind",
    "SimulationMode",
    "OutlierStage",
    # Inference
    "fit",
    "refit",
    "FittedModel",
    # Outliers
    "OutlierDetector",
    "OutlierFlag",
    "OutlierPass",
    "detect_and_refit",
    # Hypothesis testing
    "hypothesis_test",
    "HypothesisTestResult",
    "EffectEstimate",
    # Simulation and prediction
    "simulate",
    "ReplicateSequence",
    "ReplicateDataset",
    "posterior_predictive_check",
    "predict_proportions",
    "remove_unwanted_variation",
    # Model comparison
    "compare_models",
    "ModelComparison",
    # Errors
    "ScpropError",
    "MalformedInputError",
    "FormulaError",
    "UnknownContrastError",
    "ConvergenceError",
    "ConvergenceWarning",
    "FitCancelledError",
]
