"""
Markov Chain Monte Carlo (MCMC) module for compositional count analysis.

This module runs NUTS chains for the compositional model, assesses their
convergence and packages the posterior into an immutable ``FittedModel``.
"""

from .inference_engine import ChainResult, MCMCInferenceEngine, merge_chains
from .diagnostics import assess_convergence, site_summary, summarize_chains
from .results import FittedModel

__all__ = [
    "ChainResult",
    "MCMCInferenceEngine",
    "merge_chains",
    "assess_convergence",
    "site_summary",
    "summarize_chains",
    "FittedModel",
]
