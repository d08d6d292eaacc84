"""
Inference engine for MCMC.

This module handles the execution of MCMC inference using NUTS. Every chain is
an independent ``numpyro.infer.MCMC`` run with its own PRNG key; chains run in
a thread pool and are merged in chain order once all of them have finished.
"""

import threading
import warnings
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, NamedTuple, Optional

import jax.numpy as jnp
import numpy as np
from jax import random
from numpyro.infer import MCMC, NUTS

from ..errors import FitCancelledError
from ..models.compositional import ModelData, compositional_model
from ..models.config import PriorConfig

# ==============================================================================
# Chain results
# ==============================================================================


class ChainResult(NamedTuple):
    """Samples and sampler statistics of a single chain."""

    chain: int
    samples: Dict[str, np.ndarray]
    n_divergences: int


# ------------------------------------------------------------------------------


def merge_chains(chains: List[ChainResult]) -> Dict[str, np.ndarray]:
    """Concatenate per-chain samples along the draw axis, in chain order."""
    ordered = sorted(chains, key=lambda c: c.chain)
    return {
        site: np.concatenate([c.samples[site] for c in ordered], axis=0)
        for site in ordered[0].samples
    }


# ==============================================================================
# Engine
# ==============================================================================


class MCMCInferenceEngine:
    """Handles MCMC inference execution."""

    @staticmethod
    def run_chain(
        chain: int,
        rng_key: jnp.ndarray,
        data: ModelData,
        priors: PriorConfig,
        counts: jnp.ndarray,
        mask: jnp.ndarray,
        bimodal: bool = False,
        n_samples: int = 1_000,
        n_warmup: int = 500,
        mcmc_kwargs: Optional[dict] = None,
        cancel_event: Optional[threading.Event] = None,
        verbose: bool = False,
    ) -> ChainResult:
        """Run one NUTS chain to completion.

        Raises
        ------
        FitCancelledError
            If ``cancel_event`` is set before the chain starts.
        """
        if cancel_event is not None and cancel_event.is_set():
            raise FitCancelledError(f"Fit cancelled before chain {chain} started")

        if verbose:
            print(f"    - Chain {chain}: {n_warmup} warmup, {n_samples} samples")

        nuts_kernel = NUTS(compositional_model, **dict(mcmc_kwargs or {}))
        mcmc = MCMC(
            nuts_kernel,
            num_samples=n_samples,
            num_warmup=n_warmup,
            num_chains=1,
            progress_bar=False,
        )
        mcmc.run(
            rng_key,
            data=data,
            priors=priors,
            bimodal=bimodal,
            counts=counts,
            mask=mask,
            extra_fields=("diverging",),
        )

        samples = {k: np.asarray(v) for k, v in mcmc.get_samples().items()}
        diverging = np.asarray(mcmc.get_extra_fields()["diverging"])
        return ChainResult(chain, samples, int(diverging.sum()))

    # --------------------------------------------------------------------------

    @staticmethod
    def run_inference(
        data: ModelData,
        priors: PriorConfig,
        counts: np.ndarray,
        mask: np.ndarray,
        bimodal: bool = False,
        n_samples: int = 1_000,
        n_warmup: int = 500,
        n_chains: int = 4,
        seed: int = 42,
        cores: int = 1,
        mcmc_kwargs: Optional[dict] = None,
        cancel_event: Optional[threading.Event] = None,
        verbose: bool = False,
    ) -> List[ChainResult]:
        """Execute MCMC inference using NUTS.

        Parameters
        ----------
        data : ModelData
            Design matrices, totals and random-effect structure.
        priors : PriorConfig
            Prior hyperparameters.
        counts : np.ndarray
            Observed counts ``(n_samples, K)``.
        mask : np.ndarray
            Boolean ``(n_samples, K)``; False entries are excluded from the
            likelihood.
        bimodal : bool, default=False
            Use the two-component mean-variability association.
        n_samples : int, default=1_000
            Number of MCMC samples per chain.
        n_warmup : int, default=500
            Number of warmup samples per chain.
        n_chains : int, default=4
            Number of independent chains.
        seed : int, default=42
            Random seed; chain ``c`` uses the ``c``-th split of its key.
        cores : int, default=1
            Maximum number of chains run concurrently.
        mcmc_kwargs : Optional[dict], default=None
            Keyword arguments for the NUTS kernel (e.g.,
            ``target_accept_prob``, ``max_tree_depth``).
        cancel_event : threading.Event, optional
            When set, chains that have not started yet are skipped and the
            run raises ``FitCancelledError``.
        verbose : bool, default=False
            Print progress messages.

        Returns
        -------
        list of ChainResult
            One result per chain, in chain order.

        Raises
        ------
        FitCancelledError
            If ``cancel_event`` was set before every chain finished.
        """
        effective_kwargs: Dict[str, Any] = dict(mcmc_kwargs or {})
        if "num_chains" in effective_kwargs:
            warnings.warn(
                "num_chains in mcmc_kwargs is ignored; use MCMCConfig.n_chains.",
                UserWarning,
                stacklevel=2,
            )
            effective_kwargs.pop("num_chains")

        keys = random.split(random.PRNGKey(seed), n_chains)
        counts = jnp.asarray(counts, dtype=jnp.int32)
        mask = jnp.asarray(mask, dtype=bool)

        def _run(chain: int) -> ChainResult:
            return MCMCInferenceEngine.run_chain(
                chain,
                keys[chain],
                data=data,
                priors=priors,
                counts=counts,
                mask=mask,
                bimodal=bimodal,
                n_samples=n_samples,
                n_warmup=n_warmup,
                mcmc_kwargs=effective_kwargs,
                cancel_event=cancel_event,
                verbose=verbose,
            )

        workers = max(1, min(cores, n_chains))
        if workers == 1:
            results = [_run(chain) for chain in range(n_chains)]
        else:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [pool.submit(_run, chain) for chain in range(n_chains)]
                # Wait for every chain before surfacing a cancellation
                errors = [f.exception() for f in futures]
                for error in errors:
                    if error is not None:
                        raise error
                results = [f.result() for f in futures]

        if cancel_event is not None and cancel_event.is_set():
            raise FitCancelledError("Fit cancelled; partial results discarded")
        return results
