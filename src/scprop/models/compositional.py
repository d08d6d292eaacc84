"""
Multilevel beta-binomial model of cell-group composition and variability.

For sample ``s`` and cell group ``g`` (``K`` groups)::

    eta[s, g]     = X[s] @ beta[:, g] + sum_f u_f[level_f(s), g]
    logit pi[s,g] = eta[s, g] - logsumexp_{h != g} eta[s, h]
    log phi[s, g] = Xv[s] @ gamma[:, g]
    y[s, g]       ~ BetaBinomial(pi * phi, (1 - pi) * phi, N[s])

Composition coefficients and random intercepts are non-centred and centred
across groups (softmax is invariant to a shared shift). The variability
intercept of every group is tied to the group's baseline abundance by a
mean-variability regression, optionally a two-component mixture.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import jax.numpy as jnp
import numpy as np
from jax.nn import sigmoid
from jax.scipy.special import logsumexp

import numpyro
import numpyro.distributions as dist

from .config import PriorConfig

# ==============================================================================
# Model inputs
# ==============================================================================


@dataclass(frozen=True, eq=False)
class ModelData:
    """Arrays and static structure a model run is conditioned on.

    Parameters
    ----------
    X : np.ndarray, shape ``(n_samples, P)``
        Composition design matrix.
    Xv : np.ndarray, shape ``(n_samples, Pv)``
        Variability design matrix; column 0 is the intercept.
    totals : np.ndarray, shape ``(n_samples,)``
        Per-sample total counts.
    baseline : np.ndarray, shape ``(P,)``
        Boolean mask of baseline composition columns.
    re_index : np.ndarray, shape ``(n_samples, F)``
        Level index per random-effect grouping; ``-1`` for unseen levels.
    re_names : tuple of str
        Random-effect grouping names.
    re_levels : tuple of int
        Number of levels per grouping.
    n_groups : int
        Number of cell groups ``K``.
    """

    X: np.ndarray
    Xv: np.ndarray
    totals: np.ndarray
    baseline: np.ndarray
    re_index: np.ndarray
    re_names: Tuple[str, ...]
    re_levels: Tuple[int, ...]
    n_groups: int

    @property
    def n_samples(self) -> int:
        return self.X.shape[0]

    def with_rows(
        self, X: np.ndarray, Xv: np.ndarray, totals: np.ndarray, re_index: np.ndarray
    ) -> "ModelData":
        """Same structure conditioned on different samples."""
        return ModelData(
            X=X,
            Xv=Xv,
            totals=totals,
            baseline=self.baseline,
            re_index=re_index,
            re_names=self.re_names,
            re_levels=self.re_levels,
            n_groups=self.n_groups,
        )


# ------------------------------------------------------------------------------


def random_effect_site(name: str) -> str:
    """Site name of the random intercepts of a grouping."""
    return f"re_{name}"


def random_scale_site(name: str) -> str:
    """Site name of the spread of a grouping's random intercepts."""
    return f"re_scale_{name}"


# ==============================================================================
# Link functions
# ==============================================================================


def proportion_logits(eta: jnp.ndarray) -> jnp.ndarray:
    """Per-group logits of softmax proportions.

    ``logit pi_g = eta_g - logsumexp_{h != g} eta_h``, evaluated without
    forming ``pi`` so that proportions near 0 or 1 keep full precision.
    """
    K = eta.shape[-1]
    off_diagonal = jnp.where(jnp.eye(K, dtype=bool), -jnp.inf, 0.0)
    others = logsumexp(eta[..., None, :] + off_diagonal, axis=-1)
    return eta - others


# ------------------------------------------------------------------------------


def composition_predictor(
    X: jnp.ndarray,
    beta: jnp.ndarray,
    re_index: Optional[jnp.ndarray] = None,
    random_effects: Tuple[jnp.ndarray, ...] = (),
) -> jnp.ndarray:
    """Linear predictor ``eta``, shape ``(..., n_samples, K)``.

    ``beta`` may carry leading draw dimensions; random effects of levels with
    index ``-1`` are zero.
    """
    eta = jnp.einsum("sp,...pk->...sk", X, beta)
    for f, u in enumerate(random_effects):
        idx = re_index[:, f]
        contribution = jnp.take(u, jnp.clip(idx, 0), axis=-2)
        eta = eta + jnp.where((idx >= 0)[:, None], contribution, 0.0)
    return eta


# ------------------------------------------------------------------------------


def beta_binomial_concentrations(
    eta: jnp.ndarray, log_phi: jnp.ndarray
) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """Beta concentrations ``(pi * phi, (1 - pi) * phi)`` from the predictors."""
    logits = proportion_logits(eta)
    phi = jnp.exp(log_phi)
    return phi * sigmoid(logits), phi * sigmoid(-logits)


def _centred(x: jnp.ndarray) -> jnp.ndarray:
    return x - x.mean(axis=-1, keepdims=True)


# ==============================================================================
# Model
# ==============================================================================


def compositional_model(
    data: ModelData,
    priors: PriorConfig,
    bimodal: bool = False,
    counts: Optional[jnp.ndarray] = None,
    mask: Optional[jnp.ndarray] = None,
):
    """Numpyro model of per-sample cell-group counts.

    Parameters
    ----------
    data : ModelData
        Design matrices, totals and random-effect structure.
    priors : PriorConfig
        Prior hyperparameters.
    bimodal : bool, default=False
        Use the two-component mean-variability association.
    counts : jnp.ndarray, optional
        Observed counts ``(n_samples, K)``. If None, counts are sampled
        (posterior or prior predictive).
    mask : jnp.ndarray, optional
        Boolean ``(n_samples, K)``; False entries contribute no likelihood.

    Notes
    -----
    Posterior sites: ``beta`` ``(P, K)``, ``gamma`` ``(Pv, K)``,
    ``re_<grouping>`` ``(levels, K)``, hyperparameters ``beta_scale``,
    ``gamma_scale``, ``re_scale_<grouping>``, ``assoc_intercept``,
    ``assoc_slope``, ``assoc_sd`` (and ``assoc_weight`` when bimodal). Raw
    ``*_raw`` sites are the non-centred innovations.
    """
    K = data.n_groups
    X = jnp.asarray(data.X)
    Xv = jnp.asarray(data.Xv)
    P, Pv = X.shape[1], Xv.shape[1]

    # --------------------------------------------------------------------------
    # Composition coefficients
    # --------------------------------------------------------------------------
    scales = np.where(data.baseline, priors.intercept_scale, priors.effect_scale)
    beta_scale = numpyro.sample(
        "beta_scale", dist.HalfNormal(jnp.asarray(scales)).to_event(1)
    )
    beta_raw = numpyro.sample(
        "beta_raw", dist.Normal(0.0, 1.0).expand([P, K]).to_event(2)
    )
    beta = numpyro.deterministic("beta", _centred(beta_scale[:, None] * beta_raw))

    random_effects = []
    for name, n_levels in zip(data.re_names, data.re_levels):
        re_scale = numpyro.sample(
            random_scale_site(name), dist.HalfNormal(priors.random_effect_scale)
        )
        re_raw = numpyro.sample(
            f"re_raw_{name}",
            dist.Normal(0.0, 1.0).expand([n_levels, K]).to_event(2),
        )
        random_effects.append(
            numpyro.deterministic(
                random_effect_site(name), _centred(re_scale * re_raw)
            )
        )

    eta = composition_predictor(
        X, beta, jnp.asarray(data.re_index), tuple(random_effects)
    )

    # --------------------------------------------------------------------------
    # Variability coefficients and mean-variability association
    # --------------------------------------------------------------------------
    baseline_abundance = (X @ beta).mean(axis=0)
    assoc_sd = numpyro.sample("assoc_sd", dist.HalfNormal(priors.variability_sd))

    if bimodal:
        low = numpyro.sample("assoc_low", dist.Normal(*priors.variability_intercept))
        gap = numpyro.sample("assoc_gap", dist.HalfNormal(priors.bimodal_gap_scale))
        intercepts = numpyro.deterministic(
            "assoc_intercept", jnp.stack([low, low + gap])
        )
        slopes = numpyro.sample(
            "assoc_slope",
            dist.Normal(*priors.variability_slope).expand([2]).to_event(1),
        )
        weight = numpyro.sample("assoc_weight", dist.Beta(*priors.bimodal_weight))
        mixing = dist.Categorical(
            probs=jnp.broadcast_to(jnp.stack([weight, 1.0 - weight]), (K, 2))
        )
        lines = intercepts + slopes * baseline_abundance[:, None]
        gamma_intercept = numpyro.sample(
            "gamma_intercept",
            dist.MixtureSameFamily(mixing, dist.Normal(lines, assoc_sd)).to_event(1),
        )
    else:
        intercept = numpyro.sample(
            "assoc_intercept", dist.Normal(*priors.variability_intercept)
        )
        slope = numpyro.sample("assoc_slope", dist.Normal(*priors.variability_slope))
        gamma_intercept = numpyro.sample(
            "gamma_intercept",
            dist.Normal(intercept + slope * baseline_abundance, assoc_sd).to_event(1),
        )

    if Pv > 1:
        gamma_scale = numpyro.sample(
            "gamma_scale",
            dist.HalfNormal(priors.variability_effect_scale)
            .expand([Pv - 1])
            .to_event(1),
        )
        gamma_raw = numpyro.sample(
            "gamma_raw", dist.Normal(0.0, 1.0).expand([Pv - 1, K]).to_event(2)
        )
        gamma_slopes = gamma_scale[:, None] * gamma_raw
        gamma = jnp.concatenate([gamma_intercept[None, :], gamma_slopes], axis=0)
    else:
        gamma = gamma_intercept[None, :]
    gamma = numpyro.deterministic("gamma", gamma)

    # --------------------------------------------------------------------------
    # Likelihood
    # --------------------------------------------------------------------------
    log_phi = Xv @ gamma
    alpha, beta_conc = beta_binomial_concentrations(eta, log_phi)
    totals = jnp.asarray(data.totals)[:, None]

    likelihood = dist.BetaBinomial(alpha, beta_conc, total_count=totals)
    if mask is not None:
        likelihood = likelihood.mask(jnp.asarray(mask))

    with numpyro.plate("samples", data.n_samples, dim=-2):
        with numpyro.plate("groups", K, dim=-1):
            numpyro.sample("counts", likelihood, obs=counts)


# ==============================================================================
# Site bookkeeping
# ==============================================================================


def identified_sites(data: ModelData, bimodal: bool = False) -> Tuple[str, ...]:
    """Posterior sites whose convergence is monitored.

    Raw non-centred innovations are excluded: their mean across groups is not
    identified by the likelihood.
    """
    sites = ["beta", "gamma", "beta_scale", "assoc_intercept", "assoc_slope",
             "assoc_sd"]
    if bimodal:
        sites.append("assoc_weight")
    if data.Xv.shape[1] > 1:
        sites.append("gamma_scale")
    for name in data.re_names:
        sites += [random_effect_site(name), random_scale_site(name)]
    return tuple(sites)
