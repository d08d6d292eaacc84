"""
Shared test fixtures and configuration for SCPROP tests.
"""

import os

import numpy as np
import pandas as pd
import pytest


def pytest_addoption(parser):
    parser.addoption(
        "--device",
        default="cpu",
        choices=["cpu", "gpu"],
        help="Device to run tests on: cpu or gpu",
    )


def pytest_configure(config):
    """Configure JAX device before any imports happen."""
    device = config.getoption("--device")
    if device == "cpu":
        os.environ["JAX_PLATFORM_NAME"] = "cpu"
    else:
        # Remove the environment variable to allow JAX to use GPU
        if "JAX_PLATFORM_NAME" in os.environ:
            del os.environ["JAX_PLATFORM_NAME"]


@pytest.fixture(scope="session")
def rng_key():
    """Provide a consistent random key for tests."""
    # Import JAX here to ensure environment is configured first
    from jax import random

    return random.PRNGKey(42)


# ------------------------------------------------------------------------------
# Data fixtures
# ------------------------------------------------------------------------------


@pytest.fixture(scope="session")
def count_records():
    """Long (sample, group, count) records for six samples in two conditions
    and two batches."""
    rng = np.random.default_rng(0)
    groups = ["B", "Mono", "T"]
    rows = []
    for i in range(6):
        condition = "healthy" if i < 3 else "cancer"
        base = np.array([200, 100, 300]) if condition == "healthy" else np.array(
            [100, 300, 200]
        )
        counts = rng.poisson(base)
        for group, count in zip(groups, counts):
            rows.append(
                {
                    "sample": f"s{i}",
                    "group": group,
                    "count": int(count),
                    "type": condition,
                    "batch": f"b{i % 2}",
                    "age": 30.0 + 5 * i,
                }
            )
    return pd.DataFrame(rows)


@pytest.fixture(scope="session")
def fast_config():
    """Short two-chain MCMC run."""
    from scprop import FitConfig

    return FitConfig().with_updated_mcmc(n_samples=200, n_warmup=200, n_chains=2)


@pytest.fixture(scope="session")
def fitted_type(count_records, fast_config):
    """Model of the six-sample data with a condition effect on composition
    and variability."""
    import warnings

    from scprop import fit

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        return fit(
            count_records,
            "~ type",
            "~ type",
            fast_config,
            count_col="count",
            covariate_cols=["type", "batch", "age"],
        )


@pytest.fixture(scope="session")
def fitted_bimodal(count_records):
    """Short single-chain fit with the two-component mean-variability
    association."""
    import warnings

    from scprop import FitConfig, fit

    config = FitConfig(bimodal_mean_variability_association=True).with_updated_mcmc(
        n_samples=100, n_warmup=100, n_chains=1
    )
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        return fit(
            count_records,
            "~ type",
            configuration=config,
            count_col="count",
            covariate_cols=["type"],
        )
