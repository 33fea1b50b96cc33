"""
Shared fixtures: simulated observations, both model variants and synthetic
posteriors with a known structure, so that prediction and summary code can be
tested without running MCMC.
"""

import matplotlib
matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from lifehistory.data import prepare_observations, simulate_observations
from lifehistory.inference import FitResult
from lifehistory.models import build_joint_model

TRUE_CORRELATION = 0.5


@pytest.fixture
def raw_observations() -> pd.DataFrame:
    """Three species, four lines each, six replicates per line."""
    return simulate_observations(n_species=3, n_lines=4, n_replicates=6, line_sd=0.2, seed=3)


@pytest.fixture
def observations(raw_observations) -> pd.DataFrame:
    return prepare_observations(raw_observations)


@pytest.fixture
def species_model(observations):
    return build_joint_model(observations, partition_by_species=True)


@pytest.fixture
def pooled_model(observations):
    return build_joint_model(observations, partition_by_species=False)


def synthetic_draws(model, n_chains=2, n_draws=250, seed=0, fixed=None, aux=None):
    """
    Draws for every site of ``model`` with the shapes the sampler produces.

    Random effects are built from z, L and sd the way the model builds them, so
    ``r_line`` and ``cor_line`` agree with the sampled sites. ``fixed`` maps
    (response, dpar) to a per-species (or scalar) centre.
    """
    rng = np.random.default_rng(seed)
    fixed = fixed or {}
    aux = aux or {}
    shape = (n_chains, n_draws)
    block = model.correlation
    n_terms, n_lines, n_species = block.n_terms, model.levels.n_lines, model.levels.n_species

    draws = {}
    for fe in model.fixed_effects:
        centre = np.asarray(fixed.get((fe.response, fe.dpar), 0.0), dtype=float)
        if fe.by_species:
            centre = np.broadcast_to(centre, (n_species,))
            draws[fe.site] = centre + 0.05 * rng.standard_normal(shape + (n_species,))
        else:
            draws[fe.site] = float(centre) + 0.05 * rng.standard_normal(shape)

    sd = np.abs(0.3 + 0.02 * rng.standard_normal(shape + (n_terms,)))
    for i, term in enumerate(block.terms):
        draws[term.site] = sd[..., i]

    z = rng.standard_normal(shape + (n_lines, n_terms))
    draws[f"z_{block.group}"] = z
    if n_terms > 1:
        cor = np.full((n_terms, n_terms), TRUE_CORRELATION)
        np.fill_diagonal(cor, 1.0)
        L = np.broadcast_to(np.linalg.cholesky(cor), shape + (n_terms, n_terms)).copy()
        draws[f"L_{block.group}"] = L
        draws[f"cor_{block.group}"] = L @ np.swapaxes(L, -1, -2)
        r = np.einsum("cdlk,cdjk->cdlj", z, L) * sd[..., None, :]
    else:
        r = z * sd[..., None, :]
    draws[f"r_{block.group}"] = r

    for spec in model.responses:
        for name in spec.auxiliary:
            value = aux.get((name, spec.name), 0.1)
            draws[f"{name}_{spec.name}"] = np.abs(value + 0.005 * rng.standard_normal(shape))
        if "invshape" in spec.auxiliary:
            draws[f"shape_{spec.name}"] = 1.0 / draws[f"invshape_{spec.name}"]
    return draws


@pytest.fixture
def make_fit():
    """Factory for FitResults built from synthetic draws."""
    def factory(model, **kwargs):
        return FitResult(draws=synthetic_draws(model, **kwargs), model_key="synthetic")
    return factory


@pytest.fixture
def species_fit(species_model, make_fit):
    return make_fit(species_model, fixed={
        ("development", "mu"): np.log([10.0, 11.0, 12.0]),
        ("fecundity", "mu"): np.log([40.0, 50.0, 60.0]),
        ("fecundity", "zi"): [-1.5, -1.5, -1.5],
        ("dispersal", "mu"): [-0.8, 0.0, 0.4],
    })


@pytest.fixture
def pooled_fit(pooled_model, make_fit):
    return make_fit(pooled_model, fixed={
        ("development", "mu"): np.log(11.0),
        ("fecundity", "mu"): np.log(50.0),
        ("fecundity", "zi"): -1.5,
        ("dispersal", "mu"): 0.0,
    })
