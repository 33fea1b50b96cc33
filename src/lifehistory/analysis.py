import itertools
import logging
from typing import List, Optional, Sequence

import arviz as az
import jax
import numpy as np
import pandas as pd
from numpyro.infer import Predictive
from scipy.special import expit

from .data import build_model_data, make_prediction_grid
from .errors import SpecificationError, UnsupportedPredictionError
from .inference import FitResult, sampled_sites
from .models import (BERNOULLI, LOGNORMAL, NEGBINOMIAL, ZERO_INFLATED_NEGBINOMIAL,
                     JointModel, make_model_fn)

logger = logging.getLogger(__name__)

QUANTITIES = {
    LOGNORMAL: ("epred", "median", "mu"),
    NEGBINOMIAL: ("epred", "mu", "shape"),
    ZERO_INFLATED_NEGBINOMIAL: ("epred", "mu", "zi", "shape"),
    BERNOULLI: ("epred", "mu"),
}

# (response, quantity) pairs reported in the tables
REPORTED = [
    ("development", "epred"),
    ("fecundity", "mu"),
    ("fecundity", "zi"),
    ("fecundity", "epred"),
    ("dispersal", "epred"),
]


# ---------------------------------------------------------------------------
# Posterior predictions
# ---------------------------------------------------------------------------

def _grid_indices(model: JointModel, grid: pd.DataFrame, include_random: bool):
    levels = model.levels
    species_idx = line_idx = None
    if include_random:
        if "line" not in grid:
            raise SpecificationError("Group-level predictions need a 'line' column in the grid")
        line_idx = levels.line_index(grid["line"])
        implied = np.array([levels.species.index(levels.line_species[i]) for i in line_idx], dtype=np.int32)
        if "species" in grid:
            species_idx = levels.species_index(grid["species"])
            if not np.array_equal(species_idx, implied):
                raise SpecificationError("Grid pairs lines with species they do not belong to")
        species_idx = implied
    else:
        if not model.partition_by_species:
            raise UnsupportedPredictionError(
                f"Model '{model.name}' has no species fixed effect; "
                "fixed-effect-only predictions are undefined"
            )
        if "species" not in grid:
            raise SpecificationError("Population-level predictions need a 'species' column in the grid")
        species_idx = levels.species_index(grid["species"])
    return species_idx, line_idx


def linear_predictor(fit: FitResult, model: JointModel, grid: pd.DataFrame, response: str,
                     dpar: str = "mu", include_random: bool = True) -> np.ndarray:
    """Link-scale predictor, shape (draws, grid rows)."""
    model.response(response).dpar(dpar)
    species_idx, line_idx = _grid_indices(model, grid, include_random)

    fe = model.fixed_effect(response, dpar)
    b = fit.flat(fe.site)
    if fe.by_species:
        eta = b[:, species_idx]
    else:
        eta = np.repeat(b[:, None], len(grid), axis=1)

    if include_random:
        block = model.correlation
        r = fit.flat(f"r_{block.group}")[:, :, block.index(response, dpar)]
        eta = eta + r[:, line_idx]
    return eta


def posterior_epred(fit: FitResult, model: JointModel, grid: pd.DataFrame, response: str,
                    quantity: str = "epred", include_random: bool = True) -> np.ndarray:
    """
    Response-scale posterior quantities, shape (draws, grid rows).

    development: ``epred`` mean time exp(mu + sigma^2 / 2), ``median`` exp(mu), ``mu``.
    fecundity: ``mu`` mean count absent zero inflation, ``zi`` zero-inflation (retention)
    probability, ``epred`` (1 - zi) * mu, ``shape`` = 1 / invshape.
    dispersal: ``epred`` (or ``mu``) dispersal probability.

    With ``include_random=False`` line effects are left out (set to zero on the link scale),
    which is only defined for the species-partitioned model.
    """
    spec = model.response(response)
    if quantity not in QUANTITIES[spec.family]:
        raise SpecificationError(
            f"{response} has no quantity {quantity!r}; choose from {QUANTITIES[spec.family]}")

    def lp(dpar):
        return linear_predictor(fit, model, grid, response, dpar, include_random)

    if spec.family == LOGNORMAL:
        mu = lp("mu")
        if quantity == "mu":
            return mu
        if quantity == "median":
            return np.exp(mu)
        sigma = fit.flat(f"sigma_{response}")[:, None]
        return np.exp(mu + sigma ** 2 / 2)

    if spec.family in (NEGBINOMIAL, ZERO_INFLATED_NEGBINOMIAL):
        if quantity == "shape":
            _grid_indices(model, grid, include_random)
            return np.repeat(fit.flat(f"shape_{response}")[:, None], len(grid), axis=1)
        if quantity == "zi":
            return expit(lp("zi"))
        mu = np.exp(lp("mu"))
        if quantity == "mu" or spec.family == NEGBINOMIAL:
            return mu
        return (1 - expit(lp("zi"))) * mu

    return expit(lp("mu"))


def epred_draws(fit: FitResult, model: JointModel, grid: pd.DataFrame, response: str,
                quantity: str = "epred", include_random: bool = True,
                value: Optional[str] = None) -> pd.DataFrame:
    """Long table: one row per (grid row, draw)."""
    values = posterior_epred(fit, model, grid, response, quantity, include_random)
    n_draws, n_rows = values.shape
    long = grid.reset_index(drop=True).iloc[np.repeat(np.arange(n_rows), n_draws)].reset_index(drop=True)
    long[".draw"] = np.tile(np.arange(n_draws), n_rows)
    long[value or quantity] = values.T.reshape(-1)
    return long


def posterior_predictive(fit: FitResult, model: JointModel, obs: pd.DataFrame, response: str,
                         num_draws: Optional[int] = None, seed: int = 0) -> np.ndarray:
    """Replicated outcomes for the rows of one response, shape (draws, rows)."""
    spec = model.response(response)
    if spec.bounds is not None:
        raise SpecificationError(f"Replicated data for censored response {response} is not supported")

    samples = {k: fit.flat(k) for k in fit.draws}
    if num_draws is not None and num_draws < len(next(iter(samples.values()))):
        keep = np.random.default_rng(seed).choice(len(next(iter(samples.values()))), num_draws, replace=False)
        samples = {k: v[keep] for k, v in samples.items()}

    data = build_model_data(model, obs).without_outcomes()
    predictive = Predictive(make_model_fn(model), posterior_samples=samples, return_sites=[response])
    return np.asarray(predictive(jax.random.PRNGKey(seed), data)[response])


def zero_fraction_check(fit: FitResult, model: JointModel, obs: pd.DataFrame,
                        response: str = "fecundity", num_draws: Optional[int] = 500,
                        prob: float = 0.95, seed: int = 0) -> pd.DataFrame:
    """Observed vs replicated frequency of zero counts, per species and overall."""
    spec = model.response(response)
    rows_obs = obs[obs[spec.mask].astype(bool)].reset_index(drop=True)
    y = rows_obs[spec.variable].to_numpy(dtype=float)
    y_rep = posterior_predictive(fit, model, obs, response, num_draws, seed)

    groups = [("all", np.ones(len(rows_obs), dtype=bool))]
    groups += [(s, (rows_obs["species"] == s).to_numpy()) for s in model.levels.species]
    records = []
    for label, sel in groups:
        if not sel.any():
            continue
        observed = float(np.mean(y[sel] == 0))
        replicated = np.mean(y_rep[:, sel] == 0, axis=1)
        lower, upper = hdi_interval(replicated, prob)
        records.append({
            "model": spec.family, "species": label, "observed": observed,
            "replicated_mean": float(replicated.mean()), "lower": lower, "upper": upper,
            "p_value": float(np.mean(replicated >= observed)),
        })
    return pd.DataFrame.from_records(records)


# ---------------------------------------------------------------------------
# Summaries and comparisons
# ---------------------------------------------------------------------------

def hdi_interval(values, prob: float = 0.95):
    """Narrowest interval holding ``prob`` of the draws."""
    lower, upper = az.hdi(np.asarray(values, dtype=float).ravel(), hdi_prob=prob)
    return float(lower), float(upper)


def _key_dict(by: List[str], key) -> dict:
    key = key if isinstance(key, tuple) else (key,)
    return dict(zip(by, key))


def summarize_draws(df: pd.DataFrame, value: str, by: Sequence[str], prob: float = 0.95) -> pd.DataFrame:
    """Posterior mean and HDI of ``value`` for each group."""
    by = list(by)
    records = []
    for key, grp in df.groupby(by, observed=True, sort=True):
        lower, upper = hdi_interval(grp[value], prob)
        records.append({**_key_dict(by, key), "mean": float(grp[value].mean()),
                        "lower": lower, "upper": upper})
    return pd.DataFrame.from_records(records)


def contrast_draws(df: pd.DataFrame, group: str, a, b, value: str) -> np.ndarray:
    """Paired-draw differences value[a] - value[b]."""
    def draws_for(level):
        sub = df[df[group] == level]
        if sub.empty:
            raise SpecificationError(f"No draws for {group} = {level!r}")
        if sub[".draw"].duplicated().any():
            raise SpecificationError(f"Several rows per draw for {group} = {level!r}; pass `by`")
        return sub.sort_values(".draw")[value].to_numpy()

    return draws_for(a) - draws_for(b)


def _levels(series: pd.Series) -> list:
    if isinstance(series.dtype, pd.CategoricalDtype):
        return [c for c in series.cat.categories if (series == c).any()]
    return sorted(series.unique())


def pairwise_contrasts(df: pd.DataFrame, group: str, value: str, by: Optional[Sequence[str]] = None,
                       prob: float = 0.95) -> pd.DataFrame:
    """Every unordered pair of ``group`` levels; a pair is distinguishable when its HDI excludes 0."""
    by = list(by or [])
    parts = df.groupby(by, observed=True, sort=True) if by else [((), df)]
    records = []
    for key, sub in parts:
        for a, b in itertools.combinations(_levels(sub[group]), 2):
            diff = contrast_draws(sub, group, a, b, value)
            lower, upper = hdi_interval(diff, prob)
            records.append({
                **_key_dict(by, key), "group_a": a, "group_b": b, "contrast": f"{a} - {b}",
                "mean": float(diff.mean()), "lower": lower, "upper": upper,
                "distinguishable": bool(lower > 0 or upper < 0),
            })
    return pd.DataFrame.from_records(records)


def correlation_summary(fit: FitResult, model: JointModel, prob: float = 0.95) -> pd.DataFrame:
    """Line-level correlations between responses, labelled by the pair of terms and their scope."""
    block = model.correlation
    columns = ["model", "scope", "term_a", "term_b", "pair", "mean", "lower", "upper"]
    if block.n_terms < 2:
        return pd.DataFrame(columns=columns)
    cor = fit.flat(f"cor_{block.group}")
    records = []
    for i, j, term_a, term_b in block.pairs():
        values = cor[:, i, j]
        lower, upper = hdi_interval(values, prob)
        records.append({
            "model": model.name, "scope": model.correlation_scope,
            "term_a": term_a.label, "term_b": term_b.label,
            "pair": f"{term_a.label} ~ {term_b.label}",
            "mean": float(values.mean()), "lower": lower, "upper": upper,
        })
    return pd.DataFrame.from_records(records, columns=columns)


def parameter_summary(fit: FitResult, model: JointModel, prob: float = 0.95) -> pd.DataFrame:
    """arviz summary of population-level, SD and auxiliary parameters."""
    names = [name for name in sampled_sites(model) if name in fit.draws]
    names += [f"shape_{spec.name}" for spec in model.responses if f"shape_{spec.name}" in fit.draws]
    summary = az.summary(fit.to_inference_data(names), hdi_prob=prob)
    return summary.rename_axis("parameter").reset_index()


def summarize_model(fit: FitResult, model: JointModel, by: str = "line", prob: float = 0.95,
                    quantities=REPORTED) -> pd.DataFrame:
    """Mean and HDI of every reported quantity on the line or species grid.

    Species rows use fixed effects only, so they need the species-partitioned model.
    """
    grid = make_prediction_grid(model.levels, by)
    include_random = by == "line"
    frames = []
    for response, quantity in quantities:
        draws = epred_draws(fit, model, grid, response, quantity, include_random, value="value")
        summary = summarize_draws(draws, "value", list(grid.columns), prob)
        frames.append(summary.assign(model=model.name, response=response, quantity=quantity))
    return pd.concat(frames, ignore_index=True)


def species_contrasts(fit: FitResult, model: JointModel, prob: float = 0.95,
                      quantities=REPORTED) -> pd.DataFrame:
    """Pairwise species differences in every reported quantity."""
    grid = make_prediction_grid(model.levels, "species")
    frames = []
    for response, quantity in quantities:
        draws = epred_draws(fit, model, grid, response, quantity, include_random=False, value="value")
        contrasts = pairwise_contrasts(draws, "species", "value", prob=prob)
        frames.append(contrasts.assign(model=model.name, response=response, quantity=quantity))
    return pd.concat(frames, ignore_index=True)
