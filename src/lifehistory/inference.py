import hashlib
import json
import logging
import os
import pickle
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

import arviz as az
import jax
import numpy as np
import pandas as pd
from numpyro.infer import MCMC, NUTS

from .config import DiagnosticsConfig, SamplerConfig
from .data import ModelData, build_model_data
from .errors import warn_convergence
from .models import JointModel, make_model_fn

logger = logging.getLogger(__name__)


@dataclass
class FitDiagnostics:
    divergences: int = 0
    max_rhat: float = float("nan")
    min_ess_bulk: float = float("nan")
    messages: List[str] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return not self.messages


@dataclass
class FitResult:
    """Posterior draws keyed by site name, each shaped (chain, draw, ...)."""
    draws: Dict[str, np.ndarray]
    diagnostics: FitDiagnostics = field(default_factory=FitDiagnostics)
    model_key: str = ""

    @property
    def n_chains(self) -> int:
        return next(iter(self.draws.values())).shape[0]

    @property
    def n_draws(self) -> int:
        return next(iter(self.draws.values())).shape[1]

    def flat(self, name: str) -> np.ndarray:
        """Draws of one site with chains stacked: (chain * draw, ...)."""
        values = self.draws[name]
        return values.reshape(-1, *values.shape[2:])

    def to_inference_data(self, var_names=None) -> az.InferenceData:
        names = var_names if var_names is not None else list(self.draws)
        return az.from_dict(posterior={k: self.draws[k] for k in names})


def sampled_sites(model: JointModel) -> List[str]:
    """Population-level, SD and auxiliary parameters, in model order."""
    sites = [fe.site for fe in model.fixed_effects]
    sites += [term.site for term in model.correlation.terms]
    for spec in model.responses:
        sites += [f"{aux}_{spec.name}" for aux in spec.auxiliary]
    return sites


def compute_diagnostics(draws: Dict[str, np.ndarray], divergences: int, var_names) -> FitDiagnostics:
    names = [v for v in var_names if v in draws]
    diagnostics = FitDiagnostics(divergences=divergences)
    if not names or next(iter(draws.values())).shape[0] < 2:
        # split R-hat needs at least two chains
        return diagnostics
    summary = az.summary(az.from_dict(posterior={k: draws[k] for k in names}), kind="diagnostics")
    diagnostics.max_rhat = float(summary["r_hat"].max())
    diagnostics.min_ess_bulk = float(summary["ess_bulk"].min())
    return diagnostics


def check_convergence(diagnostics: FitDiagnostics, thresholds: Optional[DiagnosticsConfig] = None) -> FitDiagnostics:
    """Record and warn about suspect fits; the fit is kept either way."""
    thresholds = thresholds or DiagnosticsConfig()
    messages = []
    if diagnostics.divergences > 0:
        messages.append(f"{diagnostics.divergences} divergent transitions after warmup")
    if diagnostics.max_rhat > thresholds.max_rhat:
        messages.append(f"R-hat up to {diagnostics.max_rhat:.3f} (> {thresholds.max_rhat})")
    if diagnostics.min_ess_bulk < thresholds.min_ess:
        messages.append(f"bulk ESS down to {diagnostics.min_ess_bulk:.0f} (< {thresholds.min_ess:g})")
    diagnostics.messages = messages
    for message in messages:
        logger.warning(f"Convergence: {message}")
        warn_convergence(message)
    return diagnostics


def run_nuts(model: JointModel, model_data: ModelData, config: SamplerConfig,
             progress_bar: bool = True) -> FitResult:
    """Fit with numpyro's NUTS; draws are grouped by chain."""
    kernel = NUTS(
        make_model_fn(model),
        target_accept_prob=config.target_accept,
        max_tree_depth=config.max_tree_depth,
    )
    mcmc = MCMC(
        kernel,
        num_warmup=config.warmup,
        num_samples=config.draws,
        num_chains=config.chains,
        chain_method=config.chain_method,
        progress_bar=progress_bar,
    )
    logger.info(f"Sampling model '{model.name}': {config.chains} chains x "
                f"{config.iterations} iterations ({config.warmup} warmup)")
    mcmc.run(jax.random.PRNGKey(config.seed), model_data, extra_fields=("diverging",))

    draws = {k: np.asarray(v) for k, v in mcmc.get_samples(group_by_chain=True).items()}
    divergences = int(np.asarray(mcmc.get_extra_fields()["diverging"]).sum())
    return FitResult(draws=draws, diagnostics=compute_diagnostics(draws, divergences, sampled_sites(model)))


def data_fingerprint(model: JointModel, obs: pd.DataFrame) -> str:
    """Hash of the columns the model actually reads."""
    columns = ["species", "line"]
    for spec in model.responses:
        columns.append(spec.mask)
        columns += list(spec.bounds) if spec.bounds else [spec.variable]
    columns = list(dict.fromkeys(columns))
    hashed = pd.util.hash_pandas_object(obs[columns], index=False).to_numpy()
    return hashlib.sha256(hashed.tobytes()).hexdigest()


def fit_identity(model: JointModel, obs: pd.DataFrame, config: SamplerConfig) -> str:
    """Content address of a fit: model structure and priors, data snapshot, sampler settings."""
    payload = {
        "model": model.to_dict(),
        "data": data_fingerprint(model, obs),
        "sampler": config.model_dump(),
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode()).hexdigest()


class FitCache:
    """Pickled FitResults on disk, one file per fit identity."""

    def __init__(self, directory):
        self.directory = Path(directory)

    def path(self, key: str) -> Path:
        return self.directory / f"{key}.pkl"

    def __contains__(self, key: str) -> bool:
        return self.path(key).exists()

    def get(self, key: str) -> Optional[FitResult]:
        path = self.path(key)
        if not path.exists():
            logger.info(f"Cache miss: {key[:12]}")
            return None
        logger.info(f"Cache hit: {key[:12]} ({path})")
        with open(path, "rb") as f:
            return pickle.load(f)

    def put(self, key: str, fit: FitResult) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path(key)
        fd, tmp = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                pickle.dump(fit, f)
            os.replace(tmp, path)
        except BaseException:
            os.unlink(tmp)
            raise
        logger.info(f"Saved fit {key[:12]} to {path}")
        return path


def fit_model(
    model: JointModel,
    obs: pd.DataFrame,
    config: SamplerConfig,
    cache: Optional[FitCache] = None,
    sampler: Callable[..., FitResult] = run_nuts,
    diagnostics: Optional[DiagnosticsConfig] = None,
) -> FitResult:
    """Fit a model at most once per identity; cached draws are returned unchanged."""
    key = fit_identity(model, obs, config)
    if cache is not None:
        cached = cache.get(key)
        if cached is not None:
            for message in cached.diagnostics.messages:
                logger.warning(f"Cached fit {key[:12]} was flagged: {message}")
            return cached

    fit = sampler(model, build_model_data(model, obs), config)
    fit.model_key = key
    check_convergence(fit.diagnostics, diagnostics)
    if cache is not None:
        cache.put(key, fit)
    return fit
