"""
Life history and dispersal in parasitoid wasps: joint Bayesian analysis

Usage:
    python run_analysis.py --config config/default.yaml --data data/life_history_dispersal.csv
    python run_analysis.py --config config/test.yaml --synthetic
"""

import argparse
import logging
import sys
from pathlib import Path

import numpyro
import pandas as pd

from lifehistory.config import load_config
from lifehistory.data import load_observations, prepare_observations, simulate_observations
from lifehistory.models import build_joint_model, fecundity_spec
from lifehistory.inference import FitCache, fit_model
from lifehistory.analysis import (
    summarize_model,
    species_contrasts,
    correlation_summary,
    parameter_summary,
    zero_fraction_check
)
from lifehistory.viz import plot_species_estimates, plot_correlations, plot_zero_check
from lifehistory.errors import SchemaError, SpecificationError

logger = logging.getLogger("run_analysis")


def banner(title: str):
    logger.info("=" * 60)
    logger.info(title)
    logger.info("=" * 60)


def summarize_data(obs):
    """Log counts per species and response."""
    banner("DATA SUMMARY")
    logger.info(f"Species: {obs['species'].nunique()}, lines: {obs['line'].nunique()}, rows: {len(obs)}")
    counts = obs.groupby("species")[["valid_development", "valid_fecundity", "valid_dispersal"]].sum()
    for species, row in counts.iterrows():
        logger.info(f"  {species}: {row['valid_development']} development, "
                    f"{row['valid_fecundity']} fecundity, {row['valid_dispersal']} dispersal")


def run_fecundity_checks(obs, config, cache, output_dir):
    """Univariate NB vs ZINB fits and their zero-frequency posterior predictive check."""
    banner("FECUNDITY CHECK: negative binomial vs zero-inflated")
    checks = []
    for zero_inflated in (False, True):
        model = build_joint_model(obs, True, config.priors, config.data.species_order,
                                  responses=[fecundity_spec(zero_inflated)])
        fit = fit_model(model, obs, config.sampler, cache, diagnostics=config.diagnostics)
        checks.append(zero_fraction_check(fit, model, obs, prob=config.summary.hdi_prob))
    checks = pd.concat(checks, ignore_index=True)
    checks.to_csv(output_dir / "zero_check.csv", index=False)
    plot_zero_check(checks, save_path=output_dir / "zero_check.png")
    logger.info("  Saved: zero_check.csv, zero_check.png")
    return checks


def run_pipeline(config, data_path=None, output_dir=None, synthetic=False, use_cache=True, run_checks=True):
    """Fit both model variants and write tables and figures."""
    output_dir = Path(output_dir or config.data.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    prob = config.summary.hdi_prob

    banner("LOADING DATA")
    if synthetic:
        obs = prepare_observations(simulate_observations(n_species=5, n_lines=6, n_replicates=10, line_sd=0.2))
    else:
        obs = load_observations(data_path or config.data.data_path)
    summarize_data(obs)

    cache = FitCache(config.data.cache_dir) if use_cache else None
    results = {}

    for partition in (True, False):
        model = build_joint_model(obs, partition, config.priors, config.data.species_order)
        banner(f"MODEL '{model.name}' (line correlations: {model.correlation_scope})")
        fit = fit_model(model, obs, config.sampler, cache, diagnostics=config.diagnostics)

        line_summary = summarize_model(fit, model, "line", prob)
        correlations = correlation_summary(fit, model, prob)
        parameters = parameter_summary(fit, model, prob)
        line_summary.to_csv(output_dir / f"summary_lines_{model.name}.csv", index=False)
        correlations.to_csv(output_dir / f"correlations_{model.name}.csv", index=False)
        parameters.to_csv(output_dir / f"parameters_{model.name}.csv", index=False)
        model.priors.to_frame().to_csv(output_dir / f"priors_{model.name}.csv", index=False)

        for _, row in correlations.iterrows():
            logger.info(f"  {row['pair']}: r = {row['mean']:.2f} ({row['lower']:.2f}, {row['upper']:.2f})")

        if partition:
            species_summary = summarize_model(fit, model, "species", prob)
            contrasts = species_contrasts(fit, model, prob)
            species_summary.to_csv(output_dir / f"summary_species_{model.name}.csv", index=False)
            contrasts.to_csv(output_dir / f"contrasts_{model.name}.csv", index=False)
            plot_species_estimates(species_summary, line_summary,
                                   save_path=output_dir / f"species_estimates_{model.name}.png")
            n_distinct = int(contrasts["distinguishable"].sum())
            logger.info(f"  {n_distinct} / {len(contrasts)} species contrasts exclude zero")

        results[model.name] = {"fit": fit, "model": model, "correlations": correlations}

    all_correlations = pd.concat([r["correlations"] for r in results.values()], ignore_index=True)
    plot_correlations(all_correlations, save_path=output_dir / "line_correlations.png")

    if run_checks:
        results["zero_check"] = run_fecundity_checks(obs, config, cache, output_dir)

    banner("ANALYSIS COMPLETE")
    return obs, results


def main():
    parser = argparse.ArgumentParser(description='Joint Bayesian analysis of wasp life history and dispersal')
    parser.add_argument('--config', default='config/default.yaml', help='Path to YAML config file')
    parser.add_argument('--data', help='Override config: CSV of observations')
    parser.add_argument('--output', help='Override config: output directory')
    parser.add_argument('--synthetic', action='store_true', help='Use simulated data instead of a CSV')
    parser.add_argument('--no-cache', action='store_true', help='Refit even if cached draws exist')
    parser.add_argument('--skip-checks', action='store_true', help='Skip the univariate fecundity checks')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger('matplotlib').setLevel(logging.WARNING)

    try:
        config = load_config(Path(args.config))
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return 1

    if not args.synthetic and not (args.data or config.data.data_path):
        parser.error("no input data: pass --data, set data.data_path in the config, or use --synthetic")

    # must run before jax initialises its devices
    numpyro.set_host_device_count(config.sampler.chains)

    try:
        run_pipeline(
            config,
            data_path=args.data,
            output_dir=args.output,
            synthetic=args.synthetic,
            use_cache=not args.no_cache,
            run_checks=not args.skip_checks,
        )
    except (SchemaError, SpecificationError) as e:
        logger.error(f"Analysis aborted: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
