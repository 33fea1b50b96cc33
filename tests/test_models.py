"""
Tests for model assembly and the numpyro model function.
"""

import numpy as np
import pytest
from numpyro import handlers
from scipy.stats import norm

from lifehistory.data import build_model_data
from lifehistory.errors import SpecificationError
from lifehistory.models import (
    CORRELATION_TAG, assemble_joint_model, build_joint_model, default_responses,
    development_spec, dispersal_spec, fecundity_spec, make_model_fn, _interval_lognormal_logp
)
from lifehistory.priors import COR, SD, SLOPE, Prior, PriorKey, PriorSet, build_priors


def trace_model(model, obs):
    data = build_model_data(model, obs)
    return handlers.trace(handlers.seed(make_model_fn(model), 0)).get_trace(data)


class TestResponseSpecs:
    """Test the per-response formulas."""

    def test_development_formula(self):
        formula = development_spec().formula(True)
        assert formula.startswith("lowbound | cens(censoring_kind, upbound) + subset(valid_development)")
        assert "~ 0 + species + (1 | p | line)" in formula

    def test_fecundity_formula(self):
        formula = fecundity_spec().formula(False)
        assert "egg_count | subset(valid_fecundity) ~ 1 + (1 | p | line)" in formula
        assert "zi ~ 1 + (1 | p | line)" in formula
        assert "nlf(shape ~ 1 / invshape)" in formula

    def test_plain_negative_binomial(self):
        spec = fecundity_spec(zero_inflated=False)
        assert [dp.name for dp in spec.dpars] == ["mu"]
        assert "zi ~" not in spec.formula(True)

    def test_dispersal_link(self):
        assert dispersal_spec().dpar("mu").link == "logit"
        with pytest.raises(SpecificationError):
            dispersal_spec().dpar("zi")


class TestJointModel:
    """Test assembly of the two variants."""

    def test_variant_names(self, species_model, pooled_model):
        assert species_model.name == "species"
        assert pooled_model.name == "pooled"
        assert species_model.correlation_scope == "within-species"
        assert pooled_model.correlation_scope == "total"

    def test_shared_correlation_block(self, species_model, pooled_model):
        """Test that every line intercept sits in the same tagged block in both variants."""
        assert species_model.correlation == pooled_model.correlation
        assert species_model.correlation.tag == CORRELATION_TAG
        assert [(t.response, t.dpar) for t in species_model.correlation.terms] == [
            ("development", "mu"), ("fecundity", "mu"), ("fecundity", "zi"), ("dispersal", "mu")]

    def test_fixed_effect_classes(self, species_model, pooled_model):
        assert all(fe.by_species for fe in species_model.fixed_effects)
        assert not any(fe.by_species for fe in pooled_model.fixed_effects)
        assert species_model.fixed_effect("fecundity", "zi").site == "b_fecundity_zi"
        assert pooled_model.fixed_effect("fecundity", "zi").site == "Intercept_fecundity_zi"

    def test_formulas(self, species_model, pooled_model):
        assert set(species_model.formulas()) == {"development", "fecundity", "dispersal"}
        assert all("0 + species" in f for f in species_model.formulas().values())
        assert not any("species" in f for f in pooled_model.formulas().values())

    def test_unknown_prior_raises(self, species_model):
        priors = dict(species_model.priors.items())
        priors[PriorKey(SD, "development", "sigma")] = Prior("half_normal", (1.0,))
        with pytest.raises(SpecificationError, match="not in the model"):
            assemble_joint_model(default_responses(), PriorSet(priors), species_model.levels, True)

    def test_missing_prior_raises(self, species_model):
        priors = dict(species_model.priors.items())
        del priors[PriorKey(COR)]
        with pytest.raises(SpecificationError, match="without a prior"):
            assemble_joint_model(default_responses(), PriorSet(priors), species_model.levels, True)

    def test_priors_must_match_variant(self, species_model):
        pooled_priors = build_priors({"development": 11.0, "fecundity": 50.0}, partition_by_species=False)
        with pytest.raises(SpecificationError):
            assemble_joint_model(default_responses(), pooled_priors, species_model.levels, True)

    def test_duplicate_responses_raise(self, species_model):
        responses = (development_spec(), development_spec())
        with pytest.raises(SpecificationError, match="Duplicate"):
            assemble_joint_model(responses, species_model.priors, species_model.levels, True)

    def test_to_dict_stable(self, observations, species_model, pooled_model):
        assert build_joint_model(observations, True).to_dict() == species_model.to_dict()
        assert species_model.to_dict() != pooled_model.to_dict()

    def test_species_order(self, observations):
        model = build_joint_model(observations, True, species_order=["sp2", "sp3", "sp1"])
        assert model.levels.species == ("sp2", "sp3", "sp1")

    def test_univariate_model(self, observations):
        model = build_joint_model(observations, True, responses=[fecundity_spec(zero_inflated=False)])
        assert model.correlation.n_terms == 1
        assert PriorKey(COR) not in model.priors
        assert PriorKey(SLOPE, "fecundity", "mu") in model.priors


class TestModelFunction:
    """Test the numpyro model's sites and likelihood."""

    def test_species_sites(self, species_model, observations):
        trace = trace_model(species_model, observations)
        levels = species_model.levels

        assert trace["b_development_mu"]["value"].shape == (levels.n_species,)
        assert trace["r_line"]["value"].shape == (levels.n_lines, 4)
        assert trace["cor_line"]["value"].shape == (4, 4)
        invshape = float(trace["invshape_fecundity"]["value"])
        assert float(trace["shape_fecundity"]["value"]) == pytest.approx(1 / invshape, rel=1e-5)
        np.testing.assert_allclose(np.diag(trace["cor_line"]["value"]), 1.0, rtol=1e-4)

    def test_pooled_sites(self, pooled_model, observations):
        trace = trace_model(pooled_model, observations)
        assert trace["Intercept_dispersal_mu"]["value"].shape == ()
        assert "b_dispersal_mu" not in trace

    def test_observed_outcomes(self, species_model, observations):
        trace = trace_model(species_model, observations)
        data = build_model_data(species_model, observations)

        assert trace["fecundity"]["is_observed"]
        np.testing.assert_array_equal(trace["fecundity"]["value"], data.responses["fecundity"].y)
        np.testing.assert_array_equal(trace["dispersal"]["value"], data.responses["dispersal"].y)
        assert "development" in trace

    def test_single_term_has_no_correlation(self, observations):
        model = build_joint_model(observations, True, responses=[fecundity_spec(zero_inflated=False)])
        trace = trace_model(model, observations)
        assert "cor_line" not in trace
        assert "L_line" not in trace
        assert trace["r_line"]["value"].shape == (model.levels.n_lines, 1)

    def test_r_line_built_from_cholesky(self, species_model, observations):
        trace = trace_model(species_model, observations)
        z = np.asarray(trace["z_line"]["value"])
        L = np.asarray(trace["L_line"]["value"])
        sd = np.array([trace[t.site]["value"] for t in species_model.correlation.terms])
        np.testing.assert_allclose(trace["r_line"]["value"], (z @ L.T) * sd, rtol=1e-4, atol=1e-6)


class TestIntervalCensoredLognormal:
    """Test the interval-censored lognormal log-probability."""

    def test_matches_cdf_difference(self):
        lower = np.array([9.5, 10.0, 12.0])
        upper = np.array([10.0, 10.5, 13.0])
        mu, sigma = np.log(10.5), 0.1
        expected = np.log(norm.cdf((np.log(upper) - mu) / sigma) - norm.cdf((np.log(lower) - mu) / sigma))
        np.testing.assert_allclose(_interval_lognormal_logp(lower, upper, mu, sigma), expected, rtol=1e-4)

    def test_open_upper_bound(self):
        logp = _interval_lognormal_logp(np.array([11.0]), np.array([np.inf]), np.log(10.0), 0.2)
        expected = norm.logsf((np.log(11.0) - np.log(10.0)) / 0.2)
        np.testing.assert_allclose(logp, [expected], rtol=1e-4)

    def test_far_tail_finite(self):
        logp = _interval_lognormal_logp(np.array([30.0]), np.array([30.5]), np.log(10.0), 0.1)
        assert np.isfinite(np.asarray(logp)).all()
