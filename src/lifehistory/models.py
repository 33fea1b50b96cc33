import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import jax.numpy as jnp
from jax.scipy.special import ndtr
import numpyro
import numpyro.distributions as dist

from .config import PriorSettings
from .data import GroupLevels, ModelData, observation_medians
from .errors import SpecificationError
from .priors import COR, INTERCEPT, INVSHAPE, SD, SIGMA, SLOPE, PriorKey, PriorSet, build_priors

logger = logging.getLogger(__name__)

LOGNORMAL = "lognormal"
NEGBINOMIAL = "negbinomial"
ZERO_INFLATED_NEGBINOMIAL = "zero_inflated_negbinomial"
BERNOULLI = "bernoulli"

LINE = "line"
CORRELATION_TAG = "p"


@dataclass(frozen=True)
class DistributionalParameter:
    name: str
    link: str


@dataclass(frozen=True)
class ResponseSpec:
    """One response: which rows it uses, its family and its linear predictors."""
    name: str
    variable: str
    mask: str
    family: str
    dpars: Tuple[DistributionalParameter, ...]
    auxiliary: Tuple[str, ...] = ()
    bounds: Optional[Tuple[str, str, str]] = None

    def dpar(self, name: str) -> DistributionalParameter:
        for dp in self.dpars:
            if dp.name == name:
                return dp
        raise SpecificationError(f"{self.name} has no distributional parameter {name!r}")

    def formula(self, partition_by_species: bool, tag: str = CORRELATION_TAG, group: str = LINE) -> str:
        fixed = "0 + species" if partition_by_species else "1"
        addition = [f"subset({self.mask})"]
        if self.bounds is not None:
            addition.insert(0, f"cens({self.bounds[2]}, {self.bounds[1]})")
        lhs = f"{self.variable} | {' + '.join(addition)}"
        parts = [f"{lhs} ~ {fixed} + (1 | {tag} | {group})"]
        parts += [f"{dp.name} ~ {fixed} + (1 | {tag} | {group})" for dp in self.dpars[1:]]
        if INVSHAPE in self.auxiliary:
            parts += ["nlf(shape ~ 1 / invshape)", "invshape ~ 1"]
        return "; ".join(parts)

    def to_dict(self) -> dict:
        return {
            "name": self.name, "variable": self.variable, "mask": self.mask,
            "family": self.family,
            "dpars": [[dp.name, dp.link] for dp in self.dpars],
            "auxiliary": list(self.auxiliary),
            "bounds": list(self.bounds) if self.bounds else None,
        }


def development_spec() -> ResponseSpec:
    """Development time (days): lognormal, interval-censored between lowbound and upbound."""
    return ResponseSpec(
        name="development",
        variable="lowbound",
        mask="valid_development",
        family=LOGNORMAL,
        dpars=(DistributionalParameter("mu", "identity"),),
        auxiliary=(SIGMA,),
        bounds=("lowbound", "upbound", "censoring_kind"),
    )


def fecundity_spec(zero_inflated: bool = True) -> ResponseSpec:
    """
    Egg counts: zero-inflated negative binomial.

    The count mean (log link) and the zero-inflation probability (logit link) each get
    a per-line random intercept in the shared correlation block. The shape is fitted as
    shape = 1 / invshape with invshape >= 0, because a weak prior is easy to set on invshape
    and awkward to set on shape itself.

    A plain negative binomial (``zero_inflated=False``) was the first univariate fit;
    its posterior predictive checks under-predicted the frequency of zero counts while
    the overall range fit, which is why the joint model uses zero inflation.
    """
    dpars = (DistributionalParameter("mu", "log"),)
    if zero_inflated:
        dpars += (DistributionalParameter("zi", "logit"),)
    return ResponseSpec(
        name="fecundity",
        variable="egg_count",
        mask="valid_fecundity",
        family=ZERO_INFLATED_NEGBINOMIAL if zero_inflated else NEGBINOMIAL,
        dpars=dpars,
        auxiliary=(INVSHAPE,),
    )


def dispersal_spec() -> ResponseSpec:
    """Dispersal (0/1) in two-vial systems: Bernoulli with logit link."""
    return ResponseSpec(
        name="dispersal",
        variable="dispersal_numeric",
        mask="valid_dispersal",
        family=BERNOULLI,
        dpars=(DistributionalParameter("mu", "logit"),),
    )


def default_responses() -> Tuple[ResponseSpec, ...]:
    return development_spec(), fecundity_spec(), dispersal_spec()


@dataclass(frozen=True)
class RandomEffectTerm:
    response: str
    dpar: str
    group: str = LINE
    tag: str = CORRELATION_TAG

    @property
    def site(self) -> str:
        return f"sd_{self.group}_{self.response}_{self.dpar}"

    @property
    def label(self) -> str:
        return f"{self.response} ({self.dpar})"


@dataclass(frozen=True)
class CorrelationBlock:
    """Random-effect terms drawn jointly from one multivariate normal with a full correlation matrix."""
    group: str
    tag: str
    terms: Tuple[RandomEffectTerm, ...]

    @property
    def n_terms(self) -> int:
        return len(self.terms)

    def index(self, response: str, dpar: str) -> int:
        for i, term in enumerate(self.terms):
            if term.response == response and term.dpar == dpar:
                return i
        raise SpecificationError(f"No {self.group} random effect for {response} ({dpar})")

    def pairs(self):
        for i in range(self.n_terms):
            for j in range(i + 1, self.n_terms):
                yield i, j, self.terms[i], self.terms[j]


@dataclass(frozen=True)
class FixedEffect:
    response: str
    dpar: str
    cls: str

    @property
    def by_species(self) -> bool:
        return self.cls == SLOPE

    @property
    def site(self) -> str:
        return f"{self.cls}_{self.response}_{self.dpar}"


@dataclass(frozen=True)
class JointModel:
    responses: Tuple[ResponseSpec, ...]
    partition_by_species: bool
    levels: GroupLevels
    priors: PriorSet
    correlation: CorrelationBlock
    fixed_effects: Tuple[FixedEffect, ...]

    @property
    def name(self) -> str:
        return "species" if self.partition_by_species else "pooled"

    @property
    def correlation_scope(self) -> str:
        """What the line-level correlations measure in this variant."""
        return "within-species" if self.partition_by_species else "total"

    def response(self, name: str) -> ResponseSpec:
        for spec in self.responses:
            if spec.name == name:
                return spec
        raise SpecificationError(f"Model has no response {name!r}")

    def fixed_effect(self, response: str, dpar: str) -> FixedEffect:
        for fe in self.fixed_effects:
            if fe.response == response and fe.dpar == dpar:
                return fe
        raise SpecificationError(f"Model has no fixed effect for {response} ({dpar})")

    def formulas(self) -> dict:
        return {spec.name: spec.formula(self.partition_by_species, self.correlation.tag,
                                        self.correlation.group)
                for spec in self.responses}

    def to_dict(self) -> dict:
        return {
            "responses": [spec.to_dict() for spec in self.responses],
            "partition_by_species": self.partition_by_species,
            "levels": self.levels.to_dict(),
            "priors": self.priors.to_dict(),
            "correlation": {"group": self.correlation.group, "tag": self.correlation.tag,
                            "terms": [[t.response, t.dpar] for t in self.correlation.terms]},
        }


def assemble_joint_model(
    responses: Sequence[ResponseSpec],
    priors: PriorSet,
    levels: GroupLevels,
    partition_by_species: bool,
) -> JointModel:
    """
    Combine response specs into one multivariate model sharing the line factor.

    With ``partition_by_species`` every linear predictor gets one intercept per species
    (no reference level) and line effects capture within-species variation only; without
    it a single population intercept is used and line effects absorb all line-level
    variation. All line intercepts carry the same correlation tag in both variants.
    """
    names = [spec.name for spec in responses]
    if len(set(names)) != len(names):
        raise SpecificationError(f"Duplicate responses: {names}")

    fixed_cls = SLOPE if partition_by_species else INTERCEPT
    terms, fixed = [], []
    expected = set()
    for spec in responses:
        for dp in spec.dpars:
            terms.append(RandomEffectTerm(spec.name, dp.name))
            fixed.append(FixedEffect(spec.name, dp.name, fixed_cls))
            expected.add(PriorKey(fixed_cls, spec.name, dp.name))
            expected.add(PriorKey(SD, spec.name, dp.name))
        for aux in spec.auxiliary:
            expected.add(PriorKey(aux, spec.name))
    if len(terms) > 1:
        expected.add(PriorKey(COR))

    unknown = set(priors.keys()) - expected
    if unknown:
        raise SpecificationError(f"Priors for parameters not in the model: {sorted(unknown)}")
    missing = expected - set(priors.keys())
    if missing:
        raise SpecificationError(f"Model parameters without a prior: {sorted(missing)}")

    model = JointModel(
        responses=tuple(responses),
        partition_by_species=partition_by_species,
        levels=levels,
        priors=priors,
        correlation=CorrelationBlock(LINE, CORRELATION_TAG, tuple(terms)),
        fixed_effects=tuple(fixed),
    )
    for name, formula in model.formulas().items():
        logger.info(f"[{model.name}] {name}: {formula}")
    return model


def build_joint_model(
    observations,
    partition_by_species: bool,
    settings: Optional[PriorSettings] = None,
    species_order: Optional[Sequence[str]] = None,
    responses: Optional[Sequence[ResponseSpec]] = None,
) -> JointModel:
    """Levels, data-scaled priors and assembly in one step."""
    responses = tuple(responses) if responses is not None else default_responses()
    levels = GroupLevels.from_observations(observations, species_order)
    zero_inflated = all(spec.family != NEGBINOMIAL for spec in responses)
    priors = build_priors(
        observation_medians(observations),
        partition_by_species,
        settings,
        responses=[spec.name for spec in responses],
        zero_inflated=zero_inflated,
    )
    return assemble_joint_model(responses, priors, levels, partition_by_species)


def _interval_lognormal_logp(lower, upper, mu, sigma):
    finite = jnp.isfinite(upper)
    z_low = (jnp.log(lower) - mu) / sigma
    z_up = (jnp.log(jnp.where(finite, upper, 1.0)) - mu) / sigma
    cdf_up = jnp.where(finite, ndtr(z_up), 1.0)
    sf_up = jnp.where(finite, ndtr(-z_up), 0.0)
    # upper-tail form keeps precision when both bounds sit above the median
    prob = jnp.where(z_low > 0, ndtr(-z_low) - sf_up, cdf_up - ndtr(z_low))
    return jnp.log(jnp.clip(prob, jnp.finfo(prob.dtype).tiny))


def make_model_fn(model: JointModel):
    """numpyro model function for an assembled JointModel; call as fn(data)."""
    block = model.correlation
    priors = model.priors

    def model_fn(data: ModelData):
        sd = jnp.stack([
            numpyro.sample(term.site, priors.get(SD, term.response, term.dpar).to_numpyro())
            for term in block.terms
        ])
        z = numpyro.sample(
            f"z_{block.group}", dist.Normal(0.0, 1.0).expand([data.n_lines, block.n_terms]).to_event(2)
        )
        if block.n_terms > 1:
            L = numpyro.sample(f"L_{block.group}", priors.get(COR).to_numpyro(block.n_terms))
            numpyro.deterministic(f"cor_{block.group}", L @ L.T)
            r = (z @ L.T) * sd
        else:
            r = z * sd
        r = numpyro.deterministic(f"r_{block.group}", r)

        fixed = {}
        for fe in model.fixed_effects:
            prior = priors.get(fe.cls, fe.response, fe.dpar).to_numpyro()
            if fe.by_species:
                prior = prior.expand([data.n_species]).to_event(1)
            fixed[fe.response, fe.dpar] = numpyro.sample(fe.site, prior)

        def eta(spec, dpar, rd):
            b = fixed[spec.name, dpar]
            b = b[rd.species_idx] if model.fixed_effect(spec.name, dpar).by_species else b
            return b + r[rd.line_idx, block.index(spec.name, dpar)]

        for spec in model.responses:
            rd = data.responses[spec.name]
            aux = {name: numpyro.sample(f"{name}_{spec.name}", priors.get(name, spec.name).to_numpyro())
                   for name in spec.auxiliary}
            if INVSHAPE in aux:
                aux["shape"] = numpyro.deterministic(f"shape_{spec.name}", 1.0 / aux[INVSHAPE])
            if rd.n == 0:
                continue
            with numpyro.plate(f"obs_{spec.name}", rd.n):
                if spec.family == LOGNORMAL:
                    logp = _interval_lognormal_logp(rd.lower, rd.upper, eta(spec, "mu", rd), aux[SIGMA])
                    numpyro.factor(spec.name, logp)
                elif spec.family in (NEGBINOMIAL, ZERO_INFLATED_NEGBINOMIAL):
                    shape = aux["shape"]
                    mean = jnp.exp(eta(spec, "mu", rd))
                    if spec.family == ZERO_INFLATED_NEGBINOMIAL:
                        likelihood = dist.ZeroInflatedNegativeBinomial2(
                            mean, shape, gate_logits=eta(spec, "zi", rd))
                    else:
                        likelihood = dist.NegativeBinomial2(mean, shape)
                    numpyro.sample(spec.name, likelihood, obs=rd.y)
                elif spec.family == BERNOULLI:
                    numpyro.sample(spec.name, dist.Bernoulli(logits=eta(spec, "mu", rd)), obs=rd.y)
                else:
                    raise SpecificationError(f"Unsupported family: {spec.family}")

    return model_fn
