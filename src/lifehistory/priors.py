import logging
import math
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Mapping, NamedTuple, Optional, Tuple

import numpyro.distributions as dist
import pandas as pd

from .config import PriorSettings
from .errors import SpecificationError

logger = logging.getLogger(__name__)

# parameter classes, named as in brms
SLOPE = "b"
INTERCEPT = "Intercept"
SD = "sd"
COR = "cor"
SIGMA = "sigma"
INVSHAPE = "invshape"


@dataclass(frozen=True)
class Prior:
    """A prior distribution, kept as plain data so it can be hashed and logged."""
    family: str
    params: Tuple[float, ...]

    def to_numpyro(self, dim: Optional[int] = None):
        if self.family == "normal":
            return dist.Normal(*self.params)
        if self.family == "half_normal":
            return dist.HalfNormal(*self.params)
        if self.family == "lkj":
            if dim is None:
                raise SpecificationError("LKJ prior needs the matrix dimension")
            return dist.LKJCholesky(dim, concentration=self.params[0])
        raise SpecificationError(f"Unknown prior family: {self.family}")

    def __str__(self):
        return f"{self.family}({', '.join(f'{p:g}' for p in self.params)})"


class PriorKey(NamedTuple):
    cls: str
    response: str = ""
    dpar: str = ""


class PriorSet:
    """Immutable mapping from (class, response, dpar) to a Prior."""

    def __init__(self, priors: Mapping[PriorKey, Prior]):
        self._priors = MappingProxyType(dict(priors))

    def get(self, cls: str, response: str = "", dpar: str = "") -> Prior:
        key = PriorKey(cls, response, dpar)
        try:
            return self._priors[key]
        except KeyError:
            raise SpecificationError(f"No prior for {key}") from None

    def keys(self):
        return self._priors.keys()

    def items(self):
        return self._priors.items()

    def __contains__(self, key):
        return key in self._priors

    def __len__(self):
        return len(self._priors)

    def to_dict(self) -> Dict[str, str]:
        return {"/".join(k): str(v) for k, v in sorted(self._priors.items())}

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [{"class": k.cls, "response": k.response, "dpar": k.dpar, "prior": str(v)}
             for k, v in sorted(self._priors.items())]
        )


def log_median(median: float, label: str) -> float:
    if not median > 0 or math.isinf(median):
        raise SpecificationError(f"Median of {label} must be positive and finite, got {median}")
    return math.log(median)


def build_priors(
    medians: Mapping[str, float],
    partition_by_species: bool,
    settings: Optional[PriorSettings] = None,
    responses=("development", "fecundity", "dispersal"),
    zero_inflated: bool = True,
) -> PriorSet:
    """
    Priors for the joint model.

    Log-link intercepts are centred on log(median) of the observed data so that the
    prior on the natural scale sits near the empirical central tendency. Logit-scale
    effects are centred on 0. The variants differ only in the class of the
    population-level terms: "b" when species is a fixed effect, "Intercept" otherwise.
    """
    settings = settings or PriorSettings()
    fixed = SLOPE if partition_by_species else INTERCEPT
    half_normal = Prior("half_normal", (settings.sd_scale,))
    logit = Prior("normal", (0.0, settings.logit_scale))

    priors = {}
    if "development" in responses:
        centre = log_median(medians["development"], "development time")
        priors[PriorKey(fixed, "development", "mu")] = Prior("normal", (centre, settings.intercept_scale))
        priors[PriorKey(SD, "development", "mu")] = half_normal
        priors[PriorKey(SIGMA, "development")] = half_normal
    if "fecundity" in responses:
        centre = log_median(medians["fecundity"], "fecundity")
        priors[PriorKey(fixed, "fecundity", "mu")] = Prior("normal", (centre, settings.intercept_scale))
        priors[PriorKey(SD, "fecundity", "mu")] = half_normal
        if zero_inflated:
            priors[PriorKey(fixed, "fecundity", "zi")] = logit
            priors[PriorKey(SD, "fecundity", "zi")] = half_normal
        priors[PriorKey(INVSHAPE, "fecundity")] = half_normal
    if "dispersal" in responses:
        priors[PriorKey(fixed, "dispersal", "mu")] = logit
        priors[PriorKey(SD, "dispersal", "mu")] = half_normal

    # a correlation matrix only exists when more than one term shares the line factor
    if sum(k.cls == SD for k in priors) > 1:
        priors[PriorKey(COR)] = Prior("lkj", (settings.lkj_eta,))

    logger.debug(f"Built {len(priors)} priors ({fixed} class for population-level terms)")
    return PriorSet(priors)
