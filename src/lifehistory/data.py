import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd
import pandera.pandas as pa

from .errors import SpecificationError

logger = logging.getLogger(__name__)

SINGLE_VIAL = "single-vial"
TWO_VIAL = "two-vial"
EXPERIMENT_TYPES = [SINGLE_VIAL, TWO_VIAL]

DISPERSED = "dispersed"
NOT_DISPERSED = "not-dispersed"
NOT_APPLICABLE = "not-applicable"
DISPERSAL_STATUSES = [NOT_APPLICABLE, DISPERSED, NOT_DISPERSED]
DISPERSAL_CODES = {DISPERSED: 1, NOT_DISPERSED: 0}

INTERVAL = "interval"


def _lines_nest_within_species(df: pd.DataFrame) -> bool:
    return bool((df.groupby("line")["species"].nunique() <= 1).all())


def _development_interval_is_ordered(df: pd.DataFrame) -> pd.Series:
    # rows that will enter the development likelihood need lowbound < upbound (or upbound open)
    recorded = (df["experiment_type"] == SINGLE_VIAL) & df["emergence_date"].notna()
    ordered = df["lowbound"].notna() & (df["upbound"].isna() | (df["upbound"] > df["lowbound"]))
    return ~recorded | ordered


RAW_OBSERVATION_SCHEMA = pa.DataFrameSchema(
    {
        "species": pa.Column(str, coerce=True, description="Species label"),
        "line": pa.Column(str, coerce=True, description="Line label, nested within species"),
        "replicate": pa.Column(int, coerce=True, description="Replicate number"),
        "experiment_type": pa.Column(checks=pa.Check.isin(EXPERIMENT_TYPES)),
        "temporal_block": pa.Column(nullable=True),
        "start_timestamp": pa.Column(nullable=True),
        "emergence_date": pa.Column(nullable=True),
        "emergence_hour": pa.Column(nullable=True),
        "elapsed_hours": pa.Column(float, nullable=True, coerce=True),
        "lowbound": pa.Column(float, pa.Check.gt(0), nullable=True, coerce=True,
                              description="Development time lower bound (days)"),
        "upbound": pa.Column(float, nullable=True, coerce=True,
                             description="Development time upper bound (days), missing if right-censored"),
        "dispersal_status": pa.Column(checks=pa.Check.isin(DISPERSAL_STATUSES), nullable=True),
        "egg_count": pa.Column(float, pa.Check.ge(0), nullable=True, coerce=True),
    },
    checks=[
        pa.Check(_lines_nest_within_species, error="each line must belong to exactly one species"),
        pa.Check(_development_interval_is_ordered,
                 error="emerged single-vial rows need a lowbound and an upbound above it (or missing)"),
    ],
    strict=False,
)

REQUIRED_COLUMNS = list(RAW_OBSERVATION_SCHEMA.columns)


def validate_observations(df: pd.DataFrame) -> pd.DataFrame:
    """Validate raw records, raising SchemaError on missing or malformed columns."""
    return RAW_OBSERVATION_SCHEMA.validate(df)


def recode_dispersal(status: pd.Series) -> pd.Series:
    """dispersed -> 1, not-dispersed -> 0, anything else -> <NA>."""
    return pd.to_numeric(status.map(DISPERSAL_CODES), errors="coerce").astype("Int64")


def prepare_observations(df: pd.DataFrame) -> pd.DataFrame:
    """Add censoring flags, the numeric dispersal outcome and per-response validity masks."""
    obs = validate_observations(df).copy()

    single = obs["experiment_type"] == SINGLE_VIAL
    two = obs["experiment_type"] == TWO_VIAL

    obs["dispersal_numeric"] = recode_dispersal(obs["dispersal_status"])
    obs["valid_development"] = (single & obs["emergence_date"].notna()).astype(bool)
    obs["valid_fecundity"] = (single & obs["egg_count"].notna()).astype(bool)
    obs["valid_dispersal"] = (two & obs["dispersal_numeric"].notna()).astype(bool)

    # every development time is interval-censored; a missing upper bound is open-ended
    obs["censoring_kind"] = pd.Series(pd.NA, index=obs.index, dtype="string")
    obs.loc[obs["valid_development"], "censoring_kind"] = INTERVAL
    open_ended = obs["valid_development"] & obs["upbound"].isna()
    obs.loc[open_ended, "upbound"] = np.inf

    unused = ~(obs["valid_development"] | obs["valid_fecundity"] | obs["valid_dispersal"])
    logger.info(
        f"Prepared {len(obs)} observations: "
        f"{int(obs['valid_development'].sum())} development, "
        f"{int(obs['valid_fecundity'].sum())} fecundity, "
        f"{int(obs['valid_dispersal'].sum())} dispersal, "
        f"{int(unused.sum())} unused"
    )
    return obs


def load_observations(path) -> pd.DataFrame:
    """Read the raw CSV and prepare it for modelling."""
    logger.info(f"Reading observations from {path}")
    return prepare_observations(pd.read_csv(path))


def observation_medians(obs: pd.DataFrame) -> Dict[str, float]:
    """Empirical medians used to centre the log-link intercept priors.

    When most valid egg counts are zero the fecundity median falls back to the
    median of the non-zero counts, which is what the count component describes.
    """
    eggs = obs.loc[obs["valid_fecundity"], "egg_count"]
    fecundity = float(eggs.median())
    if fecundity == 0:
        fecundity = float(eggs[eggs > 0].median())
        logger.info(f"Most egg counts are zero; centring fecundity on the non-zero median {fecundity:g}")
    return {
        "development": float(obs.loc[obs["valid_development"], "lowbound"].median()),
        "fecundity": fecundity,
    }


@dataclass(frozen=True)
class GroupLevels:
    """Species and line levels, fixed once when a model is built."""
    species: tuple
    lines: tuple
    line_species: tuple

    @classmethod
    def from_observations(cls, obs: pd.DataFrame, species_order: Optional[Sequence[str]] = None):
        present = sorted(obs["species"].unique())
        species = tuple(species_order) if species_order else tuple(present)
        unknown = set(present) - set(species)
        if unknown:
            raise SpecificationError(f"Species missing from species_order: {sorted(unknown)}")

        rank = {s: i for i, s in enumerate(species)}
        pairs = obs[["species", "line"]].drop_duplicates()
        pairs = pairs.assign(_rank=pairs["species"].map(rank)).sort_values(["_rank", "line"])
        return cls(
            species=species,
            lines=tuple(pairs["line"]),
            line_species=tuple(pairs["species"]),
        )

    @property
    def n_species(self) -> int:
        return len(self.species)

    @property
    def n_lines(self) -> int:
        return len(self.lines)

    def species_index(self, values) -> np.ndarray:
        return _encode(values, self.species, "species")

    def line_index(self, values) -> np.ndarray:
        return _encode(values, self.lines, "line")

    def to_dict(self) -> dict:
        return {"species": list(self.species), "lines": list(self.lines),
                "line_species": list(self.line_species)}


def _encode(values, levels, kind) -> np.ndarray:
    lookup = {v: i for i, v in enumerate(levels)}
    values = list(values)
    unknown = sorted({str(v) for v in values if v not in lookup})
    if unknown:
        raise SpecificationError(f"Unknown {kind} level(s): {unknown}")
    return np.array([lookup[v] for v in values], dtype=np.int32)


@dataclass
class ResponseData:
    species_idx: np.ndarray
    line_idx: np.ndarray
    y: Optional[np.ndarray] = None
    lower: Optional[np.ndarray] = None
    upper: Optional[np.ndarray] = None

    @property
    def n(self) -> int:
        return len(self.line_idx)


@dataclass
class ModelData:
    n_species: int
    n_lines: int
    responses: Dict[str, ResponseData] = field(default_factory=dict)

    def without_outcomes(self) -> "ModelData":
        """Copy with count/binary outcomes removed, for posterior predictive simulation."""
        return replace(self, responses={
            name: replace(rd, y=None) for name, rd in self.responses.items()
        })


def build_model_data(model, obs: pd.DataFrame) -> ModelData:
    """Subset the shared observation table per response using each response's validity mask."""
    levels = model.levels
    data = ModelData(n_species=levels.n_species, n_lines=levels.n_lines)
    for spec in model.responses:
        rows = obs[obs[spec.mask].astype(bool)]
        rd = ResponseData(
            species_idx=levels.species_index(rows["species"]),
            line_idx=levels.line_index(rows["line"]),
        )
        if spec.bounds is not None:
            lower, upper, censoring = spec.bounds
            if not (rows[censoring] == INTERVAL).all():
                raise SpecificationError(f"{spec.name}: only interval censoring is supported")
            rd.lower = rows[lower].to_numpy(dtype=np.float64)
            rd.upper = rows[upper].fillna(np.inf).to_numpy(dtype=np.float64)
        else:
            rd.y = rows[spec.variable].to_numpy(dtype=np.float64).astype(np.int32)
        data.responses[spec.name] = rd
        logger.debug(f"{spec.name}: {rd.n} rows")
    return data


def make_prediction_grid(levels: GroupLevels, by: str = "line") -> pd.DataFrame:
    """Distinct (species, line) rows, or distinct species rows."""
    if by == "line":
        grid = pd.DataFrame({"species": list(levels.line_species), "line": list(levels.lines)})
        grid["line"] = pd.Categorical(grid["line"], categories=list(levels.lines))
    elif by == "species":
        grid = pd.DataFrame({"species": list(levels.species)})
    else:
        raise ValueError(f"by must be 'line' or 'species', got {by!r}")
    grid["species"] = pd.Categorical(grid["species"], categories=list(levels.species))
    return grid


def simulate_observations(
    n_species: int = 2,
    n_lines: int = 3,
    n_replicates: int = 5,
    dev_median=None,
    fec_mu=None,
    fec_zi: float = 0.2,
    fec_shape: float = 10.0,
    disp_p=None,
    dev_sigma: float = 0.1,
    line_sd: float = 0.0,
    check_interval: float = 0.5,
    seed: int = 0,
) -> pd.DataFrame:
    """Raw records with known species effects: one single-vial and one two-vial unit per replicate.

    ``dev_median`` (days), ``fec_mu`` (eggs, absent zero inflation) and ``disp_p`` are per-species
    values on the natural scale. ``line_sd`` adds a line deviation on every link scale.
    """
    rng = np.random.default_rng(seed)
    dev_median = np.asarray(dev_median if dev_median is not None else np.linspace(10, 12, n_species))
    fec_mu = np.asarray(fec_mu if fec_mu is not None else np.linspace(40, 60, n_species))
    disp_p = np.asarray(disp_p if disp_p is not None else np.linspace(0.3, 0.6, n_species))
    start = pd.Timestamp("2021-03-01 09:00")

    records = []
    for s in range(n_species):
        species = f"sp{s + 1}"
        for l in range(n_lines):
            line = f"{species}_L{l + 1}"
            dev_r, fec_r, zi_r, disp_r = rng.normal(0.0, line_sd, size=4)
            for r in range(n_replicates):
                common = {"species": species, "line": line, "replicate": r + 1,
                          "temporal_block": r % 2 + 1, "start_timestamp": str(start)}

                dev_days = rng.lognormal(np.log(dev_median[s]) + dev_r, dev_sigma)
                lowbound = np.floor(dev_days / check_interval) * check_interval
                emergence = start + pd.Timedelta(days=float(lowbound))
                zi = 1 / (1 + np.exp(-(np.log(fec_zi / (1 - fec_zi)) + zi_r)))
                mu = fec_mu[s] * np.exp(fec_r)
                eggs = 0 if rng.random() < zi else rng.poisson(rng.gamma(fec_shape, mu / fec_shape))
                records.append({
                    **common,
                    "experiment_type": SINGLE_VIAL,
                    "emergence_date": emergence.strftime("%Y-%m-%d"),
                    "emergence_hour": emergence.hour,
                    "elapsed_hours": lowbound * 24,
                    "lowbound": lowbound,
                    "upbound": lowbound + check_interval,
                    "dispersal_status": NOT_APPLICABLE,
                    "egg_count": eggs,
                })

                logit_p = np.log(disp_p[s] / (1 - disp_p[s])) + disp_r
                dispersed = rng.random() < 1 / (1 + np.exp(-logit_p))
                records.append({
                    **common,
                    "experiment_type": TWO_VIAL,
                    "emergence_date": None,
                    "emergence_hour": None,
                    "elapsed_hours": None,
                    "lowbound": None,
                    "upbound": None,
                    "dispersal_status": DISPERSED if dispersed else NOT_DISPERSED,
                    "egg_count": None,
                })
    return pd.DataFrame.from_records(records)
