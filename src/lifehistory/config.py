"""
Configuration for the life-history analysis.

Settings are validated with Pydantic and read from human-editable YAML files
(``config/default.yaml`` for the publication run, ``config/test.yaml`` for
quick runs on synthetic data).
"""

from pathlib import Path
from typing import Optional, List, Literal
from pydantic import BaseModel, Field, ValidationError, field_validator
import yaml
import logging

logger = logging.getLogger(__name__)


class DataConfig(BaseModel):
    """Input and output locations."""
    data_path: Optional[str] = Field(default=None, description="CSV file with one row per experimental unit")
    output_dir: str = Field(default="results", description="Directory for tables and figures")
    cache_dir: str = Field(default="results/fits", description="Directory for cached posterior draws")
    species_order: Optional[List[str]] = Field(default=None, description="Display order of species levels")


class SamplerConfig(BaseModel):
    """NUTS settings; ``iterations`` counts warmup, as in brms."""
    warmup: int = Field(default=2000, gt=0, description="Warmup iterations per chain")
    iterations: int = Field(default=4000, gt=0, description="Total iterations per chain, warmup included")
    chains: int = Field(default=4, gt=0, description="Number of independent chains")
    seed: int = Field(default=42, ge=0, description="Random seed")
    target_accept: float = Field(default=0.8, gt=0, lt=1, description="Target acceptance probability")
    max_tree_depth: int = Field(default=10, gt=0, description="Maximum NUTS tree depth")
    chain_method: Literal["sequential", "parallel", "vectorized"] = Field(
        default="sequential", description="How numpyro runs multiple chains"
    )

    @field_validator('iterations')
    @classmethod
    def validate_iterations(cls, v, info):
        if 'warmup' in info.data and v <= info.data['warmup']:
            raise ValueError("iterations must be greater than warmup")
        return v

    @property
    def draws(self) -> int:
        """Post-warmup draws per chain."""
        return self.iterations - self.warmup


class DiagnosticsConfig(BaseModel):
    """Thresholds above/below which a fit is flagged as suspect."""
    max_rhat: float = Field(default=1.01, gt=1, description="Largest acceptable split R-hat")
    min_ess: float = Field(default=400, gt=0, description="Smallest acceptable bulk effective sample size")


class PriorSettings(BaseModel):
    """Scales of the weakly informative priors."""
    intercept_scale: float = Field(default=1.0, gt=0, description="SD of log-link intercept priors around log(median)")
    logit_scale: float = Field(default=1.5, gt=0, description="SD of logit-scale fixed effect priors")
    sd_scale: float = Field(default=1.0, gt=0, description="Scale of half-normal priors on SDs, sigma and invshape")
    lkj_eta: float = Field(default=2.0, gt=0, description="LKJ concentration of the line-level correlation matrix")


class SummaryConfig(BaseModel):
    """Posterior summary settings."""
    hdi_prob: float = Field(default=0.95, gt=0, lt=1, description="Mass of highest density intervals")


class AnalysisConfig(BaseModel):
    """Complete analysis configuration."""
    data: DataConfig = Field(default_factory=DataConfig)
    sampler: SamplerConfig = Field(default_factory=SamplerConfig)
    diagnostics: DiagnosticsConfig = Field(default_factory=DiagnosticsConfig)
    priors: PriorSettings = Field(default_factory=PriorSettings)
    summary: SummaryConfig = Field(default_factory=SummaryConfig)


DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config" / "default.yaml"


def load_config(config_path: Optional[Path] = None) -> AnalysisConfig:
    """
    Read an analysis config from YAML, falling back to config/default.yaml.

    Sections left out of the file keep their defaults, so an empty file gives
    the default analysis. Raises FileNotFoundError for a missing file and
    ValueError when a section fails validation.
    """
    config_path = Path(config_path) if config_path is not None else DEFAULT_CONFIG
    if not config_path.is_file():
        raise FileNotFoundError(f"No analysis config at {config_path}")

    with open(config_path) as f:
        sections = yaml.safe_load(f) or {}
    if not isinstance(sections, dict):
        raise ValueError(f"Invalid analysis config {config_path}: expected a mapping of sections")

    try:
        config = AnalysisConfig(**sections)
    except ValidationError as e:
        raise ValueError(f"Invalid analysis config {config_path}: {e}") from e

    logger.info(f"Analysis config {config_path.name}: {config.sampler.chains} chains x "
                f"{config.sampler.iterations} iterations ({config.sampler.warmup} warmup)")
    return config
