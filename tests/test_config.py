"""
Tests for configuration management.

Covers YAML loading of the shipped configs and Pydantic validation of
sampler, diagnostics and prior settings.
"""

import pytest
from pathlib import Path
import tempfile
import yaml
from pydantic import ValidationError

from lifehistory.config import (
    load_config,
    AnalysisConfig,
    SamplerConfig,
    DiagnosticsConfig,
    PriorSettings,
    SummaryConfig
)

CONFIG_DIR = Path(__file__).parent.parent / "config"


class TestConfigLoading:
    """Test configuration loading from YAML files."""

    def test_load_default_config(self):
        """Test loading the default configuration file."""
        config = load_config(CONFIG_DIR / "default.yaml")

        assert isinstance(config, AnalysisConfig)
        assert config.sampler.warmup == 2000
        assert config.sampler.iterations == 4000
        assert config.sampler.chains == 4
        assert config.sampler.draws == 2000

    def test_load_test_config(self):
        """Test loading the test configuration file."""
        config = load_config(CONFIG_DIR / "test.yaml")

        assert isinstance(config, AnalysisConfig)
        assert config.sampler.chains == 1
        assert config.sampler.chain_method == "sequential"
        assert config.data.data_path is None

    def test_load_without_path_uses_default(self):
        """Test that no path falls back to config/default.yaml."""
        assert load_config().sampler == load_config(CONFIG_DIR / "default.yaml").sampler

    def test_load_nonexistent_config(self):
        """Test that loading a nonexistent config raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_config(CONFIG_DIR / "nonexistent.yaml")

    def test_load_invalid_config(self):
        """Test that an invalid config raises ValueError."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            yaml.dump({'sampler': {'warmup': 500, 'iterations': 400, 'chains': 0}}, f)
            temp_path = f.name

        try:
            with pytest.raises(ValueError, match="Invalid analysis config"):
                load_config(Path(temp_path))
        finally:
            Path(temp_path).unlink()

    def test_non_mapping_config(self, tmp_path):
        """Test that a YAML file without sections is rejected."""
        path = tmp_path / "list.yaml"
        path.write_text("- sampler\n- priors\n")
        with pytest.raises(ValueError, match="mapping of sections"):
            load_config(path)

    def test_empty_file_gives_defaults(self, tmp_path):
        """Test that an empty YAML file yields the default configuration."""
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path) == AnalysisConfig()


class TestPydanticModels:
    """Test Pydantic model validation."""

    def test_sampler_defaults(self):
        """Test the brms-style defaults: 4 chains of 4000 iterations, half warmup."""
        config = SamplerConfig()
        assert (config.chains, config.iterations, config.warmup) == (4, 4000, 2000)
        assert config.draws == 2000

    def test_iterations_must_exceed_warmup(self):
        """Test that iterations must be greater than warmup."""
        with pytest.raises(ValidationError):
            SamplerConfig(warmup=1000, iterations=1000)

    def test_invalid_chain_method(self):
        """Test that an unknown chain method is rejected."""
        with pytest.raises(ValidationError):
            SamplerConfig(chain_method="threads")

    def test_target_accept_bounds(self):
        """Test that target acceptance must lie strictly between 0 and 1."""
        with pytest.raises(ValidationError):
            SamplerConfig(target_accept=1.0)

    def test_rhat_threshold_above_one(self):
        """Test that an R-hat threshold at or below 1 is rejected."""
        with pytest.raises(ValidationError):
            DiagnosticsConfig(max_rhat=1.0)

    def test_prior_scales_positive(self):
        """Test that prior scales must be positive."""
        with pytest.raises(ValidationError):
            PriorSettings(sd_scale=0)

    def test_hdi_prob_bounds(self):
        """Test that the HDI mass must lie in (0, 1)."""
        assert SummaryConfig().hdi_prob == 0.95
        with pytest.raises(ValidationError):
            SummaryConfig(hdi_prob=1.5)
