"""Tests for Pydantic config schema validation."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from canvas_runtime import config as config_module
from canvas_runtime.config import get, load_config, load_config_dict, set_config_value
from canvas_runtime.config_schema import (
    AppConfig,
    ExecutorConfig,
    ServicesConfig,
    load_validated_config,
    validate_config_dict,
)


class TestValidConfig:
    """Test that valid configs are accepted."""

    def test_empty_config_uses_defaults(self) -> None:
        """Empty config should use all defaults."""
        config = validate_config_dict({})
        assert config.runtime.tick_interval_ms == 2000
        assert config.runtime.mode == "auto"
        assert config.escrow.fee_rate_bps == 100
        assert config.escrow.fee_floor_micro == 50_000
        assert config.services.latency_ticks == 3

    def test_partial_config_merges_defaults(self) -> None:
        """Partial config should merge with defaults."""
        config = validate_config_dict({"runtime": {"tick_interval_ms": 500}})
        assert config.runtime.tick_interval_ms == 500
        assert config.runtime.rng_seed == 42  # Default

    def test_full_config_loads(self) -> None:
        """Full config file should load without errors."""
        config = load_validated_config("config/config.yaml")
        assert config.runtime.tick_interval_ms > 0
        assert "json" in config.executor.preloaded_imports

    def test_step_mode_accepted(self) -> None:
        config = validate_config_dict({"runtime": {"mode": "step"}})
        assert config.runtime.mode == "step"


class TestInvalidConfig:
    """Test that invalid configs are rejected with clear errors."""

    def test_unknown_top_level_key_rejected(self) -> None:
        """Typos in section names fail fast."""
        with pytest.raises(ValidationError):
            validate_config_dict({"runtme": {}})

    def test_unknown_nested_key_rejected(self) -> None:
        with pytest.raises(ValidationError):
            validate_config_dict({"escrow": {"fee_rate": 100}})

    def test_zero_tick_interval_rejected(self) -> None:
        with pytest.raises(ValidationError):
            validate_config_dict({"runtime": {"tick_interval_ms": 0}})

    def test_invalid_mode_rejected(self) -> None:
        with pytest.raises(ValidationError):
            validate_config_dict({"runtime": {"mode": "fast"}})

    def test_fee_rate_above_100_percent_rejected(self) -> None:
        with pytest.raises(ValidationError):
            validate_config_dict({"escrow": {"fee_rate_bps": 10_001}})

    def test_nondeterministic_imports_rejected(self) -> None:
        """Clock and entropy modules cannot be whitelisted."""
        with pytest.raises(ValidationError) as exc_info:
            ExecutorConfig(preloaded_imports=["math", "random"])
        assert "random" in str(exc_info.value)

    def test_jobs_per_tick_cannot_exceed_queue(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            ServicesConfig(max_queue_size=5, max_jobs_per_tick=10)
        assert "max_jobs_per_tick" in str(exc_info.value)

    def test_invalid_log_level_rejected(self) -> None:
        with pytest.raises(ValidationError):
            validate_config_dict({"logging": {"level": "LOUD"}})


class TestConfigDefaults:
    """Test that defaults match the documented behaviour."""

    def test_app_config_defaults(self) -> None:
        config = AppConfig()
        assert config.history.max_entries == 50
        assert config.runtime.max_runtime_events == 1000
        assert config.runtime.dedupe_info_logs is True
        assert config.event_log.version == 1

    def test_executor_defaults(self) -> None:
        config = ExecutorConfig()
        assert config.timeout_seconds == 5
        assert set(config.preloaded_imports) >= {"math", "json", "re"}


class TestConfigFileLoading:
    """Test loading config from files and the dot-path accessors."""

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_validated_config(tmp_path / "nope.yaml")

    def test_empty_file_is_valid(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")
        config = load_validated_config(path)
        assert config.runtime.tick_interval_ms == 2000

    def test_get_falls_back_to_schema_default(self, tmp_path: Path) -> None:
        """Keys absent from the file still resolve through the schema."""
        path = tmp_path / "partial.yaml"
        path.write_text("runtime:\n  tick_interval_ms: 750\n")
        load_config(str(path))
        assert get("runtime.tick_interval_ms") == 750
        assert get("services.latency_ticks") == 3
        assert get("no.such.key", "fallback") == "fallback"

    def test_load_config_dict_installs_values(self) -> None:
        load_config_dict({"services": {"latency_ticks": 1}})
        assert get("services.latency_ticks") == 1

    def test_set_config_value_revalidates(self) -> None:
        set_config_value("escrow.fee_rate_bps", 250)
        assert get("escrow.fee_rate_bps") == 250
        with pytest.raises(ValidationError):
            set_config_value("escrow.fee_rate_bps", -1)

    def test_missing_default_file_uses_schema(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")
        config_module.reset_config()
        assert get("runtime.rng_seed") == 42
