"""Shape of config/config.yaml, as pydantic models.

One model per top-level section. Unknown keys are rejected, so a
misspelled setting is an error at load time rather than a silently
ignored value.

Usage:
    from canvas_runtime.config_schema import load_validated_config
    cfg = load_validated_config("config/config.yaml")
    cfg.escrow.fee_rate_bps
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# =============================================================================
# BASE MODEL WITH STRICT VALIDATION
# =============================================================================

class StrictModel(BaseModel):
    """Section model; any key it does not declare is a validation error."""

    model_config = ConfigDict(extra="forbid")


# =============================================================================
# RUNTIME MODEL
# =============================================================================

class RuntimeConfig(StrictModel):
    """Tick scheduler and ledger configuration."""

    tick_interval_ms: int = Field(
        default=2000,
        gt=0,
        description="Virtual milliseconds per tick (also the wall-clock delay in auto mode)"
    )
    mode: Literal["auto", "step"] = Field(
        default="auto",
        description="auto: run on an interval; step: one tick per explicit call"
    )
    rng_seed: int = Field(
        default=42,
        description="Seed recorded in event logs and used for per-agent RNGs"
    )
    max_runtime_events: int = Field(
        default=1000,
        gt=0,
        description="Runtime events kept in the ledger (oldest dropped first)"
    )
    dedupe_info_logs: bool = Field(
        default=True,
        description="Collapse identical info logs from agents on no-op ticks"
    )


# =============================================================================
# ESCROW MODEL
# =============================================================================

class EscrowConfig(StrictModel):
    """Escrow fee arithmetic."""

    fee_rate_bps: int = Field(
        default=100,
        ge=0,
        le=10000,
        description="Settlement fee in basis points (100 = 1%)"
    )
    fee_floor_micro: int = Field(
        default=50_000,
        ge=0,
        description="Minimum fee in micro-units"
    )


# =============================================================================
# EXECUTOR MODEL
# =============================================================================

class ExecutorConfig(StrictModel):
    """Agent sandbox configuration."""

    timeout_seconds: int = Field(
        default=5,
        gt=0,
        description="Maximum execution time per agent run in seconds"
    )
    preloaded_imports: list[str] = Field(
        default_factory=lambda: [
            "math", "json", "re", "itertools", "functools",
            "collections", "string", "operator",
        ],
        description="Modules pre-loaded into the namespace; also the import whitelist"
    )
    max_logs: int = Field(default=200, gt=0, description="Log lines kept per run")
    max_log_chars: int = Field(default=2000, gt=0, description="Characters kept per log line")
    max_ops: int = Field(default=200, gt=0, description="Operations an agent may queue per run")
    max_state_chars: int = Field(
        default=200_000,
        gt=0,
        description="Maximum JSON size of an agent's persistent state"
    )

    @field_validator("preloaded_imports")
    @classmethod
    def reject_nondeterministic_modules(cls, value: list[str]) -> list[str]:
        """Agent runs must be reproducible, so clock and entropy modules are refused."""
        banned = {"random", "time", "datetime", "os", "sys", "secrets", "uuid"}
        bad = sorted(set(value) & banned)
        if bad:
            raise ValueError(f"preloaded_imports may not include {bad}")
        return value


# =============================================================================
# SERVICES MODEL
# =============================================================================

class ServicesConfig(StrictModel):
    """Service job queue configuration."""

    latency_ticks: int = Field(
        default=3,
        ge=0,
        description="Ticks between submission and completion of a job"
    )
    max_queue_size: int = Field(default=100, gt=0, description="Jobs held at once")
    max_jobs_per_tick: int = Field(default=10, gt=0, description="Jobs completed per tick")
    max_output_size: int = Field(
        default=10_000,
        gt=0,
        description="Maximum characters of a job's text output"
    )

    @model_validator(mode="after")
    def validate_per_tick_limit(self) -> "ServicesConfig":
        """Ensure a tick never tries to complete more jobs than the queue can hold."""
        if self.max_jobs_per_tick > self.max_queue_size:
            raise ValueError(
                f"max_jobs_per_tick ({self.max_jobs_per_tick}) must not exceed "
                f"max_queue_size ({self.max_queue_size})"
            )
        return self


# =============================================================================
# HISTORY MODEL
# =============================================================================

class HistoryConfig(StrictModel):
    """Undo history configuration."""

    max_entries: int = Field(default=50, gt=0, description="Snapshots kept for step-back")


# =============================================================================
# EVENT LOG MODEL
# =============================================================================

class EventLogConfig(StrictModel):
    """Recorder configuration."""

    version: int = Field(default=1, ge=1, description="Event log format version written")
    output_file: str = Field(
        default="recording.json",
        description="Default path for saved recordings"
    )


# =============================================================================
# LOGGING MODEL
# =============================================================================

class LoggingConfig(StrictModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Root log level for run.py"
    )
    format: str = Field(
        default="%(asctime)s %(levelname)s %(name)s: %(message)s",
        description="logging.basicConfig format string"
    )


class AppConfig(StrictModel):
    """Root configuration model for the entire application.

    All fields have sensible defaults, so an empty config file is valid.
    """

    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    escrow: EscrowConfig = Field(default_factory=EscrowConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    services: ServicesConfig = Field(default_factory=ServicesConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    event_log: EventLogConfig = Field(default_factory=EventLogConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# LOADING FUNCTIONS
# =============================================================================

def load_validated_config(config_path: str | Path = "config/config.yaml") -> AppConfig:
    """Parse a YAML file into an AppConfig. An empty file gives all defaults.

    Raises:
        FileNotFoundError: no file at ``config_path``.
        pydantic.ValidationError: unknown keys or out-of-range values.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path) as f:
        return AppConfig.model_validate(yaml.safe_load(f) or {})


def validate_config_dict(config_dict: dict[str, Any]) -> AppConfig:
    """Validate settings already decoded into a mapping."""
    return AppConfig.model_validate(config_dict)


__all__ = [
    "AppConfig",
    "RuntimeConfig",
    "EscrowConfig",
    "ExecutorConfig",
    "ServicesConfig",
    "HistoryConfig",
    "EventLogConfig",
    "LoggingConfig",
    "load_validated_config",
    "validate_config_dict",
]
