"""
Configuration — immutable settings consumed at run start
========================================================
Values are resolved in this order (later wins):

    1. built-in defaults (mirror the project's .env.example)
    2. environment variables, after loading a .env file
    3. a YAML file passed to load_config(path=...)
    4. keyword overrides passed to load_config(**overrides)

YAML schema (every key optional):

    primary_model: gpt-4
    cost_limit_usd: 100.0
    fallback_models: [claude-sonnet-4-5, gemini-2.5-pro]
    stage_models:
      qa: claude-sonnet-4-5
    stage_cost_estimates:
      backend: 0.40
    retry_limit: 3
    backoff_base_seconds: 1.0
    backoff_max_seconds: 30.0
    repair_cap: 2
    min_stage_cost_usd: 0.01
    stage_timeout_seconds: 120
    max_output_tokens: 4096
    budget_scope: run          # run | process
    state_db_path: ~/.manipula/state.db

Provider credentials are deliberately absent: api_clients reads them from
the environment directly.
"""
from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .models import Stage

logger = logging.getLogger("manipula.config")

BUDGET_SCOPES = ("run", "process")
DEFAULT_STATE_PATH = Path.home() / ".manipula" / "state.db"

# env var → (field name, parser)
_ENV_FIELDS: dict[str, tuple[str, Any]] = {
    "PRIMARY_MODEL":         ("primary_model", str),
    "COST_LIMIT_USD":        ("cost_limit_usd", float),
    "FALLBACK_MODELS":       ("fallback_models", lambda v: tuple(
        m.strip() for m in v.split(",") if m.strip())),
    "RETRY_LIMIT":           ("retry_limit", int),
    "BACKOFF_BASE_SECONDS":  ("backoff_base_seconds", float),
    "BACKOFF_MAX_SECONDS":   ("backoff_max_seconds", float),
    "REPAIR_CAP":            ("repair_cap", int),
    "MIN_STAGE_COST_USD":    ("min_stage_cost_usd", float),
    "STAGE_TIMEOUT_SECONDS": ("stage_timeout_seconds", float),
    "MAX_OUTPUT_TOKENS":     ("max_output_tokens", int),
    "BUDGET_SCOPE":          ("budget_scope", str),
    "MANIPULA_STATE_DB":     ("state_db_path", Path),
}


def _frozen(d: Optional[Mapping]) -> Mapping:
    return MappingProxyType(dict(d or {}))


@dataclass(frozen=True)
class OrchestratorConfig:
    primary_model: str = "gpt-4"
    cost_limit_usd: float = 100.0
    fallback_models: tuple[str, ...] = ("claude-sonnet-4-5", "gemini-2.5-pro")
    stage_models: Mapping[str, str] = field(default_factory=lambda: _frozen({}))
    stage_cost_estimates: Mapping[str, float] = field(default_factory=lambda: _frozen({}))
    retry_limit: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    repair_cap: int = 2
    min_stage_cost_usd: float = 0.01
    stage_timeout_seconds: float = 120.0
    max_output_tokens: int = 4096
    budget_scope: str = "run"
    state_db_path: Path = DEFAULT_STATE_PATH

    def __post_init__(self):
        # Normalise container fields so callers may pass plain lists/dicts.
        object.__setattr__(self, "fallback_models", tuple(self.fallback_models))
        object.__setattr__(self, "stage_models", _frozen(
            {Stage(k).value: str(v) for k, v in dict(self.stage_models).items()}))
        object.__setattr__(self, "stage_cost_estimates", _frozen(
            {Stage(k).value: float(v) for k, v in dict(self.stage_cost_estimates).items()}))
        object.__setattr__(self, "state_db_path", Path(self.state_db_path).expanduser())
        self.validate()

    def validate(self) -> None:
        if not self.primary_model:
            raise ValueError("primary_model must not be empty")
        if self.cost_limit_usd < 0:
            raise ValueError(f"cost_limit_usd must be >= 0, got {self.cost_limit_usd}")
        if self.retry_limit < 1:
            raise ValueError(f"retry_limit must be >= 1, got {self.retry_limit}")
        if self.repair_cap < 1:
            raise ValueError(f"repair_cap must be >= 1, got {self.repair_cap}")
        if self.backoff_base_seconds < 0 or self.backoff_max_seconds < 0:
            raise ValueError("backoff seconds must be >= 0")
        if self.stage_timeout_seconds <= 0:
            raise ValueError(
                f"stage_timeout_seconds must be > 0, got {self.stage_timeout_seconds}")
        if self.min_stage_cost_usd < 0:
            raise ValueError(f"min_stage_cost_usd must be >= 0, got {self.min_stage_cost_usd}")
        if self.budget_scope not in BUDGET_SCOPES:
            raise ValueError(
                f"budget_scope must be one of {BUDGET_SCOPES}, got {self.budget_scope!r}")
        for stage, cost in self.stage_cost_estimates.items():
            if cost < 0:
                raise ValueError(f"stage_cost_estimates[{stage}] must be >= 0, got {cost}")

    def model_for(self, stage: Stage) -> str:
        return self.stage_models.get(stage.value, self.primary_model)

    def replace(self, **changes) -> "OrchestratorConfig":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "primary_model": self.primary_model,
            "cost_limit_usd": self.cost_limit_usd,
            "fallback_models": list(self.fallback_models),
            "stage_models": dict(self.stage_models),
            "stage_cost_estimates": dict(self.stage_cost_estimates),
            "retry_limit": self.retry_limit,
            "backoff_base_seconds": self.backoff_base_seconds,
            "backoff_max_seconds": self.backoff_max_seconds,
            "repair_cap": self.repair_cap,
            "min_stage_cost_usd": self.min_stage_cost_usd,
            "stage_timeout_seconds": self.stage_timeout_seconds,
            "max_output_tokens": self.max_output_tokens,
            "budget_scope": self.budget_scope,
            "state_db_path": str(self.state_db_path),
        }


def config_from_env(environ: Optional[Mapping[str, str]] = None) -> dict[str, Any]:
    """Collect config fields present in the environment."""
    env = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    for var, (name, parse) in _ENV_FIELDS.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        try:
            values[name] = parse(raw)
        except ValueError:
            raise ValueError(f"Invalid value for {var}: {raw!r}")
    return values


def _config_from_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"'{path}': top level must be a mapping")

    known = {f.name for f in dataclasses.fields(OrchestratorConfig)}
    unknown = set(raw) - known
    if unknown:
        raise ValueError(f"'{path}': unknown config keys {sorted(unknown)}")
    if "fallback_models" in raw and isinstance(raw["fallback_models"], str):
        raw["fallback_models"] = [m.strip() for m in raw["fallback_models"].split(",")]
    return raw


def load_config(path: Optional[str | Path] = None, use_dotenv: bool = True,
                **overrides) -> OrchestratorConfig:
    """Build an OrchestratorConfig from defaults, env, an optional YAML file and overrides."""
    if use_dotenv:
        load_dotenv()
    values = config_from_env()
    if path:
        values.update(_config_from_file(Path(path)))
    values.update({k: v for k, v in overrides.items() if v is not None})
    try:
        cfg = OrchestratorConfig(**values)
    except TypeError as e:
        raise ValueError(f"Invalid configuration: {e}")
    logger.debug(f"Loaded config: {cfg.to_dict()}")
    return cfg
