"""
Steadfast configuration.

Coordinator toggles, global defaults, and per-class retry / circuit / health
policies. Reads from ~/.steadfast/config.toml with environment variable overrides.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from steadfast.core.types import DEFAULT_POLICY, policy_key
from steadfast.resilience.circuit_breaker import DEFAULT_CIRCUIT_CONFIGS, CircuitBreakerConfig
from steadfast.resilience.health import HealthCheckConfig
from steadfast.resilience.retry import DEFAULT_RETRY_CONFIGS, RetryConfig

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

STEADFAST_HOME = Path(os.getenv("STEADFAST_HOME", Path.home() / ".steadfast"))
CONFIG_PATH = STEADFAST_HOME / "config.toml"


# ---------------------------------------------------------------------------
# Default health policies for the collaborators the core usually protects
# ---------------------------------------------------------------------------

DEFAULT_HEALTH_CONFIGS: dict[str, HealthCheckConfig] = {
    "docs": HealthCheckConfig(interval=30.0, timeout=10.0, retries=2, failure_threshold=3, grace_period=5.0),
    "vector": HealthCheckConfig(interval=45.0, timeout=8.0, retries=2, failure_threshold=3, grace_period=5.0),
    "llm": HealthCheckConfig(interval=60.0, timeout=10.0, retries=2, failure_threshold=3, grace_period=5.0),
    "sandbox": HealthCheckConfig(interval=60.0, timeout=5.0, retries=2, failure_threshold=3, grace_period=5.0),
    "cache": HealthCheckConfig(interval=120.0, timeout=3.0, retries=1, failure_threshold=2, grace_period=10.0),
    "storage": HealthCheckConfig(interval=180.0, timeout=5.0, retries=2, failure_threshold=2, grace_period=10.0),
    "general": HealthCheckConfig(interval=60.0, timeout=5.0, retries=2, failure_threshold=3, grace_period=5.0),
}


# ---------------------------------------------------------------------------
# Main config
# ---------------------------------------------------------------------------

@dataclass
class SteadfastConfig:
    """Top-level steadfast configuration."""

    # Status server
    host: str = "127.0.0.1"
    port: int = 8090

    # Logging
    log_level: str = "INFO"

    # Coordinator toggles
    enabled: bool = True
    retry_enabled: bool = True
    circuit_breaker_enabled: bool = True
    health_check_enabled: bool = True
    strict: bool = False

    # Global defaults (seconds)
    retry_attempts: int = 3
    retry_delay: float = 1.0
    retry_max_delay: float = 30.0
    circuit_failure_threshold: int = 5
    circuit_reset_timeout: float = 30.0
    default_timeout: float = 10.0
    health_check_interval: float = 30.0
    operation_failure_threshold: int = 3

    # Per-class policies
    retry: dict[str, RetryConfig] = field(default_factory=dict)
    circuits: dict[str, CircuitBreakerConfig] = field(default_factory=dict)
    health: dict[str, HealthCheckConfig] = field(default_factory=dict)

    def __post_init__(self):
        # The "general" class follows the global defaults unless set explicitly
        self.retry.setdefault("general", RetryConfig(
            max_attempts=self.retry_attempts, base_delay=self.retry_delay,
            max_delay=self.retry_max_delay,
        ))
        self.circuits.setdefault("general", CircuitBreakerConfig(
            failure_threshold=self.circuit_failure_threshold,
            reset_timeout=self.circuit_reset_timeout,
        ))
        self.health.setdefault("general", HealthCheckConfig(interval=self.health_check_interval))

    def health_config_for(self, service: str) -> HealthCheckConfig:
        cfg = self.health[policy_key(service, self.health)]
        return replace(cfg, probes=list(cfg.probes))

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled, "retry_enabled": self.retry_enabled,
            "circuit_breaker_enabled": self.circuit_breaker_enabled,
            "health_check_enabled": self.health_check_enabled, "strict": self.strict,
            "retry_attempts": self.retry_attempts, "retry_delay": self.retry_delay,
            "default_timeout": self.default_timeout,
            "retry": {k: v.to_dict() for k, v in self.retry.items()},
            "circuits": {k: v.to_dict() for k, v in self.circuits.items()},
            "health": {k: v.to_dict() for k, v in self.health.items()},
        }


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_RESILIENCE_KEYS = {
    "enabled": bool, "retry_enabled": bool, "circuit_breaker_enabled": bool,
    "health_check_enabled": bool, "strict": bool,
    "retry_attempts": int, "retry_delay": float, "retry_max_delay": float,
    "circuit_failure_threshold": int, "circuit_reset_timeout": float,
    "default_timeout": float, "health_check_interval": float,
    "operation_failure_threshold": int,
}

_ENV_OVERRIDES = {
    "STEADFAST_ENABLED": ("enabled", bool),
    "STEADFAST_RETRY_ENABLED": ("retry_enabled", bool),
    "STEADFAST_CIRCUIT_BREAKER_ENABLED": ("circuit_breaker_enabled", bool),
    "STEADFAST_HEALTH_CHECK_ENABLED": ("health_check_enabled", bool),
    "STEADFAST_RETRY_ATTEMPTS": ("retry_attempts", int),
    "STEADFAST_DEFAULT_TIMEOUT": ("default_timeout", float),
    "STEADFAST_LOG_LEVEL": ("log_level", str),
    "STEADFAST_HOST": ("host", str),
    "STEADFAST_PORT": ("port", int),
}


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _overlay(base: Any, overrides: dict[str, Any]) -> Any:
    """Copy of dataclass `base` with known keys from `overrides` applied (validated)."""
    names = {f.name for f in fields(base)}
    kwargs = {f.name: getattr(base, f.name) for f in fields(base)}
    for key, value in overrides.items():
        if key in names:
            kwargs[key] = value
    return type(base)(**kwargs)


def _apply_toml(config: SteadfastConfig, data: dict[str, Any]) -> None:
    """Overlay TOML data onto a SteadfastConfig."""
    server = data.get("server", {})
    if "host" in server:
        config.host = server["host"]
    if "port" in server:
        config.port = int(server["port"])

    logging_section = data.get("logging", {})
    if "level" in logging_section:
        config.log_level = str(logging_section["level"])

    resilience = data.get("resilience", {})
    for key, cast in _RESILIENCE_KEYS.items():
        if key in resilience:
            setattr(config, key, cast(resilience[key]))

    for name, overrides in data.get("retry", {}).items():
        base = config.retry.get(name) or config.retry["general"]
        config.retry[name] = _overlay(base, overrides)

    for name, overrides in data.get("circuit", data.get("circuits", {})).items():
        base = config.circuits.get(name) or config.circuits["general"]
        config.circuits[name] = _overlay(base, overrides)

    for name, overrides in data.get("health", {}).items():
        base = config.health.get(name) or config.health["general"]
        config.health[name] = _overlay(base, overrides)


def _apply_env(config: SteadfastConfig) -> None:
    for env, (attr, cast) in _ENV_OVERRIDES.items():
        raw = os.getenv(env)
        if raw:
            setattr(config, attr, _parse_bool(raw) if cast is bool else cast(raw))


def load_config(config_path: Path | None = None) -> SteadfastConfig:
    """
    Build config from defaults → TOML file → environment variables.

    Precedence (highest wins):
        1. Environment variables
        2. ~/.steadfast/config.toml
        3. Built-in defaults
    """
    path = config_path or CONFIG_PATH
    toml_data: dict[str, Any] = {}
    if path.exists():
        with open(path, "rb") as f:
            toml_data = tomllib.load(f)

    # Globals are settled before construction so the derived "general" policies follow them
    scratch = SteadfastConfig()
    _apply_toml(scratch, {"resilience": toml_data.get("resilience", {})})
    _apply_env(scratch)

    config = SteadfastConfig(
        **{key: getattr(scratch, key) for key in _RESILIENCE_KEYS},
        retry={k: replace(v) for k, v in DEFAULT_RETRY_CONFIGS.items() if k != DEFAULT_POLICY},
        circuits={k: replace(v) for k, v in DEFAULT_CIRCUIT_CONFIGS.items() if k != DEFAULT_POLICY},
        health={k: replace(v) for k, v in DEFAULT_HEALTH_CONFIGS.items() if k != DEFAULT_POLICY},
    )
    _apply_toml(config, toml_data)
    _apply_env(config)
    return config



# ---------------------------------------------------------------------------
# Global singleton
# ---------------------------------------------------------------------------

_config: SteadfastConfig | None = None


def get_config() -> SteadfastConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config
