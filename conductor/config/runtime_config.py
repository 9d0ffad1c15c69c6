"""Runtime configuration for the conductor engine.

Loads ``runtime.yaml`` (next to this module, or an explicit path) over
built-in defaults. Environment variables take precedence over YAML config.

Usage:
    from conductor.config.runtime_config import get_config

    config = get_config()
    config.retry.max_attempts        # 2
    config.orchestrator.timeouts     # {"refiner": 300.0, ...}

Environment overrides:
    CONDUCTOR_STATE_DIR            state_dir
    CONDUCTOR_MAX_ITERATIONS       orchestrator.max_iterations
    CONDUCTOR_SESSION_PREFIX       orchestrator.session_prefix
    CONDUCTOR_RETRY_MAX_ATTEMPTS   retry.max_attempts
    CONDUCTOR_AUTO_RECOVER         recovery.auto_recover ("1"/"true"/"yes")
    CONDUCTOR_ENGINE_MODE          engine.mode ("stub" or "command")
    CONDUCTOR_ENGINE_COMMAND       engine.command
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

# Module logger for clamping warnings
logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).parent / "runtime.yaml"
_cached_config: Optional["RuntimeConfig"] = None

VALID_ENGINE_MODES = ("stub", "command")
VALID_FINGERPRINT_MODES = ("exact", "normalized")
VALID_ERROR_KINDS = ("crash", "timeout", "validation")

_TRUTHY = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class OrchestratorConfig:
    max_iterations: int = 3
    max_minor_fix_attempts: int = 2
    timeouts: Dict[str, float] = field(
        default_factory=lambda: {"refiner": 300.0, "builder": 600.0, "verifier": 300.0, "gatekeeper": 300.0}
    )
    session_prefix: str = "conductor"


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 2
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    recoverable_errors: Tuple[str, ...] = VALID_ERROR_KINDS


@dataclass(frozen=True)
class RecoveryConfig:
    auto_recover: bool = False
    stale_after_seconds: float = 600.0
    max_age_seconds: float = 86400.0


@dataclass(frozen=True)
class ProtocolConfig:
    fingerprint_mode: str = "exact"


@dataclass(frozen=True)
class EngineConfig:
    """How agents are invoked: ``stub`` (scripted) or ``command`` (JSON over stdio)."""

    mode: str = "stub"
    command: Optional[str] = None


@dataclass(frozen=True)
class RuntimeConfig:
    """Resolved configuration. Built by ``load_config``; never mutated."""

    state_dir: Path
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    protocol: ProtocolConfig = field(default_factory=ProtocolConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    source: Optional[Path] = None


def _default_config() -> Dict[str, Any]:
    """Return default configuration if runtime.yaml doesn't exist."""
    return {
        "version": "1.0",
        "state_dir": None,
        "orchestrator": {
            "max_iterations": 3,
            "max_minor_fix_attempts": 2,
            "session_prefix": "conductor",
            "timeouts": {
                "refiner": 300,
                "builder": 600,
                "verifier": 300,
                "gatekeeper": 300,
            },
        },
        "retry": {
            "max_attempts": 2,
            "base_delay_seconds": 1.0,
            "max_delay_seconds": 30.0,
            "backoff_multiplier": 2.0,
            "recoverable_errors": list(VALID_ERROR_KINDS),
        },
        "recovery": {
            "auto_recover": False,
            "stale_after_seconds": 600,
            "max_age_seconds": 86400,
        },
        "protocol": {"fingerprint_mode": "exact"},
        "engine": {"mode": "stub", "command": None},
    }


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: top level is not a mapping", path)
        return {}
    return data


# =============================================================================
# Coercion helpers
# =============================================================================


def _as_int(value: Any, name: str, default: int, minimum: int) -> int:
    try:
        result = int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid value %r for '%s'. Using default %d.", value, name, default)
        return default
    if result < minimum:
        logger.warning("'%s' value %d is below minimum %d. Clamping to %d.", name, result, minimum, minimum)
        result = minimum
    return result


def _as_float(value: Any, name: str, default: float, minimum: float = 0.0) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid value %r for '%s'. Using default %s.", value, name, default)
        return default
    if result < minimum:
        logger.warning("'%s' value %s is below minimum %s. Clamping to %s.", name, result, minimum, minimum)
        result = minimum
    return result


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return bool(value)


def _as_choice(value: Any, name: str, valid: Tuple[str, ...], default: str) -> str:
    choice = str(value).lower() if value is not None else default
    if choice not in valid:
        logger.warning(
            "Invalid %s value '%s' (valid: %s). Falling back to '%s'.",
            name,
            value,
            ", ".join(valid),
            default,
        )
        return default
    return choice


def _apply_env(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Apply CONDUCTOR_* environment overrides to the raw mapping."""
    env = os.environ
    if env.get("CONDUCTOR_STATE_DIR"):
        raw["state_dir"] = env["CONDUCTOR_STATE_DIR"]
    if env.get("CONDUCTOR_MAX_ITERATIONS"):
        raw["orchestrator"]["max_iterations"] = env["CONDUCTOR_MAX_ITERATIONS"]
    if env.get("CONDUCTOR_SESSION_PREFIX"):
        raw["orchestrator"]["session_prefix"] = env["CONDUCTOR_SESSION_PREFIX"]
    if env.get("CONDUCTOR_RETRY_MAX_ATTEMPTS"):
        raw["retry"]["max_attempts"] = env["CONDUCTOR_RETRY_MAX_ATTEMPTS"]
    if env.get("CONDUCTOR_AUTO_RECOVER") is not None:
        raw["recovery"]["auto_recover"] = env["CONDUCTOR_AUTO_RECOVER"]
    if env.get("CONDUCTOR_ENGINE_MODE"):
        raw["engine"]["mode"] = env["CONDUCTOR_ENGINE_MODE"]
    if env.get("CONDUCTOR_ENGINE_COMMAND"):
        raw["engine"]["command"] = env["CONDUCTOR_ENGINE_COMMAND"]
    return raw


def _build(raw: Dict[str, Any], source: Optional[Path]) -> RuntimeConfig:
    defaults = _default_config()
    orch = raw.get("orchestrator") or {}
    retry = raw.get("retry") or {}
    recovery = raw.get("recovery") or {}
    protocol = raw.get("protocol") or {}
    engine = raw.get("engine") or {}

    timeouts = dict(OrchestratorConfig().timeouts)
    for agent, seconds in (orch.get("timeouts") or {}).items():
        if agent not in timeouts:
            logger.warning("Ignoring timeout for unknown agent '%s'", agent)
            continue
        timeouts[agent] = _as_float(seconds, f"orchestrator.timeouts.{agent}", timeouts[agent], minimum=0.001)

    kinds = []
    for kind in retry.get("recoverable_errors") or []:
        kind = str(kind).lower()
        if kind not in VALID_ERROR_KINDS:
            logger.warning("Ignoring non-recoverable error kind '%s' in retry.recoverable_errors", kind)
            continue
        kinds.append(kind)

    state_dir = raw.get("state_dir")
    mode = _as_choice(engine.get("mode"), "engine.mode", VALID_ENGINE_MODES, "stub")
    command = engine.get("command")
    if mode == "command" and not command:
        logger.warning("engine.mode is 'command' but engine.command is empty. Falling back to 'stub'.")
        mode = "stub"

    return RuntimeConfig(
        state_dir=Path(state_dir) if state_dir else Path.cwd() / ".conductor",
        orchestrator=OrchestratorConfig(
            max_iterations=_as_int(orch.get("max_iterations"), "orchestrator.max_iterations", 3, 1),
            max_minor_fix_attempts=_as_int(
                orch.get("max_minor_fix_attempts"), "orchestrator.max_minor_fix_attempts", 2, 0
            ),
            timeouts=timeouts,
            session_prefix=str(orch.get("session_prefix") or defaults["orchestrator"]["session_prefix"]),
        ),
        retry=RetryConfig(
            max_attempts=_as_int(retry.get("max_attempts"), "retry.max_attempts", 2, 1),
            base_delay_seconds=_as_float(retry.get("base_delay_seconds"), "retry.base_delay_seconds", 1.0),
            max_delay_seconds=_as_float(retry.get("max_delay_seconds"), "retry.max_delay_seconds", 30.0),
            backoff_multiplier=_as_float(retry.get("backoff_multiplier"), "retry.backoff_multiplier", 2.0, 1.0),
            recoverable_errors=tuple(kinds),
        ),
        recovery=RecoveryConfig(
            auto_recover=_as_bool(recovery.get("auto_recover", False)),
            stale_after_seconds=_as_float(recovery.get("stale_after_seconds"), "recovery.stale_after_seconds", 600.0),
            max_age_seconds=_as_float(recovery.get("max_age_seconds"), "recovery.max_age_seconds", 86400.0),
        ),
        protocol=ProtocolConfig(
            fingerprint_mode=_as_choice(
                protocol.get("fingerprint_mode"), "protocol.fingerprint_mode", VALID_FINGERPRINT_MODES, "exact"
            ),
        ),
        engine=EngineConfig(mode=mode, command=command),
        source=source,
    )


def load_config(path: Optional[Path] = None) -> RuntimeConfig:
    """Load configuration from ``path`` (default: runtime.yaml) and the environment.

    A missing file yields the built-in defaults.
    """
    path = Path(path) if path is not None else _CONFIG_PATH
    raw = _default_config()
    source: Optional[Path] = None
    if path.exists():
        raw = _merge(raw, _read_yaml(path))
        source = path
    return _build(_apply_env(raw), source)


def get_config() -> RuntimeConfig:
    """Cached configuration from the default location."""
    global _cached_config
    if _cached_config is None:
        _cached_config = load_config()
    return _cached_config


def reset_config() -> None:
    """Reset cached config (for testing)."""
    global _cached_config
    _cached_config = None
