from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid int for {key}: {value!r}")
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_bool(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Invalid bool for {key}: {value!r}")


def _as_percent(value: Any, *, key: str) -> float:
    v = _as_float(value, key=key)
    if v < 0 or v > 100:
        raise ConfigError(f"Invalid {key}: must be in [0..100], got {v}")
    return v


def _require_choice(value: Any, *, key: str, choices: set[str]) -> str:
    s = _as_str(value, key=key).strip()
    if s not in choices:
        raise ConfigError(f"Invalid {key}: must be one of {sorted(choices)}, got {s!r}")
    return s


ENGINE_KINDS = {"dry_run", "openai"}
ROUTING_STRATEGY_IDS = {"round_robin", "least_loaded", "health_based", "capacity_aware"}


@dataclass(frozen=True)
class WalletConfig:
    default_min_reserve_tokens: int
    ledger_default_limit: int
    ledger_max_limit: int


@dataclass(frozen=True)
class RegistryConfig:
    stale_after_s: float
    error_below: int
    maintenance_below: int
    default_min_health_score: int
    default_max_load_percent: float
    events_default_limit: int


@dataclass(frozen=True)
class RoutingConfig:
    default_strategy: str


@dataclass(frozen=True)
class DispatchConfig:
    refund_on_failure: bool
    engine: str
    dry_run_tokens_per_word: int
    dry_run_min_tokens: int


@dataclass(frozen=True)
class RuntimeConfig:
    runner_poll_interval_s: float
    sweeper_interval_s: float


@dataclass(frozen=True)
class AppConfig:
    wallet: WalletConfig
    registry: RegistryConfig
    routing: RoutingConfig
    dispatch: DispatchConfig
    runtime: RuntimeConfig


def default_config_path() -> Path:
    return Path(os.getenv("TOKENMESH_CONFIG_PATH", "config/default.toml")).expanduser().resolve()


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        import tomllib  # py3.11+
    except Exception as e:
        raise ConfigError("tomllib is required (Python 3.11+).") from e

    raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))

    wallet = raw.get("wallet", {})
    registry = raw.get("registry", {})
    routing = raw.get("routing", {})
    dispatch = raw.get("dispatch", {})
    runtime = raw.get("runtime", {})

    error_below = _as_int(registry.get("error_below"), key="registry.error_below")
    maintenance_below = _as_int(registry.get("maintenance_below"), key="registry.maintenance_below")
    if not 0 <= error_below <= maintenance_below <= 100:
        raise ConfigError(
            "Invalid registry thresholds: expected 0 <= error_below <= maintenance_below <= 100, "
            f"got error_below={error_below}, maintenance_below={maintenance_below}"
        )

    ledger_default_limit = _as_int(wallet.get("ledger_default_limit"), key="wallet.ledger_default_limit")
    ledger_max_limit = _as_int(wallet.get("ledger_max_limit"), key="wallet.ledger_max_limit")
    if ledger_default_limit < 1 or ledger_default_limit > ledger_max_limit:
        raise ConfigError(
            f"Invalid wallet.ledger_default_limit: must be in [1..{ledger_max_limit}], got {ledger_default_limit}"
        )

    return AppConfig(
        wallet=WalletConfig(
            default_min_reserve_tokens=_as_int(
                wallet.get("default_min_reserve_tokens"), key="wallet.default_min_reserve_tokens"
            ),
            ledger_default_limit=ledger_default_limit,
            ledger_max_limit=ledger_max_limit,
        ),
        registry=RegistryConfig(
            stale_after_s=_as_float(registry.get("stale_after_s"), key="registry.stale_after_s"),
            error_below=error_below,
            maintenance_below=maintenance_below,
            default_min_health_score=_as_int(
                registry.get("default_min_health_score"), key="registry.default_min_health_score"
            ),
            default_max_load_percent=_as_percent(
                registry.get("default_max_load_percent"), key="registry.default_max_load_percent"
            ),
            events_default_limit=_as_int(
                registry.get("events_default_limit"), key="registry.events_default_limit"
            ),
        ),
        routing=RoutingConfig(
            default_strategy=_require_choice(
                routing.get("default_strategy"),
                key="routing.default_strategy",
                choices=ROUTING_STRATEGY_IDS,
            ),
        ),
        dispatch=DispatchConfig(
            refund_on_failure=_as_bool(dispatch.get("refund_on_failure"), key="dispatch.refund_on_failure"),
            engine=_require_choice(dispatch.get("engine"), key="dispatch.engine", choices=ENGINE_KINDS),
            dry_run_tokens_per_word=_as_int(
                dispatch.get("dry_run_tokens_per_word"), key="dispatch.dry_run_tokens_per_word"
            ),
            dry_run_min_tokens=_as_int(dispatch.get("dry_run_min_tokens"), key="dispatch.dry_run_min_tokens"),
        ),
        runtime=RuntimeConfig(
            runner_poll_interval_s=_as_float(
                runtime.get("runner_poll_interval_s"), key="runtime.runner_poll_interval_s"
            ),
            sweeper_interval_s=_as_float(runtime.get("sweeper_interval_s"), key="runtime.sweeper_interval_s"),
        ),
    )
