from __future__ import annotations

import os
from dataclasses import dataclass

from mt5_orchestrator.errors import ConfigurationError


def _get_env(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None or value == "" else value


def _get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from exc


def _get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from exc


def _get_env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class TerminalConfig:
    path: str | None = None  # terminal64.exe; None lets the package find a running terminal
    login: int | None = None
    password: str | None = None
    server: str | None = None
    timeout_ms: int = 60_000


@dataclass(frozen=True)
class OrchestratorConfig:
    broker: str = "sim"  # "mt5" | "sim"
    symbol: str = "EURUSD"
    base_risk: float = 20.0
    max_cycles: int = 10  # 0 = run until stopped
    inter_cycle_seconds: float = 30.0
    low_volatility_threshold: float = 15.0
    high_volatility_threshold: float = 40.0
    enable_news_mode: bool = True
    minutes_before_news: int = 5
    news_times: tuple[str, ...] = ()  # "HH:MM" UTC; empty uses the built-in schedule
    loss_limit_multiple: float = 5.0
    require_demo: bool = True  # forced-on safety rail
    db_path: str | None = None
    log_file: str | None = None
    magic: int = 240501
    terminal: TerminalConfig = TerminalConfig()

    def validate(self) -> "OrchestratorConfig":
        if self.broker not in {"mt5", "sim"}:
            raise ConfigurationError(f"Unknown broker {self.broker!r} (expected 'mt5' or 'sim')")
        if self.base_risk <= 0:
            raise ConfigurationError("base_risk must be positive")
        if self.max_cycles < 0:
            raise ConfigurationError("max_cycles must be >= 0")
        if self.inter_cycle_seconds < 0:
            raise ConfigurationError("inter_cycle_seconds must be >= 0")
        if not 0 < self.low_volatility_threshold < self.high_volatility_threshold:
            raise ConfigurationError("volatility thresholds must satisfy 0 < low < high")
        if self.minutes_before_news < 0:
            raise ConfigurationError("minutes_before_news must be >= 0")
        if self.loss_limit_multiple <= 0:
            raise ConfigurationError("loss_limit_multiple must be positive")
        return self

    @property
    def loss_limit(self) -> float:
        return -self.loss_limit_multiple * self.base_risk

    @staticmethod
    def from_env() -> "OrchestratorConfig":
        login = _get_env("MT5_LOGIN", "").strip()
        terminal = TerminalConfig(
            path=(_get_env("MT5_PATH", "").strip() or None),
            login=int(login) if login else None,
            password=(_get_env("MT5_PASSWORD", "") or None),
            server=(_get_env("MT5_SERVER", "").strip() or None),
            timeout_ms=_get_env_int("MT5_TIMEOUT_MS", 60_000),
        )
        return OrchestratorConfig(
            broker=_get_env("ORCH_BROKER", "sim").strip().lower(),
            symbol=_get_env("ORCH_SYMBOL", "EURUSD").strip().upper(),
            base_risk=_get_env_float("ORCH_BASE_RISK", 20.0),
            max_cycles=_get_env_int("ORCH_MAX_CYCLES", 10),
            inter_cycle_seconds=_get_env_float("ORCH_INTER_CYCLE_SECONDS", 30.0),
            low_volatility_threshold=_get_env_float("ORCH_LOW_VOL_POINTS", 15.0),
            high_volatility_threshold=_get_env_float("ORCH_HIGH_VOL_POINTS", 40.0),
            enable_news_mode=_get_env_bool("ORCH_NEWS_MODE", True),
            minutes_before_news=_get_env_int("ORCH_MINUTES_BEFORE_NEWS", 5),
            news_times=tuple(t.strip() for t in _get_env("ORCH_NEWS_TIMES", "").split(",") if t.strip()),
            loss_limit_multiple=_get_env_float("ORCH_LOSS_LIMIT_MULTIPLE", 5.0),
            # Intentionally forced on: the demo-only guard cannot be disabled by env.
            require_demo=True,
            db_path=(_get_env("ORCH_DB_PATH", "").strip() or None),
            log_file=(_get_env("ORCH_LOG_FILE", "").strip() or None),
            magic=_get_env_int("ORCH_MAGIC", 240501),
            terminal=terminal,
        )
