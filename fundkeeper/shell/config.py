"""Configuration loading: merges settings.toml and .env."""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"

WEEKDAYS = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def is_hhmm(value: str) -> bool:
    return bool(_HHMM.match(value or ""))


@dataclass
class BrokerConfig:
    provider: str = "alpaca"
    mode: str = "paper"
    api_key: str = ""
    secret_key: str = ""
    paper_url: str = "https://paper-api.alpaca.markets"
    live_url: str = "https://api.alpaca.markets"
    data_url: str = "https://data.alpaca.markets"
    request_timeout_seconds: float = 30.0


@dataclass
class ExecutorConfig:
    claude_path: str = "claude"
    default_model: str = "sonnet"
    max_turns: int = 50
    summary_chars: int = 500


@dataclass
class SubTaskConfig:
    timeout_minutes: int = 8
    max_turns: int = 15
    synthesis_context_chars: int = 8000


@dataclass
class ReportConfig:
    daily: bool = True
    weekly: bool = True
    monthly: bool = True
    daily_time: str = "18:30"
    weekly_day: str = "FRI"
    weekly_time: str = "19:00"
    monthly_day: int = 1
    monthly_time: str = "19:00"


@dataclass
class DaemonConfig:
    market_open: str = "09:30"
    market_close: str = "16:00"
    stoploss_interval_minutes: int = 5
    sync_time: str = "09:30"
    misfire_grace_seconds: int = 30


@dataclass
class StateConfig:
    io_timeout_seconds: float = 10.0


@dataclass
class Config:
    workspace: str = ""
    timezone: str = "America/New_York"
    log_level: str = "INFO"
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    subtasks: SubTaskConfig = field(default_factory=SubTaskConfig)
    reports: ReportConfig = field(default_factory=ReportConfig)
    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace).expanduser()

    def now(self) -> datetime:
        """Wall-clock time in the configured timezone, without tzinfo.

        Dates, file names and ledger timestamps all use this clock so they agree
        with the scheduler regardless of the host's local zone.
        """
        return datetime.now(ZoneInfo(self.timezone)).replace(tzinfo=None)


def _apply(section: dict, target: object) -> None:
    """Copy known keys from a TOML table onto a config dataclass."""
    for key in vars(target):
        if key in section:
            setattr(target, key, section[key])


def load_config(settings_path: Path | None = None) -> Config:
    """Load configuration from settings.toml and environment variables."""
    load_dotenv(PROJECT_ROOT / ".env")

    config = Config()
    config.workspace = str(Path.home() / ".fundkeeper")

    settings_path = settings_path or CONFIG_DIR / "settings.toml"
    if settings_path.exists():
        with open(settings_path, "rb") as f:
            settings = tomllib.load(f)

        general = settings.get("general", {})
        config.workspace = general.get("workspace", config.workspace)
        config.timezone = general.get("timezone", config.timezone)
        config.log_level = general.get("log_level", config.log_level)

        _apply(settings.get("broker", {}), config.broker)
        _apply(settings.get("executor", {}), config.executor)
        _apply(settings.get("subtasks", {}), config.subtasks)
        _apply(settings.get("reports", {}), config.reports)
        _apply(settings.get("daemon", {}), config.daemon)
        _apply(settings.get("state", {}), config.state)

    # Environment variables (secrets + overrides)
    config.broker.api_key = os.getenv("ALPACA_API_KEY", config.broker.api_key)
    config.broker.secret_key = os.getenv("ALPACA_SECRET_KEY", config.broker.secret_key)
    config.executor.claude_path = os.getenv("CLAUDE_PATH", config.executor.claude_path)
    home = os.getenv("FUNDKEEPER_HOME")
    if home:
        config.workspace = home

    _validate_config(config)

    return config


def _validate_config(config: Config) -> None:
    """Validate config values are within sane ranges."""
    errors = []

    if config.broker.mode not in ("paper", "live"):
        errors.append(f"broker.mode must be 'paper' or 'live', got '{config.broker.mode}'")
    if config.broker.request_timeout_seconds <= 0:
        errors.append(f"broker.request_timeout_seconds must be > 0, got {config.broker.request_timeout_seconds}")
    if config.executor.max_turns < 1:
        errors.append(f"executor.max_turns must be >= 1, got {config.executor.max_turns}")
    if config.subtasks.timeout_minutes < 1:
        errors.append(f"subtasks.timeout_minutes must be >= 1, got {config.subtasks.timeout_minutes}")
    if config.state.io_timeout_seconds <= 0:
        errors.append(f"state.io_timeout_seconds must be > 0, got {config.state.io_timeout_seconds}")

    d = config.daemon
    for name in ("market_open", "market_close", "sync_time"):
        if not is_hhmm(getattr(d, name)):
            errors.append(f"daemon.{name} must be HH:MM, got '{getattr(d, name)}'")
    if is_hhmm(d.market_open) and is_hhmm(d.market_close) and d.market_open >= d.market_close:
        errors.append(f"daemon.market_open ({d.market_open}) must be before market_close ({d.market_close})")
    if not (1 <= d.stoploss_interval_minutes <= 60):
        errors.append(f"daemon.stoploss_interval_minutes must be 1-60, got {d.stoploss_interval_minutes}")

    r = config.reports
    for name in ("daily_time", "weekly_time", "monthly_time"):
        if not is_hhmm(getattr(r, name)):
            errors.append(f"reports.{name} must be HH:MM, got '{getattr(r, name)}'")
    if r.weekly_day not in WEEKDAYS:
        errors.append(f"reports.weekly_day must be one of {', '.join(WEEKDAYS)}, got '{r.weekly_day}'")
    if not (1 <= r.monthly_day <= 28):
        errors.append(f"reports.monthly_day must be 1-28, got {r.monthly_day}")

    try:
        ZoneInfo(config.timezone)
    except (KeyError, ValueError):
        errors.append(f"Invalid timezone: '{config.timezone}'")

    if errors:
        raise ValueError("Config validation failed:\n  " + "\n  ".join(errors))
