"""Fund configuration: load, validate and list funds under the workspace.

Each fund lives at <workspace>/funds/<name>/fund_config.toml:

    [fund]
    name = "growth"
    display_name = "Growth Fund"
    status = "active"

    [capital]
    initial = 10000

    [objective]
    type = "growth"

    [risk]
    profile = "moderate"
    stop_loss_pct = 8

    [schedule]
    trading_days = ["MON", "TUE", "WED", "THU", "FRI"]

    [schedule.sessions.pre_market]
    time = "09:00"
    focus = "Review overnight news"

    [[schedule.special_sessions]]
    trigger = "FOMC meeting days"
    time = "14:00"
    focus = "Reduce directional risk"
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from fundkeeper.engine.triggers import TriggerKind, TriggerRule, parse_trigger, slugify
from fundkeeper.shell.config import WEEKDAYS, is_hhmm
from fundkeeper.shell.contract import FundStatus
from fundkeeper.shell.paths import Workspace

log = structlog.get_logger()

RISK_PROFILES = ("conservative", "moderate", "aggressive", "custom")
BROKER_PROVIDERS = ("alpaca", "ibkr", "binance", "manual")
ASSET_CLASSES = ("stocks", "etfs", "options", "crypto", "forex")


class FundConfigError(ValueError):
    """A fund config that is missing, unreadable or fails validation."""


@dataclass
class RiskSettings:
    profile: str = "moderate"
    stop_loss_pct: float = 8.0
    max_position_pct: float = 25.0
    max_drawdown_pct: float = 15.0
    max_daily_loss_pct: float = 5.0
    custom_rules: list[str] = field(default_factory=list)


@dataclass
class SessionDefinition:
    name: str
    time: str
    focus: str
    enabled: bool = True
    max_duration_minutes: int = 15
    parallel: bool = False
    model: str | None = None


@dataclass
class SpecialSession:
    trigger: str
    time: str
    focus: str
    rule: TriggerRule
    enabled: bool = True
    max_duration_minutes: int = 15
    model: str | None = None

    @property
    def slug(self) -> str:
        return slugify(self.trigger)

    @property
    def session_kind(self) -> str:
        return f"special_{self.slug}"


@dataclass
class FundConfig:
    name: str
    display_name: str
    initial_capital: float
    objective_type: str
    description: str = ""
    created: str = ""
    status: FundStatus = FundStatus.ACTIVE
    currency: str = "USD"
    objective: dict = field(default_factory=dict)
    risk: RiskSettings = field(default_factory=RiskSettings)
    asset_classes: list[str] = field(default_factory=lambda: ["stocks"])
    trading_days: list[str] = field(default_factory=lambda: ["MON", "TUE", "WED", "THU", "FRI"])
    sessions: dict[str, SessionDefinition] = field(default_factory=dict)
    special_sessions: list[SpecialSession] = field(default_factory=list)
    broker_provider: str = "manual"
    broker_mode: str = "paper"
    model: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == FundStatus.ACTIVE

    def trades_on(self, weekday_code: str) -> bool:
        return weekday_code in self.trading_days


def _section(raw: dict, key: str, errors: list[str]) -> dict:
    value = raw.get(key, {})
    if not isinstance(value, dict):
        errors.append(f"[{key}] must be a table")
        return {}
    return value


def parse_fund_config(raw: dict, source: str = "<memory>") -> FundConfig:
    """Build a FundConfig from a parsed TOML document, collecting every problem."""
    errors: list[str] = []

    fund = _section(raw, "fund", errors)
    capital = _section(raw, "capital", errors)
    objective = _section(raw, "objective", errors)
    risk_raw = _section(raw, "risk", errors)
    universe = _section(raw, "universe", errors)
    schedule = _section(raw, "schedule", errors)
    broker = _section(raw, "broker", errors)
    claude = _section(raw, "claude", errors)

    name = fund.get("name", "")
    if not name:
        errors.append("fund.name is required")

    try:
        status = FundStatus(fund.get("status", "active"))
    except ValueError:
        errors.append(f"fund.status must be active, paused or closed, got '{fund.get('status')}'")
        status = FundStatus.PAUSED

    initial = capital.get("initial", 0)
    if not isinstance(initial, (int, float)) or initial <= 0:
        errors.append(f"capital.initial must be > 0, got {initial!r}")

    if "type" not in objective:
        errors.append("objective.type is required")

    risk = RiskSettings()
    for key in vars(risk):
        if key in risk_raw:
            setattr(risk, key, risk_raw[key])
    if risk.profile not in RISK_PROFILES:
        errors.append(f"risk.profile must be one of {', '.join(RISK_PROFILES)}, got '{risk.profile}'")
    for key in ("stop_loss_pct", "max_position_pct", "max_drawdown_pct", "max_daily_loss_pct"):
        if getattr(risk, key) <= 0:
            errors.append(f"risk.{key} must be > 0, got {getattr(risk, key)}")

    asset_classes = [a.get("type", "") for a in universe.get("allowed", [])] or ["stocks"]
    for asset in asset_classes:
        if asset not in ASSET_CLASSES:
            errors.append(f"universe.allowed type must be one of {', '.join(ASSET_CLASSES)}, got '{asset}'")

    trading_days = schedule.get("trading_days", ["MON", "TUE", "WED", "THU", "FRI"])
    for day in trading_days:
        if day not in WEEKDAYS:
            errors.append(f"schedule.trading_days has unknown day '{day}'")

    sessions: dict[str, SessionDefinition] = {}
    for session_name, s in schedule.get("sessions", {}).items():
        sd = SessionDefinition(
            name=session_name,
            time=s.get("time", ""),
            focus=s.get("focus", ""),
            enabled=s.get("enabled", True),
            max_duration_minutes=s.get("max_duration_minutes", 15),
            parallel=s.get("parallel", False),
            model=s.get("model"),
        )
        if not is_hhmm(sd.time):
            errors.append(f"schedule.sessions.{session_name}.time must be HH:MM, got '{sd.time}'")
        if sd.max_duration_minutes <= 0:
            errors.append(f"schedule.sessions.{session_name}.max_duration_minutes must be > 0")
        sessions[session_name] = sd

    special: list[SpecialSession] = []
    seen_slugs: set[str] = set()
    for i, s in enumerate(schedule.get("special_sessions", [])):
        trigger = s.get("trigger", "")
        ss = SpecialSession(
            trigger=trigger,
            time=s.get("time", ""),
            focus=s.get("focus", ""),
            rule=parse_trigger(trigger),
            enabled=s.get("enabled", True),
            max_duration_minutes=s.get("max_duration_minutes", 15),
            model=s.get("model"),
        )
        where = f"schedule.special_sessions[{i}]"
        if not trigger:
            errors.append(f"{where}.trigger is required")
        if not is_hhmm(ss.time):
            errors.append(f"{where}.time must be HH:MM, got '{ss.time}'")
        if ss.slug in seen_slugs:
            errors.append(f"{where}.trigger '{trigger}' duplicates another trigger")
        seen_slugs.add(ss.slug)
        if ss.rule.kind == TriggerKind.UNMATCHED:
            log.warning("funds.trigger_unmatched", fund=name, trigger=trigger)
        special.append(ss)

    provider = broker.get("provider", "manual")
    mode = broker.get("mode", "paper")
    if provider not in BROKER_PROVIDERS:
        errors.append(f"broker.provider must be one of {', '.join(BROKER_PROVIDERS)}, got '{provider}'")
    if mode not in ("paper", "live"):
        errors.append(f"broker.mode must be 'paper' or 'live', got '{mode}'")

    if errors:
        raise FundConfigError(f"Fund config {source} invalid:\n  " + "\n  ".join(errors))

    return FundConfig(
        name=name,
        display_name=fund.get("display_name", name),
        description=fund.get("description", ""),
        created=str(fund.get("created", "")),
        status=status,
        initial_capital=float(initial),
        currency=capital.get("currency", "USD"),
        objective_type=objective["type"],
        objective=dict(objective),
        risk=risk,
        asset_classes=asset_classes,
        trading_days=list(trading_days),
        sessions=sessions,
        special_sessions=special,
        broker_provider=provider,
        broker_mode=mode,
        model=claude.get("model"),
    )


def load_fund_config(workspace: Workspace, name: str) -> FundConfig:
    path = workspace.fund(name).config
    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except FileNotFoundError:
        raise FundConfigError(f"Fund '{name}' has no config at {path}")
    except tomllib.TOMLDecodeError as e:
        raise FundConfigError(f"Fund config {path} is not valid TOML: {e}")

    config = parse_fund_config(raw, str(path))
    if config.name != name:
        raise FundConfigError(f"Fund config {path} names fund '{config.name}', expected '{name}'")
    return config


def list_fund_names(workspace: Workspace) -> list[str]:
    """Directories under funds/ that carry a fund_config.toml, sorted."""
    if not workspace.funds_dir.is_dir():
        return []
    return sorted(
        p.name for p in workspace.funds_dir.iterdir()
        if p.is_dir() and (p / "fund_config.toml").is_file()
    )
