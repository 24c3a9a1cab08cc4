"""Calendar triggers for special sessions.

Trigger text from a fund config ("FOMC meeting days", "every Monday",
"2026-03-18") is parsed once into a TriggerRule when the config loads. The
scheduler then asks the rule whether it fires on a given date. The first rule
that recognises the text wins; text nothing recognises becomes an UNMATCHED
rule that never fires.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from fundkeeper.shell.funds import FundConfig, SpecialSession

log = structlog.get_logger()


class TriggerKind(Enum):
    KEYWORD = "keyword"
    LITERAL_DATE = "literal_date"
    WEEKDAY = "weekday"
    MONTH_BOUNDARY = "month_boundary"
    UNMATCHED = "unmatched"


class MarketEvent(Enum):
    OPEX = "opex"
    FOMC = "fomc"
    CPI = "cpi"
    NFP = "nfp"
    EARNINGS_SEASON = "earnings_season"


# Python weekday(): Monday == 0
_WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_FRIDAY = 4

_FOMC_MONTHS = {1, 3, 5, 6, 7, 9, 11, 12}
_EARNINGS_MONTHS = {1, 4, 7, 10}

_ISO_DATE = re.compile(r"\d{4}-\d{2}-\d{2}")

# (substrings, event), checked in order
_KEYWORDS: tuple[tuple[tuple[str, ...], MarketEvent], ...] = (
    (("opex", "options expiration"), MarketEvent.OPEX),
    (("fomc",), MarketEvent.FOMC),
    (("cpi",), MarketEvent.CPI),
    (("non-farm", "nfp"), MarketEvent.NFP),
    (("earnings season",), MarketEvent.EARNINGS_SEASON),
)


def is_third_friday(day: date) -> bool:
    return day.weekday() == _FRIDAY and 15 <= day.day <= 21


def is_first_friday(day: date) -> bool:
    return day.weekday() == _FRIDAY and day.day <= 7


def is_fomc_day(day: date) -> bool:
    """Wednesday in the back half of a month the FOMC usually meets."""
    return day.month in _FOMC_MONTHS and day.weekday() == 2 and 15 <= day.day <= 28


def is_cpi_day(day: date) -> bool:
    return day.weekday() in (1, 2) and 10 <= day.day <= 14


def is_earnings_season_start(day: date) -> bool:
    return day.month in _EARNINGS_MONTHS and 10 <= day.day <= 15


_EVENT_CHECKS = {
    MarketEvent.OPEX: is_third_friday,
    MarketEvent.FOMC: is_fomc_day,
    MarketEvent.CPI: is_cpi_day,
    MarketEvent.NFP: is_first_friday,
    MarketEvent.EARNINGS_SEASON: is_earnings_season_start,
}


@dataclass(frozen=True)
class TriggerRule:
    kind: TriggerKind
    text: str
    event: MarketEvent | None = None
    on_date: date | None = None
    weekday: int | None = None
    last_day: bool = False

    def matches(self, day: date) -> bool:
        if self.kind == TriggerKind.KEYWORD:
            return _EVENT_CHECKS[self.event](day)
        if self.kind == TriggerKind.LITERAL_DATE:
            return day == self.on_date
        if self.kind == TriggerKind.WEEKDAY:
            return day.weekday() == self.weekday
        if self.kind == TriggerKind.MONTH_BOUNDARY:
            if self.last_day:
                return (day + timedelta(days=1)).day == 1
            return day.day == 1
        return False


def parse_trigger(text: str) -> TriggerRule:
    lower = text.lower()

    for needles, event in _KEYWORDS:
        if any(n in lower for n in needles):
            return TriggerRule(TriggerKind.KEYWORD, text, event=event)

    m = _ISO_DATE.search(text)
    if m:
        try:
            return TriggerRule(TriggerKind.LITERAL_DATE, text, on_date=date.fromisoformat(m.group(0)))
        except ValueError:
            log.warning("trigger.bad_date", trigger=text)
            return TriggerRule(TriggerKind.UNMATCHED, text)

    for i, name in enumerate(_WEEKDAY_NAMES):
        if f"every {name}" in lower:
            return TriggerRule(TriggerKind.WEEKDAY, text, weekday=i)

    if "first day of month" in lower:
        return TriggerRule(TriggerKind.MONTH_BOUNDARY, text)
    if "last day of month" in lower:
        return TriggerRule(TriggerKind.MONTH_BOUNDARY, text, last_day=True)

    return TriggerRule(TriggerKind.UNMATCHED, text)


def matches(trigger_text: str, day: date) -> bool:
    """One-shot evaluation for callers that do not keep a parsed rule."""
    return parse_trigger(trigger_text).matches(day)


def slugify(trigger_text: str) -> str:
    """'Monthly options expiration (OpEx)' -> 'monthly_options_expiration_opex'"""
    return re.sub(r"\W+", "_", trigger_text).strip("_").lower()


@dataclass(frozen=True)
class KnownEvent:
    name: str
    trigger: str
    default_time: str
    default_focus: str
    recurring: str


KNOWN_EVENTS: tuple[KnownEvent, ...] = (
    KnownEvent(
        name="FOMC Meeting",
        trigger="FOMC meeting days",
        default_time="14:00",
        default_focus="Pre-FOMC positioning review. Reduce directional risk if needed. "
                      "Monitor rate decision and dot plot.",
        recurring="quarterly",
    ),
    KnownEvent(
        name="Monthly OpEx",
        trigger="Monthly options expiration (OpEx)",
        default_time="09:00",
        default_focus="Review options exposure. Assess pin risk on open positions. "
                      "Roll or close expiring positions.",
        recurring="monthly",
    ),
    KnownEvent(
        name="Quarterly OpEx (Triple Witching)",
        trigger="Quarterly options expiration (Triple Witching)",
        default_time="09:00",
        default_focus="Triple witching day. High volatility expected. Review all positions, "
                      "reduce leverage, tighten stops.",
        recurring="quarterly",
    ),
    KnownEvent(
        name="CPI Release",
        trigger="CPI data release",
        default_time="08:15",
        default_focus="CPI release imminent. Review inflation-sensitive positions. "
                      "Prepare for potential volatility.",
        recurring="monthly",
    ),
    KnownEvent(
        name="NFP (Non-Farm Payrolls)",
        trigger="Non-Farm Payrolls release",
        default_time="08:15",
        default_focus="Jobs report release. Review labor-market-sensitive positions. "
                      "Check impact on rate expectations.",
        recurring="monthly",
    ),
    KnownEvent(
        name="Earnings Season",
        trigger="Earnings season start",
        default_time="09:00",
        default_focus="Earnings season beginning. Review positions with upcoming reports. "
                      "Assess pre-earnings risk.",
        recurring="quarterly",
    ),
)


def check_special_sessions(fund: FundConfig, day: date) -> list[SpecialSession]:
    """Enabled special-session triggers of a FundConfig that fire on `day`."""
    return [s for s in fund.special_sessions if s.enabled and s.rule.matches(day)]
