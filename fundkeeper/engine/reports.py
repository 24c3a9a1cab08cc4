"""Reporter: daily, weekly and monthly markdown reports per fund."""

from __future__ import annotations

from datetime import date, datetime
from pathlib import Path
from typing import Callable

import structlog

from fundkeeper.shell.contract import ObjectiveTracker, Portfolio, TradeRecord, TradeSide
from fundkeeper.shell.funds import FundConfig
from fundkeeper.shell.ledger import open_ledger
from fundkeeper.shell.paths import FundPaths
from fundkeeper.shell.state import StateStore, run_io, write_text_atomic

log = structlog.get_logger()

PERIOD_DAYS = {"daily": 1, "weekly": 7, "monthly": 30}


def format_report(
    fund: FundConfig,
    portfolio: Portfolio,
    tracker: ObjectiveTracker | None,
    trades: list[TradeRecord],
    period: str,
    day: date,
    generated_at: datetime | None = None,
) -> str:
    label = period.capitalize()
    initial = fund.initial_capital
    total_return = portfolio.total_value - initial
    total_return_pct = total_return / initial * 100 if initial else 0.0
    cash_pct = portfolio.cash / portfolio.total_value * 100 if portfolio.total_value > 0 else 0.0

    lines = [
        f"# {label} Report: {fund.display_name}",
        "",
        f"**Date:** {day.isoformat()}",
        f"**Period:** {label}",
        f"**Status:** {fund.status.value}",
        "",
        "---",
        "",
        "## Portfolio Summary",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Initial Capital | ${initial:,.2f} |",
        f"| Current Value | ${portfolio.total_value:,.2f} |",
        f"| Total Return | ${total_return:.2f} ({total_return_pct:+.2f}%) |",
        f"| Cash | ${portfolio.cash:,.2f} ({cash_pct:.1f}%) |",
        f"| Positions | {len(portfolio.positions)} |",
        "",
    ]

    if tracker:
        lines += [
            "## Objective Progress",
            "",
            f"- **Type:** {tracker.type}",
            f"- **Progress:** {tracker.progress_pct:.1f}%",
            f"- **Status:** {tracker.status.value}",
            "",
        ]

    if portfolio.positions:
        lines += [
            "## Open Positions",
            "",
            "| Symbol | Shares | Avg Cost | Price | Market Value | P&L | P&L % | Weight |",
            "|--------|--------|----------|-------|--------------|-----|-------|--------|",
        ]
        for p in portfolio.positions:
            lines.append(
                f"| {p.symbol} | {p.shares:g} | ${p.avg_cost:.2f} | ${p.current_price:.2f} "
                f"| ${p.market_value:.2f} | {p.unrealized_pnl:+.2f} | {p.unrealized_pnl_pct:+.1f}% "
                f"| {p.weight_pct:.1f}% |"
            )
        lines.append("")

    if trades:
        lines += [
            f"## Trades ({label})",
            "",
            "| Date | Side | Symbol | Qty | Price | Total | Type |",
            "|------|------|--------|-----|-------|-------|------|",
        ]
        for t in trades:
            lines.append(
                f"| {t.timestamp.split('T')[0]} | {t.side.value.upper()} | {t.symbol} | {t.quantity:g} "
                f"| ${t.price:.2f} | ${t.total_value:.2f} | {t.order_type.value} |"
            )
        lines.append("")

        buys = [t for t in trades if t.side == TradeSide.BUY]
        sells = [t for t in trades if t.side == TradeSide.SELL]
        realized = sum(t.pnl for t in sells if t.pnl is not None)
        lines += ["**Trade Summary:**", f"- Buys: {len(buys)}", f"- Sells: {len(sells)}"]
        if realized:
            lines.append(f"- Realized P&L: ${realized:.2f}")
        lines.append("")
    else:
        lines += ["## Trades", "", "No trades during this period.", ""]

    risk = fund.risk
    lines += [
        "## Risk Profile",
        "",
        f"- **Profile:** {risk.profile}",
        f"- **Max Drawdown Limit:** {risk.max_drawdown_pct}%",
        f"- **Max Position Size:** {risk.max_position_pct}%",
        f"- **Stop Loss:** {risk.stop_loss_pct}%",
    ]

    overweight = [p for p in portfolio.positions if p.weight_pct > risk.max_position_pct]
    if overweight:
        lines += ["", "**Overweight Positions:**"]
        for p in overweight:
            lines.append(f"- {p.symbol}: {p.weight_pct:.1f}% (limit: {risk.max_position_pct}%)")

    lines += ["", "---", f"*Generated by fundkeeper on {(generated_at or datetime.now()).isoformat()}*"]
    return "\n".join(lines)


class Reporter:
    def __init__(
        self,
        paths: FundPaths,
        io_timeout: float = 10.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._paths = paths
        self._timeout = io_timeout
        self._clock = clock
        self._store = StateStore(paths, io_timeout, clock)

    async def generate(self, fund: FundConfig, period: str, day: date | None = None) -> Path:
        if period not in PERIOD_DAYS:
            raise ValueError(f"Unknown report period: {period}")
        now = self._clock()
        day = day or now.date()

        portfolio = await self._store.read_portfolio()
        try:
            tracker = await self._store.read_tracker()
        except FileNotFoundError:
            tracker = None
        async with open_ledger(self._paths.journal) as ledger:
            trades = await ledger.in_days(fund.name, PERIOD_DAYS[period], now=now)

        report = format_report(fund, portfolio, tracker, trades, period, day, generated_at=now)
        path = self._paths.reports / period / f"{day.isoformat()}.md"
        await run_io(write_text_atomic, path, report, timeout=self._timeout)
        log.info("report.saved", fund=fund.name, period=period, path=str(path))
        return path
