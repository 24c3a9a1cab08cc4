"""Stop-loss guard: compare live prices with per-position stops and sell breaches."""

from __future__ import annotations

from datetime import datetime
from typing import Callable

import structlog

from fundkeeper.shell.broker import BrokerAdapter
from fundkeeper.shell.contract import (
    OrderKind,
    Portfolio,
    StopLossEvent,
    StopLossOutcome,
    TradeRecord,
    TradeSide,
)
from fundkeeper.shell.ledger import open_ledger
from fundkeeper.shell.state import StateStore

log = structlog.get_logger()


class StopLossGuard:
    def __init__(
        self,
        fund: str,
        store: StateStore,
        broker: BrokerAdapter,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._fund = fund
        self._store = store
        self._broker = broker
        self._clock = clock

    async def check(self) -> list[StopLossEvent]:
        """Positions whose latest price is at or below their stop."""
        portfolio = await self._store.read_portfolio()
        guarded = [p for p in portfolio.positions if p.stop_loss and p.stop_loss > 0 and p.shares > 0]
        if not guarded:
            return []

        prices = await self._broker.get_latest_prices([p.symbol for p in guarded])

        events = []
        for pos in guarded:
            price = prices.get(pos.symbol)
            if price is None:
                log.warning("stoploss.no_price", fund=self._fund, symbol=pos.symbol)
                continue
            if price <= pos.stop_loss:
                loss = (price - pos.avg_cost) * pos.shares
                loss_pct = (price - pos.avg_cost) / pos.avg_cost * 100 if pos.avg_cost else 0.0
                events.append(StopLossEvent(
                    symbol=pos.symbol,
                    shares=pos.shares,
                    stop_price=pos.stop_loss,
                    current_price=price,
                    avg_cost=pos.avg_cost,
                    loss=loss,
                    loss_pct=loss_pct,
                ))
        return events

    async def execute(self, events: list[StopLossEvent]) -> StopLossOutcome:
        """Sell each breach; a failed sell skips only that symbol.

        Once a sell has gone through, the portfolio is updated even if the
        ledger cannot be written, so the next check does not sell again.
        """
        outcome = StopLossOutcome()
        for event in events:
            try:
                await self._broker.place_market_sell(event.symbol, event.shares)
            except Exception as e:
                log.error("stoploss.sell_failed", fund=self._fund, symbol=event.symbol, error=str(e))
                outcome.failed[event.symbol] = str(e)
                continue
            outcome.sold.append(event)
            outcome.proceeds += event.proceeds
            log.warning(
                "stoploss.triggered",
                fund=self._fund,
                symbol=event.symbol,
                stop=event.stop_price,
                price=event.current_price,
                loss=round(event.loss, 2),
            )

        if not outcome.sold:
            return outcome
        try:
            outcome.portfolio = await self._settle(outcome.sold)
        finally:
            await self._record(outcome)
        return outcome

    async def _settle(self, sold: list[StopLossEvent]) -> Portfolio:
        # Sessions may have rewritten the portfolio while orders were in flight
        portfolio = await self._store.read_portfolio()
        held = {p.symbol for p in portfolio.positions}
        removed = set()
        for event in sold:
            if event.symbol not in held:
                log.info("stoploss.already_reconciled", fund=self._fund, symbol=event.symbol)
                continue
            removed.add(event.symbol)
            portfolio.cash += event.proceeds
        portfolio.positions = [p for p in portfolio.positions if p.symbol not in removed]
        portfolio = await self._store.write_portfolio(portfolio)
        log.info(
            "stoploss.portfolio_updated",
            fund=self._fund,
            sold=sorted(removed),
            cash=round(portfolio.cash, 2),
            total=round(portfolio.total_value, 2),
        )
        return portfolio

    async def _record(self, outcome: StopLossOutcome) -> None:
        attempted = set()
        try:
            async with open_ledger(self._store.paths.journal) as ledger:
                for event in outcome.sold:
                    attempted.add(event.symbol)
                    try:
                        await ledger.insert(self._trade(event))
                    except Exception as e:
                        log.error("stoploss.ledger_failed", fund=self._fund, symbol=event.symbol, error=str(e))
                        outcome.unrecorded.append(event.symbol)
        except Exception as e:
            missing = [ev.symbol for ev in outcome.sold if ev.symbol not in attempted]
            log.error("stoploss.ledger_failed", fund=self._fund, symbols=missing, error=str(e))
            outcome.unrecorded += missing

    def _trade(self, event: StopLossEvent) -> TradeRecord:
        now = self._clock().isoformat()
        return TradeRecord(
            timestamp=now,
            fund=self._fund,
            symbol=event.symbol,
            side=TradeSide.SELL,
            quantity=event.shares,
            price=event.current_price,
            total_value=event.proceeds,
            order_type=OrderKind.MARKET,
            session_type="stop_loss",
            reasoning=(
                f"Stop-loss triggered at ${event.stop_price:.2f}. "
                f"Current price: ${event.current_price:.2f}. "
                f"Loss: ${event.loss:.2f} ({event.loss_pct:.1f}%)"
            ),
            closed_at=now,
            close_price=event.current_price,
            pnl=event.loss,
            pnl_pct=event.loss_pct,
        )


async def apply_default_stop_losses(store: StateStore, stop_loss_pct: float) -> int:
    """Give every unguarded position a stop at avg_cost * (1 - pct/100)."""
    portfolio = await store.read_portfolio()
    updated = 0
    for pos in portfolio.positions:
        if not pos.stop_loss:
            pos.stop_loss = pos.avg_cost * (1 - stop_loss_pct / 100)
            updated += 1
    if updated:
        await store.write_portfolio(portfolio)
    return updated
