"""Portfolio sync: rebuild portfolio.json from the broker's account and positions."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable

import structlog

from fundkeeper.shell.broker import BrokerAdapter
from fundkeeper.shell.contract import Portfolio, Position
from fundkeeper.shell.state import StateStore

log = structlog.get_logger()


class PortfolioSync:
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

    async def sync(self) -> Portfolio:
        """Broker is the source of truth for holdings; stops and entry notes are ours."""
        account, positions = await asyncio.gather(
            self._broker.get_account(),
            self._broker.get_positions(),
        )

        try:
            existing = await self._store.read_portfolio()
        except FileNotFoundError:
            existing = None

        today = self._clock().date().isoformat()
        synced = []
        for bp in positions:
            prev = existing.get(bp.symbol) if existing else None
            synced.append(Position(
                symbol=bp.symbol,
                shares=bp.shares,
                avg_cost=bp.avg_cost,
                current_price=bp.current_price,
                market_value=bp.market_value,
                unrealized_pnl=bp.unrealized_pnl,
                unrealized_pnl_pct=bp.unrealized_pnl_pct,
                stop_loss=prev.stop_loss if prev else None,
                entry_date=prev.entry_date if prev else today,
                entry_reason=prev.entry_reason if prev else "",
            ))

        portfolio = Portfolio(
            last_updated="",
            cash=account.cash,
            total_value=0.0,
            positions=synced,
        )
        portfolio = await self._store.write_portfolio(portfolio)

        if abs(portfolio.total_value - account.portfolio_value) > 1.0:
            log.warning(
                "sync.value_mismatch",
                fund=self._fund,
                computed=round(portfolio.total_value, 2),
                broker=account.portfolio_value,
            )
        log.info("sync.done", fund=self._fund, positions=len(synced), total=round(portfolio.total_value, 2))
        return portfolio
