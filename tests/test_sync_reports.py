"""Broker portfolio sync and markdown reports."""

from datetime import date, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest


def _broker_with(cash, positions, portfolio_value=None):
    from fundkeeper.shell.broker import BrokerAccount
    broker = MagicMock()
    value = portfolio_value if portfolio_value is not None else cash + sum(p.market_value for p in positions)
    broker.get_account = AsyncMock(return_value=BrokerAccount(
        cash=cash, portfolio_value=value, buying_power=cash, equity=value,
    ))
    broker.get_positions = AsyncMock(return_value=positions)
    return broker


def _bp(symbol, shares, price, avg_cost):
    from fundkeeper.shell.broker import BrokerPosition
    return BrokerPosition(
        symbol=symbol, shares=shares, avg_cost=avg_cost, current_price=price,
        market_value=shares * price, unrealized_pnl=(price - avg_cost) * shares,
        unrealized_pnl_pct=(price / avg_cost - 1) * 100,
    )


@pytest.mark.asyncio
async def test_sync_preserves_stops_and_is_idempotent(workspace):
    from fundkeeper.engine.sync import PortfolioSync
    from fundkeeper.shell.contract import Portfolio, Position
    from fundkeeper.shell.state import StateStore
    store = StateStore(workspace.fund("alpha"))
    await store.write_portfolio(Portfolio(last_updated="", cash=5000, total_value=0, positions=[
        Position(symbol="AAPL", shares=5, avg_cost=100, current_price=100, market_value=500,
                 stop_loss=92.0, entry_date="2026-01-05", entry_reason="Breakout"),
        Position(symbol="GONE", shares=1, avg_cost=10, current_price=10, market_value=10),
    ]))
    broker = _broker_with(3000, [_bp("AAPL", 10, 110, 100), _bp("MSFT", 2, 400, 390)])
    sync = PortfolioSync("alpha", store, broker)

    first = await sync.sync()
    assert [p.symbol for p in first.positions] == ["AAPL", "MSFT"]
    aapl = first.get("AAPL")
    assert aapl.shares == 10
    assert aapl.stop_loss == 92.0
    assert aapl.entry_reason == "Breakout"
    assert first.get("MSFT").stop_loss is None
    assert first.cash == 3000
    assert first.total_value == pytest.approx(3000 + 1100 + 800)

    second = await sync.sync()
    assert second.to_dict()["positions"] == first.to_dict()["positions"]
    assert second.total_value == first.total_value


@pytest.mark.asyncio
async def test_sync_warns_on_value_mismatch(workspace):
    from structlog.testing import capture_logs
    from fundkeeper.engine.sync import PortfolioSync
    from fundkeeper.shell.state import StateStore
    broker = _broker_with(1000, [_bp("AAPL", 1, 100, 100)], portfolio_value=5000)
    with capture_logs() as logs:
        portfolio = await PortfolioSync("alpha", StateStore(workspace.fund("alpha")), broker).sync()
    assert portfolio.total_value == 1100
    assert any(e["event"] == "sync.value_mismatch" for e in logs)


@pytest.mark.asyncio
async def test_daily_report(workspace, write_fund):
    from fundkeeper.engine.reports import Reporter
    from fundkeeper.shell.contract import Portfolio, Position, TradeRecord, TradeSide
    from fundkeeper.shell.funds import load_fund_config
    from fundkeeper.shell.ledger import open_ledger
    from fundkeeper.shell.state import init_fund_state
    paths = write_fund("alpha")
    store = await init_fund_state(paths, 3000, "growth")
    await store.write_portfolio(Portfolio(last_updated="", cash=2000, total_value=0, positions=[
        Position(symbol="AAPL", shares=10, avg_cost=95, current_price=100, market_value=1000),
    ]))
    async with open_ledger(paths.journal) as ledger:
        await ledger.insert(TradeRecord(
            timestamp=datetime.now().isoformat(), fund="alpha", symbol="AAPL", side=TradeSide.BUY,
            quantity=10, price=95, total_value=950,
        ))
    fund = load_fund_config(workspace, "alpha")

    path = await Reporter(paths).generate(fund, "daily", day=date(2026, 2, 20))

    assert path == paths.reports / "daily" / "2026-02-20.md"
    text = path.read_text()
    assert text.startswith("# Daily Report: alpha fund")
    assert "| Current Value | $3,000.00 |" in text
    assert "| AAPL | 10 |" in text
    assert "- Buys: 1" in text
    assert "**Overweight Positions:**" in text
    assert "- AAPL: 33.3% (limit: 25.0%)" in text


@pytest.mark.asyncio
async def test_report_without_trades_and_unknown_period(workspace, write_fund):
    from fundkeeper.engine.reports import Reporter
    from fundkeeper.shell.funds import load_fund_config
    from fundkeeper.shell.state import init_fund_state
    paths = write_fund("alpha")
    await init_fund_state(paths, 10000, "growth")
    fund = load_fund_config(workspace, "alpha")
    reporter = Reporter(paths)

    path = await reporter.generate(fund, "monthly", day=date(2026, 4, 1))
    assert path.parent.name == "monthly"
    assert "No trades during this period." in path.read_text()

    with pytest.raises(ValueError):
        await reporter.generate(fund, "hourly")


@pytest.mark.asyncio
async def test_sync_entry_date_uses_fund_clock(workspace):
    from fundkeeper.engine.sync import PortfolioSync
    from fundkeeper.shell.state import StateStore
    broker = _broker_with(1000, [_bp("AAPL", 1, 100, 100)])
    sync = PortfolioSync("alpha", StateStore(workspace.fund("alpha")), broker,
                         clock=lambda: datetime(2026, 3, 2, 23, 45))
    portfolio = await sync.sync()
    assert portfolio.get("AAPL").entry_date == "2026-03-02"


@pytest.mark.asyncio
async def test_report_date_and_footer_use_fund_clock(workspace, write_fund):
    from fundkeeper.engine.reports import Reporter
    from fundkeeper.shell.funds import load_fund_config
    from fundkeeper.shell.state import init_fund_state
    paths = write_fund("alpha")
    await init_fund_state(paths, 10000, "growth")
    fund = load_fund_config(workspace, "alpha")
    reporter = Reporter(paths, clock=lambda: datetime(2026, 3, 2, 23, 45))

    path = await reporter.generate(fund, "daily")

    assert path.name == "2026-03-02.md"
    assert path.read_text().endswith("*Generated by fundkeeper on 2026-03-02T23:45:00*")
    assert [p.name for p in path.parent.iterdir()] == ["2026-03-02.md"]


@pytest.mark.asyncio
async def test_report_write_times_out_on_stalled_disk(workspace, write_fund, monkeypatch):
    import time
    from fundkeeper.engine import reports
    from fundkeeper.shell.funds import load_fund_config
    from fundkeeper.shell.state import init_fund_state
    paths = write_fund("alpha")
    await init_fund_state(paths, 10000, "growth")
    fund = load_fund_config(workspace, "alpha")
    monkeypatch.setattr(reports, "write_text_atomic", lambda path, text: time.sleep(0.5))

    with pytest.raises(TimeoutError):
        await reports.Reporter(paths, io_timeout=0.05).generate(fund, "weekly")
