"""Trade ledger: schema, queries and the full-text index."""

from datetime import datetime, timedelta

import pytest


def _trade(**overrides):
    from fundkeeper.shell.contract import TradeRecord, TradeSide
    fields = dict(
        timestamp="2026-02-20T10:15:00",
        fund="alpha",
        symbol="AAPL",
        side=TradeSide.BUY,
        quantity=10,
        price=100.0,
        total_value=1000.0,
        session_type="pre_market",
        reasoning="Momentum breakout above resistance",
        market_context="Risk-on tape after CPI",
    )
    fields.update(overrides)
    return TradeRecord(**fields)


@pytest.mark.asyncio
async def test_database_schema(tmp_path):
    from fundkeeper.shell.database import Database
    db = Database(str(tmp_path / "journal.sqlite"))
    await db.connect()
    try:
        rows = await db.fetchall("SELECT name FROM sqlite_master WHERE type IN ('table', 'trigger')")
        names = {r["name"] for r in rows}
        for required in ("trades", "sessions", "trades_fts", "trades_ai", "trades_au", "trades_ad"):
            assert required in names, f"Missing: {required}"
    finally:
        await db.close()
    await db.close()  # idempotent


@pytest.mark.asyncio
async def test_insert_and_query(tmp_path):
    from fundkeeper.shell.ledger import open_ledger
    async with open_ledger(tmp_path / "state" / "journal.sqlite") as ledger:
        first = await ledger.insert(_trade())
        await ledger.insert(_trade(symbol="MSFT", timestamp="2026-02-19T11:00:00"))
        await ledger.insert(_trade(fund="other"))

        recent = await ledger.recent("alpha")
        assert [t.symbol for t in recent] == ["AAPL", "MSFT"]
        assert recent[0].id == first

        by_date = await ledger.by_date("alpha", "2026-02-19")
        assert [t.symbol for t in by_date] == ["MSFT"]

        in_days = await ledger.in_days("alpha", 1, now=datetime(2026, 2, 20, 18, 0))
        assert [t.symbol for t in in_days] == ["AAPL"]


@pytest.mark.asyncio
async def test_close_trade_computes_pnl_and_summary(tmp_path):
    from fundkeeper.shell.ledger import open_ledger
    async with open_ledger(tmp_path / "journal.sqlite") as ledger:
        win = await ledger.insert(_trade())
        loss = await ledger.insert(_trade(symbol="MSFT"))
        await ledger.insert(_trade(symbol="NVDA"))  # still open

        closed = await ledger.close_trade(win, 110.0, lessons_learned="Let winners run")
        assert closed.pnl == pytest.approx(100.0)
        assert closed.pnl_pct == pytest.approx(10.0)
        await ledger.close_trade(loss, 95.0)

        with pytest.raises(ValueError):
            await ledger.close_trade(win, 120.0)

        summary = await ledger.summary("alpha")
        assert summary["total_trades"] == 2
        assert summary["winning_trades"] == 1
        assert summary["losing_trades"] == 1
        assert summary["total_pnl"] == pytest.approx(50.0)
        assert summary["best_trade_pnl"] == pytest.approx(100.0)
        assert summary["worst_trade_pnl"] == pytest.approx(-50.0)


@pytest.mark.asyncio
async def test_fts_tracks_insert_update_delete(tmp_path):
    from fundkeeper.shell.ledger import open_ledger
    async with open_ledger(tmp_path / "journal.sqlite") as ledger:
        trade_id = await ledger.insert(_trade())

        hits = await ledger.search("momentum")
        assert [h.trade_id for h in hits] == [trade_id]
        assert hits[0].rank == 1
        assert hits[0].score > 0

        assert await ledger.search("earnings") == []
        await ledger.close_trade(trade_id, 90.0, lessons_learned="Earnings gap risk ignored")
        hits = await ledger.search("earnings")
        assert [h.trade_id for h in hits] == [trade_id]

        await ledger.delete(trade_id)
        assert await ledger.search("momentum") == []


@pytest.mark.asyncio
async def test_search_sanitizes_query_and_filters_fund(tmp_path):
    from fundkeeper.shell.ledger import open_ledger, sanitize_fts_query
    assert sanitize_fts_query("AAPL's (breakout)!") == '"AAPL" OR "breakout"'
    assert sanitize_fts_query("!! ?") == '""'

    async with open_ledger(tmp_path / "journal.sqlite") as ledger:
        await ledger.insert(_trade())
        await ledger.insert(_trade(fund="other", reasoning="breakout in other fund"))

        hits = await ledger.search("AAPL's (breakout)!", fund="alpha")
        assert len(hits) == 1
        assert await ledger.search('"; DROP TABLE trades; --') == []


@pytest.mark.asyncio
async def test_find_similar_excludes_source(tmp_path):
    from fundkeeper.shell.ledger import open_ledger
    async with open_ledger(tmp_path / "journal.sqlite") as ledger:
        source = await ledger.insert(_trade())
        twin = await ledger.insert(_trade(symbol="MSFT", reasoning="Another momentum breakout"))
        await ledger.insert(_trade(symbol="XOM", reasoning="Dividend yield", market_context="Defensive"))

        similar = await ledger.find_similar(source)
        ids = [s.trade_id for s in similar]
        assert source not in ids
        assert twin in ids
        assert await ledger.find_similar(9999) == []


@pytest.mark.asyncio
async def test_rebuild_index(tmp_path):
    from fundkeeper.shell.ledger import open_ledger
    async with open_ledger(tmp_path / "journal.sqlite") as ledger:
        await ledger.insert(_trade())
        await ledger.insert(_trade(symbol="MSFT"))
        assert await ledger.rebuild_index() == 2
        assert len(await ledger.search("momentum")) == 2


@pytest.mark.asyncio
async def test_context_summary(tmp_path):
    from fundkeeper.shell.ledger import open_ledger
    async with open_ledger(tmp_path / "journal.sqlite") as ledger:
        assert await ledger.context_summary("alpha") == "No trade history yet."
        trade_id = await ledger.insert(_trade())
        await ledger.close_trade(trade_id, 110.0, lessons_learned="Trail the stop")
        text = await ledger.context_summary("alpha")
        assert "## Recent Trade History" in text
        assert "BUY 10 AAPL @ $100.0 | P&L: $100.00 (10.0%)" in text
        assert "Lessons: Trail the stop" in text


@pytest.mark.asyncio
async def test_session_history(tmp_path):
    from fundkeeper.shell.contract import SessionLog
    from fundkeeper.shell.ledger import open_ledger
    async with open_ledger(tmp_path / "journal.sqlite") as ledger:
        start = datetime(2026, 2, 20, 9, 0)
        for i in range(3):
            await ledger.record_session(
                SessionLog(fund="alpha", session_type="pre_market",
                           started_at=(start + timedelta(days=i)).isoformat(), summary=f"run {i}"),
                duration_seconds=60, model="sonnet",
            )
        rows = await ledger.recent_sessions("alpha", limit=2)
        assert [r["summary"] for r in rows] == ["run 2", "run 1"]
        assert rows[0]["model"] == "sonnet"
