"""Trade ledger: append trades, close them, query history and search it."""

from __future__ import annotations

import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import AsyncIterator

import structlog

from fundkeeper.shell.contract import SessionLog, SimilarTrade, TradeRecord, TradeSide
from fundkeeper.shell.database import REBUILD_FTS, Database

log = structlog.get_logger()

_TRADE_COLUMNS = (
    "timestamp", "fund", "symbol", "side", "quantity", "price", "total_value",
    "order_type", "session_type", "reasoning", "analysis_ref", "market_context",
    "closed_at", "close_price", "pnl", "pnl_pct", "lessons_learned",
)


def sanitize_fts_query(query: str) -> str:
    """Quote each word and OR them together so user text never trips FTS5 syntax."""
    terms = [t for t in re.sub(r"[^\w\s]", " ", query).split() if len(t) > 1]
    if not terms:
        return '""'
    return " OR ".join(f'"{t}"' for t in terms)


class TradeLedger:
    def __init__(self, db: Database):
        self._db = db

    async def insert(self, trade: TradeRecord) -> int:
        values = (
            trade.timestamp, trade.fund, trade.symbol, trade.side.value,
            trade.quantity, trade.price, trade.total_value, trade.order_type.value,
            trade.session_type, trade.reasoning, trade.analysis_ref, trade.market_context,
            trade.closed_at, trade.close_price, trade.pnl, trade.pnl_pct, trade.lessons_learned,
        )
        placeholders = ", ".join("?" for _ in _TRADE_COLUMNS)
        cursor = await self._db.execute(
            f"INSERT INTO trades ({', '.join(_TRADE_COLUMNS)}) VALUES ({placeholders})",
            values,
        )
        await self._db.commit()
        trade.id = cursor.lastrowid
        log.debug("ledger.insert", fund=trade.fund, symbol=trade.symbol, side=trade.side.value, id=trade.id)
        return trade.id

    async def get(self, trade_id: int) -> TradeRecord | None:
        row = await self._db.fetchone("SELECT * FROM trades WHERE id = ?", (trade_id,))
        return TradeRecord.from_row(row) if row else None

    async def close_trade(
        self,
        trade_id: int,
        close_price: float,
        closed_at: str | None = None,
        lessons_learned: str | None = None,
    ) -> TradeRecord:
        trade = await self.get(trade_id)
        if trade is None:
            raise ValueError(f"No trade with id {trade_id}")
        if trade.is_closed:
            raise ValueError(f"Trade {trade_id} already closed at {trade.closed_at}")

        direction = 1 if trade.side == TradeSide.BUY else -1
        pnl = (close_price - trade.price) * trade.quantity * direction
        cost = trade.price * trade.quantity
        pnl_pct = pnl / cost * 100 if cost else 0.0

        await self._db.execute(
            """UPDATE trades SET closed_at = ?, close_price = ?, pnl = ?, pnl_pct = ?,
               lessons_learned = COALESCE(?, lessons_learned) WHERE id = ?""",
            (closed_at or datetime.now().isoformat(), close_price, pnl, pnl_pct,
             lessons_learned, trade_id),
        )
        await self._db.commit()
        log.info("ledger.closed", id=trade_id, symbol=trade.symbol, pnl=round(pnl, 2))
        return await self.get(trade_id)

    async def delete(self, trade_id: int) -> None:
        await self._db.execute("DELETE FROM trades WHERE id = ?", (trade_id,))
        await self._db.commit()

    # --- Queries ---

    async def recent(self, fund: str, limit: int = 20) -> list[TradeRecord]:
        rows = await self._db.fetchall(
            "SELECT * FROM trades WHERE fund = ? ORDER BY timestamp DESC LIMIT ?",
            (fund, limit),
        )
        return [TradeRecord.from_row(r) for r in rows]

    async def by_date(self, fund: str, date: str) -> list[TradeRecord]:
        """Trades whose timestamp starts with YYYY-MM-DD."""
        rows = await self._db.fetchall(
            "SELECT * FROM trades WHERE fund = ? AND timestamp LIKE ? ORDER BY timestamp DESC",
            (fund, f"{date}%"),
        )
        return [TradeRecord.from_row(r) for r in rows]

    async def in_days(self, fund: str, days: int, now: datetime | None = None) -> list[TradeRecord]:
        since = ((now or datetime.now()) - timedelta(days=days)).isoformat()
        rows = await self._db.fetchall(
            "SELECT * FROM trades WHERE fund = ? AND timestamp >= ? ORDER BY timestamp DESC",
            (fund, since),
        )
        return [TradeRecord.from_row(r) for r in rows]

    async def summary(self, fund: str) -> dict:
        """Aggregate stats over closed trades."""
        row = await self._db.fetchone(
            """SELECT
                COUNT(*) as total_trades,
                COALESCE(SUM(CASE WHEN pnl > 0 THEN 1 ELSE 0 END), 0) as winning_trades,
                COALESCE(SUM(CASE WHEN pnl < 0 THEN 1 ELSE 0 END), 0) as losing_trades,
                COALESCE(SUM(pnl), 0) as total_pnl,
                COALESCE(AVG(pnl_pct), 0) as avg_pnl_pct,
                COALESCE(MAX(pnl), 0) as best_trade_pnl,
                COALESCE(MIN(pnl), 0) as worst_trade_pnl
            FROM trades
            WHERE fund = ? AND closed_at IS NOT NULL""",
            (fund,),
        )
        return row

    # --- Full-text search ---

    async def search(self, query: str, fund: str | None = None, limit: int = 10) -> list[SimilarTrade]:
        fund_clause = "AND t.fund = ?" if fund else ""
        params: tuple = (sanitize_fts_query(query), fund, limit) if fund else (sanitize_fts_query(query), limit)
        rows = await self._db.fetchall(
            f"""SELECT t.id AS trade_id, t.symbol, t.side, t.timestamp, t.reasoning,
                       t.market_context, t.lessons_learned, t.pnl, t.pnl_pct,
                       trades_fts.rank AS fts_rank
                FROM trades_fts
                JOIN trades t ON t.id = trades_fts.rowid
                WHERE trades_fts MATCH ?
                {fund_clause}
                ORDER BY trades_fts.rank
                LIMIT ?""",
            params,
        )
        return [
            SimilarTrade(
                trade_id=r["trade_id"],
                symbol=r["symbol"],
                side=r["side"],
                timestamp=r["timestamp"],
                reasoning=r["reasoning"],
                market_context=r["market_context"],
                lessons_learned=r["lessons_learned"],
                pnl=r["pnl"],
                pnl_pct=r["pnl_pct"],
                rank=i + 1,
                score=abs(r["fts_rank"]),
            )
            for i, r in enumerate(rows)
        ]

    async def find_similar(self, trade_id: int, fund: str | None = None, limit: int = 5) -> list[SimilarTrade]:
        """Search with the trade's own reasoning, context and symbol, excluding itself."""
        trade = await self.get(trade_id)
        if trade is None:
            return []
        parts = [p for p in (trade.reasoning, trade.market_context, trade.symbol) if p]
        if not parts:
            return []
        results = await self.search(" ".join(parts), fund, limit + 1)
        return [r for r in results if r.trade_id != trade_id][:limit]

    async def context_summary(self, fund: str, max_trades: int = 20) -> str:
        """Markdown digest of recent trades, for inclusion in session prompts."""
        trades = await self.recent(fund, max_trades)
        if not trades:
            return "No trade history yet."

        lines = ["## Recent Trade History\n"]
        for t in trades:
            date = t.timestamp.split("T")[0]
            pnl = f" | P&L: ${t.pnl:.2f} ({(t.pnl_pct or 0):.1f}%)" if t.pnl is not None else ""
            lines.append(f"- **{date}** {t.side.value.upper()} {t.quantity:g} {t.symbol} @ ${t.price}{pnl}")
            if t.reasoning:
                lines.append(f"  Reasoning: {t.reasoning}")
            if t.lessons_learned:
                lines.append(f"  Lessons: {t.lessons_learned}")
        return "\n".join(lines)

    async def rebuild_index(self) -> int:
        await self._db.executescript(REBUILD_FTS)
        await self._db.commit()
        row = await self._db.fetchone("SELECT COUNT(*) AS n FROM trades")
        log.info("ledger.index_rebuilt", trades=row["n"])
        return row["n"]

    # --- Session history ---

    async def record_session(
        self, session: SessionLog, duration_seconds: int | None = None, model: str | None = None,
    ) -> int:
        cursor = await self._db.execute(
            """INSERT INTO sessions (timestamp, fund, session_type, duration_seconds,
               trades_executed, analysis_file, summary, model)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (session.started_at, session.fund, session.session_type, duration_seconds,
             session.trades_executed, session.analysis_file, session.summary, model),
        )
        await self._db.commit()
        return cursor.lastrowid

    async def recent_sessions(self, fund: str, limit: int = 10) -> list[dict]:
        return await self._db.fetchall(
            "SELECT * FROM sessions WHERE fund = ? ORDER BY timestamp DESC LIMIT ?",
            (fund, limit),
        )


@asynccontextmanager
async def open_ledger(path: Path) -> AsyncIterator[TradeLedger]:
    """Open a fund's journal for the duration of one action."""
    path.parent.mkdir(parents=True, exist_ok=True)
    async with Database(str(path)) as db:
        yield TradeLedger(db)
