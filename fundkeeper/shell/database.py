"""SQLite trade journal: one database per fund, with a full-text index over trades."""

from __future__ import annotations

import aiosqlite
import structlog

log = structlog.get_logger()

SCHEMA = """
-- Trade ledger (append-only; close fields filled when a position exits)
CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    fund TEXT NOT NULL,
    symbol TEXT NOT NULL,
    side TEXT NOT NULL CHECK (side IN ('buy', 'sell')),
    quantity REAL NOT NULL,
    price REAL NOT NULL,
    total_value REAL NOT NULL,
    order_type TEXT NOT NULL,
    session_type TEXT,
    reasoning TEXT,
    analysis_ref TEXT,
    closed_at TEXT,
    close_price REAL,
    pnl REAL,
    pnl_pct REAL,
    lessons_learned TEXT,
    market_context TEXT
);

-- Session history (session_log.json only keeps the latest)
CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    fund TEXT NOT NULL,
    session_type TEXT NOT NULL,
    duration_seconds INTEGER,
    trades_executed INTEGER DEFAULT 0,
    analysis_file TEXT,
    summary TEXT,
    model TEXT
);

CREATE INDEX IF NOT EXISTS idx_trades_fund ON trades(fund);
CREATE INDEX IF NOT EXISTS idx_trades_symbol ON trades(symbol);
CREATE INDEX IF NOT EXISTS idx_trades_timestamp ON trades(timestamp);
CREATE INDEX IF NOT EXISTS idx_sessions_fund ON sessions(fund);

-- Full-text index, rowid mirrors trades.id
CREATE VIRTUAL TABLE IF NOT EXISTS trades_fts USING fts5(
    symbol,
    side,
    reasoning,
    market_context,
    lessons_learned,
    tokenize='porter unicode61'
);

CREATE TRIGGER IF NOT EXISTS trades_ai AFTER INSERT ON trades BEGIN
    INSERT INTO trades_fts(rowid, symbol, side, reasoning, market_context, lessons_learned)
    VALUES (new.id, new.symbol, new.side,
            COALESCE(new.reasoning, ''),
            COALESCE(new.market_context, ''),
            COALESCE(new.lessons_learned, ''));
END;

CREATE TRIGGER IF NOT EXISTS trades_au AFTER UPDATE ON trades BEGIN
    DELETE FROM trades_fts WHERE rowid = old.id;
    INSERT INTO trades_fts(rowid, symbol, side, reasoning, market_context, lessons_learned)
    VALUES (new.id, new.symbol, new.side,
            COALESCE(new.reasoning, ''),
            COALESCE(new.market_context, ''),
            COALESCE(new.lessons_learned, ''));
END;

CREATE TRIGGER IF NOT EXISTS trades_ad AFTER DELETE ON trades BEGIN
    DELETE FROM trades_fts WHERE rowid = old.id;
END;
"""

REBUILD_FTS = """
DELETE FROM trades_fts;
INSERT INTO trades_fts(rowid, symbol, side, reasoning, market_context, lessons_learned)
SELECT id, symbol, side,
       COALESCE(reasoning, ''),
       COALESCE(market_context, ''),
       COALESCE(lessons_learned, '')
FROM trades;
"""

# (table, column, ALTER statement) for journals created by older releases
MIGRATIONS = [
    ("sessions", "model", "ALTER TABLE sessions ADD COLUMN model TEXT"),
]


class Database:
    def __init__(self, db_path: str):
        self._path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self._path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA busy_timeout=5000")
        await self._conn.executescript(SCHEMA)
        await self._run_migrations()
        await self._conn.commit()
        log.debug("database.connected", path=self._path)

    async def _run_migrations(self) -> None:
        """Apply column additions to existing databases."""
        for table, column, sql in MIGRATIONS:
            cursor = await self._conn.execute(f"PRAGMA table_info({table})")
            columns = [row[1] for row in await cursor.fetchall()]
            if column not in columns:
                await self._conn.execute(sql)
                log.info("database.migration", table=table, column=column)

    async def close(self) -> None:
        if self._conn:
            await self._conn.commit()
            await self._conn.close()
            self._conn = None
            log.debug("database.closed", path=self._path)

    async def __aenter__(self) -> Database:
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Database not connected")
        return self._conn

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        return await self.conn.execute(sql, params)

    async def executescript(self, sql: str) -> None:
        await self.conn.executescript(sql)

    async def fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        cursor = await self.conn.execute(sql, params)
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        cursor = await self.conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def commit(self) -> None:
        await self.conn.commit()
