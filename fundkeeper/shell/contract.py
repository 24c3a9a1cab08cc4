"""Data contract: the documents and records every engine reads and writes.

Portfolio, ObjectiveTracker and SessionLog are persisted as JSON by the state
store. TradeRecord rows live in the per-fund ledger database. SubTaskResult and
StopLossEvent are produced by the engines and never mutated afterwards.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


# --- Enums ---

class FundStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"


class TrackerStatus(Enum):
    ON_TRACK = "on_track"
    BEHIND = "behind"
    AHEAD = "ahead"
    COMPLETED = "completed"


class TradeSide(Enum):
    BUY = "buy"
    SELL = "sell"


class OrderKind(Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"
    TRAILING_STOP = "trailing_stop"


class SubTaskKind(Enum):
    MACRO = "macro"
    TECHNICAL = "technical"
    SENTIMENT = "sentiment"
    RISK = "risk"
    CUSTOM = "custom"


class SubTaskStatus(Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


def _require(data: dict, *keys: str) -> None:
    missing = [k for k in keys if k not in data]
    if missing:
        raise ValueError(f"Missing required fields: {', '.join(missing)}")


# --- Portfolio ---

@dataclass
class Position:
    symbol: str
    shares: float
    avg_cost: float
    current_price: float
    market_value: float
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0
    weight_pct: float = 0.0
    stop_loss: Optional[float] = None
    entry_date: str = ""
    entry_reason: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> Position:
        _require(data, "symbol", "shares", "avg_cost", "current_price", "market_value")
        return cls(
            symbol=str(data["symbol"]),
            shares=float(data["shares"]),
            avg_cost=float(data["avg_cost"]),
            current_price=float(data["current_price"]),
            market_value=float(data["market_value"]),
            unrealized_pnl=float(data.get("unrealized_pnl", 0.0)),
            unrealized_pnl_pct=float(data.get("unrealized_pnl_pct", 0.0)),
            weight_pct=float(data.get("weight_pct", 0.0)),
            stop_loss=float(data["stop_loss"]) if data.get("stop_loss") is not None else None,
            entry_date=data.get("entry_date", ""),
            entry_reason=data.get("entry_reason", ""),
        )

    def to_dict(self) -> dict:
        d = asdict(self)
        if d["stop_loss"] is None:
            del d["stop_loss"]
        return d


@dataclass
class Portfolio:
    last_updated: str
    cash: float
    total_value: float
    positions: list[Position] = field(default_factory=list)

    @classmethod
    def empty(cls, cash: float) -> Portfolio:
        return cls(last_updated=datetime.now().isoformat(), cash=cash, total_value=cash)

    @classmethod
    def from_dict(cls, data: dict) -> Portfolio:
        _require(data, "last_updated", "cash", "total_value")
        positions = [Position.from_dict(p) for p in data.get("positions", [])]
        symbols = [p.symbol for p in positions]
        if len(symbols) != len(set(symbols)):
            raise ValueError("Portfolio has more than one position for a symbol")
        return cls(
            last_updated=data["last_updated"],
            cash=float(data["cash"]),
            total_value=float(data["total_value"]),
            positions=positions,
        )

    def to_dict(self) -> dict:
        return {
            "last_updated": self.last_updated,
            "cash": self.cash,
            "total_value": self.total_value,
            "positions": [p.to_dict() for p in self.positions],
        }

    def get(self, symbol: str) -> Position | None:
        for pos in self.positions:
            if pos.symbol == symbol:
                return pos
        return None

    def recompute(self, now: datetime | None = None) -> Portfolio:
        """Restore invariants: sorted by symbol, total = cash + market values, weights."""
        self.positions.sort(key=lambda p: p.symbol)
        self.total_value = self.cash + sum(p.market_value for p in self.positions)
        for pos in self.positions:
            pos.weight_pct = (pos.market_value / self.total_value * 100) if self.total_value > 0 else 0.0
        self.last_updated = (now or datetime.now()).isoformat()
        return self


@dataclass
class ObjectiveTracker:
    type: str
    initial_capital: float
    current_value: float
    progress_pct: float = 0.0
    status: TrackerStatus = TrackerStatus.ON_TRACK

    @classmethod
    def from_dict(cls, data: dict) -> ObjectiveTracker:
        _require(data, "type", "initial_capital", "current_value")
        return cls(
            type=data["type"],
            initial_capital=float(data["initial_capital"]),
            current_value=float(data["current_value"]),
            progress_pct=float(data.get("progress_pct", 0.0)),
            status=TrackerStatus(data.get("status", "on_track")),
        )

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class SessionLog:
    fund: str
    session_type: str
    started_at: str
    ended_at: Optional[str] = None
    trades_executed: int = 0
    analysis_file: Optional[str] = None
    summary: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> SessionLog:
        _require(data, "fund", "session_type", "started_at")
        return cls(
            fund=data["fund"],
            session_type=data["session_type"],
            started_at=data["started_at"],
            ended_at=data.get("ended_at"),
            trades_executed=int(data.get("trades_executed", 0)),
            analysis_file=data.get("analysis_file"),
            summary=data.get("summary", ""),
        )

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


# --- Trade ledger ---

@dataclass
class TradeRecord:
    timestamp: str
    fund: str
    symbol: str
    side: TradeSide
    quantity: float
    price: float
    total_value: float
    order_type: OrderKind = OrderKind.MARKET
    session_type: Optional[str] = None
    reasoning: Optional[str] = None
    analysis_ref: Optional[str] = None
    market_context: Optional[str] = None
    closed_at: Optional[str] = None
    close_price: Optional[float] = None
    pnl: Optional[float] = None
    pnl_pct: Optional[float] = None
    lessons_learned: Optional[str] = None
    id: Optional[int] = None

    def __post_init__(self):
        if self.quantity <= 0:
            raise ValueError(f"Trade quantity must be positive, got {self.quantity}")
        if self.price <= 0:
            raise ValueError(f"Trade price must be positive, got {self.price}")

    @classmethod
    def from_row(cls, row: dict) -> TradeRecord:
        return cls(
            id=row.get("id"),
            timestamp=row["timestamp"],
            fund=row["fund"],
            symbol=row["symbol"],
            side=TradeSide(row["side"]),
            quantity=row["quantity"],
            price=row["price"],
            total_value=row["total_value"],
            order_type=OrderKind(row["order_type"]),
            session_type=row.get("session_type"),
            reasoning=row.get("reasoning"),
            analysis_ref=row.get("analysis_ref"),
            market_context=row.get("market_context"),
            closed_at=row.get("closed_at"),
            close_price=row.get("close_price"),
            pnl=row.get("pnl"),
            pnl_pct=row.get("pnl_pct"),
            lessons_learned=row.get("lessons_learned"),
        )

    @property
    def is_closed(self) -> bool:
        return self.closed_at is not None


@dataclass(frozen=True)
class SimilarTrade:
    trade_id: int
    symbol: str
    side: str
    timestamp: str
    reasoning: Optional[str]
    market_context: Optional[str]
    lessons_learned: Optional[str]
    pnl: Optional[float]
    pnl_pct: Optional[float]
    rank: int
    score: float


# --- Engine outputs ---

@dataclass(frozen=True)
class SubTaskResult:
    kind: SubTaskKind
    name: str
    started_at: datetime
    ended_at: datetime
    status: SubTaskStatus
    output: str = ""
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()


@dataclass(frozen=True)
class StopLossEvent:
    symbol: str
    shares: float
    stop_price: float
    current_price: float
    avg_cost: float
    loss: float
    loss_pct: float

    @property
    def proceeds(self) -> float:
        return self.current_price * self.shares


@dataclass
class StopLossOutcome:
    sold: list[StopLossEvent] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    proceeds: float = 0.0
    # Sold, but the ledger entry could not be written
    unrecorded: list[str] = field(default_factory=list)
    portfolio: Optional[Portfolio] = None
