"""
Core types for the convergence trader.

Enums are string-valued where they are persisted to the ledger so the
stored value is the enum value itself.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Generic, Optional, TypeVar

from .errors import RejectReason


class OutcomeSide(Enum):
    """Side of a binary market."""
    YES = "YES"
    NO = "NO"


class Direction(Enum):
    """Order direction."""
    BUY = "BUY"
    SELL = "SELL"


class OrderStatus(Enum):
    """
    Order tracking status.

    Moves strictly forward:
    CREATED -> SUBMITTED -> FILLED | FAILED | CANCELLED
    CREATED -> FILLED (dry run) | FAILED | CANCELLED
    """
    CREATED = "created"
    SUBMITTED = "submitted"
    FILLED = "filled"
    FAILED = "failed"
    CANCELLED = "cancelled"


ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.CREATED: frozenset({
        OrderStatus.SUBMITTED, OrderStatus.FILLED, OrderStatus.FAILED, OrderStatus.CANCELLED,
    }),
    OrderStatus.SUBMITTED: frozenset({
        OrderStatus.FILLED, OrderStatus.FAILED, OrderStatus.CANCELLED,
    }),
    OrderStatus.FILLED: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


class TradeStatus(Enum):
    """Trade record status. UNKNOWN requires human review."""
    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class TradeOrigin(Enum):
    """Who created a trade record."""
    EXECUTOR = "executor"
    RECONCILIATION = "reconciliation"


class ExitReason(Enum):
    """Why a position was closed."""
    TARGET = "target"
    STOP_LOSS = "stop_loss"
    RESOLUTION = "resolution"
    MANUAL = "manual"


class StateOrigin(Enum):
    """Whether an AccountState came from a live fetch or the cache."""
    LIVE = "live"
    CACHED = "cached"


class PositionSource(Enum):
    """Provenance of the positions in an AccountState."""
    POSITIONS_API = "positions_api"
    TRADE_REPLAY = "trade_replay"
    NONE = "none"


class RunMode(Enum):
    LIVE = "live"
    PAPER = "paper"


class RunStatus(Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    CRASHED = "crashed"


# Account state

@dataclass(slots=True)
class PositionRef:
    """An externally reported position. Identity is (market_id, side)."""
    market_id: str
    token_id: str
    side: OutcomeSide
    size: float  # shares
    avg_entry_price: float
    current_price: float
    current_value: float
    unrealized_pnl: float = 0.0
    question: Optional[str] = None
    entry_time_ms: Optional[int] = None
    source: PositionSource = PositionSource.POSITIONS_API


@dataclass(slots=True)
class OpenOrderRef:
    """A resting order reported by the venue."""
    order_id: str
    market_id: str
    token_id: str
    direction: Direction
    price: float
    original_size: float
    size_matched: float = 0.0
    outcome: Optional[str] = None

    @property
    def remaining_notional(self) -> float:
        """USD still committed to this order."""
        return max(0.0, self.original_size - self.size_matched) * self.price


@dataclass
class AccountState:
    """
    Point-in-time view of the account.

    Owned by the synchronizer and replaced wholesale on each successful
    fetch; never mutated in place by consumers.
    """
    balance: float
    open_orders: list[OpenOrderRef]
    positions: list[PositionRef]
    observed_at_ms: int
    origin: StateOrigin = StateOrigin.LIVE
    position_source: PositionSource = PositionSource.POSITIONS_API
    degraded: tuple[str, ...] = ()
    venue_balance: Optional[float] = None
    onchain_balance: Optional[float] = None

    @property
    def is_live(self) -> bool:
        return self.origin is StateOrigin.LIVE

    @property
    def open_order_notional(self) -> float:
        return sum(o.remaining_notional for o in self.open_orders)

    @property
    def position_value(self) -> float:
        return sum(p.current_value for p in self.positions)

    def age_ms(self, now: int) -> int:
        return now - self.observed_at_ms

    def position_for(self, market_id: str) -> Optional[PositionRef]:
        for position in self.positions:
            if position.market_id == market_id:
                return position
        return None

    def has_position(self, market_id: str) -> bool:
        return self.position_for(market_id) is not None

    def has_open_order(self, market_id: str) -> bool:
        return any(o.market_id == market_id for o in self.open_orders)


# Execution

@dataclass
class OrderIntent:
    """
    A request to trade.

    size_usd is the notional for buys. For sells, shares is the quantity
    to sell; when omitted it is derived from size_usd / limit_price.
    """
    market_id: str
    token_id: str
    side: OutcomeSide
    size_usd: float
    limit_price: Optional[float] = None
    shares: Optional[float] = None
    idempotency_key: Optional[str] = None
    question: Optional[str] = None


@dataclass
class OrderResult:
    """Outcome of a place_order call."""
    success: bool
    idempotency_key: str
    external_order_id: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[RejectReason] = None
    dry_run: bool = False
    replayed: bool = False


@dataclass
class OrderTrackingRecord:
    """Persisted record of one order attempt, keyed by idempotency key."""
    idempotency_key: str
    market_id: str
    token_id: str
    direction: Direction
    price: float
    size: float
    status: OrderStatus = OrderStatus.CREATED
    external_order_id: Optional[str] = None
    venue_status: Optional[str] = None
    error_message: Optional[str] = None
    created_at_ms: int = 0
    updated_at_ms: int = 0
    filled_at_ms: Optional[int] = None
    id: Optional[int] = None


@dataclass
class TradeRecord:
    """Persisted lifecycle record of a position taken by the bot."""
    market_id: str
    side: OutcomeSide
    size: float  # shares
    size_usd: float
    status: TradeStatus = TradeStatus.PENDING
    token_id: Optional[str] = None
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    pnl: Optional[float] = None
    exit_reason: Optional[ExitReason] = None
    order_id: Optional[str] = None
    question: Optional[str] = None
    origin: TradeOrigin = TradeOrigin.EXECUTOR
    notes: Optional[str] = None
    entry_time_ms: Optional[int] = None
    exit_time_ms: Optional[int] = None
    id: Optional[int] = None


@dataclass(slots=True)
class RunSnapshot:
    """Append-only periodic account snapshot for a run."""
    run_id: str
    timestamp_ms: int
    balance: float
    total_exposure: float
    open_positions_count: int
    open_orders_count: int


@dataclass
class BotRun:
    """One execution of the bot from start to stop."""
    run_id: str
    started_at_ms: int
    mode: RunMode
    status: RunStatus = RunStatus.RUNNING
    ended_at_ms: Optional[int] = None
    trades_placed: int = 0
    trades_closed: int = 0
    total_pnl: float = 0.0
    notes: Optional[str] = None


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass."""
    synced: bool
    discrepancies: list[str] = field(default_factory=list)
    marked_unknown: int = 0
    imported: int = 0


@dataclass
class CancelAllResult:
    """Outcome of a best-effort cancel-all."""
    success: bool
    cancelled_count: int = 0
    error: Optional[str] = None
    state_refreshed: bool = False


# Market data

@dataclass
class MarketData:
    """Normalized binary market as seen by the evaluator."""
    id: str
    question: str
    yes_token_id: str
    no_token_id: str
    yes_price: float
    no_price: float
    end_date: Optional[datetime]
    outcomes: list[str] = field(default_factory=lambda: ["Yes", "No"])
    volume: float = 0.0
    liquidity: float = 0.0
    slug: str = ""
    closed: bool = False
    resolved_outcome: Optional[OutcomeSide] = None

    @property
    def is_binary(self) -> bool:
        return len(self.outcomes) == 2 and bool(self.yes_token_id) and bool(self.no_token_id)

    def token_for(self, side: OutcomeSide) -> str:
        return self.yes_token_id if side is OutcomeSide.YES else self.no_token_id

    def price_for(self, side: OutcomeSide) -> float:
        return self.yes_price if side is OutcomeSide.YES else self.no_price


@dataclass(slots=True)
class PricePoint:
    """A YES/NO price observation."""
    timestamp: datetime
    yes_price: float
    no_price: float

    def price_for(self, side: OutcomeSide) -> float:
        return self.yes_price if side is OutcomeSide.YES else self.no_price


@dataclass
class MarketFilter:
    """Server-side filter for market fetches."""
    closed: Optional[bool] = False
    end_date_min: Optional[datetime] = None
    end_date_max: Optional[datetime] = None
    min_liquidity: float = 0.0
    max_markets: int = 3000


T = TypeVar("T")


@dataclass
class FetchResult(Generic[T]):
    """
    Typed wrapper for a read-path call.

    Distinguishes "fetched, nothing there" (success with empty data) from
    "could not fetch" (success False with error).
    """
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    source: str = ""

    @classmethod
    def ok(cls, data: T, source: str = "") -> "FetchResult[T]":
        return cls(success=True, data=data, source=source)

    @classmethod
    def fail(cls, error: str, source: str = "") -> "FetchResult[T]":
        return cls(success=False, error=error, source=source)


# Strategy signals

@dataclass
class TradeSignal:
    """Entry signal for a qualified market."""
    market_id: str
    side: OutcomeSide
    entry_price: float
    timestamp: datetime
    days_to_resolution: float
    reason: str


@dataclass
class ExitSignal:
    """Exit signal for an open position."""
    market_id: str
    exit_price: float
    timestamp: datetime
    reason: ExitReason
