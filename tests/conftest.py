"""Shared fakes and factories for the convergence trader tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from convergence_trader.config import RiskConfig
from convergence_trader.ledger import LedgerStore
from convergence_trader.state import AccountStateSynchronizer
from convergence_trader.types import (
    Direction, MarketData, OpenOrderRef, OutcomeSide, PositionRef,
)
from convergence_trader.venue import (
    ExecutionVenue, VenueCancelAllAck, VenueOrderAck, VenueTrade,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
NOW_MS = int(NOW.timestamp() * 1000)
ADDRESS = "0x1111111111111111111111111111111111111111"


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start_ms: int = NOW_MS):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeVenue(ExecutionVenue):
    """In-memory venue recording every call."""

    def __init__(self, balance: float = 100.0):
        self.balance = balance
        self.open_orders: list[OpenOrderRef] = []
        self.trades: list[VenueTrade] = []
        self.last_prices: dict[str, float] = {}

        self.ack = VenueOrderAck(success=True, order_id="ord_1", status="matched")
        self.submit_error: Optional[Exception] = None
        self.submit_delay_s = 0.0
        self.fail_balance = False
        self.fail_orders = False
        self.fail_trades = False
        self.cancel_ack = VenueCancelAllAck(success=True, cancelled_count=2)

        self.submissions: list[tuple[str, Direction, float]] = []
        self.cancel_calls = 0
        self.closed = False

    async def submit_market_order(self, token_id, direction, amount):
        self.submissions.append((token_id, direction, amount))
        if self.submit_delay_s:
            await asyncio.sleep(self.submit_delay_s)
        if self.submit_error is not None:
            raise self.submit_error
        return self.ack

    async def get_open_orders(self):
        if self.fail_orders:
            raise ConnectionError("orders endpoint down")
        return list(self.open_orders)

    async def get_balance(self):
        if self.fail_balance:
            raise ConnectionError("balance endpoint down")
        return self.balance

    async def cancel_all(self):
        self.cancel_calls += 1
        return self.cancel_ack

    async def get_trades(self, after_ms):
        if self.fail_trades:
            raise ConnectionError("trades endpoint down")
        return list(self.trades)

    async def get_last_trade_price(self, token_id):
        return self.last_prices.get(token_id)

    async def close(self):
        self.closed = True


class FakePositionsClient:
    def __init__(self, positions: Optional[list[PositionRef]] = None):
        self.positions = positions or []
        self.fail = False
        self.calls = 0
        self.closed = False

    async def fetch_positions(self, address: str) -> list[PositionRef]:
        self.calls += 1
        if self.fail:
            raise ConnectionError("positions API down")
        return list(self.positions)

    async def close(self) -> None:
        self.closed = True


class FakeBalanceReader:
    def __init__(self, balance: float = 0.0):
        self.balance = balance
        self.fail = False
        self.closed = False

    async def fetch_balance(self, address: str) -> float:
        if self.fail:
            raise ConnectionError("rpc down")
        return self.balance

    async def close(self) -> None:
        self.closed = True


def make_position(
    market_id: str = "m1",
    side: OutcomeSide = OutcomeSide.YES,
    size: float = 10.0,
    avg_entry_price: float = 0.70,
    current_price: float = 0.72,
    token_id: Optional[str] = None,
) -> PositionRef:
    return PositionRef(
        market_id=market_id,
        token_id=token_id or f"{market_id}_{side.value.lower()}",
        side=side,
        size=size,
        avg_entry_price=avg_entry_price,
        current_price=current_price,
        current_value=size * current_price,
    )


def make_order(
    market_id: str = "m1",
    price: float = 0.70,
    original_size: float = 10.0,
    size_matched: float = 0.0,
) -> OpenOrderRef:
    return OpenOrderRef(
        order_id=f"o_{market_id}",
        market_id=market_id,
        token_id=f"{market_id}_yes",
        direction=Direction.BUY,
        price=price,
        original_size=original_size,
        size_matched=size_matched,
    )


def make_market(
    market_id: str = "m1",
    yes_price: float = 0.70,
    days: float = 3.0,
    liquidity: float = 5_000.0,
    closed: bool = False,
    resolved_outcome: Optional[OutcomeSide] = None,
    now: datetime = NOW,
) -> MarketData:
    return MarketData(
        id=market_id,
        question=f"Will {market_id} happen?",
        yes_token_id=f"{market_id}_yes",
        no_token_id=f"{market_id}_no",
        yes_price=yes_price,
        no_price=round(1.0 - yes_price, 4),
        end_date=now + timedelta(days=days),
        liquidity=liquidity,
        closed=closed,
        resolved_outcome=resolved_outcome,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    store = LedgerStore(":memory:", clock=clock)
    store.init_schema()
    yield store
    store.close()


@pytest.fixture
def venue():
    return FakeVenue(balance=100.0)


@pytest.fixture
def positions_client():
    return FakePositionsClient()


@pytest.fixture
def balance_reader():
    return FakeBalanceReader(balance=0.0)


@pytest.fixture
def synchronizer(venue, positions_client, balance_reader, clock):
    return AccountStateSynchronizer(
        venue=venue,
        positions_client=positions_client,
        balance_reader=balance_reader,
        address=ADDRESS,
        stale_threshold_ms=30_000,
        clock=clock,
        wall_clock=clock,
    )


@pytest.fixture
def risk():
    return RiskConfig(position_size_usd=10.0, max_positions=5, max_exposure_usd=50.0)
