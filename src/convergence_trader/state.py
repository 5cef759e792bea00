"""
Account state synchronization.

The exchange is the source of truth. AccountStateSynchronizer pulls
balance, open orders and positions from every upstream it knows about,
combines them into one AccountState and caches it for a bounded time.

Upstream failures degrade rather than crash:
- a failed source is listed in AccountState.degraded
- if every source fails the stale cache is served (origin=CACHED)
- with no cache at all, SyncError is raised

Safety-relevant queries (has_open_order_for_market, has_position_in_market,
verify_position) always force a live read and refuse to answer from a
cache or from a fetch where the source they need failed.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Optional, Sequence

from .account_sources import OnChainBalanceReader, PositionsClient
from .errors import SyncError
from .types import (
    AccountState, Direction, FetchResult, OpenOrderRef, OutcomeSide, PositionRef,
    PositionSource, StateOrigin,
)
from .util import now_ms, wall_ms
from .venue import ExecutionVenue, VenueTrade

logger = logging.getLogger(__name__)

# Names used in AccountState.degraded
SOURCE_VENUE_BALANCE = "venue_balance"
SOURCE_ONCHAIN_BALANCE = "onchain_balance"
SOURCE_BALANCE = "balance"
SOURCE_OPEN_ORDERS = "open_orders"
SOURCE_POSITIONS_API = "positions_api"
SOURCE_POSITIONS = "positions"

SETTLED_TRADE_STATUSES = frozenset({"MATCHED", "MINED", "CONFIRMED"})
DUST_SHARES = 0.001


@dataclass
class _ReplayedPosition:
    market_id: str
    token_id: str
    side: OutcomeSide
    size: float = 0.0
    cost: float = 0.0
    first_trade_ms: int = 0


class AccountStateSynchronizer:
    """
    Staleness-bounded cache over the account's external state.

    Balance is the maximum of the venue-reported collateral and the
    on-chain USDC balance of the proxy wallet. The venue figure is known
    to under-report (including reporting zero); a nonzero on-chain
    figure is never too low. The two are never averaged.
    """

    def __init__(
        self,
        venue: ExecutionVenue,
        positions_client: PositionsClient,
        balance_reader: OnChainBalanceReader,
        address: str,
        stale_threshold_ms: int = 30_000,
        trade_lookback_days: int = 90,
        clock: Callable[[], int] = now_ms,
        wall_clock: Callable[[], int] = wall_ms,
    ):
        """
        Args:
            venue: Execution venue (balance, open orders, trade history)
            positions_client: Data API positions reader
            balance_reader: On-chain USDC reader
            address: Proxy wallet address holding funds and positions
            stale_threshold_ms: Maximum age of a cached state
            trade_lookback_days: Window for the trade-replay fallback
            clock: Monotonic clock for staleness (ms)
            wall_clock: Wall clock for trade history queries (ms)
        """
        self._venue = venue
        self._positions_client = positions_client
        self._balance_reader = balance_reader
        self._address = address
        self._stale_threshold_ms = stale_threshold_ms
        self._trade_lookback_ms = trade_lookback_days * 24 * 60 * 60 * 1000
        self._clock = clock
        self._wall_clock = wall_clock

        self._cache: Optional[AccountState] = None
        self._last_error: Optional[str] = None

    @property
    def cached_state(self) -> Optional[AccountState]:
        return self._cache

    @property
    def last_error(self) -> Optional[str]:
        """Description of the most recent upstream failure, if any."""
        return self._last_error

    @property
    def stale_threshold_ms(self) -> int:
        return self._stale_threshold_ms

    def is_fresh(self, state: AccountState) -> bool:
        return state.is_live and state.age_ms(self._clock()) <= self._stale_threshold_ms

    def invalidate(self) -> None:
        """Force the next get_state() to fetch, keeping the cache as fallback."""
        if self._cache is not None:
            self._cache = replace(self._cache, observed_at_ms=self._clock() - self._stale_threshold_ms - 1)

    async def get_state(self, force_refresh: bool = False) -> AccountState:
        """
        Current account state.

        Args:
            force_refresh: Bypass the cache and fetch from upstream

        Returns:
            A live state, or the stale cache tagged origin=CACHED if every
            upstream failed

        Raises:
            SyncError: every upstream failed and nothing is cached
        """
        if not force_refresh and self._cache is not None and self.is_fresh(self._cache):
            return self._cache

        try:
            state = await self._fetch()
        except SyncError as e:
            self._last_error = str(e)
            if self._cache is None:
                logger.error(f"Account state unavailable and no cache: {e}")
                raise
            age_s = self._cache.age_ms(self._clock()) / 1000
            logger.warning(f"Account state fetch failed, serving cache aged {age_s:.1f}s: {e}")
            return replace(self._cache, origin=StateOrigin.CACHED)

        self._cache = state
        return state

    async def get_available_balance(self) -> float:
        """Balance not committed to resting orders."""
        state = await self.get_state()
        return max(0.0, state.balance - state.open_order_notional)

    async def get_total_exposure(self) -> float:
        """Current position value plus resting order notional."""
        state = await self.get_state()
        return state.position_value + state.open_order_notional

    async def require_live_state(self, required: Sequence[str]) -> AccountState:
        """
        Force a fresh read and verify the named sources are present.

        Raises:
            SyncError: the read fell back to cache or a required source failed
        """
        state = await self.get_state(force_refresh=True)
        if not state.is_live:
            raise SyncError(f"Live account state unavailable: {self._last_error}")
        missing = [s for s in required if s in state.degraded]
        if missing:
            raise SyncError(f"Account state degraded: {', '.join(missing)} unavailable")
        return state

    async def has_open_order_for_market(self, market_id: str) -> bool:
        state = await self.require_live_state((SOURCE_OPEN_ORDERS,))
        return state.has_open_order(market_id)

    async def has_position_in_market(self, market_id: str) -> bool:
        state = await self.require_live_state((SOURCE_POSITIONS,))
        return state.has_position(market_id)

    async def verify_position(self, market_id: str) -> Optional[PositionRef]:
        """The live position in a market, if any."""
        state = await self.require_live_state((SOURCE_POSITIONS,))
        return state.position_for(market_id)

    # ========== Fetching ==========

    async def _attempt(self, source: str, call: Callable[[], Awaitable]) -> FetchResult:
        try:
            return FetchResult.ok(await call(), source=source)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Account source {source} failed: {e}")
            return FetchResult.fail(str(e), source=source)

    async def _fetch(self) -> AccountState:
        venue_balance, onchain_balance, orders, positions = await asyncio.gather(
            self._attempt(SOURCE_VENUE_BALANCE, self._venue.get_balance),
            self._attempt(
                SOURCE_ONCHAIN_BALANCE,
                lambda: self._balance_reader.fetch_balance(self._address),
            ),
            self._attempt(SOURCE_OPEN_ORDERS, self._venue.get_open_orders),
            self._attempt(
                SOURCE_POSITIONS_API,
                lambda: self._positions_client.fetch_positions(self._address),
            ),
        )

        degraded: list[str] = []
        errors = [r.error for r in (venue_balance, onchain_balance, orders, positions) if not r.success]
        degraded.extend(
            r.source for r in (venue_balance, onchain_balance, orders, positions) if not r.success
        )

        balance = self._effective_balance(venue_balance, onchain_balance)
        if balance is None:
            degraded.append(SOURCE_BALANCE)

        position_source = PositionSource.POSITIONS_API
        position_list: list[PositionRef] = positions.data if positions.success else []
        if not positions.success:
            replayed = await self._attempt("trade_replay", self._replay_positions)
            if replayed.success:
                position_source = PositionSource.TRADE_REPLAY
                position_list = replayed.data
                logger.info(f"Positions derived from trade history ({len(position_list)} positions)")
            else:
                errors.append(replayed.error)
                position_source = PositionSource.NONE
                degraded.append(SOURCE_POSITIONS)

        if balance is None and not orders.success and position_source is PositionSource.NONE:
            raise SyncError("All account state sources failed: " + "; ".join(e or "" for e in errors))

        # A clean fetch clears the previous failure
        self._last_error = "; ".join(e or "" for e in errors) if errors else None

        open_orders: list[OpenOrderRef] = orders.data if orders.success else []
        return AccountState(
            balance=balance or 0.0,
            open_orders=open_orders,
            positions=position_list,
            observed_at_ms=self._clock(),
            origin=StateOrigin.LIVE,
            position_source=position_source,
            degraded=tuple(degraded),
            venue_balance=venue_balance.data if venue_balance.success else None,
            onchain_balance=onchain_balance.data if onchain_balance.success else None,
        )

    def _effective_balance(
        self,
        venue_balance: FetchResult,
        onchain_balance: FetchResult,
    ) -> Optional[float]:
        candidates = [r.data for r in (venue_balance, onchain_balance) if r.success]
        if not candidates:
            return None

        effective = max(candidates)
        if venue_balance.success and onchain_balance.success:
            if venue_balance.data == 0 and onchain_balance.data > 0:
                logger.info(
                    f"Venue reports $0 but on-chain has ${onchain_balance.data:.2f}, "
                    f"using on-chain balance"
                )
        return effective

    async def _replay_positions(self) -> list[PositionRef]:
        """Rebuild positions by netting the account's settled trades."""
        trades = await self._venue.get_trades(self._wall_clock() - self._trade_lookback_ms)
        replayed = net_trades(trades)

        positions = []
        for pos in replayed:
            avg_entry = abs(pos.cost / pos.size)
            current_price = avg_entry
            try:
                last = await self._venue.get_last_trade_price(pos.token_id)
                if last is not None:
                    current_price = last
            except Exception as e:
                logger.debug(f"No last trade price for {pos.token_id}: {e}")

            current_value = pos.size * current_price
            positions.append(PositionRef(
                market_id=pos.market_id,
                token_id=pos.token_id,
                side=pos.side,
                size=pos.size,
                avg_entry_price=avg_entry,
                current_price=current_price,
                current_value=current_value,
                unrealized_pnl=current_value - pos.cost,
                entry_time_ms=pos.first_trade_ms or None,
                source=PositionSource.TRADE_REPLAY,
            ))
        return positions


def net_trades(trades: list[VenueTrade]) -> list[_ReplayedPosition]:
    """
    Net buys and sells per (market, token).

    Only settled trades count. Net long positions under DUST_SHARES are
    dropped; net short results (sales of shares bought before the
    lookback window) are dropped too since the account cannot be short.
    """
    book: dict[tuple[str, str], _ReplayedPosition] = {}
    for trade in trades:
        if trade.status not in SETTLED_TRADE_STATUSES:
            continue
        outcome = trade.outcome.upper()
        if outcome not in ("YES", "NO"):
            continue

        key = (trade.market_id, trade.token_id)
        pos = book.get(key)
        if pos is None:
            pos = _ReplayedPosition(
                market_id=trade.market_id,
                token_id=trade.token_id,
                side=OutcomeSide(outcome),
                first_trade_ms=trade.match_time_ms,
            )
            book[key] = pos

        sign = 1.0 if trade.direction is Direction.BUY else -1.0
        pos.size += sign * trade.size
        pos.cost += sign * trade.size * trade.price

    return [p for p in book.values() if p.size >= DUST_SHARES]
