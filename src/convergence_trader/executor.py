"""
Safety-checked order execution.

Every order goes through the same pipeline. Each gate can stop the
order before anything external happens:

1. Idempotency: a stored record for the key is returned as-is
2. In-flight guard: one submission per market at a time, either direction
3. No existing position or resting order in the market (fresh read)
4. Exposure ceiling, counting notional reserved by other in-flight buys
5. Balance sufficiency, net of resting orders and in-flight reservations

Sells only pass gates 1 and 2.

After the gates, a CREATED record is written before the venue is
called, then moved to SUBMITTED and finally FILLED or FAILED. Business
rejections come back as OrderResult(success=False, reason=...);
infrastructure failures during the venue call raise ExecutionError.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .config import RiskConfig
from .errors import ExecutionError, RejectReason, SyncError, classify_venue_error
from .ledger import LedgerStore
from .state import (
    SOURCE_BALANCE, SOURCE_OPEN_ORDERS, SOURCE_POSITIONS, AccountStateSynchronizer,
)
from .types import (
    CancelAllResult, Direction, OrderIntent, OrderResult, OrderStatus,
    OrderTrackingRecord, OutcomeSide, TradeRecord, TradeStatus,
)
from .util import wall_ms
from .venue import ExecutionVenue

logger = logging.getLogger(__name__)

DRY_RUN_STATUS = "DRY_RUN"
IDEMPOTENCY_BUCKET_MS = 60_000
_EPSILON = 1e-9


def derive_idempotency_key(
    direction: Direction,
    market_id: str,
    side: OutcomeSide,
    size_usd: float,
    timestamp_ms: int,
) -> str:
    """
    Deterministic key for an order intent.

    Identical intents within the same minute bucket map to the same key,
    so a retry after a crash or timeout replays instead of resubmitting.
    A retry that straddles a bucket boundary gets a new key.
    """
    bucket = timestamp_ms // IDEMPOTENCY_BUCKET_MS
    raw = f"{direction.value}|{market_id}|{side.value}|{size_usd:.2f}|{bucket}"
    digest = hashlib.sha256(raw.encode()).hexdigest()[:24]
    return f"{direction.value.lower()}_{digest}"


@dataclass
class _InflightSlot:
    idempotency_key: str
    reserved_usd: float


class SafetyCheckedExecutor:
    """
    Validates and submits orders, recording every attempt idempotently.

    Dry run is the default: all gates run and the ledger record is
    written, but the venue is never called.
    """

    def __init__(
        self,
        venue: ExecutionVenue,
        synchronizer: AccountStateSynchronizer,
        ledger: LedgerStore,
        risk: RiskConfig,
        dry_run: bool = True,
        clock: Callable[[], int] = wall_ms,
    ):
        """
        Args:
            venue: Where orders are sent
            synchronizer: Account state for the safety gates
            ledger: Durable order and trade records
            risk: Exposure limits
            dry_run: Skip the venue call and record a simulated fill
            clock: Wall clock in milliseconds (idempotency buckets, ids)
        """
        self._venue = venue
        self._sync = synchronizer
        self._ledger = ledger
        self._risk = risk
        self._dry_run = dry_run
        self._clock = clock

        self._inflight: dict[str, _InflightSlot] = {}
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    @property
    def reserved_notional(self) -> float:
        """USD reserved by buys that are between gate 2 and completion."""
        return sum(slot.reserved_usd for slot in self._inflight.values())

    async def place_order(
        self,
        intent: OrderIntent,
        direction: Direction = Direction.BUY,
    ) -> OrderResult:
        """
        Run the safety pipeline and submit.

        Args:
            intent: What to trade
            direction: BUY opens a position, SELL reduces one

        Returns:
            OrderResult; success is False for business rejections

        Raises:
            ExecutionError: the venue call failed (record marked FAILED)
            ValueError: the intent is malformed
        """
        amount = self._venue_amount(intent, direction)
        key = intent.idempotency_key or derive_idempotency_key(
            direction, intent.market_id, intent.side, intent.size_usd, self._clock()
        )

        # Gate 1: idempotency
        existing = self._ledger.get_order_record(key)
        if existing is not None:
            logger.info(f"Replaying stored result for {key} ({existing.status.value})")
            return self._replay(existing)

        # Gate 2: in-flight guard. Claimed without an await in between so
        # concurrent calls for the same market cannot both get past here.
        slot_key = intent.market_id
        if slot_key in self._inflight:
            return self._reject(
                key, RejectReason.DUPLICATE_IN_FLIGHT,
                "Order already in flight for this market",
            )

        reserved = intent.size_usd if direction is Direction.BUY else 0.0
        self._inflight[slot_key] = _InflightSlot(idempotency_key=key, reserved_usd=reserved)
        self._idle.clear()
        try:
            if direction is Direction.BUY:
                rejection = await self._check_buy(intent, key, reserved)
                if rejection is not None:
                    return rejection
            return await self._submit(intent, direction, key, amount)
        finally:
            self._inflight.pop(slot_key, None)
            if not self._inflight:
                self._idle.set()

    async def _check_buy(
        self,
        intent: OrderIntent,
        key: str,
        reserved: float,
    ) -> Optional[OrderResult]:
        """Gates 3-5. Returns a rejection, or None to proceed."""
        try:
            state = await self._sync.require_live_state(
                (SOURCE_POSITIONS, SOURCE_OPEN_ORDERS, SOURCE_BALANCE)
            )
        except SyncError as e:
            return self._reject(key, RejectReason.STATE_UNAVAILABLE, str(e))

        # Gate 3: no duplicate position or order
        if state.has_position(intent.market_id):
            return self._reject(
                key, RejectReason.EXISTING_POSITION, "Already have position in this market",
            )
        if state.has_open_order(intent.market_id):
            return self._reject(
                key, RejectReason.EXISTING_ORDER, "Already have open order in this market",
            )

        other_reserved = self.reserved_notional - reserved

        # Gate 4: exposure
        exposure = state.position_value + state.open_order_notional + other_reserved
        if exposure + intent.size_usd > self._risk.max_exposure_usd + _EPSILON:
            return self._reject(
                key, RejectReason.EXPOSURE_EXCEEDED,
                f"Would exceed max exposure (${self._risk.max_exposure_usd:.2f})",
            )

        # Gate 5: balance
        available = max(0.0, state.balance - state.open_order_notional) - other_reserved
        if available + _EPSILON < intent.size_usd:
            return self._reject(
                key, RejectReason.INSUFFICIENT_BALANCE,
                f"Insufficient balance: ${available:.2f} < ${intent.size_usd:.2f}",
            )

        return None

    async def _submit(
        self,
        intent: OrderIntent,
        direction: Direction,
        key: str,
        amount: float,
    ) -> OrderResult:
        self._ledger.create_order_record(OrderTrackingRecord(
            idempotency_key=key,
            market_id=intent.market_id,
            token_id=intent.token_id,
            direction=direction,
            price=intent.limit_price or 0.0,
            size=amount,
        ))

        if self._dry_run:
            order_id = f"dry_{self._clock()}"
            self._ledger.update_order_status(
                key, OrderStatus.FILLED,
                external_order_id=order_id, venue_status=DRY_RUN_STATUS,
            )
            logger.info(
                f"[DRY RUN] Would {direction.value} {intent.side.value} in {intent.market_id}: "
                f"{amount:.4f} @ {intent.limit_price or 0:.3f} ({key})"
            )
            return OrderResult(
                success=True, idempotency_key=key, external_order_id=order_id, dry_run=True,
            )

        self._ledger.update_order_status(key, OrderStatus.SUBMITTED)
        logger.info(
            f"Submitting {direction.value} {intent.side.value} in {intent.market_id}: "
            f"{amount:.4f} ({key})"
        )

        try:
            ack = await self._venue.submit_market_order(intent.token_id, direction, amount)
        except Exception as e:
            self._ledger.update_order_status(key, OrderStatus.FAILED, error_message=str(e))
            logger.error(f"Order submission failed for {key}: {e}")
            raise ExecutionError(f"Order submission failed: {e}", idempotency_key=key) from e

        if not ack.success:
            code = classify_venue_error(ack.error_msg)
            self._ledger.update_order_status(
                key, OrderStatus.FAILED,
                external_order_id=ack.order_id or None,
                venue_status=ack.status or code.value,
                error_message=ack.error_msg or "Rejected by venue",
            )
            logger.warning(f"Order {key} rejected by venue ({code.value}): {ack.error_msg}")
            return OrderResult(
                success=False,
                idempotency_key=key,
                error=ack.error_msg or "Rejected by venue",
                reason=RejectReason.VENUE_REJECTED,
            )

        with self._ledger.transaction():
            self._ledger.update_order_status(
                key, OrderStatus.FILLED,
                external_order_id=ack.order_id, venue_status=ack.status or None,
            )
            if direction is Direction.BUY:
                self._ledger.insert_trade(self._pending_trade(intent, ack.order_id))

        # Account state changed; next read must not come from cache
        self._sync.invalidate()
        logger.info(f"Order {key} filled: {ack.order_id}")
        return OrderResult(success=True, idempotency_key=key, external_order_id=ack.order_id)

    def _pending_trade(self, intent: OrderIntent, order_id: str) -> TradeRecord:
        price = intent.limit_price
        return TradeRecord(
            market_id=intent.market_id,
            token_id=intent.token_id,
            side=intent.side,
            entry_price=price,
            size=intent.size_usd / price if price else 0.0,
            size_usd=intent.size_usd,
            status=TradeStatus.PENDING,
            order_id=order_id,
            question=intent.question,
            entry_time_ms=self._clock(),
        )

    def _venue_amount(self, intent: OrderIntent, direction: Direction) -> float:
        """USD notional for buys, shares for sells."""
        if direction is Direction.BUY:
            if intent.size_usd <= 0:
                raise ValueError(f"size_usd must be positive, got {intent.size_usd}")
            return intent.size_usd

        if intent.shares is not None:
            if intent.shares <= 0:
                raise ValueError(f"shares must be positive, got {intent.shares}")
            return intent.shares
        if intent.limit_price and intent.size_usd > 0:
            return intent.size_usd / intent.limit_price
        raise ValueError("SELL intent needs shares or size_usd with limit_price")

    def _replay(self, record: OrderTrackingRecord) -> OrderResult:
        success = record.status is OrderStatus.FILLED
        error = None
        reason = None
        if not success:
            error = record.error_message or f"Previous attempt is {record.status.value}"
            reason = RejectReason.REPLAYED
            # Venue rejections are the only failures that store a venue status
            if record.status is OrderStatus.FAILED and record.venue_status:
                reason = RejectReason.VENUE_REJECTED
        return OrderResult(
            success=success,
            idempotency_key=record.idempotency_key,
            external_order_id=record.external_order_id,
            error=error,
            reason=reason,
            dry_run=record.venue_status == DRY_RUN_STATUS,
            replayed=True,
        )

    def _reject(self, key: str, reason: RejectReason, message: str) -> OrderResult:
        logger.info(f"Order {key} rejected ({reason.value}): {message}")
        return OrderResult(
            success=False,
            idempotency_key=key,
            error=message,
            reason=reason,
            dry_run=self._dry_run,
        )

    async def cancel_all_orders(self) -> CancelAllResult:
        """
        Best-effort cancel of every resting order.

        The state refresh afterwards is advisory; its failure is logged
        and reflected in state_refreshed, never raised.
        """
        if self._dry_run:
            logger.info("[DRY RUN] Would cancel all orders")
            return CancelAllResult(success=True)

        try:
            ack = await self._venue.cancel_all()
        except Exception as e:
            logger.error(f"Cancel all failed: {e}")
            return CancelAllResult(success=False, error=str(e))

        if ack.success:
            logger.info(f"Cancelled {ack.cancelled_count} orders")
        else:
            logger.warning(f"Cancel all incomplete: {ack.error_msg}")

        refreshed = False
        try:
            state = await self._sync.get_state(force_refresh=True)
            refreshed = state.is_live
        except Exception as e:
            logger.warning(f"State refresh after cancel all failed: {e}")

        return CancelAllResult(
            success=ack.success,
            cancelled_count=ack.cancelled_count,
            error=ack.error_msg or None,
            state_refreshed=refreshed,
        )

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for in-flight submissions to finish.

        Returns:
            True if drained, False on timeout
        """
        if not self._inflight:
            return True
        logger.info(f"Draining {len(self._inflight)} in-flight submissions")
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Drain timed out with {len(self._inflight)} submissions in flight")
            return False
        return True
