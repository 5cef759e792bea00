"""
Reconciles the local ledger with external account state.

External truth always wins, but the reconciler never destroys local
information:
- a local open/pending trade with no external position or order is
  flagged UNKNOWN for human review, not deleted or closed
- an external position with no local record gets a synthesized OPEN
  record carrying a provenance note

All repairs from one pass are committed in a single ledger transaction.
"""

import logging
from typing import Callable

from .errors import ReconciliationError
from .ledger import LedgerStore
from .state import SOURCE_OPEN_ORDERS, SOURCE_POSITIONS, AccountStateSynchronizer
from .types import (
    AccountState, PositionRef, ReconcileResult, TradeOrigin, TradeRecord, TradeStatus,
)
from .util import wall_ms

logger = logging.getLogger(__name__)

_ACTIVE = (TradeStatus.OPEN, TradeStatus.PENDING)
# Records under review still count as tracking their market
_TRACKING = (TradeStatus.OPEN, TradeStatus.PENDING, TradeStatus.UNKNOWN)


class Reconciler:
    """Compares ledger trades against a forced-fresh account state."""

    def __init__(
        self,
        synchronizer: AccountStateSynchronizer,
        ledger: LedgerStore,
        pending_grace_ms: int = 0,
        closed_grace_ms: int = 0,
        clock: Callable[[], int] = wall_ms,
    ):
        """
        Args:
            synchronizer: Account state source
            ledger: Ledger to repair
            pending_grace_ms: Pending trades younger than this are not
                flagged, giving the positions service time to catch up
            closed_grace_ms: A market whose trade closed less than this ago
                still counts as tracked, so a position the positions
                service has not dropped yet is not imported again
            clock: Wall clock in milliseconds
        """
        self._sync = synchronizer
        self._ledger = ledger
        self._pending_grace_ms = pending_grace_ms
        self._closed_grace_ms = closed_grace_ms
        self._clock = clock

    async def reconcile(self) -> ReconcileResult:
        """
        Run one reconciliation pass.

        Returns:
            ReconcileResult; synced is True when no discrepancy was found

        Raises:
            SyncError: a live view of positions and orders is unavailable
            ReconciliationError: the ledger could not be repaired
        """
        logger.info("Running reconciliation")
        state = await self._sync.require_live_state((SOURCE_OPEN_ORDERS, SOURCE_POSITIONS))

        try:
            with self._ledger.transaction():
                result = self._apply(state)
        except Exception as e:
            raise ReconciliationError(f"Reconciliation failed: {e}") from e

        if result.synced:
            logger.info("Reconciliation complete, no discrepancies")
        else:
            logger.warning(f"Reconciliation found {len(result.discrepancies)} discrepancies:")
            for discrepancy in result.discrepancies:
                logger.warning(f"  - {discrepancy}")
        return result

    def _apply(self, state: AccountState) -> ReconcileResult:
        result = ReconcileResult(synced=True)
        local = self._ledger.list_trades(_TRACKING)
        now = self._clock()

        for trade in local:
            if trade.status not in _ACTIVE:
                continue
            if state.has_position(trade.market_id) or state.has_open_order(trade.market_id):
                continue
            if self._within_grace(trade, now):
                continue

            self._ledger.mark_trade_unknown(
                trade.id,
                "Reconciliation: no position or open order found on Polymarket",
            )
            result.marked_unknown += 1
            result.discrepancies.append(
                f"Local trade {trade.id} shows '{trade.status.value}' in {trade.market_id} "
                f"but no position/order on Polymarket; marked unknown"
            )

        tracked = {t.market_id for t in local}
        tracked.update(t.market_id for t in self._recently_closed(now))
        for position in state.positions:
            if position.market_id in tracked:
                continue
            if is_settled(position):
                # Resolved, listed until redeemed; nothing left to trade
                logger.info(
                    f"Skipping settled position in {position.market_id} "
                    f"at {position.current_price:.2f}"
                )
                continue

            self._ledger.insert_trade(TradeRecord(
                market_id=position.market_id,
                token_id=position.token_id,
                side=position.side,
                size=position.size,
                size_usd=position.size * position.avg_entry_price,
                entry_price=position.avg_entry_price,
                status=TradeStatus.OPEN,
                question=position.question,
                origin=TradeOrigin.RECONCILIATION,
                notes=f"Reconciliation: found on Polymarket (source={position.source.value})",
                entry_time_ms=position.entry_time_ms or self._clock(),
            ))
            tracked.add(position.market_id)
            result.imported += 1
            result.discrepancies.append(
                f"Position in {position.market_id} ({position.side.value}, "
                f"{position.size:.2f} shares) exists on Polymarket but not in local ledger; imported"
            )

        result.synced = not result.discrepancies
        return result

    def _within_grace(self, trade: TradeRecord, now: int) -> bool:
        if trade.status is not TradeStatus.PENDING or not self._pending_grace_ms:
            return False
        if trade.entry_time_ms is None:
            return False
        return now - trade.entry_time_ms < self._pending_grace_ms

    def _recently_closed(self, now: int) -> list[TradeRecord]:
        if not self._closed_grace_ms:
            return []
        return [
            t for t in self._ledger.list_trades([TradeStatus.CLOSED])
            if t.exit_time_ms is not None and now - t.exit_time_ms < self._closed_grace_ms
        ]

    def confirm_pending(self, state: AccountState) -> int:
        """
        Promote pending trades whose position is now visible externally.

        Args:
            state: A live account state

        Returns:
            Number of trades promoted to OPEN
        """
        if not state.is_live or SOURCE_POSITIONS in state.degraded:
            return 0

        promoted = 0
        with self._ledger.transaction():
            for trade in self._ledger.list_trades([TradeStatus.PENDING]):
                position = state.position_for(trade.market_id)
                if position is None or position.side is not trade.side:
                    continue
                self._ledger.mark_trade_open(
                    trade.id,
                    entry_price=position.avg_entry_price or trade.entry_price,
                    size=position.size,
                )
                promoted += 1
                logger.info(f"Trade {trade.id} confirmed open in {trade.market_id}")
        return promoted


def is_settled(position: PositionRef) -> bool:
    """A position priced at exactly 0 or 1 belongs to a resolved market."""
    return position.current_price <= 0.0 or position.current_price >= 1.0
