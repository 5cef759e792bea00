"""
Trading bot orchestrator.

Component graph:

    DataSourceManager -> MarketScanner -> (qualifying markets)
                                               |
    ClobVenue ---------+                        v
    PositionsClient ---+-> AccountStateSynchronizer -> SafetyCheckedExecutor
    OnChainBalance ----+            |                          |
                                    v                          v
                               Reconciler  <-------------  LedgerStore

Two independent periodic cycles run as asyncio tasks:
- scan: find qualifying markets and place entries
- state check: reconcile, confirm pending trades, evaluate exits, snapshot

The kill switch is cooperative. It is checked at the top of every cycle
and before every opportunity. Shutdown stops scheduling, drains in-flight
submissions and records the run.
"""

import asyncio
import logging
import secrets
import signal
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from .account_sources import OnChainBalanceReader, PositionsClient
from .config import TraderConfig
from .datasources import DataSourceManager, create_data_source_manager
from .errors import ExecutionError, SyncError
from .executor import SafetyCheckedExecutor
from .ledger import LedgerStore
from .reconciler import Reconciler
from .scanner import MarketScanner, QualifyingMarket
from .state import AccountStateSynchronizer
from .strategy import ConvergenceStrategy, EvaluationSession, MarketPhase
from .types import (
    AccountState, BotRun, Direction, ExitReason, ExitSignal, MarketData, OrderIntent, OutcomeSide,
    PositionRef, PricePoint, RunMode, RunSnapshot, RunStatus, TradeRecord, TradeStatus,
)
from .util import wall_ms
from .venue import ClobVenue, ExecutionVenue

logger = logging.getLogger(__name__)


@dataclass
class BotStatus:
    """Point-in-time view of the bot for logging and inspection."""
    is_running: bool
    run_id: str
    mode: RunMode
    started_at_ms: Optional[int] = None
    last_scan_at_ms: Optional[int] = None
    last_state_check_at_ms: Optional[int] = None
    trades_placed: int = 0
    trades_closed: int = 0
    current_exposure: float = 0.0
    open_positions: int = 0
    balance: float = 0.0
    errors: list[str] = field(default_factory=list)


def new_run_id(clock: Callable[[], int] = wall_ms) -> str:
    return f"run_{clock()}_{secrets.token_hex(4)}"


class TradingBot:
    """Wires the components together and drives the two cycles."""

    def __init__(
        self,
        config: TraderConfig,
        ledger: LedgerStore,
        venue: ExecutionVenue,
        synchronizer: AccountStateSynchronizer,
        reconciler: Reconciler,
        executor: SafetyCheckedExecutor,
        scanner: MarketScanner,
        strategy: ConvergenceStrategy,
        data_sources: Optional[DataSourceManager] = None,
        closeables: tuple = (),
        clock: Callable[[], int] = wall_ms,
    ):
        """
        Args:
            config: Validated configuration
            ledger: Durable records
            venue: Execution venue
            synchronizer: Account state
            reconciler: Ledger/account reconciliation
            executor: Safety-checked order placement
            scanner: Market scanner
            strategy: Entry/exit rules
            data_sources: Closed on shutdown
            closeables: Extra async-closeable resources owned by the bot
            clock: Wall clock in milliseconds
        """
        self.config = config
        self.ledger = ledger
        self.venue = venue
        self.synchronizer = synchronizer
        self.reconciler = reconciler
        self.executor = executor
        self.scanner = scanner
        self.strategy = strategy
        self.session = EvaluationSession(strategy)
        self._data_sources = data_sources
        self._closeables = closeables
        self._clock = clock

        self.run_id = new_run_id(clock)
        self.mode = RunMode.PAPER if executor.dry_run else RunMode.LIVE

        self._kill_switch = False
        self._running = False
        self._stopped = False
        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._errors: deque[str] = deque(maxlen=config.bot.error_buffer_size)

        self._started_at_ms: Optional[int] = None
        self._last_scan_at_ms: Optional[int] = None
        self._last_state_check_at_ms: Optional[int] = None
        self._trades_placed = 0
        self._trades_closed = 0
        self._daily_trades: dict[str, int] = {}

    @classmethod
    def from_config(cls, config: TraderConfig) -> "TradingBot":
        """Build the full component graph from configuration."""
        ledger = LedgerStore(config.db_path)
        venue = ClobVenue(
            private_key=config.private_key,
            funder=config.proxy_address,
            signature_type=config.signature_type,
            api_key=config.api_key,
            api_secret=config.api_secret,
            passphrase=config.api_passphrase,
            chain_id=config.chain_id,
            host=config.data_source.clob_api_url,
        )
        positions_client = PositionsClient(config.data_api_url)
        balance_reader = OnChainBalanceReader(config.polygon_rpc_url, config.usdc_contract)
        synchronizer = AccountStateSynchronizer(
            venue=venue,
            positions_client=positions_client,
            balance_reader=balance_reader,
            address=config.proxy_address,
            stale_threshold_ms=config.bot.stale_threshold_ms,
        )
        reconciler = Reconciler(
            synchronizer,
            ledger,
            pending_grace_ms=int(config.bot.pending_grace_s * 1000),
            closed_grace_ms=int(config.bot.closed_grace_s * 1000),
        )
        executor = SafetyCheckedExecutor(
            venue=venue,
            synchronizer=synchronizer,
            ledger=ledger,
            risk=config.risk,
            dry_run=config.dry_run,
        )
        strategy = ConvergenceStrategy(config.strategy, config.risk)
        data_sources = create_data_source_manager(config.data_source)
        scanner = MarketScanner(data_sources, strategy)
        return cls(
            config=config,
            ledger=ledger,
            venue=venue,
            synchronizer=synchronizer,
            reconciler=reconciler,
            executor=executor,
            scanner=scanner,
            strategy=strategy,
            data_sources=data_sources,
            closeables=(positions_client, balance_reader),
        )

    # ========== Status ==========

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def kill_switch_engaged(self) -> bool:
        return self._kill_switch

    @property
    def errors(self) -> list[str]:
        return list(self._errors)

    def get_status(self) -> BotStatus:
        state = self.synchronizer.cached_state
        return BotStatus(
            is_running=self._running,
            run_id=self.run_id,
            mode=self.mode,
            started_at_ms=self._started_at_ms,
            last_scan_at_ms=self._last_scan_at_ms,
            last_state_check_at_ms=self._last_state_check_at_ms,
            trades_placed=self._trades_placed,
            trades_closed=self._trades_closed,
            current_exposure=(state.position_value + state.open_order_notional) if state else 0.0,
            open_positions=len(state.positions) if state else 0,
            balance=state.balance if state else 0.0,
            errors=self.errors,
        )

    def _record_error(self, message: str) -> None:
        logger.error(message)
        self._errors.append(f"{datetime.now(timezone.utc).isoformat()} {message}")

    # ========== Lifecycle ==========

    async def initialize(self) -> None:
        """Open the ledger, connect to the venue and reconcile."""
        logger.info("=" * 60)
        logger.info(f"Initializing trading bot ({self.mode.value} mode)")
        logger.info(f"Run ID: {self.run_id}")
        logger.info("=" * 60)

        self.ledger.init_schema()
        if isinstance(self.venue, ClobVenue):
            await self.venue.initialize()

        logger.info("Running initial reconciliation")
        try:
            result = await self.reconciler.reconcile()
            if not result.synced:
                logger.warning("Reconciliation found discrepancies, please review")
        except SyncError as e:
            self._record_error(f"Initial reconciliation skipped: {e}")

        state = await self.synchronizer.get_state()
        logger.info("Initialization complete")
        logger.info(f"  Balance: ${state.balance:.2f}")
        logger.info(f"  Open positions: {len(state.positions)}")
        logger.info(f"  Open orders: {len(state.open_orders)}")
        logger.info(f"  Current exposure: ${state.position_value + state.open_order_notional:.2f}")

    async def start(self) -> None:
        """Record the run and start both cycles."""
        if self._running:
            logger.info("Already running")
            return

        self._running = True
        self._kill_switch = False
        self._started_at_ms = self._clock()
        self.ledger.start_run(BotRun(
            run_id=self.run_id,
            started_at_ms=self._started_at_ms,
            mode=self.mode,
        ))

        bot_cfg = self.config.bot
        logger.info(f"Starting scan cycle (every {bot_cfg.scan_interval_s:.0f}s)")
        logger.info(f"Starting state check cycle (every {bot_cfg.state_check_interval_s:.0f}s)")
        self._tasks = [
            asyncio.create_task(
                self._periodic(self.run_scan_cycle, bot_cfg.scan_interval_s),
                name="scan_cycle",
            ),
            asyncio.create_task(
                self._periodic(self.run_state_check, bot_cfg.state_check_interval_s),
                name="state_check_cycle",
            ),
        ]
        logger.info("Bot is now running")

    async def _periodic(self, cycle: Callable, interval_s: float) -> None:
        """Run a cycle now and then every interval until shutdown."""
        while not self._kill_switch:
            await cycle()
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                continue

    def trigger_kill_switch(self, reason: str = "kill switch") -> None:
        """Stop scheduling new work. In-flight submissions finish."""
        if not self._kill_switch:
            logger.warning(f"Kill switch engaged: {reason}")
        self._kill_switch = True
        self._shutdown_event.set()

    async def stop(self, reason: str = "User requested stop", status: RunStatus = RunStatus.STOPPED) -> None:
        """Stop scheduling, drain in-flight submissions and record the run."""
        if self._stopped:
            return
        self._stopped = True
        logger.info(f"Stopping bot: {reason}")
        self.trigger_kill_switch(reason)

        drain_timeout = self.config.bot.drain_timeout_s
        await self.executor.drain(timeout=drain_timeout)

        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=drain_timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

        if self._running:
            self.ledger.end_run(
                self.run_id,
                status=status,
                trades_placed=self._trades_placed,
                trades_closed=self._trades_closed,
                total_pnl=self.ledger.realized_pnl_since(self._started_at_ms or 0),
                notes=reason,
            )
        self._running = False

        if self._data_sources is not None:
            await self._data_sources.close()
        for resource in self._closeables:
            await resource.close()
        await self.venue.close()
        self.ledger.close()
        logger.info("Bot stopped")

    async def emergency_stop(self) -> None:
        """Cancel every resting order, then stop."""
        logger.critical("EMERGENCY STOP TRIGGERED")
        self.trigger_kill_switch("emergency stop")
        await self.executor.cancel_all_orders()
        await self.stop("EMERGENCY STOP")

    async def run(self) -> None:
        """Run until a shutdown signal or the kill switch."""
        loop = asyncio.get_event_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda: self.trigger_kill_switch("signal received"))

        status = RunStatus.STOPPED
        reason = "Shutdown requested"
        try:
            await self.initialize()
            await self.start()
            await self._shutdown_event.wait()
        except Exception as e:
            status = RunStatus.CRASHED
            reason = f"Crashed: {e}"
            logger.error(f"Bot crashed: {e}", exc_info=True)
            raise
        finally:
            await self.stop(reason, status=status)

    # ========== Scan cycle ==========

    def _today(self) -> str:
        return datetime.fromtimestamp(self._clock() / 1000, tz=timezone.utc).strftime("%Y-%m-%d")

    def _daily_limit_reached(self) -> bool:
        return self._daily_trades.get(self._today(), 0) >= self.config.bot.max_trades_per_day

    async def run_scan_cycle(self) -> None:
        """Scan for opportunities and act on the best few."""
        if self._kill_switch:
            return

        try:
            self._last_scan_at_ms = self._clock()
            if self._daily_limit_reached():
                logger.info("Daily trade limit reached, skipping scan")
                return

            state = await self.synchronizer.get_state()
            held = {p.market_id for p in state.positions}
            held.update(
                t.market_id
                for t in self.ledger.list_trades(
                    [TradeStatus.PENDING, TradeStatus.OPEN, TradeStatus.UNKNOWN]
                )
            )

            result = await self.scanner.scan(held_markets=held)
            if not result.success:
                self._record_error(f"Scan failed: {result.error}")
                return
            if not result.qualifying:
                logger.info("No qualifying markets found")
                return

            logger.info(f"Found {len(result.qualifying)} qualifying markets")
            for opportunity in result.qualifying[:self.config.bot.max_opportunities_per_scan]:
                if self._kill_switch:
                    break
                await self.process_opportunity(opportunity)

        except Exception as e:
            self._record_error(f"Scan cycle failed: {e}")

    async def process_opportunity(self, opportunity: QualifyingMarket) -> None:
        market = opportunity.market
        signal_ = opportunity.signal
        logger.info(
            f"Evaluating: {market.question[:60]} | {signal_.side.value} @ {signal_.entry_price:.3f} "
            f"| days {signal_.days_to_resolution:.1f} | score {opportunity.score}"
        )

        if not self.session.can_enter(market.id):
            logger.info(f"Market {market.id} already traded this run, skipping")
            return

        if self._daily_limit_reached():
            logger.info("Daily trade limit reached")
            return

        state = await self.synchronizer.get_state()
        exposure = state.position_value + state.open_order_notional + self.executor.reserved_notional
        size_usd = self.strategy.calculate_position_size(exposure, len(state.positions))
        if size_usd <= 0:
            logger.info("No position headroom (max positions or exposure reached)")
            return

        intent = OrderIntent(
            market_id=market.id,
            token_id=opportunity.token_id,
            side=signal_.side,
            size_usd=size_usd,
            limit_price=signal_.entry_price,
            question=market.question,
        )
        try:
            result = await self.executor.place_order(intent, Direction.BUY)
        except ExecutionError as e:
            self._record_error(f"Order failed for {market.id}: {e}")
            return

        if not result.success:
            logger.info(f"Order not placed for {market.id}: {result.error}")
            return

        self._trades_placed += 1
        today = self._today()
        self._daily_trades[today] = self._daily_trades.get(today, 0) + 1
        self.session.open(signal_, size_usd)
        prefix = "[DRY RUN] " if result.dry_run else ""
        logger.info(f"{prefix}Order placed: {result.external_order_id}")

    # ========== State check cycle ==========

    async def run_state_check(self) -> None:
        """Reconcile, confirm fills, evaluate exits and snapshot."""
        if self._kill_switch:
            return

        try:
            self._last_state_check_at_ms = self._clock()

            try:
                await self.reconciler.reconcile()
            except SyncError as e:
                logger.warning(f"Reconciliation skipped: {e}")

            if isinstance(self.venue, ClobVenue) and not self.venue.is_healthy:
                logger.warning("CLOB client reporting repeated errors")

            state = await self.synchronizer.get_state()
            if state.is_live:
                promoted = self.reconciler.confirm_pending(state)
                if promoted:
                    logger.info(f"Confirmed {promoted} pending trades")
                await self._evaluate_exits(state)

            self.ledger.append_snapshot(RunSnapshot(
                run_id=self.run_id,
                timestamp_ms=self._clock(),
                balance=state.balance,
                total_exposure=state.position_value + state.open_order_notional,
                open_positions_count=len(state.positions),
                open_orders_count=len(state.open_orders),
            ))

        except Exception as e:
            self._record_error(f"State check failed: {e}")

    async def _evaluate_exits(self, state: AccountState) -> None:
        now = datetime.fromtimestamp(self._clock() / 1000, tz=timezone.utc)
        for trade in self.ledger.list_trades([TradeStatus.OPEN]):
            if self._kill_switch:
                break
            # Exited once this run. The position can stay listed until the
            # sell settles or the market is redeemed; paper exits also leave
            # the ledger trade open.
            if self.session.phase(trade.market_id) is MarketPhase.CLOSED:
                continue
            position = state.position_for(trade.market_id)
            if position is None or position.side is not trade.side:
                continue

            entry_price = trade.entry_price or position.avg_entry_price
            if not entry_price:
                continue

            point = _point_from_position(position, now)
            market = await self._market_for_exit(trade.market_id, now)
            exit_signal = self.strategy.check_exit(trade.side, entry_price, point, market)
            if exit_signal is None:
                continue

            exit_signal.market_id = trade.market_id
            await self.close_position(trade, position, exit_signal)

    async def _market_for_exit(self, market_id: str, now: datetime) -> Optional[MarketData]:
        """Known metadata, re-fetched when unknown or past its end date and unresolved."""
        market = self.scanner.known_market(market_id)
        if market is None:
            return await self.scanner.refresh_market(market_id)
        if market.resolved_outcome is None and market.end_date is not None and market.end_date <= now:
            return await self.scanner.refresh_market(market_id)
        return market

    async def close_position(
        self,
        trade: TradeRecord,
        position: PositionRef,
        exit_signal: ExitSignal,
    ) -> None:
        """Exit a position and close its trade record."""
        entry_price = trade.entry_price or position.avg_entry_price
        size_usd = trade.size_usd or position.size * entry_price
        pnl = self.strategy.calculate_pnl(entry_price, exit_signal.exit_price, size_usd)
        logger.info(
            f"Exit {exit_signal.reason.value} for trade {trade.id} in {trade.market_id}: "
            f"{entry_price:.3f} -> {exit_signal.exit_price:.3f} (pnl ${pnl:.2f})"
        )

        # Resolved markets settle on-chain; there is no book to sell into
        if exit_signal.reason is not ExitReason.RESOLUTION:
            intent = OrderIntent(
                market_id=trade.market_id,
                token_id=position.token_id,
                side=trade.side,
                size_usd=position.size * exit_signal.exit_price,
                limit_price=exit_signal.exit_price,
                shares=position.size,
            )
            try:
                result = await self.executor.place_order(intent, Direction.SELL)
            except ExecutionError as e:
                self._record_error(f"Exit order failed for trade {trade.id}: {e}")
                return

            if not result.success:
                logger.warning(f"Exit not placed for trade {trade.id}: {result.error}")
                return

            if result.dry_run:
                logger.info(f"[DRY RUN] Would close trade {trade.id}")
                self.session.mark_closed(trade.market_id)
                return

        self.ledger.close_trade(trade.id, exit_signal.exit_price, exit_signal.reason, pnl)
        self._trades_closed += 1
        if trade.market_id in self.session.open_positions:
            self.session.close(trade.market_id, exit_signal)
        else:
            self.session.mark_closed(trade.market_id)
        self.synchronizer.invalidate()


def _point_from_position(position: PositionRef, now: datetime) -> PricePoint:
    price = position.current_price
    if position.side is OutcomeSide.YES:
        return PricePoint(timestamp=now, yes_price=price, no_price=1.0 - price)
    return PricePoint(timestamp=now, yes_price=1.0 - price, no_price=price)
