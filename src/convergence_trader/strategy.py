"""
Late-stage convergence strategy.

As resolution approaches, binary markets with a clear favourite tend to
drift toward certainty. The strategy buys the favourite while it still
trades in a mid-range band and exits at a target price, at a stop-loss,
or at resolution.

ConvergenceStrategy holds the pure decision rules. EvaluationSession
tracks the per-market lifecycle for one run:

    UNQUALIFIED -> QUALIFIED -> OPEN -> CLOSED

A closed market is never re-entered within the same session.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, auto
from typing import Optional, Union

from .config import RiskConfig, StrategyConfig
from .types import ExitReason, ExitSignal, MarketData, OutcomeSide, PricePoint, TradeSignal
from .util import days_between

logger = logging.getLogger(__name__)


@dataclass
class EligibilityResult:
    eligible: bool
    reason: str


class ConvergenceStrategy:
    """Pure entry, exit and sizing rules."""

    def __init__(self, config: StrategyConfig, risk: RiskConfig):
        self.config = config
        self.risk = risk

    @property
    def no_entry_band(self) -> tuple[float, float]:
        """NO-side band mirrors the YES band."""
        return 1.0 - self.config.entry_price_max, 1.0 - self.config.entry_price_min

    def check_eligibility(self, market: MarketData) -> EligibilityResult:
        if not market.is_binary:
            return EligibilityResult(False, "Not a binary market")
        if market.end_date is None:
            return EligibilityResult(False, "No resolution date")
        return EligibilityResult(True, "Market is eligible")

    def days_to_resolution(self, market: MarketData, at: datetime) -> Optional[float]:
        if market.end_date is None:
            return None
        return days_between(at, market.end_date)

    def in_time_window(self, days: float) -> bool:
        return (
            self.config.time_to_resolution_days_min
            <= days
            <= self.config.time_to_resolution_days_max
        )

    def entry_side(self, yes_price: float, no_price: float) -> Optional[OutcomeSide]:
        """Which side, if any, trades inside its entry band. YES wins ties."""
        if self.config.entry_price_min <= yes_price <= self.config.entry_price_max:
            return OutcomeSide.YES
        no_min, no_max = self.no_entry_band
        if no_min <= no_price <= no_max:
            return OutcomeSide.NO
        return None

    def check_entry(self, market: MarketData, point: PricePoint) -> Optional[TradeSignal]:
        """
        Entry signal at a price observation.

        Args:
            market: Market metadata
            point: Observed prices and timestamp

        Returns:
            TradeSignal or None if the market does not qualify
        """
        if not self.check_eligibility(market).eligible:
            return None

        days = self.days_to_resolution(market, point.timestamp)
        if days is None or not self.in_time_window(days):
            return None

        side = self.entry_side(point.yes_price, point.no_price)
        if side is None:
            return None

        price = point.price_for(side)
        if side is OutcomeSide.YES:
            band = (self.config.entry_price_min, self.config.entry_price_max)
        else:
            band = self.no_entry_band
        return TradeSignal(
            market_id=market.id,
            side=side,
            entry_price=price,
            timestamp=point.timestamp,
            days_to_resolution=days,
            reason=f"{side.value} price {price:.3f} in range [{band[0]:.2f}, {band[1]:.2f}]",
        )

    def check_exit(
        self,
        side: OutcomeSide,
        entry_price: float,
        point: PricePoint,
        market: Optional[MarketData] = None,
    ) -> Optional[ExitSignal]:
        """
        Exit signal for an open position.

        Priority: target (unless holding to resolution), then stop-loss
        (always active when configured), then resolution.

        Args:
            side: Held side
            entry_price: Average entry price
            point: Current prices
            market: Market metadata; needed for resolution exits

        Returns:
            ExitSignal or None to keep holding
        """
        price = point.price_for(side)
        market_id = market.id if market else ""

        if not self.config.hold_to_resolution and price >= self.config.exit_price_target:
            return ExitSignal(market_id, price, point.timestamp, ExitReason.TARGET)

        if self.risk.stop_loss_percent is not None:
            threshold = entry_price * (1 - self.risk.stop_loss_percent / 100)
            if price <= threshold:
                return ExitSignal(market_id, price, point.timestamp, ExitReason.STOP_LOSS)

        if (
            market is not None
            and market.resolved_outcome is not None
            and market.end_date is not None
            and point.timestamp >= market.end_date
        ):
            final_price = 1.0 if market.resolved_outcome is side else 0.0
            return ExitSignal(market_id, final_price, point.timestamp, ExitReason.RESOLUTION)

        return None

    def calculate_position_size(self, current_exposure: float, open_positions: int) -> float:
        """
        USD to commit to the next position.

        Returns:
            0 when at max positions or out of exposure headroom, else the
            configured size capped by remaining headroom
        """
        if open_positions >= self.risk.max_positions:
            return 0.0

        remaining = self.risk.max_exposure_usd - current_exposure
        if remaining <= 0:
            return 0.0

        return min(self.risk.position_size_usd, remaining)

    @staticmethod
    def calculate_pnl(entry_price: float, exit_price: float, size_usd: float) -> float:
        """PnL of a position bought for size_usd at entry_price. No fees."""
        shares = size_usd / entry_price
        return shares * exit_price - size_usd


class MarketPhase(Enum):
    UNQUALIFIED = auto()
    QUALIFIED = auto()
    OPEN = auto()
    CLOSED = auto()


@dataclass
class SessionPosition:
    market_id: str
    side: OutcomeSide
    entry_price: float
    size_usd: float
    entry_time: datetime


@dataclass
class ClosedPosition:
    market_id: str
    side: OutcomeSide
    entry_price: float
    exit_price: float
    size_usd: float
    pnl: float
    reason: ExitReason
    entry_time: datetime
    exit_time: datetime


SessionEvent = Union[SessionPosition, ClosedPosition]


class EvaluationSession:
    """Per-market entry/exit state for one run."""

    def __init__(self, strategy: ConvergenceStrategy):
        self.strategy = strategy
        self._phases: dict[str, MarketPhase] = {}
        self._open: dict[str, SessionPosition] = {}
        self._closed: list[ClosedPosition] = []

    def phase(self, market_id: str) -> MarketPhase:
        return self._phases.get(market_id, MarketPhase.UNQUALIFIED)

    def can_enter(self, market_id: str) -> bool:
        return self.phase(market_id) in (MarketPhase.UNQUALIFIED, MarketPhase.QUALIFIED)

    @property
    def open_positions(self) -> dict[str, SessionPosition]:
        return dict(self._open)

    @property
    def closed_positions(self) -> list[ClosedPosition]:
        return list(self._closed)

    @property
    def exposure(self) -> float:
        return sum(p.size_usd for p in self._open.values())

    @property
    def realized_pnl(self) -> float:
        return sum(c.pnl for c in self._closed)

    def evaluate_entry(self, market: MarketData, point: PricePoint) -> Optional[TradeSignal]:
        """Entry signal, or None if the market is held, closed or unqualified."""
        if not self.can_enter(market.id):
            return None

        signal = self.strategy.check_entry(market, point)
        self._phases[market.id] = MarketPhase.QUALIFIED if signal else MarketPhase.UNQUALIFIED
        return signal

    def open(self, signal: TradeSignal, size_usd: float) -> SessionPosition:
        if not self.can_enter(signal.market_id):
            raise ValueError(f"Market {signal.market_id} is {self.phase(signal.market_id).name}")

        position = SessionPosition(
            market_id=signal.market_id,
            side=signal.side,
            entry_price=signal.entry_price,
            size_usd=size_usd,
            entry_time=signal.timestamp,
        )
        self._open[signal.market_id] = position
        self._phases[signal.market_id] = MarketPhase.OPEN
        return position

    def evaluate_exit(self, market: MarketData, point: PricePoint) -> Optional[ExitSignal]:
        position = self._open.get(market.id)
        if position is None:
            return None
        return self.strategy.check_exit(position.side, position.entry_price, point, market)

    def close(self, market_id: str, exit_signal: ExitSignal) -> ClosedPosition:
        position = self._open.pop(market_id, None)
        if position is None:
            raise ValueError(f"No open position in {market_id}")

        closed = ClosedPosition(
            market_id=market_id,
            side=position.side,
            entry_price=position.entry_price,
            exit_price=exit_signal.exit_price,
            size_usd=position.size_usd,
            pnl=self.strategy.calculate_pnl(
                position.entry_price, exit_signal.exit_price, position.size_usd
            ),
            reason=exit_signal.reason,
            entry_time=position.entry_time,
            exit_time=exit_signal.timestamp,
        )
        self._closed.append(closed)
        self._phases[market_id] = MarketPhase.CLOSED
        return closed

    def mark_closed(self, market_id: str) -> None:
        """Close a market without a tracked session position."""
        self._open.pop(market_id, None)
        self._phases[market_id] = MarketPhase.CLOSED

    def step(self, market: MarketData, point: PricePoint) -> Optional[SessionEvent]:
        """
        Advance one market by one observation.

        Opens a position when the market qualifies and sizing allows it,
        closes one when an exit fires.
        """
        if self.phase(market.id) is MarketPhase.OPEN:
            exit_signal = self.evaluate_exit(market, point)
            if exit_signal is None:
                return None
            return self.close(market.id, exit_signal)

        signal = self.evaluate_entry(market, point)
        if signal is None:
            return None

        size = self.strategy.calculate_position_size(self.exposure, len(self._open))
        if size <= 0:
            return None
        return self.open(signal, size)
