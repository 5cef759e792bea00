"""Tests for the convergence strategy and evaluation session."""

from datetime import timedelta

import pytest

from convergence_trader.config import RiskConfig, StrategyConfig
from convergence_trader.strategy import ConvergenceStrategy, EvaluationSession, MarketPhase
from convergence_trader.types import ExitReason, OutcomeSide, PricePoint

from conftest import NOW, make_market


def point(yes_price: float, at=NOW) -> PricePoint:
    return PricePoint(timestamp=at, yes_price=yes_price, no_price=round(1.0 - yes_price, 4))


@pytest.fixture
def strategy():
    return ConvergenceStrategy(StrategyConfig(), RiskConfig())


class TestEntry:
    """Tests for entry signals."""

    def test_yes_in_band(self, strategy):
        signal = strategy.check_entry(make_market(days=3), point(0.70))

        assert signal is not None
        assert signal.side is OutcomeSide.YES
        assert signal.entry_price == pytest.approx(0.70)
        assert signal.days_to_resolution == pytest.approx(3.0)
        assert "in range" in signal.reason

    def test_band_edges_inclusive(self, strategy):
        assert strategy.check_entry(make_market(), point(0.60)) is not None
        assert strategy.check_entry(make_market(), point(0.80)) is not None

    def test_no_side_uses_mirrored_band(self, strategy):
        signal = strategy.check_entry(
            make_market(), PricePoint(timestamp=NOW, yes_price=0.85, no_price=0.30),
        )

        assert signal is not None
        assert signal.side is OutcomeSide.NO
        assert signal.entry_price == pytest.approx(0.30)
        assert "NO price" in signal.reason

    def test_yes_checked_first(self, strategy):
        signal = strategy.check_entry(
            make_market(), PricePoint(timestamp=NOW, yes_price=0.70, no_price=0.30),
        )

        assert signal.side is OutcomeSide.YES

    def test_no_entry_band(self, strategy):
        low, high = strategy.no_entry_band

        assert low == pytest.approx(0.20)
        assert high == pytest.approx(0.40)

    def test_price_outside_both_bands(self, strategy):
        assert strategy.check_entry(make_market(), point(0.50)) is None
        assert strategy.check_entry(make_market(), point(0.90)) is None

    def test_too_close_to_resolution(self, strategy):
        assert strategy.check_entry(make_market(days=0.5), point(0.70)) is None

    def test_too_far_from_resolution(self, strategy):
        assert strategy.check_entry(make_market(days=10), point(0.70)) is None

    def test_window_edges_inclusive(self, strategy):
        assert strategy.check_entry(make_market(days=1.0), point(0.70)) is not None
        assert strategy.check_entry(make_market(days=7.0), point(0.70)) is not None

    def test_non_binary_rejected(self, strategy):
        market = make_market()
        market.outcomes = ["A", "B", "C"]

        assert strategy.check_eligibility(market).eligible is False
        assert strategy.check_entry(market, point(0.70)) is None

    def test_missing_end_date_rejected(self, strategy):
        market = make_market()
        market.end_date = None

        assert strategy.check_eligibility(market).reason == "No resolution date"


class TestExit:
    """Tests for exit signals."""

    def test_target_hit(self, strategy):
        signal = strategy.check_exit(OutcomeSide.YES, 0.70, point(0.96))

        assert signal.reason is ExitReason.TARGET
        assert signal.exit_price == pytest.approx(0.96)

    def test_target_for_no_side(self, strategy):
        signal = strategy.check_exit(OutcomeSide.NO, 0.70, point(0.04))

        assert signal.reason is ExitReason.TARGET
        assert signal.exit_price == pytest.approx(0.96)

    def test_below_target_holds(self, strategy):
        assert strategy.check_exit(OutcomeSide.YES, 0.70, point(0.90)) is None

    def test_hold_to_resolution_ignores_target(self):
        strategy = ConvergenceStrategy(StrategyConfig(hold_to_resolution=True), RiskConfig())

        assert strategy.check_exit(OutcomeSide.YES, 0.70, point(0.97)) is None

    def test_stop_loss(self):
        strategy = ConvergenceStrategy(StrategyConfig(), RiskConfig(stop_loss_percent=20))

        signal = strategy.check_exit(OutcomeSide.YES, 0.70, point(0.55))

        assert signal.reason is ExitReason.STOP_LOSS

    def test_stop_loss_active_when_holding_to_resolution(self):
        strategy = ConvergenceStrategy(
            StrategyConfig(hold_to_resolution=True), RiskConfig(stop_loss_percent=20),
        )

        signal = strategy.check_exit(OutcomeSide.YES, 0.70, point(0.50))

        assert signal.reason is ExitReason.STOP_LOSS

    def test_no_stop_loss_by_default(self, strategy):
        assert strategy.check_exit(OutcomeSide.YES, 0.70, point(0.10)) is None

    def test_resolution_win(self, strategy):
        market = make_market(days=-0.1, resolved_outcome=OutcomeSide.YES)

        signal = strategy.check_exit(OutcomeSide.YES, 0.70, point(0.90), market)

        assert signal.reason is ExitReason.RESOLUTION
        assert signal.exit_price == 1.0
        assert signal.market_id == "m1"

    def test_resolution_loss(self, strategy):
        market = make_market(days=-0.1, resolved_outcome=OutcomeSide.NO)

        signal = strategy.check_exit(OutcomeSide.YES, 0.70, point(0.50), market)

        assert signal.reason is ExitReason.RESOLUTION
        assert signal.exit_price == 0.0

    def test_unresolved_market_after_end_date_holds(self, strategy):
        market = make_market(days=-0.1)

        assert strategy.check_exit(OutcomeSide.YES, 0.70, point(0.90), market) is None

    def test_target_beats_resolution(self, strategy):
        market = make_market(days=-0.1, resolved_outcome=OutcomeSide.YES)

        signal = strategy.check_exit(OutcomeSide.YES, 0.70, point(0.99), market)

        assert signal.reason is ExitReason.TARGET


class TestSizing:
    """Tests for position sizing and PnL."""

    def test_default_size(self, strategy):
        assert strategy.calculate_position_size(0.0, 0) == pytest.approx(10.0)

    def test_capped_by_headroom(self, strategy):
        assert strategy.calculate_position_size(45.0, 2) == pytest.approx(5.0)

    def test_no_headroom(self, strategy):
        assert strategy.calculate_position_size(50.0, 2) == 0.0

    def test_max_positions(self, strategy):
        assert strategy.calculate_position_size(0.0, 5) == 0.0

    def test_pnl(self):
        assert ConvergenceStrategy.calculate_pnl(0.70, 0.95, 10.0) == pytest.approx(3.5714, abs=1e-4)
        assert ConvergenceStrategy.calculate_pnl(0.70, 0.0, 10.0) == pytest.approx(-10.0)


class TestEvaluationSession:
    """Tests for the per-market session lifecycle."""

    def test_open_then_close_by_target(self, strategy):
        session = EvaluationSession(strategy)
        market = make_market(days=5)

        opened = session.step(market, point(0.70))
        closed = session.step(market, point(0.96, NOW + timedelta(days=1)))

        assert opened.size_usd == pytest.approx(10.0)
        assert closed.reason is ExitReason.TARGET
        assert closed.pnl == pytest.approx(10.0 / 0.70 * 0.96 - 10.0)
        assert session.phase(market.id) is MarketPhase.CLOSED
        assert session.realized_pnl == pytest.approx(closed.pnl)
        assert session.closed_positions == [closed]

    def test_no_reentry_after_close(self, strategy):
        session = EvaluationSession(strategy)
        market = make_market(days=5)
        session.step(market, point(0.70))
        session.step(market, point(0.96, NOW + timedelta(days=1)))

        assert session.step(market, point(0.70, NOW + timedelta(days=2))) is None
        assert session.can_enter(market.id) is False

    def test_unqualified_market_can_qualify_later(self, strategy):
        session = EvaluationSession(strategy)
        market = make_market(days=5)

        assert session.step(market, point(0.50)) is None
        assert session.phase(market.id) is MarketPhase.UNQUALIFIED
        assert session.step(market, point(0.65)) is not None
        assert session.phase(market.id) is MarketPhase.OPEN

    def test_exposure_limits_opens(self):
        strategy = ConvergenceStrategy(
            StrategyConfig(), RiskConfig(position_size_usd=10, max_positions=5, max_exposure_usd=20),
        )
        session = EvaluationSession(strategy)

        for i in range(3):
            session.step(make_market(f"m{i}", days=5), point(0.70))

        assert len(session.open_positions) == 2
        assert session.exposure == pytest.approx(20.0)

    def test_resolution_close(self, strategy):
        session = EvaluationSession(strategy)
        market = make_market(days=2, resolved_outcome=OutcomeSide.NO)
        session.step(market, point(0.70))

        closed = session.step(market, point(0.10, NOW + timedelta(days=3)))

        assert closed.reason is ExitReason.RESOLUTION
        assert closed.pnl == pytest.approx(-10.0)

    def test_open_twice_rejected(self, strategy):
        session = EvaluationSession(strategy)
        signal = strategy.check_entry(make_market(), point(0.70))
        session.open(signal, 10.0)

        with pytest.raises(ValueError):
            session.open(signal, 10.0)

    def test_mark_closed_blocks_entry(self, strategy):
        session = EvaluationSession(strategy)

        session.mark_closed("m1")

        assert session.can_enter("m1") is False
