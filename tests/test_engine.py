import asyncio
from decimal import Decimal

import pytest

from levtrade.engine import PositionEngine, SignalOutcome
from levtrade.gateway import ExchangePosition, InMemoryGateway, OrderRejectedError, OrderType
from levtrade.notifier import NotificationDispatcher, NotificationKind
from levtrade.position import Direction, RiskPhase
from levtrade.reconciler import ReconcileOutcome
from levtrade.ws_client import EventKind, ExchangeEvent

from conftest import fast_config


def _protection(gateway):
    """Trigger prices of the resting protective orders, keyed by order type."""
    return {o["type"]: o["stop_price"] for o in gateway.open_orders() if o["type"] is not OrderType.MARKET}


class HalfFillingGateway(InMemoryGateway):
    """Reduce-only market orders only fill half, leaving a residual position."""

    async def create_order(self, symbol, order_type, side, size, *, stop_price=None, reduce_only=False, client_order_id):
        if order_type is OrderType.MARKET and reduce_only:
            size = size / 2
        return await super().create_order(
            symbol, order_type, side, size, stop_price=stop_price, reduce_only=reduce_only, client_order_id=client_order_id
        )


@pytest.mark.asyncio
async def test_open_installs_initial_protection(engine, gateway, recorder):
    outcome = await engine.handle_signal("buy", 100, 1)
    await engine.notifier.drain()

    assert outcome is SignalOutcome.OPENED
    view = engine.get_active_position()
    assert view.is_open
    assert view.direction is Direction.LONG
    assert view.size == Decimal("1")
    assert view.risk_phase is RiskPhase.INITIAL
    assert view.stop_price == Decimal("99.65")
    assert view.target_price == Decimal("101.05")

    assert _protection(gateway) == {
        OrderType.STOP_MARKET: Decimal("99.65"),
        OrderType.TAKE_PROFIT_MARKET: Decimal("101.05"),
    }
    assert all(o["reduce_only"] for o in gateway.open_orders())
    assert engine.position_timer.running
    assert NotificationKind.POSITION_OPENED in recorder.kinds()
    assert NotificationKind.SAFETY_ORDERS_UPDATED in recorder.kinds()
    await engine.stop()


@pytest.mark.asyncio
async def test_long_round_trip_through_all_phases(engine, gateway, recorder, clock):
    await engine.handle_signal("buy", 100, 1)

    # break-even: stop to entry, target pushed past the live price
    gateway.set_price(Decimal("101.10"), trigger=False)
    await engine.run_cycle()
    view = engine.get_active_position()
    assert view.risk_phase is RiskPhase.BREAK_EVEN
    assert view.stop_price == Decimal("100")
    assert view.target_price == Decimal("101.10") * Decimal("1.002")

    # trailing starts on the next check
    gateway.set_price(Decimal("101.64"), trigger=False)
    await engine.run_cycle()
    view = engine.get_active_position()
    assert view.risk_phase is RiskPhase.TRAILING_AGGRESSIVE
    assert view.stop_price == Decimal("101.64") * Decimal("0.998")
    assert view.target_price == Decimal("101.64") * Decimal("1.002")

    # ratchet up after the update interval
    clock.advance(91)
    gateway.set_price(Decimal("102.5"), trigger=False)
    await engine.run_cycle()
    ratcheted = Decimal("102.5") * Decimal("0.998")
    assert engine.get_active_position().stop_price == ratcheted
    assert _protection(gateway)[OrderType.STOP_MARKET] == ratcheted

    # a pullback never loosens the stop
    clock.advance(91)
    gateway.set_price(Decimal("102.3"), trigger=False)
    await engine.run_cycle()
    assert engine.get_active_position().stop_price == ratcheted
    assert _protection(gateway)[OrderType.STOP_MARKET] == ratcheted

    # the stop fires on the exchange; the next check notices
    fired = gateway.set_price(Decimal("102.2"))
    assert [o["type"] for o in fired] == [OrderType.STOP_MARKET]
    assert gateway.position is None

    await engine.run_cycle()
    await engine.notifier.drain()
    assert not engine.get_active_position().is_open
    assert not engine.position_timer.running
    assert gateway.open_orders() == []
    assert gateway.balance_total == Decimal("1002.2")

    kinds = recorder.kinds()
    assert kinds.count(NotificationKind.PHASE_CHANGED) == 2
    assert kinds[-1] is NotificationKind.POSITION_CLOSED
    assert "closed externally" in recorder.sent[-1].text
    await engine.stop()


@pytest.mark.asyncio
async def test_opposite_signal_flips_position(engine, gateway, recorder):
    await engine.handle_signal("buy", 100, 1)

    outcome = await engine.handle_signal("sell", 100, 2)
    await engine.notifier.drain()

    assert outcome is SignalOutcome.FLIPPED
    assert gateway.position.direction is Direction.SHORT
    assert gateway.position.size == Decimal("2")

    view = engine.get_active_position()
    assert view.direction is Direction.SHORT
    assert view.size == Decimal("2")
    assert view.stop_price == Decimal("100.35")
    assert view.target_price == Decimal("98.95")
    assert len(gateway.open_orders()) == 2

    kinds = recorder.kinds()
    assert kinds.count(NotificationKind.POSITION_OPENED) == 2
    assert NotificationKind.POSITION_CLOSED in kinds
    await engine.stop()


@pytest.mark.asyncio
async def test_same_direction_signal_averages_in_then_ignores(engine, gateway, recorder):
    await engine.handle_signal("buy", 100, 1)

    gateway.set_price(Decimal("99"), trigger=False)
    outcome = await engine.handle_signal("buy", 99, 1)
    await engine.notifier.drain()

    assert outcome is SignalOutcome.AVERAGED
    view = engine.get_active_position()
    assert view.size == Decimal("2")
    assert view.entry_price == Decimal("99.5")
    assert view.dca_count == 1
    assert view.risk_phase is RiskPhase.INITIAL
    assert NotificationKind.AVERAGED_IN in recorder.kinds()
    # protection resized to the new total
    assert {o["size"] for o in gateway.open_orders()} == {Decimal("2")}

    # next addition needs a further 1% move from 99
    assert await engine.handle_signal("buy", Decimal("98.5"), 1) is SignalOutcome.IGNORED
    assert engine.get_active_position().size == Decimal("2")
    await engine.stop()


@pytest.mark.asyncio
async def test_average_in_size_grows_with_multiplier(engine, gateway):
    await engine.handle_signal("buy", 100, 1)
    gateway.set_price(Decimal("99"), trigger=False)
    await engine.handle_signal("buy", 99, 1)

    gateway.set_price(Decimal("98"), trigger=False)
    assert await engine.handle_signal("buy", 98, 1) is SignalOutcome.AVERAGED
    view = engine.get_active_position()
    assert view.size == Decimal("3.5")
    assert view.dca_count == 2
    await engine.stop()


@pytest.mark.asyncio
async def test_average_in_respects_limit(gateway, recorder, clock):
    config = fast_config()
    config.dca.max_dca_count = 1
    engine = PositionEngine(gateway, config, notifier=NotificationDispatcher([recorder]), clock=clock)

    await engine.handle_signal("buy", 100, 1)
    gateway.set_price(Decimal("99"), trigger=False)
    assert await engine.handle_signal("buy", 99, 1) is SignalOutcome.AVERAGED
    gateway.set_price(Decimal("95"), trigger=False)
    assert await engine.handle_signal("buy", 95, 1) is SignalOutcome.IGNORED
    assert engine.get_active_position().dca_count == 1
    await engine.stop()


@pytest.mark.asyncio
async def test_signal_retry_succeeds(engine, gateway, recorder):
    gateway.fail_next("create_order", times=2)

    outcome = await engine.handle_signal("sell", 100, 1)
    assert outcome is SignalOutcome.RETRY_SCHEDULED
    assert not engine.get_active_position().is_open

    await engine.scheduler.drain()
    await engine.notifier.drain()
    view = engine.get_active_position()
    assert view.is_open
    assert view.direction is Direction.SHORT
    assert NotificationKind.ERROR in recorder.kinds()
    await engine.stop()


@pytest.mark.asyncio
async def test_signal_gives_up_after_one_retry(engine, gateway, recorder):
    gateway.fail_next("create_order", times=4)

    assert await engine.handle_signal("buy", 100, 1) is SignalOutcome.RETRY_SCHEDULED
    await engine.scheduler.drain()
    await engine.notifier.drain()

    assert not engine.get_active_position().is_open
    assert gateway.position is None
    assert engine.scheduler.pending == 0
    errors = [n.text for n in recorder.sent if n.kind is NotificationKind.ERROR]
    assert any("gave up" in text for text in errors)
    await engine.stop()


@pytest.mark.asyncio
async def test_close_position_reports_pnl(engine, gateway, recorder):
    await engine.handle_signal("buy", 100, 1)
    gateway.set_price(Decimal("101"), trigger=False)

    result = await engine.close_position()
    await engine.notifier.drain()

    assert result.realized_pnl == Decimal("1")
    assert result.pnl_percent == Decimal("0.96")
    assert result.balance_change == Decimal("1")
    assert result.is_win
    assert gateway.position is None
    assert gateway.open_orders() == []
    assert not engine.get_active_position().is_open
    assert not engine.position_timer.running
    assert recorder.kinds()[-1] is NotificationKind.POSITION_CLOSED
    await engine.stop()


@pytest.mark.asyncio
async def test_close_when_flat_returns_none(engine):
    assert await engine.close_position() is None


@pytest.mark.asyncio
async def test_failed_close_order_restores_protection(engine, gateway, recorder):
    await engine.handle_signal("buy", 100, 1)
    gateway.fail_next("create_order", OrderRejectedError("-2019 Margin is insufficient"))

    assert await engine.close_position() is None
    await engine.notifier.drain()

    assert gateway.position.size == Decimal("1")
    assert _protection(gateway) == {
        OrderType.STOP_MARKET: Decimal("99.65"),
        OrderType.TAKE_PROFIT_MARKET: Decimal("101.05"),
    }
    assert engine.get_active_position().is_open
    assert not engine.safety.protection_pending
    assert recorder.kinds()[-1] is NotificationKind.ERROR
    await engine.stop()


@pytest.mark.asyncio
async def test_position_check_restores_protection_after_give_up(engine, gateway):
    await engine.handle_signal("buy", 100, 1)
    assert await engine.safety.cancel_all("test")
    gateway.fail_next("cancel_all_orders", times=4)
    await engine.safety.install(reason="test")
    await engine.scheduler.drain()

    assert gateway.open_orders() == []
    assert engine.safety.protection_pending

    await engine.run_cycle()

    assert _protection(gateway) == {
        OrderType.STOP_MARKET: Decimal("99.65"),
        OrderType.TAKE_PROFIT_MARKET: Decimal("101.05"),
    }
    assert not engine.safety.protection_pending
    await engine.stop()


@pytest.mark.asyncio
async def test_position_check_leaves_intact_protection_alone(engine, gateway):
    await engine.handle_signal("buy", 100, 1)
    before = {o["client_order_id"] for o in gateway.open_orders()}
    gateway.calls.clear()

    await engine.run_cycle()

    assert "cancel_all_orders" not in gateway.calls
    assert {o["client_order_id"] for o in gateway.open_orders()} == before
    await engine.stop()


@pytest.mark.asyncio
async def test_close_with_residual_reinstalls_protection(recorder, clock):
    gateway = HalfFillingGateway()
    engine = PositionEngine(gateway, fast_config(), notifier=NotificationDispatcher([recorder]), clock=clock)
    await engine.handle_signal("buy", 100, 1)

    result = await engine.close_position()
    await engine.notifier.drain()

    assert result is None
    assert gateway.position.size == Decimal("0.5")
    view = engine.get_active_position()
    assert view.is_open
    assert view.size == Decimal("0.5")
    protective = gateway.open_orders()
    assert len(protective) == 2
    assert {o["size"] for o in protective} == {Decimal("0.5")}
    assert recorder.kinds()[-1] is NotificationKind.ERROR
    await engine.stop()


@pytest.mark.asyncio
async def test_position_check_dropped_while_busy(engine):
    release = asyncio.Event()

    async def hold():
        await release.wait()

    holder = asyncio.create_task(engine.guard.run("test-holder", hold))
    await asyncio.sleep(0)
    assert engine.guard.busy

    assert await engine.run_cycle() is None
    assert engine.guard.dropped == 1

    # signals wait for the section instead of being dropped
    signal = asyncio.create_task(engine.handle_signal("buy", 100, 1))
    await asyncio.sleep(0)
    assert not signal.done()

    release.set()
    await holder
    assert await signal is SignalOutcome.OPENED
    await engine.stop()


@pytest.mark.asyncio
async def test_liquidation_event_clears_position(engine, gateway, recorder):
    await engine.handle_signal("buy", 100, 1)
    gateway.liquidate()

    event = ExchangeEvent(EventKind.LIQUIDATION, "SOLUSDT", "FILLED")
    await engine.on_exchange_event(event)
    await engine.notifier.drain()

    assert not engine.get_active_position().is_open
    assert gateway.open_orders() == []
    assert recorder.kinds()[-1] is NotificationKind.POSITION_CLOSED
    await engine.stop()


@pytest.mark.asyncio
async def test_balance_falls_back_to_last_known(engine, gateway):
    assert await engine.get_account_balance() == Decimal("1000")

    gateway.fail_next("fetch_balance", times=2)
    assert await engine.get_account_balance() == Decimal("1000")


@pytest.mark.asyncio
async def test_balance_unknown_before_first_fetch(engine, gateway):
    gateway.fail_next("fetch_balance", times=2)
    assert await engine.get_account_balance() is None


@pytest.mark.asyncio
async def test_startup_adopts_exchange_position(engine, gateway, recorder):
    gateway.set_price(Decimal("50"))
    gateway.position = ExchangePosition(Direction.SHORT, Decimal("3"), Decimal("50"))

    outcome = await engine.start()
    await engine.notifier.drain()

    assert outcome is ReconcileOutcome.ADOPTED
    view = engine.get_active_position()
    assert view.direction is Direction.SHORT
    assert view.size == Decimal("3")
    assert view.entry_price == Decimal("50")
    assert view.stop_price == Decimal("50.175")
    assert view.target_price == Decimal("49.475")
    assert engine.position_timer.running
    assert NotificationKind.INFO in recorder.kinds()
    await engine.stop()
    assert not engine.position_timer.running


@pytest.mark.asyncio
async def test_startup_when_flat(engine):
    assert await engine.start() is ReconcileOutcome.IN_SYNC
    assert not engine.get_active_position().is_open
    await engine.stop()
