from decimal import Decimal

import pytest

from levtrade.gateway import (
    InMemoryGateway,
    OrderRejectedError,
    OrderSide,
    OrderType,
    TransientExchangeError,
    UnsafePriceError,
    new_client_order_id,
)
from levtrade.position import Direction

SYMBOL = "SOL/USDT:USDT"


def test_client_order_ids_are_unique_and_short():
    ids = {new_client_order_id("SL") for _ in range(100)}
    assert len(ids) == 100
    assert all(i.startswith("ltSL") and len(i) <= 36 for i in ids)


def test_order_side_helpers():
    assert OrderSide.opening(Direction.LONG) is OrderSide.BUY
    assert OrderSide.closing(Direction.LONG) is OrderSide.SELL
    assert OrderSide.opening(Direction.SHORT) is OrderSide.SELL
    assert OrderSide.closing(Direction.SHORT) is OrderSide.BUY


@pytest.mark.asyncio
async def test_market_orders_average_and_reduce():
    gw = InMemoryGateway()
    await gw.create_order(SYMBOL, OrderType.MARKET, OrderSide.BUY, Decimal("1"), client_order_id="a")
    gw.set_price(Decimal("110"))
    await gw.create_order(SYMBOL, OrderType.MARKET, OrderSide.BUY, Decimal("1"), client_order_id="b")

    assert gw.position.size == Decimal("2")
    assert gw.position.entry_price == Decimal("105")

    await gw.create_order(SYMBOL, OrderType.MARKET, OrderSide.SELL, Decimal("2"), reduce_only=True, client_order_id="c")
    assert gw.position is None
    assert gw.balance_total == Decimal("1010")


@pytest.mark.asyncio
async def test_duplicate_client_id_is_not_refilled():
    gw = InMemoryGateway()
    first = await gw.create_order(SYMBOL, OrderType.MARKET, OrderSide.BUY, Decimal("1"), client_order_id="same")
    second = await gw.create_order(SYMBOL, OrderType.MARKET, OrderSide.BUY, Decimal("1"), client_order_id="same")
    assert first == second
    assert gw.position.size == Decimal("1")


@pytest.mark.asyncio
async def test_reduce_only_rejected_when_flat():
    gw = InMemoryGateway()
    with pytest.raises(OrderRejectedError):
        await gw.create_order(
            SYMBOL, OrderType.STOP_MARKET, OrderSide.SELL, Decimal("1"), stop_price=Decimal("99"), reduce_only=True, client_order_id="x"
        )


@pytest.mark.asyncio
async def test_trigger_that_would_fire_immediately_is_refused():
    gw = InMemoryGateway()
    await gw.create_order(SYMBOL, OrderType.MARKET, OrderSide.BUY, Decimal("1"), client_order_id="open")
    with pytest.raises(UnsafePriceError):
        await gw.create_order(
            SYMBOL, OrderType.STOP_MARKET, OrderSide.SELL, Decimal("1"), stop_price=Decimal("100.5"), reduce_only=True, client_order_id="sl"
        )
    assert gw.open_orders() == []


@pytest.mark.asyncio
async def test_take_profit_fires_on_price_move():
    gw = InMemoryGateway()
    await gw.create_order(SYMBOL, OrderType.MARKET, OrderSide.SELL, Decimal("2"), client_order_id="open")
    await gw.create_order(
        SYMBOL, OrderType.TAKE_PROFIT_MARKET, OrderSide.BUY, Decimal("2"), stop_price=Decimal("98"), reduce_only=True, client_order_id="tp"
    )

    assert gw.set_price(Decimal("99")) == []
    fired = gw.set_price(Decimal("97.5"))

    assert [o["client_order_id"] for o in fired] == ["tp"]
    assert gw.position is None
    assert gw.balance_total == Decimal("1005")


@pytest.mark.asyncio
async def test_balance_reserves_margin():
    gw = InMemoryGateway(leverage=10)
    await gw.create_order(SYMBOL, OrderType.MARKET, OrderSide.BUY, Decimal("5"), client_order_id="open")
    balance = await gw.fetch_balance()
    assert balance.total == Decimal("1000")
    assert balance.available == Decimal("950")


@pytest.mark.asyncio
async def test_fail_next_queues_faults():
    gw = InMemoryGateway()
    gw.fail_next("fetch_ticker", times=2)
    for _ in range(2):
        with pytest.raises(TransientExchangeError):
            await gw.fetch_ticker(SYMBOL)
    assert (await gw.fetch_ticker(SYMBOL)).last == Decimal("100")
    assert gw.calls == ["fetch_ticker"] * 3


@pytest.mark.asyncio
async def test_other_symbol_is_flat():
    gw = InMemoryGateway()
    await gw.create_order(SYMBOL, OrderType.MARKET, OrderSide.BUY, Decimal("1"), client_order_id="open")
    assert await gw.fetch_position("BTC/USDT:USDT") is None
    assert (await gw.fetch_position(SYMBOL)).direction is Direction.LONG
