"""
Exchange Gateway boundary.

Defines the canonical types every other module works with, the exception
taxonomy for exchange failures, the abstract ``ExchangeGateway`` and an
``InMemoryGateway`` simulated exchange used by tests and the demo.

Exchange-specific response shapes never leave the adapter that produced
them: adapters translate into ``Ticker``, ``ExchangePosition``, ``Balance``
and ``OrderResult`` before returning.
"""

import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from .position import Direction


class ExchangeError(Exception):
    """Base class for failures reported by (or talking to) the exchange."""


class TransientExchangeError(ExchangeError):
    """Timeout, rate limit, network failure or temporary rejection. Retried."""


class OrderRejectedError(ExchangeError):
    """The exchange refused the order for a semantic reason. Not retried."""


class UnsafePriceError(OrderRejectedError):
    """Trigger price would fire immediately against the live market."""


class AuthenticationFailedError(ExchangeError):
    """Credentials were refused (revoked key, missing permission). Not retried."""


class MalformedResponseError(ExchangeError):
    """The exchange answered with a payload that cannot be interpreted."""


class OrderType(str, Enum):
    MARKET = "market"
    STOP_MARKET = "stop_market"
    TAKE_PROFIT_MARKET = "take_profit_market"


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @classmethod
    def opening(cls, direction: Direction) -> "OrderSide":
        return cls.BUY if direction is Direction.LONG else cls.SELL

    @classmethod
    def closing(cls, direction: Direction) -> "OrderSide":
        return cls.SELL if direction is Direction.LONG else cls.BUY


@dataclass(frozen=True)
class Ticker:
    last: Decimal
    timestamp: Optional[float] = None


@dataclass(frozen=True)
class ExchangePosition:
    """Exchange-reported position; ``size`` is always positive."""
    direction: Direction
    size: Decimal
    entry_price: Decimal


@dataclass(frozen=True)
class Balance:
    total: Decimal
    available: Decimal


@dataclass(frozen=True)
class OrderResult:
    order_id: str
    client_order_id: str
    filled_price: Optional[Decimal] = None
    size: Optional[Decimal] = None


def new_client_order_id(tag: str) -> str:
    """Fresh client-assigned order id (<= 36 chars, exchange-safe alphabet)."""
    return f"lt{tag}{int(time.time() * 1000)}{uuid.uuid4().hex[:8]}"


class ExchangeGateway(ABC):
    """Uniform async call surface over a margin exchange.

    Every method may raise ``ExchangeError`` subclasses; transient ones are
    retried by ``levtrade.retry.ResilientGateway``.
    """

    @abstractmethod
    async def fetch_ticker(self, symbol: str) -> Ticker:
        pass

    @abstractmethod
    async def fetch_position(self, symbol: str) -> Optional[ExchangePosition]:
        """Open position for ``symbol`` or None when flat."""
        pass

    @abstractmethod
    async def fetch_balance(self) -> Balance:
        pass

    @abstractmethod
    async def create_order(
        self,
        symbol: str,
        order_type: OrderType,
        side: OrderSide,
        size: Decimal,
        *,
        stop_price: Optional[Decimal] = None,
        reduce_only: bool = False,
        client_order_id: str,
    ) -> OrderResult:
        """Place an order.

        Args:
            symbol: Unified symbol
            order_type: MARKET, STOP_MARKET or TAKE_PROFIT_MARKET
            side: BUY or SELL
            size: Quantity in base units
            stop_price: Trigger price for STOP_MARKET / TAKE_PROFIT_MARKET
            reduce_only: Only allow the order to decrease the position
            client_order_id: Idempotency key; resubmitting it must not create a duplicate

        Returns:
            OrderResult (``filled_price`` set for market orders)
        """
        pass

    @abstractmethod
    async def cancel_all_orders(self, symbol: str) -> None:
        pass

    @abstractmethod
    async def fetch_time(self) -> int:
        """Exchange server time in epoch milliseconds."""
        pass

    async def close(self) -> None:
        pass


class InMemoryGateway(ExchangeGateway):
    """Single-symbol simulated exchange that records calls and lets tests drive prices.

    - Market orders fill at the current price (weighted average on increase,
      realized P&L credited on reduce).
    - Protective orders rest in ``orders`` until cancelled or triggered by
      ``set_price``; triggering does not cancel the sibling order.
    - Trigger prices that would fire immediately raise ``UnsafePriceError``.
    - Client order ids are de-duplicated.
    - ``fail_next`` queues exceptions for the next calls of a method.
    """

    def __init__(
        self,
        symbol: str = "SOL/USDT:USDT",
        price: Decimal = Decimal("100"),
        balance: Decimal = Decimal("1000"),
        leverage: int = 20,
    ):
        self.symbol = symbol
        self.price = price
        self.balance_total = balance
        self.leverage = leverage
        self.position: Optional[ExchangePosition] = None
        self.orders: Dict[str, dict] = {}
        self.calls: List[str] = []
        self._by_client_id: Dict[str, OrderResult] = {}
        self._faults: Dict[str, List[Exception]] = {}
        self.next_id = 1

    # --- test controls ---
    def fail_next(self, method: str, exc: Optional[Exception] = None, times: int = 1) -> None:
        err = exc or TransientExchangeError(f"simulated {method} failure")
        self._faults.setdefault(method, []).extend([err] * times)

    def open_orders(self, order_type: Optional[OrderType] = None) -> List[dict]:
        return [
            o for o in self.orders.values()
            if o["state"] == "open" and (order_type is None or o["type"] is order_type)
        ]

    def set_price(self, price: Decimal, trigger: bool = True) -> List[dict]:
        """Move the market; fire protective orders whose trigger was crossed."""
        self.price = price
        fired = []
        if not trigger:
            return fired
        for order in self.open_orders():
            if order["type"] is OrderType.MARKET or not self._crossed(order):
                continue
            order["state"] = "triggered"
            fired.append(order)
            if self.position is not None:
                self._fill(order["side"], min(order["size"], self.position.size), reduce_only=True)
        return fired

    def liquidate(self) -> None:
        """Drop the position the way a liquidation or manual close would."""
        self.position = None

    def _crossed(self, order: dict) -> bool:
        stop = order["stop_price"]
        sell = order["side"] is OrderSide.SELL
        if order["type"] is OrderType.STOP_MARKET:
            return self.price <= stop if sell else self.price >= stop
        return self.price >= stop if sell else self.price <= stop

    def _maybe_fail(self, method: str) -> None:
        self.calls.append(method)
        queued = self._faults.get(method)
        if queued:
            raise queued.pop(0)

    def _gen_id(self) -> str:
        oid = f"sim{self.next_id}"
        self.next_id += 1
        return oid

    def _fill(self, side: OrderSide, size: Decimal, reduce_only: bool) -> None:
        direction = Direction.LONG if side is OrderSide.BUY else Direction.SHORT
        pos = self.position
        if pos is None:
            if reduce_only:
                raise OrderRejectedError("-2022 ReduceOnly Order is rejected")
            self.position = ExchangePosition(direction, size, self.price)
            return
        if pos.direction is direction:
            if reduce_only:
                raise OrderRejectedError("-2022 ReduceOnly Order is rejected")
            new_size = pos.size + size
            entry = (pos.entry_price * pos.size + self.price * size) / new_size
            self.position = ExchangePosition(direction, new_size, entry)
            return
        closed = min(size, pos.size)
        self.balance_total += (self.price - pos.entry_price) * pos.direction.sign * closed
        remaining = pos.size - size
        if remaining > 0:
            self.position = replace(pos, size=remaining)
        elif remaining == 0 or reduce_only:
            self.position = None
        else:
            self.position = ExchangePosition(direction, -remaining, self.price)

    # --- gateway surface ---
    async def fetch_ticker(self, symbol: str) -> Ticker:
        self._maybe_fail("fetch_ticker")
        return Ticker(last=self.price, timestamp=time.time())

    async def fetch_position(self, symbol: str) -> Optional[ExchangePosition]:
        self._maybe_fail("fetch_position")
        if symbol != self.symbol:
            return None
        return self.position

    async def fetch_balance(self) -> Balance:
        self._maybe_fail("fetch_balance")
        used = Decimal("0")
        if self.position is not None:
            used = self.position.size * self.position.entry_price / self.leverage
        return Balance(total=self.balance_total, available=self.balance_total - used)

    async def create_order(
        self,
        symbol: str,
        order_type: OrderType,
        side: OrderSide,
        size: Decimal,
        *,
        stop_price: Optional[Decimal] = None,
        reduce_only: bool = False,
        client_order_id: str,
    ) -> OrderResult:
        self._maybe_fail("create_order")
        if client_order_id in self._by_client_id:
            return self._by_client_id[client_order_id]
        if size <= 0:
            raise OrderRejectedError(f"Invalid order size {size}")

        oid = self._gen_id()
        if order_type is OrderType.MARKET:
            self._fill(side, size, reduce_only)
            result = OrderResult(oid, client_order_id, filled_price=self.price, size=size)
            state = "filled"
        else:
            if stop_price is None:
                raise OrderRejectedError(f"{order_type.value} requires stop_price")
            if reduce_only and self.position is None:
                raise OrderRejectedError("-2022 ReduceOnly Order is rejected")
            self.orders[oid] = {"type": order_type, "side": side, "size": size, "stop_price": stop_price}
            if self._crossed(self.orders[oid]):
                del self.orders[oid]
                raise UnsafePriceError("-2021 Order would immediately trigger.")
            result = OrderResult(oid, client_order_id, size=size)
            state = "open"

        self.orders[oid] = {
            "type": order_type,
            "side": side,
            "size": size,
            "stop_price": stop_price,
            "reduce_only": reduce_only,
            "client_order_id": client_order_id,
            "state": state,
        }
        self._by_client_id[client_order_id] = result
        return result

    async def cancel_all_orders(self, symbol: str) -> None:
        self._maybe_fail("cancel_all_orders")
        for order in self.open_orders():
            order["state"] = "cancelled"

    async def fetch_time(self) -> int:
        self._maybe_fail("fetch_time")
        return int(time.time() * 1000)
