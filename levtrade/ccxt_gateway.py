"""ccxt-backed ExchangeGateway for USDⓈ-M perpetual futures (Binance by default).

Responsibilities:
- Connect: load markets, switch to the testnet sandbox, set margin mode and leverage.
- Translate ccxt exceptions into the engine's error taxonomy.
- Normalize positions and balances, whose field names vary by exchange and
  endpoint, with pydantic models.
- Round prices and amounts to the market's precision before placing orders.

Usage:
    async with CcxtGateway(config.exchange, credentials) as gateway:
        ticker = await gateway.fetch_ticker(config.exchange.symbol)
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Optional

import ccxt
import ccxt.async_support as ccxt_async
from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import ConfigurationError, ExchangeConfig
from .gateway import (
    AuthenticationFailedError,
    Balance,
    ExchangeError,
    ExchangeGateway,
    ExchangePosition,
    MalformedResponseError,
    OrderRejectedError,
    OrderResult,
    OrderSide,
    OrderType,
    Ticker,
    TransientExchangeError,
    UnsafePriceError,
)
from .position import Direction
from .secrets import ExchangeCredentials

UNSAFE_PRICE_MARKERS = ("-2021", "would immediately trigger")

_ORDER_TYPES = {
    OrderType.MARKET: "market",
    OrderType.STOP_MARKET: "STOP_MARKET",
    OrderType.TAKE_PROFIT_MARKET: "TAKE_PROFIT_MARKET",
}


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}") from None


class PositionPayload(BaseModel):
    """One entry of ``fetch_positions``; accepts unified and raw field names."""
    model_config = ConfigDict(extra="ignore")

    symbol: Optional[str] = None
    side: Optional[str] = None
    contracts: Optional[Decimal] = Field(default=None, validation_alias=AliasChoices("contracts", "positionAmt", "size"))
    entry_price: Optional[Decimal] = Field(default=None, validation_alias=AliasChoices("entryPrice", "entry_price", "avgPrice"))
    info: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("contracts", "entry_price", mode="before")
    @classmethod
    def _decimal(cls, value):
        return _to_decimal(value)

    def to_position(self) -> Optional[ExchangePosition]:
        size = self.contracts
        entry = self.entry_price
        raw_amount = _to_decimal(self.info.get("positionAmt"))
        if size is None:
            size = raw_amount
        if entry is None:
            entry = _to_decimal(self.info.get("entryPrice"))
        if size is None or size == 0 or entry is None or entry <= 0:
            return None

        side = (self.side or "").lower()
        if side in ("long", "short"):
            direction = Direction(side)
        else:
            signed = raw_amount if raw_amount is not None else size
            direction = Direction.LONG if signed > 0 else Direction.SHORT
        return ExchangePosition(direction=direction, size=abs(size), entry_price=entry)


class BalancePayload(BaseModel):
    """ccxt balance structure reduced to one asset.

    Reads ``total[asset]`` / ``free[asset]`` first, then the per-asset
    ``{asset: {total, free}}`` form.
    """
    total: Optional[Decimal] = None
    free: Optional[Decimal] = None

    @field_validator("total", "free", mode="before")
    @classmethod
    def _decimal(cls, value):
        return _to_decimal(value)

    @classmethod
    def from_ccxt(cls, raw: Dict[str, Any], asset: str) -> "BalancePayload":
        per_asset = raw.get(asset) or {}
        return cls(
            total=(raw.get("total") or {}).get(asset, per_asset.get("total")),
            free=(raw.get("free") or {}).get(asset, per_asset.get("free")),
        )

    def to_balance(self) -> Balance:
        total = self.total if self.total is not None else Decimal("0")
        available = self.free if self.free is not None else total
        return Balance(total=total, available=available)


def translate_error(err: Exception) -> Exception:
    """Map a ccxt exception onto the engine's error taxonomy."""
    text = str(err)
    if isinstance(err, (ccxt.AuthenticationError, ccxt.PermissionDenied, ccxt.AccountSuspended)):
        return AuthenticationFailedError(f"Exchange rejected credentials: {text}")
    if any(marker in text for marker in UNSAFE_PRICE_MARKERS):
        return UnsafePriceError(text)
    if isinstance(err, ccxt.NetworkError):
        # includes RequestTimeout, DDoSProtection, RateLimitExceeded, ExchangeNotAvailable
        return TransientExchangeError(text)
    if isinstance(err, (ccxt.InvalidOrder, ccxt.InsufficientFunds, ccxt.BadSymbol)):
        return OrderRejectedError(text)
    return ExchangeError(text)


class CcxtGateway(ExchangeGateway):
    """ExchangeGateway over ``ccxt.async_support``.

    Args:
        config: Exchange section of the engine config
        credentials: API key pair
        exchange: Pre-built ccxt exchange (tests); built from ``config.exchange_id`` otherwise
    """

    def __init__(self, config: ExchangeConfig, credentials: Optional[ExchangeCredentials] = None, *, exchange=None):
        self.config = config
        if exchange is None:
            klass = getattr(ccxt_async, config.exchange_id, None)
            if klass is None:
                raise ConfigurationError(f"Unknown exchange id: {config.exchange_id}")
            exchange = klass({
                "apiKey": credentials.api_key if credentials else None,
                "secret": credentials.api_secret if credentials else None,
                "enableRateLimit": True,
                "timeout": config.timeout * 1000,
                "options": {"defaultType": "future"},
            })
        self.exchange = exchange
        self.market_id: Optional[str] = None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _call(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        try:
            return await fn(*args, **kwargs)
        except ccxt.BaseError as e:
            raise translate_error(e) from e

    async def connect(self) -> None:
        """Load markets and apply account settings for the traded symbol.

        Raises:
            ConfigurationError: Unknown symbol or rejected credentials
        """
        if self.config.testnet:
            self.exchange.set_sandbox_mode(True)
        try:
            await self._call(self.exchange.load_markets)
        except AuthenticationFailedError as e:
            raise ConfigurationError(str(e)) from e
        if self.config.symbol not in self.exchange.markets:
            raise ConfigurationError(f"Symbol {self.config.symbol} not listed on {self.config.exchange_id}")
        self.market_id = self.exchange.market(self.config.symbol)["id"]

        try:
            await self.exchange.set_margin_mode(self.config.margin_mode, self.config.symbol)
        except ccxt.BaseError as e:
            # Binance answers "No need to change margin type" when already set
            logger.warning(f"Margin mode not changed | mode={self.config.margin_mode} error={e}")
        try:
            await self.exchange.set_leverage(self.config.leverage, self.config.symbol)
        except ccxt.BaseError as e:
            logger.warning(f"Leverage not changed | leverage={self.config.leverage} error={e}")

        server_time = await self.fetch_time()
        logger.info(
            f"Connected to {self.config.exchange_id} | symbol={self.config.symbol} market_id={self.market_id} "
            f"testnet={self.config.testnet} leverage={self.config.leverage} server_time={server_time}"
        )

    async def fetch_ticker(self, symbol: str) -> Ticker:
        raw = await self._call(self.exchange.fetch_ticker, symbol)
        try:
            last = _to_decimal(raw.get("last") or raw.get("close"))
        except ValueError as e:
            raise MalformedResponseError(f"Ticker for {symbol}: {e}") from e
        if last is None:
            raise TransientExchangeError(f"Ticker for {symbol} has no last price")
        timestamp = raw.get("timestamp")
        return Ticker(last=last, timestamp=timestamp / 1000 if timestamp else None)

    async def fetch_position(self, symbol: str) -> Optional[ExchangePosition]:
        raw: List[Dict[str, Any]] = await self._call(self.exchange.fetch_positions, [symbol])
        try:
            for entry in raw or []:
                payload = PositionPayload.model_validate(entry)
                if payload.symbol not in (None, symbol):
                    continue
                position = payload.to_position()
                if position is not None:
                    return position
        except (ValidationError, ValueError) as e:
            raise MalformedResponseError(f"Position payload for {symbol}: {e}") from e
        return None

    async def fetch_balance(self) -> Balance:
        raw = await self._call(self.exchange.fetch_balance)
        try:
            return BalancePayload.from_ccxt(raw, self.config.quote_asset).to_balance()
        except (ValidationError, ValueError) as e:
            raise MalformedResponseError(f"Balance payload for {self.config.quote_asset}: {e}") from e

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
        params: Dict[str, Any] = {"clientOrderId": client_order_id}
        if reduce_only:
            params["reduceOnly"] = True
        if order_type is not OrderType.MARKET:
            if stop_price is None:
                raise OrderRejectedError(f"{order_type.value} requires stop_price")
            params["stopPrice"] = self.exchange.price_to_precision(symbol, float(stop_price))
            params["workingType"] = "MARK_PRICE"

        amount = float(self.exchange.amount_to_precision(symbol, float(size)))
        raw = await self._call(
            self.exchange.create_order, symbol, _ORDER_TYPES[order_type], side.value, amount, None, params
        )
        filled_price = _to_decimal(raw.get("average") or raw.get("price")) if order_type is OrderType.MARKET else None
        return OrderResult(
            order_id=str(raw.get("id")),
            client_order_id=raw.get("clientOrderId") or client_order_id,
            filled_price=filled_price or None,
            size=_to_decimal(raw.get("filled") or raw.get("amount")) or Decimal(str(amount)),
        )

    async def cancel_all_orders(self, symbol: str) -> None:
        await self._call(self.exchange.cancel_all_orders, symbol)

    async def fetch_time(self) -> int:
        return int(await self._call(self.exchange.fetch_time))

    async def close(self) -> None:
        await self.exchange.close()
