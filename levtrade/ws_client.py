"""Exchange event stream over an aiohttp WebSocket.

Connects to the futures user/force-order stream, parses fill and liquidation
messages for the traded market and yields them as ``ExchangeEvent``s. The
connection is re-established after ``reconnect_delay`` seconds whenever it
drops.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional
import asyncio
import json

from aiohttp import ClientError, ClientSession, ClientWebSocketResponse, WSMsgType
from loguru import logger

DEFAULT_WS_URL = "wss://fstream.binance.com/ws/!forceOrder@arr"
TESTNET_WS_URL = "wss://stream.binancefuture.com/ws/!forceOrder@arr"


class EventKind(str, Enum):
    FILL = "fill"
    LIQUIDATION = "liquidation"


@dataclass(frozen=True)
class ExchangeEvent:
    kind: EventKind
    market_id: str
    status: str
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


def parse_event(message: Dict[str, Any]) -> Optional[ExchangeEvent]:
    """Translate a raw stream message; None for anything that is not a fill or liquidation.

    Example:
        >>> parse_event({"e": "forceOrder", "o": {"s": "SOLUSDT", "X": "FILLED"}}).kind
        <EventKind.LIQUIDATION: 'liquidation'>
    """
    order = message.get("o")
    if not isinstance(order, dict):
        return None
    status = str(order.get("X") or "").upper()
    execution = str(order.get("x") or "").upper()
    if status not in ("FILLED", "LIQUIDATED") and execution not in ("FILLED", "LIQUIDATED", "CALCULATED"):
        return None

    liquidation = (
        message.get("e") == "forceOrder"
        or status == "LIQUIDATED"
        or execution in ("LIQUIDATED", "CALCULATED")
        or str(order.get("o") or "").upper() == "LIQUIDATION"
    )
    return ExchangeEvent(
        kind=EventKind.LIQUIDATION if liquidation else EventKind.FILL,
        market_id=str(order.get("s") or ""),
        status=status or execution,
        raw=message,
    )


class ExchangeEventStream:
    """Yields parsed events for one market id (e.g. ``SOLUSDT``), reconnecting on drop."""

    def __init__(self, market_id: str, ws_url: str = DEFAULT_WS_URL, reconnect_delay: float = 5.0):
        self.market_id = market_id
        self.ws_url = ws_url
        self.reconnect_delay = reconnect_delay
        self._session: Optional[ClientSession] = None
        self._ws: Optional[ClientWebSocketResponse] = None
        self._closed = False

    async def events(self) -> AsyncIterator[ExchangeEvent]:
        while not self._closed:
            try:
                self._session = ClientSession()
                self._ws = await self._session.ws_connect(self.ws_url, heartbeat=30)
                logger.info(f"Event stream connected | url={self.ws_url} market={self.market_id}")
                async for msg in self._ws:
                    if msg.type == WSMsgType.TEXT:
                        event = self._handle_text(msg.data)
                        if event is not None:
                            yield event
                    elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR):
                        break
            except (ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"Event stream error | error={e}")
            finally:
                await self._disconnect()

            if not self._closed:
                logger.info(f"Event stream closed, reconnecting in {self.reconnect_delay}s")
                await asyncio.sleep(self.reconnect_delay)

    def _handle_text(self, data: str) -> Optional[ExchangeEvent]:
        try:
            message = json.loads(data)
        except ValueError:
            logger.debug(f"Ignoring non-JSON stream message: {data[:80]}")
            return None
        messages = message if isinstance(message, list) else [message]
        for item in messages:
            if not isinstance(item, dict):
                continue
            event = parse_event(item)
            if event is not None and event.market_id == self.market_id:
                logger.info(f"Exchange event | kind={event.kind.value} market={event.market_id} status={event.status}")
                return event
        return None

    async def _disconnect(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def close(self) -> None:
        self._closed = True
        await self._disconnect()
