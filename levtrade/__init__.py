"""
Leveraged Position Lifecycle & Risk-Management Engine.

Manages a single open position on a leveraged margin exchange from signal
to close:
- Opens, averages into (DCA) and reverses positions on trading signals
- Keeps exactly one exchange-side stop and take-profit order installed
- Escalates risk phases (Initial -> BreakEven -> TrailingAggressive) with a
  ratchet-only trailing stop
- Reconciles local state against the exchange, which is authoritative
- Bounded retries with jittered backoff and a request budget
- Serializes all state mutation per symbol with an asyncio critical section
- Structured logging via loguru, Telegram alerts via aiohttp
- Configuration-driven (YAML)

Core Modules:
    position: Position state store and risk phases
    risk: Protective-level arithmetic and the risk phase machine
    safety_orders: Stop/target installation
    reconciler: Exchange reconciliation
    dca: Averaging-in controller
    engine: Orchestrator (public entry points)
    gateway: Exchange gateway boundary and simulated exchange
    ccxt_gateway: ccxt-backed gateway
    retry: Retry/backoff layer and request throttle
    scheduler: Critical section, delayed retries, timers and runner
    notifier: Telegram and log notifications
    config: Configuration loading and validation
    secrets: Credential management

Example:
    >>> from levtrade.config import EngineConfig
    >>> from levtrade.engine import PositionEngine
    >>> from levtrade.gateway import InMemoryGateway
    >>>
    >>> engine = PositionEngine(InMemoryGateway(), EngineConfig())
    >>> # await engine.handle_signal("buy", price=100, amount=1)
"""

__version__ = "0.1.0"
__all__ = [
    "position",
    "risk",
    "safety_orders",
    "reconciler",
    "dca",
    "engine",
    "gateway",
    "ccxt_gateway",
    "retry",
    "scheduler",
    "notifier",
    "ws_client",
    "pnl",
    "config",
    "secrets",
    "bootstrap",
]
