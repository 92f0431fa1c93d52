"""Process bootstrap: wire the engine to the exchange and run it.

Usage:
    python -m levtrade.bootstrap --config config.yaml
"""
import argparse
import asyncio
import sys
from typing import List, Optional, Tuple

from .ccxt_gateway import CcxtGateway
from .config import ConfigurationError, EngineConfig
from .engine import PositionEngine
from .logging_setup import logger, setup_logging
from .notifier import LogNotifier, NotificationDispatcher, Notifier, TelegramNotifier
from .scheduler import EngineRunner
from .secrets import ExchangeCredentials, load_credentials
from .ws_client import DEFAULT_WS_URL, TESTNET_WS_URL, ExchangeEventStream


def build_notifier(config: EngineConfig) -> NotificationDispatcher:
    notifiers: List[Notifier] = [LogNotifier()]
    cfg = config.notifier
    if cfg.enabled:
        telegram = TelegramNotifier(cfg.telegram_token, cfg.telegram_chat_id)
        if telegram.enabled:
            notifiers.append(telegram)
        else:
            logger.warning("Telegram notifier disabled: telegram_token/telegram_chat_id not set")
    return NotificationDispatcher(notifiers, config.exchange.symbol)


def build_engine(config: EngineConfig, credentials: ExchangeCredentials) -> Tuple[PositionEngine, CcxtGateway]:
    """Create the ccxt gateway and an engine around it (not yet connected)."""
    gateway = CcxtGateway(config.exchange, credentials)
    engine = PositionEngine(gateway, config, notifier=build_notifier(config))
    return engine, gateway


async def run(config_path: str, credentials_path: Optional[str] = None) -> None:
    """Load config and credentials, connect, and run until cancelled."""
    config = EngineConfig.from_yaml(config_path).validate()
    setup_logging(log_file=config.logging.log_file, level=config.logging.log_level, symbol=config.exchange.symbol)
    credentials = load_credentials(credentials_path)

    engine, gateway = build_engine(config, credentials)
    try:
        await gateway.connect()
        stream = ExchangeEventStream(
            gateway.market_id,
            ws_url=TESTNET_WS_URL if config.exchange.testnet else DEFAULT_WS_URL,
        )
        runner = EngineRunner(engine, config.schedule.reconcile_interval, stream)
        try:
            await runner.start()
        finally:
            await runner.stop()
    finally:
        await engine.notifier.close()
        await gateway.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Leveraged position lifecycle engine")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument("--credentials", default=None, help="Path to credentials JSON")
    args = parser.parse_args()

    try:
        asyncio.run(run(args.config, args.credentials))
    except (ConfigurationError, FileNotFoundError) as e:
        logger.error(f"Startup failed: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
