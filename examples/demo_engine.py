"""End-to-end demo of the position engine against the simulated exchange.

Shows:
1. Structured logging
2. Opening a long on a signal, with stop/target installed
3. Break-even and trailing escalation as the price rises
4. The trailing stop firing and the engine noticing the external close
5. A reversal signal flipping into a short, then a manual close
"""
import asyncio
import sys
from decimal import Decimal
from pathlib import Path

# Add parent directory to path so we can import the levtrade package
sys.path.insert(0, str(Path(__file__).parent.parent))

from levtrade.config import EngineConfig
from levtrade.engine import PositionEngine
from levtrade.gateway import InMemoryGateway
from levtrade.logging_setup import logger, setup_logging


async def main():
    """Run the demo against InMemoryGateway."""
    setup_logging(log_file="logs/demo.log", level="INFO", enable_console=True)
    logger.info("=== Position Engine Demo ===")

    config_file = Path(__file__).parent.parent / "config.yaml"
    if config_file.exists():
        config = EngineConfig.from_yaml(str(config_file)).validate()
        logger.info(f"Loaded config from {config_file}")
    else:
        config = EngineConfig().validate()
        logger.info("Using default configuration")

    # the demo drives the checks itself
    config.schedule.position_check_interval = 3600
    config.schedule.order_update_interval = 0

    gateway = InMemoryGateway(symbol=config.exchange.symbol, price=Decimal("100"))
    engine = PositionEngine(gateway, config)
    await engine.start()

    try:
        outcome = await engine.handle_signal("buy", price=100, amount=1)
        logger.info(f"Signal outcome: {outcome.value} | {engine.get_active_position()}")

        # price observed by the engine before the exchange would fill the target
        for price in ("100.5", "101.10", "101.64", "102.5", "102.3"):
            gateway.set_price(Decimal(price), trigger=False)
            await engine.run_cycle()
            view = engine.get_active_position()
            logger.info(f"Price {price}: phase={view.risk_phase.name} stop={view.stop_price} target={view.target_price}")

        fired = gateway.set_price(Decimal("102.0"))
        logger.info(f"Exchange triggered {len(fired)} protective order(s)")
        await engine.run_cycle()
        logger.info(f"After stop: {engine.get_active_position()}")

        await engine.handle_signal("buy", price=102, amount=1)
        outcome = await engine.handle_signal("sell", price=102, amount=2)
        logger.info(f"Reversal outcome: {outcome.value} | {engine.get_active_position()}")

        gateway.set_price(Decimal("101.5"), trigger=False)
        result = await engine.close_position(reason="demo complete")
        if result is not None:
            logger.info(f"Closed: pnl={result.realized_pnl} ({result.pnl_percent:.2f}%) balance change={result.balance_change}")

        logger.info(f"Final balance: {await engine.get_account_balance()}")
        logger.info("=== Demo Complete ===")
    finally:
        await engine.stop()


if __name__ == "__main__":
    asyncio.run(main())
