"""loguru sinks for the engine: a rotating main log, an error log and the console.

Every record carries the traded symbol (``extra["symbol"]``) so logs from
several engine processes can be merged and filtered.
"""
import sys
from pathlib import Path
from typing import Optional

from loguru import logger as _logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[symbol]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def setup_logging(
    log_file: str = "levtrade.log",
    level: str = "INFO",
    enable_console: bool = True,
    symbol: Optional[str] = None,
    rotation: str = "50 MB",
    retention: str = "14 days",
) -> None:
    """Replace loguru's default handler with the engine's sinks.

    Args:
        log_file: Main log path; errors also go to ``<stem>.errors<suffix>`` beside it
        level: Minimum level for the main log and the console
        enable_console: Also log to stdout
        symbol: Symbol stamped on every record ("-" when unset)
    """
    _logger.remove()
    _logger.configure(extra={"symbol": symbol or "-"})

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    _logger.add(str(log_path), format=LOG_FORMAT, level=level, rotation=rotation, retention=retention)

    error_path = log_path.with_name(f"{log_path.stem}.errors{log_path.suffix or '.log'}")
    _logger.add(
        str(error_path),
        format=LOG_FORMAT,
        level="ERROR",
        rotation=rotation,
        retention=retention,
        backtrace=True,
    )

    if enable_console:
        _logger.add(sys.stdout, format=LOG_FORMAT, level=level, colorize=True)


logger = _logger
