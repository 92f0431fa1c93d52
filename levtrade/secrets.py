"""Secrets management: load exchange API credentials from environment or config file.

Priority order:
1. Environment variables: BINANCE_API_KEY, BINANCE_API_SECRET
2. Config file: ~/.levtrade_credentials.json or custom path via ENV LEVTRADE_CONFIG_PATH
"""
import json
import os
from pathlib import Path
from typing import NamedTuple, Optional

from .config import ConfigurationError


class ExchangeCredentials(NamedTuple):
    api_key: str
    api_secret: str


def load_credentials(
    config_path: Optional[str] = None,
) -> ExchangeCredentials:
    """Load exchange credentials from env or config file.

    Args:
        config_path: Optional override path to config file. If not provided,
                     checks LEVTRADE_CONFIG_PATH env var, then ~/.levtrade_credentials.json

    Returns:
        ExchangeCredentials with api_key, api_secret (whitespace stripped)

    Raises:
        ConfigurationError: If credentials are not found or incomplete
    """
    api_key = (os.getenv("BINANCE_API_KEY") or "").strip()
    api_secret = (os.getenv("BINANCE_API_SECRET") or "").strip()

    if api_key and api_secret:
        return ExchangeCredentials(api_key=api_key, api_secret=api_secret)

    if config_path is None:
        config_path = os.getenv("LEVTRADE_CONFIG_PATH")
    if config_path is None:
        config_path = str(Path.home() / ".levtrade_credentials.json")

    config_file = Path(config_path)
    if config_file.exists():
        try:
            with config_file.open("r") as f:
                cfg = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Failed to load credentials from {config_path}: {e}")
        api_key = str(cfg.get("api_key") or api_key).strip()
        api_secret = str(cfg.get("api_secret") or api_secret).strip()

    if not api_key or not api_secret:
        raise ConfigurationError(
            "Missing exchange credentials. Provide via:\n"
            "  - Environment: BINANCE_API_KEY, BINANCE_API_SECRET\n"
            f"  - Config file: {config_path}\n"
            "  - LEVTRADE_CONFIG_PATH env var to override config location"
        )

    return ExchangeCredentials(api_key=api_key, api_secret=api_secret)


def save_credentials(
    config_path: str,
    api_key: str,
    api_secret: str,
) -> None:
    """Save credentials to a config file for later use.

    WARNING: Stores secrets in plaintext. The file is restricted to mode 600
    where the platform supports it.
    """
    cfg_file = Path(config_path)
    cfg_file.parent.mkdir(parents=True, exist_ok=True)

    with cfg_file.open("w") as f:
        json.dump({"api_key": api_key, "api_secret": api_secret}, f, indent=2)

    try:
        cfg_file.chmod(0o600)
    except OSError:
        pass  # Windows doesn't support chmod
