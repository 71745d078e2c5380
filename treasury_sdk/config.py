"""
Treasury TWAP SDK - Configuration

Precedence: Config defaults < JSON config file < environment (.env loaded
with python-dotenv).

Environment variables:
  ONEINCH_API_KEY          1inch Developer Portal key
  POLYGON_RPC_URL          JSON-RPC endpoint
  PRIVATE_KEY              maker wallet key (never logged)
  TREASURY_STATE_FILE      tranche store path
  TREASURY_POLL_INTERVAL   keeper poll interval, seconds
  TREASURY_CHAIN_ID        chain id (137 = Polygon)
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv

log = logging.getLogger(__name__)

SECRET_FIELDS = ("oneinch_api_key", "private_key")

ENV_VARS = {
    "ONEINCH_API_KEY": "oneinch_api_key",
    "POLYGON_RPC_URL": "polygon_rpc",
    "PRIVATE_KEY": "private_key",
    "TREASURY_STATE_FILE": "state_file",
    "TREASURY_POLL_INTERVAL": "poll_interval",
    "TREASURY_CHAIN_ID": "chain_id",
}


def mask_secret(secret: str, visible_prefix: int = 6, visible_suffix: int = 4) -> str:
    """Mask a secret for safe logging. Never log full keys."""
    if not secret or len(secret) <= visible_prefix + visible_suffix:
        return "***"
    return f"{secret[:visible_prefix]}...{secret[-visible_suffix:]}"


@dataclass
class Config:
    # 1inch
    oneinch_api_key: str = ""
    oneinch_base_url: str = "https://api.1inch.dev"
    oneinch_min_interval: float = 1.0  # free tier: 1 req/s

    # Chain
    chain_id: int = 137
    polygon_rpc: str = "https://polygon-bor-rpc.publicnode.com"
    private_key: str = ""

    # Keeper
    state_file: str = "tranches.json"
    poll_interval: int = 30  # seconds
    max_attempts: int = 5
    backoff_base: int = 30
    max_backoff: int = 900
    max_quote_drift_bps: Optional[int] = None
    requeue_expired: bool = False

    # Server
    http_host: str = "127.0.0.1"
    http_port: int = 8080

    log_level: str = "INFO"

    def to_dict(self, redact: bool = True) -> dict:
        data = asdict(self)
        if redact:
            for name in SECRET_FIELDS:
                if data.get(name):
                    data[name] = mask_secret(data[name])
        return data

    def validate(self, need_key: bool = False, need_signer: bool = False):
        """
        Raises:
            ValueError: If a required setting is missing or out of range
        """
        if need_key and not self.oneinch_api_key:
            raise ValueError("ONEINCH_API_KEY is not set")
        if need_signer and not self.private_key:
            raise ValueError("PRIVATE_KEY is not set")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.max_quote_drift_bps is not None and not 0 <= self.max_quote_drift_bps < 10_000:
            raise ValueError("max_quote_drift_bps must be in [0, 10000)")


def _coerce(field_type, value):
    """Convert a JSON/env value to the dataclass field's type."""
    if value is None:
        return None
    if field_type is bool:
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if field_type is int:
        return int(value)
    if field_type is float:
        return float(value)
    if field_type == Optional[int]:
        return None if value == "" else int(value)
    return str(value)


def load_config(path: Optional[str] = None, env_file: Optional[str] = None,
                use_env: bool = True) -> Config:
    """
    Build the effective configuration.

    Args:
        path: Optional JSON config file (missing file = defaults)
        env_file: .env file to load (default: search from the cwd)
        use_env: Apply environment overrides

    Raises:
        ValueError: If the config file is not valid JSON or has unknown keys
    """
    config = Config()
    types = {f.name: f.type for f in fields(Config)}

    if path:
        config_path = Path(path)
        if config_path.exists():
            try:
                data = json.loads(config_path.read_text())
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid config file {config_path}: {e}") from e

            unknown = sorted(set(data) - set(types))
            if unknown:
                raise ValueError(f"Unknown config keys in {config_path}: {', '.join(unknown)}")
            for key, value in data.items():
                setattr(config, key, _coerce(types[key], value))
            log.debug(f"Loaded config from {config_path}")
        else:
            log.warning(f"Config file {config_path} not found, using defaults")

    if use_env:
        load_dotenv(env_file or find_dotenv(usecwd=True))
        for env_name, key in ENV_VARS.items():
            value = os.environ.get(env_name)
            if value:
                setattr(config, key, _coerce(types[key], value))

    return config
