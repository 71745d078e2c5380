"""
Treasury TWAP SDK

Off-chain TWAP execution for treasury transfers on Polygon via 1inch.

Architecture:
  - Plans and tranches live OFF-CHAIN in a JSON store (TrancheManager)
  - Each tranche executes as a 1inch Limit Order Protocol v4 order
    (signed with EIP-712) or as an immediate aggregator swap
  - The keeper (TWAPExecutor) polls, gates, executes and tracks fills

Tranche sizes:
  - Equal split: remainder base units go one each to the first tranches
  - Fixed size: tranches of `tranche_size`, last one partial

Usage:
    from treasury_sdk import TrancheManager, OneInchClient, LimitOrderSigner, TWAPExecutor

    manager = TrancheManager("tranches.json")
    plan = manager.create_plan(137, maker, USDC, WPOL, 20_000_000,
                               interval_seconds=120, tranche_count=4)

    api = OneInchClient(api_key)
    signer = LimitOrderSigner(private_key)
    TWAPExecutor(manager, api, signer=signer).run_once()
"""

from .tranche_types import ExecutionMode, Tranche, TrancheStatus, TWAPPlan
from .tranche_sizes import (
    MIN_INTERVAL_SECONDS,
    split_amount,
    split_by_tranche_size,
    schedule,
    validate_split,
    format_split,
)
from .tranche_manager import TrancheManager, TrancheStateError, TrancheStoreError
from .oneinch_client import OneInchAPIError, OneInchClient
from .chain_client import ChainClient, ChainRPCError
from .limit_order import LimitOrder, LimitOrderSigner, MakerTraits, SignedOrder, build_order
from .yield_gate import YieldGate, YieldOracle
from .wallet import TransactionFailed, Wallet
from .executor import TWAPExecutor
from .config import Config, load_config, mask_secret
from .tokens import POLYGON_TOKENS, Token, format_units, parse_units, resolve_token

__version__ = "0.1.0"
__all__ = [
    # Types
    "ExecutionMode", "Tranche", "TrancheStatus", "TWAPPlan", "Token",
    # Core
    "TrancheManager", "OneInchClient", "ChainClient", "LimitOrderSigner",
    "LimitOrder", "SignedOrder", "MakerTraits", "build_order",
    "YieldGate", "YieldOracle", "Wallet", "TWAPExecutor",
    # Errors
    "TrancheStateError", "TrancheStoreError", "OneInchAPIError",
    "ChainRPCError", "TransactionFailed",
    # Tranche sizes
    "MIN_INTERVAL_SECONDS", "split_amount", "split_by_tranche_size",
    "schedule", "validate_split", "format_split",
    # Config / tokens
    "Config", "load_config", "mask_secret",
    "POLYGON_TOKENS", "resolve_token", "parse_units", "format_units",
]
