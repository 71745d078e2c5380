"""
Treasury TWAP SDK - Yield Gate

Off-chain eligibility policy for tranche execution:
  - YieldOracle: yield rates (basis points) per (chain, asset)
  - YieldGate: decides whether a tranche may execute now
"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .tranche_types import Tranche, TWAPPlan

log = logging.getLogger(__name__)

# Limits (basis points)
MAX_YIELD_BPS = 2000          # 20%
MAX_THRESHOLD_BPS = 1000      # 10%
DEFAULT_THRESHOLD_BPS = 380   # 3.8%

DEFAULT_CHAINS = {
    1: "Ethereum",
    137: "Polygon",
    11155111: "Sepolia",
    128123: "Etherlink Testnet",
}

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Gate reasons
REASON_NOT_ACTIVE = "Strategy not active"
REASON_COMPLETE = "Strategy complete"
REASON_TOO_SOON = "Too soon for next execution"
REASON_BACKOFF = "Backing off after failure"
REASON_YIELD_LOW = "Yield below threshold"
REASON_WAITING = "Waiting for open orders"
REASON_READY = "Ready for execution"


@dataclass
class YieldSource:
    chain_id: int
    asset: str
    yield_bps: int
    active: bool = True
    updated_ts: int = 0

    def to_dict(self) -> dict:
        return {
            "chain_id": self.chain_id,
            "asset": self.asset,
            "yield_bps": self.yield_bps,
            "active": self.active,
            "updated_ts": self.updated_ts,
        }


class YieldOracle:
    """
    In-memory yield table.

    Usage:
        oracle = YieldOracle()
        oracle.add_asset(STMATIC, "stMATIC")
        oracle.set_yield(137, STMATIC, 420)
        chain_id, bps = oracle.best_yield(STMATIC)
    """

    def __init__(self, global_threshold_bps: int = DEFAULT_THRESHOLD_BPS,
                 chains: Optional[Dict[int, str]] = None):
        self.global_threshold_bps = 0
        self.set_global_threshold(global_threshold_bps)
        self.chains: Dict[int, str] = dict(DEFAULT_CHAINS if chains is None else chains)
        self.assets: Dict[str, str] = {}
        self.sources: Dict[Tuple[int, str], YieldSource] = {}

    def add_chain(self, chain_id: int, name: str):
        self.chains[int(chain_id)] = name

    def add_asset(self, asset: str, symbol: str = ""):
        if not asset or asset.lower() == ZERO_ADDRESS:
            raise ValueError("Invalid asset address")
        self.assets[asset.lower()] = symbol

    def set_global_threshold(self, threshold_bps: int):
        if threshold_bps < 0 or threshold_bps > MAX_THRESHOLD_BPS:
            raise ValueError("Threshold too high (max 10%)")
        self.global_threshold_bps = int(threshold_bps)

    def set_yield(self, chain_id: int, asset: str, yield_bps: int,
                  now: Optional[int] = None) -> YieldSource:
        """
        Record the current yield for an asset on a chain.

        Raises:
            ValueError: Rate out of range, unsupported chain or asset
        """
        if yield_bps < 0 or yield_bps > MAX_YIELD_BPS:
            raise ValueError("Yield rate too high (max 20%)")
        if chain_id not in self.chains:
            raise ValueError("Chain not supported")
        if asset.lower() not in self.assets:
            raise ValueError("Asset not supported")

        key = (int(chain_id), asset.lower())
        source = self.sources.get(key)
        if source is None:
            source = YieldSource(chain_id=int(chain_id), asset=asset, yield_bps=0)
            self.sources[key] = source
        source.yield_bps = int(yield_bps)
        source.active = True
        source.updated_ts = int(time.time()) if now is None else now
        log.debug(f"Yield {asset[:10]}... on chain {chain_id}: {yield_bps} bps")
        return source

    def set_source_active(self, chain_id: int, asset: str, active: bool):
        source = self.sources.get((int(chain_id), asset.lower()))
        if source is None:
            raise ValueError("Unknown yield source")
        source.active = active

    def get_yield(self, chain_id: int, asset: str) -> Optional[YieldSource]:
        return self.sources.get((int(chain_id), asset.lower()))

    def is_above_threshold(self, chain_id: int, asset: str,
                           threshold_bps: Optional[int] = None) -> bool:
        """Active source at or above the threshold (global one by default)."""
        source = self.get_yield(chain_id, asset)
        if source is None or not source.active:
            return False
        threshold = self.global_threshold_bps if threshold_bps is None else threshold_bps
        return source.yield_bps >= threshold

    def best_yield(self, asset: str) -> Tuple[Optional[int], int]:
        """
        Highest active yield for an asset across chains.

        Returns:
            (chain_id, yield_bps), or (None, 0) if no active source
        """
        best_chain, best_bps = None, 0
        for (chain_id, key), source in self.sources.items():
            if key != asset.lower() or not source.active:
                continue
            if best_chain is None or source.yield_bps > best_bps:
                best_chain, best_bps = chain_id, source.yield_bps
        return best_chain, best_bps


class YieldGate:
    """
    Tranche execution gate.

    Checks, in order: plan active, plan complete, time gate, failure
    backoff, then yield threshold. A plan with min_yield_bps == 0 skips
    the yield check.
    """

    def __init__(self, oracle: Optional[YieldOracle] = None):
        self.oracle = oracle

    def can_execute(self, plan: TWAPPlan, tranche: Optional[Tranche],
                    now: Optional[int] = None) -> Tuple[bool, str]:
        now = int(time.time()) if now is None else now

        if not plan.active:
            return False, REASON_NOT_ACTIVE
        if plan.is_complete:
            return False, REASON_COMPLETE
        if tranche is None or tranche.is_terminal:
            return False, REASON_WAITING
        if not tranche.is_eligible(now):
            return False, REASON_TOO_SOON
        if tranche.next_attempt_at is not None and now < tranche.next_attempt_at:
            return False, REASON_BACKOFF

        if plan.min_yield_bps > 0:
            if self.oracle is None:
                return False, REASON_YIELD_LOW
            _, best_bps = self.oracle.best_yield(plan.dst_token)
            if best_bps < plan.min_yield_bps:
                return False, REASON_YIELD_LOW

        return True, REASON_READY
