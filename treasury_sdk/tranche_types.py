"""
Treasury TWAP SDK - Data Types

Tranche and TWAP plan structures for the off-chain tranche store.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
import hashlib
import json
import secrets
import time


class TrancheStatus(Enum):
    """Tranche lifecycle status"""
    PENDING = "pending"
    SUBMITTED = "submitted"
    FILLED = "filled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"


# States the executor never moves a tranche out of (EXPIRED only via requeue)
TERMINAL_STATUSES = (
    TrancheStatus.FILLED,
    TrancheStatus.CANCELLED,
    TrancheStatus.FAILED,
    TrancheStatus.EXPIRED,
)


class ExecutionMode(Enum):
    """How a tranche is filled: resting LOP order or immediate aggregator swap"""
    LIMIT = "limit"
    SWAP = "swap"


def _opt_int(value) -> Optional[int]:
    return None if value is None else int(value)


@dataclass
class Tranche:
    """
    Tranche - one time-gated portion of a larger transfer.

    Structure:
      - index: Ordinal position in the split (0..N-1)
      - source_amount: Source token base units assigned to this tranche
      - target_amount_estimate: Quote-derived counter-asset estimate at build time
      - eligible_at: Unix timestamp = plan start + index * interval
      - status: Lifecycle status (filled == status FILLED)
    """
    index: int
    source_amount: int
    eligible_at: int
    target_amount_estimate: int = 0

    status: TrancheStatus = TrancheStatus.PENDING

    # Order tracking (limit mode)
    order_hash: str = ""
    signature: str = ""
    order_amount: int = 0
    maker_traits: int = 0
    submitted_at: Optional[int] = None
    expires_at: Optional[int] = None
    executed_quote: int = 0

    # Fill tracking
    filled_amount: int = 0
    filled_at: Optional[int] = None
    tx_hash: str = ""

    # Retry bookkeeping
    attempts: int = 0
    next_attempt_at: Optional[int] = None
    last_error: str = ""

    @property
    def filled(self) -> bool:
        return self.status == TrancheStatus.FILLED

    @property
    def remaining_amount(self) -> int:
        return self.source_amount - self.filled_amount

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_eligible(self, now: Optional[int] = None) -> bool:
        """Check if the tranche's time gate has opened."""
        now = int(time.time()) if now is None else now
        return now >= self.eligible_at

    def is_order_expired(self, now: Optional[int] = None) -> bool:
        if self.expires_at is None:
            return False
        now = int(time.time()) if now is None else now
        return now > self.expires_at

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization (amounts as strings)."""
        return {
            "index": self.index,
            "source_amount": str(self.source_amount),
            "target_amount_estimate": str(self.target_amount_estimate),
            "eligible_at": self.eligible_at,
            "status": self.status.value,
            "filled": self.filled,
            "order_hash": self.order_hash,
            "signature": self.signature,
            "order_amount": str(self.order_amount),
            "maker_traits": str(self.maker_traits),
            "submitted_at": self.submitted_at,
            "expires_at": self.expires_at,
            "executed_quote": str(self.executed_quote),
            "filled_amount": str(self.filled_amount),
            "filled_at": self.filled_at,
            "tx_hash": self.tx_hash,
            "attempts": self.attempts,
            "next_attempt_at": self.next_attempt_at,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Tranche":
        """Create Tranche from dictionary."""
        return cls(
            index=int(data["index"]),
            source_amount=int(data["source_amount"]),
            eligible_at=int(data["eligible_at"]),
            target_amount_estimate=int(data.get("target_amount_estimate", 0)),
            status=TrancheStatus(data.get("status", "pending")),
            order_hash=data.get("order_hash", ""),
            signature=data.get("signature", ""),
            order_amount=int(data.get("order_amount", 0)),
            maker_traits=int(data.get("maker_traits", 0)),
            submitted_at=_opt_int(data.get("submitted_at")),
            expires_at=_opt_int(data.get("expires_at")),
            executed_quote=int(data.get("executed_quote", 0)),
            filled_amount=int(data.get("filled_amount", 0)),
            filled_at=_opt_int(data.get("filled_at")),
            tx_hash=data.get("tx_hash", ""),
            attempts=int(data.get("attempts", 0)),
            next_attempt_at=_opt_int(data.get("next_attempt_at")),
            last_error=data.get("last_error", ""),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, json_str: str) -> "Tranche":
        return cls.from_dict(json.loads(json_str))


@dataclass
class TWAPPlan:
    """
    TWAP plan - the persisted set of tranches for one transfer.

    Structure:
      - src_token / dst_token: Token addresses (maker asset / taker asset)
      - total_amount: Source token base units across all tranches
      - interval_seconds: Spacing between tranche eligibility
      - mode: LIMIT (LOP v4 order per tranche) or SWAP (aggregator swap)
      - slippage_bps: Discount applied to the fresh quote for takingAmount
      - order_ttl_seconds: Limit order lifetime after eligible_at
      - min_yield_bps: Yield gate threshold for the target asset (0 = off)
    """
    chain_id: int
    maker: str
    src_token: str
    dst_token: str
    total_amount: int
    interval_seconds: int
    start_ts: int

    mode: ExecutionMode = ExecutionMode.LIMIT
    slippage_bps: int = 50
    order_ttl_seconds: int = 3600
    min_yield_bps: int = 0

    active: bool = True
    created_ts: int = field(default_factory=lambda: int(time.time()))
    tranches: List[Tranche] = field(default_factory=list)

    plan_id: str = ""

    def __post_init__(self):
        if not self.plan_id:
            self.plan_id = self.compute_plan_id()

    def compute_plan_id(self) -> str:
        """Compute plan ID from core fields plus a random nonce."""
        data = f"{self.chain_id}:{self.maker.lower()}:{self.src_token.lower()}:" \
               f"{self.dst_token.lower()}:{self.total_amount}:{self.interval_seconds}:" \
               f"{self.start_ts}:{self.created_ts}:{secrets.token_hex(8)}"
        return hashlib.sha256(data.encode()).hexdigest()[:16]

    @property
    def tranche_count(self) -> int:
        return len(self.tranches)

    @property
    def filled_count(self) -> int:
        return sum(1 for t in self.tranches if t.filled)

    @property
    def executed_amount(self) -> int:
        """Source amount filled so far, partial fills included."""
        return sum(t.filled_amount for t in self.tranches)

    @property
    def is_complete(self) -> bool:
        """True once no tranche can change state any more."""
        return bool(self.tranches) and all(t.is_terminal for t in self.tranches)

    def get_tranche(self, index: int) -> Optional[Tranche]:
        if 0 <= index < len(self.tranches):
            return self.tranches[index]
        return None

    def progress(self) -> dict:
        counts = {status.value: 0 for status in TrancheStatus}
        for t in self.tranches:
            counts[t.status.value] += 1

        percentage = 0.0
        if self.total_amount:
            percentage = round(self.executed_amount * 100 / self.total_amount, 1)

        return {
            "filled_tranches": self.filled_count,
            "total_tranches": self.tranche_count,
            "executed_amount": str(self.executed_amount),
            "total_amount": str(self.total_amount),
            "percentage": percentage,
            "by_status": counts,
        }

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "plan_id": self.plan_id,
            "chain_id": self.chain_id,
            "maker": self.maker,
            "src_token": self.src_token,
            "dst_token": self.dst_token,
            "total_amount": str(self.total_amount),
            "tranche_count": self.tranche_count,
            "interval_seconds": self.interval_seconds,
            "start_ts": self.start_ts,
            "mode": self.mode.value,
            "slippage_bps": self.slippage_bps,
            "order_ttl_seconds": self.order_ttl_seconds,
            "min_yield_bps": self.min_yield_bps,
            "active": self.active,
            "created_ts": self.created_ts,
            "tranches": [t.to_dict() for t in self.tranches],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TWAPPlan":
        """Create TWAPPlan from dictionary."""
        return cls(
            chain_id=int(data["chain_id"]),
            maker=data["maker"],
            src_token=data["src_token"],
            dst_token=data["dst_token"],
            total_amount=int(data["total_amount"]),
            interval_seconds=int(data["interval_seconds"]),
            start_ts=int(data["start_ts"]),
            mode=ExecutionMode(data.get("mode", "limit")),
            slippage_bps=int(data.get("slippage_bps", 50)),
            order_ttl_seconds=int(data.get("order_ttl_seconds", 3600)),
            min_yield_bps=int(data.get("min_yield_bps", 0)),
            active=bool(data.get("active", True)),
            created_ts=int(data.get("created_ts", time.time())),
            tranches=[Tranche.from_dict(t) for t in data.get("tranches", [])],
            plan_id=data.get("plan_id", ""),
        )

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, json_str: str) -> "TWAPPlan":
        """Create TWAPPlan from JSON string."""
        return cls.from_dict(json.loads(json_str))
