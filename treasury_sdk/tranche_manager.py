"""
Treasury TWAP SDK - Tranche Manager

Canonical store for TWAP plans and their tranches.
Every state transition is checkpointed to disk, so a restarted keeper
resumes exactly where the previous one stopped.
"""

import json
import logging
import os
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from .tranche_sizes import (
    DEFAULT_MAX_TRANCHES,
    schedule,
    split_amount,
    split_by_tranche_size,
)
from .tokens import is_address
from .tranche_types import ExecutionMode, Tranche, TrancheStatus, TWAPPlan

log = logging.getLogger(__name__)

STORE_VERSION = "1.0"


class TrancheStoreError(Exception):
    """Tranche store could not be read."""


class TrancheStateError(Exception):
    """Illegal tranche lifecycle transition or unknown plan/tranche."""


class TrancheManager:
    """
    Off-chain tranche manager.

    Usage:
        manager = TrancheManager(storage_path="tranches.json")

        # Create a plan: 20 USDC in 4 tranches, 2 minutes apart
        plan = manager.create_plan(
            chain_id=137,
            maker="0x...",
            src_token=USDC,
            dst_token=WPOL,
            total_amount=20_000_000,
            tranche_count=4,
            interval_seconds=120,
        )

        # Keeper side
        tranche = manager.next_due_tranche(plan.plan_id)
        manager.mark_submitted(plan.plan_id, tranche.index, order_hash, signature, expires_at)
        manager.mark_filled(plan.plan_id, tranche.index)
    """

    def __init__(self, storage_path: str = "tranches.json",
                 max_attempts: int = 5,
                 backoff_base: int = 30,
                 max_backoff: int = 900):
        """
        Initialize tranche manager.

        Args:
            storage_path: Path of the JSON store
            max_attempts: Failed attempts before a tranche is marked FAILED
            backoff_base: Seconds to wait after the first failure
            max_backoff: Upper bound on the retry delay
        """
        self.storage_path = Path(storage_path)
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.max_backoff = max_backoff
        self.plans: Dict[str, TWAPPlan] = {}
        self._load_plans()

    # ═══════════════════════════════════════════════════════════════════════
    # PERSISTENCE
    # ═══════════════════════════════════════════════════════════════════════

    def _load_plans(self):
        """Load plans from storage."""
        self.plans = {}
        if not self.storage_path.exists():
            return

        try:
            data = json.loads(self.storage_path.read_text())
            for plan_data in data.get("plans", []):
                plan = TWAPPlan.from_dict(plan_data)
                self.plans[plan.plan_id] = plan
        except (ValueError, KeyError, TypeError) as e:
            raise TrancheStoreError(f"Failed to load {self.storage_path}: {e}") from e

    def _save_plans(self):
        """Save plans to storage (write-then-rename)."""
        data = {
            "version": STORE_VERSION,
            "updated_ts": int(time.time()),
            "plans": [plan.to_dict() for plan in self.plans.values()],
        }
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)

        tmp_path = self.storage_path.with_name(self.storage_path.name + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2))
        os.replace(tmp_path, self.storage_path)

    def reload(self):
        """Re-read the store (e.g. after another process wrote it)."""
        self._load_plans()

    # ═══════════════════════════════════════════════════════════════════════
    # PLANS
    # ═══════════════════════════════════════════════════════════════════════

    def create_plan(self,
                    chain_id: int,
                    maker: str,
                    src_token: str,
                    dst_token: str,
                    total_amount: int,
                    interval_seconds: int,
                    tranche_count: Optional[int] = None,
                    tranche_size: Optional[int] = None,
                    start_ts: Optional[int] = None,
                    mode: ExecutionMode = ExecutionMode.LIMIT,
                    slippage_bps: int = 50,
                    order_ttl_seconds: int = 3600,
                    min_yield_bps: int = 0,
                    quote_fn: Optional[Callable[[int], int]] = None) -> TWAPPlan:
        """
        Create a new TWAP plan.

        Exactly one of tranche_count / tranche_size must be given.

        Args:
            chain_id: Chain the orders live on
            maker: Maker wallet address
            src_token: Token sold (maker asset)
            dst_token: Token bought (taker asset)
            total_amount: Source base units to transfer
            interval_seconds: Spacing between tranches
            tranche_count: Split into N equal tranches
            tranche_size: Split into fixed-size tranches (last one partial)
            start_ts: First tranche eligibility (default: now)
            mode: LIMIT or SWAP
            slippage_bps: Discount on the fresh quote for the limit price
            order_ttl_seconds: Limit order lifetime after eligible_at
            min_yield_bps: Yield gate threshold (0 disables the gate)
            quote_fn: Optional callable(source_amount) -> target estimate

        Returns:
            Created plan
        """
        if (tranche_count is None) == (tranche_size is None):
            raise ValueError("Specify exactly one of tranche_count or tranche_size")
        if not 0 <= slippage_bps < 10_000:
            raise ValueError(f"Slippage must be in [0, 10000) bps, got {slippage_bps}")
        if order_ttl_seconds <= 0:
            raise ValueError("Order TTL must be positive")
        if not is_address(maker):
            raise ValueError(f"Invalid maker address: {maker}")
        if src_token.lower() == dst_token.lower():
            raise ValueError("Source and target token must differ")

        if tranche_count is not None:
            amounts = split_amount(total_amount, tranche_count)
        else:
            amounts = split_by_tranche_size(total_amount, tranche_size)

        if len(amounts) > DEFAULT_MAX_TRANCHES:
            raise ValueError(f"Requires {len(amounts)} tranches (max {DEFAULT_MAX_TRANCHES})")

        start_ts = int(time.time()) if start_ts is None else int(start_ts)
        eligible = schedule(start_ts, len(amounts), interval_seconds)

        tranches = []
        for index, (amount, eligible_at) in enumerate(zip(amounts, eligible)):
            estimate = int(quote_fn(amount)) if quote_fn else 0
            tranches.append(Tranche(
                index=index,
                source_amount=amount,
                eligible_at=eligible_at,
                target_amount_estimate=estimate,
            ))

        plan = TWAPPlan(
            chain_id=chain_id,
            maker=maker,
            src_token=src_token,
            dst_token=dst_token,
            total_amount=total_amount,
            interval_seconds=interval_seconds,
            start_ts=start_ts,
            mode=mode,
            slippage_bps=slippage_bps,
            order_ttl_seconds=order_ttl_seconds,
            min_yield_bps=min_yield_bps,
            tranches=tranches,
        )
        if plan.plan_id in self.plans:
            raise TrancheStateError(f"Plan {plan.plan_id} already exists")

        self.plans[plan.plan_id] = plan
        self._save_plans()

        log.info(f"Plan {plan.plan_id} created: {len(tranches)} tranches, "
                 f"{total_amount} units every {interval_seconds}s ({mode.value})")
        return plan

    def get_plan(self, plan_id: str) -> Optional[TWAPPlan]:
        """Get plan by ID."""
        return self.plans.get(plan_id)

    def list_plans(self, active: Optional[bool] = None,
                   include_complete: bool = True) -> List[TWAPPlan]:
        """
        List plans with optional filtering.

        Args:
            active: Filter by active flag
            include_complete: Include plans with no open tranches

        Returns:
            Plans sorted by creation time
        """
        result = []
        for plan in self.plans.values():
            if active is not None and plan.active != active:
                continue
            if not include_complete and plan.is_complete:
                continue
            result.append(plan)

        result.sort(key=lambda p: p.created_ts)
        return result

    def cancel_plan(self, plan_id: str) -> List[Tranche]:
        """
        Cancel a plan and every open tranche in it.

        Returns:
            Tranches whose limit orders were live at the time of
            cancellation (they stay live on the orderbook)

        A swap already broadcast cannot be withdrawn; its tranche stays
        SUBMITTED until the receipt settles it.
        """
        plan = self._require_plan(plan_id)
        plan.active = False

        live_orders = []
        for tranche in plan.tranches:
            if tranche.status == TrancheStatus.SUBMITTED and not tranche.order_hash:
                continue
            if tranche.status == TrancheStatus.SUBMITTED:
                live_orders.append(tranche)
            if tranche.status in (TrancheStatus.PENDING, TrancheStatus.SUBMITTED):
                tranche.status = TrancheStatus.CANCELLED

        self._save_plans()
        log.info(f"Plan {plan_id} cancelled ({len(live_orders)} live order(s))")
        return live_orders

    def pause_plan(self, plan_id: str) -> bool:
        plan = self._require_plan(plan_id)
        if plan.is_complete:
            return False
        plan.active = False
        self._save_plans()
        return True

    def resume_plan(self, plan_id: str) -> bool:
        plan = self._require_plan(plan_id)
        if plan.is_complete:
            return False
        plan.active = True
        self._save_plans()
        return True

    # ═══════════════════════════════════════════════════════════════════════
    # TRANCHES
    # ═══════════════════════════════════════════════════════════════════════

    def next_pending_tranche(self, plan_id: str) -> Optional[Tranche]:
        """Lowest-index PENDING tranche, regardless of its time gate."""
        plan = self._require_plan(plan_id)
        for tranche in plan.tranches:
            if tranche.status == TrancheStatus.PENDING:
                return tranche
        return None

    def next_due_tranche(self, plan_id: str, now: Optional[int] = None) -> Optional[Tranche]:
        """
        Next tranche ready for execution.

        Tranches execute in index order; a tranche is due once its
        eligible_at has passed and any failure backoff has elapsed.
        """
        now = int(time.time()) if now is None else now
        tranche = self.next_pending_tranche(plan_id)
        if tranche is None or not tranche.is_eligible(now):
            return None
        if tranche.next_attempt_at is not None and now < tranche.next_attempt_at:
            return None
        return tranche

    def submitted_tranches(self, plan_id: str) -> List[Tranche]:
        plan = self._require_plan(plan_id)
        return [t for t in plan.tranches if t.status == TrancheStatus.SUBMITTED]

    def mark_submitted(self, plan_id: str, index: int,
                       order_hash: str, signature: str,
                       expires_at: int,
                       executed_quote: int = 0,
                       order_amount: Optional[int] = None,
                       maker_traits: int = 0,
                       now: Optional[int] = None) -> Tranche:
        """
        Record that a tranche's order was accepted by the orderbook.

        order_amount is the order's makingAmount; it defaults to the
        tranche's unfilled remainder.

        Raises:
            TrancheStateError: If the tranche is not PENDING
        """
        tranche = self._require_tranche(plan_id, index)
        if tranche.status != TrancheStatus.PENDING:
            raise TrancheStateError(
                f"Tranche {plan_id}/{index} is {tranche.status.value}, cannot submit")

        tranche.status = TrancheStatus.SUBMITTED
        tranche.order_hash = order_hash
        tranche.signature = signature
        tranche.expires_at = int(expires_at)
        tranche.executed_quote = int(executed_quote)
        tranche.order_amount = tranche.remaining_amount if order_amount is None else int(order_amount)
        tranche.maker_traits = int(maker_traits)
        tranche.submitted_at = int(time.time()) if now is None else now
        tranche.attempts += 1
        tranche.next_attempt_at = None
        tranche.last_error = ""
        self._save_plans()
        return tranche

    def mark_broadcast(self, plan_id: str, index: int, tx_hash: str,
                       executed_quote: int = 0,
                       now: Optional[int] = None) -> Tranche:
        """
        Record a swap transaction sent for a PENDING tranche.

        The tranche stays SUBMITTED (with tx_hash, no order_hash) until
        its receipt is seen, so the swap is never sent twice.

        Raises:
            TrancheStateError: If the tranche is not PENDING
        """
        tranche = self._require_tranche(plan_id, index)
        if tranche.status != TrancheStatus.PENDING:
            raise TrancheStateError(
                f"Tranche {plan_id}/{index} is {tranche.status.value}, cannot broadcast")

        tranche.status = TrancheStatus.SUBMITTED
        tranche.tx_hash = tx_hash
        tranche.executed_quote = int(executed_quote)
        tranche.order_amount = tranche.remaining_amount
        tranche.submitted_at = int(time.time()) if now is None else now
        tranche.attempts += 1
        tranche.next_attempt_at = None
        tranche.last_error = ""
        self._save_plans()
        return tranche

    def record_revert(self, plan_id: str, index: int, error: str,
                      now: Optional[int] = None) -> Tranche:
        """
        A broadcast swap reverted: back to PENDING under the backoff policy.

        The attempt was already counted by mark_broadcast.
        """
        tranche = self._require_tranche(plan_id, index)
        if tranche.status != TrancheStatus.SUBMITTED or not tranche.tx_hash or tranche.order_hash:
            raise TrancheStateError(
                f"Tranche {plan_id}/{index} has no broadcast swap to revert")

        tranche.status = TrancheStatus.PENDING
        tranche.tx_hash = ""
        tranche.submitted_at = None
        tranche.order_amount = 0
        self._back_off(plan_id, tranche, error, now)
        return tranche

    def record_partial_fill(self, plan_id: str, index: int, filled_amount: int) -> Tranche:
        """Record progress on a SUBMITTED order that is not complete yet."""
        tranche = self._require_tranche(plan_id, index)
        if tranche.status != TrancheStatus.SUBMITTED:
            raise TrancheStateError(
                f"Tranche {plan_id}/{index} is {tranche.status.value}, not submitted")

        if filled_amount > tranche.filled_amount:
            tranche.filled_amount = min(int(filled_amount), tranche.source_amount)
            self._save_plans()
        return tranche

    def mark_filled(self, plan_id: str, index: int,
                    filled_amount: Optional[int] = None,
                    tx_hash: str = "",
                    executed_quote: Optional[int] = None,
                    now: Optional[int] = None) -> Tranche:
        """
        Mark a tranche filled. A tranche is filled at most once.

        Raises:
            TrancheStateError: If the tranche is already filled, or is in
                a state a fill cannot come from
        """
        tranche = self._require_tranche(plan_id, index)
        if tranche.status == TrancheStatus.FILLED:
            raise TrancheStateError(f"Tranche {plan_id}/{index} already filled")
        if tranche.status not in (TrancheStatus.PENDING, TrancheStatus.SUBMITTED):
            raise TrancheStateError(
                f"Tranche {plan_id}/{index} is {tranche.status.value}, cannot fill")

        if tranche.status == TrancheStatus.PENDING:
            tranche.attempts += 1

        tranche.status = TrancheStatus.FILLED
        tranche.filled_amount = tranche.source_amount if filled_amount is None else int(filled_amount)
        tranche.filled_at = int(time.time()) if now is None else now
        if tx_hash:
            tranche.tx_hash = tx_hash
        if executed_quote is not None:
            tranche.executed_quote = int(executed_quote)
        tranche.next_attempt_at = None
        tranche.last_error = ""

        plan = self.plans[plan_id]
        if plan.is_complete:
            plan.active = False
            log.info(f"Plan {plan_id} complete: {plan.filled_count}/{plan.tranche_count} filled")

        self._save_plans()
        return tranche

    def record_failure(self, plan_id: str, index: int, error: str,
                       now: Optional[int] = None) -> Tranche:
        """
        Record a failed execution attempt on a PENDING tranche.

        Retry delay doubles with every attempt:
            next_attempt_at = now + min(backoff_base * 2^(attempts-1), max_backoff)
        After max_attempts the tranche is marked FAILED.
        """
        tranche = self._require_tranche(plan_id, index)
        if tranche.status != TrancheStatus.PENDING:
            raise TrancheStateError(
                f"Tranche {plan_id}/{index} is {tranche.status.value}, cannot record failure")

        tranche.attempts += 1
        self._back_off(plan_id, tranche, error, now)
        return tranche

    def _back_off(self, plan_id: str, tranche: Tranche, error: str, now: Optional[int]):
        now = int(time.time()) if now is None else now
        tranche.last_error = str(error)[:500]

        if tranche.attempts >= self.max_attempts:
            tranche.status = TrancheStatus.FAILED
            tranche.next_attempt_at = None
            log.error(f"Tranche {plan_id}/{tranche.index} FAILED after {tranche.attempts} "
                      f"attempts: {error}")
        else:
            delay = min(self.backoff_base * 2 ** (tranche.attempts - 1), self.max_backoff)
            tranche.next_attempt_at = now + delay
            log.warning(f"Tranche {plan_id}/{tranche.index} attempt {tranche.attempts} failed, "
                        f"retry in {delay}s: {error}")

        plan = self.plans[plan_id]
        if plan.is_complete:
            plan.active = False

        self._save_plans()

    def defer(self, plan_id: str, index: int, reason: str, until: int) -> Tranche:
        """Hold a PENDING tranche back until `until` without counting an attempt."""
        tranche = self._require_tranche(plan_id, index)
        if tranche.status != TrancheStatus.PENDING:
            raise TrancheStateError(
                f"Tranche {plan_id}/{index} is {tranche.status.value}, cannot defer")

        tranche.next_attempt_at = int(until)
        tranche.last_error = reason
        self._save_plans()
        log.info(f"Tranche {plan_id}/{index} deferred until {until}: {reason}")
        return tranche

    def expire_overdue(self, now: Optional[int] = None,
                       only: Optional[Set[Tuple[str, int]]] = None) -> int:
        """
        Mark SUBMITTED tranches whose order TTL has passed as EXPIRED.

        Args:
            only: (plan_id, index) pairs allowed to expire; the keeper passes
                the tranches whose order status it read this pass

        Returns:
            Number of tranches expired
        """
        now = int(time.time()) if now is None else now
        count = 0
        for plan in self.plans.values():
            expired = 0
            for tranche in plan.tranches:
                if tranche.status != TrancheStatus.SUBMITTED or not tranche.is_order_expired(now):
                    continue
                if only is not None and (plan.plan_id, tranche.index) not in only:
                    log.warning(f"Tranche {plan.plan_id}/{tranche.index} past expiry but order "
                                f"status unknown, keeping it open")
                    continue
                tranche.status = TrancheStatus.EXPIRED
                expired += 1
                log.info(f"Tranche {plan.plan_id}/{tranche.index} order expired "
                         f"({tranche.order_hash[:18]}...)")
            if expired and plan.is_complete:
                plan.active = False
            count += expired

        if count > 0:
            self._save_plans()
        return count

    def requeue(self, plan_id: str, index: int) -> Tranche:
        """
        Put an EXPIRED tranche back to PENDING so a fresh order is built.

        Any amount filled before expiry stays recorded; the next order
        only covers the remainder.
        """
        tranche = self._require_tranche(plan_id, index)
        if tranche.status != TrancheStatus.EXPIRED:
            raise TrancheStateError(
                f"Tranche {plan_id}/{index} is {tranche.status.value}, only expired tranches requeue")

        was_complete = self.plans[plan_id].is_complete

        if tranche.filled_amount:
            log.warning(f"Tranche {plan_id}/{index} requeued with {tranche.remaining_amount} "
                        f"remaining ({tranche.filled_amount} filled before expiry)")

        tranche.status = TrancheStatus.PENDING
        tranche.order_hash = ""
        tranche.signature = ""
        tranche.submitted_at = None
        tranche.expires_at = None
        tranche.order_amount = 0
        tranche.maker_traits = 0
        tranche.next_attempt_at = None

        plan = self.plans[plan_id]
        if was_complete:
            plan.active = True
        self._save_plans()
        return tranche

    def summary(self, plan_id: str) -> dict:
        """Plan progress for status displays."""
        plan = self._require_plan(plan_id)
        next_tranche = self.next_pending_tranche(plan_id)
        return {
            "plan_id": plan.plan_id,
            "active": plan.active,
            "complete": plan.is_complete,
            "mode": plan.mode.value,
            "src_token": plan.src_token,
            "dst_token": plan.dst_token,
            "progress": plan.progress(),
            "next_tranche": next_tranche.to_dict() if next_tranche else None,
        }

    # ═══════════════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════════════

    def _require_plan(self, plan_id: str) -> TWAPPlan:
        plan = self.plans.get(plan_id)
        if plan is None:
            raise TrancheStateError(f"Unknown plan: {plan_id}")
        return plan

    def _require_tranche(self, plan_id: str, index: int) -> Tranche:
        plan = self._require_plan(plan_id)
        tranche = plan.get_tranche(index)
        if tranche is None:
            raise TrancheStateError(f"Unknown tranche: {plan_id}/{index}")
        return tranche
