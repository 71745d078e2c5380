"""
Treasury TWAP SDK - Executor

Keeper loop that walks every active plan and moves its tranches along:

    1. refresh SUBMITTED tranches of every plan, paused ones included:
       limit orders from the orderbook, broadcast swaps from their receipt
    2. expire orders past their TTL whose status was read this pass
       (optionally requeue them for the unfilled remainder)
    3. execute at most one due tranche per plan
       - LIMIT: fresh quote -> signed LOP v4 order -> orderbook
       - SWAP:  fresh quote -> aggregator swap tx -> SUBMITTED -> receipt -> filled
"""

import logging
import threading
import time
from typing import Dict, Optional, Set, Tuple

import requests
from web3.exceptions import Web3Exception

from .chain_client import ChainRPCError
from .limit_order import LimitOrderSigner, build_order, expiration_for
from .oneinch_client import OneInchAPIError, OneInchClient
from .tokens import LIMIT_ORDER_PROTOCOL_V4
from .tranche_manager import TrancheManager, TrancheStateError
from .tranche_types import ExecutionMode, Tranche, TrancheStatus, TWAPPlan
from .wallet import TransactionFailed, Wallet
from .yield_gate import YieldGate

log = logging.getLogger(__name__)

REASON_QUOTE_DRIFT = "Quote drifted below estimate"

# Failures that cost an attempt; anything else propagates
EXECUTION_ERRORS = (
    OneInchAPIError,
    ChainRPCError,
    TransactionFailed,
    Web3Exception,
    requests.exceptions.RequestException,
)

OUTCOME_SUBMITTED = "submitted"
OUTCOME_FILLED = "filled"
OUTCOME_DEFERRED = "deferred"
OUTCOME_FAILED = "failed"


class TWAPExecutor:
    """
    TWAP keeper.

    Usage:
        executor = TWAPExecutor(manager, oneinch, YieldGate(), signer=signer)
        executor.run_once()          # one pass
        executor.run(poll_interval)  # until stop() or Ctrl-C
    """

    def __init__(self, manager: TrancheManager, oneinch: OneInchClient,
                 gate: Optional[YieldGate] = None,
                 signer: Optional[LimitOrderSigner] = None,
                 wallet: Optional[Wallet] = None,
                 max_quote_drift_bps: Optional[int] = None,
                 requeue_expired: bool = False):
        self.manager = manager
        self.oneinch = oneinch
        self.gate = gate or YieldGate()
        self.signer = signer
        self.wallet = wallet
        self.max_quote_drift_bps = max_quote_drift_bps
        self.requeue_expired = requeue_expired
        self._stop = threading.Event()

    # ═══════════════════════════════════════════════════════════════════════
    # MAIN LOOP
    # ═══════════════════════════════════════════════════════════════════════

    def run_once(self, now: Optional[int] = None) -> Dict[str, int]:
        """
        One keeper pass over all active plans.

        Returns:
            Counters: fills, expired, requeued, submitted, filled, deferred, failed, skipped
        """
        now = int(time.time()) if now is None else now
        stats = {
            "fills": 0,
            "expired": 0,
            "requeued": 0,
            OUTCOME_SUBMITTED: 0,
            OUTCOME_FILLED: 0,
            OUTCOME_DEFERRED: 0,
            OUTCOME_FAILED: 0,
            "skipped": 0,
        }

        # paused and cancelled plans can still have orders or swaps in flight
        confirmed = set()
        for plan in self.manager.list_plans():
            if not self.manager.submitted_tranches(plan.plan_id):
                continue
            fills, seen = self.refresh_orders(plan, now)
            stats["fills"] += fills
            confirmed.update((plan.plan_id, index) for index in seen)

        stats["expired"] = self.manager.expire_overdue(now, only=confirmed)

        if self.requeue_expired and stats["expired"]:
            for plan_id, index in sorted(confirmed):
                tranche = self.manager.get_plan(plan_id).get_tranche(index)
                if tranche.status == TrancheStatus.EXPIRED:
                    self.manager.requeue(plan_id, index)
                    stats["requeued"] += 1

        for plan in self.manager.list_plans(active=True):
            tranche = self.manager.next_pending_tranche(plan.plan_id)
            ok, reason = self.gate.can_execute(plan, tranche, now)
            if not ok:
                log.debug(f"Plan {plan.plan_id}: {reason}")
                stats["skipped"] += 1
                continue

            outcome = self.execute_tranche(plan, tranche, now)
            stats[outcome] += 1

        return stats

    def run(self, poll_interval: float = 30):
        """Poll until stop() is called or the process is interrupted."""
        log.info(f"TWAP keeper starting (poll every {poll_interval}s)")
        self._stop.clear()

        while not self._stop.is_set():
            try:
                stats = self.run_once()
                if any(stats[k] for k in ("fills", "expired", OUTCOME_SUBMITTED,
                                          OUTCOME_FILLED, OUTCOME_FAILED)):
                    log.info(f"Cycle: {stats}")
            except KeyboardInterrupt:
                log.info("Shutting down...")
                break
            except TrancheStateError:
                raise
            except Exception as e:
                log.error(f"Error in main loop: {e}")

            try:
                self._stop.wait(poll_interval)
            except KeyboardInterrupt:
                log.info("Shutting down...")
                break

        log.info("TWAP keeper stopped")

    def stop(self):
        self._stop.set()

    # ═══════════════════════════════════════════════════════════════════════
    # ORDER TRACKING
    # ═══════════════════════════════════════════════════════════════════════

    def refresh_orders(self, plan: TWAPPlan, now: Optional[int] = None) -> Tuple[int, Set[int]]:
        """
        Poll the orderbook (limit orders) or the chain (swaps) for every
        SUBMITTED tranche of a plan.

        Returns:
            (number of tranches that became FILLED,
             indexes of limit-order tranches whose status was read)
        """
        fills = 0
        seen = set()
        for tranche in self.manager.submitted_tranches(plan.plan_id):
            if not tranche.order_hash:
                fills += self._refresh_swap(plan, tranche, now)
                continue

            try:
                info = self.oneinch.get_order(tranche.order_hash)
            except OneInchAPIError as e:
                log.warning(f"Order lookup failed for {plan.plan_id}/{tranche.index}: {e}")
                continue

            if not info or info.get("remainingMakerAmount") is None:
                log.debug(f"Order {tranche.order_hash[:18]}... not indexed yet")
                continue

            seen.add(tranche.index)
            remaining = int(info["remainingMakerAmount"])
            # an order covers the unfilled part left by earlier orders
            filled = tranche.source_amount - remaining

            if remaining == 0:
                self.manager.mark_filled(plan.plan_id, tranche.index,
                                         filled_amount=tranche.source_amount, now=now)
                log.info(f"Tranche {plan.plan_id}/{tranche.index} FILLED "
                         f"({tranche.source_amount} units)")
                fills += 1
            elif filled > tranche.filled_amount:
                self.manager.record_partial_fill(plan.plan_id, tranche.index, filled)
                log.info(f"Tranche {plan.plan_id}/{tranche.index} partially filled: "
                         f"{filled}/{tranche.source_amount}")

            if info.get("orderInvalidReason"):
                log.warning(f"Order {tranche.order_hash[:18]}... invalid: "
                            f"{info['orderInvalidReason']}")
        return fills, seen

    def _refresh_swap(self, plan: TWAPPlan, tranche: Tranche, now: Optional[int]) -> int:
        """Settle a broadcast swap from its receipt. Returns 1 if it filled."""
        if self.wallet is None:
            return 0
        try:
            receipt = self.wallet.get_receipt(tranche.tx_hash)
        except EXECUTION_ERRORS as e:
            log.warning(f"Receipt lookup failed for {tranche.tx_hash}: {e}")
            return 0

        if receipt is None:
            log.debug(f"Swap {tranche.tx_hash} still pending")
            return 0

        if receipt["status"] != 1:
            self.manager.record_revert(plan.plan_id, tranche.index,
                                       f"Transaction reverted: {tranche.tx_hash}", now)
            return 0

        self.manager.mark_filled(plan.plan_id, tranche.index, tx_hash=tranche.tx_hash, now=now)
        log.info(f"Tranche {plan.plan_id}/{tranche.index} swap confirmed: {tranche.tx_hash}")
        return 1

    # ═══════════════════════════════════════════════════════════════════════
    # EXECUTION
    # ═══════════════════════════════════════════════════════════════════════

    def execute_tranche(self, plan: TWAPPlan, tranche: Tranche,
                        now: Optional[int] = None) -> str:
        """
        Execute one due tranche.

        Returns:
            "submitted", "filled", "deferred" or "failed"
        """
        now = int(time.time()) if now is None else now
        amount = tranche.remaining_amount

        try:
            quote = self.oneinch.quote_amount(plan.src_token, plan.dst_token, amount)

            if self._quote_drifted(tranche, amount, quote):
                self.manager.defer(plan.plan_id, tranche.index, REASON_QUOTE_DRIFT,
                                   until=now + plan.interval_seconds)
                return OUTCOME_DEFERRED

            if plan.mode == ExecutionMode.LIMIT:
                self._submit_limit_order(plan, tranche, amount, quote, now)
                return OUTCOME_SUBMITTED

            return self._execute_swap(plan, tranche, amount, now)

        except EXECUTION_ERRORS as e:
            self.manager.record_failure(plan.plan_id, tranche.index, str(e), now)
            return OUTCOME_FAILED

    def _quote_drifted(self, tranche: Tranche, amount: int, quote: int) -> bool:
        if self.max_quote_drift_bps is None or not tranche.target_amount_estimate:
            return False

        expected = tranche.target_amount_estimate * amount // tranche.source_amount
        floor = expected * (10_000 - self.max_quote_drift_bps) // 10_000
        if quote < floor:
            log.warning(f"Tranche {tranche.index}: quote {quote} below {floor} "
                        f"(estimate {expected}, max drift {self.max_quote_drift_bps} bps)")
            return True
        return False

    def _submit_limit_order(self, plan: TWAPPlan, tranche: Tranche,
                            amount: int, quote: int, now: int):
        if self.signer is None:
            raise ValueError("Limit mode requires a LimitOrderSigner")

        if self.wallet is not None:
            outstanding = sum(t.remaining_amount for t in self.manager.submitted_tranches(plan.plan_id))
            self.wallet.ensure_allowance(plan.src_token, LIMIT_ORDER_PROTOCOL_V4,
                                         outstanding + amount)

        expires_at = expiration_for(tranche.eligible_at, plan.order_ttl_seconds, now)
        order = build_order(
            maker=plan.maker,
            maker_asset=plan.src_token,
            taker_asset=plan.dst_token,
            making_amount=amount,
            quoted_amount=quote,
            slippage_bps=plan.slippage_bps,
            expiration_ts=expires_at,
        )
        signed = self.signer.sign(order)
        self.oneinch.submit_order(signed)

        self.manager.mark_submitted(
            plan.plan_id, tranche.index,
            order_hash=signed.order_hash,
            signature=signed.signature,
            expires_at=expires_at,
            executed_quote=quote,
            order_amount=amount,
            maker_traits=order.maker_traits,
            now=now,
        )
        log.info(f"Tranche {plan.plan_id}/{tranche.index} submitted: {amount} -> "
                 f">= {order.taking_amount} (quote {quote}), order {signed.order_hash[:18]}...")

    def _execute_swap(self, plan: TWAPPlan, tranche: Tranche, amount: int, now: int) -> str:
        if self.wallet is None:
            raise ValueError("Swap mode requires a Wallet")

        spender = self.oneinch.approve_spender()
        self.wallet.ensure_allowance(plan.src_token, spender, amount)

        swap = self.oneinch.swap(plan.src_token, plan.dst_token, amount,
                                 from_address=self.wallet.address,
                                 slippage=plan.slippage_bps / 100)
        tx_hash = self.wallet.send_swap(swap["tx"])
        self.manager.mark_broadcast(plan.plan_id, tranche.index, tx_hash,
                                    executed_quote=int(swap.get("dstAmount", 0)), now=now)

        try:
            self.wallet.wait_for_receipt(tx_hash)
        except TransactionFailed as e:
            self.manager.record_revert(plan.plan_id, tranche.index, str(e), now)
            return OUTCOME_FAILED
        except EXECUTION_ERRORS as e:
            log.warning(f"Tranche {plan.plan_id}/{tranche.index} swap {tx_hash} unconfirmed, "
                        f"checking again next pass: {e}")
            return OUTCOME_SUBMITTED

        self.manager.mark_filled(plan.plan_id, tranche.index, tx_hash=tx_hash, now=now)
        log.info(f"Tranche {plan.plan_id}/{tranche.index} swapped: {amount} units, tx {tx_hash}")
        return OUTCOME_FILLED

    # ═══════════════════════════════════════════════════════════════════════
    # CANCELLATION
    # ═══════════════════════════════════════════════════════════════════════

    def cancel_plan(self, plan_id: str, on_chain: bool = True) -> int:
        """
        Cancel a plan and, with a wallet, its live orders on-chain.

        Returns:
            Number of orders cancelled on-chain
        """
        live = self.manager.cancel_plan(plan_id)
        if not on_chain or self.wallet is None:
            if live:
                log.warning(f"{len(live)} order(s) of plan {plan_id} stay live on the orderbook "
                            f"until they expire")
            return 0

        cancelled = 0
        for tranche in live:
            try:
                self.wallet.cancel_limit_order(tranche.maker_traits, tranche.order_hash)
                cancelled += 1
            except EXECUTION_ERRORS as e:
                log.error(f"Cancel failed for {plan_id}/{tranche.index}: {e}")
        return cancelled
