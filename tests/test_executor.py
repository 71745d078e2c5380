"""Keeper loop against fake 1inch / wallet clients."""

from unittest import mock

import pytest
from web3.exceptions import TimeExhausted

from treasury_sdk.executor import TWAPExecutor
from treasury_sdk.limit_order import LimitOrderSigner, MakerTraits
from treasury_sdk.oneinch_client import OneInchAPIError
from treasury_sdk.tokens import LIMIT_ORDER_PROTOCOL_V4
from treasury_sdk.tranche_types import ExecutionMode, TrancheStatus
from treasury_sdk.wallet import TransactionFailed
from treasury_sdk.yield_gate import YieldGate, YieldOracle

from conftest import START_TS, TEST_ADDRESS, TEST_PRIVATE_KEY, USDC, WPOL


class FakeOneInch:
    chain_id = 137

    def __init__(self, rate=2 * 10**12):
        self.rate = rate
        self.quote_error = None
        self.order_error = None
        self.quotes = []
        self.submitted = []
        self.orders = {}

    def quote_amount(self, src, dst, amount):
        if self.quote_error:
            raise self.quote_error
        self.quotes.append(amount)
        return amount * self.rate

    def submit_order(self, signed):
        self.submitted.append(signed)
        return {"success": True}

    def get_order(self, order_hash):
        if self.order_error:
            raise self.order_error
        return self.orders.get(order_hash)

    def approve_spender(self):
        return "0x111111125421cA6dc452d289314280a0f8842A65"

    def swap(self, src, dst, amount, from_address, slippage=1.0):
        return {"dstAmount": str(amount * self.rate),
                "tx": {"from": from_address, "to": "0x1111", "data": "0x", "value": "0"}}


class FakeWallet:
    address = TEST_ADDRESS

    def __init__(self):
        self.allowances = []
        self.sent = []
        self.cancelled = []
        self.receipt_status = 1
        self.wait_error = None
        self.receipts = {}

    def ensure_allowance(self, token, spender, amount):
        self.allowances.append((token, spender, amount))

    def send_swap(self, tx):
        self.sent.append(tx)
        return "0xtx"

    def get_receipt(self, tx_hash):
        return self.receipts.get(tx_hash)

    def wait_for_receipt(self, tx_hash):
        if self.wait_error:
            raise self.wait_error
        if self.receipt_status != 1:
            raise TransactionFailed(tx_hash)
        return {"status": 1, "blockNumber": 1}

    def cancel_limit_order(self, maker_traits, order_hash):
        self.cancelled.append((maker_traits, order_hash))
        return "0xcancel"


@pytest.fixture
def oneinch():
    return FakeOneInch()


@pytest.fixture
def wallet():
    return FakeWallet()


@pytest.fixture
def executor(manager, oneinch, wallet):
    signer = LimitOrderSigner(TEST_PRIVATE_KEY, chain_id=137)
    return TWAPExecutor(manager, oneinch, YieldGate(), signer=signer, wallet=wallet)


class TestLimitMode:

    def test_submits_due_tranche_once(self, executor, manager, plan, oneinch):
        stats = executor.run_once(now=START_TS)
        assert stats["submitted"] == 1

        tranche = plan.tranches[0]
        assert tranche.status == TrancheStatus.SUBMITTED
        assert tranche.order_hash == oneinch.submitted[0].order_hash
        assert tranche.executed_quote == 5_000_000 * oneinch.rate
        assert tranche.expires_at == START_TS + plan.order_ttl_seconds
        assert MakerTraits(tranche.maker_traits).expiration == tranche.expires_at

        # taking amount is the fresh quote minus slippage
        order = oneinch.submitted[0].order
        assert order.taking_amount == 5_000_000 * oneinch.rate * 9950 // 10000

        stats = executor.run_once(now=START_TS + 10)
        assert stats["submitted"] == 0
        assert len(oneinch.submitted) == 1

    def test_allowance_for_limit_order_protocol(self, executor, plan, wallet):
        executor.run_once(now=START_TS)
        assert wallet.allowances == [(USDC, LIMIT_ORDER_PROTOCOL_V4, 5_000_000)]

    def test_one_tranche_per_plan_per_cycle(self, executor, plan, oneinch):
        # every tranche is due; only the first goes out this cycle
        executor.run_once(now=START_TS + 1000)
        assert len(oneinch.submitted) == 1
        executor.run_once(now=START_TS + 1001)
        assert len(oneinch.submitted) == 2
        assert [t.status for t in plan.tranches[:2]] == [TrancheStatus.SUBMITTED] * 2

    def test_fill_detected(self, executor, manager, plan, oneinch):
        executor.run_once(now=START_TS)
        order_hash = plan.tranches[0].order_hash

        oneinch.orders[order_hash] = {"remainingMakerAmount": "3000000"}
        executor.run_once(now=START_TS + 10)
        assert plan.tranches[0].status == TrancheStatus.SUBMITTED
        assert plan.tranches[0].filled_amount == 2_000_000

        oneinch.orders[order_hash] = {"remainingMakerAmount": "0"}
        stats = executor.run_once(now=START_TS + 20)
        assert stats["fills"] == 1
        assert plan.tranches[0].status == TrancheStatus.FILLED
        assert plan.tranches[0].filled_amount == 5_000_000

    def test_unindexed_order_left_alone(self, executor, plan):
        executor.run_once(now=START_TS)
        stats = executor.run_once(now=START_TS + 10)
        assert stats["fills"] == 0
        assert plan.tranches[0].status == TrancheStatus.SUBMITTED

    def test_expired_order(self, executor, plan, oneinch):
        executor.run_once(now=START_TS)
        oneinch.orders[plan.tranches[0].order_hash] = {"remainingMakerAmount": "5000000"}
        stats = executor.run_once(now=START_TS + 3601)
        assert stats["expired"] == 1
        assert plan.tranches[0].status == TrancheStatus.EXPIRED

    def test_expired_order_requeued(self, executor, plan, oneinch):
        executor.requeue_expired = True
        executor.run_once(now=START_TS)
        first_hash = plan.tranches[0].order_hash
        oneinch.orders[first_hash] = {"remainingMakerAmount": "5000000"}

        stats = executor.run_once(now=START_TS + 3601)
        assert stats["requeued"] == 1
        assert plan.tranches[0].status == TrancheStatus.SUBMITTED
        assert plan.tranches[0].order_hash != first_hash
        assert len(oneinch.submitted) == 2
        assert oneinch.submitted[1].order.making_amount == 5_000_000

    def test_requeue_covers_confirmed_remainder(self, executor, plan, oneinch):
        executor.requeue_expired = True
        executor.run_once(now=START_TS)
        oneinch.orders[plan.tranches[0].order_hash] = {"remainingMakerAmount": "3000000"}

        stats = executor.run_once(now=START_TS + 3601)
        assert stats["requeued"] == 1
        assert plan.tranches[0].filled_amount == 2_000_000
        assert oneinch.submitted[1].order.making_amount == 3_000_000

    def test_unreadable_order_is_not_expired(self, executor, plan, oneinch):
        executor.requeue_expired = True
        executor.run_once(now=START_TS)
        order_hash = plan.tranches[0].order_hash

        oneinch.order_error = OneInchAPIError(503, "unavailable")
        stats = executor.run_once(now=START_TS + 3601)
        assert stats["expired"] == 0
        assert stats["requeued"] == 0
        assert plan.tranches[0].status == TrancheStatus.SUBMITTED
        assert plan.tranches[0].order_hash == order_hash

        # the order had filled before its expiry
        oneinch.order_error = None
        oneinch.orders[order_hash] = {"remainingMakerAmount": "0"}
        stats = executor.run_once(now=START_TS + 3602)
        assert stats["fills"] == 1
        assert plan.tranches[0].status == TrancheStatus.FILLED
        assert plan.tranches[0].order_hash == order_hash

    def test_unindexed_order_is_not_expired(self, executor, plan, oneinch):
        executor.requeue_expired = True
        executor.run_once(now=START_TS)
        order_hash = plan.tranches[0].order_hash
        stats = executor.run_once(now=START_TS + 3601)
        assert stats["expired"] == 0
        assert plan.tranches[0].status == TrancheStatus.SUBMITTED
        assert plan.tranches[0].order_hash == order_hash

    def test_fill_recorded_while_paused(self, executor, manager, plan, oneinch):
        executor.run_once(now=START_TS)
        manager.pause_plan(plan.plan_id)
        oneinch.orders[plan.tranches[0].order_hash] = {"remainingMakerAmount": "0"}

        stats = executor.run_once(now=START_TS + 3601)
        assert stats["fills"] == 1
        assert stats["expired"] == 0
        assert plan.tranches[0].status == TrancheStatus.FILLED
        assert not plan.active

    def test_api_error_backs_off(self, executor, manager, plan, oneinch):
        oneinch.quote_error = OneInchAPIError(500, "upstream")
        stats = executor.run_once(now=START_TS)

        tranche = plan.tranches[0]
        assert stats["failed"] == 1
        assert tranche.status == TrancheStatus.PENDING
        assert tranche.attempts == 1
        assert tranche.next_attempt_at == START_TS + manager.backoff_base
        assert "upstream" in tranche.last_error

        stats = executor.run_once(now=START_TS + 1)
        assert stats["failed"] == 0
        assert stats["skipped"] == 1

    def test_missing_signer(self, manager, oneinch, plan):
        executor = TWAPExecutor(manager, oneinch)
        with pytest.raises(ValueError, match="LimitOrderSigner"):
            executor.run_once(now=START_TS)


class TestGates:

    def test_quote_drift_defers(self, manager, oneinch, wallet, plan):
        signer = LimitOrderSigner(TEST_PRIVATE_KEY, chain_id=137)
        executor = TWAPExecutor(manager, oneinch, signer=signer, wallet=wallet,
                                max_quote_drift_bps=100)
        oneinch.rate = 10**12  # half the estimate

        stats = executor.run_once(now=START_TS)
        tranche = plan.tranches[0]
        assert stats["deferred"] == 1
        assert oneinch.submitted == []
        assert tranche.status == TrancheStatus.PENDING
        assert tranche.attempts == 0
        assert tranche.last_error == "Quote drifted below estimate"
        assert tranche.next_attempt_at == START_TS + plan.interval_seconds

    def test_small_drift_within_tolerance(self, manager, oneinch, wallet, plan):
        signer = LimitOrderSigner(TEST_PRIVATE_KEY, chain_id=137)
        executor = TWAPExecutor(manager, oneinch, signer=signer, wallet=wallet,
                                max_quote_drift_bps=100)
        oneinch.rate = 2 * 10**12 * 995 // 1000

        assert executor.run_once(now=START_TS)["submitted"] == 1

    def test_yield_gate_blocks(self, manager, oneinch, wallet, plan):
        plan.min_yield_bps = 500
        oracle = YieldOracle()
        oracle.add_asset(WPOL)
        oracle.set_yield(137, WPOL, 300)
        signer = LimitOrderSigner(TEST_PRIVATE_KEY, chain_id=137)
        executor = TWAPExecutor(manager, oneinch, YieldGate(oracle), signer=signer, wallet=wallet)

        stats = executor.run_once(now=START_TS)
        assert stats["skipped"] == 1
        assert oneinch.quotes == []

        oracle.set_yield(137, WPOL, 600)
        assert executor.run_once(now=START_TS + 1)["submitted"] == 1

    def test_paused_plan_not_executed(self, executor, manager, plan, oneinch):
        manager.pause_plan(plan.plan_id)
        executor.run_once(now=START_TS)
        assert oneinch.quotes == []


class TestSwapMode:

    @pytest.fixture
    def swap_plan(self, manager):
        return manager.create_plan(137, TEST_ADDRESS, USDC, WPOL, 10_000_000,
                                   interval_seconds=60, tranche_count=2, start_ts=START_TS,
                                   mode=ExecutionMode.SWAP, slippage_bps=100)

    def test_swap_fills_on_receipt(self, executor, swap_plan, wallet, oneinch):
        stats = executor.run_once(now=START_TS)
        assert stats["filled"] == 1

        tranche = swap_plan.tranches[0]
        assert tranche.status == TrancheStatus.FILLED
        assert tranche.tx_hash == "0xtx"
        assert tranche.filled_amount == 5_000_000
        assert tranche.executed_quote == 5_000_000 * oneinch.rate
        assert wallet.allowances[0][2] == 5_000_000
        assert len(wallet.sent) == 1

    def test_reverted_swap_backs_off(self, executor, swap_plan, wallet):
        wallet.receipt_status = 0
        stats = executor.run_once(now=START_TS)
        assert stats["failed"] == 1
        tranche = swap_plan.tranches[0]
        assert tranche.status == TrancheStatus.PENDING
        assert "0xtx" in tranche.last_error
        assert tranche.tx_hash == ""
        assert tranche.attempts == 1

    def test_receipt_timeout_does_not_resend(self, executor, swap_plan, wallet):
        wallet.wait_error = TimeExhausted("not mined in 120s")
        stats = executor.run_once(now=START_TS)
        assert stats["submitted"] == 1
        assert stats["failed"] == 0

        tranche = swap_plan.tranches[0]
        assert tranche.status == TrancheStatus.SUBMITTED
        assert tranche.tx_hash == "0xtx"
        assert tranche.attempts == 1

        executor.run_once(now=START_TS + 31)
        assert len(wallet.sent) == 1
        assert tranche.status == TrancheStatus.SUBMITTED

        wallet.receipts["0xtx"] = {"status": 1, "blockNumber": 9}
        stats = executor.run_once(now=START_TS + 40)
        assert stats["fills"] == 1
        assert tranche.status == TrancheStatus.FILLED
        assert tranche.filled_amount == 5_000_000
        assert len(wallet.sent) == 1

    def test_late_revert_returns_to_pending(self, executor, manager, swap_plan, wallet):
        wallet.wait_error = TimeExhausted("not mined in 120s")
        executor.run_once(now=START_TS)

        wallet.receipts["0xtx"] = {"status": 0, "blockNumber": 9}
        executor.run_once(now=START_TS + 10)
        tranche = swap_plan.tranches[0]
        assert tranche.status == TrancheStatus.PENDING
        assert tranche.attempts == 1
        assert tranche.next_attempt_at == START_TS + 10 + manager.backoff_base
        assert len(wallet.sent) == 1

    def test_cancel_keeps_broadcast_swap_open(self, executor, manager, swap_plan, wallet):
        wallet.wait_error = TimeExhausted("not mined in 120s")
        executor.run_once(now=START_TS)

        assert executor.cancel_plan(swap_plan.plan_id) == 0
        assert wallet.cancelled == []
        assert swap_plan.tranches[0].status == TrancheStatus.SUBMITTED
        assert swap_plan.tranches[1].status == TrancheStatus.CANCELLED

        wallet.receipts["0xtx"] = {"status": 1, "blockNumber": 9}
        assert executor.run_once(now=START_TS + 10)["fills"] == 1
        assert swap_plan.tranches[0].status == TrancheStatus.FILLED


class TestLoop:

    def test_run_stops(self, executor):
        calls = []

        def fake_run_once():
            calls.append(1)
            executor.stop()
            return {k: 0 for k in ("fills", "expired", "submitted", "filled", "failed")}

        with mock.patch.object(executor, "run_once", side_effect=fake_run_once):
            executor.run(poll_interval=0)
        assert calls == [1]

    def test_run_survives_errors(self, executor):
        results = [RuntimeError("flaky"), KeyboardInterrupt()]
        with mock.patch.object(executor, "run_once", side_effect=results) as run_once:
            executor.run(poll_interval=0)
        assert run_once.call_count == 2

    def test_cancel_plan_on_chain(self, executor, plan, wallet):
        executor.run_once(now=START_TS)
        tranche = plan.tranches[0]

        assert executor.cancel_plan(plan.plan_id) == 1
        assert wallet.cancelled == [(tranche.maker_traits, tranche.order_hash)]
        assert not plan.active
