"""Yield oracle and execution gate."""

import pytest

from treasury_sdk.tranche_types import TrancheStatus
from treasury_sdk.yield_gate import YieldGate, YieldOracle

from conftest import START_TS, USDC, WPOL

STMATIC = "0x3A58a54C066FdC0f2D55FC9C89F0415C92eBf3C4"


@pytest.fixture
def oracle():
    oracle = YieldOracle()
    oracle.add_asset(WPOL, "WPOL")
    oracle.add_asset(STMATIC, "stMATIC")
    return oracle


class TestYieldOracle:

    def test_set_and_get(self, oracle):
        oracle.set_yield(137, WPOL, 450, now=1)
        source = oracle.get_yield(137, WPOL.lower())
        assert source.yield_bps == 450
        assert source.active

    def test_rejects_rate_above_20_percent(self, oracle):
        with pytest.raises(ValueError, match=r"Yield rate too high \(max 20%\)"):
            oracle.set_yield(137, WPOL, 2001)

    def test_rejects_unsupported_chain_and_asset(self, oracle):
        with pytest.raises(ValueError, match="Chain not supported"):
            oracle.set_yield(999, WPOL, 100)
        with pytest.raises(ValueError, match="Asset not supported"):
            oracle.set_yield(137, USDC, 100)

    def test_add_chain(self, oracle):
        oracle.add_chain(999, "Test")
        oracle.set_yield(999, WPOL, 100)

    def test_invalid_asset(self, oracle):
        with pytest.raises(ValueError, match="Invalid asset address"):
            oracle.add_asset("0x0000000000000000000000000000000000000000")

    def test_threshold(self, oracle):
        oracle.set_yield(137, STMATIC, 410)
        oracle.set_yield(1, STMATIC, 320)
        assert oracle.is_above_threshold(137, STMATIC)
        assert not oracle.is_above_threshold(1, STMATIC)

        oracle.set_source_active(137, STMATIC, False)
        assert not oracle.is_above_threshold(137, STMATIC)

    def test_threshold_limit(self, oracle):
        with pytest.raises(ValueError, match="Threshold too high"):
            oracle.set_global_threshold(1001)

    def test_best_yield_ignores_inactive(self, oracle):
        oracle.set_yield(128123, STMATIC, 500)
        oracle.set_yield(1, STMATIC, 350)
        oracle.set_yield(11155111, STMATIC, 400)
        assert oracle.best_yield(STMATIC) == (128123, 500)

        oracle.set_source_active(128123, STMATIC, False)
        assert oracle.best_yield(STMATIC) == (11155111, 400)

    def test_best_yield_none(self, oracle):
        assert oracle.best_yield(WPOL) == (None, 0)


class TestYieldGate:

    def test_ready(self, plan):
        ok, reason = YieldGate().can_execute(plan, plan.tranches[0], now=START_TS)
        assert ok
        assert reason == "Ready for execution"

    def test_not_active(self, plan):
        plan.active = False
        assert YieldGate().can_execute(plan, plan.tranches[0], now=START_TS) == \
            (False, "Strategy not active")

    def test_complete(self, plan):
        for t in plan.tranches:
            t.status = TrancheStatus.FILLED
        assert YieldGate().can_execute(plan, None, now=START_TS) == (False, "Strategy complete")

    def test_too_soon(self, plan):
        assert YieldGate().can_execute(plan, plan.tranches[0], now=START_TS - 1) == \
            (False, "Too soon for next execution")

    def test_backoff(self, plan):
        plan.tranches[0].next_attempt_at = START_TS + 30
        assert YieldGate().can_execute(plan, plan.tranches[0], now=START_TS) == \
            (False, "Backing off after failure")

    def test_yield_threshold(self, plan, oracle):
        plan.min_yield_bps = 400
        gate = YieldGate(oracle)

        oracle.set_yield(137, WPOL, 350)
        assert gate.can_execute(plan, plan.tranches[0], now=START_TS) == \
            (False, "Yield below threshold")

        oracle.set_yield(1, WPOL, 420)
        assert gate.can_execute(plan, plan.tranches[0], now=START_TS)[0]

    def test_yield_threshold_without_oracle(self, plan):
        plan.min_yield_bps = 1
        assert YieldGate().can_execute(plan, plan.tranches[0], now=START_TS) == \
            (False, "Yield below threshold")
