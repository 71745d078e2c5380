"""Shared fixtures for the treasury SDK tests."""

import pytest

from treasury_sdk.tokens import POLYGON_TOKENS
from treasury_sdk.tranche_manager import TrancheManager

# Well-known development key (Hardhat account #0); never funded on mainnet
TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

USDC = POLYGON_TOKENS["USDC"].address
WPOL = POLYGON_TOKENS["WPOL"].address

START_TS = 1_700_000_000


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "tranches.json"


@pytest.fixture
def manager(store_path):
    return TrancheManager(storage_path=str(store_path), max_attempts=3,
                          backoff_base=30, max_backoff=100)


@pytest.fixture
def plan(manager):
    """20 USDC -> WPOL in 4 tranches, 2 minutes apart."""
    return manager.create_plan(
        chain_id=137,
        maker=TEST_ADDRESS,
        src_token=USDC,
        dst_token=WPOL,
        total_amount=20_000_000,
        interval_seconds=120,
        tranche_count=4,
        start_ts=START_TS,
        quote_fn=lambda amount: amount * 2 * 10**12,
    )
