"""Polygon JSON-RPC reads."""

from unittest import mock

import pytest

from treasury_sdk.chain_client import ChainClient, ChainRPCError

from conftest import TEST_ADDRESS, USDC


def rpc_response(result=None, error=None):
    resp = mock.Mock()
    resp.raise_for_status.return_value = None
    body = {"jsonrpc": "2.0", "id": 1}
    if error:
        body["error"] = error
    else:
        body["result"] = result
    resp.json.return_value = body
    return resp


@pytest.fixture
def session():
    return mock.Mock()


@pytest.fixture
def chain(session):
    return ChainClient("https://rpc.example", session=session)


def test_block_number(chain, session):
    session.post.return_value = rpc_response("0x10")
    assert chain.block_number() == 16
    payload = session.post.call_args[1]["json"]
    assert payload["method"] == "eth_blockNumber"


def test_erc20_balance_encodes_call(chain, session):
    session.post.return_value = rpc_response("0x" + "0" * 58 + "4c4b40")
    assert chain.erc20_balance(USDC, TEST_ADDRESS) == 5_000_000

    call = session.post.call_args[1]["json"]["params"][0]
    assert call["to"] == USDC
    assert call["data"].startswith("0x70a08231")
    assert call["data"].endswith(TEST_ADDRESS.lower()[2:])
    assert len(call["data"]) == 2 + 8 + 64


def test_empty_result_is_zero(chain, session):
    session.post.return_value = rpc_response("0x")
    assert chain.erc20_allowance(USDC, TEST_ADDRESS, TEST_ADDRESS) == 0


def test_rpc_error(chain, session):
    session.post.return_value = rpc_response(error={"code": -32000, "message": "execution reverted"})
    with pytest.raises(ChainRPCError) as exc:
        chain.gas_price()
    assert exc.value.code == -32000


def test_is_connected_false_on_error(chain, session):
    session.post.return_value = rpc_response(error={"code": -32603, "message": "down"})
    assert chain.is_connected() is False


def test_invalid_address(chain):
    with pytest.raises(ValueError):
        chain.erc20_balance(USDC, "0x1234")
