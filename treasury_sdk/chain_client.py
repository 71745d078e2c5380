"""
Treasury TWAP SDK - Chain Client

Read-only JSON-RPC client for Polygon (or any EVM chain).
Balances, allowances and receipts; no signing.
"""

import logging
from typing import Any, List, Optional

import requests

log = logging.getLogger(__name__)

# ERC20 function selectors
SELECTOR_BALANCE_OF = "0x70a08231"
SELECTOR_DECIMALS = "0x313ce567"
SELECTOR_ALLOWANCE = "0xdd62ed3e"


class ChainRPCError(Exception):
    """JSON-RPC call failed."""
    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"Chain RPC Error {code}: {message}")


def _pad_address(address: str) -> str:
    clean = address.lower().replace("0x", "")
    if len(clean) != 40:
        raise ValueError(f"Invalid address: {address}")
    return clean.rjust(64, "0")


def _hex_to_int(value: Optional[str]) -> int:
    if not value or value == "0x":
        return 0
    return int(value, 16)


class ChainClient:
    """
    JSON-RPC client for an EVM node.

    Usage:
        chain = ChainClient("https://polygon-rpc.com")
        block = chain.block_number()
        usdc = chain.erc20_balance(USDC, "0x...")
    """

    def __init__(self, rpc_url: str, timeout: int = 30,
                 session: Optional[requests.Session] = None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.session = session or requests.Session()
        self._id = 0

    def _call(self, method: str, params: Optional[List] = None) -> Any:
        """Make JSON-RPC call."""
        self._id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._id,
            "method": method,
            "params": params or [],
        }

        try:
            response = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise ChainRPCError(-1, f"Connection failed: {e}")

        try:
            result = response.json()
        except ValueError:
            raise ChainRPCError(-1, f"Invalid JSON from {method}")

        if "error" in result and result["error"]:
            error = result["error"]
            raise ChainRPCError(error.get("code", -1), error.get("message", str(error)))

        return result.get("result")

    # ═══════════════════════════════════════════════════════════════════════
    # NODE
    # ═══════════════════════════════════════════════════════════════════════

    def block_number(self) -> int:
        """Get current block number."""
        return _hex_to_int(self._call("eth_blockNumber"))

    def chain_id(self) -> int:
        return _hex_to_int(self._call("eth_chainId"))

    def is_connected(self) -> bool:
        try:
            self.block_number()
            return True
        except ChainRPCError as e:
            log.debug(f"Node not reachable: {e}")
            return False

    def gas_price(self) -> int:
        return _hex_to_int(self._call("eth_gasPrice"))

    def transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        """Receipt for a mined transaction, None while pending."""
        return self._call("eth_getTransactionReceipt", [tx_hash])

    # ═══════════════════════════════════════════════════════════════════════
    # BALANCES
    # ═══════════════════════════════════════════════════════════════════════

    def native_balance(self, address: str) -> int:
        """Native coin (POL/MATIC) balance in wei."""
        return _hex_to_int(self._call("eth_getBalance", [address, "latest"]))

    def eth_call(self, to: str, data: str) -> str:
        return self._call("eth_call", [{"to": to, "data": data}, "latest"])

    def erc20_balance(self, token: str, owner: str) -> int:
        """ERC20 balanceOf(owner) in base units."""
        return _hex_to_int(self.eth_call(token, SELECTOR_BALANCE_OF + _pad_address(owner)))

    def erc20_decimals(self, token: str) -> int:
        return _hex_to_int(self.eth_call(token, SELECTOR_DECIMALS))

    def erc20_allowance(self, token: str, owner: str, spender: str) -> int:
        data = SELECTOR_ALLOWANCE + _pad_address(owner) + _pad_address(spender)
        return _hex_to_int(self.eth_call(token, data))
