"""
Treasury TWAP SDK - Wallet

Signs and sends Polygon transactions with web3:
  - ERC20 approvals for the 1inch router / Limit Order Protocol
  - 1inch aggregator swap transactions
  - on-chain cancellation of LOP v4 orders
"""

import logging
from typing import Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import TransactionNotFound

from .tokens import LIMIT_ORDER_PROTOCOL_V4

log = logging.getLogger(__name__)

MAX_UINT256 = 2 ** 256 - 1

# Gas estimate headroom, percent
GAS_BUFFER_PCT = 20

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
]

LOP_ABI = [
    {
        "inputs": [
            {"name": "makerTraits", "type": "uint256"},
            {"name": "orderHash", "type": "bytes32"},
        ],
        "name": "cancelOrder",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


class TransactionFailed(Exception):
    """Transaction was mined but reverted."""
    def __init__(self, tx_hash: str, message: str = "Transaction reverted"):
        self.tx_hash = tx_hash
        self.message = message
        super().__init__(f"{message}: {tx_hash}")


def _hex(value) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return "0x" + bytes(value).hex()


class Wallet:
    """
    Hot wallet for the treasury maker address.

    Usage:
        wallet = Wallet(rpc_url, private_key, chain_id=137)
        wallet.ensure_allowance(USDC, router, 5_000_000)
        tx_hash = wallet.send_swap(swap["tx"])
        wallet.wait_for_receipt(tx_hash)
    """

    def __init__(self, rpc_url: str, private_key: str, chain_id: int = 137,
                 receipt_timeout: int = 120, w3: Optional[Web3] = None):
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url))
        self.account = Account.from_key(private_key)
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        log.info(f"Wallet initialized: {self.account.address}")

    @property
    def address(self) -> str:
        return self.account.address

    def _send(self, tx: dict) -> str:
        """Sign and broadcast a transaction dict, return its hash."""
        signed = self.account.sign_transaction(tx)
        tx_hash = _hex(self.w3.eth.send_raw_transaction(signed.raw_transaction))
        log.info(f"TX sent: {tx_hash}")
        return tx_hash

    def _tx_params(self, gas: Optional[int] = None) -> dict:
        params = {
            "from": self.account.address,
            "nonce": self.w3.eth.get_transaction_count(self.account.address),
            "gasPrice": self.w3.eth.gas_price,
            "chainId": self.chain_id,
        }
        if gas:
            params["gas"] = gas
        return params

    def get_receipt(self, tx_hash: str) -> Optional[dict]:
        """Receipt of a mined transaction, or None while it is still pending."""
        try:
            return self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    def wait_for_receipt(self, tx_hash: str, timeout: Optional[int] = None) -> dict:
        """
        Wait for a transaction to be mined.

        Raises:
            TransactionFailed: If the receipt status is not 1
        """
        receipt = self.w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=timeout or self.receipt_timeout)
        if receipt["status"] != 1:
            log.error(f"TX FAILED: {tx_hash}")
            raise TransactionFailed(tx_hash)
        log.info(f"TX confirmed in block {receipt['blockNumber']}: {tx_hash}")
        return receipt

    # ═══════════════════════════════════════════════════════════════════════
    # ERC20
    # ═══════════════════════════════════════════════════════════════════════

    def _erc20(self, token: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)

    def token_balance(self, token: str) -> int:
        return self._erc20(token).functions.balanceOf(self.account.address).call()

    def allowance(self, token: str, spender: str) -> int:
        return self._erc20(token).functions.allowance(
            self.account.address, Web3.to_checksum_address(spender)).call()

    def ensure_allowance(self, token: str, spender: str, amount: int,
                         approve_amount: Optional[int] = None) -> Optional[str]:
        """
        Approve `spender` if its allowance is below `amount`.

        Args:
            approve_amount: Amount to approve (default: exactly `amount`)

        Returns:
            Approval tx hash, or None if the allowance already covers amount
        """
        current = self.allowance(token, spender)
        if current >= amount:
            log.debug(f"Allowance {current} >= {amount}, no approval needed")
            return None

        value = amount if approve_amount is None else approve_amount
        log.info(f"Approving {spender[:10]}... for {value} of {token[:10]}... (was {current})")

        tx = self._erc20(token).functions.approve(
            Web3.to_checksum_address(spender), value
        ).build_transaction(self._tx_params(gas=100000))

        tx_hash = self._send(tx)
        self.wait_for_receipt(tx_hash)
        return tx_hash

    # ═══════════════════════════════════════════════════════════════════════
    # SWAPS & ORDERS
    # ═══════════════════════════════════════════════════════════════════════

    def send_swap(self, swap_tx: dict) -> str:
        """
        Send the `tx` object returned by the 1inch swap endpoint.

        Returns:
            Transaction hash (not yet confirmed)
        """
        if swap_tx.get("from") and swap_tx["from"].lower() != self.account.address.lower():
            raise ValueError(f"Swap tx is for {swap_tx['from']}, wallet is {self.account.address}")

        gas = int(swap_tx.get("gas") or 0)
        if gas:
            gas = gas * (100 + GAS_BUFFER_PCT) // 100
        else:
            gas = self.w3.eth.estimate_gas({
                "from": self.account.address,
                "to": Web3.to_checksum_address(swap_tx["to"]),
                "data": swap_tx["data"],
                "value": int(swap_tx.get("value") or 0),
            })

        tx = {
            "to": Web3.to_checksum_address(swap_tx["to"]),
            "data": swap_tx["data"],
            "value": int(swap_tx.get("value") or 0),
            "gas": gas,
            "gasPrice": int(swap_tx.get("gasPrice") or self.w3.eth.gas_price),
            "nonce": self.w3.eth.get_transaction_count(self.account.address),
            "chainId": self.chain_id,
        }
        return self._send(tx)

    def cancel_limit_order(self, maker_traits: int, order_hash: str,
                           protocol: str = LIMIT_ORDER_PROTOCOL_V4) -> str:
        """Cancel a live LOP v4 order on-chain and wait for the receipt."""
        lop = self.w3.eth.contract(address=Web3.to_checksum_address(protocol), abi=LOP_ABI)
        tx = lop.functions.cancelOrder(
            int(maker_traits), bytes.fromhex(order_hash.replace("0x", ""))
        ).build_transaction(self._tx_params(gas=120000))

        tx_hash = self._send(tx)
        self.wait_for_receipt(tx_hash)
        log.info(f"Order {order_hash[:18]}... cancelled on-chain")
        return tx_hash
