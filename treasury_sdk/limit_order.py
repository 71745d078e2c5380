"""
Treasury TWAP SDK - Limit Orders

1inch Limit Order Protocol v4 order construction and EIP-712 signing.

Order struct (v4):
    salt, maker, receiver, makerAsset, takerAsset,
    makingAmount, takingAmount, makerTraits

MakerTraits bit layout (uint256):
    [0, 80)     low 80 bits of the allowed sender address (0 = anyone)
    [80, 120)   expiration timestamp
    [120, 160)  nonce or epoch
    [160, 200)  series
    247..255    flags (see FLAG_* below)
"""

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import keccak, to_checksum_address

from .tokens import LIMIT_ORDER_PROTOCOL_V4

log = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

DOMAIN_NAME = "1inch Limit Order Protocol"
DOMAIN_VERSION = "4"

ORDER_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "Order": [
        {"name": "salt", "type": "uint256"},
        {"name": "maker", "type": "address"},
        {"name": "receiver", "type": "address"},
        {"name": "makerAsset", "type": "address"},
        {"name": "takerAsset", "type": "address"},
        {"name": "makingAmount", "type": "uint256"},
        {"name": "takingAmount", "type": "uint256"},
        {"name": "makerTraits", "type": "uint256"},
    ],
}

# ═══════════════════════════════════════════════════════════════════════════════
# MAKER TRAITS
# ═══════════════════════════════════════════════════════════════════════════════

FLAG_NO_PARTIAL_FILLS = 255
FLAG_ALLOW_MULTIPLE_FILLS = 254
FLAG_PRE_INTERACTION_CALL = 252
FLAG_POST_INTERACTION_CALL = 251
FLAG_NEED_CHECK_EPOCH_MANAGER = 250
FLAG_HAS_EXTENSION = 249
FLAG_USE_PERMIT2 = 248
FLAG_UNWRAP_WETH = 247

_UINT40_MAX = (1 << 40) - 1
_UINT80_MASK = (1 << 80) - 1


class MakerTraits:
    """
    Builder for the makerTraits word.

    Usage:
        traits = MakerTraits().with_expiration(ts).with_nonce(7).allow_multiple_fills()
        order = LimitOrder(..., maker_traits=traits.value)
    """

    def __init__(self, value: int = 0):
        self.value = int(value)

    def _set_bits(self, offset: int, width: int, field_value: int) -> "MakerTraits":
        if field_value < 0 or field_value >= (1 << width):
            raise ValueError(f"Value {field_value} does not fit in {width} bits")
        mask = ((1 << width) - 1) << offset
        self.value = (self.value & ~mask) | (field_value << offset)
        return self

    def _get_bits(self, offset: int, width: int) -> int:
        return (self.value >> offset) & ((1 << width) - 1)

    def _set_flag(self, bit: int, enabled: bool = True) -> "MakerTraits":
        if enabled:
            self.value |= (1 << bit)
        else:
            self.value &= ~(1 << bit)
        return self

    def has_flag(self, bit: int) -> bool:
        return bool(self.value >> bit & 1)

    def with_allowed_sender(self, address: str) -> "MakerTraits":
        return self._set_bits(0, 80, int(address, 16) & _UINT80_MASK)

    def with_expiration(self, expiration_ts: int) -> "MakerTraits":
        return self._set_bits(80, 40, int(expiration_ts))

    def with_nonce(self, nonce: int) -> "MakerTraits":
        return self._set_bits(120, 40, int(nonce))

    def with_series(self, series: int) -> "MakerTraits":
        return self._set_bits(160, 40, int(series))

    def disable_partial_fills(self) -> "MakerTraits":
        return self._set_flag(FLAG_NO_PARTIAL_FILLS)

    def allow_multiple_fills(self) -> "MakerTraits":
        return self._set_flag(FLAG_ALLOW_MULTIPLE_FILLS)

    @property
    def expiration(self) -> int:
        return self._get_bits(80, 40)

    @property
    def nonce(self) -> int:
        return self._get_bits(120, 40)

    @property
    def series(self) -> int:
        return self._get_bits(160, 40)

    @property
    def allowed_sender(self) -> int:
        return self._get_bits(0, 80)


def random_salt() -> int:
    """96-bit random salt (no extension, so the low 160 bits are free)."""
    return secrets.randbits(96)


def random_nonce() -> int:
    return secrets.randbelow(_UINT40_MAX)


# ═══════════════════════════════════════════════════════════════════════════════
# ORDERS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class LimitOrder:
    """LOP v4 order struct."""
    salt: int
    maker: str
    maker_asset: str
    taker_asset: str
    making_amount: int
    taking_amount: int
    maker_traits: int = 0
    receiver: str = ZERO_ADDRESS

    def to_message(self) -> dict:
        """EIP-712 message values."""
        return {
            "salt": int(self.salt),
            "maker": to_checksum_address(self.maker),
            "receiver": to_checksum_address(self.receiver),
            "makerAsset": to_checksum_address(self.maker_asset),
            "takerAsset": to_checksum_address(self.taker_asset),
            "makingAmount": int(self.making_amount),
            "takingAmount": int(self.taking_amount),
            "makerTraits": int(self.maker_traits),
        }

    def to_api_dict(self) -> dict:
        """Order data as the orderbook API expects it (uint256 as decimal strings)."""
        return {
            "salt": str(self.salt),
            "maker": to_checksum_address(self.maker),
            "receiver": to_checksum_address(self.receiver),
            "makerAsset": to_checksum_address(self.maker_asset),
            "takerAsset": to_checksum_address(self.taker_asset),
            "makingAmount": str(self.making_amount),
            "takingAmount": str(self.taking_amount),
            "makerTraits": str(self.maker_traits),
            "extension": "0x",
        }


@dataclass
class SignedOrder:
    order: LimitOrder
    signature: str
    order_hash: str
    r: str
    vs: str

    def to_api_payload(self) -> dict:
        return {
            "orderHash": self.order_hash,
            "signature": self.signature,
            "data": self.order.to_api_dict(),
        }


def build_order(maker: str, maker_asset: str, taker_asset: str,
                making_amount: int, quoted_amount: int,
                slippage_bps: int, expiration_ts: int,
                nonce: Optional[int] = None,
                salt: Optional[int] = None,
                partial_fills: bool = True) -> LimitOrder:
    """
    Build an order that asks for the quoted amount minus slippage.

    takingAmount = quoted_amount * (10000 - slippage_bps) / 10000

    Raises:
        ValueError: If amounts are not positive or slippage is out of range
    """
    if making_amount <= 0:
        raise ValueError("Making amount must be positive")
    if quoted_amount <= 0:
        raise ValueError("Quoted amount must be positive")
    if not 0 <= slippage_bps < 10_000:
        raise ValueError(f"Slippage must be in [0, 10000) bps, got {slippage_bps}")

    taking_amount = quoted_amount * (10_000 - slippage_bps) // 10_000
    if taking_amount <= 0:
        raise ValueError("Taking amount rounds to zero")

    traits = MakerTraits() \
        .with_expiration(expiration_ts) \
        .with_nonce(random_nonce() if nonce is None else nonce)
    if not partial_fills:
        traits.disable_partial_fills()
    else:
        traits.allow_multiple_fills()

    return LimitOrder(
        salt=random_salt() if salt is None else salt,
        maker=maker,
        maker_asset=maker_asset,
        taker_asset=taker_asset,
        making_amount=int(making_amount),
        taking_amount=int(taking_amount),
        maker_traits=traits.value,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# SIGNING
# ═══════════════════════════════════════════════════════════════════════════════

class LimitOrderSigner:
    """
    EIP-712 signer for LOP v4 orders.

    Usage:
        signer = LimitOrderSigner(private_key, chain_id=137)
        signed = signer.sign(order)
        api.submit_order(signed)
    """

    def __init__(self, private_key: str, chain_id: int = 137,
                 verifying_contract: str = LIMIT_ORDER_PROTOCOL_V4):
        self.account = Account.from_key(private_key)
        self.chain_id = chain_id
        self.verifying_contract = to_checksum_address(verifying_contract)

    @property
    def address(self) -> str:
        return self.account.address

    def domain(self) -> dict:
        return {
            "name": DOMAIN_NAME,
            "version": DOMAIN_VERSION,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }

    def typed_data(self, order: LimitOrder) -> dict:
        return {
            "types": ORDER_TYPES,
            "primaryType": "Order",
            "domain": self.domain(),
            "message": order.to_message(),
        }

    def order_hash(self, order: LimitOrder) -> str:
        """EIP-712 digest of the order (what the protocol calls orderHash)."""
        signable = encode_typed_data(full_message=self.typed_data(order))
        digest = keccak(b"\x19" + signable.version + signable.header + signable.body)
        return "0x" + digest.hex()

    def sign(self, order: LimitOrder) -> SignedOrder:
        """
        Sign an order.

        Raises:
            ValueError: If the order's maker is not this signer
        """
        if order.maker.lower() != self.account.address.lower():
            raise ValueError(f"Order maker {order.maker} is not signer {self.account.address}")

        signable = encode_typed_data(full_message=self.typed_data(order))
        signed = self.account.sign_message(signable)

        # Compact signature: v folded into the top bit of s
        vs = signed.s | ((signed.v - 27) << 255)

        return SignedOrder(
            order=order,
            signature="0x" + bytes(signed.signature).hex(),
            order_hash=self.order_hash(order),
            r="0x" + signed.r.to_bytes(32, "big").hex(),
            vs="0x" + vs.to_bytes(32, "big").hex(),
        )


def recover_order_signer(signer: LimitOrderSigner, order: LimitOrder, signature: str) -> str:
    """Address that produced `signature` over `order` in signer's domain."""
    signable = encode_typed_data(full_message=signer.typed_data(order))
    return Account.recover_message(signable, signature=signature)


def expiration_for(eligible_at: int, ttl_seconds: int, now: Optional[int] = None) -> int:
    """Order expiry: ttl after the later of eligible_at and now."""
    now = int(time.time()) if now is None else now
    return max(int(eligible_at), now) + int(ttl_seconds)
