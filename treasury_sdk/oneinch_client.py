"""
Treasury TWAP SDK - 1inch API Client

REST client for the 1inch Developer Portal (api.1inch.dev):
  - Swap API v6.0       quotes, swap calldata, approvals, token list
  - Orderbook API v4.0  Limit Order Protocol v4 order submission/lookup
  - Spot Price API v1.1
"""

import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import requests

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.1inch.dev"

# Statuses worth retrying (rate limit, upstream trouble)
RETRY_STATUSES = (429, 500, 502, 503, 504)

# Orderbook order statuses for /address/{maker}
ORDER_STATUS_VALID = 1
ORDER_STATUS_TEMPORARILY_INVALID = 2
ORDER_STATUS_INVALID = 3


class OneInchAPIError(Exception):
    """1inch API call failed."""
    def __init__(self, status: int, message: str, payload: Any = None):
        self.status = status
        self.message = message
        self.payload = payload
        super().__init__(f"1inch API Error {status}: {message}")


class OneInchClient:
    """
    1inch REST API client.

    Usage:
        api = OneInchClient(api_key, chain_id=137)
        quote = api.quote(USDC, WPOL, 5_000_000)
        dst_amount = int(quote["dstAmount"])

        api.submit_order(signed_order)
        info = api.get_order(signed_order.order_hash)
    """

    def __init__(self, api_key: str, chain_id: int = 137,
                 base_url: str = DEFAULT_BASE_URL,
                 timeout: int = 30,
                 max_retries: int = 3,
                 min_interval: float = 1.0,
                 session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.chain_id = chain_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.min_interval = min_interval
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {api_key}",
            "accept": "application/json",
        })
        self._last_call = 0.0

    def _throttle(self):
        wait = self._last_call + self.min_interval - time.monotonic()
        if wait > 0:
            time.sleep(wait)
        self._last_call = time.monotonic()

    def _request(self, method: str, path: str,
                 params: Optional[dict] = None,
                 json_body: Optional[dict] = None) -> Any:
        """Make API call, retrying rate-limited and 5xx responses."""
        url = f"{self.base_url}{path}"
        attempt = 0

        while True:
            self._throttle()
            try:
                response = self.session.request(
                    method, url,
                    params=params,
                    json=json_body,
                    timeout=self.timeout,
                )
            except requests.exceptions.RequestException as e:
                raise OneInchAPIError(-1, f"Connection failed: {e}")

            if response.status_code in RETRY_STATUSES and attempt < self.max_retries:
                delay = 2 ** attempt
                log.warning(f"{method} {path} -> {response.status_code}, retrying in {delay}s")
                time.sleep(delay)
                attempt += 1
                continue
            break

        try:
            payload = response.json() if response.content else None
        except ValueError:
            payload = response.text

        if not response.ok:
            raise OneInchAPIError(response.status_code, _error_message(payload, response), payload)

        return payload

    def _get(self, path: str, params: Optional[dict] = None) -> Any:
        return self._request("GET", path, params=params)

    def _post(self, path: str, body: dict) -> Any:
        return self._request("POST", path, json_body=body)

    # ═══════════════════════════════════════════════════════════════════════
    # SWAP API v6.0
    # ═══════════════════════════════════════════════════════════════════════

    @property
    def swap_base(self) -> str:
        return f"/swap/v6.0/{self.chain_id}"

    def healthcheck(self) -> dict:
        """Check the swap API is up."""
        return self._get(f"{self.swap_base}/healthcheck")

    def tokens(self) -> Dict[str, dict]:
        """Tokens supported by the aggregator, keyed by address."""
        result = self._get(f"{self.swap_base}/tokens")
        return result.get("tokens", {}) if isinstance(result, dict) else {}

    def quote(self, src: str, dst: str, amount: int, **extra) -> dict:
        """
        Get a swap quote.

        Args:
            src: Source token address
            dst: Destination token address
            amount: Source amount in base units

        Returns:
            {"dstAmount": "...", ...}
        """
        params = {"src": src, "dst": dst, "amount": str(int(amount))}
        params.update(extra)
        return self._get(f"{self.swap_base}/quote", params)

    def quote_amount(self, src: str, dst: str, amount: int) -> int:
        """
        Destination amount for a quote, in base units.

        Older API versions used toTokenAmount / toAmount for the same value.
        """
        result = self.quote(src, dst, amount)
        for key in ("dstAmount", "toAmount", "toTokenAmount"):
            if result and result.get(key) is not None:
                return int(result[key])
        raise OneInchAPIError(200, "Quote response has no destination amount", result)

    def swap(self, src: str, dst: str, amount: int, from_address: str,
             slippage: float = 1.0, disable_estimate: bool = False, **extra) -> dict:
        """
        Build swap calldata.

        Args:
            slippage: Allowed slippage in percent (1.0 = 1%)

        Returns:
            {"dstAmount": "...", "tx": {"from", "to", "data", "value", "gas", "gasPrice"}}
        """
        params = {
            "src": src,
            "dst": dst,
            "amount": str(int(amount)),
            "from": from_address,
            "slippage": slippage,
        }
        if disable_estimate:
            params["disableEstimate"] = "true"
        params.update(extra)
        return self._get(f"{self.swap_base}/swap", params)

    def approve_spender(self) -> str:
        """Address of the aggregation router to approve."""
        return self._get(f"{self.swap_base}/approve/spender")["address"]

    def allowance(self, token: str, wallet: str) -> int:
        result = self._get(f"{self.swap_base}/approve/allowance",
                           {"tokenAddress": token, "walletAddress": wallet})
        return int(result["allowance"])

    def approve_transaction(self, token: str, amount: Optional[int] = None) -> dict:
        """Calldata for approving the router (unlimited if amount is None)."""
        params = {"tokenAddress": token}
        if amount is not None:
            params["amount"] = str(int(amount))
        return self._get(f"{self.swap_base}/approve/transaction", params)

    # ═══════════════════════════════════════════════════════════════════════
    # SPOT PRICE API v1.1
    # ═══════════════════════════════════════════════════════════════════════

    def spot_price(self, token: str, currency: str = "USD") -> Optional[float]:
        result = self._get(f"/price/v1.1/{self.chain_id}/{token}", {"currency": currency})
        if not result:
            return None
        value = result.get(token) or result.get(token.lower())
        return float(value) if value is not None else None

    # ═══════════════════════════════════════════════════════════════════════
    # ORDERBOOK API v4.0
    # ═══════════════════════════════════════════════════════════════════════

    @property
    def orderbook_base(self) -> str:
        return f"/orderbook/v4.0/{self.chain_id}"

    def submit_order(self, signed_order) -> Any:
        """
        Publish a signed LOP v4 order.

        Args:
            signed_order: SignedOrder from LimitOrderSigner.sign()
        """
        body = signed_order.to_api_payload()
        log.info(f"Submitting order {signed_order.order_hash[:18]}... to 1inch orderbook")
        return self._post(self.orderbook_base, body)

    def get_order(self, order_hash: str) -> Optional[dict]:
        """
        Look up an order by hash.

        Returns:
            Order info (remainingMakerAmount, orderInvalidReason, ...)
            or None if the orderbook does not know the hash
        """
        try:
            return self._get(f"{self.orderbook_base}/order/{order_hash}")
        except OneInchAPIError as e:
            if e.status == 404:
                return None
            raise

    def orders_by_maker(self, maker: str, page: int = 1, limit: int = 100,
                        statuses: Sequence[int] = (ORDER_STATUS_VALID,)) -> List[dict]:
        params = {
            "page": page,
            "limit": limit,
            "statuses": ",".join(str(s) for s in statuses),
        }
        result = self._get(f"{self.orderbook_base}/address/{maker}", params)
        return result or []

    def all_orders(self, page: int = 1, limit: int = 100,
                   maker_asset: str = "", taker_asset: str = "") -> List[dict]:
        params = {"page": page, "limit": limit}
        if maker_asset:
            params["makerAsset"] = maker_asset
        if taker_asset:
            params["takerAsset"] = taker_asset
        result = self._get(f"{self.orderbook_base}/all", params)
        return result or []

    def order_events(self, order_hash: str) -> List[dict]:
        """Fill/cancel events recorded for an order."""
        result = self._get(f"{self.orderbook_base}/events/{order_hash}")
        if isinstance(result, dict):
            return result.get(order_hash, result.get("events", []))
        return result or []


def _error_message(payload: Any, response: requests.Response) -> str:
    if isinstance(payload, dict):
        for key in ("description", "message", "error"):
            if payload.get(key):
                return str(payload[key])
    if isinstance(payload, str) and payload:
        return payload[:200]
    return response.reason or "Request failed"
