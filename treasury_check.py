#!/usr/bin/env python3
"""
Treasury Check - one-shot 1inch / Polygon inspection tool

Usage:
    # Wallet balances (POL + known tokens)
    python3 treasury_check.py balances [--address 0x...]

    # Aggregator quote
    python3 treasury_check.py quote --from USDC --to WPOL --amount 5

    # Build (and optionally submit) a single LOP v4 limit order
    python3 treasury_check.py order --from USDC --to WPOL --amount 5 [--submit]

    # Orders on the 1inch orderbook for the maker
    python3 treasury_check.py orders [--address 0x...] [--all-statuses]

    # Connectivity
    python3 treasury_check.py health
"""

import argparse
import json
import logging
import sys
import time

from treasury_sdk.chain_client import ChainClient, ChainRPCError
from treasury_sdk.config import Config, load_config, mask_secret
from treasury_sdk.limit_order import LimitOrderSigner, build_order
from treasury_sdk.oneinch_client import (
    ORDER_STATUS_INVALID,
    ORDER_STATUS_TEMPORARILY_INVALID,
    ORDER_STATUS_VALID,
    OneInchAPIError,
    OneInchClient,
)
from treasury_sdk.tokens import POLYGON_TOKENS, format_units, parse_units, resolve_token

log = logging.getLogger('treasury_check')


def _api(config: Config) -> OneInchClient:
    config.validate(need_key=True)
    return OneInchClient(config.oneinch_api_key, chain_id=config.chain_id,
                         base_url=config.oneinch_base_url,
                         min_interval=config.oneinch_min_interval)


def _address(config: Config, args) -> str:
    if args.address:
        return args.address
    config.validate(need_signer=True)
    return LimitOrderSigner(config.private_key, chain_id=config.chain_id).address


# ============ COMMANDS ============

def cmd_balances(config: Config, args) -> int:
    chain = ChainClient(config.polygon_rpc)
    address = _address(config, args)

    print(f"Address: {address}")
    print(f"POL:     {format_units(chain.native_balance(address), 18)}")

    seen = set()
    for token in POLYGON_TOKENS.values():
        if token.address.lower() in seen:
            continue
        seen.add(token.address.lower())
        balance = chain.erc20_balance(token.address, address)
        print(f"{token.symbol + ':':8} {format_units(balance, token.decimals)}")
    return 0


def cmd_quote(config: Config, args) -> int:
    src = resolve_token(args.src)
    dst = resolve_token(args.dst)
    amount = parse_units(args.amount, src.decimals)

    dst_amount = _api(config).quote_amount(src.address, dst.address, amount)
    print(f"{args.amount} {src.symbol} -> {format_units(dst_amount, dst.decimals)} {dst.symbol}")
    return 0


def cmd_order(config: Config, args) -> int:
    config.validate(need_key=True, need_signer=True)
    src = resolve_token(args.src)
    dst = resolve_token(args.dst)
    amount = parse_units(args.amount, src.decimals)

    api = _api(config)
    signer = LimitOrderSigner(config.private_key, chain_id=config.chain_id)
    quote = api.quote_amount(src.address, dst.address, amount)

    order = build_order(
        maker=signer.address,
        maker_asset=src.address,
        taker_asset=dst.address,
        making_amount=amount,
        quoted_amount=quote,
        slippage_bps=args.slippage_bps,
        expiration_ts=int(time.time()) + args.ttl,
    )
    signed = signer.sign(order)

    print(f"Quote:      {format_units(quote, dst.decimals)} {dst.symbol}")
    print(f"Limit:      {format_units(order.taking_amount, dst.decimals)} {dst.symbol} "
          f"(-{args.slippage_bps} bps)")
    print(f"Order hash: {signed.order_hash}")
    print(f"Signature:  {mask_secret(signed.signature, 10, 6)}")

    if not args.submit:
        print("Dry run (use --submit to publish)")
        return 0

    api.submit_order(signed)
    print("Submitted to 1inch orderbook")
    return 0


def cmd_orders(config: Config, args) -> int:
    address = _address(config, args)
    statuses = (ORDER_STATUS_VALID,)
    if args.all_statuses:
        statuses = (ORDER_STATUS_VALID, ORDER_STATUS_TEMPORARILY_INVALID, ORDER_STATUS_INVALID)

    orders = _api(config).orders_by_maker(address, statuses=statuses)
    if args.json:
        print(json.dumps(orders, indent=2))
        return 0

    print(f"{len(orders)} order(s) for {address}")
    for item in orders:
        data = item.get("data", {})
        print(f"  {item.get('orderHash', '?')[:18]}...  "
              f"making {data.get('makingAmount')}  taking {data.get('takingAmount')}  "
              f"remaining {item.get('remainingMakerAmount')}")
    return 0


def cmd_health(config: Config, args) -> int:
    ok = True

    chain = ChainClient(config.polygon_rpc)
    try:
        print(f"Polygon RPC: OK (block {chain.block_number()}, chain {chain.chain_id()})")
    except ChainRPCError as e:
        print(f"Polygon RPC: FAILED ({e})")
        ok = False

    if config.oneinch_api_key:
        try:
            _api(config).healthcheck()
            print(f"1inch API:   OK (key {mask_secret(config.oneinch_api_key)})")
        except OneInchAPIError as e:
            print(f"1inch API:   FAILED ({e})")
            ok = False
    else:
        print("1inch API:   no ONEINCH_API_KEY")
        ok = False

    return 0 if ok else 1


COMMANDS = {
    "balances": cmd_balances,
    "quote": cmd_quote,
    "order": cmd_order,
    "orders": cmd_orders,
    "health": cmd_health,
}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Treasury 1inch / Polygon checks")
    parser.add_argument("--config", "-c", help="JSON config file")
    parser.add_argument("--log-level", default=None)
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    balances_parser = subparsers.add_parser("balances", help="Wallet balances")
    balances_parser.add_argument("--address", help="Address (default: PRIVATE_KEY address)")

    for name, help_text in (("quote", "Aggregator quote"), ("order", "Build/submit a limit order")):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("--from", dest="src", required=True)
        p.add_argument("--to", dest="dst", required=True)
        p.add_argument("--amount", required=True, help="Source token units")
        if name == "order":
            p.add_argument("--slippage-bps", type=int, default=50)
            p.add_argument("--ttl", type=int, default=3600, help="Order lifetime (s)")
            p.add_argument("--submit", action="store_true", help="Publish to the orderbook")

    orders_parser = subparsers.add_parser("orders", help="Maker orders on the orderbook")
    orders_parser.add_argument("--address", help="Maker (default: PRIVATE_KEY address)")
    orders_parser.add_argument("--all-statuses", action="store_true")
    orders_parser.add_argument("--json", action="store_true")

    subparsers.add_parser("health", help="Check RPC and API connectivity")

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ValueError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=getattr(logging, (args.log_level or config.log_level).upper(), logging.INFO),
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        return handler(config, args)
    except (ValueError, OneInchAPIError, ChainRPCError) as e:
        log.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
