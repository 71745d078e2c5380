#!/usr/bin/env python3
"""
TWAP Keeper - tranche scheduler for treasury transfers on Polygon

Splits a transfer into time-spaced tranches and executes each one through
1inch (Limit Order Protocol v4 order or aggregator swap).

Usage:
    # Plan 20 USDC -> WPOL in 4 tranches, 2 minutes apart
    python3 twap_keeper.py plan --from USDC --to WPOL --amount 20 --tranches 4 --interval 120

    # One keeper pass / keep running
    python3 twap_keeper.py once
    python3 twap_keeper.py run

    # Inspect and manage plans
    python3 twap_keeper.py status [PLAN_ID]
    python3 twap_keeper.py cancel PLAN_ID [--on-chain]
    python3 twap_keeper.py pause PLAN_ID
    python3 twap_keeper.py resume PLAN_ID

    # JSON status API
    python3 twap_keeper.py serve --port 8080

Configuration:
    --config FILE (JSON) and environment / .env:
    ONEINCH_API_KEY, POLYGON_RPC_URL, PRIVATE_KEY, TREASURY_STATE_FILE
"""

import argparse
import json
import logging
import sys

from treasury_sdk.chain_client import ChainClient
from treasury_sdk.config import Config, load_config, mask_secret
from treasury_sdk.executor import TWAPExecutor
from treasury_sdk.limit_order import LimitOrderSigner
from treasury_sdk.oneinch_client import OneInchAPIError, OneInchClient
from treasury_sdk.server import create_app
from treasury_sdk.tokens import format_units, parse_units, resolve_token
from treasury_sdk.tranche_manager import TrancheManager, TrancheStateError
from treasury_sdk.tranche_sizes import format_split
from treasury_sdk.tranche_types import ExecutionMode
from treasury_sdk.wallet import Wallet
from treasury_sdk.yield_gate import YieldGate, YieldOracle

log = logging.getLogger('twap_keeper')


# ============ SETUP ============

def make_manager(config: Config) -> TrancheManager:
    return TrancheManager(
        storage_path=config.state_file,
        max_attempts=config.max_attempts,
        backoff_base=config.backoff_base,
        max_backoff=config.max_backoff,
    )


def make_oneinch(config: Config) -> OneInchClient:
    config.validate(need_key=True)
    log.debug(f"1inch API key: {mask_secret(config.oneinch_api_key)}")
    return OneInchClient(
        config.oneinch_api_key,
        chain_id=config.chain_id,
        base_url=config.oneinch_base_url,
        min_interval=config.oneinch_min_interval,
    )


def make_gate(config: Config, yields) -> YieldGate:
    """Yield gate fed from --yield SYMBOL:BPS pairs."""
    if not yields:
        return YieldGate()

    oracle = YieldOracle()
    for item in yields:
        symbol, _, bps = item.partition(":")
        token = resolve_token(symbol)
        oracle.add_asset(token.address, token.symbol)
        oracle.set_yield(config.chain_id, token.address, int(bps))
    return YieldGate(oracle)


def make_executor(config: Config, args) -> TWAPExecutor:
    config.validate(need_key=True, need_signer=True)
    signer = LimitOrderSigner(config.private_key, chain_id=config.chain_id)
    wallet = Wallet(config.polygon_rpc, config.private_key, chain_id=config.chain_id)
    return TWAPExecutor(
        make_manager(config),
        make_oneinch(config),
        make_gate(config, getattr(args, "yields", None)),
        signer=signer,
        wallet=wallet,
        max_quote_drift_bps=config.max_quote_drift_bps,
        requeue_expired=config.requeue_expired,
    )


# ============ COMMANDS ============

def cmd_plan(config: Config, args) -> int:
    src = resolve_token(args.src)
    dst = resolve_token(args.dst)
    total = parse_units(args.amount, src.decimals)
    tranche_size = parse_units(args.tranche_size, src.decimals) if args.tranche_size else None

    maker = args.maker
    if not maker:
        config.validate(need_signer=True)
        maker = LimitOrderSigner(config.private_key, chain_id=config.chain_id).address

    quote_fn = None
    if not args.no_estimate:
        api = make_oneinch(config)

        def quote_fn(amount):
            return api.quote_amount(src.address, dst.address, amount)

    manager = make_manager(config)
    plan = manager.create_plan(
        chain_id=config.chain_id,
        maker=maker,
        src_token=src.address,
        dst_token=dst.address,
        total_amount=total,
        interval_seconds=args.interval,
        tranche_count=args.tranches,
        tranche_size=tranche_size,
        start_ts=args.start_ts,
        mode=ExecutionMode(args.mode),
        slippage_bps=args.slippage_bps,
        order_ttl_seconds=args.ttl,
        min_yield_bps=args.min_yield_bps,
        quote_fn=quote_fn,
    )

    print(f"Plan {plan.plan_id} created")
    print(f"  {format_units(total, src.decimals)} {src.symbol} -> {dst.symbol} ({plan.mode.value})")
    if args.tranches:
        print(f"  Split: {format_split(total, plan.tranche_count, src.decimals, src.symbol)}")
    else:
        print(f"  Split: {plan.tranche_count} tranches of up to {args.tranche_size} {src.symbol}")
    for tranche in plan.tranches:
        estimate = ""
        if tranche.target_amount_estimate:
            estimate = f" ~{format_units(tranche.target_amount_estimate, dst.decimals)} {dst.symbol}"
        print(f"  #{tranche.index}: {format_units(tranche.source_amount, src.decimals)} {src.symbol}"
              f" at {tranche.eligible_at}{estimate}")
    return 0


def cmd_once(config: Config, args) -> int:
    stats = make_executor(config, args).run_once()
    print(json.dumps(stats, indent=2))
    return 0


def cmd_run(config: Config, args) -> int:
    make_executor(config, args).run(poll_interval=config.poll_interval)
    return 0


def cmd_status(config: Config, args) -> int:
    manager = make_manager(config)
    if args.plan_id:
        plan = manager.get_plan(args.plan_id)
        if plan is None:
            log.error(f"Plan not found: {args.plan_id}")
            return 1
        print(plan.to_json())
        return 0

    plans = manager.list_plans(include_complete=not args.open)
    if not plans:
        print("No plans")
        return 0

    for plan in plans:
        p = plan.progress()
        state = "complete" if plan.is_complete else ("active" if plan.active else "paused")
        print(f"{plan.plan_id}  {state:8}  {plan.mode.value:5}  "
              f"{p['filled_tranches']}/{p['total_tranches']} tranches  {p['percentage']}%")
    return 0


def cmd_cancel(config: Config, args) -> int:
    if args.on_chain:
        cancelled = make_executor(config, args).cancel_plan(args.plan_id, on_chain=True)
        print(f"Plan {args.plan_id} cancelled ({cancelled} order(s) cancelled on-chain)")
        return 0

    live = make_manager(config).cancel_plan(args.plan_id)
    print(f"Plan {args.plan_id} cancelled")
    for tranche in live:
        print(f"  still live until expiry: {tranche.order_hash}")
    return 0


def cmd_pause(config: Config, args) -> int:
    if not make_manager(config).pause_plan(args.plan_id):
        log.error(f"Plan {args.plan_id} is complete")
        return 1
    print(f"Plan {args.plan_id} paused")
    return 0


def cmd_resume(config: Config, args) -> int:
    if not make_manager(config).resume_plan(args.plan_id):
        log.error(f"Plan {args.plan_id} is complete")
        return 1
    print(f"Plan {args.plan_id} resumed")
    return 0


def cmd_serve(config: Config, args) -> int:
    oneinch = make_oneinch(config) if config.oneinch_api_key else None
    chain = ChainClient(config.polygon_rpc)
    app = create_app(make_manager(config), oneinch, chain)
    app.run(host=args.host or config.http_host, port=args.port or config.http_port, debug=False)
    return 0


COMMANDS = {
    "plan": cmd_plan,
    "once": cmd_once,
    "run": cmd_run,
    "status": cmd_status,
    "cancel": cmd_cancel,
    "pause": cmd_pause,
    "resume": cmd_resume,
    "serve": cmd_serve,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Treasury TWAP keeper (1inch on Polygon)")
    parser.add_argument("--config", "-c", help="JSON config file")
    parser.add_argument("--state-file", help="Tranche store (overrides config)")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING...")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    plan_parser = subparsers.add_parser("plan", help="Create a TWAP plan")
    plan_parser.add_argument("--from", dest="src", required=True, help="Source token (symbol or address)")
    plan_parser.add_argument("--to", dest="dst", required=True, help="Target token (symbol or address)")
    plan_parser.add_argument("--amount", required=True, help="Total amount in source token units")
    split = plan_parser.add_mutually_exclusive_group(required=True)
    split.add_argument("--tranches", type=int, help="Number of equal tranches")
    split.add_argument("--tranche-size", help="Fixed tranche size in source token units")
    plan_parser.add_argument("--interval", type=int, required=True, help="Seconds between tranches")
    plan_parser.add_argument("--mode", choices=["limit", "swap"], default="limit")
    plan_parser.add_argument("--slippage-bps", type=int, default=50)
    plan_parser.add_argument("--ttl", type=int, default=3600, help="Limit order lifetime (s)")
    plan_parser.add_argument("--min-yield-bps", type=int, default=0, help="Yield gate threshold")
    plan_parser.add_argument("--start-ts", type=int, help="First tranche time (default: now)")
    plan_parser.add_argument("--maker", help="Maker address (default: PRIVATE_KEY address)")
    plan_parser.add_argument("--no-estimate", action="store_true", help="Skip per-tranche quotes")

    for name, help_text in (("once", "Run one keeper pass"), ("run", "Run the keeper loop")):
        run_parser = subparsers.add_parser(name, help=help_text)
        run_parser.add_argument("--yield", dest="yields", action="append", metavar="TOKEN:BPS",
                                help="Feed the yield gate (repeatable)")

    status_parser = subparsers.add_parser("status", help="Show plans")
    status_parser.add_argument("plan_id", nargs="?")
    status_parser.add_argument("--open", action="store_true", help="Hide complete plans")

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a plan")
    cancel_parser.add_argument("plan_id")
    cancel_parser.add_argument("--on-chain", action="store_true", help="Also cancel live orders on-chain")

    for name in ("pause", "resume"):
        p = subparsers.add_parser(name, help=f"{name.capitalize()} a plan")
        p.add_argument("plan_id")

    serve_parser = subparsers.add_parser("serve", help="Run the JSON status API")
    serve_parser.add_argument("--host")
    serve_parser.add_argument("--port", type=int)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ValueError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2
    if args.state_file:
        config.state_file = args.state_file

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
    except (ValueError, TypeError, TrancheStateError, OneInchAPIError) as e:
        log.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
