"""
Treasury TWAP SDK - Status Server

JSON API over the tranche store.

Endpoints:
  GET  /health                    - Server is up
  GET  /health/oneinch            - 1inch swap API reachable
  GET  /health/polygon            - Polygon RPC reachable
  GET  /api/status                - Store and plan counters
  GET  /api/plans                 - All plans (?active=true|false)
  GET  /api/plans/<plan_id>       - One plan with its tranches
  POST /api/plans                 - Create a plan
  POST /api/plans/<plan_id>/cancel - Cancel a plan
"""

import logging
import time
from typing import Optional

from flask import Flask, jsonify, request
from flask_cors import CORS

from .chain_client import ChainClient, ChainRPCError
from .oneinch_client import OneInchAPIError, OneInchClient
from .tokens import parse_units, resolve_token
from .tranche_manager import TrancheManager, TrancheStateError
from .tranche_types import ExecutionMode

log = logging.getLogger(__name__)


def create_app(manager: TrancheManager,
               oneinch: Optional[OneInchClient] = None,
               chain: Optional[ChainClient] = None) -> Flask:
    """Build the Flask app around an existing manager and clients."""
    app = Flask(__name__)
    CORS(app)

    # =========================================================================
    # HEALTH
    # =========================================================================

    @app.route('/health')
    def health():
        return jsonify({'ok': True, 'timestamp': int(time.time())})

    @app.route('/health/oneinch')
    def health_oneinch():
        if oneinch is None:
            return jsonify({'ok': False, 'error': '1inch client not configured'}), 503
        try:
            oneinch.healthcheck()
            return jsonify({'ok': True, 'chain_id': oneinch.chain_id})
        except OneInchAPIError as e:
            return jsonify({'ok': False, 'error': str(e)}), 503

    @app.route('/health/polygon')
    def health_polygon():
        if chain is None:
            return jsonify({'ok': False, 'error': 'RPC not configured'}), 503
        try:
            return jsonify({'ok': True, 'block': chain.block_number(), 'rpc': chain.rpc_url})
        except ChainRPCError as e:
            return jsonify({'ok': False, 'error': str(e)}), 503

    # =========================================================================
    # API
    # =========================================================================

    @app.route('/api/status')
    def api_status():
        manager.reload()
        plans = manager.list_plans()
        return jsonify({
            'status': 'ok',
            'timestamp': int(time.time()),
            'store': str(manager.storage_path),
            'plans': {
                'total': len(plans),
                'active': sum(1 for p in plans if p.active),
                'complete': sum(1 for p in plans if p.is_complete),
            },
            'open_orders': sum(len(manager.submitted_tranches(p.plan_id)) for p in plans),
        })

    @app.route('/api/plans')
    def api_plans():
        manager.reload()
        active = request.args.get('active')
        if active is not None:
            active = active.lower() in ('1', 'true', 'yes')
        plans = manager.list_plans(active=active)
        return jsonify({
            'plans': [manager.summary(p.plan_id) for p in plans],
            'count': len(plans),
        })

    @app.route('/api/plans/<plan_id>')
    def api_plan(plan_id):
        manager.reload()
        plan = manager.get_plan(plan_id)
        if plan is None:
            return jsonify({'error': 'Plan not found'}), 404
        data = plan.to_dict()
        data['progress'] = plan.progress()
        return jsonify(data)

    @app.route('/api/plans', methods=['POST'])
    def api_create_plan():
        """
        Create a plan.

        Request:
        {
            "maker": "0x...",
            "src_token": "USDC",          # symbol or address
            "dst_token": "WPOL",
            "total_amount": "20",         # human units (or "total_units": base units)
            "tranche_count": 4,           # or "tranche_size" in human units
            "interval_seconds": 120,
            "mode": "limit",              # limit | swap
            "slippage_bps": 50,
            "order_ttl_seconds": 3600,
            "min_yield_bps": 0,
            "start_ts": 1700000000        # optional
        }
        """
        data = request.get_json(silent=True)
        if not data:
            return jsonify({'error': 'No data provided'}), 400

        try:
            src = resolve_token(data.get('src_token', ''))
            dst = resolve_token(data.get('dst_token', ''))

            if 'total_units' in data:
                total = int(data['total_units'])
            else:
                total = parse_units(data.get('total_amount', 0), src.decimals)

            tranche_size = data.get('tranche_size')
            if tranche_size is not None:
                tranche_size = parse_units(tranche_size, src.decimals)
            tranche_count = data.get('tranche_count')

            quote_fn = None
            if oneinch is not None and data.get('estimate', True):
                def quote_fn(amount):
                    return oneinch.quote_amount(src.address, dst.address, amount)

            manager.reload()
            plan = manager.create_plan(
                chain_id=int(data.get('chain_id', oneinch.chain_id if oneinch else 137)),
                maker=data.get('maker', ''),
                src_token=src.address,
                dst_token=dst.address,
                total_amount=total,
                interval_seconds=int(data.get('interval_seconds', 0)),
                tranche_count=int(tranche_count) if tranche_count is not None else None,
                tranche_size=tranche_size,
                start_ts=data.get('start_ts'),
                mode=ExecutionMode(data.get('mode', 'limit')),
                slippage_bps=int(data.get('slippage_bps', 50)),
                order_ttl_seconds=int(data.get('order_ttl_seconds', 3600)),
                min_yield_bps=int(data.get('min_yield_bps', 0)),
                quote_fn=quote_fn,
            )
        except (ValueError, TypeError) as e:
            return jsonify({'error': str(e)}), 400
        except TrancheStateError as e:
            return jsonify({'error': str(e)}), 409
        except OneInchAPIError as e:
            log.error(f"Plan estimate failed: {e}")
            return jsonify({'error': str(e)}), 502

        log.info(f"Plan created via API: {plan.plan_id}")
        return jsonify({'success': True, 'plan': plan.to_dict()}), 201

    @app.route('/api/plans/<plan_id>/cancel', methods=['POST'])
    def api_cancel_plan(plan_id):
        manager.reload()
        if manager.get_plan(plan_id) is None:
            return jsonify({'error': 'Plan not found'}), 404

        live = manager.cancel_plan(plan_id)
        return jsonify({
            'success': True,
            'live_orders': [t.order_hash for t in live],
        })

    return app
