#!/usr/bin/env python3
"""
Manual Deposit Processor

PURPOSE: Operator tooling for PayPal deposits that never got credited -
re-check a single transaction, replay the pending backlog, retry stuck
deposits, or reconcile a user's balance.
"""

import sys
import os
import asyncio
import argparse
import json
import logging

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.balance_reconciliation_service import balance_reconciliation_service
from services.deposit_reconciliation import deposit_reconciliation_service

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def _print_result(result: dict):
    print(json.dumps(result, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Manually process PayPal deposits')
    subparsers = parser.add_subparsers(dest='command', required=True)

    process = subparsers.add_parser('process', help='Force-process a PayPal transaction or order id')
    process.add_argument('transaction_id', help='PayPal capture id, order id, or deposit id')
    process.add_argument('--order', action='store_true', help='Treat the id as a PayPal order id')

    subparsers.add_parser('process-pending', help='Replay pending deposits that have a transaction id')

    retry = subparsers.add_parser('retry-pending', help='Retry stuck deposits and expire abandoned ones')
    retry.add_argument('--max-attempts', type=int, default=5)
    retry.add_argument('--max-age-mins', type=int, default=60)
    retry.add_argument('--limit', type=int, default=10)

    reconcile = subparsers.add_parser('reconcile', help="Reconcile a user's balance with the ledger")
    reconcile.add_argument('user_id')
    reconcile.add_argument('--refresh', action='store_true',
                           help='Replay recent completed deposits before reconciling')

    subparsers.add_parser('status', help='Show pending deposit counters')
    return parser


async def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == 'process':
        if args.order:
            result = await deposit_reconciliation_service.process_specific_transaction(order_id=args.transaction_id)
        else:
            result = await deposit_reconciliation_service.process_specific_transaction(transaction_id=args.transaction_id)
    elif args.command == 'process-pending':
        result = deposit_reconciliation_service.process_all_pending_deposits()
    elif args.command == 'retry-pending':
        result = await deposit_reconciliation_service.retry_pending_deposits(
            max_attempts=args.max_attempts,
            max_age_mins=args.max_age_mins,
            limit_per_run=args.limit,
        )
    elif args.command == 'reconcile':
        if args.refresh:
            result = balance_reconciliation_service.refresh_user_balance(args.user_id)
        else:
            result = balance_reconciliation_service.reconcile_user_balance(args.user_id, triggered_by="cli")
    else:
        result = deposit_reconciliation_service.get_pending_deposits_status()

    _print_result(result)
    return 0 if result.get('success') else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
