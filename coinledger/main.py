from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from coinledger.data.providers import BinanceRestOracle
from coinledger.errors import ConfigError, LedgerError
from coinledger.storage import SqliteLedgerStore
from coinledger.trading import LedgerReconciler, OrderOutcome, OrderService
from coinledger.util.env import Settings

logger = logging.getLogger("coinledger")


def _decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"invalid decimal value: {value!r}")


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="coinledger", description="Crypto trading ledger")
    parser.add_argument("--db", help="ledger database path (overrides LEDGER_DB_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="create the ledger schema")

    p = sub.add_parser("execute", help="execute a pending order at a price")
    p.add_argument("order_id")
    p.add_argument("price", type=_decimal)

    p = sub.add_parser("cancel", help="cancel a pending order")
    p.add_argument("order_id")
    p.add_argument("--user", dest="user_id")

    p = sub.add_parser("sweep", help="check pending limit orders against live prices")
    p.add_argument("--watch", action="store_true", help="repeat every SWEEP_INTERVAL_S seconds")

    sub.add_parser("reconcile", help="complete pending orders that already have a transaction")

    p = sub.add_parser("cleanup-holdings", help="delete zero-quantity holdings")
    p.add_argument("--user", dest="user_id")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        store = SqliteLedgerStore(args.db or settings.db_path)
        if args.command == "init-db":
            _print({"initialized": str(store.path)})
            return 0
        if args.command == "reconcile":
            _print(LedgerReconciler(store).reconcile_pending_orders().to_dict())
            return 0
        if args.command == "cleanup-holdings":
            _print({"cleaned": LedgerReconciler(store).cleanup_zero_holdings(args.user_id)})
            return 0

        oracle = BinanceRestOracle(settings.binance_base_url, timeout_s=settings.oracle_timeout_s)
        service = OrderService(
            store,
            oracle,
            fee_rate=settings.fee_rate,
            order_timeout_s=settings.sweep_order_timeout_s,
            max_workers=settings.sweep_max_workers,
        )
        try:
            if args.command == "execute":
                result = service.execute_order(args.order_id, args.price)
                _print(result.to_dict())
                return 1 if result.status is OrderOutcome.REJECTED else 0
            if args.command == "cancel":
                result = service.cancel_order(args.order_id, user_id=args.user_id)
                _print(result.to_dict())
                return 1 if result.status is OrderOutcome.REJECTED else 0
            if args.command == "sweep":
                while True:
                    _print(service.sweep_pending_limit_orders().to_dict())
                    if not args.watch:
                        return 0
                    time.sleep(settings.sweep_interval_s)
        finally:
            oracle.close()
    except LedgerError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
