#!/usr/bin/env python3
import argparse
import json
import os
import sys

from . import config as config_module
from .config import DeviceConfig
from .outbox_worker import MAX_ATTEMPTS_DEFAULT, drain_outbox, run_forever
from .store import OrderStoreError, open_order_store
from .sync_client import SyncClient


def main(argv=None):
    parser = argparse.ArgumentParser(description="POS device agent: local order store and outbox sync.")
    parser.add_argument(
        "--config",
        default=os.environ.get("POS_CONFIG_PATH", config_module.CONFIG_PATH),
        help="Device config JSON path (default: pos_desktop/config.json).",
    )
    parser.add_argument("--db", default=None, help="SQLite DB path; overrides db_path from the config.")
    parser.add_argument("--init-db", action="store_true", help="Initialize local SQLite schema and exit")
    parser.add_argument("--drain", action="store_true", help="Deliver pending outbox entries once and exit")
    parser.add_argument("--loop", action="store_true", help="Keep draining the outbox as a service")
    parser.add_argument("--sleep", type=float, default=15.0, help="Seconds between drain passes with --loop")
    parser.add_argument("--limit", type=int, default=10, help="Max outbox entries per drain pass")
    parser.add_argument("--max-attempts", type=int, default=MAX_ATTEMPTS_DEFAULT)
    parser.add_argument("--recent", type=int, default=0, metavar="N", help="Print the N most recent orders")
    parser.add_argument("--outbox", action="store_true", help="Print outbox entries still waiting for delivery")
    args = parser.parse_args(argv)

    cfg = DeviceConfig.load(os.path.abspath(args.config))
    if args.db:
        cfg.db_path = os.path.abspath(args.db)

    try:
        store = open_order_store(cfg.db_path)
    except OrderStoreError as ex:
        print(str(ex), file=sys.stderr)
        return 2

    if args.init_db:
        print("ok" if store.durable else "ok (no db_path configured, nothing to initialize)")
        return 0

    if args.recent:
        for o in store.list_recent_orders(args.recent):
            print(json.dumps(o.model_dump()))

    if args.outbox:
        for e in store.list_unsent_outbox(limit=1000):
            print(json.dumps({"id": e.id, "type": e.type, "status": e.status,
                              "attempt_count": e.attempt_count, "next_attempt_at": e.next_attempt_at,
                              "last_error": e.last_error}))

    client = SyncClient(cfg)
    if args.loop:
        print(f"Outbox drain running every {args.sleep}s against {cfg.sync_url or '(no sync_url)'}")
        run_forever(store, client, interval=args.sleep, limit=args.limit, max_attempts=args.max_attempts)
    elif args.drain:
        sent = drain_outbox(store, client, limit=args.limit, max_attempts=args.max_attempts)
        print(json.dumps({"ok": True, "sent": sent, "pending": store.count_outbox_pending()}))
    return 0


if __name__ == "__main__":
    sys.exit(main())
