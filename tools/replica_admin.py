#!/usr/bin/env python3
"""
Operator commands for the replicated profile store.

Usage:
    python tools/replica_admin.py status
    python tools/replica_admin.py sync-all
    python tools/replica_admin.py sync-user USER_ID
    python tools/replica_admin.py sync-table document --table users
    python tools/replica_admin.py sync-tables document

Every command prints a JSON document on stdout.

Exit codes:
    0: Command succeeded
    1: The command failed with a store or sync error
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.main import build_replicated_store  # noqa: E402
from errors import ReplicaError, classify_exception, json_error_response, json_ok_response  # noqa: E402
from replication import ReplicatedStore  # noqa: E402
from replication.sync_service import ID_FIELDS  # noqa: E402


def cmd_status(store: ReplicatedStore, args: argparse.Namespace) -> Dict[str, Any]:
    return store.get_status()


def cmd_sync_all(store: ReplicatedStore, args: argparse.Namespace) -> Dict[str, Any]:
    return store.sync_all()


def cmd_sync_user(store: ReplicatedStore, args: argparse.Namespace) -> Dict[str, Any]:
    return {"user_id": args.user_id, "stores": store.sync_user_to_all_stores(args.user_id)}


def cmd_sync_table(store: ReplicatedStore, args: argparse.Namespace) -> Dict[str, Any]:
    counts = store.sync_service.sync_table_to_store(args.store, table=args.table, batch_size=args.batch_size)
    return {"store": args.store, "table": args.table, **counts}


def cmd_sync_tables(store: ReplicatedStore, args: argparse.Namespace) -> Dict[str, Any]:
    return {"store": args.store, "tables": store.sync_all_tables(args.store)}


COMMANDS: Dict[str, Callable[[ReplicatedStore, argparse.Namespace], Dict[str, Any]]] = {
    "status": cmd_status,
    "sync-all": cmd_sync_all,
    "sync-user": cmd_sync_user,
    "sync-table": cmd_sync_table,
    "sync-tables": cmd_sync_tables,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Replicated profile store administration")
    parser.add_argument("-v", "--verbose", action="store_true", help="log at INFO level on stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="primary store, per-store health and pending repairs")
    sub.add_parser("sync-all", help="rewrite every user from the relational store to the others")

    user = sub.add_parser("sync-user", help="rewrite one user from the relational store to the others")
    user.add_argument("user_id")

    table = sub.add_parser("sync-table", help="copy a relational table into another store")
    table.add_argument("store", help="target store name (document or hierarchical)")
    table.add_argument("--table", default="users", choices=sorted(ID_FIELDS))
    table.add_argument("--batch-size", type=int, default=None)

    tables = sub.add_parser("sync-tables", help="copy every syncable relational table into another store")
    tables.add_argument("store", help="target store name (document or hierarchical)")
    return parser


def main(argv: Optional[List[str]] = None, store: Optional[ReplicatedStore] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING, stream=sys.stderr)

    owned = store is None
    if owned:
        store = build_replicated_store(start_monitor=False)
    try:
        result = COMMANDS[args.command](store, args)
        print(json.dumps(json_ok_response(result), indent=2, sort_keys=True, default=str))
        return 0
    except ReplicaError as e:
        print(json.dumps(json_error_response(e), indent=2, sort_keys=True, default=str))
        return 1
    except Exception as e:
        print(json.dumps(json_error_response(classify_exception(e)), indent=2, sort_keys=True, default=str))
        return 1
    finally:
        if owned:
            store.health.stop()
            store.close()


if __name__ == "__main__":
    sys.exit(main())
