from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict, is_dataclass
from typing import Any

from tokenmesh.config.load_config import ConfigError, load_app_config
from tokenmesh.errors import TokenMeshError
from tokenmesh.runtime.dispatcher import ExecutionDispatcher
from tokenmesh.runtime.engine import build_engine
from tokenmesh.storage.sqlite_store import SQLiteStore, WorkerQuery
from tokenmesh.workers.registry import WorkerDescriptor


def _emit(obj: Any) -> None:
    if is_dataclass(obj) and not isinstance(obj, type):
        obj = asdict(obj)
    elif isinstance(obj, list):
        obj = [asdict(o) if is_dataclass(o) and not isinstance(o, type) else o for o in obj]
    print(json.dumps(obj, ensure_ascii=False, indent=2, default=str))


def _parse_json_obj(raw: str, *, name: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        obj = json.loads(raw)
    except ValueError as e:
        raise SystemExit(f"{name} must be a JSON object: {e}")
    if not isinstance(obj, dict):
        raise SystemExit(f"{name} must be a JSON object")
    return obj


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="TokenMesh admin CLI (wallets, policies, workers, rollovers).")
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env TOKENMESH_SQLITE_PATH or data/tokenmesh.db).",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable INFO logging on stderr.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("wallet-show", help="Show (and lazily create) a wallet.")
    p.add_argument("user_id")
    p.add_argument("--tenant-id", default=None)
    p.add_argument("--level-id", default=None)

    p = sub.add_parser("wallet-adjust", help="Post a manual credit or debit.")
    p.add_argument("user_id")
    p.add_argument("amount", type=int)
    p.add_argument("direction", choices=["credit", "debit"])
    p.add_argument("--reason", default="manual-adjustment")

    p = sub.add_parser("wallet-ledger", help="List ledger entries, newest first.")
    p.add_argument("user_id")
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--offset", type=int, default=0)

    p = sub.add_parser("wallet-audit", help="Replay the ledger and compare it with the stored balance.")
    p.add_argument("user_id")

    p = sub.add_parser("wallet-status", help="Activate or deactivate a wallet.")
    p.add_argument("user_id")
    p.add_argument("status", choices=["active", "inactive"])

    for name, target in (("policy-set-level", "level_id"), ("policy-set-user", "user_id")):
        p = sub.add_parser(name, help=f"Upsert the allocation policy for a {target.split('_')[0]}.")
        p.add_argument(target)
        p.add_argument("--tenant-id", default=None)
        p.add_argument("--base-allocation", type=int, default=0)
        p.add_argument("--monthly-allocation", type=int, default=0)
        p.add_argument("--monthly-cap", type=int, default=None)
        p.add_argument("--rollover-percent", type=float, default=0.0)
        p.add_argument("--allocation-mode", default="monthly")
        p.add_argument("--enforcement-mode", choices=["strict", "soft"], default="strict")
        p.add_argument("--min-reserve-tokens", type=int, default=None)
        p.add_argument("--notes", default=None)

    p = sub.add_parser("worker-register", help="Register or refresh a worker.")
    p.add_argument("worker_id")
    p.add_argument("worker_type")
    p.add_argument("--tenant-id", default=None)
    p.add_argument("--capacity", type=int, default=1)
    p.add_argument("--region", default=None)
    p.add_argument("--tag", action="append", default=[])
    p.add_argument("--metadata", default="", help="JSON object (e.g. base_url/model for the openai engine).")

    p = sub.add_parser("worker-health", help="Set a worker's health score (0..100).")
    p.add_argument("worker_id")
    p.add_argument("health_score", type=int)

    p = sub.add_parser("worker-list", help="List workers with optional filters.")
    p.add_argument("--tenant-id", default=None)
    p.add_argument("--status", default=None)
    p.add_argument("--worker-type", default=None)
    p.add_argument("--region", default=None)
    p.add_argument("--min-health-score", type=int, default=None)

    p = sub.add_parser("worker-stats", help="Aggregate worker stats, including stale heartbeats.")
    p.add_argument("--tenant-id", default=None)

    p = sub.add_parser("run", help="Dispatch, execute and bill one execution synchronously.")
    p.add_argument("user_id")
    p.add_argument("prompt")
    p.add_argument("--tenant-id", default=None)
    p.add_argument("--strategy", default=None)
    p.add_argument("--worker-type", default=None)

    p = sub.add_parser("rollover-sweep", help="Apply every due period rollover.")
    p.add_argument("--now", type=float, default=None, help="Override the clock (epoch seconds).")

    sub.add_parser("reconcile", help="Fail executions left running by a previous process.")

    return parser.parse_args(argv)


def _policy_fields(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "base_allocation": args.base_allocation,
        "monthly_allocation": args.monthly_allocation,
        "monthly_cap": args.monthly_cap,
        "rollover_percent": args.rollover_percent,
        "allocation_mode": args.allocation_mode,
        "enforcement_mode": args.enforcement_mode,
        "min_reserve_tokens": args.min_reserve_tokens,
        "notes": args.notes,
    }


def _dispatch(d: ExecutionDispatcher, args: argparse.Namespace) -> Any:
    cmd = args.command
    if cmd == "wallet-show":
        return d.wallets.ensure_wallet(args.user_id, tenant_id=args.tenant_id, level_id=args.level_id)
    if cmd == "wallet-adjust":
        return d.wallets.adjust_tokens(args.user_id, args.amount, args.direction, args.reason, source="manual")
    if cmd == "wallet-ledger":
        return d.wallets.get_ledger(args.user_id, limit=args.limit, offset=args.offset)
    if cmd == "wallet-audit":
        return d.wallets.verify_ledger(args.user_id)
    if cmd == "wallet-status":
        return d.wallets.set_wallet_status(args.user_id, args.status)
    if cmd == "policy-set-level":
        return d.policies.set_level_policy(args.level_id, tenant_id=args.tenant_id, **_policy_fields(args))
    if cmd == "policy-set-user":
        return d.policies.set_user_policy(args.user_id, tenant_id=args.tenant_id, **_policy_fields(args))
    if cmd == "worker-register":
        return d.registry.register_worker(
            args.tenant_id,
            WorkerDescriptor(
                worker_id=args.worker_id,
                worker_type=args.worker_type,
                capacity=args.capacity,
                region=args.region,
                tags=tuple(args.tag),
                metadata=_parse_json_obj(args.metadata, name="--metadata"),
            ),
        )
    if cmd == "worker-health":
        return d.registry.update_health_score(args.worker_id, args.health_score)
    if cmd == "worker-list":
        return d.registry.list_workers(
            args.tenant_id,
            WorkerQuery(
                status=args.status,
                worker_type=args.worker_type,
                region=args.region,
                min_health_score=args.min_health_score,
            ),
        )
    if cmd == "worker-stats":
        return d.registry.get_worker_stats(args.tenant_id)
    if cmd == "run":
        d.wallets.ensure_wallet(args.user_id, tenant_id=args.tenant_id)
        return d.run(
            args.user_id,
            args.tenant_id,
            {"prompt": args.prompt},
            build_engine(d.config.dispatch),
            strategy_id=args.strategy,
            worker_type=args.worker_type,
        )
    if cmd == "rollover-sweep":
        return d.policies.apply_due_rollovers(now=args.now)
    if cmd == "reconcile":
        return {"reconciled": d.reconcile_running_executions(reason="manual_reconcile")}
    raise SystemExit(f"Unknown command: {cmd}")


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        app_config = load_app_config()
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    store = SQLiteStore(args.db_path or None)
    try:
        dispatcher = ExecutionDispatcher.from_store(store, config=app_config)
        try:
            _emit(_dispatch(dispatcher, args))
        except TokenMeshError as e:
            print(json.dumps({"error": {"code": e.code, "message": e.message, "details": e.details}}), file=sys.stderr)
            return 1
        return 0
    finally:
        store.close()
