from __future__ import annotations

import argparse
import json
import logging
import sys

import uvicorn

from .api import create_app
from .chain import read_chain, verify_chain
from .config import DAEMON_PORT
from .frameworks import framework_ids, get_framework
from .keystore import load_or_create_signing_key, read_public_key_pem
from .manager import SessionManager
from .paths import chain_file, useai_home
from .recovery import seal_orphaned_chains
from .scoring import compute_local_aps, compute_streak
from .store import SessionStore


def _store() -> SessionStore:
    return SessionStore(useai_home())


def _print_stats(payload: dict) -> None:
    components = payload["components"]
    print(f"Sessions: {payload['session_count']}")
    print(f"Streak: {payload['streak_days']} day(s)")
    print(f"APS ({payload['framework']}): {payload['score']} / 1000")
    for name, value in components.items():
        print(f"  {name}: {value:.3f}")


def main() -> int:
    parser = argparse.ArgumentParser(description="UseAI local session daemon")
    sub = parser.add_subparsers(dest="command", required=True)

    daemon_cmd = sub.add_parser("daemon", help="Run the local daemon (health, MCP over HTTP, stats)")
    daemon_cmd.add_argument("--host", default="127.0.0.1")
    daemon_cmd.add_argument("--port", type=int, default=DAEMON_PORT)
    daemon_cmd.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])

    stats_cmd = sub.add_parser("stats", help="Print APS and streak from the local session index")
    stats_cmd.add_argument("--framework", choices=framework_ids(), help="Override the configured framework")
    stats_cmd.add_argument("--json", action="store_true", help="Print machine-readable JSON")

    verify_cmd = sub.add_parser("verify", help="Verify hash-chain integrity of one session log")
    verify_cmd.add_argument("session_id")
    verify_cmd.add_argument("--skip-signatures", action="store_true", help="Only check hashes and linkage")

    sub.add_parser("seal-orphans", help="Seal logs left in active/ (stop the daemon first)")

    args = parser.parse_args()

    if args.command == "daemon":
        logging.basicConfig(
            level=args.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        manager = SessionManager.create()
        app = create_app(manager)
        uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
        return 0

    try:
        store = _store()

        if args.command == "stats":
            sessions = store.load_sessions()
            milestones = store.load_milestones()
            streak = compute_streak(sessions)
            framework = get_framework(args.framework or store.load_config().get("evaluation_framework"))
            payload = compute_local_aps(sessions, milestones, streak, framework).to_dict()
            payload["streak_days"] = streak
            if args.json:
                print(json.dumps(payload, indent=2))
            else:
                _print_stats(payload)
            return 0

        if args.command == "verify":
            path = chain_file(store.sealed_dir, args.session_id)
            if not path.exists():
                path = chain_file(store.active_dir, args.session_id)
            if not path.exists():
                print(f"No chain log found for session {args.session_id}", file=sys.stderr)
                return 1
            public_pem = None if args.skip_signatures else read_public_key_pem(store.keystore_path)
            result = verify_chain(read_chain(path), public_pem)
            result["path"] = str(path)
            result["signatures_checked"] = public_pem is not None
            print(json.dumps(result, indent=2))
            return 0 if result["ok"] else 1

        if args.command == "seal-orphans":
            signing_key = load_or_create_signing_key(store.keystore_path)
            sealed = seal_orphaned_chains(store, signing_key)
            print(json.dumps({"sealed": sealed}, indent=2))
            return 0
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
