from __future__ import annotations

import argparse
import json
import sys

import requests

from svcgw.descriptors import ConfigError
from svcgw.manifest import load_manifest
from svcgw.settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _check(path: str) -> int:
    try:
        deployment = load_manifest(path)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    _print(
        {
            "startup_order": [d.name for d in deployment.descriptors.topological_order()],
            "routes": [
                {
                    "port": r.port,
                    "host": r.host or "*",
                    "path": r.path_prefix,
                    "target": r.target,
                    "strip_prefix": r.strip_prefix,
                }
                for r in deployment.routes
            ],
            "shared_volumes": deployment.descriptors.shared_volumes(),
        }
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Service gateway CLI")
    p.add_argument("--api", default=f"http://{settings.control_host}:{settings.control_port}", help="Control API base URL")
    p.add_argument("--user", default=settings.admin_user)
    p.add_argument("--password", default=settings.admin_password)
    sub = p.add_subparsers(dest="cmd", required=True)

    s_check = sub.add_parser("check", help="Validate a manifest and show startup order and routes")
    s_check.add_argument("manifest")

    s_run = sub.add_parser("run", help="Run a deployment in the foreground")
    s_run.add_argument("manifest", nargs="?")

    sub.add_parser("status", help="Show service states")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--service")

    s_stop = sub.add_parser("stop", help="Stop one service (dependents keep running)")
    s_stop.add_argument("name")

    args = p.parse_args(argv)

    if args.cmd == "check":
        return _check(args.manifest)

    if args.cmd == "run":
        from main import run

        return run(args.manifest)

    base = args.api.rstrip("/")
    auth = (args.user, args.password)

    if args.cmd == "status":
        r = requests.get(f"{base}/status", auth=auth, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.service:
            params["service"] = args.service
        r = requests.get(f"{base}/events", params=params, auth=auth, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "stop":
        # Stopping waits for the grace period on the server side.
        r = requests.post(f"{base}/services/{args.name}/stop", auth=auth, timeout=settings.grace_period_s + 30)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
