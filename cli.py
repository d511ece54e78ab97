from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _probe(kind: str | None, port: int | None, path: str, command: str | None, period_s: float, failure_threshold: int) -> dict | None:
    if not kind:
        return None
    probe: dict = {"kind": kind, "period_s": period_s, "failure_threshold": failure_threshold}
    if kind == "exec":
        probe["command"] = (command or "").split()
    else:
        probe["port"] = port
        probe["path"] = path
    return probe


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Fleet Reconciler CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("lineages", help="List lineages")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--lineage")

    s_apply = sub.add_parser("apply", help="Submit a desired state")
    s_apply.add_argument("--lineage", required=True)
    s_apply.add_argument("--version", required=True)
    s_apply.add_argument("--image", default="")
    s_apply.add_argument("--replicas", type=int, default=1)
    s_apply.add_argument("--max-surge", type=int, default=1)
    s_apply.add_argument("--max-unavailable", type=int, default=0)
    s_apply.add_argument("--progress-deadline-s", type=float, default=600.0)
    s_apply.add_argument("--env", action="append", default=[], metavar="KEY=VALUE")
    s_apply.add_argument("--probe", choices=["http", "tcp", "exec"], help="Readiness probe kind")
    s_apply.add_argument("--probe-port", type=int)
    s_apply.add_argument("--probe-path", default="/health")
    s_apply.add_argument("--probe-command", help="Command for exec probes")
    s_apply.add_argument("--probe-period-s", type=float, default=10.0)
    s_apply.add_argument("--probe-failure-threshold", type=int, default=3)

    for name, help_text in (
        ("status", "Show rollout state"),
        ("units", "List units"),
        ("history", "List revisions"),
        ("plan", "Show the actions the next cycle would take"),
        ("pause", "Pause a rollout"),
        ("resume", "Resume a paused rollout"),
    ):
        s = sub.add_parser(name, help=help_text)
        s.add_argument("lineage")

    s_rb = sub.add_parser("rollback", help="Roll back to a revision")
    s_rb.add_argument("lineage")
    s_rb.add_argument("--revision", type=int, help="Defaults to the previous revision")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "lineages":
        _print(requests.get(f"{base}/lineages", timeout=10).json())
        return 0

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.lineage:
            params["lineage"] = args.lineage
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "apply":
        env = {}
        for item in args.env:
            key, sep, value = item.partition("=")
            if not sep:
                p.error(f"--env expects KEY=VALUE, got {item!r}")
            env[key] = value
        payload = {
            "lineage": args.lineage,
            "version": args.version,
            "image": args.image,
            "replicas": args.replicas,
            "max_surge": args.max_surge,
            "max_unavailable": args.max_unavailable,
            "progress_deadline_s": args.progress_deadline_s,
            "env": env,
            "readiness_probe": _probe(
                args.probe,
                args.probe_port,
                args.probe_path,
                args.probe_command,
                args.probe_period_s,
                args.probe_failure_threshold,
            ),
        }
        r = requests.post(f"{base}/lineages", json=payload, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd in {"status", "units", "history", "plan"}:
        path = "rollout" if args.cmd == "status" else args.cmd
        r = requests.get(f"{base}/lineages/{args.lineage}/{path}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd in {"pause", "resume"}:
        r = requests.post(f"{base}/lineages/{args.lineage}/{args.cmd}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "rollback":
        payload = {"revision": args.revision} if args.revision else None
        r = requests.post(f"{base}/lineages/{args.lineage}/rollback", json=payload, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
