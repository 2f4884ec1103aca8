from __future__ import annotations

import argparse
import json
import os
import sys
import time

from docker.errors import DockerException

from dur import db, docker_ops
from dur.errors import ComposeError, SelectionError
from dur.ledger import Ledger
from dur.models import Action, TargetResult
from dur.reconciler import Reconciler
from dur.rollback import RollbackSelector
from dur.settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Pull, compare and recreate docker containers and compose services")
    p.add_argument("--ledger", default=settings.ledger_path, help="Path of the update history file")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_up = sub.add_parser("update", help="Update compose services or standalone containers")
    target = s_up.add_mutually_exclusive_group(required=True)
    target.add_argument("-f", "--file", help="Compose file whose services to update")
    target.add_argument("-c", "--containers", nargs="+", metavar="NAME", help="Containers to update")
    s_up.add_argument("-s", "--service", help="(with --file) Only update this service")
    s_up.add_argument("-p", "--project", help="(with --file) Compose project name, if not the one already running")
    s_up.add_argument("-t", "--tag", help="Image tag to move to (one container, or --file with --service)")
    s_up.add_argument("--no-prune", action="store_true", help="Keep unused images after the run")

    s_rb = sub.add_parser("rollback", help="Roll a container or compose service back to an image from the history")
    s_rb.add_argument("name", help="Container name or compose service name")
    s_rb.add_argument("--choice", type=int, help="Menu entry to restore without prompting")

    s_hist = sub.add_parser("history", help="Show the update history")
    s_hist.add_argument("name", nargs="?", help="Only this container/service")
    s_hist.add_argument("--limit", type=int, default=20)

    s_ev = sub.add_parser("events", help="Show recent operational events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--target")

    return p


def _validate(p: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.cmd == "update":
        if args.service and not args.file:
            p.error("--service requires --file.")
        if args.project and not args.file:
            p.error("--project requires --file.")
        if args.file:
            if args.tag and not args.service:
                p.error("--tag with --file requires --service.")
            if not os.path.isfile(args.file):
                p.error(f"Compose file '{args.file}' not found.")
        if args.containers and args.tag and len(args.containers) != 1:
            p.error("--tag may only be used with a single container.")
        names = list(args.containers or []) + [n for n in (args.service, args.project) if n]
    elif args.cmd == "rollback":
        names = [args.name]
    else:
        return
    try:
        for n in names:
            docker_ops.validate_container_name(n)
        if getattr(args, "tag", None):
            docker_ops.validate_tag(args.tag)
    except ValueError as e:
        p.error(str(e))


def _report(results: list[TargetResult], started: float) -> int:
    for r in results:
        if r.action == Action.RECREATE_FAIL:
            print(f"RECREATE FAILED for '{r.name}': {r.message}", file=sys.stderr)
    _print(
        {
            "results": [r.as_dict() for r in results],
            "failed": sum(1 for r in results if r.failed),
            "duration_s": round(time.time() - started, 1),
        }
    )
    return 1 if any(r.failed for r in results) else 0


def _prompt(lines: list[str]) -> str:
    for line in lines:
        print(f"  {line}")
    try:
        return input(f"Enter choice [1-{len(lines)}]: ")
    except EOFError:
        return ""


def main(argv: list[str] | None = None) -> int:
    p = _build_parser()
    args = p.parse_args(argv)
    _validate(p, args)

    db.init_db()
    ledger = Ledger(args.ledger)

    if args.cmd == "history":
        records = ledger.query(args.name, limit=args.limit)
        _print(
            [
                {
                    "timestamp": r.timestamp,
                    "name": r.name,
                    "image": r.image_reference,
                    "identity": r.identity,
                    "action": r.action.value,
                }
                for r in records
            ]
        )
        return 0

    if args.cmd == "events":
        _print(db.latest_events(args.limit, args.target))
        return 0

    try:
        client = docker_ops.get_client()
    except RuntimeError as e:
        print(str(e), file=sys.stderr)
        return 1

    started = time.time()
    reconciler = Reconciler(client, ledger)

    if args.cmd == "rollback":
        selector = RollbackSelector(client, ledger, reconciler)
        prompt = (lambda _lines: args.choice) if args.choice is not None else _prompt
        try:
            result = selector.rollback(args.name, prompt)
        except SelectionError as e:
            print(str(e), file=sys.stderr)
            return 1
        return _report([result], started)

    try:
        if args.file:
            results = reconciler.update_compose_file(
                args.file, service=args.service, tag=args.tag, project=args.project
            )
        else:
            results = reconciler.update_containers(dict.fromkeys(args.containers), tag=args.tag)
    except ComposeError as e:
        print(str(e), file=sys.stderr)
        return 1

    if settings.prune_after_update and not args.no_prune:
        try:
            docker_ops.prune_images(client)
        except DockerException as e:
            db.log_event("WARN", f"Image prune failed: {e}")

    return _report(results, started)


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
