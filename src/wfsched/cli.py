"""CLI runner: validate a workflow file, run it in-process, or query a server."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

import httpx
from pydantic import ValidationError

from wfsched.adapters.local import LocalProcessWorker
from wfsched.adapters.mock import MockWorker
from wfsched.config import Settings
from wfsched.core.aggregator import summarize
from wfsched.core.engine import WorkflowEngine
from wfsched.core.graph import GraphError, validate
from wfsched.core.matrix import expand
from wfsched.models.enums import RunStatus, TriggerEvent
from wfsched.models.graph import WorkflowDefinition
from wfsched.models.run import RunSnapshot

logger = logging.getLogger(__name__)

EXIT_FAILED = 1
EXIT_INVALID = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wfsched",
        description="wfsched CLI: validate and run workflow definitions",
    )
    sub = parser.add_subparsers(dest="command")

    val = sub.add_parser("validate", help="Validate a workflow definition (JSON)")
    val.add_argument("file", help="Workflow definition file")

    run = sub.add_parser("run", help="Run a workflow definition in-process")
    run.add_argument("file", help="Workflow definition file")
    run.add_argument("--trigger", default="push", choices=[e.value for e in TriggerEvent])
    run.add_argument("--scope", default=None, help="Scoping key (head ref, ref, ...)")
    run.add_argument("--mock", action="store_true", help="Use the mock worker instead of a shell")
    run.add_argument("--cwd", default=None, help="Working directory for job commands")
    run.add_argument("--max-processes", type=int, default=None, help="Local process slots")
    run.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    sub_remote = sub.add_parser("submit", help="Submit a workflow definition to a server")
    sub_remote.add_argument("file", help="Workflow definition file")
    sub_remote.add_argument("--server", default="http://localhost:8000/api/v1")
    sub_remote.add_argument("--trigger", default="push", choices=[e.value for e in TriggerEvent])
    sub_remote.add_argument("--scope", default=None, help="Scoping key (head ref, ref, ...)")

    st = sub.add_parser("status", help="Show the status of a run on a server")
    st.add_argument("run_id")
    st.add_argument("--server", default="http://localhost:8000/api/v1")
    st.add_argument("--wait", type=float, default=None, help="Wait up to N seconds for the run")

    return parser


def load_definition(path: str) -> WorkflowDefinition:
    with open(path) as f:
        data = json.load(f)
    return WorkflowDefinition.model_validate(data)


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        definition = load_definition(args.file)
        graph = validate(definition)
    except (OSError, ValueError, ValidationError) as exc:
        # GraphError is a ValueError
        print(f"invalid: {exc}", file=sys.stderr)
        return EXIT_INVALID

    instances = expand(graph)
    print(f"{definition.name}: valid")
    for job_id in graph.order:
        template = graph.template(job_id)
        needs = ", ".join(graph.needs(job_id)) or "-"
        print(f"  {job_id}: {len(instances[job_id])} instance(s), needs {needs}, "
              f"if {template.condition.value}")
    return 0


async def run_local(args: argparse.Namespace) -> int:
    settings = Settings(log_level=args.log_level, archive_runs=False)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    try:
        definition = load_definition(args.file)
    except (OSError, ValueError, ValidationError) as exc:
        print(f"invalid: {exc}", file=sys.stderr)
        return EXIT_INVALID

    if args.mock:
        worker = MockWorker()
    else:
        worker = LocalProcessWorker(
            args.max_processes or settings.local_max_processes,
            args.cwd or settings.local_shell_cwd,
        )

    engine = WorkflowEngine(worker, settings)
    try:
        run_id = await engine.submit(definition, TriggerEvent(args.trigger), args.scope)
    except GraphError as exc:
        print(f"invalid: {exc}", file=sys.stderr)
        return EXIT_INVALID

    try:
        snapshot = await engine.await_terminal(run_id)
    finally:
        await engine.shutdown()

    print(summarize(snapshot))
    return 0 if snapshot.status == RunStatus.SUCCESS else EXIT_FAILED


async def submit_remote(args: argparse.Namespace) -> int:
    with open(args.file) as f:
        definition = json.load(f)
    body = {"definition": definition, "trigger_event": args.trigger, "scoping_key": args.scope}
    async with httpx.AsyncClient(base_url=args.server, timeout=30.0) as client:
        resp = await client.post("/runs", json=body)
    if resp.status_code == 422:
        print(f"invalid: {resp.json()['detail']}", file=sys.stderr)
        return EXIT_INVALID
    resp.raise_for_status()
    data = resp.json()
    print(f"{data['run_id']} {data['status']} group={data['group_key']}")
    return 0


async def show_status(args: argparse.Namespace) -> int:
    async with httpx.AsyncClient(base_url=args.server, timeout=(args.wait or 0) + 30.0) as client:
        if args.wait is not None:
            resp = await client.post(f"/runs/{args.run_id}/wait", params={"timeout": args.wait})
        else:
            resp = await client.get(f"/runs/{args.run_id}")
    if resp.status_code == 404:
        print(f"unknown run {args.run_id}", file=sys.stderr)
        return EXIT_FAILED
    resp.raise_for_status()
    snapshot = RunSnapshot.model_validate(resp.json())
    print(summarize(snapshot))
    return 0 if snapshot.status != RunStatus.FAILURE else EXIT_FAILED


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "validate":
        sys.exit(cmd_validate(args))
    elif args.command == "run":
        sys.exit(asyncio.run(run_local(args)))
    elif args.command == "submit":
        sys.exit(asyncio.run(submit_remote(args)))
    elif args.command == "status":
        sys.exit(asyncio.run(show_status(args)))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
