"""
Command-line dispatcher for the cognitive pipeline.

Usage:
    cogpipe invoke observe --context q1 --input '{"source": "Q1 revenue $15.2M"}'
    cogpipe invoke define --context q1 --source obs_... --input '{"subject": "revenue"}'
    cogpipe invoke infer --context q1 --source obs_... --source def_... --async
    cogpipe show <artifact_id>
    cogpipe ancestors <artifact_id>
    cogpipe descendants <artifact_id>
    cogpipe list --context q1 [--primitive infer] [--limit 10]
    cogpipe contexts
    cogpipe graph <context_id>
    cogpipe delegate assign --origin analyst --destination researcher --params '{...}'
    cogpipe delegate transition <task_id> returned --result-ref inf_...
    cogpipe delegate show <task_id>
    cogpipe delegate list --status returned
    cogpipe worker
    cogpipe status <task_id>
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Callable, Dict, List, Optional

from .config import Settings, load_settings
from .kernel.engine import CognitionEngine
from .kernel.errors import CognitionError

OutputSink = Callable[[str], None]


def _emit(sink: OutputSink, value: Any) -> None:
    sink(json.dumps(value, indent=2, default=str))


def _parse_json(raw: Optional[str], label: str) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise SystemExit(f"Invalid JSON for {label}: {e}")
    if not isinstance(value, dict):
        raise SystemExit(f"{label} must be a JSON object")
    return value


def _settings(args: argparse.Namespace) -> Settings:
    return load_settings(getattr(args, "config", None), db_path=getattr(args, "db", None))


def _dump_all(artifacts: List[Any]) -> List[Dict[str, Any]]:
    return [a.model_dump(mode="json") for a in artifacts]


# =============================================================================
# Commands
# =============================================================================

def cmd_invoke(args: argparse.Namespace, sink: OutputSink) -> int:
    settings = _settings(args)
    payload = _parse_json(args.input, "--input")
    if args.context:
        payload["context_id"] = args.context
    if args.source:
        payload["source_ids"] = list(args.source)

    if args.async_mode:
        from .worker import enqueue_invocation

        task_id = enqueue_invocation(settings.db_path, args.primitive, payload)
        _emit(sink, {"task_id": task_id, "status": "pending"})
        return 0

    with CognitionEngine.from_settings(settings) as engine:
        result = engine.dispatch(args.primitive, payload)
    _emit(sink, result.to_dict())
    return 0 if result.ok else 1


def cmd_show(args: argparse.Namespace, sink: OutputSink) -> int:
    with CognitionEngine.from_settings(_settings(args)) as engine:
        _emit(sink, engine.store.get(args.artifact_id).model_dump(mode="json"))
    return 0


def cmd_ancestors(args: argparse.Namespace, sink: OutputSink) -> int:
    with CognitionEngine.from_settings(_settings(args)) as engine:
        _emit(sink, _dump_all(engine.provenance.ancestors(args.artifact_id)))
    return 0


def cmd_descendants(args: argparse.Namespace, sink: OutputSink) -> int:
    with CognitionEngine.from_settings(_settings(args)) as engine:
        _emit(sink, _dump_all(engine.provenance.descendants(args.artifact_id)))
    return 0


def cmd_list(args: argparse.Namespace, sink: OutputSink) -> int:
    with CognitionEngine.from_settings(_settings(args)) as engine:
        if args.primitive:
            found = engine.store.list_by_primitive(args.primitive, context_id=args.context)
        else:
            found = engine.store.list_by_context(args.context, limit=args.limit)
        _emit(sink, _dump_all(found))
    return 0


def cmd_contexts(args: argparse.Namespace, sink: OutputSink) -> int:
    with CognitionEngine.from_settings(_settings(args)) as engine:
        _emit(sink, engine.store.list_contexts())
    return 0


def cmd_graph(args: argparse.Namespace, sink: OutputSink) -> int:
    with CognitionEngine.from_settings(_settings(args)) as engine:
        _emit(sink, engine.provenance.context_graph(args.context_id))
    return 0


def cmd_capabilities(args: argparse.Namespace, sink: OutputSink) -> int:
    with CognitionEngine.from_settings(_settings(args)) as engine:
        for cap in engine.list_capabilities():
            sink(f"{cap.id:<12} {cap.description}")
    return 0


def cmd_delegate(args: argparse.Namespace, sink: OutputSink) -> int:
    with CognitionEngine.from_settings(_settings(args)) as engine:
        tracker = engine.delegations
        if args.delegate_command == "assign":
            record = tracker.assign({
                "origin": args.origin,
                "destination": args.destination,
                "parameters": _parse_json(args.params, "--params"),
                "task_id": args.task_id,
            })
            _emit(sink, record.model_dump(mode="json"))
        elif args.delegate_command == "transition":
            payload: Dict[str, Any] = {}
            if args.result_ref:
                payload["result_ref"] = args.result_ref
            if args.note:
                payload["note"] = args.note
            record = tracker.transition(args.task_id, args.status, payload, force=args.force)
            _emit(sink, record.model_dump(mode="json"))
        elif args.delegate_command == "show":
            record_data = tracker.get(args.task_id).model_dump(mode="json")
            record_data["history"] = [e.model_dump(mode="json") for e in tracker.history(args.task_id)]
            _emit(sink, record_data)
        else:
            _emit(sink, [r.model_dump(mode="json") for r in tracker.list_by_status(args.status)])
    return 0


def cmd_worker(args: argparse.Namespace, sink: OutputSink) -> int:
    from .worker import run_worker

    run_worker(workers=args.workers, sink=sink)
    return 0


def cmd_status(args: argparse.Namespace, sink: OutputSink) -> int:
    from .worker import get_task_status

    status = get_task_status(_settings(args).worker_db_path, args.task_id)
    if status is None:
        sink(f"Task not found: {args.task_id}")
        return 1
    _emit(sink, status)
    return 0


# =============================================================================
# Parser
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cogpipe",
        description="Cognitive pipeline engine - primitives, artifacts, provenance",
    )
    parser.add_argument("--config", help="Path to cogpipe.yaml")
    parser.add_argument("--log-level", help="Logging level (default from config)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    invoke_parser = subparsers.add_parser("invoke", help="Invoke a primitive")
    invoke_parser.add_argument("primitive", help="Primitive kind (observe, define, infer, ...)")
    invoke_parser.add_argument("--input", "-i", help="JSON payload")
    invoke_parser.add_argument("--context", "-c", help="Context id")
    invoke_parser.add_argument("--source", "-s", action="append", help="Source artifact id (repeatable)")
    invoke_parser.add_argument("--db", help="Database path")
    invoke_parser.add_argument(
        "--async", dest="async_mode", action="store_true",
        help="Queue for background execution (requires worker)"
    )

    for name, help_text in (
        ("show", "Show one artifact"),
        ("ancestors", "Artifacts an artifact was derived from"),
        ("descendants", "Artifacts that depend on an artifact"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("artifact_id")
        sub.add_argument("--db", help="Database path")

    list_parser = subparsers.add_parser("list", help="List artifacts of a context")
    list_parser.add_argument("--context", "-c", required=True, help="Context id")
    list_parser.add_argument("--primitive", "-p", help="Filter by primitive kind")
    list_parser.add_argument("--limit", "-n", type=int, help="Maximum artifacts (newest first)")
    list_parser.add_argument("--db", help="Database path")

    contexts_parser = subparsers.add_parser("contexts", help="List known contexts")
    contexts_parser.add_argument("--db", help="Database path")

    graph_parser = subparsers.add_parser("graph", help="Export a context's provenance graph")
    graph_parser.add_argument("context_id")
    graph_parser.add_argument("--db", help="Database path")

    caps_parser = subparsers.add_parser("capabilities", help="List available primitives")
    caps_parser.add_argument("--db", help="Database path")

    delegate_parser = subparsers.add_parser("delegate", help="Track delegated work orders")
    delegate_parser.add_argument("--db", help="Database path")
    delegate_sub = delegate_parser.add_subparsers(dest="delegate_command", required=True)

    assign_parser = delegate_sub.add_parser("assign", help="Create a work order")
    assign_parser.add_argument("--origin", required=True)
    assign_parser.add_argument("--destination", required=True)
    assign_parser.add_argument("--params", help="JSON parameters")
    assign_parser.add_argument("--task-id", help="Explicit task id")

    transition_parser = delegate_sub.add_parser("transition", help="Move a work order")
    transition_parser.add_argument("task_id")
    transition_parser.add_argument(
        "status", choices=["in_progress", "returned", "verified", "rejected"]
    )
    transition_parser.add_argument("--result-ref", help="Artifact id or resource pointer")
    transition_parser.add_argument("--note", help="Free-text note kept in history")
    transition_parser.add_argument(
        "--force", action="store_true",
        help="Allow abandonment (rejected from assigned/in_progress)"
    )

    show_parser = delegate_sub.add_parser("show", help="Show a work order and its history")
    show_parser.add_argument("task_id")

    dlist_parser = delegate_sub.add_parser("list", help="List work orders by status")
    dlist_parser.add_argument("--status", default="assigned")

    worker_parser = subparsers.add_parser("worker", help="Start background worker")
    worker_parser.add_argument(
        "--workers", "-w", type=int, default=1,
        help="Number of worker threads (default: 1)"
    )

    status_parser = subparsers.add_parser("status", help="Check async task status")
    status_parser.add_argument("task_id")

    return parser


COMMANDS = {
    "invoke": cmd_invoke,
    "show": cmd_show,
    "ancestors": cmd_ancestors,
    "descendants": cmd_descendants,
    "list": cmd_list,
    "contexts": cmd_contexts,
    "graph": cmd_graph,
    "capabilities": cmd_capabilities,
    "delegate": cmd_delegate,
    "worker": cmd_worker,
    "status": cmd_status,
}


def main(argv: Optional[List[str]] = None, sink: OutputSink = print) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = args.log_level or load_settings(args.config).log_level
    logging.basicConfig(level=level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        return COMMANDS[args.command](args, sink)
    except CognitionError as e:
        _emit(sink, e.to_dict())
        return 1


if __name__ == "__main__":
    sys.exit(main())
