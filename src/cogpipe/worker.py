"""
Background worker: run primitive invocations off the caller's thread.

Independent invocations (several observes, say) can be queued together and
processed concurrently by the consumer; anything with source_ids is still
checked against the store when it runs, so queue order is never trusted as
evidence that a source exists.

Architecture:
    CLI --enqueue--> SqliteHuey (worker_db_path) --dequeue--> Worker Process
                                                                 |
                                                       CognitionEngine.dispatch

The queue database is resolved through load_settings() when this module is
imported (cogpipe.yaml or COGPIPE_CONFIG, then COGPIPE_WORKER_DB), since huey
binds its storage at that point.

Usage:
    cogpipe worker                      # start the consumer
    cogpipe invoke observe ... --async  # queue an invocation
    cogpipe status <task_id>            # check it
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, Optional

from huey import SqliteHuey

from .config import load_settings
from .kernel.engine import CognitionEngine

logger = logging.getLogger(__name__)


def get_worker_db_path(config_path: Optional[str] = None) -> str:
    return load_settings(config_path).worker_db_path


_huey_instance: Optional[SqliteHuey] = None


def get_huey() -> SqliteHuey:
    """Get the Huey instance, creating it lazily if needed."""
    global _huey_instance
    if _huey_instance is None:
        _huey_instance = SqliteHuey(
            name="cogpipe",
            filename=get_worker_db_path(),
            immediate=False,
        )
    return _huey_instance


huey = get_huey()


# =============================================================================
# Task status table
# =============================================================================

TASK_RESULTS_SCHEMA = """
CREATE TABLE IF NOT EXISTS task_results (
    task_id TEXT PRIMARY KEY,
    primitive TEXT NOT NULL,
    status TEXT NOT NULL,
    result_json TEXT,
    error_message TEXT,
    enqueued_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_task_results_status ON task_results(status);
"""

# pending -> running -> completed | error
STATUS_STAMPS = {"running": "started_at", "completed": "completed_at", "error": "completed_at"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@contextmanager
def task_results(db_path: str) -> Iterator[sqlite3.Connection]:
    """Connection with the task_results table in place; commits on clean exit."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        conn.executescript(TASK_RESULTS_SCHEMA)
        with conn:
            yield conn
    finally:
        conn.close()


def mark_task(db_path: str, task_id: str, status: str, **columns: Any) -> None:
    columns[STATUS_STAMPS[status]] = _now()
    assignments = ", ".join(f"{name} = ?" for name in columns)
    with task_results(db_path) as conn:
        conn.execute(
            f"UPDATE task_results SET status = ?, {assignments} WHERE task_id = ?",
            (status, *columns.values(), task_id),
        )


def get_task_status(db_path: str, task_id: str) -> Optional[Dict[str, Any]]:
    with task_results(db_path) as conn:
        row = conn.execute("SELECT * FROM task_results WHERE task_id = ?", (task_id,)).fetchone()
    if row is None:
        return None

    status = {
        key: row[key]
        for key in ("task_id", "primitive", "status", "enqueued_at", "started_at", "completed_at")
    }
    if row["result_json"]:
        status["result"] = json.loads(row["result_json"])
    if row["error_message"]:
        status["error"] = row["error_message"]
    return status


# =============================================================================
# Huey Tasks
# =============================================================================

@huey.task()
def invoke_primitive_async(
    task_id: str,
    db_path: str,
    primitive: str,
    payload: Dict[str, Any],
) -> Dict[str, Any]:
    """
    Run one invocation in the worker process.

    Typed failures come back as a DispatchResult; anything unexpected is
    recorded as an error so the task never stays "running".
    """
    worker_db = get_worker_db_path()
    mark_task(worker_db, task_id, "running")

    try:
        settings = load_settings(db_path=db_path)
        with CognitionEngine.from_settings(settings) as engine:
            result = engine.dispatch(primitive, payload).to_dict()
    except Exception as e:
        logger.exception("Task %s failed unexpectedly", task_id)
        result = {
            "ok": False,
            "error_kind": "unexpected_error",
            "error_message": f"Unexpected error: {type(e).__name__}: {e}",
        }

    if result.get("ok"):
        mark_task(worker_db, task_id, "completed", result_json=json.dumps(result))
    else:
        mark_task(
            worker_db,
            task_id,
            "error",
            result_json=json.dumps(result),
            error_message=result.get("error_message"),
        )
    return result


# =============================================================================
# Enqueue Interface
# =============================================================================

def enqueue_invocation(db_path: str, primitive: str, payload: Dict[str, Any]) -> str:
    """Queue an invocation and return the task_id for status tracking."""
    task_id = f"job-{uuid.uuid4().hex[:12]}"
    with task_results(get_worker_db_path()) as conn:
        conn.execute(
            "INSERT INTO task_results (task_id, primitive, status, enqueued_at) VALUES (?, ?, 'pending', ?)",
            (task_id, primitive, _now()),
        )
    invoke_primitive_async(task_id=task_id, db_path=db_path, primitive=primitive, payload=payload)
    logger.info("Queued %s as %s", primitive, task_id)
    return task_id


def run_worker(workers: int = 1, sink: Callable[[str], None] = print) -> None:
    """Run the Huey consumer; threads keep SQLite access in one process."""
    from huey.consumer import Consumer

    consumer = Consumer(huey, workers=workers, worker_type="thread")
    sink(f"Starting cogpipe worker: queue {get_worker_db_path()}, {workers} worker thread(s)")
    consumer.run()
