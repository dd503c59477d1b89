"""
Step definitions for the background worker feature.

Huey runs in immediate mode, so queued tasks execute in-process and the
task_results table is written exactly as the consumer would write it.
"""

import importlib
import json

import pytest
from pytest_bdd import given, parsers, scenarios, then, when

from cogpipe.cli import main
from cogpipe.kernel.store import ArtifactStore

scenarios("../features/worker.feature")


@pytest.fixture
def test_context():
    """Shared context for passing data between steps."""
    return {"task_id": None}


@pytest.fixture
def worker_module(temp_worker_db, monkeypatch):
    monkeypatch.setenv("COGPIPE_WORKER_DB", temp_worker_db)
    worker = importlib.import_module("cogpipe.worker")
    worker.huey.immediate = True
    yield worker
    worker.huey.immediate = False


@given("a worker running tasks immediately")
def immediate_worker(test_context, worker_module, temp_db, temp_worker_db):
    test_context["worker"] = worker_module
    test_context["db_path"] = temp_db
    test_context["worker_db"] = temp_worker_db


@when(parsers.parse('I queue an observation of "{text}" in context "{context_id}"'))
def queue_observation(test_context, text: str, context_id: str):
    test_context["task_id"] = test_context["worker"].enqueue_invocation(
        test_context["db_path"], "observe", {"context_id": context_id, "source": text}
    )


@when(parsers.parse('I queue a definition from "{source_id}" in context "{context_id}"'))
def queue_definition(test_context, source_id: str, context_id: str):
    test_context["task_id"] = test_context["worker"].enqueue_invocation(
        test_context["db_path"],
        "define",
        {"context_id": context_id, "source_ids": [source_id], "subject": "revenue"},
    )


def _status(test_context, task_id):
    return test_context["worker"].get_task_status(test_context["worker_db"], task_id)


@then(parsers.parse('the task status is "{status}"'))
def task_status(test_context, status: str):
    assert _status(test_context, test_context["task_id"])["status"] == status


@then(parsers.parse('the task result names an artifact starting with "{prefix}"'))
def task_result(test_context, prefix: str):
    result = _status(test_context, test_context["task_id"])["result"]
    assert result["data"]["artifact_id"].startswith(prefix)


@then(parsers.parse('the task error mentions "{text}"'))
def task_error(test_context, text: str):
    assert text in _status(test_context, test_context["task_id"])["error"]


@then(parsers.parse('the artifact database holds {count:d} artifact in context "{context_id}"'))
def database_holds(test_context, count: int, context_id: str):
    with ArtifactStore(test_context["db_path"]) as store:
        assert len(store.list_by_context(context_id)) == count


@then(parsers.parse('the status of "{task_id}" is empty'))
def status_empty(test_context, task_id: str):
    assert _status(test_context, task_id) is None


@given(parsers.parse('a configuration file naming the worker database "{name}"'))
def worker_db_in_config(test_context, monkeypatch, tmp_path, name: str):
    monkeypatch.delenv("COGPIPE_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)
    config = tmp_path / "cogpipe.yaml"
    config.write_text(f"worker_db_path: {name}\n", encoding="utf-8")
    test_context["config_path"] = str(config)
    test_context["worker_db"] = str(tmp_path / name)


@then(parsers.parse('the worker database path is "{name}"'))
def worker_db_path(test_context, name: str):
    assert test_context["worker"].get_worker_db_path() == name


@then(parsers.parse('the status command with that configuration reports "{status}"'))
def status_command(test_context, status: str):
    lines = []
    code = main(["--config", test_context["config_path"], "status", test_context["task_id"]], sink=lines.append)
    assert code == 0
    assert json.loads("\n".join(lines))["status"] == status
