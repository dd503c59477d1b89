"""
Step definitions for the primitive invocation feature.

Each scenario scripts the completion service replies, invokes one primitive
through the CognitionEngine and checks either the committed artifact or the
typed error (and that nothing was committed).
"""

import threading
from typing import Any, Dict, List

import pytest
from pytest_bdd import given, parsers, scenarios, then, when

from cogpipe.kernel.errors import CognitionError

scenarios("../features/primitives.feature")


# =============================================================================
# Fixtures and reply builders
# =============================================================================


@pytest.fixture
def test_context():
    """Shared context for passing data between steps."""
    return {"engine": None, "ids": {}, "result": None, "error": None, "results": []}


def _ids(test_context, aliases: str) -> List[str]:
    return [test_context["ids"][alias] for alias in aliases.split(",")]


def _run(test_context, call) -> None:
    test_context["result"] = None
    test_context["error"] = None
    try:
        test_context["result"] = call()
        test_context["results"].append(test_context["result"])
    except CognitionError as e:
        test_context["error"] = e


def define_reply(subject: str) -> Dict[str, Any]:
    return {
        "name": subject,
        "boundaries": ["Fiscal Q1 2024"],
        "dimensions": [{"name": "amount", "description": "USD, reported"}],
    }


def infer_reply(source_ids: List[str], confidence: str = "medium") -> Dict[str, Any]:
    return {
        "claims": [
            {
                "statement": "Revenue growth outpaced costs",
                "confidence": confidence,
                "justification": "Reported figures show 12% growth",
                "source_ids": source_ids,
            }
        ],
        "confidence": confidence,
        "justification": "Single reporting period",
    }


# =============================================================================
# Background and Given Steps
# =============================================================================


@given("an engine with a scripted completion service")
def scripted_engine(test_context, engine, completion):
    test_context["engine"] = engine
    test_context["completion"] = completion


@given(parsers.parse('an observation "{alias}" of "{text}" in context "{context_id}"'))
def add_observation(test_context, alias: str, text: str, context_id: str):
    result = test_context["engine"].observe(context_id, source=text)
    test_context["ids"][alias] = result.artifact_id


@given(parsers.parse('a definition "{alias}" of "{subject}" from "{sources}" in context "{context_id}"'))
def add_definition(test_context, alias: str, subject: str, sources: str, context_id: str):
    test_context["completion"].queue(define_reply(subject))
    result = test_context["engine"].define(context_id, _ids(test_context, sources), subject=subject)
    test_context["ids"][alias] = result.artifact_id


@given(parsers.parse('an inference "{alias}" rated "{confidence}" from "{sources}" in context "{context_id}"'))
def add_inference(test_context, alias: str, confidence: str, sources: str, context_id: str):
    source_ids = _ids(test_context, sources)
    test_context["completion"].queue(infer_reply(source_ids, confidence))
    result = test_context["engine"].infer(context_id, source_ids)
    test_context["ids"][alias] = result.artifact_id


# =============================================================================
# When Steps
# =============================================================================


@when(parsers.parse('I define "{subject}" from "{sources}" in context "{context_id}"'))
@when(parsers.parse('I define "{subject}" from "{sources}" in context "{context_id}" again'))
def define(test_context, subject: str, sources: str, context_id: str):
    test_context["completion"].queue(define_reply(subject))
    _run(test_context, lambda: test_context["engine"].define(
        context_id, _ids(test_context, sources), subject=subject
    ))


@when(parsers.parse('I define "{subject}" from "{sources}" in context "{context_id}" but cancel before commit'))
def define_cancelled(test_context, subject: str, sources: str, context_id: str):
    cancel = threading.Event()
    cancel.set()
    test_context["completion"].queue(define_reply(subject))
    _run(test_context, lambda: test_context["engine"].define(
        context_id, _ids(test_context, sources), subject=subject, cancel=cancel
    ))


@when(parsers.parse('I define "{subject}" from "{sources}" but the reply has empty {field:w}'))
def define_with_empty_field(test_context, subject: str, sources: str, field: str):
    reply = define_reply(subject)
    reply[field] = []
    test_context["completion"].queue(reply, reply)
    _run(test_context, lambda: test_context["engine"].define(
        "q1", _ids(test_context, sources), subject=subject
    ))


@when(parsers.parse('I infer from "{sources}" in context "{context_id}" but every reply omits confidence'))
def infer_without_confidence(test_context, sources: str, context_id: str):
    source_ids = _ids(test_context, sources)
    reply = infer_reply(source_ids)
    del reply["confidence"]
    test_context["completion"].queue(reply, reply)
    _run(test_context, lambda: test_context["engine"].infer(context_id, source_ids))


@when(parsers.parse('I infer from "{sources}" in context "{context_id}" and the first reply is not JSON'))
def infer_after_bad_reply(test_context, sources: str, context_id: str):
    source_ids = _ids(test_context, sources)
    test_context["completion"].queue("Revenue looks healthy to me.", infer_reply(source_ids))
    _run(test_context, lambda: test_context["engine"].infer(context_id, source_ids))


@when(parsers.parse('I infer from "{sources}" and an id that was never committed in context "{context_id}"'))
def infer_dangling(test_context, sources: str, context_id: str):
    source_ids = _ids(test_context, sources) + ["inf_neverwritten"]
    test_context["missing_id"] = "inf_neverwritten"
    _run(test_context, lambda: test_context["engine"].infer(context_id, source_ids))


@when(parsers.parse('I infer from "{sources}" in context "{context_id}" but every claim cites "{foreign_id}"'))
def infer_foreign_citation(test_context, sources: str, context_id: str, foreign_id: str):
    reply = infer_reply([foreign_id])
    test_context["completion"].queue(reply, reply)
    _run(test_context, lambda: test_context["engine"].infer(context_id, _ids(test_context, sources)))


@when(parsers.parse('I compare "{sources}" on "{criteria}" but the reply leaves out "{left_out}"'))
def compare_incomplete(test_context, sources: str, criteria: str, left_out: str):
    scored = {c: 0.5 for c in criteria.split(",") if c != left_out}
    reply = {"scores": [{"item": "Q1", "scores": scored}, {"item": "Q2", "scores": scored}]}
    test_context["completion"].queue(reply, reply)
    _run(test_context, lambda: test_context["engine"].compare(
        "q1", _ids(test_context, sources), criteria=criteria.split(",")
    ))


@when(parsers.parse('I compare "{sources}" on "{criteria}" with full scores'))
def compare(test_context, sources: str, criteria: str):
    names = criteria.split(",")
    test_context["completion"].queue({
        "scores": [
            {"item": "Q1", "scores": {c: 0.7 for c in names}},
            {"item": "Q2", "scores": {c: 0.4 for c in names}},
        ]
    })
    _run(test_context, lambda: test_context["engine"].compare(
        "q1", _ids(test_context, sources), criteria=names
    ))


@when(parsers.parse('I distinguish "{sources}" into disjoint categories'))
def distinguish_disjoint(test_context, sources: str):
    test_context["completion"].queue({
        "categories": [
            {"name": "recurring", "features": ["contracted"], "members": ["subscriptions", "support"]},
            {"name": "one-off", "features": ["uncontracted"], "members": ["hardware"]},
        ]
    })
    _run(test_context, lambda: test_context["engine"].distinguish("q1", _ids(test_context, sources)))


@when(parsers.parse('I distinguish "{sources}" into categories without members'))
def distinguish_without_members(test_context, sources: str):
    reply = {
        "categories": [
            {"name": "recurring", "features": ["contracted"], "members": []},
            {"name": "one-off", "features": ["uncontracted"], "members": []},
        ]
    }
    test_context["completion"].queue(reply, reply)
    _run(test_context, lambda: test_context["engine"].distinguish("q1", _ids(test_context, sources)))


@when(parsers.parse('I distinguish "{sources}" into overlapping categories'))
def distinguish_overlapping(test_context, sources: str):
    reply = {
        "categories": [
            {"name": "recurring", "features": ["contracted"], "members": ["subscriptions"]},
            {"name": "one-off", "features": ["uncontracted"], "members": ["subscriptions"]},
        ]
    }
    test_context["completion"].queue(reply, reply)
    _run(test_context, lambda: test_context["engine"].distinguish("q1", _ids(test_context, sources)))


@when(parsers.parse('I sequence "{sources}" by "{ordering}" in increasing positions'))
def sequence_ordered(test_context, sources: str, ordering: str):
    test_context["completion"].queue({
        "ordering_key": ordering,
        "items": [
            {"position": 1, "label": "pricing change", "rationale": "Announced in January"},
            {"position": 2, "label": "revenue growth", "rationale": "Followed the new prices"},
        ],
    })
    _run(test_context, lambda: test_context["engine"].sequence(
        "q1", _ids(test_context, sources), ordering=ordering
    ))


@when(parsers.parse('I sequence "{sources}" by "{ordering}" with a repeated position'))
def sequence_repeated_position(test_context, sources: str, ordering: str):
    reply = {
        "ordering_key": ordering,
        "items": [{"position": 1, "label": "pricing change"}, {"position": 1, "label": "revenue growth"}],
    }
    test_context["completion"].queue(reply, reply)
    _run(test_context, lambda: test_context["engine"].sequence(
        "q1", _ids(test_context, sources), ordering=ordering
    ))


@when(parsers.parse('I sequence "{sources}" by "{ordering}" but the reply orders by "{actual}"'))
def sequence_wrong_key(test_context, sources: str, ordering: str, actual: str):
    reply = {
        "ordering_key": actual,
        "items": [{"position": 1, "label": "pricing change"}, {"position": 2, "label": "revenue growth"}],
    }
    test_context["completion"].queue(reply, reply)
    _run(test_context, lambda: test_context["engine"].sequence(
        "q1", _ids(test_context, sources), ordering=ordering
    ))


@when(parsers.parse('I reflect on "{sources}" and the reply lists no limitations'))
def reflect_empty(test_context, sources: str):
    test_context["completion"].queue({"limitations": []})
    _run(test_context, lambda: test_context["engine"].reflect("q1", _ids(test_context, sources)))


@when(parsers.parse('I ask about context "{context_id}" with no sources'))
def ask_without_sources(test_context, context_id: str):
    test_context["completion"].queue({
        "questions": [{"question": "Which segments drove growth?", "gap": "evidence"}]
    })
    _run(test_context, lambda: test_context["engine"].ask(context_id, topic="revenue growth"))


@when(parsers.parse('I synthesize "{sources}" in context "{context_id}" and the reply claims "{confidence}"'))
def synthesize(test_context, sources: str, context_id: str, confidence: str):
    test_context["completion"].queue({
        "narrative": "Growth is real but concentrated",
        "confidence": confidence,
        "justification": "Two inferences agree on direction",
    })
    _run(test_context, lambda: test_context["engine"].synthesize(context_id, _ids(test_context, sources)))


@when(parsers.parse(
    'I synthesize "{sources}" in context "{context_id}" and the reply claims "{confidence}" with a justified override'
))
def synthesize_with_override(test_context, sources: str, context_id: str, confidence: str):
    test_context["completion"].queue({
        "narrative": "Growth is real and broad",
        "confidence": confidence,
        "justification": "Two inferences agree on direction",
        "confidence_override": "Audited figures arrived after the inferences were drawn",
    })
    _run(test_context, lambda: test_context["engine"].synthesize(context_id, _ids(test_context, sources)))


@when(parsers.parse('I decide between "{options}" from "{sources}" with scores "{scores}"'))
def decide(test_context, options: str, sources: str, scores: str):
    names = options.split(",")
    values = [float(s) for s in scores.split(",")]
    test_context["completion"].queue({
        "scores": [{"option": o, "score": v} for o, v in zip(names, values)],
        "rationale": "Growth supports investment",
        "confidence": "medium",
        "justification": "One quarter of data",
    })
    _run(test_context, lambda: test_context["engine"].decide(
        "q1", _ids(test_context, sources), question="What next for Q2?", options=names
    ))


@when(parsers.parse('I adapt from "{sources}" triggered by "{trigger}"'))
def adapt(test_context, sources: str, trigger: str):
    test_context["completion"].queue({
        "changes": [{"what": "Raise Q2 forecast", "why": "Q1 beat expectations"}]
    })
    _run(test_context, lambda: test_context["engine"].adapt(
        "q1", _ids(test_context, sources), trigger_id=test_context["ids"][trigger]
    ))


@when(parsers.parse('I invoke "{kind}" on "{sources}" with an unexpected field'))
def invoke_with_extra_field(test_context, kind: str, sources: str):
    payload = {
        "context_id": "q1",
        "source_ids": _ids(test_context, sources),
        "subject": "revenue",
        "temperature": 0.9,
    }
    _run(test_context, lambda: test_context["engine"].invoke(kind, payload))


@when(parsers.parse('I invoke the unknown primitive "{kind}"'))
def invoke_unknown(test_context, kind: str):
    _run(test_context, lambda: test_context["engine"].invoke(kind, {"context_id": "q1"}))


# =============================================================================
# Then Steps
# =============================================================================


@then("the call succeeds")
def call_succeeds(test_context):
    assert test_context["error"] is None, test_context["error"]
    assert test_context["result"] is not None


@then(parsers.parse('the call fails with "{kind}"'))
def call_fails(test_context, kind: str):
    assert test_context["result"] is None
    assert test_context["error"] is not None
    assert test_context["error"].kind == kind


@then(parsers.parse('the error names primitive "{primitive}" in context "{context_id}"'))
def error_names(test_context, primitive: str, context_id: str):
    error = test_context["error"]
    assert error.primitive == primitive
    assert error.context_id == context_id


@then("the error names the missing source")
def error_names_missing(test_context):
    assert test_context["error"].source_id == test_context["missing_id"]


@then(parsers.parse('the store holds {count:d} artifacts in context "{context_id}"'))
def store_holds(test_context, count: int, context_id: str):
    assert len(test_context["engine"].store.list_by_context(context_id)) == count


@then(parsers.parse("the completion service was called {count:d} times"))
def completion_calls(test_context, count: int):
    assert len(test_context["completion"].calls) == count


@then(parsers.parse('the completion service was asked with the "{profile}" profile'))
def completion_profile(test_context, profile: str):
    _, used = test_context["completion"].calls[-1]
    assert used.name == profile


@then(parsers.parse('the artifact "{alias}" holds data "{text}" from origin "{origin}"'))
def artifact_holds(test_context, alias: str, text: str, origin: str):
    artifact = test_context["engine"].store.get(test_context["ids"][alias])
    assert artifact.output["data"] == text
    assert artifact.output["provenance"]["origin"] == origin


@then(parsers.parse('the artifact "{alias}" has an id starting with "{prefix}"'))
def artifact_prefix(test_context, alias: str, prefix: str):
    assert test_context["ids"][alias].startswith(prefix)


@then(parsers.parse('the new artifact has an id starting with "{prefix}"'))
def new_artifact_prefix(test_context, prefix: str):
    assert test_context["result"].artifact_id.startswith(prefix)


@then(parsers.parse('the new artifact cites "{sources}"'))
def new_artifact_cites(test_context, sources: str):
    artifact = test_context["engine"].store.get(test_context["result"].artifact_id)
    assert artifact.source_ids == _ids(test_context, sources)


@then(parsers.parse("the new artifact records {count:d} parse attempts"))
def parse_attempts(test_context, count: int):
    artifact = test_context["engine"].store.get(test_context["result"].artifact_id)
    assert artifact.metadata["parse_attempts"] == count


@then(parsers.parse('the output criteria are "{criteria}"'))
def output_criteria(test_context, criteria: str):
    assert test_context["result"].output["criteria"] == criteria.split(",")


@then(parsers.parse('the output categories are "{names}"'))
def output_categories(test_context, names: str):
    assert [c["name"] for c in test_context["result"].output["categories"]] == names.split(",")


@then(parsers.parse('the output orders by "{ordering}" with labels "{labels}"'))
def output_ordering(test_context, ordering: str, labels: str):
    output = test_context["result"].output
    assert output["ordering_key"] == ordering
    assert [item["label"] for item in output["items"]] == labels.split(",")


@then(parsers.parse('the output confidence is "{confidence}"'))
def output_confidence(test_context, confidence: str):
    assert test_context["result"].output["confidence"] == confidence


@then(parsers.parse('the output records an input floor of "{floor}" and a cap'))
def output_floor(test_context, floor: str):
    output = test_context["result"].output
    assert output["input_confidence_floor"] == floor
    assert output["confidence_capped"] is True


@then(parsers.parse('the selected option is "{option}"'))
def selected_option(test_context, option: str):
    assert test_context["result"].output["selected"] == option


@then(parsers.parse('the output tiebreak is "{rule}"'))
def output_tiebreak(test_context, rule: str):
    assert test_context["result"].output["tiebreak"] == rule


@then("the output has no tiebreak")
def no_tiebreak(test_context):
    assert test_context["result"].output["tiebreak"] is None


@then(parsers.parse('the rejected options are "{options}"'))
def rejected_options(test_context, options: str):
    rejected = [r["option"] for r in test_context["result"].output["rejected"]]
    assert rejected == options.split(",")


@then(parsers.parse('the output trigger is "{alias}"'))
def output_trigger(test_context, alias: str):
    assert test_context["result"].output["trigger_id"] == test_context["ids"][alias]


@then("both definitions share a frame fingerprint")
def shared_fingerprint(test_context):
    store = test_context["engine"].store
    first, second = [store.get(r.artifact_id) for r in test_context["results"][-2:]]
    assert first.id != second.id
    assert first.metadata["frame_fingerprint"] == second.metadata["frame_fingerprint"]
