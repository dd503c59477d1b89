"""
Step definitions for the completion retry feature.

The scripted service raises the typed GenerationError family; backoff delays
are recorded by the engine's sleep hook instead of slept. The HTTP backend is
exercised against an httpx MockTransport.
"""

import json

import httpx
import pytest
from pytest_bdd import given, parsers, scenarios, then, when

from cogpipe.kernel.completion import DEFAULT_PROFILES, HttpCompletionService, Message, PromptFrame
from cogpipe.kernel.errors import AuthError, CognitionError, RateLimited

scenarios("../features/completion_retry.feature")

DEFINE_REPLY = {
    "name": "revenue",
    "boundaries": ["Fiscal Q1 2024"],
    "dimensions": [{"name": "amount", "description": "USD"}],
}


@pytest.fixture
def test_context():
    """Shared context for passing data between steps."""
    return {"ids": {}, "result": None, "error": None, "requests": []}


# =============================================================================
# Given Steps
# =============================================================================


@given("an engine with a scripted completion service")
def scripted_engine(test_context, engine, completion, sleeps):
    test_context["engine"] = engine
    test_context["completion"] = completion
    test_context["sleeps"] = sleeps


@given(parsers.parse('an observation "{alias}" in context "{context_id}"'))
def add_observation(test_context, alias: str, context_id: str):
    result = test_context["engine"].observe(context_id, source="Q1 revenue $15.2M")
    test_context["ids"][alias] = result.artifact_id


@given(parsers.parse("the service is rate limited {count:d} times before replying"))
def rate_limited(test_context, count: int):
    for _ in range(count):
        test_context["completion"].queue(RateLimited("HTTP 429"))
    test_context["completion"].queue(DEFINE_REPLY)


@given(parsers.parse("the service is rate limited once with a retry-after of {seconds:d} seconds"))
def rate_limited_with_hint(test_context, seconds: int):
    test_context["completion"].queue(RateLimited("HTTP 429", retry_after=float(seconds)), DEFINE_REPLY)


@given("the service rejects the credentials")
def rejects_credentials(test_context):
    test_context["completion"].queue(AuthError("HTTP 401"), DEFINE_REPLY)


@given(parsers.parse("the service replies empty {count:d} times before replying"))
def replies_empty(test_context, count: int):
    test_context["completion"].queue(*([""] * count), DEFINE_REPLY)


def _http_service(test_context, status: int, content: str) -> HttpCompletionService:
    def handler(request: httpx.Request) -> httpx.Response:
        test_context["requests"].append(json.loads(request.content))
        if status != 200:
            return httpx.Response(status, text="nope")
        return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpCompletionService("https://llm.test/v1", model="small", client=client)


@given(parsers.parse("an HTTP completion backend answering {status:d}"))
def http_backend_status(test_context, status: int):
    test_context["service"] = _http_service(test_context, status, "")


@given(parsers.parse('an HTTP completion backend replying "{content}"'))
def http_backend_content(test_context, content: str):
    test_context["service"] = _http_service(test_context, 200, content)


# =============================================================================
# When Steps
# =============================================================================


@when(parsers.parse('I define "{subject}" from "{alias}"'))
def define(test_context, subject: str, alias: str):
    try:
        test_context["result"] = test_context["engine"].define(
            "q1", [test_context["ids"][alias]], subject=subject
        )
    except CognitionError as e:
        test_context["error"] = e


@when("I call the HTTP backend")
def call_backend(test_context):
    frame = PromptFrame(messages=(Message("system", "Return JSON."), Message("user", "REQUEST: {}")))
    try:
        test_context["result"] = test_context["service"].complete(frame, DEFAULT_PROFILES["precise"])
    except CognitionError as e:
        test_context["error"] = e


# =============================================================================
# Then Steps
# =============================================================================


@then("the call succeeds")
def call_succeeds(test_context):
    assert test_context["error"] is None, test_context["error"]


@then(parsers.parse('the call fails with "{kind}"'))
def call_fails(test_context, kind: str):
    assert test_context["error"] is not None
    assert test_context["error"].kind == kind


@then(parsers.parse('the failure cause is "{cause}"'))
def failure_cause(test_context, cause: str):
    assert test_context["error"].details["cause"] == cause


@then(parsers.parse('the engine backed off for "{delays}" seconds'))
def backed_off(test_context, delays: str):
    assert test_context["sleeps"] == [float(d) for d in delays.split(",")]


@then(parsers.parse("the new artifact records {count:d} generation attempts"))
def generation_attempts(test_context, count: int):
    artifact = test_context["engine"].store.get(test_context["result"].artifact_id)
    assert artifact.metadata["generation_attempts"] == count


@then(parsers.parse('the store holds {count:d} artifacts in context "{context_id}"'))
def store_holds(test_context, count: int, context_id: str):
    assert len(test_context["engine"].store.list_by_context(context_id)) == count


@then(parsers.parse("the completion service was called {count:d} times"))
def completion_calls(test_context, count: int):
    assert len(test_context["completion"].calls) == count


@then(parsers.parse('the backend raises "{kind}"'))
def backend_raises(test_context, kind: str):
    assert test_context["error"] is not None
    assert test_context["error"].kind == kind


@then(parsers.parse('the backend returns "{content}"'))
def backend_returns(test_context, content: str):
    assert test_context["result"] == content


@then(parsers.parse("the backend request used temperature {temperature:f}"))
def backend_temperature(test_context, temperature: float):
    body = test_context["requests"][-1]
    assert body["temperature"] == temperature
    assert body["model"] == "small"
    assert body["messages"][0]["role"] == "system"
