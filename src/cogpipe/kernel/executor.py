"""
Primitive Executor: validate, resolve, frame, generate, parse, commit.

An invocation either commits exactly one artifact or raises a typed error
and commits nothing. Sources are always resolved explicitly from the store;
submission order is never taken as evidence that a source exists.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from . import ids
from .completion import (
    DEFAULT_PROFILES,
    CompletionService,
    GenerationProfile,
    RetryPolicy,
    complete_with_retries,
)
from .errors import (
    CognitionError,
    DanglingReferenceError,
    InvocationCancelled,
    ParseError,
    ValidationError,
)
from .registry import PrimitiveRegistry, PrimitiveSpec
from .schema import (
    Artifact,
    InvocationResult,
    ObserveInput,
    ObserveOutput,
    PrimitiveInput,
    PrimitiveKind,
    Provenance,
)
from .store import ArtifactStore, utc_now
from ..lib.connectors import (
    ConnectorRegistry,
    FetchResult,
    StalenessPolicy,
    fetch_with_policy,
    remember_fetch,
)
from ..lib.frames import build_frame
from ..lib.parsing import parse_output, summarize_errors
from ..lib.primitives import build_default_registry

logger = logging.getLogger(__name__)


def _annotate(exc: CognitionError, kind: PrimitiveKind, context_id: Optional[str]) -> CognitionError:
    if exc.primitive is None:
        exc.primitive = kind.value
    if exc.context_id is None:
        exc.context_id = context_id
    return exc


class PrimitiveExecutor:
    def __init__(
        self,
        store: ArtifactStore,
        completion: Optional[CompletionService],
        registry: Optional[PrimitiveRegistry] = None,
        connectors: Optional[ConnectorRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        profiles: Optional[Mapping[str, GenerationProfile]] = None,
        parse_attempts: int = 2,
        staleness: Optional[StalenessPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._completion = completion
        self._registry = registry or build_default_registry()
        self._connectors = connectors or ConnectorRegistry()
        self._policy = retry_policy or RetryPolicy()
        self._profiles: Dict[str, GenerationProfile] = dict(DEFAULT_PROFILES)
        if profiles:
            self._profiles.update(profiles)
        self._parse_attempts = max(1, parse_attempts)
        self._staleness = staleness or StalenessPolicy()
        self._sleep = sleep

    @property
    def registry(self) -> PrimitiveRegistry:
        return self._registry

    @property
    def connectors(self) -> ConnectorRegistry:
        return self._connectors

    def execute(
        self,
        kind: Union[PrimitiveKind, str],
        payload: Dict[str, Any],
        cancel: Optional[threading.Event] = None,
    ) -> InvocationResult:
        """
        Run one primitive invocation to commit.

        Args:
            kind: Primitive kind (enum or its string value).
            payload: {context_id, source_ids?, <kind-specific fields>}.
            cancel: Optional event; if set before commit the call raises
                InvocationCancelled and nothing is written.
        """
        context_id = payload.get("context_id") if isinstance(payload, dict) else None
        try:
            kind = PrimitiveKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown primitive: {kind}", context_id=context_id) from None

        spec = self._registry.get(kind)
        request = self._validate(spec, payload, context_id)
        logger.info("Invoking %s in context %s", kind.value, request.context_id)

        sources = self._resolve_sources(kind, request)

        fetched: Optional[FetchResult] = None
        if spec.generates:
            output, metadata = self._generate(spec, request, sources)
        else:
            output, metadata, fetched = self._observe(request)  # type: ignore[arg-type]

        if cancel is not None and cancel.is_set():
            raise InvocationCancelled(
                "Invocation cancelled before commit",
                primitive=kind.value,
                context_id=request.context_id,
            )

        artifact = Artifact(
            id=ids.generate(kind),
            context_id=request.context_id,
            primitive=kind,
            input=request.model_dump(mode="json", exclude={"context_id", "source_ids"}),
            source_ids=list(request.source_ids),
            output=output,
            metadata=metadata,
        )
        committed = self._store.put(artifact)
        if fetched is not None:
            remember_fetch(self._store, request.connector, request.query, fetched)  # type: ignore[attr-defined]
        logger.info("Committed %s in context %s", committed.id, committed.context_id)
        return InvocationResult(artifact_id=committed.id, output=committed.output)

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _validate(self, spec: PrimitiveSpec, payload: Any, context_id: Optional[str]) -> PrimitiveInput:
        if not isinstance(payload, dict):
            raise ValidationError("Payload must be an object", primitive=spec.kind.value)
        try:
            return spec.input_model.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"Invalid {spec.kind.value} input: {summarize_errors(exc)}",
                primitive=spec.kind.value,
                context_id=context_id if isinstance(context_id, str) else None,
            ) from exc

    def _resolve_sources(self, kind: PrimitiveKind, request: PrimitiveInput) -> List[Artifact]:
        resolved = self._store.get_many(request.source_ids)
        if resolved.missing:
            raise DanglingReferenceError(
                f"Source artifact(s) not found: {', '.join(resolved.missing)}",
                primitive=kind.value,
                context_id=request.context_id,
                source_id=resolved.missing[0],
                details={"missing": resolved.missing},
            )
        return resolved.artifacts

    def _generate(
        self,
        spec: PrimitiveSpec,
        request: PrimitiveInput,
        sources: List[Artifact],
    ) -> tuple[Dict[str, Any], Dict[str, Any]]:
        if self._completion is None:
            raise CognitionError(
                "No completion service configured",
                primitive=spec.kind.value,
                context_id=request.context_id,
            )
        assert spec.output_model is not None and spec.finalize is not None

        frame = build_frame(spec.kind, sources, request.model_dump(mode="json"))
        profile = self._profiles[spec.profile or "precise"]
        generation_attempts = 0
        last_error: Optional[ParseError] = None

        for parse_attempt in range(1, self._parse_attempts + 1):
            outcome = complete_with_retries(
                self._completion,
                frame,
                profile,
                self._policy,
                sleep=self._sleep,
                primitive=spec.kind.value,
                context_id=request.context_id,
            )
            generation_attempts += outcome.attempts
            try:
                parsed = parse_output(outcome.text, spec.output_model)
                output = spec.finalize(parsed, request, sources)
            except ParseError as exc:
                last_error = exc
                logger.warning(
                    "Unparseable %s output (attempt %d/%d): %s",
                    spec.kind.value, parse_attempt, self._parse_attempts, exc.message,
                )
                continue
            except CognitionError as exc:
                raise _annotate(exc, spec.kind, request.context_id)

            metadata = {
                "profile": profile.name,
                "frame_fingerprint": frame.fingerprint(),
                "generation_attempts": generation_attempts,
                "parse_attempts": parse_attempt,
            }
            return output, metadata

        assert last_error is not None
        raise _annotate(last_error, spec.kind, request.context_id)

    def _observe(
        self, request: ObserveInput
    ) -> tuple[Dict[str, Any], Dict[str, Any], Optional[FetchResult]]:
        if not request.connector:
            output = ObserveOutput(
                data=request.source,
                provenance=Provenance(origin="caller", retrieved_at=utc_now()),
            )
            return output.model_dump(mode="json"), {}, None

        connector = self._connectors.get(request.connector)
        if connector is None:
            raise ValidationError(
                f"Unknown connector: {request.connector}",
                primitive=PrimitiveKind.OBSERVE.value,
                context_id=request.context_id,
                details={"available": self._connectors.names()},
            )

        policy = self._staleness
        if request.max_age_seconds is not None:
            policy = StalenessPolicy(max_age_seconds=request.max_age_seconds)

        try:
            result = fetch_with_policy(self._store, connector, request.query, policy)
        except CognitionError as exc:
            raise _annotate(exc, PrimitiveKind.OBSERVE, request.context_id)

        output = ObserveOutput(
            data=result.payload,
            provenance=Provenance(
                origin=result.origin,
                retrieved_at=result.retrieved_at,
                connector=connector.name,
                cached=result.cached,
            ),
        )
        metadata = {"connector": connector.name, "query": request.query}
        if request.source:
            metadata["note"] = request.source
        return output.model_dump(mode="json"), metadata, result
