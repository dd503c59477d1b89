"""
CognitionEngine: the single entry point for every interface.

    CLI ────┐
    API ────┼──> CognitionEngine.dispatch() / invoke() ──> PrimitiveExecutor
    Worker ─┘

The engine owns the store handle: it is opened once when the engine is
built and released by close(). Nothing in the kernel holds a global handle.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from .completion import CompletionService, GenerationProfile, HttpCompletionService, RetryPolicy
from .delegation import DelegationTracker
from .errors import CognitionError
from .executor import PrimitiveExecutor
from .provenance import ProvenanceGraph
from .schema import InvocationResult, PrimitiveKind
from .store import ArtifactStore
from ..lib.connectors import ConnectorRegistry, HttpConnector, StalenessPolicy

logger = logging.getLogger(__name__)


@dataclass
class Capability:
    """A discoverable primitive."""

    id: str
    description: str
    interface: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DispatchResult:
    """Result of a dispatch operation."""

    ok: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"ok": self.ok, "data": self.data}
        if not self.ok:
            result["error_kind"] = self.error_kind
            result["error_message"] = self.error_message
            result["details"] = self.details
        return result


class CognitionEngine:
    """
    Example:
        with CognitionEngine("research.db", completion=service) as engine:
            obs = engine.observe("q1-review", source="Q1 revenue $15.2M")
            definition = engine.define("q1-review", [obs.artifact_id], subject="revenue")
    """

    def __init__(
        self,
        db_path: str,
        completion: Optional[CompletionService] = None,
        connectors: Optional[ConnectorRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        profiles: Optional[Dict[str, GenerationProfile]] = None,
        parse_attempts: int = 2,
        staleness: Optional[StalenessPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db_path = db_path
        self._store: Optional[ArtifactStore] = ArtifactStore(db_path)
        self._executor = PrimitiveExecutor(
            self._store,
            completion,
            connectors=connectors,
            retry_policy=retry_policy,
            profiles=profiles,
            parse_attempts=parse_attempts,
            staleness=staleness,
            sleep=sleep,
        )
        self._provenance = ProvenanceGraph(self._store)
        self._delegations = DelegationTracker(self._store)
        # HTTP clients built by from_settings, released by close()
        self._owned: List[Any] = []

    @classmethod
    def from_settings(cls, settings: Any, completion: Optional[CompletionService] = None) -> "CognitionEngine":
        """Build an engine wired to the HTTP completion backend and connectors in settings."""
        owned: List[Any] = []
        if completion is None and settings.completion_url:
            completion = HttpCompletionService(
                settings.completion_url,
                api_key=settings.api_key,
                model=settings.model,
                timeout=settings.timeout,
            )
            owned.append(completion)
        connectors = ConnectorRegistry()
        for config in settings.connectors.values():
            connector = HttpConnector(config.name, config.url, headers=config.headers, timeout=config.timeout)
            connectors.register(connector)
            owned.append(connector)
        engine = cls(
            settings.db_path,
            completion=completion,
            connectors=connectors,
            retry_policy=settings.retry,
            profiles=settings.profiles,
            parse_attempts=settings.parse_attempts,
            staleness=settings.staleness,
        )
        engine._owned.extend(owned)
        return engine

    def __enter__(self) -> "CognitionEngine":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @property
    def store(self) -> ArtifactStore:
        if self._store is None:
            raise RuntimeError("Engine is closed")
        return self._store

    @property
    def provenance(self) -> ProvenanceGraph:
        return self._provenance

    @property
    def delegations(self) -> DelegationTracker:
        return self._delegations

    @property
    def connectors(self) -> ConnectorRegistry:
        return self._executor.connectors

    # -------------------------------------------------------------------------
    # Invocation
    # -------------------------------------------------------------------------

    def invoke(
        self,
        kind: Union[PrimitiveKind, str],
        payload: Dict[str, Any],
        cancel: Optional[threading.Event] = None,
    ) -> InvocationResult:
        if self._store is None:
            raise RuntimeError("Engine is closed")
        return self._executor.execute(kind, payload, cancel=cancel)

    def _call(
        self,
        kind: PrimitiveKind,
        context_id: str,
        source_ids: Optional[Sequence[str]],
        fields: Dict[str, Any],
    ) -> InvocationResult:
        cancel = fields.pop("cancel", None)
        payload: Dict[str, Any] = {"context_id": context_id, **fields}
        if source_ids is not None:
            payload["source_ids"] = list(source_ids)
        return self.invoke(kind, payload, cancel=cancel)

    def observe(self, context_id: str, **fields: Any) -> InvocationResult:
        return self._call(PrimitiveKind.OBSERVE, context_id, None, fields)

    def define(self, context_id: str, source_ids: Sequence[str], **fields: Any) -> InvocationResult:
        return self._call(PrimitiveKind.DEFINE, context_id, source_ids, fields)

    def distinguish(self, context_id: str, source_ids: Sequence[str], **fields: Any) -> InvocationResult:
        return self._call(PrimitiveKind.DISTINGUISH, context_id, source_ids, fields)

    def sequence(self, context_id: str, source_ids: Sequence[str], **fields: Any) -> InvocationResult:
        return self._call(PrimitiveKind.SEQUENCE, context_id, source_ids, fields)

    def compare(self, context_id: str, source_ids: Sequence[str], **fields: Any) -> InvocationResult:
        return self._call(PrimitiveKind.COMPARE, context_id, source_ids, fields)

    def infer(self, context_id: str, source_ids: Sequence[str], **fields: Any) -> InvocationResult:
        return self._call(PrimitiveKind.INFER, context_id, source_ids, fields)

    def reflect(self, context_id: str, source_ids: Sequence[str], **fields: Any) -> InvocationResult:
        return self._call(PrimitiveKind.REFLECT, context_id, source_ids, fields)

    def ask(self, context_id: str, source_ids: Sequence[str] = (), **fields: Any) -> InvocationResult:
        return self._call(PrimitiveKind.ASK, context_id, source_ids, fields)

    def synthesize(self, context_id: str, source_ids: Sequence[str], **fields: Any) -> InvocationResult:
        return self._call(PrimitiveKind.SYNTHESIZE, context_id, source_ids, fields)

    def decide(self, context_id: str, source_ids: Sequence[str], **fields: Any) -> InvocationResult:
        return self._call(PrimitiveKind.DECIDE, context_id, source_ids, fields)

    def adapt(self, context_id: str, source_ids: Sequence[str], **fields: Any) -> InvocationResult:
        return self._call(PrimitiveKind.ADAPT, context_id, source_ids, fields)

    # -------------------------------------------------------------------------
    # Discovery and dispatch
    # -------------------------------------------------------------------------

    def list_capabilities(self) -> List[Capability]:
        """Every primitive with its JSON input schema, for dynamic discovery."""
        registry = self._executor.registry
        return [
            Capability(
                id=kind.value,
                description=registry.get(kind).description,
                interface=registry.get(kind).input_model.model_json_schema(),
            )
            for kind in registry.kinds()
        ]

    def resolve_intent(self, intent: str) -> Optional[PrimitiveKind]:
        """Accept "infer", "INFER" or "primitive-infer"."""
        name = intent.strip().lower()
        if name.startswith("primitive-"):
            name = name[len("primitive-"):]
        try:
            return PrimitiveKind(name)
        except ValueError:
            return None

    def dispatch(self, intent: str, inputs: Optional[Dict[str, Any]] = None) -> DispatchResult:
        """Resolve intent, invoke, and fold any typed error into a DispatchResult."""
        kind = self.resolve_intent(intent)
        if kind is None:
            return DispatchResult(
                ok=False,
                error_kind="intent_not_found",
                error_message=f"Could not resolve intent: {intent}",
            )
        try:
            result = self.invoke(kind, inputs or {})
        except CognitionError as exc:
            logger.info("Dispatch of %s failed: %s", kind.value, exc)
            payload = exc.to_dict()
            return DispatchResult(
                ok=False,
                error_kind=exc.kind,
                error_message=str(exc),
                details={k: v for k, v in payload.items() if k not in ("error_kind", "error_message")},
            )
        return DispatchResult(ok=True, data=result.model_dump(mode="json"))

    def close(self) -> None:
        """Close the engine, releasing the store and any HTTP clients it built."""
        while self._owned:
            self._owned.pop().close()
        if self._store is not None:
            self._store.close()
            self._store = None
