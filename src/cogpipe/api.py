"""
HTTP API: primitives, artifacts, provenance and delegations over HTTP.

Run with: uvicorn cogpipe.api:app --port 8000
"""

from __future__ import annotations

import os
from typing import Any, Dict, Iterator, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import load_settings
from .kernel.engine import CognitionEngine
from .kernel.errors import (
    ArtifactNotFound,
    CognitionError,
    DanglingReferenceError,
    DelegationNotFound,
    EmptyReflection,
    GenerationFailed,
    IntegrityError,
    InvalidTransitionError,
    ParseError,
    ValidationError,
)
from .kernel.schema import DelegationStatus, PrimitiveKind

# --- Configuration ---

DEFAULT_DB_PATH = os.environ.get("COGPIPE_DB", "cogpipe.db")

# --- Pydantic Models ---


class InvokeResponse(BaseModel):
    artifact_id: str
    output: Dict[str, Any]


class ArtifactListResponse(BaseModel):
    artifacts: List[Dict[str, Any]]
    count: int


class ContextListResponse(BaseModel):
    contexts: List[Dict[str, Any]]
    count: int


class AssignRequest(BaseModel):
    origin: str
    destination: str
    parameters: Dict[str, Any] = {}
    task_id: Optional[str] = None


class TransitionRequest(BaseModel):
    status: DelegationStatus
    payload: Dict[str, Any] = {}
    force: bool = False


class DelegationListResponse(BaseModel):
    delegations: List[Dict[str, Any]]
    count: int


# --- Error mapping ---

STATUS_FOR_ERROR = [
    (ArtifactNotFound, 404),
    (DelegationNotFound, 404),
    (ValidationError, 422),
    (DanglingReferenceError, 422),
    (EmptyReflection, 422),
    (IntegrityError, 409),
    (InvalidTransitionError, 409),
    (ParseError, 502),
    (GenerationFailed, 502),
]


def status_for(exc: CognitionError) -> int:
    for error_cls, status in STATUS_FOR_ERROR:
        if isinstance(exc, error_cls):
            return status
    return 500


# --- Application ---

app = FastAPI(
    title="cogpipe",
    description="Cognitive-pipeline engine: primitives, artifacts and provenance",
    version="0.1.0",
)


@app.exception_handler(CognitionError)
async def cognition_error_handler(request: Request, exc: CognitionError) -> JSONResponse:
    return JSONResponse(status_code=status_for(exc), content=exc.to_dict())


def get_engine() -> Iterator[CognitionEngine]:
    """One engine per request, closed afterwards."""
    settings = load_settings(db_path=DEFAULT_DB_PATH)
    engine = CognitionEngine.from_settings(settings)
    try:
        yield engine
    finally:
        engine.close()


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/primitives")
def list_primitives(engine: CognitionEngine = Depends(get_engine)) -> Dict[str, Any]:
    capabilities = engine.list_capabilities()
    return {
        "primitives": [
            {"id": c.id, "description": c.description, "interface": c.interface}
            for c in capabilities
        ],
        "count": len(capabilities),
    }


@app.post("/primitives/{kind}", response_model=InvokeResponse)
def invoke_primitive(
    kind: PrimitiveKind,
    payload: Dict[str, Any],
    engine: CognitionEngine = Depends(get_engine),
) -> InvokeResponse:
    result = engine.invoke(kind, payload)
    return InvokeResponse(artifact_id=result.artifact_id, output=result.output)


@app.get("/artifacts/{artifact_id}")
def get_artifact(artifact_id: str, engine: CognitionEngine = Depends(get_engine)) -> Dict[str, Any]:
    return engine.store.get(artifact_id).model_dump(mode="json")


@app.get("/artifacts/{artifact_id}/ancestors", response_model=ArtifactListResponse)
def get_ancestors(artifact_id: str, engine: CognitionEngine = Depends(get_engine)) -> ArtifactListResponse:
    artifacts = [a.model_dump(mode="json") for a in engine.provenance.ancestors(artifact_id)]
    return ArtifactListResponse(artifacts=artifacts, count=len(artifacts))


@app.get("/artifacts/{artifact_id}/descendants", response_model=ArtifactListResponse)
def get_descendants(artifact_id: str, engine: CognitionEngine = Depends(get_engine)) -> ArtifactListResponse:
    artifacts = [a.model_dump(mode="json") for a in engine.provenance.descendants(artifact_id)]
    return ArtifactListResponse(artifacts=artifacts, count=len(artifacts))


@app.get("/contexts", response_model=ContextListResponse)
def list_contexts(engine: CognitionEngine = Depends(get_engine)) -> ContextListResponse:
    contexts = engine.store.list_contexts()
    return ContextListResponse(contexts=contexts, count=len(contexts))


@app.get("/contexts/{context_id}/artifacts", response_model=ArtifactListResponse)
def list_context_artifacts(
    context_id: str,
    limit: Optional[int] = Query(default=None, ge=1),
    primitive: Optional[PrimitiveKind] = None,
    engine: CognitionEngine = Depends(get_engine),
) -> ArtifactListResponse:
    if primitive is not None:
        found = engine.store.list_by_primitive(primitive, context_id=context_id)
    else:
        found = engine.store.list_by_context(context_id, limit=limit)
    artifacts = [a.model_dump(mode="json") for a in found]
    return ArtifactListResponse(artifacts=artifacts, count=len(artifacts))


@app.get("/contexts/{context_id}/graph")
def get_context_graph(context_id: str, engine: CognitionEngine = Depends(get_engine)) -> Dict[str, Any]:
    return engine.provenance.context_graph(context_id)


@app.post("/delegations", status_code=201)
def assign_delegation(request: AssignRequest, engine: CognitionEngine = Depends(get_engine)) -> Dict[str, Any]:
    record = engine.delegations.assign(request.model_dump())
    return record.model_dump(mode="json")


@app.post("/delegations/{task_id}/transition")
def transition_delegation(
    task_id: str,
    request: TransitionRequest,
    engine: CognitionEngine = Depends(get_engine),
) -> Dict[str, Any]:
    record = engine.delegations.transition(task_id, request.status, request.payload, force=request.force)
    return record.model_dump(mode="json")


@app.get("/delegations/{task_id}")
def get_delegation(task_id: str, engine: CognitionEngine = Depends(get_engine)) -> Dict[str, Any]:
    record = engine.delegations.get(task_id).model_dump(mode="json")
    record["history"] = [e.model_dump(mode="json") for e in engine.delegations.history(task_id)]
    return record


@app.get("/delegations", response_model=DelegationListResponse)
def list_delegations(
    status: DelegationStatus = Query(default=DelegationStatus.ASSIGNED),
    engine: CognitionEngine = Depends(get_engine),
) -> DelegationListResponse:
    records = [r.model_dump(mode="json") for r in engine.delegations.list_by_status(status)]
    return DelegationListResponse(delegations=records, count=len(records))
