"""
cogpipe: a stateful cognitive-pipeline engine.

Public API re-exports from kernel/ (machinery).
"""
from .kernel.schema import (
    Artifact,
    Confidence,
    DelegationRecord,
    DelegationStatus,
    InvocationResult,
    PrimitiveKind,
)
from .kernel.store import ArtifactStore
from .kernel.provenance import ProvenanceGraph
from .kernel.delegation import DelegationTracker
from .kernel.executor import PrimitiveExecutor
from .kernel.engine import CognitionEngine

__all__ = [
    # Schema
    "Artifact",
    "Confidence",
    "DelegationRecord",
    "DelegationStatus",
    "InvocationResult",
    "PrimitiveKind",
    # Store
    "ArtifactStore",
    # Graph and tracking
    "ProvenanceGraph",
    "DelegationTracker",
    # Execution
    "PrimitiveExecutor",
    "CognitionEngine",
]
