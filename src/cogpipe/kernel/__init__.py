"""
Kernel: the machinery of the cognitive pipeline.

- ids: typed identifier generation
- errors: the typed failure taxonomy
- schema: artifacts, per-primitive inputs/outputs, delegation records
- store: append-only SQLite artifact store
- completion: completion service adapter and retry policy
- registry: primitive kind -> spec lookup
- executor: validate / resolve / frame / generate / parse / commit
- provenance: ancestor and descendant queries
- delegation: the work-order state machine
- engine: single entry point for CLI, API and worker

The kernel is distinct from lib/ (the vocabulary: templates, parsing,
per-primitive rules, connectors). Kernel = machinery. Lib = language.
"""
from .schema import (
    Artifact,
    Confidence,
    DelegationRecord,
    DelegationStatus,
    InvocationResult,
    PrimitiveKind,
)
from .store import ArtifactStore, ManyResult
from .registry import PrimitiveRegistry, PrimitiveSpec
from .executor import PrimitiveExecutor
from .provenance import ProvenanceGraph
from .delegation import DelegationTracker
from .engine import CognitionEngine, DispatchResult

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
    "ManyResult",
    # Registry
    "PrimitiveRegistry",
    "PrimitiveSpec",
    # Execution
    "PrimitiveExecutor",
    "ProvenanceGraph",
    "DelegationTracker",
    # Engine
    "CognitionEngine",
    "DispatchResult",
]
