"""
Provenance Graph: "what produced this" and "what depends on this".

Ancestors walk each artifact's own source_ids; descendants walk the reverse
index that the store writes in the same transaction as every artifact, so no
full scan is needed. Both traversals are depth-first pre-order and visit each
artifact once. The graph cannot contain cycles: a source must exist before
the artifact that cites it.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List

from .schema import Artifact
from .store import ArtifactStore


class ProvenanceGraph:
    def __init__(self, store: ArtifactStore) -> None:
        self._store = store

    def _walk(self, start_id: str, neighbours: Callable[[str], List[str]]) -> List[Artifact]:
        self._store.get(start_id)  # raises ArtifactNotFound

        visited = {start_id}
        order: List[str] = []
        stack = list(reversed(neighbours(start_id)))
        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            order.append(current)
            stack.extend(reversed(neighbours(current)))

        found = self._store.get_many(order)
        return found.artifacts

    def ancestors(self, artifact_id: str) -> List[Artifact]:
        """Transitive sources of an artifact: the evidence it rests on."""
        return self._walk(artifact_id, self._store.source_ids_of)

    def descendants(self, artifact_id: str) -> List[Artifact]:
        """Transitive consumers of an artifact: everything that depends on it."""
        return self._walk(artifact_id, self._store.descendant_ids)

    def lineage(self, artifact_id: str) -> Dict[str, Any]:
        return {
            "artifact": self._store.get(artifact_id),
            "ancestors": self.ancestors(artifact_id),
            "descendants": self.descendants(artifact_id),
        }

    def context_graph(self, context_id: str) -> Dict[str, Any]:
        """Nodes and source edges of one context, oldest first, for export."""
        artifacts = self._store.list_by_context(context_id, order="commit")
        nodes = [
            {
                "id": a.id,
                "primitive": a.primitive.value,
                "created_at": a.created_at.isoformat() if a.created_at else None,
                "confidence": a.confidence.value if a.confidence else None,
            }
            for a in artifacts
        ]
        edges = [{"from": source_id, "to": a.id} for a in artifacts for source_id in a.source_ids]
        return {"context_id": context_id, "nodes": nodes, "edges": edges}
