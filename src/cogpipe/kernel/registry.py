from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Type, Union

from .schema import Artifact, PrimitiveInput, PrimitiveKind, PrimitiveOutput

# (parsed output, validated request, resolved sources) -> stored output
Finalizer = Callable[[PrimitiveOutput, PrimitiveInput, List[Artifact]], Dict[str, Any]]


@dataclass
class PrimitiveSpec:
    kind: PrimitiveKind
    input_model: Type[PrimitiveInput]
    output_model: Optional[Type[PrimitiveOutput]]
    profile: Optional[str]
    finalize: Optional[Finalizer] = None
    description: str = ""

    @property
    def generates(self) -> bool:
        """False for kinds that never call the completion service (observe)."""
        return self.output_model is not None


class PrimitiveRegistry:
    def __init__(self) -> None:
        self._registry: Dict[PrimitiveKind, PrimitiveSpec] = {}

    def register(self, spec: PrimitiveSpec) -> None:
        self._registry[spec.kind] = spec

    def get(self, kind: Union[PrimitiveKind, str]) -> PrimitiveSpec:
        return self._registry[PrimitiveKind(kind)]

    def kinds(self) -> List[PrimitiveKind]:
        return list(self._registry)

    def __contains__(self, kind: object) -> bool:
        try:
            return PrimitiveKind(kind) in self._registry  # type: ignore[arg-type]
        except ValueError:
            return False
