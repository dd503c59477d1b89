from __future__ import annotations

import uuid
from typing import Union

from .schema import PrimitiveKind

# Short prefixes keep ids readable in provenance dumps.
PREFIXES = {
    PrimitiveKind.OBSERVE: "obs",
    PrimitiveKind.DEFINE: "def",
    PrimitiveKind.DISTINGUISH: "dst",
    PrimitiveKind.SEQUENCE: "seq",
    PrimitiveKind.COMPARE: "cmp",
    PrimitiveKind.INFER: "inf",
    PrimitiveKind.REFLECT: "rfl",
    PrimitiveKind.ASK: "ask",
    PrimitiveKind.SYNTHESIZE: "syn",
    PrimitiveKind.DECIDE: "dec",
    PrimitiveKind.ADAPT: "adp",
}

TASK_KIND = "task"


def generate(kind: Union[PrimitiveKind, str]) -> str:
    """Return a fresh identifier such as ``obs_3f2a...``.

    The suffix is a uuid4 hex string (122 random bits), so collisions are
    negligible across processes and restarts.
    """
    if kind == TASK_KIND:
        prefix = "task"
    else:
        try:
            prefix = PREFIXES[PrimitiveKind(kind)]
        except ValueError:
            raise ValueError(f"Unknown identifier kind: {kind!r}") from None
    return f"{prefix}_{uuid.uuid4().hex}"


def kind_of(identifier: str) -> PrimitiveKind | None:
    """Infer the primitive kind from an artifact id prefix."""
    prefix, _, _ = identifier.partition("_")
    for kind, known in PREFIXES.items():
        if known == prefix:
            return kind
    return None
