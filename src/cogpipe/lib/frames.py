"""
Domain: Prompt frames

Fixed instruction templates, one per primitive kind, and the deterministic
assembly of a PromptFrame from (template, resolved sources, input payload).
Same inputs always produce the same frame and the same fingerprint.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List

from ..kernel.completion import Message, PromptFrame
from ..kernel.schema import Artifact, PrimitiveKind

_PREAMBLE = (
    "You perform exactly one cognitive primitive over the supplied sources. "
    "Reply with a single JSON object and nothing else."
)

TEMPLATES: Dict[PrimitiveKind, str] = {
    PrimitiveKind.DEFINE: (
        "DEFINE: establish a named framework for the subject. "
        'Return {"name": str, "boundaries": [str, ...], '
        '"dimensions": [{"name": str, "description": str}, ...]}. '
        "Boundaries state what is in and out of scope; dimensions are the axes later steps will reuse."
    ),
    PrimitiveKind.DISTINGUISH: (
        "DISTINGUISH: partition the material into categories. "
        'Return {"categories": [{"name": str, "features": [str, ...], "members": [str, ...]}, ...]}. '
        "Every member belongs to exactly one category; every category names its discriminating features."
    ),
    PrimitiveKind.SEQUENCE: (
        "SEQUENCE: order the material. "
        'Return {"ordering_key": "temporal" | "causal" | "logical", '
        '"items": [{"position": int, "label": str, "rationale": str}, ...]}. '
        "State the ordering key explicitly; positions increase strictly."
    ),
    PrimitiveKind.COMPARE: (
        "COMPARE: score each item against every named criterion. "
        'Return {"scores": [{"item": str, "scores": {criterion: number, ...}}, ...]}. '
        "Use only the criteria given in the request, and score all of them."
    ),
    PrimitiveKind.INFER: (
        "INFER: draw claims from the sources. "
        'Return {"claims": [{"statement": str, "confidence": "low" | "medium" | "medium-high" | "high", '
        '"justification": str, "source_ids": [str, ...]}, ...], '
        '"confidence": "low" | "medium" | "medium-high" | "high", "justification": str}. '
        "Every claim cites at least one source id from the request. Never omit confidence."
    ),
    PrimitiveKind.REFLECT: (
        "REFLECT: surface the limitations, assumptions and biases of the sources. "
        'Return {"limitations": [{"kind": "limitation" | "assumption" | "bias", '
        '"description": str, "severity": "low" | "medium" | "high"}, ...]}. '
        "List at least one."
    ),
    PrimitiveKind.ASK: (
        "ASK: list the open questions the material leaves. "
        'Return {"questions": [{"question": str, "gap": "evidence" | "definition" | "scope" | '
        '"causality" | "measurement" | "other"}, ...]}.'
    ),
    PrimitiveKind.SYNTHESIZE: (
        "SYNTHESIZE: integrate the sources into one narrative. "
        'Return {"narrative": str, "confidence": "low" | "medium" | "medium-high" | "high", '
        '"justification": str, "confidence_override": str | null}. '
        "Aggregate confidence may not exceed the weakest source unless confidence_override explains why."
    ),
    PrimitiveKind.DECIDE: (
        "DECIDE: choose exactly one of the listed options. "
        'Return {"scores": [{"option": str, "score": number}, ...], "selected": str, '
        '"rationale": str, "confidence": "low" | "medium" | "medium-high" | "high", "justification": str}. '
        "Score every option."
    ),
    PrimitiveKind.ADAPT: (
        "ADAPT: describe how prior conclusions change in light of the triggering artifact. "
        'Return {"changes": [{"what": str, "why": str}, ...]}.'
    ),
}


def canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def render_sources(sources: List[Artifact]) -> str:
    if not sources:
        return "SOURCES: none"
    blocks = ["SOURCES:"]
    for artifact in sources:
        blocks.append(f"[{artifact.id}] ({artifact.primitive.value}) {canonical(artifact.output)}")
    return "\n".join(blocks)


def build_frame(kind: PrimitiveKind, sources: List[Artifact], payload: Dict[str, Any]) -> PromptFrame:
    """Assemble the frame for one invocation; sources must already be in source_ids order."""
    template = TEMPLATES[kind]
    request = {k: v for k, v in payload.items() if k != "context_id"}
    user = f"{render_sources(sources)}\n\nREQUEST: {canonical(request)}"
    return PromptFrame(
        messages=(
            Message("system", f"{_PREAMBLE}\n\n{template}"),
            Message("user", user),
        )
    )
