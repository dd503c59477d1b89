"""
Domain: Primitive vocabulary

One PrimitiveSpec per kind: its input schema, the output shape the completion
service must return, its generation profile, and a finalizer that enforces the
kind's semantic rules on the parsed output before it is committed.

Finalizers raise ParseError when the generated output breaks a rule (the
executor may regenerate once), and EmptyReflection when reflect finds nothing.
"""
from __future__ import annotations

from typing import Any, Dict, List

from ..kernel.completion import PROFILE_FOR_KIND
from ..kernel.errors import EmptyReflection, ParseError
from ..kernel.registry import PrimitiveRegistry, PrimitiveSpec
from ..kernel.schema import (
    AdaptInput,
    AdaptOutput,
    Artifact,
    AskInput,
    AskOutput,
    CompareInput,
    CompareOutput,
    Confidence,
    DecideInput,
    DecideOutput,
    DecisionDraft,
    DefineInput,
    DefineOutput,
    DistinguishInput,
    DistinguishOutput,
    InferInput,
    InferOutput,
    ObserveInput,
    PrimitiveKind,
    ReflectInput,
    ReflectOutput,
    RejectedOption,
    SequenceInput,
    SequenceOutput,
    SynthesizeInput,
    SynthesizeOutput,
)


def _dump(model: Any) -> Dict[str, Any]:
    return model.model_dump(mode="json")


def finalize_plain(parsed: Any, request: Any, sources: List[Artifact]) -> Dict[str, Any]:
    return _dump(parsed)


def finalize_sequence(parsed: SequenceOutput, request: SequenceInput, sources: List[Artifact]) -> Dict[str, Any]:
    if request.ordering is not None and parsed.ordering_key != request.ordering:
        raise ParseError(
            f"Requested {request.ordering.value} ordering, got {parsed.ordering_key.value}"
        )
    return _dump(parsed)


def finalize_compare(parsed: CompareOutput, request: CompareInput, sources: List[Artifact]) -> Dict[str, Any]:
    named = set(request.criteria)
    for entry in parsed.scores:
        scored = set(entry.scores)
        missing = named - scored
        if missing:
            raise ParseError(f"Item {entry.item!r} not scored on: {', '.join(sorted(missing))}")
        extra = scored - named
        if extra:
            raise ParseError(f"Item {entry.item!r} scored on unnamed criteria: {', '.join(sorted(extra))}")
    items = [entry.item for entry in parsed.scores]
    if len(set(items)) != len(items):
        raise ParseError("Compared items must be distinct")
    result = _dump(parsed)
    result["criteria"] = list(request.criteria)
    return result


def finalize_infer(parsed: InferOutput, request: InferInput, sources: List[Artifact]) -> Dict[str, Any]:
    allowed = set(request.source_ids)
    for claim in parsed.claims:
        unknown = [sid for sid in claim.source_ids if sid not in allowed]
        if unknown:
            raise ParseError(
                f"Claim cites ids outside its sources: {', '.join(unknown)}",
                source_id=unknown[0],
            )
    return _dump(parsed)


def finalize_reflect(parsed: ReflectOutput, request: ReflectInput, sources: List[Artifact]) -> Dict[str, Any]:
    if not parsed.limitations:
        raise EmptyReflection("Reflection surfaced no limitation, assumption or bias")
    return _dump(parsed)


def confidence_floor(sources: List[Artifact]) -> Confidence | None:
    """Lowest confidence carried by any source, or None if none carries one."""
    rated = [s.confidence for s in sources if s.confidence is not None]
    if not rated:
        return None
    return Confidence.lowest(rated)


def finalize_synthesize(
    parsed: SynthesizeOutput, request: SynthesizeInput, sources: List[Artifact]
) -> Dict[str, Any]:
    floor = confidence_floor(sources)
    override = (parsed.confidence_override or "").strip() or None
    confidence = parsed.confidence
    capped = False
    if floor is not None and confidence.rank > floor.rank and override is None:
        confidence = floor
        capped = True
    result = _dump(parsed)
    result.update(
        confidence=confidence.value,
        confidence_override=override,
        input_confidence_floor=floor.value if floor else None,
        confidence_capped=capped,
    )
    return result


def finalize_decide(parsed: DecisionDraft, request: DecideInput, sources: List[Artifact]) -> Dict[str, Any]:
    options = list(request.options)
    tiebreak = None

    if parsed.scores:
        scores: Dict[str, float] = {}
        for entry in parsed.scores:
            if entry.option not in options:
                raise ParseError(f"Scored option {entry.option!r} was not offered")
            if entry.option in scores:
                raise ParseError(f"Option {entry.option!r} scored twice")
            scores[entry.option] = entry.score
        unscored = [o for o in options if o not in scores]
        if unscored:
            raise ParseError(f"Options not scored: {', '.join(unscored)}")
        best = max(scores.values())
        # options order is the caller's order of first appearance
        tied = [o for o in options if scores[o] == best]
        selected = tied[0]
        if len(tied) > 1:
            tiebreak = request.tiebreak
        reasons = {o: f"score {scores[o]:g} vs {best:g}" for o in options}
    else:
        if parsed.selected not in options:
            raise ParseError("Decision selects no offered option")
        selected = parsed.selected
        reasons = {o: "" for o in options}

    output = DecideOutput(
        selected=selected,
        rejected=[RejectedOption(option=o, reason=reasons[o]) for o in options if o != selected],
        rationale=parsed.rationale,
        confidence=parsed.confidence,
        justification=parsed.justification,
        tiebreak=tiebreak,
    )
    return _dump(output)


def finalize_adapt(parsed: AdaptOutput, request: AdaptInput, sources: List[Artifact]) -> Dict[str, Any]:
    result = _dump(parsed)
    result["trigger_id"] = request.trigger_id
    return result


def _spec(kind, input_model, output_model, finalize, description) -> PrimitiveSpec:
    return PrimitiveSpec(
        kind=kind,
        input_model=input_model,
        output_model=output_model,
        profile=PROFILE_FOR_KIND.get(kind),
        finalize=finalize,
        description=description,
    )


def build_default_registry() -> PrimitiveRegistry:
    registry = PrimitiveRegistry()
    for spec in (
        _spec(PrimitiveKind.OBSERVE, ObserveInput, None, None,
              "Record raw data with provenance; the only kind that fetches externally"),
        _spec(PrimitiveKind.DEFINE, DefineInput, DefineOutput, finalize_plain,
              "Name a framework with boundaries and dimensions"),
        _spec(PrimitiveKind.DISTINGUISH, DistinguishInput, DistinguishOutput, finalize_plain,
              "Partition material into categories with discriminating features"),
        _spec(PrimitiveKind.SEQUENCE, SequenceInput, SequenceOutput, finalize_sequence,
              "Order material under an explicit ordering key"),
        _spec(PrimitiveKind.COMPARE, CompareInput, CompareOutput, finalize_compare,
              "Score items against named criteria"),
        _spec(PrimitiveKind.INFER, InferInput, InferOutput, finalize_infer,
              "Draw claims with confidence, each traceable to a source"),
        _spec(PrimitiveKind.REFLECT, ReflectInput, ReflectOutput, finalize_reflect,
              "Surface limitations, assumptions and biases"),
        _spec(PrimitiveKind.ASK, AskInput, AskOutput, finalize_plain,
              "List open questions tagged by gap"),
        _spec(PrimitiveKind.SYNTHESIZE, SynthesizeInput, SynthesizeOutput, finalize_synthesize,
              "Integrate sources with a recomputed aggregate confidence"),
        _spec(PrimitiveKind.DECIDE, DecideInput, DecisionDraft, finalize_decide,
              "Select exactly one option with an explicit tie-break"),
        _spec(PrimitiveKind.ADAPT, AdaptInput, AdaptOutput, finalize_adapt,
              "Describe what changed and why, given a triggering artifact"),
    ):
        registry.register(spec)
    return registry
