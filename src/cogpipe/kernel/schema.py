from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator


class PrimitiveKind(str, Enum):
    OBSERVE = "observe"
    DEFINE = "define"
    DISTINGUISH = "distinguish"
    SEQUENCE = "sequence"
    COMPARE = "compare"
    INFER = "infer"
    REFLECT = "reflect"
    ASK = "ask"
    SYNTHESIZE = "synthesize"
    DECIDE = "decide"
    ADAPT = "adapt"


EVIDENTIARY = frozenset({PrimitiveKind.INFER, PrimitiveKind.SYNTHESIZE, PrimitiveKind.DECIDE})


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    MEDIUM_HIGH = "medium-high"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return CONFIDENCE_SCALE.index(self)

    @classmethod
    def lowest(cls, values: List["Confidence"]) -> "Confidence":
        return min(values, key=lambda c: c.rank)


CONFIDENCE_SCALE = [Confidence.LOW, Confidence.MEDIUM, Confidence.MEDIUM_HIGH, Confidence.HIGH]


def normalize_confidence(value: Any) -> Any:
    """Accept loose spellings such as ``Medium High`` or ``medium_high``."""
    if isinstance(value, str):
        cleaned = value.strip().lower().replace("_", "-").replace(" ", "-")
        return cleaned
    return value


ConfidenceField = Annotated[Confidence, BeforeValidator(normalize_confidence)]


class OrderingKey(str, Enum):
    TEMPORAL = "temporal"
    CAUSAL = "causal"
    LOGICAL = "logical"


class GapCategory(str, Enum):
    EVIDENCE = "evidence"
    DEFINITION = "definition"
    SCOPE = "scope"
    CAUSALITY = "causality"
    MEASUREMENT = "measurement"
    OTHER = "other"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# =============================================================================
# Inputs: one strict model per primitive kind
# =============================================================================


class PrimitiveInput(BaseModel):
    """Fields shared by every primitive request."""

    model_config = ConfigDict(extra="forbid")

    MIN_SOURCES: ClassVar[int] = 1
    MAX_SOURCES: ClassVar[Optional[int]] = None

    context_id: str
    source_ids: List[str] = Field(default_factory=list)

    @field_validator("context_id")
    @classmethod
    def _context_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("context_id must not be blank")
        return value

    @field_validator("source_ids")
    @classmethod
    def _sources_unique(cls, value: List[str]) -> List[str]:
        if len(set(value)) != len(value):
            raise ValueError("source_ids must not repeat")
        return value

    @model_validator(mode="after")
    def _source_count(self) -> "PrimitiveInput":
        count = len(self.source_ids)
        if count < self.MIN_SOURCES:
            raise ValueError(f"requires at least {self.MIN_SOURCES} source id(s), got {count}")
        if self.MAX_SOURCES is not None and count > self.MAX_SOURCES:
            raise ValueError(f"accepts at most {self.MAX_SOURCES} source id(s), got {count}")
        return self


class ObserveInput(PrimitiveInput):
    MIN_SOURCES: ClassVar[int] = 0
    MAX_SOURCES: ClassVar[Optional[int]] = 0

    source: Optional[str] = None
    connector: Optional[str] = None
    query: Dict[str, Any] = Field(default_factory=dict)
    max_age_seconds: Optional[float] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _has_origin(self) -> "ObserveInput":
        if not self.connector and not (self.source and self.source.strip()):
            raise ValueError("observe needs either raw 'source' text or a 'connector'")
        return self


class DefineInput(PrimitiveInput):
    subject: str = Field(min_length=1)
    boundary: Optional[str] = None


class DistinguishInput(PrimitiveInput):
    basis: Optional[str] = None


class SequenceInput(PrimitiveInput):
    ordering: Optional[OrderingKey] = None


class CompareInput(PrimitiveInput):
    MIN_SOURCES: ClassVar[int] = 2

    criteria: List[str] = Field(min_length=1)

    @field_validator("criteria")
    @classmethod
    def _criteria_named(cls, value: List[str]) -> List[str]:
        cleaned = [c.strip() for c in value]
        if any(not c for c in cleaned):
            raise ValueError("criteria must be named")
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("criteria must not repeat")
        return cleaned


class InferInput(PrimitiveInput):
    question: Optional[str] = None


class ReflectInput(PrimitiveInput):
    focus: Optional[str] = None


class AskInput(PrimitiveInput):
    MIN_SOURCES: ClassVar[int] = 0

    topic: Optional[str] = None


class SynthesizeInput(PrimitiveInput):
    MIN_SOURCES: ClassVar[int] = 2

    goal: Optional[str] = None


class DecideInput(PrimitiveInput):
    question: str = Field(min_length=1)
    options: List[str] = Field(min_length=2)
    tiebreak: Literal["first_listed"] = "first_listed"

    @field_validator("options")
    @classmethod
    def _options_unique(cls, value: List[str]) -> List[str]:
        if len(set(value)) != len(value):
            raise ValueError("options must not repeat")
        return value


class AdaptInput(PrimitiveInput):
    trigger_id: str
    change: Optional[str] = None

    @model_validator(mode="after")
    def _trigger_is_source(self) -> "AdaptInput":
        if self.trigger_id not in self.source_ids:
            raise ValueError("trigger_id must be one of source_ids")
        return self


# =============================================================================
# Outputs
# =============================================================================


class PrimitiveOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Provenance(BaseModel):
    origin: str
    retrieved_at: datetime
    connector: Optional[str] = None
    cached: bool = False


class ObserveOutput(PrimitiveOutput):
    data: Any
    provenance: Provenance


class Dimension(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""


class DefineOutput(PrimitiveOutput):
    name: str = Field(min_length=1)
    boundaries: List[str] = Field(min_length=1)
    dimensions: List[Dimension] = Field(min_length=1)


class Category(BaseModel):
    name: str = Field(min_length=1)
    features: List[str] = Field(min_length=1)
    members: List[str] = Field(min_length=1)


class DistinguishOutput(PrimitiveOutput):
    categories: List[Category] = Field(min_length=2)

    @model_validator(mode="after")
    def _partition(self) -> "DistinguishOutput":
        seen: Dict[str, str] = {}
        for category in self.categories:
            for member in category.members:
                if member in seen and seen[member] != category.name:
                    raise ValueError(
                        f"member {member!r} appears in both {seen[member]!r} and {category.name!r}"
                    )
                seen[member] = category.name
        names = [c.name for c in self.categories]
        if len(set(names)) != len(names):
            raise ValueError("category names must be distinct")
        return self


class SequenceItem(BaseModel):
    position: int
    label: str = Field(min_length=1)
    rationale: str = ""


class SequenceOutput(PrimitiveOutput):
    ordering_key: OrderingKey
    items: List[SequenceItem] = Field(min_length=1)

    @model_validator(mode="after")
    def _ordered(self) -> "SequenceOutput":
        positions = [item.position for item in self.items]
        if any(b <= a for a, b in zip(positions, positions[1:])):
            raise ValueError("item positions must be strictly increasing")
        return self


class ItemScore(BaseModel):
    item: str = Field(min_length=1)
    scores: Dict[str, float]


class CompareOutput(PrimitiveOutput):
    criteria: List[str] = Field(default_factory=list)
    scores: List[ItemScore] = Field(min_length=2)


class Claim(BaseModel):
    statement: str = Field(min_length=1)
    confidence: ConfidenceField
    justification: str = Field(min_length=1)
    source_ids: List[str] = Field(min_length=1)


class InferOutput(PrimitiveOutput):
    claims: List[Claim] = Field(min_length=1)
    confidence: ConfidenceField
    justification: str = Field(min_length=1)


class Limitation(BaseModel):
    kind: Literal["limitation", "assumption", "bias"] = "limitation"
    description: str = Field(min_length=1)
    severity: Severity


class ReflectOutput(PrimitiveOutput):
    limitations: List[Limitation] = Field(default_factory=list)


class Question(BaseModel):
    question: str = Field(min_length=1)
    gap: GapCategory


class AskOutput(PrimitiveOutput):
    questions: List[Question] = Field(min_length=1)


class SynthesizeOutput(PrimitiveOutput):
    narrative: str = Field(min_length=1)
    confidence: ConfidenceField
    justification: str = Field(min_length=1)
    confidence_override: Optional[str] = None
    input_confidence_floor: Optional[Confidence] = None
    confidence_capped: bool = False


class OptionScore(BaseModel):
    option: str
    score: float


class DecisionDraft(PrimitiveOutput):
    """What the completion service is asked to return for ``decide``."""

    scores: List[OptionScore] = Field(default_factory=list)
    selected: Optional[str] = None
    rationale: str = Field(min_length=1)
    confidence: ConfidenceField
    justification: str = Field(min_length=1)


class RejectedOption(BaseModel):
    option: str
    reason: str = ""


class DecideOutput(PrimitiveOutput):
    selected: str
    rejected: List[RejectedOption]
    rationale: str
    confidence: Confidence
    justification: str
    tiebreak: Optional[str] = None


class Change(BaseModel):
    what: str = Field(min_length=1)
    why: str = Field(min_length=1)


class AdaptOutput(PrimitiveOutput):
    trigger_id: str = ""
    changes: List[Change] = Field(min_length=1)


# =============================================================================
# Artifacts
# =============================================================================


class Artifact(BaseModel):
    """An immutable record of one primitive execution."""

    model_config = ConfigDict(frozen=True)

    id: str
    context_id: str
    primitive: PrimitiveKind
    input: Dict[str, Any] = Field(default_factory=dict)
    source_ids: List[str] = Field(default_factory=list)
    output: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    # Stamped by the store at commit time.
    created_at: Optional[datetime] = None
    seq: Optional[int] = None

    @property
    def confidence(self) -> Optional[Confidence]:
        value = self.output.get("confidence")
        if value is None:
            return None
        try:
            return Confidence(normalize_confidence(value))
        except ValueError:
            return None


class InvocationResult(BaseModel):
    artifact_id: str
    output: Dict[str, Any]


# =============================================================================
# Delegation
# =============================================================================


class DelegationStatus(str, Enum):
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    RETURNED = "returned"
    VERIFIED = "verified"
    REJECTED = "rejected"


class DelegationRecord(BaseModel):
    task_id: Optional[str] = None
    origin: str = Field(min_length=1)
    destination: str = Field(min_length=1)
    status: DelegationStatus = DelegationStatus.ASSIGNED
    parameters: Dict[str, Any] = Field(default_factory=dict)
    result_ref: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DelegationEvent(BaseModel):
    task_id: str
    from_status: Optional[DelegationStatus] = None
    to_status: DelegationStatus
    payload: Dict[str, Any] = Field(default_factory=dict)
    forced: bool = False
    at: datetime
