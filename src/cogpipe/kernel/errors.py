"""
Typed failures raised by the kernel.

Every error carries enough context (primitive, context, offending source id)
for a caller to correct its input and retry without re-deriving the chain.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CognitionError(Exception):
    kind = "cognition_error"
    # Caller errors are never retried by the kernel.
    caller_error = False

    def __init__(
        self,
        message: str,
        *,
        primitive: Optional[str] = None,
        context_id: Optional[str] = None,
        source_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.primitive = primitive
        self.context_id = context_id
        self.source_id = source_id
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"error_kind": self.kind, "error_message": self.message}
        if self.primitive:
            result["primitive"] = self.primitive
        if self.context_id:
            result["context_id"] = self.context_id
        if self.source_id:
            result["source_id"] = self.source_id
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        parts = [self.message]
        if self.primitive:
            parts.append(f"primitive={self.primitive}")
        if self.context_id:
            parts.append(f"context={self.context_id}")
        if self.source_id:
            parts.append(f"source={self.source_id}")
        return " | ".join(parts)


class ValidationError(CognitionError):
    kind = "validation_error"
    caller_error = True


class DanglingReferenceError(CognitionError):
    kind = "dangling_reference"
    caller_error = True


class EmptyReflection(CognitionError):
    kind = "empty_reflection"
    caller_error = True


class IntegrityError(CognitionError):
    kind = "integrity_error"


class ArtifactNotFound(CognitionError):
    kind = "artifact_not_found"
    caller_error = True


class GenerationError(CognitionError):
    """Base for failures reported by the completion service."""

    kind = "generation_error"


class AuthError(GenerationError):
    kind = "auth_error"


class RateLimited(GenerationError):
    kind = "rate_limited"

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class EmptyResponse(GenerationError):
    kind = "empty_response"


class GenerationFailed(CognitionError):
    kind = "generation_failed"


class ParseError(CognitionError):
    kind = "parse_error"


class InvalidTransitionError(CognitionError):
    kind = "invalid_transition"
    caller_error = True


class DelegationNotFound(CognitionError):
    kind = "delegation_not_found"
    caller_error = True


class InvocationCancelled(CognitionError):
    kind = "invocation_cancelled"


class ConnectorError(CognitionError):
    kind = "connector_error"
