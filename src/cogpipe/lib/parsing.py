"""
Domain: Output parsing

Turns completion text into a validated output model. The service is asked
for a bare JSON object but may wrap it in a fenced block or surrounding prose;
anything that still fails validation is a ParseError, never a silent default.
"""
from __future__ import annotations

import json
import re
from typing import Any, Dict, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..kernel.errors import ParseError

M = TypeVar("M", bound=BaseModel)

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json(text: str) -> Dict[str, Any]:
    """Pull the first JSON object out of ``text``."""
    candidates = [m.group(1) for m in _FENCE.finditer(text)]
    candidates.append(text)

    for candidate in candidates:
        candidate = candidate.strip()
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            start = candidate.find("{")
            end = candidate.rfind("}")
            if start == -1 or end <= start:
                continue
            try:
                value = json.loads(candidate[start : end + 1])
            except json.JSONDecodeError:
                continue
        if isinstance(value, dict):
            return value

    raise ParseError("Completion text contains no JSON object", details={"text": text[:500]})


def summarize_errors(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error.get("loc", ())) or "<root>"
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)


def parse_output(text: str, model_cls: Type[M]) -> M:
    data = extract_json(text)
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as exc:
        raise ParseError(
            f"Output does not match {model_cls.__name__}: {summarize_errors(exc)}",
            details={"fields": [".".join(str(p) for p in e.get("loc", ())) for e in exc.errors()]},
        ) from exc
