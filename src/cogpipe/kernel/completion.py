"""
Completion Service Adapter: the only way the kernel talks to a text generator.

The kernel depends on nothing but ``CompletionService.complete(messages,
profile) -> str``. Backends raise the typed GenerationError family; the retry
policy here decides which of those are worth another attempt.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx

from .errors import (
    AuthError,
    EmptyResponse,
    GenerationError,
    GenerationFailed,
    RateLimited,
)
from .schema import PrimitiveKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Message:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class PromptFrame:
    """Ordered, role-tagged messages handed to the completion service."""

    messages: tuple

    def to_list(self) -> List[Dict[str, str]]:
        return [m.to_dict() for m in self.messages]

    def fingerprint(self) -> str:
        canonical = json.dumps(self.to_list(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class GenerationProfile:
    name: str
    temperature: float
    max_tokens: int


DEFAULT_PROFILES: Dict[str, GenerationProfile] = {
    "precise": GenerationProfile("precise", temperature=0.2, max_tokens=800),
    "reflective": GenerationProfile("reflective", temperature=0.5, max_tokens=1200),
    "expansive": GenerationProfile("expansive", temperature=0.8, max_tokens=2000),
}

PROFILE_FOR_KIND: Dict[PrimitiveKind, str] = {
    PrimitiveKind.DEFINE: "precise",
    PrimitiveKind.DISTINGUISH: "precise",
    PrimitiveKind.SEQUENCE: "precise",
    PrimitiveKind.COMPARE: "precise",
    PrimitiveKind.INFER: "precise",
    PrimitiveKind.DECIDE: "precise",
    PrimitiveKind.REFLECT: "reflective",
    PrimitiveKind.ASK: "reflective",
    PrimitiveKind.ADAPT: "reflective",
    PrimitiveKind.SYNTHESIZE: "expansive",
}


class CompletionService(Protocol):
    def complete(self, frame: PromptFrame, profile: GenerationProfile) -> str:
        ...


@dataclass
class RetryPolicy:
    """
    max_attempts bounds RateLimited retries; empty_retries bounds EmptyResponse
    retries. Backoff doubles from base_delay up to max_delay.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    empty_retries: int = 1

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if retry_after is not None:
            delay = min(max(delay, retry_after), self.max_delay)
        return delay


@dataclass
class CompletionOutcome:
    text: str
    attempts: int


def complete_with_retries(
    service: CompletionService,
    frame: PromptFrame,
    profile: GenerationProfile,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    primitive: Optional[str] = None,
    context_id: Optional[str] = None,
) -> CompletionOutcome:
    """
    Call the service, retrying RateLimited with backoff and EmptyResponse once.

    Raises GenerationFailed on AuthError, on any other GenerationError, or when
    the retry budget is exhausted.
    """
    attempts = 0
    empty_seen = 0
    last_error: Optional[GenerationError] = None

    while attempts < policy.max_attempts:
        attempts += 1
        try:
            text = service.complete(frame, profile)
            if not text or not text.strip():
                raise EmptyResponse("Completion service returned no text")
            return CompletionOutcome(text=text, attempts=attempts)
        except AuthError as exc:
            raise GenerationFailed(
                f"Completion service rejected credentials: {exc.message}",
                primitive=primitive,
                context_id=context_id,
                details={"cause": exc.kind, "attempts": attempts},
            ) from exc
        except RateLimited as exc:
            last_error = exc
            if attempts >= policy.max_attempts:
                break
            delay = policy.delay_for(attempts, exc.retry_after)
            logger.warning(
                "Rate limited on %s (attempt %d/%d), backing off %.2fs",
                primitive, attempts, policy.max_attempts, delay,
            )
            sleep(delay)
        except EmptyResponse as exc:
            last_error = exc
            empty_seen += 1
            if empty_seen > policy.empty_retries:
                break
            logger.warning("Empty completion for %s, retrying", primitive)
        except GenerationError as exc:
            raise GenerationFailed(
                f"Completion service failed: {exc.message}",
                primitive=primitive,
                context_id=context_id,
                details={"cause": exc.kind, "attempts": attempts},
            ) from exc

    assert last_error is not None
    raise GenerationFailed(
        f"Completion retries exhausted after {attempts} attempt(s): {last_error.message}",
        primitive=primitive,
        context_id=context_id,
        details={"cause": last_error.kind, "attempts": attempts},
    ) from last_error


class HttpCompletionService:
    """
    OpenAI-compatible chat-completions backend over httpx.

    Example:
        service = HttpCompletionService("https://api.example.com/v1", api_key="...", model="m")
        text = service.complete(frame, DEFAULT_PROFILES["precise"])
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        model: str = "default",
        timeout: float = 60.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.Client(timeout=timeout, headers=headers)

    def complete(self, frame: PromptFrame, profile: GenerationProfile) -> str:
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": frame.to_list(),
            "temperature": profile.temperature,
            "max_tokens": profile.max_tokens,
        }
        try:
            response = self._client.post(f"{self.base_url}/chat/completions", json=body)
        except httpx.HTTPError as exc:
            raise GenerationError(f"Transport failure: {exc}") from exc

        if response.status_code in (401, 403):
            raise AuthError(f"HTTP {response.status_code} from completion service")
        if response.status_code == 429:
            raise RateLimited(
                "HTTP 429 from completion service",
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if response.status_code >= 400:
            raise GenerationError(f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            payload = response.json()
            content = payload["choices"][0]["message"].get("content") or ""
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise GenerationError(f"Malformed completion response: {exc}") from exc

        if not content.strip():
            raise EmptyResponse("Completion service returned empty content")
        return content

    def close(self) -> None:
        self._client.close()


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None
