"""
Uniform provider adapter interface.

Every adapter returns a ProviderResult instead of raising: either a
ProviderSuccess payload or a ProviderFailure classified into the pipeline's
error kinds. Adapters never retry; the orchestrator owns retry policy.
"""
import asyncio
import time
import logging
from typing import Optional

import httpx
import openai

from .models import (
    ArtifactKind,
    ErrorKind,
    GenerationParameters,
    ProviderFailure,
    ProviderResult,
    SegmentContext,
)

logger = logging.getLogger(__name__)

# Provider messages that mean the content itself was refused
_SAFETY_MARKERS = ("nsfw", "safety", "content policy", "flagged", "moderation")


class ProviderError(Exception):
    """Raised inside an adapter when the provider answered with a classified failure."""

    def __init__(self, kind: ErrorKind, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.kind = kind
        self.retry_after = retry_after


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def looks_like_safety_rejection(message: Optional[str]) -> bool:
    text = (message or "").lower()
    return any(marker in text for marker in _SAFETY_MARKERS)


def classify_status(status_code: int, body: str = "", retry_after: Optional[str] = None) -> ProviderError:
    if status_code == 429:
        return ProviderError(ErrorKind.RATE_LIMITED, f"rate limited: {body[:200]}", parse_retry_after(retry_after))
    if status_code in (408, 504):
        return ProviderError(ErrorKind.TIMEOUT, f"provider timeout {status_code}")
    if status_code in (400, 403, 413, 422) or looks_like_safety_rejection(body):
        return ProviderError(ErrorKind.INVALID_INPUT, f"provider rejected input {status_code}: {body[:500]}")
    if status_code >= 500:
        return ProviderError(ErrorKind.PROVIDER_UNAVAILABLE, f"provider error {status_code}")
    return ProviderError(ErrorKind.UNKNOWN, f"unexpected provider status {status_code}: {body[:200]}")


def classify_exception(exc: BaseException) -> ProviderFailure:
    """Map any exception raised while talking to a provider onto the error taxonomy."""
    if isinstance(exc, ProviderError):
        return ProviderFailure(kind=exc.kind, message=str(exc), retry_after=exc.retry_after)
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException, openai.APITimeoutError)):
        return ProviderFailure(kind=ErrorKind.TIMEOUT, message=str(exc) or "deadline exceeded")
    if isinstance(exc, httpx.HTTPStatusError):
        err = classify_status(exc.response.status_code, exc.response.text, exc.response.headers.get("retry-after"))
        return ProviderFailure(kind=err.kind, message=str(err), retry_after=err.retry_after)
    if isinstance(exc, httpx.TransportError):
        return ProviderFailure(kind=ErrorKind.PROVIDER_UNAVAILABLE, message=str(exc))
    if isinstance(exc, openai.RateLimitError):
        headers = exc.response.headers if exc.response is not None else {}
        return ProviderFailure(kind=ErrorKind.RATE_LIMITED, message=str(exc),
                               retry_after=parse_retry_after(headers.get("retry-after")))
    if isinstance(exc, (openai.BadRequestError, openai.UnprocessableEntityError, openai.PermissionDeniedError)):
        return ProviderFailure(kind=ErrorKind.INVALID_INPUT, message=str(exc))
    if isinstance(exc, (openai.APIConnectionError, openai.InternalServerError)):
        return ProviderFailure(kind=ErrorKind.PROVIDER_UNAVAILABLE, message=str(exc))
    return ProviderFailure(kind=ErrorKind.UNKNOWN, message=f"{type(exc).__name__}: {exc}")


class ProviderAdapter:
    """Base class. Subclasses implement ``_generate`` and may raise anything."""

    kind: ArtifactKind

    async def generate(self, context: SegmentContext, parameters: GenerationParameters,
                       deadline: float) -> ProviderResult:
        """Run one provider call, terminating by the absolute ``time.monotonic()`` deadline."""
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return ProviderFailure(kind=ErrorKind.TIMEOUT, message="deadline already passed")
        try:
            return await asyncio.wait_for(self._generate(context, parameters), timeout=remaining)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            failure = classify_exception(e)
            logger.warning(f"{self.kind.value} provider failed for segment {context.segment_id}: "
                           f"{failure.kind.value} {failure.message}")
            return failure

    async def _generate(self, context: SegmentContext, parameters: GenerationParameters) -> ProviderResult:
        raise NotImplementedError

    def quote(self, context: SegmentContext, parameters: GenerationParameters) -> Optional[int]:
        """Adapter-reported cost in credits, for kinds not priced by the fixed table."""
        return None
