"""
Provider error types and the transient/permanent classifier shared by every
remote call site.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import requests

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STATUS_CODES = {408, 429, 504}
TRANSIENT_PROVIDER_STATUSES = {"RESOURCE_EXHAUSTED", "DEADLINE_EXCEEDED"}
TRANSIENT_MESSAGE_TOKENS = (
    "429",
    "quota",
    "rate limit",
    "ratelimit",
    "exhausted",
    "too many requests",
    "timed out",
)


class ProviderError(RuntimeError):
    """Raised when the generative provider answers with anything but success."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        provider_status: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.provider_status = provider_status
        super().__init__(message)


class ProviderTimeoutError(ProviderError):
    pass


class MalformedResponseError(ProviderError):
    """The provider answered, but not with the shape we asked for."""


@dataclass(frozen=True)
class ErrorClass:
    transient: bool
    reason: str

    @property
    def permanent(self) -> bool:
        return not self.transient


def _chain(error: BaseException) -> list[BaseException]:
    seen: list[BaseException] = []
    current: BaseException | None = error
    while current is not None and all(current is not s for s in seen):
        seen.append(current)
        current = current.__cause__ or current.__context__
    return seen


def _classify_structured(error: BaseException) -> ErrorClass | None:
    if isinstance(error, MalformedResponseError):
        return ErrorClass(False, "malformed_response")
    if isinstance(error, (ProviderTimeoutError, TimeoutError, asyncio.TimeoutError, requests.Timeout)):
        return ErrorClass(True, "timeout")
    if isinstance(error, ProviderError):
        status = (error.provider_status or "").upper()
        if status in TRANSIENT_PROVIDER_STATUSES:
            return ErrorClass(True, f"provider_status={status}")
        if error.status_code is not None:
            if error.status_code in TRANSIENT_STATUS_CODES:
                return ErrorClass(True, f"http_{error.status_code}")
            return ErrorClass(False, f"http_{error.status_code}")
    return None


def _classify_message(message: str) -> ErrorClass:
    lowered = (message or "").lower()
    for token in TRANSIENT_MESSAGE_TOKENS:
        if token in lowered:
            return ErrorClass(True, f"message~{token}")
    return ErrorClass(False, "unrecognized")


def classify(error: BaseException | str) -> ErrorClass:
    """
    Decide whether a provider failure is worth retrying.

    Structured signals (exception type, HTTP status, provider status) win over
    message text. Message substrings are only consulted when nothing in the
    exception chain carries a structured signal.
    """
    if isinstance(error, str):
        return _classify_message(error)

    chain = _chain(error)
    for exc in chain:
        verdict = _classify_structured(exc)
        if verdict is not None:
            return verdict
    for exc in chain:
        verdict = _classify_message(str(exc))
        if verdict.transient:
            return verdict
    return ErrorClass(False, "unrecognized")


def is_transient(error: BaseException | str) -> bool:
    return classify(error).transient


@dataclass(frozen=True)
class RetryPolicy:
    base_delay_seconds: float = 2.0
    max_attempts: int = 6
    multiplier: float = 2.0
    jitter_seconds: float = 0.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based): base, base*2, base*4, ..."""
        delay = self.base_delay_seconds * (self.multiplier ** max(0, attempt - 1))
        if self.jitter_seconds > 0:
            delay += random.uniform(0, self.jitter_seconds)
        return max(0.0, delay)


async def retry_transient(
    call: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    on_wait: Callable[[BaseException, int, float], None] | None = None,
    label: str = "provider",
) -> T:
    attempts = max(1, policy.max_attempts)
    attempt = 1
    while True:
        try:
            return await call()
        except ProviderError as exc:
            verdict = classify(exc)
            if not verdict.transient or attempt >= attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "[retry] call=%s attempt=%d/%d reason=%s wait=%.2fs",
                label,
                attempt,
                attempts,
                verdict.reason,
                delay,
            )
            if on_wait is not None:
                on_wait(exc, attempt, delay)
            await asyncio.sleep(delay)
            attempt += 1
