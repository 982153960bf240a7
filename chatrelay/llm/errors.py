"""Provider error taxonomy and the heuristics that classify raw failures.

Every provider adapter funnels its exceptions through ``classify_exception`` so
the orchestrator only ever sees a ``ProviderError`` tagged with one of three
kinds. The string heuristics live here so they can be tested against captured
error payloads.
"""
import asyncio
from enum import Enum
from typing import Optional

import httpx


class ErrorKind(str, Enum):
    QUOTA = "quota"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class ProviderError(Exception):
    def __init__(self, kind: ErrorKind, message: str, provider: str = None,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.provider = provider
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"ProviderError(kind={self.kind.value}, provider={self.provider}, message={self.message!r})"


class AllProvidersExhaustedError(Exception):
    """No provider is usable for this turn."""


class TurnFailedError(Exception):
    """A turn failed for a reason other than quota exhaustion."""

    def __init__(self, message: str, kind: ErrorKind, provider: str = None):
        super().__init__(message)
        self.kind = kind
        self.provider = provider


QUOTA_STATUS_CODES = {402, 429}
PERMANENT_STATUS_CODES = {400, 401, 403, 404, 422}

QUOTA_MARKERS = (
    "quota",
    "billing",
    "rate limit",
    "rate_limit",
    "ratelimit",
    "too many requests",
    "insufficient",
    "exceeded",
    "resource_exhausted",
    "credit",
)

PERMANENT_MARKERS = (
    "invalid api key",
    "invalid_api_key",
    "api key not valid",
    "unauthorized",
    "authentication",
    "permission",
    "not configured",
    "invalid request",
    "invalid_request",
)


def classify_status(status_code: Optional[int]) -> Optional[ErrorKind]:
    if status_code is None:
        return None
    if status_code in QUOTA_STATUS_CODES:
        return ErrorKind.QUOTA
    if status_code in PERMANENT_STATUS_CODES:
        return ErrorKind.PERMANENT
    if status_code >= 500:
        return ErrorKind.TRANSIENT
    return None


def classify_message(message: str) -> ErrorKind:
    text = (message or "").lower()
    if any(marker in text for marker in QUOTA_MARKERS):
        return ErrorKind.QUOTA
    if any(marker in text for marker in PERMANENT_MARKERS):
        return ErrorKind.PERMANENT
    return ErrorKind.TRANSIENT


def classify(status_code: Optional[int], message: str) -> ErrorKind:
    """Status code wins when it is decisive; otherwise fall back to the message text.

    A 400 whose body talks about quota or billing is still a quota error
    (some providers report exhausted credit that way).
    """
    by_message = classify_message(message)
    by_status = classify_status(status_code)
    if by_status == ErrorKind.PERMANENT and by_message == ErrorKind.QUOTA:
        return ErrorKind.QUOTA
    if by_status is not None:
        return by_status
    return by_message


def _status_of(exc: Exception) -> Optional[int]:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    # openai.APIStatusError and friends expose ``status_code``
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def classify_exception(exc: BaseException, provider: str = None) -> ProviderError:
    if isinstance(exc, ProviderError):
        if exc.provider is None:
            exc.provider = provider
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ProviderError(ErrorKind.TRANSIENT, f"{provider} request timed out", provider)
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return ProviderError(ErrorKind.TRANSIENT, f"{provider} connection error: {exc}", provider)

    status = _status_of(exc)
    message = str(exc) or exc.__class__.__name__
    return ProviderError(classify(status, message), message, provider, status)
