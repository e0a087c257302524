"""Error taxonomy for the adapter and conversation engine.

ValidationError and BudgetExhausted are fatal for the call that raised them.
BackendError is classified into BudgetError when the backend rejected the
request for exceeding its context window; only that class is retried.
DecodeError is recovered locally by the streaming decoder.
"""

from __future__ import annotations

import re

# A 400 with limit vocabulary, or an explicit marker at any status
_BUDGET_LIMIT = re.compile(
    r"\b(limits?|maximum|exceed(s|ed|ing)?|too[ _-](long|large|many))\b", re.IGNORECASE
)
_BUDGET_MARKERS = ("context_length_exceeded", "context length exceeded")

_TIMEOUT_PATTERNS = (
    "connect timeout",
    "request timeout",
    "socket timeout",
    "network timeout",
    "connection timeout",
    "timeout error",
    "timed out",
    "timeout expired",
)

_ADDRESS_PATTERNS = [
    re.compile(r"https?://[^\s'\"]+", re.IGNORECASE),
    re.compile(
        r"(?:connect(?:ing)? (?:to )?|request to |failed to reach |host:\s*|address:\s*)"
        r"(\d{1,3}(?:\.\d{1,3}){3}(?::\d+)?)",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:connect(?:ing)? (?:to )?|request to |failed to reach |host:\s*|address:\s*)"
        r"([a-zA-Z0-9.-]+\.[a-zA-Z]{2,}(?::\d+)?)",
        re.IGNORECASE,
    ),
]


class ChatBridgeError(Exception):
    """Base class for every error raised by chatbridge."""


class ValidationError(ChatBridgeError, ValueError):
    """Bad caller input (role, fraction argument). Never retried."""


class RoleError(ValidationError):
    """A turn carried a role other than ``user`` or ``model``."""


class TransportError(ChatBridgeError):
    """Network-level failure before a response status was available."""


class BackendError(ChatBridgeError):
    """Non-2xx HTTP status from the backend."""

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Backend API error ({status_code}): {body[:500]}")


class BudgetError(BackendError):
    """Backend rejected the request for exceeding its context/token limit."""


class DecodeError(ChatBridgeError):
    """A streamed chunk could not be decoded."""


class CompressionError(ChatBridgeError):
    """Summarization call failed during history compression."""


class BudgetExhausted(ChatBridgeError):
    """Nothing fits after reserving output and tool tokens."""


def _mentions_budget(text: str) -> bool:
    lowered = text.lower()
    if any(marker in lowered for marker in _BUDGET_MARKERS):
        return True
    return bool(_BUDGET_LIMIT.search(text))


def classify_backend_error(status_code: int, body: str) -> BackendError:
    """Wrap a non-2xx response, promoting context-limit rejections to BudgetError."""
    if status_code == 400 and _mentions_budget(body):
        return BudgetError(status_code, body)
    if any(marker in body.lower() for marker in _BUDGET_MARKERS):
        return BudgetError(status_code, body)
    return BackendError(status_code, body)


def is_budget_error(error: BaseException) -> bool:
    """True for errors that a harsher token budget could fix."""
    if isinstance(error, BudgetError):
        return True
    if isinstance(error, BackendError):
        return False
    return any(marker in str(error).lower() for marker in _BUDGET_MARKERS)


def is_timeout_error(error: BaseException) -> bool:
    """Timeout-shaped transport failure, used only for logging."""
    # Imported lazily so this module stays importable without the HTTP stack
    import httpx

    if isinstance(error, httpx.TimeoutException):
        return True
    cause = error.__cause__
    if isinstance(cause, httpx.TimeoutException):
        return True
    text = f"{type(error).__name__} {error}".lower()
    return any(pattern in text for pattern in _TIMEOUT_PATTERNS)


def extract_target_address(error: BaseException) -> str | None:
    """Best-effort URL/host the failing request was aimed at."""
    for candidate in (error, error.__cause__):
        if candidate is None:
            continue
        try:
            request = getattr(candidate, "request", None)
        except RuntimeError:
            # httpx raises when .request was never set on the exception
            request = None
        if request is not None:
            return str(request.url)
    text = str(error)
    for pattern in _ADDRESS_PATTERNS:
        match = pattern.search(text)
        if match:
            return (match.group(1) if match.groups() else match.group(0)).strip()
    return None
