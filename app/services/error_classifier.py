"""Map raw connection failures to actionable error descriptions.

Rules are evaluated top to bottom and the first match wins.  Order matters:
a gateway close reason such as ``"403 Forbidden (gateway)"`` satisfies both
the permission and the gateway predicates and must classify as permission.
"""

from __future__ import annotations

import errno
import socket
from collections.abc import Callable
from typing import NamedTuple

from app.schemas.bot import ClassifiedError, ErrorKind

NETWORK_ERROR_CODES = frozenset({"ENOTFOUND", "ECONNREFUSED", "ETIMEDOUT"})

_ERRNO_CODES = {
    errno.ECONNREFUSED: "ECONNREFUSED",
    errno.ETIMEDOUT: "ETIMEDOUT",
}


class _Rule(NamedTuple):
    matches: Callable[[str, str | None], bool]
    kind: ErrorKind
    message: str | None  # None = use the raw error text
    suggestion: str


def _contains(*needles: str) -> Callable[[str, str | None], bool]:
    return lambda text, _code: any(n in text for n in needles)


_RULES: tuple[_Rule, ...] = (
    _Rule(
        _contains("401", "Unauthorized"),
        ErrorKind.AUTHENTICATION,
        "Invalid or expired Discord token",
        "Please verify your token is correct and hasn't expired",
    ),
    _Rule(
        _contains("429", "rate limit"),
        ErrorKind.RATE_LIMIT,
        "Rate limited by Discord",
        "Too many connection attempts. Please wait before retrying",
    ),
    _Rule(
        lambda _text, code: code in NETWORK_ERROR_CODES,
        ErrorKind.NETWORK,
        "Network connection failed",
        "Check your internet connection and firewall settings",
    ),
    _Rule(
        _contains("403", "Forbidden"),
        ErrorKind.PERMISSION,
        "Account suspended or restricted",
        "Your Discord account may be suspended or require verification",
    ),
    _Rule(
        _contains("gateway", "websocket"),
        ErrorKind.GATEWAY,
        "Discord gateway connection failed",
        "Discord servers may be experiencing issues",
    ),
)

_FALLBACK_SUGGESTION = "Check console logs for more details"


def error_text(error: BaseException | str) -> str:
    """Human-readable text of an error, never empty."""
    if isinstance(error, str):
        return error
    return str(error) or error.__class__.__name__


def error_code(error: BaseException | str) -> str | None:
    """Best-effort low-level error code (``ENOTFOUND``, ``ECONNREFUSED``, ...)."""
    if isinstance(error, str):
        return None
    code = getattr(error, "code", None)
    if isinstance(code, str):
        return code
    if isinstance(error, socket.gaierror):
        return "ENOTFOUND"
    if isinstance(error, TimeoutError):
        return "ETIMEDOUT"
    if isinstance(error, ConnectionRefusedError):
        return "ECONNREFUSED"
    if isinstance(error, OSError) and error.errno in _ERRNO_CODES:
        return _ERRNO_CODES[error.errno]
    return None


def classify(error: BaseException | str) -> ClassifiedError:
    """Classify a failure. Total: any input yields a result."""
    text = error_text(error)
    code = error_code(error)
    for rule in _RULES:
        if rule.matches(text, code):
            return ClassifiedError(
                kind=rule.kind,
                message=rule.message if rule.message is not None else text,
                suggestion=rule.suggestion,
            )
    return ClassifiedError(kind=ErrorKind.UNKNOWN, message=text, suggestion=_FALLBACK_SUGGESTION)
