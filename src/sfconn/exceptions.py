from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional


class MissingCredentialsError(RuntimeError):
    """Raised when the required Salesforce env vars are not present."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__("Missing required environment variables: " + ", ".join(missing))


class MissingSessionError(RuntimeError):
    """Raised when no credential could be resolved for a host."""

    def __init__(self, host: Optional[str]):
        self.host = host
        super().__init__(f"No Salesforce session found for {host or '<no host>'}")


@dataclass(frozen=True)
class ErrorDetail:
    """One entry of a Salesforce REST error array."""

    code: Optional[str]
    message: str
    fields: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        suffix = f" [{', '.join(self.fields)}]" if self.fields else ""
        return f"{self.code}: {self.message}{suffix}"


class SalesforceApiError(RuntimeError):
    """Base class for failures surfaced by the transport."""

    kind = "ApiError"
    retryable = False

    def __init__(self, message: str, *, status: Optional[int] = None, raw: Any = None):
        self.message = message
        self.status = status
        self.raw = raw
        super().__init__(message)


class NetworkError(SalesforceApiError):
    """No response: offline, DNS failure, refused connection or timeout."""

    kind = "Network"
    retryable = True


class UnauthorizedError(SalesforceApiError):
    """HTTP 401 – the session must be resolved again before retrying."""

    kind = "Unauthorized"


class ForbiddenError(SalesforceApiError):
    """HTTP 403."""

    kind = "Forbidden"


class AbortedError(SalesforceApiError):
    """The caller aborted the exchange before it settled."""

    kind = "Aborted"


class ProtocolError(SalesforceApiError):
    """Any other failure, with per-field diagnostics when the body allows it."""

    kind = "ProtocolError"

    def __init__(
        self,
        message: str,
        *,
        errors: Optional[List[ErrorDetail]] = None,
        status: Optional[int] = None,
        raw: Any = None,
    ):
        self.errors = list(errors or [])
        super().__init__(message, status=status, raw=raw)


class XmlDecodeError(ProtocolError):
    """The XML tree contained a node the codec cannot represent."""
