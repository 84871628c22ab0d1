"""
Error taxonomy and operation results for the domain lifecycle.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import DomainRecord


class ErrorKind(str, Enum):
    """Failure categories surfaced to callers and stored in last_error."""

    INVALID_DOMAIN = "InvalidDomain"
    INVALID_STATE = "InvalidState"
    CONFLICT = "Conflict"
    DNS_NOT_FOUND = "DNSNotFound"
    DNS_MISMATCH = "DNSMismatch"
    DNS_TIMEOUT = "DNSTimeout"
    PROVIDER_ERROR = "ProviderError"
    NOT_CONFIGURED = "NotConfigured"


DEFAULT_MESSAGES = {
    ErrorKind.INVALID_DOMAIN: "Invalid domain format",
    ErrorKind.INVALID_STATE: "This action is not available for the domain's current status",
    ErrorKind.CONFLICT: "Another change to this domain is in progress, please try again shortly",
    ErrorKind.DNS_NOT_FOUND: (
        "DNS TXT record not found. Please allow up to 10 minutes for propagation."
    ),
    ErrorKind.DNS_MISMATCH: (
        "A DNS TXT record was found but its value does not match the verification token"
    ),
    ErrorKind.DNS_TIMEOUT: "DNS lookup timed out, please try again later",
    ErrorKind.PROVIDER_ERROR: "The hosting provider could not complete the request",
    ErrorKind.NOT_CONFIGURED: "No custom domain is configured",
}

REJECTIONS = frozenset({
    ErrorKind.INVALID_DOMAIN,
    ErrorKind.INVALID_STATE,
    ErrorKind.CONFLICT,
    ErrorKind.NOT_CONFIGURED,
})


class InvalidRecordError(ValueError):
    """Raised when a domain record would be stored in an impossible shape."""


class DomainError(Exception):
    """Raised by adapters and validation helpers with a specific ErrorKind."""

    def __init__(self, kind: ErrorKind, message: Optional[str] = None):
        self.kind = kind
        self.message = message or DEFAULT_MESSAGES[kind]
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"DomainError({self.kind.value}, {self.message!r})"


@dataclass
class OperationResult:
    """
    Outcome of a lifecycle operation.

    Rejections (InvalidDomain, InvalidState, NotConfigured, Conflict) carry
    no state change. Verification and provider failures carry the record
    as persisted in ``failed`` alongside the error kind.
    """

    record: Optional["DomainRecord"] = None
    error: Optional[ErrorKind] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(
        cls, record: Optional["DomainRecord"], message: str = ""
    ) -> "OperationResult":
        return cls(record=record, message=message)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: Optional[str] = None,
        record: Optional["DomainRecord"] = None,
    ) -> "OperationResult":
        return cls(record=record, error=kind, message=message or DEFAULT_MESSAGES[kind])

    @classmethod
    def from_error(
        cls, exc: DomainError, record: Optional["DomainRecord"] = None
    ) -> "OperationResult":
        return cls(record=record, error=exc.kind, message=exc.message)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "error": self.error.value if self.error else None,
            "message": self.message,
            "domain": self.record.to_api_response() if self.record else None,
        }
