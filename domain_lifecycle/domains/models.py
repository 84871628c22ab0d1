"""
Custom domain record for a tenant.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .errors import ErrorKind, InvalidRecordError


class DomainStatus(str, Enum):
    """Lifecycle states of a tenant's custom domain."""

    PENDING = "pending"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    PROVISIONING_SSL = "provisioning_ssl"
    ACTIVE = "active"
    FAILED = "failed"


# States the reconciler keeps polling until they settle
TRANSIENT_STATUSES = (
    DomainStatus.PENDING,
    DomainStatus.VERIFYING,
    DomainStatus.PROVISIONING_SSL,
)

VERIFIABLE_STATUSES = (
    DomainStatus.PENDING,
    DomainStatus.VERIFYING,
    DomainStatus.FAILED,
)

PROVISIONABLE_STATUSES = (
    DomainStatus.VERIFIED,
    DomainStatus.PROVISIONING_SSL,
)

CHECKABLE_STATUSES = (
    DomainStatus.VERIFIED,
    DomainStatus.PROVISIONING_SSL,
    DomainStatus.ACTIVE,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class DomainRecord:
    """Represents the custom domain configured for one tenant."""

    tenant_id: str
    hostname: str
    verification_token: str
    status: DomainStatus = DomainStatus.PENDING
    verified_at: Optional[datetime] = None
    ssl_state: Optional[str] = None
    provider_hostname_id: Optional[str] = None
    last_error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    last_checked_at: Optional[datetime] = None
    revision: int = 0

    @property
    def is_failed(self) -> bool:
        return self.status == DomainStatus.FAILED

    @property
    def was_verified(self) -> bool:
        """True once DNS ownership has been proven for this hostname."""
        return self.verified_at is not None

    def invariant_violation(self) -> Optional[str]:
        """Describe the first broken record invariant, or None."""
        if not self.hostname:
            return "hostname must be set when a record exists"
        if not self.verification_token:
            return "verification_token must be set"
        if self.status in (DomainStatus.PENDING, DomainStatus.VERIFYING):
            if self.ssl_state is not None or self.provider_hostname_id is not None:
                return f"provider state set while {self.status.value}"
            if self.verified_at is not None:
                return f"verified_at set while {self.status.value}"
        if self.status in (
            DomainStatus.VERIFIED,
            DomainStatus.PROVISIONING_SSL,
            DomainStatus.ACTIVE,
        ) and self.verified_at is None:
            return f"verified_at missing while {self.status.value}"
        if self.status == DomainStatus.FAILED:
            if not (self.last_error and self.error_kind):
                return "failed record without last_error"
        elif self.last_error is not None or self.error_kind is not None:
            return f"last_error set while {self.status.value}"
        return None

    def check_invariants(self) -> None:
        """Raise InvalidRecordError if the record is in an impossible shape."""
        problem = self.invariant_violation()
        if problem:
            raise InvalidRecordError(
                f"Domain record for tenant {self.tenant_id}: {problem}"
            )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "tenant_id": self.tenant_id,
            "hostname": self.hostname,
            "verification_token": self.verification_token,
            "status": self.status.value,
            "verified_at": _format_dt(self.verified_at),
            "ssl_state": self.ssl_state,
            "provider_hostname_id": self.provider_hostname_id,
            "last_error": self.last_error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "created_at": _format_dt(self.created_at),
            "updated_at": _format_dt(self.updated_at),
            "last_checked_at": _format_dt(self.last_checked_at),
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DomainRecord":
        """Create from dictionary."""
        return cls(
            tenant_id=data["tenant_id"],
            hostname=data["hostname"],
            verification_token=data.get("verification_token", ""),
            status=DomainStatus(data.get("status", DomainStatus.PENDING.value)),
            verified_at=_parse_dt(data.get("verified_at")),
            ssl_state=data.get("ssl_state"),
            provider_hostname_id=data.get("provider_hostname_id"),
            last_error=data.get("last_error"),
            error_kind=ErrorKind(data["error_kind"]) if data.get("error_kind") else None,
            created_at=_parse_dt(data.get("created_at")) or _utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or _utcnow(),
            last_checked_at=_parse_dt(data.get("last_checked_at")),
            revision=data.get("revision", 0),
        )

    def to_api_response(self) -> dict:
        """Convert to API response, hiding the token once it is no longer needed."""
        resp = {
            "tenant_id": self.tenant_id,
            "hostname": self.hostname,
            "status": self.status.value,
            "verified_at": _format_dt(self.verified_at),
            "ssl_state": self.ssl_state,
            "last_error": self.last_error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "created_at": _format_dt(self.created_at),
            "updated_at": _format_dt(self.updated_at),
            "last_checked_at": _format_dt(self.last_checked_at),
        }
        if not self.was_verified:
            resp["verification_token"] = self.verification_token
        return resp
