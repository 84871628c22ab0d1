"""
Custom domain lifecycle: set, verify, provision SSL, poll, remove.

Every status transition goes through the store's compare-and-swap, so at
most one transition per tenant is in flight. The claim (CAS into the
working status) happens right before the external call and the result is
written right after it, guarded by the revision the claim produced.
"""

import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Iterable, Optional, Set, TypeVar

from .errors import DomainError, ErrorKind, OperationResult
from .models import (
    CHECKABLE_STATUSES,
    PROVISIONABLE_STATUSES,
    VERIFIABLE_STATUSES,
    DomainRecord,
    DomainStatus,
)
from .provider import ProviderHostname
from .store import DomainRecordStore
from .tokens import DEFAULT_TOKEN_PREFIX, generate_verification_token
from .verification import DomainVerifier

logger = logging.getLogger("domain_lifecycle.domains.manager")

T = TypeVar("T")

MAX_HOSTNAME_LENGTH = 253

_LABEL = r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?"
_HOSTNAME_RE = re.compile(rf"^(?:{_LABEL}\.)+[a-z]{{2,63}}$")

DEFAULT_RESERVED_DOMAINS = (
    "netlify.app",
    "netlify.com",
    "vercel.app",
    "herokuapp.com",
    "cloudflare.com",
    "supabase.co",
    "supabase.com",
)


def normalize_hostname(hostname: str) -> str:
    """
    Validate and normalize a tenant-supplied hostname.

    Raises DomainError(InvalidDomain) when it is not a plain FQDN.
    """
    if not isinstance(hostname, str):
        raise DomainError(ErrorKind.INVALID_DOMAIN, "Domain must be a string")

    hostname = hostname.strip().lower()
    if hostname.endswith("."):
        hostname = hostname[:-1]

    if not hostname:
        raise DomainError(ErrorKind.INVALID_DOMAIN, "Domain cannot be empty")
    if len(hostname) > MAX_HOSTNAME_LENGTH:
        raise DomainError(
            ErrorKind.INVALID_DOMAIN,
            f"Domain is longer than {MAX_HOSTNAME_LENGTH} characters",
        )
    if not _HOSTNAME_RE.match(hostname):
        raise DomainError(ErrorKind.INVALID_DOMAIN, f"Invalid domain format: {hostname}")
    return hostname


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DomainManager:
    """Drives a tenant's custom domain through its lifecycle."""

    def __init__(
        self,
        store: DomainRecordStore,
        verifier: DomainVerifier,
        provider,
        token_prefix: str = DEFAULT_TOKEN_PREFIX,
        reserved_domains: Iterable[str] = DEFAULT_RESERVED_DOMAINS,
        claim_timeout: float = 60.0,
    ):
        self.store = store
        self.verifier = verifier
        self.provider = provider
        self.token_prefix = token_prefix
        self.reserved_domains = tuple(d.lower().rstrip(".") for d in reserved_domains)
        # A working status younger than this belongs to a call still in flight
        self.claim_timeout = timedelta(seconds=claim_timeout)
        # Called whenever a tenant enters a state the reconciler should poll
        self.on_transient: Optional[Callable[[], None]] = None
        # Post-claim work that outlives a cancelled caller
        self._in_flight: Set[asyncio.Task] = set()

    def _wake(self) -> None:
        if self.on_transient is not None:
            self.on_transient()

    async def _shielded(self, work: Awaitable[T]) -> T:
        """
        Run the external call and result write of a claimed transition.

        Cancelling the caller does not interrupt the work, so a record never
        keeps a claim whose outcome was lost. ``wait_idle`` waits for it.
        """
        task = asyncio.ensure_future(work)
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return await asyncio.shield(task)

    async def wait_idle(self) -> None:
        """Wait until no claimed transition is still running."""
        while self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    def claim_in_flight(self, record: DomainRecord) -> bool:
        """True while another call is working on this record."""
        working = record.status == DomainStatus.VERIFYING or (
            record.status == DomainStatus.PROVISIONING_SSL and not record.provider_hostname_id
        )
        return working and _now() - record.updated_at < self.claim_timeout

    def is_reserved(self, hostname: str) -> bool:
        return any(
            hostname == reserved or hostname.endswith(f".{reserved}")
            for reserved in self.reserved_domains
        )

    async def _release(self, record: DomainRecord) -> None:
        """Best-effort release of the provider hostname; failures are logged."""
        if not record.provider_hostname_id:
            return
        try:
            await self.provider.remove_hostname(record.provider_hostname_id)
        except Exception as e:
            logger.warning(
                f"Could not release provider hostname {record.provider_hostname_id} "
                f"for {record.hostname}: {e}"
            )

    async def get_domain(self, tenant_id: str) -> OperationResult:
        record = await self.store.get(tenant_id)
        if not record:
            return OperationResult.failure(ErrorKind.NOT_CONFIGURED)
        return OperationResult.success(record)

    async def get_dns_records(self, tenant_id: str) -> Optional[dict]:
        """DNS records the tenant has to publish, or None without a domain."""
        record = await self.store.get(tenant_id)
        if not record:
            return None
        return self.verifier.dns_records(record.hostname, record.verification_token)

    async def list_events(self, tenant_id: str, limit: int = 20) -> list:
        return await self.store.list_events(tenant_id, limit)

    async def set_domain(self, tenant_id: str, hostname: str) -> OperationResult:
        """Configure ``hostname`` for the tenant, replacing any previous domain."""
        try:
            hostname = normalize_hostname(hostname)
        except DomainError as e:
            return OperationResult.from_error(e)

        if self.is_reserved(hostname):
            return OperationResult.failure(
                ErrorKind.INVALID_DOMAIN,
                "This domain is reserved and cannot be used",
            )

        owner = await self.store.find_tenant_by_hostname(hostname)
        if owner and owner != tenant_id:
            return OperationResult.failure(
                ErrorKind.CONFLICT,
                "This domain is already assigned to another brand",
            )

        record = DomainRecord(
            tenant_id=tenant_id,
            hostname=hostname,
            verification_token=generate_verification_token(self.token_prefix),
        )
        return await self._shielded(self._replace_domain(record))

    async def _replace_domain(self, record: DomainRecord) -> OperationResult:
        tenant_id = record.tenant_id
        previous = await self.store.get(tenant_id)
        await self.store.put(record)

        # The old provider hostname is released even when the name is unchanged
        if previous:
            await self._release(previous)
        await self.store.record_event(
            tenant_id,
            "domain_set",
            {
                "hostname": record.hostname,
                "previous_hostname": previous.hostname if previous else None,
            },
        )
        logger.info(f"Domain {record.hostname} set for tenant {tenant_id}")
        self._wake()
        return OperationResult.success(
            record, "Domain saved. Add the DNS records below, then verify."
        )

    async def verify_domain(self, tenant_id: str) -> OperationResult:
        """Check the TXT ownership record and move to verified or failed."""
        record = await self.store.get(tenant_id)
        if not record:
            return OperationResult.failure(ErrorKind.NOT_CONFIGURED)
        if record.status not in VERIFIABLE_STATUSES:
            return OperationResult.failure(
                ErrorKind.INVALID_STATE,
                f"Cannot verify a domain that is {record.status.value}",
                record=record,
            )
        if self.claim_in_flight(record):
            return OperationResult.failure(ErrorKind.CONFLICT, record=record)

        # Re-verification starts over: any certificate from an earlier attempt is dropped
        claimed = await self.store.compare_and_swap_status(
            tenant_id,
            record.status,
            DomainStatus.VERIFYING,
            revision=record.revision,
            verified_at=None,
            ssl_state=None,
            provider_hostname_id=None,
            last_error=None,
            error_kind=None,
        )
        if not claimed:
            return OperationResult.failure(ErrorKind.CONFLICT)
        return await self._shielded(self._finish_verification(record, claimed))

    async def _finish_verification(
        self, previous: DomainRecord, claimed: DomainRecord
    ) -> OperationResult:
        tenant_id = claimed.tenant_id
        await self._release(previous)
        await self.store.record_event(
            tenant_id, "verification_started", {"hostname": claimed.hostname}
        )

        try:
            result = await self.verifier.verify_txt(
                claimed.hostname, claimed.verification_token
            )
            ok, kind, message = result.ok, result.error_kind, result.message
        except Exception as e:
            logger.exception(f"Unexpected error verifying {claimed.hostname}")
            ok, kind, message = False, ErrorKind.PROVIDER_ERROR, f"DNS verification failed: {e}"

        now = _now()
        if ok:
            updated = await self.store.compare_and_swap_status(
                tenant_id,
                DomainStatus.VERIFYING,
                DomainStatus.VERIFIED,
                revision=claimed.revision,
                verified_at=now,
                last_checked_at=now,
            )
        else:
            updated = await self.store.compare_and_swap_status(
                tenant_id,
                DomainStatus.VERIFYING,
                DomainStatus.FAILED,
                revision=claimed.revision,
                last_error=message,
                error_kind=kind,
                last_checked_at=now,
            )

        if not updated:
            logger.info(f"Verification result for {claimed.hostname} discarded, domain changed")
            return OperationResult.failure(
                ErrorKind.CONFLICT, "The domain changed while verification was running"
            )

        if ok:
            await self.store.record_event(
                tenant_id, "dns_verified", {"hostname": updated.hostname}
            )
            logger.info(f"Domain {updated.hostname} verified for tenant {tenant_id}")
            self._wake()
            return OperationResult.success(updated, "Domain ownership verified successfully")

        await self.store.record_event(
            tenant_id,
            "verification_failed",
            {"hostname": updated.hostname, "error": kind.value, "message": message},
        )
        return OperationResult.failure(kind, message, record=updated)

    async def provision_ssl(self, tenant_id: str) -> OperationResult:
        """
        Register the hostname with the hosting provider.

        Only starts certificate issuance; ``check_status`` observes the result.
        A record already holding a provider handle is not registered twice.
        """
        record = await self.store.get(tenant_id)
        if not record:
            return OperationResult.failure(ErrorKind.NOT_CONFIGURED)

        if record.status == DomainStatus.PROVISIONING_SSL and record.provider_hostname_id:
            self._wake()
            return OperationResult.success(record, "SSL provisioning already in progress")

        retrying = record.status == DomainStatus.FAILED and record.was_verified
        if record.status not in PROVISIONABLE_STATUSES and not retrying:
            return OperationResult.failure(
                ErrorKind.INVALID_STATE,
                "Domain must be verified before SSL provisioning",
                record=record,
            )
        if self.claim_in_flight(record):
            return OperationResult.failure(ErrorKind.CONFLICT, record=record)

        # No handle while the claim is held, so pollers leave the record alone
        claimed = await self.store.compare_and_swap_status(
            tenant_id,
            record.status,
            DomainStatus.PROVISIONING_SSL,
            revision=record.revision,
            provider_hostname_id=None,
            ssl_state=None,
            last_error=None,
            error_kind=None,
        )
        if not claimed:
            return OperationResult.failure(ErrorKind.CONFLICT)
        return await self._shielded(self._finish_provisioning(record, claimed))

    async def _finish_provisioning(
        self, previous: DomainRecord, claimed: DomainRecord
    ) -> OperationResult:
        tenant_id = claimed.tenant_id
        # A failed certificate is retried from scratch
        await self._release(previous)
        await self.store.record_event(
            tenant_id, "ssl_provisioning_started", {"hostname": claimed.hostname}
        )

        try:
            added: ProviderHostname = await self.provider.add_hostname(claimed.hostname)
        except Exception as e:
            if isinstance(e, DomainError):
                message = e.message
            else:
                logger.exception(f"Unexpected provider error for {claimed.hostname}")
                message = f"SSL provisioning error: {e}"
            failed = await self.store.compare_and_swap_status(
                tenant_id,
                DomainStatus.PROVISIONING_SSL,
                DomainStatus.FAILED,
                revision=claimed.revision,
                last_error=message,
                error_kind=ErrorKind.PROVIDER_ERROR,
                last_checked_at=_now(),
            )
            if not failed:
                return OperationResult.failure(ErrorKind.CONFLICT)
            await self.store.record_event(
                tenant_id, "ssl_failed", {"hostname": claimed.hostname, "message": message}
            )
            logger.error(f"SSL provisioning failed for {claimed.hostname}: {message}")
            return OperationResult.failure(ErrorKind.PROVIDER_ERROR, message, record=failed)

        updated = await self.store.compare_and_swap_status(
            tenant_id,
            DomainStatus.PROVISIONING_SSL,
            DomainStatus.PROVISIONING_SSL,
            revision=claimed.revision,
            provider_hostname_id=added.provider_id,
            ssl_state=added.ssl_state,
            last_checked_at=_now(),
        )
        if not updated:
            # Domain was replaced or removed meanwhile; don't leak the hostname
            await self._release(
                DomainRecord(
                    tenant_id=tenant_id,
                    hostname=claimed.hostname,
                    verification_token=claimed.verification_token,
                    provider_hostname_id=added.provider_id,
                )
            )
            return OperationResult.failure(
                ErrorKind.CONFLICT, "The domain changed while SSL provisioning was starting"
            )

        logger.info(
            f"SSL provisioning started for {updated.hostname} "
            f"(provider id {added.provider_id}, state {added.ssl_state})"
        )
        self._wake()
        return OperationResult.success(
            updated, "SSL provisioning started. This can take a few minutes."
        )

    async def check_status(self, tenant_id: str) -> OperationResult:
        """Poll the provider and advance to active or failed when it settles."""
        record = await self.store.get(tenant_id)
        if not record:
            return OperationResult.failure(ErrorKind.NOT_CONFIGURED)
        if record.status not in CHECKABLE_STATUSES:
            return OperationResult.failure(
                ErrorKind.INVALID_STATE,
                f"Cannot check SSL status of a domain that is {record.status.value}",
                record=record,
            )
        if not record.provider_hostname_id:
            return OperationResult.success(record, "SSL provisioning has not started yet")

        try:
            status = await self.provider.get_hostname_status(record.provider_hostname_id)
        except Exception as e:
            message = e.message if isinstance(e, DomainError) else f"SSL status check failed: {e}"
            if record.status == DomainStatus.ACTIVE:
                logger.warning(f"Status check for active domain {record.hostname} failed: {message}")
                return OperationResult.failure(ErrorKind.PROVIDER_ERROR, message, record=record)
            failed = await self.store.compare_and_swap_status(
                tenant_id,
                record.status,
                DomainStatus.FAILED,
                revision=record.revision,
                last_error=message,
                error_kind=ErrorKind.PROVIDER_ERROR,
                last_checked_at=_now(),
            )
            if not failed:
                return OperationResult.failure(ErrorKind.CONFLICT)
            await self.store.record_event(
                tenant_id, "ssl_failed", {"hostname": record.hostname, "message": message}
            )
            return OperationResult.failure(ErrorKind.PROVIDER_ERROR, message, record=failed)

        if status.issued:
            if record.status == DomainStatus.ACTIVE and record.ssl_state == status.ssl_state:
                return OperationResult.success(record, "Domain is active")
            updated = await self.store.compare_and_swap_status(
                tenant_id,
                record.status,
                DomainStatus.ACTIVE,
                revision=record.revision,
                ssl_state=status.ssl_state,
                last_error=None,
                error_kind=None,
                last_checked_at=_now(),
            )
            if not updated:
                return OperationResult.failure(ErrorKind.CONFLICT)
            if record.status != DomainStatus.ACTIVE:
                await self.store.record_event(
                    tenant_id, "ssl_issued", {"hostname": record.hostname}
                )
                logger.info(f"Domain {record.hostname} is now active")
            return OperationResult.success(updated, "Domain is active")

        if status.terminal_failure:
            reason = status.reason or f"Certificate issuance {status.ssl_state}"
            updated = await self.store.compare_and_swap_status(
                tenant_id,
                record.status,
                DomainStatus.FAILED,
                revision=record.revision,
                ssl_state=status.ssl_state,
                last_error=reason,
                error_kind=ErrorKind.PROVIDER_ERROR,
                last_checked_at=_now(),
            )
            if not updated:
                return OperationResult.failure(ErrorKind.CONFLICT)
            await self.store.record_event(
                tenant_id, "ssl_failed", {"hostname": record.hostname, "message": reason}
            )
            logger.error(f"SSL issuance failed for {record.hostname}: {reason}")
            return OperationResult.failure(ErrorKind.PROVIDER_ERROR, reason, record=updated)

        if status.ssl_state == record.ssl_state:
            return OperationResult.success(record, f"SSL certificate {status.ssl_state}")

        updated = await self.store.compare_and_swap_status(
            tenant_id,
            record.status,
            record.status,
            revision=record.revision,
            ssl_state=status.ssl_state,
        )
        if not updated:
            return OperationResult.failure(ErrorKind.CONFLICT)
        return OperationResult.success(updated, f"SSL certificate {status.ssl_state}")

    async def remove_domain(self, tenant_id: str) -> OperationResult:
        """Clear the record, then release the provider hostname (best effort)."""
        record = await self.store.get(tenant_id)
        if not record:
            return OperationResult.failure(ErrorKind.NOT_CONFIGURED)
        return await self._shielded(self._remove(record))

    async def _remove(self, record: DomainRecord) -> OperationResult:
        tenant_id = record.tenant_id
        if not await self.store.delete(tenant_id, revision=record.revision):
            return OperationResult.failure(
                ErrorKind.CONFLICT, "The domain changed while it was being removed"
            )

        await self._release(record)
        await self.store.record_event(
            tenant_id, "domain_removed", {"hostname": record.hostname}
        )
        logger.info(f"Domain {record.hostname} removed for tenant {tenant_id}")
        return OperationResult.success(None, f"Domain {record.hostname} removed")

    async def expire_verification(
        self, record: DomainRecord, expiry: timedelta
    ) -> Optional[DomainRecord]:
        """
        Fail a pending record whose verification window has passed.

        Returns the failed record, or None if it is not expired or changed.
        """
        if record.status not in (DomainStatus.PENDING, DomainStatus.VERIFYING):
            return None
        if _now() - record.created_at < expiry:
            return None

        hours = int(expiry.total_seconds() // 3600)
        message = (
            f"Verification window of {hours} hours expired without a matching "
            "TXT record. Verify again once the record is published."
        )
        failed = await self.store.compare_and_swap_status(
            record.tenant_id,
            record.status,
            DomainStatus.FAILED,
            revision=record.revision,
            last_error=message,
            error_kind=ErrorKind.DNS_NOT_FOUND,
            last_checked_at=_now(),
        )
        if failed:
            await self.store.record_event(
                record.tenant_id, "verification_expired", {"hostname": record.hostname}
            )
            logger.info(f"Verification expired for {record.hostname}")
        return failed
