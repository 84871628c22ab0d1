"""
Background reconciliation of domains stuck in transient states.
"""

import asyncio
import logging
from datetime import timedelta
from typing import List, Optional

from .errors import ErrorKind, OperationResult
from .manager import DomainManager
from .models import TRANSIENT_STATUSES, DomainRecord, DomainStatus

logger = logging.getLogger("domain_lifecycle.domains.reconciler")


class DomainReconciler:
    """
    Periodically re-checks pending, verifying and provisioning domains.

    The loop exits on its own after a pass that finds nothing to do and is
    restarted by ``wake()``. One tenant's failure never aborts a pass.
    """

    def __init__(
        self,
        manager: DomainManager,
        interval: float = 30.0,
        concurrency: int = 5,
        auto_provision: bool = True,
        verification_expiry_hours: int = 72,
    ):
        self.manager = manager
        self.interval = interval
        self.concurrency = max(1, concurrency)
        self.auto_provision = auto_provision
        self.verification_expiry = timedelta(hours=verification_expiry_hours)
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        # Set by wake(); a pass that started before it may have missed the record
        self._wake_requested = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _watched_statuses(self):
        if self.auto_provision:
            return TRANSIENT_STATUSES + (DomainStatus.VERIFIED,)
        return TRANSIENT_STATUSES

    async def _list_watched(self) -> List[DomainRecord]:
        return await self.manager.store.list_by_status(*self._watched_statuses())

    def start(self) -> None:
        """Start the loop if it is not already running."""
        if self.running or self._stopping:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(
            f"Domain reconciler started (interval {self.interval:g}s, "
            f"concurrency {self.concurrency})"
        )

    def wake(self) -> None:
        """Restart the loop after a tenant entered a transient state."""
        self._wake_requested = True
        try:
            self.start()
        except RuntimeError:
            # No running event loop, e.g. called from synchronous code
            logger.debug("Reconciler wake ignored outside an event loop")

    async def stop(self) -> None:
        """Cancel the loop and wait for claimed transitions to finish writing."""
        self._stopping = True
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.manager.wait_idle()
        self._stopping = False
        logger.info("Domain reconciler stopped")

    async def _run(self) -> None:
        while True:
            self._wake_requested = False
            try:
                pending = await self.run_once()
            except Exception:
                logger.exception("Domain reconciliation pass failed")
                pending = 1
            if pending == 0:
                if self._wake_requested:
                    continue
                logger.info("No domains in transient states, reconciler idle")
                return
            await asyncio.sleep(self.interval)

    async def run_once(self) -> int:
        """
        Reconcile every transient record once.

        Returns the number of records still in a watched state afterwards.
        """
        records = await self._list_watched()
        if not records:
            return 0

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(record: DomainRecord) -> Optional[OperationResult]:
            async with semaphore:
                return await self.reconcile(record)

        results = await asyncio.gather(
            *(_bounded(r) for r in records), return_exceptions=True
        )
        for record, result in zip(records, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(
                    f"Reconciling {record.hostname} for tenant {record.tenant_id} failed: {result!r}"
                )
            elif result is not None and not result.ok:
                level = logging.DEBUG if result.error == ErrorKind.CONFLICT else logging.INFO
                logger.log(
                    level,
                    f"Reconcile {record.hostname}: {result.error.value} {result.message}",
                )

        return len(await self._list_watched())

    async def reconcile(self, record: DomainRecord) -> Optional[OperationResult]:
        """Advance a single record by one step. Returns None if nothing was done."""
        tenant_id = record.tenant_id

        if record.status == DomainStatus.VERIFYING:
            if self.manager.claim_in_flight(record):
                return None
            if await self.manager.expire_verification(record, self.verification_expiry):
                return None
            return await self.manager.verify_domain(tenant_id)

        if record.status == DomainStatus.PENDING:
            if await self.manager.expire_verification(record, self.verification_expiry):
                return None
            # Look up TXT without a transition so propagation delays do not fail the domain
            lookup = await self.manager.verifier.verify_txt(
                record.hostname, record.verification_token
            )
            if not lookup.ok:
                logger.debug(f"{record.hostname} not verifiable yet: {lookup.message}")
                return None
            return await self.manager.verify_domain(tenant_id)

        if record.status == DomainStatus.VERIFIED:
            if self.auto_provision and not record.provider_hostname_id:
                return await self.manager.provision_ssl(tenant_id)
            return await self.manager.check_status(tenant_id)

        if record.status == DomainStatus.PROVISIONING_SSL:
            if record.provider_hostname_id:
                return await self.manager.check_status(tenant_id)
            if self.manager.claim_in_flight(record):
                return None
            return await self.manager.provision_ssl(tenant_id)

        return None
