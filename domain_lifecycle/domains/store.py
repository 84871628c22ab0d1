"""
Persistent store for tenant domain records.
"""

import asyncio
import itertools
import json
import logging
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from .models import DomainRecord, DomainStatus

logger = logging.getLogger("domain_lifecycle.domains.store")


class _CacheEntry:
    """TTL cache entry for hostname lookups."""

    __slots__ = ("value", "expires_at")

    def __init__(self, value: Optional[DomainRecord], ttl: float):
        self.value = value
        self.expires_at = time.monotonic() + ttl


class DomainRecordStore:
    """
    Store for tenant -> domain record, with compare-and-swap on status.

    Uses Redis for persistence with in-memory fallback, mirroring the
    layout of one JSON document per tenant plus secondary indexes:

    - ``{prefix}tenant:{tenant_id}``   record JSON
    - ``{prefix}status:{status}``      set of tenant ids in that status
    - ``{prefix}hostname:{hostname}``  owning tenant id
    - ``{prefix}events:{tenant_id}``   capped list of audit events
    - ``{prefix}revision``             global write counter

    Every write stamps the record with a fresh value of the global counter,
    so a revision observed by one caller can never reappear after the
    record was replaced or removed.
    """

    POSITIVE_TTL = 60.0   # seconds to cache an active hostname
    NEGATIVE_TTL = 10.0   # seconds to cache a miss

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "domain_lifecycle:",
        max_events_per_tenant: int = 50,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.max_events_per_tenant = max_events_per_tenant
        self._redis: Optional[redis.Redis] = None
        self._use_redis = bool(redis_url)
        # In-memory fallback
        self._lock = asyncio.Lock()
        self._memory_store: Dict[str, dict] = {}
        self._hostname_index: Dict[str, str] = {}
        self._events: Dict[str, List[dict]] = {}
        self._revisions = itertools.count(1)
        # In-process lookup cache
        self._cache: Dict[str, _CacheEntry] = {}

    async def _get_redis(self) -> Optional[redis.Redis]:
        """Get Redis connection."""
        if not self._use_redis:
            return None

        if self._redis is None:
            try:
                self._redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
                await self._redis.ping()
                logger.info("Domain store connected to Redis")
            except Exception as e:
                logger.warning(
                    f"Redis unavailable for domain store, using in-memory: {e}"
                )
                self._redis = None
                self._use_redis = False
                return None

        return self._redis

    def _tenant_key(self, tenant_id: str) -> str:
        return f"{self.key_prefix}tenant:{tenant_id}"

    def _status_key(self, status: DomainStatus) -> str:
        return f"{self.key_prefix}status:{status.value}"

    def _hostname_key(self, hostname: str) -> str:
        return f"{self.key_prefix}hostname:{hostname}"

    def _events_key(self, tenant_id: str) -> str:
        return f"{self.key_prefix}events:{tenant_id}"

    def _revision_key(self) -> str:
        return f"{self.key_prefix}revision"

    def _invalidate_cache(self, hostname: Optional[str]) -> None:
        if hostname:
            self._cache.pop(hostname, None)

    async def get(self, tenant_id: str) -> Optional[DomainRecord]:
        """Get the domain record for a tenant."""
        r = await self._get_redis()

        if r:
            data = await r.get(self._tenant_key(tenant_id))
            if not data:
                return None
            info = json.loads(data)
        else:
            info = self._memory_store.get(tenant_id)
            if not info:
                return None

        return DomainRecord.from_dict(info)

    async def put(self, record: DomainRecord) -> DomainRecord:
        """Write a record unconditionally, replacing whatever the tenant had."""
        record.hostname = record.hostname.lower()
        record.updated_at = datetime.now(timezone.utc)
        record.check_invariants()

        r = await self._get_redis()
        if r:
            key = self._tenant_key(record.tenant_id)
            old: Optional[DomainRecord] = None
            while True:
                record.revision = await r.incr(self._revision_key())
                async with r.pipeline(transaction=True) as pipe:
                    try:
                        await pipe.watch(key)
                        old_data = await pipe.get(key)
                        old = DomainRecord.from_dict(json.loads(old_data)) if old_data else None
                        old_owner = None
                        if old and old.hostname != record.hostname:
                            await pipe.watch(self._hostname_key(old.hostname))
                            old_owner = await pipe.get(self._hostname_key(old.hostname))
                        pipe.multi()
                        if old:
                            pipe.srem(self._status_key(old.status), record.tenant_id)
                        if old_owner == record.tenant_id:
                            pipe.delete(self._hostname_key(old.hostname))
                        pipe.set(key, json.dumps(record.to_dict()))
                        pipe.sadd(self._status_key(record.status), record.tenant_id)
                        pipe.set(self._hostname_key(record.hostname), record.tenant_id)
                        await pipe.execute()
                        break
                    except WatchError:
                        logger.debug(f"Concurrent write for tenant {record.tenant_id}, retrying put")
        else:
            async with self._lock:
                old_data = self._memory_store.get(record.tenant_id)
                old = DomainRecord.from_dict(old_data) if old_data else None
                if old and old.hostname != record.hostname and (
                    self._hostname_index.get(old.hostname) == record.tenant_id
                ):
                    self._hostname_index.pop(old.hostname, None)
                record.revision = next(self._revisions)
                self._memory_store[record.tenant_id] = record.to_dict()
                self._hostname_index[record.hostname] = record.tenant_id

        if old:
            self._invalidate_cache(old.hostname)
        self._invalidate_cache(record.hostname)
        logger.debug(
            f"Stored domain {record.hostname} for tenant {record.tenant_id} "
            f"({record.status.value}, rev {record.revision})"
        )
        return record

    async def compare_and_swap_status(
        self,
        tenant_id: str,
        expected: DomainStatus,
        next_status: DomainStatus,
        revision: Optional[int] = None,
        **changes,
    ) -> Optional[DomainRecord]:
        """
        Atomically move a record from ``expected`` to ``next_status``.

        Succeeds only if the stored record is in ``expected`` and, when
        ``revision`` is given, has not been written since that revision.
        ``changes`` are applied to the record in the same write. Returns the
        updated record, or None when another writer got there first.
        Raises InvalidRecordError when the result would break a record invariant.
        """
        r = await self._get_redis()
        if r:
            key = self._tenant_key(tenant_id)
            new_revision = await r.incr(self._revision_key())
            async with r.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    data = await pipe.get(key)
                    if not data:
                        return None
                    record = DomainRecord.from_dict(json.loads(data))
                    if not self._matches(record, expected, revision):
                        return None
                    self._apply(record, next_status, new_revision, changes)
                    pipe.multi()
                    pipe.set(key, json.dumps(record.to_dict()))
                    if expected != next_status:
                        pipe.srem(self._status_key(expected), tenant_id)
                        pipe.sadd(self._status_key(next_status), tenant_id)
                    await pipe.execute()
                except WatchError:
                    logger.debug(f"CAS lost race for tenant {tenant_id}")
                    return None
        else:
            async with self._lock:
                data = self._memory_store.get(tenant_id)
                if not data:
                    return None
                record = DomainRecord.from_dict(data)
                if not self._matches(record, expected, revision):
                    return None
                self._apply(record, next_status, next(self._revisions), changes)
                self._memory_store[tenant_id] = record.to_dict()

        self._invalidate_cache(record.hostname)
        logger.debug(
            f"Tenant {tenant_id}: {expected.value} -> {next_status.value} "
            f"(rev {record.revision})"
        )
        return record

    @staticmethod
    def _matches(
        record: DomainRecord, expected: DomainStatus, revision: Optional[int]
    ) -> bool:
        if record.status != expected:
            return False
        return revision is None or record.revision == revision

    @staticmethod
    def _apply(
        record: DomainRecord, status: DomainStatus, revision: int, changes: dict
    ) -> None:
        for name, value in changes.items():
            if not hasattr(record, name):
                raise AttributeError(f"DomainRecord has no field {name!r}")
            setattr(record, name, value)
        record.status = status
        record.revision = revision
        record.updated_at = datetime.now(timezone.utc)
        record.check_invariants()

    async def delete(self, tenant_id: str, revision: Optional[int] = None) -> bool:
        """
        Delete a tenant's record.

        With ``revision``, only deletes if the record was not written since.
        Returns False if there was nothing (matching) to delete.
        """
        r = await self._get_redis()
        if r:
            key = self._tenant_key(tenant_id)
            async with r.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    data = await pipe.get(key)
                    if not data:
                        return False
                    entry = DomainRecord.from_dict(json.loads(data))
                    if revision is not None and entry.revision != revision:
                        return False
                    hostname_key = self._hostname_key(entry.hostname)
                    await pipe.watch(hostname_key)
                    owner = await pipe.get(hostname_key)
                    pipe.multi()
                    pipe.delete(key)
                    pipe.srem(self._status_key(entry.status), tenant_id)
                    if owner == tenant_id:
                        pipe.delete(hostname_key)
                    await pipe.execute()
                except WatchError:
                    logger.debug(f"Delete lost race for tenant {tenant_id}")
                    return False
        else:
            async with self._lock:
                data = self._memory_store.get(tenant_id)
                if not data:
                    return False
                entry = DomainRecord.from_dict(data)
                if revision is not None and entry.revision != revision:
                    return False
                del self._memory_store[tenant_id]
                if self._hostname_index.get(entry.hostname) == tenant_id:
                    self._hostname_index.pop(entry.hostname, None)

        self._invalidate_cache(entry.hostname)
        logger.info(f"Deleted domain {entry.hostname} for tenant {tenant_id}")
        return True

    async def find_tenant_by_hostname(self, hostname: str) -> Optional[str]:
        """Return the tenant that currently owns a hostname, if any."""
        hostname = hostname.lower()
        r = await self._get_redis()
        if r:
            return await r.get(self._hostname_key(hostname))
        return self._hostname_index.get(hostname)

    async def list_by_status(self, *statuses: DomainStatus) -> List[DomainRecord]:
        """List all records currently in any of the given statuses."""
        wanted = set(statuses)
        records: List[DomainRecord] = []

        r = await self._get_redis()
        if r:
            tenant_ids = set()
            for status in wanted:
                tenant_ids |= await r.smembers(self._status_key(status))
            for tenant_id in sorted(tenant_ids):
                entry = await self.get(tenant_id)
                # Index may lag a concurrent write; trust the record itself
                if entry and entry.status in wanted:
                    records.append(entry)
        else:
            for data in list(self._memory_store.values()):
                entry = DomainRecord.from_dict(data)
                if entry.status in wanted:
                    records.append(entry)

        return records

    async def lookup(self, hostname: str) -> Optional[DomainRecord]:
        """
        Hot-path lookup: returns the record serving a hostname, or None.

        Uses an in-process TTL cache so request routing does not hit Redis
        on every call. Only returns records with status == "active".
        """
        hostname = hostname.lower().rstrip(".")

        cached = self._cache.get(hostname)
        if cached and time.monotonic() < cached.expires_at:
            return cached.value

        tenant_id = await self.find_tenant_by_hostname(hostname)
        entry = await self.get(tenant_id) if tenant_id else None
        if entry and entry.hostname == hostname and entry.status == DomainStatus.ACTIVE:
            self._cache[hostname] = _CacheEntry(entry, self.POSITIVE_TTL)
            return entry

        self._cache[hostname] = _CacheEntry(None, self.NEGATIVE_TTL)
        return None

    async def record_event(
        self, tenant_id: str, event_type: str, details: Optional[dict] = None
    ) -> dict:
        """Append an audit event to the tenant's capped event history."""
        event = {
            "event_type": event_type,
            "details": details or {},
            "created_at": datetime.now(timezone.utc).isoformat(),
        }

        r = await self._get_redis()
        if r:
            key = self._events_key(tenant_id)
            async with r.pipeline(transaction=True) as pipe:
                pipe.lpush(key, json.dumps(event))
                pipe.ltrim(key, 0, self.max_events_per_tenant - 1)
                await pipe.execute()
        else:
            events = self._events.setdefault(tenant_id, [])
            events.insert(0, event)
            del events[self.max_events_per_tenant:]

        return event

    async def list_events(self, tenant_id: str, limit: int = 20) -> List[dict]:
        """Most recent audit events for a tenant, newest first."""
        r = await self._get_redis()
        if r:
            raw = await r.lrange(self._events_key(tenant_id), 0, limit - 1)
            return [json.loads(e) for e in raw]
        return list(self._events.get(tenant_id, [])[:limit])

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None
            logger.info("Domain store Redis connection closed")
