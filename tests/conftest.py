"""
Pytest configuration for domain lifecycle tests.
"""

import asyncio
import os
import sys
from typing import Dict, List, Optional

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set test environment variables
os.environ["DOMAINS_DEBUG"] = "true"
os.environ["DOMAINS_REDIS_URL"] = ""
os.environ["DOMAINS_NETLIFY_ACCESS_TOKEN"] = ""
os.environ["DOMAINS_NETLIFY_SITE_ID"] = ""

from domain_lifecycle.domains.errors import DomainError, ErrorKind  # noqa: E402
from domain_lifecycle.domains.provider import ProviderHostname, ProviderStatus  # noqa: E402
from domain_lifecycle.domains.verification import DomainVerifier  # noqa: E402


class FakeVerifier(DomainVerifier):
    """
    Verifier whose TXT answers come from a dict instead of DNS.

    ``txt[name]`` is a list of values, or a DomainError to raise. When
    ``gate`` is set, lookups block until it is released.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.txt: Dict[str, object] = {}
        self.lookups: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.entered: Optional[asyncio.Event] = None

    def publish(self, hostname: str, *values: str) -> None:
        self.txt[self.record_name(hostname)] = list(values)

    async def resolve_txt(self, name: str) -> List[str]:
        self.lookups.append(name)
        if self.entered is not None:
            self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        answer = self.txt.get(name)
        if isinstance(answer, DomainError):
            raise answer
        if answer is None:
            raise DomainError(ErrorKind.DNS_NOT_FOUND)
        return list(answer)


class FakeProvider:
    """
    In-memory provider recording every call.

    ``states`` is the sequence of ssl states reported by successive polls;
    the last one repeats. Set ``add_error``/``status_error``/``remove_error``
    to make the matching call raise. When ``add_gate`` is set,
    ``add_hostname`` blocks until it is released.
    """

    ISSUED = "issued"
    TERMINAL = ("failed", "error", "revoked")

    def __init__(self, states=("provisioning", "issued")):
        self.states = list(states)
        self.added: List[str] = []
        self.removed: List[str] = []
        self.polls = 0
        self.add_error: Optional[Exception] = None
        self.status_error: Optional[Exception] = None
        self.remove_error: Optional[Exception] = None
        self.reason: Optional[str] = None
        self.add_gate: Optional[asyncio.Event] = None
        self.add_entered: Optional[asyncio.Event] = None

    async def add_hostname(self, hostname: str) -> ProviderHostname:
        if self.add_entered is not None:
            self.add_entered.set()
        if self.add_gate is not None:
            await self.add_gate.wait()
        if self.add_error is not None:
            raise self.add_error
        self.added.append(hostname)
        return ProviderHostname(provider_id=f"fake_{len(self.added)}", ssl_state="provisioning")

    async def get_hostname_status(self, provider_id: str) -> ProviderStatus:
        if self.status_error is not None:
            raise self.status_error
        state = self.states[min(self.polls, len(self.states) - 1)]
        self.polls += 1
        terminal = state in self.TERMINAL
        return ProviderStatus(
            ssl_state=state,
            issued=state == self.ISSUED,
            terminal_failure=terminal,
            reason=self.reason if terminal else None,
        )

    async def remove_hostname(self, provider_id: str) -> None:
        if self.remove_error is not None:
            raise self.remove_error
        self.removed.append(provider_id)

    async def health_check(self):
        return True, "fake provider"


@pytest.fixture
def store():
    """In-memory domain record store (no Redis)."""
    from domain_lifecycle.domains.store import DomainRecordStore
    return DomainRecordStore(redis_url="")


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def manager(store, verifier, provider):
    """Domain manager wired to fakes."""
    from domain_lifecycle.domains.manager import DomainManager
    return DomainManager(store=store, verifier=verifier, provider=provider)


@pytest.fixture
def test_settings():
    """Provide test settings."""
    from domain_lifecycle.config import Settings
    return Settings(
        redis_url="",
        debug=True,
        auto_provision=False,
        reconcile_interval=3600,
    )
