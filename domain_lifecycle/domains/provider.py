"""
Certificate/hosting provider adapters for custom hostnames.

A provider accepts a hostname on the hosting edge, issues its TLS
certificate asynchronously and reports the certificate state on request.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import aiohttp

from .errors import DomainError, ErrorKind

logger = logging.getLogger("domain_lifecycle.domains.provider")


@dataclass
class ProviderHostname:
    """Handle returned when the provider accepts a hostname."""

    provider_id: str
    ssl_state: str


@dataclass
class ProviderStatus:
    """Certificate state of a hostname as reported by the provider."""

    ssl_state: str
    issued: bool = False
    terminal_failure: bool = False
    reason: Optional[str] = None


class _RetryableError(Exception):
    pass


class NetlifyProvider:
    """Registers custom hostnames on a Netlify site and tracks their SSL state."""

    ISSUED_STATES = frozenset({"issued"})
    TERMINAL_STATES = frozenset({"failed", "error", "revoked"})

    def __init__(
        self,
        access_token: str,
        site_id: str,
        api_url: str = "https://api.netlify.com/api/v1",
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff: float = 1.0,
    ):
        self.access_token = access_token
        self.site_id = site_id
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff = backoff

    def _site_url(self, path: str = "") -> str:
        return f"{self.api_url}/sites/{self.site_id}{path}"

    async def _send_once(
        self, method: str, url: str, payload: Optional[dict] = None
    ) -> Tuple[int, dict]:
        """Perform a single HTTP call. Returns (status, decoded JSON body)."""
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.request(method, url, json=payload, headers=headers) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = {"message": (await resp.text())[:200]}
                return resp.status, body if isinstance(body, dict) else {"data": body}

    async def _request(
        self,
        method: str,
        url: str,
        payload: Optional[dict] = None,
        allow_404: bool = False,
    ) -> Optional[dict]:
        """
        Call the Netlify API with retry on connection errors, timeouts and 5xx.

        Backoff doubles between attempts (1s, 2s, 4s by default). 4xx
        responses are not retried. Raises DomainError(ProviderError).
        """
        last_error = "no attempt made"

        for attempt in range(1, self.max_retries + 1):
            try:
                status, body = await self._send_once(method, url, payload)
                if status == 404 and allow_404:
                    return None
                if status >= 500:
                    raise _RetryableError(f"HTTP {status}: {body.get('message', '')}".strip())
                if status >= 400:
                    message = body.get("message") or body.get("error") or str(body)
                    raise DomainError(
                        ErrorKind.PROVIDER_ERROR, f"Netlify API error {status}: {message}"
                    )
                return body
            except (_RetryableError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = str(e) or type(e).__name__
                logger.warning(
                    f"Netlify {method} {url} attempt {attempt}/{self.max_retries} failed: {last_error}"
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(self.backoff * 2 ** (attempt - 1))

        raise DomainError(
            ErrorKind.PROVIDER_ERROR,
            f"Hosting provider unavailable after {self.max_retries} attempts: {last_error}",
        )

    async def add_hostname(self, hostname: str) -> ProviderHostname:
        """Attach ``hostname`` to the site and start certificate issuance."""
        logger.info(f"Adding {hostname} to Netlify site {self.site_id}")
        body = await self._request("POST", self._site_url("/domains"), {"hostname": hostname})
        provider_id = body.get("id") if body else None
        if not provider_id:
            raise DomainError(ErrorKind.PROVIDER_ERROR, "Netlify did not return a domain id")
        ssl_state = (body.get("ssl") or {}).get("state") or "provisioning"
        return ProviderHostname(provider_id=str(provider_id), ssl_state=ssl_state)

    async def get_hostname_status(self, provider_id: str) -> ProviderStatus:
        """Report the certificate state for a previously added hostname."""
        body = await self._request("GET", self._site_url(f"/domains/{provider_id}"))
        ssl = (body or {}).get("ssl") or {}
        state = ssl.get("state") or (body or {}).get("state") or "pending"
        terminal = state in self.TERMINAL_STATES
        return ProviderStatus(
            ssl_state=state,
            issued=state in self.ISSUED_STATES,
            terminal_failure=terminal,
            reason=(ssl.get("error") or f"Certificate issuance {state}") if terminal else None,
        )

    async def remove_hostname(self, provider_id: str) -> None:
        """Detach a hostname. An unknown id counts as already removed."""
        await self._request(
            "DELETE", self._site_url(f"/domains/{provider_id}"), allow_404=True
        )
        logger.info(f"Removed Netlify domain {provider_id}")

    async def health_check(self) -> Tuple[bool, str]:
        """Check that the configured credentials can read the site."""
        try:
            body = await self._request("GET", self._site_url())
        except DomainError as e:
            return False, e.message
        return True, f"Connected to Netlify site {(body or {}).get('name', self.site_id)}"


class SimulatedProvider:
    """
    Provider used when no hosting credentials are configured.

    Accepts every hostname and reports the certificate as issued after
    ``polls_until_issued`` status checks. Intended for development.
    """

    def __init__(self, polls_until_issued: int = 1):
        self.polls_until_issued = polls_until_issued
        self._ids = itertools.count(1)
        self._hostnames: Dict[str, str] = {}
        self._polls: Dict[str, int] = {}

    async def add_hostname(self, hostname: str) -> ProviderHostname:
        provider_id = f"simulated_{next(self._ids)}"
        self._hostnames[provider_id] = hostname
        self._polls[provider_id] = 0
        logger.info(f"Simulated provider accepted {hostname} as {provider_id}")
        return ProviderHostname(provider_id=provider_id, ssl_state="provisioning")

    async def get_hostname_status(self, provider_id: str) -> ProviderStatus:
        if provider_id not in self._hostnames:
            raise DomainError(ErrorKind.PROVIDER_ERROR, f"Unknown hostname id {provider_id}")
        self._polls[provider_id] += 1
        if self._polls[provider_id] >= self.polls_until_issued:
            return ProviderStatus(ssl_state="issued", issued=True)
        return ProviderStatus(ssl_state="provisioning")

    async def remove_hostname(self, provider_id: str) -> None:
        self._hostnames.pop(provider_id, None)
        self._polls.pop(provider_id, None)

    async def health_check(self) -> Tuple[bool, str]:
        return True, "Simulated provider (no hosting credentials configured)"
