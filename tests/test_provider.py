"""
Tests for the hosting provider adapters.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from domain_lifecycle.domains.errors import DomainError, ErrorKind
from domain_lifecycle.domains.provider import NetlifyProvider, SimulatedProvider


@pytest.fixture
def netlify():
    return NetlifyProvider(
        access_token="token",
        site_id="site-1",
        api_url="https://api.netlify.test/api/v1/",
        max_retries=3,
        backoff=0,
    )


class TestNetlifyRequests:
    @pytest.mark.asyncio
    async def test_add_hostname(self, netlify):
        send = AsyncMock(return_value=(201, {"id": "dom_1", "ssl": {"state": "pending"}}))
        with patch.object(netlify, "_send_once", send):
            added = await netlify.add_hostname("brand.example.com")

        assert added.provider_id == "dom_1"
        assert added.ssl_state == "pending"
        send.assert_awaited_once_with(
            "POST",
            "https://api.netlify.test/api/v1/sites/site-1/domains",
            {"hostname": "brand.example.com"},
        )

    @pytest.mark.asyncio
    async def test_add_hostname_default_state(self, netlify):
        send = AsyncMock(return_value=(200, {"id": 42}))
        with patch.object(netlify, "_send_once", send):
            added = await netlify.add_hostname("brand.example.com")
        assert added.provider_id == "42"
        assert added.ssl_state == "provisioning"

    @pytest.mark.asyncio
    async def test_add_hostname_without_id(self, netlify):
        send = AsyncMock(return_value=(200, {}))
        with patch.object(netlify, "_send_once", send):
            with pytest.raises(DomainError) as info:
                await netlify.add_hostname("brand.example.com")
        assert info.value.kind == ErrorKind.PROVIDER_ERROR

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state,issued,terminal", [
        ("issued", True, False),
        ("pending", False, False),
        ("failed", False, True),
        ("revoked", False, True),
    ])
    async def test_status(self, netlify, state, issued, terminal):
        send = AsyncMock(return_value=(200, {"ssl": {"state": state}}))
        with patch.object(netlify, "_send_once", send):
            status = await netlify.get_hostname_status("dom_1")
        assert status.ssl_state == state
        assert status.issued is issued
        assert status.terminal_failure is terminal
        assert (status.reason is not None) is terminal

    @pytest.mark.asyncio
    async def test_remove_treats_404_as_removed(self, netlify):
        send = AsyncMock(return_value=(404, {"message": "Not found"}))
        with patch.object(netlify, "_send_once", send):
            await netlify.remove_hostname("dom_1")
        assert send.await_count == 1


class TestNetlifyRetry:
    @pytest.mark.asyncio
    async def test_retries_5xx_then_succeeds(self, netlify):
        send = AsyncMock(side_effect=[
            (502, {"message": "Bad gateway"}),
            (503, {}),
            (200, {"id": "dom_1"}),
        ])
        with patch.object(netlify, "_send_once", send):
            added = await netlify.add_hostname("brand.example.com")
        assert added.provider_id == "dom_1"
        assert send.await_count == 3

    @pytest.mark.asyncio
    async def test_retries_connection_errors(self, netlify):
        send = AsyncMock(side_effect=[
            aiohttp.ClientConnectionError("reset"),
            asyncio.TimeoutError(),
            (200, {"ssl": {"state": "issued"}}),
        ])
        with patch.object(netlify, "_send_once", send):
            status = await netlify.get_hostname_status("dom_1")
        assert status.issued

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, netlify):
        send = AsyncMock(return_value=(500, {"message": "down"}))
        with patch.object(netlify, "_send_once", send):
            with pytest.raises(DomainError) as info:
                await netlify.add_hostname("brand.example.com")
        assert info.value.kind == ErrorKind.PROVIDER_ERROR
        assert "after 3 attempts" in info.value.message
        assert send.await_count == 3

    @pytest.mark.asyncio
    async def test_4xx_not_retried(self, netlify):
        send = AsyncMock(return_value=(422, {"message": "hostname taken"}))
        with patch.object(netlify, "_send_once", send):
            with pytest.raises(DomainError) as info:
                await netlify.add_hostname("brand.example.com")
        assert "422" in info.value.message
        assert "hostname taken" in info.value.message
        assert send.await_count == 1

    @pytest.mark.asyncio
    async def test_backoff_doubles(self):
        provider = NetlifyProvider("token", "site-1", max_retries=3, backoff=1.0)
        send = AsyncMock(return_value=(503, {}))
        sleep = AsyncMock()
        with patch.object(provider, "_send_once", send), \
                patch("domain_lifecycle.domains.provider.asyncio.sleep", sleep):
            with pytest.raises(DomainError):
                await provider.remove_hostname("dom_1")
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_health_check(self, netlify):
        send = AsyncMock(return_value=(401, {"message": "Unauthorized"}))
        with patch.object(netlify, "_send_once", send):
            ok, message = await netlify.health_check()
        assert ok is False
        assert "401" in message


class TestSimulatedProvider:
    @pytest.mark.asyncio
    async def test_issues_after_polls(self):
        provider = SimulatedProvider(polls_until_issued=2)
        added = await provider.add_hostname("brand.example.com")
        assert added.ssl_state == "provisioning"

        first = await provider.get_hostname_status(added.provider_id)
        assert not first.issued
        second = await provider.get_hostname_status(added.provider_id)
        assert second.issued
        assert second.ssl_state == "issued"

    @pytest.mark.asyncio
    async def test_unknown_id(self):
        provider = SimulatedProvider()
        with pytest.raises(DomainError):
            await provider.get_hostname_status("missing")

    @pytest.mark.asyncio
    async def test_remove(self):
        provider = SimulatedProvider()
        added = await provider.add_hostname("brand.example.com")
        await provider.remove_hostname(added.provider_id)
        await provider.remove_hostname(added.provider_id)
        with pytest.raises(DomainError):
            await provider.get_hostname_status(added.provider_id)
