"""Tests for AsyncHttpClient retry behaviour."""

import json

import httpx
import pytest

from prizeflow.utils.http_client import AsyncHttpClient


def make_client(handler, max_retries: int = 3) -> AsyncHttpClient:
    return AsyncHttpClient(
        base_url="http://svc.test",
        max_retries=max_retries,
        min_wait=0,
        max_wait=0,
        transport=httpx.MockTransport(handler),
    )


class TestAsyncHttpClient:
    @pytest.mark.asyncio
    async def test_post_json(self):
        def handler(request):
            return httpx.Response(200, json={"echo": json.loads(request.content)})

        async with make_client(handler) as client:
            body = await client.post_json("/echo", {"a": 1})

        assert body == {"echo": {"a": 1}}

    @pytest.mark.asyncio
    async def test_network_errors_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                raise httpx.ConnectError("refused")
            return httpx.Response(200, json={})

        async with make_client(handler) as client:
            await client.post_json("/x", {})

        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ReadTimeout("slow")

        async with make_client(handler, max_retries=2) as client:
            with pytest.raises(httpx.ReadTimeout):
                await client.post_json("/x", {})

        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_http_errors_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(500)

        async with make_client(handler) as client:
            with pytest.raises(httpx.HTTPStatusError):
                await client.post_json("/x", {})

        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_requires_context_manager(self):
        client = make_client(lambda request: httpx.Response(200))

        with pytest.raises(RuntimeError, match="not initialized"):
            await client.post("/x")
