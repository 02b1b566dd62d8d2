"""
Pytest configuration and shared fixtures.

An in-process aiohttp server plays the upstream backend so the gateway's
routes run against real HTTP, and the FastAPI app is driven through httpx's
ASGI transport.
"""
import httpx
import pytest
import pytest_asyncio
from aiohttp.test_utils import TestServer

from helpers import FakeBackend
from toolgate import router
from toolgate.config import Config


# pytest-asyncio is auto-configured via pyproject.toml asyncio_mode="auto"


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest_asyncio.fixture
async def backend_url(fake_backend):
    server = TestServer(fake_backend.app())
    await server.start_server()
    try:
        yield str(server.make_url("")).rstrip("/")
    finally:
        await server.close()


@pytest.fixture
def make_config(backend_url):
    def factory(**overrides) -> Config:
        values = {
            "backend_mode": "openai",
            "backend_llm_base_url": backend_url,
            "backend_llm_api_key": "server-key",
            "proxy_auth_tokens_file": None,
            "enable_tool_reinjection": False,
            "debug_mode": False,
        }
        values.update(overrides)
        return Config(**values)

    return factory


@pytest_asyncio.fixture
async def gateway(make_config):
    """
    Start the gateway state for a config and hand back an httpx client.

    Usage: ``client = await gateway(max_buffer_size=64)``.
    """
    clients = []

    async def start(**overrides) -> httpx.AsyncClient:
        await router.close_state()
        cfg = make_config(**overrides)
        await router.init_state(cfg)
        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=router.app), base_url="http://gateway")
        clients.append(client)
        return client

    try:
        yield start
    finally:
        for client in clients:
            await client.aclose()
        await router.close_state()
