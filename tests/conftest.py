"""
Shared fixtures: fast settings and a ChatStream wired to the fake backend.
"""

import httpx
import pytest

from chatstream.core.config import Settings
from chatstream.services.chat_api import ChatApiClient
from chatstream.services.chat_stream import ChatStream
from fakes import BASE_URL, FakeBackend


@pytest.fixture
def settings():
    """Settings with near-zero delays"""
    return Settings(
        environment="test",
        api_base_url=BASE_URL,
        poll_interval_seconds=0.01,
        max_completed_empty_retries=3,
        request_timeout_seconds=5.0,
        resubmit_grace_seconds=0.0,
        server_busy_max_retries=2,
        server_busy_retry_delay_seconds=0.0,
    )


@pytest.fixture
def backend():
    """Scripted fake chat backend"""
    return FakeBackend()


@pytest.fixture
def http_client(backend):
    """httpx client routed to the fake backend"""
    return httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))


@pytest.fixture
def api(settings, http_client):
    """ChatApiClient bound to the fake backend"""
    return ChatApiClient(settings, client=http_client)


@pytest.fixture
def navigations():
    """Paths passed to the navigator"""
    return []


@pytest.fixture
def stream(settings, api, navigations):
    """ChatStream bound to the fake backend"""
    return ChatStream(settings, api=api, navigate=navigations.append)
