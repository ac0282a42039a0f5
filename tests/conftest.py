"""
Shared pytest fixtures for the Canvas MCP test suite.
"""

from typing import Dict, Optional

import pytest
from aiohttp.test_utils import make_mocked_request
from multidict import CIMultiDict

from canvas_mcp.auth.credential_vault import CredentialVault, Credentials
from canvas_mcp.auth.kv_store import MemoryKeyValueStore

TEST_SECRET = "test-cookie-encryption-key-0123456789"


@pytest.fixture
def secret():
    """Master secret used for cookie signing and credential encryption."""
    return TEST_SECRET


@pytest.fixture
def kv_store():
    return MemoryKeyValueStore()


@pytest.fixture
def vault(kv_store):
    return CredentialVault(kv_store)


@pytest.fixture
def credentials():
    return Credentials(api_token="canvas-token-abc123", domain="school.instructure.com")


def cookie_header(cookies: Dict[str, str]) -> str:
    return "; ".join(f"{name}={value}" for name, value in cookies.items())


def cookie_value(set_cookie: str) -> str:
    """Extract the value from a Set-Cookie header built by the proxy."""
    return set_cookie.split(";", 1)[0].split("=", 1)[1]


def mocked_request(method: str = "GET", path: str = "/", cookies: Optional[Dict[str, str]] = None):
    headers = CIMultiDict()
    if cookies:
        headers["Cookie"] = cookie_header(cookies)
    return make_mocked_request(method, path, headers=headers)
