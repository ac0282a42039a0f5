"""
Tests for client registration, the token endpoint and the bearer-protected MCP endpoint,
including a full register -> authorize -> token -> tool call round.
"""

import base64
import hashlib
import json
import re
from urllib.parse import parse_qs, urlsplit

import aiohttp
import httpx
import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from canvas_mcp.auth.credential_vault import Credentials
from canvas_mcp.oauth_proxy.models import ProxyConfig
from canvas_mcp.oauth_proxy.provider import TOKEN_PREFIX
from canvas_mcp.oauth_proxy.server import CanvasOAuthProxy
from canvas_mcp.utils.canvas_client import CanvasClient
from conftest import cookie_header

REDIRECT_URI = "http://localhost:6274/oauth/callback"
DOMAIN = "school.instructure.com"


def fake_canvas(request: httpx.Request) -> httpx.Response:
    if request.headers.get("Authorization") != "Bearer canvas-token-xyz":
        return httpx.Response(401, json={"errors": [{"message": "Invalid access token."}]})
    if request.url.path == "/api/v1/users/self/profile":
        return httpx.Response(200, json={"id": 7, "name": "Ada Lovelace"})
    return httpx.Response(404, json={"errors": [{"message": "The specified resource does not exist."}]})


class CanvasClients:
    """Client factory that remembers every client it builds."""

    def __init__(self):
        self.built = []

    def __call__(self, credentials: Credentials) -> CanvasClient:
        client = CanvasClient(credentials.api_token, credentials.domain, max_retries=0,
                              transport=httpx.MockTransport(fake_canvas))
        self.built.append(client)
        return client


def set_cookies(response) -> dict:
    cookies = {}
    for header in response.headers.getall("Set-Cookie", []):
        name, value = header.split(";", 1)[0].split("=", 1)
        cookies[name] = value
    return cookies


def form_field(html: str, name: str) -> str:
    match = re.search(rf'name="{name}" value="([^"]*)"', html)
    assert match, f"form field {name} not rendered"
    return match.group(1)


@pytest.fixture
def canvas_clients():
    return CanvasClients()


@pytest_asyncio.fixture
async def proxy_client(kv_store, secret, canvas_clients):
    proxy = CanvasOAuthProxy(ProxyConfig(cookie_secret=secret), store=kv_store, client_factory=canvas_clients)
    client = TestClient(TestServer(proxy.app), cookie_jar=aiohttp.DummyCookieJar())
    await client.start_server()
    yield client
    await client.close()


async def register(client, redirect_uris=(REDIRECT_URI,)):
    resp = await client.post("/register", json={"redirect_uris": list(redirect_uris), "client_name": "MCP Inspector"})
    assert resp.status == 201
    return await resp.json()


async def approve(client, client_id, **extra_params):
    params = {"response_type": "code", "client_id": client_id, "redirect_uri": REDIRECT_URI, "state": "st-1"}
    params.update(extra_params)
    resp = await client.get("/authorize", params=params)
    assert resp.status == 200
    html = await resp.text()

    resp = await client.post(
        "/authorize",
        data={
            "state": form_field(html, "state"),
            "csrf_token": form_field(html, "csrf_token"),
            "canvas_domain": DOMAIN,
            "canvas_api_token": "canvas-token-xyz",
        },
        headers={"Cookie": cookie_header(set_cookies(resp))},
        allow_redirects=False,
    )
    assert resp.status == 302
    return parse_qs(urlsplit(resp.headers["Location"]).query)["code"][0]


async def redeem(client, client_id, code, **extra):
    data = {"grant_type": "authorization_code", "code": code, "client_id": client_id, "redirect_uri": REDIRECT_URI}
    data.update(extra)
    return await client.post("/token", data=data)


async def mcp(client, access_token, method, params=None, request_id=1):
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return await client.post("/mcp", json=message, headers={"Authorization": f"Bearer {access_token}"})


async def access_token_for(client):
    registered = await register(client)
    code = await approve(client, registered["client_id"])
    resp = await redeem(client, registered["client_id"], code)
    assert resp.status == 200
    return (await resp.json())["access_token"]


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_metadata_lists_endpoints(self, proxy_client):
        resp = await proxy_client.get("/.well-known/oauth-authorization-server")
        metadata = await resp.json()

        assert metadata["registration_endpoint"].endswith("/register")
        assert metadata["token_endpoint"].endswith("/token")
        assert metadata["authorization_endpoint"].endswith("/authorize")
        assert "S256" in metadata["code_challenge_methods_supported"]


class TestRegistration:
    @pytest.mark.asyncio
    async def test_register_returns_public_client(self, proxy_client):
        registered = await register(proxy_client, redirect_uris=[REDIRECT_URI, "vscode://canvas/callback"])

        assert registered["client_id"]
        assert registered["redirect_uris"] == [REDIRECT_URI, "vscode://canvas/callback"]
        assert registered["client_name"] == "MCP Inspector"
        assert registered["token_endpoint_auth_method"] == "none"
        assert "client_secret" not in registered

    @pytest.mark.asyncio
    async def test_registered_client_can_open_dialog(self, proxy_client):
        registered = await register(proxy_client)

        resp = await proxy_client.get("/authorize", params={"client_id": registered["client_id"],
                                                             "redirect_uri": REDIRECT_URI})

        assert resp.status == 200
        assert "MCP Inspector" in await resp.text()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {},
        {"redirect_uris": []},
        {"redirect_uris": "http://localhost/cb"},
        {"redirect_uris": ["not a uri"]},
        {"redirect_uris": ["https://client.example/cb#frag"]},
    ])
    async def test_invalid_metadata_rejected(self, proxy_client, body):
        resp = await proxy_client.post("/register", json=body)

        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_redirect_uri"

    @pytest.mark.asyncio
    async def test_non_json_body_rejected(self, proxy_client):
        resp = await proxy_client.post("/register", data="redirect_uris=x")

        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_client_metadata"


class TestTokenEndpoint:
    @pytest.mark.asyncio
    async def test_code_redeems_once(self, proxy_client, kv_store):
        registered = await register(proxy_client)
        code = await approve(proxy_client, registered["client_id"])

        first = await redeem(proxy_client, registered["client_id"], code)
        second = await redeem(proxy_client, registered["client_id"], code)

        token = await first.json()
        assert first.status == 200
        assert token["token_type"] == "Bearer"
        assert token["expires_in"] == 3600
        assert first.headers["Cache-Control"] == "no-store"
        assert second.status == 400
        assert (await second.json())["error"] == "invalid_grant"
        stored = [key for key in kv_store.entries if key.startswith(TOKEN_PREFIX)]
        assert len(stored) == 1
        assert token["access_token"] not in stored[0]

    @pytest.mark.asyncio
    async def test_wrong_redirect_uri_rejected(self, proxy_client):
        registered = await register(proxy_client)
        code = await approve(proxy_client, registered["client_id"])

        resp = await redeem(proxy_client, registered["client_id"], code, redirect_uri="http://localhost:1/other")

        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_grant"

    @pytest.mark.asyncio
    async def test_pkce_verifier_required(self, proxy_client):
        verifier = "a-long-random-code-verifier-0123456789-abcdefghijklmnop"
        challenge = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode("ascii")).digest()).decode().rstrip("=")
        registered = await register(proxy_client)

        code = await approve(proxy_client, registered["client_id"], code_challenge=challenge,
                             code_challenge_method="S256")
        missing = await redeem(proxy_client, registered["client_id"], code)
        code = await approve(proxy_client, registered["client_id"], code_challenge=challenge,
                             code_challenge_method="S256")
        verified = await redeem(proxy_client, registered["client_id"], code, code_verifier=verifier)

        assert missing.status == 400
        assert verified.status == 200

    @pytest.mark.asyncio
    async def test_unsupported_grant_type(self, proxy_client):
        resp = await proxy_client.post("/token", data={"grant_type": "client_credentials"})

        assert resp.status == 400
        assert (await resp.json())["error"] == "unsupported_grant_type"

    @pytest.mark.asyncio
    async def test_missing_fields(self, proxy_client):
        resp = await proxy_client.post("/token", data={"grant_type": "authorization_code", "code": "abc"})

        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_request"


class TestMCPEndpoint:
    @pytest.mark.asyncio
    async def test_requires_bearer_token(self, proxy_client):
        resp = await proxy_client.post("/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "tools/list"})

        assert resp.status == 401
        assert resp.headers["WWW-Authenticate"].startswith("Bearer")
        assert (await resp.json())["error"]["code"] == -32001

    @pytest.mark.asyncio
    async def test_unknown_token_rejected(self, proxy_client):
        resp = await mcp(proxy_client, "not-a-token", "tools/list")

        assert resp.status == 401

    @pytest.mark.asyncio
    async def test_register_authorize_token_and_call_tool(self, proxy_client, canvas_clients):
        access_token = await access_token_for(proxy_client)

        init = await (await mcp(proxy_client, access_token, "initialize",
                                {"protocolVersion": "2025-03-26", "capabilities": {}})).json()
        listed = await (await mcp(proxy_client, access_token, "tools/list", request_id=2)).json()
        called = await (await mcp(proxy_client, access_token, "tools/call",
                                  {"name": "canvas_get_user_profile", "arguments": {}}, request_id=3)).json()

        assert init["result"]["serverInfo"]["name"] == "canvas-lms-mcp"
        names = {tool["name"] for tool in listed["result"]["tools"]}
        assert {"canvas_get_user_profile", "canvas_list_courses", "canvas_setup_credentials"} <= names
        assert all("inputSchema" in tool for tool in listed["result"]["tools"])
        assert called["id"] == 3
        assert called["result"]["isError"] is False
        assert json.loads(called["result"]["content"][0]["text"])["name"] == "Ada Lovelace"
        assert canvas_clients.built
        assert all(client.client.is_closed for client in canvas_clients.built)

    @pytest.mark.asyncio
    async def test_user_without_credentials_sees_only_setup_tools(self, proxy_client, kv_store):
        access_token = await access_token_for(proxy_client)
        for key in [key for key in kv_store.entries if key.startswith("canvas:credentials:")]:
            del kv_store.entries[key]

        listed = await (await mcp(proxy_client, access_token, "tools/list")).json()

        names = {tool["name"] for tool in listed["result"]["tools"]}
        assert names == {"canvas_setup_credentials", "canvas_delete_credentials"}

    @pytest.mark.asyncio
    async def test_canvas_failure_is_a_tool_error(self, proxy_client):
        access_token = await access_token_for(proxy_client)

        called = await (await mcp(proxy_client, access_token, "tools/call",
                                  {"name": "canvas_get_course", "arguments": {"course_id": 999}})).json()

        assert called["result"]["isError"] is True
        assert "does not exist" in called["result"]["content"][0]["text"]

    @pytest.mark.asyncio
    async def test_unknown_method(self, proxy_client):
        access_token = await access_token_for(proxy_client)

        resp = await (await mcp(proxy_client, access_token, "resources/list")).json()

        assert resp["error"]["code"] == -32601

    @pytest.mark.asyncio
    async def test_notification_is_accepted_without_body(self, proxy_client):
        access_token = await access_token_for(proxy_client)

        resp = await proxy_client.post("/mcp", json={"jsonrpc": "2.0", "method": "notifications/initialized"},
                                       headers={"Authorization": f"Bearer {access_token}"})

        assert resp.status == 202

    @pytest.mark.asyncio
    async def test_malformed_json(self, proxy_client):
        access_token = await access_token_for(proxy_client)

        resp = await proxy_client.post("/mcp", data="{not json",
                                       headers={"Authorization": f"Bearer {access_token}",
                                                "Content-Type": "application/json"})

        assert (await resp.json())["error"]["code"] == -32700
