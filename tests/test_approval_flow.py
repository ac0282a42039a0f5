"""
End-to-end tests for the approval flow served by the OAuth proxy application.
"""

import json
import re
from urllib.parse import parse_qs, urlsplit

import aiohttp
import httpx
import pytest
from aiohttp.test_utils import TestClient, TestServer

from canvas_mcp.auth.credential_vault import CREDENTIALS_PREFIX, PENDING_PREFIX
from canvas_mcp.auth.oauth_provider import UpstreamOAuthConfig
from canvas_mcp.oauth_proxy.models import AuthPath, ProxyConfig
from canvas_mcp.oauth_proxy.server import CanvasOAuthProxy
from canvas_mcp.oauth_proxy.state_store import STATE_PREFIX
from canvas_mcp.oauth_proxy.upstream import UpstreamTokenExchange
from conftest import cookie_header

REDIRECT_URI = "https://client.example/callback"
CSRF_COOKIE = "__Host-CSRF_TOKEN"
APPROVED_COOKIE = "__Host-APPROVED_CLIENTS"
STATE_COOKIE = "__Host-CONSENTED_STATE"


class UpstreamStub:
    """Records calls made to the fake GitHub endpoints."""

    def __init__(self, login="octocat"):
        self.login = login
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if request.url.path == "/login/oauth/access_token":
            return httpx.Response(200, json={"access_token": "gho_test"})
        if request.url.path == "/user":
            return httpx.Response(200, json={"login": self.login, "name": "The Octocat"})
        return httpx.Response(404)


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
def upstream_stub():
    return UpstreamStub()


async def start_proxy(kv_store, secret, auth_mode, upstream_stub=None):
    upstream = None
    if auth_mode is AuthPath.FEDERATED:
        upstream = UpstreamTokenExchange(
            UpstreamOAuthConfig(client_id="gh-client", client_secret="gh-secret"),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream_stub)),
        )
    proxy = CanvasOAuthProxy(ProxyConfig(cookie_secret=secret, auth_mode=auth_mode), store=kv_store, upstream=upstream)
    client = TestClient(TestServer(proxy.app), cookie_jar=aiohttp.DummyCookieJar())
    await client.start_server()
    return proxy, client


async def open_approval_form(proxy, client, state="client-state"):
    registered = await proxy.provider.register_client([REDIRECT_URI], client_name="Test MCP Client")
    resp = await client.get(
        "/authorize",
        params={"response_type": "code", "client_id": registered.client_id,
                "redirect_uri": REDIRECT_URI, "state": state},
        allow_redirects=False,
    )
    assert resp.status == 200
    html = await resp.text()
    return registered, html, set_cookies(resp)


async def submit_form(client, html, cookies, domain="https://School.Instructure.com/", token="canvas-token-xyz",
                      csrf_token=None):
    return await client.post(
        "/authorize",
        data={
            "state": form_field(html, "state"),
            "csrf_token": csrf_token if csrf_token is not None else form_field(html, "csrf_token"),
            "canvas_domain": domain,
            "canvas_api_token": token,
        },
        headers={"Cookie": cookie_header(cookies)},
        allow_redirects=False,
    )


def credential_keys(kv_store):
    return [key for key in kv_store.entries if key.startswith(CREDENTIALS_PREFIX)]


class TestApprovalDialog:
    @pytest.mark.asyncio
    async def test_renders_form_with_csrf_cookie(self, kv_store, secret):
        proxy, client = await start_proxy(kv_store, secret, AuthPath.DIRECT)
        try:
            registered, html, cookies = await open_approval_form(proxy, client)

            assert "Test MCP Client" in html
            assert cookies[CSRF_COOKIE] == form_field(html, "csrf_token")
            assert 'name="canvas_domain"' in html
            assert 'name="canvas_api_token"' in html
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_dialog_forbids_framing(self, kv_store, secret):
        proxy, client = await start_proxy(kv_store, secret, AuthPath.DIRECT)
        try:
            registered = await proxy.provider.register_client([REDIRECT_URI])
            resp = await client.get("/authorize", params={"client_id": registered.client_id})

            assert resp.headers["Content-Security-Policy"] == "frame-ancestors 'none'"
            assert resp.headers["X-Frame-Options"] == "DENY"
            assert resp.headers["X-Content-Type-Options"] == "nosniff"
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_client_name_is_escaped(self, kv_store, secret):
        proxy, client = await start_proxy(kv_store, secret, AuthPath.DIRECT)
        try:
            registered = await proxy.provider.register_client([REDIRECT_URI], client_name="<script>x</script>")
            resp = await client.get("/authorize", params={"client_id": registered.client_id})
            html = await resp.text()

            assert "<script>x</script>" not in html
            assert "&lt;script&gt;" in html
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_missing_client_id(self, kv_store, secret):
        proxy, client = await start_proxy(kv_store, secret, AuthPath.DIRECT)
        try:
            resp = await client.get("/authorize")

            assert resp.status == 400
            assert await resp.text() == "Invalid request"
        finally:
            await client.close()


class TestDirectPath:
    @pytest.mark.asyncio
    async def test_approval_stores_credentials_and_redirects(self, kv_store, secret):
        proxy, client = await start_proxy(kv_store, secret, AuthPath.DIRECT)
        try:
            registered, html, cookies = await open_approval_form(proxy, client)

            resp = await submit_form(client, html, cookies)

            assert resp.status == 302
            location = resp.headers["Location"]
            query = parse_qs(urlsplit(location).query)
            assert location.startswith(REDIRECT_URI)
            assert query["state"] == ["client-state"]

            keys = credential_keys(kv_store)
            assert len(keys) == 1
            user_id = keys[0][len(CREDENTIALS_PREFIX):]
            stored = await proxy.vault.get(user_id, secret)
            assert stored.api_token == "canvas-token-xyz"
            assert stored.domain == "school.instructure.com"

            grant = await proxy.provider.exchange_code(query["code"][0], registered.client_id, REDIRECT_URI)
            assert grant["user_id"] == user_id
            assert grant["props"] == {"login": user_id}
            assert grant["metadata"]["label"] == f"canvas-user-{user_id[:8]}"

            issued = set_cookies(resp)
            assert APPROVED_COOKIE in issued
            assert issued[CSRF_COOKIE] == ""
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_csrf_mismatch_rejected_without_side_effects(self, kv_store, secret):
        proxy, client = await start_proxy(kv_store, secret, AuthPath.DIRECT)
        try:
            registered, html, cookies = await open_approval_form(proxy, client)
            entries_before = set(kv_store.entries)

            resp = await submit_form(client, html, {CSRF_COOKIE: "some-other-token"})

            assert resp.status == 400
            assert await resp.text() == "CSRF token mismatch"
            assert set(kv_store.entries) == entries_before
            assert credential_keys(kv_store) == []
            assert APPROVED_COOKIE not in set_cookies(resp)
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_missing_csrf_cookie(self, kv_store, secret):
        proxy, client = await start_proxy(kv_store, secret, AuthPath.DIRECT)
        try:
            registered, html, cookies = await open_approval_form(proxy, client)

            resp = await submit_form(client, html, {})

            assert resp.status == 400
            assert await resp.text() == "Missing CSRF token cookie"
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_tampered_form_state(self, kv_store, secret):
        proxy, client = await start_proxy(kv_store, secret, AuthPath.DIRECT)
        try:
            registered, html, cookies = await open_approval_form(proxy, client)
            forged = html.replace(form_field(html, "state"), "0" * 64 + ".eyJwYXRoIjoiZGlyZWN0In0")

            resp = await submit_form(client, forged, cookies)

            assert resp.status == 400
            assert await resp.text() == "Invalid state data"
            assert credential_keys(kv_store) == []
        finally:
            await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("domain,token", [
        ("", "canvas-token"),
        ("school.instructure.com", ""),
        ("not a domain!", "canvas-token"),
    ])
    async def test_invalid_credentials_rejected(self, kv_store, secret, domain, token):
        proxy, client = await start_proxy(kv_store, secret, AuthPath.DIRECT)
        try:
            registered, html, cookies = await open_approval_form(proxy, client)

            resp = await submit_form(client, html, cookies, domain=domain, token=token)

            assert resp.status == 400
            assert credential_keys(kv_store) == []
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_callback_not_served(self, kv_store, secret):
        proxy, client = await start_proxy(kv_store, secret, AuthPath.DIRECT)
        try:
            resp = await client.get("/callback", params={"state": "x", "code": "y"})

            assert resp.status == 404
        finally:
            await client.close()


class TestFederatedPath:
    @pytest.mark.asyncio
    async def test_full_round_trip(self, kv_store, secret, upstream_stub):
        proxy, client = await start_proxy(kv_store, secret, AuthPath.FEDERATED, upstream_stub)
        try:
            registered, html, cookies = await open_approval_form(proxy, client)

            resp = await submit_form(client, html, cookies)

            assert resp.status == 302
            upstream_url = urlsplit(resp.headers["Location"])
            assert upstream_url.netloc == "github.com"
            state_token = parse_qs(upstream_url.query)["state"][0]
            issued = set_cookies(resp)
            assert {APPROVED_COOKIE, STATE_COOKIE, CSRF_COOKIE} <= set(issued)
            assert f"{PENDING_PREFIX}{state_token}" in kv_store.entries
            assert credential_keys(kv_store) == []

            callback = await client.get(
                "/callback",
                params={"code": "gh-code", "state": state_token},
                headers={"Cookie": cookie_header({STATE_COOKIE: issued[STATE_COOKIE]})},
                allow_redirects=False,
            )

            assert callback.status == 302
            location = callback.headers["Location"]
            assert location.startswith(REDIRECT_URI)
            assert parse_qs(urlsplit(location).query)["state"] == ["client-state"]
            assert set_cookies(callback)[STATE_COOKIE] == ""

            stored = await proxy.vault.get("octocat", secret)
            assert stored.api_token == "canvas-token-xyz"
            assert stored.domain == "school.instructure.com"
            assert f"{PENDING_PREFIX}{state_token}" not in kv_store.entries
            assert f"{STATE_PREFIX}{state_token}" not in kv_store.entries
            assert [call.url.path for call in upstream_stub.calls] == ["/login/oauth/access_token", "/user"]

            replay = await client.get(
                "/callback",
                params={"code": "gh-code", "state": state_token},
                headers={"Cookie": cookie_header({STATE_COOKIE: issued[STATE_COOKIE]})},
                allow_redirects=False,
            )
            assert replay.status == 400
            assert json.loads(await replay.text())["error"] == "invalid_request"
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_unknown_state_never_reaches_upstream(self, kv_store, secret, upstream_stub):
        proxy, client = await start_proxy(kv_store, secret, AuthPath.FEDERATED, upstream_stub)
        try:
            resp = await client.get("/callback", params={"code": "gh-code", "state": "never-issued"},
                                    allow_redirects=False)

            body = json.loads(await resp.text())
            assert resp.status == 400
            assert body["error"] == "invalid_request"
            assert body["error_description"] == "Invalid or expired state"
            assert upstream_stub.calls == []
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_callback_from_other_browser_rejected(self, kv_store, secret, upstream_stub):
        proxy, client = await start_proxy(kv_store, secret, AuthPath.FEDERATED, upstream_stub)
        try:
            registered, html, cookies = await open_approval_form(proxy, client)
            resp = await submit_form(client, html, cookies)
            state_token = parse_qs(urlsplit(resp.headers["Location"]).query)["state"][0]

            callback = await client.get("/callback", params={"code": "gh-code", "state": state_token},
                                        allow_redirects=False)

            assert callback.status == 400
            assert upstream_stub.calls == []
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_upstream_denial(self, kv_store, secret, upstream_stub):
        proxy, client = await start_proxy(kv_store, secret, AuthPath.FEDERATED, upstream_stub)
        try:
            registered, html, cookies = await open_approval_form(proxy, client)
            resp = await submit_form(client, html, cookies)
            state_token = parse_qs(urlsplit(resp.headers["Location"]).query)["state"][0]

            callback = await client.get(
                "/callback",
                params={"error": "access_denied", "state": state_token},
                headers={"Cookie": cookie_header({STATE_COOKIE: set_cookies(resp)[STATE_COOKIE]})},
                allow_redirects=False,
            )

            assert callback.status == 400
            assert json.loads(await callback.text())["error"] == "access_denied"
            assert upstream_stub.calls == []
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_previously_approved_client_skips_dialog(self, kv_store, secret, upstream_stub):
        proxy, client = await start_proxy(kv_store, secret, AuthPath.FEDERATED, upstream_stub)
        try:
            registered, html, cookies = await open_approval_form(proxy, client)
            resp = await submit_form(client, html, cookies)
            approved = set_cookies(resp)[APPROVED_COOKIE]

            again = await client.get(
                "/authorize",
                params={"client_id": registered.client_id, "redirect_uri": REDIRECT_URI},
                headers={"Cookie": cookie_header({APPROVED_COOKIE: approved})},
                allow_redirects=False,
            )

            assert again.status == 302
            assert urlsplit(again.headers["Location"]).netloc == "github.com"
            assert STATE_COOKIE in set_cookies(again)
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_direct_form_state_rejected_by_federated_server(self, kv_store, secret, upstream_stub):
        direct_proxy, direct_client = await start_proxy(kv_store, secret, AuthPath.DIRECT)
        federated_proxy, federated_client = await start_proxy(kv_store, secret, AuthPath.FEDERATED, upstream_stub)
        try:
            registered, html, cookies = await open_approval_form(direct_proxy, direct_client)

            resp = await submit_form(federated_client, html, cookies)

            assert resp.status == 400
            assert credential_keys(kv_store) == []
            assert not any(key.startswith(PENDING_PREFIX) for key in kv_store.entries)
        finally:
            await direct_client.close()
            await federated_client.close()


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_endpoint(self, kv_store, secret):
        proxy, client = await start_proxy(kv_store, secret, AuthPath.DIRECT)
        try:
            resp = await client.get("/health")
            body = await resp.json()

            assert resp.status == 200
            assert body["status"] == "healthy"
            assert body["auth_mode"] == "direct"
            assert resp.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
        finally:
            await client.close()
