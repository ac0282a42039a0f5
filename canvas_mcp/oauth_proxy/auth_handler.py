"""
OAuth endpoints MCP clients call directly: discovery metadata, dynamic client
registration (RFC 7591) and the authorization-code token exchange.
"""

import logging
from datetime import datetime
from urllib.parse import urlparse

from aiohttp import web

from canvas_mcp.utils.error_handling import OAuthError
from .models import ProxyConfig
from .provider import AuthorizationProvider
from .utils import audit_log

logger = logging.getLogger("oauth_proxy.auth")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


class AuthHandler:
    """Handles /.well-known/oauth-authorization-server, /register and /token"""

    def __init__(self, config: ProxyConfig, provider: AuthorizationProvider):
        self.config = config
        self.provider = provider

    def _base_url(self, request: web.Request) -> str:
        if self.config.public_base_url:
            return self.config.public_base_url.rstrip("/")
        return f"{request.scheme}://{request.host}"

    async def preflight(self, request: web.Request) -> web.Response:
        return web.Response(status=200, headers=CORS_HEADERS)

    async def authorization_server_metadata(self, request: web.Request) -> web.Response:
        base_url = self._base_url(request)
        return web.json_response({
            "issuer": base_url,
            "authorization_endpoint": f"{base_url}/authorize",
            "token_endpoint": f"{base_url}/token",
            "registration_endpoint": f"{base_url}/register",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code"],
            "code_challenge_methods_supported": ["S256", "plain"],
            "token_endpoint_auth_methods_supported": ["none"],
        }, headers=CORS_HEADERS)

    async def register_client(self, request: web.Request) -> web.Response:
        """Dynamic Client Registration. Public clients only, no client secret is issued."""
        try:
            registration = await request.json()
        except ValueError:
            return _error("invalid_client_metadata", "Registration body must be JSON")
        if not isinstance(registration, dict):
            return _error("invalid_client_metadata", "Registration body must be a JSON object")

        redirect_uris = registration.get("redirect_uris")
        if not isinstance(redirect_uris, list) or not redirect_uris:
            return _error("invalid_redirect_uri", "redirect_uris must be a non-empty list")
        for uri in redirect_uris:
            parsed = urlparse(uri) if isinstance(uri, str) else None
            # Native clients use custom schemes (vscode://, claude://), so any scheme is accepted
            if parsed is None or not parsed.scheme or not (parsed.netloc or parsed.path) or parsed.fragment:
                return _error("invalid_redirect_uri", f"Invalid redirect URI: {uri}")

        client_name = registration.get("client_name")
        client_uri = registration.get("client_uri")
        client = await self.provider.register_client(
            redirect_uris,
            client_name=client_name if isinstance(client_name, str) else None,
            client_uri=client_uri if isinstance(client_uri, str) else None,
        )
        audit_log("client_registered", details={"client_id": client.client_id, "redirect_uris": redirect_uris})

        issued_at = int(datetime.fromisoformat(client.registered_at).timestamp()) if client.registered_at else None
        body = {
            "client_id": client.client_id,
            "client_id_issued_at": issued_at,
            "redirect_uris": client.redirect_uris,
            "grant_types": ["authorization_code"],
            "response_types": ["code"],
            "token_endpoint_auth_method": "none",
        }
        if client.client_name:
            body["client_name"] = client.client_name
        if client.client_uri:
            body["client_uri"] = client.client_uri
        return web.json_response(body, status=201, headers=CORS_HEADERS)

    async def token(self, request: web.Request) -> web.Response:
        """Redeem an authorization code for a bearer token"""
        data = await request.post()
        grant_type = data.get("grant_type")
        if grant_type != "authorization_code":
            return _error("unsupported_grant_type", f"Unsupported grant_type: {grant_type}")

        code = data.get("code")
        client_id = data.get("client_id")
        redirect_uri = data.get("redirect_uri")
        if not code or not client_id or not redirect_uri:
            return _error("invalid_request", "code, client_id and redirect_uri are required")

        grant = await self.provider.exchange_code(code, client_id, redirect_uri, data.get("code_verifier"))
        if grant is None:
            logger.warning(f"Rejected authorization code for client {client_id}")
            return _error("invalid_grant", "Authorization code is invalid, expired or already used")

        token_response = await self.provider.issue_access_token(grant)
        return web.json_response(token_response, headers={**CORS_HEADERS, "Cache-Control": "no-store"})


def _error(code: str, description: str) -> web.Response:
    response = OAuthError(code, description).to_response()
    response.headers.update(CORS_HEADERS)
    return response
