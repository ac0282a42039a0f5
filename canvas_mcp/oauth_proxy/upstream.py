"""
Authorization-code exchange with the upstream identity provider (GitHub).
"""

import logging
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlencode

import httpx
from aiohttp import web

from canvas_mcp.auth.oauth_provider import UpstreamOAuthConfig
from canvas_mcp.utils.error_handling import UpstreamAuthError

logger = logging.getLogger("oauth_proxy.upstream")

USER_AGENT = "Canvas-MCP-Server"


class UpstreamTokenExchange:
    """Talks to the identity provider's authorize, token and user endpoints.

    Code exchange is never retried: a code is single use, so a failed exchange
    is returned to the caller immediately.
    """

    def __init__(self, config: UpstreamOAuthConfig, http_client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 15.0):
        self.config = config
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self):
        await self.http_client.aclose()

    def authorize_url(self, redirect_uri: str, state: Optional[str] = None) -> str:
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": redirect_uri,
            "scope": self.config.scope,
        }
        if state:
            params["state"] = state
        params["response_type"] = "code"
        return f"{self.config.authorization_url}?{urlencode(params)}"

    async def exchange(self, code: Optional[str], redirect_uri: str) -> Tuple[Optional[str], Optional[web.Response]]:
        """Exchange an authorization code for an upstream access token.

        Returns:
            (access_token, None) on success, (None, error response) otherwise
        """
        if not code:
            return None, web.Response(text="Missing code", status=400)

        try:
            resp = await self.http_client.post(
                self.config.token_url,
                data={
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                    "code": code,
                    "redirect_uri": redirect_uri,
                },
                headers={"Accept": "application/json", "User-Agent": USER_AGENT},
            )
        except httpx.HTTPError as e:
            logger.error(f"Token exchange request failed: {type(e).__name__}")
            return None, web.Response(text="Failed to fetch access token", status=500)

        if not resp.is_success:
            logger.error(f"Token exchange failed with status {resp.status_code}")
            return None, web.Response(text="Failed to fetch access token", status=500)

        access_token = self._parse_access_token(resp)
        if not access_token:
            logger.error("Token response did not contain an access token")
            return None, web.Response(text="Missing access token", status=400)

        return access_token, None

    @staticmethod
    def _parse_access_token(resp: httpx.Response) -> Optional[str]:
        # GitHub answers form-encoded unless JSON is negotiated
        content_type = resp.headers.get("content-type", "")
        if "json" in content_type:
            try:
                body = resp.json()
            except ValueError:
                return None
            token = body.get("access_token") if isinstance(body, dict) else None
        else:
            token = parse_qs(resp.text).get("access_token", [None])[0]
        return token if isinstance(token, str) and token else None

    async def fetch_user(self, access_token: str) -> Dict[str, Any]:
        """Fetch the authenticated user's profile; must contain `login`.

        Raises:
            UpstreamAuthError: on a non-success response or a profile without a login
        """
        try:
            resp = await self.http_client.get(
                self.config.userinfo_url,
                headers={"Authorization": f"Bearer {access_token}", "User-Agent": USER_AGENT},
            )
        except httpx.HTTPError as e:
            raise UpstreamAuthError(f"Failed to fetch user info: {type(e).__name__}", 502) from e

        if not resp.is_success:
            raise UpstreamAuthError("Failed to fetch user info", resp.status_code)

        try:
            user = resp.json()
        except ValueError as e:
            raise UpstreamAuthError("Invalid user info response", 502) from e

        if not isinstance(user, dict) or not user.get("login"):
            raise UpstreamAuthError("User info response missing login", 502)
        return user
