"""
Server-side OAuth state for the federated login round trip.

A state token maps to the pending authorization for ten minutes. The browser that started
the flow also receives a cookie holding an HMAC of the token, so a state value copied out of
a redirect URL or log cannot be completed from another browser.
"""

import json
import logging
from typing import Tuple

from aiohttp import web

from canvas_mcp.auth import signing
from canvas_mcp.auth.kv_store import KeyValueStore
from canvas_mcp.utils.error_handling import OAuthError
from .models import PendingAuthorization
from .utils import COOKIE_NAMES, build_cookie, generate_secure_token, get_cookie_value

logger = logging.getLogger("oauth_proxy.state")

STATE_PREFIX = "oauth:state:"
STATE_TTL_SECONDS = 600


class OAuthStateStore:
    """Single-use, time-bounded state tokens bound to the issuing browser"""

    cookie_name = COOKIE_NAMES["consented_state"]

    def __init__(self, store: KeyValueStore, ttl: int = STATE_TTL_SECONDS):
        self.store = store
        self.ttl = ttl

    async def create(self, pending: PendingAuthorization, secret: str) -> Tuple[str, str]:
        """Persist pending under a fresh token.

        Returns:
            (state_token, Set-Cookie value binding the token to this browser)
        """
        state_token = generate_secure_token()
        await self.store.put(f"{STATE_PREFIX}{state_token}", json.dumps(pending.to_dict()), ttl=self.ttl)

        binding = signing.sign(state_token, secret)
        logger.debug(f"Created OAuth state for client {pending.auth_request.client_id}")
        return state_token, build_cookie(self.cookie_name, binding, self.ttl)

    async def validate(self, request: web.Request, secret: str) -> Tuple[PendingAuthorization, str]:
        """Check the callback's state against the store and the binding cookie.

        Consumes the stored entry on success.

        Returns:
            (pending authorization, Set-Cookie value clearing the binding cookie)

        Raises:
            OAuthError: invalid_request for a missing, unknown, expired or foreign state
        """
        state_token = request.query.get("state")
        if not state_token:
            raise OAuthError("invalid_request", "Missing state parameter")

        state_key = f"{STATE_PREFIX}{state_token}"
        raw = await self.store.get(state_key)
        if not raw:
            raise OAuthError("invalid_request", "Invalid or expired state")

        binding = get_cookie_value(request, self.cookie_name)
        if not binding:
            raise OAuthError("invalid_request", "Missing session binding cookie - authorization flow must be restarted")
        if not signing.verify(binding, state_token, secret):
            raise OAuthError("invalid_request", "State token does not match this session")

        # Single use: delete before anything else can fail
        await self.store.delete(state_key)

        try:
            pending = PendingAuthorization.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding corrupt OAuth state entry: {type(e).__name__}")
            raise OAuthError("invalid_request", "Invalid state data")

        return pending, build_cookie(self.cookie_name, "", 0)
