"""
Authorization provider collaborator.

The proxy only adds the approval/credential-capture step; client registration and
authorization-code bookkeeping belong to the provider. `InMemoryAuthorizationProvider`
is a minimal provider backed by the key-value store for development and tests.
"""

import base64
import hashlib
import hmac
import json
import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

from aiohttp import web

from canvas_mcp.auth.kv_store import KeyValueStore
from canvas_mcp.utils.error_handling import InvalidRequestError
from .models import AuthRequest, ClientInfo
from .utils import audit_log

logger = logging.getLogger("oauth_proxy.provider")

CLIENT_PREFIX = "oauth:client:"
GRANT_PREFIX = "oauth:grant:"
GRANT_TTL_SECONDS = 600  # OAuth 2.1 recommends 10 minutes max for codes
TOKEN_PREFIX = "oauth:token:"
ACCESS_TOKEN_TTL_SECONDS = 3600


class AuthorizationProvider:
    """Interface the approval flow and the register, token and MCP endpoints rely on"""

    async def parse_auth_request(self, request: web.Request) -> AuthRequest:
        raise NotImplementedError

    async def lookup_client(self, client_id: str) -> Optional[ClientInfo]:
        raise NotImplementedError

    async def complete_authorization(self, request: AuthRequest, user_id: str, metadata: Dict[str, Any],
                                     scope: List[str], props: Dict[str, Any]) -> str:
        """Issue the authorization and return the URL to redirect the user agent to"""
        raise NotImplementedError

    async def register_client(self, redirect_uris: List[str], client_name: Optional[str] = None,
                              client_uri: Optional[str] = None) -> ClientInfo:
        raise NotImplementedError

    async def exchange_code(self, code: str, client_id: str, redirect_uri: str,
                            code_verifier: Optional[str] = None) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def issue_access_token(self, grant: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def resolve_access_token(self, access_token: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError


class InMemoryAuthorizationProvider(AuthorizationProvider):

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def register_client(self, redirect_uris: List[str], client_name: Optional[str] = None,
                              client_uri: Optional[str] = None) -> ClientInfo:
        client = ClientInfo(
            client_id=secrets.token_urlsafe(16),
            redirect_uris=list(redirect_uris),
            client_name=client_name,
            client_uri=client_uri,
            registered_at=datetime.now(timezone.utc).isoformat(),
        )
        await self.store.put(f"{CLIENT_PREFIX}{client.client_id}", json.dumps(client.__dict__))
        logger.info(f"Registered OAuth client {client.client_id} ({client_name or 'unnamed'})")
        return client

    async def lookup_client(self, client_id: str) -> Optional[ClientInfo]:
        raw = await self.store.get(f"{CLIENT_PREFIX}{client_id}")
        if not raw:
            return None
        return ClientInfo.from_dict(json.loads(raw))

    async def parse_auth_request(self, request: web.Request) -> AuthRequest:
        """Validate an authorize query against the registered client"""
        query = request.query
        client_id = query.get("client_id", "")
        if not client_id:
            raise InvalidRequestError("Invalid request")

        if query.get("response_type", "code") != "code":
            raise InvalidRequestError("Unsupported response_type")

        client = await self.lookup_client(client_id)
        if client is None:
            raise InvalidRequestError("Invalid client")

        redirect_uri = query.get("redirect_uri", "")
        if not redirect_uri and len(client.redirect_uris) == 1:
            redirect_uri = client.redirect_uris[0]
        if redirect_uri not in client.redirect_uris:
            raise InvalidRequestError("Invalid redirect URI")

        code_challenge = query.get("code_challenge")
        code_challenge_method = query.get("code_challenge_method")
        if code_challenge and (code_challenge_method or "plain") not in ("S256", "plain"):
            raise InvalidRequestError("Unsupported code_challenge_method")

        return AuthRequest(
            response_type="code",
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=query.get("scope", "").split(),
            state=query.get("state"),
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method if code_challenge else None,
        )

    async def complete_authorization(self, request: AuthRequest, user_id: str, metadata: Dict[str, Any],
                                     scope: List[str], props: Dict[str, Any]) -> str:
        code = secrets.token_urlsafe(32)
        grant = {
            "client_id": request.client_id,
            "redirect_uri": request.redirect_uri,
            "user_id": user_id,
            "scope": list(scope),
            "metadata": metadata,
            "props": props,
            "code_challenge": request.code_challenge,
            "code_challenge_method": request.code_challenge_method,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        await self.store.put(f"{GRANT_PREFIX}{code}", json.dumps(grant), ttl=GRANT_TTL_SECONDS)

        audit_log("authorization_granted", user_id=user_id, details={
            "client_id": request.client_id,
            "scope": list(scope),
        })

        params = {"code": code}
        if request.state:
            params["state"] = request.state
        return _append_query(request.redirect_uri, params)

    async def exchange_code(self, code: str, client_id: str, redirect_uri: str,
                            code_verifier: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Redeem an authorization code once; returns the grant or None"""
        grant_key = f"{GRANT_PREFIX}{code}"
        raw = await self.store.get(grant_key)
        if not raw:
            return None
        await self.store.delete(grant_key)

        grant = json.loads(raw)
        if grant["client_id"] != client_id or grant["redirect_uri"] != redirect_uri:
            logger.warning(f"Authorization code presented by wrong client or redirect URI: {client_id}")
            return None

        challenge = grant.get("code_challenge")
        if challenge:
            if not code_verifier:
                return None
            if grant.get("code_challenge_method") == "S256":
                digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
                computed = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
            else:
                computed = code_verifier
            if not hmac.compare_digest(computed, challenge):
                logger.warning(f"PKCE verification failed for client {client_id}")
                return None

        return grant

    async def issue_access_token(self, grant: Dict[str, Any]) -> Dict[str, Any]:
        """Mint a bearer token for a redeemed grant; only its hash is stored"""
        access_token = secrets.token_urlsafe(32)
        record = {
            "user_id": grant["user_id"],
            "client_id": grant["client_id"],
            "scope": grant.get("scope", []),
            "props": grant.get("props", {}),
        }
        await self.store.put(f"{TOKEN_PREFIX}{_token_hash(access_token)}", json.dumps(record),
                             ttl=ACCESS_TOKEN_TTL_SECONDS)
        audit_log("access_token_issued", user_id=grant["user_id"], details={"client_id": grant["client_id"]})
        return {
            "access_token": access_token,
            "token_type": "Bearer",
            "expires_in": ACCESS_TOKEN_TTL_SECONDS,
            "scope": " ".join(record["scope"]),
        }

    async def resolve_access_token(self, access_token: str) -> Optional[Dict[str, Any]]:
        if not access_token:
            return None
        raw = await self.store.get(f"{TOKEN_PREFIX}{_token_hash(access_token)}")
        return json.loads(raw) if raw else None


def _token_hash(access_token: str) -> str:
    return hashlib.sha256(access_token.encode("utf-8")).hexdigest()


def _append_query(url: str, params: Dict[str, str]) -> str:
    scheme, netloc, path, query, fragment = urlsplit(url)
    merged = parse_qsl(query, keep_blank_values=True) + list(params.items())
    return urlunsplit((scheme, netloc, path, urlencode(merged), fragment))
