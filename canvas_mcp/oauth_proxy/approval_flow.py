"""
Approval flow for the Canvas OAuth proxy.

GET /authorize renders the approval form, POST /authorize captures Canvas credentials and
either finishes the authorization immediately (direct path) or sends the user to GitHub
(federated path), and GET /callback finishes the federated path.
"""

import logging
import uuid
from typing import Any, Iterable, Mapping, Optional

from aiohttp import web

from canvas_mcp.auth.credential_vault import CredentialVault, Credentials
from canvas_mcp.utils.error_handling import InvalidRequestError, OAuthError, UpstreamAuthError
from .cookies import ApprovedClientRegistry, CsrfGuard, decode_signed_payload, encode_signed_payload
from .models import AuthPath, PendingAuthorization, ProxyConfig
from .provider import AuthorizationProvider
from .state_store import OAuthStateStore
from .ui_handlers import render_approval_dialog
from .upstream import UpstreamTokenExchange
from .utils import audit_log, normalize_canvas_domain

logger = logging.getLogger("oauth_proxy.approval")


def _form_string(form: Mapping[str, Any], field: str) -> Optional[str]:
    value = form.get(field)
    if not value or not isinstance(value, str):
        return None
    return value


class ApprovalFlow:
    """Handles the authorize and callback endpoints"""

    def __init__(self, config: ProxyConfig, vault: CredentialVault, state_store: OAuthStateStore,
                 provider: AuthorizationProvider, upstream: Optional[UpstreamTokenExchange] = None,
                 csrf: Optional[CsrfGuard] = None, registry: Optional[ApprovedClientRegistry] = None):
        if config.auth_mode is AuthPath.FEDERATED and upstream is None:
            raise ValueError("Federated authorization requires an upstream token exchange")

        self.config = config
        self.vault = vault
        self.state_store = state_store
        self.provider = provider
        self.upstream = upstream
        self.csrf = csrf or CsrfGuard()
        self.registry = registry or ApprovedClientRegistry()

    @property
    def secret(self) -> str:
        return self.config.cookie_secret

    def _callback_url(self, request: web.Request) -> str:
        if self.config.public_base_url:
            return f"{self.config.public_base_url.rstrip('/')}/callback"
        return str(request.url.with_path("/callback"))

    @staticmethod
    def _redirect(location: str, cookies: Iterable[str] = ()) -> web.Response:
        response = web.Response(status=302, headers={"Location": location})
        for cookie in cookies:
            response.headers.add("Set-Cookie", cookie)
        return response

    # ------------------------------------------------------------------
    # GET /authorize
    # ------------------------------------------------------------------

    async def authorize_get(self, request: web.Request) -> web.Response:
        try:
            auth_request = await self.provider.parse_auth_request(request)
            if not auth_request.client_id:
                return web.Response(text="Invalid request", status=400)

            pending = PendingAuthorization(path=self.config.auth_mode, auth_request=auth_request)

            # Returning browser that already approved this client and stored credentials upstream
            if pending.path is AuthPath.FEDERATED and self.registry.is_approved(request, auth_request.client_id, self.secret):
                logger.info(f"Client {auth_request.client_id} previously approved, skipping approval dialog")
                state_token, binding_cookie = await self.state_store.create(pending, self.secret)
                return self._redirect(
                    self.upstream.authorize_url(self._callback_url(request), state_token),
                    [binding_cookie],
                )

            client = await self.provider.lookup_client(auth_request.client_id)
            csrf_token, csrf_cookie = self.csrf.issue()

            logger.info(f"Rendering approval dialog for client {auth_request.client_id}")
            return render_approval_dialog(
                request,
                client=client,
                server_name=self.config.server_name,
                server_description=self._server_description(),
                encoded_state=encode_signed_payload(pending.to_dict(), self.secret),
                csrf_token=csrf_token,
                set_cookie=csrf_cookie,
            )

        except OAuthError as e:
            logger.warning(f"Rejected authorization request: {e.description}")
            return e.to_response()
        except Exception:
            logger.exception("Failed to render approval dialog")
            return web.Response(text="Internal server error", status=500)

    def _server_description(self) -> str:
        if self.config.auth_mode is AuthPath.FEDERATED:
            return "Provides Canvas LMS tools for AI assistants. Sign in with GitHub to authorize access."
        return "Provides Canvas LMS tools for AI assistants. Enter your Canvas credentials to authorize access."

    # ------------------------------------------------------------------
    # POST /authorize
    # ------------------------------------------------------------------

    async def authorize_post(self, request: web.Request) -> web.Response:
        try:
            form = await request.post()
            self.csrf.validate_request(form, request)

            pending = self._decode_form_state(_form_string(form, "state"))
            credentials = self._read_credentials(form)

            if pending.path is AuthPath.DIRECT:
                return await self._complete_direct(request, pending, credentials)
            return await self._start_federated(request, pending, credentials)

        except OAuthError as e:
            audit_log("authorization_rejected", details={"reason": e.description, "remote": request.remote})
            return e.to_response()
        except Exception:
            logger.exception("Authorization approval failed")
            return web.Response(text="Internal server error", status=500)

    def _decode_form_state(self, encoded: Optional[str]) -> PendingAuthorization:
        if not encoded:
            raise InvalidRequestError("Missing state in form data")

        data = decode_signed_payload(encoded, self.secret)
        if data is None:
            raise InvalidRequestError("Invalid state data")
        try:
            pending = PendingAuthorization.from_dict(data)
        except (ValueError, KeyError, TypeError):
            raise InvalidRequestError("Invalid state data")

        if not pending.auth_request.client_id:
            raise InvalidRequestError("Invalid request")
        if pending.path is not self.config.auth_mode:
            raise InvalidRequestError("Authorization path not supported by this server")
        return pending

    @staticmethod
    def _read_credentials(form: Mapping[str, Any]) -> Credentials:
        api_token = _form_string(form, "canvas_api_token")
        domain = _form_string(form, "canvas_domain")
        if not api_token or not domain:
            raise InvalidRequestError("Canvas API token and domain are required")

        normalized = normalize_canvas_domain(domain)
        if not normalized:
            raise InvalidRequestError("Invalid Canvas domain")
        return Credentials(api_token=api_token.strip(), domain=normalized)

    async def _complete_direct(self, request: web.Request, pending: PendingAuthorization,
                               credentials: Credentials) -> web.Response:
        auth_request = pending.auth_request
        user_id = str(uuid.uuid4())

        await self.vault.put(user_id, credentials, self.secret, ttl=self.config.credential_ttl_seconds)
        approved_cookie = self.registry.add_approved_client(request, auth_request.client_id, self.secret)

        redirect_to = await self.provider.complete_authorization(
            request=auth_request,
            user_id=user_id,
            metadata={"label": f"canvas-user-{user_id[:8]}"},
            scope=auth_request.scope,
            props={"login": user_id},
        )

        audit_log("authorization_completed", user_id=user_id, details={
            "client_id": auth_request.client_id,
            "path": pending.path.value,
            "canvas_domain": credentials.domain,
        })
        return self._redirect(redirect_to, [approved_cookie, self.csrf.clear_cookie()])

    async def _start_federated(self, request: web.Request, pending: PendingAuthorization,
                               credentials: Credentials) -> web.Response:
        auth_request = pending.auth_request
        approved_cookie = self.registry.add_approved_client(request, auth_request.client_id, self.secret)

        state_token, binding_cookie = await self.state_store.create(pending, self.secret)
        await self.vault.stage(state_token, credentials, self.secret)

        audit_log("upstream_login_started", details={"client_id": auth_request.client_id})
        return self._redirect(
            self.upstream.authorize_url(self._callback_url(request), state_token),
            [approved_cookie, binding_cookie, self.csrf.clear_cookie()],
        )

    # ------------------------------------------------------------------
    # GET /callback
    # ------------------------------------------------------------------

    async def callback(self, request: web.Request) -> web.Response:
        state_token = request.query.get("state")

        try:
            pending, clear_cookie = await self.state_store.validate(request, self.secret)
        except OAuthError as e:
            audit_log("oauth_callback_rejected", details={"reason": e.description, "remote": request.remote})
            return e.to_response()
        except Exception:
            logger.exception("State validation failed")
            return web.Response(text="Internal server error", status=500)

        try:
            auth_request = pending.auth_request
            if pending.path is not AuthPath.FEDERATED or not auth_request.client_id:
                return web.Response(text="Invalid OAuth request data", status=400)

            if "error" in request.query:
                logger.warning(f"Upstream authorization denied: {request.query['error']}")
                return OAuthError("access_denied", request.query.get("error_description", request.query["error"])).to_response()

            access_token, error_response = await self.upstream.exchange(request.query.get("code"), self._callback_url(request))
            if error_response is not None:
                return error_response

            try:
                user = await self.upstream.fetch_user(access_token)
            except UpstreamAuthError as e:
                logger.error(f"Upstream user lookup failed: {e.message}")
                return e.to_response()

            login = user["login"]
            await self._promote_staged_credentials(state_token, login)

            redirect_to = await self.provider.complete_authorization(
                request=auth_request,
                user_id=login,
                metadata={"label": user.get("name") or login},
                scope=auth_request.scope,
                props={
                    "login": login,
                    "name": user.get("name") or login,
                    "email": user.get("email") or "",
                },
            )

            audit_log("authorization_completed", user_id=login, details={
                "client_id": auth_request.client_id,
                "path": pending.path.value,
            })
            return self._redirect(redirect_to, [clear_cookie])

        except Exception:
            logger.exception("OAuth callback failed")
            return web.Response(text="Internal server error", status=500)

    async def _promote_staged_credentials(self, state_token: str, login: str) -> None:
        # Best effort: canvas_setup_credentials remains available if this fails
        try:
            promoted = await self.vault.promote(state_token, login, self.secret)
            if promoted:
                logger.info(f"Stored Canvas credentials captured during approval for {login}")
        except Exception as e:
            logger.warning(f"Could not store staged Canvas credentials for {login}: {type(e).__name__}")
