#!/usr/bin/env python3
"""
Canvas OAuth Proxy Server

Wires the approval flow, credential vault and authorization provider into an aiohttp
application serving OAuth discovery, /register, /authorize, /token, /callback, /mcp and /health.
"""

import asyncio
import logging
import argparse
from datetime import datetime, timezone
from typing import Optional

from aiohttp import web
from dotenv import load_dotenv

from canvas_mcp.auth.credential_vault import CredentialVault
from canvas_mcp.auth.kv_store import KeyValueStore, MemoryKeyValueStore
from canvas_mcp.auth.oauth_provider import UpstreamOAuthConfig
from canvas_mcp.tools.credential_tools import ClientFactory
from canvas_mcp.utils.logging import configure_logging
from .approval_flow import ApprovalFlow
from .auth_handler import AuthHandler
from .mcp_handler import CanvasMCPHandler
from .models import AuthPath, ProxyConfig
from .provider import AuthorizationProvider, InMemoryAuthorizationProvider
from .state_store import OAuthStateStore
from .upstream import UpstreamTokenExchange

logger = logging.getLogger("oauth_proxy")

SECURITY_HEADERS = {
    'X-Content-Type-Options': 'nosniff',
    'X-Frame-Options': 'DENY',
    'Referrer-Policy': 'strict-origin-when-cross-origin'
}


class CanvasOAuthProxy:
    """OAuth approval front end for the Canvas MCP server"""

    def __init__(self, config: ProxyConfig, store: Optional[KeyValueStore] = None,
                 provider: Optional[AuthorizationProvider] = None,
                 upstream: Optional[UpstreamTokenExchange] = None,
                 client_factory: Optional[ClientFactory] = None):
        self.config = config
        self.store = store or MemoryKeyValueStore()
        self.provider = provider or InMemoryAuthorizationProvider(self.store)

        if config.auth_mode is AuthPath.FEDERATED and upstream is None:
            upstream = UpstreamTokenExchange(UpstreamOAuthConfig.from_environment())
        self.upstream = upstream

        self.vault = CredentialVault(self.store, credential_ttl=config.credential_ttl_seconds)
        self.state_store = OAuthStateStore(self.store)
        self._cleanup_task: Optional[asyncio.Task] = None
        self.approval_flow = ApprovalFlow(
            config, self.vault, self.state_store, self.provider, upstream=self.upstream
        )
        self.auth_handler = AuthHandler(config, self.provider)
        self.mcp_handler = CanvasMCPHandler(self.provider, self.vault, config.cookie_secret,
                                            client_factory=client_factory)

        self.app = web.Application(middlewares=[self._security_middleware])
        self._setup_routes()
        self.app.on_cleanup.append(self._on_cleanup)

    @web.middleware
    async def _security_middleware(self, request: web.Request, handler):
        """Add security headers and log every request"""
        logger.debug(f"{request.method} {request.path} from {request.remote}")
        response = await handler(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response

    def _setup_routes(self):
        self.app.router.add_get("/health", self._health_check)
        self.app.router.add_get("/.well-known/oauth-authorization-server",
                                self.auth_handler.authorization_server_metadata)
        self.app.router.add_post("/register", self.auth_handler.register_client)
        self.app.router.add_options("/register", self.auth_handler.preflight)
        self.app.router.add_post("/token", self.auth_handler.token)
        self.app.router.add_options("/token", self.auth_handler.preflight)
        self.app.router.add_post("/mcp", self.mcp_handler.handle_mcp_request)
        self.app.router.add_get("/authorize", self.approval_flow.authorize_get)
        self.app.router.add_post("/authorize", self.approval_flow.authorize_post)
        if self.config.auth_mode is AuthPath.FEDERATED:
            self.app.router.add_get("/callback", self.approval_flow.callback)

    async def _health_check(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "healthy",
            "auth_mode": self.config.auth_mode.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    async def _on_cleanup(self, app: web.Application):
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
        if self.upstream is not None:
            await self.upstream.aclose()

    async def _periodic_cleanup(self):
        cleanup = getattr(self.store, "cleanup_expired", None)
        if cleanup is None:
            return
        while True:
            await asyncio.sleep(self.config.cleanup_interval_minutes * 60)
            try:
                await cleanup()
            except Exception as e:
                logger.error(f"Cleanup task error: {e}")

    async def run(self, host: Optional[str] = None, port: Optional[int] = None) -> web.AppRunner:
        host = host or self.config.host
        port = port or self.config.port

        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()

        self._cleanup_task = asyncio.create_task(self._periodic_cleanup())

        logger.info(f"Canvas OAuth proxy listening on http://{host}:{port} ({self.config.auth_mode.value} mode)")
        logger.info("  - POST /register  - dynamic client registration")
        logger.info("  - GET  /authorize - approval dialog")
        logger.info("  - POST /authorize - credential submission")
        logger.info("  - POST /token     - authorization code exchange")
        logger.info("  - POST /mcp       - MCP endpoint (Bearer token)")
        if self.config.auth_mode is AuthPath.FEDERATED:
            logger.info("  - GET  /callback  - upstream OAuth callback")
        return runner


async def main():
    """Main entry point for the Canvas OAuth proxy server"""
    load_dotenv()

    parser = argparse.ArgumentParser(description="OAuth approval proxy for the Canvas LMS MCP server")
    parser.add_argument("--host", default=None, help="Host to bind to (default: OAUTH_PROXY_HOST or localhost)")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to (default: OAUTH_PROXY_PORT or 3001)")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default=None)
    args = parser.parse_args()

    configure_logging(args.log_level)

    config = ProxyConfig.from_environment()
    proxy = CanvasOAuthProxy(config)
    runner = await proxy.run(host=args.host, port=args.port)

    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        logger.info("Stopping Canvas OAuth proxy...")
        await runner.cleanup()


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
