"""
Bearer-protected MCP endpoint.

Each request resolves the caller from their access token and builds that user's
FastMCP server from the credential vault, so a user only ever sees tools bound to
their own Canvas credentials. JSON-RPC methods are answered over plain JSON.
"""

import logging
from typing import Any, Dict, Optional

from aiohttp import web
from fastmcp import Client

from canvas_mcp.auth.credential_vault import CredentialVault
from canvas_mcp.server import SERVER_NAME, create_user_server
from canvas_mcp.tools.credential_tools import ClientFactory
from .provider import AuthorizationProvider

logger = logging.getLogger("oauth_proxy.mcp")

DEFAULT_PROTOCOL_VERSION = "2025-03-26"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603
AUTH_REQUIRED = -32001


def jsonrpc_result(request_id, result: Dict[str, Any]) -> web.Response:
    return web.json_response({"jsonrpc": "2.0", "result": result, "id": request_id})


def jsonrpc_error(request_id, code: int, message: str, status: int = 200) -> web.Response:
    return web.json_response(
        {"jsonrpc": "2.0", "error": {"code": code, "message": message}, "id": request_id},
        status=status,
    )


def create_401_response(message: str) -> web.Response:
    response = jsonrpc_error(None, AUTH_REQUIRED, message, status=401)
    response.headers["WWW-Authenticate"] = 'Bearer realm="Canvas MCP Server"'
    response.headers["Cache-Control"] = "no-store"
    return response


def bearer_token(request: web.Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class CanvasMCPHandler:
    """Serves MCP initialize, tools/list and tools/call for authenticated users"""

    def __init__(self, provider: AuthorizationProvider, vault: CredentialVault, master_secret: str,
                 client_factory: Optional[ClientFactory] = None):
        self.provider = provider
        self.vault = vault
        self.master_secret = master_secret
        self.client_factory = client_factory

    async def handle_mcp_request(self, request: web.Request) -> web.Response:
        token = bearer_token(request)
        grant = await self.provider.resolve_access_token(token) if token else None
        if grant is None:
            logger.debug("Unauthenticated MCP request")
            return create_401_response("Authentication required for MCP requests")

        try:
            message = await request.json()
        except ValueError:
            return jsonrpc_error(None, PARSE_ERROR, "Parse error")
        if not isinstance(message, dict) or not isinstance(message.get("method"), str):
            return jsonrpc_error(None, INVALID_REQUEST, "Invalid request")

        method = message["method"]
        params = message.get("params") or {}
        request_id = message.get("id")
        user_id = grant["user_id"]

        # Notifications carry no id and get no body
        if request_id is None and method.startswith("notifications/"):
            return web.Response(status=202)

        try:
            if method == "initialize":
                return self._initialize(request_id, params)
            if method == "ping":
                return jsonrpc_result(request_id, {})
            if method == "tools/list":
                return jsonrpc_result(request_id, await self._list_tools(user_id))
            if method == "tools/call":
                return jsonrpc_result(request_id, await self._call_tool(user_id, params))
        except Exception:
            logger.exception(f"MCP {method} failed for {user_id}")
            return jsonrpc_error(request_id, INTERNAL_ERROR, "Internal error")

        return jsonrpc_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")

    def _initialize(self, request_id, params: Dict[str, Any]) -> web.Response:
        return jsonrpc_result(request_id, {
            "protocolVersion": params.get("protocolVersion") or DEFAULT_PROTOCOL_VERSION,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {"name": SERVER_NAME, "version": "0.1.0"},
        })

    async def _list_tools(self, user_id: str) -> Dict[str, Any]:
        server = await create_user_server(self.vault, user_id, self.master_secret,
                                          client_factory=self.client_factory)
        async with Client(server) as client:
            tools = await client.list_tools()
        return {"tools": [tool.model_dump(mode="json", by_alias=True, exclude_none=True) for tool in tools]}

    async def _call_tool(self, user_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not isinstance(name, str) or not isinstance(arguments, dict):
            return {"content": [{"type": "text", "text": "Error: tool name and arguments are required"}],
                    "isError": True}

        server = await create_user_server(self.vault, user_id, self.master_secret,
                                          client_factory=self.client_factory)
        logger.info(f"{user_id} calling {name}")
        async with Client(server) as client:
            result = await client.call_tool_mcp(name, arguments)
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)

