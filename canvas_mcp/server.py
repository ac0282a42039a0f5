"""
Canvas MCP server construction and STDIO runner.

A server is built per caller: Canvas tools are registered only when credentials are
available, credential management tools whenever the caller has a stable identity.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastmcp import FastMCP

from canvas_mcp.auth.credential_vault import CredentialVault, Credentials
from canvas_mcp.tools.course_tools import register_course_tools
from canvas_mcp.tools.credential_tools import ClientFactory, register_credential_tools
from canvas_mcp.tools.health_tools import register_health_tools
from canvas_mcp.tools.user_tools import register_user_tools
from canvas_mcp.utils.canvas_client import CanvasClient

logger = logging.getLogger(__name__)

SERVER_NAME = "canvas-lms-mcp"

CANVAS_TOOL_REGISTRATIONS = (
    register_health_tools,
    register_user_tools,
    register_course_tools,
)


def create_canvas_server(canvas_client: Optional[CanvasClient] = None, vault: Optional[CredentialVault] = None,
                         user_id: Optional[str] = None, master_secret: Optional[str] = None,
                         client_factory: Optional[ClientFactory] = None,
                         name: str = SERVER_NAME, lifespan=None) -> FastMCP:
    """
    Create a FastMCP server exposing the Canvas tools.

    Args:
        canvas_client: Client bound to the caller's Canvas credentials, if any
        vault: Credential vault; enables the credential tools together with user_id
        user_id: Identity the caller's credentials are stored under
        master_secret: Vault master secret
        client_factory: Builds clients for credential verification
        name: Server name reported to MCP clients
        lifespan: Optional FastMCP lifespan context factory

    Returns:
        The configured FastMCP server
    """
    server = FastMCP(name, lifespan=lifespan)

    if canvas_client is not None:
        for register in CANVAS_TOOL_REGISTRATIONS:
            register(server, canvas_client)
    else:
        logger.info("No Canvas credentials available, Canvas tools not registered")

    if vault is not None and user_id:
        if not master_secret:
            raise ValueError("master_secret is required for credential tools")
        register_credential_tools(server, vault, user_id, master_secret, client_factory=client_factory)

    return server


async def create_user_server(vault: CredentialVault, user_id: str, master_secret: str,
                             client_factory: Optional[ClientFactory] = None) -> FastMCP:
    """Build the server for an authenticated user from their stored credentials.

    The Canvas client built here belongs to the server and is closed when it shuts down.
    """
    credentials = await vault.get(user_id, master_secret)
    canvas_client = None
    lifespan = None
    if credentials is not None:
        make_client = client_factory or _client_from_credentials
        canvas_client = make_client(credentials)
        lifespan = _closing(canvas_client)
    else:
        logger.info(f"No stored Canvas credentials for {user_id}")

    return create_canvas_server(
        canvas_client,
        vault=vault,
        user_id=user_id,
        master_secret=master_secret,
        client_factory=client_factory,
        lifespan=lifespan,
    )


def _client_from_credentials(credentials: Credentials) -> CanvasClient:
    return CanvasClient.from_environment(credentials.api_token, credentials.domain)


def _closing(canvas_client: CanvasClient):
    @asynccontextmanager
    async def lifespan(server: FastMCP):
        try:
            yield {}
        finally:
            await canvas_client.aclose()
            logger.debug(f"Closed Canvas client for {canvas_client.domain}")

    return lifespan


def run_with_stdio(server: FastMCP) -> None:
    """
    Run a FastMCP server with STDIO transport.

    Args:
        server: FastMCP server instance to run
    """
    logger.info("Starting MCP server with STDIO transport")
    try:
        server.run(transport="stdio")
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception as e:
        logger.error(f"Server error: {e}")
        raise
