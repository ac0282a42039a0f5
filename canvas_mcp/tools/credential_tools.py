"""Tools that let an authenticated user manage their stored Canvas credentials."""

import logging
from typing import Callable, Dict, Any, Optional

from fastmcp import FastMCP, Context
from fastmcp.exceptions import ToolError
from pydantic import Field

from canvas_mcp.auth.credential_vault import CredentialVault, Credentials
from canvas_mcp.oauth_proxy.utils import audit_log, normalize_canvas_domain
from canvas_mcp.utils.canvas_client import CanvasClient
from canvas_mcp.utils.error_handling import handle_canvas_error

logger = logging.getLogger("canvas_mcp_server")

ClientFactory = Callable[[Credentials], CanvasClient]


def _default_client_factory(credentials: Credentials) -> CanvasClient:
    return CanvasClient.from_environment(credentials.api_token, credentials.domain)


def register_credential_tools(server: FastMCP, vault: CredentialVault, user_id: str, master_secret: str,
                              client_factory: Optional[ClientFactory] = None):
    """Register credential management tools for one user.

    Args:
        server: The FastMCP server instance
        vault: Credential vault shared with the OAuth proxy
        user_id: Identity the credentials are stored under
        master_secret: Vault master secret
        client_factory: Builds the client used to verify new credentials
    """
    make_client = client_factory or _default_client_factory

    @server.tool()
    async def canvas_setup_credentials(
        canvas_domain: str = Field(..., description="Canvas instance hostname, e.g. school.instructure.com"),
        canvas_api_token: str = Field(..., description="Canvas API access token"),
        ctx: Context = None
    ) -> Dict[str, Any]:
        """Store or replace your Canvas credentials.

        The token is verified against the Canvas API before it is stored encrypted.
        Reconnect after setup so the Canvas tools become available.
        """
        domain = normalize_canvas_domain(canvas_domain)
        if not domain:
            raise ToolError("Error: Invalid Canvas domain")
        if not canvas_api_token or not canvas_api_token.strip():
            raise ToolError("Error: Canvas API token is required")

        credentials = Credentials(api_token=canvas_api_token.strip(), domain=domain)
        client = make_client(credentials)
        try:
            profile = await client.get_user_profile()
        except Exception as e:
            raise handle_canvas_error(e, "canvas_setup_credentials")
        finally:
            await client.aclose()

        await vault.put(user_id, credentials, master_secret)
        audit_log("credentials_stored", user_id=user_id, details={"canvas_domain": domain})
        return {
            "status": "stored",
            "canvas_domain": domain,
            "canvas_user": profile.get("name") if isinstance(profile, dict) else None,
        }

    @server.tool()
    async def canvas_delete_credentials(ctx: Context = None) -> Dict[str, Any]:
        """Delete your stored Canvas credentials."""
        await vault.delete(user_id)
        audit_log("credentials_deleted", user_id=user_id)
        return {"status": "deleted"}

    logger.info("Registered credential tools")
