"""User tools for the Canvas MCP server."""

import logging
from typing import Dict, Any

from fastmcp import FastMCP, Context

from canvas_mcp.utils.canvas_client import CanvasClient
from canvas_mcp.utils.error_handling import handle_canvas_error

logger = logging.getLogger("canvas_mcp_server")


def register_user_tools(server: FastMCP, canvas_client: CanvasClient):
    """Register user tools with the MCP server."""

    @server.tool()
    async def canvas_get_user_profile(ctx: Context = None) -> Dict[str, Any]:
        """Get the current user's Canvas profile (name, email, avatar, time zone)."""
        try:
            return await canvas_client.get_user_profile()
        except Exception as e:
            raise handle_canvas_error(e, "canvas_get_user_profile")

    logger.info("Registered user tools")
