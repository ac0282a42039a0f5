"""Connectivity tools for the Canvas MCP server."""

import logging
from typing import Dict, Any

from fastmcp import FastMCP, Context

from canvas_mcp.utils.canvas_client import CanvasClient
from canvas_mcp.utils.error_handling import handle_canvas_error

logger = logging.getLogger("canvas_mcp_server")


def register_health_tools(server: FastMCP, canvas_client: CanvasClient):
    """Register the health check tool with the MCP server.

    Args:
        server: The FastMCP server instance
        canvas_client: Canvas client bound to the caller's credentials
    """

    @server.tool()
    async def canvas_health_check(ctx: Context = None) -> Dict[str, Any]:
        """Check the health and connectivity of the Canvas API.

        Returns:
            Dictionary with status ("ok" or "error"), a timestamp and the authenticated user
        """
        try:
            logger.info(f"Running Canvas health check against {canvas_client.domain}")
            return await canvas_client.health_check()
        except Exception as e:
            raise handle_canvas_error(e, "canvas_health_check")

    logger.info("Registered health tools")
