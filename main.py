"""
Main entry point for the Canvas LMS MCP Server.

This script runs the MCP server with STDIO transport for direct MCP client connections
(such as VS Code MCP extensions, Claude Desktop, etc.). It does NOT provide OAuth
authentication; Canvas credentials come from the environment.

BEHAVIOR:
- Runs MCP server with STDIO transport (no HTTP, no OAuth)
- Validates required Canvas environment variables
- Creates and starts the MCP server for direct client connections
- Exits when the STDIO connection is closed

FOR OAUTH-PROTECTED WEB ACCESS:
Run the approval proxy instead:
    canvas-mcp-proxy --help
"""
import os
import sys
import logging

from dotenv import load_dotenv

from canvas_mcp.oauth_proxy.utils import normalize_canvas_domain
from canvas_mcp.utils.logging import configure_logging

load_dotenv()

logger = logging.getLogger("canvas_mcp")


def main():
    """Start the Canvas MCP server with STDIO transport."""
    configure_logging()
    try:
        required_vars = ["CANVAS_API_TOKEN", "CANVAS_DOMAIN"]
        missing_vars = [var for var in required_vars if not os.getenv(var)]

        if missing_vars:
            logger.error(f"Missing required environment variables: {', '.join(missing_vars)}")
            logger.error("Create a .env file with:")
            logger.error("CANVAS_DOMAIN=school.instructure.com")
            logger.error("CANVAS_API_TOKEN=your_api_token_here")
            logger.error("LOG_LEVEL=INFO")
            logger.error("")
            logger.error("Generate an API token in Canvas: Account > Settings > New Access Token")
            return 1

        domain = normalize_canvas_domain(os.getenv("CANVAS_DOMAIN"))
        if not domain:
            logger.error("CANVAS_DOMAIN must be a hostname like school.instructure.com")
            return 1

        from canvas_mcp.server import create_canvas_server, run_with_stdio
        from canvas_mcp.utils.canvas_client import CanvasClient

        canvas_client = CanvasClient.from_environment(os.getenv("CANVAS_API_TOKEN"), domain)

        logger.info(f"Starting Canvas MCP server for {domain} with STDIO transport")
        server = create_canvas_server(canvas_client)
        run_with_stdio(server)

        return 0

    except Exception as e:
        logger.error(f"Error starting server: {e}")
        logger.exception("Full error details:")
        return 1


if __name__ == "__main__":
    sys.exit(main())
