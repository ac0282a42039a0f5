"""Course and assignment tools for the Canvas MCP server."""

import logging
from typing import List, Dict, Any

from fastmcp import FastMCP, Context
from pydantic import Field

from canvas_mcp.utils.canvas_client import CanvasClient
from canvas_mcp.utils.error_handling import handle_canvas_error

logger = logging.getLogger("canvas_mcp_server")


def register_course_tools(server: FastMCP, canvas_client: CanvasClient):
    """Register all course and assignment tools with the MCP server.

    Args:
        server: The FastMCP server instance
        canvas_client: Canvas client bound to the caller's credentials
    """

    @server.tool()
    async def canvas_list_courses(
        include_ended: bool = Field(default=False, description="Include courses that have ended"),
        ctx: Context = None
    ) -> List[Dict[str, Any]]:
        """List the courses the current user is enrolled in.

        Follows every page of results, so large enrollments are returned in full.

        Args:
            include_ended: Include courses that have ended
            ctx: MCP Context for logging

        Returns:
            List of course objects with term, teachers and progress information
        """
        try:
            courses = await canvas_client.list_courses(include_ended=include_ended)
            logger.info(f"Retrieved {len(courses or [])} courses")
            return courses or []
        except Exception as e:
            raise handle_canvas_error(e, "canvas_list_courses")

    @server.tool()
    async def canvas_get_course(
        course_id: int = Field(..., description="ID of the course"),
        ctx: Context = None
    ) -> Dict[str, Any]:
        """Get detailed information about a specific course, including sections and syllabus."""
        try:
            return await canvas_client.get_course(course_id)
        except Exception as e:
            raise handle_canvas_error(e, "canvas_get_course")

    @server.tool()
    async def canvas_list_assignments(
        course_id: int = Field(..., description="ID of the course"),
        include_submissions: bool = Field(default=False, description="Include the user's submission for each assignment"),
        ctx: Context = None
    ) -> List[Dict[str, Any]]:
        """List assignments for a course.

        Args:
            course_id: ID of the course
            include_submissions: Include the user's submission for each assignment
            ctx: MCP Context for logging

        Returns:
            List of assignment objects with group and rubric information
        """
        try:
            assignments = await canvas_client.list_assignments(course_id, include_submissions=include_submissions)
            logger.info(f"Retrieved {len(assignments or [])} assignments for course {course_id}")
            return assignments or []
        except Exception as e:
            raise handle_canvas_error(e, "canvas_list_assignments")

    @server.tool()
    async def canvas_get_assignment(
        course_id: int = Field(..., description="ID of the course"),
        assignment_id: int = Field(..., description="ID of the assignment"),
        ctx: Context = None
    ) -> Dict[str, Any]:
        """Get a single assignment with its group and rubric."""
        try:
            return await canvas_client.get_assignment(course_id, assignment_id)
        except Exception as e:
            raise handle_canvas_error(e, "canvas_get_assignment")

    @server.tool()
    async def canvas_get_upcoming_assignments(
        limit: int = Field(default=10, description="Maximum number of upcoming assignments (1-50)"),
        ctx: Context = None
    ) -> List[Dict[str, Any]]:
        """Get upcoming assignment due dates across all courses."""
        try:
            if limit < 1 or limit > 50:
                raise ValueError("Limit must be between 1 and 50")
            return await canvas_client.list_upcoming_assignments(limit=limit)
        except Exception as e:
            raise handle_canvas_error(e, "canvas_get_upcoming_assignments")

    logger.info("Registered course tools")
