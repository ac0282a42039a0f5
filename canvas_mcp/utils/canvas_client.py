"""Canvas API client with retry, backoff and Link-header pagination."""
import os
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from canvas_mcp.utils.error_handling import (
    CanvasAPIError,
    MaxRetriesExceededError,
    NetworkError,
    RequestCancelledError,
    truncate_body,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0     # seconds; attempt n sleeps retry_delay * 2**n
DEFAULT_TIMEOUT = 30.0        # seconds per attempt


def build_query_params(params: Optional[Dict[str, Any]]) -> List[Tuple[str, str]]:
    """Flatten request parameters into Canvas query pairs.

    Lists become repeated `key[]=value` entries in their original order; None is skipped.
    """
    pairs: List[Tuple[str, str]] = []
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            for item in value:
                pairs.append((f"{key}[]", _query_value(item)))
        else:
            pairs.append((key, _query_value(value)))
    return pairs


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def parse_next_link(link_header: Optional[str]) -> Optional[str]:
    """Extract the rel="next" URL from a Link header"""
    if not link_header:
        return None
    for link in link_header.split(","):
        if 'rel="next"' in link:
            start, end = link.find("<"), link.find(">")
            if start != -1 and end > start:
                return link[start + 1:end].strip()
    return None


def _decode_json(response: httpx.Response) -> Any:
    # Login redirects and catch-all pages come back as 200 text/html
    try:
        return response.json()
    except ValueError:
        raise CanvasAPIError(
            f"Canvas API returned invalid JSON ({response.status_code})",
            response.status_code,
            truncate_body(response.text),
        )


class CanvasClient:
    """Authenticated client for `https://<domain>/api/v1`.

    Every request retries 429, 5xx and transport failures with exponential backoff.
    JSON array responses are followed through their `Link: rel="next"` chain.
    """

    def __init__(self, api_token: str, domain: str, max_retries: int = DEFAULT_MAX_RETRIES,
                 retry_delay: float = DEFAULT_RETRY_DELAY, timeout: float = DEFAULT_TIMEOUT,
                 cancel_event: Optional[asyncio.Event] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        if not api_token or not domain:
            raise ValueError("Canvas API token and domain are required")

        self.base_url = f"https://{domain}/api/v1"
        self.domain = domain
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.cancel_event = cancel_event
        self.client = httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    @classmethod
    def from_environment(cls, api_token: str, domain: str, **kwargs) -> "CanvasClient":
        """Create a client using CANVAS_MAX_RETRIES / CANVAS_RETRY_DELAY / CANVAS_REQUEST_TIMEOUT"""
        return cls(
            api_token,
            domain,
            max_retries=int(os.getenv("CANVAS_MAX_RETRIES", str(DEFAULT_MAX_RETRIES))),
            retry_delay=float(os.getenv("CANVAS_RETRY_DELAY", str(DEFAULT_RETRY_DELAY))),
            timeout=float(os.getenv("CANVAS_REQUEST_TIMEOUT", str(DEFAULT_TIMEOUT))),
            **kwargs,
        )

    async def aclose(self):
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def _sleep(self, seconds: float):
        await asyncio.sleep(seconds)

    def _check_cancelled(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise RequestCancelledError("Request cancelled")

    async def request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                      body: Any = None) -> Any:
        """Send a request to the Canvas API and return the parsed body.

        Args:
            method: HTTP method
            path: Path below /api/v1, e.g. "/courses"
            params: Query parameters; lists are sent as key[]=value
            body: JSON body

        Returns:
            Parsed JSON, the concatenation of all pages for list responses, or None for 204

        Raises:
            CanvasAPIError: non-retryable error response or a failed pagination page
            MaxRetriesExceededError: every attempt failed with a retryable outcome
        """
        url = f"{self.base_url}{path}"
        query = build_query_params(params)
        last_status = 0
        last_body: Optional[str] = None
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            self._check_cancelled()
            try:
                response = await self.client.request(method, url, params=query, json=body)
            except httpx.TransportError as e:
                last_error = NetworkError(f"Network error: {type(e).__name__}: {e}")
                last_status, last_body = 0, None
                logger.warning(f"{method} {path} attempt {attempt + 1} failed: {type(e).__name__}")
            else:
                if response.status_code == 429 or response.status_code >= 500:
                    last_status = response.status_code
                    last_body = truncate_body(response.text)
                    last_error = None
                    logger.warning(f"{method} {path} attempt {attempt + 1} returned {response.status_code}")
                elif not response.is_success:
                    excerpt = truncate_body(response.text) or f"HTTP {response.status_code}"
                    raise CanvasAPIError(
                        f"Canvas API Error ({response.status_code}): {excerpt}",
                        response.status_code,
                        excerpt,
                    )
                else:
                    return await self._parse_response(response)

            if attempt < self.max_retries:
                await self._sleep(self.retry_delay * (2 ** attempt))

        error = MaxRetriesExceededError(self.max_retries + 1, last_status, last_body)
        raise error from last_error

    async def _parse_response(self, response: httpx.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return None

        data = _decode_json(response)
        if isinstance(data, list):
            return await self._collect_pages(data, response)
        return data

    async def _collect_pages(self, first_page: List[Any], response: httpx.Response) -> List[Any]:
        """Follow rel="next" links sequentially; no retries, any failed page is fatal"""
        results = list(first_page)
        visited = {str(response.request.url)}
        next_url = parse_next_link(response.headers.get("link"))
        page_count = 1

        while next_url:
            if next_url in visited:
                raise CanvasAPIError(f"Canvas API pagination loop at page {page_count + 1}")
            if urlsplit(next_url).hostname != self.domain.split(":")[0]:
                raise CanvasAPIError(f"Canvas API pagination link on page {page_count} leaves {self.domain}")

            self._check_cancelled()
            visited.add(next_url)
            try:
                page = await self.client.get(next_url)
            except httpx.TransportError as e:
                raise NetworkError(f"Network error during pagination: {type(e).__name__}: {e}") from e

            if not page.is_success:
                excerpt = truncate_body(page.text) or f"HTTP {page.status_code}"
                raise CanvasAPIError(
                    f"Canvas API Error ({page.status_code}) on page {page_count + 1}: {excerpt}",
                    page.status_code,
                    excerpt,
                )

            data = _decode_json(page) if page.content else []
            if isinstance(data, list):
                results.extend(data)
            page_count += 1
            next_url = parse_next_link(page.headers.get("link"))

        if page_count > 1:
            logger.debug(f"Collected {len(results)} items across {page_count} pages")
        return results

    # Health check
    async def health_check(self) -> Dict[str, Any]:
        timestamp = datetime.now(timezone.utc).isoformat()
        try:
            user = await self.get_user_profile()
            return {"status": "ok", "timestamp": timestamp, "user": {"id": user.get("id"), "name": user.get("name")}}
        except CanvasAPIError as e:
            logger.warning(f"Canvas health check failed: {e.message}")
            return {"status": "error", "timestamp": timestamp}

    # Users
    async def get_user_profile(self) -> Dict[str, Any]:
        return await self.request("GET", "/users/self/profile")

    # Courses
    async def list_courses(self, include_ended: bool = False) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"include": ["total_students", "teachers", "term", "course_progress"]}
        if not include_ended:
            params["state"] = ["available", "completed"]
        return await self.request("GET", "/courses", params=params)

    async def get_course(self, course_id: int) -> Dict[str, Any]:
        return await self.request("GET", f"/courses/{course_id}", params={
            "include": ["total_students", "teachers", "term", "course_progress", "sections", "syllabus_body"],
        })

    # Assignments
    async def list_assignments(self, course_id: int, include_submissions: bool = False) -> List[Dict[str, Any]]:
        include = ["assignment_group", "rubric", "due_at"]
        if include_submissions:
            include.append("submission")
        return await self.request("GET", f"/courses/{course_id}/assignments", params={"include": include})

    async def get_assignment(self, course_id: int, assignment_id: int) -> Dict[str, Any]:
        return await self.request("GET", f"/courses/{course_id}/assignments/{assignment_id}",
                                  params={"include": ["assignment_group", "rubric"]})

    async def list_upcoming_assignments(self, limit: int = 10) -> List[Dict[str, Any]]:
        events = await self.request("GET", "/users/self/upcoming_events", params={"limit": limit})
        return [event for event in (events or []) if event.get("assignment")]
