"""
Utility functions for the Canvas OAuth proxy
"""

import re
import secrets
import logging
from typing import Dict, Any, Optional
from urllib.parse import urlparse
from aiohttp import web

# Host-locked cookie prefix: browsers refuse these from subdomains or without Secure/Path=/
COOKIE_NAMES = {
    "csrf": "__Host-CSRF_TOKEN",
    "approved_clients": "__Host-APPROVED_CLIENTS",
    "consented_state": "__Host-CONSENTED_STATE",
}

_HOSTNAME_RE = re.compile(r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)*(:\d{1,5})?$")


def generate_secure_token() -> str:
    """Generate an unguessable token for CSRF and OAuth state"""
    return secrets.token_urlsafe(32)


def build_cookie(name: str, value: str, max_age: int) -> str:
    """Build a Set-Cookie header value with the proxy's fixed attributes"""
    return f"{name}={value}; HttpOnly; Secure; Path=/; SameSite=Lax; Max-Age={max_age}"


def get_cookie_value(request: web.Request, name: str) -> Optional[str]:
    """Read a cookie from the request, treating empty values as absent"""
    value = request.cookies.get(name)
    return value or None


def normalize_canvas_domain(domain: str) -> Optional[str]:
    """Reduce user input like 'https://school.instructure.com/' to a bare hostname.

    Returns None when the result is not a plausible hostname.
    """
    candidate = domain.strip().lower()
    if not candidate:
        return None
    if "://" not in candidate:
        candidate = f"https://{candidate}"

    try:
        parsed = urlparse(candidate)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or parsed.username or parsed.password:
        return None

    host = parsed.netloc
    if not host or not _HOSTNAME_RE.match(host):
        return None
    return host


def audit_log(event_type: str, user_id: str = None, details: Dict[str, Any] = None):
    """Log security-relevant events for audit purposes"""
    logger = logging.getLogger("oauth_proxy.audit")

    log_entry = {
        "event_type": event_type,
        "user_id": user_id,
        "details": details or {}
    }

    logger.info(f"AUDIT: {log_entry}")
