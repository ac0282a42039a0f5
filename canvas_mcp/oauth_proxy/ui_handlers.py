"""
Approval dialog for the Canvas OAuth proxy
"""

import html
from typing import Optional
from urllib.parse import urlparse

from aiohttp import web

from .models import ClientInfo


def sanitize_url(url: Optional[str]) -> str:
    """Return url if it is a plain http(s) URL without control characters, else ''"""
    normalized = (url or "").strip()
    if not normalized:
        return ""
    if any(ord(ch) <= 0x1f or 0x7f <= ord(ch) <= 0x9f for ch in normalized):
        return ""
    try:
        parsed = urlparse(normalized)
    except ValueError:
        return ""
    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        return ""
    return normalized


def render_approval_dialog(request: web.Request, *, client: Optional[ClientInfo], server_name: str,
                           server_description: str, encoded_state: str, csrf_token: str,
                           set_cookie: str) -> web.Response:
    """Render the approval form that collects Canvas credentials.

    The original authorization request travels in the signed `state` field and the
    CSRF token in `csrf_token`; the matching cookie is set on this response.
    """
    esc = html.escape
    client_name = esc(client.client_name) if client and client.client_name else "Unknown MCP Client"
    client_uri = esc(sanitize_url(client.client_uri)) if client else ""
    name = esc(server_name)
    website = f'<p>Website: <a href="{client_uri}" target="_blank" rel="noopener">{client_uri}</a></p>' if client_uri else ""

    page = f"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>{client_name} | Authorization Request</title>
<style>
body {{ font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, Arial, sans-serif; background: #f9fafb; color: #333; margin: 0; }}
.container {{ max-width: 600px; margin: 2rem auto; padding: 1rem; }}
.card {{ background: #fff; border-radius: 8px; box-shadow: 0 8px 36px 8px rgba(0,0,0,.1); padding: 2rem; }}
.form-group {{ margin-bottom: 1rem; }}
.form-group label {{ display: block; font-weight: 500; margin-bottom: .25rem; }}
.form-group input {{ width: 100%; padding: .5rem .75rem; border: 1px solid #d1d5db; border-radius: 6px; box-sizing: border-box; }}
.hint {{ font-size: .8rem; color: #6b7280; }}
.actions {{ display: flex; justify-content: flex-end; gap: 1rem; margin-top: 2rem; }}
.button {{ padding: .75rem 1.5rem; border-radius: 6px; border: none; cursor: pointer; }}
.button-primary {{ background: #0070f3; color: #fff; }}
.button-secondary {{ background: transparent; border: 1px solid #e5e7eb; }}
</style>
</head>
<body>
<div class="container">
<h1>{name}</h1>
<p>{esc(server_description)}</p>
<div class="card">
<h2><strong>{client_name}</strong> is requesting access</h2>
{website}
<p>This MCP client is requesting to be authorized on {name}. Your Canvas credentials will be stored encrypted.</p>
<form method="post" action="{esc(request.path)}">
<input type="hidden" name="state" value="{esc(encoded_state)}">
<input type="hidden" name="csrf_token" value="{esc(csrf_token)}">
<div class="form-group">
<label for="canvas_domain">Canvas Domain</label>
<input type="text" id="canvas_domain" name="canvas_domain" required placeholder="school.instructure.com">
<div class="hint">Your Canvas instance URL without https://</div>
</div>
<div class="form-group">
<label for="canvas_api_token">Canvas API Token</label>
<input type="password" id="canvas_api_token" name="canvas_api_token" required placeholder="Your API access token">
<div class="hint">Generate one in Canvas: Account &rarr; Settings &rarr; New Access Token</div>
</div>
<div class="actions">
<button type="button" class="button button-secondary" onclick="window.history.back()">Cancel</button>
<button type="submit" class="button button-primary">Approve</button>
</div>
</form>
</div>
</div>
</body>
</html>"""

    response = web.Response(text=page, content_type="text/html")
    response.headers["Content-Security-Policy"] = "frame-ancestors 'none'"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers.add("Set-Cookie", set_cookie)
    return response
