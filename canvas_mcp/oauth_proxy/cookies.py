"""
CSRF protection and the signed approved-clients cookie.
"""

import base64
import binascii
import hmac
import json
import logging
from typing import Any, List, Mapping, Optional, Tuple

from aiohttp import web

from canvas_mcp.auth import signing
from canvas_mcp.utils.error_handling import InvalidRequestError
from .utils import COOKIE_NAMES, build_cookie, generate_secure_token, get_cookie_value

logger = logging.getLogger("oauth_proxy.cookies")

TEN_MINUTES_IN_SECONDS = 600
THIRTY_DAYS_IN_SECONDS = 2592000


def encode_signed_payload(data: Any, secret: str) -> str:
    """Serialize data as `<hmac_hex>.<urlsafe_base64(json)>`"""
    payload = json.dumps(data, separators=(",", ":"))
    encoded = base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii").rstrip("=")
    return f"{signing.sign(payload, secret)}.{encoded}"


def decode_signed_payload(value: Optional[str], secret: str) -> Optional[Any]:
    """Inverse of encode_signed_payload; None if the value is malformed or the signature fails"""
    if not value or "." not in value:
        return None

    signature_hex, encoded = value.split(".", 1)
    try:
        padded = encoded + "=" * (-len(encoded) % 4)
        payload = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, ValueError):
        return None

    if not signing.verify(signature_hex, payload, secret):
        return None

    try:
        return json.loads(payload)
    except ValueError:
        return None


class CsrfGuard:
    """Double-submit CSRF protection: form field must match an HttpOnly cookie"""

    cookie_name = COOKIE_NAMES["csrf"]

    def __init__(self, max_age: int = TEN_MINUTES_IN_SECONDS):
        self.max_age = max_age

    def issue(self) -> Tuple[str, str]:
        """Return (token, Set-Cookie header value)"""
        token = generate_secure_token()
        return token, build_cookie(self.cookie_name, token, self.max_age)

    def validate(self, submitted_token: Optional[str], cookie_token: Optional[str]) -> None:
        if not submitted_token or not isinstance(submitted_token, str):
            raise InvalidRequestError("Missing CSRF token in form data")
        if not cookie_token:
            raise InvalidRequestError("Missing CSRF token cookie")
        if not hmac.compare_digest(submitted_token.encode("utf-8"), cookie_token.encode("utf-8")):
            raise InvalidRequestError("CSRF token mismatch")

    def validate_request(self, form: Mapping[str, Any], request: web.Request) -> None:
        self.validate(form.get("csrf_token"), get_cookie_value(request, self.cookie_name))

    def clear_cookie(self) -> str:
        return build_cookie(self.cookie_name, "", 0)


class ApprovedClientRegistry:
    """Client ids the browser has already approved, carried in a signed cookie.

    A cookie that fails verification reads as "no clients approved".
    """

    cookie_name = COOKIE_NAMES["approved_clients"]

    def __init__(self, max_age: int = THIRTY_DAYS_IN_SECONDS):
        self.max_age = max_age

    def get_approved_clients(self, request: web.Request, secret: str) -> List[str]:
        data = decode_signed_payload(get_cookie_value(request, self.cookie_name), secret)
        if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
            if data is not None:
                logger.debug("Approved-clients cookie has unexpected shape, ignoring")
            return []
        return data

    def is_approved(self, request: web.Request, client_id: str, secret: str) -> bool:
        return client_id in self.get_approved_clients(request, secret)

    def add_approved_client(self, request: web.Request, client_id: str, secret: str) -> str:
        """Union client_id into the cookie set and return the re-signed Set-Cookie value"""
        clients = self.get_approved_clients(request, secret)
        if client_id not in clients:
            clients.append(client_id)
        return build_cookie(self.cookie_name, encode_signed_payload(clients, secret), self.max_age)
