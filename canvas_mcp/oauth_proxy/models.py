"""
Data models and configuration for the Canvas OAuth proxy
"""

import os
from enum import Enum
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field, asdict


class AuthPath(str, Enum):
    """How the user identity behind an authorization is established"""
    DIRECT = "direct"          # fresh identity minted on approval
    FEDERATED = "federated"    # identity comes from the upstream provider


@dataclass
class ClientInfo:
    """Registered OAuth client (e.g. Claude Desktop, MCP Inspector)"""
    client_id: str
    redirect_uris: List[str]
    client_name: Optional[str] = None
    client_uri: Optional[str] = None
    registered_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClientInfo':
        return cls(
            client_id=data["client_id"],
            redirect_uris=list(data.get("redirect_uris", [])),
            client_name=data.get("client_name"),
            client_uri=data.get("client_uri"),
            registered_at=data.get("registered_at"),
        )


@dataclass
class AuthRequest:
    """The original authorization request from the MCP client"""
    response_type: str
    client_id: str
    redirect_uri: str
    scope: List[str] = field(default_factory=list)
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuthRequest':
        if not isinstance(data, dict):
            raise ValueError("Authorization request must be an object")
        scope = data.get("scope") or []
        if isinstance(scope, str):
            scope = scope.split()
        return cls(
            response_type=str(data.get("response_type", "")),
            client_id=str(data.get("client_id") or ""),
            redirect_uri=str(data.get("redirect_uri") or ""),
            scope=[str(s) for s in scope],
            state=data.get("state"),
            code_challenge=data.get("code_challenge"),
            code_challenge_method=data.get("code_challenge_method"),
        )


@dataclass
class PendingAuthorization:
    """An authorization waiting for approval or for the upstream callback"""
    path: AuthPath
    auth_request: AuthRequest
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path.value,
            "auth_request": self.auth_request.to_dict(),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingAuthorization':
        if not isinstance(data, dict):
            raise ValueError("Pending authorization must be an object")
        return cls(
            path=AuthPath(data["path"]),
            auth_request=AuthRequest.from_dict(data["auth_request"]),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class ProxyConfig:
    """Configuration for the OAuth proxy server"""
    cookie_secret: str
    auth_mode: AuthPath = AuthPath.DIRECT
    host: str = "localhost"
    port: int = 3001
    server_name: str = "Canvas LMS MCP Server"
    public_base_url: Optional[str] = None
    credential_ttl_days: int = 180
    cleanup_interval_minutes: int = 5
    log_level: str = "INFO"

    @property
    def credential_ttl_seconds(self) -> int:
        return self.credential_ttl_days * 24 * 3600

    @classmethod
    def from_environment(cls) -> 'ProxyConfig':
        cookie_secret = os.getenv('COOKIE_ENCRYPTION_KEY', '')
        if not cookie_secret:
            raise ValueError("Missing required environment variable: COOKIE_ENCRYPTION_KEY")

        # "github" is accepted as an alias for the federated path
        mode = os.getenv('AUTH_MODE', 'direct').lower()
        auth_mode = AuthPath.FEDERATED if mode in ('github', 'federated') else AuthPath.DIRECT

        credential_ttl_days = int(os.getenv('CREDENTIAL_TTL_DAYS', '180'))
        if credential_ttl_days <= 0:
            raise ValueError("CREDENTIAL_TTL_DAYS must be a positive number of days")

        return cls(
            cookie_secret=cookie_secret,
            auth_mode=auth_mode,
            host=os.getenv('OAUTH_PROXY_HOST', 'localhost'),
            port=int(os.getenv('OAUTH_PROXY_PORT', '3001')),
            server_name=os.getenv('SERVER_NAME', 'Canvas LMS MCP Server'),
            public_base_url=os.getenv('PUBLIC_BASE_URL') or None,
            credential_ttl_days=credential_ttl_days,
            cleanup_interval_minutes=int(os.getenv('CLEANUP_INTERVAL_MINUTES', '5')),
            log_level=os.getenv('LOG_LEVEL', 'INFO'),
        )
