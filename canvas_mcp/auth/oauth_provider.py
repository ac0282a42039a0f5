"""Upstream (federated identity) OAuth configuration for Canvas MCP Server"""

import os
import logging
from typing import List
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class UpstreamOAuthConfig:
    """OAuth configuration for the GitHub identity provider"""

    # OAuth Client Configuration
    client_id: str
    client_secret: str

    # OAuth Endpoints
    authorization_url: str = "https://github.com/login/oauth/authorize"
    token_url: str = "https://github.com/login/oauth/access_token"
    userinfo_url: str = "https://api.github.com/user"

    scopes: List[str] = field(default_factory=lambda: ["read:user"])
    require_https: bool = True

    def __post_init__(self):
        for url in (self.authorization_url, self.token_url, self.userinfo_url):
            if not url.startswith("https://"):
                if self.require_https and not ("localhost" in url or "127.0.0.1" in url):
                    raise ValueError("HTTPS required for OAuth endpoints (except localhost)")

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)

    @classmethod
    def from_environment(cls) -> 'UpstreamOAuthConfig':
        """Create upstream OAuth config from environment variables"""
        try:
            config = cls(
                client_id=os.getenv("GITHUB_CLIENT_ID", ""),
                client_secret=os.getenv("GITHUB_CLIENT_SECRET", ""),
                authorization_url=os.getenv("GITHUB_AUTHORIZE_URL", cls.authorization_url),
                token_url=os.getenv("GITHUB_TOKEN_URL", cls.token_url),
                userinfo_url=os.getenv("GITHUB_USER_URL", cls.userinfo_url),
                require_https=os.getenv("OAUTH_REQUIRE_HTTPS", "true").lower() == "true"
            )

            scopes = os.getenv("GITHUB_SCOPES", "")
            if scopes:
                config.scopes = scopes.split()
            logger.info(f"Using upstream OAuth scopes: {config.scopes}")

            missing_fields = []
            if not config.client_id:
                missing_fields.append("GITHUB_CLIENT_ID")
            if not config.client_secret:
                missing_fields.append("GITHUB_CLIENT_SECRET")

            if missing_fields:
                raise ValueError(
                    f"Missing required environment variables: {', '.join(missing_fields)}"
                )

            logger.info(f"Upstream OAuth configuration loaded: {config.authorization_url}")
            return config

        except Exception as e:
            logger.error(f"Failed to load upstream OAuth configuration: {e}")
            raise
