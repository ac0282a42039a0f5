"""
Key-value store for credentials, pending authorization state and provider grants.
All durable state of the proxy lives here; in-memory for development, swap for Redis/KV in production.
"""
import time
import os
from typing import Dict, Any, Optional, Tuple
from ..utils.logging import get_logger

logger = get_logger(__name__)


class KeyValueStore:
    """Async key-value interface with optional per-key TTL (seconds)."""

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self):
        self.entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self.store_type = os.getenv('KV_STORE_TYPE', 'memory').lower()

        if self.store_type != 'memory':
            logger.warning(f"KV store type '{self.store_type}' not available, using in-memory store")

        logger.debug("Initialized in-memory key-value store")

    async def get(self, key: str) -> Optional[str]:
        """Get value if present and not expired"""
        entry = self.entries.get(key)
        if entry is None:
            return None

        value, expires_at = entry
        if expires_at is not None and time.time() > expires_at:
            logger.debug(f"Entry expired: {key.split(':')[0]}:...")
            del self.entries[key]
            return None

        return value

    async def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        """Store value, replacing any previous entry (last write wins). ttl=None never expires."""
        if ttl is not None and ttl <= 0:
            raise ValueError(f"ttl must be a positive number of seconds, got {ttl}")
        expires_at = time.time() + ttl if ttl is not None else None
        self.entries[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self.entries.pop(key, None)

    async def cleanup_expired(self) -> int:
        """Remove expired entries (called periodically by the server)"""
        current_time = time.time()
        expired_keys = [
            key for key, (_, expires_at) in self.entries.items()
            if expires_at is not None and current_time > expires_at
        ]

        for key in expired_keys:
            del self.entries[key]

        if expired_keys:
            logger.info(f"Cleaned up {len(expired_keys)} expired entries")
        return len(expired_keys)

    def get_stats(self) -> Dict[str, Any]:
        current_time = time.time()
        expired = sum(
            1 for _, expires_at in self.entries.values()
            if expires_at is not None and current_time > expires_at
        )
        return {
            'total_entries': len(self.entries),
            'active_entries': len(self.entries) - expired,
            'expired_entries': expired,
            'store_type': 'memory'
        }
