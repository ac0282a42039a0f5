"""
Encrypted per-user Canvas credential storage.

Canvas API tokens are encrypted with AES-256-GCM. The encryption key is derived from the
master secret via HKDF-SHA256 with its own info tag, so it is independent of the
cookie-signing use of the same secret.
"""

import base64
import binascii
import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .kv_store import KeyValueStore
from ..utils.error_handling import VaultError
from ..utils.logging import get_logger

logger = get_logger(__name__)

CREDENTIALS_PREFIX = "canvas:credentials:"
PENDING_PREFIX = "canvas:pending:"
HKDF_SALT = b"canvas-mcp-salt"
HKDF_INFO = b"canvas-credentials"
NONCE_BYTES = 12
KEY_BYTES = 32

CREDENTIAL_TTL_SECONDS = 180 * 24 * 3600  # ~6 months, forces periodic re-verification
PENDING_TTL_SECONDS = 600


@dataclass
class Credentials:
    """Canvas API credentials for a single user."""
    api_token: str = field(repr=False)
    domain: str


@dataclass
class StoredCredentialRecord:
    """Persisted form of Credentials: the token only ever appears encrypted."""
    encrypted_token: str
    domain: str
    updated_at: str

    def to_json(self) -> str:
        return json.dumps({
            "encrypted_token": self.encrypted_token,
            "domain": self.domain,
            "updated_at": self.updated_at,
        })

    @classmethod
    def from_json(cls, raw: str) -> "StoredCredentialRecord":
        try:
            data = json.loads(raw)
            return cls(
                encrypted_token=data["encrypted_token"],
                domain=data["domain"],
                updated_at=data.get("updated_at", ""),
            )
        except (ValueError, TypeError, KeyError) as e:
            raise VaultError(f"Malformed credential record: {type(e).__name__}") from e


def derive_key(master_secret: str, info: bytes = HKDF_INFO) -> bytes:
    """Derive a 256-bit AES key from the master secret.

    Args:
        master_secret: The deployment-wide secret (also used, separately, for cookies)
        info: HKDF domain-separation tag

    Returns:
        32 raw key bytes
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=HKDF_SALT,
        info=info,
    )
    return hkdf.derive(master_secret.encode("utf-8"))


def encrypt(plaintext: str, key: bytes) -> str:
    """Encrypt with a fresh random nonce; returns base64(nonce || ciphertext || tag)."""
    nonce = os.urandom(NONCE_BYTES)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + ciphertext).decode("ascii")


def decrypt(encoded: str, key: bytes) -> str:
    """Authenticate and decrypt a value produced by encrypt().

    Raises:
        VaultError: on corrupt encoding, truncated payload or tag mismatch
    """
    try:
        combined = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise VaultError("Encrypted token is not valid base64") from e

    # 16-byte GCM tag must follow the nonce
    if len(combined) < NONCE_BYTES + 16:
        raise VaultError("Encrypted token is truncated")

    nonce, ciphertext = combined[:NONCE_BYTES], combined[NONCE_BYTES:]
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
        return plaintext.decode("utf-8")
    except InvalidTag as e:
        raise VaultError("Authentication tag mismatch") from e
    except UnicodeDecodeError as e:
        raise VaultError("Decrypted token is not valid UTF-8") from e


class CredentialVault:
    """Stores Canvas credentials encrypted under `canvas:credentials:<user_id>`.

    The master secret is passed to every call so it can be rotated without
    rebuilding the vault. A record that cannot be decrypted is reported as
    absent, which turns key rotation into a re-authentication prompt.
    """

    def __init__(self, store: KeyValueStore, credential_ttl: int = CREDENTIAL_TTL_SECONDS):
        self.store = store
        self.credential_ttl = credential_ttl

    async def get(self, user_id: str, master_secret: str) -> Optional[Credentials]:
        raw = await self.store.get(f"{CREDENTIALS_PREFIX}{user_id}")
        if not raw:
            return None

        try:
            record = StoredCredentialRecord.from_json(raw)
            api_token = decrypt(record.encrypted_token, derive_key(master_secret))
        except VaultError as e:
            # Key rotated or record corrupted: treat as missing
            logger.debug(f"Stored credentials for {user_id} unreadable: {e}")
            return None

        return Credentials(api_token=api_token, domain=record.domain)

    async def put(self, user_id: str, credentials: Credentials, master_secret: str,
                  ttl: Optional[int] = None) -> None:
        record = StoredCredentialRecord(
            encrypted_token=encrypt(credentials.api_token, derive_key(master_secret)),
            domain=credentials.domain,
            updated_at=datetime.now(timezone.utc).isoformat(),
        )
        await self.store.put(
            f"{CREDENTIALS_PREFIX}{user_id}",
            record.to_json(),
            ttl=ttl if ttl is not None else self.credential_ttl,
        )
        logger.info(f"Stored Canvas credentials for {user_id} (domain: {credentials.domain})")

    async def delete(self, user_id: str) -> None:
        await self.store.delete(f"{CREDENTIALS_PREFIX}{user_id}")
        logger.info(f"Deleted Canvas credentials for {user_id}")

    async def stage(self, state_token: str, credentials: Credentials, master_secret: str,
                    ttl: int = PENDING_TTL_SECONDS) -> None:
        """Hold credentials until the federated login reveals who they belong to."""
        staged = {
            "encrypted_token": encrypt(credentials.api_token, derive_key(master_secret)),
            "domain": credentials.domain,
        }
        await self.store.put(f"{PENDING_PREFIX}{state_token}", json.dumps(staged), ttl=ttl)

    async def promote(self, state_token: str, user_id: str, master_secret: str) -> bool:
        """Move staged credentials into the vault under user_id.

        The staging entry is removed whether or not the promotion succeeds.

        Returns:
            True if credentials were stored, False if nothing was staged
        """
        pending_key = f"{PENDING_PREFIX}{state_token}"
        raw = await self.store.get(pending_key)
        if not raw:
            return False

        try:
            staged = json.loads(raw)
            api_token = decrypt(staged["encrypted_token"], derive_key(master_secret))
            await self.put(user_id, Credentials(api_token=api_token, domain=staged["domain"]), master_secret)
            return True
        except (ValueError, TypeError, KeyError) as e:
            raise VaultError(f"Malformed staged credentials: {type(e).__name__}") from e
        finally:
            await self.store.delete(pending_key)
