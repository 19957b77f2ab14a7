"""Credential codec for social account secrets stored at rest."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from functools import lru_cache
import hashlib
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.core.config import get_settings
from src.core.errors import CredentialsError


IV_LENGTH = 16
TAG_LENGTH = 16

PLATFORM_FACEBOOK_PAGE = "FACEBOOK_PAGE"
PLATFORM_INSTAGRAM_BUSINESS = "INSTAGRAM_BUSINESS"
PLATFORM_INSTAGRAM_BASIC = "INSTAGRAM_BASIC"


@dataclass(frozen=True)
class CredentialBlob:
    platform: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def access_token(self) -> str:
        return str(self.data.get("accessToken") or "")


def _derive_key(material: str) -> bytes:
    return hashlib.sha256(material.encode("utf-8")).digest()


@lru_cache(maxsize=1)
def get_token_key() -> bytes:
    settings = get_settings()
    seed = settings.token_encryption_key.strip() or settings.secret_key or "socialdesk-dev-token-key"
    return _derive_key(seed)


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def encrypt_secret(plaintext: str) -> str:
    """Encrypt with AES-256-GCM and return ``iv:authTag:ciphertext`` in base64."""

    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(get_token_key()).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return f"{_b64(iv)}:{_b64(tag)}:{_b64(ciphertext)}"


def decrypt_secret(payload: str) -> str:
    if not payload:
        raise ValueError("Cannot decrypt empty ciphertext")
    parts = payload.split(":")
    if len(parts) != 3:
        raise ValueError("Invalid encrypted format: expected iv:authTag:ciphertext")
    try:
        iv, tag, ciphertext = (base64.b64decode(part.encode("ascii"), validate=True) for part in parts)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError("Invalid encrypted secret payload") from exc
    if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
        raise ValueError("Invalid encrypted secret payload")
    try:
        plaintext = AESGCM(get_token_key()).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise ValueError("Invalid encrypted secret payload") from exc
    return plaintext.decode("utf-8")


def encrypt_credentials(blob: CredentialBlob) -> str:
    serialized = json.dumps({"platform": blob.platform, "data": blob.data}, separators=(",", ":"), sort_keys=True)
    return encrypt_secret(serialized)


def decrypt_credentials(payload: str, *, allowed_platforms: tuple[str, ...]) -> CredentialBlob:
    """Decrypt a credential blob and check it belongs to one of the allowed platforms."""

    try:
        parsed = json.loads(decrypt_secret(payload))
    except (ValueError, UnicodeDecodeError) as exc:
        raise CredentialsError(f"Failed to decrypt credentials: {exc}") from exc
    if not isinstance(parsed, dict) or not isinstance(parsed.get("data"), dict):
        raise CredentialsError("Failed to decrypt credentials: malformed credential blob")

    platform = str(parsed.get("platform") or "")
    if platform not in allowed_platforms:
        expected = " or ".join(allowed_platforms)
        raise CredentialsError(f"Invalid credentials platform: expected {expected}, got {platform or 'none'}")

    blob = CredentialBlob(platform=platform, data=dict(parsed["data"]))
    if not blob.access_token:
        raise CredentialsError("Credentials are missing an access token")
    return blob
