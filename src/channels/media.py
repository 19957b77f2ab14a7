"""Media reference to public URL resolution."""

from __future__ import annotations

from typing import Optional

from src.core.config import get_settings
from src.core.errors import ValidationError


class MediaUrlResolver:
    def __init__(self, *, public_base_url: Optional[str] = None) -> None:
        base = get_settings().media_public_base_url if public_base_url is None else public_base_url
        self._public_base_url = base.strip().rstrip("/")

    def resolve(self, media_ref: Optional[str]) -> str:
        reference = (media_ref or "").strip()
        if not reference:
            raise ValidationError("Media reference is missing")
        if reference.startswith(("http://", "https://")):
            return reference
        if not self._public_base_url:
            raise ValidationError(f"Cannot get public URL for media {reference}: MEDIA_PUBLIC_BASE_URL is not set")
        return f"{self._public_base_url}/{reference.lstrip('/')}"
