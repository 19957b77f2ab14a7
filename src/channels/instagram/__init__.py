"""Instagram business account publish client."""

from src.channels.instagram.publisher import InstagramPublishClient

__all__ = ["InstagramPublishClient"]
