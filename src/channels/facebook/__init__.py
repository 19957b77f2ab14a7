"""Facebook Page publish client."""

from src.channels.facebook.publisher import FacebookPublishClient

__all__ = ["FacebookPublishClient"]
