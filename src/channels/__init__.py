"""Platform publish clients and their shared contracts."""

from src.channels.base import PlatformPublishClient, PublishOutcome

__all__ = ["PlatformPublishClient", "PublishOutcome"]
