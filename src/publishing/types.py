"""Publication statuses, content-type mapping and repository contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from src.core.errors import ValidationError
from src.schemas.publication import PublicationPayload


STATUS_DRAFT = "draft"
STATUS_SCHEDULED = "scheduled"
STATUS_PUBLISHING = "publishing"
STATUS_PUBLISHED = "published"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

PUBLICATION_STATUSES = (
    STATUS_DRAFT,
    STATUS_SCHEDULED,
    STATUS_PUBLISHING,
    STATUS_PUBLISHED,
    STATUS_FAILED,
    STATUS_CANCELLED,
)
TERMINAL_STATUSES = frozenset({STATUS_PUBLISHED, STATUS_CANCELLED})

_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_DRAFT: frozenset({STATUS_SCHEDULED, STATUS_PUBLISHING, STATUS_CANCELLED}),
    STATUS_SCHEDULED: frozenset({STATUS_PUBLISHING, STATUS_FAILED, STATUS_CANCELLED, STATUS_DRAFT}),
    # A redelivered job may find the row still publishing after a worker crash.
    STATUS_PUBLISHING: frozenset({STATUS_PUBLISHING, STATUS_PUBLISHED, STATUS_FAILED}),
    STATUS_FAILED: frozenset({STATUS_PUBLISHING, STATUS_SCHEDULED, STATUS_FAILED, STATUS_CANCELLED}),
    STATUS_PUBLISHED: frozenset(),
    STATUS_CANCELLED: frozenset(),
}

PLATFORM_FACEBOOK = "facebook"
PLATFORM_INSTAGRAM = "instagram"
PLATFORMS = (PLATFORM_FACEBOOK, PLATFORM_INSTAGRAM)

CONTENT_TYPE_BY_TAG: dict[str, str] = {
    "PHOTO": "image",
    "IMAGE": "image",
    "CAROUSEL": "carousel",
    "VIDEO": "video",
    "REEL": "reel",
    "LINK": "link",
    "STORY": "story",
}
CONTENT_TYPES = frozenset(CONTENT_TYPE_BY_TAG.values())

ACTIVITY_PUBLISHED = "publication.published"
ACTIVITY_FAILED = "publication.failed"


def can_transition(current: str, target: str) -> bool:
    """Return whether a publication may move from ``current`` to ``target``."""

    return target in _ALLOWED_TRANSITIONS.get(current, frozenset())


def statuses_allowed_before(target: str) -> tuple[str, ...]:
    """Statuses from which a publication may move to ``target``."""

    return tuple(status for status in PUBLICATION_STATUSES if can_transition(status, target))


def normalize_content_type(value: str) -> str:
    """Map an API tag (``PHOTO``) or column value (``image``) to the column value."""

    cleaned = (value or "").strip()
    mapped = CONTENT_TYPE_BY_TAG.get(cleaned.upper())
    if mapped is not None:
        return mapped
    if cleaned.lower() in CONTENT_TYPES:
        return cleaned.lower()
    raise ValidationError(f"Unknown content type: {value}")


def content_type_for_payload(payload: PublicationPayload) -> str:
    return CONTENT_TYPE_BY_TAG[payload.content_type]


def normalize_platform(value: str) -> str:
    cleaned = (value or "").strip().lower()
    if cleaned not in PLATFORMS:
        raise ValidationError(f"Unsupported platform: {value}")
    return cleaned


@dataclass(frozen=True)
class CreatePublicationData:
    workspace_id: str
    brand_id: str
    platform: str
    content_type: str
    payload: Any
    social_account_id: Optional[str] = None
    status: str = STATUS_SCHEDULED
    scheduled_at: Optional[datetime] = None
    caption: Optional[str] = None
    client_request_id: Optional[str] = None


@dataclass(frozen=True)
class StatusPatch:
    """Fields a status update may touch. Content and payload are not reachable here."""

    status: Optional[str] = None
    job_id: Optional[str] = None
    published_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    external_post_id: Optional[str] = None
    permalink: Optional[str] = None
    provider_response: Optional[dict[str, Any]] = None

    def changes(self) -> dict[str, Any]:
        return {name: value for name, value in self.__dict__.items() if value is not None}


@dataclass(frozen=True)
class ListPublicationsParams:
    brand_id: str
    workspace_id: Optional[str] = None
    cursor: Optional[str] = None
    limit: int = 20
    status: Optional[str] = None
    platform: Optional[str] = None


@dataclass(frozen=True)
class ListPublicationsResult:
    items: list[Any] = field(default_factory=list)
    next_cursor: Optional[str] = None


@dataclass(frozen=True)
class PublishJobData:
    publication_id: str
    workspace_id: str
    brand_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "publicationId": self.publication_id,
            "workspaceId": self.workspace_id,
            "brandId": self.brand_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PublishJobData:
        try:
            return cls(
                publication_id=str(data["publicationId"]),
                workspace_id=str(data["workspaceId"]),
                brand_id=str(data["brandId"]),
            )
        except KeyError as exc:
            raise ValidationError(f"Publish job data missing field: {exc.args[0]}") from exc
