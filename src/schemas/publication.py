"""Pydantic schemas for per-platform publication payloads."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from src.core.errors import ValidationError


class PayloadModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CarouselItem(PayloadModel):
    media_id: str = Field(min_length=1)
    type: Literal["IMAGE", "VIDEO"] = "IMAGE"
    alt_text: Optional[str] = None


class UserTag(PayloadModel):
    ig_user_id: str = Field(min_length=1)
    x: float = Field(ge=0, le=1)
    y: float = Field(ge=0, le=1)


class StoryFields(PayloadModel):
    story_type: Literal["IMAGE", "VIDEO"] = "IMAGE"
    image_media_id: Optional[str] = None
    video_media_id: Optional[str] = None

    @property
    def is_video(self) -> bool:
        return self.story_type == "VIDEO"

    @property
    def story_media_id(self) -> Optional[str]:
        return self.video_media_id if self.is_video else self.image_media_id


# Facebook Page variants


class FacebookPhotoPayload(PayloadModel):
    content_type: Literal["PHOTO"] = "PHOTO"
    image_media_id: str = Field(min_length=1)
    message: Optional[str] = None


class FacebookVideoPayload(PayloadModel):
    content_type: Literal["VIDEO"] = "VIDEO"
    video_media_id: str = Field(min_length=1)
    message: Optional[str] = None
    title: Optional[str] = None
    thumb_media_id: Optional[str] = None


class FacebookLinkPayload(PayloadModel):
    content_type: Literal["LINK"] = "LINK"
    link_url: str = Field(min_length=1)
    message: Optional[str] = None


class FacebookCarouselPayload(PayloadModel):
    content_type: Literal["CAROUSEL"] = "CAROUSEL"
    items: list[CarouselItem] = Field(min_length=1, max_length=10)
    message: Optional[str] = None


class FacebookStoryPayload(StoryFields):
    content_type: Literal["STORY"] = "STORY"


FacebookPayload = Annotated[
    Union[
        FacebookPhotoPayload,
        FacebookVideoPayload,
        FacebookLinkPayload,
        FacebookCarouselPayload,
        FacebookStoryPayload,
    ],
    Field(discriminator="content_type"),
]


# Instagram business variants


class InstagramImagePayload(PayloadModel):
    content_type: Literal["IMAGE"] = "IMAGE"
    image_media_id: str = Field(min_length=1)
    caption: Optional[str] = None
    location_id: Optional[str] = None
    user_tags: list[UserTag] = Field(default_factory=list)


class InstagramCarouselPayload(PayloadModel):
    content_type: Literal["CAROUSEL"] = "CAROUSEL"
    items: list[CarouselItem] = Field(min_length=2, max_length=10)
    caption: Optional[str] = None
    location_id: Optional[str] = None


class InstagramReelPayload(PayloadModel):
    content_type: Literal["REEL"] = "REEL"
    video_media_id: str = Field(min_length=1)
    caption: Optional[str] = None
    share_to_feed: bool = True
    thumb_offset_seconds: Optional[float] = Field(default=None, ge=0)
    cover_media_id: Optional[str] = None


class InstagramStoryPayload(StoryFields):
    content_type: Literal["STORY"] = "STORY"


InstagramPayload = Annotated[
    Union[
        InstagramImagePayload,
        InstagramCarouselPayload,
        InstagramReelPayload,
        InstagramStoryPayload,
    ],
    Field(discriminator="content_type"),
]


PublicationPayload = Union[
    FacebookPhotoPayload,
    FacebookVideoPayload,
    FacebookLinkPayload,
    FacebookCarouselPayload,
    FacebookStoryPayload,
    InstagramImagePayload,
    InstagramCarouselPayload,
    InstagramReelPayload,
    InstagramStoryPayload,
]

PAYLOAD_ADAPTERS: dict[str, TypeAdapter] = {
    "facebook": TypeAdapter(FacebookPayload),
    "instagram": TypeAdapter(InstagramPayload),
}


def parse_payload(platform: str, raw: Any) -> PublicationPayload:
    """Validate a raw payload against the platform's discriminated union."""

    adapter = PAYLOAD_ADAPTERS.get(platform)
    if adapter is None:
        raise ValidationError(f"Unsupported platform: {platform}")
    if isinstance(raw, PayloadModel):
        raw = raw.to_json_dict()
    if not isinstance(raw, dict):
        raise ValidationError("Publication payload must be an object")

    candidate = dict(raw)
    tag = candidate.pop("content_type", None) or candidate.get("contentType")
    if isinstance(tag, str):
        candidate["contentType"] = tag.strip().upper()
    try:
        return adapter.validate_python(candidate)
    except PydanticValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        detail = first.get("msg", "invalid payload")
        raise ValidationError(f"Invalid {platform} payload at {location or 'payload'}: {detail}") from exc
