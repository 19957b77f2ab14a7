"""Instagram business publishing over the Graph API (container, then media_publish)."""

from __future__ import annotations

import json
import time
from typing import Any, Callable, Dict, Optional

from src.channels.base import PublishOutcome, check_handlers_exhaustive
from src.channels.media import MediaUrlResolver
from src.core.config import get_settings
from src.core.errors import PipelineError, ValidationError
from src.core.logger import get_logger
from src.integrations.graph.client import GraphAPIClient, GraphAPIError, get_graph_client
from src.schemas.publication import (
    InstagramCarouselPayload,
    InstagramImagePayload,
    InstagramPayload,
    InstagramReelPayload,
    InstagramStoryPayload,
)


logger = get_logger("socialdesk.channels.instagram")

FINISHED_STATUSES = frozenset({"FINISHED", "PUBLISHED", "FINISHED_PROCESSING"})
ERROR_STATUSES = frozenset({"ERROR", "FAILED", "EXPIRED"})


def _container_id(response: Dict[str, Any], *, context: str) -> str:
    value = response.get("id")
    if not value:
        raise GraphAPIError(f"{context}: response did not include id")
    return str(value)


class InstagramPublishClient:
    platform = "instagram"

    def __init__(
        self,
        *,
        graph_client: Optional[GraphAPIClient] = None,
        media_resolver: Optional[MediaUrlResolver] = None,
        poll_attempts: Optional[int] = None,
        poll_interval_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings = get_settings()
        self._graph = graph_client or get_graph_client()
        self._media = media_resolver or MediaUrlResolver()
        self._poll_attempts = poll_attempts or settings.instagram_status_poll_attempts
        self._poll_interval_seconds = (
            settings.instagram_status_poll_interval_seconds if poll_interval_seconds is None else poll_interval_seconds
        )
        self._sleep = sleep

    def publish(self, account_id: str, payload: Any, access_token: str) -> PublishOutcome:
        handler = _HANDLERS.get(type(payload))
        if handler is None:
            raise ValidationError(f"Unsupported Instagram content type: {getattr(payload, 'content_type', None)}")
        return handler(self, account_id, payload, access_token)

    def _create_container(self, ig_user_id: str, data: Dict[str, Any], access_token: str, *, context: str) -> str:
        response = self._graph.post(f"{ig_user_id}/media", access_token=access_token, data=data, context=context)
        return _container_id(response, context=context)

    def _publish_container(self, ig_user_id: str, container_id: str, access_token: str, *, label: str) -> str:
        context = f"instagram_{label}_publish"
        response = self._graph.post(
            f"{ig_user_id}/media_publish",
            access_token=access_token,
            data={"creation_id": container_id},
            context=context,
        )
        return _container_id(response, context=context)

    def _wait_for_container(
        self,
        container_id: str,
        access_token: str,
        *,
        label: str,
        tolerate_timeout: bool = False,
    ) -> str:
        """Poll ``status_code`` until the container is ready or reports an error state."""

        last_status = "UNKNOWN"
        for attempt in range(self._poll_attempts):
            try:
                body = self._graph.get(
                    container_id,
                    access_token=access_token,
                    params={"fields": "status_code,status"},
                    context=f"instagram_{label}_status",
                )
            except PipelineError as exc:
                logger.warning(
                    "instagram_container_status_check_failed",
                    container_id=container_id,
                    attempt=attempt + 1,
                    error=str(exc),
                )
            else:
                last_status = str(body.get("status_code") or body.get("status") or "UNKNOWN")
                if last_status in FINISHED_STATUSES:
                    return last_status
                if last_status in ERROR_STATUSES:
                    raise GraphAPIError(
                        f"Instagram {label} container processing failed with status: {last_status}"
                    )
            if attempt < self._poll_attempts - 1:
                self._sleep(self._poll_interval_seconds)

        if tolerate_timeout:
            logger.warning(
                "instagram_container_processing_timeout_continuing",
                container_id=container_id,
                label=label,
                status=last_status,
            )
            return last_status
        raise GraphAPIError(
            f"Instagram {label} container processing did not complete. Current status: {last_status}",
            transient=True,
        )

    def _fetch_permalink(self, media_id: str, access_token: str, *, label: str) -> str:
        try:
            body = self._graph.get(
                media_id,
                access_token=access_token,
                params={"fields": "id,permalink"},
                context=f"instagram_{label}_permalink",
            )
        except GraphAPIError as exc:
            if exc.code == "100" and "does not exist" in exc.message.lower():
                raise GraphAPIError(
                    f"Instagram {label} was not successfully published or is not accessible",
                    code=exc.code,
                ) from exc
            logger.warning("instagram_permalink_lookup_failed", media_id=media_id, error=str(exc))
            return ""
        except PipelineError as exc:
            logger.warning("instagram_permalink_lookup_failed", media_id=media_id, error=str(exc))
            return ""
        return str(body.get("permalink") or "")

    def publish_image(self, ig_user_id: str, payload: InstagramImagePayload, access_token: str) -> PublishOutcome:
        data: Dict[str, Any] = {
            "image_url": self._media.resolve(payload.image_media_id),
            "caption": payload.caption,
            "location_id": payload.location_id,
        }
        if payload.user_tags:
            data["user_tags"] = json.dumps(
                [{"username": tag.ig_user_id, "x": tag.x, "y": tag.y} for tag in payload.user_tags],
                separators=(",", ":"),
            )
        container_id = self._create_container(ig_user_id, data, access_token, context="instagram_image_container")
        media_id = self._publish_container(ig_user_id, container_id, access_token, label="image")
        permalink = self._fetch_permalink(media_id, access_token, label="image")
        return PublishOutcome(
            external_post_id=media_id,
            permalink=permalink,
            raw={"container_id": container_id, "media_id": media_id},
        )

    def publish_carousel(self, ig_user_id: str, payload: InstagramCarouselPayload, access_token: str) -> PublishOutcome:
        child_ids: list[str] = []
        for item in payload.items:
            media_url = self._media.resolve(item.media_id)
            data: Dict[str, Any] = {"is_carousel_item": True}
            if item.type == "IMAGE":
                data["image_url"] = media_url
            else:
                data["video_url"] = media_url
                data["media_type"] = "VIDEO"
            child_ids.append(
                self._create_container(ig_user_id, data, access_token, context="instagram_carousel_child")
            )

        container_id = self._create_container(
            ig_user_id,
            {
                "media_type": "CAROUSEL",
                "children": ",".join(child_ids),
                "caption": payload.caption,
                "location_id": payload.location_id,
            },
            access_token,
            context="instagram_carousel_container",
        )
        media_id = self._publish_container(ig_user_id, container_id, access_token, label="carousel")
        permalink = self._fetch_permalink(media_id, access_token, label="carousel")
        return PublishOutcome(
            external_post_id=media_id,
            permalink=permalink,
            raw={"container_id": container_id, "media_id": media_id, "children": child_ids},
        )

    def publish_reel(self, ig_user_id: str, payload: InstagramReelPayload, access_token: str) -> PublishOutcome:
        data: Dict[str, Any] = {
            "media_type": "REELS",
            "video_url": self._media.resolve(payload.video_media_id),
            "share_to_feed": payload.share_to_feed,
            "caption": payload.caption,
        }
        if payload.thumb_offset_seconds is not None:
            data["thumb_offset"] = int(payload.thumb_offset_seconds * 1000)
        if payload.cover_media_id:
            data["cover_url"] = self._media.resolve(payload.cover_media_id)

        container_id = self._create_container(ig_user_id, data, access_token, context="instagram_reel_container")
        self._wait_for_container(container_id, access_token, label="reel")
        media_id = self._publish_container(ig_user_id, container_id, access_token, label="reel")
        permalink = self._fetch_permalink(media_id, access_token, label="reel")
        return PublishOutcome(
            external_post_id=media_id,
            permalink=permalink,
            raw={"container_id": container_id, "media_id": media_id},
        )

    def publish_story(self, ig_user_id: str, payload: InstagramStoryPayload, access_token: str) -> PublishOutcome:
        media_ref = payload.story_media_id
        if not media_ref:
            field = "videoMediaId" if payload.is_video else "imageMediaId"
            raise ValidationError(f"Story requires {field} for {payload.story_type} story")
        media_url = self._media.resolve(media_ref)
        data: Dict[str, Any] = {"media_type": "STORIES"}
        data["video_url" if payload.is_video else "image_url"] = media_url

        container_id = self._create_container(ig_user_id, data, access_token, context="instagram_story_container")
        # Stories sometimes publish even when status polling times out.
        self._wait_for_container(container_id, access_token, label="story", tolerate_timeout=True)
        media_id = self._publish_container(ig_user_id, container_id, access_token, label="story")
        # Stories cannot be read back through the Graph API, so there is no permalink.
        return PublishOutcome(
            external_post_id=media_id,
            permalink="",
            raw={"container_id": container_id, "media_id": media_id},
        )


_HANDLERS: Dict[type, Callable[..., PublishOutcome]] = {
    InstagramImagePayload: InstagramPublishClient.publish_image,
    InstagramCarouselPayload: InstagramPublishClient.publish_carousel,
    InstagramReelPayload: InstagramPublishClient.publish_reel,
    InstagramStoryPayload: InstagramPublishClient.publish_story,
}

check_handlers_exhaustive("instagram", InstagramPayload, _HANDLERS)
