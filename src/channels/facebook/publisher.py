"""Facebook Page publishing over the Graph API.

Each ``publish_*`` method owns the full provider protocol for one content type
(uploads, unpublished staging photos, story upload phases) and returns the
created post id and permalink. Nothing here touches the publication row.
"""

from __future__ import annotations

import json
import time
from typing import Any, Callable, Dict, Optional

from src.channels.base import PublishOutcome, check_handlers_exhaustive
from src.channels.media import MediaUrlResolver
from src.core.errors import PipelineError, TransientError, ValidationError
from src.core.logger import get_logger
from src.integrations.graph.client import GraphAPIClient, GraphAPIError, get_graph_client
from src.schemas.publication import (
    FacebookCarouselPayload,
    FacebookLinkPayload,
    FacebookPayload,
    FacebookPhotoPayload,
    FacebookStoryPayload,
    FacebookVideoPayload,
)


logger = get_logger("socialdesk.channels.facebook")

OBJECT_NOT_FOUND_CODE = "100"


def _required_id(response: Dict[str, Any], *keys: str, context: str) -> str:
    for key in keys:
        value = response.get(key)
        if value:
            return str(value)
    raise GraphAPIError(f"{context}: response did not include {' or '.join(keys)}")


class FacebookPublishClient:
    platform = "facebook"

    def __init__(
        self,
        *,
        graph_client: Optional[GraphAPIClient] = None,
        media_resolver: Optional[MediaUrlResolver] = None,
        verify_attempts: int = 3,
        verify_interval_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._graph = graph_client or get_graph_client()
        self._media = media_resolver or MediaUrlResolver()
        self._verify_attempts = max(1, verify_attempts)
        self._verify_interval_seconds = verify_interval_seconds
        self._sleep = sleep

    def publish(self, account_id: str, payload: Any, access_token: str) -> PublishOutcome:
        handler = _HANDLERS.get(type(payload))
        if handler is None:
            raise ValidationError(f"Unsupported Facebook content type: {getattr(payload, 'content_type', None)}")
        return handler(self, account_id, payload, access_token)

    def _verify_post(self, post_id: str, access_token: str, *, label: str) -> str:
        """Confirm the post is readable and return its permalink."""

        last_error: Optional[PipelineError] = None
        for attempt in range(self._verify_attempts):
            try:
                body = self._graph.get(
                    post_id,
                    access_token=access_token,
                    params={"fields": "id,permalink_url"},
                    context=f"facebook_{label}_verify",
                )
            except GraphAPIError as exc:
                if exc.code == OBJECT_NOT_FOUND_CODE:
                    raise GraphAPIError(
                        f"Facebook {label} was not successfully published or is not accessible",
                        code=exc.code,
                        subcode=exc.subcode,
                        fbtrace_id=exc.fbtrace_id,
                    ) from exc
                last_error = exc
            except TransientError as exc:
                last_error = exc
            else:
                return str(body.get("permalink_url") or "")
            logger.warning(
                "facebook_post_verification_retry",
                post_id=post_id,
                label=label,
                attempt=attempt + 1,
                error=str(last_error),
            )
            if attempt < self._verify_attempts - 1:
                self._sleep(self._verify_interval_seconds)
        raise GraphAPIError(f"Facebook {label} could not be verified: {last_error}")

    def _upload_unpublished_photo(self, page_id: str, image_url: str, access_token: str, *, context: str) -> str:
        response = self._graph.post(
            f"{page_id}/photos",
            access_token=access_token,
            data={"url": image_url, "published": False},
            context=context,
        )
        return _required_id(response, "id", context=context)

    def publish_photo(self, page_id: str, payload: FacebookPhotoPayload, access_token: str) -> PublishOutcome:
        image_url = self._media.resolve(payload.image_media_id)
        response = self._graph.post(
            f"{page_id}/photos",
            access_token=access_token,
            data={"url": image_url, "published": True, "caption": payload.message},
            context="facebook_photo_post",
        )
        photo_id = _required_id(response, "id", context="facebook_photo_post")
        post_id = str(response.get("post_id") or photo_id)

        permalink = self._verify_post(post_id, access_token, label="photo")
        if not permalink:
            try:
                details = self._graph.get(
                    photo_id,
                    access_token=access_token,
                    params={"fields": "link,permalink_url"},
                    context="facebook_photo_permalink",
                )
                permalink = str(details.get("permalink_url") or details.get("link") or "")
            except PipelineError as exc:
                logger.warning("facebook_photo_permalink_failed", photo_id=photo_id, error=str(exc))
        return PublishOutcome(external_post_id=post_id, permalink=permalink, raw=response)

    def publish_video(self, page_id: str, payload: FacebookVideoPayload, access_token: str) -> PublishOutcome:
        data: Dict[str, Any] = {
            "file_url": self._media.resolve(payload.video_media_id),
            "description": payload.message,
            "title": payload.title,
        }
        if payload.thumb_media_id:
            data["thumb"] = self._media.resolve(payload.thumb_media_id)
        response = self._graph.post(
            f"{page_id}/videos",
            access_token=access_token,
            data=data,
            context="facebook_video_post",
        )
        video_id = _required_id(response, "id", context="facebook_video_post")
        permalink = self._verify_post(video_id, access_token, label="video")
        return PublishOutcome(external_post_id=video_id, permalink=permalink, raw=response)

    def publish_link(self, page_id: str, payload: FacebookLinkPayload, access_token: str) -> PublishOutcome:
        response = self._graph.post(
            f"{page_id}/feed",
            access_token=access_token,
            data={"link": payload.link_url, "message": payload.message},
            context="facebook_link_post",
        )
        post_id = _required_id(response, "id", context="facebook_link_post")
        permalink = self._verify_post(post_id, access_token, label="link post")
        return PublishOutcome(external_post_id=post_id, permalink=permalink, raw=response)

    def publish_carousel(self, page_id: str, payload: FacebookCarouselPayload, access_token: str) -> PublishOutcome:
        photo_ids: list[str] = []
        for item in payload.items:
            if item.type != "IMAGE":
                logger.warning("facebook_carousel_item_skipped", page_id=page_id, item_type=item.type)
                continue
            photo_ids.append(
                self._upload_unpublished_photo(
                    page_id,
                    self._media.resolve(item.media_id),
                    access_token,
                    context="facebook_carousel_photo_upload",
                )
            )
        if not photo_ids:
            raise ValidationError("Facebook carousel has no image items to publish")

        attached_media = [{"media_fbid": photo_id} for photo_id in photo_ids]
        response = self._graph.post(
            f"{page_id}/feed",
            access_token=access_token,
            data={
                "published": True,
                "message": payload.message,
                "attached_media": json.dumps(attached_media, separators=(",", ":")),
            },
            context="facebook_carousel_post",
        )
        post_id = _required_id(response, "id", context="facebook_carousel_post")
        permalink = self._verify_post(post_id, access_token, label="carousel")
        return PublishOutcome(
            external_post_id=post_id,
            permalink=permalink,
            raw={**response, "photo_ids": photo_ids},
        )

    def publish_story(self, page_id: str, payload: FacebookStoryPayload, access_token: str) -> PublishOutcome:
        media_ref = payload.story_media_id
        if not media_ref:
            field = "videoMediaId" if payload.is_video else "imageMediaId"
            raise ValidationError(f"Story requires {field} for {payload.story_type} story")
        media_url = self._media.resolve(media_ref)
        if not media_url.startswith("https://"):
            raise ValidationError(f"Media URL must be HTTPS for Facebook Stories: {media_url}")
        if payload.is_video:
            return self._publish_video_story(page_id, media_url, access_token)
        return self._publish_photo_story(page_id, media_url, access_token)

    def _publish_photo_story(self, page_id: str, media_url: str, access_token: str) -> PublishOutcome:
        photo_id = self._upload_unpublished_photo(
            page_id,
            media_url,
            access_token,
            context="facebook_story_photo_upload",
        )
        response = self._graph.post(
            f"{page_id}/photo_stories",
            access_token=access_token,
            data={"photo_id": photo_id},
            context="facebook_photo_story_post",
        )
        if not (response.get("post_id") or response.get("id") or response.get("success")):
            raise GraphAPIError("facebook_photo_story_post: story was not created")
        post_id = str(response.get("post_id") or response.get("id") or photo_id)
        return PublishOutcome(external_post_id=post_id, permalink="", raw=response)

    def _publish_video_story(self, page_id: str, media_url: str, access_token: str) -> PublishOutcome:
        start = self._graph.post(
            f"{page_id}/video_stories",
            access_token=access_token,
            data={"upload_phase": "start"},
            context="facebook_video_story_start",
        )
        video_id = _required_id(start, "video_id", context="facebook_video_story_start")
        upload_url = str(start.get("upload_url") or "")
        if not upload_url:
            raise GraphAPIError("facebook_video_story_start: no upload URL returned")

        self._graph.post_absolute(
            upload_url,
            access_token=access_token,
            headers={"file_url": media_url},
            context="facebook_video_story_upload",
        )
        finish = self._graph.post(
            f"{page_id}/video_stories",
            access_token=access_token,
            data={"upload_phase": "finish", "video_id": video_id},
            context="facebook_video_story_finish",
        )
        if not (finish.get("post_id") or finish.get("id") or finish.get("success")):
            raise GraphAPIError("facebook_video_story_finish: story was not created")
        post_id = str(finish.get("post_id") or finish.get("id") or video_id)
        return PublishOutcome(external_post_id=post_id, permalink="", raw=finish)


_HANDLERS: Dict[type, Callable[..., PublishOutcome]] = {
    FacebookPhotoPayload: FacebookPublishClient.publish_photo,
    FacebookVideoPayload: FacebookPublishClient.publish_video,
    FacebookLinkPayload: FacebookPublishClient.publish_link,
    FacebookCarouselPayload: FacebookPublishClient.publish_carousel,
    FacebookStoryPayload: FacebookPublishClient.publish_story,
}

check_handlers_exhaustive("facebook", FacebookPayload, _HANDLERS)
