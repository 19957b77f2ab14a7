"""Publication creation, cancellation and enqueueing."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional, Tuple

from redis import Redis
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.core.config import get_settings
from src.core.errors import InvalidTransitionError, NotFoundError
from src.core.logger import get_logger
from src.publishing import repository
from src.publishing.repository import update_publication_status
from src.publishing.types import (
    PLATFORM_FACEBOOK,
    STATUS_CANCELLED,
    STATUS_DRAFT,
    STATUS_SCHEDULED,
    CreatePublicationData,
    PublishJobData,
    StatusPatch,
    normalize_platform,
)
from src.queue.jobs import Job, JobOptions, JobQueue
from src.storage.models import Publication
from src.storage.redis_client import get_client as get_redis_client


__all__ = [
    "PUBLISH_JOB_NAME",
    "cancel_publication",
    "create_publication",
    "enqueue_publication",
    "get_publication_queue",
    "publication_job_id",
    "queue_name_for_platform",
    "update_publication_status",
]

PUBLISH_JOB_NAME = "publish"

logger = get_logger("socialdesk.publishing.service")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_dt(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def queue_name_for_platform(platform: str) -> str:
    settings = get_settings()
    if normalize_platform(platform) == PLATFORM_FACEBOOK:
        return settings.queue_facebook_name
    return settings.queue_instagram_name


def get_publication_queue(platform: str, redis_client: Optional[Redis] = None) -> JobQueue:
    return JobQueue(queue_name_for_platform(platform), redis_client or get_redis_client())


def publication_job_id(publication_id: str) -> str:
    return f"publication:{publication_id}"


def enqueue_publication(
    queue: JobQueue,
    publication: Publication,
    *,
    now: Optional[datetime] = None,
) -> Job:
    """Enqueue the publish job; a future ``scheduled_at`` becomes the job delay.

    At most one live job exists per publication; enqueueing again while it is
    waiting, delayed or active returns that job.
    """

    delay_seconds = 0.0
    if publication.scheduled_at is not None:
        reference = _normalize_dt(now or _utcnow())
        delay_seconds = max(0.0, (_normalize_dt(publication.scheduled_at) - reference).total_seconds())
    job_data = PublishJobData(
        publication_id=publication.id,
        workspace_id=publication.workspace_id,
        brand_id=publication.brand_id,
    )
    return queue.enqueue(
        PUBLISH_JOB_NAME,
        job_data.to_dict(),
        JobOptions.from_settings(delay_seconds=delay_seconds, job_id=publication_job_id(publication.id)),
    )


def create_publication(
    session: Session,
    data: CreatePublicationData,
    queue: Optional[JobQueue] = None,
    *,
    draft: bool = False,
    now: Optional[datetime] = None,
) -> Tuple[Publication, bool]:
    """Create a publication once per ``client_request_id`` and optionally enqueue it.

    Returns ``(publication, created)``. A repeated ``client_request_id`` in the
    same workspace and brand returns the existing row and enqueues nothing.
    """

    if data.client_request_id:
        existing = repository.find_by_client_request_id(
            session,
            workspace_id=data.workspace_id,
            brand_id=data.brand_id,
            client_request_id=data.client_request_id,
        )
        if existing is not None:
            logger.info(
                "publication_idempotent_hit",
                publication_id=existing.id,
                client_request_id=data.client_request_id,
            )
            return existing, False

    status = STATUS_DRAFT if draft else (data.status or STATUS_SCHEDULED)
    try:
        publication = repository.create_publication(session, replace(data, status=status))
        session.commit()
    except IntegrityError:
        session.rollback()
        if not data.client_request_id:
            raise
        # A concurrent request with the same client_request_id won the insert.
        existing = repository.find_by_client_request_id(
            session,
            workspace_id=data.workspace_id,
            brand_id=data.brand_id,
            client_request_id=data.client_request_id,
        )
        if existing is None:
            raise
        logger.info(
            "publication_idempotent_race",
            publication_id=existing.id,
            client_request_id=data.client_request_id,
        )
        return existing, False

    logger.info(
        "publication_created",
        publication_id=publication.id,
        platform=publication.platform,
        content_type=publication.content_type,
        status=publication.status,
    )
    if queue is not None and publication.status != STATUS_DRAFT:
        enqueue_publication(queue, publication, now=now)
    return publication, True


def cancel_publication(session: Session, publication_id: str) -> Publication:
    publication = repository.get_publication(session, publication_id)
    if publication is None:
        raise NotFoundError(f"Publication not found: {publication_id}")
    cancelled = repository.transition_publication_status(session, publication_id, StatusPatch(status=STATUS_CANCELLED))
    session.commit()
    if cancelled is None:
        publication = repository.reload_publication(session, publication_id) or publication
        raise InvalidTransitionError(
            f"Publication {publication_id} cannot be cancelled from status {publication.status}"
        )
    logger.info("publication_cancelled", publication_id=publication_id)
    return cancelled
