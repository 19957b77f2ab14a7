"""Publication worker: drives one queued publication through the status state machine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
from typing import Any, Callable, Dict, List, Optional

from redis import Redis
from sqlalchemy.orm import Session, sessionmaker

from src.activity.service import ActivityLogger
from src.channels.base import PlatformPublishClient, PublishOutcome
from src.channels.facebook.publisher import FacebookPublishClient
from src.channels.instagram.publisher import InstagramPublishClient
from src.core.config import get_settings
from src.core.errors import NotFoundError, PipelineError, ValidationError
from src.core.logger import get_logger
from src.core.observability import capture_exception, sentry_scope
from src.integrations.graph.tokens import FacebookTokenService, GraphTokenService, InstagramTokenService
from src.publishing import repository
from src.publishing.service import queue_name_for_platform
from src.publishing.types import (
    ACTIVITY_FAILED,
    ACTIVITY_PUBLISHED,
    PLATFORM_FACEBOOK,
    PLATFORM_INSTAGRAM,
    STATUS_FAILED,
    STATUS_PUBLISHED,
    STATUS_PUBLISHING,
    TERMINAL_STATUSES,
    PublishJobData,
    StatusPatch,
    can_transition,
    content_type_for_payload,
)
from src.queue.jobs import Job
from src.queue.worker import WorkerConfig, WorkerHandle, start_worker
from src.schemas.publication import parse_payload
from src.storage.db import get_session_factory, session_scope
from src.storage.models import Publication, SocialAccount
from src.storage.security import CredentialBlob, decrypt_credentials


logger = get_logger("socialdesk.publishing.worker")


@dataclass(frozen=True)
class AccountIdRule:
    key: str
    error_code: str
    message: str


ACCOUNT_ID_RULES: Dict[str, AccountIdRule] = {
    PLATFORM_FACEBOOK: AccountIdRule("pageId", "MISSING_PAGE_ID", "Missing Facebook Page ID"),
    PLATFORM_INSTAGRAM: AccountIdRule(
        "igBusinessAccountId",
        "MISSING_IG_USER_ID",
        "Missing Instagram business account ID",
    ),
}


@dataclass(frozen=True)
class PublicationJobOutcome:
    publication_id: str
    status: str
    external_post_id: Optional[str] = None
    permalink: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _load_json_object(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _failure_payload(exc: BaseException) -> Dict[str, Any]:
    if isinstance(exc, PipelineError):
        return exc.to_payload()
    return {"error": str(exc) or exc.__class__.__name__}


class PublicationWorker:
    """Process publish jobs for one platform.

    Duplicate deliveries are safe: a publication already ``published`` or
    ``cancelled`` is skipped without provider calls or writes. Every other
    failure is written onto the row and re-raised for the queue's retry policy.
    """

    def __init__(
        self,
        *,
        platform: str,
        publish_client: PlatformPublishClient,
        token_service: GraphTokenService,
        session_factory: Optional[sessionmaker] = None,
        activity_logger: Optional[ActivityLogger] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if platform not in ACCOUNT_ID_RULES:
            raise ValueError(f"Unsupported platform: {platform}")
        self.platform = platform
        self._client = publish_client
        self._tokens = token_service
        self._session_factory = session_factory or get_session_factory()
        self._activity = activity_logger or ActivityLogger(session_factory=self._session_factory)
        self._clock = clock

    def process(self, job: Job) -> PublicationJobOutcome:
        job_data = PublishJobData.from_dict(job.data)
        logger.info(
            "publication_job_started",
            platform=self.platform,
            publication_id=job_data.publication_id,
            attempt=job.attempts_made + 1,
        )
        with session_scope(self._session_factory) as session:
            publication = repository.get_publication_with_relations(session, job_data.publication_id)
            if publication is None:
                raise NotFoundError(f"Publication not found: {job_data.publication_id}")

            if not can_transition(publication.status, STATUS_PUBLISHING):
                event = (
                    "publication_already_published"
                    if publication.status == STATUS_PUBLISHED
                    else "publication_not_publishable_skipping"
                )
                logger.info(event, publication_id=publication.id, status=publication.status)
                return PublicationJobOutcome(publication_id=publication.id, status="skipped")

            try:
                return self._publish(session, publication, job)
            except Exception as exc:
                session.rollback()
                status = self._record_failure(session, publication, exc)
                if status in TERMINAL_STATUSES:
                    logger.warning(
                        "publication_failure_after_terminal_status",
                        publication_id=publication.id,
                        status=status,
                        error=str(exc),
                    )
                    return PublicationJobOutcome(publication_id=publication.id, status="skipped")
                raise

    def _publish(self, session: Session, publication: Publication, job: Job) -> PublicationJobOutcome:
        if publication.platform != self.platform:
            raise ValidationError(
                f"Publication {publication.id} targets {publication.platform}, not {self.platform}"
            )
        payload = parse_payload(self.platform, repository.load_payload(publication))
        if content_type_for_payload(payload) != publication.content_type:
            raise ValidationError(
                f"Payload content type {payload.content_type} does not match publication content type "
                f"{publication.content_type}"
            )

        account = publication.social_account
        if account is None:
            raise NotFoundError("Social account not found", code="SOCIAL_ACCOUNT_NOT_FOUND")
        credentials = decrypt_credentials(
            account.credentials_encrypted,
            allowed_platforms=self._tokens.credential_platforms,
        )
        provider_account_id = self._resolve_account_id(account, credentials)
        token = self._tokens.ensure_valid(session, account.id)

        # Token checks can take a while; a cancel committed meanwhile wins.
        gated = repository.transition_publication_status(
            session,
            publication.id,
            StatusPatch(status=STATUS_PUBLISHING, job_id=job.id),
        )
        session.commit()
        if gated is None:
            status = self._current_status(session, publication.id)
            logger.info("publication_not_publishable_skipping", publication_id=publication.id, status=status)
            return PublicationJobOutcome(publication_id=publication.id, status="skipped")

        outcome = self._client.publish(provider_account_id, payload, token.token)
        if not self._record_success(session, gated, outcome, payload_tag=payload.content_type):
            return PublicationJobOutcome(
                publication_id=publication.id,
                status="skipped",
                external_post_id=outcome.external_post_id,
            )
        return PublicationJobOutcome(
            publication_id=publication.id,
            status=STATUS_PUBLISHED,
            external_post_id=outcome.external_post_id,
            permalink=outcome.permalink,
        )

    @staticmethod
    def _current_status(session: Session, publication_id: str) -> Optional[str]:
        publication = repository.reload_publication(session, publication_id)
        return publication.status if publication is not None else None

    def _resolve_account_id(self, account: SocialAccount, credentials: CredentialBlob) -> str:
        rule = ACCOUNT_ID_RULES[self.platform]
        platform_data = _load_json_object(account.platform_data_json)
        value = platform_data.get(rule.key) or credentials.data.get(rule.key)
        if not value:
            raise ValidationError(rule.message, code=rule.error_code)
        return str(value)

    def _record_success(
        self,
        session: Session,
        publication: Publication,
        outcome: PublishOutcome,
        *,
        payload_tag: str,
    ) -> bool:
        """Write the published state; False when the row left ``publishing`` during the provider call."""

        published = repository.transition_publication_status(
            session,
            publication.id,
            StatusPatch(
                status=STATUS_PUBLISHED,
                published_at=self._clock(),
                external_post_id=outcome.external_post_id,
                permalink=outcome.permalink,
                provider_response={
                    "postId": outcome.external_post_id,
                    "permalink": outcome.permalink,
                    "raw": outcome.raw,
                },
            ),
        )
        session.commit()
        if published is None:
            logger.warning(
                "publication_status_changed_during_publish",
                publication_id=publication.id,
                status=self._current_status(session, publication.id),
                external_post_id=outcome.external_post_id,
            )
            return False

        logger.info(
            "publication_published",
            publication_id=published.id,
            platform=self.platform,
            external_post_id=outcome.external_post_id,
        )
        self._activity.log_activity(
            type=ACTIVITY_PUBLISHED,
            workspace_id=published.workspace_id,
            scope_type="publication",
            scope_id=published.id,
            metadata={
                "publicationId": published.id,
                "platform": self.platform,
                "contentType": payload_tag,
                "externalPostId": outcome.external_post_id,
                "permalink": outcome.permalink,
                "brandName": published.brand.name if published.brand else None,
            },
        )
        return True

    def _record_failure(self, session: Session, publication: Publication, exc: BaseException) -> Optional[str]:
        """Write the failed state when the current status allows it; returns the row's status afterwards."""

        publication_id = publication.id
        failure = _failure_payload(exc)
        logger.error(
            "publication_publish_failed",
            publication_id=publication_id,
            platform=self.platform,
            error=failure.get("error"),
            code=failure.get("code"),
        )
        failed = repository.transition_publication_status(
            session,
            publication_id,
            StatusPatch(status=STATUS_FAILED, failed_at=self._clock(), provider_response=failure),
        )
        session.commit()
        if failed is None:
            status = self._current_status(session, publication_id)
            logger.warning("publication_failure_not_recorded", publication_id=publication_id, status=status)
            return status

        self._activity.log_activity(
            type=ACTIVITY_FAILED,
            workspace_id=failed.workspace_id,
            scope_type="publication",
            scope_id=failed.id,
            metadata={
                "publicationId": failed.id,
                "platform": self.platform,
                "contentType": failed.content_type,
                "error": failure.get("error"),
                "code": failure.get("code"),
                "brandName": failed.brand.name if failed.brand else None,
            },
        )
        return failed.status

    def handle_failed(self, job: Job, exc: BaseException, final: bool) -> None:
        """Queue failure hook: on the last attempt record the final failure and report it."""

        if not final:
            return
        data = job.data or {}
        publication_id = data.get("publicationId")
        workspace_id = data.get("workspaceId")
        failure = _failure_payload(exc)
        try:
            with session_scope(self._session_factory) as session:
                if publication_id:
                    repository.transition_publication_status(
                        session,
                        publication_id,
                        StatusPatch(
                            status=STATUS_FAILED,
                            failed_at=self._clock(),
                            provider_response={**failure, "attempts": job.attempts_made, "finalFailure": True},
                        ),
                    )
                    session.commit()
        except Exception as record_exc:
            logger.error(
                "publication_final_failure_record_failed",
                publication_id=publication_id,
                error=str(record_exc),
            )

        self._activity.log_activity(
            type=ACTIVITY_FAILED,
            workspace_id=workspace_id,
            scope_type="publication",
            scope_id=publication_id,
            metadata={
                "publicationId": publication_id,
                "platform": self.platform,
                "error": failure.get("error"),
                "code": failure.get("code"),
                "attempts": job.attempts_made,
                "finalFailure": True,
            },
        )
        logger.error(
            "publication_final_failure",
            publication_id=publication_id,
            platform=self.platform,
            attempts=job.attempts_made,
            error=failure.get("error"),
        )
        with sentry_scope(workspace_id=workspace_id, publication_id=publication_id, job_id=job.id):
            capture_exception(exc)


def build_publication_worker(
    platform: str,
    *,
    session_factory: Optional[sessionmaker] = None,
) -> PublicationWorker:
    if platform == PLATFORM_FACEBOOK:
        client: PlatformPublishClient = FacebookPublishClient()
        tokens: GraphTokenService = FacebookTokenService()
    elif platform == PLATFORM_INSTAGRAM:
        client = InstagramPublishClient()
        tokens = InstagramTokenService()
    else:
        raise ValueError(f"Unsupported platform: {platform}")
    return PublicationWorker(
        platform=platform,
        publish_client=client,
        token_service=tokens,
        session_factory=session_factory,
    )


def start_publication_workers(
    *,
    platforms: Optional[List[str]] = None,
    redis_client: Optional[Redis] = None,
    session_factory: Optional[sessionmaker] = None,
) -> List[WorkerHandle]:
    """Start one bounded worker pool per platform queue."""

    settings = get_settings()
    handles: List[WorkerHandle] = []
    for platform in platforms or [PLATFORM_FACEBOOK, PLATFORM_INSTAGRAM]:
        worker = build_publication_worker(platform, session_factory=session_factory)
        handles.append(
            start_worker(
                WorkerConfig(
                    queue_name=queue_name_for_platform(platform),
                    handler=worker.process,
                    concurrency=settings.queue_worker_concurrency,
                    on_failed=worker.handle_failed,
                    redis_client=redis_client,
                )
            )
        )
    return handles
