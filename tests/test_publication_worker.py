from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json

import pytest
from sqlalchemy import select

import src.publishing.worker as publication_worker
from src.activity.service import ActivityLogger
from src.channels.base import PublishOutcome
from src.core.errors import TransientError
from src.integrations.graph.tokens import FacebookTokenService, InstagramTokenService
from src.publishing import repository, service
from src.publishing.types import CreatePublicationData, StatusPatch
from src.publishing.worker import PublicationWorker
from src.queue.jobs import Backoff, JobOptions, JobQueue
from src.queue.worker import QueueWorker
from src.storage.models import ActivityEvent, Publication, SocialAccount


class FakeGraphClient:
    def __init__(self) -> None:
        self.calls = []

    def get(self, path, *, access_token, params=None, context="graph_get"):
        self.calls.append(path)
        return {"id": path}


class FakePublishClient:
    def __init__(self, platform: str = "facebook", *, error: Exception | None = None) -> None:
        self.platform = platform
        self.calls = []
        self._error = error

    def publish(self, account_id, payload, access_token):
        self.calls.append({"account_id": account_id, "payload": payload, "access_token": access_token})
        if self._error is not None:
            raise self._error
        return PublishOutcome(external_post_id="123", permalink="https://facebook.com/123", raw={"id": "123"})


class CancellingGraphClient(FakeGraphClient):
    """Cancels the publication from another session while the token is being validated."""

    def __init__(self, session_factory) -> None:
        super().__init__()
        self.publication_id = None
        self._session_factory = session_factory

    def get(self, path, *, access_token, params=None, context="graph_get"):
        if self.publication_id is not None and not self.calls:
            session = self._session_factory()
            try:
                service.cancel_publication(session, self.publication_id)
            finally:
                session.close()
        return super().get(path, access_token=access_token, params=params, context=context)


class OverridingPublishClient(FakePublishClient):
    """An operator forces the row to ``cancelled`` while the provider call is in flight."""

    def __init__(self, session_factory, *, error: Exception | None = None) -> None:
        super().__init__(error=error)
        self.publication_id = None
        self._session_factory = session_factory

    def publish(self, account_id, payload, access_token):
        session = self._session_factory()
        try:
            repository.update_publication_status(session, self.publication_id, StatusPatch(status="cancelled"))
            session.commit()
        finally:
            session.close()
        return super().publish(account_id, payload, access_token)


def _worker(
    session_factory,
    client,
    *,
    platform="facebook",
    activity_logger=None,
    graph_client=None,
) -> PublicationWorker:
    token_cls = FacebookTokenService if platform == "facebook" else InstagramTokenService
    return PublicationWorker(
        platform=platform,
        publish_client=client,
        token_service=token_cls(graph_client=graph_client or FakeGraphClient()),
        session_factory=session_factory,
        activity_logger=activity_logger,
    )


def _queue_worker(fake_redis, worker: PublicationWorker) -> tuple[JobQueue, QueueWorker]:
    queue = JobQueue(f"publication-{worker.platform}", fake_redis, key_prefix="test")
    return queue, QueueWorker(queue, worker.process, on_failed=worker.handle_failed)


def _drain(queue_worker: QueueWorker) -> list:
    results = []
    while True:
        result = queue_worker.process_next()
        if result is None:
            return results
        results.append(result)


def _publication(session_factory, publication_id) -> Publication:
    session = session_factory()
    try:
        return session.get(Publication, publication_id)
    finally:
        session.close()


def _events(session_factory) -> list[tuple[str, dict]]:
    session = session_factory()
    try:
        rows = session.scalars(select(ActivityEvent).order_by(ActivityEvent.created_at)).all()
        return [(row.type, json.loads(row.metadata_json)) for row in rows]
    finally:
        session.close()


def _enqueue(queue: JobQueue, session_factory, publication_id: str, *, attempts: int = 3):
    publication = _publication(session_factory, publication_id)
    return queue.enqueue(
        service.PUBLISH_JOB_NAME,
        {
            "publicationId": publication.id,
            "workspaceId": publication.workspace_id,
            "brandId": publication.brand_id,
        },
        JobOptions(attempts=attempts, backoff=Backoff("fixed", 0.0)),
    )


def test_photo_publication_is_published_end_to_end(session_factory, seed, fake_redis) -> None:
    workspace_id, brand_id = seed.workspace_brand(name="Acme")
    account_id = seed.social_account(workspace_id, brand_id, platform_data={"pageId": "page-1"})
    client = FakePublishClient()
    worker = _worker(session_factory, client)
    queue, queue_worker = _queue_worker(fake_redis, worker)

    session = session_factory()
    try:
        publication, created = service.create_publication(
            session,
            CreatePublicationData(
                workspace_id=workspace_id,
                brand_id=brand_id,
                social_account_id=account_id,
                platform="facebook",
                content_type="PHOTO",
                payload={"contentType": "PHOTO", "imageMediaId": "media/1.jpg", "message": "Launch day"},
                client_request_id="req-1",
            ),
            queue,
        )
    finally:
        session.close()
    assert created is True

    results = _drain(queue_worker)

    assert [result.status for result in results] == ["completed"]
    assert client.calls[0]["account_id"] == "page-1"
    assert client.calls[0]["access_token"] == "page-token"
    stored = _publication(session_factory, publication.id)
    assert stored.status == "published"
    assert stored.external_post_id == "123"
    assert stored.permalink == "https://facebook.com/123"
    assert stored.published_at is not None
    assert stored.job_id == results[0].job_id
    assert repository.load_provider_response(stored)["postId"] == "123"

    events = _events(session_factory)
    assert [event_type for event_type, _ in events] == ["publication.published"]
    metadata = events[0][1]
    assert metadata["publicationId"] == publication.id
    assert metadata["contentType"] == "PHOTO"
    assert metadata["externalPostId"] == "123"
    assert metadata["brandName"] == "Acme"


def test_redelivered_job_for_published_row_is_a_noop(session_factory, seed, fake_redis) -> None:
    workspace_id, brand_id = seed.workspace_brand()
    account_id = seed.social_account(workspace_id, brand_id, platform_data={"pageId": "page-1"})
    publication_id = seed.publication(workspace_id, brand_id, account_id, status="published")
    client = FakePublishClient()
    queue, queue_worker = _queue_worker(fake_redis, _worker(session_factory, client))
    _enqueue(queue, session_factory, publication_id)
    before = _publication(session_factory, publication_id)

    results = _drain(queue_worker)

    after = _publication(session_factory, publication_id)
    assert [result.status for result in results] == ["completed"]
    assert client.calls == []
    assert after.status == "published"
    assert after.updated_at == before.updated_at
    assert _events(session_factory) == []


def test_cancelled_publication_is_skipped(session_factory, seed, fake_redis) -> None:
    workspace_id, brand_id = seed.workspace_brand()
    account_id = seed.social_account(workspace_id, brand_id, platform_data={"pageId": "page-1"})
    publication_id = seed.publication(workspace_id, brand_id, account_id, status="cancelled")
    client = FakePublishClient()
    queue, queue_worker = _queue_worker(fake_redis, _worker(session_factory, client))
    _enqueue(queue, session_factory, publication_id)

    _drain(queue_worker)

    assert client.calls == []
    assert _publication(session_factory, publication_id).status == "cancelled"


@pytest.mark.parametrize(
    "publish_error",
    [None, TransientError("facebook_photo_post: request timed out")],
    ids=["provider_ok", "provider_down"],
)
def test_cancel_during_token_check_wins(session_factory, seed, fake_redis, publish_error) -> None:
    workspace_id, brand_id = seed.workspace_brand()
    account_id = seed.social_account(workspace_id, brand_id, platform_data={"pageId": "page-1"})
    publication_id = seed.publication(workspace_id, brand_id, account_id)
    graph = CancellingGraphClient(session_factory)
    graph.publication_id = publication_id
    client = FakePublishClient(error=publish_error)
    queue, queue_worker = _queue_worker(fake_redis, _worker(session_factory, client, graph_client=graph))
    _enqueue(queue, session_factory, publication_id)

    results = _drain(queue_worker)

    assert [result.status for result in results] == ["completed"]
    assert graph.calls == ["page-1"]
    assert client.calls == []
    stored = _publication(session_factory, publication_id)
    assert stored.status == "cancelled"
    assert stored.job_id is None
    assert stored.failed_at is None
    assert _events(session_factory) == []


@pytest.mark.parametrize(
    "publish_error",
    [None, TransientError("facebook_photo_post: request timed out")],
    ids=["provider_ok", "provider_down"],
)
def test_status_override_during_publish_is_not_overwritten(session_factory, seed, fake_redis, publish_error) -> None:
    workspace_id, brand_id = seed.workspace_brand()
    account_id = seed.social_account(workspace_id, brand_id, platform_data={"pageId": "page-1"})
    publication_id = seed.publication(workspace_id, brand_id, account_id)
    client = OverridingPublishClient(session_factory, error=publish_error)
    client.publication_id = publication_id
    queue, queue_worker = _queue_worker(fake_redis, _worker(session_factory, client))
    _enqueue(queue, session_factory, publication_id, attempts=3)

    results = _drain(queue_worker)

    assert [result.status for result in results] == ["completed"]
    assert len(client.calls) == 1
    stored = _publication(session_factory, publication_id)
    assert stored.status == "cancelled"
    assert stored.external_post_id is None
    assert stored.published_at is None
    assert stored.failed_at is None
    assert _events(session_factory) == []


def test_failure_on_draft_row_leaves_it_draft(session_factory, seed, fake_redis) -> None:
    workspace_id, brand_id = seed.workspace_brand()
    publication_id = seed.publication(workspace_id, brand_id, None, status="draft")
    client = FakePublishClient()
    queue, queue_worker = _queue_worker(fake_redis, _worker(session_factory, client))
    _enqueue(queue, session_factory, publication_id)

    results = _drain(queue_worker)

    assert [result.status for result in results] == ["failed"]
    assert client.calls == []
    stored = _publication(session_factory, publication_id)
    assert stored.status == "draft"
    assert stored.failed_at is None
    assert repository.load_provider_response(stored) == {}
    failures = [metadata for event_type, metadata in _events(session_factory) if event_type == "publication.failed"]
    assert len(failures) == 1
    assert failures[0]["finalFailure"] is True
    assert failures[0]["code"] == "SOCIAL_ACCOUNT_NOT_FOUND"


def test_retry_budget_ends_with_single_final_failure(session_factory, seed, fake_redis, monkeypatch) -> None:
    captured = []
    monkeypatch.setattr(publication_worker, "capture_exception", lambda exc: captured.append(exc))
    workspace_id, brand_id = seed.workspace_brand()
    account_id = seed.social_account(workspace_id, brand_id, platform_data={"pageId": "page-1"})
    publication_id = seed.publication(workspace_id, brand_id, account_id)
    client = FakePublishClient(error=TransientError("facebook_photo_post: request timed out"))
    queue, queue_worker = _queue_worker(fake_redis, _worker(session_factory, client))
    _enqueue(queue, session_factory, publication_id, attempts=3)

    results = _drain(queue_worker)

    assert [result.status for result in results] == ["retrying", "retrying", "failed"]
    assert len(client.calls) == 3
    stored = _publication(session_factory, publication_id)
    assert stored.status == "failed"
    assert stored.failed_at is not None
    response = repository.load_provider_response(stored)
    assert response["finalFailure"] is True
    assert response["attempts"] == 3
    assert response["code"] == "TRANSIENT_ERROR"

    failures = [metadata for event_type, metadata in _events(session_factory) if event_type == "publication.failed"]
    final = [metadata for metadata in failures if metadata.get("finalFailure")]
    assert len(failures) == 4
    assert len(final) == 1
    assert final[0]["attempts"] == 3
    assert len(captured) == 1


def test_expired_token_without_parent_fails_without_publishing(session_factory, seed, fake_redis) -> None:
    workspace_id, brand_id = seed.workspace_brand()
    account_id = seed.social_account(
        workspace_id,
        brand_id,
        platform_data={"pageId": "page-1"},
        token_expires_at=datetime.now(timezone.utc) - timedelta(days=1),
    )
    publication_id = seed.publication(workspace_id, brand_id, account_id)
    client = FakePublishClient()
    queue, queue_worker = _queue_worker(fake_redis, _worker(session_factory, client))
    _enqueue(queue, session_factory, publication_id)

    results = _drain(queue_worker)

    assert [result.status for result in results] == ["failed"]
    assert client.calls == []
    stored = _publication(session_factory, publication_id)
    assert stored.status == "failed"
    assert repository.load_provider_response(stored)["code"] == "REAUTH_REQUIRED"

    session = session_factory()
    try:
        account = session.get(SocialAccount, account_id)
        assert account.status == "expired"
        assert account.last_error_code == "REAUTH_REQUIRED"
    finally:
        session.close()


@pytest.mark.parametrize(
    ("account_kwargs", "expected_code"),
    [
        (None, "SOCIAL_ACCOUNT_NOT_FOUND"),
        ({"platform_data": {}}, "MISSING_PAGE_ID"),
        ({"platform_data": {"pageId": "page-1"}, "credential_platform": "INSTAGRAM_BUSINESS"}, "CREDENTIALS_ERROR"),
    ],
)
def test_missing_prerequisites_fail_fast(session_factory, seed, fake_redis, account_kwargs, expected_code) -> None:
    workspace_id, brand_id = seed.workspace_brand()
    account_id = seed.social_account(workspace_id, brand_id, **account_kwargs) if account_kwargs is not None else None
    publication_id = seed.publication(workspace_id, brand_id, account_id)
    client = FakePublishClient()
    queue, queue_worker = _queue_worker(fake_redis, _worker(session_factory, client))
    _enqueue(queue, session_factory, publication_id)

    results = _drain(queue_worker)

    assert [result.status for result in results] == ["failed"]
    assert client.calls == []
    stored = _publication(session_factory, publication_id)
    assert stored.status == "failed"
    assert repository.load_provider_response(stored)["code"] == expected_code


def test_payload_not_matching_content_type_fails(session_factory, seed, fake_redis) -> None:
    workspace_id, brand_id = seed.workspace_brand()
    account_id = seed.social_account(workspace_id, brand_id, platform_data={"pageId": "page-1"})
    publication_id = seed.publication(workspace_id, brand_id, account_id, content_type="video")
    client = FakePublishClient()
    queue, queue_worker = _queue_worker(fake_redis, _worker(session_factory, client))
    _enqueue(queue, session_factory, publication_id)

    _drain(queue_worker)

    assert client.calls == []
    stored = _publication(session_factory, publication_id)
    assert repository.load_provider_response(stored)["code"] == "VALIDATION_ERROR"


def test_instagram_worker_uses_business_account_id(session_factory, seed, fake_redis) -> None:
    workspace_id, brand_id = seed.workspace_brand()
    account_id = seed.social_account(
        workspace_id,
        brand_id,
        platform="instagram",
        platform_account_id="ig-1",
        platform_data={"igBusinessAccountId": "ig-1"},
    )
    publication_id = seed.publication(
        workspace_id,
        brand_id,
        account_id,
        platform="instagram",
        content_type="reel",
        payload={"contentType": "REEL", "videoMediaId": "r.mp4"},
    )
    client = FakePublishClient("instagram")
    queue, queue_worker = _queue_worker(fake_redis, _worker(session_factory, client, platform="instagram"))
    _enqueue(queue, session_factory, publication_id)

    _drain(queue_worker)

    assert client.calls[0]["account_id"] == "ig-1"
    assert _publication(session_factory, publication_id).status == "published"


def test_missing_publication_fails_job_without_retry(session_factory, seed, fake_redis) -> None:
    client = FakePublishClient()
    queue, queue_worker = _queue_worker(fake_redis, _worker(session_factory, client))
    queue.enqueue(
        service.PUBLISH_JOB_NAME,
        {"publicationId": "missing", "workspaceId": "ws-1", "brandId": "brand-1"},
    )

    results = _drain(queue_worker)

    assert [result.status for result in results] == ["failed"]
    assert client.calls == []
    final = [metadata for _, metadata in _events(session_factory) if metadata.get("finalFailure")]
    assert final and final[0]["code"] == "NOT_FOUND"


def test_activity_log_failure_does_not_fail_publish(session_factory, seed, fake_redis) -> None:
    def broken_factory():
        raise RuntimeError("activity store unavailable")

    workspace_id, brand_id = seed.workspace_brand()
    account_id = seed.social_account(workspace_id, brand_id, platform_data={"pageId": "page-1"})
    publication_id = seed.publication(workspace_id, brand_id, account_id)
    client = FakePublishClient()
    worker = _worker(session_factory, client, activity_logger=ActivityLogger(session_factory=broken_factory))
    queue, queue_worker = _queue_worker(fake_redis, worker)
    _enqueue(queue, session_factory, publication_id)

    results = _drain(queue_worker)

    assert [result.status for result in results] == ["completed"]
    assert _publication(session_factory, publication_id).status == "published"
    assert _events(session_factory) == []
