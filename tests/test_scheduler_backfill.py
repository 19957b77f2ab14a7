from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json

import src.orchestrator.manager as manager
from src.publishing.scheduler import requeue_scheduled_ready
from src.queue.jobs import JobQueue


NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def _seed_account(seed):
    workspace_id, brand_id = seed.workspace_brand()
    account_id = seed.social_account(workspace_id, brand_id, platform_data={"pageId": "page-1"})
    return workspace_id, brand_id, account_id


def test_backfill_enqueues_only_due_scheduled_rows(session_factory, seed, fake_redis) -> None:
    workspace_id, brand_id, account_id = _seed_account(seed)
    due = seed.publication(workspace_id, brand_id, account_id, scheduled_at=NOW - timedelta(minutes=5))
    unscheduled = seed.publication(workspace_id, brand_id, account_id)
    seed.publication(workspace_id, brand_id, account_id, scheduled_at=NOW + timedelta(hours=1))
    seed.publication(workspace_id, brand_id, account_id, status="draft")
    seed.publication(workspace_id, brand_id, account_id, status="published", scheduled_at=NOW - timedelta(days=1))
    queue = JobQueue("publication-facebook", fake_redis, key_prefix="test")

    session = session_factory()
    try:
        summary = requeue_scheduled_ready(session, {"facebook": queue}, now=NOW)
    finally:
        session.close()

    assert summary.enqueued == 2
    assert summary.skipped == 0
    queued = [queue.get_job(job_id).data["publicationId"] for job_id in summary.job_ids]
    assert sorted(queued) == sorted([due, unscheduled])
    assert queue.counts()["waiting"] == 2


def test_backfill_rerun_skips_rows_with_a_live_job(session_factory, seed, fake_redis) -> None:
    workspace_id, brand_id, account_id = _seed_account(seed)
    seed.publication(workspace_id, brand_id, account_id, scheduled_at=NOW - timedelta(minutes=5))
    seed.publication(workspace_id, brand_id, account_id, scheduled_at=NOW - timedelta(minutes=1))
    queue = JobQueue("publication-facebook", fake_redis, key_prefix="test")

    session = session_factory()
    try:
        first = requeue_scheduled_ready(session, {"facebook": queue}, now=NOW)
        second = requeue_scheduled_ready(session, {"facebook": queue}, now=NOW)
    finally:
        session.close()

    assert first.enqueued == 2
    assert second.to_dict() == {"enqueued": 0, "skipped": 2, "job_ids": []}
    assert queue.counts()["waiting"] == 2


def test_backfill_skips_platforms_without_a_queue(session_factory, seed, fake_redis) -> None:
    workspace_id, brand_id, account_id = _seed_account(seed)
    seed.publication(
        workspace_id,
        brand_id,
        account_id,
        platform="instagram",
        payload={"contentType": "IMAGE", "imageMediaId": "img.jpg"},
        scheduled_at=NOW - timedelta(minutes=1),
    )
    queue = JobQueue("publication-facebook", fake_redis, key_prefix="test")

    session = session_factory()
    try:
        summary = requeue_scheduled_ready(session, {"facebook": queue}, now=NOW)
    finally:
        session.close()

    assert summary.to_dict() == {"enqueued": 0, "skipped": 1, "job_ids": []}
    assert queue.counts()["waiting"] == 0


def test_backfill_respects_limit(session_factory, seed, fake_redis) -> None:
    workspace_id, brand_id, account_id = _seed_account(seed)
    for minutes in (30, 20, 10):
        seed.publication(workspace_id, brand_id, account_id, scheduled_at=NOW - timedelta(minutes=minutes))
    queue = JobQueue("publication-facebook", fake_redis, key_prefix="test")

    session = session_factory()
    try:
        summary = requeue_scheduled_ready(session, {"facebook": queue}, limit=2, now=NOW)
    finally:
        session.close()

    assert summary.enqueued == 2


def test_backfill_command_prints_summary(session_factory, seed, fake_redis, monkeypatch, capsys) -> None:
    workspace_id, brand_id, account_id = _seed_account(seed)
    due_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    seed.publication(workspace_id, brand_id, account_id, scheduled_at=due_at)
    monkeypatch.setattr(manager, "get_redis_client", lambda: fake_redis)
    monkeypatch.setattr(manager, "get_session_factory", lambda: session_factory)

    manager.main(["backfill", "--limit", "10"])

    printed = json.loads(capsys.readouterr().out)
    assert printed["enqueued"] == 1
    assert printed["skipped"] == 0
    assert fake_redis.llen("socialdesk:queue:publication-facebook:wait") == 1
