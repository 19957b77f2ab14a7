"""Backfill: enqueue scheduled publications whose time has come."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from src.core.logger import get_logger
from src.publishing import repository
from src.publishing.service import enqueue_publication, publication_job_id
from src.queue.jobs import JobQueue


logger = get_logger("socialdesk.publishing.scheduler")


@dataclass
class BackfillSummary:
    enqueued: int = 0
    skipped: int = 0
    job_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {"enqueued": self.enqueued, "skipped": self.skipped, "job_ids": list(self.job_ids)}


def requeue_scheduled_ready(
    session: Session,
    queues: Mapping[str, JobQueue],
    *,
    limit: int = 100,
    now: Optional[datetime] = None,
) -> BackfillSummary:
    """Enqueue ``scheduled`` rows due at ``now``.

    Rows without a queue for their platform, or whose publish job is still
    waiting, delayed or active, are skipped.
    """

    summary = BackfillSummary()
    for publication in repository.list_scheduled_ready(session, limit=limit, now=now):
        queue = queues.get(publication.platform)
        if queue is None or queue.has_live_job(publication_job_id(publication.id)):
            summary.skipped += 1
            continue
        job = enqueue_publication(queue, publication, now=now)
        summary.enqueued += 1
        summary.job_ids.append(job.id)
    logger.info("scheduled_backfill_completed", enqueued=summary.enqueued, skipped=summary.skipped)
    return summary
