"""Redis-backed job queue with delayed jobs and an attempt budget.

Per queue the following keys are used (``{prefix}:{queue}:...``):

- ``id``: job id counter
- ``job:{id}``: JSON job record
- ``wait``: list of ready job ids (FIFO)
- ``active``: list of job ids currently held by a worker
- ``delayed``: sorted set of job ids scored by their ready timestamp
- ``failed`` / ``completed``: retained job ids

Delivery is at-least-once: a job stays in ``active`` until it completes or
fails, and ``recover_stalled`` puts anything left there back on ``wait``.

A caller-supplied ``job_id`` is deduplicated while that job is waiting, delayed
or active; a finished record with the same id is replaced.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
import json
import time
from typing import Any, Callable, Dict, Optional

from redis import Redis

from src.core.config import get_settings
from src.core.logger import get_logger


logger = get_logger("socialdesk.queue.jobs")

LIVE_STATES = frozenset({"waiting", "delayed", "active"})


def _json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)


@dataclass(frozen=True)
class Backoff:
    type: str = "exponential"
    delay_seconds: float = 1.0

    def delay_for(self, attempts_made: int) -> float:
        """Delay before the next attempt, given how many attempts have run."""

        if self.type == "fixed":
            return self.delay_seconds
        return self.delay_seconds * (2 ** max(0, attempts_made - 1))


@dataclass(frozen=True)
class JobOptions:
    attempts: int = 3
    backoff: Backoff = field(default_factory=Backoff)
    delay_seconds: float = 0.0
    remove_on_complete: bool = True
    remove_on_fail: bool = False
    job_id: Optional[str] = None

    @classmethod
    def from_settings(cls, **overrides: Any) -> JobOptions:
        settings = get_settings()
        defaults = cls(
            attempts=settings.queue_job_attempts,
            backoff=Backoff("exponential", settings.queue_backoff_base_seconds),
        )
        return replace(defaults, **overrides)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> JobOptions:
        backoff = data.get("backoff") or {}
        return cls(
            attempts=int(data.get("attempts", 3)),
            backoff=Backoff(
                type=str(backoff.get("type", "exponential")),
                delay_seconds=float(backoff.get("delay_seconds", 1.0)),
            ),
            delay_seconds=float(data.get("delay_seconds", 0.0)),
            remove_on_complete=bool(data.get("remove_on_complete", True)),
            remove_on_fail=bool(data.get("remove_on_fail", False)),
            job_id=data.get("job_id"),
        )


@dataclass
class Job:
    id: str
    queue_name: str
    name: str
    data: Dict[str, Any]
    options: JobOptions
    attempts_made: int = 0
    created_at: float = 0.0
    processed_at: Optional[float] = None
    finished_at: Optional[float] = None
    failed_reason: Optional[str] = None
    state: str = "waiting"

    @property
    def max_attempts(self) -> int:
        return max(1, self.options.attempts)

    def to_json(self) -> str:
        payload = asdict(self)
        payload["options"] = self.options.to_dict()
        return _json(payload)

    @classmethod
    def from_json(cls, raw: str) -> Job:
        payload = json.loads(raw)
        payload["options"] = JobOptions.from_dict(payload.get("options") or {})
        return cls(**payload)


class JobQueue:
    """Enqueue, fetch and settle jobs for one named queue."""

    def __init__(
        self,
        name: str,
        redis_client: Redis,
        *,
        key_prefix: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not name.strip():
            raise ValueError("queue name must not be empty")
        self.name = name
        self._redis = redis_client
        prefix = key_prefix if key_prefix is not None else get_settings().queue_key_prefix
        self._prefix = f"{prefix}:{name}"
        self._clock = clock

    def key(self, suffix: str) -> str:
        return f"{self._prefix}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self.key(f"job:{job_id}")

    def _save(self, job: Job) -> None:
        self._redis.set(self._job_key(job.id), job.to_json())

    def _discard(self, job: Job) -> None:
        """Drop a finished job record so its id can be reused."""

        self._redis.lrem(self.key("failed"), 0, job.id)
        self._redis.lrem(self.key("completed"), 0, job.id)
        self._redis.delete(self._job_key(job.id))

    def has_live_job(self, job_id: str) -> bool:
        job = self.get_job(job_id)
        return job is not None and job.state in LIVE_STATES

    def get_job(self, job_id: str) -> Optional[Job]:
        raw = self._redis.get(self._job_key(job_id))
        if raw is None:
            return None
        return Job.from_json(raw)

    def enqueue(
        self,
        job_name: str,
        data: Dict[str, Any],
        options: Optional[JobOptions] = None,
    ) -> Job:
        opts = options or JobOptions()
        if opts.job_id:
            existing = self.get_job(opts.job_id)
            if existing is not None and existing.state in LIVE_STATES:
                logger.info("queue_job_duplicate_ignored", queue=self.name, job_id=opts.job_id)
                return existing
            if existing is not None:
                self._discard(existing)
            job_id = opts.job_id
        else:
            job_id = str(self._redis.incr(self.key("id")))

        now = self._clock()
        job = Job(
            id=job_id,
            queue_name=self.name,
            name=job_name,
            data=dict(data),
            options=opts,
            created_at=now,
            state="delayed" if opts.delay_seconds > 0 else "waiting",
        )
        self._save(job)
        if opts.delay_seconds > 0:
            self._redis.zadd(self.key("delayed"), {job.id: now + opts.delay_seconds})
        else:
            self._redis.rpush(self.key("wait"), job.id)
        logger.info(
            "queue_job_enqueued",
            queue=self.name,
            job_id=job.id,
            job_name=job_name,
            delay_seconds=opts.delay_seconds,
        )
        return job

    def promote_delayed(self) -> int:
        """Move delayed jobs whose ready time has passed onto the wait list."""

        due = self._redis.zrangebyscore(self.key("delayed"), "-inf", self._clock())
        promoted = 0
        for job_id in due:
            # Only the worker that removes the entry promotes it.
            if self._redis.zrem(self.key("delayed"), job_id):
                self._redis.rpush(self.key("wait"), job_id)
                promoted += 1
        return promoted

    def fetch(self) -> Optional[Job]:
        self.promote_delayed()
        while True:
            job_id = self._redis.lmove(self.key("wait"), self.key("active"), "LEFT", "RIGHT")
            if job_id is None:
                return None
            job = self.get_job(job_id)
            if job is None:
                logger.warning("queue_job_record_missing", queue=self.name, job_id=job_id)
                self._redis.lrem(self.key("active"), 1, job_id)
                continue
            job.state = "active"
            job.processed_at = self._clock()
            self._save(job)
            return job

    def complete(self, job: Job) -> None:
        self._redis.lrem(self.key("active"), 1, job.id)
        job.attempts_made += 1
        job.finished_at = self._clock()
        job.state = "completed"
        if job.options.remove_on_complete:
            self._redis.delete(self._job_key(job.id))
        else:
            self._save(job)
            self._redis.rpush(self.key("completed"), job.id)

    def fail(self, job: Job, error: BaseException) -> bool:
        """Record a failed attempt. Returns True when no attempts remain."""

        self._redis.lrem(self.key("active"), 1, job.id)
        job.attempts_made += 1
        job.failed_reason = str(error) or error.__class__.__name__
        retryable = bool(getattr(error, "retryable", True))

        if retryable and job.attempts_made < job.max_attempts:
            delay = job.options.backoff.delay_for(job.attempts_made)
            job.state = "delayed"
            self._save(job)
            self._redis.zadd(self.key("delayed"), {job.id: self._clock() + delay})
            return False

        job.state = "failed"
        job.finished_at = self._clock()
        if job.options.remove_on_fail:
            self._redis.delete(self._job_key(job.id))
        else:
            self._save(job)
            self._redis.rpush(self.key("failed"), job.id)
        return True

    def recover_stalled(self) -> int:
        """Requeue jobs left active by a worker that died mid-job. Call before workers start."""

        recovered = 0
        while self._redis.lmove(self.key("active"), self.key("wait"), "RIGHT", "LEFT") is not None:
            recovered += 1
        if recovered:
            logger.warning("queue_stalled_jobs_recovered", queue=self.name, count=recovered)
        return recovered

    def counts(self) -> Dict[str, int]:
        return {
            "waiting": int(self._redis.llen(self.key("wait"))),
            "active": int(self._redis.llen(self.key("active"))),
            "delayed": int(self._redis.zcard(self.key("delayed"))),
            "failed": int(self._redis.llen(self.key("failed"))),
            "completed": int(self._redis.llen(self.key("completed"))),
        }
