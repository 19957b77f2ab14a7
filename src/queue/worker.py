"""Bounded-concurrency queue workers with explicit start/stop handles."""

from __future__ import annotations

from dataclasses import dataclass, field
import threading
from typing import Any, Callable, List, Optional

from redis import Redis

from src.core.config import get_settings
from src.core.logger import bind_job_context, clear_job_context, get_logger
from src.core.observability import capture_exception
from src.queue.jobs import Job, JobQueue
from src.storage.redis_client import get_client as get_redis_client


JobHandler = Callable[[Job], Any]
FailedHook = Callable[[Job, BaseException, bool], None]

logger = get_logger("socialdesk.queue.worker")


@dataclass(frozen=True)
class JobRunResult:
    job_id: str
    status: str
    attempts_made: int
    error: Optional[str] = None


class QueueWorker:
    """Pull jobs one at a time and settle them against the queue's retry policy."""

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        *,
        concurrency: int = 1,
        on_failed: Optional[FailedHook] = None,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self.queue = queue
        self._handler = handler
        self._on_failed = on_failed
        self.concurrency = concurrency
        self.poll_interval_seconds = poll_interval_seconds

    def process_next(self) -> Optional[JobRunResult]:
        job = self.queue.fetch()
        if job is None:
            return None
        return self.run_job(job)

    def run_job(self, job: Job) -> JobRunResult:
        bind_job_context(
            job.id,
            publication_id=job.data.get("publicationId"),
            workspace_id=job.data.get("workspaceId"),
        )
        try:
            try:
                self._handler(job)
            except Exception as exc:
                final = self.queue.fail(job, exc)
                self._report_failure(job, exc, final)
                self._notify_failed(job, exc, final)
                return JobRunResult(
                    job_id=job.id,
                    status="failed" if final else "retrying",
                    attempts_made=job.attempts_made,
                    error=str(exc),
                )
            self.queue.complete(job)
            logger.debug("queue_job_completed", queue=self.queue.name, job_name=job.name)
            return JobRunResult(job_id=job.id, status="completed", attempts_made=job.attempts_made)
        finally:
            clear_job_context()

    def _report_failure(self, job: Job, exc: BaseException, final: bool) -> None:
        if not final:
            logger.warning(
                "queue_job_failed_will_retry",
                queue=self.queue.name,
                job_name=job.name,
                attempts_made=job.attempts_made,
                max_attempts=job.max_attempts,
                error=str(exc),
            )
            return
        logger.error(
            "queue_job_failed",
            queue=self.queue.name,
            job_name=job.name,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            retryable=bool(getattr(exc, "retryable", True)),
            error=str(exc),
        )

    def _notify_failed(self, job: Job, exc: BaseException, final: bool) -> None:
        if self._on_failed is None:
            return
        try:
            self._on_failed(job, exc, final)
        except Exception as hook_exc:
            logger.error(
                "queue_failed_hook_error",
                queue=self.queue.name,
                error=str(hook_exc),
            )
            capture_exception(hook_exc)

    def _loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                result = self.process_next()
            except Exception as exc:
                logger.error("queue_worker_error", queue=self.queue.name, error=str(exc))
                capture_exception(exc)
                stop_event.wait(self.poll_interval_seconds)
                continue
            if result is None:
                stop_event.wait(self.poll_interval_seconds)

    def start(self) -> WorkerHandle:
        self.queue.recover_stalled()
        stop_event = threading.Event()
        threads: List[threading.Thread] = []
        for index in range(self.concurrency):
            thread = threading.Thread(
                target=self._loop,
                args=(stop_event,),
                name=f"{self.queue.name}-worker-{index}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)
        logger.info("queue_worker_started", queue=self.queue.name, concurrency=self.concurrency)
        return WorkerHandle(queue_name=self.queue.name, stop_event=stop_event, threads=threads)


@dataclass
class WorkerHandle:
    queue_name: str
    stop_event: threading.Event
    threads: List[threading.Thread] = field(default_factory=list)

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self.threads)

    def stop(self, *, drain: bool = True, timeout: Optional[float] = None) -> None:
        """Stop fetching new jobs; with ``drain`` wait for in-flight jobs to settle."""

        self.stop_event.set()
        if drain:
            for thread in self.threads:
                thread.join(timeout)
        logger.info("queue_worker_stopped", queue=self.queue_name, drained=drain, running=self.running)


@dataclass(frozen=True)
class WorkerConfig:
    queue_name: str
    handler: JobHandler
    concurrency: int = 3
    on_failed: Optional[FailedHook] = None
    redis_client: Optional[Redis] = None
    poll_interval_seconds: Optional[float] = None


def create_worker(
    queue_name: str,
    handler: JobHandler,
    *,
    concurrency: int = 3,
    on_failed: Optional[FailedHook] = None,
    redis_client: Optional[Redis] = None,
    poll_interval_seconds: Optional[float] = None,
) -> QueueWorker:
    settings = get_settings()
    queue = JobQueue(queue_name, redis_client or get_redis_client())
    return QueueWorker(
        queue,
        handler,
        concurrency=concurrency,
        on_failed=on_failed,
        poll_interval_seconds=(
            settings.queue_poll_interval_seconds if poll_interval_seconds is None else poll_interval_seconds
        ),
    )


def start_worker(config: WorkerConfig) -> WorkerHandle:
    worker = create_worker(
        config.queue_name,
        config.handler,
        concurrency=config.concurrency,
        on_failed=config.on_failed,
        redis_client=config.redis_client,
        poll_interval_seconds=config.poll_interval_seconds,
    )
    return worker.start()
