"""Ranking analysis for several locations of one account, reported as a single batch.

Every location's job is created up front so pollers see the whole batch
immediately. Locations then run one at a time. If any location exhausts its
retries, every member of the batch is marked failed once the loop ends,
including the ones that finished.
"""

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.errors import JobNotFound, PersistenceError, PipelineError
from app.models.account import GoogleAccount
from app.models.job import Job
from app.schemas.automation import TERMINAL_STATUSES
from app.services.agents.retry import RetryPolicy, with_retry
from app.services.agents.webhook import RANKING_ANALYSIS, AgentInvoker, build_agent_payload
from app.services.automation.dates import trailing_range
from app.services.automation.progress_store import ProgressStore, ProgressTracker, normalize_record
from app.services.automation.stages import RANKING
from app.services.automation.state_machine import create_initial_status
from app.services.google.credentials import CredentialProvider
from app.services.google.metrics import MetricsSource
from app.services.pipeline.action_items import create_tasks

logger = logging.getLogger(__name__)

METRICS_WINDOW_DAYS = 30


@dataclass(frozen=True, slots=True)
class RankingLocation:
    location_id: str
    name: str | None = None


def _queued_record():
    record = create_initial_status(RANKING)
    record.status = "pending"
    record.steps[RANKING.first.key].status = "pending"
    return record


def start_ranking_batch(db: Session, account: GoogleAccount, locations: list[RankingLocation]) -> tuple[str, list[Job]]:
    if not locations:
        raise ValueError("A ranking batch needs at least one location")

    batch_id = str(uuid.uuid4())
    jobs = [
        Job(
            account_id=account.id,
            kind="ranking",
            status="pending",
            batch_id=batch_id,
            location_id=location.location_id,
            location_name=location.name,
            progress_detail=_queued_record().to_storage(),
        )
        for location in locations
    ]
    db.add_all(jobs)
    db.commit()
    for job in jobs:
        db.refresh(job)
    logger.info("ranking_batch_created", extra={"batch_id": batch_id, "account_id": account.id, "locations": len(jobs)})
    return batch_id, jobs


def batch_jobs(db: Session, batch_id: str) -> list[Job]:
    return list(
        db.scalars(
            select(Job).where(Job.batch_id == batch_id, Job.kind == "ranking").order_by(Job.created_at, Job.id)
        )
    )


def _overall_status(statuses: list[str]) -> str:
    if any(status == "failed" for status in statuses):
        return "failed"
    if all(status == "completed" for status in statuses):
        return "completed"
    if all(status == "pending" for status in statuses):
        return "pending"
    return "processing"


def batch_status(db: Session, batch_id: str) -> dict:
    jobs = batch_jobs(db, batch_id)
    if not jobs:
        raise JobNotFound(batch_id)

    members = []
    for job in jobs:
        record = normalize_record(job.progress_detail)
        members.append(
            {
                "jobId": job.id,
                "locationId": job.location_id,
                "locationName": job.location_name,
                "status": job.status,
                "progress": record.progress if record else 0,
                "message": record.message if record else None,
                "error": job.error,
                "result": job.result_json,
            }
        )
    statuses = [job.status for job in jobs]
    return {
        "batchId": batch_id,
        "status": _overall_status(statuses),
        "total": len(jobs),
        "completed": statuses.count("completed"),
        "failed": statuses.count("failed"),
        "jobs": members,
    }


class BatchStatusCache:
    """Read-through cache over ``batch_status``.

    Entries are dropped whenever the coordinator writes a member job; the age
    limit bounds staleness for readers in other processes.
    """

    def __init__(self, max_age_seconds: float = 5.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_age_seconds = max_age_seconds
        self.clock = clock
        self._entries: dict[str, tuple[float, dict]] = {}

    def get(self, db: Session, batch_id: str) -> dict:
        entry = self._entries.get(batch_id)
        if entry is not None and self.clock() - entry[0] <= self.max_age_seconds:
            return entry[1]
        status = batch_status(db, batch_id)
        self._entries[batch_id] = (self.clock(), status)
        return status

    def invalidate(self, batch_id: str | None) -> None:
        if batch_id:
            self._entries.pop(batch_id, None)


batch_cache = BatchStatusCache()


class RankingBatchCoordinator:
    def __init__(
        self,
        db: Session,
        *,
        invoker: AgentInvoker,
        credentials: CredentialProvider,
        metrics: MetricsSource,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        cache: BatchStatusCache | None = None,
    ) -> None:
        self.db = db
        self.invoker = invoker
        self.credentials = credentials
        self.metrics = metrics
        self.settings = settings or get_settings()
        self.sleep = sleep
        self.cache = cache or batch_cache
        self.store = ProgressStore(db, on_save=lambda job: self.cache.invalidate(job.batch_id))

    def process_batch(self, batch_id: str) -> dict:
        jobs = batch_jobs(self.db, batch_id)
        if not jobs:
            raise JobNotFound(batch_id)

        # Redelivered tasks must not re-run or re-fail a finished batch.
        if all(job.status in TERMINAL_STATUSES for job in jobs):
            logger.info("ranking_batch_already_finished", extra={"batch_id": batch_id})
            return batch_status(self.db, batch_id)

        policy = RetryPolicy.ranking(self.settings)
        logger.info("ranking_batch_started", extra={"batch_id": batch_id, "locations": len(jobs)})
        failures: list[str] = []
        for job in jobs:
            if job.status == "completed":
                continue
            if job.status == "failed":
                failures.append(f"{job.location_name or job.location_id} ({job.error})")
                continue
            tracker = ProgressTracker(self.store, job.id, RANKING)

            def attempt(number: int, job: Job = job, tracker: ProgressTracker = tracker) -> None:
                if number > 1:
                    tracker.reset(RANKING.first.key)
                self._process_location(job, tracker)

            try:
                with_retry(
                    attempt,
                    policy,
                    retry_on=(PipelineError,),
                    sleep=self.sleep,
                    label=f"ranking:{job.location_id}",
                )
            except PipelineError as exc:
                failures.append(f"{job.location_name or job.location_id} ({exc})")
                tracker.fail(tracker.current_step() or RANKING.first.key, str(exc))

        if failures:
            message = f"Batch failed: {len(failures)} of {len(jobs)} locations failed after {policy.max_attempts} attempts"
            self.fail_batch(jobs, f"{message}: {'; '.join(failures)}")
        else:
            logger.info("ranking_batch_completed", extra={"batch_id": batch_id})

        self.cache.invalidate(batch_id)
        return batch_status(self.db, batch_id)

    def fail_batch(self, jobs: list[Job], message: str) -> None:
        # Members that already completed are rewritten too; the batch is one deliverable.
        for job in jobs:
            tracker = ProgressTracker(self.store, job.id, RANKING)
            tracker.fail(tracker.current_step() or RANKING.first.key, message, allow_terminal=True)
        logger.error("ranking_batch_failed", extra={"batch_id": jobs[0].batch_id, "jobs": len(jobs), "error": message})

    def _process_location(self, job: Job, tracker: ProgressTracker) -> None:
        account = job.account
        tracker.complete_step("queued", "fetching_metrics")
        credential = self.credentials.get_valid_credential(account.id)

        window = trailing_range(METRICS_WINDOW_DAYS)
        property_ids = dict(account.property_ids or {})
        if job.location_id:
            property_ids["gbp"] = [{"locationId": job.location_id}]
        metrics = self.metrics.fetch_metrics(credential, account.id, property_ids, window.start, window.end)
        tracker.complete_step("fetching_metrics", "awaiting_llm")

        payload = build_agent_payload(
            RANKING_ANALYSIS.agent_type,
            domain=account.domain_name,
            account_id=account.id,
            date_range=window.as_payload(),
            additional_data={"location": {"id": job.location_id, "name": job.location_name}, "metrics": metrics},
        )
        analysis = self.invoker.call(RANKING_ANALYSIS, payload)

        try:
            job.result_json = {"analysis": analysis, "dateRange": window.as_payload()}
            self.db.add(job)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError(f"Failed to store ranking analysis for {job.id}: {exc}") from exc
        self.cache.invalidate(job.batch_id)

        counts = create_tasks(
            self.db,
            account=account,
            agent_type=RANKING_ANALYSIS.agent_type,
            output=analysis,
            default_category="USER",
            metadata={"batch_id": job.batch_id, "location_id": job.location_id, "job_id": job.id},
        )
        tracker.complete({"tasksCreated": counts | {"total": counts["user"] + counts["internal"]}, "locationId": job.location_id})
        logger.info("ranking_location_completed", extra={"job_id": job.id, "location_id": job.location_id})
