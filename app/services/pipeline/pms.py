"""PMS automation jobs: upload, parser hand-off, two approvals, monthly agents.

The parser answers asynchronously, so a job sits in ``pms_parser`` until its
output is recorded; the next status poll notices and moves the job on to
admin review.
"""

import logging
import time
from collections.abc import Callable
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.errors import AgentError, InvalidOutput, JobNotFound, PipelineError, RetryUnavailable
from app.models.account import GoogleAccount
from app.models.job import Job
from app.schemas.automation import ProgressRecord
from app.services.agents.webhook import PMS_PARSER, AgentInvoker, build_agent_payload, is_structurally_valid
from app.services.automation import state_machine
from app.services.automation.dates import DateRange, previous_month_range
from app.services.automation.idempotency import IdempotencyGuard
from app.services.automation.progress_store import ProgressStore, ProgressTracker, normalize_record
from app.services.automation.stages import PMS_AUTOMATION
from app.services.google.credentials import CredentialProvider
from app.services.google.metrics import MetricsSource
from app.services.pipeline.orchestrator import MonthlyAgentChain, commit_results, create_tasks_from_results

logger = logging.getLogger(__name__)

RETRYABLE_STAGES = ("pms_parser", "monthly_agents")


def _get_pms_job(db: Session, job_id: str) -> Job:
    job = db.scalar(select(Job).where(Job.id == job_id, Job.kind == "pms"))
    if not job:
        raise JobNotFound(job_id)
    return job


def submit_to_parser(db: Session, job: Job, invoker: AgentInvoker) -> Job:
    """Hand the raw input to the parser agent; its answer comes back through ``record_parser_output``."""
    tracker = ProgressTracker(ProgressStore(db), job.id, PMS_AUTOMATION)
    payload = build_agent_payload(
        PMS_PARSER.agent_type,
        domain=job.account.domain_name,
        account_id=job.account_id,
        date_range=None,
        additional_data={"jobId": job.id, "rawInput": job.raw_input},
    )
    try:
        invoker.invoke(
            PMS_PARSER.endpoint(invoker.settings),
            payload,
            PMS_PARSER.name,
            timeout=PMS_PARSER.timeout(invoker.settings),
        )
    except AgentError as exc:
        logger.error("pms_parser_submit_failed", extra={"job_id": job.id, "error": str(exc)})
        tracker.fail("pms_parser", str(exc))
    else:
        logger.info("pms_parser_submitted", extra={"job_id": job.id})
    db.refresh(job)
    return job


def create_pms_job(
    db: Session,
    account: GoogleAccount,
    raw_input: Any,
    invoker: AgentInvoker,
    month: DateRange | None = None,
) -> Job:
    if not is_structurally_valid(raw_input):
        raise ValueError("PMS upload is empty")

    month = month or previous_month_range()
    record = state_machine.create_initial_status(PMS_AUTOMATION)
    record = state_machine.complete_step(record, "file_upload", "pms_parser", catalogue=PMS_AUTOMATION)
    job = Job(
        account_id=account.id,
        kind="pms",
        status=record.status,
        date_start=month.start,
        date_end=month.end,
        raw_input=raw_input,
        progress_detail=record.to_storage(),
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info("pms_job_created", extra={"job_id": job.id, "account_id": account.id})
    return submit_to_parser(db, job, invoker)


def record_parser_output(db: Session, job_id: str, output: Any) -> Job:
    job = _get_pms_job(db, job_id)
    # Output reviewed by an admin is frozen; a new parse goes through retry_job.
    record = _require_stage(normalize_record(job.progress_detail), "pms_parser")
    parser = record.steps.get("pms_parser")
    if job.is_admin_approved or parser is None or parser.status != "processing":
        raise ValueError("Parser output can only be recorded while the parser step is running")
    if not is_structurally_valid(output):
        raise InvalidOutput(PMS_PARSER.name, "parser returned an empty result")
    job.parser_output = output
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info("pms_parser_output_recorded", extra={"job_id": job_id})
    return job


def _parser_finished_unnoticed(job: Job, record: ProgressRecord | None) -> bool:
    if record is None or job.parser_output is None:
        return False
    parser = record.steps.get("pms_parser")
    return record.current_step == "pms_parser" and parser is not None and parser.status == "processing"


def get_job_status(db: Session, job_id: str) -> dict:
    """Status for pollers, advancing a job whose parser finished since the last look."""
    job = db.scalar(select(Job).where(Job.id == job_id))
    if not job:
        raise JobNotFound(job_id)
    record = normalize_record(job.progress_detail)

    if job.kind == "pms" and _parser_finished_unnoticed(job, record):
        store = ProgressStore(db)
        record = store.update(
            job.id,
            lambda current: state_machine.set_awaiting_approval(
                state_machine.complete_step(current, "pms_parser", "admin_approval", catalogue=PMS_AUTOMATION),
                "admin_approval",
                catalogue=PMS_AUTOMATION,
            ),
            catalogue=PMS_AUTOMATION,
        )
        logger.info("pms_parser_reconciled", extra={"job_id": job.id})
        db.refresh(job)

    return {
        "jobStatus": job.status,
        "isAdminApproved": job.is_admin_approved,
        "isClientApproved": job.is_client_approved,
        "automationStatus": record.to_storage() if record else None,
    }


def _require_stage(record: ProgressRecord | None, stage: str) -> ProgressRecord:
    if record is None or record.current_step != stage:
        raise ValueError(f"Job is not waiting on {stage}")
    return record


def approve_admin(db: Session, job_id: str, approved: bool = True) -> Job:
    job = _get_pms_job(db, job_id)
    if not approved:
        if job.is_admin_approved:
            raise ValueError("Admin approval cannot be revoked")
        return job
    if job.is_admin_approved:
        return job

    _require_stage(normalize_record(job.progress_detail), "admin_approval")
    job.is_admin_approved = True
    db.add(job)
    ProgressStore(db).update(
        job.id,
        lambda current: state_machine.set_awaiting_approval(
            state_machine.complete_step(current, "admin_approval", "client_approval", catalogue=PMS_AUTOMATION),
            "client_approval",
            catalogue=PMS_AUTOMATION,
        ),
        catalogue=PMS_AUTOMATION,
    )
    logger.info("pms_admin_approved", extra={"job_id": job_id})
    db.refresh(job)
    return job


def approve_client(db: Session, job_id: str, approved: bool = True) -> Job:
    """Grant client approval and open ``monthly_agents``; the caller schedules the run."""
    job = _get_pms_job(db, job_id)
    if not approved:
        if job.is_client_approved:
            raise ValueError("Client approval cannot be revoked")
        return job
    if job.is_client_approved:
        return job
    if not job.is_admin_approved:
        raise ValueError("Client approval requires admin approval first")

    _require_stage(normalize_record(job.progress_detail), "client_approval")
    job.is_client_approved = True
    db.add(job)
    ProgressTracker(ProgressStore(db), job.id, PMS_AUTOMATION).complete_step("client_approval", "monthly_agents")
    logger.info("pms_client_approved", extra={"job_id": job_id})
    db.refresh(job)
    return job


def retry_job(db: Session, job_id: str, stage: str, invoker: AgentInvoker) -> Job:
    """Rewind a PMS job to ``stage``. Re-running ``monthly_agents`` is left to the caller."""
    job = _get_pms_job(db, job_id)
    if stage not in PMS_AUTOMATION:
        raise ValueError(f"Unknown stage '{stage}'")
    if stage not in RETRYABLE_STAGES:
        raise RetryUnavailable(f"Stage {stage} cannot be retried")
    if stage == "pms_parser" and not job.raw_input:
        raise RetryUnavailable("Original PMS input is no longer stored")
    if stage == "monthly_agents" and not (job.is_client_approved and job.parser_output):
        raise RetryUnavailable("Monthly agents need parser output and client approval")

    tracker = ProgressTracker(ProgressStore(db), job.id, PMS_AUTOMATION)
    if stage == "pms_parser":
        job.parser_output = None
        job.is_admin_approved = False
        job.is_client_approved = False
        db.add(job)
    tracker.reset(stage)
    logger.info("pms_job_retry", extra={"job_id": job_id, "stage": stage})

    db.refresh(job)
    if stage == "pms_parser":
        return submit_to_parser(db, job, invoker)
    return job


class PmsAutomation:
    """Runs the monthly agent chain for an approved PMS job."""

    def __init__(
        self,
        db: Session,
        *,
        invoker: AgentInvoker,
        credentials: CredentialProvider,
        metrics: MetricsSource,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.credentials = credentials
        self.metrics = metrics
        self.sleep = sleep
        self.guard = IdempotencyGuard(db)
        self.store = ProgressStore(db)
        self.chain = MonthlyAgentChain(invoker, self.settings, sleep)

    def run_monthly_agents(self, job_id: str) -> ProgressRecord | None:
        job = _get_pms_job(self.db, job_id)
        if not job.is_client_approved:
            raise ValueError("Monthly agents run only after client approval")

        account = job.account
        tracker = ProgressTracker(self.store, job.id, PMS_AUTOMATION)
        month = DateRange(job.date_start, job.date_end) if job.date_start and job.date_end else previous_month_range()
        started = time.monotonic()

        try:
            tracker.update(state_machine.StepUpdate(step="monthly_agents", sub_step="data_fetch", step_status="processing"))
            credential = self.credentials.get_valid_credential(account.id)
            month_data = self.metrics.fetch_metrics(credential, account.id, account.property_ids, month.start, month.end)
            pending = self.chain.run(
                account=account, month=month, month_data=month_data, tracker=tracker, pms_data=job.parser_output
            )
            # An approved PMS run always writes its own result set.
            result_ids = commit_results(self.db, self.guard, account, pending, force=True)
            tracker.complete_step("monthly_agents", "task_creation")
        except PipelineError as exc:
            logger.error("pms_monthly_agents_failed", extra={"job_id": job_id, "error": str(exc)})
            return tracker.fail(tracker.current_step() or "monthly_agents", str(exc))

        try:
            job.result_json = {"resultIds": result_ids}
            self.db.add(job)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("pms_result_link_failed", extra={"job_id": job_id})

        tasks = create_tasks_from_results(self.db, account, pending, result_ids)
        return tracker.complete(
            {
                "tasksCreated": tasks,
                "agentResults": {key: {"success": True, "resultId": value} for key, value in result_ids.items()},
                "duration": f"{time.monotonic() - started:.1f}s",
            }
        )
