import logging
import time
from collections.abc import Callable
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.models.account import GoogleAccount
from app.models.agent_result import AgentResult
from app.models.job import Job
from app.services.automation.progress_store import ProgressTracker
from app.services.automation.stages import CLIENT_RUN
from app.services.automation.state_machine import create_initial_status
from app.services.pipeline.orchestrator import ClientPipeline, UnitResult

logger = logging.getLogger(__name__)


def onboarded_accounts(db: Session) -> list[GoogleAccount]:
    return list(
        db.scalars(
            select(GoogleAccount)
            .where(GoogleAccount.onboarding_completed.is_(True))
            .order_by(GoogleAccount.created_at, GoogleAccount.id)
        )
    )


def _create_run_job(db: Session, account: GoogleAccount, reference_date: date | None) -> Job:
    job = Job(
        account_id=account.id,
        kind="agent_run",
        status="processing",
        date_start=reference_date,
        progress_detail=create_initial_status(CLIENT_RUN).to_storage(),
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def run_fleet(
    db: Session,
    pipeline: ClientPipeline,
    *,
    reference_date: date | None = None,
    force: bool = False,
    stop_on_error: bool | None = None,
    settings: Settings | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict:
    """Run every onboarded account through ``pipeline``, one after the other.

    By default a failed account is recorded and the fleet moves on. With
    ``stop_on_error`` the run aborts at the first failed account, which is how
    the scheduled run behaved before per-account outcomes were collected.
    """
    settings = settings or get_settings()
    if stop_on_error is None:
        stop_on_error = settings.fleet_stop_on_error

    accounts = onboarded_accounts(db)
    logger.info("fleet_run_started", extra={"accounts": len(accounts), "force": force, "stop_on_error": stop_on_error})

    results: list[UnitResult] = []
    aborted = False
    for position, account in enumerate(accounts):
        if position > 0:
            sleep(settings.inter_account_delay_seconds)

        job = _create_run_job(db, account, reference_date)
        try:
            outcome = pipeline.run(account, reference_date=reference_date, force=force, job_id=job.id)
        except Exception as exc:
            db.rollback()
            logger.exception("fleet_account_crashed", extra={"account_id": account.id})
            outcome = UnitResult(account_id=account.id, domain=account.domain_name, job_id=job.id, error=str(exc))
            tracker = ProgressTracker(pipeline.store, job.id, CLIENT_RUN)
            tracker.fail(tracker.current_step() or CLIENT_RUN.first.key, str(exc), allow_terminal=True)
        results.append(outcome)

        if not outcome.success and stop_on_error:
            logger.error("fleet_run_aborted", extra={"account_id": account.id, "error": outcome.error})
            aborted = True
            break

    succeeded = sum(1 for outcome in results if outcome.success)
    summary = {
        "success": not aborted and succeeded == len(results),
        "processed": len(results),
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "aborted": aborted,
        "results": [outcome.as_dict() for outcome in results],
    }
    logger.info(
        "fleet_run_completed",
        extra={"processed": summary["processed"], "succeeded": succeeded, "failed": summary["failed"], "aborted": aborted},
    )
    return summary


def latest_results(db: Session, account_id: str) -> dict[str, AgentResult]:
    """Most recent successful result for each agent type of one account."""
    rows = db.scalars(
        select(AgentResult)
        .where(AgentResult.account_id == account_id, AgentResult.status == "success")
        .order_by(AgentResult.created_at.desc())
    )
    latest: dict[str, AgentResult] = {}
    for row in rows:
        latest.setdefault(row.agent_type, row)
    return latest
