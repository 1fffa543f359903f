import logging
from datetime import date

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.errors import JobNotFound
from app.db.session import session_scope
from app.services.agents.webhook import AgentInvoker
from app.services.automation.progress_store import ProgressStore, ProgressTracker
from app.services.automation.stages import PMS_AUTOMATION, RANKING
from app.services.google.credentials import GoogleCredentialProvider
from app.services.google.metrics import MetricsSource
from app.services.pipeline.fleet import run_fleet
from app.services.pipeline.orchestrator import ClientPipeline
from app.services.pipeline.pms import PmsAutomation
from app.services.pipeline.ranking_batch import RankingBatchCoordinator, batch_cache, batch_jobs
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def build_collaborators(db: Session) -> dict:
    settings = get_settings()
    return {
        "invoker": AgentInvoker(settings),
        "credentials": GoogleCredentialProvider(db, settings),
        "metrics": MetricsSource(timeout=settings.metrics_timeout_seconds),
        "settings": settings,
    }


@celery_app.task(name="app.workers.tasks.run_fleet_job")
def run_fleet_job(reference_date: str | None = None, force: bool = False, stop_on_error: bool | None = None) -> dict:
    with session_scope() as db:
        collaborators = build_collaborators(db)
        pipeline = ClientPipeline(db, **collaborators)
        return run_fleet(
            db,
            pipeline,
            reference_date=date.fromisoformat(reference_date) if reference_date else None,
            force=force,
            stop_on_error=stop_on_error,
            settings=collaborators["settings"],
            sleep=pipeline.sleep,
        )


@celery_app.task(name="app.workers.tasks.process_ranking_batch_job")
def process_ranking_batch_job(batch_id: str) -> dict | None:
    with session_scope() as db:
        try:
            coordinator = RankingBatchCoordinator(db, **build_collaborators(db))
            return coordinator.process_batch(batch_id)
        except JobNotFound:
            logger.warning("ranking_batch_missing", extra={"batch_id": batch_id})
            return None
        except Exception as exc:  # noqa: BLE001
            db.rollback()
            logger.exception("ranking_batch_job_failed", extra={"batch_id": batch_id, "error": str(exc)})
            store = ProgressStore(db, on_save=lambda job: batch_cache.invalidate(job.batch_id))
            for job in batch_jobs(db, batch_id):
                tracker = ProgressTracker(store, job.id, RANKING)
                tracker.fail(tracker.current_step() or RANKING.first.key, f"Batch failed: {exc}", allow_terminal=True)
            return None


@celery_app.task(name="app.workers.tasks.run_pms_monthly_agents_job")
def run_pms_monthly_agents_job(job_id: str) -> None:
    with session_scope() as db:
        try:
            PmsAutomation(db, **build_collaborators(db)).run_monthly_agents(job_id)
        except JobNotFound:
            logger.warning("pms_job_missing", extra={"job_id": job_id})
        except Exception as exc:  # noqa: BLE001
            db.rollback()
            logger.exception("pms_monthly_job_failed", extra={"job_id": job_id, "error": str(exc)})
            tracker = ProgressTracker(ProgressStore(db), job_id, PMS_AUTOMATION)
            tracker.fail(tracker.current_step() or "monthly_agents", str(exc), allow_terminal=True)
