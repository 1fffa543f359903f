import json
import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.errors import JobNotFound
from app.models.job import Job
from app.schemas.automation import ProgressRecord
from app.services.automation import state_machine
from app.services.automation.stages import CATALOGUE_BY_JOB_KIND, PMS_AUTOMATION, StageCatalogue

logger = logging.getLogger(__name__)


class JobAlreadyTerminal(ValueError):
    pass


def normalize_record(value: dict | str | None) -> ProgressRecord | None:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = json.loads(value)
    return ProgressRecord.model_validate(value)


class ProgressStore:
    """Loads and saves the progress record kept on ``jobs.progress_detail``.

    Writes are read-modify-write; callers must not interleave two writers on
    the same job.
    """

    def __init__(self, db: Session, on_save: Callable[[Job], None] | None = None) -> None:
        self.db = db
        self.on_save = on_save

    def _job(self, job_id: str) -> Job:
        job = self.db.scalar(select(Job).where(Job.id == job_id))
        if not job:
            raise JobNotFound(job_id)
        return job

    def load(self, job_id: str) -> ProgressRecord | None:
        return normalize_record(self._job(job_id).progress_detail)

    def save(self, job_id: str, record: ProgressRecord) -> None:
        job = self._job(job_id)
        job.progress_detail = record.to_storage()
        job.status = record.status
        job.error = record.error
        self.db.add(job)
        self.db.commit()
        if self.on_save is not None:
            self.on_save(job)
        logger.info(
            "progress_updated",
            extra={"job_id": job_id, "step": record.current_step, "progress": record.progress, "status": record.status},
        )

    def update(
        self,
        job_id: str,
        mutate: Callable[[ProgressRecord], ProgressRecord],
        *,
        catalogue: StageCatalogue | None = None,
        allow_terminal: bool = False,
    ) -> ProgressRecord:
        job = self._job(job_id)
        catalogue = catalogue or CATALOGUE_BY_JOB_KIND.get(job.kind, PMS_AUTOMATION)
        record = normalize_record(job.progress_detail) or state_machine.create_initial_status(catalogue)
        if record.is_terminal and not allow_terminal:
            raise JobAlreadyTerminal(f"Job {job_id} is already {record.status}")
        updated = mutate(record)
        self.save(job_id, updated)
        return updated


class ProgressTracker:
    """Binds a store, a job and a stage catalogue; a tracker without a job id records nothing."""

    def __init__(self, store: ProgressStore | None, job_id: str | None, catalogue: StageCatalogue) -> None:
        self.store = store
        self.job_id = job_id
        self.catalogue = catalogue

    @property
    def enabled(self) -> bool:
        return self.store is not None and self.job_id is not None

    def _apply(self, mutate: Callable[[ProgressRecord], ProgressRecord], allow_terminal: bool = False) -> ProgressRecord | None:
        if not self.enabled:
            return None
        return self.store.update(self.job_id, mutate, catalogue=self.catalogue, allow_terminal=allow_terminal)

    def update(self, update: state_machine.StepUpdate, now: datetime | None = None) -> ProgressRecord | None:
        return self._apply(lambda record: state_machine.apply_update(record, update, catalogue=self.catalogue, now=now))

    def complete_step(self, completed_step: str, next_step: str | None = None) -> ProgressRecord | None:
        return self._apply(
            lambda record: state_machine.complete_step(record, completed_step, next_step, catalogue=self.catalogue)
        )

    def fail(self, step: str, error: str, allow_terminal: bool = False) -> ProgressRecord | None:
        return self._apply(
            lambda record: state_machine.fail_automation(record, step, error, catalogue=self.catalogue),
            allow_terminal=allow_terminal,
        )

    def reset(self, step: str) -> ProgressRecord | None:
        return self._apply(
            lambda record: state_machine.reset_to_step(record, step, catalogue=self.catalogue),
            allow_terminal=True,
        )

    def complete(self, summary: dict) -> ProgressRecord | None:
        return self._apply(lambda record: state_machine.complete_automation(record, summary, catalogue=self.catalogue))

    def current_step(self) -> str | None:
        if not self.enabled:
            return None
        record = self.store.load(self.job_id)
        return record.current_step if record else None
