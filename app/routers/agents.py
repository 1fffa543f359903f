from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.db.session import get_db
from app.routers.deps import require_operator
from app.schemas.agents import AgentResultRead, ProcessAllAccepted, ProcessAllRequest
from app.services.pipeline.fleet import latest_results
from app.workers.tasks import run_fleet_job

router = APIRouter(prefix="/agents", tags=["agents"])


@router.post("/process-all", response_model=ProcessAllAccepted, status_code=status.HTTP_202_ACCEPTED)
def process_all(body: ProcessAllRequest, operator: str = Depends(require_operator)) -> ProcessAllAccepted:
    reference_date = body.reference_date.isoformat() if body.reference_date else None
    if get_settings().celery_task_always_eager:
        result = run_fleet_job(reference_date, body.force, body.stop_on_error)
        return ProcessAllAccepted(queued=False, result=result)
    task = run_fleet_job.delay(reference_date, body.force, body.stop_on_error)
    return ProcessAllAccepted(queued=True, task_id=task.id)


@router.get("/latest/{account_id}", response_model=dict[str, AgentResultRead])
def get_latest_results(
    account_id: str,
    db: Session = Depends(get_db),
    operator: str = Depends(require_operator),
) -> dict:
    return latest_results(db, account_id)
