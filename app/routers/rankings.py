from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.errors import JobNotFound
from app.db.session import get_db
from app.models.account import GoogleAccount
from app.routers.deps import require_operator
from app.schemas.ranking import RankingBatchCreate, RankingBatchCreated
from app.services.pipeline.ranking_batch import RankingLocation, batch_cache, start_ranking_batch
from app.workers.tasks import process_ranking_batch_job

router = APIRouter(prefix="/rankings", tags=["rankings"])


@router.post("/batches", response_model=RankingBatchCreated, status_code=status.HTTP_202_ACCEPTED)
def create_batch(
    body: RankingBatchCreate,
    db: Session = Depends(get_db),
    operator: str = Depends(require_operator),
) -> RankingBatchCreated:
    account = db.scalar(select(GoogleAccount).where(GoogleAccount.id == body.account_id))
    if not account:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")

    batch_id, jobs = start_ranking_batch(
        db, account, [RankingLocation(location.location_id, location.name) for location in body.locations]
    )
    job_ids = [job.id for job in jobs]
    if get_settings().celery_task_always_eager:
        process_ranking_batch_job(batch_id)
    else:
        task = process_ranking_batch_job.delay(batch_id)
        for job in jobs:
            job.task_id = task.id
        db.add_all(jobs)
        db.commit()
    return RankingBatchCreated(batch_id=batch_id, job_ids=job_ids)


@router.get("/batches/{batch_id}")
def get_batch(batch_id: str, db: Session = Depends(get_db), operator: str = Depends(require_operator)) -> dict:
    try:
        return batch_cache.get(db, batch_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found") from exc
