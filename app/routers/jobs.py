from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.errors import InvalidOutput, RetryUnavailable
from app.db.session import get_db
from app.models.account import GoogleAccount
from app.routers.deps import get_invoker, require_operator
from app.schemas.job import ApprovalRequest, JobCreated, JobStatusRead, ParserOutputRequest, PmsJobCreate, RetryRequest
from app.services.agents.webhook import AgentInvoker
from app.services.pipeline import pms
from app.workers.tasks import run_pms_monthly_agents_job

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _schedule_monthly_agents(db: Session, job_id: str) -> str | None:
    if get_settings().celery_task_always_eager:
        run_pms_monthly_agents_job(job_id)
        # The run wrote through its own session.
        db.expire_all()
        return None
    return run_pms_monthly_agents_job.delay(job_id).id


def _status(db: Session, job_id: str) -> JobStatusRead:
    return JobStatusRead.model_validate(pms.get_job_status(db, job_id))


@router.post("", response_model=JobCreated, status_code=status.HTTP_201_CREATED)
def create_job(
    body: PmsJobCreate,
    db: Session = Depends(get_db),
    invoker: AgentInvoker = Depends(get_invoker),
    operator: str = Depends(require_operator),
) -> JobCreated:
    account = db.scalar(select(GoogleAccount).where(GoogleAccount.id == body.account_id))
    if not account:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    try:
        job = pms.create_pms_job(db, account, body.raw_input, invoker)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return JobCreated(job_id=job.id, status=job.status)


@router.get("/{job_id}/status", response_model=JobStatusRead)
def get_job_status(job_id: str, db: Session = Depends(get_db)) -> JobStatusRead:
    return _status(db, job_id)


@router.post("/{job_id}/parser-output", response_model=JobStatusRead)
def post_parser_output(job_id: str, body: ParserOutputRequest, db: Session = Depends(get_db)) -> JobStatusRead:
    try:
        pms.record_parser_output(db, job_id, body.output)
    except InvalidOutput as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _status(db, job_id)


@router.post("/{job_id}/admin-approval", response_model=JobStatusRead)
def admin_approval(
    job_id: str,
    body: ApprovalRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(require_operator),
) -> JobStatusRead:
    try:
        pms.approve_admin(db, job_id, body.approved)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _status(db, job_id)


@router.post("/{job_id}/client-approval", response_model=JobStatusRead)
def client_approval(
    job_id: str,
    body: ApprovalRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(require_operator),
) -> JobStatusRead:
    was_approved = pms.get_job_status(db, job_id)["isClientApproved"]
    try:
        job = pms.approve_client(db, job_id, body.approved)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    if job.is_client_approved and not was_approved:
        task_id = _schedule_monthly_agents(db, job.id)
        if task_id:
            job.task_id = task_id
            db.add(job)
            db.commit()
    return _status(db, job_id)


@router.post("/{job_id}/retry", response_model=JobStatusRead, status_code=status.HTTP_202_ACCEPTED)
def retry_job(
    job_id: str,
    body: RetryRequest,
    db: Session = Depends(get_db),
    invoker: AgentInvoker = Depends(get_invoker),
    operator: str = Depends(require_operator),
) -> JobStatusRead:
    try:
        pms.retry_job(db, job_id, body.stage, invoker)
    except RetryUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    if body.stage == "monthly_agents":
        _schedule_monthly_agents(db, job_id)
    return _status(db, job_id)
