import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.agent_result import AgentResult

logger = logging.getLogger(__name__)

# Results still awaiting human review block a re-run just like successful ones.
ACCEPTABLE_STATUSES = frozenset({"success", "pending", "approved"})


@dataclass(frozen=True, slots=True)
class DuplicateSkip:
    """Not an error: an acceptable result already exists for the tuple."""

    agent_type: str
    result_id: str
    status: str

    def as_dict(self) -> dict:
        return {"skipped": True, "reason": "duplicate", "resultId": self.result_id, "status": self.status}


class IdempotencyGuard:
    def __init__(self, db: Session, acceptable_statuses: Iterable[str] = ACCEPTABLE_STATUSES) -> None:
        self.db = db
        self.acceptable_statuses = frozenset(acceptable_statuses)

    def find_existing_result(
        self,
        account_id: str,
        stage_name: str,
        date_start: date | None,
        date_end: date | None,
        acceptable_statuses: Iterable[str] | None = None,
    ) -> AgentResult | None:
        statuses = frozenset(acceptable_statuses) if acceptable_statuses is not None else self.acceptable_statuses
        return self.db.scalar(
            select(AgentResult)
            .where(
                AgentResult.account_id == account_id,
                AgentResult.agent_type == stage_name,
                AgentResult.date_start == date_start,
                AgentResult.date_end == date_end,
                AgentResult.status.in_(statuses),
            )
            .order_by(AgentResult.created_at.desc())
            .limit(1)
        )

    def has_existing_result(
        self,
        account_id: str,
        stage_name: str,
        date_start: date | None,
        date_end: date | None,
        acceptable_statuses: Iterable[str] | None = None,
    ) -> bool:
        return self.find_existing_result(account_id, stage_name, date_start, date_end, acceptable_statuses) is not None

    def check(
        self,
        account_id: str,
        stage_name: str,
        date_start: date | None,
        date_end: date | None,
        *,
        force: bool,
    ) -> DuplicateSkip | None:
        if force:
            logger.info("idempotency_bypassed", extra={"account_id": account_id, "stage": stage_name})
            return None
        existing = self.find_existing_result(account_id, stage_name, date_start, date_end)
        if existing is None:
            return None
        logger.info(
            "duplicate_skip",
            extra={"account_id": account_id, "stage": stage_name, "result_id": existing.id, "status": existing.status},
        )
        return DuplicateSkip(agent_type=stage_name, result_id=existing.id, status=existing.status)
