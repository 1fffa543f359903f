from datetime import date, datetime
from typing import Any

from app.schemas.automation import CamelModel


class ProcessAllRequest(CamelModel):
    reference_date: date | None = None
    force: bool = False
    stop_on_error: bool | None = None


class ProcessAllAccepted(CamelModel):
    queued: bool
    task_id: str | None = None
    result: dict[str, Any] | None = None


class AgentResultRead(CamelModel):
    id: str
    agent_type: str
    date_start: date | None
    date_end: date | None
    agent_output: Any
    status: str
    created_at: datetime

    model_config = {"from_attributes": True}
