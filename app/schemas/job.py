from typing import Any

from pydantic import Field

from app.schemas.automation import CamelModel


class JobStatusRead(CamelModel):
    job_status: str
    is_admin_approved: bool
    is_client_approved: bool
    automation_status: dict[str, Any] | None = None


class PmsJobCreate(CamelModel):
    account_id: str
    raw_input: dict[str, Any] | list[Any]


class JobCreated(CamelModel):
    job_id: str
    status: str


class ApprovalRequest(CamelModel):
    approved: bool = True


class RetryRequest(CamelModel):
    stage: str = Field(min_length=1)


class ParserOutputRequest(CamelModel):
    output: dict[str, Any] | list[Any]
