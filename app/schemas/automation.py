from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

AutomationStatus = Literal["pending", "processing", "completed", "failed", "awaiting_approval"]
StepStatus = Literal["pending", "processing", "completed", "failed", "skipped"]

TERMINAL_STATUSES = frozenset({"completed", "failed"})


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StepDetail(CamelModel):
    status: StepStatus = "pending"
    started_at: str | None = None
    completed_at: str | None = None
    error: str | None = None
    sub_step: str | None = None
    current_agent: str | None = None
    agents_completed: list[str] | None = None


class ProgressRecord(CamelModel):
    status: AutomationStatus
    current_step: str
    current_sub_step: str | None = None
    message: str
    progress: int = Field(ge=0, le=100)
    steps: dict[str, StepDetail]
    summary: dict[str, Any] | None = None
    started_at: str
    completed_at: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
