"""Pure transitions over progress records.

Nothing in this module touches the database or the network: every function
takes a record and returns a new one, so whole job histories can be replayed
in tests by comparing (record, update) against the expected record.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from app.core.errors import IncompleteStageError
from app.schemas.automation import AutomationStatus, ProgressRecord, StepDetail, StepStatus
from app.services.automation.stages import PMS_AUTOMATION, StageCatalogue


@dataclass(slots=True)
class StepUpdate:
    step: str | None = None
    sub_step: str | None = None
    step_status: StepStatus | None = None
    agent_completed: str | None = None
    custom_message: str | None = None
    status: AutomationStatus | None = None
    error: str | None = None
    summary: dict[str, Any] | None = None
    completed_at: str | None = None


def _timestamp(now: datetime | None) -> str:
    return (now or datetime.now(timezone.utc)).isoformat()


def create_initial_status(catalogue: StageCatalogue = PMS_AUTOMATION, *, now: datetime | None = None) -> ProgressRecord:
    started = _timestamp(now)
    steps: dict[str, StepDetail] = {}
    for stage in catalogue.stages:
        detail = StepDetail(status="pending")
        if stage.is_multi_agent:
            detail.agents_completed = []
        steps[stage.key] = detail
    first = catalogue.first
    steps[first.key].status = "processing"
    steps[first.key].started_at = started
    return ProgressRecord(
        status="processing",
        current_step=first.key,
        message=first.message,
        progress=first.progress_start,
        steps=steps,
        started_at=started,
    )


def calculate_progress(catalogue: StageCatalogue, step: str, sub_step: str | None = None) -> int:
    stage = catalogue.stage(step)
    if sub_step and stage.is_multi_agent:
        sub = stage.sub_stage(sub_step)
        if sub is not None:
            return stage.progress_start + sub.progress_offset
    return stage.progress_start


def get_message(catalogue: StageCatalogue, step: str, sub_step: str | None = None, custom_message: str | None = None) -> str:
    if custom_message:
        return custom_message
    stage = catalogue.stage(step)
    if sub_step and stage.is_multi_agent:
        sub = stage.sub_stage(sub_step)
        if sub is not None:
            return f"Running {sub.label}..."
    return stage.message


def apply_update(
    record: ProgressRecord,
    update: StepUpdate,
    *,
    catalogue: StageCatalogue = PMS_AUTOMATION,
    now: datetime | None = None,
) -> ProgressRecord:
    current = record.model_copy(deep=True)
    stamp = _timestamp(now)

    if update.step:
        stage = catalogue.stage(update.step)
        current.current_step = stage.key
        current.current_sub_step = update.sub_step
        detail = current.steps.setdefault(stage.key, StepDetail())

        if stage.is_multi_agent:
            if update.sub_step:
                detail.sub_step = update.sub_step
                detail.current_agent = update.sub_step
            if update.agent_completed:
                completed = detail.agents_completed or []
                if update.agent_completed not in completed:
                    completed.append(update.agent_completed)
                detail.agents_completed = completed

        if update.step_status:
            if update.step_status == "completed" and stage.required_sub_stages:
                done = set(detail.agents_completed or [])
                missing = [key for key in stage.required_sub_stages if key not in done]
                if missing:
                    raise IncompleteStageError(f"{stage.key} cannot complete; missing {', '.join(missing)}")
            detail.status = update.step_status
            if update.step_status == "processing" and not detail.started_at:
                detail.started_at = stamp
            if update.step_status == "completed":
                detail.completed_at = stamp
            if update.step_status == "failed" and update.error:
                detail.error = update.error

        # Only reset_to_step may move progress backwards.
        current.progress = max(current.progress, calculate_progress(catalogue, stage.key, update.sub_step))
        current.message = get_message(catalogue, stage.key, update.sub_step, update.custom_message)
    elif update.custom_message:
        current.message = update.custom_message

    if update.status:
        current.status = update.status
    if update.summary is not None:
        current.summary = update.summary
    if update.error:
        current.error = update.error
    if update.completed_at:
        current.completed_at = update.completed_at
    return current


def complete_step(
    record: ProgressRecord,
    completed_step: str,
    next_step: str | None = None,
    *,
    catalogue: StageCatalogue = PMS_AUTOMATION,
    now: datetime | None = None,
) -> ProgressRecord:
    updated = apply_update(record, StepUpdate(step=completed_step, step_status="completed"), catalogue=catalogue, now=now)
    if next_step:
        following = catalogue.stage(next_step)
        step_status: StepStatus = "pending" if following.awaits_approval else "processing"
        resumed: AutomationStatus | None = None
        if step_status == "processing" and updated.status in ("pending", "awaiting_approval"):
            resumed = "processing"
        updated = apply_update(
            updated,
            StepUpdate(step=next_step, step_status=step_status, status=resumed),
            catalogue=catalogue,
            now=now,
        )
    return updated


def set_awaiting_approval(
    record: ProgressRecord,
    approval_step: str,
    *,
    catalogue: StageCatalogue = PMS_AUTOMATION,
    now: datetime | None = None,
) -> ProgressRecord:
    stage = catalogue.stage(approval_step)
    if not stage.awaits_approval:
        raise ValueError(f"{approval_step} is not an approval stage")
    return apply_update(
        record,
        StepUpdate(step=stage.key, step_status="pending", status="awaiting_approval", custom_message=stage.message),
        catalogue=catalogue,
        now=now,
    )


def fail_automation(
    record: ProgressRecord,
    step: str,
    error: str,
    *,
    catalogue: StageCatalogue = PMS_AUTOMATION,
    now: datetime | None = None,
) -> ProgressRecord:
    return apply_update(
        record,
        StepUpdate(
            step=step,
            step_status="failed",
            status="failed",
            error=error,
            custom_message=f"Failed: {error}",
            completed_at=_timestamp(now),
        ),
        catalogue=catalogue,
        now=now,
    )


def reset_to_step(
    record: ProgressRecord,
    target_step: str,
    *,
    catalogue: StageCatalogue = PMS_AUTOMATION,
    now: datetime | None = None,
) -> ProgressRecord:
    current = record.model_copy(deep=True)
    stamp = _timestamp(now)
    target = catalogue.stage(target_step)

    for stage in catalogue.stages[catalogue.index(target.key):]:
        if stage.key == target.key:
            detail = StepDetail(status="processing", started_at=stamp)
        else:
            detail = StepDetail(status="pending")
        if stage.is_multi_agent:
            detail.agents_completed = []
        current.steps[stage.key] = detail

    current.status = "processing"
    current.current_step = target.key
    current.current_sub_step = None
    current.progress = calculate_progress(catalogue, target.key)
    current.message = f"Retrying {target.label}..."
    current.error = None
    current.completed_at = None
    current.summary = None
    return current


def complete_automation(
    record: ProgressRecord,
    summary: dict[str, Any],
    *,
    catalogue: StageCatalogue = PMS_AUTOMATION,
    now: datetime | None = None,
) -> ProgressRecord:
    current = record.model_copy(deep=True)
    stamp = _timestamp(now)
    final = catalogue.last

    for stage in catalogue.stages:
        detail = current.steps.setdefault(stage.key, StepDetail())
        if detail.status == "processing":
            detail.status = "completed"
            detail.completed_at = stamp

    final_detail = current.steps[final.key]
    final_detail.status = "completed"
    final_detail.completed_at = stamp
    if not final_detail.started_at:
        final_detail.started_at = stamp

    tasks_total = (summary.get("tasksCreated") or {}).get("total")
    current.status = "completed"
    current.current_step = final.key
    current.current_sub_step = None
    current.progress = 100
    current.message = f"Complete - {tasks_total} tasks created" if tasks_total is not None else final.message
    current.summary = summary
    current.completed_at = stamp
    return current


def processing_steps(record: ProgressRecord) -> list[str]:
    return [key for key, detail in record.steps.items() if detail.status == "processing"]
