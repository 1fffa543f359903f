"""Per-account agent pipeline.

One unit of work runs the daily agent, then (when eligible) the monthly chain
Summary -> Opportunity -> CRO Optimizer. Agent outputs are held in memory and
only written once every stage attempted in the pass has validated; a failure
anywhere re-runs the whole unit under the per-unit retry policy.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.errors import AgentError, PersistenceError, PipelineError
from app.models.account import GoogleAccount
from app.models.agent_result import AgentResult
from app.models.data_store import GoogleDataStore
from app.services.agents.retry import RetryPolicy, with_retry
from app.services.agents.webhook import (
    CRO_OPTIMIZER,
    OPPORTUNITY,
    PROOFLINE,
    REFERRAL_ENGINE,
    SUMMARY,
    AgentInvoker,
    AgentSpec,
    build_agent_payload,
)
from app.services.automation.dates import DailyDates, DateRange, daily_dates, previous_month_range, should_run_monthly_agents
from app.services.automation.idempotency import IdempotencyGuard
from app.services.automation.progress_store import ProgressStore, ProgressTracker
from app.services.automation.stages import CLIENT_RUN
from app.services.automation.state_machine import StepUpdate
from app.services.google.credentials import BearerCredential, CredentialProvider
from app.services.google.metrics import MetricsSource
from app.services.pipeline.action_items import create_tasks

logger = logging.getLogger(__name__)

UNIT_AGENT_TYPE = "pipeline"
TASK_CATEGORY_BY_AGENT = {OPPORTUNITY.agent_type: "USER", CRO_OPTIMIZER.agent_type: "INTERNAL"}


@dataclass(slots=True)
class PendingResult:
    spec: AgentSpec
    date_range: DateRange
    agent_input: dict
    agent_output: Any
    data_row: dict | None = None


@dataclass(slots=True)
class UnitResult:
    account_id: str
    domain: str
    job_id: str | None = None
    success: bool = False
    attempts: int = 0
    daily: dict = field(default_factory=dict)
    monthly: dict = field(default_factory=dict)
    result_ids: dict[str, str] = field(default_factory=dict)
    tasks_created: dict[str, int] = field(default_factory=dict)
    error: str | None = None

    def as_dict(self) -> dict:
        return {
            "accountId": self.account_id,
            "domain": self.domain,
            "jobId": self.job_id,
            "success": self.success,
            "attempts": self.attempts,
            "daily": self.daily,
            "monthly": self.monthly,
            "resultIds": self.result_ids,
            "tasksCreated": self.tasks_created,
            "error": self.error,
        }


def _data_columns(bundle: dict) -> dict:
    return {"ga4_data": bundle.get("ga4Data"), "gsc_data": bundle.get("gscData"), "gbp_data": bundle.get("gbpData")}


def commit_results(
    db: Session,
    guard: IdempotencyGuard,
    account: GoogleAccount,
    pending: list[PendingResult],
    *,
    force: bool = False,
) -> dict[str, str]:
    """Persist raw data rows, then one agent result per stage, in one transaction."""
    committed: dict[str, str] = {}
    to_insert: list[PendingResult] = []
    try:
        for item in pending:
            if not force:
                existing = guard.find_existing_result(
                    account.id, item.spec.agent_type, item.date_range.start, item.date_range.end
                )
                if existing is not None:
                    logger.warning(
                        "duplicate_at_commit",
                        extra={"account_id": account.id, "stage": item.spec.agent_type, "result_id": existing.id},
                    )
                    committed[item.spec.agent_type] = existing.id
                    continue
            to_insert.append(item)

        for item in to_insert:
            if item.data_row is not None:
                db.add(
                    GoogleDataStore(
                        account_id=account.id,
                        domain=account.domain_name,
                        date_start=item.date_range.start,
                        date_end=item.date_range.end,
                        **item.data_row,
                    )
                )
        rows: list[AgentResult] = []
        for item in to_insert:
            row = AgentResult(
                account_id=account.id,
                domain=account.domain_name,
                agent_type=item.spec.agent_type,
                date_start=item.date_range.start,
                date_end=item.date_range.end,
                agent_input=item.agent_input,
                agent_output=item.agent_output,
                status="success",
            )
            db.add(row)
            rows.append(row)
        db.flush()
        committed.update({row.agent_type: row.id for row in rows})
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(f"Failed to persist agent results: {exc}") from exc

    logger.info("results_committed", extra={"account_id": account.id, "result_ids": committed})
    return committed


def record_unit_failure(db: Session, account: GoogleAccount, date_range: DateRange | None, error: str) -> str | None:
    row = AgentResult(
        account_id=account.id,
        domain=account.domain_name,
        agent_type=UNIT_AGENT_TYPE,
        date_start=date_range.start if date_range else None,
        date_end=date_range.end if date_range else None,
        status="error",
        error_message=error,
    )
    try:
        db.add(row)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("unit_failure_not_recorded", extra={"account_id": account.id})
        return None
    return row.id


def create_tasks_from_results(
    db: Session, account: GoogleAccount, pending: list[PendingResult], result_ids: dict[str, str]
) -> dict[str, int]:
    totals = {"user": 0, "internal": 0}
    for item in pending:
        category = TASK_CATEGORY_BY_AGENT.get(item.spec.agent_type)
        if category is None:
            continue
        counts = create_tasks(
            db,
            account=account,
            agent_type=item.spec.agent_type,
            output=item.agent_output,
            default_category=category,
            metadata={
                "agent_result_id": result_ids.get(item.spec.agent_type),
                "date_start": item.date_range.start.isoformat(),
                "date_end": item.date_range.end.isoformat(),
            },
        )
        for key, value in counts.items():
            totals[key] += value
    return totals | {"total": totals["user"] + totals["internal"]}


class MonthlyAgentChain:
    """Summary -> (Referral Engine) -> Opportunity -> CRO Optimizer, with rate-limit pauses."""

    def __init__(self, invoker: AgentInvoker, settings: Settings, sleep: Callable[[float], None]) -> None:
        self.invoker = invoker
        self.settings = settings
        self.sleep = sleep

    def _mark(self, tracker: ProgressTracker, sub_step: str, completed: bool = False, message: str | None = None) -> None:
        tracker.update(
            StepUpdate(
                step="monthly_agents",
                sub_step=sub_step,
                agent_completed=sub_step if completed else None,
                custom_message=message,
            )
        )

    def run(
        self,
        *,
        account: GoogleAccount,
        month: DateRange,
        month_data: dict,
        tracker: ProgressTracker,
        pms_data: Any = None,
    ) -> list[PendingResult]:
        def payload(agent: str, additional_data: Any) -> dict:
            return build_agent_payload(
                agent,
                domain=account.domain_name,
                account_id=account.id,
                date_range=month.as_payload(),
                additional_data=additional_data,
            )

        results: list[PendingResult] = []

        summary_input = payload(SUMMARY.agent_type, month_data if pms_data is None else {**month_data, "pmsData": pms_data})
        self._mark(tracker, "summary_agent")
        summary_output = self.invoker.call(SUMMARY, summary_input)
        results.append(PendingResult(SUMMARY, month, summary_input, summary_output, data_row={"run_type": "monthly", **_data_columns(month_data)}))
        self._mark(tracker, "summary_agent", completed=True)

        if pms_data is not None and REFERRAL_ENGINE.endpoint(self.settings):
            self.sleep(self.settings.inter_stage_delay_seconds)
            referral_input = payload(REFERRAL_ENGINE.agent_type, {"pmsData": pms_data, "summary": summary_output})
            self._mark(tracker, "referral_engine")
            referral_output = self.invoker.call(REFERRAL_ENGINE, referral_input)
            results.append(PendingResult(REFERRAL_ENGINE, month, referral_input, referral_output))
            self._mark(tracker, "referral_engine", completed=True)

        self.sleep(self.settings.inter_stage_delay_seconds)
        # Opportunity only ever sees the Summary agent's answer.
        opportunity_input = payload(OPPORTUNITY.agent_type, summary_output)
        self._mark(tracker, "opportunity_agent")
        opportunity_output = self.invoker.call(OPPORTUNITY, opportunity_input)
        results.append(PendingResult(OPPORTUNITY, month, opportunity_input, opportunity_output))
        self._mark(tracker, "opportunity_agent", completed=True)

        self.sleep(self.settings.inter_stage_delay_seconds)
        cro_input = payload(CRO_OPTIMIZER.agent_type, {"summary": summary_output, "opportunity": opportunity_output})
        self._mark(tracker, "cro_optimizer")
        cro_output = with_retry(
            lambda attempt: self.invoker.call(CRO_OPTIMIZER, cro_input),
            RetryPolicy.per_call(self.settings),
            retry_on=(AgentError,),
            sleep=self.sleep,
            label=f"cro_optimizer:{account.id}",
            on_retry=lambda attempt, exc: self._mark(
                tracker, "cro_optimizer", message=f"CRO Optimizer attempt {attempt} failed ({exc}); retrying..."
            ),
        )
        results.append(PendingResult(CRO_OPTIMIZER, month, cro_input, cro_output))
        self._mark(tracker, "cro_optimizer", completed=True)
        return results


class ClientPipeline:
    catalogue = CLIENT_RUN

    def __init__(
        self,
        db: Session,
        *,
        invoker: AgentInvoker,
        credentials: CredentialProvider,
        metrics: MetricsSource,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = db
        self.invoker = invoker
        self.credentials = credentials
        self.metrics = metrics
        self.settings = settings or get_settings()
        self.sleep = sleep
        self.guard = IdempotencyGuard(db)
        self.store = ProgressStore(db)
        self.chain = MonthlyAgentChain(invoker, self.settings, sleep)

    def run(
        self,
        account: GoogleAccount,
        *,
        reference_date: date | None = None,
        force: bool = False,
        job_id: str | None = None,
    ) -> UnitResult:
        tracker = ProgressTracker(self.store if job_id else None, job_id, self.catalogue)
        daily = daily_dates(reference_date)
        month = previous_month_range(reference_date)
        result = UnitResult(account_id=account.id, domain=account.domain_name, job_id=job_id)
        started = time.monotonic()

        def attempt(number: int) -> None:
            result.attempts = number
            if number > 1:
                tracker.reset("credentials")
            self._run_once(account, daily, month, reference_date, force, tracker, result, started)

        logger.info(
            "client_run_started",
            extra={"account_id": account.id, "domain": account.domain_name, "reference_date": str(reference_date or "")},
        )
        try:
            with_retry(
                attempt,
                RetryPolicy.per_unit(self.settings),
                retry_on=(PipelineError,),
                sleep=self.sleep,
                label=f"client:{account.id}",
            )
        except PipelineError as exc:
            result.success = False
            result.error = str(exc)
            record_unit_failure(self.db, account, daily.range, str(exc))
            tracker.fail(tracker.current_step() or self.catalogue.first.key, str(exc))
            logger.error("client_run_failed", extra={"account_id": account.id, "attempts": result.attempts, "error": str(exc)})
            return result

        result.success = True
        logger.info("client_run_completed", extra={"account_id": account.id, "attempts": result.attempts})
        return result

    def _run_daily(self, account: GoogleAccount, credential: BearerCredential, daily: DailyDates) -> PendingResult:
        before = self.metrics.fetch_metrics(
            credential, account.id, account.property_ids, daily.day_before_yesterday, daily.day_before_yesterday
        )
        yesterday = self.metrics.fetch_metrics(credential, account.id, account.property_ids, daily.yesterday, daily.yesterday)
        agent_input = build_agent_payload(
            PROOFLINE.agent_type,
            domain=account.domain_name,
            account_id=account.id,
            date_range=daily.as_payload(),
            additional_data={"yesterday": yesterday, "dayBeforeYesterday": before},
        )
        output = self.invoker.call(PROOFLINE, agent_input)
        columns_before, columns_yesterday = _data_columns(before), _data_columns(yesterday)
        data_row = {"run_type": "daily"} | {
            column: {"yesterday": columns_yesterday[column], "dayBeforeYesterday": columns_before[column]}
            for column in columns_before
        }
        return PendingResult(PROOFLINE, daily.range, agent_input, output, data_row=data_row)

    def _run_once(
        self,
        account: GoogleAccount,
        daily: DailyDates,
        month: DateRange,
        reference_date: date | None,
        force: bool,
        tracker: ProgressTracker,
        result: UnitResult,
        started: float,
    ) -> None:
        tracker.update(StepUpdate(step="credentials", step_status="processing"))
        credential = self.credentials.get_valid_credential(account.id)
        tracker.complete_step("credentials", "daily_agent")

        pending: list[PendingResult] = []
        skip = self.guard.check(account.id, PROOFLINE.agent_type, daily.day_before_yesterday, daily.yesterday, force=force)
        if skip is not None:
            result.daily = skip.as_dict()
            tracker.update(StepUpdate(step="daily_agent", step_status="skipped", custom_message="Daily result already exists"))
        else:
            pending.append(self._run_daily(account, credential, daily))
            result.daily = {"skipped": False}
            tracker.update(StepUpdate(step="daily_agent", step_status="completed"))

        if not should_run_monthly_agents(reference_date, data_available=self.settings.monthly_data_available):
            result.monthly = {"skipped": True, "reason": "conditions_not_met"}
            tracker.update(StepUpdate(step="monthly_agents", step_status="skipped", custom_message="Monthly conditions not met"))
        else:
            skip = self.guard.check(account.id, SUMMARY.agent_type, month.start, month.end, force=force)
            if skip is not None:
                result.monthly = skip.as_dict()
                tracker.update(StepUpdate(step="monthly_agents", step_status="skipped", custom_message="Monthly results already exist"))
            else:
                self.sleep(self.settings.inter_stage_delay_seconds)
                tracker.update(StepUpdate(step="monthly_agents", sub_step="data_fetch", step_status="processing"))
                month_data = self.metrics.fetch_metrics(credential, account.id, account.property_ids, month.start, month.end)
                pending.extend(self.chain.run(account=account, month=month, month_data=month_data, tracker=tracker))
                tracker.update(StepUpdate(step="monthly_agents", step_status="completed"))
                result.monthly = {"skipped": False}

        tracker.update(StepUpdate(step="commit", step_status="processing"))
        result.result_ids = commit_results(self.db, self.guard, account, pending, force=force)
        for section, agent_type in ((result.daily, PROOFLINE.agent_type), (result.monthly, SUMMARY.agent_type)):
            if not section.get("skipped"):
                section["resultId"] = result.result_ids.get(agent_type)
        tracker.complete_step("commit", "task_creation")

        result.tasks_created = create_tasks_from_results(self.db, account, pending, result.result_ids)
        tracker.complete(
            {
                "tasksCreated": result.tasks_created,
                "agentResults": {key: {"success": True, "resultId": value} for key, value in result.result_ids.items()},
                "duration": f"{time.monotonic() - started:.1f}s",
            }
        )
