from datetime import date

import pytest
from sqlalchemy import select

from app.core.errors import InvalidOutput, PersistenceError, RetryUnavailable, UpstreamUnavailable
from app.models.agent_result import AgentResult
from app.services.automation.dates import DateRange
from app.services.automation.progress_store import normalize_record
from app.services.pipeline import pms

MONTH = DateRange(date(2024, 2, 1), date(2024, 2, 29))
RAW_INPUT = {"rows": [{"source": "Google", "referrals": 12, "production": 18400}]}
PARSED = {"monthly_rollup": [{"month": "2024-02", "self_referrals": 9, "doctor_referrals": 3}]}


@pytest.fixture()
def automation(db, collaborators):
    return pms.PmsAutomation(db, **collaborators)


def _approved_job(db, account, invoker):
    job = pms.create_pms_job(db, account, RAW_INPUT, invoker, month=MONTH)
    pms.record_parser_output(db, job.id, PARSED)
    pms.get_job_status(db, job.id)
    pms.approve_admin(db, job.id)
    return pms.approve_client(db, job.id)


def test_create_job_submits_raw_input_to_parser(db, account, invoker):
    job = pms.create_pms_job(db, account, RAW_INPUT, invoker, month=MONTH)

    record = normalize_record(job.progress_detail)
    assert job.status == "processing"
    assert record.current_step == "pms_parser"
    assert record.steps["file_upload"].status == "completed"
    submitted = invoker.calls_for("pms_parser")
    assert submitted[0]["additional_data"] == {"jobId": job.id, "rawInput": RAW_INPUT}


def test_parser_submission_failure_fails_the_job(db, account, invoker):
    invoker.fail_always("pms_parser", UpstreamUnavailable("PMS Parser", "no webhook URL configured"))

    job = pms.create_pms_job(db, account, RAW_INPUT, invoker, month=MONTH)

    assert job.status == "failed"
    assert "no webhook URL configured" in job.error


def test_empty_upload_is_rejected(db, account, invoker):
    with pytest.raises(ValueError):
        pms.create_pms_job(db, account, {}, invoker)


def test_status_poll_reconciles_finished_parser(db, account, invoker):
    job = pms.create_pms_job(db, account, RAW_INPUT, invoker, month=MONTH)
    assert pms.get_job_status(db, job.id)["automationStatus"]["currentStep"] == "pms_parser"

    pms.record_parser_output(db, job.id, PARSED)
    status = pms.get_job_status(db, job.id)

    assert status["jobStatus"] == "awaiting_approval"
    assert status["isAdminApproved"] is False
    assert status["automationStatus"]["currentStep"] == "admin_approval"
    assert status["automationStatus"]["steps"]["pms_parser"]["status"] == "completed"
    assert status["automationStatus"]["message"] == "Awaiting admin review"


def test_empty_parser_output_is_rejected(db, account, invoker):
    job = pms.create_pms_job(db, account, RAW_INPUT, invoker, month=MONTH)
    with pytest.raises(InvalidOutput):
        pms.record_parser_output(db, job.id, {"rows": []})


def test_approvals_are_ordered_and_one_way(db, account, invoker):
    job = pms.create_pms_job(db, account, RAW_INPUT, invoker, month=MONTH)
    pms.record_parser_output(db, job.id, PARSED)
    pms.get_job_status(db, job.id)

    with pytest.raises(ValueError, match="admin approval first"):
        pms.approve_client(db, job.id)

    job = pms.approve_admin(db, job.id)
    record = normalize_record(job.progress_detail)
    assert job.is_admin_approved is True
    assert record.current_step == "client_approval"
    assert record.message == "Awaiting client approval"

    with pytest.raises(ValueError, match="cannot be revoked"):
        pms.approve_admin(db, job.id, approved=False)

    job = pms.approve_client(db, job.id)
    record = normalize_record(job.progress_detail)
    assert job.status == "processing"
    assert record.current_step == "monthly_agents"
    assert record.progress == 40

    with pytest.raises(ValueError, match="cannot be revoked"):
        pms.approve_client(db, job.id, approved=False)


def test_admin_approval_requires_parser_output(db, account, invoker):
    job = pms.create_pms_job(db, account, RAW_INPUT, invoker, month=MONTH)
    with pytest.raises(ValueError, match="admin_approval"):
        pms.approve_admin(db, job.id)


def test_monthly_agents_complete_the_job(db, account, invoker, automation):
    job = _approved_job(db, account, invoker)

    record = automation.run_monthly_agents(job.id)

    db.refresh(job)
    assert job.status == "completed"
    assert record.message == "Complete - 3 tasks created"
    assert record.summary["tasksCreated"] == {"user": 2, "internal": 1, "total": 3}
    assert set(record.summary["agentResults"]) == {"summary", "opportunity", "cro_optimizer"}
    assert invoker.calls_for("summary")[0]["additional_data"]["pmsData"] == PARSED
    assert invoker.calls_for("referral_engine") == []
    rows = list(db.scalars(select(AgentResult)))
    assert {(row.date_start, row.date_end) for row in rows} == {(MONTH.start, MONTH.end)}


def test_referral_engine_runs_when_configured(db, account, collaborators, invoker, settings):
    collaborators["settings"] = settings.model_copy(update={"referral_engine_agent_webhook": "https://agents.test/referral"})
    job = _approved_job(db, account, invoker)

    record = pms.PmsAutomation(db, **collaborators).run_monthly_agents(job.id)

    assert [name for name, _ in invoker.calls if name != "pms_parser"] == [
        "summary",
        "referral_engine",
        "opportunity",
        "cro_optimizer",
    ]
    assert "referral_engine" in record.steps["monthly_agents"].agents_completed


def test_monthly_failure_is_recorded_and_persists_nothing(db, account, invoker, automation):
    invoker.fail_always("opportunity", {})
    job = _approved_job(db, account, invoker)

    record = automation.run_monthly_agents(job.id)

    assert record.status == "failed"
    assert record.current_step == "monthly_agents"
    assert list(db.scalars(select(AgentResult))) == []


def test_retry_monthly_agents_after_failure(db, account, invoker, automation):
    invoker.script("summary", {})
    job = _approved_job(db, account, invoker)
    assert automation.run_monthly_agents(job.id).status == "failed"

    job = pms.retry_job(db, job.id, "monthly_agents", invoker)
    assert normalize_record(job.progress_detail).message == "Retrying Monthly Agents..."

    assert automation.run_monthly_agents(job.id).status == "completed"


def test_retry_parser_resubmits_raw_input(db, account, invoker):
    job = _approved_job(db, account, invoker)

    job = pms.retry_job(db, job.id, "pms_parser", invoker)

    assert job.parser_output is None
    assert job.is_admin_approved is False
    assert normalize_record(job.progress_detail).current_step == "pms_parser"
    assert len(invoker.calls_for("pms_parser")) == 2


def test_retry_requires_stored_input(db, account, invoker):
    job = pms.create_pms_job(db, account, RAW_INPUT, invoker, month=MONTH)
    job.raw_input = None
    db.commit()

    with pytest.raises(RetryUnavailable):
        pms.retry_job(db, job.id, "pms_parser", invoker)
    with pytest.raises(RetryUnavailable):
        pms.retry_job(db, job.id, "monthly_agents", invoker)
    with pytest.raises(RetryUnavailable):
        pms.retry_job(db, job.id, "admin_approval", invoker)


def test_reviewed_parser_output_cannot_be_replaced(db, account, invoker):
    job = pms.create_pms_job(db, account, RAW_INPUT, invoker, month=MONTH)
    pms.record_parser_output(db, job.id, PARSED)
    pms.get_job_status(db, job.id)
    pms.approve_admin(db, job.id)

    with pytest.raises(ValueError, match="parser step is running"):
        pms.record_parser_output(db, job.id, {"replaced": "data"})

    db.refresh(job)
    assert job.parser_output == PARSED


def test_parser_output_is_rejected_once_reconciled(db, account, invoker):
    job = pms.create_pms_job(db, account, RAW_INPUT, invoker, month=MONTH)
    pms.record_parser_output(db, job.id, PARSED)
    pms.get_job_status(db, job.id)

    with pytest.raises(ValueError):
        pms.record_parser_output(db, job.id, {"replaced": "data"})


def test_commit_failure_is_reported_on_monthly_agents(db, account, invoker, automation, monkeypatch):
    def failing_commit(*args, **kwargs):
        raise PersistenceError("Failed to commit agent results: disk I/O error")

    monkeypatch.setattr(pms, "commit_results", failing_commit)
    job = _approved_job(db, account, invoker)

    record = automation.run_monthly_agents(job.id)

    assert record.status == "failed"
    assert record.current_step == "monthly_agents"
    assert record.steps["monthly_agents"].status == "failed"
    assert record.steps["task_creation"].status == "pending"
    assert list(db.scalars(select(AgentResult))) == []
