from datetime import date

from sqlalchemy import select

from app.core.errors import AuthFailure
from app.models.agent_result import AgentResult
from app.models.job import Job
from app.services.pipeline.fleet import latest_results, onboarded_accounts, run_fleet

REFERENCE = date(2024, 3, 2)


def _accounts(account_factory):
    return [account_factory(domain) for domain in ("alpha-dental.com", "bravo-ortho.com", "charlie-smiles.com")]


def _revoke(credentials, account_id):
    original = credentials.get_valid_credential

    def get_valid_credential(requested_id):
        if requested_id == account_id:
            raise AuthFailure("Refresh token revoked")
        return original(requested_id)

    credentials.get_valid_credential = get_valid_credential


def test_only_onboarded_accounts_in_creation_order(db, account_factory):
    first = account_factory("first.com")
    account_factory("pending.com", onboarded=False)
    second = account_factory("second.com")

    assert [account.id for account in onboarded_accounts(db)] == [first.id, second.id]


def test_fleet_continues_after_a_failed_account(db, account_factory, pipeline, credentials, settings, sleep):
    accounts = _accounts(account_factory)
    _revoke(credentials, accounts[1].id)
    fleet_settings = settings.model_copy(update={"inter_account_delay_seconds": 7})

    summary = run_fleet(db, pipeline, reference_date=REFERENCE, settings=fleet_settings, sleep=sleep)

    assert summary["processed"] == 3
    assert summary["succeeded"] == 2
    assert summary["failed"] == 1
    assert summary["success"] is False
    assert summary["aborted"] is False
    assert [item["domain"] for item in summary["results"]] == [account.domain_name for account in accounts]
    assert summary["results"][1]["error"] == "Refresh token revoked"
    assert summary["results"][1]["attempts"] == 3
    assert sleep.delays.count(7) == 2

    jobs = {job.account_id: job for job in db.scalars(select(Job).where(Job.kind == "agent_run"))}
    assert jobs[accounts[0].id].status == "completed"
    assert jobs[accounts[1].id].status == "failed"
    assert jobs[accounts[1].id].error == "Refresh token revoked"
    assert jobs[accounts[2].id].status == "completed"


def test_legacy_mode_stops_on_first_failure(db, account_factory, pipeline, credentials, settings, sleep):
    accounts = _accounts(account_factory)
    _revoke(credentials, accounts[0].id)

    summary = run_fleet(db, pipeline, reference_date=REFERENCE, stop_on_error=True, settings=settings, sleep=sleep)

    assert summary["aborted"] is True
    assert summary["processed"] == 1
    assert summary["success"] is False
    assert len(list(db.scalars(select(Job)))) == 1


def test_latest_results_per_agent_type(db, account, pipeline):
    pipeline.run(account, reference_date=REFERENCE)
    pipeline.run(account, reference_date=date(2024, 3, 3))

    latest = latest_results(db, account.id)

    assert set(latest) == {"proofline", "summary", "opportunity", "cro_optimizer"}
    assert latest["proofline"].date_end == date(2024, 3, 2)
    assert all(row.status == "success" for row in latest.values())
    assert len(list(db.scalars(select(AgentResult).where(AgentResult.agent_type == "summary")))) == 1
