from jose import jwt
from sqlalchemy import select

from app.main import RateLimiter
from app.models.task import Task

RAW_INPUT = {"rows": [{"source": "Google", "referrals": 12}]}
PARSED = {"monthly_rollup": [{"month": "2024-02", "self_referrals": 9}]}


def _create_pms_job(client, headers, account):
    response = client.post("/jobs", headers=headers, json={"accountId": account.id, "rawInput": RAW_INPUT})
    assert response.status_code == 201, response.text
    return response.json()["jobId"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_operator_endpoints_require_a_token(client, account):
    assert client.post("/agents/process-all", json={}).status_code == 401
    bad = {"Authorization": "Bearer not-a-token"}
    assert client.get(f"/agents/latest/{account.id}", headers=bad).status_code == 401


def test_pms_job_flow(client, auth_headers, account, invoker, db):
    job_id = _create_pms_job(client, auth_headers, account)

    status = client.get(f"/jobs/{job_id}/status").json()
    assert status["jobStatus"] == "processing"
    assert status["automationStatus"]["currentStep"] == "pms_parser"

    response = client.post(f"/jobs/{job_id}/parser-output", json={"output": PARSED})
    assert response.status_code == 200
    assert response.json()["jobStatus"] == "awaiting_approval"
    assert response.json()["automationStatus"]["currentStep"] == "admin_approval"

    early = client.post(f"/jobs/{job_id}/client-approval", headers=auth_headers, json={"approved": True})
    assert early.status_code == 409

    admin = client.post(f"/jobs/{job_id}/admin-approval", headers=auth_headers, json={"approved": True})
    assert admin.status_code == 200
    assert admin.json()["isAdminApproved"] is True
    assert admin.json()["automationStatus"]["currentStep"] == "client_approval"

    final = client.post(f"/jobs/{job_id}/client-approval", headers=auth_headers, json={"approved": True})
    assert final.status_code == 200
    body = final.json()
    assert body["jobStatus"] == "completed"
    assert body["isClientApproved"] is True
    assert body["automationStatus"]["progress"] == 100
    assert body["automationStatus"]["summary"]["tasksCreated"]["total"] == 3
    assert [name for name, _ in invoker.calls] == ["pms_parser", "summary", "opportunity", "cro_optimizer"]
    assert len(list(db.scalars(select(Task)))) == 3


def test_unknown_job_is_404(client):
    assert client.get("/jobs/missing/status").status_code == 404


def test_empty_parser_output_is_422(client, auth_headers, account):
    job_id = _create_pms_job(client, auth_headers, account)
    response = client.post(f"/jobs/{job_id}/parser-output", json={"output": {}})
    assert response.status_code == 422


def test_retry_rules(client, auth_headers, account):
    job_id = _create_pms_job(client, auth_headers, account)

    unavailable = client.post(f"/jobs/{job_id}/retry", headers=auth_headers, json={"stage": "monthly_agents"})
    assert unavailable.status_code == 409

    unknown = client.post(f"/jobs/{job_id}/retry", headers=auth_headers, json={"stage": "warp_drive"})
    assert unknown.status_code == 400

    parser = client.post(f"/jobs/{job_id}/retry", headers=auth_headers, json={"stage": "pms_parser"})
    assert parser.status_code == 202
    assert parser.json()["automationStatus"]["message"] == "Retrying PMS Parser..."


def test_process_all_runs_inline_when_eager(client, auth_headers, account, invoker):
    response = client.post(
        "/agents/process-all", headers=auth_headers, json={"referenceDate": "2024-03-02", "force": False}
    )
    assert response.status_code == 202
    body = response.json()
    assert body["queued"] is False
    assert body["result"]["processed"] == 1
    assert body["result"]["succeeded"] == 1
    assert body["result"]["results"][0]["domain"] == account.domain_name

    latest = client.get(f"/agents/latest/{account.id}", headers=auth_headers)
    assert latest.status_code == 200
    results = latest.json()
    assert set(results) == {"proofline", "summary", "opportunity", "cro_optimizer"}
    assert results["summary"]["dateStart"] == "2024-02-01"
    assert results["summary"]["agentOutput"]["summary"] == "Organic traffic grew 12%"


def test_ranking_batch_endpoints(client, auth_headers, account):
    response = client.post(
        "/rankings/batches",
        headers=auth_headers,
        json={
            "accountId": account.id,
            "locations": [{"locationId": "loc-1", "name": "Downtown"}, {"locationId": "loc-2", "name": "Uptown"}],
        },
    )
    assert response.status_code == 202, response.text
    created = response.json()
    assert len(created["jobIds"]) == 2

    status = client.get(f"/rankings/batches/{created['batchId']}", headers=auth_headers)
    assert status.status_code == 200
    body = status.json()
    assert body["status"] == "completed"
    assert body["completed"] == 2
    assert [job["locationName"] for job in body["jobs"]] == ["Downtown", "Uptown"]


def test_ranking_batch_validation(client, auth_headers, account):
    empty = client.post("/rankings/batches", headers=auth_headers, json={"accountId": account.id, "locations": []})
    assert empty.status_code == 422
    assert client.get("/rankings/batches/missing", headers=auth_headers).status_code == 404


def test_tokens_without_operator_scope_are_rejected(client, account, settings):
    token = jwt.encode({"sub": "someone@example.com"}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    response = client.get(f"/agents/latest/{account.id}", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_rate_limiter_window():
    limiter = RateLimiter(limit_per_minute=2)
    assert limiter.hit("10.0.0.1") is True
    assert limiter.hit("10.0.0.1") is True
    assert limiter.hit("10.0.0.1") is False
    assert limiter.hit("10.0.0.2") is True


def test_parser_output_after_approval_is_409(client, auth_headers, account):
    job_id = _create_pms_job(client, auth_headers, account)
    client.post(f"/jobs/{job_id}/parser-output", json={"output": PARSED})
    client.post(f"/jobs/{job_id}/admin-approval", headers=auth_headers, json={"approved": True})

    response = client.post(f"/jobs/{job_id}/parser-output", json={"output": {"replaced": "data"}})

    assert response.status_code == 409
    status = client.get(f"/jobs/{job_id}/status").json()
    assert status["isAdminApproved"] is True
