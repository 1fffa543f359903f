import os
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["AUTO_CREATE_TABLES"] = "true"
os.environ["ENCRYPTION_KEY"] = "aLxM0wHk0w0oVx3G9iYfn7lr5J2v3xH5cM8D6lQ1t2Q="
os.environ["JWT_SECRET"] = "test-secret"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["RATE_LIMIT_PER_MINUTE"] = "10000"

from app.core.config import get_settings
from app.core.security import create_operator_token, encrypt_refresh_token
from app.db.base import Base
from app.db.session import SessionLocal, engine
from app.main import create_app
from app.models.account import GoogleAccount
from app.routers.deps import get_invoker
from app.services.agents.webhook import AgentInvoker
from app.services.google.credentials import BearerCredential
from app.services.pipeline.orchestrator import ClientPipeline
from app.services.pipeline.ranking_batch import batch_cache

DEFAULT_OUTPUTS = {
    "proofline": {"insights": ["Sessions are flat day over day"], "anomalies": []},
    "summary": {"summary": "Organic traffic grew 12%", "highlights": ["More calls from GBP"]},
    "referral_engine": {"referrals": [{"source": "Dr. Lee", "count": 4}]},
    "opportunity": {
        "opportunities": [
            {"title": "Add an online booking button", "description": "Visitors drop off on the contact page", "priority": "high"},
            {"title": "Refresh Google Business photos"},
        ]
    },
    "cro_optimizer": {
        "recommendations": [
            {"title": "Shorten the intake form", "description": "Cut it to four fields", "expected_outcome": "More leads"}
        ]
    },
    "ranking": {"score": 71, "top_recommendations": [{"title": "Collect more patient reviews", "priority": "high"}]},
    "pms_parser": {"accepted": True},
}


class FakeInvoker(AgentInvoker):
    """Real validation, scripted answers. Outcomes that are exceptions are raised."""

    def __init__(self) -> None:
        super().__init__(
            settings=get_settings(),
            client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500))),
        )
        self.calls: list[tuple[str, dict]] = []
        self.scripted: dict[str, deque] = defaultdict(deque)
        self.always: dict[str, object] = {}

    def script(self, agent: str, *outcomes) -> None:
        self.scripted[agent].extend(outcomes)

    def fail_always(self, agent: str, outcome) -> None:
        self.always[agent] = outcome

    def calls_for(self, agent: str) -> list[dict]:
        return [payload for name, payload in self.calls if name == agent]

    def invoke(self, endpoint, payload, name, *, timeout):
        agent = payload["agent"]
        self.calls.append((agent, payload))
        if agent in self.always:
            outcome = self.always[agent]
        elif self.scripted[agent]:
            outcome = self.scripted[agent].popleft()
        else:
            outcome = DEFAULT_OUTPUTS.get(agent, {"ok": True})
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeCredentials:
    def __init__(self) -> None:
        self.requests: list[str] = []
        self.errors: deque = deque()

    def get_valid_credential(self, account_id: str) -> BearerCredential:
        self.requests.append(account_id)
        if self.errors:
            raise self.errors.popleft()
        return BearerCredential("test-access-token", datetime.now(timezone.utc) + timedelta(hours=1))


class FakeMetrics:
    def __init__(self) -> None:
        self.windows: list[tuple[str, object, object]] = []

    def fetch_metrics(self, credential, account_id, property_ids, start, end):
        self.windows.append((account_id, start, end))
        return {"ga4Data": {"sessions": 120, "start": start.isoformat()}, "gscData": {"clicks": 40}, "gbpData": None}


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    batch_cache._entries.clear()
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    path = Path("test.db")
    if path.exists():
        path.unlink()


@pytest.fixture()
def settings():
    return get_settings()


@pytest.fixture()
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def invoker():
    return FakeInvoker()


@pytest.fixture()
def credentials():
    return FakeCredentials()


@pytest.fixture()
def metrics():
    return FakeMetrics()


@pytest.fixture()
def sleep():
    return SleepRecorder()


@pytest.fixture()
def collaborators(invoker, credentials, metrics, settings, sleep):
    return {"invoker": invoker, "credentials": credentials, "metrics": metrics, "settings": settings, "sleep": sleep}


def make_account(db, domain="smile-dental.com", onboarded=True) -> GoogleAccount:
    account = GoogleAccount(
        domain_name=domain,
        email=f"owner@{domain}",
        encrypted_refresh_token=encrypt_refresh_token("refresh-token"),
        property_ids={"ga4": {"propertyId": "123"}, "gsc": {"siteUrl": f"https://{domain}/"}, "gbp": []},
        onboarding_completed=onboarded,
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


@pytest.fixture()
def account(db):
    return make_account(db)


@pytest.fixture()
def account_factory(db):
    return lambda domain, onboarded=True: make_account(db, domain, onboarded)


@pytest.fixture()
def pipeline(db, collaborators):
    return ClientPipeline(db, **collaborators)


@pytest.fixture()
def auth_headers():
    return {"Authorization": f"Bearer {create_operator_token('operator@example.com')}"}


@pytest.fixture()
def client(monkeypatch, collaborators):
    monkeypatch.setattr("app.workers.tasks.build_collaborators", lambda db: collaborators)
    app = create_app()
    app.dependency_overrides[get_invoker] = lambda: collaborators["invoker"]
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def default_outputs():
    return DEFAULT_OUTPUTS
