from datetime import date, datetime, timedelta, timezone

import httpx
import pytest

from app.core.errors import AuthFailure
from app.services.google.credentials import BearerCredential, GoogleCredentialProvider
from app.services.google.metrics import GA4Provider, GSCProvider, MetricsSource

NOW = datetime(2024, 3, 2, 12, 0, tzinfo=timezone.utc)


def _provider(db, handler):
    return GoogleCredentialProvider(
        db, client=httpx.Client(transport=httpx.MockTransport(handler)), clock=lambda: NOW
    )


def test_valid_token_is_reused(db, account):
    account.access_token = "still-good"
    account.expiry_date = NOW + timedelta(minutes=30)
    db.commit()

    def handler(request):
        raise AssertionError("no refresh expected")

    credential = _provider(db, handler).get_valid_credential(account.id)
    assert credential.access_token == "still-good"


def test_token_expiring_within_margin_is_refreshed(db, account):
    account.access_token = "about-to-expire"
    account.expiry_date = NOW + timedelta(minutes=4)
    db.commit()
    seen = {}

    def handler(request):
        seen["form"] = request.content.decode()
        return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})

    credential = _provider(db, handler).get_valid_credential(account.id)

    assert credential.access_token == "fresh"
    assert credential.authorization == "Bearer fresh"
    assert "refresh_token=refresh-token" in seen["form"]
    db.refresh(account)
    assert account.access_token == "fresh"


def test_missing_refresh_token_is_auth_failure(db, account):
    account.encrypted_refresh_token = None
    db.commit()
    with pytest.raises(AuthFailure, match="No refresh token"):
        _provider(db, lambda request: httpx.Response(200)).get_valid_credential(account.id)


def test_rejected_refresh_is_auth_failure(db, account):
    with pytest.raises(AuthFailure, match="HTTP 400"):
        _provider(db, lambda request: httpx.Response(400, json={"error": "invalid_grant"})).get_valid_credential(account.id)


def test_failing_provider_degrades_to_none():
    def handler(request):
        if "analyticsdata" in request.url.host:
            return httpx.Response(500)
        return httpx.Response(200, json={"rows": [{"keys": ["dentist near me"], "clicks": 12}]})

    source = MetricsSource(providers=(GA4Provider(), GSCProvider()), client=httpx.Client(transport=httpx.MockTransport(handler)))
    credential = BearerCredential("token", NOW)
    bundle = source.fetch_metrics(
        credential,
        "acc-1",
        {"ga4": {"propertyId": "123"}, "gsc": {"siteUrl": "https://smile-dental.com/"}},
        date(2024, 2, 1),
        date(2024, 2, 29),
    )

    assert bundle["ga4Data"] is None
    assert bundle["gscData"]["rows"][0]["clicks"] == 12


def test_no_properties_means_empty_bundle():
    source = MetricsSource(client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500))))
    bundle = source.fetch_metrics(BearerCredential("token", NOW), "acc-1", {}, date(2024, 2, 1), date(2024, 2, 29))
    assert bundle == {"ga4Data": None, "gscData": None, "gbpData": None}
