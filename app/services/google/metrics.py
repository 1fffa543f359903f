import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from app.services.google.credentials import BearerCredential

logger = logging.getLogger(__name__)

GA4_REPORT_URL = "https://analyticsdata.googleapis.com/v1beta/properties/{property_id}:runReport"
GSC_QUERY_URL = "https://www.googleapis.com/webmasters/v3/sites/{site}/searchAnalytics/query"
GBP_METRICS_URL = "https://businessprofileperformance.googleapis.com/v1/locations/{location_id}:fetchMultiDailyMetricsTimeSeries"


class MetricsProvider(Protocol):
    key: str

    def fetch(
        self, client: httpx.Client, credential: BearerCredential, property_ids: dict, start: date, end: date
    ) -> Any: ...


@dataclass(frozen=True, slots=True)
class GA4Provider:
    key: str = "ga4Data"

    def fetch(self, client, credential, property_ids, start, end):
        ga4 = property_ids.get("ga4") or {}
        if not ga4.get("propertyId"):
            return None
        response = client.post(
            GA4_REPORT_URL.format(property_id=ga4["propertyId"]),
            headers={"Authorization": credential.authorization},
            json={
                "dateRanges": [{"startDate": start.isoformat(), "endDate": end.isoformat()}],
                "metrics": [{"name": "sessions"}, {"name": "totalUsers"}, {"name": "conversions"}],
                "dimensions": [{"name": "sessionDefaultChannelGroup"}],
            },
        )
        response.raise_for_status()
        return response.json()


@dataclass(frozen=True, slots=True)
class GSCProvider:
    key: str = "gscData"

    def fetch(self, client, credential, property_ids, start, end):
        gsc = property_ids.get("gsc") or {}
        if not gsc.get("siteUrl"):
            return None
        response = client.post(
            GSC_QUERY_URL.format(site=quote(gsc["siteUrl"], safe="")),
            headers={"Authorization": credential.authorization},
            json={"startDate": start.isoformat(), "endDate": end.isoformat(), "dimensions": ["query"], "rowLimit": 25},
        )
        response.raise_for_status()
        return response.json()


@dataclass(frozen=True, slots=True)
class GBPProvider:
    key: str = "gbpData"

    def fetch(self, client, credential, property_ids, start, end):
        locations = property_ids.get("gbp") or []
        if not locations:
            return None
        location_id = locations[0].get("locationId")
        if not location_id:
            return None
        response = client.get(
            GBP_METRICS_URL.format(location_id=location_id),
            headers={"Authorization": credential.authorization},
            params={
                "dailyMetrics": ["CALL_CLICKS", "WEBSITE_CLICKS", "BUSINESS_DIRECTION_REQUESTS"],
                "dailyRange.start_date.year": start.year,
                "dailyRange.start_date.month": start.month,
                "dailyRange.start_date.day": start.day,
                "dailyRange.end_date.year": end.year,
                "dailyRange.end_date.month": end.month,
                "dailyRange.end_date.day": end.day,
            },
        )
        response.raise_for_status()
        return response.json()


DEFAULT_PROVIDERS: tuple[MetricsProvider, ...] = (GA4Provider(), GSCProvider(), GBPProvider())


class MetricsSource:
    """Fetches every provider for one window; a failing provider yields ``None`` for its key."""

    def __init__(
        self,
        providers: tuple[MetricsProvider, ...] = DEFAULT_PROVIDERS,
        client: httpx.Client | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.providers = providers
        self.client = client or httpx.Client(timeout=timeout)

    def fetch_metrics(
        self, credential: BearerCredential, account_id: str, property_ids: dict | None, start: date, end: date
    ) -> dict[str, Any]:
        bundle: dict[str, Any] = {provider.key: None for provider in self.providers}
        if not property_ids:
            logger.info("metrics_no_properties", extra={"account_id": account_id})
            return bundle

        for provider in self.providers:
            try:
                bundle[provider.key] = provider.fetch(self.client, credential, property_ids, start, end)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "metrics_provider_failed",
                    extra={"account_id": account_id, "provider": provider.key, "error": str(exc)},
                )
                bundle[provider.key] = None
        logger.info(
            "metrics_fetched",
            extra={"account_id": account_id, "start": start.isoformat(), "end": end.isoformat(),
                   "available": [key for key, value in bundle.items() if value is not None]},
        )
        return bundle
