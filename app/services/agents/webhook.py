import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from app.core.config import Settings, get_settings
from app.core.errors import InvalidOutput, UpstreamError, UpstreamTimeout, UpstreamUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AgentSpec:
    name: str
    agent_type: str
    webhook_setting: str
    timeout_setting: str

    def endpoint(self, settings: Settings) -> str:
        return getattr(settings, self.webhook_setting)

    def timeout(self, settings: Settings) -> float:
        return getattr(settings, self.timeout_setting)


PROOFLINE = AgentSpec("Proofline", "proofline", "proofline_agent_webhook", "daily_agent_timeout_seconds")
SUMMARY = AgentSpec("Summary", "summary", "summary_agent_webhook", "monthly_agent_timeout_seconds")
REFERRAL_ENGINE = AgentSpec("Referral Engine", "referral_engine", "referral_engine_agent_webhook", "monthly_agent_timeout_seconds")
OPPORTUNITY = AgentSpec("Opportunity", "opportunity", "opportunity_agent_webhook", "monthly_agent_timeout_seconds")
CRO_OPTIMIZER = AgentSpec("CRO Optimizer", "cro_optimizer", "cro_optimizer_agent_webhook", "monthly_agent_timeout_seconds")
PMS_PARSER = AgentSpec("PMS Parser", "pms_parser", "pms_parser_agent_webhook", "daily_agent_timeout_seconds")
RANKING_ANALYSIS = AgentSpec("Ranking Analysis", "ranking", "ranking_analysis_agent_webhook", "ranking_agent_timeout_seconds")


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (dict, list, tuple)):
        return len(value) == 0
    return False


def is_structurally_valid(raw: Any) -> bool:
    """Shape check only; the meaning of an agent's answer is never inspected."""
    if raw is None:
        return False
    if isinstance(raw, str):
        stripped = raw.strip()
        return bool(stripped) and stripped != "{}"
    if isinstance(raw, (list, tuple)):
        return len(raw) > 0
    if isinstance(raw, dict):
        if not raw:
            return False
        return not all(_is_empty(value) for value in raw.values())
    return True


def build_agent_payload(
    agent: str,
    *,
    domain: str,
    account_id: str,
    date_range: dict | None,
    additional_data: Any,
) -> dict:
    return {
        "agent": agent,
        "domain": domain,
        "accountId": account_id,
        "dateRange": date_range,
        "additional_data": additional_data,
    }


class AgentInvoker:
    """One HTTP call to an opaque agent webhook; retries are the caller's business."""

    def __init__(self, settings: Settings | None = None, client: httpx.Client | None = None) -> None:
        self.settings = settings or get_settings()
        self.client = client or httpx.Client(headers={"Content-Type": "application/json"})

    def invoke(self, endpoint: str, payload: dict, name: str, *, timeout: float) -> Any:
        if not endpoint:
            raise UpstreamUnavailable(name, "no webhook URL configured")

        logger.info("agent_call_started", extra={"agent": name, "endpoint": endpoint})
        try:
            response = self.client.post(endpoint, json=payload, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(name, f"no response within {timeout:.0f}s") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(name, str(exc) or type(exc).__name__) from exc

        if not response.is_success:
            raise UpstreamError(name, f"HTTP {response.status_code}", status_code=response.status_code)

        logger.info("agent_call_succeeded", extra={"agent": name, "status_code": response.status_code})
        if not response.content:
            return None
        try:
            return response.json()
        except json.JSONDecodeError:
            return response.text
        except UnicodeDecodeError as exc:
            raise InvalidOutput(name, "response body is not valid UTF-8") from exc

    def call(self, spec: AgentSpec, payload: dict) -> Any:
        """Invoke the agent and reject structurally empty answers."""
        raw = self.invoke(spec.endpoint(self.settings), payload, spec.name, timeout=spec.timeout(self.settings))
        if not is_structurally_valid(raw):
            logger.warning("agent_output_invalid", extra={"agent": spec.name})
            raise InvalidOutput(spec.name, "agent returned an empty result")
        return raw
