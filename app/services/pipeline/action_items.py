import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.account import GoogleAccount
from app.models.task import Task

logger = logging.getLogger(__name__)

ACTION_ITEM_KEYS = ("action_items", "actionItems", "opportunities", "recommendations", "top_recommendations")
CATEGORIES = {"USER", "INTERNAL"}


def extract_action_items(output: Any) -> list[dict]:
    """Pull task-shaped items out of an agent answer without assuming one schema."""
    if isinstance(output, list):
        items: list[dict] = []
        for element in output:
            if isinstance(element, dict) and any(key in element for key in ACTION_ITEM_KEYS):
                items.extend(extract_action_items(element))
            else:
                items.extend(_normalize_item(element))
        return items
    if isinstance(output, dict):
        for key in ACTION_ITEM_KEYS:
            value = output.get(key)
            if isinstance(value, list):
                return [item for element in value for item in _normalize_item(element)]
    return []


def _normalize_item(element: Any) -> list[dict]:
    if isinstance(element, str) and element.strip():
        return [{"title": element.strip()}]
    if isinstance(element, dict):
        title = element.get("title") or element.get("name") or element.get("action")
        if title:
            return [element | {"title": str(title)}]
    return []


def _description(item: dict) -> str:
    description = str(item.get("description") or "")
    outcome = item.get("expected_outcome")
    if outcome:
        return f"{description}\n\n**Expected Outcome:**\n{outcome}".strip()
    return description


def create_tasks(
    db: Session,
    *,
    account: GoogleAccount,
    agent_type: str,
    output: Any,
    default_category: str,
    metadata: dict | None = None,
) -> dict[str, int]:
    """Insert one task row per action item. A failing row is logged and skipped."""
    counts = {"user": 0, "internal": 0}
    for item in extract_action_items(output):
        category = str(item.get("category") or default_category).upper()
        if category not in CATEGORIES:
            category = default_category
        task = Task(
            account_id=account.id,
            domain_name=account.domain_name,
            title=item["title"][:500],
            description=_description(item),
            category=category,
            agent_type=agent_type,
            status="pending",
            is_approved=False,
            metadata_json={
                **(metadata or {}),
                "priority": item.get("priority"),
                "impact": item.get("impact"),
                "effort": item.get("effort"),
            },
        )
        try:
            db.add(task)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("task_insert_failed", extra={"account_id": account.id, "agent_type": agent_type})
            continue
        counts[category.lower()] += 1
    return counts
