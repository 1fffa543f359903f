from sqlalchemy import select

from app.models.task import Task
from app.services.pipeline.action_items import create_tasks, extract_action_items


def test_extracts_items_from_known_keys():
    assert [item["title"] for item in extract_action_items({"opportunities": ["Fix NAP", {"title": "Add CTA"}]})] == [
        "Fix NAP",
        "Add CTA",
    ]
    assert extract_action_items({"summary": "nothing actionable"}) == []
    assert extract_action_items([{"action_items": [{"action": "Reply to reviews"}]}])[0]["title"] == "Reply to reviews"


def test_items_without_title_are_dropped():
    assert extract_action_items({"recommendations": [{"description": "no title"}, "", None]}) == []


def test_create_tasks_counts_by_category(db, account):
    output = {
        "recommendations": [
            {"title": "Shorten form", "expected_outcome": "More leads"},
            {"title": "Train front desk", "category": "user"},
            {"title": "Odd category", "category": "SOMEONE"},
        ]
    }
    counts = create_tasks(db, account=account, agent_type="cro_optimizer", output=output, default_category="INTERNAL")

    assert counts == {"user": 1, "internal": 2}
    tasks = {task.title: task for task in db.scalars(select(Task))}
    assert "**Expected Outcome:**\nMore leads" in tasks["Shorten form"].description
    assert tasks["Train front desk"].category == "USER"
    assert tasks["Odd category"].category == "INTERNAL"
