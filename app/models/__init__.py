from app.models.account import GoogleAccount
from app.models.agent_result import AgentResult
from app.models.data_store import GoogleDataStore
from app.models.job import Job
from app.models.task import Task

__all__ = ["GoogleAccount", "Job", "AgentResult", "GoogleDataStore", "Task"]
