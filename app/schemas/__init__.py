from app.schemas.agents import AgentResultRead, ProcessAllAccepted, ProcessAllRequest
from app.schemas.automation import ProgressRecord, StepDetail
from app.schemas.job import ApprovalRequest, JobCreated, JobStatusRead, ParserOutputRequest, PmsJobCreate, RetryRequest
from app.schemas.ranking import RankingBatchCreate, RankingBatchCreated, RankingLocationIn

__all__ = [
    "ProgressRecord",
    "StepDetail",
    "JobStatusRead",
    "PmsJobCreate",
    "JobCreated",
    "ApprovalRequest",
    "RetryRequest",
    "ParserOutputRequest",
    "ProcessAllRequest",
    "ProcessAllAccepted",
    "AgentResultRead",
    "RankingBatchCreate",
    "RankingBatchCreated",
    "RankingLocationIn",
]
