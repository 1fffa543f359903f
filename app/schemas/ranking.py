from pydantic import Field

from app.schemas.automation import CamelModel


class RankingLocationIn(CamelModel):
    location_id: str = Field(min_length=1)
    name: str | None = None


class RankingBatchCreate(CamelModel):
    account_id: str
    locations: list[RankingLocationIn] = Field(min_length=1)


class RankingBatchCreated(CamelModel):
    batch_id: str
    job_ids: list[str]
