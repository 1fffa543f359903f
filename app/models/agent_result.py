from datetime import date

from sqlalchemy import JSON, Date, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.models.common import TimestampMixin, UUIDPrimaryKeyMixin


class AgentResult(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "agent_results"
    __table_args__ = (
        Index("ix_agent_results_lookup", "account_id", "agent_type", "date_start", "date_end"),
    )

    account_id: Mapped[str] = mapped_column(ForeignKey("google_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    domain: Mapped[str] = mapped_column(String(255), nullable=False)
    agent_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    date_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    date_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    agent_input: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    agent_output: Mapped[dict | list | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
