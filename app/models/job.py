from datetime import date

from sqlalchemy import JSON, Boolean, Date, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.models.common import TimestampMixin, UUIDPrimaryKeyMixin


class Job(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "jobs"

    account_id: Mapped[str] = mapped_column(ForeignKey("google_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), default="pending", nullable=False, index=True)
    date_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    date_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    batch_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    # Serialized progress record; older rows may hold a JSON string instead of an object.
    progress_detail: Mapped[dict | str | None] = mapped_column(JSON, nullable=True)
    is_admin_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_client_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    raw_input: Mapped[dict | list | None] = mapped_column(JSON, nullable=True)
    parser_output: Mapped[dict | list | None] = mapped_column(JSON, nullable=True)
    location_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    location_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    result_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    task_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)

    account = relationship("GoogleAccount", back_populates="jobs")
