from datetime import date

from sqlalchemy import JSON, Date, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.models.common import TimestampMixin, UUIDPrimaryKeyMixin


class GoogleDataStore(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "google_data_store"

    account_id: Mapped[str] = mapped_column(ForeignKey("google_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    domain: Mapped[str] = mapped_column(String(255), nullable=False)
    date_start: Mapped[date] = mapped_column(Date, nullable=False)
    date_end: Mapped[date] = mapped_column(Date, nullable=False)
    run_type: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    ga4_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    gsc_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    gbp_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
