"""Initial schema."""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _account_fk() -> sa.Column:
    return sa.Column(
        "account_id", sa.String(length=36), sa.ForeignKey("google_accounts.id", ondelete="CASCADE"), nullable=False
    )


def upgrade() -> None:
    op.create_table(
        "google_accounts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("domain_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("encrypted_refresh_token", sa.Text(), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("property_ids", sa.JSON(), nullable=False),
        sa.Column("onboarding_completed", sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_google_accounts_domain_name", "google_accounts", ["domain_name"], unique=False)
    op.create_index("ix_google_accounts_onboarding_completed", "google_accounts", ["onboarding_completed"], unique=False)

    op.create_table(
        "jobs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _account_fk(),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("date_start", sa.Date(), nullable=True),
        sa.Column("date_end", sa.Date(), nullable=True),
        sa.Column("batch_id", sa.String(length=36), nullable=True),
        sa.Column("progress_detail", sa.JSON(), nullable=True),
        sa.Column("is_admin_approved", sa.Boolean(), nullable=False),
        sa.Column("is_client_approved", sa.Boolean(), nullable=False),
        sa.Column("raw_input", sa.JSON(), nullable=True),
        sa.Column("parser_output", sa.JSON(), nullable=True),
        sa.Column("location_id", sa.String(length=255), nullable=True),
        sa.Column("location_name", sa.String(length=255), nullable=True),
        sa.Column("result_json", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("task_id", sa.String(length=100), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_jobs_account_id", "jobs", ["account_id"], unique=False)
    op.create_index("ix_jobs_kind", "jobs", ["kind"], unique=False)
    op.create_index("ix_jobs_status", "jobs", ["status"], unique=False)
    op.create_index("ix_jobs_batch_id", "jobs", ["batch_id"], unique=False)
    op.create_index("ix_jobs_task_id", "jobs", ["task_id"], unique=False)

    op.create_table(
        "agent_results",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _account_fk(),
        sa.Column("domain", sa.String(length=255), nullable=False),
        sa.Column("agent_type", sa.String(length=64), nullable=False),
        sa.Column("date_start", sa.Date(), nullable=True),
        sa.Column("date_end", sa.Date(), nullable=True),
        sa.Column("agent_input", sa.JSON(), nullable=True),
        sa.Column("agent_output", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_agent_results_account_id", "agent_results", ["account_id"], unique=False)
    op.create_index("ix_agent_results_agent_type", "agent_results", ["agent_type"], unique=False)
    op.create_index("ix_agent_results_status", "agent_results", ["status"], unique=False)
    op.create_index(
        "ix_agent_results_lookup", "agent_results", ["account_id", "agent_type", "date_start", "date_end"], unique=False
    )

    op.create_table(
        "google_data_store",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _account_fk(),
        sa.Column("domain", sa.String(length=255), nullable=False),
        sa.Column("date_start", sa.Date(), nullable=False),
        sa.Column("date_end", sa.Date(), nullable=False),
        sa.Column("run_type", sa.String(length=16), nullable=False),
        sa.Column("ga4_data", sa.JSON(), nullable=True),
        sa.Column("gsc_data", sa.JSON(), nullable=True),
        sa.Column("gbp_data", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_google_data_store_account_id", "google_data_store", ["account_id"], unique=False)
    op.create_index("ix_google_data_store_run_type", "google_data_store", ["run_type"], unique=False)

    op.create_table(
        "tasks",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _account_fk(),
        sa.Column("domain_name", sa.String(length=255), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("category", sa.String(length=16), nullable=False),
        sa.Column("agent_type", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("is_approved", sa.Boolean(), nullable=False),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_tasks_account_id", "tasks", ["account_id"], unique=False)
    op.create_index("ix_tasks_agent_type", "tasks", ["agent_type"], unique=False)


def downgrade() -> None:
    op.drop_table("tasks")
    op.drop_table("google_data_store")
    op.drop_table("agent_results")
    op.drop_table("jobs")
    op.drop_table("google_accounts")
