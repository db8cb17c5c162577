"""Initial BuildGate schema."""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

JOB_STATUSES = ("pending", "admitted", "running", "succeeded", "failed")
FAILURE_REASONS = (
    "quota_exhausted",
    "sandbox_unavailable",
    "sandbox_quota_exceeded",
    "unknown_tool",
    "step_budget_exceeded",
    "model_error",
    "lease_expired",
    "job_timeout",
    "recovery_timeout",
    "internal_error",
)
PLANS = ("free", "pro")
STEP_OUTCOMES = ("ok", "error", "timeout", "continue", "done")


def upgrade() -> None:
    """Create base tables and enums."""
    bind = op.get_bind()

    postgresql.ENUM(*JOB_STATUSES, name="jobstatus").create(bind, checkfirst=True)
    postgresql.ENUM(*FAILURE_REASONS, name="failurereason").create(bind, checkfirst=True)
    postgresql.ENUM(*PLANS, name="plan").create(bind, checkfirst=True)
    postgresql.ENUM(*STEP_OUTCOMES, name="stepoutcome").create(bind, checkfirst=True)

    jobstatus = postgresql.ENUM(name="jobstatus", create_type=False)
    failurereason = postgresql.ENUM(name="failurereason", create_type=False)
    plan = postgresql.ENUM(name="plan", create_type=False)
    stepoutcome = postgresql.ENUM(name="stepoutcome", create_type=False)

    op.create_table(
        "requests",
        sa.Column("request_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("principal_id", sa.String(length=255), nullable=False),
        sa.Column("prompt_text", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_requests_principal_id", "requests", ["principal_id"])

    op.create_table(
        "jobs",
        sa.Column("job_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "request_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("requests.request_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", jobstatus, nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sandbox_lease_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("failure_reason", failurereason, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("request_id", name="uq_jobs_request"),
    )
    op.create_index("idx_jobs_status_updated", "jobs", ["status", "updated_at"])

    op.create_table(
        "principal_plans",
        sa.Column("principal_id", sa.String(length=255), primary_key=True),
        sa.Column("plan", plan, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "quota_records",
        sa.Column("principal_id", sa.String(length=255), primary_key=True),
        sa.Column("points_remaining", sa.Integer(), nullable=False),
        sa.Column("window_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("points_remaining >= 0", name="ck_quota_records_non_negative"),
    )

    op.create_table(
        "quota_admissions",
        sa.Column("admission_key", sa.String(length=255), primary_key=True),
        sa.Column("principal_id", sa.String(length=255), nullable=False),
        sa.Column("cost", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "sandbox_leases",
        sa.Column("lease_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "job_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ttl_seconds", sa.Integer(), nullable=False),
        sa.Column("endpoint_ref", sa.String(length=255), nullable=False),
        sa.Column("preview_url", sa.String(length=1024), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_sandbox_leases_job", "sandbox_leases", ["job_id", "released_at"])

    op.create_table(
        "step_traces",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "job_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("tool_invoked", sa.String(length=64), nullable=True),
        sa.Column("input", postgresql.JSONB, nullable=True),
        sa.Column("output", sa.Text(), nullable=True),
        sa.Column("outcome", stepoutcome, nullable=False),
        sa.Column("call_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("job_id", "seq", name="uq_step_traces_job_seq"),
    )

    op.create_table(
        "results",
        sa.Column(
            "job_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("jobs.job_id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("status", jobstatus, nullable=False),
        sa.Column("title", sa.String(length=500), nullable=False, server_default=""),
        sa.Column("summary", sa.Text(), nullable=False, server_default=""),
        sa.Column("files", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("sandbox_endpoint", sa.String(length=1024), nullable=True),
        sa.Column("failure_reason", failurereason, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("trace", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    """Drop all BuildGate tables and enums."""
    op.drop_table("results")
    op.drop_table("step_traces")

    op.drop_index("idx_sandbox_leases_job", table_name="sandbox_leases")
    op.drop_table("sandbox_leases")

    op.drop_table("quota_admissions")
    op.drop_table("quota_records")
    op.drop_table("principal_plans")

    op.drop_index("idx_jobs_status_updated", table_name="jobs")
    op.drop_table("jobs")

    op.drop_index("ix_requests_principal_id", table_name="requests")
    op.drop_table("requests")

    bind = op.get_bind()
    sa.Enum(name="stepoutcome").drop(bind, checkfirst=True)
    sa.Enum(name="plan").drop(bind, checkfirst=True)
    sa.Enum(name="failurereason").drop(bind, checkfirst=True)
    sa.Enum(name="jobstatus").drop(bind, checkfirst=True)
