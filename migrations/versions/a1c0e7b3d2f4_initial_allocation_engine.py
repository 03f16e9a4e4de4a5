"""initial_allocation_engine

Create planning containers (consultants, projects, phases, sprints) and the
allocation engine tables (phase_allocations, phase_allocation_compositions,
weekly_allocations, hour_change_requests, audit_logs).

Revision ID: a1c0e7b3d2f4
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1c0e7b3d2f4"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "consultants" not in existing_tables:
        op.create_table(
            "consultants",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=True),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
        )

    if "phases" not in existing_tables:
        op.create_table(
            "phases",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("project_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("start_date", sa.Date(), nullable=False),
            sa.Column("end_date", sa.Date(), nullable=False),
            _ts("created_at"),
            sa.CheckConstraint("start_date <= end_date", name="ck_phase_date_range"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_phases_project_id", "phases", ["project_id"])

    if "sprints" not in existing_tables:
        op.create_table(
            "sprints",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("project_id", sa.String(length=36), nullable=False),
            sa.Column("phase_id", sa.String(length=36), nullable=True),
            sa.Column("sprint_number", sa.Integer(), nullable=False),
            sa.Column("start_date", sa.Date(), nullable=False),
            sa.Column("end_date", sa.Date(), nullable=False),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["phase_id"], ["phases.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "sprint_number", name="uq_sprint_project_number"),
        )
        op.create_index("ix_sprints_project_id", "sprints", ["project_id"])
        op.create_index("ix_sprints_phase_id", "sprints", ["phase_id"])

    if "phase_allocations" not in existing_tables:
        op.create_table(
            "phase_allocations",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("consultant_id", sa.String(length=36), nullable=False),
            sa.Column("phase_id", sa.String(length=36), nullable=False),
            sa.Column("total_hours", sa.Float(), nullable=False),
            sa.Column("approval_status", sa.String(length=20), nullable=False, server_default="PENDING"),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("modification_reason", sa.Text(), nullable=True),
            sa.Column("modified_from_hours", sa.Float(), nullable=True),
            sa.Column("deletion_reason", sa.Text(), nullable=True),
            sa.Column("deletion_requested_by", sa.String(length=150), nullable=True),
            sa.Column("is_composite", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("parent_allocation_id", sa.String(length=36), nullable=True),
            sa.Column("reallocated_from_phase_id", sa.String(length=36), nullable=True),
            sa.Column("reallocated_from_allocation_id", sa.String(length=36), nullable=True),
            sa.Column("reallocated_hours", sa.Float(), nullable=True),
            sa.Column("reallocation_notes", sa.Text(), nullable=True),
            sa.Column("forfeited_hours", sa.Float(), nullable=True),
            sa.Column("created_by", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("approved_by", sa.String(length=150), nullable=True),
            _ts("approved_at"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.CheckConstraint(
                "approval_status IN ('PENDING','APPROVED','REJECTED',"
                "'DELETION_PENDING','EXPIRED','FORFEITED')",
                name="ck_phase_allocation_status",
            ),
            sa.CheckConstraint("total_hours >= 0", name="ck_phase_allocation_hours"),
            sa.ForeignKeyConstraint(["consultant_id"], ["consultants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["phase_id"], ["phases.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["parent_allocation_id"], ["phase_allocations.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["reallocated_from_phase_id"], ["phases.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_phase_allocations_consultant_id", "phase_allocations", ["consultant_id"])
        op.create_index("ix_phase_allocations_phase_id", "phase_allocations", ["phase_id"])
        op.create_index(
            "ix_phase_allocations_parent_allocation_id", "phase_allocations", ["parent_allocation_id"],
        )
        op.create_index(
            "ix_phase_allocation_pair", "phase_allocations",
            ["consultant_id", "phase_id", "approval_status"],
        )

    if "phase_allocation_compositions" not in existing_tables:
        op.create_table(
            "phase_allocation_compositions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("phase_allocation_id", sa.String(length=36), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("kind", sa.String(length=20), nullable=False),
            sa.Column("original_hours", sa.Float(), nullable=True),
            sa.Column("reallocated_hours", sa.Float(), nullable=True),
            sa.Column("reallocated_from_phase_id", sa.String(length=36), nullable=True),
            sa.Column("source_allocation_id", sa.String(length=36), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_by", sa.String(length=150), nullable=False, server_default="system"),
            _ts("timestamp", nullable=False),
            sa.ForeignKeyConstraint(["phase_allocation_id"], ["phase_allocations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("phase_allocation_id", "sequence", name="uq_composition_sequence"),
        )
        op.create_index(
            "ix_phase_allocation_compositions_phase_allocation_id",
            "phase_allocation_compositions", ["phase_allocation_id"],
        )

    if "weekly_allocations" not in existing_tables:
        op.create_table(
            "weekly_allocations",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("phase_allocation_id", sa.String(length=36), nullable=False),
            sa.Column("consultant_id", sa.String(length=36), nullable=False),
            sa.Column("week_start_date", sa.Date(), nullable=False),
            sa.Column("week_end_date", sa.Date(), nullable=False),
            sa.Column("week_number", sa.Integer(), nullable=False),
            sa.Column("year", sa.Integer(), nullable=False),
            sa.Column("proposed_hours", sa.Float(), nullable=True),
            sa.Column("approved_hours", sa.Float(), nullable=True),
            sa.Column("planning_status", sa.String(length=20), nullable=False, server_default="PENDING"),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("consultant_description", sa.Text(), nullable=True),
            sa.Column("submission_batch_id", sa.String(length=36), nullable=True),
            sa.Column("approved_by", sa.String(length=150), nullable=True),
            _ts("approved_at"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.CheckConstraint(
                "planning_status IN ('PENDING','APPROVED','MODIFIED','REJECTED')",
                name="ck_weekly_allocation_status",
            ),
            sa.ForeignKeyConstraint(["phase_allocation_id"], ["phase_allocations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["consultant_id"], ["consultants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("phase_allocation_id", "week_start_date", name="uq_weekly_allocation_week"),
        )
        op.create_index(
            "ix_weekly_allocations_phase_allocation_id", "weekly_allocations", ["phase_allocation_id"],
        )
        op.create_index(
            "ix_weekly_allocations_submission_batch_id", "weekly_allocations", ["submission_batch_id"],
        )
        op.create_index(
            "ix_weekly_allocation_consultant_week", "weekly_allocations",
            ["consultant_id", "week_start_date"],
        )

    if "hour_change_requests" not in existing_tables:
        op.create_table(
            "hour_change_requests",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("phase_allocation_id", sa.String(length=36), nullable=False),
            sa.Column("requester_id", sa.String(length=36), nullable=False),
            sa.Column("change_type", sa.String(length=20), nullable=False),
            sa.Column("requested_hours", sa.Float(), nullable=False),
            sa.Column("reason", sa.String(length=500), nullable=False),
            sa.Column("from_week_start", sa.Date(), nullable=True),
            sa.Column("to_week_start", sa.Date(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("decided_by", sa.String(length=150), nullable=True),
            _ts("decided_at"),
            _ts("created_at"),
            sa.CheckConstraint("change_type IN ('ADJUSTMENT','SHIFT')", name="ck_hour_change_type"),
            sa.CheckConstraint("status IN ('PENDING','APPROVED','REJECTED')", name="ck_hour_change_status"),
            sa.ForeignKeyConstraint(["phase_allocation_id"], ["phase_allocations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["requester_id"], ["consultants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_hour_change_requests_phase_allocation_id", "hour_change_requests", ["phase_allocation_id"],
        )
        op.create_index("ix_hour_change_requests_requester_id", "hour_change_requests", ["requester_id"])

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("diff_json", sa.Text(), nullable=True),
            _ts("timestamp", nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    for table in (
        "audit_logs",
        "hour_change_requests",
        "weekly_allocations",
        "phase_allocation_compositions",
        "phase_allocations",
        "sprints",
        "phases",
        "projects",
        "consultants",
    ):
        if table in existing_tables:
            op.drop_table(table)
