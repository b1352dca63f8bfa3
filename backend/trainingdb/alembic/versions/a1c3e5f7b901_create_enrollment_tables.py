"""
Create enrollment tables: audit trail, cycles/programs, registrations,
user modules, presence records and sync jobs.

Revision ID: a1c3e5f7b901
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a1c3e5f7b901"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# Non-native enums persist member names.
ENROLLMENT_STATUS = ("PENDING", "ACCEPTED", "REJECTED")


def _enrollment_status() -> sa.Enum:
    return sa.Enum(*ENROLLMENT_STATUS, name="enrollment_status_enum", native_enum=False)


def upgrade() -> None:
    op.create_table(
        "audit_events",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("before", sa.JSON(), nullable=True),
        sa.Column("after", sa.JSON(), nullable=True),
        sa.Column("correlation_id", sa.String(length=64), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
    )
    for column in ("id", "entity_type", "entity_id", "action", "actor_user_id", "occurred_at", "correlation_id"):
        op.create_index(f"ix_audit_events_{column}", "audit_events", [column])
    op.create_index("ix_audit_events_entity_pair", "audit_events", ["entity_type", "entity_id"])
    op.create_index("ix_audit_events_action_time", "audit_events", ["action", "occurred_at"])
    op.create_index("ix_audit_events_time_desc", "audit_events", [sa.text("occurred_at DESC")])

    op.create_table(
        "cycles_programs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column(
            "type",
            sa.Enum("CYCLE", "PROGRAM", name="cycle_program_type_enum", native_enum=False),
            nullable=False,
        ),
        sa.Column(
            "program_type",
            sa.Enum("MARDI_DU_PARTAGE", "BATI_PRO", "OTHER", name="program_kind_enum", native_enum=False),
            nullable=True,
        ),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("budget", sa.Numeric(10, 2), nullable=True),
        sa.Column("entity", sa.String(length=255), nullable=True),
        sa.Column("facilitator", sa.String(length=255), nullable=True),
        sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_cycles_programs_title", "cycles_programs", ["title"])
    op.create_index("idx_cycles_programs_archived", "cycles_programs", ["archived"])

    op.create_table(
        "cycle_program_modules",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "cycle_program_id",
            sa.Integer(),
            sa.ForeignKey("cycles_programs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("module_id", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("cycle_program_id", "module_id", name="uq_cycle_program_modules_program_module"),
    )
    op.create_index("ix_cycle_program_modules_cycle_program_id", "cycle_program_modules", ["cycle_program_id"])
    op.create_index("idx_cycle_program_modules_module", "cycle_program_modules", ["module_id"])

    op.create_table(
        "cycle_program_registrations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "cycle_program_id",
            sa.Integer(),
            sa.ForeignKey("cycles_programs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("status", _enrollment_status(), nullable=False, server_default="PENDING"),
        sa.Column("decided_by_user_id", sa.Integer(), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_cycle_program_registrations_cycle_program_id",
        "cycle_program_registrations",
        ["cycle_program_id"],
    )
    op.create_index("ix_cycle_program_registrations_user_id", "cycle_program_registrations", ["user_id"])
    op.create_index(
        "idx_registrations_program_user",
        "cycle_program_registrations",
        ["cycle_program_id", "user_id"],
    )
    op.create_index("idx_registrations_status", "cycle_program_registrations", ["status"])

    op.create_table(
        "cycle_program_user_modules",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "registration_id",
            sa.Integer(),
            sa.ForeignKey("cycle_program_registrations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("module_id", sa.String(length=64), nullable=False),
        sa.Column("status", _enrollment_status(), nullable=False, server_default="PENDING"),
        sa.Column("decided_by_user_id", sa.Integer(), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("registration_id", "module_id", name="uq_user_modules_registration_module"),
    )
    op.create_index(
        "ix_cycle_program_user_modules_registration_id",
        "cycle_program_user_modules",
        ["registration_id"],
    )
    op.create_index(
        "idx_user_modules_module_status",
        "cycle_program_user_modules",
        ["module_id", "status"],
    )

    op.create_table(
        "presence_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "registration_id",
            sa.Integer(),
            sa.ForeignKey("cycle_program_registrations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("module_id", sa.String(length=64), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("PRESENT", "ABSENT", name="presence_status_enum", native_enum=False),
            nullable=False,
            server_default="ABSENT",
        ),
        sa.Column("recorded_by_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "registration_id",
            "module_id",
            "date",
            name="uq_presence_records_registration_module_date",
        ),
    )
    op.create_index("ix_presence_records_registration_id", "presence_records", ["registration_id"])
    op.create_index("idx_presence_records_module_date", "presence_records", ["module_id", "date"])

    op.create_table(
        "sync_jobs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("module_id", sa.String(length=64), nullable=False),
        sa.Column(
            "cycle_program_id",
            sa.Integer(),
            sa.ForeignKey("cycles_programs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "mode",
            sa.Enum("RESET_AND_SYNC", "RECONCILE", name="sync_mode_enum", native_enum=False),
            nullable=False,
            server_default="RESET_AND_SYNC",
        ),
        sa.Column("assigned_user_ids", sa.JSON(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "SUCCEEDED", "FAILED", "DEAD_LETTER", name="sync_job_status_enum", native_enum=False),
            nullable=False,
            server_default="PENDING",
        ),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sync_jobs_cycle_program_id", "sync_jobs", ["cycle_program_id"])
    op.create_index("ix_sync_jobs_status_next_attempt", "sync_jobs", ["status", "next_attempt_at"])
    op.create_index("ix_sync_jobs_module", "sync_jobs", ["module_id"])


def downgrade() -> None:
    op.drop_table("sync_jobs")
    op.drop_table("presence_records")
    op.drop_table("cycle_program_user_modules")
    op.drop_table("cycle_program_registrations")
    op.drop_table("cycle_program_modules")
    op.drop_table("cycles_programs")
    op.drop_table("audit_events")
