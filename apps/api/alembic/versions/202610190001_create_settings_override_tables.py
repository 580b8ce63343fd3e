"""create settings override tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "settings_override",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("domain", sa.String(length=32), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("sd_id", sa.Uuid(), nullable=True),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("scope_key", sa.String(length=80), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("priority IN (1, 2, 3)", name="ck_settings_override_priority"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("company_id", "domain", "scope_key", name="uq_settings_override_scope"),
    )
    op.create_index(
        "ix_settings_override_company_domain",
        "settings_override",
        ["company_id", "domain", "priority"],
        unique=False,
    )

    op.create_table(
        "settings_assignment_pointer",
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("domain", sa.String(length=32), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("sd_id", sa.Uuid(), nullable=True),
        sa.Column("current_record_id", sa.Uuid(), nullable=False),
        sa.Column("current_priority", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["current_record_id"], ["settings_override.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("user_id", "domain"),
    )
    op.create_index(
        "ix_settings_pointer_membership",
        "settings_assignment_pointer",
        ["company_id", "sd_id", "domain"],
        unique=False,
    )
    op.create_index(
        "ix_settings_pointer_record",
        "settings_assignment_pointer",
        ["current_record_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_settings_pointer_record", table_name="settings_assignment_pointer")
    op.drop_index("ix_settings_pointer_membership", table_name="settings_assignment_pointer")
    op.drop_table("settings_assignment_pointer")
    op.drop_index("ix_settings_override_company_domain", table_name="settings_override")
    op.drop_table("settings_override")
