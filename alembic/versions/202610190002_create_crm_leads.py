"""create crm lead tables

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190002"
down_revision: str | None = "202610190001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("company_id", sa.Uuid(), nullable=True),
        sa.Column("owner_id", sa.Uuid(), nullable=True),
        sa.Column("department_id", sa.Uuid(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="new"),
        sa.Column("source", sa.String(length=64), nullable=True),
        sa.Column("value", sa.Numeric(12, 2), nullable=True),
        sa.Column("probability", sa.Integer(), nullable=True),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_lead_owner_id", "crm_lead", ["owner_id"], unique=False)
    op.create_index("ix_crm_lead_department_id", "crm_lead", ["department_id"], unique=False)
    op.create_index("ix_crm_lead_status", "crm_lead", ["status"], unique=False)
    op.create_index("ix_crm_lead_created_at", "crm_lead", ["created_at"], unique=False)

    op.create_table(
        "crm_lead_tag",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("tag", sa.String(length=64), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["crm_lead.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("lead_id", "tag", name="uq_crm_lead_tag_pair"),
    )
    op.create_index("ix_crm_lead_tag_tag", "crm_lead_tag", ["tag"], unique=False)

    op.create_table(
        "crm_interaction",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False, server_default="lead"),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("subject", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("outcome", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_interaction_entity", "crm_interaction", ["entity_type", "entity_id"], unique=False)

    op.create_table(
        "crm_lead_status_history",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("previous_status", sa.String(length=32), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["crm_lead.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_lead_status_history_lead_id",
        "crm_lead_status_history",
        ["lead_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_lead_status_history_lead_id", table_name="crm_lead_status_history")
    op.drop_table("crm_lead_status_history")
    op.drop_index("ix_crm_interaction_entity", table_name="crm_interaction")
    op.drop_table("crm_interaction")
    op.drop_index("ix_crm_lead_tag_tag", table_name="crm_lead_tag")
    op.drop_table("crm_lead_tag")
    op.drop_index("ix_crm_lead_created_at", table_name="crm_lead")
    op.drop_index("ix_crm_lead_status", table_name="crm_lead")
    op.drop_index("ix_crm_lead_department_id", table_name="crm_lead")
    op.drop_index("ix_crm_lead_owner_id", table_name="crm_lead")
    op.drop_table("crm_lead")
