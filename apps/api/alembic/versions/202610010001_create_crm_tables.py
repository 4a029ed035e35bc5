"""create crm hub, client, manager, event and search tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_hub",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "crm_client",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("hub_id", sa.Uuid(), nullable=False),
        sa.Column("public_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("fields", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["hub_id"], ["crm_hub.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("hub_id", "public_id", name="uq_crm_client_hub_public_id"),
        sa.UniqueConstraint("hub_id", "email", name="uq_crm_client_hub_email"),
        sa.UniqueConstraint("hub_id", "phone", name="uq_crm_client_hub_phone"),
    )
    op.create_index("ix_crm_client_hub_name", "crm_client", ["hub_id", "name"], unique=False)

    op.create_table(
        "crm_manager",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("hub_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("is_user", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["hub_id"], ["crm_hub.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("hub_id", "email", name="uq_crm_manager_hub_email"),
    )
    op.create_index("ix_crm_manager_hub_id", "crm_manager", ["hub_id"], unique=False)

    op.create_table(
        "crm_client_manager",
        sa.Column("client_id", sa.Uuid(), nullable=False),
        sa.Column("manager_id", sa.Uuid(), nullable=False),
        sa.ForeignKeyConstraint(["client_id"], ["crm_client.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["manager_id"], ["crm_manager.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("client_id", "manager_id"),
    )
    op.create_index("ix_crm_client_manager_manager_id", "crm_client_manager", ["manager_id"], unique=False)

    op.create_table(
        "crm_client_field",
        sa.Column("client_id", sa.Uuid(), nullable=False),
        sa.Column("field", sa.String(length=255), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(["client_id"], ["crm_client.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("client_id", "field"),
    )

    op.create_table(
        "crm_client_event",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("client_id", sa.Uuid(), nullable=False),
        sa.Column("manager_id", sa.Uuid(), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("event_data", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["client_id"], ["crm_client.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["manager_id"], ["crm_manager.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_client_event_client_created",
        "crm_client_event",
        ["client_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_crm_client_event_client_type",
        "crm_client_event",
        ["client_id", "event_type"],
        unique=False,
    )

    op.create_table(
        "crm_client_search",
        sa.Column("client_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("fields", sa.Text(), nullable=True),
        sa.Column("document", sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(["client_id"], ["crm_client.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("client_id"),
    )

    op.create_table(
        "crm_important_field",
        sa.Column("hub_id", sa.Uuid(), nullable=False),
        sa.Column("field", sa.String(length=255), nullable=False),
        sa.Column("position", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.ForeignKeyConstraint(["hub_id"], ["crm_hub.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("hub_id", "field"),
    )


def downgrade() -> None:
    op.drop_table("crm_important_field")
    op.drop_table("crm_client_search")
    op.drop_index("ix_crm_client_event_client_type", table_name="crm_client_event")
    op.drop_index("ix_crm_client_event_client_created", table_name="crm_client_event")
    op.drop_table("crm_client_event")
    op.drop_table("crm_client_field")
    op.drop_index("ix_crm_client_manager_manager_id", table_name="crm_client_manager")
    op.drop_table("crm_client_manager")
    op.drop_index("ix_crm_manager_hub_id", table_name="crm_manager")
    op.drop_table("crm_manager")
    op.drop_index("ix_crm_client_hub_name", table_name="crm_client")
    op.drop_table("crm_client")
    op.drop_table("crm_hub")
