"""publication pipeline core

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP"))


def upgrade() -> None:
    op.create_table(
        "workspaces",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "brands",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["workspace_id"], ["workspaces.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_brands_workspace_id", "brands", ["workspace_id"], unique=False)

    op.create_table(
        "social_accounts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        sa.Column("brand_id", sa.String(length=36), nullable=True),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("platform_account_id", sa.String(length=128), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("platform_data_json", sa.Text(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("credentials_encrypted", sa.Text(), nullable=False),
        sa.Column("token_data_json", sa.Text(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'active'")),
        sa.Column("last_error_code", sa.String(length=64), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["workspace_id"], ["workspaces.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["brand_id"], ["brands.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "workspace_id",
            "platform",
            "platform_account_id",
            name="uq_social_accounts_workspace_platform_account",
        ),
    )
    op.create_index("ix_social_accounts_workspace_id", "social_accounts", ["workspace_id"], unique=False)

    op.create_table(
        "publications",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        sa.Column("brand_id", sa.String(length=36), nullable=False),
        sa.Column("social_account_id", sa.String(length=36), nullable=True),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("content_type", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'draft'")),
        sa.Column("caption", sa.Text(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_post_id", sa.String(length=128), nullable=True),
        sa.Column("permalink", sa.Text(), nullable=True),
        sa.Column("provider_response_json", sa.Text(), nullable=True),
        sa.Column("client_request_id", sa.String(length=128), nullable=True),
        sa.Column("job_id", sa.String(length=64), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["workspace_id"], ["workspaces.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["brand_id"], ["brands.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["social_account_id"], ["social_accounts.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "workspace_id",
            "brand_id",
            "client_request_id",
            name="uq_publications_workspace_brand_client_request",
        ),
    )
    op.create_index("ix_publications_workspace_id", "publications", ["workspace_id"], unique=False)
    op.create_index("ix_publications_brand_created", "publications", ["brand_id", "created_at", "id"], unique=False)
    op.create_index("ix_publications_status_scheduled", "publications", ["status", "scheduled_at"], unique=False)

    op.create_table(
        "activity_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("workspace_id", sa.String(length=36), nullable=True),
        sa.Column("user_id", sa.String(length=36), nullable=True),
        sa.Column("actor_type", sa.String(length=16), nullable=False, server_default=sa.text("'system'")),
        sa.Column("source", sa.String(length=32), nullable=False, server_default=sa.text("'worker'")),
        sa.Column("scope_type", sa.String(length=32), nullable=True),
        sa.Column("scope_id", sa.String(length=36), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=False, server_default=sa.text("'{}'")),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["workspace_id"], ["workspaces.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_activity_events_scope", "activity_events", ["scope_type", "scope_id"], unique=False)
    op.create_index(
        "ix_activity_events_workspace_created",
        "activity_events",
        ["workspace_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_activity_events_workspace_created", table_name="activity_events")
    op.drop_index("ix_activity_events_scope", table_name="activity_events")
    op.drop_table("activity_events")

    op.drop_index("ix_publications_status_scheduled", table_name="publications")
    op.drop_index("ix_publications_brand_created", table_name="publications")
    op.drop_index("ix_publications_workspace_id", table_name="publications")
    op.drop_table("publications")

    op.drop_index("ix_social_accounts_workspace_id", table_name="social_accounts")
    op.drop_table("social_accounts")

    op.drop_index("ix_brands_workspace_id", table_name="brands")
    op.drop_table("brands")

    op.drop_table("workspaces")
