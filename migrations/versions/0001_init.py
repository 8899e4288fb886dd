"""initial schema

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

from typing import List

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _object_columns() -> List[sa.Column]:
    return [
        sa.Column("uid", sa.String(length=64), primary_key=True),
        sa.Column("namespace", sa.String(length=63), nullable=False),
        sa.Column("name", sa.String(length=253), nullable=False),
        sa.Column("resource_version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("deletion_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finalizers", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("labels", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "join_clusters",
        *_object_columns(),
        sa.Column("spec", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("status", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.UniqueConstraint("namespace", "name", name="uq_join_clusters_namespace_name"),
    )
    op.create_index("ix_join_clusters_namespace", "join_clusters", ["namespace"])

    op.create_table(
        "identities",
        *_object_columns(),
        sa.Column("secrets", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.UniqueConstraint("namespace", "name", name="uq_identities_namespace_name"),
    )
    op.create_index("ix_identities_namespace", "identities", ["namespace"])

    op.create_table(
        "authorization_bindings",
        *_object_columns(),
        sa.Column("role_ref", sa.String(length=253), nullable=False),
        sa.Column("subjects", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.UniqueConstraint("namespace", "name", name="uq_authorization_bindings_namespace_name"),
    )
    op.create_index("ix_authorization_bindings_namespace", "authorization_bindings", ["namespace"])

    op.create_table(
        "secrets",
        *_object_columns(),
        sa.Column("type", sa.String(length=64), nullable=False, server_default="opaque"),
        sa.Column("data", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.UniqueConstraint("namespace", "name", name="uq_secrets_namespace_name"),
    )
    op.create_index("ix_secrets_namespace", "secrets", ["namespace"])

    op.create_table(
        "events",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("level", sa.String(length=16), nullable=False),
        sa.Column("object_key", sa.String(length=320), nullable=False, server_default=""),
        sa.Column("fields", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    )
    op.create_index("ix_events_category", "events", ["category"])
    op.create_index("ix_events_object_key", "events", ["object_key"])
    op.create_index("ix_events_created_at", "events", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_events_created_at", table_name="events")
    op.drop_index("ix_events_object_key", table_name="events")
    op.drop_index("ix_events_category", table_name="events")
    op.drop_table("events")
    op.drop_index("ix_secrets_namespace", table_name="secrets")
    op.drop_table("secrets")
    op.drop_index("ix_authorization_bindings_namespace", table_name="authorization_bindings")
    op.drop_table("authorization_bindings")
    op.drop_index("ix_identities_namespace", table_name="identities")
    op.drop_table("identities")
    op.drop_index("ix_join_clusters_namespace", table_name="join_clusters")
    op.drop_table("join_clusters")
