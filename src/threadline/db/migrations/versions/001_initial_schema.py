"""Initial schema: connections, conversations, messages, automations

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

Messages carry a partial unique index on provider_message_id that skips
optimistic rows, so placeholder ids never collide with confirmed ones.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "connections",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("provider", sa.String(20), nullable=True),
        sa.Column("instance_name", sa.String(255), nullable=False),
        sa.Column("api_url", sa.String(500), nullable=True),
        sa.Column("api_key", sa.String(500), nullable=True),
        sa.Column("instance_id", sa.String(255), nullable=True),
        sa.Column("wapi_token", sa.Text, nullable=True),
        sa.Column(
            "status", sa.String(50), nullable=False, server_default="disconnected"
        ),
        sa.Column("phone_number", sa.String(50), nullable=True),
        sa.Column(
            "show_groups", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
    )
    op.create_index(
        "ix_connections_instance_name", "connections", ["instance_name"], unique=True
    )
    op.create_index(
        "ix_connections_organization_id", "connections", ["organization_id"]
    )

    op.create_table(
        "conversations",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "connection_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("connections.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("remote_jid", sa.String(100), nullable=False),
        sa.Column("contact_name", sa.String(255), nullable=True),
        sa.Column("contact_phone", sa.String(50), nullable=True),
        sa.Column("is_group", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("group_name", sa.String(255), nullable=True),
        sa.Column(
            "last_message_at", sa.DateTime(timezone=True), nullable=True, index=True
        ),
        sa.Column("unread_count", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint(
            "connection_id", "remote_jid", name="uq_conversation_connection_jid"
        ),
    )
    op.create_index(
        "ix_conversations_connection_phone",
        "conversations",
        ["connection_id", "contact_phone"],
    )

    op.create_table(
        "messages",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "conversation_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("provider_message_id", sa.String(100), nullable=True),
        sa.Column(
            "is_optimistic", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("from_me", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("message_type", sa.String(50), nullable=False, server_default="text"),
        sa.Column("content", sa.Text, nullable=True),
        sa.Column("media_url", sa.Text, nullable=True),
        sa.Column("media_mimetype", sa.String(100), nullable=True),
        sa.Column("quoted_message_id", sa.String(100), nullable=True),
        sa.Column("sender_name", sa.String(255), nullable=True),
        sa.Column("sender_phone", sa.String(50), nullable=True),
        sa.Column("status", sa.String(50), nullable=False, server_default="sent"),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
    )
    op.create_index(
        "uq_messages_provider_message_id",
        "messages",
        ["provider_message_id"],
        unique=True,
        postgresql_where=sa.text(
            "provider_message_id IS NOT NULL AND is_optimistic = false"
        ),
    )
    op.create_index(
        "ix_messages_conversation_timestamp",
        "messages",
        ["conversation_id", "timestamp"],
    )

    op.create_table(
        "automations",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("connection_ids", postgresql.JSONB, nullable=True),
        sa.Column(
            "is_active", sa.Boolean, nullable=False, server_default=sa.true(), index=True
        ),
        sa.Column(
            "trigger_enabled", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("trigger_keywords", postgresql.JSONB, nullable=True),
        sa.Column(
            "trigger_match_mode", sa.String(20), nullable=False, server_default="exact"
        ),
        *_timestamps(),
    )

    op.create_table(
        "automation_sessions",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "automation_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("automations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column(
            "conversation_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("current_node_id", sa.String(100), nullable=True),
        sa.Column(
            "is_active", sa.Boolean, nullable=False, server_default=sa.true(), index=True
        ),
        *_timestamps(),
    )


def downgrade() -> None:
    op.drop_table("automation_sessions")
    op.drop_table("automations")
    op.drop_index("ix_messages_conversation_timestamp", table_name="messages")
    op.drop_index("uq_messages_provider_message_id", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_conversations_connection_phone", table_name="conversations")
    op.drop_table("conversations")
    op.drop_index("ix_connections_organization_id", table_name="connections")
    op.drop_index("ix_connections_instance_name", table_name="connections")
    op.drop_table("connections")
