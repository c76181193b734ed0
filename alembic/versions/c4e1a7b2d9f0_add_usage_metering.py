"""add usage metering tables

Revision ID: c4e1a7b2d9f0
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ENUM, UUID

from alembic import op

revision = "c4e1a7b2d9f0"
down_revision = None
branch_labels = None
depends_on = None

_KEY_TYPE = ("access_key", "dynamic_key")
_KEY_STATUS = ("active", "disabled", "expired", "depleted", "pending")
_RESET_STRATEGY = ("never", "daily", "weekly", "monthly")
_NOTIFICATION_EVENT = ("usage_80", "usage_90", "depleted", "expiring_soon")


def _metered_columns() -> list[sa.Column]:
    return [
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("used_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("usage_offset", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("data_limit_bytes", sa.BigInteger(), nullable=True),
        sa.Column(
            "data_limit_reset_strategy",
            ENUM(*_RESET_STRATEGY, name="datalimitresetstrategy", create_type=False),
            nullable=False,
            server_default="never",
        ),
        sa.Column("last_data_limit_reset", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "status",
            ENUM(*_KEY_STATUS, name="keystatus", create_type=False),
            nullable=False,
            server_default="active",
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing = set(inspector.get_table_names())

    # Ensure enum types exist before creating tables.
    ENUM(*_KEY_TYPE, name="keytype").create(bind, checkfirst=True)
    ENUM(*_KEY_STATUS, name="keystatus").create(bind, checkfirst=True)
    ENUM(*_RESET_STRATEGY, name="datalimitresetstrategy").create(bind, checkfirst=True)
    ENUM(*_NOTIFICATION_EVENT, name="notificationevent").create(bind, checkfirst=True)

    if "servers" not in existing:
        op.create_table(
            "servers",
            sa.Column("server_id", UUID(as_uuid=True), primary_key=True),
            sa.Column("name", sa.String(120), nullable=False),
            sa.Column("api_url", sa.String(512), nullable=False),
            sa.Column("api_cert_sha256", sa.String(128), nullable=True),
            sa.Column("country_code", sa.String(2), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        op.create_index("ix_servers_is_active", "servers", ["is_active"])

    if "dynamic_access_keys" not in existing:
        op.create_table(
            "dynamic_access_keys",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            *_metered_columns(),
        )

    if "access_keys" not in existing:
        op.create_table(
            "access_keys",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            sa.Column("server_id", UUID(as_uuid=True), sa.ForeignKey("servers.server_id"), nullable=False),
            sa.Column("outline_key_id", sa.String(64), nullable=False),
            sa.Column(
                "dynamic_key_id",
                UUID(as_uuid=True),
                sa.ForeignKey("dynamic_access_keys.id"),
                nullable=True,
            ),
            *_metered_columns(),
            sa.UniqueConstraint("server_id", "outline_key_id", name="uq_access_keys_server_outline_key"),
        )
        op.create_index("ix_access_keys_server_id", "access_keys", ["server_id"])
        op.create_index("ix_access_keys_dynamic_key_id", "access_keys", ["dynamic_key_id"])

    if "usage_snapshots" not in existing:
        op.create_table(
            "usage_snapshots",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("key_id", UUID(as_uuid=True), nullable=False),
            sa.Column("key_type", ENUM(*_KEY_TYPE, name="keytype", create_type=False), nullable=False),
            sa.Column("server_id", UUID(as_uuid=True), sa.ForeignKey("servers.server_id"), nullable=True),
            sa.Column("used_bytes", sa.BigInteger(), nullable=False),
            sa.Column("delta_bytes", sa.BigInteger(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.CheckConstraint("used_bytes >= 0", name="ck_usage_snapshots_used_nonnegative"),
            sa.CheckConstraint("delta_bytes >= 0", name="ck_usage_snapshots_delta_nonnegative"),
        )
        op.create_index("ix_usage_snapshots_created_at", "usage_snapshots", ["created_at"])
        op.create_index("ix_usage_snapshots_key_created", "usage_snapshots", ["key_id", "created_at"])

    if "traffic_logs" not in existing:
        op.create_table(
            "traffic_logs",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("access_key_id", UUID(as_uuid=True), sa.ForeignKey("access_keys.id"), nullable=False),
            sa.Column("bytes_used", sa.BigInteger(), nullable=False),
            sa.Column("delta_bytes", sa.BigInteger(), nullable=False),
            sa.Column("recorded_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        op.create_index("ix_traffic_logs_access_key_id", "traffic_logs", ["access_key_id"])
        op.create_index("ix_traffic_logs_recorded_at", "traffic_logs", ["recorded_at"])

    if "notification_logs" not in existing:
        op.create_table(
            "notification_logs",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("key_id", UUID(as_uuid=True), nullable=False),
            sa.Column("key_type", ENUM(*_KEY_TYPE, name="keytype", create_type=False), nullable=False),
            sa.Column(
                "event",
                ENUM(*_NOTIFICATION_EVENT, name="notificationevent", create_type=False),
                nullable=False,
            ),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("sent_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        op.create_index("ix_notification_logs_sent_at", "notification_logs", ["sent_at"])
        op.create_index("ix_notification_logs_key_event_sent", "notification_logs", ["key_id", "event", "sent_at"])


def downgrade() -> None:
    op.drop_index("ix_notification_logs_key_event_sent")
    op.drop_index("ix_notification_logs_sent_at")
    op.drop_table("notification_logs")
    op.drop_index("ix_traffic_logs_recorded_at")
    op.drop_index("ix_traffic_logs_access_key_id")
    op.drop_table("traffic_logs")
    op.drop_index("ix_usage_snapshots_key_created")
    op.drop_index("ix_usage_snapshots_created_at")
    op.drop_table("usage_snapshots")
    op.drop_index("ix_access_keys_dynamic_key_id")
    op.drop_index("ix_access_keys_server_id")
    op.drop_table("access_keys")
    op.drop_table("dynamic_access_keys")
    op.drop_index("ix_servers_is_active")
    op.drop_table("servers")
    for name in ("notificationevent", "datalimitresetstrategy", "keystatus", "keytype"):
        sa.Enum(name=name).drop(op.get_bind(), checkfirst=True)
