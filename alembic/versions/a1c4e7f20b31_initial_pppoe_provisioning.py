"""Initial PPPoE provisioning schema.

Revision ID: a1c4e7f20b31
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "a1c4e7f20b31"
down_revision = None
branch_labels = None
depends_on = None

_ENUMS = {
    "deviceprotocol": ("api", "ssh"),
    "customerstatus": ("prospect", "active", "suspended", "canceled"),
    "contractstatus": (
        "draft",
        "active",
        "suspended_financial",
        "suspended_request",
        "canceled",
    ),
    "eventstatus": ("pending", "processing", "completed", "failed"),
    "outboxstatus": ("pending", "processing", "succeeded", "failed", "skipped"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*_ENUMS[name], name=name, create_type=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in _ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "devices",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column("host", sa.String(255), nullable=False),
        sa.Column("control_port", sa.Integer(), nullable=True),
        sa.Column("shell_port", sa.Integer(), nullable=True),
        sa.Column("protocol", _enum("deviceprotocol"), nullable=True),
        sa.Column("admin_user", sa.String(120), nullable=False),
        sa.Column("admin_secret", sa.String(255), nullable=True),
        sa.Column("use_ssl", sa.Boolean(), nullable=True),
        sa.Column("verify_host_key", sa.Boolean(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "bandwidth_profiles",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("device_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("devices.id"), nullable=False),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("download_bps", sa.BigInteger(), nullable=True),
        sa.Column("upload_bps", sa.BigInteger(), nullable=True),
        sa.Column("session_timeout_seconds", sa.Integer(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("device_id", "name", name="uq_bandwidth_profiles_device_name"),
    )

    op.create_table(
        "credentials",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("device_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("devices.id"), nullable=False),
        sa.Column("profile_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("bandwidth_profiles.id"), nullable=False),
        sa.Column("username", sa.String(120), nullable=False),
        sa.Column("secret", sa.String(255), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=True),
        sa.Column("last_seen_online", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("device_id", "username", name="uq_credentials_device_username"),
    )

    op.create_table(
        "customers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("status", _enum("customerstatus"), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "addresses",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("street", sa.String(160), nullable=False),
        sa.Column("number", sa.String(20), nullable=True),
        sa.Column("district", sa.String(80), nullable=True),
        sa.Column("city", sa.String(80), nullable=True),
        sa.Column("state", sa.String(40), nullable=True),
    )

    op.create_table(
        "service_plans",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column("profile_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("bandwidth_profiles.id"), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=True),
    )

    op.create_table(
        "contracts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("plan_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("service_plans.id"), nullable=False),
        sa.Column("credential_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("credentials.id"), nullable=True, unique=True),
        sa.Column("installation_address_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("addresses.id"), nullable=True),
        sa.Column("company_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("status", _enum("contractstatus"), nullable=True),
        sa.Column("billing_day", sa.Integer(), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_contracts_company_id", "contracts", ["company_id"])

    op.create_table(
        "event_store",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("status", _enum("eventstatus"), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actor", sa.String(255), nullable=True),
        sa.Column("contract_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("credential_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("failed_handlers", postgresql.JSONB(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_event_store_event_id", "event_store", ["event_id"], unique=True)
    op.create_index("ix_event_store_event_type", "event_store", ["event_type"])
    op.create_index("ix_event_store_status", "event_store", ["status"])
    op.create_index("ix_event_store_contract_id", "event_store", ["contract_id"])

    op.create_table(
        "device_outbox",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("action", sa.String(60), nullable=False),
        sa.Column("device_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("target_key", sa.String(120), nullable=True),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("status", _enum("outboxstatus"), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_device_outbox_action", "device_outbox", ["action"])
    op.create_index("ix_device_outbox_status", "device_outbox", ["status"])
    op.create_index("ix_device_outbox_target_key", "device_outbox", ["target_key"])


def downgrade() -> None:
    op.drop_index("ix_device_outbox_target_key", table_name="device_outbox")
    op.drop_index("ix_device_outbox_status", table_name="device_outbox")
    op.drop_index("ix_device_outbox_action", table_name="device_outbox")
    op.drop_table("device_outbox")
    op.drop_index("ix_event_store_contract_id", table_name="event_store")
    op.drop_index("ix_event_store_status", table_name="event_store")
    op.drop_index("ix_event_store_event_type", table_name="event_store")
    op.drop_index("ix_event_store_event_id", table_name="event_store")
    op.drop_table("event_store")
    op.drop_index("ix_contracts_company_id", table_name="contracts")
    op.drop_table("contracts")
    op.drop_table("service_plans")
    op.drop_table("addresses")
    op.drop_table("customers")
    op.drop_table("credentials")
    op.drop_table("bandwidth_profiles")
    op.drop_table("devices")
    for name in reversed(list(_ENUMS)):
        op.execute(f"DROP TYPE {name}")
