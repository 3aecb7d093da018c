"""create escrow and booking tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_0001_init_escrow_tables"
down_revision = None
branch_labels = None
depends_on = None


LOAD_STATUSES = (
    "draft",
    "posted",
    "bidding",
    "booked",
    "in_transit",
    "delivered",
    "completed",
    "cancelled",
)
BID_STATUSES = ("pending", "accepted", "rejected", "expired")
PAYMENT_STATUSES = ("pending", "held_in_escrow", "released", "completed", "failed", "disputed")
PAYOUT_STATUSES = ("pending", "completed", "failed")
DOCUMENT_TYPES = ("bol", "pod", "rate_confirmation", "invoice", "insurance", "other")
EQUIPMENT_TYPES = (
    "dry_van",
    "reefer",
    "flatbed",
    "step_deck",
    "lowboy",
    "tanker",
    "box_truck",
    "power_only",
)


def _in(column: str, values: tuple) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


def _status_enum(name: str, values: tuple) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, length=max(len(v) for v in values))


def upgrade() -> None:
    op.create_table(
        "carriers",
        sa.Column("user_id", sa.String(length=64), primary_key=True),
        sa.Column("company_name", sa.String(length=255), nullable=False),
        sa.Column("stripe_connect_account_id", sa.String(length=255)),
        sa.Column("stripe_connect_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "stripe_connect_charges_enabled", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "stripe_connect_payouts_enabled", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "stripe_connect_details_submitted",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )

    op.create_table(
        "loads",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("shipper_id", sa.String(length=64), nullable=False),
        sa.Column("carrier_id", sa.String(length=64)),
        sa.Column("origin_city", sa.String(length=128), nullable=False),
        sa.Column("origin_state", sa.String(length=32), nullable=False),
        sa.Column("destination_city", sa.String(length=128), nullable=False),
        sa.Column("destination_state", sa.String(length=32), nullable=False),
        sa.Column(
            "equipment_type", _status_enum("equipmenttype", EQUIPMENT_TYPES), nullable=False
        ),
        sa.Column("posted_rate", sa.Numeric(12, 2)),
        sa.Column("status", _status_enum("loadstatus", LOAD_STATUSES), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint(_in("status", LOAD_STATUSES), name="ck_loads_status"),
        sa.CheckConstraint(
            "(carrier_id IS NOT NULL) = ("
            + _in("status", ("booked", "in_transit", "delivered", "completed"))
            + ")",
            name="ck_loads_carrier_matches_status",
        ),
    )
    op.create_index("ix_loads_shipper_id", "loads", ["shipper_id"])
    op.create_index("ix_loads_carrier_id", "loads", ["carrier_id"])
    op.create_index("ix_loads_status", "loads", ["status"])

    op.create_table(
        "bids",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("load_id", sa.String(length=36), sa.ForeignKey("loads.id"), nullable=False),
        sa.Column("carrier_id", sa.String(length=64), nullable=False),
        sa.Column("bid_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", _status_enum("bidstatus", BID_STATUSES), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True)),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint(_in("status", BID_STATUSES), name="ck_bids_status"),
    )
    op.create_index("ix_bids_load_id", "bids", ["load_id"])
    op.create_index("ix_bids_carrier_id", "bids", ["carrier_id"])
    op.create_index("ix_bids_status", "bids", ["status"])
    op.create_index("ix_bids_expires_at", "bids", ["expires_at"])
    if op.get_bind().dialect.name == "postgresql":
        op.create_index(
            "uq_bids_one_accepted_per_load",
            "bids",
            ["load_id"],
            unique=True,
            postgresql_where=sa.text("status = 'accepted'"),
        )

    op.create_table(
        "documents",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("load_id", sa.String(length=36), sa.ForeignKey("loads.id")),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("document_type", _status_enum("documenttype", DOCUMENT_TYPES), nullable=False),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("approved_by", sa.String(length=64)),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_documents_load_id", "documents", ["load_id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("load_id", sa.String(length=36), sa.ForeignKey("loads.id"), nullable=False),
        sa.Column("bid_id", sa.String(length=36), sa.ForeignKey("bids.id")),
        sa.Column("shipper_id", sa.String(length=64), nullable=False),
        sa.Column("carrier_id", sa.String(length=64), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("final_amount_cents", sa.BigInteger()),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("status", _status_enum("paymentstatus", PAYMENT_STATUSES), nullable=False),
        sa.Column("stripe_payment_intent_id", sa.String(length=255), unique=True),
        sa.Column("stripe_transfer_id", sa.String(length=255)),
        sa.Column("escrow_held_at", sa.DateTime(timezone=True)),
        sa.Column("released_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("dispute_reason", sa.Text()),
        sa.Column("notes", sa.Text()),
        sa.Column("error_message", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("amount_cents > 0", name="ck_payments_amount_positive"),
        sa.CheckConstraint(
            "final_amount_cents IS NULL OR final_amount_cents <= amount_cents",
            name="ck_payments_final_amount_le_amount",
        ),
        sa.CheckConstraint(_in("status", PAYMENT_STATUSES), name="ck_payments_status"),
    )
    op.create_index("ix_payments_load_id", "payments", ["load_id"])
    op.create_index("ix_payments_shipper_id", "payments", ["shipper_id"])
    op.create_index("ix_payments_carrier_id", "payments", ["carrier_id"])
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_status_escrow_held_at", "payments", ["status", "escrow_held_at"])
    if op.get_bind().dialect.name == "postgresql":
        op.create_index(
            "uq_payments_one_active_per_load",
            "payments",
            ["load_id"],
            unique=True,
            postgresql_where=sa.text("status <> 'failed'"),
        )

    op.create_table(
        "carrier_payouts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("carrier_id", sa.String(length=64), nullable=False),
        sa.Column("payment_id", sa.String(length=36), sa.ForeignKey("payments.id"), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("platform_fee_cents", sa.BigInteger(), nullable=False),
        sa.Column("carrier_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("status", _status_enum("payoutstatus", PAYOUT_STATUSES), nullable=False),
        sa.Column("stripe_transfer_id", sa.String(length=255), unique=True),
        sa.Column("error_message", sa.Text()),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "amount_cents = platform_fee_cents + carrier_amount_cents",
            name="ck_carrier_payouts_fee_split",
        ),
        sa.CheckConstraint(_in("status", PAYOUT_STATUSES), name="ck_carrier_payouts_status"),
    )
    op.create_index("ix_carrier_payouts_carrier_id", "carrier_payouts", ["carrier_id"])
    op.create_index(
        "ix_carrier_payouts_payment_id", "carrier_payouts", ["payment_id"], unique=True
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.String(length=64)),
        sa.Column("load_id", sa.String(length=36)),
        sa.Column("payload_json", sa.Text()),
        sa.Column("request_id", sa.String(length=64)),
        sa.Column("idempotency_key", sa.String(length=128)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_user_id", "audit_logs", ["user_id"])
    op.create_index("ix_audit_logs_load_id", "audit_logs", ["load_id"])
    op.create_index("ix_audit_logs_request_id", "audit_logs", ["request_id"])
    op.create_index(
        "ix_audit_logs_idempotency_key", "audit_logs", ["idempotency_key"], unique=True
    )


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("carrier_payouts")
    op.drop_table("payments")
    op.drop_table("documents")
    op.drop_table("bids")
    op.drop_table("carriers")
    op.drop_table("loads")
