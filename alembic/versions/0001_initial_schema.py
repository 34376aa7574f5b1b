"""initial_schema

Revision ID: 0001
Revises:
Create Date: 2026-10-18

M-Pesa transactions and their audit log.
"""

from collections.abc import Sequence

import sqlalchemy as sa
import sqlmodel

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

transaction_type = sa.Enum("STK_PUSH", "B2C", "C2B", "B2B", "REVERSAL", name="transactiontype")
transaction_status = sa.Enum("PENDING", "SUCCESS", "FAILED", "CANCELLED", name="transactionstatus")
sap_sync_status = sa.Enum("PENDING", "SYNCED", "FAILED", name="sapsyncstatus")
audit_action = sa.Enum(
    "CREATED",
    "STATUS_CHANGED",
    "SAP_SYNCED",
    "SAP_SYNC_FAILED",
    "INITIATION_FAILED",
    "CALLBACK_REJECTED",
    name="auditaction",
)


def upgrade() -> None:
    """Create initial database schema."""
    op.create_table(
        "mpesa_transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        # Gateway tracking ids
        sa.Column("checkout_request_id", sqlmodel.sql.sqltypes.AutoString(length=100), nullable=True),
        sa.Column("merchant_request_id", sqlmodel.sql.sqltypes.AutoString(length=100), nullable=True),
        sa.Column("conversation_id", sqlmodel.sql.sqltypes.AutoString(length=100), nullable=True),
        sa.Column(
            "originator_conversation_id", sqlmodel.sql.sqltypes.AutoString(length=100), nullable=True
        ),
        sa.Column("mpesa_receipt", sqlmodel.sql.sqltypes.AutoString(length=50), nullable=True),
        # Payment details
        sa.Column("amount", sa.DECIMAL(precision=12, scale=2), nullable=False),
        sa.Column("phone_number", sqlmodel.sql.sqltypes.AutoString(length=20), nullable=False),
        sa.Column("account_reference", sqlmodel.sql.sqltypes.AutoString(length=12), nullable=True),
        sa.Column("transaction_type", transaction_type, nullable=False),
        # Lifecycle
        sa.Column("status", transaction_status, nullable=False, server_default="PENDING"),
        sa.Column("result_code", sa.Integer(), nullable=True),
        sa.Column("result_desc", sa.Text(), nullable=True),
        sa.Column("transaction_date", sa.DateTime(), nullable=True),
        # Ledger sync
        sa.Column("sap_reference", sqlmodel.sql.sqltypes.AutoString(length=100), nullable=True),
        sa.Column("sap_sync_status", sap_sync_status, nullable=False, server_default="PENDING"),
        sa.Column("sap_sync_date", sa.DateTime(), nullable=True),
        # Raw payloads
        sa.Column("request_payload", sa.JSON(), nullable=True),
        sa.Column("response_payload", sa.JSON(), nullable=True),
        sa.Column("callback_payload", sa.JSON(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        # Timestamps
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_mpesa_transactions_checkout_request_id"),
        "mpesa_transactions",
        ["checkout_request_id"],
        unique=True,
    )
    op.create_index(
        op.f("ix_mpesa_transactions_conversation_id"),
        "mpesa_transactions",
        ["conversation_id"],
        unique=True,
    )
    op.create_index(
        op.f("ix_mpesa_transactions_mpesa_receipt"),
        "mpesa_transactions",
        ["mpesa_receipt"],
        unique=True,
    )
    op.create_index(
        op.f("ix_mpesa_transactions_phone_number"), "mpesa_transactions", ["phone_number"]
    )
    op.create_index(
        op.f("ix_mpesa_transactions_transaction_type"), "mpesa_transactions", ["transaction_type"]
    )
    op.create_index(op.f("ix_mpesa_transactions_status"), "mpesa_transactions", ["status"])
    op.create_index(
        op.f("ix_mpesa_transactions_sap_reference"), "mpesa_transactions", ["sap_reference"]
    )
    op.create_index(
        op.f("ix_mpesa_transactions_sap_sync_status"), "mpesa_transactions", ["sap_sync_status"]
    )
    op.create_index(op.f("ix_mpesa_transactions_created_at"), "mpesa_transactions", ["created_at"])

    op.create_table(
        "transaction_audit_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("transaction_id", sa.Integer(), nullable=True),
        sa.Column("action", audit_action, nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("performed_by", sqlmodel.sql.sqltypes.AutoString(length=100), nullable=False),
        sa.Column("old_values", sa.JSON(), nullable=True),
        sa.Column("new_values", sa.JSON(), nullable=True),
        sa.Column("performed_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["transaction_id"], ["mpesa_transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_transaction_audit_log_transaction_id"), "transaction_audit_log", ["transaction_id"]
    )
    op.create_index(op.f("ix_transaction_audit_log_action"), "transaction_audit_log", ["action"])
    op.create_index(
        op.f("ix_transaction_audit_log_performed_at"), "transaction_audit_log", ["performed_at"]
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index(op.f("ix_transaction_audit_log_performed_at"), table_name="transaction_audit_log")
    op.drop_index(op.f("ix_transaction_audit_log_action"), table_name="transaction_audit_log")
    op.drop_index(op.f("ix_transaction_audit_log_transaction_id"), table_name="transaction_audit_log")
    op.drop_table("transaction_audit_log")

    for column in (
        "created_at",
        "sap_sync_status",
        "sap_reference",
        "status",
        "transaction_type",
        "phone_number",
        "mpesa_receipt",
        "conversation_id",
        "checkout_request_id",
    ):
        op.drop_index(op.f(f"ix_mpesa_transactions_{column}"), table_name="mpesa_transactions")
    op.drop_table("mpesa_transactions")
