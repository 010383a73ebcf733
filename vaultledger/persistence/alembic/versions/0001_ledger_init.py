"""ledger init

Revision ID: 0001_ledger_init
Revises:
Create Date: 2026-10-16 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_ledger_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "vaults",
        sa.Column("owner", sa.String(), primary_key=True),
        sa.Column("settlement_account", sa.String(), nullable=True),
        sa.Column("total_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("locked_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("available_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_deposits", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_withdrawals", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        # Mirror the on-chain invariant so no writer can persist a negative available balance.
        sa.CheckConstraint("locked_balance >= 0", name="ck_vaults_locked_non_negative"),
        sa.CheckConstraint("locked_balance <= total_balance", name="ck_vaults_locked_within_total"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        # Chain signature is the idempotency key for observed and submitted events.
        sa.Column("signature", sa.String(), nullable=False, unique=True),
        sa.Column("owner", sa.String(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=True),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_transactions_owner", "transactions", ["owner"])
    op.create_index("ix_transactions_owner_created", "transactions", ["owner", "created_at"])

    op.create_table(
        "ms_proposals",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("owner", sa.String(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("threshold", sa.Integer(), nullable=False),
        sa.Column("signers", postgresql.JSONB(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_ms_proposals_owner", "ms_proposals", ["owner"])

    op.create_table(
        "ms_approvals",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("proposal_id", sa.String(), sa.ForeignKey("ms_proposals.id"), nullable=False),
        sa.Column("signer", sa.String(), nullable=False),
        sa.Column("signature", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        # One approval per signer per proposal, enforced under concurrent writers.
        sa.UniqueConstraint("proposal_id", "signer", name="uq_ms_approvals_proposal_signer"),
    )
    op.create_index("ix_ms_approvals_proposal_id", "ms_approvals", ["proposal_id"])

    op.create_table(
        "reconciliation_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("vault_owner", sa.String(), nullable=False),
        sa.Column("settlement_account", sa.String(), nullable=True),
        sa.Column("db_balance", sa.BigInteger(), nullable=False),
        sa.Column("chain_balance", sa.BigInteger(), nullable=False),
        sa.Column("discrepancy", sa.BigInteger(), nullable=False),
        sa.Column("threshold", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_reconciliation_logs_vault_owner", "reconciliation_logs", ["vault_owner"])

    op.create_table(
        "nonces",
        sa.Column("nonce", sa.String(), primary_key=True),
        sa.Column("owner", sa.String(), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("issued_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_nonces_owner", "nonces", ["owner"])

    op.create_table(
        "authorized_programs",
        sa.Column("program_id", sa.String(), primary_key=True),
        sa.Column("added_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "timelocks",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("owner", sa.String(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("unlock_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("signature", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="scheduled"),
        sa.Column("due_soon_notified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_timelocks_owner", "timelocks", ["owner"])
    # Sweep scans scheduled rows ordered by unlock time.
    op.create_index("ix_timelocks_status_unlock_at", "timelocks", ["status", "unlock_at"])

    op.create_table(
        "protocol_apys",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("protocol", sa.String(), nullable=False),
        sa.Column("apy", sa.Float(), nullable=False),
        sa.Column("details_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_protocol_apys_protocol", "protocol_apys", ["protocol"])


def downgrade() -> None:
    op.drop_index("ix_protocol_apys_protocol", table_name="protocol_apys")
    op.drop_table("protocol_apys")
    op.drop_index("ix_timelocks_status_unlock_at", table_name="timelocks")
    op.drop_index("ix_timelocks_owner", table_name="timelocks")
    op.drop_table("timelocks")
    op.drop_table("authorized_programs")
    op.drop_index("ix_nonces_owner", table_name="nonces")
    op.drop_table("nonces")
    op.drop_index("ix_reconciliation_logs_vault_owner", table_name="reconciliation_logs")
    op.drop_table("reconciliation_logs")
    op.drop_index("ix_ms_approvals_proposal_id", table_name="ms_approvals")
    op.drop_table("ms_approvals")
    op.drop_index("ix_ms_proposals_owner", table_name="ms_proposals")
    op.drop_table("ms_proposals")
    op.drop_index("ix_transactions_owner_created", table_name="transactions")
    op.drop_index("ix_transactions_owner", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("vaults")
