from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# SQLite only autoincrements INTEGER primary keys; keep BIGINT on Postgres.
_BigIntPK = BigInteger().with_variant(Integer(), "sqlite")
_Json = JSON().with_variant(JSONB(), "postgresql")

TRANSACTION_KINDS = ("deposit", "withdraw", "lock", "unlock", "emergency_withdraw")
TRANSACTION_STATUSES = ("pending", "confirmed", "failed")
PROPOSAL_STATUSES = ("pending", "approved")
VAULT_STATUSES = ("active", "inactive")
TIMELOCK_STATUSES = ("scheduled", "available", "executed")


class Base(DeclarativeBase):
    pass


class Vault(Base):
    __tablename__ = "vaults"
    __table_args__ = (
        # Mirror the on-chain invariant so no writer can persist a negative available balance.
        CheckConstraint("locked_balance >= 0", name="ck_vaults_locked_non_negative"),
        CheckConstraint("locked_balance <= total_balance", name="ck_vaults_locked_within_total"),
    )

    owner: Mapped[str] = mapped_column(String, primary_key=True)
    # Token account whose live balance is authoritative for this vault.
    settlement_account: Mapped[str | None] = mapped_column(String, nullable=True)
    total_balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    locked_balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    # Always written together with its inputs as total_balance - locked_balance.
    available_balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_deposits: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_withdrawals: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    # Vaults are never deleted, only marked inactive.
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class LedgerTransaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_owner_created", "owner", "created_at"),
    )

    id: Mapped[int] = mapped_column(_BigIntPK, primary_key=True, autoincrement=True)
    # Chain signature is the idempotency key for every settlement event.
    signature: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    owner: Mapped[str] = mapped_column(String, index=True)
    amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    kind: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class WithdrawalProposal(Base):
    __tablename__ = "ms_proposals"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    owner: Mapped[str] = mapped_column(String, index=True)
    amount: Mapped[int] = mapped_column(BigInteger)
    threshold: Mapped[int] = mapped_column(Integer)
    # Ordered, duplicate-free signer identities allowed to approve.
    signers: Mapped[list[str]] = mapped_column(_Json)
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Approval(Base):
    __tablename__ = "ms_approvals"
    __table_args__ = (
        UniqueConstraint("proposal_id", "signer", name="uq_ms_approvals_proposal_signer"),
    )

    # Monotonic id orders approvals so the most recent approver is well defined.
    id: Mapped[int] = mapped_column(_BigIntPK, primary_key=True, autoincrement=True)
    proposal_id: Mapped[str] = mapped_column(String, ForeignKey("ms_proposals.id"), index=True)
    signer: Mapped[str] = mapped_column(String)
    signature: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ReconciliationLog(Base):
    __tablename__ = "reconciliation_logs"

    id: Mapped[int] = mapped_column(_BigIntPK, primary_key=True, autoincrement=True)
    vault_owner: Mapped[str] = mapped_column(String, index=True)
    settlement_account: Mapped[str | None] = mapped_column(String, nullable=True)
    db_balance: Mapped[int] = mapped_column(BigInteger)
    chain_balance: Mapped[int] = mapped_column(BigInteger)
    # Signed: chain_balance - db_balance.
    discrepancy: Mapped[int] = mapped_column(BigInteger)
    threshold: Mapped[int] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Nonce(Base):
    __tablename__ = "nonces"

    nonce: Mapped[str] = mapped_column(String, primary_key=True)
    owner: Mapped[str] = mapped_column(String, index=True)
    used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuthorizedProgram(Base):
    __tablename__ = "authorized_programs"

    # Caller programs allowed to request privileged collateral transfers.
    program_id: Mapped[str] = mapped_column(String, primary_key=True)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Timelock(Base):
    __tablename__ = "timelocks"
    __table_args__ = (
        Index("ix_timelocks_status_unlock_at", "status", "unlock_at"),
    )

    id: Mapped[int] = mapped_column(_BigIntPK, primary_key=True, autoincrement=True)
    owner: Mapped[str] = mapped_column(String, index=True)
    amount: Mapped[int] = mapped_column(BigInteger)
    unlock_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    signature: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="scheduled", nullable=False)
    # Emit the due-soon notice once per timelock rather than on every sweep.
    due_soon_notified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ProtocolApy(Base):
    __tablename__ = "protocol_apys"

    id: Mapped[int] = mapped_column(_BigIntPK, primary_key=True, autoincrement=True)
    protocol: Mapped[str] = mapped_column(String, index=True)
    apy: Mapped[float] = mapped_column(Float)
    details_json: Mapped[dict[str, Any] | None] = mapped_column(_Json, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
