"""
Polar Bridge - SQLAlchemy ORM Models
Authoritative database schema implementation

Each row keeps the full pydantic document in `document` plus the columns
the store filters on. `version` backs the compare-and-set writes.
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class LoanRow(Base):
    """Collateralized loans. The accrual checkpoint lives in the same row."""

    __tablename__ = "loans"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    borrower: Mapped[str] = mapped_column(String(255), nullable=False)
    source_event_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    origination_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_accrual_date: Mapped[date] = mapped_column(Date, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    document: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'overdue', 'repaid', 'liquidated')",
            name="loans_status_valid",
        ),
        CheckConstraint("version > 0", name="loans_version_positive"),
        Index("idx_loans_borrower", "borrower"),
        Index("idx_loans_status", "status"),
    )


class SettlementRow(Base):
    """Exactly one row per source event id."""

    __tablename__ = "settlements"

    source_event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    dest_tx_ref: Mapped[Optional[str]] = mapped_column(String(255))
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    document: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'submitted', 'confirmed', 'failed')",
            name="settlements_status_valid",
        ),
        CheckConstraint("attempts >= 0", name="settlements_attempts_non_negative"),
        Index("idx_settlements_status", "status"),
    )


class ChainCursorRow(Base):
    """Last event cursor durably handed off, per chain."""

    __tablename__ = "chain_cursors"

    chain: Mapped[str] = mapped_column(String(50), primary_key=True)
    cursor: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class LedgerCreditRow(Base):
    """Internal balance credits, idempotent by reference."""

    __tablename__ = "ledger_credits"

    reference: Mapped[str] = mapped_column(String(255), primary_key=True)
    account: Mapped[str] = mapped_column(String(255), nullable=False)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ledger_credits_amount_positive"),
        Index("idx_ledger_credits_account", "account"),
    )
