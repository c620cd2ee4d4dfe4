"""
PayPal Deposit Service - Database Schema
========================================

Tables touched by the deposit pipeline:
- profiles: user balance (mutated only through additive updates)
- deposits: user-initiated top-ups tracked from checkout to provider confirmation
- transactions: immutable ledger entries, source of truth for balance recompute
- transaction_logs: append-only audit of every processing attempt
- balance_reconciliation_logs: audit of balance drift checks and corrections
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text, JSON,
    ForeignKey, Index, CheckConstraint
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class DepositStatus(Enum):
    """Deposit lifecycle states"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class TransactionType(Enum):
    """Ledger entry types"""
    DEPOSIT = "deposit"
    PURCHASE = "purchase"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class TransactionStatus(Enum):
    """Ledger entry states"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class AttemptLogStatus(Enum):
    """Outcome of a single processing attempt"""
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


# ============================================================================
# MODELS
# ============================================================================

class Profile(Base):
    """User profile holding the stored balance"""
    __tablename__ = 'profiles'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    email = Column(String(255), nullable=True, index=True)
    balance = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=True)

    deposits = relationship("Deposit", back_populates="user")
    transactions = relationship("Transaction", back_populates="user")

    def __repr__(self):
        return f"<Profile(id='{self.id}', balance={self.balance})>"


class Deposit(Base):
    """
    One user-initiated balance top-up.

    net_amount is fixed at creation from the fee schedule in force at that time.
    is_processed flips to true only when the ledger credit has been applied, and
    is the flag the conditional claim update works against.
    """
    __tablename__ = 'deposits'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey('profiles.id'), nullable=False, index=True)

    # Financial details
    amount = Column(Numeric(12, 2), nullable=False)
    net_amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String(20), default="paypal", nullable=False)

    # State machine
    status = Column(String(20), default=DepositStatus.PENDING.value, nullable=False, index=True)
    is_processed = Column(Boolean, default=False, nullable=False, index=True)
    process_attempts = Column(Integer, default=0, nullable=False)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)

    # Provider correlation
    transaction_id = Column(String(100), unique=True, nullable=True, index=True)
    idempotency_key = Column(String(200), unique=True, nullable=True, index=True)
    payer_email = Column(String(255), nullable=True)
    payer_id = Column(String(100), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=True)

    user = relationship("Profile", back_populates="deposits")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_deposit_amount_positive'),
        Index('idx_deposit_status_created', 'status', 'created_at'),
        Index('idx_deposit_user_status', 'user_id', 'status'),
    )

    def __repr__(self):
        return f"<Deposit(id='{self.id}', status='{self.status}', is_processed={self.is_processed})>"


class Transaction(Base):
    """Financial transaction ledger"""
    __tablename__ = 'transactions'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey('profiles.id'), nullable=False, index=True)

    # Signed amount: credits positive, debits negative
    amount = Column(Numeric(12, 2), nullable=False)
    type = Column(String(20), nullable=False, index=True)
    status = Column(String(20), default=TransactionStatus.COMPLETED.value, nullable=False)

    # Originating record (deposit id for type=deposit)
    reference_id = Column(String(100), nullable=True, index=True)
    description = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    user = relationship("Profile", back_populates="transactions")

    __table_args__ = (
        # One ledger entry per originating deposit
        Index('uq_transaction_type_reference', 'type', 'reference_id', unique=True),
    )


class TransactionLog(Base):
    """Append-only audit of a single processing attempt"""
    __tablename__ = 'transaction_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(100), nullable=True, index=True)
    deposit_id = Column(String(36), nullable=True, index=True)
    status = Column(String(20), nullable=False, index=True)
    error_message = Column(Text, nullable=True)
    request_payload = Column(JSON, nullable=True)
    response_payload = Column(JSON, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    idempotency_key = Column(String(200), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index('idx_transaction_log_key_status', 'idempotency_key', 'status'),
    )


class BalanceReconciliationLog(Base):
    """
    Log of balance reconciliation runs

    One row per reconcile call, whether or not drift was found, so corrections
    that never produce a ledger entry still leave an audit trail.
    """
    __tablename__ = 'balance_reconciliation_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    reconciliation_id = Column(String(36), unique=True, nullable=False, default=generate_uuid)
    user_id = Column(String(36), ForeignKey('profiles.id'), nullable=False, index=True)

    stored_balance = Column(Numeric(12, 2), nullable=False)
    calculated_balance = Column(Numeric(12, 2), nullable=False)
    difference = Column(Numeric(12, 2), nullable=False)
    adjustment_applied = Column(Boolean, default=False, nullable=False)

    status = Column(String(20), nullable=False)  # 'balanced', 'corrected', 'failed'
    triggered_by = Column(String(50), nullable=False, default="manual")  # 'manual', 'refresh', 'api', 'cli'
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
