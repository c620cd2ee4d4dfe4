"""
Shared fixtures for the deposit pipeline tests

Every test gets its own in-memory SQLite database; services are constructed
with a session factory bound to it so nothing touches DATABASE_URL.
"""

import os

# Must be set before config/database are imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENABLE_DEPOSIT_RETRY_JOB"] = "false"
os.environ.pop("PAYPAL_WEBHOOK_ID", None)

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base, Deposit, DepositStatus, Profile
from services.balance_ledger import BalanceLedger
from services.deposit_processor import DepositProcessor
from services.deposit_record_service import DepositRecordService
from utils.fee_calculator import FeeCalculator


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def ledger(session_factory):
    return BalanceLedger(session_factory)


@pytest.fixture
def processor(session_factory):
    return DepositProcessor(session_factory)


@pytest.fixture
def record_service(session_factory, processor):
    return DepositRecordService(session_factory, processor=processor)


@pytest.fixture
def make_profile(session_factory):
    def _make(user_id="u1", balance="0.00"):
        with session_factory() as session:
            session.add(Profile(id=user_id, email=f"{user_id}@example.com", balance=Decimal(balance)))
            session.commit()
        return user_id
    return _make


@pytest.fixture
def make_deposit(session_factory):
    def _make(user_id="u1", amount="50.00", deposit_id=None, **fields):
        gross = Decimal(amount)
        deposit = Deposit(
            user_id=user_id,
            amount=gross,
            net_amount=fields.pop("net_amount", FeeCalculator.calculate_net_amount(gross)),
            status=fields.pop("status", DepositStatus.PENDING.value),
            is_processed=fields.pop("is_processed", False),
            process_attempts=fields.pop("process_attempts", 0),
            created_at=fields.pop("created_at", datetime.now(timezone.utc)),
            **fields,
        )
        if deposit_id:
            deposit.id = deposit_id
        with session_factory() as session:
            session.add(deposit)
            session.commit()
            return deposit.id
    return _make


@pytest.fixture
def get_deposit(session_factory):
    def _get(deposit_id):
        with session_factory() as session:
            return session.get(Deposit, deposit_id)
    return _get


@pytest.fixture
def get_balance(session_factory):
    def _get(user_id):
        with session_factory() as session:
            return session.get(Profile, user_id).balance
    return _get
