"""
Shared fixtures: an in-memory SQLite database per test and small data builders.
"""
import os
import sys
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

from subradar.database import Base
from subradar.models import Account, Transaction, User


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db_session):
    user = User(id="user-1", email="user-1@example.com", name="Test User")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def account(db_session, user):
    account = Account(
        user_id=user.id,
        name="Everyday Checking",
        institution="Test Bank",
        country="US",
        currency="USD",
    )
    db_session.add(account)
    db_session.commit()
    return account


@pytest.fixture
def add_transaction(db_session, user, account):
    """Factory: add_transaction("NETFLIX.COM", "-15.49", date(2024, 1, 5))."""

    def _add(merchant, amount, booked_at: date, currency="USD", account_id=None, commit=True):
        txn = Transaction(
            id=uuid4(),
            user_id=user.id,
            account_id=account_id or account.id,
            amount=Decimal(str(amount)),
            currency=currency,
            booked_at=booked_at,
            merchant=merchant,
        )
        db_session.add(txn)
        if commit:
            db_session.commit()
        return txn

    return _add
