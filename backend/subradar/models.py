"""
SQLAlchemy models for users, accounts, transactions, the known-merchant
catalog and detected subscriptions.
"""
import uuid
from datetime import datetime
from sqlalchemy import (
    Column,
    String,
    Boolean,
    Date,
    DateTime,
    Numeric,
    Float,
    Integer,
    ForeignKey,
    Index,
    JSON,
    Uuid,
)
from sqlalchemy.orm import relationship

from subradar.database import Base


SUBSCRIPTION_STATUS_ACTIVE = "active"
SUBSCRIPTION_STATUS_PAUSED = "paused"
SUBSCRIPTION_STATUS_CANCELLED = "cancelled"


class User(Base):
    """Owner of accounts, transactions and subscriptions."""
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(255))
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    accounts = relationship("Account", back_populates="user")
    transactions = relationship("Transaction", back_populates="user")
    subscriptions = relationship("Subscription", back_populates="user")


class Account(Base):
    """
    Bank account linked through the aggregation provider.
    Country and currency feed merchant matching.
    """
    __tablename__ = "accounts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    institution = Column(String(255))
    country = Column(String(2), nullable=True)  # ISO 3166-1 alpha-2
    currency = Column(String(3), default="USD")
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="accounts")
    transactions = relationship("Transaction", back_populates="account")


class Transaction(Base):
    """
    Transaction synced from the aggregation provider.
    Amount is signed: negative = expense.
    """
    __tablename__ = "transactions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=True, index=True)
    amount = Column(Numeric(15, 2), nullable=False)
    currency = Column(String(3), default="USD")
    booked_at = Column(Date, nullable=False, index=True)
    merchant = Column(String(255))  # Raw description from the statement
    normalized_merchant = Column(String(255), nullable=True)
    category = Column(String(100), nullable=True)
    subscription_id = Column(Uuid, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="transactions")
    account = relationship("Account", back_populates="transactions")
    subscription = relationship("Subscription", back_populates="linked_transactions")

    __table_args__ = (
        Index("idx_transactions_user_booked_at", "user_id", "booked_at"),
    )


class KnownMerchant(Base):
    """
    Curated catalog entry for a well-known subscription provider.
    match_count is a popularity counter only.
    """
    __tablename__ = "known_merchants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False, unique=True)
    display_name = Column(String(255), nullable=False)
    category = Column(String(100), nullable=False)
    keywords = Column(JSON, nullable=False, default=list)
    countries = Column(JSON, nullable=False, default=list)
    currencies = Column(JSON, nullable=False, default=list)
    typical_amounts = Column(JSON, nullable=True)  # {"USD": 15.49, "GBP": 10.99}
    billing_cycles = Column(JSON, nullable=False, default=list)
    website = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    match_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_known_merchants_active", "is_active"),
    )


class Subscription(Base):
    """
    Recurring charge owned by the subscription generator.
    At most one active or paused row per (user, merchant).
    """
    __tablename__ = "subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True)
    name = Column(String(255), nullable=False)
    merchant = Column(String(255), nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    currency = Column(String(3), default="USD")
    interval = Column(String(20), nullable=False)  # weekly, bi-weekly, monthly, quarterly, yearly
    status = Column(String(20), nullable=False, default=SUBSCRIPTION_STATUS_ACTIVE)
    renewal_date = Column(Date, nullable=True)
    last_payment_date = Column(Date, nullable=True)
    category = Column(String(100), nullable=True)
    confidence_score = Column(Float, nullable=True)
    is_auto_detected = Column(Boolean, default=False, nullable=False)
    transaction_ids = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="subscriptions")
    linked_transactions = relationship("Transaction", back_populates="subscription")

    __table_args__ = (
        Index("idx_subscriptions_user_status", "user_id", "status"),
    )
