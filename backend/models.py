from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger, Boolean, CheckConstraint, Column, DateTime, Float, Integer, String, UniqueConstraint
)

from database import Base


def utcnow():
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True)
    full_name = Column(String)
    is_active = Column(Boolean, default=True)


class Friendship(Base):
    """An explicit friend link, stored once per pair."""
    __tablename__ = "friendships"
    __table_args__ = (
        UniqueConstraint("user_id1", "user_id2", name="uq_friendship_pair"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id1 = Column(Integer, index=True)
    user_id2 = Column(Integer, index=True)
    created_at = Column(DateTime, default=utcnow)


class Group(Base):
    __tablename__ = "groups"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String)
    default_currency = Column(String, default="USD")
    created_by_id = Column(Integer)
    created_at = Column(DateTime, default=utcnow)


class GroupMember(Base):
    __tablename__ = "group_members"
    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_member"),
    )

    id = Column(Integer, primary_key=True, index=True)
    group_id = Column(Integer, index=True)
    user_id = Column(Integer, index=True)


class Expense(Base):
    __tablename__ = "expenses"

    id = Column(Integer, primary_key=True, index=True)
    description = Column(String)
    category = Column(String, default="General")
    amount = Column(BigInteger)  # Minor units of `currency`
    split_type = Column(String, default="EQUAL")  # EQUAL, PERCENTAGE, EXACT, SHARE, ADJUSTMENT, SETTLEMENT
    currency = Column(String, default="USD")
    currency_type = Column(String, default="FIAT")  # FIAT or TOKEN
    token_id = Column(String, nullable=True)
    chain_id = Column(String, nullable=True)
    time_lock_in = Column(Boolean, default=False)
    exchange_rate = Column(Float, nullable=True)  # 1 unit of `currency` in USD, locked at creation
    payer_id = Column(Integer, index=True)
    added_by_id = Column(Integer)
    group_id = Column(Integer, nullable=True, index=True)
    expense_date = Column(DateTime, default=utcnow)
    file_key = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    updated_by_id = Column(Integer, nullable=True)
    deleted_at = Column(DateTime, nullable=True)
    deleted_by_id = Column(Integer, nullable=True)


class ExpenseParticipant(Base):
    __tablename__ = "expense_participants"
    __table_args__ = (
        UniqueConstraint("expense_id", "user_id", name="uq_expense_participant"),
    )

    id = Column(Integer, primary_key=True, index=True)
    expense_id = Column(Integer, index=True)
    user_id = Column(Integer, index=True)
    amount = Column(BigInteger)  # The amount this user owes, in minor units


class Balance(Base):
    """Pairwise ledger row: a positive amount means user_id owes friend_id."""
    __tablename__ = "balances"
    __table_args__ = (
        UniqueConstraint("user_id", "friend_id", "currency", name="uq_balance_pair"),
        CheckConstraint("user_id != friend_id", name="ck_balance_not_self"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    friend_id = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    amount = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow)


class GroupBalance(Base):
    """Same as Balance, restricted to the expenses of one group."""
    __tablename__ = "group_balances"
    __table_args__ = (
        UniqueConstraint("group_id", "user_id", "friend_id", "currency", name="uq_group_balance_pair"),
        CheckConstraint("user_id != friend_id", name="ck_group_balance_not_self"),
    )

    id = Column(Integer, primary_key=True, index=True)
    group_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    friend_id = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    amount = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow)


class SettlementTransaction(Base):
    __tablename__ = "settlement_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True)  # The debtor paying out
    group_id = Column(Integer, nullable=True)
    chain_id = Column(String, nullable=True)
    token_id = Column(String, nullable=True)
    serialized_tx = Column(String, nullable=True)
    status = Column(String, default="PENDING")  # PENDING, COMPLETED, FAILED
    transaction_hash = Column(String, nullable=True)
    failure_reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)


class SettlementItem(Base):
    __tablename__ = "settlement_items"

    id = Column(Integer, primary_key=True, index=True)
    settlement_transaction_id = Column(Integer, index=True)
    user_id = Column(Integer)
    friend_id = Column(Integer)
    group_id = Column(Integer, nullable=True)
    original_amount = Column(BigInteger)  # Ledger debt settled, minor units of original_currency
    original_currency = Column(String)
    amount = Column(BigInteger)  # Settlement asset sent, minor units of currency
    currency = Column(String)
    after_settlement_balance = Column(BigInteger, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Reminder(Base):
    __tablename__ = "reminders"

    id = Column(Integer, primary_key=True, index=True)
    sender_id = Column(Integer, index=True)
    receiver_id = Column(Integer, index=True)
    reminder_type = Column(String, default="USER")  # USER or SPLIT
    expense_id = Column(Integer, nullable=True)  # Set for SPLIT reminders
    content = Column(String, nullable=True)
    status = Column(String, default="PENDING")  # PENDING, COMPLETED, CANCELLED
    created_at = Column(DateTime, default=utcnow)
