from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, field_validator
from typing import Optional


def _upper_code(v: str) -> str:
    v = v.strip().upper()
    if not v:
        raise ValueError("Currency is required")
    return v


class ParticipantShare(BaseModel):
    user_id: int
    amount: Decimal  # Major units of the expense currency

class ExpenseCreate(BaseModel):
    description: str
    category: str = "General"
    amount: Decimal
    currency: str = "USD"
    currency_type: str = "FIAT"  # FIAT or TOKEN
    token_id: Optional[str] = None
    chain_id: Optional[str] = None
    time_lock_in: bool = False
    split_type: str = "EQUAL"  # EQUAL, PERCENTAGE, EXACT, SHARE, ADJUSTMENT, SETTLEMENT
    payer_id: int
    group_id: Optional[int] = None
    expense_date: Optional[datetime] = None
    file_key: Optional[str] = None
    participants: list[ParticipantShare]

    @field_validator('currency')
    @classmethod
    def validate_currency(cls, v):
        return _upper_code(v)

class ExpenseUpdate(BaseModel):
    description: str
    category: str = "General"
    amount: Decimal
    currency: str = "USD"
    currency_type: str = "FIAT"
    token_id: Optional[str] = None
    chain_id: Optional[str] = None
    time_lock_in: bool = False
    split_type: str = "EQUAL"
    payer_id: int
    expense_date: Optional[datetime] = None
    file_key: Optional[str] = None
    participants: list[ParticipantShare]

    @field_validator('currency')
    @classmethod
    def validate_currency(cls, v):
        return _upper_code(v)

class PaymentCreate(BaseModel):
    """Manual "mark as paid": payer_id handed amount to payee_id outside the app."""
    payer_id: int
    payee_id: int
    amount: Decimal
    currency: str = "USD"
    group_id: Optional[int] = None

    @field_validator('currency')
    @classmethod
    def validate_currency(cls, v):
        return _upper_code(v)

class ExpenseParticipant(BaseModel):
    user_id: int
    amount: float

class Expense(BaseModel):
    id: int
    description: str
    category: Optional[str] = None
    amount: float
    currency: str
    currency_type: str
    token_id: Optional[str] = None
    chain_id: Optional[str] = None
    time_lock_in: bool = False
    exchange_rate: Optional[float] = None
    split_type: str
    payer_id: int
    added_by_id: Optional[int] = None
    group_id: Optional[int] = None
    expense_date: Optional[datetime] = None
    file_key: Optional[str] = None
    updated_by_id: Optional[int] = None
    deleted_at: Optional[datetime] = None
    deleted_by_id: Optional[int] = None
    participants: list[ExpenseParticipant] = []

class BalanceEntry(BaseModel):
    currency: str
    amount: float

class BalanceSummary(BaseModel):
    """Per-currency totals for the current user. Positive cumulated amounts mean you owe."""
    cumulated_balances: list[BalanceEntry]
    you_owe: list[BalanceEntry]
    you_get: list[BalanceEntry]
    target_currency: Optional[str] = None
    net_in_target: Optional[float] = None  # Positive means you are owed overall
    unconverted_currencies: list[str] = []

class FriendRequest(BaseModel):
    identifier: str  # Email or full name

class FriendInvite(BaseModel):
    email: str

class Friend(BaseModel):
    id: int
    full_name: Optional[str] = None
    email: str

    class Config:
        from_attributes = True

class FriendWithBalances(BaseModel):
    id: int
    email: Optional[str] = None
    full_name: Optional[str] = None
    balances: list[BalanceEntry]

class GroupBalance(BaseModel):
    """Group-scoped pairwise balance: a positive amount means user_id owes friend_id."""
    group_id: int
    user_id: int
    friend_id: int
    currency: str
    amount: float

class GroupCreate(BaseModel):
    name: str
    default_currency: str = "USD"

    @field_validator('default_currency')
    @classmethod
    def validate_currency(cls, v):
        return _upper_code(v)

class GroupUpdate(BaseModel):
    name: str
    default_currency: str = "USD"

    @field_validator('default_currency')
    @classmethod
    def validate_currency(cls, v):
        return _upper_code(v)

class GroupMemberAdd(BaseModel):
    email: str

class GroupMember(BaseModel):
    id: int
    user_id: int
    full_name: Optional[str] = None
    email: str

class Group(BaseModel):
    id: int
    name: str
    default_currency: str
    created_by_id: int

    class Config:
        from_attributes = True

class GroupWithBalances(Group):
    balances: dict[str, float] = {}  # currency -> sum of your group balances

class GroupWithMembers(Group):
    members: list[GroupMember] = []

class SettlementItemCreate(BaseModel):
    friend_id: int
    original_amount: Decimal  # Debt being settled, in original_currency
    original_currency: str
    amount: Decimal  # Settlement asset sent, in currency
    currency: str

    @field_validator('original_currency', 'currency')
    @classmethod
    def validate_currency(cls, v):
        return _upper_code(v)

class SettlementCreate(BaseModel):
    group_id: Optional[int] = None
    chain_id: Optional[str] = None
    token_id: Optional[str] = None
    serialized_tx: Optional[str] = None
    items: list[SettlementItemCreate]

class SettlementTransfer(BaseModel):
    """One transfer as reported by the payment-execution subsystem."""
    friend_id: int
    amount: Decimal
    currency: str

    @field_validator('currency')
    @classmethod
    def validate_currency(cls, v):
        return _upper_code(v)

class SettlementConfirm(BaseModel):
    success: bool
    transaction_hash: Optional[str] = None
    error: Optional[str] = None
    transfers: list[SettlementTransfer] = []

class SettlementItem(BaseModel):
    friend_id: int
    group_id: Optional[int] = None
    original_amount: float
    original_currency: str
    amount: float
    currency: str
    after_settlement_balance: Optional[float] = None

class SettlementTransaction(BaseModel):
    id: int
    user_id: int
    group_id: Optional[int] = None
    chain_id: Optional[str] = None
    token_id: Optional[str] = None
    status: str
    transaction_hash: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    items: list[SettlementItem] = []

class SuggestedSettlement(BaseModel):
    friend_id: int
    amount: float
    currency: str

class ReminderCreate(BaseModel):
    receiver_id: int
    reminder_type: str = "USER"  # USER (overall debt) or SPLIT (one expense)
    expense_id: Optional[int] = None
    content: Optional[str] = None

    @field_validator('reminder_type')
    @classmethod
    def validate_reminder_type(cls, v):
        return v.strip().upper()

class Reminder(BaseModel):
    id: int
    sender_id: int
    sender_name: Optional[str] = None
    receiver_id: int
    reminder_type: str
    expense_id: Optional[int] = None
    expense_description: Optional[str] = None
    content: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None
    amounts: list[BalanceEntry] = []  # What the receiver owes the sender

class MonthlyAnalytics(BaseModel):
    """Activity in one calendar month (UTC), per currency."""
    month: str  # YYYY-MM
    owed: list[BalanceEntry]
    lent: list[BalanceEntry]
    settled: list[BalanceEntry]
