"""Monthly activity figures for a user, per currency."""

from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

import models
from models import utcnow
from utils.currency import from_minor_units
from utils.settlements import COMPLETED


def month_bounds(now: datetime) -> tuple[datetime, datetime]:
    """First instant of now's month and of the month after it."""
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def _entries(rows) -> list[dict]:
    return [
        {"currency": currency, "amount": from_minor_units(abs(int(total)), currency)}
        for currency, total in rows
        if total
    ]


def get_monthly_analytics(db: Session, user_id: int, now: Optional[datetime] = None) -> dict:
    """
    Summarise the calendar month containing now (default: the current UTC month).

    owed and lent come from the user's global balance rows last changed this
    month: what they owe and what they are owed. The global ledger already
    covers group activity, so group rows are not added on top. settled is
    what the user sent or received through settlements completed this month,
    in the settlement asset.

    Returns:
        Dict with month ("YYYY-MM") and owed, lent and settled lists of
        {"currency", "amount"} in major units.
    """
    start, end = month_bounds(now or utcnow())

    def balance_sums(condition):
        return db.query(
            models.Balance.currency,
            func.sum(models.Balance.amount)
        ).filter(
            models.Balance.user_id == user_id,
            condition,
            models.Balance.updated_at >= start,
            models.Balance.updated_at < end
        ).group_by(models.Balance.currency).order_by(models.Balance.currency).all()

    settled = db.query(
        models.SettlementItem.currency,
        func.sum(models.SettlementItem.amount)
    ).select_from(models.SettlementItem).join(
        models.SettlementTransaction,
        models.SettlementTransaction.id == models.SettlementItem.settlement_transaction_id
    ).filter(
        (models.SettlementItem.user_id == user_id) | (models.SettlementItem.friend_id == user_id),
        models.SettlementTransaction.status == COMPLETED,
        models.SettlementTransaction.completed_at >= start,
        models.SettlementTransaction.completed_at < end
    ).group_by(models.SettlementItem.currency).order_by(models.SettlementItem.currency).all()

    return {
        "month": start.strftime("%Y-%m"),
        "owed": _entries(balance_sums(models.Balance.amount > 0)),
        "lent": _entries(balance_sums(models.Balance.amount < 0)),
        "settled": _entries(settled),
    }
