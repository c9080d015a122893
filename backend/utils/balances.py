"""Read-side projections over the Balance and GroupBalance ledgers."""

from collections import defaultdict
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

import models
from utils.currency import convert_currency, from_minor_units, get_current_exchange_rates
from utils.friends import get_linked_friend_ids


def get_balance_summary(db: Session, user_id: int, target_currency: Optional[str] = None) -> dict:
    """
    Sum a user's balances per currency and bucket them.

    A positive per-currency sum means the user owes money in that currency
    ("you_owe"); a negative one means they are owed ("you_get"). With a
    target_currency the net position is also converted into it, positive
    meaning the user is owed overall.

    Args:
        db: Database session
        user_id: User whose balances to summarise
        target_currency: Optional currency to express the net position in

    Returns:
        Dict with cumulated_balances, you_owe and you_get lists of
        {"currency", "amount"} (major units), plus target_currency,
        net_in_target and unconverted_currencies.
    """
    rows = db.query(
        models.Balance.currency,
        func.sum(models.Balance.amount).label("total")
    ).filter(
        models.Balance.user_id == user_id
    ).group_by(models.Balance.currency).order_by(models.Balance.currency).all()

    cumulated = []
    you_owe = []
    you_get = []
    for currency, total in rows:
        total = int(total or 0)
        amount = from_minor_units(total, currency)
        cumulated.append({"currency": currency, "amount": amount})
        if total > 0:
            you_owe.append({"currency": currency, "amount": amount})
        elif total < 0:
            you_get.append({"currency": currency, "amount": -amount})

    summary = {
        "cumulated_balances": cumulated,
        "you_owe": you_owe,
        "you_get": you_get,
        "target_currency": None,
        "net_in_target": None,
        "unconverted_currencies": [],
    }

    if target_currency:
        rates = get_current_exchange_rates()
        net = 0.0
        unconverted = []
        for entry in cumulated:
            converted = convert_currency(float(entry["amount"]), entry["currency"], target_currency, rates)
            if converted is None:
                unconverted.append(entry["currency"])
            else:
                net -= converted
        summary["target_currency"] = target_currency
        summary["net_in_target"] = round(net, 2)
        summary["unconverted_currencies"] = unconverted

    return summary


def get_friends_with_balances(db: Session, user_id: int) -> list[dict]:
    """
    Every user sharing a Balance row or an explicit friendship with user_id,
    with their nonzero balances, ordered by id.

    A friend whose balances have all netted to zero, or who was added without
    any shared expense, is listed with an empty balance list.
    """
    rows = db.query(models.Balance).filter(
        models.Balance.user_id == user_id
    ).order_by(models.Balance.friend_id, models.Balance.currency).all()

    friend_ids = {row.friend_id for row in rows} | get_linked_friend_ids(db, user_id)
    if not friend_ids:
        return []

    users = {
        u.id: u for u in db.query(models.User).filter(models.User.id.in_(friend_ids)).all()
    }

    friends = {}
    for friend_id in sorted(friend_ids):
        user = users.get(friend_id)
        friends[friend_id] = {
            "id": friend_id,
            "email": user.email if user else None,
            "full_name": user.full_name if user else None,
            "balances": [],
        }
    for row in rows:
        if row.amount != 0:
            friends[row.friend_id]["balances"].append({
                "currency": row.currency,
                "amount": from_minor_units(row.amount, row.currency),
            })

    return list(friends.values())


def get_group_balances(db: Session, group_id: int, user_id: Optional[int] = None) -> list[dict]:
    """Nonzero group ledger rows, optionally only those seen from user_id's side."""
    query = db.query(models.GroupBalance).filter(
        models.GroupBalance.group_id == group_id,
        models.GroupBalance.amount != 0
    )
    if user_id is not None:
        query = query.filter(models.GroupBalance.user_id == user_id)

    return [
        {
            "group_id": row.group_id,
            "user_id": row.user_id,
            "friend_id": row.friend_id,
            "currency": row.currency,
            "amount": from_minor_units(row.amount, row.currency),
        }
        for row in query.order_by(
            models.GroupBalance.user_id, models.GroupBalance.friend_id, models.GroupBalance.currency
        ).all()
    ]


def get_groups_with_balances(db: Session, user_id: int) -> list[dict]:
    """The user's groups with the per-currency sum of their group balances."""
    group_ids = [
        row.group_id for row in db.query(models.GroupMember.group_id).filter(
            models.GroupMember.user_id == user_id
        ).all()
    ]
    if not group_ids:
        return []

    groups = db.query(models.Group).filter(models.Group.id.in_(group_ids)).order_by(models.Group.id).all()

    sums = defaultdict(dict)
    for group_id, currency, total in db.query(
        models.GroupBalance.group_id,
        models.GroupBalance.currency,
        func.sum(models.GroupBalance.amount)
    ).filter(
        models.GroupBalance.user_id == user_id,
        models.GroupBalance.group_id.in_(group_ids)
    ).group_by(models.GroupBalance.group_id, models.GroupBalance.currency).all():
        sums[group_id][currency] = from_minor_units(int(total or 0), currency)

    return [
        {
            "id": group.id,
            "name": group.name,
            "default_currency": group.default_currency,
            "created_by_id": group.created_by_id,
            "balances": sums.get(group.id, {}),
        }
        for group in groups
    ]


def group_has_outstanding_balances(db: Session, group_id: int, user_id: Optional[int] = None) -> bool:
    """True while any group ledger row (involving user_id, if given) is nonzero."""
    query = db.query(models.GroupBalance.id).filter(
        models.GroupBalance.group_id == group_id,
        models.GroupBalance.amount != 0
    )
    if user_id is not None:
        query = query.filter(
            (models.GroupBalance.user_id == user_id) | (models.GroupBalance.friend_id == user_id)
        )
    return query.first() is not None


def get_expenses_with_friend(db: Session, user_id: int, friend_id: int) -> list[models.Expense]:
    """Live expenses one of the pair paid with the other taking part, newest first."""
    user_in = select(models.ExpenseParticipant.expense_id).where(
        models.ExpenseParticipant.user_id == user_id
    )
    friend_in = select(models.ExpenseParticipant.expense_id).where(
        models.ExpenseParticipant.user_id == friend_id
    )

    return db.query(models.Expense).filter(
        models.Expense.deleted_at.is_(None),
        ((models.Expense.payer_id == user_id) & models.Expense.id.in_(friend_in)) |
        ((models.Expense.payer_id == friend_id) & models.Expense.id.in_(user_in))
    ).order_by(models.Expense.expense_date.desc(), models.Expense.id.desc()).all()
