"""
Settlement lifecycle.

A settlement batches payments from one debtor to one or more friends. It is
created PENDING without touching the ledger. Once the payment-execution side
reports a verified result, confirm_settlement moves it to COMPLETED and
settles the ledger, or to FAILED and leaves the ledger alone. The
PENDING -> COMPLETED transition is a conditional update, so the ledger is
settled at most once per settlement id no matter how often confirmation is
retried.
"""

import logging
from collections import Counter, defaultdict
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

import models
import schemas
from models import utcnow
from utils.currency import format_currency, from_minor_units, to_minor_units
from utils.errors import ExternalConfirmationMismatch, NotFoundError, ValidationError
from utils.ledger import (
    Share,
    get_balance,
    get_group_balance,
    ledger_transaction,
    reconcile_after_commit,
    settle,
)
from utils.validation import get_group_or_404, require_actor, verify_group_membership


logger = logging.getLogger(__name__)

PENDING = "PENDING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"


class _NotPending(Exception):
    pass


class _Overdrawn(Exception):
    pass


def get_settlement_or_404(db: Session, settlement_id: int) -> models.SettlementTransaction:
    settlement = db.query(models.SettlementTransaction).filter(
        models.SettlementTransaction.id == settlement_id
    ).first()
    if not settlement:
        raise NotFoundError(f"Settlement {settlement_id} not found")
    return settlement


def get_settlement_items(db: Session, settlement_id: int) -> list[models.SettlementItem]:
    return db.query(models.SettlementItem).filter(
        models.SettlementItem.settlement_transaction_id == settlement_id
    ).order_by(models.SettlementItem.id).all()


def list_settlements_for_user(db: Session, user_id: int) -> list[models.SettlementTransaction]:
    """Settlements the user paid out or is receiving money from, newest first."""
    incoming = select(models.SettlementItem.settlement_transaction_id).where(
        models.SettlementItem.friend_id == user_id
    )

    return db.query(models.SettlementTransaction).filter(
        (models.SettlementTransaction.user_id == user_id) |
        (models.SettlementTransaction.id.in_(incoming))
    ).order_by(models.SettlementTransaction.id.desc()).all()


def plan_group_settlement(db: Session, user_id: int, group_id: int) -> list[dict]:
    """Everything user_id owes inside a group, as (friend_id, amount, currency) in minor units."""
    get_group_or_404(db, group_id)
    verify_group_membership(db, group_id, user_id)

    rows = db.query(models.GroupBalance).populate_existing().filter(
        models.GroupBalance.group_id == group_id,
        models.GroupBalance.user_id == user_id,
        models.GroupBalance.amount > 0
    ).order_by(models.GroupBalance.currency, models.GroupBalance.friend_id).all()

    return [
        {"friend_id": row.friend_id, "amount": row.amount, "currency": row.currency}
        for row in rows
    ]


def _owed(db: Session, user_id: int, friend_id: int, currency: str, group_id: Optional[int], lock: bool = False) -> int:
    """What user_id owes friend_id on the ledger a settlement in group_id draws from."""
    if group_id is not None:
        return get_group_balance(db, group_id, user_id, friend_id, currency, lock=lock)
    return get_balance(db, user_id, friend_id, currency, lock=lock)


def _reserved(db: Session, user_id: int, friend_id: int, currency: str, group_id: Optional[int]) -> int:
    """
    Debt already promised to friend_id by PENDING settlements. Group settlements
    also draw down the global balance, so the global scope counts all of them.
    """
    query = db.query(func.sum(models.SettlementItem.original_amount)).select_from(models.SettlementItem).join(
        models.SettlementTransaction,
        models.SettlementTransaction.id == models.SettlementItem.settlement_transaction_id
    ).filter(
        models.SettlementTransaction.status == PENDING,
        models.SettlementItem.user_id == user_id,
        models.SettlementItem.friend_id == friend_id,
        models.SettlementItem.original_currency == currency
    )
    if group_id is not None:
        query = query.filter(models.SettlementItem.group_id == group_id)
    return int(query.scalar() or 0)


def create_settlement(
db: Session, actor_id: Optional[int], data: schemas.SettlementCreate) -> models.SettlementTransaction:
    """
    Record a PENDING settlement from actor_id to the friends in data.items.

    Each item must settle a debt actor_id actually has: the original amount
    cannot exceed what the ledger (the group ledger for group settlements)
    says actor_id owes that friend, less what other PENDING settlements
    already cover.
    """
    user_id = require_actor(actor_id)
    if not data.items:
        raise ValidationError("A settlement needs at least one item")
    if data.group_id is not None:
        get_group_or_404(db, data.group_id)
        verify_group_membership(db, data.group_id, user_id)

    friend_ids = {item.friend_id for item in data.items}
    known = {
        row.id for row in db.query(models.User.id).filter(models.User.id.in_(friend_ids)).all()
    }
    missing = sorted(friend_ids - known)
    if missing:
        raise ValidationError(f"Users not found: {missing}")

    prepared = []
    seen = set()
    for item in data.items:
        if item.friend_id == user_id:
            raise ValidationError("Cannot settle with yourself")
        key = (item.friend_id, item.original_currency)
        if key in seen:
            raise ValidationError(
                f"Friend {item.friend_id} appears more than once for {item.original_currency}"
            )
        seen.add(key)

        original_amount = to_minor_units(item.original_amount, item.original_currency)
        amount = to_minor_units(item.amount, item.currency)
        if original_amount <= 0 or amount <= 0:
            raise ValidationError("Settlement amounts must be positive")

        owed = _owed(db, user_id, item.friend_id, item.original_currency, data.group_id)
        owed -= _reserved(db, user_id, item.friend_id, item.original_currency, data.group_id)
        if original_amount > owed:
            raise ValidationError(
                f"Settlement of {format_currency(original_amount, item.original_currency)} to user {item.friend_id} "
                f"exceeds the outstanding debt of {format_currency(max(owed, 0), item.original_currency)}"
            )
        prepared.append((item, original_amount, amount))

    settlement = models.SettlementTransaction(
        user_id=user_id,
        group_id=data.group_id,
        chain_id=data.chain_id,
        token_id=data.token_id,
        serialized_tx=data.serialized_tx,
        status=PENDING
    )

    with ledger_transaction(db, "create settlement"):
        db.add(settlement)
        db.flush()
        for item, original_amount, amount in prepared:
            db.add(models.SettlementItem(
                settlement_transaction_id=settlement.id,
                user_id=user_id,
                friend_id=item.friend_id,
                group_id=data.group_id,
                original_amount=original_amount,
                original_currency=item.original_currency,
                amount=amount,
                currency=item.currency
            ))

    logger.info(f"Settlement {settlement.id} created by user {user_id} with {len(prepared)} items")
    db.refresh(settlement)
    return settlement


def _find_mismatch(items: list[models.SettlementItem], transfers: list[schemas.SettlementTransfer]) -> Optional[str]:
    """Compare verified transfers with the stored items; returns a description of the first difference."""
    expected = Counter((item.friend_id, item.currency, item.amount) for item in items)
    actual = Counter(
        (transfer.friend_id, transfer.currency, to_minor_units(transfer.amount, transfer.currency))
        for transfer in transfers
    )
    if expected == actual:
        return None

    unexpected = sorted((actual - expected).elements())
    unpaid = sorted((expected - actual).elements())
    return f"Verified transfers do not match settlement items (unexpected: {unexpected}, unpaid: {unpaid})"


def _mark_failed(db: Session, settlement: models.SettlementTransaction, reason: str, transaction_hash: Optional[str]) -> None:
    with ledger_transaction(db, "mark settlement failed"):
        db.query(models.SettlementTransaction).filter(
            models.SettlementTransaction.id == settlement.id,
            models.SettlementTransaction.status == PENDING
        ).update({
            "status": FAILED,
            "failure_reason": reason,
            "transaction_hash": transaction_hash
        }, synchronize_session=False)

    logger.warning(f"Settlement {settlement.id} failed: {reason}")
    db.refresh(settlement)


def confirm_settlement(
    db: Session,
    settlement_id: int,
    confirmation: schemas.SettlementConfirm
) -> models.SettlementTransaction:
    """
    Apply the verified outcome of a settlement's external payment.

    Args:
        db: Database session
        settlement_id: Settlement to confirm
        confirmation: Result reported by the payment-execution subsystem

    Returns:
        The settlement in its final state

    Raises:
        NotFoundError: unknown settlement
        ValidationError: the settlement already FAILED, or an item now exceeds
            the outstanding debt (the settlement is marked FAILED)
        ExternalConfirmationMismatch: transfers differ from the items (settlement is marked FAILED)
    """
    settlement = get_settlement_or_404(db, settlement_id)

    if settlement.status == COMPLETED:
        logger.info(f"Settlement {settlement_id} already completed; ignoring repeated confirmation")
        return settlement
    if settlement.status == FAILED:
        raise ValidationError(f"Settlement {settlement_id} has already failed")

    if not confirmation.success:
        _mark_failed(db, settlement, confirmation.error or "Payment was not successful", confirmation.transaction_hash)
        return settlement

    items = get_settlement_items(db, settlement_id)
    mismatch = _find_mismatch(items, confirmation.transfers)
    if mismatch:
        _mark_failed(db, settlement, mismatch, confirmation.transaction_hash)
        raise ExternalConfirmationMismatch(mismatch)

    by_currency = defaultdict(list)
    for item in items:
        by_currency[item.original_currency].append(item)

    try:
        with ledger_transaction(db, "complete settlement"):
            claimed = db.query(models.SettlementTransaction).filter(
                models.SettlementTransaction.id == settlement_id,
                models.SettlementTransaction.status == PENDING
            ).update({
                "status": COMPLETED,
                "completed_at": utcnow(),
                "transaction_hash": confirmation.transaction_hash
            }, synchronize_session=False)
            if claimed != 1:
                raise _NotPending()

            # The debt may have shrunk since the settlement was created
            for item in items:
                owed = _owed(db, settlement.user_id, item.friend_id, item.original_currency,
                             settlement.group_id, lock=True)
                if item.original_amount > owed:
                    raise _Overdrawn(
                        f"Settlement of {format_currency(item.original_amount, item.original_currency)} "
                        f"to user {item.friend_id} exceeds the outstanding debt of "
                        f"{format_currency(max(owed, 0), item.original_currency)}"
                    )

            for currency, currency_items in by_currency.items():
                shares = [Share(user_id=item.friend_id, amount=item.original_amount) for item in currency_items]
                settle(db, settlement.user_id, shares, currency, settlement.group_id)

            for item in items:
                item.after_settlement_balance = get_balance(
                    db, settlement.user_id, item.friend_id, item.original_currency
                )
    except _NotPending:
        db.refresh(settlement)
        if settlement.status == FAILED:
            raise ValidationError(f"Settlement {settlement_id} has already failed")
        logger.info(f"Settlement {settlement_id} was completed concurrently")
        return settlement
    except _Overdrawn as e:
        _mark_failed(db, settlement, str(e), confirmation.transaction_hash)
        raise ValidationError(str(e))

    logger.info(f"Settlement {settlement_id} completed (hash {confirmation.transaction_hash})")

    for currency, currency_items in by_currency.items():
        reconcile_after_commit(db, settlement.user_id, [item.friend_id for item in currency_items], currency)

    db.refresh(settlement)
    return settlement


def serialize_settlement(db: Session, settlement: models.SettlementTransaction) -> schemas.SettlementTransaction:
    items = []
    for item in get_settlement_items(db, settlement.id):
        after = None
        if item.after_settlement_balance is not None:
            after = float(from_minor_units(item.after_settlement_balance, item.original_currency))
        items.append(schemas.SettlementItem(
            friend_id=item.friend_id,
            group_id=item.group_id,
            original_amount=float(from_minor_units(item.original_amount, item.original_currency)),
            original_currency=item.original_currency,
            amount=float(from_minor_units(item.amount, item.currency)),
            currency=item.currency,
            after_settlement_balance=after
        ))

    return schemas.SettlementTransaction(
        id=settlement.id,
        user_id=settlement.user_id,
        group_id=settlement.group_id,
        chain_id=settlement.chain_id,
        token_id=settlement.token_id,
        status=settlement.status,
        transaction_hash=settlement.transaction_hash,
        failure_reason=settlement.failure_reason,
        created_at=settlement.created_at,
        completed_at=settlement.completed_at,
        items=items
    )
