"""Expense lifecycle: create, edit, soft-delete, and manual payments, each with its ledger effects."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

import models
import schemas
from models import utcnow
from utils.currency import format_currency, from_minor_units, get_exchange_rate, to_minor_units
from utils.errors import NotFoundError, UnauthorizedError, ValidationError
from utils.ledger import Share, apply_split, ledger_transaction, reconcile_after_commit, reverse_split
from utils.validation import (
    get_group_or_404,
    normalize_shares,
    require_actor,
    validate_split_participants,
    validate_split_total,
    validate_split_type,
    verify_group_membership,
)


logger = logging.getLogger(__name__)


def get_expense_or_404(db: Session, expense_id: int, include_deleted: bool = False) -> models.Expense:
    """Get an expense by ID or raise NotFoundError. Soft-deleted expenses count as missing unless asked for."""
    expense = db.query(models.Expense).filter(models.Expense.id == expense_id).first()
    if not expense or (expense.deleted_at is not None and not include_deleted):
        raise NotFoundError(f"Expense {expense_id} not found")
    return expense


def get_participants(db: Session, expense_id: int) -> list[models.ExpenseParticipant]:
    return db.query(models.ExpenseParticipant).filter(
        models.ExpenseParticipant.expense_id == expense_id
    ).order_by(models.ExpenseParticipant.user_id).all()


def verify_expense_access(
    db: Session,
    actor_id: int,
    group_id: Optional[int],
    payer_id: int,
    participant_ids
) -> None:
    """Group expenses are open to every group member; others only to the payer and participants."""
    if group_id is not None:
        verify_group_membership(db, group_id, actor_id)
    elif actor_id != payer_id and actor_id not in set(participant_ids):
        raise UnauthorizedError("You are not a participant of this expense")


def _locked_exchange_rate(data) -> Optional[float]:
    """USD value of one unit of a token at creation time, when the expense asks for lock-in."""
    if not data.time_lock_in or data.currency_type != "TOKEN":
        return None
    rate = get_exchange_rate(data.currency, "USD")
    if rate is None:
        logger.warning(f"Could not lock exchange rate for {data.currency}; continuing without it")
    return rate


def _prepare_split(db: Session, data, group_id: Optional[int]) -> tuple[int, list[Share]]:
    """Validate a create/update payload and return (total, shares) in minor units."""
    validate_split_type(data.split_type, data.currency_type)
    total = to_minor_units(data.amount, data.currency)
    shares = normalize_shares(data.participants, data.currency)
    validate_split_total(total, shares)
    validate_split_participants(db, data.payer_id, shares, group_id)
    return total, shares


def create_expense(db: Session, actor_id: Optional[int], data: schemas.ExpenseCreate) -> models.Expense:
    """
    Persist an expense, its participants and its ledger effects in one transaction.

    Args:
        db: Database session
        actor_id: ID of the user adding the expense
        data: Validated request payload (amounts in major units)

    Returns:
        The committed Expense row
    """
    require_actor(actor_id)
    if data.group_id is not None:
        get_group_or_404(db, data.group_id)

    total, shares = _prepare_split(db, data, data.group_id)
    verify_expense_access(db, actor_id, data.group_id, data.payer_id, [s.user_id for s in shares])

    # Network I/O stays outside the ledger transaction
    exchange_rate = _locked_exchange_rate(data)

    db_expense = models.Expense(
        description=data.description,
        category=data.category,
        amount=total,
        split_type=data.split_type,
        currency=data.currency,
        currency_type=data.currency_type,
        token_id=data.token_id,
        chain_id=data.chain_id,
        time_lock_in=data.time_lock_in,
        exchange_rate=exchange_rate,
        payer_id=data.payer_id,
        added_by_id=actor_id,
        group_id=data.group_id,
        expense_date=data.expense_date or utcnow(),
        file_key=data.file_key
    )

    with ledger_transaction(db, "create expense"):
        db.add(db_expense)
        db.flush()

        for share in shares:
            db.add(models.ExpenseParticipant(
                expense_id=db_expense.id,
                user_id=share.user_id,
                amount=share.amount
            ))

        apply_split(db, data.payer_id, data.currency, shares, data.group_id)

    logger.info(
        f"Expense {db_expense.id} created by user {actor_id}: {format_currency(total, data.currency)} "
        f"paid by {data.payer_id} across {len(shares)} participants"
    )

    reconcile_after_commit(db, data.payer_id, [s.user_id for s in shares], data.currency)
    db.refresh(db_expense)
    return db_expense


def edit_expense(
    db: Session,
    actor_id: Optional[int],
    expense_id: int,
    data: schemas.ExpenseUpdate
) -> models.Expense:
    """
    Replace an expense's split: undo the old split, rewrite the expense and its
    participants, then apply the new split, all in one transaction.

    The group scope of an expense never changes. A currency change reverses
    on the old currency's rows and applies on the new one's.
    """
    require_actor(actor_id)
    expense = get_expense_or_404(db, expense_id)
    old_participants = get_participants(db, expense_id)
    verify_expense_access(db, actor_id, expense.group_id, expense.payer_id,
                          [p.user_id for p in old_participants])

    total, shares = _prepare_split(db, data, expense.group_id)

    old_payer_id = expense.payer_id
    old_currency = expense.currency
    old_shares = [Share(user_id=p.user_id, amount=p.amount) for p in old_participants]

    if not data.time_lock_in or data.currency_type != "TOKEN":
        exchange_rate = None
    elif expense.exchange_rate is not None and expense.currency == data.currency:
        exchange_rate = expense.exchange_rate
    else:
        exchange_rate = _locked_exchange_rate(data)

    with ledger_transaction(db, "edit expense"):
        reverse_split(db, old_payer_id, old_currency, old_shares, expense.group_id)

        db.query(models.ExpenseParticipant).filter(
            models.ExpenseParticipant.expense_id == expense_id
        ).delete(synchronize_session=False)
        for participant in old_participants:
            db.expunge(participant)

        expense.description = data.description
        expense.category = data.category
        expense.amount = total
        expense.split_type = data.split_type
        expense.currency = data.currency
        expense.currency_type = data.currency_type
        expense.token_id = data.token_id
        expense.chain_id = data.chain_id
        expense.time_lock_in = data.time_lock_in
        expense.exchange_rate = exchange_rate
        expense.payer_id = data.payer_id
        if data.expense_date is not None:
            expense.expense_date = data.expense_date
        if data.file_key is not None:
            expense.file_key = data.file_key
        expense.updated_by_id = actor_id

        for share in shares:
            db.add(models.ExpenseParticipant(
                expense_id=expense_id,
                user_id=share.user_id,
                amount=share.amount
            ))

        apply_split(db, data.payer_id, data.currency, shares, expense.group_id)

    logger.info(f"Expense {expense_id} edited by user {actor_id}")

    reconcile_after_commit(db, old_payer_id, [s.user_id for s in old_shares], old_currency)
    reconcile_after_commit(db, data.payer_id, [s.user_id for s in shares], data.currency)
    db.refresh(expense)
    return expense


def delete_expense(db: Session, actor_id: Optional[int], expense_id: int) -> models.Expense:
    """Soft-delete an expense and reverse its ledger effects. Participant rows are kept for history."""
    require_actor(actor_id)
    expense = get_expense_or_404(db, expense_id)
    participants = get_participants(db, expense_id)
    verify_expense_access(db, actor_id, expense.group_id, expense.payer_id,
                          [p.user_id for p in participants])

    shares = [Share(user_id=p.user_id, amount=p.amount) for p in participants]

    with ledger_transaction(db, "delete expense"):
        reverse_split(db, expense.payer_id, expense.currency, shares, expense.group_id)
        expense.deleted_at = utcnow()
        expense.deleted_by_id = actor_id

    logger.info(f"Expense {expense_id} deleted by user {actor_id}")

    reconcile_after_commit(db, expense.payer_id, [s.user_id for s in shares], expense.currency)
    db.refresh(expense)
    return expense


def record_payment(db: Session, actor_id: Optional[int], payment: schemas.PaymentCreate) -> models.Expense:
    """
    Log money handed over outside the app as a SETTLEMENT expense.

    The debtor is the payer and the creditor owes the full amount, which
    moves the pair's balance toward zero.
    """
    if payment.payer_id == payment.payee_id:
        raise ValidationError("Payer and payee must be different users")

    return create_expense(db, actor_id, schemas.ExpenseCreate(
        description="Manual Settlement",
        category="Settlement",
        amount=payment.amount,
        currency=payment.currency,
        split_type="SETTLEMENT",
        payer_id=payment.payer_id,
        group_id=payment.group_id,
        participants=[
            schemas.ParticipantShare(user_id=payment.payer_id, amount=0),
            schemas.ParticipantShare(user_id=payment.payee_id, amount=payment.amount),
        ]
    ))


def list_expenses_for_user(db: Session, user_id: int) -> list[models.Expense]:
    """Live expenses the user paid for or takes part in, newest first."""
    subquery = select(models.ExpenseParticipant.expense_id).where(
        models.ExpenseParticipant.user_id == user_id
    )

    return db.query(models.Expense).filter(
        models.Expense.deleted_at.is_(None),
        (models.Expense.payer_id == user_id) | (models.Expense.id.in_(subquery))
    ).order_by(models.Expense.expense_date.desc(), models.Expense.id.desc()).all()


def list_group_expenses(db: Session, group_id: int) -> list[models.Expense]:
    return db.query(models.Expense).filter(
        models.Expense.group_id == group_id,
        models.Expense.deleted_at.is_(None)
    ).order_by(models.Expense.expense_date.desc(), models.Expense.id.desc()).all()


def serialize_expense(db: Session, expense: models.Expense) -> schemas.Expense:
    """Expense with its participants, amounts back in major units."""
    participants = [
        schemas.ExpenseParticipant(
            user_id=p.user_id,
            amount=float(from_minor_units(p.amount, expense.currency))
        )
        for p in get_participants(db, expense.id)
    ]
    return schemas.Expense(
        id=expense.id,
        description=expense.description,
        category=expense.category,
        amount=float(from_minor_units(expense.amount, expense.currency)),
        currency=expense.currency,
        currency_type=expense.currency_type,
        token_id=expense.token_id,
        chain_id=expense.chain_id,
        time_lock_in=bool(expense.time_lock_in),
        exchange_rate=expense.exchange_rate,
        split_type=expense.split_type,
        payer_id=expense.payer_id,
        added_by_id=expense.added_by_id,
        group_id=expense.group_id,
        expense_date=expense.expense_date,
        file_key=expense.file_key,
        updated_by_id=expense.updated_by_id,
        deleted_at=expense.deleted_at,
        deleted_by_id=expense.deleted_by_id,
        participants=participants
    )
