"""
Payment reminders.

A creditor can nudge a debtor about their overall debt (USER reminders) or
about one expense the creditor paid for (SPLIT reminders). Both kinds are
only accepted while the ledger backs them up: the receiver must owe the
sender money, or must hold a positive share of the sender's live expense.
The receiver then accepts or rejects the reminder.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

import models
import schemas
from utils.currency import from_minor_units
from utils.errors import NotFoundError, UnauthorizedError, ValidationError
from utils.expenses import get_expense_or_404
from utils.validation import require_actor


logger = logging.getLogger(__name__)

USER = "USER"
SPLIT = "SPLIT"
REMINDER_TYPES = {USER, SPLIT}

PENDING = "PENDING"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"


def _debts(db: Session, debtor_id: int, creditor_id: int) -> list[models.Balance]:
    """Balance rows in which debtor_id currently owes creditor_id."""
    return db.query(models.Balance).filter(
        models.Balance.user_id == debtor_id,
        models.Balance.friend_id == creditor_id,
        models.Balance.amount > 0
    ).order_by(models.Balance.currency).all()


def _share_of(db: Session, expense_id: int, user_id: int) -> Optional[models.ExpenseParticipant]:
    return db.query(models.ExpenseParticipant).filter(
        models.ExpenseParticipant.expense_id == expense_id,
        models.ExpenseParticipant.user_id == user_id
    ).first()


def create_reminder(db: Session, actor_id: Optional[int], data: schemas.ReminderCreate) -> models.Reminder:
    sender_id = require_actor(actor_id)
    if data.reminder_type not in REMINDER_TYPES:
        raise ValidationError(f"Invalid reminder type: {data.reminder_type}")
    if data.receiver_id == sender_id:
        raise ValidationError("Cannot send a reminder to yourself")

    receiver = db.query(models.User).filter(models.User.id == data.receiver_id).first()
    if not receiver:
        raise NotFoundError("Receiver not found")

    if data.reminder_type == USER:
        if not _debts(db, receiver.id, sender_id):
            raise ValidationError("This user doesn't owe you any money")
    else:
        if data.expense_id is None:
            raise ValidationError("An expense is required for expense reminders")
        expense = get_expense_or_404(db, data.expense_id)
        if expense.payer_id != sender_id:
            raise UnauthorizedError("Only the person who paid can send reminders for this expense")
        share = _share_of(db, expense.id, receiver.id)
        if not share:
            raise ValidationError("Receiver is not a participant in this expense")
        if share.amount <= 0:
            raise ValidationError("Receiver doesn't owe any money in this expense")

    reminder = models.Reminder(
        sender_id=sender_id,
        receiver_id=receiver.id,
        reminder_type=data.reminder_type,
        expense_id=data.expense_id if data.reminder_type == SPLIT else None,
        content=data.content,
        status=PENDING
    )
    db.add(reminder)
    db.commit()
    db.refresh(reminder)

    logger.info(f"Reminder {reminder.id} ({reminder.reminder_type}) sent from user {sender_id} to user {receiver.id}")
    return reminder


def get_reminders_for_user(db: Session, user_id: int) -> list[models.Reminder]:
    """Pending reminders user_id has received, newest first."""
    return db.query(models.Reminder).filter(
        models.Reminder.receiver_id == user_id,
        models.Reminder.status == PENDING
    ).order_by(models.Reminder.created_at.desc(), models.Reminder.id.desc()).all()


def _respond(db: Session, reminder_id: int, user_id: int, status: str) -> models.Reminder:
    reminder = db.query(models.Reminder).filter(
        models.Reminder.id == reminder_id,
        models.Reminder.receiver_id == user_id,
        models.Reminder.status == PENDING
    ).first()
    if not reminder:
        raise NotFoundError("Reminder not found or already processed")

    reminder.status = status
    db.commit()
    db.refresh(reminder)

    logger.info(f"Reminder {reminder_id} marked {status} by user {user_id}")
    return reminder


def accept_reminder(db: Session, reminder_id: int, user_id: int) -> models.Reminder:
    return _respond(db, reminder_id, user_id, COMPLETED)


def reject_reminder(db: Session, reminder_id: int, user_id: int) -> models.Reminder:
    return _respond(db, reminder_id, user_id, CANCELLED)


def serialize_reminder(db: Session, reminder: models.Reminder) -> schemas.Reminder:
    """
    Attach what the receiver owes the sender right now: their open balances
    for USER reminders, their share of the expense for SPLIT reminders.
    """
    sender = db.query(models.User).filter(models.User.id == reminder.sender_id).first()

    amounts = []
    description = None
    if reminder.reminder_type == USER:
        amounts = [
            schemas.BalanceEntry(currency=row.currency, amount=float(from_minor_units(row.amount, row.currency)))
            for row in _debts(db, reminder.receiver_id, reminder.sender_id)
        ]
    elif reminder.expense_id is not None:
        expense = db.query(models.Expense).filter(models.Expense.id == reminder.expense_id).first()
        share = _share_of(db, reminder.expense_id, reminder.receiver_id)
        if expense:
            description = expense.description
            if share and expense.deleted_at is None:
                amounts = [schemas.BalanceEntry(
                    currency=expense.currency,
                    amount=float(from_minor_units(share.amount, expense.currency))
                )]

    return schemas.Reminder(
        id=reminder.id,
        sender_id=reminder.sender_id,
        sender_name=(sender.full_name or sender.email) if sender else None,
        receiver_id=reminder.receiver_id,
        reminder_type=reminder.reminder_type,
        expense_id=reminder.expense_id,
        expense_description=description,
        content=reminder.content,
        status=reminder.status,
        created_at=reminder.created_at,
        amounts=amounts
    )
