"""
Pairwise balance ledger.

Every shared expense or settlement moves money between a payer and each
participant. For each (payer, participant) pair four rows change: the global
Balance in both directions and, for group expenses, the GroupBalance in both
directions. A positive amount on (user_id, friend_id) means user_id owes
friend_id, so the two directions of a pair always hold opposite values.

All mutations are relative increments issued as upserts, which keeps
concurrent splits on the same pair commutative. Nothing here commits: the
caller owns the transaction and commits the ledger effects together with the
expense or settlement record that caused them.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
from models import utcnow
from utils.errors import TransactionFailure, ValidationError


logger = logging.getLogger(__name__)


@contextmanager
def ledger_transaction(db: Session, action: str):
    """
    Commit everything done inside the block as one unit, or nothing.

    Store errors are rolled back and re-raised as TransactionFailure; any
    other error is rolled back and propagated unchanged.
    """
    try:
        yield
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Transaction failed, could not {action}: {e}")
        raise TransactionFailure(f"Could not {action}; no changes were applied") from e
    except Exception:
        db.rollback()
        raise


@dataclass(frozen=True)
class Share:
    """What one participant owes toward a split, in minor units."""
    user_id: int
    amount: int


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Ledger upserts are not supported on {dialect}")


def _increment(db: Session, model, key: dict, delta: int) -> None:
    """Add delta to the row identified by key, creating it at delta if absent."""
    table = model.__table__
    now = utcnow()
    stmt = _insert_for(db)(table).values(**key, amount=delta, updated_at=now)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(key.keys()),
        set_={
            "amount": table.c.amount + stmt.excluded.amount,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    db.execute(stmt)


def _move(db: Session, payer_id: int, currency: str, shares: Iterable, group_id: Optional[int], sign: int) -> int:
    """Apply sign * share.amount for every non-payer share. Returns the number of pairs touched."""
    touched = 0
    # Ascending user order keeps row locks consistent across concurrent transactions
    for share in sorted(shares, key=lambda s: s.user_id):
        if share.user_id == payer_id:
            continue
        if isinstance(share.amount, bool) or not isinstance(share.amount, int):
            raise ValidationError(
                f"Ledger amounts must be integer minor units, got {share.amount!r} for user {share.user_id}"
            )

        delta = sign * share.amount
        _increment(db, models.Balance,
                   {"user_id": payer_id, "friend_id": share.user_id, "currency": currency}, -delta)
        _increment(db, models.Balance,
                   {"user_id": share.user_id, "friend_id": payer_id, "currency": currency}, delta)

        if group_id is not None:
            _increment(db, models.GroupBalance,
                       {"group_id": group_id, "user_id": payer_id, "friend_id": share.user_id, "currency": currency},
                       -delta)
            _increment(db, models.GroupBalance,
                       {"group_id": group_id, "user_id": share.user_id, "friend_id": payer_id, "currency": currency},
                       delta)
        touched += 1
    return touched


def apply_split(db: Session, payer_id: int, currency: str, shares: Iterable, group_id: Optional[int] = None) -> int:
    """
    Record that payer_id advanced money on behalf of each participant.

    Balance(payer, participant) goes down by the share and
    Balance(participant, payer) goes up by it; with a group_id the same two
    mutations hit GroupBalance. The payer's own share is skipped.

    Args:
        db: Session whose transaction the mutations join
        payer_id: User who paid
        currency: Ledger currency; rows are never mixed across currencies
        shares: Objects with user_id and amount (integer minor units)
        group_id: Group scope, or None for a non-group split

    Returns:
        Number of participant pairs mutated
    """
    return _move(db, payer_id, currency, shares, group_id, 1)


def reverse_split(db: Session, payer_id: int, currency: str, shares: Iterable, group_id: Optional[int] = None) -> int:
    """Undo apply_split. Must be given the original payer, currency, shares and group."""
    return _move(db, payer_id, currency, shares, group_id, -1)


def settle(db: Session, settled_by: int, shares: Iterable, currency: str, group_id: Optional[int] = None) -> int:
    """
    Apply a verified payment from settled_by to each share's user.

    The payer of a settlement is the debtor, so this is apply_split with the
    debtor as payer: Balance(settled_by, friend) moves down toward zero.
    """
    return _move(db, settled_by, currency, shares, group_id, 1)


def get_balance(db: Session, user_id: int, friend_id: int, currency: str, lock: bool = False) -> int:
    query = db.query(models.Balance).populate_existing().filter(
        models.Balance.user_id == user_id,
        models.Balance.friend_id == friend_id,
        models.Balance.currency == currency
    )
    if lock:
        query = query.with_for_update()
    row = query.first()
    return row.amount if row else 0


def get_group_balance(db: Session, group_id: int, user_id: int, friend_id: int, currency: str, lock: bool = False) -> int:
    query = db.query(models.GroupBalance).populate_existing().filter(
        models.GroupBalance.group_id == group_id,
        models.GroupBalance.user_id == user_id,
        models.GroupBalance.friend_id == friend_id,
        models.GroupBalance.currency == currency
    )
    if lock:
        query = query.with_for_update()
    row = query.first()
    return row.amount if row else 0


def reconcile_zero_balances(db: Session, user_id: int, counterparty_ids: Iterable[int], currency: str) -> list[int]:
    """
    Force GroupBalance rows to exactly zero for every counterparty whose global
    Balance with user_id in currency is exactly zero.

    Only the global ledger triggers this; a group netting to zero on its own
    does not. Runs in the caller's transaction and does not commit.

    Returns:
        Counterparty ids whose group rows were zeroed
    """
    counterparty_ids = sorted({cid for cid in counterparty_ids if cid != user_id})
    if not counterparty_ids:
        return []

    settled = [
        row.friend_id for row in db.query(models.Balance).populate_existing().filter(
            models.Balance.user_id == user_id,
            models.Balance.currency == currency,
            models.Balance.friend_id.in_(counterparty_ids),
            models.Balance.amount == 0
        ).all()
    ]
    if not settled:
        return []

    zeroed = db.query(models.GroupBalance).filter(
        models.GroupBalance.currency == currency,
        models.GroupBalance.amount != 0,
        or_(
            (models.GroupBalance.user_id == user_id) & models.GroupBalance.friend_id.in_(settled),
            models.GroupBalance.user_id.in_(settled) & (models.GroupBalance.friend_id == user_id)
        )
    ).update({"amount": 0, "updated_at": utcnow()}, synchronize_session=False)

    if zeroed:
        logger.info(f"Zeroed {zeroed} group balance rows between user {user_id} and {settled} in {currency}")
    return settled


def reconcile_after_commit(db: Session, user_id: int, counterparty_ids: Iterable[int], currency: str) -> None:
    """Best-effort reconciliation in its own transaction; failures are logged and left for the next pass."""
    try:
        reconcile_zero_balances(db, user_id, counterparty_ids, currency)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"Zero-balance reconciliation failed for user {user_id} in {currency}")
