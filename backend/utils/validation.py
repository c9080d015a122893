"""Validation utilities for group membership, access control, and split participants."""

from typing import Iterable, Optional

from sqlalchemy.orm import Session

import models
from utils.currency import to_minor_units
from utils.errors import NotFoundError, UnauthorizedError, ValidationError
from utils.ledger import Share


SPLIT_TYPES = {"EQUAL", "PERCENTAGE", "EXACT", "SHARE", "ADJUSTMENT", "SETTLEMENT"}
CURRENCY_TYPES = {"FIAT", "TOKEN"}

# Allowed difference between the split sum and the total, in minor units
SPLIT_SUM_TOLERANCE = 1


def get_user_by_email(db: Session, email: str):
    """Get a user by their email address."""
    return db.query(models.User).filter(models.User.email == email).first()


def get_group_or_404(db: Session, group_id: int):
    """Get a group by ID or raise NotFoundError."""
    group = db.query(models.Group).filter(models.Group.id == group_id).first()
    if not group:
        raise NotFoundError(f"Group {group_id} not found")
    return group


def is_group_member(db: Session, group_id: int, user_id: int) -> bool:
    return db.query(models.GroupMember).filter(
        models.GroupMember.group_id == group_id,
        models.GroupMember.user_id == user_id
    ).first() is not None


def verify_group_membership(db: Session, group_id: int, user_id: int):
    """Verify that a user is a member of a group, raise UnauthorizedError if not."""
    if not is_group_member(db, group_id, user_id):
        raise UnauthorizedError("You are not a member of this group")


def verify_group_ownership(db: Session, group_id: int, user_id: int):
    """Verify that a user created a group, raise UnauthorizedError if not."""
    group = get_group_or_404(db, group_id)
    if group.created_by_id != user_id:
        raise UnauthorizedError("Only the group creator can perform this action")
    return group


def require_actor(actor_id: Optional[int]) -> int:
    """Ledger mutations always need to know who is acting."""
    if actor_id is None:
        raise UnauthorizedError("No acting user supplied for ledger mutation")
    return actor_id


def normalize_shares(participants: Iterable, currency: str) -> list[Share]:
    """
    Round every participant amount to minor units and reject malformed lists:
    empty, duplicate users, or negative amounts.
    """
    shares = []
    seen = set()
    for participant in participants:
        if participant.user_id in seen:
            raise ValidationError(f"User {participant.user_id} appears more than once in the split")
        seen.add(participant.user_id)

        amount = to_minor_units(participant.amount, currency)
        if amount < 0:
            raise ValidationError(f"Amount owed by user {participant.user_id} cannot be negative")
        shares.append(Share(user_id=participant.user_id, amount=amount))

    if not shares:
        raise ValidationError("A split needs at least one participant")
    return shares


def validate_split_total(total: int, shares: list[Share]) -> None:
    """Check that the shares add up to the expense total (both in minor units)."""
    if total <= 0:
        raise ValidationError("Expense amount must be positive")

    split_sum = sum(share.amount for share in shares)
    if abs(split_sum - total) > SPLIT_SUM_TOLERANCE:
        raise ValidationError(
            f"Split amounts do not sum to total expense amount. Total: {total}, Sum: {split_sum}"
        )


def validate_split_type(split_type: str, currency_type: str) -> None:
    if split_type not in SPLIT_TYPES:
        raise ValidationError(f"Unknown split type {split_type!r}")
    if currency_type not in CURRENCY_TYPES:
        raise ValidationError(f"Unknown currency type {currency_type!r}")


def validate_split_participants(
    db: Session,
    payer_id: int,
    shares: list[Share],
    group_id: Optional[int] = None
) -> None:
    """Validate that the payer and every participant exist, and belong to the group if one is given."""
    user_ids = {payer_id} | {share.user_id for share in shares}
    found = {
        row.id for row in db.query(models.User.id).filter(models.User.id.in_(user_ids)).all()
    }
    missing = sorted(user_ids - found)
    if missing:
        raise ValidationError(f"Users not found: {missing}")

    if group_id is not None:
        members = {
            row.user_id for row in db.query(models.GroupMember.user_id).filter(
                models.GroupMember.group_id == group_id,
                models.GroupMember.user_id.in_(user_ids)
            ).all()
        }
        outsiders = sorted(user_ids - members)
        if outsiders:
            raise ValidationError(f"Users {outsiders} are not members of group {group_id}")
