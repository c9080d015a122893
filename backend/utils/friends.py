"""Explicit friend links. Sharing a balance also makes two users friends; see utils.balances."""

import logging

from sqlalchemy.orm import Session

import models
from utils.errors import NotFoundError, ValidationError
from utils.validation import get_user_by_email


logger = logging.getLogger(__name__)


def get_friendship(db: Session, user_id: int, friend_id: int):
    return db.query(models.Friendship).filter(
        ((models.Friendship.user_id1 == user_id) & (models.Friendship.user_id2 == friend_id)) |
        ((models.Friendship.user_id1 == friend_id) & (models.Friendship.user_id2 == user_id))
    ).first()


def get_linked_friend_ids(db: Session, user_id: int) -> set[int]:
    friendships = db.query(models.Friendship).filter(
        (models.Friendship.user_id1 == user_id) | (models.Friendship.user_id2 == user_id)
    ).all()
    return {f.user_id2 if f.user_id1 == user_id else f.user_id1 for f in friendships}


def _link(db: Session, user_id: int, friend_id: int) -> None:
    # Lower id first so the unique constraint covers both directions
    low, high = sorted((user_id, friend_id))
    db.add(models.Friendship(user_id1=low, user_id2=high))
    db.commit()
    logger.info(f"User {user_id} added user {friend_id} as a friend")


def add_friend(db: Session, user_id: int, identifier: str) -> models.User:
    """Link user_id with the user whose email or full name is identifier."""
    friend = get_user_by_email(db, identifier)
    if not friend:
        friend = db.query(models.User).filter(models.User.full_name == identifier).order_by(models.User.id).first()
    if not friend:
        raise NotFoundError("Friend not found")

    if friend.id == user_id:
        raise ValidationError("Cannot add yourself as friend")
    if get_friendship(db, user_id, friend.id):
        raise ValidationError("Already friends")

    _link(db, user_id, friend.id)
    return friend


def invite_friend(db: Session, user_id: int, email: str) -> models.User:
    """
    Befriend whoever owns email, creating a placeholder account if nobody does.

    The placeholder is named after the local part of the address, so it can
    take part in expenses before its owner ever signs in.
    """
    email = email.strip()
    if "@" not in email:
        raise ValidationError(f"Invalid email address: {email}")

    friend = get_user_by_email(db, email)
    if not friend:
        friend = models.User(email=email, full_name=email.split("@")[0], is_active=True)
        db.add(friend)
        db.commit()
        db.refresh(friend)
        logger.info(f"User {user_id} invited {email} (new user {friend.id})")

    if friend.id == user_id:
        raise ValidationError("Cannot add yourself as friend")
    if not get_friendship(db, user_id, friend.id):
        _link(db, user_id, friend.id)
    return friend
