"""Friends router: add friends and list everyone you share a balance with."""

from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

import models
import schemas
from database import get_db
from dependencies import get_current_user
from utils import friends as friend_service
from utils.balances import get_expenses_with_friend, get_friends_with_balances
from utils.expenses import serialize_expense


router = APIRouter(prefix="/friends", tags=["friends"])


@router.post("", response_model=schemas.Friend)
def add_friend(
    friend_request: schemas.FriendRequest,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    return friend_service.add_friend(db, current_user.id, friend_request.identifier)


@router.post("/invite", response_model=schemas.Friend)
def invite_friend(
    invite: schemas.FriendInvite,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    return friend_service.invite_friend(db, current_user.id, invite.email)


@router.get("", response_model=list[schemas.FriendWithBalances])
def read_friends(
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    return get_friends_with_balances(db, current_user.id)


@router.get("/{friend_id}/expenses", response_model=list[schemas.Expense])
def read_friend_expenses(
    friend_id: int,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    friend = db.query(models.User).filter(models.User.id == friend_id).first()
    if not friend:
        raise HTTPException(status_code=404, detail="User not found")

    return [serialize_expense(db, e) for e in get_expenses_with_friend(db, current_user.id, friend_id)]
