"""Balances router: ledger summaries for the current user and per group."""

from typing import Annotated, Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import models
import schemas
from database import get_db
from dependencies import get_current_user
from utils.validation import get_group_or_404, verify_group_membership
from utils.balances import get_balance_summary, get_group_balances


router = APIRouter(tags=["balances"])


@router.get("/balances", response_model=schemas.BalanceSummary)
def read_balances(
    current_user: Annotated[models.User, Depends(get_current_user)],
    target_currency: Optional[str] = None,
    db: Session = Depends(get_db)
):
    if target_currency:
        target_currency = target_currency.strip().upper()
    return get_balance_summary(db, current_user.id, target_currency)


@router.get("/groups/{group_id}/balances", response_model=list[schemas.GroupBalance])
def read_group_balances(
    group_id: int,
    current_user: Annotated[models.User, Depends(get_current_user)],
    mine_only: bool = False,
    db: Session = Depends(get_db)
):
    get_group_or_404(db, group_id)
    verify_group_membership(db, group_id, current_user.id)

    return get_group_balances(db, group_id, current_user.id if mine_only else None)
