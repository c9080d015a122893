"""Settlements router: pay off debts and confirm the external payment's outcome."""

import logging
from typing import Annotated
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import models
import schemas
from database import get_db
from dependencies import get_current_user, get_payment_service
from utils import settlements as settlement_service
from utils.currency import from_minor_units
from utils.errors import UnauthorizedError


logger = logging.getLogger(__name__)


router = APIRouter(tags=["settlements"])


def _verify_settlement_party(db: Session, settlement: models.SettlementTransaction, user_id: int):
    """Only the paying user and the friends being paid may see a settlement."""
    if settlement.user_id == user_id:
        return
    friend_ids = {item.friend_id for item in settlement_service.get_settlement_items(db, settlement.id)}
    if user_id not in friend_ids:
        raise UnauthorizedError("You are not a party to this settlement")


@router.post("/settlements", response_model=schemas.SettlementTransaction)
def create_settlement(
    settlement: schemas.SettlementCreate,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    db_settlement = settlement_service.create_settlement(db, current_user.id, settlement)
    return settlement_service.serialize_settlement(db, db_settlement)


@router.get("/settlements", response_model=list[schemas.SettlementTransaction])
def read_settlements(
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    return [
        settlement_service.serialize_settlement(db, s)
        for s in settlement_service.list_settlements_for_user(db, current_user.id)
    ]


@router.get("/settlements/{settlement_id}", response_model=schemas.SettlementTransaction)
def read_settlement(
    settlement_id: int,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    settlement = settlement_service.get_settlement_or_404(db, settlement_id)
    _verify_settlement_party(db, settlement, current_user.id)
    return settlement_service.serialize_settlement(db, settlement)


@router.post("/settlements/{settlement_id}/confirm", response_model=schemas.SettlementTransaction)
def confirm_settlement(
    settlement_id: int,
    confirmation: schemas.SettlementConfirm,
    service_name: Annotated[str, Depends(get_payment_service)],
    db: Session = Depends(get_db)
):
    logger.info(f"Settlement {settlement_id} confirmation reported by {service_name}")
    settlement = settlement_service.confirm_settlement(db, settlement_id, confirmation)
    return settlement_service.serialize_settlement(db, settlement)


@router.get("/groups/{group_id}/settlement-plan", response_model=list[schemas.SuggestedSettlement])
def read_settlement_plan(
    group_id: int,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    return [
        schemas.SuggestedSettlement(
            friend_id=entry["friend_id"],
            amount=float(from_minor_units(entry["amount"], entry["currency"])),
            currency=entry["currency"]
        )
        for entry in settlement_service.plan_group_settlement(db, current_user.id, group_id)
    ]
