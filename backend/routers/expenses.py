"""Expenses router: create, read, update, delete expenses and record manual payments."""

from typing import Annotated
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import models
import schemas
from database import get_db
from dependencies import get_current_user
from utils import expenses as expense_service
from utils.validation import get_group_or_404, verify_group_membership


router = APIRouter(tags=["expenses"])


@router.post("/expenses", response_model=schemas.Expense)
def create_expense(
    expense: schemas.ExpenseCreate,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    db_expense = expense_service.create_expense(db, current_user.id, expense)
    return expense_service.serialize_expense(db, db_expense)


@router.get("/expenses", response_model=list[schemas.Expense])
def read_expenses(
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    return [
        expense_service.serialize_expense(db, e)
        for e in expense_service.list_expenses_for_user(db, current_user.id)
    ]


@router.get("/expenses/{expense_id}", response_model=schemas.Expense)
def read_expense(
    expense_id: int,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    expense = expense_service.get_expense_or_404(db, expense_id)
    participants = expense_service.get_participants(db, expense_id)
    expense_service.verify_expense_access(
        db, current_user.id, expense.group_id, expense.payer_id, [p.user_id for p in participants]
    )
    return expense_service.serialize_expense(db, expense)


@router.put("/expenses/{expense_id}", response_model=schemas.Expense)
def update_expense(
    expense_id: int,
    expense_update: schemas.ExpenseUpdate,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    expense = expense_service.edit_expense(db, current_user.id, expense_id, expense_update)
    return expense_service.serialize_expense(db, expense)


@router.delete("/expenses/{expense_id}")
def delete_expense(
    expense_id: int,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    expense_service.delete_expense(db, current_user.id, expense_id)
    return {"message": "Expense deleted successfully"}


@router.post("/payments", response_model=schemas.Expense)
def record_payment(
    payment: schemas.PaymentCreate,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    expense = expense_service.record_payment(db, current_user.id, payment)
    return expense_service.serialize_expense(db, expense)


@router.get("/groups/{group_id}/expenses", response_model=list[schemas.Expense])
def read_group_expenses(
    group_id: int,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    get_group_or_404(db, group_id)
    verify_group_membership(db, group_id, current_user.id)

    return [
        expense_service.serialize_expense(db, e)
        for e in expense_service.list_group_expenses(db, group_id)
    ]
