"""Reminders router: nudge friends who owe you money."""

from typing import Annotated
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import models
import schemas
from database import get_db
from dependencies import get_current_user
from utils import reminders as reminder_service


router = APIRouter(prefix="/reminders", tags=["reminders"])


@router.post("", response_model=schemas.Reminder)
def send_reminder(
    reminder: schemas.ReminderCreate,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    db_reminder = reminder_service.create_reminder(db, current_user.id, reminder)
    return reminder_service.serialize_reminder(db, db_reminder)


@router.get("", response_model=list[schemas.Reminder])
def read_reminders(
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    return [
        reminder_service.serialize_reminder(db, r)
        for r in reminder_service.get_reminders_for_user(db, current_user.id)
    ]


@router.post("/{reminder_id}/accept", response_model=schemas.Reminder)
def accept_reminder(
    reminder_id: int,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    reminder = reminder_service.accept_reminder(db, reminder_id, current_user.id)
    return reminder_service.serialize_reminder(db, reminder)


@router.post("/{reminder_id}/reject", response_model=schemas.Reminder)
def reject_reminder(
    reminder_id: int,
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    reminder = reminder_service.reject_reminder(db, reminder_id, current_user.id)
    return reminder_service.serialize_reminder(db, reminder)
