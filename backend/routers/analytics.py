"""Analytics router: what you owed, lent and settled this month."""

from typing import Annotated
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import models
import schemas
from database import get_db
from dependencies import get_current_user
from utils.analytics import get_monthly_analytics


router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.get("/monthly", response_model=schemas.MonthlyAnalytics)
def read_monthly_analytics(
    current_user: Annotated[models.User, Depends(get_current_user)],
    db: Session = Depends(get_db)
):
    return get_monthly_analytics(db, current_user.id)
