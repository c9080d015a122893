"""Shared dependencies for authentication."""

from typing import Annotated
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

import auth
from database import get_db
from utils.validation import get_user_by_email


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


async def get_current_user(
    token: Annotated[str, Depends(oauth2_scheme)], 
    db: Session = Depends(get_db)
):
    """Get the current authenticated user from the JWT token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    email = auth.decode_access_token(token)
    if email is None:
        raise credentials_exception
    user = get_user_by_email(db, email=email)
    if user is None or not user.is_active:
        raise credentials_exception
    return user


async def get_payment_service(token: Annotated[str, Depends(oauth2_scheme)]):
    """Only the payment-execution service may report settlement outcomes."""
    service_name = auth.decode_service_token(token)
    if service_name is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Settlements can only be confirmed by the payment service",
        )
    return service_name
