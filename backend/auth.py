import os
from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt

SECRET_KEY = os.environ.get("SECRET_KEY", "your-secret-key-keep-it-secret")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 30  # Short-lived access token
SERVICE_TOKEN_EXPIRE_MINUTES = int(os.environ.get("SERVICE_TOKEN_EXPIRE_MINUTES", "1440"))

# Token types; a user's access token never passes as a service token
ACCESS = "access"
SERVICE = "service"

def _encode(data: dict, token_type: str, expires_delta: timedelta):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode.update({"exp": expire, "type": token_type})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

def _decode_subject(token: str, token_type: str) -> Optional[str]:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != token_type:
        return None
    return payload.get("sub")

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    """Create short-lived JWT access token"""
    return _encode(data, ACCESS, expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))

def decode_access_token(token: str) -> Optional[str]:
    """Return the subject (user email) of a valid access token, or None"""
    return _decode_subject(token, ACCESS)

def create_service_token(service_name: str, expires_delta: Optional[timedelta] = None):
    """Token for the payment-execution service that reports verified settlement results"""
    return _encode(
        {"sub": service_name},
        SERVICE,
        expires_delta or timedelta(minutes=SERVICE_TOKEN_EXPIRE_MINUTES)
    )

def decode_service_token(token: str) -> Optional[str]:
    """Return the service name of a valid service token, or None"""
    return _decode_subject(token, SERVICE)
