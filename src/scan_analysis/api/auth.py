"""
Token authentication for the API.

Users are the demo accounts below; tokens are HS256 JWTs signed with the
configured secret.
"""

import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from ..services.access import require_administrator

logger = logging.getLogger(__name__)

OAUTH2_SCHEME = OAuth2PasswordBearer(tokenUrl="api/token")
JWT_ALGORITHM = "HS256"

# Demo users (in a real deployment these come from the user service)
DEMO_USERS = {
    "demo": {
        "password_hash": "5e884898da28047151d0e56f8dc6292773603d0d6aabbdd62a11ef721d1542d8",  # password
        "name": "Demo User",
        "role": "healthcare_professional"
    },
    "admin": {
        "password_hash": "8c6976e5b5410415bde908bd4dee15dfb167a9c873fc4bb8a81f6f2ab448a918",  # admin
        "name": "Admin User",
        "role": "administrator"
    }
}


def hash_password(password: str) -> str:
    return hashlib.sha256(password.encode()).hexdigest()


def authenticate_user(username: str, password: str) -> bool:
    """
    Authenticate a user with username and password.

    Args:
        username: The username
        password: The password

    Returns:
        bool: True if authentication is successful, False otherwise
    """
    if username in DEMO_USERS:
        stored_hash = DEMO_USERS[username]["password_hash"]
        if hmac.compare_digest(stored_hash, hash_password(password)):
            logger.info(f"User {username} authenticated successfully")
            return True

    logger.warning(f"Failed authentication attempt for user {username}")
    return False


def create_access_token(data: dict, secret_key: str, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: The claims to encode in the token
        secret_key: Signing secret
        expires_delta: Token lifetime (defaults to 24 hours)

    Returns:
        str: The encoded JWT token
    """
    to_encode = data.copy()
    to_encode["exp"] = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=24))
    return jwt.encode(to_encode, secret_key, algorithm=JWT_ALGORITHM)


def get_current_user(request: Request, token: str = Depends(OAUTH2_SCHEME)) -> dict:
    """
    Resolve the caller from the bearer token.

    Raises:
        HTTPException: 401 if the token is missing, invalid or names an unknown user
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    secret_key = request.app.state.config.jwt_secret_key
    try:
        payload = jwt.decode(token, secret_key, algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise credentials_exception

    username = payload.get("sub")
    if username is None or username not in DEMO_USERS:
        raise credentials_exception

    return {
        "username": username,
        "name": DEMO_USERS[username]["name"],
        "role": DEMO_USERS[username]["role"]
    }


def get_admin_user(current_user: dict = Depends(get_current_user)) -> dict:
    """Caller dependency for administrative endpoints (403 otherwise)."""
    require_administrator(current_user, "perform administrative actions")
    return current_user
