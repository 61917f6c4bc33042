"""Bearer JWT verification for API routes.

Tokens are issued by the accounts service and verified locally with the
shared secret. Claims used: `sub` (user id), `email`, `role`.
"""

import logging
from typing import Dict

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import JWT_ALGORITHM, JWT_SECRET
from models import User

logger = logging.getLogger(__name__)

security = HTTPBearer()


def decode_token(token: str) -> Dict:
    """Verify a JWT and return its payload.

    Raises:
        HTTPException: 401 if the token is expired or invalid
    """
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired"
        )
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}"
        )


def create_access_token(user_id: str, email: str = None, role: str = "customer") -> str:
    """Issue a token for the given user (used by scripts and tests)."""
    return jwt.encode({"sub": user_id, "email": email, "role": role}, JWT_SECRET, algorithm=JWT_ALGORITHM)


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> User:
    payload = decode_token(credentials.credentials)
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no subject"
        )
    return User(id=user_id, email=payload.get("email"), role=payload.get("role") or "customer")


async def get_current_admin(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != "admin":
        logger.warning(f"User {current_user.id} attempted admin access")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user
