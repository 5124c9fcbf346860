# core/security.py
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlmodel import Session, select

from core.config import settings
from core.database import get_session
from models.models import User

# Tokens are issued by the portal's identity provider; this service only reads them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

UNAUTHENTICATED = {"WWW-Authenticate": "Bearer"}


# ========================================
# 👤 Identity
# ========================================
@dataclass(frozen=True)
class IdentityClaim:
    """The authenticated principal, as trusted by the access core."""

    user_id: int
    email: str
    role: str


# ========================================
# 🔑 Bearer tokens
# ========================================
def create_access_token(claims: Dict[str, Any], lifetime: Optional[timedelta] = None) -> str:
    lifetime = lifetime or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {**claims, "exp": datetime.now(timezone.utc) + lifetime}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def create_token_for_user(user: User) -> str:
    """Token in the shape the identity provider issues (used by seeds and tests)."""
    return create_access_token({"sub": user.email, "user_id": user.id})


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token.",
            headers=UNAUTHENTICATED,
        )


def _user_for_claims(session: Session, claims: Dict[str, Any]) -> Optional[User]:
    """Prefer the user id claim; fall back to the (lower-cased) email subject."""
    if claims.get("user_id"):
        user = session.get(User, claims["user_id"])
        if user:
            return user
    subject = claims.get("sub")
    if subject:
        return session.exec(select(User).where(User.email == subject.strip().lower())).first()
    return None


# ========================================
# 👤 Dependencies
# ========================================
def get_current_user(token: str = Depends(oauth2_scheme), session: Session = Depends(get_session)) -> User:
    claims = decode_token(token)
    if not (claims.get("user_id") or claims.get("sub")):
        raise HTTPException(status_code=401, detail="Token carries no identity", headers=UNAUTHENTICATED)

    user = _user_for_claims(session, claims)
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user", headers=UNAUTHENTICATED)
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is inactive")
    return user


def get_current_identity(current_user: User = Depends(get_current_user)) -> IdentityClaim:
    """The caller as an IdentityClaim; the role always comes from the user row."""
    return IdentityClaim(
        user_id=current_user.id,
        email=str(current_user.email).strip().lower(),
        role=current_user.role,
    )
