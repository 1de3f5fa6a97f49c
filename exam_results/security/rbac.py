"""
exam_results/security/rbac.py
Centralized Role-Based Access Control

Authentication happens upstream; this module turns the bearer token into a
CallerIdentity and enforces roles. Services call require_role() themselves,
so the engine refuses unauthorized callers even outside HTTP.

Roles: "exam_controller", "candidate", "super_admin"
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from exam_results.config.settings import settings
from exam_results.errors import AuthorizationError, UnauthorizedError, ErrorCode
from exam_results.orm.base import utcnow

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


class Role(str, Enum):
    EXAM_CONTROLLER = "exam_controller"
    CANDIDATE = "candidate"
    SUPER_ADMIN = "super_admin"


VALID_ROLES = {role.value for role in Role}


@dataclass(frozen=True)
class CallerIdentity:
    """Already-authenticated caller. candidate_id is set for candidate callers."""
    user_id: int
    role: Role
    candidate_id: Optional[int] = None


# ================= TOKEN UTILS =================

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token with sub, role and optional candidate_id"""
    if data.get("role") not in VALID_ROLES:
        raise ValueError(f"Invalid role: {data.get('role')}")

    to_encode = data.copy()
    expire = utcnow() + (expires_delta or timedelta(minutes=30))
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_caller(token: str) -> CallerIdentity:
    """Decode a bearer token into a CallerIdentity or raise UnauthorizedError."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise UnauthorizedError("Could not validate credentials")

    user_id = payload.get("sub")
    role = payload.get("role")
    if user_id is None or role not in VALID_ROLES:
        logger.error(f"Invalid token payload: sub={user_id}, role={role}")
        raise UnauthorizedError("Could not validate credentials")

    candidate_id = payload.get("candidate_id")
    return CallerIdentity(
        user_id=int(user_id),
        role=Role(role),
        candidate_id=int(candidate_id) if candidate_id is not None else None,
    )


# ================= AUTH DEPENDENCIES =================

async def get_current_caller(token: Optional[str] = Depends(oauth2_scheme)) -> CallerIdentity:
    """FastAPI dependency: caller identity from the Authorization header."""
    if not token:
        raise UnauthorizedError()
    return decode_caller(token)


def require_role(caller: Optional[CallerIdentity], *roles: Role) -> CallerIdentity:
    """
    Raise AuthorizationError unless the caller holds one of the roles.
    """
    if caller is None:
        raise AuthorizationError("Caller identity is required")
    if caller.role not in roles:
        logger.warning(
            f"Access denied: user {caller.user_id} has role {caller.role.value}, "
            f"expected one of {[r.value for r in roles]}"
        )
        raise AuthorizationError(
            "Only exam controllers can perform this action"
            if roles == (Role.EXAM_CONTROLLER,)
            else "Caller lacks the required role",
            details={"required_roles": [r.value for r in roles], "role": caller.role.value}
        )
    return caller


def require_exam_controller(caller: CallerIdentity = Depends(get_current_caller)) -> CallerIdentity:
    """
    Require exam controller role.
    Use as: Depends(require_exam_controller)
    """
    return require_role(caller, Role.EXAM_CONTROLLER)


def require_attempt_owner_or_controller(caller: Optional[CallerIdentity], student_id: int) -> CallerIdentity:
    """Exam controllers may act on any attempt; candidates only on their own."""
    if caller is None:
        raise AuthorizationError("Caller identity is required")
    if caller.role == Role.EXAM_CONTROLLER:
        return caller
    if caller.role == Role.CANDIDATE and caller.candidate_id == student_id:
        return caller
    logger.warning(f"Ownership check failed: user {caller.user_id} on candidate {student_id}")
    raise AuthorizationError(
        "This attempt does not belong to you",
        code=ErrorCode.OWNERSHIP_VIOLATION,
        details={"student_id": student_id}
    )
