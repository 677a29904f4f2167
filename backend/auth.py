# auth.py - Authentication & authorization for StackFlow
# Features:
# - bcrypt password hashing
# - JWT access tokens carrying id, name, email and role
# - Registration restricted to the organisation's email domain
# - Accounts start unverified and need an administrator to verify them
# - Permission scopes derived from the user's role
# - Brute force protection

import os
import re
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List
from collections import defaultdict

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session, transactional
from exceptions import (
    StackFlowError, ValidationFailed, AuthenticationFailed, Forbidden,
    Conflict, TooManyAttempts,
)
from models import (
    User, Role, ADMIN_ROLE, DEVELOPER_ROLE, PROJECT_MANAGER_ROLE, utcnow,
)

logger = logging.getLogger("stackflow.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY or SECRET_KEY == "change-this-to-a-secure-random-key-in-production":
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "⚠️  JWT_SECRET_KEY not set or insecure. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
ORG_EMAIL_DOMAIN = os.getenv("ORG_EMAIL_DOMAIN", "omnitak.com").lower()
MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_BYTES = 72  # bcrypt only hashes the first 72 bytes
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

security = HTTPBearer()

# In-memory brute force tracker (per worker process)
_login_attempts: Dict[str, list] = defaultdict(list)


# ============================================================
# PERMISSIONS
# ============================================================

# Every authenticated user gets these; roles created at runtime get nothing more
BASE_PERMISSIONS = [
    "projects:read", "tickets:read", "tickets:status",
    "comments:write", "users:read",
]

ROLE_PERMISSIONS = {
    ADMIN_ROLE: [
        "projects:write", "tickets:write", "reports:read",
        "users:admin", "roles:admin", "comments:moderate",
    ],
    PROJECT_MANAGER_ROLE: [
        "tickets:write", "reports:read",
    ],
}


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class UserRegister(BaseModel):
    # Plain strings so empty or malformed values get a 400 with a readable message
    name: str = ""
    email: str = ""
    password: str = ""


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class CurrentUser(BaseModel):
    id: int
    name: str
    email: str
    role: str
    permissions: List[str] = []

    def has_permission(self, scope: str) -> bool:
        return scope in self.permissions

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Registration, login and token handling"""

    @staticmethod
    def password_too_long(password: str) -> bool:
        return len(password.encode("utf-8")) > MAX_PASSWORD_BYTES

    @staticmethod
    def hash_password(password: str) -> str:
        if AuthService.password_too_long(password):
            raise ValidationFailed(f"Password cannot be longer than {MAX_PASSWORD_BYTES} bytes.")
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        # No stored hash can match a password bcrypt refuses to hash
        if AuthService.password_too_long(password):
            return False
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
            "iat": now,
            "type": "access",
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def token_for(user: User) -> str:
        """Issue an access token for a user whose role relationship is loaded"""
        return AuthService.create_access_token({
            "sub": str(user.id),
            "name": user.name,
            "email": user.email,
            "role": user.role.name,
        })

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
            return payload
        except ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except JWTError:
            raise HTTPException(status_code=401, detail="Invalid token")

    @staticmethod
    def _check_brute_force(email: str) -> None:
        """Check if login attempts exceed threshold"""
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
        _login_attempts[email] = [t for t in _login_attempts[email] if t > cutoff]
        if len(_login_attempts[email]) >= MAX_LOGIN_ATTEMPTS:
            raise TooManyAttempts(
                f"Too many login attempts. Try again in {LOGIN_LOCKOUT_MINUTES} minutes."
            )

    @staticmethod
    def _record_failed_attempt(email: str) -> None:
        _login_attempts[email].append(datetime.now(timezone.utc))

    @staticmethod
    def _clear_attempts(email: str) -> None:
        _login_attempts.pop(email, None)

    @staticmethod
    def validate_org_email(email: str) -> str:
        """Normalise an address and check it belongs to the organisation's domain."""
        normalized = email.strip().lower()
        if not EMAIL_PATTERN.match(normalized):
            raise ValidationFailed("Invalid email format.")
        if not normalized.endswith(f"@{ORG_EMAIL_DOMAIN}"):
            raise ValidationFailed(f"Only @{ORG_EMAIL_DOMAIN} email addresses are allowed to register.")
        return normalized

    @staticmethod
    async def name_taken(db: AsyncSession, name: str, exclude_user_id: Optional[int] = None) -> bool:
        stmt = select(User.id).where(
            func.lower(User.name) == name.strip().lower(),
            User.is_deleted == False,  # noqa: E712
        )
        if exclude_user_id is not None:
            stmt = stmt.where(User.id != exclude_user_id)
        result = await db.execute(stmt.limit(1))
        return result.scalar_one_or_none() is not None

    @staticmethod
    @transactional
    async def register_user(db: AsyncSession, user_data: UserRegister) -> User:
        name = user_data.name.strip()
        if not name or not user_data.email.strip() or not user_data.password:
            raise ValidationFailed("Name, email and password are required.")
        if AuthService.password_too_long(user_data.password):
            raise ValidationFailed(f"Password cannot be longer than {MAX_PASSWORD_BYTES} bytes.")

        email = AuthService.validate_org_email(user_data.email)

        stmt = select(User.id).where(User.email == email, User.is_deleted == False)  # noqa: E712
        if (await db.execute(stmt)).scalar_one_or_none() is not None:
            raise Conflict("Email already registered.")
        if await AuthService.name_taken(db, name):
            raise Conflict("Username already taken.")

        role = (await db.execute(select(Role).where(Role.name == DEVELOPER_ROLE))).scalar_one_or_none()
        if role is None:
            raise StackFlowError(f"Default role '{DEVELOPER_ROLE}' is not configured.")

        new_user = User(
            name=name,
            email=email,
            password_hash=AuthService.hash_password(user_data.password),
            role_id=role.id,
            created_at=utcnow(),
            is_verified=False,
            is_deleted=False,
        )
        db.add(new_user)
        await db.flush()
        logger.info(f"Registered user {new_user.id} ({email}), pending verification")
        return new_user

    @staticmethod
    async def authenticate_user(db: AsyncSession, email: str, password: str) -> User:
        """Return the user for valid credentials or raise AuthenticationFailed."""
        email = email.strip().lower()
        AuthService._check_brute_force(email)

        # Prefer the live account when a deleted one shares the address
        stmt = (
            select(User)
            .options(selectinload(User.role))
            .where(User.email == email)
            .order_by(User.is_deleted, User.id.desc())
            .limit(1)
        )
        user = (await db.execute(stmt)).scalar_one_or_none()

        if not user or not AuthService.verify_password(password, user.password_hash):
            AuthService._record_failed_attempt(email)
            raise AuthenticationFailed("Invalid email or password.")

        if user.is_deleted:
            raise AuthenticationFailed("Account is deleted.")
        if not user.is_verified:
            raise AuthenticationFailed("Account is not verified. Please contact an administrator.")

        AuthService._clear_attempts(email)
        return user

    @staticmethod
    def get_user_permissions(role_name: str) -> List[str]:
        return BASE_PERMISSIONS + ROLE_PERMISSIONS.get(role_name, [])

    @staticmethod
    def build_current_user(user: User) -> CurrentUser:
        return CurrentUser(
            id=user.id,
            name=user.name,
            email=user.email,
            role=user.role.name,
            permissions=AuthService.get_user_permissions(user.role.name),
        )


def ensure_permission(actor: CurrentUser, scope: str) -> None:
    """Raise Forbidden unless the actor holds scope. Used by the service layer."""
    if not actor.has_permission(scope):
        raise Forbidden(f"Missing required permission: {scope}")


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    payload = AuthService.verify_token(credentials.credentials)

    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")

    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token")

    stmt = select(User).options(selectinload(User.role)).where(User.id == user_id)
    result = await db.execute(stmt)
    user = result.scalar_one_or_none()

    # Role comes from the database, so role changes apply to existing tokens
    if not user or user.is_deleted:
        raise HTTPException(status_code=401, detail="User not found or deleted")
    if not user.is_verified:
        raise HTTPException(status_code=401, detail="Account is not verified")

    return AuthService.build_current_user(user)


def require_permission(*scopes: str):
    """Dependency factory: require user to have specific permission scopes"""
    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        for scope in scopes:
            if scope not in user.permissions:
                raise HTTPException(
                    status_code=403,
                    detail=f"Missing required permission: {scope}",
                )
        return user
    return _check
