# routers/auth.py - Registration, login and self-service account endpoints
from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from accounts import AccountService
from auth import (
    AuthService, UserRegister, UserLogin, TokenResponse,
    get_current_user, CurrentUser, ACCESS_TOKEN_EXPIRE_MINUTES,
)
from database import get_db_session
from events import Notifier, get_notifier
from models import User
from routers.users import UserOut, DeletionOut, _user_to_out, _deletion_to_out

router = APIRouter(prefix="/api/v1/account", tags=["Account"])


class RegistrationOut(BaseModel):
    message: str
    user: UserOut


class UsernameChange(BaseModel):
    new_username: str = ""


class PasswordChange(BaseModel):
    current_password: str = ""
    new_password: str = ""
    confirm_password: str = ""


def _build_token_response(user_obj: User) -> TokenResponse:
    """Build token response from a user ORM instance with its role loaded"""
    return TokenResponse(
        access_token=AuthService.token_for(user_obj),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user={
            "id": user_obj.id,
            "name": user_obj.name,
            "email": user_obj.email,
            "role": user_obj.role.name,
            "permissions": AuthService.get_user_permissions(user_obj.role.name),
        },
    )


@router.post("/register", response_model=RegistrationOut, status_code=201)
async def register(
    user_data: UserRegister,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a new account. It stays unusable until an administrator verifies it."""
    user = await AuthService.register_user(db, user_data)
    user = await AccountService.get_user(db, user.id)
    return RegistrationOut(
        message="Registration successful. Your account is pending administrator verification.",
        user=_user_to_out(user),
    )


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive an access token"""
    user = await AuthService.authenticate_user(db, credentials.email, credentials.password)
    return _build_token_response(user)


@router.get("/me")
async def get_current_user_info(user: CurrentUser = Depends(get_current_user)):
    """Get current authenticated user information"""
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "permissions": user.permissions,
    }


@router.put("/me/username", response_model=UserOut)
async def change_username(
    body: UsernameChange,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    updated, outbox = await AccountService.change_username(db, user, body.new_username)
    background_tasks.add_task(notifier.dispatch, outbox)
    return _user_to_out(updated)


@router.put("/me/password")
async def change_password(
    body: PasswordChange,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Change current user's password"""
    await AccountService.change_password(
        db, user, body.current_password, body.new_password, body.confirm_password
    )
    return {"status": "password_changed", "message": "Password updated successfully"}


@router.delete("/me", response_model=DeletionOut)
async def delete_my_account(
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    """Soft-delete your own account; assigned tickets move to an active administrator"""
    result, outbox = await AccountService.delete_self(db, user)
    background_tasks.add_task(notifier.dispatch, outbox)
    return _deletion_to_out(result)
