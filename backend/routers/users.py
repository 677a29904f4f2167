# routers/users.py - User directory and administrator actions
from typing import Optional, List

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from accounts import AccountService, DeletionResult
from auth import require_permission, CurrentUser
from database import get_db_session
from events import Notifier, get_notifier
from models import User

router = APIRouter(prefix="/api/v1/users", tags=["Users"])


# --- Schemas ---

class UserOut(BaseModel):
    id: int
    name: str
    email: str
    role_id: int
    role: str
    is_verified: bool
    is_deleted: bool
    created_at: str
    version: int


class RoleAssignment(BaseModel):
    role_id: int


class DeletionOut(BaseModel):
    user_id: int
    reassigned_to: int
    reassigned_tickets: List[int]


# --- Helpers ---

def _user_to_out(u: User) -> UserOut:
    return UserOut(
        id=u.id,
        name=u.name,
        email=u.email,
        role_id=u.role_id,
        role=u.role.name if u.role else "",
        is_verified=u.is_verified,
        is_deleted=u.is_deleted,
        created_at=u.created_at.isoformat() if u.created_at else "",
        version=u.version,
    )


def _deletion_to_out(result: DeletionResult) -> DeletionOut:
    return DeletionOut(
        user_id=result.user_id,
        reassigned_to=result.reassigned_to,
        reassigned_tickets=result.reassigned_ticket_ids,
    )


# --- Endpoints ---

@router.get("", response_model=List[UserOut])
async def list_users(
    response: Response,
    user: CurrentUser = Depends(require_permission("users:read")),
    db: AsyncSession = Depends(get_db_session),
    search: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    """List active (verified, not deleted) users"""
    users, total = await AccountService.list_active_users(db, search=search, limit=limit, offset=offset)
    response.headers["X-Total-Count"] = str(total)
    return [_user_to_out(u) for u in users]


@router.get("/pending", response_model=List[UserOut])
async def list_pending_users(
    user: CurrentUser = Depends(require_permission("users:admin")),
    db: AsyncSession = Depends(get_db_session),
):
    """Registrations waiting for verification"""
    return [_user_to_out(u) for u in await AccountService.list_pending_users(db)]


@router.get("/{user_id}", response_model=UserOut)
async def get_user(
    user_id: int,
    current_user: CurrentUser = Depends(require_permission("users:read")),
    db: AsyncSession = Depends(get_db_session),
):
    return _user_to_out(await AccountService.get_user(db, user_id))


@router.put("/{user_id}/verify", response_model=UserOut)
async def verify_user(
    user_id: int,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(require_permission("users:admin")),
    db: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    """Verify a pending account so the user can log in"""
    target, outbox = await AccountService.verify_user(db, current_user, user_id)
    background_tasks.add_task(notifier.dispatch, outbox)
    return _user_to_out(target)


@router.put("/{user_id}/role", response_model=UserOut)
async def change_user_role(
    user_id: int,
    assignment: RoleAssignment,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(require_permission("users:admin")),
    db: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    target, outbox = await AccountService.change_role(db, current_user, user_id, assignment.role_id)
    background_tasks.add_task(notifier.dispatch, outbox)
    return _user_to_out(target)


@router.delete("/{user_id}", response_model=DeletionOut)
async def delete_user(
    user_id: int,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(require_permission("users:admin")),
    db: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    """Soft-delete a user and hand their tickets to an active administrator"""
    result, outbox = await AccountService.delete_user(db, current_user, user_id)
    background_tasks.add_task(notifier.dispatch, outbox)
    return _deletion_to_out(result)
