# routers/roles.py - Role administration
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_permission, CurrentUser
from database import get_db_session
from events import Notifier, get_notifier
from models import Role, RESERVED_ROLES
from roles import RoleService, RoleCreate, RoleUpdate

router = APIRouter(prefix="/api/v1/roles", tags=["Roles"])


class RoleOut(BaseModel):
    id: int
    name: str
    description: str
    reserved: bool
    member_count: int = 0
    version: int


def _role_to_out(role: Role, member_count: int = 0) -> RoleOut:
    return RoleOut(
        id=role.id,
        name=role.name,
        description=role.description or "",
        reserved=role.name in RESERVED_ROLES,
        member_count=member_count,
        version=role.version,
    )


@router.get("", response_model=List[RoleOut])
async def list_roles(
    user: CurrentUser = Depends(require_permission("roles:admin")),
    db: AsyncSession = Depends(get_db_session),
):
    return [_role_to_out(role, count) for role, count in await RoleService.list_roles(db)]


@router.get("/{role_id}", response_model=RoleOut)
async def get_role(
    role_id: int,
    user: CurrentUser = Depends(require_permission("roles:admin")),
    db: AsyncSession = Depends(get_db_session),
):
    return _role_to_out(await RoleService.get_role(db, role_id))


@router.post("", response_model=RoleOut, status_code=201)
async def create_role(
    data: RoleCreate,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission("roles:admin")),
    db: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    role, outbox = await RoleService.create_role(db, user, data)
    background_tasks.add_task(notifier.dispatch, outbox)
    return _role_to_out(role)


@router.put("/{role_id}", response_model=RoleOut)
async def update_role(
    role_id: int,
    data: RoleUpdate,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission("roles:admin")),
    db: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    """Rename or redescribe a role. Admin and Developer keep their names."""
    role, outbox = await RoleService.update_role(db, user, role_id, data)
    background_tasks.add_task(notifier.dispatch, outbox)
    return _role_to_out(role)


@router.delete("/{role_id}")
async def delete_role(
    role_id: int,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission("roles:admin")),
    db: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    """Delete a role; its members are moved to Developer"""
    moved, outbox = await RoleService.delete_role(db, user, role_id)
    background_tasks.add_task(notifier.dispatch, outbox)
    return {"status": "deleted", "role_id": role_id, "reassigned_users": moved}
