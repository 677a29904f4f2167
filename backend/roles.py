# roles.py - Role management (administrators only)
import logging
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, ensure_permission
from database import transactional
from events import Outbox, CREATED, UPDATED, DELETED, ROLE_UPDATED
from exceptions import ValidationFailed, NotFound, Conflict
from models import Role, User, DEVELOPER_ROLE, RESERVED_ROLES

logger = logging.getLogger("stackflow.roles")


class RoleCreate(BaseModel):
    name: str = ""
    description: str = ""


class RoleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    version: Optional[int] = Field(None, description="Version the client last read")


def _clean_name(name: Optional[str]) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationFailed("Role name is required.")
    if len(cleaned) > 255:
        raise ValidationFailed("Role name cannot exceed 255 characters.")
    return cleaned


async def _get_role(db: AsyncSession, role_id: int) -> Role:
    role = (await db.execute(select(Role).where(Role.id == role_id))).scalar_one_or_none()
    if role is None:
        raise NotFound("Role not found")
    return role


async def _ensure_unique(db: AsyncSession, name: str, exclude_id: Optional[int] = None) -> None:
    stmt = select(Role.id).where(func.lower(Role.name) == name.lower())
    if exclude_id is not None:
        stmt = stmt.where(Role.id != exclude_id)
    if (await db.execute(stmt.limit(1))).scalar_one_or_none() is not None:
        raise Conflict(f"A role named '{name}' already exists.")


class RoleService:

    @staticmethod
    async def list_roles(db: AsyncSession) -> List[Tuple[Role, int]]:
        """Roles with the number of non-deleted members"""
        member_count = (
            select(func.count(User.id))
            .where(User.role_id == Role.id, User.is_deleted == False)  # noqa: E712
            .correlate(Role)
            .scalar_subquery()
        )
        result = await db.execute(select(Role, member_count).order_by(Role.name))
        return [(role, count or 0) for role, count in result.all()]

    @staticmethod
    async def get_role(db: AsyncSession, role_id: int) -> Role:
        return await _get_role(db, role_id)

    @staticmethod
    @transactional
    async def create_role(db: AsyncSession, actor: CurrentUser, data: RoleCreate) -> Tuple[Role, Outbox]:
        ensure_permission(actor, "roles:admin")
        name = _clean_name(data.name)
        await _ensure_unique(db, name)

        role = Role(name=name, description=(data.description or "").strip())
        db.add(role)
        await db.flush()
        logger.info(f"Role '{name}' created by {actor.id}")

        outbox = Outbox()
        outbox.record("role", role.id, CREATED)
        return role, outbox

    @staticmethod
    @transactional
    async def update_role(db: AsyncSession, actor: CurrentUser, role_id: int, data: RoleUpdate) -> Tuple[Role, Outbox]:
        ensure_permission(actor, "roles:admin")
        role = await _get_role(db, role_id)
        if data.version is not None and data.version != role.version:
            raise Conflict("The role was modified by someone else. Reload and try again.")

        if data.name is not None:
            name = _clean_name(data.name)
            if role.name in RESERVED_ROLES and name != role.name:
                raise ValidationFailed(f"The '{role.name}' role cannot be renamed.")
            if name != role.name:
                await _ensure_unique(db, name, exclude_id=role.id)
                role.name = name
        if data.description is not None:
            role.description = data.description.strip()
        await db.flush()

        outbox = Outbox()
        outbox.record("role", role.id, UPDATED)
        return role, outbox

    @staticmethod
    @transactional
    async def delete_role(db: AsyncSession, actor: CurrentUser, role_id: int) -> Tuple[int, Outbox]:
        """Delete a role after moving its members to Developer. Returns the number of users moved."""
        ensure_permission(actor, "roles:admin")
        role = await _get_role(db, role_id)
        if role.name in RESERVED_ROLES:
            raise ValidationFailed(f"The '{role.name}' role cannot be deleted.")

        members = (await db.execute(select(User).where(User.role_id == role.id))).scalars().all()
        outbox = Outbox()
        if members:
            developer = (
                await db.execute(select(Role).where(Role.name == DEVELOPER_ROLE))
            ).scalar_one_or_none()
            if developer is None:
                raise Conflict(
                    f"Cannot delete role '{role.name}': the '{DEVELOPER_ROLE}' role needed "
                    "to take over its members does not exist."
                )
            for user in members:
                user.role_id = developer.id
                outbox.record("user", user.id, ROLE_UPDATED)
            await db.flush()

        await db.delete(role)
        await db.flush()
        logger.info(f"Role '{role.name}' deleted by {actor.id}; {len(members)} member(s) moved to {DEVELOPER_ROLE}")

        outbox.record("role", role_id, DELETED)
        return len(members), outbox
