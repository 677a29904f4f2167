# accounts.py - User account lifecycle
# Self-service (rename, password change, self-deletion) and administrator
# actions (verify, change role, delete). Users are never hard-deleted:
# deletion sets is_deleted and hands the user's open work to an active
# administrator in the same transaction.

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from sqlalchemy import select, func, or_
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AuthService, CurrentUser, ensure_permission, MIN_PASSWORD_LENGTH, MAX_PASSWORD_BYTES
from database import transactional
from events import Outbox, UPDATED, DELETED, VERIFIED, ROLE_UPDATED
from exceptions import ValidationFailed, Forbidden, NotFound, Conflict
from models import User, Role, Ticket, ADMIN_ROLE

logger = logging.getLogger("stackflow.accounts")


@dataclass
class DeletionResult:
    user_id: int
    reassigned_to: int
    reassigned_ticket_ids: List[int] = field(default_factory=list)


async def _load_user(db: AsyncSession, user_id: int, include_deleted: bool = False) -> User:
    stmt = select(User).options(selectinload(User.role)).where(User.id == user_id)
    user = (await db.execute(stmt)).scalar_one_or_none()
    if user is None or (user.is_deleted and not include_deleted):
        raise NotFound("User not found")
    return user


async def _designated_admin(db: AsyncSession, target: User, actor_id: Optional[int]) -> Optional[User]:
    """Active verified Admin other than target: the actor when eligible, else the lowest id."""
    stmt = (
        select(User)
        .join(Role, User.role_id == Role.id)
        .where(
            Role.name == ADMIN_ROLE,
            User.id != target.id,
            User.is_deleted == False,  # noqa: E712
            User.is_verified == True,  # noqa: E712
        )
        .order_by(User.id)
    )
    admins = (await db.execute(stmt)).scalars().all()
    for admin in admins:
        if admin.id == actor_id:
            return admin
    return admins[0] if admins else None


def _claim(admin: User) -> None:
    """Add an admin row to the flush so a concurrent writer of that row fails its version check."""
    flag_modified(admin, "is_verified")


async def _soft_delete_with_reassignment(
    db: AsyncSession, target: User, actor_id: Optional[int]
) -> Tuple[DeletionResult, Outbox]:
    admin = await _designated_admin(db, target, actor_id)
    if admin is None:
        if target.role.name == ADMIN_ROLE:
            raise Conflict(
                "Cannot delete the account of the last active administrator. "
                "Verify or promote another administrator first."
            )
        raise Conflict("No active administrator is available to take over the user's tickets.")

    tickets = (await db.execute(select(Ticket).where(Ticket.assigned_to == target.id))).scalars().all()
    for ticket in tickets:
        ticket.assigned_to = admin.id
    target.is_deleted = True
    _claim(admin)
    await db.flush()

    result = DeletionResult(
        user_id=target.id,
        reassigned_to=admin.id,
        reassigned_ticket_ids=[t.id for t in tickets],
    )
    logger.info(
        f"User {target.id} soft-deleted; {len(tickets)} ticket(s) reassigned to admin {admin.id}"
    )

    outbox = Outbox()
    outbox.record("user", target.id, DELETED)
    for ticket in tickets:
        outbox.record("ticket", ticket.id, UPDATED)
    outbox.email(
        "AccountDeleted", "Your StackFlow account has been deleted", [target.email],
        UserName=target.name,
    )
    if tickets:
        outbox.email(
            "AdminTicketReassignment", f"Tickets reassigned from {target.name}", [admin.email],
            DeletedUserName=target.name,
            AdminUserName=admin.name,
            TicketCount=len(tickets),
        )
    return result, outbox


class AccountService:
    """User lifecycle operations. Mutations commit exactly once."""

    # --------------------------------------------------------
    # Queries
    # --------------------------------------------------------

    @staticmethod
    async def list_active_users(
        db: AsyncSession, search: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[User], int]:
        filters = [User.is_deleted == False, User.is_verified == True]  # noqa: E712
        if search:
            pattern = f"%{search.strip()}%"
            filters.append(or_(
                User.name.ilike(pattern),
                User.email.ilike(pattern),
                Role.name.ilike(pattern),
            ))

        count_stmt = select(func.count(User.id)).join(Role, User.role_id == Role.id).where(*filters)
        total = (await db.execute(count_stmt)).scalar() or 0

        stmt = (
            select(User)
            .join(Role, User.role_id == Role.id)
            .options(selectinload(User.role))
            .where(*filters)
            .order_by(User.name)
            .limit(limit)
            .offset(offset)
        )
        users = (await db.execute(stmt)).scalars().all()
        return list(users), total

    @staticmethod
    async def list_pending_users(db: AsyncSession) -> List[User]:
        stmt = (
            select(User)
            .options(selectinload(User.role))
            .where(User.is_verified == False, User.is_deleted == False)  # noqa: E712
            .order_by(User.created_at, User.id)
        )
        return list((await db.execute(stmt)).scalars().all())

    @staticmethod
    async def get_user(db: AsyncSession, user_id: int) -> User:
        return await _load_user(db, user_id)

    # --------------------------------------------------------
    # Self-service
    # --------------------------------------------------------

    @staticmethod
    @transactional
    async def change_username(db: AsyncSession, actor: CurrentUser, new_name: str) -> Tuple[User, Outbox]:
        name = (new_name or "").strip()
        if not name:
            raise ValidationFailed("Username cannot be empty.")
        if len(name) > 150:
            raise ValidationFailed("Username cannot exceed 150 characters.")

        user = await _load_user(db, actor.id)
        if await AuthService.name_taken(db, name, exclude_user_id=user.id):
            raise Conflict("Username is already taken by another user.")

        user.name = name
        await db.flush()

        outbox = Outbox()
        outbox.record("user", user.id, UPDATED)
        return user, outbox

    @staticmethod
    @transactional
    async def change_password(
        db: AsyncSession, actor: CurrentUser, current_password: str, new_password: str, confirm_password: str
    ) -> None:
        user = await _load_user(db, actor.id)
        if not AuthService.verify_password(current_password or "", user.password_hash):
            raise ValidationFailed("Incorrect current password.")
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationFailed(f"New password must be at least {MIN_PASSWORD_LENGTH} characters long.")
        if AuthService.password_too_long(new_password):
            raise ValidationFailed(f"New password cannot be longer than {MAX_PASSWORD_BYTES} bytes.")
        if new_password != confirm_password:
            raise ValidationFailed("New password and confirmation password do not match.")

        user.password_hash = AuthService.hash_password(new_password)
        await db.flush()
        logger.info(f"User {user.id} changed their password")

    @staticmethod
    @transactional
    async def delete_self(db: AsyncSession, actor: CurrentUser) -> Tuple[DeletionResult, Outbox]:
        user = await _load_user(db, actor.id, include_deleted=True)
        if user.is_deleted:
            raise Conflict("Account is already deleted.")
        return await _soft_delete_with_reassignment(db, user, actor_id=user.id)

    # --------------------------------------------------------
    # Administration
    # --------------------------------------------------------

    @staticmethod
    @transactional
    async def verify_user(db: AsyncSession, actor: CurrentUser, user_id: int) -> Tuple[User, Outbox]:
        ensure_permission(actor, "users:admin")
        user = await _load_user(db, user_id)
        if user.is_verified:
            raise Conflict("User is already verified.")

        user.is_verified = True
        await db.flush()
        logger.info(f"User {user.id} verified by {actor.id}")

        outbox = Outbox()
        outbox.record("user", user.id, VERIFIED)
        outbox.email(
            "AccountVerified", "Your StackFlow account has been verified", [user.email],
            UserName=user.name,
        )
        return user, outbox

    @staticmethod
    @transactional
    async def change_role(db: AsyncSession, actor: CurrentUser, user_id: int, role_id: int) -> Tuple[User, Outbox]:
        ensure_permission(actor, "users:admin")
        if user_id == actor.id:
            raise Forbidden("You cannot change your own role.")

        role = (await db.execute(select(Role).where(Role.id == role_id))).scalar_one_or_none()
        if role is None:
            raise ValidationFailed("Role not found.")

        user = await _load_user(db, user_id)
        old_role = user.role.name
        if old_role == ADMIN_ROLE and role.name != ADMIN_ROLE:
            # The acting admin must still be one when the demotion commits
            _claim(await _load_user(db, actor.id))
        user.role = role
        await db.flush()
        logger.info(f"User {user.id} role changed {old_role} -> {role.name} by {actor.id}")

        outbox = Outbox()
        outbox.record("user", user.id, ROLE_UPDATED)
        return user, outbox

    @staticmethod
    @transactional
    async def delete_user(db: AsyncSession, actor: CurrentUser, user_id: int) -> Tuple[DeletionResult, Outbox]:
        ensure_permission(actor, "users:admin")
        if user_id == actor.id:
            raise Forbidden("You cannot delete your own account here. Use the account settings instead.")

        user = await _load_user(db, user_id, include_deleted=True)
        if user.is_deleted:
            raise Conflict("User is already deleted.")
        return await _soft_delete_with_reassignment(db, user, actor_id=actor.id)
