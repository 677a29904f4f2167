# tracker.py - Projects, tickets and comments
# Permission checks happen here as well as in the routers, so every
# operation is safe to call directly. Each mutation returns the entity
# together with an Outbox for Notifier.dispatch.

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, ensure_permission
from database import transactional
from events import (
    Outbox, ticket_recipients, ticket_link,
    CREATED, UPDATED, DELETED, COMMENTED,
)
from exceptions import ValidationFailed, Forbidden, NotFound, Conflict
from models import (
    Project, Ticket, Comment, User, ProjectStatus, TicketStatus, TicketPriority, utcnow,
)
from workflow import apply_status, parse_status

logger = logging.getLogger("stackflow.tracker")

MAX_TITLE_LENGTH = 255


# ============================================================
# SCHEMAS
# ============================================================

class ProjectCreate(BaseModel):
    name: str = ""
    description: Optional[str] = None
    status: ProjectStatus = ProjectStatus.ACTIVE
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None


class ProjectUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[ProjectStatus] = None
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    version: Optional[int] = Field(None, description="Version the client last read")


class TicketCreate(BaseModel):
    title: str = ""
    description: Optional[str] = None
    project_id: int
    assigned_to: Optional[int] = None
    status: str = TicketStatus.TO_DO.value
    priority: TicketPriority = TicketPriority.LOW
    due_date: Optional[datetime] = None


class TicketUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    project_id: Optional[int] = None
    assigned_to: Optional[int] = None
    status: Optional[str] = None
    priority: Optional[TicketPriority] = None
    due_date: Optional[datetime] = None
    version: Optional[int] = Field(None, description="Version the client last read")


class StatusChange(BaseModel):
    status: str
    version: Optional[int] = None


class CommentCreate(BaseModel):
    content: str = ""


class CommentUpdate(BaseModel):
    content: str = ""
    version: Optional[int] = None


# ============================================================
# HELPERS
# ============================================================

def _check_version(entity, expected: Optional[int], label: str) -> None:
    if expected is not None and expected != entity.version:
        raise Conflict(f"The {label} was modified by someone else. Reload and try again.")


def _clean_title(title: Optional[str]) -> str:
    cleaned = (title or "").strip()
    if not cleaned:
        raise ValidationFailed("Title is required.")
    if len(cleaned) > MAX_TITLE_LENGTH:
        raise ValidationFailed(f"Title cannot exceed {MAX_TITLE_LENGTH} characters.")
    return cleaned


def _clean_content(content: Optional[str]) -> str:
    cleaned = (content or "").strip()
    if not cleaned:
        raise ValidationFailed("Comment content cannot be empty.")
    return cleaned


def _ticket_query():
    return select(Ticket).options(
        selectinload(Ticket.project),
        selectinload(Ticket.assignee),
        selectinload(Ticket.creator),
    )


async def _load_project(db: AsyncSession, project_id: int) -> Project:
    stmt = select(Project).options(selectinload(Project.creator)).where(Project.id == project_id)
    project = (await db.execute(stmt)).scalar_one_or_none()
    if project is None:
        raise NotFound("Project not found")
    return project


async def _load_ticket(db: AsyncSession, ticket_id: int, refresh: bool = False) -> Ticket:
    stmt = _ticket_query().where(Ticket.id == ticket_id)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    ticket = (await db.execute(stmt)).scalar_one_or_none()
    if ticket is None:
        raise NotFound("Ticket not found")
    return ticket


async def _load_comment(db: AsyncSession, comment_id: int, refresh: bool = False) -> Comment:
    stmt = select(Comment).options(selectinload(Comment.author)).where(Comment.id == comment_id)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    comment = (await db.execute(stmt)).scalar_one_or_none()
    if comment is None:
        raise NotFound("Comment not found")
    return comment


async def _require_project(db: AsyncSession, project_id: int) -> Project:
    project = (await db.execute(select(Project).where(Project.id == project_id))).scalar_one_or_none()
    if project is None:
        raise ValidationFailed(f"Project {project_id} does not exist.")
    return project


async def _require_assignee(db: AsyncSession, user_id: Optional[int]) -> Optional[User]:
    if user_id is None:
        return None
    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if user is None or user.is_deleted:
        raise ValidationFailed("Assigned user does not exist or has been deleted.")
    if not user.is_verified:
        raise ValidationFailed("Assigned user is not verified.")
    return user


def _ticket_placeholders(ticket: Ticket, actor: CurrentUser) -> dict:
    return {
        "TicketId": ticket.id,
        "TicketTitle": ticket.title,
        "TicketDescription": ticket.description or "",
        "ProjectName": ticket.project.name if ticket.project else "",
        "Status": TicketStatus(ticket.status).value,
        "Priority": TicketPriority(ticket.priority).value,
        "AssignedToName": ticket.assignee.name if ticket.assignee else "Unassigned",
        "CreatedByName": ticket.creator.name if ticket.creator else "",
        "ActorName": actor.name,
        "DueDate": ticket.due_date.strftime("%Y-%m-%d") if ticket.due_date else "",
        "TicketLink": ticket_link(ticket.id),
    }


def _status_email(outbox: Outbox, ticket: Ticket, actor: CurrentUser, old_status: TicketStatus) -> None:
    outbox.email(
        "TicketStatusUpdated",
        f"Ticket #{ticket.id} moved to {TicketStatus(ticket.status).value}",
        ticket_recipients(ticket.assignee, ticket.creator),
        OldStatus=old_status.value,
        NewStatus=TicketStatus(ticket.status).value,
        **_ticket_placeholders(ticket, actor),
    )


# ============================================================
# PROJECTS
# ============================================================

class ProjectService:

    @staticmethod
    async def list_projects(
        db: AsyncSession, status: Optional[ProjectStatus] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[Project], int]:
        filters = []
        if status is not None:
            filters.append(Project.status == status)
        total = (await db.execute(select(func.count(Project.id)).where(*filters))).scalar() or 0
        stmt = (
            select(Project)
            .options(selectinload(Project.creator))
            .where(*filters)
            .order_by(Project.start_date.desc().nulls_last(), Project.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list((await db.execute(stmt)).scalars().all()), total

    @staticmethod
    async def get_project(db: AsyncSession, project_id: int) -> Project:
        return await _load_project(db, project_id)

    @staticmethod
    @transactional
    async def create_project(db: AsyncSession, actor: CurrentUser, data: ProjectCreate) -> Tuple[Project, Outbox]:
        ensure_permission(actor, "projects:write")
        name = _clean_title(data.name)

        project = Project(
            name=name,
            description=data.description,
            status=data.status,
            start_date=data.start_date,
            due_date=data.due_date,
            created_by=actor.id,
        )
        db.add(project)
        await db.flush()
        project = await _load_project(db, project.id)
        logger.info(f"Project {project.id} '{name}' created by {actor.id}")

        outbox = Outbox()
        outbox.record("project", project.id, CREATED)
        return project, outbox

    @staticmethod
    @transactional
    async def update_project(
        db: AsyncSession, actor: CurrentUser, project_id: int, data: ProjectUpdate
    ) -> Tuple[Project, Outbox]:
        ensure_permission(actor, "projects:write")
        project = await _load_project(db, project_id)
        _check_version(project, data.version, "project")

        # created_by is never taken from the payload
        changes = data.model_dump(exclude_unset=True, exclude={"version"})
        if "name" in changes:
            project.name = _clean_title(changes["name"])
        if "description" in changes:
            project.description = changes["description"]
        if changes.get("status") is not None:
            project.status = changes["status"]
        if "start_date" in changes:
            project.start_date = changes["start_date"]
        if "due_date" in changes:
            project.due_date = changes["due_date"]
        await db.flush()

        outbox = Outbox()
        outbox.record("project", project.id, UPDATED)
        return project, outbox

    @staticmethod
    @transactional
    async def delete_project(db: AsyncSession, actor: CurrentUser, project_id: int) -> Tuple[int, Outbox]:
        """Delete a project; its tickets and their comments go with it. Returns the ticket count."""
        ensure_permission(actor, "projects:write")
        project = await _load_project(db, project_id)
        ticket_ids = (
            await db.execute(select(Ticket.id).where(Ticket.project_id == project.id))
        ).scalars().all()

        await db.delete(project)
        await db.flush()
        logger.info(f"Project {project_id} deleted by {actor.id} with {len(ticket_ids)} ticket(s)")

        outbox = Outbox()
        outbox.record("project", project_id, DELETED)
        for ticket_id in ticket_ids:
            outbox.record("ticket", ticket_id, DELETED)
        return len(ticket_ids), outbox


# ============================================================
# TICKETS
# ============================================================

class TicketService:

    @staticmethod
    async def list_tickets(
        db: AsyncSession,
        project_id: Optional[int] = None,
        assigned_to: Optional[int] = None,
        status: Optional[str] = None,
        priority: Optional[TicketPriority] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Ticket], int]:
        filters = []
        if project_id is not None:
            filters.append(Ticket.project_id == project_id)
        if assigned_to is not None:
            filters.append(Ticket.assigned_to == assigned_to)
        if status:
            filters.append(Ticket.status == parse_status(status))
        if priority is not None:
            filters.append(Ticket.priority == priority)

        total = (await db.execute(select(func.count(Ticket.id)).where(*filters))).scalar() or 0
        stmt = (
            _ticket_query()
            .where(*filters)
            .order_by(Ticket.created_at.desc(), Ticket.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list((await db.execute(stmt)).scalars().all()), total

    @staticmethod
    async def get_ticket(db: AsyncSession, ticket_id: int) -> Ticket:
        return await _load_ticket(db, ticket_id)

    @staticmethod
    @transactional
    async def create_ticket(db: AsyncSession, actor: CurrentUser, data: TicketCreate) -> Tuple[Ticket, Outbox]:
        ensure_permission(actor, "tickets:write")
        title = _clean_title(data.title)
        status = parse_status(data.status)
        await _require_project(db, data.project_id)
        await _require_assignee(db, data.assigned_to)

        ticket = Ticket(
            title=title,
            description=data.description,
            project_id=data.project_id,
            assigned_to=data.assigned_to,
            priority=data.priority,
            due_date=data.due_date,
            created_by=actor.id,
            created_at=utcnow(),
        )
        apply_status(ticket, status)
        db.add(ticket)
        await db.flush()
        ticket = await _load_ticket(db, ticket.id, refresh=True)
        logger.info(f"Ticket {ticket.id} created in project {ticket.project_id} by {actor.id}")

        outbox = Outbox()
        outbox.record("ticket", ticket.id, CREATED)
        outbox.email(
            "NewTicketCreated",
            f"New ticket #{ticket.id}: {ticket.title}",
            ticket_recipients(ticket.assignee, ticket.creator),
            **_ticket_placeholders(ticket, actor),
        )
        return ticket, outbox

    @staticmethod
    @transactional
    async def update_ticket(
        db: AsyncSession, actor: CurrentUser, ticket_id: int, data: TicketUpdate
    ) -> Tuple[Ticket, Outbox]:
        ensure_permission(actor, "tickets:write")
        ticket = await _load_ticket(db, ticket_id)
        _check_version(ticket, data.version, "ticket")

        changes = data.model_dump(exclude_unset=True, exclude={"version"})
        # Validate everything before touching the row
        new_status = parse_status(changes["status"]) if changes.get("status") is not None else None
        title = _clean_title(changes["title"]) if "title" in changes else None
        if changes.get("project_id") is not None:
            await _require_project(db, changes["project_id"])
        if "assigned_to" in changes:
            await _require_assignee(db, changes["assigned_to"])

        previous_assignee = ticket.assigned_to
        if title is not None:
            ticket.title = title
        if "description" in changes:
            ticket.description = changes["description"]
        if changes.get("project_id") is not None:
            ticket.project_id = changes["project_id"]
        if "assigned_to" in changes:
            ticket.assigned_to = changes["assigned_to"]
        if changes.get("priority") is not None:
            ticket.priority = changes["priority"]
        if "due_date" in changes:
            ticket.due_date = changes["due_date"]
        old_status = apply_status(ticket, new_status) if new_status is not None else None

        await db.flush()
        ticket = await _load_ticket(db, ticket.id, refresh=True)

        outbox = Outbox()
        outbox.record("ticket", ticket.id, UPDATED, old_status.value if old_status else None)
        if ticket.assigned_to is not None and ticket.assigned_to != previous_assignee:
            outbox.email(
                "TicketAssigned",
                f"Ticket #{ticket.id} has been assigned to you",
                ticket_recipients(ticket.assignee),
                **_ticket_placeholders(ticket, actor),
            )
        if old_status is not None:
            _status_email(outbox, ticket, actor, old_status)
        return ticket, outbox

    @staticmethod
    @transactional
    async def change_status(
        db: AsyncSession, actor: CurrentUser, ticket_id: int, status: str, version: Optional[int] = None
    ) -> Tuple[Ticket, Outbox]:
        """Any authenticated user may move a ticket between statuses."""
        ensure_permission(actor, "tickets:status")
        new_status = parse_status(status)
        ticket = await _load_ticket(db, ticket_id)
        _check_version(ticket, version, "ticket")

        old_status = apply_status(ticket, new_status)
        outbox = Outbox()
        if old_status is None:
            return ticket, outbox

        await db.flush()
        logger.info(f"Ticket {ticket.id} status {old_status.value} -> {new_status.value} by {actor.id}")
        outbox.record("ticket", ticket.id, UPDATED, old_status.value)
        _status_email(outbox, ticket, actor, old_status)
        return ticket, outbox

    @staticmethod
    @transactional
    async def delete_ticket(db: AsyncSession, actor: CurrentUser, ticket_id: int) -> Tuple[None, Outbox]:
        ensure_permission(actor, "tickets:write")
        ticket = await _load_ticket(db, ticket_id)
        await db.delete(ticket)
        await db.flush()
        logger.info(f"Ticket {ticket_id} deleted by {actor.id}")

        outbox = Outbox()
        outbox.record("ticket", ticket_id, DELETED)
        return None, outbox


# ============================================================
# COMMENTS
# ============================================================

class CommentService:

    @staticmethod
    async def list_comments(db: AsyncSession, ticket_id: int) -> List[Comment]:
        await _load_ticket(db, ticket_id)
        stmt = (
            select(Comment)
            .options(selectinload(Comment.author))
            .where(Comment.ticket_id == ticket_id)
            .order_by(Comment.created_at, Comment.id)
        )
        return list((await db.execute(stmt)).scalars().all())

    @staticmethod
    async def get_comment(db: AsyncSession, comment_id: int) -> Comment:
        return await _load_comment(db, comment_id)

    @staticmethod
    @transactional
    async def add_comment(
        db: AsyncSession, actor: CurrentUser, ticket_id: int, data: CommentCreate
    ) -> Tuple[Comment, Outbox]:
        ensure_permission(actor, "comments:write")
        content = _clean_content(data.content)
        ticket = await _load_ticket(db, ticket_id)

        comment = Comment(
            ticket_id=ticket.id,
            content=content,
            created_by=actor.id,
            created_at=utcnow(),
        )
        db.add(comment)
        await db.flush()
        comment = await _load_comment(db, comment.id, refresh=True)

        outbox = Outbox()
        outbox.record("ticket", ticket.id, COMMENTED)
        outbox.email(
            "NewCommentAdded",
            f"New comment on ticket #{ticket.id}: {ticket.title}",
            ticket_recipients(ticket.assignee, ticket.creator),
            CommentContent=content,
            CommentAuthorName=actor.name,
            **_ticket_placeholders(ticket, actor),
        )
        return comment, outbox

    @staticmethod
    def _ensure_can_modify(actor: CurrentUser, comment: Comment) -> None:
        if comment.created_by != actor.id and not actor.has_permission("comments:moderate"):
            raise Forbidden("Only the author or an administrator can modify this comment.")

    @staticmethod
    @transactional
    async def edit_comment(
        db: AsyncSession, actor: CurrentUser, comment_id: int, data: CommentUpdate
    ) -> Tuple[Comment, Outbox]:
        comment = await _load_comment(db, comment_id)
        CommentService._ensure_can_modify(actor, comment)
        _check_version(comment, data.version, "comment")

        comment.content = _clean_content(data.content)
        comment.edited_at = utcnow()
        await db.flush()

        outbox = Outbox()
        outbox.record("comment", comment.id, UPDATED)
        return comment, outbox

    @staticmethod
    @transactional
    async def delete_comment(db: AsyncSession, actor: CurrentUser, comment_id: int) -> Tuple[None, Outbox]:
        comment = await _load_comment(db, comment_id)
        CommentService._ensure_can_modify(actor, comment)
        await db.delete(comment)
        await db.flush()

        outbox = Outbox()
        outbox.record("comment", comment_id, DELETED)
        return None, outbox
