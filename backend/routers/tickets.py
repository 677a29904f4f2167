# routers/tickets.py - Tickets, status workflow and ticket comments
from typing import Optional, List

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_permission, CurrentUser
from database import get_db_session
from events import Notifier, get_notifier
from models import Ticket, TicketStatus, TicketPriority
from routers.comments import CommentOut, _comment_to_out
from tracker import (
    TicketService, CommentService,
    TicketCreate, TicketUpdate, StatusChange, CommentCreate,
)

router = APIRouter(prefix="/api/v1/tickets", tags=["Tickets"])


class TicketOut(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    project_id: int
    project_name: str = ""
    assigned_to: Optional[int] = None
    assigned_to_name: Optional[str] = None
    status: str
    priority: str
    created_by: int
    created_by_name: str = ""
    created_at: Optional[str] = None
    due_date: Optional[str] = None
    completed_at: Optional[str] = None
    version: int


def _ts(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def _ticket_to_out(t: Ticket) -> TicketOut:
    return TicketOut(
        id=t.id,
        title=t.title,
        description=t.description,
        project_id=t.project_id,
        project_name=t.project.name if t.project else "",
        assigned_to=t.assigned_to,
        assigned_to_name=t.assignee.name if t.assignee else None,
        status=TicketStatus(t.status).value,
        priority=TicketPriority(t.priority).value,
        created_by=t.created_by,
        created_by_name=t.creator.name if t.creator else "",
        created_at=_ts(t.created_at),
        due_date=_ts(t.due_date),
        completed_at=_ts(t.completed_at),
        version=t.version,
    )


@router.get("", response_model=List[TicketOut])
async def list_tickets(
    response: Response,
    user: CurrentUser = Depends(require_permission("tickets:read")),
    db: AsyncSession = Depends(get_db_session),
    project_id: Optional[int] = None,
    assigned_to: Optional[int] = None,
    status: Optional[str] = None,
    priority: Optional[TicketPriority] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    tickets, total = await TicketService.list_tickets(
        db, project_id=project_id, assigned_to=assigned_to, status=status,
        priority=priority, limit=limit, offset=offset,
    )
    response.headers["X-Total-Count"] = str(total)
    return [_ticket_to_out(t) for t in tickets]


@router.get("/{ticket_id}", response_model=TicketOut)
async def get_ticket(
    ticket_id: int,
    user: CurrentUser = Depends(require_permission("tickets:read")),
    db: AsyncSession = Depends(get_db_session),
):
    return _ticket_to_out(await TicketService.get_ticket(db, ticket_id))


@router.post("", response_model=TicketOut, status_code=201)
async def create_ticket(
    data: TicketCreate,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission("tickets:write")),
    db: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    ticket, outbox = await TicketService.create_ticket(db, user, data)
    background_tasks.add_task(notifier.dispatch, outbox)
    return _ticket_to_out(ticket)


@router.put("/{ticket_id}", response_model=TicketOut)
async def update_ticket(
    ticket_id: int,
    data: TicketUpdate,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission("tickets:write")),
    db: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    ticket, outbox = await TicketService.update_ticket(db, user, ticket_id, data)
    background_tasks.add_task(notifier.dispatch, outbox)
    return _ticket_to_out(ticket)


@router.put("/{ticket_id}/status", response_model=TicketOut)
async def change_ticket_status(
    ticket_id: int,
    body: StatusChange,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission("tickets:status")),
    db: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    """Move a ticket to another status (To_Do, In_Progress, In_Review, Done)"""
    ticket, outbox = await TicketService.change_status(db, user, ticket_id, body.status, body.version)
    background_tasks.add_task(notifier.dispatch, outbox)
    return _ticket_to_out(ticket)


@router.delete("/{ticket_id}")
async def delete_ticket(
    ticket_id: int,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission("tickets:write")),
    db: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    _, outbox = await TicketService.delete_ticket(db, user, ticket_id)
    background_tasks.add_task(notifier.dispatch, outbox)
    return {"status": "deleted", "ticket_id": ticket_id}


# ============================================================
# COMMENTS ON A TICKET
# ============================================================

@router.get("/{ticket_id}/comments", response_model=List[CommentOut])
async def list_comments(
    ticket_id: int,
    user: CurrentUser = Depends(require_permission("tickets:read")),
    db: AsyncSession = Depends(get_db_session),
):
    return [_comment_to_out(c) for c in await CommentService.list_comments(db, ticket_id)]


@router.post("/{ticket_id}/comments", response_model=CommentOut, status_code=201)
async def add_comment(
    ticket_id: int,
    data: CommentCreate,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission("comments:write")),
    db: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    comment, outbox = await CommentService.add_comment(db, user, ticket_id, data)
    background_tasks.add_task(notifier.dispatch, outbox)
    return _comment_to_out(comment)
