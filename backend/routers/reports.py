# routers/reports.py - Dashboard and report aggregates
from collections import defaultdict
from typing import Dict

from fastapi import APIRouter, Depends
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, require_permission, CurrentUser
from database import get_db_session
from models import (
    Project, Ticket, User, Role, ProjectStatus, TicketStatus, TicketPriority, utcnow,
)

router = APIRouter(prefix="/api/v1/reports", tags=["Reports"])


def _empty_status_counts() -> Dict[str, int]:
    return {s.value: 0 for s in TicketStatus}


def _status_summary(counts: Dict[str, int]) -> dict:
    return {
        "total": sum(counts.values()),
        "to_do": counts[TicketStatus.TO_DO.value],
        "in_progress": counts[TicketStatus.IN_PROGRESS.value],
        "in_review": counts[TicketStatus.IN_REVIEW.value],
        "completed": counts[TicketStatus.DONE.value],
    }


@router.get("/dashboard")
async def dashboard(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Ticket totals for everyone plus the caller's open work"""
    by_status = _empty_status_counts()
    status_result = await db.execute(select(Ticket.status, func.count(Ticket.id)).group_by(Ticket.status))
    for status, count in status_result.all():
        by_status[TicketStatus(status).value] = count

    priority_result = await db.execute(
        select(Ticket.priority, func.count(Ticket.id)).group_by(Ticket.priority)
    )
    by_priority = {p.value: 0 for p in TicketPriority}
    for priority, count in priority_result.all():
        by_priority[TicketPriority(priority).value] = count

    overdue_stmt = select(func.count(Ticket.id)).where(
        Ticket.due_date < utcnow(),
        Ticket.completed_at.is_(None),
    )
    overdue = (await db.execute(overdue_stmt)).scalar() or 0

    projects_stmt = select(Project.status, func.count(Project.id)).group_by(Project.status)
    projects = {s.value: 0 for s in ProjectStatus}
    for status, count in (await db.execute(projects_stmt)).all():
        projects[ProjectStatus(status).value] = count

    mine_stmt = (
        select(Ticket)
        .where(Ticket.assigned_to == user.id, Ticket.status != TicketStatus.DONE)
        .order_by(Ticket.due_date.is_(None), Ticket.due_date, Ticket.id)
    )
    mine = (await db.execute(mine_stmt)).scalars().all()

    return {
        "user": {"id": user.id, "name": user.name, "role": user.role},
        "tickets": {**_status_summary(by_status), "overdue": overdue, "by_priority": by_priority},
        "projects": projects,
        "assigned_to_me": [
            {
                "id": t.id,
                "title": t.title,
                "project_id": t.project_id,
                "status": TicketStatus(t.status).value,
                "priority": TicketPriority(t.priority).value,
                "due_date": t.due_date.isoformat() if t.due_date else None,
            }
            for t in mine
        ],
    }


@router.get("/projects")
async def project_report(
    user: CurrentUser = Depends(require_permission("reports:read")),
    db: AsyncSession = Depends(get_db_session),
):
    """Per-project ticket counts by status"""
    counts = defaultdict(_empty_status_counts)
    rows = await db.execute(
        select(Ticket.project_id, Ticket.status, func.count(Ticket.id))
        .group_by(Ticket.project_id, Ticket.status)
    )
    for project_id, status, count in rows.all():
        counts[project_id][TicketStatus(status).value] = count

    projects = (await db.execute(select(Project).order_by(Project.name))).scalars().all()
    return [
        {
            "project_id": p.id,
            "name": p.name,
            "status": ProjectStatus(p.status).value,
            "due_date": p.due_date.isoformat() if p.due_date else None,
            **_status_summary(counts[p.id]),
        }
        for p in projects
    ]


@router.get("/users")
async def user_report(
    user: CurrentUser = Depends(require_permission("reports:read")),
    db: AsyncSession = Depends(get_db_session),
):
    """Assigned ticket counts by status for every active user"""
    counts = defaultdict(_empty_status_counts)
    rows = await db.execute(
        select(Ticket.assigned_to, Ticket.status, func.count(Ticket.id))
        .where(Ticket.assigned_to.isnot(None))
        .group_by(Ticket.assigned_to, Ticket.status)
    )
    for user_id, status, count in rows.all():
        counts[user_id][TicketStatus(status).value] = count

    users_stmt = (
        select(User.id, User.name, User.email, Role.name)
        .join(Role, User.role_id == Role.id)
        .where(User.is_deleted == False, User.is_verified == True)  # noqa: E712
        .order_by(User.name)
    )
    return [
        {
            "user_id": uid,
            "name": name,
            "email": email,
            "role": role_name,
            **_status_summary(counts[uid]),
        }
        for uid, name, email, role_name in (await db.execute(users_stmt)).all()
    ]
