# routers/projects.py - Project endpoints
from typing import Optional, List

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_permission, CurrentUser
from database import get_db_session
from events import Notifier, get_notifier
from models import Project, ProjectStatus
from tracker import ProjectService, ProjectCreate, ProjectUpdate

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])


class ProjectOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    status: str
    start_date: Optional[str] = None
    due_date: Optional[str] = None
    created_by: int
    created_by_name: str = ""
    version: int


def _ts(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def _project_to_out(p: Project) -> ProjectOut:
    return ProjectOut(
        id=p.id,
        name=p.name,
        description=p.description,
        status=ProjectStatus(p.status).value,
        start_date=_ts(p.start_date),
        due_date=_ts(p.due_date),
        created_by=p.created_by,
        created_by_name=p.creator.name if p.creator else "",
        version=p.version,
    )


@router.get("", response_model=List[ProjectOut])
async def list_projects(
    response: Response,
    user: CurrentUser = Depends(require_permission("projects:read")),
    db: AsyncSession = Depends(get_db_session),
    status: Optional[ProjectStatus] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    projects, total = await ProjectService.list_projects(db, status=status, limit=limit, offset=offset)
    response.headers["X-Total-Count"] = str(total)
    return [_project_to_out(p) for p in projects]


@router.get("/{project_id}", response_model=ProjectOut)
async def get_project(
    project_id: int,
    user: CurrentUser = Depends(require_permission("projects:read")),
    db: AsyncSession = Depends(get_db_session),
):
    return _project_to_out(await ProjectService.get_project(db, project_id))


@router.post("", response_model=ProjectOut, status_code=201)
async def create_project(
    data: ProjectCreate,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission("projects:write")),
    db: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    project, outbox = await ProjectService.create_project(db, user, data)
    background_tasks.add_task(notifier.dispatch, outbox)
    return _project_to_out(project)


@router.put("/{project_id}", response_model=ProjectOut)
async def update_project(
    project_id: int,
    data: ProjectUpdate,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission("projects:write")),
    db: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    """Update a project. Send the version you read to detect concurrent edits."""
    project, outbox = await ProjectService.update_project(db, user, project_id, data)
    background_tasks.add_task(notifier.dispatch, outbox)
    return _project_to_out(project)


@router.delete("/{project_id}")
async def delete_project(
    project_id: int,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission("projects:write")),
    db: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    """Delete a project together with its tickets and their comments"""
    deleted_tickets, outbox = await ProjectService.delete_project(db, user, project_id)
    background_tasks.add_task(notifier.dispatch, outbox)
    return {"status": "deleted", "project_id": project_id, "deleted_tickets": deleted_tickets}
