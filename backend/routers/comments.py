# routers/comments.py - Single-comment endpoints (author or admin to modify)
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from events import Notifier, get_notifier
from models import Comment
from tracker import CommentService, CommentUpdate

router = APIRouter(prefix="/api/v1/comments", tags=["Comments"])


class CommentOut(BaseModel):
    id: int
    ticket_id: int
    content: str
    created_by: int
    author_name: str = ""
    created_at: Optional[str] = None
    edited_at: Optional[str] = None
    version: int


def _comment_to_out(c: Comment) -> CommentOut:
    return CommentOut(
        id=c.id,
        ticket_id=c.ticket_id,
        content=c.content,
        created_by=c.created_by,
        author_name=c.author.name if c.author else "",
        created_at=c.created_at.isoformat() if c.created_at else None,
        edited_at=c.edited_at.isoformat() if c.edited_at else None,
        version=c.version,
    )


@router.get("/{comment_id}", response_model=CommentOut)
async def get_comment(
    comment_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return _comment_to_out(await CommentService.get_comment(db, comment_id))


@router.put("/{comment_id}", response_model=CommentOut)
async def edit_comment(
    comment_id: int,
    data: CommentUpdate,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    comment, outbox = await CommentService.edit_comment(db, user, comment_id, data)
    background_tasks.add_task(notifier.dispatch, outbox)
    return _comment_to_out(comment)


@router.delete("/{comment_id}")
async def delete_comment(
    comment_id: int,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    _, outbox = await CommentService.delete_comment(db, user, comment_id)
    background_tasks.add_task(notifier.dispatch, outbox)
    return {"status": "deleted", "comment_id": comment_id}
