# routers/websocket_router.py - Real-time push of entity changes
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AuthService
from database import get_db_session
from models import User
from realtime import manager

router = APIRouter(tags=["WebSocket"])
logger = logging.getLogger("stackflow.ws")


async def _authenticate(token: str, db: AsyncSession) -> Optional[User]:
    """Resolve the token to an active user, or None"""
    try:
        payload = AuthService.verify_token(token)
    except HTTPException:
        return None
    if payload.get("type") != "access":
        return None
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if user is None or not user.is_active:
        return None
    return user


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(...),
    db: AsyncSession = Depends(get_db_session),
):
    """Clients receive an entity.changed message for every committed change"""
    user = await _authenticate(token, db)
    if user is None:
        await websocket.close(code=4001, reason="Authentication failed")
        return

    user_id = user.id
    await manager.connect(websocket, user_id)
    await websocket.send_json({
        "type": "connected",
        "user_id": user_id,
        "online_users": manager.get_online_users(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })

    try:
        while True:
            data = await websocket.receive_json()
            if data.get("type") == "ping":
                await websocket.send_json({"type": "pong", "timestamp": datetime.now(timezone.utc).isoformat()})
    except WebSocketDisconnect:
        manager.disconnect(user_id, websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        manager.disconnect(user_id, websocket)


@router.get("/ws/stats")
async def websocket_stats():
    """Get WebSocket connection statistics"""
    return manager.get_stats()
