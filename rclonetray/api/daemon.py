"""Daemon control, providers and notifications."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from rclonetray.api.deps import get_manager
from rclonetray.schemas.bookmark import ProviderResponse
from rclonetray.services.manager import RcloneManager

router = APIRouter(prefix="/api", tags=["daemon"])


class DaemonStatusResponse(BaseModel):
    state: str
    mode: str
    pid: int | None = None


class NotificationResponse(BaseModel):
    level: str
    message: str
    created_at: datetime


class NotificationListResponse(BaseModel):
    revision: int
    notifications: list[NotificationResponse]


@router.post("/daemon/start", response_model=DaemonStatusResponse)
async def start_daemon(
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> DaemonStatusResponse:
    """Start the daemon unless it is already ready."""
    await manager.ensure_daemon()
    return DaemonStatusResponse(
        state=manager.supervisor.state, mode=manager.mode, pid=manager.supervisor.pid
    )


@router.get("/notifications", response_model=NotificationListResponse)
async def list_notifications(
    manager: Annotated[RcloneManager, Depends(get_manager)],
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> NotificationListResponse:
    """Most recent notifications, newest first."""
    return NotificationListResponse(
        revision=manager.bus.revision,
        notifications=[
            NotificationResponse(level=n.level, message=n.message, created_at=n.created_at)
            for n in manager.notifications.recent(limit)
        ],
    )


@router.get("/providers", response_model=list[ProviderResponse])
async def list_providers(
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> list[ProviderResponse]:
    return [
        ProviderResponse(type=p.type, description=p.description, requires_bucket=p.requires_bucket)
        for p in manager.bookmarks.list_providers()
    ]
