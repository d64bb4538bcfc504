"""Health check endpoint."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from rclonetray.api.deps import get_manager
from rclonetray.services.manager import RcloneManager

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str | None
    mode: str
    daemon: str
    revision: int


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> HealthResponse:
    """Report the rclone version and whether the RPC channel is up."""
    mode = manager.mode
    rpc_wanted = manager.settings.rc_enabled
    return HealthResponse(
        status="degraded" if rpc_wanted and mode != "rpc" else "ok",
        version=manager.version,
        mode=mode,
        daemon=manager.supervisor.state,
        revision=manager.bus.revision,
    )
