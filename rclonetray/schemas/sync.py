"""Sync slot schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from rclonetray.schemas.mount import SLOT_NAME_PATTERN
from rclonetray.services.sync_service import JobKind, SyncPhase
from rclonetray.store.slots import SyncDirection, SyncMode


class SyncConfigBody(BaseModel):
    """Sync settings of a slot. Unset transfer counts take the server defaults."""

    local_path: str = Field(min_length=1)
    remote_path: str = Field(min_length=1)
    mode: SyncMode = SyncMode.BIDIRECTIONAL
    direction: SyncDirection = SyncDirection.UPLOAD
    transfers: int | None = Field(default=None, ge=1, le=64)
    checkers: int | None = Field(default=None, ge=1, le=64)
    max_delete: int = Field(default=-1, ge=-1, description="-1 disables the delete limit")


class SyncSlotCreate(SyncConfigBody):
    """Request to create a sync slot."""

    slot: str = Field(pattern=SLOT_NAME_PATTERN)


class SyncJobResponse(BaseModel):
    job_id: int
    kind: JobKind
    started_at: datetime
    last_health_check: datetime | None = None


class SyncSlotResponse(BaseModel):
    """A sync slot with its live state."""

    bookmark: str
    slot: str
    local_path: str
    remote_path: str
    mode: SyncMode
    direction: SyncDirection
    transfers: int
    checkers: int
    max_delete: int
    initialized: bool
    enabled: bool
    phase: SyncPhase = SyncPhase.IDLE
    job: SyncJobResponse | None = None


class SyncStopResponse(BaseModel):
    stopped: bool
