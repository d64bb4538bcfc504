"""Sync slot endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from rclonetray.api.deps import get_manager, get_settings
from rclonetray.config import Settings
from rclonetray.schemas.sync import (
    SyncConfigBody,
    SyncJobResponse,
    SyncSlotCreate,
    SyncSlotResponse,
    SyncStopResponse,
)
from rclonetray.services.manager import RcloneManager
from rclonetray.store.slots import SyncSlot

router = APIRouter(prefix="/api/bookmarks/{name}/syncs", tags=["syncs"])


def _slot_response(manager: RcloneManager, name: str, slot: str) -> SyncSlotResponse:
    config = manager.syncs.get_sync_config(name, slot)
    status = manager.syncs.get_sync_status(name, slot)
    job = None
    if status.job is not None:
        job = SyncJobResponse(
            job_id=status.job.job_id,
            kind=status.job.kind,
            started_at=status.job.started_at,
            last_health_check=status.job.last_health_check,
        )
    return SyncSlotResponse(
        bookmark=name,
        slot=slot,
        local_path=config.local_path,
        remote_path=config.remote_path,
        mode=config.mode,
        direction=config.direction,
        transfers=config.transfers,
        checkers=config.checkers,
        max_delete=config.max_delete,
        initialized=config.initialized,
        enabled=config.enabled,
        phase=status.phase,
        job=job,
    )


def _to_slot(slot: str, body: SyncConfigBody, settings: Settings) -> SyncSlot:
    return SyncSlot(
        name=slot,
        local_path=body.local_path,
        remote_path=body.remote_path,
        mode=body.mode,
        direction=body.direction,
        transfers=body.transfers or settings.sync_default_transfers,
        checkers=body.checkers or settings.sync_default_checkers,
        max_delete=body.max_delete,
    )


@router.get("", response_model=list[SyncSlotResponse])
async def list_sync_slots(
    name: str,
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> list[SyncSlotResponse]:
    return [_slot_response(manager, name, slot) for slot in manager.syncs.list_sync_slots(name)]


@router.post("", response_model=SyncSlotResponse, status_code=201)
async def create_sync_slot(
    name: str,
    body: SyncSlotCreate,
    manager: Annotated[RcloneManager, Depends(get_manager)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> SyncSlotResponse:
    manager.syncs.create_sync_slot(name, _to_slot(body.slot, body, settings))
    return _slot_response(manager, name, body.slot)


@router.get("/{slot}", response_model=SyncSlotResponse)
async def get_sync_slot(
    name: str,
    slot: str,
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> SyncSlotResponse:
    return _slot_response(manager, name, slot)


@router.put("/{slot}", response_model=SyncSlotResponse)
async def update_sync_slot(
    name: str,
    slot: str,
    body: SyncConfigBody,
    manager: Annotated[RcloneManager, Depends(get_manager)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> SyncSlotResponse:
    """Replace the slot's settings. Rejected while the sync runs."""
    manager.syncs.save_sync_config(name, _to_slot(slot, body, settings))
    return _slot_response(manager, name, slot)


@router.delete("/{slot}", status_code=204)
async def delete_sync_slot(
    name: str,
    slot: str,
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> None:
    manager.syncs.delete_sync_slot(name, slot)


@router.post("/{slot}/start", response_model=SyncSlotResponse)
async def start_sync(
    name: str,
    slot: str,
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> SyncSlotResponse:
    """Start the sync; a first bidirectional run waits for the bootstrap."""
    await manager.syncs.start_sync(name, slot)
    return _slot_response(manager, name, slot)


@router.post("/{slot}/stop", response_model=SyncStopResponse)
async def stop_sync(
    name: str,
    slot: str,
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> SyncStopResponse:
    return SyncStopResponse(stopped=await manager.syncs.stop_sync(name, slot))
