"""Mount slot endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from rclonetray.api.deps import get_manager
from rclonetray.schemas.mount import MountConfigBody, MountSlotCreate, MountSlotResponse
from rclonetray.services.manager import RcloneManager
from rclonetray.store.slots import MountSlot

router = APIRouter(prefix="/api/bookmarks/{name}/mounts", tags=["mounts"])


def _slot_response(manager: RcloneManager, name: str, slot: str) -> MountSlotResponse:
    config = manager.mounts.get_mount_config(name, slot)
    active = next(
        (m for m in manager.mounts.active_mounts() if (m.bookmark, m.slot) == (name, slot)),
        None,
    )
    return MountSlotResponse(
        bookmark=name,
        slot=slot,
        enabled=config.enabled,
        path=config.path,
        remote_path=config.remote_path,
        options=config.options,
        mounted=active is not None,
        mount_path=active.path if active is not None else None,
        mounted_at=active.mounted_at if active is not None else None,
    )


def _to_slot(body: MountConfigBody) -> MountSlot:
    return MountSlot(path=body.path, remote_path=body.remote_path, options=dict(body.options))


@router.get("", response_model=list[MountSlotResponse])
async def list_mount_slots(
    name: str,
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> list[MountSlotResponse]:
    return [_slot_response(manager, name, slot) for slot in manager.mounts.list_mount_slots(name)]


@router.post("", response_model=MountSlotResponse, status_code=201)
async def create_mount_slot(
    name: str,
    body: MountSlotCreate,
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> MountSlotResponse:
    manager.mounts.create_mount_slot(name, body.slot, _to_slot(body))
    return _slot_response(manager, name, body.slot)


@router.get("/{slot}", response_model=MountSlotResponse)
async def get_mount_slot(
    name: str,
    slot: str,
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> MountSlotResponse:
    return _slot_response(manager, name, slot)


@router.put("/{slot}", response_model=MountSlotResponse)
async def update_mount_slot(
    name: str,
    slot: str,
    body: MountConfigBody,
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> MountSlotResponse:
    """Store new settings. An active mount picks them up on its next mount."""
    manager.mounts.save_mount_config(name, _to_slot(body), slot)
    return _slot_response(manager, name, slot)


@router.delete("/{slot}", status_code=204)
async def delete_mount_slot(
    name: str,
    slot: str,
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> None:
    manager.mounts.delete_mount_slot(name, slot)


@router.post("/{slot}/mount", response_model=MountSlotResponse)
async def mount_slot(
    name: str,
    slot: str,
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> MountSlotResponse:
    await manager.mounts.mount(name, slot)
    return _slot_response(manager, name, slot)


@router.post("/{slot}/unmount", response_model=MountSlotResponse)
async def unmount_slot(
    name: str,
    slot: str,
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> MountSlotResponse:
    await manager.mounts.unmount(name, slot)
    return _slot_response(manager, name, slot)
