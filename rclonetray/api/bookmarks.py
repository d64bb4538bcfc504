"""Bookmark CRUD endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends

from rclonetray.api.deps import get_manager
from rclonetray.schemas.bookmark import BookmarkCreate, BookmarkResponse, BookmarkUpdate
from rclonetray.services.manager import RcloneManager

if TYPE_CHECKING:
    from rclonetray.services.bookmark_service import Bookmark

router = APIRouter(prefix="/api/bookmarks", tags=["bookmarks"])


def _to_response(manager: RcloneManager, bookmark: Bookmark) -> BookmarkResponse:
    return BookmarkResponse(
        name=bookmark.name,
        type=bookmark.type,
        options=bookmark.options,
        mounted=manager.mounts.is_active(bookmark.name),
        syncing=manager.syncs.is_active(bookmark.name),
    )


@router.get("", response_model=list[BookmarkResponse])
async def list_bookmarks(
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> list[BookmarkResponse]:
    return [_to_response(manager, b) for b in manager.bookmarks.list_bookmarks()]


@router.post("", response_model=BookmarkResponse, status_code=201)
async def create_bookmark(
    body: BookmarkCreate,
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> BookmarkResponse:
    bookmark = manager.bookmarks.add_bookmark(body.name, body.type, body.options)
    return _to_response(manager, bookmark)


@router.get("/{name}", response_model=BookmarkResponse)
async def get_bookmark(
    name: str,
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> BookmarkResponse:
    return _to_response(manager, manager.bookmarks.get_bookmark(name))


@router.put("/{name}", response_model=BookmarkResponse)
async def update_bookmark(
    name: str,
    body: BookmarkUpdate,
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> BookmarkResponse:
    """Replace the backend options; mount and sync settings are kept."""
    bookmark = manager.bookmarks.update_bookmark(name, body.options, kind=body.type)
    return _to_response(manager, bookmark)


@router.delete("/{name}", status_code=204)
async def delete_bookmark(
    name: str,
    manager: Annotated[RcloneManager, Depends(get_manager)],
) -> None:
    """Delete a bookmark with its slots. Rejected while anything is active."""
    manager.bookmarks.delete_bookmark(name)
