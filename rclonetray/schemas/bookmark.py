"""Bookmark and provider schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field

BOOKMARK_NAME_PATTERN = r"^[A-Za-z0-9_][A-Za-z0-9_. -]*$"


class ProviderResponse(BaseModel):
    """A storage backend that bookmarks can use."""

    type: str
    description: str = ""
    requires_bucket: bool = False


class BookmarkResponse(BaseModel):
    """A configured remote with its current activity."""

    name: str
    type: str
    options: dict[str, str] = Field(default_factory=dict)
    mounted: bool = False
    syncing: bool = False


class BookmarkCreate(BaseModel):
    """Request to create a bookmark."""

    name: str = Field(min_length=1, max_length=100, pattern=BOOKMARK_NAME_PATTERN)
    type: str = Field(min_length=1, description="rclone backend, e.g. 's3' or 'sftp'")
    options: dict[str, str] = Field(
        default_factory=dict, description="Backend options written to the config section"
    )


class BookmarkUpdate(BaseModel):
    """Request to replace a bookmark's backend options."""

    type: str | None = Field(default=None, min_length=1)
    options: dict[str, str] = Field(default_factory=dict)
