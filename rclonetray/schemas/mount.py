"""Mount slot schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from rclonetray.store.slots import DEFAULT_MOUNT_OPTIONS, normalize_option_name

SLOT_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$"


class MountConfigBody(BaseModel):
    """Mount settings of a slot."""

    path: str = Field(default="", description="Mount point; empty for a generated one")
    remote_path: str = Field(default="", description="Folder inside the remote to mount")
    options: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_MOUNT_OPTIONS))

    @field_validator("options")
    @classmethod
    def normalize_flags(cls, v: dict[str, str]) -> dict[str, str]:
        """Store option names in ``--flag`` form."""
        _ = cls
        normalized: dict[str, str] = {}
        for name, value in v.items():
            if not name.strip("-"):
                msg = "Mount option names must not be empty"
                raise ValueError(msg)
            normalized[normalize_option_name(name)] = value
        return normalized


class MountSlotCreate(MountConfigBody):
    """Request to create a named mount slot."""

    slot: str = Field(pattern=SLOT_NAME_PATTERN)


class MountSlotResponse(BaseModel):
    """A mount slot with its live state."""

    bookmark: str
    slot: str
    enabled: bool = False
    path: str = ""
    remote_path: str = ""
    options: dict[str, str] = Field(default_factory=dict)
    mounted: bool = False
    mount_path: str | None = None
    mounted_at: datetime | None = None
