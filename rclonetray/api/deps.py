"""Shared API dependencies: settings and the application manager."""

from __future__ import annotations

from fastapi import Request

from rclonetray.config import Settings
from rclonetray.services.manager import RcloneManager


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_manager(request: Request) -> RcloneManager:
    """Get the rclone manager from app state."""
    manager: RcloneManager = request.app.state.manager
    return manager
