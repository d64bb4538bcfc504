"""Remote control endpoints of the rclone daemon used by rclonetray."""

from __future__ import annotations

VERSION = "core/version"
COMMAND = "core/command"

PROVIDERS = "config/providers"
CONFIG_DUMP = "config/dump"
LIST_REMOTES = "config/listremotes"

MOUNT = "mount/mount"
UNMOUNT = "mount/unmount"
LIST_MOUNTS = "mount/listmounts"

SYNC_COPY = "sync/copy"
SYNC_SYNC = "sync/sync"

JOB_STATUS = "job/status"
JOB_STOP = "job/stop"

# Lightweight call used to decide whether the daemon is ready.
READINESS_PROBE = LIST_REMOTES
