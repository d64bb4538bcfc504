"""Sync orchestration: bootstrap, continuous bisync and job supervision.

A bidirectional slot is bootstrapped once (initial copy, then a forced
``--resync`` bisync) and afterwards runs steady bisync passes. The daemon's
bisync job ends after one pass, so each tracked job has a ticker task that
checks it every health-check interval. A finished pass is relaunched on the
check after the one that saw it finish.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rclonetray.daemon import endpoints
from rclonetray.exceptions import (
    ActiveResourceError,
    AlreadyActiveError,
    BookmarkNotFoundError,
    DaemonError,
    JobError,
    JobTimeoutError,
    StateError,
    SyncStoppedError,
)
from rclonetray.store.slots import SyncDirection, SyncMode, SyncSlot, remote_spec

if TYPE_CHECKING:
    from rclonetray.config import Settings
    from rclonetray.daemon.router import RequestRouter
    from rclonetray.services.notifications import Notifier, UpdateBus
    from rclonetray.store.slots import SlotRepository

logger = logging.getLogger(__name__)

SyncKey = tuple[str, str]

ABORT_SIGNATURES = ("bisync aborted", "too many deletes", "must run --resync")

_BISYNC_FLAGS = (
    "--force",
    "--create-empty-src-dirs",
    "--resilient",
    "--ignore-case",
    "--conflict-resolve",
    "newer",
    "--compare",
    "modtime,size",
    "--modify-window",
    "2s",
    "--timeout",
    "30s",
    "--transfers",
    "1",
    "--ignore-listing-checksum",
)
_RESYNC_FLAGS = ("--resync", "--resync-mode", "newer")


class SyncPhase(StrEnum):
    IDLE = "idle"
    BOOTSTRAPPING = "bootstrapping"
    AWAITING_JOB = "awaiting_job"
    ACTIVE = "active"


class JobKind(StrEnum):
    INITIAL_COPY = "initial_copy"
    BISYNC = "bisync"
    BISYNC_RESYNC = "bisync_resync"
    ONE_SHOT = "sync"


@dataclass
class TrackedJob:
    """A daemon job owned by the sync service. Never persisted."""

    job_id: int
    kind: JobKind
    bookmark: str
    slot: str
    config: SyncSlot
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_health_check: datetime | None = None
    finished_at: datetime | None = None


@dataclass
class SyncStatus:
    phase: SyncPhase
    job: TrackedJob | None = None


def bisync_args(
    remote: str,
    local: str,
    *,
    config_path: str,
    resync: bool = False,
    max_delete: int = -1,
) -> list[str]:
    """Arguments of an ``rclone bisync`` run between *remote* and *local*."""
    args = [remote, local, *_BISYNC_FLAGS, f"--config={config_path}", "-v"]
    if max_delete >= 0:
        args += ["--max-delete", str(max_delete)]
    if resync:
        args += list(_RESYNC_FLAGS)
    return args


def job_error(status: dict[str, Any]) -> str | None:
    """Error message of a finished job, or None if it succeeded."""
    error = status.get("error")
    if error:
        return str(error)
    if status.get("success") is False:
        return "job failed"
    return None


def is_bisync_abort(status: dict[str, Any]) -> bool:
    """Whether a finished bisync job stopped on a condition only a resync clears."""
    text = f"{status.get('error') or ''} {status.get('output') or ''}".lower()
    return any(signature in text for signature in ABORT_SIGNATURES)


class SyncService:
    """Owns the active-sync cache and supervises the daemon jobs behind it.

    Thread-safety: safe under asyncio's single-threaded cooperative model.
    Starting is guarded by a per-key lock that rejects rather than queues;
    stopping does not take the lock so it can interrupt a long bootstrap.
    """

    def __init__(
        self,
        router: RequestRouter,
        slots: SlotRepository,
        bus: UpdateBus,
        notifier: Notifier,
        settings: Settings,
    ) -> None:
        self._router = router
        self._slots = slots
        self._bus = bus
        self._notifier = notifier
        self._settings = settings
        self._jobs: dict[SyncKey, TrackedJob] = {}
        self._bootstrap_jobs: dict[SyncKey, int] = {}
        self._phases: dict[SyncKey, SyncPhase] = {}
        self._tickers: dict[SyncKey, asyncio.Task[None]] = {}
        self._locks: dict[SyncKey, asyncio.Lock] = {}
        self._starting: set[SyncKey] = set()
        self._stop_requested: set[SyncKey] = set()
        self._checking: dict[SyncKey, asyncio.Task[Any] | None] = {}

    def _lock_for(self, key: SyncKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ── Status ──

    def get_sync_status(self, bookmark: str, slot: str) -> SyncStatus:
        key = (bookmark, slot)
        return SyncStatus(phase=self._phases.get(key, SyncPhase.IDLE), job=self._jobs.get(key))

    def is_active(self, bookmark: str) -> bool:
        """Whether any sync slot of *bookmark* is running or starting."""
        keys = set(self._jobs) | self._starting | set(self._phases)
        return any(key[0] == bookmark for key in keys)

    def active_jobs(self) -> list[TrackedJob]:
        return list(self._jobs.values())

    # ── Daemon jobs ──

    async def _submit(self, endpoint: str, params: dict[str, Any]) -> int:
        result = await self._router.call_rpc(
            endpoint, {**params, "_async": True}, operation="sync"
        )
        job_id = result.get("jobid")
        if job_id is None:
            raise DaemonError(endpoint, "daemon did not return a job id")
        return int(job_id)

    async def _job_status(self, job_id: int) -> dict[str, Any]:
        return await self._router.call_rpc(
            endpoints.JOB_STATUS,
            {"jobid": job_id},
            timeout=self._settings.rpc_status_timeout,
            operation="job status",
        )

    async def _stop_job_quietly(self, job_id: int) -> None:
        try:
            await self._router.call_rpc(endpoints.JOB_STOP, {"jobid": job_id}, operation="stop")
        except DaemonError as exc:
            logger.warning("Could not stop job %s: %s", job_id, exc.message)

    async def _is_running(self, job_id: int) -> bool:
        try:
            status = await self._job_status(job_id)
        except DaemonError as exc:
            if exc.is_job_not_found:
                return False
            raise
        return not status.get("finished")

    @staticmethod
    def _local(config: SyncSlot) -> str:
        return str(Path(config.local_path).expanduser())

    async def _launch_initial_copy(self, bookmark: str, config: SyncSlot) -> int:
        return await self._submit(
            endpoints.SYNC_COPY,
            {
                "srcFs": remote_spec(bookmark, config.remote_path),
                "dstFs": self._local(config),
                "createEmptySrcDirs": True,
                "_config": {
                    "IgnoreExisting": True,
                    "TrackRenames": True,
                    "Transfers": config.transfers,
                    "Checkers": config.checkers,
                },
            },
        )

    async def _launch_bisync(self, bookmark: str, config: SyncSlot, *, resync: bool) -> int:
        args = bisync_args(
            remote_spec(bookmark, config.remote_path),
            self._local(config),
            config_path=str(self._settings.rclone_config),
            resync=resync,
            max_delete=config.max_delete,
        )
        return await self._submit(endpoints.COMMAND, {"command": "bisync", "arg": args})

    async def _launch_one_shot(self, bookmark: str, config: SyncSlot) -> int:
        remote = remote_spec(bookmark, config.remote_path)
        local = self._local(config)
        if config.direction is SyncDirection.UPLOAD:
            src, dst = local, remote
        else:
            src, dst = remote, local
        options: dict[str, Any] = {"Transfers": config.transfers, "Checkers": config.checkers}
        if config.max_delete >= 0:
            options["MaxDelete"] = config.max_delete
        return await self._submit(
            endpoints.SYNC_SYNC,
            {"srcFs": src, "dstFs": dst, "createEmptySrcDirs": True, "_config": options},
        )

    async def wait_for_job(self, job_id: int, *, timeout: float | None = None) -> dict[str, Any]:
        """Poll a job until it finishes and return its final status.

        Raises:
            JobError: The job finished with an error.
            JobTimeoutError: The job was still running when *timeout* expired;
                it is asked to stop.
        """
        limit = self._settings.sync_job_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + limit
        while True:
            status = await self._job_status(job_id)
            if status.get("finished"):
                error = job_error(status)
                if error is not None:
                    raise JobError(endpoints.JOB_STATUS, error, job_id=job_id)
                return status
            if loop.time() >= deadline:
                await self._stop_job_quietly(job_id)
                raise JobTimeoutError(
                    endpoints.JOB_STATUS,
                    f"job {job_id} did not finish within {limit:.0f}s",
                    job_id=job_id,
                )
            await asyncio.sleep(self._settings.sync_job_poll_interval)

    # ── Start / stop ──

    async def start_sync(self, bookmark: str, slot: str) -> TrackedJob:
        """Start syncing a slot, bootstrapping it first if it never ran.

        Raises:
            AlreadyActiveError: A start is in flight or a job is still running.
            StateError: The slot is missing a local or remote path.
            SlotNotFoundError: No such sync slot.
            RpcUnavailableError: The RPC channel is not ready.
            JobError: A bootstrap step failed.
            SyncStoppedError: ``stop_sync`` interrupted the start.
        """
        key = (bookmark, slot)
        lock = self._lock_for(key)
        if lock.locked():
            raise AlreadyActiveError(f"Sync {bookmark}/{slot} is already starting")

        async with lock:
            self._starting.add(key)
            try:
                tracked = await self._start_locked(key)
            except SyncStoppedError:
                logger.info("Start of sync %s/%s abandoned after a stop", bookmark, slot)
                raise
            except Exception as exc:
                self._notifier.error(f"Failed to start sync {bookmark}/{slot}: {exc}")
                raise
            finally:
                self._starting.discard(key)
                self._stop_requested.discard(key)

        self._bus.notify()
        self._notifier.info(f"Sync started: {bookmark}/{slot}")
        return tracked

    async def _start_locked(self, key: SyncKey) -> TrackedJob:
        bookmark, slot = key
        config = self._slots.get_sync_config(bookmark, slot)
        if not config.local_path or not config.remote_path:
            msg = f"Sync {bookmark}/{slot} needs both a local and a remote path"
            raise StateError(msg)
        self._router.require_rpc("sync", endpoints.COMMAND)

        existing = self._jobs.get(key)
        if existing is not None:
            if await self._is_running(existing.job_id):
                raise AlreadyActiveError(f"Sync {bookmark}/{slot} is already active")
            self._forget(key)
            await self._abort_if_stopped(key)

        try:
            if config.mode is SyncMode.BIDIRECTIONAL:
                if not config.initialized:
                    self._phases[key] = SyncPhase.BOOTSTRAPPING
                    await self._bootstrap(key, config)
                self._phases[key] = SyncPhase.AWAITING_JOB
                kind = JobKind.BISYNC
                job_id = await self._launch_bisync(bookmark, config, resync=False)
            else:
                self._phases[key] = SyncPhase.AWAITING_JOB
                kind = JobKind.ONE_SHOT
                job_id = await self._launch_one_shot(bookmark, config)
            await self._abort_if_stopped(key, job_id)
        except BaseException:
            self._phases.pop(key, None)
            self._bootstrap_jobs.pop(key, None)
            raise

        tracked = self._track(key, job_id, kind, config)
        self._slots.set_sync_flag(bookmark, slot, "enabled", True)
        logger.info("Sync %s/%s running as job %s (%s)", bookmark, slot, job_id, kind)
        return tracked

    async def _abort_if_stopped(self, key: SyncKey, launched: int | None = None) -> None:
        """Raise ``SyncStoppedError`` if ``stop_sync`` ran while the start was suspended.

        *launched* is a job submitted after the stop; it is stopped as well.
        """
        if key not in self._stop_requested:
            return
        if launched is not None:
            await self._stop_job_quietly(launched)
        msg = f"Sync {key[0]}/{key[1]} was stopped while starting"
        raise SyncStoppedError(msg)

    async def _bootstrap(self, key: SyncKey, config: SyncSlot) -> None:
        bookmark, slot = key
        logger.info("Bootstrapping sync %s/%s: initial copy from remote", bookmark, slot)
        copy_id = await self._launch_initial_copy(bookmark, config)
        await self._await_bootstrap_job(key, copy_id)

        logger.info("Bootstrapping sync %s/%s: baseline resync", bookmark, slot)
        resync_id = await self._launch_bisync(bookmark, config, resync=True)
        await self._await_bootstrap_job(key, resync_id)

        self._slots.set_sync_flag(bookmark, slot, "initialized", True)
        config.initialized = True
        logger.info("Sync %s/%s initialized", bookmark, slot)

    async def _await_bootstrap_job(self, key: SyncKey, job_id: int) -> None:
        await self._abort_if_stopped(key, job_id)
        self._bootstrap_jobs[key] = job_id
        try:
            await self.wait_for_job(job_id)
        except JobError:
            # A stop ends the job with an error; report the stop instead.
            await self._abort_if_stopped(key)
            raise
        finally:
            self._bootstrap_jobs.pop(key, None)
        await self._abort_if_stopped(key)

    def _track(self, key: SyncKey, job_id: int, kind: JobKind, config: SyncSlot) -> TrackedJob:
        tracked = TrackedJob(job_id=job_id, kind=kind, bookmark=key[0], slot=key[1], config=config)
        self._jobs[key] = tracked
        self._phases[key] = SyncPhase.ACTIVE
        ticker = self._tickers.get(key)
        if ticker is None or ticker.done():
            self._tickers[key] = asyncio.create_task(self._run_ticker(key))
        return tracked

    def _forget(self, key: SyncKey) -> None:
        self._jobs.pop(key, None)
        self._phases.pop(key, None)
        ticker = self._tickers.pop(key, None)
        if ticker is None or ticker is asyncio.current_task():
            return
        # A ticker in the middle of a check may have a relaunch in flight. It
        # is left to finish, sees the key is gone and stops the new job.
        if self._checking.get(key) is not ticker:
            ticker.cancel()

    async def stop_sync(self, bookmark: str, slot: str, *, persist: bool = True) -> bool:
        """Stop the slot's job or its start in progress. Returns False if idle.

        The tracked entry is cleared before the daemon is asked to stop, so it
        is gone even if the stop call fails. A start in progress is flagged and
        abandons itself at its next step, stopping anything it launched.
        ``persist=False`` leaves the slot's enabled flag alone (shutdown).
        """
        key = (bookmark, slot)
        tracked = self._jobs.get(key)
        starting = key in self._starting
        if tracked is None and not starting:
            return False

        if starting:
            self._stop_requested.add(key)
        job_id = tracked.job_id if tracked is not None else self._bootstrap_jobs.get(key)
        self._forget(key)
        self._bootstrap_jobs.pop(key, None)
        try:
            if job_id is not None:
                await self._router.call_rpc(
                    endpoints.JOB_STOP, {"jobid": job_id}, operation="stop sync"
                )
        except DaemonError as exc:
            if not exc.is_job_not_found:
                if persist:
                    self._notifier.error(f"Failed to stop sync {bookmark}/{slot}: {exc}")
                raise
            logger.info("Sync job %s for %s/%s was already gone", job_id, bookmark, slot)
        finally:
            self._bus.notify()

        if persist:
            self._slots.set_sync_flag(bookmark, slot, "enabled", False)
            self._notifier.info(f"Sync stopped: {bookmark}/{slot}")
        logger.info("Stopped sync %s/%s (job %s)", bookmark, slot, job_id)
        return True

    # ── Health checks ──

    async def _run_ticker(self, key: SyncKey) -> None:
        interval = self._settings.sync_health_check_interval
        while key in self._jobs and self._tickers.get(key) is asyncio.current_task():
            await asyncio.sleep(interval)
            try:
                await self._check_job(key)
            except Exception:
                logger.exception("Health check failed for sync %s/%s", *key)

    async def health_check(self) -> None:
        """Check every tracked job once. Failures are logged per key."""
        for key in list(self._jobs):
            try:
                await self._check_job(key)
            except Exception:
                logger.exception("Health check failed for sync %s/%s", *key)

    async def _check_job(self, key: SyncKey) -> None:
        lock = self._lock_for(key)
        if key not in self._jobs or lock.locked():
            return

        async with lock:
            self._checking[key] = asyncio.current_task()
            try:
                await self._check_locked(key)
            finally:
                self._checking.pop(key, None)

    async def _check_locked(self, key: SyncKey) -> None:
        tracked = self._jobs.get(key)
        if tracked is None:
            return
        if tracked.finished_at is not None:
            # The last pass finished one check ago.
            await self._relaunch(key, tracked, resync=False)
            return

        try:
            status = await self._job_status(tracked.job_id)
        except DaemonError as exc:
            if not exc.is_job_not_found:
                raise
            if self._jobs.get(key) is tracked:
                logger.info(
                    "Sync job %s for %s/%s is unknown to the daemon, dropping it",
                    tracked.job_id,
                    *key,
                )
                self._forget(key)
                self._bus.notify()
            return
        if self._jobs.get(key) is not tracked:
            return

        tracked.last_health_check = datetime.now(UTC)
        if not status.get("finished"):
            return

        error = job_error(status)
        bidirectional = tracked.config.mode is SyncMode.BIDIRECTIONAL
        if error is None and bidirectional:
            tracked.finished_at = datetime.now(UTC)
            logger.debug("Bisync %s/%s pass finished, relaunching on the next check", *key)
        elif error is None:
            logger.info("One-shot sync %s/%s completed", *key)
            self._forget(key)
            self._bus.notify()
            self._notifier.info(f"Sync completed: {key[0]}/{key[1]}")
        elif bidirectional and is_bisync_abort(status):
            logger.warning("Bisync %s/%s aborted, relaunching with resync: %s", *key, error)
            await self._relaunch(key, tracked, resync=True)
        else:
            logger.error("Sync %s/%s failed: %s", *key, error)
            self._forget(key)
            self._bus.notify()
            self._notifier.error(f"Sync {key[0]}/{key[1]} failed: {error}")

    async def _relaunch(self, key: SyncKey, tracked: TrackedJob, *, resync: bool) -> None:
        job_id = await self._launch_bisync(tracked.bookmark, tracked.config, resync=resync)
        if self._jobs.get(key) is not tracked:
            # Stopped while the launch was in flight.
            await self._stop_job_quietly(job_id)
            return
        logger.info("Relaunched sync %s/%s as job %s (resync=%s)", *key, job_id, resync)
        tracked.job_id = job_id
        tracked.kind = JobKind.BISYNC_RESYNC if resync else JobKind.BISYNC
        tracked.started_at = datetime.now(UTC)
        tracked.finished_at = None
        self._bus.notify()

    # ── Lifecycle ──

    async def restore_enabled_syncs(self) -> int:
        """Start every sync slot marked enabled. Returns how many started."""
        keys = self._slots.enabled_sync_slots()
        results = await asyncio.gather(
            *(self.start_sync(bookmark, slot) for bookmark, slot in keys),
            return_exceptions=True,
        )
        started = 0
        for (bookmark, slot), result in zip(keys, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("Failed to restore sync %s/%s: %s", bookmark, slot, result)
            else:
                started += 1
        return started

    async def cleanup(self) -> None:
        """Stop every job concurrently and forget all tracking.

        Starts and health checks still holding a key lock are waited for, so a
        job they launch after the stop is stopped before this returns.
        """
        keys = list(set(self._jobs) | self._starting)
        if keys:
            logger.info("Stopping %d sync jobs", len(keys))
        try:
            results = await asyncio.wait_for(
                self._stop_all(keys), timeout=self._settings.sync_cleanup_timeout
            )
        except TimeoutError:
            logger.warning(
                "Stopping sync jobs did not finish within %.1fs",
                self._settings.sync_cleanup_timeout,
            )
        else:
            for (bookmark, slot), result in zip(keys, results, strict=True):
                if isinstance(result, BaseException):
                    logger.warning("Failed to stop sync %s/%s: %s", bookmark, slot, result)

        tickers = list(self._tickers.values())
        self._tickers.clear()
        for ticker in tickers:
            ticker.cancel()
        await asyncio.gather(*tickers, return_exceptions=True)
        self._jobs.clear()
        self._bootstrap_jobs.clear()
        self._phases.clear()

    async def _stop_all(self, keys: list[SyncKey]) -> list[Any]:
        results = await asyncio.gather(
            *(self.stop_sync(bookmark, slot, persist=False) for bookmark, slot in keys),
            return_exceptions=True,
        )
        busy = [lock for lock in self._locks.values() if lock.locked()]
        await asyncio.gather(*(self._settle(lock) for lock in busy))
        return results

    @staticmethod
    async def _settle(lock: asyncio.Lock) -> None:
        async with lock:
            pass

    def reset(self) -> None:
        """Forget every job without contacting the daemon (it has gone away)."""
        for key in list(self._jobs):
            self._forget(key)
        self._bootstrap_jobs.clear()
        self._phases.clear()
        self._bus.notify()

    # ── Slot configuration ──

    def _require_bookmark(self, bookmark: str) -> None:
        if not self._slots.bookmark_exists(bookmark):
            raise BookmarkNotFoundError(f"Bookmark {bookmark!r} not found")

    def list_sync_slots(self, bookmark: str) -> list[str]:
        self._require_bookmark(bookmark)
        return self._slots.list_sync_slots(bookmark)

    def get_sync_config(self, bookmark: str, slot: str) -> SyncSlot:
        return self._slots.get_sync_config(bookmark, slot)

    def _reject_if_running(self, bookmark: str, slot: str, action: str) -> None:
        key = (bookmark, slot)
        if key in self._jobs or key in self._starting or key in self._phases:
            raise ActiveResourceError(f"Stop sync {bookmark}/{slot} before {action} it")

    def create_sync_slot(self, bookmark: str, config: SyncSlot) -> SyncSlot:
        self._require_bookmark(bookmark)
        if config.name in self._slots.list_sync_slots(bookmark):
            msg = f"Sync slot {config.name!r} already exists for {bookmark}"
            raise StateError(msg)
        config.initialized = False
        config.enabled = False
        self._slots.save_sync_config(bookmark, config)
        self._bus.notify()
        return config

    def save_sync_config(self, bookmark: str, config: SyncSlot) -> SyncSlot:
        """Update an existing slot. Changing either path discards the baseline."""
        current = self._slots.get_sync_config(bookmark, config.name)
        self._reject_if_running(bookmark, config.name, "changing")
        same_paths = (current.local_path, current.remote_path) == (
            config.local_path,
            config.remote_path,
        )
        config.initialized = current.initialized and same_paths
        config.enabled = current.enabled
        self._slots.save_sync_config(bookmark, config)
        self._bus.notify()
        return config

    def delete_sync_slot(self, bookmark: str, slot: str) -> None:
        self._reject_if_running(bookmark, slot, "deleting")
        self._slots.delete_sync_slot(bookmark, slot)
        self._bus.notify()
