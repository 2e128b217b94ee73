"""
Pluggable seams for the readiness detector.

The detector talks to the outside world through two structural interfaces:

* :class:`FileSystemProtocol` lists candidate files, opens them exclusively
  and reads their sizes.  :class:`LocalFileSystem` is the real implementation;
  tests swap in fakes.
* :class:`ReadinessObserver` receives :class:`DetectorEvent` objects.  The
  default :class:`LoggingObserver` forwards them to the ``file_ready`` logger.

Usage::

    detector = ReadinessDetector(
        "/mnt/share/incoming",
        observer=NullObserver(),
        filesystem=LocalFileSystem(),
    )
"""

from __future__ import annotations

import errno
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Protocol, Union, runtime_checkable

if os.name == "nt":  # pragma: no cover - exercised on Windows only
    import msvcrt
else:
    import fcntl

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger("file_ready")

__all__ = [
    "DetectorEvent",
    "EventKind",
    "ExclusiveHandle",
    "FileSystemProtocol",
    "LocalFileSystem",
    "LoggingObserver",
    "NullObserver",
    "ReadinessObserver",
    "notify_safely",
]

# Windows ERROR_SHARING_VIOLATION / ERROR_LOCK_VIOLATION
_SHARING_VIOLATIONS = frozenset({32, 33})
_LOCK_ERRNOS = frozenset({errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK, errno.EDEADLK})

EventKind = Literal[
    "cycle",
    "lock_conflict",
    "permission_fallback",
    "probe_error",
    "size_probe_failed",
    "scan_error",
    "reset",
    "stable",
    "ready",
    "timeout",
    "cancelled",
]


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------


@runtime_checkable
class ExclusiveHandle(Protocol):
    """An exclusively opened file.  Closing it releases the lock."""

    def close(self) -> None: ...

    def __enter__(self) -> ExclusiveHandle: ...

    def __exit__(self, *args: object) -> None: ...


@runtime_checkable
class FileSystemProtocol(Protocol):
    """Structural interface for everything the detector does on disk.

    Implementations signal a lock conflict with :class:`BlockingIOError`, a
    vanished file with :class:`FileNotFoundError` and a denied open with
    :class:`PermissionError`.  Every method is blocking; the detector runs
    them in worker threads.
    """

    def list_candidates(self, directory: Path, suffix: str) -> list[Path]:
        """Return sorted absolute paths of top-level files ending in *suffix*."""
        ...

    def open_exclusive(self, path: Path) -> ExclusiveHandle:
        """Open *path* for read-write access with no sharing permitted."""
        ...

    def size(self, path: Path) -> int:
        """Return the size of *path* in bytes."""
        ...


class _LockedFile:
    """File descriptor holding a non-blocking exclusive lock."""

    def __init__(self, fd: int) -> None:
        self._fd: int | None = fd

    def close(self) -> None:
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            if os.name == "nt":  # pragma: no cover - Windows only
                msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
        finally:
            os.close(fd)

    def __enter__(self) -> _LockedFile:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def lock_exclusive(fd: int, *, blocking: bool = False) -> None:
    """Take an exclusive advisory lock on *fd*; raises ``OSError`` on conflict when non-blocking."""
    if os.name == "nt":  # pragma: no cover - Windows only
        msvcrt.locking(fd, msvcrt.LK_LOCK if blocking else msvcrt.LK_NBLCK, 1)
    else:
        fcntl.flock(fd, fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB)


class LocalFileSystem:
    """The real filesystem, using ``os.scandir`` and advisory locks."""

    def list_candidates(self, directory: Path, suffix: str) -> list[Path]:
        wanted = suffix.lower()
        found: list[Path] = []
        try:
            with os.scandir(directory) as entries:
                for entry in entries:
                    try:
                        if not entry.is_file():
                            continue
                    except OSError:
                        continue
                    if entry.name.lower().endswith(wanted):
                        found.append(Path(os.path.abspath(entry.path)))
        except FileNotFoundError:
            return []
        return sorted(found, key=str)

    def open_exclusive(self, path: Path) -> _LockedFile:
        try:
            fd = os.open(path, os.O_RDWR | getattr(os, "O_BINARY", 0))
        except PermissionError as exc:
            if getattr(exc, "winerror", None) in _SHARING_VIOLATIONS:
                raise BlockingIOError(errno.EAGAIN, "file is in use by another process", str(path)) from exc
            raise

        try:
            lock_exclusive(fd)
        except OSError as exc:
            os.close(fd)
            if isinstance(exc, BlockingIOError) or exc.errno in _LOCK_ERRNOS:
                raise BlockingIOError(errno.EAGAIN, "file is locked by another process", str(path)) from exc
            raise
        return _LockedFile(fd)

    def size(self, path: Path) -> int:
        return os.stat(path).st_size


# ---------------------------------------------------------------------------
# Observers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DetectorEvent:
    """A structured status event emitted by the detector or the probe."""

    kind: EventKind
    path: Path | None = None
    detail: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@runtime_checkable
class ReadinessObserver(Protocol):
    """Sink for :class:`DetectorEvent` objects.  Must not block."""

    def notify(self, event: DetectorEvent) -> None: ...


class NullObserver:
    """Observer that discards every event."""

    def notify(self, event: DetectorEvent) -> None:
        del event


_LEVELS: dict[str, int] = {
    "cycle": logging.DEBUG,
    "reset": logging.DEBUG,
    "stable": logging.DEBUG,
    "lock_conflict": logging.WARNING,
    "permission_fallback": logging.WARNING,
    "timeout": logging.WARNING,
    "cancelled": logging.WARNING,
    "probe_error": logging.ERROR,
    "size_probe_failed": logging.ERROR,
    "scan_error": logging.ERROR,
    "ready": logging.INFO,
}


class LoggingObserver:
    """Default observer: renders events as log records on the ``file_ready`` logger."""

    def __init__(self, target: Union[logging.Logger, None] = None) -> None:
        self._logger = target if target is not None else logger

    def notify(self, event: DetectorEvent) -> None:
        level = _LEVELS.get(event.kind, logging.INFO)
        if not self._logger.isEnabledFor(level):
            return
        message, args = self._render(event)
        self._logger.log(level, message, *args)

    @staticmethod
    def _render(event: DetectorEvent) -> tuple[str, tuple[Any, ...]]:
        d = event.detail
        name = event.path.name if event.path is not None else ""
        if event.kind == "cycle":
            statuses: Mapping[Path, str] = d.get("statuses", {})
            if not statuses:
                return "[cycle %s] no candidate files yet", (d.get("cycle"),)
            pairs = " | ".join(f"{path.name}: {status}" for path, status in statuses.items())
            return "[cycle %s] %d candidate file(s): %s", (d.get("cycle"), len(statuses), pairs)
        if event.kind == "lock_conflict":
            return "File still locked (attempt %s/%s): %s (%s)", (
                d.get("attempt"),
                d.get("attempts"),
                event.path,
                d.get("error"),
            )
        if event.kind == "permission_fallback":
            return "No exclusive-open permission, falling back to size probe: %s (%s)", (
                event.path,
                d.get("error"),
            )
        if event.kind == "probe_error":
            return "Unexpected error probing %s: %s", (event.path, d.get("error"))
        if event.kind == "size_probe_failed":
            return "Size probe failed for %s: %s", (event.path, d.get("error"))
        if event.kind == "scan_error":
            return "Could not list %s: %s", (event.path, d.get("error"))
        if event.kind == "reset":
            return "%d newly released file(s), stability counter reset", (d.get("new_files", 0),)
        if event.kind == "stable":
            return "No newly released files for %s/%s cycle(s)", (d.get("stable_count"), d.get("required"))
        if event.kind == "ready":
            return "All %d file(s) ready after %s cycle(s)", (d.get("files", 0), d.get("cycles"))
        if event.kind == "timeout":
            return "Timed out after %ss waiting for files, %d released so far", (
                d.get("max_wait"),
                d.get("files", 0),
            )
        if event.kind == "cancelled":
            return "Wait cancelled, %d released so far", (d.get("files", 0),)
        return "%s %s", (event.kind, name)


def notify_safely(observer: ReadinessObserver, event: DetectorEvent) -> None:
    """Deliver *event* to *observer*; observer failures are logged, never raised."""
    try:
        observer.notify(event)
    except Exception:
        logger.exception("Observer %s failed handling %r event", type(observer).__name__, event.kind)
