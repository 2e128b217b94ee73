"""
Per-file release probe.

A file is *released* once the producer has closed every handle on it.  The
primary signal is an exclusive, no-sharing open: if it succeeds nobody else
holds the file.  When the open is refused for lack of permission (as opposed
to a lock conflict) the probe falls back to comparing two size reads taken a
short interval apart.

The fallback is best effort only.  A writer that pauses while still holding
the file open looks exactly like a finished one and will be reported as
released.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Union

from .config import RetryPolicy
from .protocols import (
    DetectorEvent,
    FileSystemProtocol,
    LocalFileSystem,
    LoggingObserver,
    ReadinessObserver,
    notify_safely,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

__all__ = ["FileReleaseProbe", "FileStatus", "ProbeResult"]


class FileStatus(str, enum.Enum):
    """Classification of a candidate file in one poll cycle."""

    RELEASED = "released"
    LOCKED = "locked"
    MISSING = "missing"
    UNSTABLE = "unstable"
    ERROR = "error"


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of probing one file."""

    path: Path
    status: FileStatus
    attempts: int = 0
    degraded: bool = False
    size: int | None = None

    @property
    def released(self) -> bool:
        return self.status is FileStatus.RELEASED


class FileReleaseProbe:
    """
    Decides whether a single file has been fully written and closed.

    Args:
        filesystem: Filesystem backend; defaults to :class:`LocalFileSystem`.
        retry: Retry policy for lock conflicts.
        observer: Receives ``lock_conflict``, ``permission_fallback``,
            ``probe_error`` and ``size_probe_failed`` events.
        sleep: Coroutine function used for every delay.
        degraded_interval: Seconds between the two reads of the size probe.
        cancel_event: When set, pending retries are abandoned.
    """

    def __init__(
        self,
        filesystem: FileSystemProtocol | None = None,
        retry: RetryPolicy | None = None,
        *,
        observer: ReadinessObserver | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        degraded_interval: float = 0.1,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._fs = filesystem if filesystem is not None else LocalFileSystem()
        self._retry = retry if retry is not None else RetryPolicy()
        self._observer = observer if observer is not None else LoggingObserver()
        self._sleep = sleep
        self._degraded_interval = degraded_interval
        self._cancel_event = cancel_event

    @property
    def retry(self) -> RetryPolicy:
        return self._retry

    async def check(self, path: Union[str, Path]) -> ProbeResult:
        """Probe *path* and classify it.  Never raises for I/O problems."""
        path = Path(path)
        attempts = self._retry.attempts
        status = FileStatus.LOCKED
        attempt = 0

        for attempt in range(1, attempts + 1):
            try:
                await asyncio.to_thread(self._open_and_release, path)
            except FileNotFoundError:
                return ProbeResult(path, FileStatus.MISSING, attempts=attempt)
            except BlockingIOError as exc:
                status = FileStatus.LOCKED
                self._emit("lock_conflict", path, attempt=attempt, attempts=attempts, error=str(exc))
            except PermissionError as exc:
                self._emit("permission_fallback", path, error=str(exc))
                return await self.check_size_stable(path, attempts=attempt)
            except Exception as exc:
                status = FileStatus.ERROR
                self._emit("probe_error", path, attempt=attempt, attempts=attempts, error=str(exc))
            else:
                return ProbeResult(path, FileStatus.RELEASED, attempts=attempt)

            if attempt < attempts:
                if self._cancelled():
                    break
                await self._sleep(self._retry.delay)

        return ProbeResult(path, status, attempts=attempt)

    async def check_size_stable(self, path: Union[str, Path], *, attempts: int = 0) -> ProbeResult:
        """Degraded probe: released when two size reads ``degraded_interval`` apart agree."""
        path = Path(path)
        try:
            first = await asyncio.to_thread(self._fs.size, path)
            await self._sleep(self._degraded_interval)
            second = await asyncio.to_thread(self._fs.size, path)
        except Exception as exc:
            self._emit("size_probe_failed", path, error=str(exc))
            return ProbeResult(path, FileStatus.UNSTABLE, attempts=attempts, degraded=True)

        status = FileStatus.RELEASED if first == second else FileStatus.UNSTABLE
        return ProbeResult(path, status, attempts=attempts, degraded=True, size=second)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _open_and_release(self, path: Path) -> None:
        # Open and close inside the worker thread so the handle is released
        # even if the awaiting task is cancelled mid-call.
        with self._fs.open_exclusive(path):
            pass

    def _cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    def _emit(self, kind: str, path: Path, **detail: object) -> None:
        notify_safely(self._observer, DetectorEvent(kind=kind, path=path, detail=detail))  # type: ignore[arg-type]
