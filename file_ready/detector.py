"""
Batch readiness detector.

Polls one flat directory until the set of released candidate files stops
growing, then hands the batch over.  Each poll cycle:

1. lists the top-level files that end in the configured suffix, sorted;
2. probes each one with :class:`~file_ready.probe.FileReleaseProbe`;
3. compares the released set with the remembered one.  Any newly released
   path resets the stability counter and becomes the remembered set,
   otherwise the counter goes up by one;
4. declares the batch ready once the counter reaches ``stable_cycles`` and the
   current set is non-empty.

The session gives up after ``max_wait / poll_interval`` cycles and returns
whatever it last remembered with :attr:`Outcome.TIMED_OUT`.  Callers decide
whether a partial batch is acceptable.

Known limitation: a producer that reopens a file after it was classified as
released is not detected.
"""

from __future__ import annotations

import asyncio
import enum
import os
import time
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Union

from .config import CheckerConfig
from .exceptions import FileReadyError, raise_config_error
from .probe import FileReleaseProbe, FileStatus, ProbeResult
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

__all__ = [
    "BatchSnapshot",
    "Outcome",
    "ReadinessDetector",
    "ReadinessResult",
    "wait_for_files_ready",
]


class Outcome(str, enum.Enum):
    """How a detection session ended."""

    READY = "ready"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class BatchSnapshot:
    """Released candidate files seen in one poll cycle, plus every file's status."""

    files: tuple[Path, ...] = ()
    statuses: Mapping[Path, FileStatus] = field(default_factory=dict)

    @classmethod
    def from_results(cls, results: Iterable[ProbeResult]) -> BatchSnapshot:
        ordered = sorted(results, key=lambda r: str(r.path))
        return cls(
            files=tuple(r.path for r in ordered if r.released),
            statuses={r.path: r.status for r in ordered},
        )

    def new_paths(self, previous: BatchSnapshot) -> list[Path]:
        """Paths released now that were not released in *previous*."""
        seen = set(previous.files)
        return [path for path in self.files if path not in seen]

    def __contains__(self, path: object) -> bool:
        return path in self.files

    def __iter__(self) -> Iterator[Path]:
        return iter(self.files)

    def __len__(self) -> int:
        return len(self.files)


@dataclass(frozen=True)
class ReadinessResult:
    """Final result of :meth:`ReadinessDetector.wait`."""

    outcome: Outcome
    files: tuple[Path, ...]
    cycles: int
    elapsed: float
    statuses: Mapping[Path, FileStatus] = field(default_factory=dict)

    @property
    def ready(self) -> bool:
        return self.outcome is Outcome.READY

    @property
    def paths(self) -> list[str]:
        return [str(path) for path in self.files]


class ReadinessDetector:
    """
    One detection session over *directory*.

    Usage::

        detector = ReadinessDetector("/mnt/share/incoming")
        result = await detector.wait()
        if result.ready:
            for path in result.files:
                ...

    A detector runs a single session; :meth:`wait` raises
    :class:`~file_ready.exceptions.FileReadyError` when called twice.

    Args:
        directory: Directory to watch.  It does not have to exist yet.
        config: Tunables; defaults to :class:`CheckerConfig()`.
        observer: Receives :class:`DetectorEvent` objects; defaults to
            :class:`LoggingObserver`.
        filesystem: Filesystem backend; defaults to :class:`LocalFileSystem`.
        sleep: Coroutine function used for every delay.
        cancel_event: Optional external abort signal.  Setting it (or calling
            :meth:`cancel`) ends the session with :attr:`Outcome.CANCELLED`.
    """

    def __init__(
        self,
        directory: Union[str, os.PathLike[str]],
        config: CheckerConfig | None = None,
        *,
        observer: ReadinessObserver | None = None,
        filesystem: FileSystemProtocol | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        if directory is None or not str(directory).strip():
            raise_config_error("directory", directory, "must be a non-empty path")
        if config is not None and not isinstance(config, CheckerConfig):
            raise_config_error("config", config, "must be a CheckerConfig")

        self._directory = Path(os.path.abspath(directory))
        self._config = config if config is not None else CheckerConfig()
        self._observer = observer if observer is not None else LoggingObserver()
        self._fs = filesystem if filesystem is not None else LocalFileSystem()
        self._sleep = sleep
        self._cancel_event = cancel_event if cancel_event is not None else asyncio.Event()
        self._probe = FileReleaseProbe(
            self._fs,
            self._config.retry,
            observer=self._observer,
            sleep=sleep,
            degraded_interval=self._config.degraded_interval,
            cancel_event=self._cancel_event,
        )

        self._started = False
        self._stable_count = 0
        self._remembered = BatchSnapshot()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def config(self) -> CheckerConfig:
        return self._config

    @property
    def stable_count(self) -> int:
        """Current value of the stability counter."""
        return self._stable_count

    @property
    def remembered(self) -> BatchSnapshot:
        """The snapshot the next cycle is compared against."""
        return self._remembered

    def cancel(self) -> None:
        """Ask the running session to stop at its next suspension point."""
        self._cancel_event.set()

    async def scan(self) -> BatchSnapshot:
        """List and probe the candidate files once.

        Listing failures are reported as a ``scan_error`` event and yield an
        empty snapshot.
        """
        try:
            candidates = await asyncio.to_thread(
                self._fs.list_candidates, self._directory, self._config.suffix
            )
        except Exception as exc:
            self._emit("scan_error", self._directory, error=str(exc))
            return BatchSnapshot()

        results: list[ProbeResult] = []
        for path in candidates:
            if self._cancelled():
                break
            results.append(await self._probe.check(path))
        return BatchSnapshot.from_results(results)

    async def wait(self) -> ReadinessResult:
        """Poll until the batch is ready, the wait budget runs out, or the session is cancelled."""
        if self._started:
            raise FileReadyError("ReadinessDetector.wait() may only be called once per detector")
        self._started = True

        started_at = time.monotonic()
        required = self._config.stable_cycles
        max_cycles = self._config.max_cycles
        current = BatchSnapshot()
        cycle = 0

        while cycle < max_cycles:
            if self._cancelled():
                return self._finish(Outcome.CANCELLED, self._remembered, cycle, started_at, current)
            cycle += 1

            current = await self.scan()
            if self._cancelled():
                return self._finish(Outcome.CANCELLED, self._remembered, cycle, started_at, current)

            self._emit(
                "cycle",
                None,
                cycle=cycle,
                statuses={path: status.value for path, status in current.statuses.items()},
                released=len(current),
            )

            new_paths = current.new_paths(self._remembered)
            if new_paths:
                self._stable_count = 0
                self._remembered = current
                self._emit("reset", None, new_files=len(new_paths), released=len(current))
            else:
                self._stable_count = min(self._stable_count + 1, required)
                self._emit(
                    "stable",
                    None,
                    stable_count=self._stable_count,
                    required=required,
                    released=len(current),
                )
                if self._stable_count >= required and len(current) > 0:
                    return self._finish(Outcome.READY, current, cycle, started_at, current)

            if cycle < max_cycles:
                await self._pause(self._config.poll_interval)

        return self._finish(Outcome.TIMED_OUT, self._remembered, cycle, started_at, current)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def _pause(self, seconds: float) -> None:
        """Sleep for *seconds*, waking early if the session is cancelled."""
        if self._cancelled():
            return
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        canceller = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({sleeper, canceller}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, canceller):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sleeper, canceller, return_exceptions=True)

    def _finish(
        self,
        outcome: Outcome,
        snapshot: BatchSnapshot,
        cycles: int,
        started_at: float,
        last: BatchSnapshot,
    ) -> ReadinessResult:
        result = ReadinessResult(
            outcome=outcome,
            files=snapshot.files,
            cycles=cycles,
            elapsed=time.monotonic() - started_at,
            statuses=dict(last.statuses),
        )
        if outcome is Outcome.READY:
            self._emit("ready", None, files=len(result.files), cycles=cycles)
        elif outcome is Outcome.TIMED_OUT:
            self._emit("timeout", None, files=len(result.files), max_wait=self._config.max_wait)
        else:
            self._emit("cancelled", None, files=len(result.files), cycles=cycles)
        return result

    def _emit(self, kind: str, path: Path | None, **detail: object) -> None:
        notify_safely(self._observer, DetectorEvent(kind=kind, path=path, detail=detail))  # type: ignore[arg-type]


async def wait_for_files_ready(
    directory: Union[str, os.PathLike[str]],
    config: CheckerConfig | None = None,
    **kwargs: Any,
) -> ReadinessResult:
    """Run a single :class:`ReadinessDetector` session over *directory*."""
    return await ReadinessDetector(directory, config, **kwargs).wait()
