"""
Shared fixtures and fakes for the file-ready test suite.

The detector reaches the disk only through ``FileSystemProtocol`` and waits
only through its injected ``sleep`` coroutine, so most tests drive it with the
in-memory :class:`FakeFileSystem` and the :class:`FakeClock` below.  Tests
tagged as end-to-end use the real filesystem and real locks.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from pathlib import Path

import pytest

from file_ready.protocols import DetectorEvent

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeHandle:
    def __init__(self, fs: FakeFileSystem, name: str) -> None:
        self._fs = fs
        self.name = name
        self.closed = False
        fs.open_handles.add(name)

    def close(self) -> None:
        self.closed = True
        self._fs.open_handles.discard(self.name)

    def __enter__(self) -> FakeHandle:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class FakeFileSystem:
    """
    In-memory stand-in for ``LocalFileSystem``.

    Files are keyed by name inside one directory.  Behaviour per file:
      - ``locks[name] = n``: the next *n* exclusive opens raise BlockingIOError
        (``-1`` means locked forever)
      - ``denied``: exclusive opens raise PermissionError
      - ``errors[name]``: exclusive opens raise that exception
      - ``sizes[name]``: sizes returned by successive ``size()`` calls; the
        last value repeats
    """

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.files: set[str] = set()
        self.locks: dict[str, int] = {}
        self.denied: set[str] = set()
        self.errors: dict[str, BaseException] = {}
        self.sizes: dict[str, list[int]] = {}
        self.size_errors: dict[str, BaseException] = {}
        self.list_errors: list[BaseException] = []
        self.open_calls: Counter[str] = Counter()
        self.size_calls: Counter[str] = Counter()
        self.open_handles: set[str] = set()
        self.scans = 0

    def add(self, *names: str, locked: int = 0) -> None:
        for name in names:
            self.files.add(name)
            if locked:
                self.locks[name] = locked

    def remove(self, *names: str) -> None:
        for name in names:
            self.files.discard(name)

    def path(self, name: str) -> Path:
        return self.directory / name

    # FileSystemProtocol -------------------------------------------------

    def list_candidates(self, directory: Path, suffix: str) -> list[Path]:
        self.scans += 1
        if self.list_errors:
            raise self.list_errors.pop(0)
        assert directory == self.directory
        return sorted(
            (directory / name for name in self.files if name.lower().endswith(suffix.lower())),
            key=str,
        )

    def open_exclusive(self, path: Path) -> FakeHandle:
        name = path.name
        self.open_calls[name] += 1
        if name not in self.files:
            raise FileNotFoundError(2, "No such file or directory", str(path))
        if name in self.denied:
            raise PermissionError(13, "Permission denied", str(path))
        if name in self.errors:
            raise self.errors[name]
        remaining = self.locks.get(name, 0)
        if remaining:
            if remaining > 0:
                self.locks[name] = remaining - 1
            raise BlockingIOError(11, "file is locked by another process", str(path))
        return FakeHandle(self, name)

    def size(self, path: Path) -> int:
        name = path.name
        self.size_calls[name] += 1
        if name in self.size_errors:
            raise self.size_errors[name]
        if name not in self.files:
            raise FileNotFoundError(2, "No such file or directory", str(path))
        sequence = self.sizes.get(name, [100])
        return sequence.pop(0) if len(sequence) > 1 else sequence[0]


class FakeClock:
    """Injected ``sleep`` that records delays and only yields to the loop."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class RecordingObserver:
    """Collects events; optional per-kind hooks run synchronously on notify."""

    def __init__(self) -> None:
        self.events: list[DetectorEvent] = []
        self.hooks: dict[str, list] = {}

    def on(self, kind: str, hook) -> None:
        self.hooks.setdefault(kind, []).append(hook)

    def notify(self, event: DetectorEvent) -> None:
        self.events.append(event)
        for hook in self.hooks.get(event.kind, []):
            hook(event)

    def kinds(self) -> list[str]:
        return [event.kind for event in self.events]

    def of(self, kind: str) -> list[DetectorEvent]:
        return [event for event in self.events if event.kind == kind]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_fs(tmp_path: Path) -> FakeFileSystem:
    return FakeFileSystem(tmp_path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()
