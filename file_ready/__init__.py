"""
file-ready-checker public API.

Detects when a batch of files written into a shared directory by an external
producer is complete: every file has been closed by its writer and no new file
has appeared for a few poll cycles.

Usage::

    from file_ready import ReadinessDetector

    result = await ReadinessDetector("/mnt/share/incoming").wait()
    if result.ready:
        process(result.files)
"""

from __future__ import annotations

from .config import CheckerConfig, RetryPolicy
from .detector import BatchSnapshot, Outcome, ReadinessDetector, ReadinessResult, wait_for_files_ready
from .exceptions import FileReadyError, InvalidConfigError
from .probe import FileReleaseProbe, FileStatus, ProbeResult
from .protocols import (
    DetectorEvent,
    FileSystemProtocol,
    LocalFileSystem,
    LoggingObserver,
    NullObserver,
    ReadinessObserver,
)

__all__ = [
    "BatchSnapshot",
    "CheckerConfig",
    "DetectorEvent",
    "FileReadyError",
    "FileReleaseProbe",
    "FileStatus",
    "FileSystemProtocol",
    "InvalidConfigError",
    "LocalFileSystem",
    "LoggingObserver",
    "NullObserver",
    "Outcome",
    "ProbeResult",
    "ReadinessDetector",
    "ReadinessObserver",
    "ReadinessResult",
    "RetryPolicy",
    "wait_for_files_ready",
]

__version__ = "0.1.0"
