"""
Exception hierarchy for file-ready-checker.

Only configuration problems escape a detection session.  Everything that can
go wrong while probing files or listing the directory is contained by the
detector and reported through its observer instead.
"""

from __future__ import annotations

from typing import Any, NoReturn

__all__ = [
    "FileReadyError",
    "InvalidConfigError",
    "raise_config_error",
]


class FileReadyError(RuntimeError):
    """Base class for errors raised by file-ready-checker."""


class InvalidConfigError(FileReadyError, ValueError):
    """Raised when a detector is built with an unusable configuration."""


def raise_config_error(
    field: str,
    value: Any,
    reason: str,
    *,
    exc: BaseException | None = None,
) -> NoReturn:
    """Raise :class:`InvalidConfigError` with a standard message."""
    error = InvalidConfigError(f"Invalid {field}={value!r}: {reason}")
    if exc is not None:
        raise error from exc
    raise error
