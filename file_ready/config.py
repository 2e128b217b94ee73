"""
Detector configuration.

All values have defaults tuned for a producer writing a few dozen small files
over a network share.  A :class:`CheckerConfig` can be built directly or copied
with :meth:`CheckerConfig.with_overrides`.  The ``file-ready`` command maps its
options and their ``FILE_READY_*`` environment variables onto the same fields.
"""

from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass, field
from typing import Any

from .exceptions import raise_config_error

__all__ = ["CheckerConfig", "RetryPolicy"]


def _check_seconds(name: str, value: float, *, positive: bool = False) -> None:
    if not math.isfinite(value):
        raise_config_error(name, value, "must be a finite number of seconds")
    if positive and value <= 0:
        raise_config_error(name, value, "must be > 0")
    if value < 0:
        raise_config_error(name, value, "must be >= 0")


@dataclass(frozen=True)
class RetryPolicy:
    """How often, and how far apart, an exclusive open is retried on a lock conflict."""

    attempts: int = 3
    delay: float = 0.1

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise_config_error("retry_attempts", self.attempts, "must be >= 1")
        _check_seconds("retry_delay", self.delay)


@dataclass(frozen=True)
class CheckerConfig:
    """
    Tunables for :class:`~file_ready.detector.ReadinessDetector`.

    Attributes:
        max_wait: Total wait budget in seconds before the session times out.
        stable_cycles: Consecutive cycles without a newly released file
            required before the batch is declared ready.
        poll_interval: Seconds slept between directory scans.
        retry: Exclusive-open retry policy applied per file per cycle.
        degraded_interval: Seconds between the two size reads of the
            degraded size-stability probe.
        suffix: File name suffix that selects candidate files.
    """

    max_wait: float = 60.0
    stable_cycles: int = 3
    poll_interval: float = 0.5
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    degraded_interval: float = 0.1
    suffix: str = ".csv"

    def __post_init__(self) -> None:
        _check_seconds("max_wait", self.max_wait)
        _check_seconds("poll_interval", self.poll_interval, positive=True)
        if self.stable_cycles < 1:
            raise_config_error("stable_cycles", self.stable_cycles, "must be >= 1")
        _check_seconds("degraded_interval", self.degraded_interval)
        if not self.suffix:
            raise_config_error("suffix", self.suffix, "must not be empty")

    @property
    def max_cycles(self) -> int:
        """Number of poll cycles that fit in the wait budget."""
        # Whole milliseconds, so 0.3 / 0.1 is 3 rather than 2.999...
        budget_ms = round(self.max_wait * 1000)
        interval_ms = max(1, round(self.poll_interval * 1000))
        return budget_ms // interval_ms

    def with_overrides(self, **changes: Any) -> CheckerConfig:
        """Return a copy with *changes* applied, skipping ``None`` values.

        ``retry_attempts`` and ``retry_delay`` are accepted as shorthands for
        the nested :class:`RetryPolicy`.
        """
        changes = {key: value for key, value in changes.items() if value is not None}
        attempts = changes.pop("retry_attempts", None)
        delay = changes.pop("retry_delay", None)
        if attempts is not None or delay is not None:
            changes["retry"] = RetryPolicy(
                attempts=self.retry.attempts if attempts is None else attempts,
                delay=self.retry.delay if delay is None else delay,
            )
        if not changes:
            return self
        return dataclasses.replace(self, **changes)
