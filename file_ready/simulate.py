"""
Producer simulation.

Writes batches of CSV files the way an upstream producer would (many small
files, concurrently, each written under an exclusive lock and then closed)
and runs the detector against them.  Used by the ``file-ready simulate``
command, the end-to-end tests and ``examples/batch_handoff.py``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

from .config import CheckerConfig
from .detector import Outcome, ReadinessDetector
from .exceptions import FileReadyError, raise_config_error
from .protocols import ReadinessObserver, lock_exclusive

logger = logging.getLogger("file_ready")

__all__ = [
    "SAMPLE_CSV",
    "RoundReport",
    "SoakReport",
    "clean_directory",
    "generate_batch",
    "run_round",
    "run_soak",
    "write_locked",
]

SAMPLE_CSV = """recipe,creator,item,name,value,unit,min,max
target_pulse,1,stRecipe.C1_ArSupplyTime,C1 argon supply time,0,s,0,1000
target_pulse,1,stRecipe.C1_Chamb_Ar,C1 chamber argon,0,sccm,0,1000
target_pulse,1,stRecipe.CoatingSpeed,coating speed,20,mm/s,0,100
target_pulse,1,stRecipe.CA1_Ar,CA1 argon,350,sccm,0,2000
target_pulse,1,stRecipe.CA1_Power,CA1 power,0.5,kW,0,6
target_pulse,1,stRecipe.CA2_Speed,CA2 speed,5,r/min,3,12
target_pulse,1,stRecipe.CA2_Frequency,CA2 frequency,40,kHz,0,100
target_pulse,1,stRecipe.CA2_PulseTime,CA2 pulse time,20,us,3,495
"""


def clean_directory(directory: Union[str, Path], suffix: str = ".csv") -> int:
    """Create *directory* if needed, otherwise delete its top-level *suffix* files.

    Returns the number of files removed.  Files that cannot be deleted are
    logged and left in place.
    """
    directory = Path(directory)
    if not directory.exists():
        directory.mkdir(parents=True, exist_ok=True)
        return 0

    removed = 0
    wanted = suffix.lower()
    for entry in sorted(directory.iterdir()):
        if not entry.is_file() or not entry.name.lower().endswith(wanted):
            continue
        try:
            entry.unlink()
        except OSError as exc:
            logger.warning("Could not delete old file %s: %s", entry.name, exc)
            continue
        logger.debug("Deleted old file %s", entry.name)
        removed += 1
    return removed


def write_locked(path: Union[str, Path], content: str) -> None:
    """Create *path* and write *content* while holding an exclusive lock."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    try:
        handle = open(fd, "w", encoding="utf-8", closefd=True)
    except BaseException:
        os.close(fd)
        raise
    with handle:
        lock_exclusive(handle.fileno(), blocking=True)
        handle.write(content)
        handle.flush()


async def generate_batch(
    directory: Union[str, Path],
    count: int,
    *,
    min_delay: float = 0.01,
    max_delay: float = 0.05,
    concurrency: int = 20,
    content: str = SAMPLE_CSV,
    prefix: str = "recipe_",
    suffix: str = ".csv",
    rng: random.Random | None = None,
) -> list[Path]:
    """
    Write *count* files into *directory*, at most *concurrency* at a time.

    Each writer waits a random delay in ``[min_delay, max_delay]`` before
    writing.  Returns the sorted absolute paths of the files actually
    written; failed writes are logged and omitted.
    """
    if count < 0:
        raise_config_error("count", count, "must be >= 0")
    if concurrency < 1:
        raise_config_error("concurrency", concurrency, "must be >= 1")
    if min_delay < 0 or max_delay < min_delay:
        raise_config_error("delay range", (min_delay, max_delay), "must satisfy 0 <= min <= max")

    rng = rng if rng is not None else random.Random()
    target = Path(os.path.abspath(directory))
    target.mkdir(parents=True, exist_ok=True)
    semaphore = asyncio.Semaphore(concurrency)
    generated: list[Path] = []

    async def _write_one() -> None:
        async with semaphore:
            path = target / f"{prefix}{uuid.uuid4().hex[:8]}{suffix}"
            await asyncio.sleep(rng.uniform(min_delay, max_delay))
            try:
                await asyncio.to_thread(write_locked, path, content)
            except OSError as exc:
                logger.error("Failed to generate %s: %s", path.name, exc)
                return
            logger.debug("Generated %s", path.name)
            generated.append(path)

    await asyncio.gather(*(_write_one() for _ in range(count)))
    logger.info("Generated %d/%d file(s) in %s", len(generated), count, target)
    return sorted(generated, key=str)


@dataclass(frozen=True)
class RoundReport:
    """One generate-and-detect round."""

    generated: tuple[Path, ...]
    detected: tuple[Path, ...]
    outcome: Outcome
    elapsed: float

    @property
    def missing(self) -> list[Path]:
        found = set(self.detected)
        return [path for path in self.generated if path not in found]

    @property
    def unexpected(self) -> list[Path]:
        made = set(self.generated)
        return [path for path in self.detected if path not in made]

    @property
    def succeeded(self) -> bool:
        return not self.missing and len(self.detected) == len(self.generated)

    def describe_failure(self) -> str:
        names = ";".join(path.name for path in self.missing)
        return (
            f"generated {len(self.generated)}, detected {len(self.detected)} "
            f"({self.outcome.value}), missing: {names or '-'}"
        )


@dataclass
class SoakReport:
    """Aggregate of several rounds."""

    rounds: list[RoundReport] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.rounds) + len(self.errors)

    @property
    def succeeded(self) -> int:
        return sum(1 for report in self.rounds if report.succeeded)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    @property
    def success_rate(self) -> float:
        return self.succeeded / self.total if self.total else 0.0


async def run_round(
    directory: Union[str, Path],
    count: int,
    config: CheckerConfig | None = None,
    *,
    observer: ReadinessObserver | None = None,
    rng: random.Random | None = None,
) -> RoundReport:
    """Generate *count* files while a detector waits on *directory*."""
    detector = ReadinessDetector(directory, config, observer=observer)
    watching = asyncio.create_task(detector.wait())
    try:
        generated = await generate_batch(directory, count, suffix=detector.config.suffix, rng=rng)
    except BaseException:
        # The detector must not outlive a failed round.
        detector.cancel()
        await asyncio.gather(watching, return_exceptions=True)
        raise
    result = await watching
    logger.info(
        "Round finished in %.0f ms: generated %d, detected %d (%s)",
        result.elapsed * 1000,
        len(generated),
        len(result.files),
        result.outcome.value,
    )
    return RoundReport(
        generated=tuple(generated),
        detected=result.files,
        outcome=result.outcome,
        elapsed=result.elapsed,
    )


async def run_soak(
    directory: Union[str, Path],
    rounds: int,
    *,
    min_count: int = 20,
    max_count: int = 60,
    config: CheckerConfig | None = None,
    observer: ReadinessObserver | None = None,
    rng: random.Random | None = None,
) -> SoakReport:
    """Repeat :func:`run_round` *rounds* times, cleaning the directory in between."""
    if rounds < 1:
        raise_config_error("rounds", rounds, "must be >= 1")
    if min_count < 1 or max_count < min_count:
        raise_config_error("file count range", (min_count, max_count), "must satisfy 1 <= min <= max")

    rng = rng if rng is not None else random.Random()
    suffix = (config or CheckerConfig()).suffix
    report = SoakReport()

    for number in range(1, rounds + 1):
        logger.info("Starting round %d/%d", number, rounds)
        try:
            clean_directory(directory, suffix)
            count = rng.randint(min_count, max_count)
            round_report = await run_round(directory, count, config, observer=observer, rng=rng)
        except (OSError, FileReadyError) as exc:
            logger.error("Round %d raised: %s", number, exc)
            report.errors.append(f"round {number}: {exc}")
            continue

        report.rounds.append(round_report)
        if round_report.succeeded:
            logger.info("Round %d succeeded", number)
        else:
            reason = f"round {number}: {round_report.describe_failure()}"
            logger.warning("Round %d failed: %s", number, reason)
            report.failures.append(reason)

    return report
