"""
End-to-end tests against the real filesystem and real locks.

Covers:
  - 20 concurrently written files are all reported, and nothing else
  - A writer still holding its lock delays readiness until it closes
  - Producer simulation helpers (cleanup, generation, rounds, soak reports)
"""

from __future__ import annotations

import asyncio
import os
import random
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest

from file_ready.config import CheckerConfig
from file_ready.detector import Outcome, ReadinessDetector
from file_ready.exceptions import InvalidConfigError
from file_ready.protocols import lock_exclusive
from file_ready.simulate import (
    SAMPLE_CSV,
    RoundReport,
    SoakReport,
    clean_directory,
    generate_batch,
    run_round,
    run_soak,
    write_locked,
)

if TYPE_CHECKING:
    from pathlib import Path

FAST = CheckerConfig(max_wait=10.0, stable_cycles=3, poll_interval=0.05)


# =====================================================================
# End-to-end
# =====================================================================


class TestEndToEnd:
    async def test_twenty_files_with_default_config(self, tmp_path: Path) -> None:
        report = await run_round(tmp_path, 20, rng=random.Random(7))

        assert report.outcome is Outcome.READY
        assert report.succeeded
        assert len(report.generated) == 20
        assert set(report.detected) == set(report.generated)
        assert report.missing == []
        assert report.unexpected == []

    async def test_held_lock_delays_readiness_until_closed(self, tmp_path: Path) -> None:
        late = tmp_path / "late.csv"
        fd = os.open(late, os.O_RDWR | os.O_CREAT, 0o644)
        lock_exclusive(fd)
        config = CheckerConfig(max_wait=10.0, poll_interval=0.05)
        detector = ReadinessDetector(tmp_path, config)

        async def _finish_writing() -> None:
            await asyncio.sleep(0.6)
            os.write(fd, b"a,b\n1,2\n")
            os.close(fd)

        writer = asyncio.create_task(_finish_writing())
        result = await detector.wait()
        await writer

        assert result.ready
        assert [path.name for path in result.files] == ["late.csv"]
        assert result.elapsed >= 0.6

    async def test_file_arriving_after_ready_is_not_included(self, tmp_path: Path) -> None:
        (tmp_path / "a.csv").write_text("1", encoding="utf-8")

        result = await ReadinessDetector(tmp_path, FAST).wait()
        (tmp_path / "b.csv").write_text("2", encoding="utf-8")

        assert [path.name for path in result.files] == ["a.csv"]


# =====================================================================
# Simulation helpers
# =====================================================================


class TestCleanDirectory:
    def test_creates_missing_directory(self, tmp_path: Path) -> None:
        target = tmp_path / "share" / "incoming"

        assert clean_directory(target) == 0
        assert target.is_dir()

    def test_removes_only_matching_top_level_files(self, tmp_path: Path) -> None:
        (tmp_path / "a.csv").write_text("1", encoding="utf-8")
        (tmp_path / "b.CSV").write_text("2", encoding="utf-8")
        (tmp_path / "keep.txt").write_text("3", encoding="utf-8")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "c.csv").write_text("4", encoding="utf-8")

        assert clean_directory(tmp_path) == 2
        assert sorted(p.name for p in tmp_path.iterdir()) == ["keep.txt", "sub"]
        assert (tmp_path / "sub" / "c.csv").exists()


class TestGenerateBatch:
    async def test_writes_requested_number_of_files(self, tmp_path: Path) -> None:
        paths = await generate_batch(tmp_path, 12, concurrency=4, rng=random.Random(1))

        assert len(paths) == 12
        assert paths == sorted(paths, key=str)
        assert all(path.parent == tmp_path for path in paths)
        assert all(path.name.startswith("recipe_") and path.suffix == ".csv" for path in paths)
        assert all(path.read_text(encoding="utf-8") == SAMPLE_CSV for path in paths)

    async def test_zero_files(self, tmp_path: Path) -> None:
        assert await generate_batch(tmp_path, 0) == []

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"count": -1},
            {"count": 1, "concurrency": 0},
            {"count": 1, "min_delay": 0.2, "max_delay": 0.1},
        ],
    )
    async def test_invalid_arguments(self, tmp_path: Path, kwargs) -> None:
        with pytest.raises(InvalidConfigError):
            await generate_batch(tmp_path, **kwargs)

    async def test_failed_writes_are_omitted(self, tmp_path: Path, monkeypatch) -> None:
        calls = {"n": 0}

        def _flaky(path, content):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OSError(28, "No space left on device")
            write_locked(path, content)

        monkeypatch.setattr("file_ready.simulate.write_locked", _flaky)

        paths = await generate_batch(tmp_path, 3, concurrency=1)

        assert len(paths) == 2
        assert len(list(tmp_path.glob("*.csv"))) == 2


def _running_detectors() -> list[asyncio.Task]:
    return [
        task
        for task in asyncio.all_tasks()
        if not task.done() and task.get_coro().__qualname__ == "ReadinessDetector.wait"
    ]


class TestRunRound:
    async def test_invalid_count_leaves_no_detector_running(self, tmp_path: Path, observer) -> None:
        config = CheckerConfig(max_wait=2.0, poll_interval=0.05)

        with pytest.raises(InvalidConfigError):
            await run_round(tmp_path, -1, config, observer=observer)

        assert _running_detectors() == []
        assert observer.kinds()[-1] == "cancelled"

    async def test_generation_failure_stops_the_detector(
        self, tmp_path: Path, observer, monkeypatch
    ) -> None:
        async def _share_went_away(directory, count, **kwargs):
            await asyncio.sleep(0.1)
            raise OSError(5, "Input/output error")

        monkeypatch.setattr("file_ready.simulate.generate_batch", _share_went_away)
        config = CheckerConfig(max_wait=5.0, poll_interval=0.02)

        with pytest.raises(OSError, match="Input/output error"):
            await run_round(tmp_path, 5, config, observer=observer)

        assert _running_detectors() == []
        assert "cycle" in observer.kinds()
        assert observer.kinds()[-1] == "cancelled"


class TestWriteLocked:
    def test_writes_content(self, tmp_path: Path) -> None:
        path = tmp_path / "a.csv"

        write_locked(path, "a,b\n1,2\n")

        assert path.read_text(encoding="utf-8") == "a,b\n1,2\n"

    def test_descriptor_is_closed_when_wrapping_fails(self, tmp_path: Path) -> None:
        opened: list[int] = []
        real_open = os.open

        def _recording_open(*args, **kwargs):
            fd = real_open(*args, **kwargs)
            opened.append(fd)
            return fd

        with (
            patch("file_ready.simulate.os.open", side_effect=_recording_open),
            patch("file_ready.simulate.open", create=True, side_effect=LookupError("no codec")),
            pytest.raises(LookupError),
        ):
            write_locked(tmp_path / "a.csv", "x")

        assert len(opened) == 1
        with pytest.raises(OSError):
            os.fstat(opened[0])


class TestReports:
    def test_round_report_failure_description(self, tmp_path: Path) -> None:
        a, b = tmp_path / "a.csv", tmp_path / "b.csv"
        report = RoundReport(generated=(a, b), detected=(a,), outcome=Outcome.TIMED_OUT, elapsed=1.0)

        assert not report.succeeded
        assert report.missing == [b]
        assert report.describe_failure() == "generated 2, detected 1 (timed_out), missing: b.csv"

    def test_soak_report_counts(self, tmp_path: Path) -> None:
        a = tmp_path / "a.csv"
        good = RoundReport(generated=(a,), detected=(a,), outcome=Outcome.READY, elapsed=0.1)
        bad = RoundReport(generated=(a,), detected=(), outcome=Outcome.TIMED_OUT, elapsed=0.1)
        report = SoakReport(rounds=[good, bad], errors=["round 3: share offline"])

        assert report.total == 3
        assert report.succeeded == 1
        assert report.failed == 2
        assert report.success_rate == pytest.approx(1 / 3)

    def test_empty_soak_report(self) -> None:
        assert SoakReport().success_rate == 0.0


class TestRunSoak:
    async def test_all_rounds_succeed(self, tmp_path: Path) -> None:
        report = await run_soak(
            tmp_path, 2, min_count=3, max_count=5, config=FAST, rng=random.Random(3)
        )

        assert report.total == 2
        assert report.succeeded == 2
        assert report.failures == []
        assert report.errors == []
        # the second round starts from a clean directory
        assert len(list(tmp_path.glob("*.csv"))) == len(report.rounds[-1].generated)

    @pytest.mark.parametrize(
        "kwargs",
        [{"rounds": 0}, {"rounds": 1, "min_count": 0}, {"rounds": 1, "min_count": 5, "max_count": 2}],
    )
    async def test_invalid_arguments(self, tmp_path: Path, kwargs) -> None:
        with pytest.raises(InvalidConfigError):
            await run_soak(tmp_path, **kwargs)
