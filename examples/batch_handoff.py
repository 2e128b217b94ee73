"""
Batch hand-off example for file-ready-checker.

A simulated producer writes a batch of CSV files into a temporary directory
while the detector waits for the batch to settle, then the consumer reads the
ready files.
"""

from __future__ import annotations

import asyncio
import logging
import tempfile
from pathlib import Path

from file_ready import CheckerConfig, ReadinessDetector
from file_ready.simulate import generate_batch


async def main() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname).3s] %(message)s")

    with tempfile.TemporaryDirectory(prefix="file_ready_") as tmp:
        share = Path(tmp)
        config = CheckerConfig(max_wait=20.0, poll_interval=0.2)
        detector = ReadinessDetector(share, config)

        generated, result = await asyncio.gather(
            generate_batch(share, 25, max_delay=0.08),
            detector.wait(),
        )

        print(f"Outcome: {result.outcome.value} after {result.cycles} cycle(s)")
        print(f"Generated {len(generated)}, ready {len(result.files)}")
        rows = sum(len(path.read_text(encoding="utf-8").splitlines()) - 1 for path in result.files)
        print(f"Consumed {rows} data row(s).")


if __name__ == "__main__":
    asyncio.run(main())
