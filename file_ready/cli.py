"""
``file-ready`` command line interface.

Commands:
  wait       Block until a directory's batch is ready and print the paths.
  probe      Probe individual files once and print their release status.
  simulate   Soak-test the detector against a simulated producer.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from .config import CheckerConfig
from .detector import Outcome, ReadinessDetector
from .exceptions import FileReadyError
from .probe import FileReleaseProbe
from .simulate import run_soak

EXIT_TIMEOUT = 124
EXIT_CANCELLED = 130
EXIT_SETUP_ERROR = 2

ENV_PREFIX = "FILE_READY_"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(asctime)s %(levelname).3s] %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def _option(name: str, kind: type, help_text: str):
    """A config option that falls back to its ``FILE_READY_*`` environment variable."""
    envvar = ENV_PREFIX + name.lstrip("-").replace("-", "_").upper()
    return click.option(
        name, type=kind, default=None, envvar=envvar, show_envvar=True, help=help_text
    )


def _load_config(**overrides: object) -> CheckerConfig:
    """Apply the given options (command line or environment) to the defaults."""
    return CheckerConfig().with_overrides(**overrides)


def _config_options(func):
    options = [
        _option("--max-wait", float, "Wait budget in seconds [60]."),
        _option("--stable-cycles", int, "Stable cycles required before ready [3]."),
        _option("--poll-interval", float, "Seconds between scans [0.5]."),
        _option("--retry-attempts", int, "Exclusive-open attempts per file [3]."),
        _option("--retry-delay", float, "Seconds between open attempts [0.1]."),
        _option("--degraded-interval", float, "Seconds between size reads on denied access [0.1]."),
        _option("--suffix", str, "Candidate file suffix [.csv]."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log every poll cycle.")
def cli(verbose: bool) -> None:
    """Detect when a batch of files in a shared directory is ready."""
    _configure_logging(verbose)


@cli.command()
@click.argument("directory", type=click.Path(file_okay=False, path_type=Path))
@_config_options
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
def wait(directory: Path, as_json: bool, **overrides: object) -> None:
    """Wait until the files in DIRECTORY are ready and print their paths."""
    config = _load_config(**overrides)
    result = asyncio.run(ReadinessDetector(directory, config).wait())

    if as_json:
        payload = {
            "outcome": result.outcome.value,
            "cycles": result.cycles,
            "elapsed": round(result.elapsed, 3),
            "files": result.paths,
        }
        click.echo(json.dumps(payload, indent=2))
    else:
        for path in result.paths:
            click.echo(path)
        if not result.ready:
            click.echo(
                f"{result.outcome.value}: {len(result.files)} file(s) released after "
                f"{result.elapsed:.1f}s",
                err=True,
            )

    if result.outcome is Outcome.TIMED_OUT:
        sys.exit(EXIT_TIMEOUT)
    if result.outcome is Outcome.CANCELLED:
        sys.exit(EXIT_CANCELLED)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(path_type=Path))
@_option("--retry-attempts", int, "Exclusive-open attempts per file [3].")
@_option("--retry-delay", float, "Seconds between open attempts [0.1].")
@_option("--degraded-interval", float, "Seconds between size reads on denied access [0.1].")
def probe(paths: tuple[Path, ...], **overrides: object) -> None:
    """Probe each of PATHS once and print its release status."""
    config = _load_config(**overrides)
    checker = FileReleaseProbe(retry=config.retry, degraded_interval=config.degraded_interval)

    async def _probe_all():
        return [await checker.check(path) for path in paths]

    any_unreleased = False
    for result in asyncio.run(_probe_all()):
        suffix = " (size probe)" if result.degraded else ""
        click.echo(f"{result.status.value:<9} {result.path}{suffix}")
        any_unreleased = any_unreleased or not result.released
    if any_unreleased:
        sys.exit(1)


@cli.command()
@click.argument("directory", type=click.Path(file_okay=False, path_type=Path))
@click.option("--rounds", type=int, default=10, show_default=True, help="Rounds to run.")
@click.option("--min-files", type=int, default=20, show_default=True, help="Fewest files per round.")
@click.option("--max-files", type=int, default=60, show_default=True, help="Most files per round.")
@_config_options
def simulate(directory: Path, rounds: int, min_files: int, max_files: int, **overrides: object) -> None:
    """Soak-test the detector by generating batches into DIRECTORY."""
    config = _load_config(**overrides)
    report = asyncio.run(
        run_soak(directory, rounds, min_count=min_files, max_count=max_files, config=config)
    )

    click.echo(f"rounds:    {report.total}")
    click.echo(f"succeeded: {report.succeeded}")
    click.echo(f"failed:    {report.failed}")
    click.echo(f"success:   {report.success_rate * 100:.2f}%")
    for reason in report.failures + report.errors:
        click.echo(f"  {reason}", err=True)
    if report.failed:
        sys.exit(1)


def cli_entry() -> None:
    """Console-script entry point; turns setup errors into exit code 2."""
    try:
        cli()
    except FileReadyError as exc:
        click.echo(str(exc), err=True)
        sys.exit(EXIT_SETUP_ERROR)
