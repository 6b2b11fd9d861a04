"""Compile a directory of event files into ``data.json``.

Usage::

    python -m jobs.compile_schedule INPUT OUTPUT

Nothing is written when any error is reported; the exit status is 1 then.
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

from ingest.source_catalog import collect_files, load_events, load_meta
from ingest.state import STATE_FILE, atomic_write, load_state, save_state
from posters.cache import PosterCache
from scheduler import output
from scheduler.diagnostics import (
    CompilerDiagnostic,
    Diagnostics,
    MetaParseError,
    OutputDirectoryError,
    OutputWriteError,
)
from scheduler.resolver import ScheduleResolver
from zones.tzdb import DEFAULT_HORIZON_DAYS, load_zone_table

load_dotenv()

TZDB_DIR = os.getenv("SCHEDULE_TZDB_DIR")
HORIZON_DAYS = int(os.getenv("SCHEDULE_HORIZON_DAYS", str(DEFAULT_HORIZON_DAYS)))
LOG_LEVEL = os.getenv("SCHEDULE_LOG_LEVEL", "INFO")

DATA_FILE = "data.json"
POSTER_DIR = "posters"

logger = logging.getLogger(__name__)


def _compile(
    input_dir: Path,
    output_dir: Path,
    diagnostics: Diagnostics,
    now: datetime,
    tzdb_dir: Path | None,
    horizon_days: int,
) -> None:
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise OutputDirectoryError(output_dir, exc) from exc

    state, advice = load_state(output_dir)
    if advice is not None:
        diagnostics.report(advice)
    posters = PosterCache.load(output_dir / POSTER_DIR, state, now)

    files = collect_files(input_dir)
    try:
        meta = load_meta(files)
    except MetaParseError as exc:
        diagnostics.report(exc, context="Parsing meta.toml failed.")
        return

    zones = load_zone_table(tzdb_dir)
    items = load_events(files, diagnostics)
    resolver = ScheduleResolver(zones, posters, diagnostics, now, files)
    events = resolver.resolve_all(items)

    if diagnostics.failed:
        logger.error("%d error(s) reported, not writing output", diagnostics.errors)
        return

    document = output.Document(
        meta=output.compile_meta(meta, now),
        events=events,
        zones=output.compile_zones(zones.compile(now, horizon_days)),
    )
    try:
        save_state(output_dir, posters.persist())
    except OSError as exc:
        raise OutputWriteError(output_dir / STATE_FILE, exc) from exc
    data_path = output_dir / DATA_FILE
    try:
        atomic_write(data_path, output.render(document))
    except OSError as exc:
        raise OutputWriteError(data_path, exc) from exc
    logger.info("Wrote %d event(s) to %s", len(events), data_path)


def run(
    input_dir: str | Path,
    output_dir: str | Path,
    *,
    now: datetime | None = None,
    tzdb_dir: str | Path | None = TZDB_DIR,
    horizon_days: int = HORIZON_DAYS,
    diagnostics: Diagnostics | None = None,
) -> int:
    """Compile ``input_dir`` into ``output_dir`` and return the number of errors."""
    diagnostics = diagnostics or Diagnostics()
    now = now or datetime.now(timezone.utc)
    try:
        _compile(
            Path(input_dir),
            Path(output_dir),
            diagnostics,
            now,
            Path(tzdb_dir) if tzdb_dir else None,
            horizon_days,
        )
    except CompilerDiagnostic as exc:
        diagnostics.report(exc)
    if diagnostics.warnings:
        logger.info("%d warning(s) reported", diagnostics.warnings)
    return diagnostics.errors


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Compile event files into a schedule")
    parser.add_argument("input", type=Path, help="directory with meta.toml and event files")
    parser.add_argument("output", type=Path, help="directory for data.json, state.json and posters")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=LOG_LEVEL.upper(), format="%(levelname)s: %(message)s", stream=sys.stderr
    )
    return 1 if run(args.input, args.output) else 0


if __name__ == "__main__":
    raise SystemExit(main())
