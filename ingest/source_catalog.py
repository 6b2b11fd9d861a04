"""Collect, read and validate the input directory of a schedule."""
from __future__ import annotations

import logging
import re
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from ingest.schemas import Event, Meta
from scheduler.diagnostics import (
    Diagnostics,
    EventParseError,
    InputReadError,
    MetaFileMissing,
    MetaParseError,
)

logger = logging.getLogger(__name__)

META_FILE = "meta.toml"
EVENT_SUFFIX = ".toml"

_TOML_POSITION = re.compile(r"\(at line (\d+), column (\d+)\)")
_TABLE_HEADER = re.compile(r"^\s*\[\[?\s*([^\]]+?)\s*\]\]?\s*$")
_ASSIGNMENT = re.compile(r"^\s*([A-Za-z0-9_\-.\"' ]+?)\s*=")

ModelT = TypeVar("ModelT", bound=BaseModel)


def _split_key(text: str) -> tuple[str, ...]:
    return tuple(part.strip().strip("\"'") for part in text.split("."))


@dataclass
class SourceFile:
    """The text of one input file."""

    path: Path
    content: str

    def locate(self, key_path: tuple) -> int | None:
        """Return the 1-based line that sets ``key_path``, or its closest parent."""
        wanted = tuple(str(part) for part in key_path)
        best: tuple[int, int] | None = None
        table: tuple[str, ...] = ()
        for number, line in enumerate(self.content.splitlines(), start=1):
            header = _TABLE_HEADER.match(line)
            if header:
                table = _split_key(header.group(1))
                found = table
            else:
                assignment = _ASSIGNMENT.match(line)
                if not assignment:
                    continue
                found = table + _split_key(assignment.group(1))
            depth = len(found)
            if found == wanted[:depth] and (best is None or depth > best[0]):
                best = (depth, number)
        return best[1] if best else None


@dataclass
class EventSource:
    """A validated event together with the file it came from."""

    source: SourceFile
    event: Event

    @property
    def path(self) -> Path:
        return self.source.path

    @property
    def stem(self) -> str:
        return self.source.path.stem


def collect_files(input_dir: Path) -> list[Path]:
    """List the entries of ``input_dir`` (not recursive), sorted by path."""
    try:
        files = sorted(path for path in Path(input_dir).iterdir() if path.is_file())
    except OSError as exc:
        raise InputReadError(Path(input_dir), exc) from exc
    logger.info("Found %d file(s) in %s", len(files), input_dir)
    return files


def read_source(path: Path) -> SourceFile:
    try:
        return SourceFile(path, path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        raise InputReadError(path, exc) from exc


def parse_document(
    source: SourceFile, model: type[ModelT], error: type[EventParseError] = EventParseError
) -> ModelT:
    """Parse TOML text and validate it against ``model``."""
    try:
        data = tomllib.loads(source.content)
    except tomllib.TOMLDecodeError as exc:
        position = _TOML_POSITION.search(str(exc))
        line = column = None
        if position:
            line, column = int(position.group(1)), int(position.group(2))
        message = _TOML_POSITION.sub("", str(exc)).strip()
        raise error(message, source=source.path, line=line, column=column) from exc
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        key_path = tuple(first["loc"])
        field = ".".join(str(part) for part in key_path) or "<root>"
        message = f"{field}: {first['msg']}"
        if exc.error_count() > 1:
            message += f" (and {exc.error_count() - 1} more)"
        raise error(message, source=source.path, line=source.locate(key_path)) from exc


def load_meta(files: list[Path]) -> Meta:
    """Read and validate ``meta.toml``; every failure here stops the run."""
    path = next((path for path in files if path.name == META_FILE), None)
    if path is None:
        raise MetaFileMissing(META_FILE)
    return parse_document(read_source(path), Meta, MetaParseError)


def load_events(files: list[Path], diagnostics: Diagnostics) -> list[EventSource]:
    """Read and validate every event file, skipping the ones that fail."""
    events = []
    for path in files:
        if path.name == META_FILE or path.suffix != EVENT_SUFFIX:
            continue
        try:
            source = read_source(path)
            events.append(EventSource(source, parse_document(source, Event)))
        except (InputReadError, EventParseError) as exc:
            diagnostics.report(exc, context=f"Parsing {path} failed.")
    logger.info("Loaded %d event(s)", len(events))
    return events
