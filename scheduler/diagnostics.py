"""Diagnostics raised while compiling a schedule, and the reporter that counts them.

Every problem the compiler can run into is a :class:`CompilerDiagnostic`.
Diagnostics are ordinary exceptions so they can be raised where the problem is
found and caught at the boundary that isolates it (the whole run, one event or
one poster).  The :class:`Diagnostics` reporter logs them and keeps the count
of error-severity diagnostics, which decides whether any output is written.
"""
from __future__ import annotations

import logging
from datetime import date
from pathlib import Path

logger = logging.getLogger(__name__)

ERROR = "error"
WARNING = "warning"
ADVICE = "advice"


class CompilerDiagnostic(Exception):
    """Base class for everything the compiler reports."""

    severity = ERROR
    help: str | None = None

    def __init__(
        self,
        message: str,
        *,
        source: str | Path | None = None,
        line: int | None = None,
        column: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.source = source
        self.line = line
        self.column = column

    @property
    def location(self) -> str | None:
        """Return ``file[:line[:column]]`` when a source is known."""
        if self.source is None:
            return None
        location = str(self.source)
        if self.line is not None:
            location += f":{self.line}"
            if self.column is not None:
                location += f":{self.column}"
        return location

    def render(self) -> str:
        text = self.message
        if self.location:
            text = f"{self.location}: {text}"
        if self.help:
            text += f" (help: {self.help})"
        return text


class MetaFileMissing(CompilerDiagnostic):
    def __init__(self, name: str = "meta.toml") -> None:
        super().__init__(f"{name} not found.")


class InputReadError(CompilerDiagnostic):
    def __init__(self, path: Path, error: OSError) -> None:
        super().__init__(f"Reading {path} failed: {error}", source=path)


class OutputDirectoryError(CompilerDiagnostic):
    def __init__(self, path: Path, error: OSError) -> None:
        super().__init__(f"Could not create output directory {path}: {error}", source=path)


class OutputWriteError(CompilerDiagnostic):
    def __init__(self, path: Path, error: OSError) -> None:
        super().__init__(f"Could not save {path}: {error}", source=path)


class EventParseError(CompilerDiagnostic):
    """An input document is not valid TOML or does not match its schema."""


class MetaParseError(EventParseError):
    pass


class StateParseError(CompilerDiagnostic):
    """The durable state file exists but cannot be read back."""


class ZoneDatabaseError(CompilerDiagnostic):
    def __init__(self, file_name: str, line: int | None, message: str) -> None:
        super().__init__(message, source=file_name, line=line)


class MissingTimeZone(CompilerDiagnostic):
    def __init__(self, name: str, source: Path, line: int | None = None) -> None:
        super().__init__(f"Unknown time zone {name!r}", source=source, line=line)
        self.name = name


class NonExistentLocalTime(CompilerDiagnostic):
    pass


class ConfirmedOutOfRange(CompilerDiagnostic):
    severity = WARNING

    def __init__(self, day: date, source: Path) -> None:
        super().__init__(
            f"The event is confirmed for {day.isoformat()}, "
            "but the event is not happening on this day.",
            source=source,
        )
        self.day = day


class CanceledOutOfRange(CompilerDiagnostic):
    severity = WARNING

    def __init__(self, day: date, source: Path) -> None:
        super().__init__(
            f"The event is canceled for {day.isoformat()}, "
            "but the event is not happening on this day.",
            source=source,
        )
        self.day = day


class ImageTooLarge(CompilerDiagnostic):
    severity = WARNING
    help = "Images cannot be larger than 2048x2048"

    def __init__(self, path: Path, width: int, height: int) -> None:
        super().__init__(f"Image {str(path)!r} is too large ({width}x{height})", source=path)
        self.width = width
        self.height = height


class MultiplePosters(CompilerDiagnostic):
    severity = WARNING
    help = "Events should only have one poster"

    def __init__(self, found: Path, extra: Path) -> None:
        super().__init__(f"Ignoring poster {str(extra)!r} and using {str(found)!r} instead")
        self.found = found
        self.extra = extra


class PosterReadError(CompilerDiagnostic):
    severity = WARNING

    def __init__(self, path: Path, error: Exception) -> None:
        super().__init__(f"Image {path} could not be processed: {error}", source=path)


class PosterCopyError(CompilerDiagnostic):
    severity = WARNING

    def __init__(self, path: Path, error: OSError) -> None:
        super().__init__(f"Could not copy poster {path}: {error}", source=path)


class NewState(CompilerDiagnostic):
    severity = ADVICE

    def __init__(self, path: Path) -> None:
        super().__init__("Initializing new state", source=path)


class Diagnostics:
    """Log diagnostics and count the ones that must block output."""

    def __init__(self) -> None:
        self.errors = 0
        self.warnings = 0

    def report(self, diagnostic: CompilerDiagnostic, context: str | None = None) -> None:
        text = diagnostic.render()
        if context:
            text = f"{context} {text}"
        if diagnostic.severity == ERROR:
            self.errors += 1
            logger.error(text)
        elif diagnostic.severity == WARNING:
            self.warnings += 1
            logger.warning(text)
        else:
            logger.info(text)

    @property
    def failed(self) -> bool:
        return self.errors > 0
