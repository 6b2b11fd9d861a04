"""Durable state carried between runs, and atomic artifact writes."""
from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated

from pydantic import AwareDatetime, BaseModel, Field, PlainSerializer, PlainValidator, ValidationError

from scheduler.diagnostics import NewState, StateParseError

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
DIGEST_SIZE = 32


def _decode_digest(value: object) -> bytes:
    if isinstance(value, bytes):
        digest = value
    elif isinstance(value, str):
        try:
            digest = base64.b64decode(value, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"invalid base64: {exc}") from exc
    else:
        raise ValueError("expected a base64 encoded SHA-256 hash")
    if len(digest) != DIGEST_SIZE:
        raise ValueError(f"expected {DIGEST_SIZE} bytes, got {len(digest)}")
    return digest


def _utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc)


Digest = Annotated[
    bytes,
    PlainValidator(_decode_digest),
    PlainSerializer(lambda digest: base64.b64encode(digest).decode("ascii"), return_type=str),
]
Timestamp = Annotated[
    AwareDatetime,
    PlainSerializer(lambda value: _utc(value).isoformat().replace("+00:00", "Z"), return_type=str),
]


class PosterRecord(BaseModel):
    """One catalogue entry; its slot is its index in :attr:`State.posters`."""

    last_used: Timestamp
    sha256: Digest


class State(BaseModel):
    posters: list[PosterRecord] = Field(default_factory=list)


def load_state(output_dir: Path) -> tuple[State, NewState | None]:
    """Load ``state.json`` from ``output_dir``.

    A missing file gives an empty state plus the advice to report.  An
    unreadable or malformed file raises :class:`StateParseError`.
    """
    path = Path(output_dir) / STATE_FILE
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return State(), NewState(path)
    except (OSError, UnicodeDecodeError) as exc:
        raise StateParseError(f"Could not read {path}: {exc}", source=path) from exc

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StateParseError(exc.msg, source=path, line=exc.lineno, column=exc.colno) from exc
    try:
        state = State.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"])
        raise StateParseError(f"{field}: {first['msg']}", source=path) from exc
    logger.info("Loaded %d catalogued poster(s) from %s", len(state.posters), path)
    return state, None


def dump_state(state: State) -> str:
    return state.model_dump_json(indent=2) + "\n"


def atomic_write(path: Path, content: str | bytes) -> None:
    """Replace ``path`` with ``content`` through a temporary file in the same directory."""
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(content.encode("utf-8") if isinstance(content, str) else content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def save_state(output_dir: Path, state: State) -> Path:
    path = Path(output_dir) / STATE_FILE
    atomic_write(path, dump_state(state))
    logger.info("Saved %d catalogued poster(s) to %s", len(state.posters), path)
    return path
