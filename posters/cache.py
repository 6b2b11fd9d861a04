"""Content addressed poster store with a fixed number of slots.

Posters are copied to ``<output>/posters/<slot>`` where the slot is written
as two lowercase hex digits.  The catalogue (digest and last use per slot) is
kept in ``state.json`` so identical images keep their slot across runs.  When
all 255 slots are taken, the least recently used one is reused.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from ingest.state import PosterRecord, State, atomic_write
from posters.images import PosterImage
from scheduler.diagnostics import OutputDirectoryError, PosterCopyError

logger = logging.getLogger(__name__)

CAPACITY = 255


@dataclass(frozen=True)
class PosterRef:
    """What the output records for a poster: its slot and dimensions."""

    number: int
    width: int
    height: int


class PosterCache:
    def __init__(self, directory: Path, records: list[PosterRecord], now: datetime) -> None:
        self.directory = Path(directory)
        self.records = [record.model_copy() for record in records]
        self.slots = {record.sha256: slot for slot, record in enumerate(self.records)}
        self.now = now

    @classmethod
    def load(cls, directory: Path, state: State, now: datetime) -> PosterCache:
        """Seed a cache from ``state`` and make sure ``directory`` exists."""
        directory = Path(directory)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OutputDirectoryError(directory, exc) from exc
        return cls(directory, state.posters, now)

    def __len__(self) -> int:
        return len(self.records)

    def path_for(self, slot: int) -> Path:
        return self.directory / f"{slot:02x}"

    def _victim(self) -> int:
        return min(range(len(self.records)), key=lambda slot: (self.records[slot].last_used, slot))

    def intern(self, image: PosterImage) -> PosterRef:
        """Return the slot holding ``image``, storing it first if it is new.

        A known digest only has its last use refreshed.  Otherwise the image is
        copied to the next free slot, or over the least recently used one.  A
        failed copy raises :class:`PosterCopyError` and leaves the catalogue
        untouched.
        """
        slot = self.slots.get(image.sha256)
        if slot is not None:
            self.records[slot].last_used = self.now
            return PosterRef(slot, image.width, image.height)

        slot = len(self.records) if len(self.records) < CAPACITY else self._victim()
        try:
            atomic_write(self.path_for(slot), image.data)
        except OSError as exc:
            raise PosterCopyError(image.path, exc) from exc

        record = PosterRecord(last_used=self.now, sha256=image.sha256)
        if slot == len(self.records):
            self.records.append(record)
        else:
            evicted = self.records[slot]
            logger.info("Evicting poster slot %02x (last used %s)", slot, evicted.last_used)
            del self.slots[evicted.sha256]
            self.records[slot] = record
        self.slots[image.sha256] = slot
        logger.debug("Stored %s in poster slot %02x", image.path, slot)
        return PosterRef(slot, image.width, image.height)

    def persist(self) -> State:
        """Return the catalogue to save once the run succeeds."""
        return State(posters=list(self.records))
