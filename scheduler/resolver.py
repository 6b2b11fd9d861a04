"""Turn validated event definitions into compiled output events.

Resolving an event checks its time zone, converts its date bounds to
instants, drops confirmed and canceled dates that are already over, and
resolves the info of every override scope with posters replaced by slots.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Optional, Sequence, Union
from zoneinfo import ZoneInfo

from ingest.schemas import EventInfo
from ingest.schemas import Event as EventInput
from ingest.source_catalog import EventSource
from posters.cache import PosterCache, PosterRef
from posters.images import guess_poster, load_poster
from scheduler import output
from scheduler.cascade import resolve_info
from scheduler.diagnostics import (
    CanceledOutOfRange,
    CompilerDiagnostic,
    ConfirmedOutOfRange,
    Diagnostics,
    ImageTooLarge,
    MissingTimeZone,
    NonExistentLocalTime,
    PosterCopyError,
    PosterReadError,
)
from zones.tzdb import ZoneTable, zone_info

logger = logging.getLogger(__name__)


def earliest_local(day: date, minutes: int, zone: ZoneInfo) -> datetime | None:
    """Return the first instant the wall clock in ``zone`` shows ``day`` plus ``minutes``.

    Returns None when the local time is skipped by a transition or lies
    outside the range of representable instants.
    """
    try:
        naive = datetime.combine(day, time()) + timedelta(minutes=minutes)
        local = naive.replace(tzinfo=zone, fold=0)
        if local.astimezone(timezone.utc).astimezone(zone).replace(tzinfo=None) != naive:
            return None
    except OverflowError:
        return None
    return local


def occurrence_instant(event: EventInput, day: date, zone: ZoneInfo, force: bool) -> datetime | None:
    """Return when ``event`` starts on ``day``, or None if it does not happen then.

    Without ``force`` a weekday that has no entry in ``event.days`` does not
    count as scheduled.
    """
    if event.start_date is not None and day < event.start_date:
        return None
    if event.end_date is not None and day > event.end_date:
        return None
    override = event.days.for_weekday(day.weekday())
    if override is None and not force:
        return None
    minutes = event.start
    if override is not None and override.start is not None:
        minutes = override.start
    return earliest_local(day, minutes, zone)


def midnight(day: date, zone: ZoneInfo, what: str, days: int = 0) -> int:
    """Return the first instant of the day ``days`` after ``day`` in ``zone``."""
    try:
        instant = earliest_local(day + timedelta(days=days), 0, zone)
    except OverflowError:
        instant = None
    if instant is None:
        raise NonExistentLocalTime(f"Midnight of {what} ({day.isoformat()}) does not exist in {zone.key}")
    return int(instant.timestamp())


PosterSource = Union[str, Path]


class ScheduleResolver:
    """Resolve events against one zone table, poster cache and clock."""

    def __init__(
        self,
        zones: ZoneTable,
        posters: PosterCache,
        diagnostics: Diagnostics,
        now: datetime,
        files: Sequence[Path] = (),
    ) -> None:
        self.zones = zones
        self.posters = posters
        self.diagnostics = diagnostics
        self.now = now
        self.files = list(files)

    def zone_for(self, item: EventSource) -> ZoneInfo:
        name = item.event.timezone
        missing = MissingTimeZone(name, item.path, item.source.locate(("timezone",)))
        if name not in self.zones:
            raise missing
        try:
            return zone_info(name)
        except (OSError, ValueError) as exc:
            raise missing from exc

    def filter_dates(
        self,
        item: EventSource,
        zone: ZoneInfo,
        dates: Union[bool, list[date]],
        force: bool,
        out_of_range: type[ConfirmedOutOfRange] | type[CanceledOutOfRange],
    ) -> Union[bool, list[date]]:
        """Keep the dates that are still ahead; an emptied list becomes ``False``."""
        if isinstance(dates, bool):
            return dates
        future = []
        for day in dates:
            instant = occurrence_instant(item.event, day, zone, force)
            if instant is None:
                self.diagnostics.report(out_of_range(day, item.path))
                continue
            if self.now < instant:
                future.append(day)
        return future or False

    def _load_poster(self, path: Path) -> Optional[PosterRef]:
        try:
            return self.posters.intern(load_poster(path))
        except (PosterReadError, ImageTooLarge, PosterCopyError) as exc:
            self.diagnostics.report(exc)
            return None

    def _poster(
        self, item: EventSource, source: PosterSource, memo: dict[Path, Optional[PosterRef]]
    ) -> Optional[output.Poster]:
        path = source if isinstance(source, Path) else item.path.parent / source
        if path not in memo:
            memo[path] = self._load_poster(path)
        ref = memo[path]
        if ref is None:
            return None
        return output.Poster(number=ref.number, width=ref.width, height=ref.height)

    def _info(
        self,
        item: EventSource,
        layers: Sequence[Optional[EventInfo]],
        fallback: dict[str, Any],
        memo: dict[Path, Optional[PosterRef]],
    ) -> dict[str, Any]:
        values = resolve_info(layers, fallback)
        if values["poster"] is not None:
            values["poster"] = self._poster(item, values["poster"], memo)
        if values["hashtag"] is not None:
            values["hashtag"] = output.hashtag(values["hashtag"])
        return values

    def resolve(self, item: EventSource) -> output.Event:
        """Compile one event; fatal problems are raised as diagnostics."""
        event = item.event
        zone = self.zone_for(item)
        start_date = end_date = None
        if event.start_date is not None:
            start_date = midnight(event.start_date, zone, "start date")
        if event.end_date is not None:
            end_date = midnight(event.end_date, zone, "day after end date", days=1)

        confirmed = self.filter_dates(item, zone, event.confirmed, True, ConfirmedOutOfRange)
        canceled = self.filter_dates(item, zone, event.canceled, False, CanceledOutOfRange)

        fallback: dict[str, Any] = {"name": item.stem}
        if event.poster is None:
            fallback["poster"] = guess_poster(item.path, self.files, self.diagnostics)
        memo: dict[Path, Optional[PosterRef]] = {}

        days = {
            name: output.Day(
                **self._info(item, [day, event], fallback, memo),
                start=day.start,
                duration=day.duration,
            )
            for name, day in event.days.defined()
        }
        languages = {}
        for code, language in sorted(event.languages.items()):
            language_days = {
                name: output.Day(
                    **self._info(
                        item, [day, language, getattr(event.days, name), event], fallback, memo
                    ),
                    start=day.start,
                    duration=day.duration,
                )
                for name, day in language.defined()
            }
            languages[code] = output.Language(
                **self._info(item, [language, event], fallback, memo), **language_days
            )

        return output.Event(
            **self._info(item, [event], fallback, memo),
            **days,
            start_date=start_date,
            end_date=end_date,
            timezone=event.timezone,
            start=event.start,
            duration=event.duration,
            platforms=event.platforms,
            languages=languages or None,
            canceled=None if canceled is False else canceled,
            confirmed=None if confirmed is True else confirmed,
        )

    def resolve_all(self, items: Sequence[EventSource]) -> list[output.Event]:
        """Resolve every event, reporting and skipping the ones that fail."""
        events = []
        for item in items:
            try:
                events.append(self.resolve(item))
            except CompilerDiagnostic as exc:
                self.diagnostics.report(exc, context=f"File {item.path} could not be processed.")
        logger.info("Compiled %d of %d event(s)", len(events), len(items))
        return events
