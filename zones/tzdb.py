"""Build UTC offset transition tables from zone database source files.

The source format is the line oriented one ``zic`` reads, either as the
per region files of a tz release or as the single ``tzdata.zi`` file the
``tzdata`` distribution ships.  After a trailing ``#`` comment is stripped,
every line is one of a closed set of shapes::

    Zone  NAME  STDOFF  RULES  FORMAT  [UNTIL]
          STDOFF  RULES  FORMAT  [UNTIL]          (continuation)
    Rule  NAME  FROM  TO  -  IN  ON  AT  SAVE  LETTER
    Link  TARGET  ALIAS

Keywords, month and weekday names may be abbreviated, and a continuation
line is recognized by following a zone line that has an UNTIL.  Lines are
parsed into small tagged records and fed to a :class:`TableBuilder`, one
handler per record type.  The finished :class:`ZoneTable` expands the rules
on demand and reports, per zone, the offset changes that matter for a
bounded window after "now".
"""
from __future__ import annotations

import bisect
import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Iterable, Union
from zoneinfo import ZoneInfo

from scheduler.diagnostics import ZoneDatabaseError

logger = logging.getLogger(__name__)

TZDATA_PACKAGE = "tzdata.zoneinfo"
TZDATA_SOURCE = "tzdata.zi"
REGION_FILES = (
    "africa", "antarctica", "asia", "australasia", "etcetera",
    "europe", "northamerica", "southamerica", "backward",
)
DEFAULT_HORIZON_DAYS = 365 * 5

KEYWORDS = ("zone", "rule", "link")

MONTHS = (
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
)
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

EPOCH = datetime(1970, 1, 1)
INT16_MIN = -(2 ** 15)
INT16_MAX = 2 ** 15 - 1

# AT/UNTIL suffixes: wall clock, standard time, universal time
_TIME_KINDS = {"w": "w", "s": "s", "u": "u", "g": "u", "z": "u"}


def _lookup(word: str, names: tuple[str, ...], what: str) -> int:
    """Return the index of the single name ``word`` abbreviates."""
    low = word.lower()
    matches = [i for i, name in enumerate(names) if low and name.startswith(low)]
    if len(matches) != 1:
        raise ValueError(f"invalid {what} {word!r}")
    return matches[0]


def _parse_year(text: str) -> int:
    if not text.lstrip("-").isdigit():
        raise ValueError(f"invalid year {text!r}")
    return int(text)


def parse_duration(text: str) -> int:
    """Parse ``[-]hh[:mm[:ss]]`` into seconds.  A lone ``-`` means zero."""
    if text == "-":
        return 0
    sign = 1
    body = text
    if body.startswith("-"):
        sign = -1
        body = body[1:]
    parts = body.split(":")
    if not 1 <= len(parts) <= 3 or not all(part.isdigit() for part in parts):
        raise ValueError(f"invalid time {text!r}")
    hours, minutes, seconds = (int(part) for part in parts + ["0"] * (3 - len(parts)))
    if minutes > 59 or seconds > 59:
        raise ValueError(f"invalid time {text!r}")
    return sign * (hours * 3600 + minutes * 60 + seconds)


def parse_time_of_day(text: str) -> tuple[int, str]:
    """Parse an AT or UNTIL time with its optional ``w``/``s``/``u`` suffix."""
    kind = "w"
    if len(text) > 1 and text[-1].lower() in _TIME_KINDS:
        kind = _TIME_KINDS[text[-1].lower()]
        text = text[:-1]
    return parse_duration(text), kind


def parse_save(text: str) -> int:
    # newer databases mark SAVE with "s" (standard) or "d" (daylight)
    if len(text) > 1 and text[-1] in "sd":
        text = text[:-1]
    return parse_duration(text)


@dataclass(frozen=True)
class DaySpec:
    """The ON column: ``5``, ``lastSun``, ``Sun>=8`` or ``Sun<=25``."""

    kind: str
    day: int = 1
    weekday: int = 0

    @classmethod
    def parse(cls, text: str) -> DaySpec:
        if text.isdigit():
            if not 1 <= int(text) <= 31:
                raise ValueError(f"invalid day of month {text!r}")
            return cls("day", int(text))
        if text.lower().startswith("last"):
            return cls("last", weekday=_lookup(text[4:], WEEKDAYS, "weekday"))
        for operator, kind in ((">=", "on_or_after"), ("<=", "on_or_before")):
            if operator in text:
                name, _, number = text.partition(operator)
                if not number.isdigit() or not 1 <= int(number) <= 31:
                    raise ValueError(f"invalid day specification {text!r}")
                return cls(kind, int(number), _lookup(name, WEEKDAYS, "weekday"))
        raise ValueError(f"invalid day specification {text!r}")

    def resolve(self, year: int, month: int) -> date:
        if self.kind == "day":
            return date(year, month, self.day)
        if self.kind == "last":
            last = date(year, month, calendar.monthrange(year, month)[1])
            return last - timedelta(days=(last.weekday() - self.weekday) % 7)
        anchor = date(year, month, self.day)
        if self.kind == "on_or_after":
            return anchor + timedelta(days=(self.weekday - anchor.weekday()) % 7)
        return anchor - timedelta(days=(anchor.weekday() - self.weekday) % 7)


@dataclass(frozen=True)
class Rule:
    name: str
    from_year: int
    to_year: int | None
    month: int
    day: DaySpec
    at: int
    at_kind: str
    save: int
    letters: str

    def local_start(self, year: int) -> datetime:
        start = datetime.combine(self.day.resolve(year, self.month), time())
        return start + timedelta(seconds=self.at)


@dataclass(frozen=True)
class Until:
    year: int
    month: int = 1
    day: DaySpec = DaySpec("day", 1)
    at: int = 0
    kind: str = "w"

    @classmethod
    def parse(cls, fields: list[str]) -> Until:
        year = _parse_year(fields[0])
        month = _lookup(fields[1], MONTHS, "month") + 1 if len(fields) > 1 else 1
        day = DaySpec.parse(fields[2]) if len(fields) > 2 else DaySpec("day", 1)
        at, kind = parse_time_of_day(fields[3]) if len(fields) > 3 else (0, "w")
        return cls(year, month, day, at, kind)

    def local(self) -> datetime:
        return datetime.combine(self.day.resolve(self.year, self.month), time()) + timedelta(
            seconds=self.at
        )


@dataclass(frozen=True)
class ZoneSegment:
    """One observance of a zone: standard offset, rules and end point."""

    offset: int
    rule_set: str | None
    save: int
    format: str
    until: Until | None


def _parse_segment(fields: list[str]) -> ZoneSegment:
    if not 3 <= len(fields) <= 7:
        raise ValueError("expected STDOFF RULES FORMAT [UNTIL]")
    offset = parse_duration(fields[0])
    rules = fields[1]
    if rules == "-":
        rule_set, save = None, 0
    elif rules[0].isdigit() or (rules[0] == "-" and rules[1:2].isdigit()):
        rule_set, save = None, parse_save(rules)
    else:
        rule_set, save = rules, 0
    until = Until.parse(fields[3:]) if len(fields) > 3 else None
    return ZoneSegment(offset, rule_set, save, fields[2], until)


@dataclass(frozen=True)
class Space:
    pass


@dataclass(frozen=True)
class ZoneLine:
    name: str
    segment: ZoneSegment


@dataclass(frozen=True)
class Continuation:
    segment: ZoneSegment


@dataclass(frozen=True)
class RuleLine:
    rule: Rule


@dataclass(frozen=True)
class LinkLine:
    target: str
    alias: str


Line = Union[Space, ZoneLine, Continuation, RuleLine, LinkLine]


def _parse_rule(fields: list[str]) -> Rule:
    if len(fields) != 10:
        raise ValueError("expected Rule NAME FROM TO - IN ON AT SAVE LETTER")
    _, name, from_text, to_text, kind, month, on, at, save, letters = fields
    from_year = _parse_year(from_text)
    word = to_text.lower()
    if word and "only".startswith(word):
        to_year: int | None = from_year
    elif len(word) >= 2 and "maximum".startswith(word):
        to_year = None
    else:
        to_year = _parse_year(to_text)
        if to_year < from_year:
            raise ValueError(f"rule ends ({to_year}) before it starts ({from_year})")
    if kind != "-":
        raise ValueError(f"unsupported rule type {kind!r}")
    at_seconds, at_kind = parse_time_of_day(at)
    return Rule(
        name=name,
        from_year=from_year,
        to_year=to_year,
        month=_lookup(month, MONTHS, "month") + 1,
        day=DaySpec.parse(on),
        at=at_seconds,
        at_kind=at_kind,
        save=parse_save(save),
        letters="" if letters == "-" else letters,
    )


def parse_line(text: str, continuation: bool = False) -> Line:
    """Classify one comment-stripped line.

    ``continuation`` is set while the preceding zone line has an UNTIL, in
    which case the line carries no keyword and need not be indented.
    """
    fields = text.split()
    if not fields:
        return Space()
    if continuation or text[0].isspace():
        return Continuation(_parse_segment(fields))
    keyword = KEYWORDS[_lookup(fields[0], KEYWORDS, "line type")]
    if keyword == "zone":
        if len(fields) < 5:
            raise ValueError("expected Zone NAME STDOFF RULES FORMAT [UNTIL]")
        return ZoneLine(fields[1], _parse_segment(fields[2:]))
    if keyword == "rule":
        return RuleLine(_parse_rule(fields))
    if len(fields) != 3:
        raise ValueError("expected Link TARGET ALIAS")
    return LinkLine(fields[1], fields[2])


@dataclass
class TableBuilder:
    """Collect parsed lines into zones, rule sets and links."""

    zones: dict[str, list[ZoneSegment]] = field(default_factory=dict)
    rules: dict[str, list[Rule]] = field(default_factory=dict)
    links: dict[str, str] = field(default_factory=dict)
    _current: str | None = None
    _references: list[tuple[str, str, int]] = field(default_factory=list)
    _link_lines: dict[str, tuple[str, int]] = field(default_factory=dict)

    @property
    def expects_continuation(self) -> bool:
        return self._current is not None

    def add(self, line: Line, file_name: str, line_number: int) -> None:
        handlers = {
            Space: self.add_space,
            ZoneLine: self.add_zone_line,
            Continuation: self.add_continuation_line,
            RuleLine: self.add_rule_line,
            LinkLine: self.add_link_line,
        }
        handlers[type(line)](line)
        segment = getattr(line, "segment", None)
        if segment is not None and segment.rule_set is not None:
            self._references.append((segment.rule_set, file_name, line_number))
        if isinstance(line, LinkLine):
            self._link_lines[line.alias] = (file_name, line_number)

    def add_space(self, line: Space) -> None:
        pass

    def add_zone_line(self, line: ZoneLine) -> None:
        if line.name in self.zones or line.name in self.links:
            raise ValueError(f"zone {line.name!r} is already defined")
        self.zones[line.name] = [line.segment]
        self._current = line.name if line.segment.until is not None else None

    def add_continuation_line(self, line: Continuation) -> None:
        if self._current is None:
            raise ValueError("continuation line does not follow a zone line with an UNTIL")
        self.zones[self._current].append(line.segment)
        if line.segment.until is None:
            self._current = None

    def add_rule_line(self, line: RuleLine) -> None:
        self.rules.setdefault(line.rule.name, []).append(line.rule)
        self._current = None

    def add_link_line(self, line: LinkLine) -> None:
        if line.alias in self.links or line.alias in self.zones:
            raise ValueError(f"link {line.alias!r} is already defined")
        self.links[line.alias] = line.target
        self._current = None

    def build(self) -> ZoneTable:
        for rule_set, file_name, line_number in self._references:
            if rule_set not in self.rules:
                raise ZoneDatabaseError(file_name, line_number, f"unknown rule set {rule_set!r}")
        table = ZoneTable(self.zones, self.rules, self.links)
        for alias, target in self.links.items():
            if table.resolve_name(alias) is None:
                file_name, line_number = self._link_lines[alias]
                raise ZoneDatabaseError(file_name, line_number, f"link target {target!r} is not a zone")
        return table


@dataclass(frozen=True)
class Transition:
    """A point where a zone's UTC offset changes.

    ``start`` is a unix timestamp, or ``None`` for the span already in effect.
    ``offset`` is in minutes east of UTC and ``None`` when zero.
    """

    start: int | None = None
    offset: int | None = None


def _to_utc(local: datetime, kind: str, offset: int, save: int) -> int:
    seconds = (local - EPOCH) // timedelta(seconds=1)
    if kind == "u":
        return seconds
    if kind == "s":
        return seconds - offset
    return seconds - offset - save


def _wall_save(kind: str, save: int) -> int:
    # only a wall clock time includes the save in effect
    return save if kind == "w" else 0


def _push(spans: list[tuple[int | None, int]], start: int | None, offset: int) -> None:
    if spans and spans[-1][1] == offset:
        return
    if spans and start is not None and spans[-1][0] is not None and start <= spans[-1][0]:
        spans[-1] = (spans[-1][0], offset)
        return
    spans.append((start, offset))


class ZoneTable:
    """Zones, rule sets and links parsed from zone database sources."""

    def __init__(
        self,
        zones: dict[str, list[ZoneSegment]],
        rules: dict[str, list[Rule]],
        links: dict[str, str],
    ) -> None:
        self._zones = zones
        self._rules = rules
        self._links = links

    @classmethod
    def build(cls, files: Iterable[tuple[str, str]]) -> ZoneTable:
        """Parse ``(file name, text)`` pairs; any bad line fails the build."""
        builder = TableBuilder()
        for file_name, content in files:
            for line_number, raw in enumerate(content.splitlines(), start=1):
                text = raw.split("#", 1)[0]
                try:
                    builder.add(parse_line(text, builder.expects_continuation), file_name, line_number)
                except ValueError as exc:
                    raise ZoneDatabaseError(file_name, line_number, str(exc)) from exc
        table = builder.build()
        logger.debug(
            "Zone table has %d zones, %d rule sets, %d links",
            len(table._zones),
            len(table._rules),
            len(table._links),
        )
        return table

    def __contains__(self, name: object) -> bool:
        return name in self._zones or name in self._links

    def names(self) -> list[str]:
        return sorted([*self._zones, *self._links])

    def resolve_name(self, name: str) -> str | None:
        """Follow links from ``name`` to a zone; None if there is none."""
        seen = set()
        while name in self._links and name not in seen:
            seen.add(name)
            name = self._links[name]
        return name if name in self._zones else None

    def _rule_events(self, segment: ZoneSegment, last_year: int) -> list[tuple[int, int]]:
        """Expand the segment's rule set into ``(utc instant, save)`` pairs.

        Every year from the first rule up to ``last_year`` is expanded.  A wall
        clock AT is read with the save of the rule before it.
        """
        candidates = []
        for rule in self._rules[segment.rule_set]:
            to_year = last_year if rule.to_year is None else min(rule.to_year, last_year)
            for year in range(rule.from_year, to_year + 1):
                candidates.append((rule.local_start(year), rule))
        candidates.sort(key=lambda item: item[0])
        events = []
        save = 0
        for local, rule in candidates:
            events.append((_to_utc(local, rule.at_kind, segment.offset, save), rule.save))
            save = rule.save
        return events

    def timespans(self, name: str, until_year: int) -> list[tuple[int | None, int]]:
        """Return ``(start, total offset in seconds)`` spans up to ``until_year``.

        The first span has no start.  Consecutive spans with the same offset
        are merged.  A segment's UNTIL is read with the save in effect at each
        step, and a rule change at or after it belongs to the next segment.
        """
        canonical = self.resolve_name(name)
        if canonical is None:
            return []
        spans: list[tuple[int | None, int]] = []
        start: int | None = None
        for segment in self._zones[canonical]:
            events: list[tuple[int, int]] = []
            save = segment.save
            if segment.rule_set is not None:
                last_year = until_year
                if segment.until is not None:
                    last_year = min(segment.until.year, until_year)
                events = self._rule_events(segment, last_year)
                save = 0
                if start is not None:
                    # the rule in effect when the segment begins
                    for instant, rule_save in events:
                        if instant > start:
                            break
                        save = rule_save
            _push(spans, start, segment.offset + save)

            until: int | None = None
            if segment.until is not None:
                until = _to_utc(segment.until.local(), segment.until.kind, segment.offset, 0)
            for instant, rule_save in events:
                if start is not None and instant <= start:
                    continue
                if until is not None and instant >= until - _wall_save(segment.until.kind, save):
                    break
                _push(spans, instant, segment.offset + rule_save)
                save = rule_save
            if until is None:
                break
            start = until - _wall_save(segment.until.kind, save)
        return spans

    def transitions(
        self, name: str, now: datetime, horizon_days: int = DEFAULT_HORIZON_DAYS
    ) -> list[Transition]:
        """Return the offset changes of ``name`` from ``now`` to ``now + horizon_days``.

        The span in effect at ``now`` comes first, without a start.  Unknown
        zone names give an empty list.
        """
        if self.resolve_name(name) is None:
            return []
        limit = now + timedelta(days=horizon_days)
        now_ts = int(now.timestamp())
        limit_ts = int(limit.timestamp())
        spans = self.timespans(name, limit.year + 1)

        starts = [float("-inf") if start is None else start for start, _ in spans]
        current = max(bisect.bisect_right(starts, now_ts) - 1, 0)
        result = []
        for start, offset in spans[current:]:
            if start is not None and start >= limit_ts:
                break
            minutes = int(offset / 60)
            result.append(
                Transition(
                    start=start if start is not None and start > now_ts else None,
                    offset=minutes if minutes != 0 and INT16_MIN <= minutes <= INT16_MAX else None,
                )
            )
        return result

    def compile(
        self, now: datetime, horizon_days: int = DEFAULT_HORIZON_DAYS
    ) -> dict[str, list[Transition]]:
        """Return the transition list of every zone and link, ordered by name."""
        by_zone: dict[str, list[Transition]] = {}
        compiled = {}
        for name in self.names():
            canonical = self.resolve_name(name)
            if canonical not in by_zone:
                by_zone[canonical] = self.transitions(canonical, now, horizon_days)
            compiled[name] = by_zone[canonical]
        return compiled


def read_database(directory: Path | None = None) -> list[tuple[str, str]]:
    """Return ``(file name, text)`` pairs of zone source files.

    Without ``directory`` the ``tzdata.zi`` of the installed ``tzdata``
    distribution is read.  A directory may hold either a ``tzdata.zi`` or the
    region files of a tz release.
    """
    if directory is None:
        try:
            text = resources.files(TZDATA_PACKAGE).joinpath(TZDATA_SOURCE).read_text(encoding="utf-8")
        except (ModuleNotFoundError, OSError) as exc:
            raise ZoneDatabaseError(TZDATA_SOURCE, None, f"Could not read zone database: {exc}") from exc
        return [(TZDATA_SOURCE, text)]

    directory = Path(directory)
    names = (TZDATA_SOURCE,) if (directory / TZDATA_SOURCE).is_file() else REGION_FILES
    paths = [directory / name for name in names if (directory / name).is_file()]
    if not paths:
        raise ZoneDatabaseError(str(directory), None, "No zone database source files found")
    try:
        return [(path.name, path.read_text(encoding="utf-8")) for path in paths]
    except OSError as exc:
        raise ZoneDatabaseError(str(directory), None, f"Could not read zone database: {exc}") from exc


def _release(files: list[tuple[str, str]]) -> str:
    for _, text in files:
        first = text.split("\n", 1)[0]
        if first.startswith("# version "):
            return first[len("# version "):].strip()
    return "unknown"


def load_zone_table(directory: Path | None = None) -> ZoneTable:
    files = read_database(directory)
    logger.info("Building zone table from %d file(s), release %s", len(files), _release(files))
    return ZoneTable.build(files)


@lru_cache(maxsize=None)
def zone_info(name: str) -> ZoneInfo:
    """Load ``name`` from the compiled files of the installed ``tzdata`` distribution.

    This is the release :func:`read_database` reads by default, so local time
    conversions agree with the transitions written out.
    """
    resource = resources.files(TZDATA_PACKAGE)
    for part in name.split("/"):
        resource = resource.joinpath(part)
    with resource.open("rb") as handle:
        return ZoneInfo.from_file(handle, key=name)
