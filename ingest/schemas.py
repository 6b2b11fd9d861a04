"""Input models for event and metadata files.

All models reject unknown fields.  Info fields are written flat inside the
event table, inside each ``[days.<weekday>]`` table and inside each
``[languages.<code>]`` table; language tables also carry their own weekday
overrides directly (``[languages.de.monday]``).
"""
from __future__ import annotations

from datetime import date, datetime, time
from enum import Enum
from typing import Annotated, Any, Optional, Union

import pycountry
from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field, StrictBool

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
MAX_MINUTES = 65535
MINUTES_PER_DAY = 24 * 60


def _small_number(text: str) -> int:
    if not (text.isascii() and text.isdigit()) or int(text) > MAX_MINUTES:
        raise ValueError(f"invalid number {text!r}")
    return int(text)


def parse_minutes(value: Any) -> int:
    """Accept ``"HH:MM"``, a string or integer of minutes, or a TOML local time."""
    if isinstance(value, bool):
        raise ValueError("expected minutes, \"HH:MM\" or a local time")
    if isinstance(value, int):
        if not 0 <= value <= MAX_MINUTES:
            raise ValueError(f"minutes must be between 0 and {MAX_MINUTES}")
        return value
    if isinstance(value, str):
        hours, sep, minutes = value.partition(":")
        total = _small_number(hours) * 60 + _small_number(minutes) if sep else _small_number(value)
        if total > MAX_MINUTES:
            raise ValueError(f"minutes must be between 0 and {MAX_MINUTES}")
        return total
    if isinstance(value, (datetime, date)):
        raise ValueError("Time should not have a date")
    if isinstance(value, time):
        if value.tzinfo is not None:
            raise ValueError("Time should not have an offset")
        if value.second or value.microsecond:
            raise ValueError("Time must contain whole minutes")
        return value.hour * 60 + value.minute
    raise ValueError("expected minutes, \"HH:MM\" or a local time")


def _before_midnight(minutes: int) -> int:
    if minutes >= MINUTES_PER_DAY:
        raise ValueError("Time must be less than 24:00")
    return minutes


def _iso639_1(code: str) -> str:
    if len(code) != 2 or not code.islower() or pycountry.languages.get(alpha_2=code) is None:
        raise ValueError(f"{code!r} is not an ISO 639-1 language code")
    return code


Minutes = Annotated[int, BeforeValidator(parse_minutes)]
TimeOfDay = Annotated[int, BeforeValidator(parse_minutes), AfterValidator(_before_midnight)]
LanguageCode = Annotated[str, AfterValidator(_iso639_1)]
Week = Annotated[int, Field(ge=1, le=5)]
# true/false for all/none, or an explicit list of dates
DateSet = Union[StrictBool, list[date]]


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class Platform(str, Enum):
    PC = "pc"
    QUEST = "quest"


class User(StrictModel):
    name: str
    id: str


class World(StrictModel):
    name: str
    id: str


class EventInfo(StrictModel):
    """Descriptive fields shared by every override scope."""

    name: Optional[str] = None
    description: Optional[str] = None
    web: Optional[str] = None
    poster: Optional[str] = None
    hashtag: Optional[str] = None
    twitter: Optional[str] = None
    group: Optional[str] = None
    discord: Optional[str] = None
    join: list[User] = Field(default_factory=list)
    world: Optional[World] = None
    weeks: Optional[Annotated[list[Week], Field(max_length=5)]] = None


INFO_FIELDS = tuple(EventInfo.model_fields)


class EventDay(EventInfo):
    start: Optional[TimeOfDay] = None
    duration: Optional[Minutes] = None


class EventDays(StrictModel):
    monday: Optional[EventDay] = None
    tuesday: Optional[EventDay] = None
    wednesday: Optional[EventDay] = None
    thursday: Optional[EventDay] = None
    friday: Optional[EventDay] = None
    saturday: Optional[EventDay] = None
    sunday: Optional[EventDay] = None

    def for_weekday(self, weekday: int) -> EventDay | None:
        """Return the override for ``date.weekday()`` numbering (Monday is 0)."""
        return getattr(self, WEEKDAYS[weekday])

    def defined(self) -> list[tuple[str, EventDay]]:
        days = ((name, getattr(self, name)) for name in WEEKDAYS)
        return [(name, day) for name, day in days if day is not None]


def every_day() -> EventDays:
    return EventDays(**{name: EventDay() for name in WEEKDAYS})


class EventLanguage(EventInfo, EventDays):
    pass


class Event(EventInfo):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    timezone: str
    start: TimeOfDay
    duration: Minutes
    platforms: list[Platform] = Field(default_factory=lambda: [Platform.PC])
    days: EventDays = Field(default_factory=every_day)
    languages: dict[LanguageCode, EventLanguage] = Field(default_factory=dict)
    confirmed: DateSet = True
    canceled: DateSet = False


class MetaLanguage(StrictModel):
    title: Optional[str] = None
    description: Optional[str] = None
    link: Optional[str] = None


class Meta(StrictModel):
    title: str
    description: Optional[str] = None
    link: Optional[str] = None
    languages: dict[LanguageCode, MetaLanguage] = Field(default_factory=dict)
