"""Models for the compiled ``data.json`` document.

The document is sparse: anything unset is left out, the default confirmed
(all) and canceled (none) states are left out, and long field names are
shortened (``desc``, ``tz``, ``lang``, ``ts``).
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Optional, Union
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field

from ingest.schemas import Meta as MetaInput
from ingest.schemas import Platform, User, World
from zones.tzdb import Transition

# unreserved characters plus the ones a hashtag may keep in a URL component
HASHTAG_SAFE = "!'()*%"


class OutputModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Poster(OutputModel):
    number: int = Field(alias="n")
    width: int = Field(alias="w")
    height: int = Field(alias="h")


class EscapedHashtag(OutputModel):
    display: str
    escaped: str


Hashtag = Union[str, EscapedHashtag]
DateSet = Union[bool, list[date]]


def hashtag(value: str) -> Hashtag:
    """Keep ``value`` as is when it is URL safe, otherwise pair it with its escaped form."""
    escaped = quote(value, safe=HASHTAG_SAFE)
    if escaped == value:
        return value
    return EscapedHashtag(display=value, escaped=escaped)


class Info(OutputModel):
    name: Optional[str] = None
    poster: Optional[Poster] = None
    web: Optional[str] = None
    discord: Optional[str] = None
    group: Optional[str] = None
    hashtag: Optional[Hashtag] = None
    twitter: Optional[str] = None
    join: Optional[list[User]] = None
    world: Optional[World] = None
    weeks: Optional[list[int]] = None
    description: Optional[str] = Field(default=None, alias="desc")


class Day(Info):
    start: Optional[int] = None
    duration: Optional[int] = None


class Days(OutputModel):
    monday: Optional[Day] = None
    tuesday: Optional[Day] = None
    wednesday: Optional[Day] = None
    thursday: Optional[Day] = None
    friday: Optional[Day] = None
    saturday: Optional[Day] = None
    sunday: Optional[Day] = None


class Language(Info, Days):
    pass


class Event(Info, Days):
    start_date: Optional[int] = None
    end_date: Optional[int] = None
    timezone: str = Field(alias="tz")
    start: int
    duration: int
    platforms: list[Platform]
    languages: Optional[dict[str, Language]] = Field(default=None, alias="lang")
    # None stands for the default: canceled on no day, confirmed on every day
    canceled: Optional[DateSet] = None
    confirmed: Optional[DateSet] = None


class MetaLanguage(OutputModel):
    title: Optional[str] = None
    description: Optional[str] = Field(default=None, alias="desc")
    link: Optional[str] = None


class Meta(OutputModel):
    title: str
    description: Optional[str] = Field(default=None, alias="desc")
    link: Optional[str] = None
    compiled_time: int = Field(alias="ts")
    languages: Optional[dict[str, MetaLanguage]] = Field(default=None, alias="lang")


class Rule(OutputModel):
    start: Optional[int] = Field(default=None, alias="s")
    offset: Optional[int] = Field(default=None, alias="o")


class Zone(OutputModel):
    offsets: list[Rule] = Field(alias="r")


class Document(OutputModel):
    meta: Meta
    events: list[Event]
    zones: dict[str, Zone]


def compile_meta(meta: MetaInput, now: datetime) -> Meta:
    languages = {
        code: MetaLanguage(title=language.title, description=language.description, link=language.link)
        for code, language in sorted(meta.languages.items())
    }
    return Meta(
        title=meta.title,
        description=meta.description,
        link=meta.link,
        compiled_time=int(now.timestamp()),
        languages=languages or None,
    )


def compile_zones(transitions: dict[str, list[Transition]]) -> dict[str, Zone]:
    return {
        name: Zone(offsets=[Rule(start=span.start, offset=span.offset) for span in spans])
        for name, spans in transitions.items()
    }


def render(document: Document) -> str:
    """Serialize ``document`` as compact JSON with a trailing newline."""
    return document.model_dump_json(by_alias=True, exclude_none=True) + "\n"
