from datetime import date, datetime, timezone
import hashlib
import os
import sys
from unittest.mock import patch
from zoneinfo import ZoneInfo

import pytest
from PIL import Image

# Ensure the project root is on the import path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from ingest.schemas import Event
from ingest.source_catalog import EventSource, SourceFile, collect_files, parse_document
from ingest.state import State
from posters.cache import PosterCache
from posters.images import load_poster
from scheduler.diagnostics import (
    CanceledOutOfRange,
    ConfirmedOutOfRange,
    Diagnostics,
    MissingTimeZone,
    NonExistentLocalTime,
)
from scheduler.output import EscapedHashtag
from scheduler.resolver import ScheduleResolver, earliest_local, occurrence_instant
from zones.tzdb import load_zone_table

UTC = ZoneInfo("UTC")
NEW_YORK = ZoneInfo("America/New_York")

WEEK = (
    'timezone = "UTC"\n'
    'start = "20:00"\n'
    "duration = 60\n"
    "start_date = 2024-01-01\n"
    "end_date = 2024-01-07\n"
)


@pytest.fixture(scope="module")
def zones():
    return load_zone_table()


def make_event(**fields):
    return Event.model_validate({"timezone": "UTC", "start": "20:00", "duration": 60, **fields})


def write_event(directory, text, name="event"):
    path = directory / f"{name}.toml"
    path.write_text(text, encoding="utf-8")
    source = SourceFile(path, text)
    return EventSource(source, parse_document(source, Event))


def write_image(path, size=(4, 3), color="red"):
    Image.new("RGB", size, color).save(path)
    return path


def make_resolver(tmp_path, zones, now, files=()):
    diagnostics = Diagnostics()
    posters = PosterCache.load(tmp_path / "out" / "posters", State(), now)
    return ScheduleResolver(zones, posters, diagnostics, now, files), diagnostics


def test_occurrence_uses_base_start_for_default_days():
    event = make_event()
    instant = occurrence_instant(event, date(2024, 1, 2), UTC, force=False)
    assert instant == datetime(2024, 1, 2, 20, 0, tzinfo=UTC)


def test_occurrence_without_weekday_entry():
    event = make_event(days={"monday": {"start": "18:30"}})
    tuesday = date(2024, 1, 2)
    assert occurrence_instant(event, tuesday, UTC, force=False) is None
    assert occurrence_instant(event, tuesday, UTC, force=True) == datetime(2024, 1, 2, 20, 0, tzinfo=UTC)
    monday = date(2024, 1, 1)
    assert occurrence_instant(event, monday, UTC, force=False) == datetime(2024, 1, 1, 18, 30, tzinfo=UTC)


def test_occurrence_outside_date_bounds():
    event = make_event(start_date=date(2024, 1, 1), end_date=date(2024, 1, 7))
    assert occurrence_instant(event, date(2023, 12, 31), UTC, force=True) is None
    assert occurrence_instant(event, date(2024, 1, 8), UTC, force=True) is None
    assert occurrence_instant(event, date(2024, 1, 7), UTC, force=True) is not None


def test_skipped_local_time_has_no_instant():
    event = make_event(timezone="America/New_York", start="02:30")
    assert occurrence_instant(event, date(2024, 3, 10), NEW_YORK, force=True) is None
    assert earliest_local(date(2024, 3, 10), 150, NEW_YORK) is None


def test_ambiguous_local_time_takes_earliest():
    instant = earliest_local(date(2024, 11, 3), 90, NEW_YORK)
    assert instant.astimezone(timezone.utc) == datetime(2024, 11, 3, 5, 30, tzinfo=timezone.utc)


def test_confirmed_date_kept_before_it_happens(tmp_path, zones):
    item = write_event(tmp_path, WEEK + 'confirmed = ["2024-01-03"]\n')
    now = datetime(2024, 1, 2, tzinfo=timezone.utc)
    resolver, diagnostics = make_resolver(tmp_path, zones, now)

    result = resolver.resolve(item)

    assert result.confirmed == [date(2024, 1, 3)]
    assert diagnostics.warnings == 0


def test_confirmed_date_collapses_once_over(tmp_path, zones):
    item = write_event(tmp_path, WEEK + 'confirmed = ["2024-01-03"]\n')
    now = datetime(2024, 1, 3, 21, tzinfo=timezone.utc)
    resolver, _ = make_resolver(tmp_path, zones, now)

    assert resolver.resolve(item).confirmed is False


def test_out_of_range_dates_warn(tmp_path, zones, caplog):
    text = WEEK.replace('"UTC"', '"Europe/Berlin"') + (
        'confirmed = ["2024-02-01"]\n'
        'canceled = ["2024-01-02"]\n'
        "[days.monday]\n"
    )
    item = write_event(tmp_path, text)
    resolver, diagnostics = make_resolver(tmp_path, zones, datetime(2023, 12, 1, tzinfo=timezone.utc))

    with patch.object(diagnostics, "report", wraps=diagnostics.report) as report:
        result = resolver.resolve(item)

    reported = [type(call.args[0]) for call in report.call_args_list]
    assert reported == [ConfirmedOutOfRange, CanceledOutOfRange]
    assert diagnostics.warnings == 2 and diagnostics.errors == 0
    assert result.confirmed is False
    # an emptied canceled list is the default, so it is left out
    assert result.canceled is None
    assert "2024-02-01" in caplog.text


def test_canceled_dates_on_scheduled_days(tmp_path, zones):
    item = write_event(tmp_path, WEEK + 'canceled = ["2024-01-01", "2024-01-05"]\n')
    resolver, _ = make_resolver(tmp_path, zones, datetime(2024, 1, 2, tzinfo=timezone.utc))

    assert resolver.resolve(item).canceled == [date(2024, 1, 5)]


def test_unknown_time_zone_is_fatal(tmp_path, zones):
    item = write_event(tmp_path, 'start = "20:00"\ntimezone = "Mars/Olympus"\nduration = 60\n')
    resolver, _ = make_resolver(tmp_path, zones, datetime(2024, 1, 1, tzinfo=timezone.utc))

    with pytest.raises(MissingTimeZone) as excinfo:
        resolver.resolve(item)
    assert excinfo.value.line == 2
    assert excinfo.value.source == item.path


def test_bounds_are_local_midnights(tmp_path, zones):
    text = WEEK.replace('"UTC"', '"America/New_York"')
    item = write_event(tmp_path, text)
    resolver, _ = make_resolver(tmp_path, zones, datetime(2024, 1, 1, tzinfo=timezone.utc))

    result = resolver.resolve(item)

    assert result.start_date == int(datetime(2024, 1, 1, 5, tzinfo=timezone.utc).timestamp())
    assert result.end_date == int(datetime(2024, 1, 8, 5, tzinfo=timezone.utc).timestamp())


def test_skipped_midnight_is_fatal(tmp_path, zones):
    text = 'timezone = "America/Santiago"\nstart = "20:00"\nduration = 60\nstart_date = 2024-09-08\n'
    item = write_event(tmp_path, text)
    resolver, _ = make_resolver(tmp_path, zones, datetime(2024, 1, 1, tzinfo=timezone.utc))

    with pytest.raises(NonExistentLocalTime):
        resolver.resolve(item)


def test_local_times_beyond_the_calendar_have_no_instant():
    assert earliest_local(date(9999, 12, 31), 24 * 60, UTC) is None
    assert earliest_local(date(1, 1, 1), 0, ZoneInfo("Asia/Tokyo")) is None
    assert earliest_local(date(9999, 12, 31), 0, UTC) == datetime(9999, 12, 31, tzinfo=UTC)


def test_last_representable_end_date_is_reported(tmp_path, zones, caplog):
    good = write_event(tmp_path, WEEK, name="good")
    far = write_event(tmp_path, WEEK.replace("2024-01-07", "9999-12-31"), name="far")
    resolver, diagnostics = make_resolver(tmp_path, zones, datetime(2024, 1, 1, tzinfo=timezone.utc))

    events = resolver.resolve_all([far, good])

    assert [event.name for event in events] == ["good"]
    assert diagnostics.errors == 1
    assert "day after end date" in caplog.text


def test_first_representable_start_date_is_fatal_east_of_utc(tmp_path, zones):
    text = 'timezone = "Asia/Tokyo"\nstart = "20:00"\nduration = 60\nstart_date = 0001-01-01\n'
    item = write_event(tmp_path, text)
    resolver, _ = make_resolver(tmp_path, zones, datetime(2024, 1, 1, tzinfo=timezone.utc))

    with pytest.raises(NonExistentLocalTime):
        resolver.resolve(item)


def test_unrepresentable_confirmed_date_warns(tmp_path, zones):
    text = 'timezone = "America/New_York"\nstart = "23:00"\nduration = 60\nconfirmed = [9999-12-31]\n'
    item = write_event(tmp_path, text)
    resolver, diagnostics = make_resolver(tmp_path, zones, datetime(2024, 1, 1, tzinfo=timezone.utc))

    result = resolver.resolve(item)

    assert result.confirmed is False
    assert diagnostics.warnings == 1


def test_resolve_all_skips_failing_events(tmp_path, zones):
    good = write_event(tmp_path, WEEK, name="good")
    bad = write_event(tmp_path, 'timezone = "Nowhere"\nstart = 0\nduration = 1\n', name="bad")
    resolver, diagnostics = make_resolver(tmp_path, zones, datetime(2024, 1, 1, tzinfo=timezone.utc))

    events = resolver.resolve_all([bad, good])

    assert [event.name for event in events] == ["good"]
    assert diagnostics.errors == 1


def test_info_cascades_per_field(tmp_path, zones):
    text = WEEK + (
        'name = "Meetup"\n'
        'web = "https://example.com"\n'
        "[days.monday]\n"
        'name = "Monday Meetup"\n'
        'start = "18:00"\n'
        "[days.tuesday]\n"
        "[languages.de]\n"
        'description = "Wöchentliches Treffen"\n'
        "[languages.de.monday]\n"
        'web = "https://example.de"\n'
    )
    item = write_event(tmp_path, text)
    resolver, _ = make_resolver(tmp_path, zones, datetime(2024, 1, 1, tzinfo=timezone.utc))

    result = resolver.resolve(item)

    assert result.name == "Meetup"
    assert result.monday.name == "Monday Meetup"
    assert result.monday.start == 1080
    assert result.monday.duration is None
    assert result.tuesday.name == "Meetup"
    assert result.tuesday.start is None
    assert result.wednesday is None
    german = result.languages["de"]
    assert german.name == "Meetup"
    assert german.description == "Wöchentliches Treffen"
    assert german.web == "https://example.com"
    assert german.monday.name == "Monday Meetup"
    assert german.monday.web == "https://example.de"
    assert german.monday.description == "Wöchentliches Treffen"
    assert german.tuesday is None


def test_name_falls_back_to_file_stem(tmp_path, zones):
    item = write_event(tmp_path, WEEK, name="board-games")
    resolver, _ = make_resolver(tmp_path, zones, datetime(2024, 1, 1, tzinfo=timezone.utc))

    result = resolver.resolve(item)

    assert result.name == "board-games"
    assert result.friday.name == "board-games"


def test_hashtags_are_escaped_when_needed(tmp_path, zones):
    plain = write_event(tmp_path, WEEK + 'hashtag = "meetup"\n', name="plain")
    spaced = write_event(tmp_path, WEEK + 'hashtag = "c# night"\n', name="spaced")
    resolver, _ = make_resolver(tmp_path, zones, datetime(2024, 1, 1, tzinfo=timezone.utc))

    assert resolver.resolve(plain).hashtag == "meetup"
    assert resolver.resolve(spaced).hashtag == EscapedHashtag(display="c# night", escaped="c%23%20night")


def test_guessed_poster_prefers_jpeg_and_warns(tmp_path, zones, caplog):
    jpeg = write_image(tmp_path / "event.jpeg", (4, 3), "blue")
    write_image(tmp_path / "event.png", (8, 8), "green")
    item = write_event(tmp_path, WEEK)
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    resolver, diagnostics = make_resolver(tmp_path, zones, now, collect_files(tmp_path))

    result = resolver.resolve(item)

    assert (result.poster.number, result.poster.width, result.poster.height) == (0, 4, 3)
    assert diagnostics.warnings == 1
    assert diagnostics.errors == 0
    assert "Ignoring poster" in caplog.text
    stored = tmp_path / "out" / "posters" / "00"
    assert hashlib.sha256(stored.read_bytes()).digest() == hashlib.sha256(jpeg.read_bytes()).digest()


def test_explicit_poster_is_not_guessed(tmp_path, zones):
    (tmp_path / "art").mkdir()
    write_image(tmp_path / "art" / "flyer.png", (16, 9))
    write_image(tmp_path / "event.webp", (2, 2))
    item = write_event(tmp_path, WEEK + 'poster = "art/flyer.png"\n[days.monday]\n')
    resolver, diagnostics = make_resolver(
        tmp_path, zones, datetime(2024, 1, 1, tzinfo=timezone.utc), collect_files(tmp_path)
    )

    with patch("scheduler.resolver.load_poster", wraps=load_poster) as loader:
        result = resolver.resolve(item)

    assert (result.poster.width, result.poster.height) == (16, 9)
    assert result.monday.poster == result.poster
    assert loader.call_count == 1
    assert diagnostics.warnings == 0


def test_oversized_poster_is_dropped_with_warning(tmp_path, zones, caplog):
    write_image(tmp_path / "event.png", (2049, 1))
    item = write_event(tmp_path, WEEK)
    resolver, diagnostics = make_resolver(
        tmp_path, zones, datetime(2024, 1, 1, tzinfo=timezone.utc), collect_files(tmp_path)
    )

    result = resolver.resolve(item)

    assert result.poster is None
    assert diagnostics.warnings == 1 and diagnostics.errors == 0
    assert "too large" in caplog.text


def test_unreadable_poster_is_dropped_with_warning(tmp_path, zones):
    (tmp_path / "event.png").write_bytes(b"not an image")
    item = write_event(tmp_path, WEEK)
    resolver, diagnostics = make_resolver(
        tmp_path, zones, datetime(2024, 1, 1, tzinfo=timezone.utc), collect_files(tmp_path)
    )

    assert resolver.resolve(item).poster is None
    assert diagnostics.warnings == 1
