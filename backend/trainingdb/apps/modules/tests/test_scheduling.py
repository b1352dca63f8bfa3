from __future__ import annotations

import itertools
import logging
from datetime import date, datetime, timezone

from trainingdb.apps.modules.documents import DateRange, ModuleSession
from trainingdb.apps.modules.scheduling import (
    compute_duration,
    has_conflict,
    parse_instant,
    ranges_overlap,
)


def _session(*ranges) -> ModuleSession:
    return ModuleSession(
        date_ranges=[DateRange(start_time=start, end_time=end) for start, end in ranges]
    )


def test_duration_counts_distinct_days_across_sessions():
    sessions = [
        _session(("2024-01-01T09:00", "2024-01-01T17:00")),
        _session(("2024-01-02T09:00", "2024-01-03T17:00")),
    ]

    duration = compute_duration(sessions)

    assert duration.count == 3
    assert duration.dates == [date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 3)]


def test_duration_does_not_depend_on_range_order():
    ranges = [
        ("2024-03-04T09:00", "2024-03-04T12:00"),
        ("2024-03-01T09:00", "2024-03-02T12:00"),
        ("2024-03-02T14:00", "2024-03-02T16:00"),
    ]
    expected = compute_duration([_session(*ranges)])

    for ordering in itertools.permutations(ranges):
        as_one = compute_duration([_session(*ordering)])
        as_many = compute_duration([_session(r) for r in ordering])
        assert as_one == expected
        assert as_many == expected

    assert expected.count == 3
    assert expected.dates == sorted(expected.dates)


def test_duration_skips_unparseable_range_and_logs(caplog):
    sessions = [
        _session(
            ("not-a-date", "2024-01-01T10:00"),
            ("2024-01-05T09:00", "2024-01-05T10:00"),
        )
    ]

    with caplog.at_level(logging.WARNING, logger="trainingdb.apps.modules.scheduling"):
        duration = compute_duration(sessions, module_id="mod-1")

    assert duration.dates == [date(2024, 1, 5)]
    assert any("unparseable" in record.getMessage() for record in caplog.records)


def test_duration_falls_back_to_created_at_then_today():
    created = datetime(2023, 6, 15, 8, 30, tzinfo=timezone.utc)

    from_created = compute_duration([], created_at=created, today=date(2030, 1, 1))
    from_today = compute_duration([_session(("bad", "worse"))], today=date(2030, 1, 1))

    assert from_created.count == 1
    assert from_created.dates == [date(2023, 6, 15)]
    assert from_today.count == 1
    assert from_today.dates == [date(2030, 1, 1)]


def test_duration_uses_calendar_date_written_in_timestamp():
    # 23:00 at -05:00 is already the next day in UTC; the written date counts.
    sessions = [_session(("2024-01-01T23:00:00-05:00", "2024-01-01T23:30:00-05:00"))]

    duration = compute_duration(sessions)

    assert duration.dates == [date(2024, 1, 1)]


def test_day_index_is_one_based():
    duration = compute_duration([_session(("2024-01-01T09:00", "2024-01-03T17:00"))])

    assert duration.day_index(date(2024, 1, 1)) == 1
    assert duration.day_index(date(2024, 1, 3)) == 3
    assert duration.day_index(date(2024, 1, 4)) is None


def test_parse_instant_reads_trailing_z_as_utc():
    parsed = parse_instant("2024-02-01T09:00:00Z")

    assert parsed == datetime(2024, 2, 1, 9, 0, tzinfo=timezone.utc)
    assert parse_instant("") is None
    assert parse_instant(None) is None
    assert parse_instant(42) is None


def test_overlapping_ranges_conflict():
    module_a = [_session(("2024-02-01T09:00", "2024-02-01T17:00"))]
    module_b = [_session(("2024-02-01T10:00", "2024-02-01T12:00"))]

    assert has_conflict(module_a, module_b) is True
    assert has_conflict(module_b, module_a) is True


def test_touching_ranges_do_not_conflict():
    module_a = [_session(("2024-02-01T09:00", "2024-02-01T12:00"))]
    module_b = [_session(("2024-02-01T12:00", "2024-02-01T15:00"))]

    assert has_conflict(module_a, module_b) is False


def test_no_ranges_means_no_conflict():
    module_a = [_session(("2024-02-01T09:00", "2024-02-01T12:00"))]

    assert has_conflict(module_a, []) is False
    assert has_conflict([], module_a) is False
    assert has_conflict(module_a, [_session(("garbage", "2024-02-01T10:00"))]) is False


def test_naive_instants_compare_as_utc():
    naive = (datetime(2024, 2, 1, 9, 0), datetime(2024, 2, 1, 11, 0))
    aware_utc = (
        datetime(2024, 2, 1, 10, 0, tzinfo=timezone.utc),
        datetime(2024, 2, 1, 12, 0, tzinfo=timezone.utc),
    )
    later_offset = (
        parse_instant("2024-02-01T10:00:00-05:00"),
        parse_instant("2024-02-01T12:00:00-05:00"),
    )

    assert ranges_overlap(naive, aware_utc) is True
    assert ranges_overlap(naive, later_offset) is False
