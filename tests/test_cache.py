from datetime import timedelta

from conftest import WEDNESDAY, timesheet_payload
from worksmart import HoursCache, aggregate_hours


def test_save_then_load(tmp_path):
    cache = HoursCache(tmp_path / 'cache.json')
    summary = aggregate_hours(timesheet_payload(), 50.0, WEDNESDAY)
    cache.save(summary, item_count=3, now=WEDNESDAY)

    record = cache.load()
    assert record.cached_at == WEDNESDAY
    assert record.item_count == 3
    assert record.summary.total_hours == summary.total_hours
    assert record.summary.deadline == summary.deadline
    assert record.summary.daily == summary.daily
    assert abs(record.summary.time_remaining
               - summary.time_remaining) < timedelta(seconds=1)


def test_zero_hours_is_cached(tmp_path):
    cache = HoursCache(tmp_path / 'cache.json')
    cache.save(aggregate_hours([], 50.0, WEDNESDAY), now=WEDNESDAY)
    assert cache.load().summary.total_hours == 0


def test_missing_or_corrupt_cache_reads_as_nothing(tmp_path):
    path = tmp_path / 'cache.json'
    assert HoursCache(path).load() is None
    path.write_text('{not json', encoding='utf-8')
    assert HoursCache(path).load() is None
