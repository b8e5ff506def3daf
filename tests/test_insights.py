"""
Tests for the mood dashboard figures.
"""

from datetime import date, datetime

from mind_ease.insights import average_mood, sort_moods, weekly_mood_series
from mind_ease.models import MoodEntry


def at(year, month, day, hour=12) -> float:
    return datetime(year, month, day, hour).timestamp()


class TestInsights:
    def test_average_rounds_to_one_decimal(self):
        entries = [MoodEntry(score=s) for s in (7, 8, 8)]
        assert average_mood(entries) == 7.7
        assert average_mood([]) == 0.0

    def test_sort_newest_first(self):
        older = MoodEntry(score=3, timestamp=at(2024, 5, 1))
        newer = MoodEntry(score=6, timestamp=at(2024, 5, 2))
        assert sort_moods([older, newer]) == [newer, older]

    def test_weekly_series_uses_latest_entry_per_day(self):
        today = date(2024, 5, 8)  # a Wednesday
        morning = MoodEntry(score=4, timestamp=at(2024, 5, 8, 9))
        evening = MoodEntry(score=8, timestamp=at(2024, 5, 8, 21))
        monday = MoodEntry(score=5, timestamp=at(2024, 5, 6))
        too_old = MoodEntry(score=1, timestamp=at(2024, 5, 1))

        series = weekly_mood_series([evening, morning, monday, too_old], today)

        assert [p.day for p in series] == ["Thu", "Fri", "Sat", "Sun", "Mon", "Tue", "Wed"]
        assert [p.score for p in series] == [None, None, None, None, 5, None, 8]
        assert series[-1].entry == evening
