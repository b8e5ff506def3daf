"""Mood dashboard figures computed from logged entries."""

from collections.abc import Iterable
from datetime import date, datetime, timedelta

from .models import DailyMood, MoodEntry


def sort_moods(entries: Iterable[MoodEntry]) -> list[MoodEntry]:
    """Newest first."""
    return sorted(entries, key=lambda e: e.timestamp, reverse=True)


def average_mood(entries: Iterable[MoodEntry]) -> float:
    scores = [e.score for e in entries]
    if not scores:
        return 0.0
    return round(sum(scores) / len(scores), 1)


def weekly_mood_series(
    entries: Iterable[MoodEntry], today: date | None = None
) -> list[DailyMood]:
    """
    Seven points ending today, one per local calendar day.

    Each point carries the latest entry logged that day, or no score.
    """
    today = today or date.today()
    by_day: dict[date, MoodEntry] = {}
    for entry in entries:
        day = datetime.fromtimestamp(entry.timestamp).date()
        latest = by_day.get(day)
        if latest is None or entry.timestamp > latest.timestamp:
            by_day[day] = entry

    series = []
    for offset in range(6, -1, -1):
        day = today - timedelta(days=offset)
        entry = by_day.get(day)
        series.append(
            DailyMood(
                day=day.strftime("%a"),
                score=entry.score if entry else None,
                entry=entry,
            )
        )
    return series
