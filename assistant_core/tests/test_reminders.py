from datetime import datetime, timezone

from assistant_core.session.reminders import extract_reminders


NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_extracts_future_reminders():
    text = (
        'Done! [REMINDER: title="Call mom" time="2025-01-01T12:30:00Z"] and '
        '[REMINDER: title="Stretch" time="2025-01-02T08:00:00+00:00"]'
    )
    reminders = extract_reminders(text, now=NOW)
    assert [r.title for r in reminders] == ["Call mom", "Stretch"]
    assert reminders[0].remind_at == datetime(2025, 1, 1, 12, 30, tzinfo=timezone.utc)


def test_skips_past_and_unparseable_times():
    text = (
        '[REMINDER: title="Old" time="2024-12-31T23:00:00Z"]'
        '[REMINDER: title="Garbage" time="tomorrow-ish"]'
    )
    assert extract_reminders(text, now=NOW) == []


def test_naive_time_treated_as_utc():
    reminders = extract_reminders('[REMINDER: title="Tea" time="2025-01-01T13:00:00"]', now=NOW)
    assert reminders[0].remind_at.tzinfo is not None


def test_no_tags():
    assert extract_reminders("nothing to see", now=NOW) == []
    assert extract_reminders("", now=NOW) == []
