from datetime import datetime, timedelta, timezone

import pytest

from carecal.errors import InvariantViolation
from carecal.rules import Frequency, RecurrenceRule, RuleSpec, Weekday


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_to_string_round_trips_through_parse():
    rule = RecurrenceRule.build(utc(2024, 1, 1, 9), Frequency.WEEKLY,
                                until=utc(2024, 3, 31, 23, 59, 59), weekdays=['WE', 'MO'])
    s = rule.to_string()
    assert s == 'DTSTART:20240101T090000Z\nRRULE:FREQ=WEEKLY;INTERVAL=1;UNTIL=20240331T235959Z;BYDAY=MO,WE'
    parsed = RecurrenceRule.parse(s)
    assert parsed.spec == rule.spec


def test_parse_accepts_count_and_lowercase_parts():
    rule = RecurrenceRule.parse('DTSTART:20240101T090000Z\nRRULE:freq=daily;interval=2;count=3')
    assert rule.spec.frequency == Frequency.DAILY
    assert rule.spec.interval == 2
    assert rule.between(utc(2024, 1, 1), utc(2024, 12, 31)) == [
        utc(2024, 1, 1, 9), utc(2024, 1, 3, 9), utc(2024, 1, 5, 9),
    ]


@pytest.mark.parametrize('definition', [
    '',
    'RRULE:FREQ=DAILY',
    'DTSTART:20240101T090000Z',
    'DTSTART:20240101T090000Z\nRRULE:FREQ=FORTNIGHTLY',
    'DTSTART:20240101T090000Z\nRRULE:FREQ=DAILY;BYMONTHDAY=3',
    'DTSTART:not-a-date\nRRULE:FREQ=DAILY',
    'DTSTART:20240101T090000Z\nRRULE:FREQ=DAILY;INTERVAL=0',
    'DTSTART:20240101T090000Z\nEXDATE:20240102T090000Z\nRRULE:FREQ=DAILY',
])
def test_parse_rejects_malformed_rules(definition):
    with pytest.raises(InvariantViolation):
        RecurrenceRule.parse(definition)


def test_until_wins_over_count():
    spec = RuleSpec(start=utc(2024, 1, 1, 9), frequency='DAILY', until=utc(2024, 1, 3, 23, 59, 59), count=10)
    assert spec.count is None
    assert RecurrenceRule(spec).last() == utc(2024, 1, 3, 9)


def test_spec_normalizes_instants_and_weekdays():
    local = timezone(timedelta(hours=2))
    spec = RuleSpec(start=datetime(2024, 1, 1, 11, 0, 0, 500, tzinfo=local), frequency=Frequency.WEEKLY,
                    weekdays=(Weekday.FR, Weekday.MO, Weekday.FR))
    assert spec.start == utc(2024, 1, 1, 9)
    assert spec.weekdays == (Weekday.MO, Weekday.FR)


def test_spec_rejects_bad_bounds():
    with pytest.raises(InvariantViolation):
        RuleSpec(start=utc(2024, 1, 1), frequency='DAILY', interval=0)
    with pytest.raises(InvariantViolation):
        RuleSpec(start=utc(2024, 1, 1), frequency='DAILY', count=0)
    with pytest.raises(InvariantViolation):
        RuleSpec(start=utc(2024, 1, 2), frequency='DAILY', until=utc(2024, 1, 1))


def test_rule_without_occurrences_is_rejected():
    # starts on a Tuesday, only Mondays allowed, ends before the next Monday
    with pytest.raises(InvariantViolation):
        RecurrenceRule.build(utc(2024, 1, 2, 9), Frequency.WEEKLY, until=utc(2024, 1, 3), weekdays=[Weekday.MO])


def test_between_is_inclusive_on_both_ends():
    rule = RecurrenceRule.build(utc(2024, 1, 1, 9), Frequency.DAILY)
    got = rule.between(utc(2024, 1, 2, 9), utc(2024, 1, 4, 9))
    assert got == [utc(2024, 1, 2, 9), utc(2024, 1, 3, 9), utc(2024, 1, 4, 9)]
    assert rule.between(utc(2024, 1, 4), utc(2024, 1, 2)) == []


def test_between_truncates_at_limit(caplog):
    rule = RecurrenceRule.build(utc(2024, 1, 1), Frequency.HOURLY)
    with caplog.at_level('WARNING', logger='carecal.rules'):
        got = rule.between(utc(2024, 1, 1), utc(2024, 12, 31), limit=5)
    assert len(got) == 5
    assert got[-1] == utc(2024, 1, 1, 4)
    assert 'truncated' in caplog.text


def test_before_is_strict():
    rule = RecurrenceRule.build(utc(2024, 1, 1, 9), Frequency.WEEKLY)
    assert rule.before(utc(2024, 1, 15, 9)) == utc(2024, 1, 8, 9)
    assert rule.before(utc(2024, 1, 1, 9)) is None


def test_first_last_and_contains():
    unbounded = RecurrenceRule.build(utc(2024, 1, 1, 9), Frequency.WEEKLY)
    assert unbounded.first() == utc(2024, 1, 1, 9)
    assert unbounded.last() is None
    assert unbounded.contains(utc(2024, 1, 15, 9))
    assert not unbounded.contains(utc(2024, 1, 16, 9))

    counted = RecurrenceRule.build(utc(2024, 1, 1, 9), Frequency.WEEKLY, count=5)
    assert counted.last() == utc(2024, 1, 29, 9)
    assert counted.count_before(utc(2024, 1, 15, 9)) == 2
    assert counted.count_before(utc(2024, 1, 1, 9)) == 0


def test_replace_builds_a_new_rule():
    rule = RecurrenceRule.build(utc(2024, 1, 1, 9), Frequency.WEEKLY, count=5)
    truncated = rule.replace(until=utc(2024, 1, 8, 9))
    assert truncated.spec.count is None
    assert truncated.last() == utc(2024, 1, 8, 9)
    # the original is untouched
    assert rule.spec.count == 5


def test_naive_datetimes_are_treated_as_utc():
    rule = RecurrenceRule.build(datetime(2024, 1, 1, 9), Frequency.DAILY, count=2)
    assert rule.first() == utc(2024, 1, 1, 9)
    assert rule.contains(datetime(2024, 1, 2, 9))
