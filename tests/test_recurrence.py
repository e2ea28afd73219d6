from datetime import date

import pytest
from sqlalchemy import select

from models import Frequency, RecurringTransaction, Transaction, TransactionType
from recurrence import (
    RecurringEngine,
    add_period,
    as_date,
    due_occurrences,
    next_occurrence,
)


def _definition(**overrides) -> RecurringTransaction:
    values = dict(
        user_id=1,
        description="Rent",
        type=TransactionType.expense,
        amount_cents=100000,
        category="Housing",
        frequency=Frequency.monthly,
        start_date=date(2024, 1, 1),
    )
    values.update(overrides)
    return RecurringTransaction(**values)


def test_add_period_clamps_month_end_without_drift():
    start = date(2024, 1, 31)
    assert add_period(start, Frequency.monthly, 1) == date(2024, 2, 29)
    assert add_period(start, Frequency.monthly, 2) == date(2024, 3, 31)
    assert add_period(start, Frequency.monthly, 3) == date(2024, 4, 30)
    assert add_period(date(2024, 2, 29), Frequency.yearly, 1) == date(2025, 2, 28)
    assert add_period(date(2024, 2, 29), Frequency.yearly, 4) == date(2028, 2, 29)


def test_as_date_accepts_iso_timestamps():
    assert as_date("2024-03-05T00:00:00.000Z") == date(2024, 3, 5)
    assert as_date(date(2024, 3, 5)) == date(2024, 3, 5)


def test_next_occurrence_without_watermark_is_start():
    assert next_occurrence(date(2024, 1, 15), None, Frequency.weekly) == date(2024, 1, 15)
    assert next_occurrence(date(2024, 1, 15), date(2024, 1, 15), Frequency.weekly) == date(
        2024, 1, 22
    )


def test_due_occurrences_has_no_gaps():
    due = due_occurrences(date(2024, 1, 1), None, Frequency.monthly, date(2024, 4, 15))
    assert due == [date(2024, 1, 1), date(2024, 2, 1), date(2024, 3, 1), date(2024, 4, 1)]
    assert due_occurrences(date(2024, 1, 1), date(2024, 4, 1), Frequency.monthly, date(2024, 4, 15)) == []


def test_due_occurrences_future_start_is_empty():
    assert due_occurrences(date(2024, 5, 1), None, Frequency.daily, date(2024, 4, 30)) == []


def test_due_occurrences_resume_after_watermark_from_anchor():
    due = due_occurrences(
        date(2024, 1, 31), date(2024, 2, 29), Frequency.monthly, date(2024, 5, 1)
    )
    assert due == [date(2024, 3, 31), date(2024, 4, 30)]


def test_catch_up_posts_every_missed_occurrence(session):
    definition = _definition()
    session.add(definition)
    session.commit()

    result = RecurringEngine(session).run_all(date(2024, 4, 15))
    session.commit()

    assert result.posted == 4
    assert result.failed == []
    posted = session.scalars(select(Transaction).order_by(Transaction.date)).all()
    assert [t.date for t in posted] == [
        date(2024, 1, 1),
        date(2024, 2, 1),
        date(2024, 3, 1),
        date(2024, 4, 1),
    ]
    assert all(t.description == "(Recurring) Rent" for t in posted)
    assert all(t.origin_recurring_id == definition.id for t in posted)
    session.refresh(definition)
    assert definition.last_added_date == date(2024, 4, 1)


def test_catch_up_is_idempotent(session):
    session.add(_definition())
    session.commit()

    engine = RecurringEngine(session)
    engine.run_all(date(2024, 3, 1))
    session.commit()
    second = engine.run_all(date(2024, 3, 1))
    session.commit()

    assert second.posted == 0
    count = len(session.scalars(select(Transaction)).all())
    assert count == 3


def test_catch_up_skips_occurrences_already_posted(session):
    definition = _definition()
    session.add(definition)
    session.flush()
    session.add(
        Transaction(
            user_id=1,
            date=date(2024, 1, 1),
            description="(Recurring) Rent",
            type=TransactionType.expense,
            amount_cents=100000,
            category="Housing",
            origin_recurring_id=definition.id,
            occurrence_date=date(2024, 1, 1),
        )
    )
    session.commit()

    posted = RecurringEngine(session).catch_up(definition, date(2024, 2, 10))
    session.commit()

    assert posted == 1
    assert len(session.scalars(select(Transaction)).all()) == 2
    assert definition.last_added_date == date(2024, 2, 1)


def test_month_end_schedule_does_not_drift(session):
    definition = _definition(start_date=date(2024, 1, 31))
    session.add(definition)
    session.commit()

    engine = RecurringEngine(session)
    # Run month by month so each run resumes from the stored watermark.
    for today in (date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)):
        engine.run_all(today)
        session.commit()

    dates = session.scalars(select(Transaction.date).order_by(Transaction.date)).all()
    assert dates == [
        date(2024, 1, 31),
        date(2024, 2, 29),
        date(2024, 3, 31),
        date(2024, 4, 30),
    ]


def test_failing_definition_does_not_block_others(session, monkeypatch):
    broken = _definition(description="Broken")
    healthy = _definition(description="Gym", amount_cents=3000)
    session.add_all([broken, healthy])
    session.commit()

    original = RecurringEngine.catch_up

    def flaky(self, definition, today=None):
        if definition.description == "Broken":
            raise RuntimeError("boom")
        return original(self, definition, today)

    monkeypatch.setattr(RecurringEngine, "catch_up", flaky)

    result = RecurringEngine(session).run_all(date(2024, 2, 1))
    session.commit()

    assert result.failed == [broken.id]
    assert result.posted == 2
    descriptions = set(session.scalars(select(Transaction.description)).all())
    assert descriptions == {"(Recurring) Gym"}
    assert broken.last_added_date is None


@pytest.mark.parametrize(
    "frequency, count",
    [
        (Frequency.daily, 20),
        (Frequency.weekly, 3),
        (Frequency.monthly, 1),
        (Frequency.yearly, 1),
    ],
)
def test_due_occurrence_counts_per_frequency(frequency, count):
    due = due_occurrences(date(2024, 1, 1), None, frequency, date(2024, 1, 20))
    assert len(due) == count
    assert due[0] == date(2024, 1, 1)
