import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from models import Frequency, RecurringTransaction, Transaction

logger = logging.getLogger(__name__)

DateLike = Union[date, str]

# Upper bound on occurrences materialized for one definition in a single run.
MAX_OCCURRENCES_PER_RUN = 5000


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    # Full ISO timestamps ("2024-01-01T00:00:00.000Z") keep only their date part.
    return date.fromisoformat(text[:10])


def add_period(anchor: date, frequency: Frequency, count: int = 1) -> date:
    """Return the ``count``-th occurrence after ``anchor``.

    Month and year steps are always taken from the anchor itself and clamp to
    the end of shorter months, so a schedule starting on the 31st yields
    Feb 29, Mar 31, Apr 30 rather than drifting to the 29th.
    """
    if frequency == Frequency.daily:
        return anchor + timedelta(days=count)
    if frequency == Frequency.weekly:
        return anchor + timedelta(weeks=count)
    if frequency == Frequency.monthly:
        return _add_months(anchor, count)
    if frequency == Frequency.yearly:
        return _add_months(anchor, 12 * count)
    raise ValueError(f"Unsupported frequency: {frequency}")


def _first_index_after(start: date, frequency: Frequency, watermark: date) -> int:
    if watermark < start:
        return 0
    if frequency == Frequency.daily:
        return (watermark - start).days + 1
    if frequency == Frequency.weekly:
        return (watermark - start).days // 7 + 1
    months = (watermark.year - start.year) * 12 + watermark.month - start.month
    step = 12 if frequency == Frequency.yearly else 1
    index = max(months // step - 1, 0)
    while add_period(start, frequency, index) <= watermark:
        index += 1
    return index


def next_occurrence(
    start_date: DateLike,
    last_added_date: Optional[DateLike],
    frequency: Frequency,
) -> date:
    start = as_date(start_date)
    if last_added_date is None:
        return start
    index = _first_index_after(start, frequency, as_date(last_added_date))
    return add_period(start, frequency, index)


def due_occurrences(
    start_date: DateLike,
    last_added_date: Optional[DateLike],
    frequency: Frequency,
    today: date,
    *,
    limit: int = MAX_OCCURRENCES_PER_RUN,
) -> list[date]:
    """Occurrence dates after the watermark up to and including ``today``."""
    start = as_date(start_date)
    frequency = Frequency(frequency)
    index = 0
    if last_added_date is not None:
        index = _first_index_after(start, frequency, as_date(last_added_date))

    due: list[date] = []
    cursor = add_period(start, frequency, index)
    while cursor <= today and len(due) < limit:
        due.append(cursor)
        index += 1
        cursor = add_period(start, frequency, index)
    return due


@dataclass
class CatchUpResult:
    posted: int = 0
    failed: list[int] = field(default_factory=list)


class RecurringEngine:
    def __init__(self, session: Session, user_id: int = 1) -> None:
        self.session = session
        self.user_id = user_id
        self.prefix = get_settings().recurring_prefix

    def catch_up(self, definition: RecurringTransaction, today: Optional[date] = None) -> int:
        today = today or local_today()
        due = due_occurrences(
            definition.start_date,
            definition.last_added_date,
            definition.frequency,
            today,
        )
        if not due:
            return 0

        existing = set(
            self.session.scalars(
                select(Transaction.occurrence_date).where(
                    Transaction.user_id == definition.user_id,
                    Transaction.origin_recurring_id == definition.id,
                    Transaction.occurrence_date.in_(due),
                )
            ).all()
        )
        posted = 0
        for occurrence in due:
            if occurrence in existing:
                continue
            self.session.add(
                Transaction(
                    user_id=definition.user_id,
                    date=occurrence,
                    description=f"{self.prefix}{definition.description}",
                    type=definition.type,
                    amount_cents=definition.amount_cents,
                    category=definition.category,
                    category_id=definition.category_id,
                    origin_recurring_id=definition.id,
                    occurrence_date=occurrence,
                )
            )
            posted += 1
        definition.last_added_date = due[-1]
        self.session.flush()
        return posted

    def run_all(self, today: Optional[date] = None) -> CatchUpResult:
        today = today or local_today()
        definitions = self.session.scalars(
            select(RecurringTransaction)
            .where(RecurringTransaction.user_id == self.user_id)
            .order_by(RecurringTransaction.id)
        ).all()
        result = CatchUpResult()
        for definition in definitions:
            try:
                with self.session.begin_nested():
                    result.posted += self.catch_up(definition, today)
            except Exception:
                logger.exception(
                    f"recurring_catch_up_failed: recurring_id={definition.id}"
                )
                result.failed.append(definition.id)
        return result
