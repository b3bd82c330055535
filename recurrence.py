from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Iterable, Iterator, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from database import unit_of_work
from errors import FinanceError, InvalidRuleError, ValidationError
from models import Frequency, RecurringRule, Transaction, TransactionStatus


logger = logging.getLogger(__name__)


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


def clamp_day(year: int, month: int, day: int) -> date:
    """``date(year, month, day)`` with ``day`` capped at the month's last day.

    Anchors on the 29th-31st therefore land on the last day of shorter months
    (Jan 31 -> Feb 28/29 -> Mar 31) instead of skipping them.
    """
    return date(year, month, min(day, days_in_month(year, month)))


def _daily(anchor: date, start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def _weekly(anchor: date, start: date, end: date) -> Iterator[date]:
    current = start + timedelta(days=(anchor.weekday() - start.weekday()) % 7)
    while current <= end:
        yield current
        current += timedelta(weeks=1)


def _monthly(anchor: date, start: date, end: date) -> Iterator[date]:
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        candidate = clamp_day(year, month, anchor.day)
        if start <= candidate <= end:
            yield candidate
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)


def _yearly(anchor: date, start: date, end: date) -> Iterator[date]:
    for year in range(start.year, end.year + 1):
        candidate = clamp_day(year, anchor.month, anchor.day)
        if start <= candidate <= end:
            yield candidate


_EXPANDERS: dict[Frequency, Callable[[date, date, date], Iterator[date]]] = {
    Frequency.daily: _daily,
    Frequency.weekly: _weekly,
    Frequency.monthly: _monthly,
    Frequency.yearly: _yearly,
}


def rule_frequency(rule) -> Frequency:
    value = rule.frequency
    if isinstance(value, Frequency):
        return value
    try:
        return Frequency(str(value).lower())
    except ValueError as exc:
        raise InvalidRuleError(f"Unsupported frequency: {value!r}") from exc


def expand(rule, window_start: date, window_end: date) -> Iterator[date]:
    """Occurrence dates of ``rule`` inside ``[window_start, window_end]``.

    The result is a lazy iterator over a finite range and depends only on the
    rule's anchor (frequency, start and end date) and the window. Rule and
    window are validated eagerly, before the first date is produced.
    """
    if rule.start_date is None:
        raise InvalidRuleError("Recurring rule has no start date")
    frequency = rule_frequency(rule)
    if window_start > window_end:
        raise ValidationError("Window start must not be after window end")

    start = max(rule.start_date, window_start)
    end = window_end if rule.end_date is None else min(rule.end_date, window_end)
    if start > end:
        return iter(())
    return _EXPANDERS[frequency](rule.start_date, start, end)


@dataclass(frozen=True)
class Occurrence:
    rule_id: int
    date: date
    status: TransactionStatus
    transaction_id: Optional[int] = None


def project(
    rule,
    window_start: date,
    window_end: date,
    existing_transactions: Iterable[Transaction],
) -> list[Occurrence]:
    """Pair each occurrence date with the transaction materialized for it.

    A transaction is attributed to an occurrence through its rule id and the
    occurrence date it was created for (its booking date when it carries no
    occurrence date). Nothing is written.
    """
    by_date: dict[date, Transaction] = {}
    for txn in existing_transactions:
        if txn.recurring_rule_id != rule.id:
            continue
        by_date.setdefault(txn.occurrence_date or txn.date, txn)

    occurrences: list[Occurrence] = []
    for when in expand(rule, window_start, window_end):
        txn = by_date.get(when)
        if txn is None:
            occurrences.append(Occurrence(rule.id, when, TransactionStatus.pending))
        else:
            occurrences.append(
                Occurrence(rule.id, when, TransactionStatus(txn.status), txn.id)
            )
    return occurrences


# (numerator, denominator) per frequency. These are fixed reporting factors,
# not calendar counts: a daily rule always counts as 30 occurrences a month
# and a weekly rule as 4, whatever the actual month length.
_MONTHLY_FACTORS: dict[Frequency, tuple[int, int]] = {
    Frequency.daily: (30, 1),
    Frequency.weekly: (4, 1),
    Frequency.monthly: (1, 1),
    Frequency.yearly: (1, 12),
}


def monthly_commitment_cents(rule) -> int:
    """Monthly-normalized amount of ``rule`` for reporting.

    DAILY x 30, WEEKLY x 4, MONTHLY x 1, YEARLY / 12, rounded half-up to
    whole cents. This is an approximation; use :func:`expand` for the real
    number of occurrences in a given month.
    """
    numerator, denominator = _MONTHLY_FACTORS[rule_frequency(rule)]
    value = (Decimal(rule.amount_cents) * numerator / denominator).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(value)


class RecurringEngine:
    """Turns due PENDING occurrences into real transactions.

    Each occurrence is posted through :class:`services.TransactionService`, so
    it gets the same ledger and budget handling as a user-entered transaction.
    """

    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        *,
        on_budgets_changed: Optional[Callable[[set[int]], None]] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.on_budgets_changed = on_budgets_changed

    def materialize_rule(self, rule: RecurringRule, today: Optional[date] = None) -> int:
        from schemas import TransactionIn
        from services import TransactionService

        today = today or local_today()
        window_start = rule.start_date
        if rule.materialized_through is not None:
            window_start = max(window_start, rule.materialized_through + timedelta(days=1))
        window_end = today if rule.end_date is None else min(today, rule.end_date)
        if window_start > window_end:
            return 0

        existing = self.session.scalars(
            select(Transaction).where(
                Transaction.user_id == rule.user_id,
                Transaction.recurring_rule_id == rule.id,
                Transaction.occurrence_date.between(window_start, window_end),
            )
        ).all()
        service = TransactionService(
            self.session, rule.user_id, on_budgets_changed=self.on_budgets_changed
        )
        rule_id = rule.id
        created = 0
        for occurrence in project(rule, window_start, window_end, existing):
            if occurrence.transaction_id is not None:
                continue
            data = TransactionIn(
                account_id=rule.account_id,
                to_account_id=rule.to_account_id,
                date=occurrence.date,
                kind=rule.kind,
                status=TransactionStatus.completed,
                amount_cents=rule.amount_cents,
                category_id=rule.category_id,
                note=rule.name,
            )
            try:
                service.create(
                    data, recurring_rule_id=rule.id, occurrence_date=occurrence.date
                )
            except FinanceError as exc:
                logger.warning(
                    f"materialize_failed: rule_id={rule_id} "
                    f"date={occurrence.date} error={exc}"
                )
                return created
            created += 1
            rule.materialized_through = occurrence.date

        with unit_of_work(self.session):
            rule.materialized_through = window_end
        return created

    def materialize_due(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        stmt = (
            select(RecurringRule)
            .where(
                RecurringRule.is_active.is_(True),
                RecurringRule.start_date <= today,
            )
            .order_by(RecurringRule.id)
        )
        if self.user_id is not None:
            stmt = stmt.where(RecurringRule.user_id == self.user_id)
        rules = self.session.scalars(stmt).all()
        total = 0
        for rule in rules:
            total += self.materialize_rule(rule, today)
        logger.info(f"materialize_due: rules={len(rules)} created={total}")
        return total
