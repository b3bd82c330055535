from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional

from sqlalchemy import and_, func, or_, select, true, union, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from alerts import AlertChannel, BudgetAlertMessage, get_alert_channel
from config import get_settings
from database import translate_db_errors, unit_of_work
from errors import (
    AggregationError,
    ConflictError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from ledger import (
    TransactionState,
    apply_transaction_effect,
    recalculate_account_balance,
)
from models import (
    Account,
    AlertLevel,
    Budget,
    BudgetAlert,
    Category,
    RecurringRule,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from periods import month_period
from recurrence import (
    Occurrence,
    RecurringEngine,
    local_today,
    monthly_commitment_cents,
    project,
)
from schemas import (
    AccountIn,
    BudgetIn,
    RecurringRuleIn,
    TransactionIn,
    TransactionPatch,
)


logger = logging.getLogger(__name__)

BudgetRefresh = Callable[[set[int]], None]

_REQUIRED_TRANSACTION_FIELDS = {
    "account_id",
    "date",
    "kind",
    "status",
    "amount_cents",
    "is_active",
}


def get_current_user_id() -> int:
    return 1


def _require_category(session: Session, user_id: int, category_id: Optional[int]) -> None:
    if category_id is None:
        return
    category = session.get(Category, category_id)
    if not category or category.user_id != user_id:
        raise NotFoundError("Category not found")


def _validate_transfer_target(
    kind: TransactionKind, account_id: int, to_account_id: Optional[int]
) -> None:
    if kind == TransactionKind.transfer:
        if to_account_id is None:
            raise ValidationError("Transfers require a destination account")
        if to_account_id == account_id:
            raise ValidationError("Transfer source and destination must differ")
    elif to_account_id is not None:
        raise ValidationError("Only transfers can have a destination account")


def _refresh_on_own_session(session: Session, user_id: int, budget_ids: set[int]) -> None:
    """Recompute ``budget_ids`` right after a write, on a separate session.

    ``BudgetService`` commits as it goes, so it never runs on the caller's
    session and cannot commit anything the caller still has pending.
    """
    with Session(
        session.get_bind(), autoflush=False, expire_on_commit=False
    ) as refresh_session:
        BudgetService(refresh_session, user_id).refresh_budgets(budget_ids)


def _dispatch_budget_refresh(callback: BudgetRefresh, budget_ids: set[int]) -> None:
    if not budget_ids:
        return
    try:
        callback(budget_ids)
    except Exception as exc:
        # The write is already committed; stale budgets are picked up later.
        logger.error(
            f"budget_refresh_dispatch_failed: budget_ids={sorted(budget_ids)} "
            f"error={exc}"
        )


@dataclass(frozen=True)
class BudgetScope:
    """The fields of a transaction that decide which budgets it can touch."""

    user_id: int
    date: date
    category_id: Optional[int]
    budget_id: Optional[int]

    @classmethod
    def of(cls, txn: Transaction) -> "BudgetScope":
        return cls(
            user_id=txn.user_id,
            date=txn.date,
            category_id=txn.category_id,
            budget_id=txn.budget_id,
        )


@dataclass(frozen=True)
class BudgetUsage:
    used_cents: int
    remaining_cents: int
    percentage: int

    @classmethod
    def compute(cls, amount_cents: int, used_cents: int) -> "BudgetUsage":
        if amount_cents > 0:
            # round(100 * used / amount), halves rounded up
            percentage = (200 * used_cents + amount_cents) // (2 * amount_cents)
        else:
            percentage = 0
        return cls(
            used_cents=used_cents,
            remaining_cents=amount_cents - used_cents,
            percentage=percentage,
        )


class AccountService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        *,
        on_budgets_changed: Optional[BudgetRefresh] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.on_budgets_changed = on_budgets_changed or self._refresh_budgets_inline

    def _refresh_budgets_inline(self, budget_ids: set[int]) -> None:
        _refresh_on_own_session(self.session, self.user_id, budget_ids)

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFoundError("Account not found")
        return account

    def list(self, include_inactive: bool = False) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.name, Account.id)
        )
        if not include_inactive:
            stmt = stmt.where(Account.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def create(self, data: AccountIn, *, opened_on: Optional[date] = None) -> Account:
        """Create an account; a non-zero opening balance is booked as a transaction.

        A negative opening balance is a completed expense, so it counts
        against the overall budgets of its month like any other expense.
        """
        affected: set[int] = set()
        with unit_of_work(self.session):
            account = Account(user_id=self.user_id, name=data.name, balance_cents=0)
            self.session.add(account)
            self.session.flush()
            if data.opening_balance_cents:
                opening = Transaction(
                    user_id=self.user_id,
                    account_id=account.id,
                    date=opened_on or local_today(),
                    kind=(
                        TransactionKind.income
                        if data.opening_balance_cents > 0
                        else TransactionKind.expense
                    ),
                    status=TransactionStatus.completed,
                    amount_cents=abs(data.opening_balance_cents),
                    note="Opening balance",
                )
                self.session.add(opening)
                self.session.flush()
                apply_transaction_effect(
                    self.session, None, TransactionState.of(opening), self.user_id
                )
                affected = BudgetService(self.session, self.user_id).invalidate(
                    None, BudgetScope.of(opening)
                )
        self.session.refresh(account)
        logger.info(
            f"account_created: id={account.id} "
            f"opening_balance_cents={data.opening_balance_cents}"
        )
        _dispatch_budget_refresh(self.on_budgets_changed, affected)
        return account

    def set_active(self, account_id: int, is_active: bool) -> Account:
        with unit_of_work(self.session):
            account = self.get(account_id)
            account.is_active = is_active
        return account

    def recalculate(self, account_id: int) -> int:
        with unit_of_work(self.session):
            balance = recalculate_account_balance(
                self.session, account_id, self.user_id
            )
        return balance


class TransactionService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        *,
        on_budgets_changed: Optional[BudgetRefresh] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.on_budgets_changed = on_budgets_changed or self._refresh_budgets_inline

    def _refresh_budgets_inline(self, budget_ids: set[int]) -> None:
        _refresh_on_own_session(self.session, self.user_id, budget_ids)

    def _after_write(self, budget_ids: set[int]) -> None:
        _dispatch_budget_refresh(self.on_budgets_changed, budget_ids)

    def _validate(self, txn: Transaction) -> None:
        _validate_transfer_target(
            TransactionKind(txn.kind), txn.account_id, txn.to_account_id
        )
        _require_category(self.session, self.user_id, txn.category_id)
        if txn.budget_id is not None:
            budget = self.session.get(Budget, txn.budget_id)
            if not budget or budget.user_id != self.user_id:
                raise NotFoundError("Budget not found")

    def _get_for_update(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.user_id == self.user_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFoundError("Transaction not found")
        return txn

    def list_for_account(self, account_id: int, limit: int = 200) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                or_(
                    Transaction.account_id == account_id,
                    Transaction.to_account_id == account_id,
                ),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def create(
        self,
        data: TransactionIn,
        *,
        recurring_rule_id: Optional[int] = None,
        occurrence_date: Optional[date] = None,
    ) -> Transaction:
        with unit_of_work(self.session):
            txn = Transaction(
                user_id=self.user_id,
                account_id=data.account_id,
                to_account_id=data.to_account_id,
                date=data.date,
                kind=data.kind,
                status=data.status,
                amount_cents=data.amount_cents,
                is_active=data.is_active,
                category_id=data.category_id,
                budget_id=data.budget_id,
                note=data.note,
                recurring_rule_id=recurring_rule_id,
                occurrence_date=occurrence_date,
            )
            self._validate(txn)
            apply_transaction_effect(
                self.session, None, TransactionState.of(txn), self.user_id
            )
            self.session.add(txn)
            self.session.flush()
            affected = BudgetService(self.session, self.user_id).invalidate(
                None, BudgetScope.of(txn)
            )
        logger.info(
            f"transaction_created: id={txn.id} account_id={txn.account_id} "
            f"kind={txn.kind.value} status={txn.status.value}"
        )
        self._after_write(affected)
        return txn

    def update(self, transaction_id: int, patch: TransactionPatch) -> Transaction:
        changes = patch.model_dump(exclude_unset=True)
        for field in _REQUIRED_TRANSACTION_FIELDS & changes.keys():
            if changes[field] is None:
                raise ValidationError(f"{field} cannot be cleared")
        with unit_of_work(self.session):
            txn = self._get_for_update(transaction_id)
            previous = TransactionState.of(txn)
            previous_scope = BudgetScope.of(txn)
            for field, value in changes.items():
                setattr(txn, field, value)
            self._validate(txn)
            apply_transaction_effect(
                self.session, previous, TransactionState.of(txn), self.user_id
            )
            self.session.flush()
            affected = BudgetService(self.session, self.user_id).invalidate(
                previous_scope, BudgetScope.of(txn)
            )
        logger.info(
            f"transaction_updated: id={txn.id} fields={sorted(changes)}"
        )
        self._after_write(affected)
        return txn

    def delete(self, transaction_id: int) -> None:
        with unit_of_work(self.session):
            txn = self._get_for_update(transaction_id)
            previous = TransactionState.of(txn)
            previous_scope = BudgetScope.of(txn)
            self.session.delete(txn)
            self.session.flush()
            apply_transaction_effect(self.session, previous, None, self.user_id)
            affected = BudgetService(self.session, self.user_id).invalidate(
                previous_scope, None
            )
        logger.info(f"transaction_deleted: id={transaction_id}")
        self._after_write(affected)


class BudgetService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        *,
        alert_channel: Optional[AlertChannel] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.alert_channel = alert_channel or get_alert_channel()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFoundError("Budget not found")
        return budget

    def list_for_month(self, year: int, month: int) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.year == year,
                Budget.month == month,
            )
            .order_by(Budget.category_id.is_(None).desc(), Budget.id)
        )
        return self.session.scalars(stmt).all()

    def _check_duplicate(self, data: BudgetIn, exclude_id: Optional[int] = None) -> None:
        if not data.is_active:
            return
        stmt = select(Budget.id).where(
            Budget.user_id == self.user_id,
            Budget.year == data.year,
            Budget.month == data.month,
            Budget.is_active.is_(True),
            Budget.category_id.is_(None)
            if data.category_id is None
            else Budget.category_id == data.category_id,
        )
        if exclude_id is not None:
            stmt = stmt.where(Budget.id != exclude_id)
        if self.session.scalar(stmt.limit(1)) is not None:
            raise ValidationError(
                "Budget already exists for this category, month, and year"
            )

    def create(self, data: BudgetIn) -> Budget:
        with unit_of_work(self.session):
            _require_category(self.session, self.user_id, data.category_id)
            self._check_duplicate(data)
            budget = Budget(
                user_id=self.user_id,
                year=data.year,
                month=data.month,
                category_id=data.category_id,
                amount_cents=data.amount_cents,
                alert_threshold=data.alert_threshold,
                is_active=data.is_active,
                note=data.note,
                usage_stale=True,
            )
            self.session.add(budget)
        self.refresh_budgets({budget.id})
        return budget

    def update(self, budget_id: int, data: BudgetIn) -> Budget:
        with unit_of_work(self.session):
            budget = self.get(budget_id)
            _require_category(self.session, self.user_id, data.category_id)
            self._check_duplicate(data, exclude_id=budget.id)
            period_changed = (budget.year, budget.month, budget.category_id) != (
                data.year,
                data.month,
                data.category_id,
            )
            for field, value in data.model_dump().items():
                setattr(budget, field, value)
            budget.usage_stale = True
            if period_changed:
                budget.alert_level = None
        self.refresh_budgets({budget.id})
        return budget

    def delete(self, budget_id: int) -> None:
        with unit_of_work(self.session):
            budget = self.get(budget_id)
            self.session.execute(
                update(Transaction)
                .where(Transaction.budget_id == budget.id)
                .values(budget_id=None)
                .execution_options(synchronize_session="fetch")
            )
            self.session.delete(budget)

    def affected_budget_ids(self, *scopes: Optional[BudgetScope]) -> set[int]:
        """Budgets whose usage may change when a transaction enters or leaves ``scopes``.

        A budget is affected when the transaction date falls in its month and
        the transaction is linked to it directly or shares its category.
        Overall budgets (no category) cover every transaction of the month.
        """
        conditions = []
        for scope in scopes:
            if scope is None or scope.user_id != self.user_id:
                continue
            linkage = [Budget.category_id.is_(None)]
            if scope.budget_id is not None:
                linkage.append(Budget.id == scope.budget_id)
            if scope.category_id is not None:
                linkage.append(Budget.category_id == scope.category_id)
            conditions.append(
                and_(
                    Budget.year == scope.date.year,
                    Budget.month == scope.date.month,
                    or_(*linkage),
                )
            )
        if not conditions:
            return set()
        stmt = select(Budget.id).where(Budget.user_id == self.user_id, or_(*conditions))
        return set(self.session.scalars(stmt).all())

    def invalidate(
        self, before: Optional[BudgetScope], after: Optional[BudgetScope]
    ) -> set[int]:
        """Flag the cached usage of every affected budget as stale."""
        budget_ids = self.affected_budget_ids(before, after)
        if budget_ids:
            self.session.execute(
                update(Budget)
                .where(Budget.id.in_(budget_ids))
                .values(usage_stale=True)
                .execution_options(synchronize_session="fetch")
            )
        return budget_ids

    def _matching_selects(self, budget: Budget) -> list:
        period = month_period(budget.year, budget.month)
        base = (
            Transaction.user_id == budget.user_id,
            Transaction.kind == TransactionKind.expense,
            Transaction.status == TransactionStatus.completed,
            Transaction.is_active.is_(True),
            Transaction.date.between(period.start, period.end),
        )
        by_link = select(Transaction.id).where(*base, Transaction.budget_id == budget.id)
        if budget.category_id is None:
            by_category = select(Transaction.id).where(*base, true())
        else:
            by_category = select(Transaction.id).where(
                *base, Transaction.category_id == budget.category_id
            )
        return [by_link, by_category]

    def _sum_matched(self, budgets: list[Budget]) -> int:
        selects = [stmt for budget in budgets for stmt in self._matching_selects(budget)]
        # UNION (not UNION ALL) keeps each transaction id once.
        matched = union(*selects).subquery()
        total = self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                Transaction.id.in_(select(matched.c.id))
            )
        ).scalar_one()
        return int(total or 0)

    def used_cents(self, budget: Budget) -> int:
        return self._sum_matched([budget])

    def recompute_usage(self, budget_id: int) -> BudgetUsage:
        with translate_db_errors():
            budget = self.session.get(Budget, budget_id, populate_existing=True)
            if not budget or budget.user_id != self.user_id:
                raise NotFoundError("Budget not found")
            previous_level = budget.alert_level
            usage = BudgetUsage.compute(budget.amount_cents, self.used_cents(budget))
            self.session.execute(
                update(Budget)
                .where(Budget.id == budget.id)
                .values(
                    used_cents=usage.used_cents,
                    remaining_cents=usage.remaining_cents,
                    percentage=usage.percentage,
                    usage_stale=False,
                    recomputed_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session="fetch")
            )
            self.session.commit()
        self._evaluate_alert(budget, previous_level, usage)
        return usage

    @staticmethod
    def _alert_level_for(budget: Budget, usage: BudgetUsage) -> Optional[AlertLevel]:
        if not budget.is_active or usage.used_cents <= 0:
            return None
        if usage.percentage >= 100:
            return AlertLevel.exceeded
        if usage.percentage >= budget.alert_threshold:
            return AlertLevel.warning
        return None

    @staticmethod
    def _rank(level: Optional[AlertLevel]) -> int:
        if level is None:
            return 0
        return 1 if level == AlertLevel.warning else 2

    def _claim_alert_level(
        self, budget_id: int, expected: Optional[AlertLevel], new: Optional[AlertLevel]
    ) -> bool:
        current = (
            Budget.alert_level.is_(None)
            if expected is None
            else Budget.alert_level == expected
        )
        result = self.session.execute(
            update(Budget)
            .where(Budget.id == budget_id, current)
            .values(alert_level=new)
            .execution_options(synchronize_session="fetch")
        )
        self.session.commit()
        return result.rowcount == 1

    def _evaluate_alert(
        self, budget: Budget, previous: Optional[AlertLevel], usage: BudgetUsage
    ) -> None:
        """Edge-triggered alerting: notify only when the level goes up.

        The level change is claimed with a conditional update, so among
        concurrent recomputes only one sees the transition and notifies.
        Dropping below the threshold re-arms the alert for this period.
        """
        level = self._alert_level_for(budget, usage)
        if level == previous:
            return
        if not self._claim_alert_level(budget.id, previous, level):
            return
        if self._rank(level) <= self._rank(previous):
            return

        message = BudgetAlertMessage(
            budget_id=budget.id,
            user_id=budget.user_id,
            year=budget.year,
            month=budget.month,
            level=level.value,
            percentage=usage.percentage,
            used_cents=usage.used_cents,
            remaining_cents=usage.remaining_cents,
            amount_cents=budget.amount_cents,
            category_id=budget.category_id,
        )
        try:
            self.alert_channel.send(message)
        except Exception as exc:
            logger.error(
                f"budget_alert_failed: budget_id={budget.id} level={level.value} "
                f"error={exc}"
            )
            self.session.execute(
                update(Budget)
                .where(Budget.id == budget.id, Budget.alert_level == level)
                .values(alert_level=previous, usage_stale=True)
                .execution_options(synchronize_session="fetch")
            )
            self.session.commit()
            return

        self.session.add(
            BudgetAlert(
                budget_id=budget.id,
                year=budget.year,
                month=budget.month,
                alert_level=level,
                percentage=usage.percentage,
            )
        )
        self.session.commit()

    def _recompute_with_retry(self, budget_id: int) -> BudgetUsage:
        settings = get_settings()

        def _rollback(_retry_state) -> None:
            self.session.rollback()

        retryer = Retrying(
            stop=stop_after_attempt(settings.budget_retry_attempts),
            wait=wait_exponential(multiplier=0.1, max=2),
            retry=retry_if_exception_type(
                (TransientError, ConflictError, SQLAlchemyError)
            ),
            before_sleep=_rollback,
            reraise=True,
        )
        try:
            return retryer(self.recompute_usage, budget_id)
        except NotFoundError:
            raise
        except Exception as exc:
            self.session.rollback()
            raise AggregationError(
                f"Budget {budget_id} recompute failed: {exc}"
            ) from exc

    def refresh_budgets(self, budget_ids: set[int]) -> dict[int, BudgetUsage]:
        """Best-effort recompute of ``budget_ids``; never raises.

        Budgets that still fail after the retries stay flagged stale and are
        picked up again by the scheduler or the next read. Each recompute
        commits on this service's session.
        """
        results: dict[int, BudgetUsage] = {}
        for budget_id in sorted(budget_ids):
            try:
                results[budget_id] = self._recompute_with_retry(budget_id)
            except NotFoundError:
                continue
            except AggregationError as exc:
                logger.error(f"budget_recompute_failed: budget_id={budget_id} error={exc}")
        return results

    def get_usage(self, budget_id: int) -> BudgetUsage:
        """Current usage, recomputed from transactions on every read.

        Falls back to the cached figures if the recompute keeps failing.
        """
        try:
            return self._recompute_with_retry(budget_id)
        except AggregationError as exc:
            logger.warning(f"budget_usage_cached: budget_id={budget_id} error={exc}")
            budget = self.get(budget_id)
            return BudgetUsage(
                used_cents=budget.used_cents,
                remaining_cents=budget.remaining_cents,
                percentage=budget.percentage,
            )

    def refresh_stale(self) -> int:
        stale_ids = set(
            self.session.scalars(
                select(Budget.id).where(
                    Budget.user_id == self.user_id, Budget.usage_stale.is_(True)
                )
            ).all()
        )
        return len(self.refresh_budgets(stale_ids))

    def summary_for_month(self, year: int, month: int) -> dict[str, object]:
        """Totals across the month's active budgets, each transaction counted once."""
        budgets = [b for b in self.list_for_month(year, month) if b.is_active]
        total_budget = sum(b.amount_cents for b in budgets)
        used = self._sum_matched(budgets) if budgets else 0
        usage = BudgetUsage.compute(total_budget, used)
        return {
            "year": year,
            "month": month,
            "budget_count": len(budgets),
            "total_budget_cents": total_budget,
            "used_cents": usage.used_cents,
            "remaining_cents": usage.remaining_cents,
            "percentage": usage.percentage,
        }


def refresh_stale_budgets(session: Session) -> int:
    """Recompute stale budgets of every user; used by the scheduler."""
    user_ids = session.scalars(
        select(Budget.user_id).where(Budget.usage_stale.is_(True)).distinct()
    ).all()
    refreshed = 0
    for user_id in user_ids:
        refreshed += BudgetService(session, user_id).refresh_stale()
    return refreshed


class RecurringRuleService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        *,
        on_budgets_changed: Optional[BudgetRefresh] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.on_budgets_changed = on_budgets_changed

    def get(self, rule_id: int) -> RecurringRule:
        rule = self.session.get(RecurringRule, rule_id)
        if not rule or rule.user_id != self.user_id:
            raise NotFoundError("Rule not found")
        return rule

    def list(self, include_inactive: bool = True) -> list[RecurringRule]:
        stmt = (
            select(RecurringRule)
            .where(RecurringRule.user_id == self.user_id)
            .order_by(RecurringRule.start_date, RecurringRule.id)
        )
        if not include_inactive:
            stmt = stmt.where(RecurringRule.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def _validate(self, data: RecurringRuleIn) -> None:
        if data.end_date is not None and data.end_date < data.start_date:
            raise ValidationError("End date must not be before start date")
        _validate_transfer_target(data.kind, data.account_id, data.to_account_id)
        for account_id in (data.account_id, data.to_account_id):
            if account_id is None:
                continue
            account = self.session.get(Account, account_id)
            if not account or account.user_id != self.user_id:
                raise NotFoundError("Account not found")
        _require_category(self.session, self.user_id, data.category_id)

    def create(self, data: RecurringRuleIn) -> RecurringRule:
        with unit_of_work(self.session):
            self._validate(data)
            rule = RecurringRule(user_id=self.user_id, **data.model_dump())
            self.session.add(rule)
        return rule

    def update(self, rule_id: int, data: RecurringRuleIn) -> RecurringRule:
        """Replace the rule; a new anchor re-aligns occurrences not yet materialized."""
        with unit_of_work(self.session):
            rule = self.get(rule_id)
            self._validate(data)
            for field, value in data.model_dump().items():
                setattr(rule, field, value)
        return rule

    def toggle_active(self, rule_id: int, is_active: bool) -> None:
        with unit_of_work(self.session):
            rule = self.get(rule_id)
            rule.is_active = is_active

    def delete(self, rule_id: int) -> None:
        with unit_of_work(self.session):
            rule = self.get(rule_id)
            self.session.execute(
                update(Transaction)
                .where(Transaction.recurring_rule_id == rule.id)
                .values(recurring_rule_id=None)
                .execution_options(synchronize_session="fetch")
            )
            self.session.delete(rule)

    def occurrences(
        self, rule_id: int, window_start: date, window_end: date
    ) -> list[Occurrence]:
        rule = self.get(rule_id)
        if window_start > window_end:
            raise ValidationError("Window start must not be after window end")
        existing = self.session.scalars(
            select(Transaction).where(
                Transaction.user_id == self.user_id,
                Transaction.recurring_rule_id == rule.id,
                or_(
                    Transaction.occurrence_date.between(window_start, window_end),
                    and_(
                        Transaction.occurrence_date.is_(None),
                        Transaction.date.between(window_start, window_end),
                    ),
                ),
            )
        ).all()
        return project(rule, window_start, window_end, existing)

    def monthly_commitment(self, rule_id: int) -> int:
        return monthly_commitment_cents(self.get(rule_id))

    def statistics(self) -> dict[str, object]:
        """Monthly-normalized totals of the active rules (see ``monthly_commitment_cents``)."""
        rules = self.list(include_inactive=False)

        total_income = 0
        total_expenses = 0
        income_by_category: dict[str, int] = {}
        expense_by_category: dict[str, int] = {}
        income_count = 0
        expense_count = 0

        for rule in rules:
            monthly = monthly_commitment_cents(rule)
            category_name = rule.category.name if rule.category else "Uncategorized"

            if rule.kind == TransactionKind.income:
                total_income += monthly
                income_count += 1
                income_by_category[category_name] = (
                    income_by_category.get(category_name, 0) + monthly
                )
            elif rule.kind != TransactionKind.transfer:
                total_expenses += monthly
                expense_count += 1
                expense_by_category[category_name] = (
                    expense_by_category.get(category_name, 0) + monthly
                )

        coverage_ratio = (
            (total_income / total_expenses * 100) if total_expenses > 0 else 100.0
        )

        def build_breakdown(by_category: dict[str, int], total: int) -> list[dict]:
            if total == 0:
                return []
            items = sorted(by_category.items(), key=lambda x: x[1], reverse=True)
            return [
                {
                    "name": name,
                    "amount_cents": amount,
                    "percent": amount / total * 100,
                }
                for name, amount in items
            ]

        return {
            "total_monthly_income": total_income,
            "total_monthly_expenses": total_expenses,
            "net_monthly": total_income - total_expenses,
            "coverage_ratio": coverage_ratio,
            "expense_breakdown": build_breakdown(expense_by_category, total_expenses),
            "income_breakdown": build_breakdown(income_by_category, total_income),
            "rule_counts": {
                "income": income_count,
                "expense": expense_count,
                "total": len(rules),
            },
        }

    def materialize_due(self, today: Optional[date] = None) -> int:
        engine = RecurringEngine(
            self.session, self.user_id, on_budgets_changed=self.on_budgets_changed
        )
        return engine.materialize_due(today)
