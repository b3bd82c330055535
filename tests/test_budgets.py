from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

import services
from alerts import BudgetAlertMessage
from database import Base
from errors import AggregationError, TransientError, ValidationError
from models import (
    AlertLevel,
    Budget,
    BudgetAlert,
    Category,
    TransactionKind,
    TransactionStatus,
)
from schemas import AccountIn, BudgetIn, TransactionIn, TransactionPatch
from services import AccountService, BudgetService, BudgetUsage, TransactionService


class RecordingChannel:
    def __init__(self) -> None:
        self.sent: list[BudgetAlertMessage] = []

    def send(self, message: BudgetAlertMessage) -> None:
        self.sent.append(message)


class FailingChannel:
    def send(self, message: BudgetAlertMessage) -> None:
        raise AggregationError("webhook down")


def _session() -> Session:
    # Post-write refreshes open their own session; both must see one database.
    engine = create_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    return Session(engine)


def _seed(session: Session) -> tuple[int, int, int]:
    account = AccountService(session).create(
        AccountIn(name="Checking", opening_balance_cents=500_000),
        opened_on=date(2023, 12, 1),
    )
    food = Category(user_id=1, name="Food")
    rent = Category(user_id=1, name="Rent")
    session.add_all([food, rent])
    session.commit()
    return account.id, food.id, rent.id


def _expense(account_id: int, amount: int, **extra) -> TransactionIn:
    return TransactionIn(
        account_id=account_id,
        date=extra.pop("date", date(2024, 1, 10)),
        kind=extra.pop("kind", TransactionKind.expense),
        amount_cents=amount,
        **extra,
    )


def test_usage_percentage_rounds_half_up() -> None:
    assert BudgetUsage.compute(10_000, 0).percentage == 0
    assert BudgetUsage.compute(200, 1).percentage == 1  # 0.5
    assert BudgetUsage.compute(300, 1).percentage == 0  # 0.33
    assert BudgetUsage.compute(10_000, 12_000).remaining_cents == -2_000
    assert BudgetUsage.compute(0, 500).percentage == 0


def test_linked_and_category_match_counted_once() -> None:
    with _session() as session:
        account_id, food_id, _ = _seed(session)
        budgets = BudgetService(session)
        budget = budgets.create(
            BudgetIn(year=2024, month=1, category_id=food_id, amount_cents=10_000)
        )

        TransactionService(session).create(
            _expense(account_id, 3_000, category_id=food_id, budget_id=budget.id)
        )

        usage = budgets.get_usage(budget.id)
        assert usage.used_cents == 3_000
        assert usage.remaining_cents == 7_000
        assert usage.percentage == 30
        # Recomputing without changes is stable.
        assert budgets.get_usage(budget.id) == usage


def test_only_completed_active_expenses_in_period_count() -> None:
    with _session() as session:
        account_id, food_id, _ = _seed(session)
        budgets = BudgetService(session)
        budget = budgets.create(
            BudgetIn(year=2024, month=1, category_id=food_id, amount_cents=10_000)
        )
        service = TransactionService(session)
        service.create(_expense(account_id, 1_000, category_id=food_id, date=date(2024, 1, 31)))
        service.create(_expense(account_id, 2_000, category_id=food_id, date=date(2024, 2, 1)))
        service.create(
            _expense(
                account_id, 4_000, category_id=food_id, status=TransactionStatus.pending
            )
        )
        service.create(_expense(account_id, 8_000, category_id=food_id, is_active=False))
        service.create(
            _expense(account_id, 16_000, category_id=food_id, kind=TransactionKind.income)
        )

        assert budgets.get_usage(budget.id).used_cents == 1_000


def test_overall_budget_covers_every_expense() -> None:
    with _session() as session:
        account_id, food_id, rent_id = _seed(session)
        budgets = BudgetService(session)
        overall = budgets.create(BudgetIn(year=2024, month=1, amount_cents=100_000))

        service = TransactionService(session)
        service.create(_expense(account_id, 3_000, category_id=food_id))
        service.create(_expense(account_id, 20_000, category_id=rent_id))
        service.create(_expense(account_id, 500))

        assert budgets.get_usage(overall.id).used_cents == 23_500


def test_moving_transaction_out_of_scope_updates_cache() -> None:
    with _session() as session:
        account_id, food_id, rent_id = _seed(session)
        budgets = BudgetService(session)
        food_budget = budgets.create(
            BudgetIn(year=2024, month=1, category_id=food_id, amount_cents=10_000)
        )
        rent_budget = budgets.create(
            BudgetIn(year=2024, month=1, category_id=rent_id, amount_cents=10_000)
        )

        service = TransactionService(session)
        txn = service.create(_expense(account_id, 2_500, category_id=food_id))
        assert session.get(Budget, food_budget.id).used_cents == 2_500

        service.update(txn.id, TransactionPatch(category_id=rent_id))
        session.expire_all()
        food = session.get(Budget, food_budget.id)
        rent = session.get(Budget, rent_budget.id)
        assert (food.used_cents, food.usage_stale) == (0, False)
        assert (rent.used_cents, rent.usage_stale) == (2_500, False)

        service.update(txn.id, TransactionPatch(date=date(2024, 2, 3)))
        session.expire_all()
        assert session.get(Budget, rent_budget.id).used_cents == 0

        service.update(txn.id, TransactionPatch(date=date(2024, 1, 3)))
        service.delete(txn.id)
        session.expire_all()
        assert session.get(Budget, rent_budget.id).used_cents == 0


def test_negative_opening_balance_counts_against_overall_budget(monkeypatch) -> None:
    monkeypatch.setattr(services, "local_today", lambda: date(2024, 1, 20))
    with _session() as session:
        overall = BudgetService(session).create(
            BudgetIn(year=2024, month=1, amount_cents=100_000)
        )

        account = AccountService(session).create(
            AccountIn(name="Card", opening_balance_cents=-40_000)
        )
        assert account.balance_cents == -40_000

        opening = TransactionService(session).list_for_account(account.id)[0]
        assert opening.date == date(2024, 1, 20)
        assert opening.kind == TransactionKind.expense

        # The cache is fresh without a read-time recompute.
        session.expire_all()
        stored = session.get(Budget, overall.id)
        assert (stored.used_cents, stored.usage_stale) == (40_000, False)
        assert stored.percentage == 40


def test_inline_refresh_leaves_caller_session_alone() -> None:
    with _session() as session:
        account_id, food_id, _ = _seed(session)
        budget = BudgetService(session).create(
            BudgetIn(year=2024, month=1, category_id=food_id, amount_cents=10_000)
        )
        service = TransactionService(session)
        service.create(_expense(account_id, 1_500, category_id=food_id))

        session.get(Category, food_id).name = "Groceries"
        service.on_budgets_changed({budget.id})
        session.rollback()

        assert session.get(Category, food_id).name == "Food"
        stored = session.get(Budget, budget.id)
        assert (stored.used_cents, stored.usage_stale) == (1_500, False)


def test_refresh_failure_never_fails_the_write(monkeypatch) -> None:
    with _session() as session:
        account_id, food_id, _ = _seed(session)
        budgets = BudgetService(session)
        budget = budgets.create(
            BudgetIn(year=2024, month=1, category_id=food_id, amount_cents=10_000)
        )

        def broken(self, budget_id):
            raise TransientError("database busy")

        monkeypatch.setattr(services.BudgetService, "recompute_usage", broken)

        txn = TransactionService(session).create(
            _expense(account_id, 4_000, category_id=food_id)
        )
        assert txn.id is not None

        session.expire_all()
        stored = session.get(Budget, budget.id)
        assert stored.usage_stale is True
        assert stored.used_cents == 0
        # Reads fall back to the cached figures.
        assert budgets.get_usage(budget.id).used_cents == 0

        monkeypatch.undo()
        assert services.refresh_stale_budgets(session) == 1
        session.expire_all()
        stored = session.get(Budget, budget.id)
        assert (stored.used_cents, stored.usage_stale) == (4_000, False)


def test_callback_errors_are_contained() -> None:
    with _session() as session:
        account_id, food_id, _ = _seed(session)
        budget = BudgetService(session).create(
            BudgetIn(year=2024, month=1, category_id=food_id, amount_cents=10_000)
        )

        def explode(budget_ids):
            raise RuntimeError("queue full")

        txn = TransactionService(session, on_budgets_changed=explode).create(
            _expense(account_id, 1_000, category_id=food_id)
        )
        assert txn.id is not None
        session.expire_all()
        assert session.get(Budget, budget.id).usage_stale is True


def test_alerts_are_edge_triggered() -> None:
    with _session() as session:
        account_id, food_id, _ = _seed(session)
        channel = RecordingChannel()
        budgets = BudgetService(session, alert_channel=channel)
        budget = budgets.create(
            BudgetIn(
                year=2024,
                month=1,
                category_id=food_id,
                amount_cents=10_000,
                alert_threshold=80,
            )
        )
        service = TransactionService(
            session, on_budgets_changed=budgets.refresh_budgets
        )

        service.create(_expense(account_id, 5_000, category_id=food_id))
        assert channel.sent == []

        second = service.create(_expense(account_id, 3_000, category_id=food_id))
        assert [m.level for m in channel.sent] == ["warning"]
        assert channel.sent[0].percentage == 80

        budgets.refresh_budgets({budget.id})
        assert len(channel.sent) == 1

        service.create(_expense(account_id, 2_500, category_id=food_id))
        assert [m.level for m in channel.sent] == ["warning", "exceeded"]

        # Dropping below the threshold re-arms the warning.
        service.delete(second.id)
        session.expire_all()
        assert session.get(Budget, budget.id).alert_level is None
        service.create(_expense(account_id, 1_000, category_id=food_id))
        assert [m.level for m in channel.sent] == ["warning", "exceeded", "warning"]

        recorded = session.scalars(
            select(BudgetAlert.alert_level)
            .where(BudgetAlert.budget_id == budget.id)
            .order_by(BudgetAlert.id)
        ).all()
        assert recorded == [AlertLevel.warning, AlertLevel.exceeded, AlertLevel.warning]


def test_failed_alert_delivery_is_retried() -> None:
    with _session() as session:
        account_id, food_id, _ = _seed(session)
        budget = BudgetService(session).create(
            BudgetIn(year=2024, month=1, category_id=food_id, amount_cents=10_000)
        )
        failing = BudgetService(session, alert_channel=FailingChannel())
        TransactionService(session, on_budgets_changed=failing.refresh_budgets).create(
            _expense(account_id, 9_000, category_id=food_id)
        )

        session.expire_all()
        stored = session.get(Budget, budget.id)
        assert stored.alert_level is None
        assert stored.usage_stale is True

        channel = RecordingChannel()
        BudgetService(session, alert_channel=channel).refresh_stale()
        assert [m.level for m in channel.sent] == ["warning"]


def test_zero_threshold_needs_spending() -> None:
    with _session() as session:
        account_id, food_id, _ = _seed(session)
        channel = RecordingChannel()
        budgets = BudgetService(session, alert_channel=channel)
        budgets.create(
            BudgetIn(
                year=2024,
                month=1,
                category_id=food_id,
                amount_cents=10_000,
                alert_threshold=0,
            )
        )
        assert channel.sent == []

        TransactionService(session, on_budgets_changed=budgets.refresh_budgets).create(
            _expense(account_id, 10, category_id=food_id)
        )
        assert [m.level for m in channel.sent] == ["warning"]


def test_duplicate_active_budget_rejected() -> None:
    with _session() as session:
        _, food_id, _ = _seed(session)
        budgets = BudgetService(session)
        budgets.create(BudgetIn(year=2024, month=1, category_id=food_id, amount_cents=100))
        with pytest.raises(ValidationError):
            budgets.create(
                BudgetIn(year=2024, month=1, category_id=food_id, amount_cents=200)
            )
        budgets.create(BudgetIn(year=2024, month=2, category_id=food_id, amount_cents=100))
        budgets.create(BudgetIn(year=2024, month=1, amount_cents=100))
        with pytest.raises(ValidationError):
            budgets.create(BudgetIn(year=2024, month=1, amount_cents=300))


def test_monthly_summary_counts_each_transaction_once() -> None:
    with _session() as session:
        account_id, food_id, rent_id = _seed(session)
        budgets = BudgetService(session)
        budgets.create(
            BudgetIn(year=2024, month=1, category_id=food_id, amount_cents=10_000)
        )
        budgets.create(BudgetIn(year=2024, month=1, amount_cents=50_000))

        service = TransactionService(session)
        service.create(_expense(account_id, 3_000, category_id=food_id))
        service.create(_expense(account_id, 2_000, category_id=rent_id))

        summary = budgets.summary_for_month(2024, 1)
        assert summary["budget_count"] == 2
        assert summary["total_budget_cents"] == 60_000
        assert summary["used_cents"] == 5_000
        assert summary["percentage"] == 8


def test_deleting_budget_unlinks_transactions() -> None:
    with _session() as session:
        account_id, food_id, _ = _seed(session)
        budgets = BudgetService(session)
        budget = budgets.create(
            BudgetIn(year=2024, month=1, category_id=food_id, amount_cents=10_000)
        )
        service = TransactionService(session)
        txn = service.create(_expense(account_id, 100, budget_id=budget.id))

        budgets.delete(budget.id)
        session.expire_all()
        assert service.get(txn.id).budget_id is None
