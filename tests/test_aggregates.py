from datetime import date

from aggregates import budget_details, budget_window, matches_goal_category, process_goal
from models import Budget, BudgetPeriod, Goal, Transaction, TransactionType


def _txn(day, amount_cents, category_id=None, category="", type_=TransactionType.expense):
    return Transaction(
        user_id=1,
        date=day,
        description="t",
        type=type_,
        amount_cents=amount_cents,
        category=category,
        category_id=category_id,
    )


def _budget(category_id, period=BudgetPeriod.monthly, **overrides):
    values = dict(
        id=1,
        user_id=1,
        name="Budget",
        category_id=category_id,
        amount_cents=50000,
        period=period,
        start_date=date(2024, 1, 1),
        end_date=None,
        is_favorite=False,
    )
    values.update(overrides)
    return Budget(**values)


def test_budget_spend_covers_whole_subtree_only(forest):
    transactions = [
        _txn(date(2024, 3, 2), 4000, "groceries"),
        _txn(date(2024, 3, 9), 2500, "restaurants"),
        _txn(date(2024, 3, 10), 1000, "food"),
        _txn(date(2024, 3, 11), 7000, "fuel"),
        _txn(date(2024, 3, 12), 9000, "salary", type_=TransactionType.income),
        _txn(date(2024, 2, 28), 3000, "groceries"),
    ]
    (food,) = budget_details([_budget("food")], forest, transactions, date(2024, 3, 15))
    assert food.spent_cents == 7500
    assert food.remaining_cents == 42500
    assert food.progress == 15.0
    assert food.category_path == "Food"
    assert (food.window_start, food.window_end) == (date(2024, 3, 1), date(2024, 3, 31))

    (transport,) = budget_details(
        [_budget("transport")], forest, transactions, date(2024, 3, 15)
    )
    assert transport.spent_cents == 7000


def test_budget_ignores_untagged_transactions(forest):
    transactions = [_txn(date(2024, 3, 2), 4000, None, "Food > Groceries")]
    (detail,) = budget_details([_budget("food")], forest, transactions, date(2024, 3, 15))
    assert detail.spent_cents == 0


def test_budget_with_deleted_category(forest):
    (detail,) = budget_details([_budget("gone")], forest, [], date(2024, 3, 15))
    assert detail.category_name == "Unknown category"
    assert detail.spent_cents == 0
    assert detail.remaining_cents == detail.amount_cents


def test_budget_windows_per_period():
    on = date(2024, 6, 10)
    assert budget_window(_budget("x", BudgetPeriod.yearly), on) == (
        date(2024, 1, 1),
        date(2024, 12, 31),
    )
    fixed = _budget(
        "x",
        BudgetPeriod.fixed,
        start_date=date(2024, 5, 1),
        end_date=date(2024, 8, 31),
    )
    assert budget_window(fixed, on) == (date(2024, 5, 1), date(2024, 8, 31))


def test_goal_name_rules_only_for_untagged():
    ids = {"coffee"}
    names = ("Coffee",)
    assert matches_goal_category(_txn(date(2024, 1, 1), 1, "coffee"), ids, names)
    assert not matches_goal_category(
        _txn(date(2024, 1, 1), 1, "restaurants", "Coffee"), ids, names
    )
    assert matches_goal_category(_txn(date(2024, 1, 1), 1, None, "Coffee"), ids, names)
    assert matches_goal_category(
        _txn(date(2024, 1, 1), 1, None, "Leisure > Coffee"), ids, names
    )
    assert not matches_goal_category(
        _txn(date(2024, 1, 1), 1, None, "Iced Coffee"), ids, names
    )


def test_auto_goal_recomputes_from_contribution_start(forest):
    goal = Goal(
        id=7,
        user_id=1,
        name="Coffee fund",
        target_amount_cents=10000,
        saved_amount_cents=99999,
        linked_category_id="coffee",
        contribution_start_date=date(2024, 3, 1),
    )
    transactions = [
        _txn(date(2024, 2, 15), 5000, "coffee"),
        _txn(date(2024, 3, 2), 1000, "coffee"),
        _txn(date(2024, 3, 5), 800, None, "Leisure > Coffee"),
        _txn(date(2024, 3, 6), 1200, "groceries"),
    ]
    processed = process_goal(goal, forest, transactions)
    assert processed.auto_tracking_active
    assert processed.saved_amount_cents == 1800
    assert processed.progress == 18.0
    assert not processed.is_complete
    assert [t.date for t in processed.contributions] == [date(2024, 3, 5), date(2024, 3, 2)]


def test_manual_goal_uses_stored_amount(forest):
    goal = Goal(
        id=8,
        user_id=1,
        name="Holiday",
        target_amount_cents=20000,
        saved_amount_cents=20000,
    )
    processed = process_goal(goal, forest, [_txn(date(2024, 3, 2), 1000, "coffee")])
    assert not processed.auto_tracking_active
    assert processed.saved_amount_cents == 20000
    assert processed.is_complete
    assert processed.contributions == []


def test_goal_linked_to_deleted_category_falls_back(forest):
    goal = Goal(
        id=9,
        user_id=1,
        name="Old",
        target_amount_cents=1000,
        saved_amount_cents=250,
        linked_category_id="gone",
    )
    processed = process_goal(goal, forest, [])
    assert not processed.auto_tracking_active
    assert processed.saved_amount_cents == 250
