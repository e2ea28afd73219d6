from datetime import date

import pytest

from aggregates import ProcessedGoal
from models import Budget, BudgetPeriod, Transaction, TransactionType
from reports import (
    compute_eoy_report,
    compute_quarterly_report,
    dashboard_analytics,
    eoy_summary_text,
    quarter_budget_amount,
)


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


@pytest.fixture()
def transactions():
    return [
        _txn(date(2023, 12, 31), 9999, "groceries", "Food > Groceries"),
        _txn(date(2024, 1, 10), 10000, "groceries", "Food > Groceries"),
        _txn(
            date(2024, 1, 31),
            300000,
            "salary",
            "Salary",
            type_=TransactionType.income,
        ),
        _txn(date(2024, 3, 5), 5000, "restaurants", "Food > Restaurants"),
        _txn(date(2024, 3, 7), 2000, None, "Food > Restaurants"),
        _txn(date(2024, 5, 1), 1500, None, "Misc > Coffee"),
        _txn(date(2024, 6, 1), 1000, None, "Mystery"),
    ]


def _budget(id_, category_id, period, amount_cents):
    return Budget(
        id=id_,
        user_id=1,
        name=f"Budget {id_}",
        category_id=category_id,
        amount_cents=amount_cents,
        period=period,
        start_date=date(2024, 1, 1),
        is_favorite=False,
    )


def test_eoy_report_zero_fills_every_month(transactions, forest):
    report = compute_eoy_report(transactions, forest, 2024)
    assert [p.month for p in report.monthly] == list(range(1, 13))
    assert report.monthly[1].income_cents == 0
    assert report.monthly[1].expense_cents == 0
    assert report.monthly[0].net_cents == 290000
    assert report.total_income_cents == 300000
    assert report.total_expense_cents == 19500
    assert report.net_cents == 280500


def test_eoy_report_folds_leaves_into_main_categories(transactions, forest):
    report = compute_eoy_report(transactions, forest, 2024)
    leaves = {c.name: c.total_cents for c in report.categories}
    assert leaves == {"Groceries": 10000, "Restaurants": 7000, "Coffee": 1500, "Mystery": 1000}
    mains = [(c.name, c.total_cents) for c in report.main_categories]
    assert mains == [("Food", 17000), ("Leisure", 1500), ("Uncategorized", 1000)]
    assert sum(c.percentage_of_total for c in report.main_categories) == pytest.approx(100.0)


def test_eoy_summary_mentions_totals(transactions, forest):
    text = eoy_summary_text(compute_eoy_report(transactions, forest, 2024))
    assert "$3,000.00" in text
    assert "surplus of $2,805.00" in text
    assert "Groceries" in text


def test_eoy_summary_for_empty_year(forest):
    text = eoy_summary_text(compute_eoy_report([], forest, 2030))
    assert "break-even" in text


def test_quarter_budget_scaling():
    assert quarter_budget_amount(_budget(1, "food", BudgetPeriod.monthly, 20000)) == 60000
    assert quarter_budget_amount(_budget(2, "food", BudgetPeriod.yearly, 120001)) == 30000
    assert quarter_budget_amount(_budget(3, "food", BudgetPeriod.fixed, 5000)) == 5000


def test_quarterly_report_kpis_and_budgets(transactions, forest):
    budgets = [
        _budget(1, "food", BudgetPeriod.monthly, 20000),
        _budget(2, "transport", BudgetPeriod.yearly, 120000),
    ]
    goals = [
        ProcessedGoal(
            id=1,
            name="Emergency",
            target_amount_cents=100000,
            saved_amount_cents=25000,
            target_date=None,
            linked_category_id=None,
            contribution_start_date=None,
            auto_tracking_active=False,
            is_complete=False,
            progress=25.0,
        )
    ]
    report = compute_quarterly_report(transactions, forest, budgets, goals, 2024, 1)

    assert (report.period.start, report.period.end) == (date(2024, 1, 1), date(2024, 3, 31))
    assert len(report.monthly) == 3
    assert report.total_income_cents == 300000
    assert report.total_expense_cents == 17000
    assert report.profit_margin == pytest.approx(283000 / 300000 * 100)
    assert report.expense_to_income_ratio == pytest.approx(17000 / 300000 * 100)

    food, transport = report.budgets
    assert (food.budgeted_cents, food.actual_cents) == (60000, 15000)
    assert food.variance_cents == 45000
    assert (transport.budgeted_cents, transport.actual_cents) == (30000, 0)
    assert report.goals[0].progress == 25.0


def test_quarterly_report_rejects_bad_quarter(forest):
    with pytest.raises(ValueError):
        compute_quarterly_report([], forest, [], [], 2024, 5)


def test_dashboard_analytics(transactions):
    analytics = dashboard_analytics(transactions, 10000, date(2024, 3, 15))
    assert analytics.total_income_cents == 300000
    assert analytics.total_expense_cents == 29499
    assert analytics.current_balance_cents == 10000 + 300000 - 29499
    assert analytics.current_month_expense_cents == 7000
    assert [(p.year, p.month) for p in analytics.overview] == [
        (2023, 10),
        (2023, 11),
        (2023, 12),
        (2024, 1),
        (2024, 2),
        (2024, 3),
    ]
    assert analytics.overview[2].expense_cents == 9999
