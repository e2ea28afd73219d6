from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional, Sequence

from aggregates import ProcessedGoal, progress_percent, subtree_expense_total
from category_tree import (
    CategoryNode,
    Forest,
    collect_subtree,
    find_by_id,
    find_by_path,
    find_first_by_name,
    root_of,
    split_path,
)
from models import Budget, BudgetPeriod, Transaction, TransactionType
from periods import Period, quarter_period, year_period

MONTH_LABELS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)
UNCATEGORIZED = "Uncategorized"


@dataclass
class MonthlyPoint:
    year: int
    month: int
    label: str
    income_cents: int = 0
    expense_cents: int = 0

    @property
    def net_cents(self) -> int:
        return self.income_cents - self.expense_cents


@dataclass(frozen=True)
class CategorySummary:
    name: str
    total_cents: int
    percentage_of_total: float


@dataclass
class EOYReport:
    year: int
    total_income_cents: int
    total_expense_cents: int
    monthly: list[MonthlyPoint]
    categories: list[CategorySummary]
    main_categories: list[CategorySummary]

    @property
    def net_cents(self) -> int:
        return self.total_income_cents - self.total_expense_cents


@dataclass(frozen=True)
class BudgetComparison:
    budget_id: int
    name: str
    category_name: str
    period: BudgetPeriod
    budgeted_cents: int
    actual_cents: int
    variance_cents: int
    progress: float


@dataclass(frozen=True)
class GoalStatus:
    goal_id: int
    name: str
    target_amount_cents: int
    saved_amount_cents: int
    progress: float


@dataclass
class QuarterlyReport:
    year: int
    quarter: int
    period: Period
    total_income_cents: int
    total_expense_cents: int
    profit_margin: float
    expense_to_income_ratio: float
    monthly: list[MonthlyPoint]
    categories: list[CategorySummary]
    main_categories: list[CategorySummary]
    budgets: list[BudgetComparison] = field(default_factory=list)
    goals: list[GoalStatus] = field(default_factory=list)

    @property
    def net_cents(self) -> int:
        return self.total_income_cents - self.total_expense_cents


def in_period(transactions: Iterable[Transaction], period: Period) -> list[Transaction]:
    return [t for t in transactions if period.contains(t.date)]


def resolve_category(txn: Transaction, forest: Forest) -> Optional[CategoryNode]:
    node = find_by_id(txn.category_id, forest)
    if node is None and txn.category:
        node = find_by_path(txn.category, forest)
        if node is None:
            node = find_first_by_name(split_path(txn.category)[-1], forest)
    return node


def monthly_points(transactions: Iterable[Transaction], period: Period) -> list[MonthlyPoint]:
    points: dict[tuple[int, int], MonthlyPoint] = {}
    year, month = period.start.year, period.start.month
    while (year, month) <= (period.end.year, period.end.month):
        points[(year, month)] = MonthlyPoint(year, month, MONTH_LABELS[month - 1])
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)

    for txn in transactions:
        point = points.get((txn.date.year, txn.date.month))
        if point is None:
            continue
        if txn.type == TransactionType.income:
            point.income_cents += txn.amount_cents
        else:
            point.expense_cents += txn.amount_cents
    return list(points.values())


def _summaries(totals: dict[str, int]) -> list[CategorySummary]:
    grand_total = sum(totals.values())
    rows = [
        CategorySummary(
            name=name,
            total_cents=total,
            percentage_of_total=(total / grand_total * 100) if grand_total > 0 else 0.0,
        )
        for name, total in totals.items()
        if total > 0
    ]
    rows.sort(key=lambda r: (-r.total_cents, r.name))
    return rows


def category_summaries(
    transactions: Iterable[Transaction], forest: Forest
) -> tuple[list[CategorySummary], list[CategorySummary]]:
    """Expense totals per leaf category and per main (root) category."""
    leaf_totals: dict[str, int] = defaultdict(int)
    main_totals: dict[str, int] = defaultdict(int)
    for txn in transactions:
        if txn.type != TransactionType.expense:
            continue
        node = resolve_category(txn, forest)
        if node is not None:
            leaf_totals[node.name] += txn.amount_cents
            root = root_of(node.id, forest)
            main_totals[root.name if root else UNCATEGORIZED] += txn.amount_cents
        else:
            leaf_totals[txn.category or UNCATEGORIZED] += txn.amount_cents
            main_totals[UNCATEGORIZED] += txn.amount_cents
    return _summaries(leaf_totals), _summaries(main_totals)


def compute_eoy_report(
    transactions: Sequence[Transaction], forest: Forest, year: int
) -> EOYReport:
    period = year_period(year)
    year_txns = in_period(transactions, period)
    monthly = monthly_points(year_txns, period)
    categories, main_categories = category_summaries(year_txns, forest)
    return EOYReport(
        year=year,
        total_income_cents=sum(p.income_cents for p in monthly),
        total_expense_cents=sum(p.expense_cents for p in monthly),
        monthly=monthly,
        categories=categories,
        main_categories=main_categories,
    )


def quarter_budget_amount(budget: Budget) -> int:
    if budget.period == BudgetPeriod.monthly:
        return budget.amount_cents * 3
    if budget.period == BudgetPeriod.yearly:
        return round(budget.amount_cents / 4)
    return budget.amount_cents


def compute_quarterly_report(
    transactions: Sequence[Transaction],
    forest: Forest,
    budgets: Iterable[Budget],
    goals: Iterable[ProcessedGoal],
    year: int,
    quarter: int,
) -> QuarterlyReport:
    period = quarter_period(year, quarter)
    quarter_txns = in_period(transactions, period)
    monthly = monthly_points(quarter_txns, period)
    categories, main_categories = category_summaries(quarter_txns, forest)
    income = sum(p.income_cents for p in monthly)
    expenses = sum(p.expense_cents for p in monthly)

    comparisons: list[BudgetComparison] = []
    for budget in budgets:
        node = find_by_id(budget.category_id, forest)
        actual = 0
        if node is not None:
            ids = set(collect_subtree(node).ids)
            actual = subtree_expense_total(quarter_txns, ids, period.start, period.end)
        budgeted = quarter_budget_amount(budget)
        comparisons.append(
            BudgetComparison(
                budget_id=budget.id,
                name=budget.name,
                category_name=node.name if node else "Unknown category",
                period=budget.period,
                budgeted_cents=budgeted,
                actual_cents=actual,
                variance_cents=budgeted - actual,
                progress=progress_percent(actual, budgeted),
            )
        )

    goal_rows = [
        GoalStatus(
            goal_id=g.id,
            name=g.name,
            target_amount_cents=g.target_amount_cents,
            saved_amount_cents=g.saved_amount_cents,
            progress=progress_percent(g.saved_amount_cents, g.target_amount_cents),
        )
        for g in goals
    ]

    return QuarterlyReport(
        year=year,
        quarter=quarter,
        period=period,
        total_income_cents=income,
        total_expense_cents=expenses,
        profit_margin=((income - expenses) / income * 100) if income > 0 else 0.0,
        expense_to_income_ratio=(expenses / income * 100) if income > 0 else 0.0,
        monthly=monthly,
        categories=categories,
        main_categories=main_categories,
        budgets=comparisons,
        goals=goal_rows,
    )


def _money(cents: int) -> str:
    return f"${cents / 100:,.2f}"


def eoy_summary_text(report: EOYReport) -> str:
    net = report.net_cents
    top = "; ".join(
        f"{c.name} at {_money(c.total_cents)} ({c.percentage_of_total:.1f}% of expenses)"
        for c in report.categories[:3]
    )
    if net > 0:
        direction = "ended the year with a surplus"
        tone = (
            "Overall, this reflects prudent stewardship and a generally healthy "
            "financial posture."
        )
    elif net < 0:
        direction = "closed the year with a shortfall"
        tone = (
            "Overall, this suggests a season of elevated spending or constrained "
            "income that may warrant recalibration in the coming year."
        )
    else:
        direction = "finished roughly at break-even"
        tone = (
            "Overall, this indicates a balanced year, though there may still be "
            "room to refine certain spending patterns."
        )
    return "\n\n".join(
        [
            f"During {report.year}, total recorded income amounted to "
            f"{_money(report.total_income_cents)}, while total expenses reached "
            f"{_money(report.total_expense_cents)}. You {direction} of {_money(abs(net))}.",
            "The primary spending concentrations were in the following areas: "
            f"{top or 'no dominant categories emerged from the data'}. These "
            "categories shaped much of the financial story for the year.",
            tone,
        ]
    )


@dataclass
class DashboardAnalytics:
    total_income_cents: int
    total_expense_cents: int
    current_balance_cents: int
    current_month_income_cents: int
    current_month_expense_cents: int
    savings_rate: float
    overview: list[MonthlyPoint]


def dashboard_analytics(
    transactions: Sequence[Transaction],
    starting_balance_cents: int,
    today: date,
    *,
    months: int = 6,
) -> DashboardAnalytics:
    income = sum(t.amount_cents for t in transactions if t.type == TransactionType.income)
    expenses = sum(t.amount_cents for t in transactions if t.type == TransactionType.expense)
    this_month = [
        t for t in transactions if (t.date.year, t.date.month) == (today.year, today.month)
    ]

    total_months = today.year * 12 + today.month - 1 - (months - 1)
    start = date(total_months // 12, total_months % 12 + 1, 1)
    overview_period = Period("overview", start, today)
    return DashboardAnalytics(
        total_income_cents=income,
        total_expense_cents=expenses,
        current_balance_cents=starting_balance_cents + income - expenses,
        current_month_income_cents=sum(
            t.amount_cents for t in this_month if t.type == TransactionType.income
        ),
        current_month_expense_cents=sum(
            t.amount_cents for t in this_month if t.type == TransactionType.expense
        ),
        savings_rate=((income - expenses) / income * 100) if income > 0 else 0.0,
        overview=monthly_points(in_period(transactions, overview_period), overview_period),
    )
