from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional, Sequence

from category_tree import (
    Forest,
    collect_subtree,
    find_by_id,
    path_label,
)
from models import Budget, BudgetPeriod, Goal, Transaction, TransactionType
from periods import month_end, month_start

CONTRIBUTION_EPOCH = date(1970, 1, 1)
UNKNOWN_CATEGORY = "Unknown category"


@dataclass(frozen=True)
class BudgetDetail:
    id: int
    name: str
    category_id: str
    category_name: str
    category_path: str
    period: BudgetPeriod
    window_start: date
    window_end: date
    amount_cents: int
    spent_cents: int
    remaining_cents: int
    progress: float
    is_favorite: bool = False


@dataclass(frozen=True)
class ProcessedGoal:
    id: int
    name: str
    target_amount_cents: int
    saved_amount_cents: int
    target_date: Optional[date]
    linked_category_id: Optional[str]
    contribution_start_date: Optional[date]
    auto_tracking_active: bool
    is_complete: bool
    progress: float
    contributions: list[Transaction] = field(default_factory=list)


def budget_window(budget: Budget, on: date) -> tuple[date, date]:
    if budget.period == BudgetPeriod.monthly:
        return month_start(on.year, on.month), month_end(on.year, on.month)
    if budget.period == BudgetPeriod.yearly:
        return date(on.year, 1, 1), date(on.year, 12, 31)
    return budget.start_date, budget.end_date or date.max


def progress_percent(spent: int, amount: int) -> float:
    return (spent / amount) * 100 if amount > 0 else 0.0


def subtree_expense_total(
    transactions: Iterable[Transaction],
    subtree_ids: set[str],
    start: date,
    end: date,
) -> int:
    # Transactions without a category_id must go through migration first.
    return sum(
        txn.amount_cents
        for txn in transactions
        if txn.type == TransactionType.expense
        and txn.category_id is not None
        and txn.category_id in subtree_ids
        and start <= txn.date <= end
    )


def budget_detail(
    budget: Budget,
    forest: Forest,
    transactions: Sequence[Transaction],
    on: date,
) -> BudgetDetail:
    start, end = budget_window(budget, on)
    node = find_by_id(budget.category_id, forest)
    if node is None:
        spent = 0
        category_name = UNKNOWN_CATEGORY
        category_path = UNKNOWN_CATEGORY
    else:
        ids = set(collect_subtree(node).ids)
        spent = subtree_expense_total(transactions, ids, start, end)
        category_name = node.name
        category_path = path_label(node.id, forest) or node.name
    return BudgetDetail(
        id=budget.id,
        name=budget.name,
        category_id=budget.category_id,
        category_name=category_name,
        category_path=category_path,
        period=budget.period,
        window_start=start,
        window_end=end,
        amount_cents=budget.amount_cents,
        spent_cents=spent,
        remaining_cents=budget.amount_cents - spent,
        progress=progress_percent(spent, budget.amount_cents),
        is_favorite=bool(budget.is_favorite),
    )


def budget_details(
    budgets: Iterable[Budget],
    forest: Forest,
    transactions: Sequence[Transaction],
    on: date,
) -> list[BudgetDetail]:
    return [budget_detail(b, forest, transactions, on) for b in budgets]


def matches_goal_category(
    txn: Transaction, subtree_ids: set[str], subtree_names: Sequence[str]
) -> bool:
    """Match by id first; name rules only apply to un-migrated transactions.

    Exact name match is tried before the path-suffix rule. Two subtrees that
    share a leaf name are not told apart by the name rules.
    """
    if txn.category_id is not None:
        return txn.category_id in subtree_ids
    category = txn.category or ""
    if category in subtree_names:
        return True
    for name in subtree_names:
        if category.endswith(f"> {name}"):
            return True
    return False


def process_goal(
    goal: Goal,
    forest: Forest,
    transactions: Sequence[Transaction],
) -> ProcessedGoal:
    node = find_by_id(goal.linked_category_id, forest)
    if node is None:
        saved = goal.saved_amount_cents
        return ProcessedGoal(
            id=goal.id,
            name=goal.name,
            target_amount_cents=goal.target_amount_cents,
            saved_amount_cents=saved,
            target_date=goal.target_date,
            linked_category_id=goal.linked_category_id,
            contribution_start_date=goal.contribution_start_date,
            auto_tracking_active=False,
            is_complete=saved >= goal.target_amount_cents,
            progress=progress_percent(saved, goal.target_amount_cents),
        )

    subtree = collect_subtree(node)
    ids = set(subtree.ids)
    since = goal.contribution_start_date or CONTRIBUTION_EPOCH
    contributions = sorted(
        (
            txn
            for txn in transactions
            if txn.type == TransactionType.expense
            and txn.date >= since
            and matches_goal_category(txn, ids, subtree.names)
        ),
        key=lambda t: (t.date, t.id or 0),
        reverse=True,
    )
    saved = sum(txn.amount_cents for txn in contributions)
    return ProcessedGoal(
        id=goal.id,
        name=goal.name,
        target_amount_cents=goal.target_amount_cents,
        saved_amount_cents=saved,
        target_date=goal.target_date,
        linked_category_id=goal.linked_category_id,
        contribution_start_date=goal.contribution_start_date,
        auto_tracking_active=True,
        is_complete=saved >= goal.target_amount_cents,
        progress=progress_percent(saved, goal.target_amount_cents),
        contributions=contributions,
    )
