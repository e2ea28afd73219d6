from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from aggregates import BudgetDetail, ProcessedGoal, budget_details, process_goal
from ai_client import ReceiptScan, TextServiceClient, historical_payload
from category_tree import (
    CategoryNode,
    Forest,
    add_child,
    add_root,
    build_forest,
    effective_type,
    find_by_id,
    find_by_path,
    flatten,
    id_path,
    path_label,
    remove_node,
    rename_node,
)
from formulas import (
    build_namespace,
    parse_expression,
    prettify_expression,
    sanitize_expression,
)
from migration import CategoryMigrator
from models import (
    Budget,
    Category,
    Formula,
    Goal,
    RecurringTransaction,
    Transaction,
    TransactionType,
    new_category_id,
)
from periods import Period
from recurrence import CatchUpResult, RecurringEngine, local_today, next_occurrence
from reports import (
    DashboardAnalytics,
    EOYReport,
    QuarterlyReport,
    compute_eoy_report,
    compute_quarterly_report,
    dashboard_analytics,
    eoy_summary_text,
)
from schemas import (
    BudgetIn,
    CategoryIn,
    FormulaIn,
    GoalIn,
    RecurringTransactionIn,
    TransactionIn,
    WidgetDataIn,
)
from widgets import WidgetFilters, WidgetResult, evaluate_formula_safely, widget_data

logger = logging.getLogger(__name__)


def get_current_user_id() -> int:
    return 1


def load_forest(session: Session, user_id: int) -> Forest:
    rows = session.scalars(select(Category).where(Category.user_id == user_id)).all()
    return build_forest(rows)


@dataclass
class UserData:
    """Snapshot of one user's records, loaded once per request or job run."""

    user_id: int
    forest: Forest
    transactions: list[Transaction] = field(default_factory=list)
    budgets: list[Budget] = field(default_factory=list)
    goals: list[Goal] = field(default_factory=list)

    @classmethod
    def load(cls, session: Session, user_id: int) -> UserData:
        return cls(
            user_id=user_id,
            forest=load_forest(session, user_id),
            transactions=list(
                session.scalars(
                    select(Transaction)
                    .where(Transaction.user_id == user_id)
                    .order_by(Transaction.date.desc(), Transaction.id.desc())
                ).all()
            ),
            budgets=list(
                session.scalars(
                    select(Budget).where(Budget.user_id == user_id).order_by(Budget.id)
                ).all()
            ),
            goals=list(
                session.scalars(
                    select(Goal).where(Goal.user_id == user_id).order_by(Goal.id)
                ).all()
            ),
        )

    def category_names(self) -> list[str]:
        return [item.node.name for item in flatten(self.forest)]


def _resolve_category(
    forest: Forest,
    category_id: Optional[str],
    category: str,
    txn_type: TransactionType,
) -> tuple[Optional[str], str]:
    """Return the ``(category_id, display path)`` pair to store on a row."""
    if category_id:
        node = find_by_id(category_id, forest)
        if node is None:
            raise ValueError("Category not found")
        if effective_type(category_id, forest) != txn_type:
            raise ValueError("Category type mismatch")
        return node.id, path_label(node.id, forest) or node.name
    category = category.strip()
    node = find_by_path(category, forest)
    if node is not None and effective_type(node.id, forest) == txn_type:
        return node.id, path_label(node.id, forest) or node.name
    return None, category


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def forest(self) -> Forest:
        return load_forest(self.session, self.user_id)

    def options(self) -> list[dict[str, object]]:
        forest = self.forest()
        return [
            {
                "id": item.node.id,
                "label": path_label(item.node.id, forest),
                "type": effective_type(item.node.id, forest),
                "depth": item.depth,
            }
            for item in flatten(forest)
        ]

    @staticmethod
    def _check_sibling_name(
        siblings: tuple[CategoryNode, ...], name: str, exclude_id: Optional[str] = None
    ) -> None:
        wanted = name.strip().lower()
        for sibling in siblings:
            if sibling.id != exclude_id and sibling.name.strip().lower() == wanted:
                raise ValueError("Category with this name already exists")

    def _sync(self, forest: Forest) -> None:
        rows = {
            row.id: row
            for row in self.session.scalars(
                select(Category).where(Category.user_id == self.user_id)
            ).all()
        }
        keep: set[str] = set()
        for item in flatten(forest):
            node = item.node
            keep.add(node.id)
            row_type = node.type if item.parent_id is None else None
            row = rows.get(node.id)
            if row is None:
                self.session.add(
                    Category(
                        id=node.id,
                        user_id=self.user_id,
                        parent_id=item.parent_id,
                        position=item.position,
                        name=node.name,
                        type=row_type,
                    )
                )
                continue
            if (row.parent_id, row.position, row.name, row.type) != (
                item.parent_id,
                item.position,
                node.name,
                row_type,
            ):
                row.parent_id = item.parent_id
                row.position = item.position
                row.name = node.name
                row.type = row_type
        removed = set(rows) - keep
        if removed:
            for row_id in removed:
                self.session.expunge(rows[row_id])
            self.session.execute(delete(Category).where(Category.id.in_(removed)))
        self.session.flush()

    def add_root(self, data: CategoryIn) -> CategoryNode:
        forest = self.forest()
        self._check_sibling_name(forest, data.name)
        node = CategoryNode(id=new_category_id(), name=data.name.strip(), type=data.type)
        self._sync(add_root(forest, node))
        self.session.commit()
        return node

    def add_subcategory(self, parent_id: str, name: str) -> CategoryNode:
        forest = self.forest()
        parent = find_by_id(parent_id, forest)
        path = id_path(parent_id, forest)
        if parent is None or path is None:
            raise ValueError("Category not found")
        self._check_sibling_name(parent.sub_categories, name)
        node = CategoryNode(id=new_category_id(), name=name.strip())
        self._sync(add_child(forest, path, node))
        self.session.commit()
        return node

    def rename(self, category_id: str, name: str) -> CategoryNode:
        forest = self.forest()
        path = id_path(category_id, forest)
        if path is None:
            raise ValueError("Category not found")
        parent = find_by_id(path[-2], forest) if len(path) > 1 else None
        siblings = parent.sub_categories if parent else forest
        self._check_sibling_name(siblings, name, exclude_id=category_id)
        renamed = rename_node(forest, path, name.strip())
        self._sync(renamed)
        updated = CategoryMigrator(self.session, self.user_id).refresh_display_names(
            category_id, renamed
        )
        self.session.commit()
        logger.info(
            f"category_renamed: category_id={category_id} display_names_updated={updated}"
        )
        return find_by_id(category_id, renamed)

    def delete(self, category_id: str) -> None:
        forest = self.forest()
        path = id_path(category_id, forest)
        if path is None:
            raise ValueError("Category not found")
        self._sync(remove_node(forest, path))
        self.session.commit()


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list(
        self,
        *,
        period: Optional[Period] = None,
        txn_type: Optional[TransactionType] = None,
        category_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if period is not None:
            stmt = stmt.where(Transaction.date.between(period.start, period.end))
        if txn_type is not None:
            stmt = stmt.where(Transaction.type == txn_type)
        if category_id is not None:
            stmt = stmt.where(Transaction.category_id == category_id)
        if limit:
            stmt = stmt.limit(limit)
        return self.session.scalars(stmt).all()

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise ValueError("Transaction not found")
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        forest = load_forest(self.session, self.user_id)
        category_id, category = _resolve_category(
            forest, data.category_id, data.category, data.type
        )
        txn = Transaction(
            user_id=self.user_id,
            date=data.date,
            description=data.description.strip(),
            type=data.type,
            amount_cents=data.amount_cents,
            category=category,
            category_id=category_id,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        forest = load_forest(self.session, self.user_id)
        category_id, category = _resolve_category(
            forest, data.category_id, data.category, data.type
        )
        txn.date = data.date
        txn.description = data.description.strip()
        txn.type = data.type
        txn.amount_cents = data.amount_cents
        txn.category = category
        txn.category_id = category_id
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()


class RecurringService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, recurring_id: int) -> RecurringTransaction:
        definition = self.session.get(RecurringTransaction, recurring_id)
        if not definition or definition.user_id != self.user_id:
            raise ValueError("Recurring transaction not found")
        return definition

    def list(self) -> list[RecurringTransaction]:
        stmt = (
            select(RecurringTransaction)
            .where(RecurringTransaction.user_id == self.user_id)
            .order_by(RecurringTransaction.start_date, RecurringTransaction.id)
        )
        return self.session.scalars(stmt).all()

    @staticmethod
    def next_occurrence(definition: RecurringTransaction) -> date:
        return next_occurrence(
            definition.start_date, definition.last_added_date, definition.frequency
        )

    def create(self, data: RecurringTransactionIn) -> RecurringTransaction:
        forest = load_forest(self.session, self.user_id)
        category_id, category = _resolve_category(
            forest, data.category_id, data.category, data.type
        )
        definition = RecurringTransaction(
            user_id=self.user_id,
            description=data.description.strip(),
            type=data.type,
            amount_cents=data.amount_cents,
            category=category,
            category_id=category_id,
            frequency=data.frequency,
            start_date=data.start_date,
        )
        self.session.add(definition)
        self.session.commit()
        self.session.refresh(definition)
        return definition

    def update(self, recurring_id: int, data: RecurringTransactionIn) -> RecurringTransaction:
        definition = self.get(recurring_id)
        forest = load_forest(self.session, self.user_id)
        category_id, category = _resolve_category(
            forest, data.category_id, data.category, data.type
        )
        definition.description = data.description.strip()
        definition.type = data.type
        definition.amount_cents = data.amount_cents
        definition.category = category
        definition.category_id = category_id
        definition.frequency = data.frequency
        definition.start_date = data.start_date
        if definition.last_added_date and definition.last_added_date < data.start_date:
            # Nothing at or after the new start has been materialized yet.
            definition.last_added_date = None
        self.session.commit()
        self.session.refresh(definition)
        return definition

    def delete(self, recurring_id: int) -> None:
        definition = self.get(recurring_id)
        self.session.delete(definition)
        self.session.commit()

    def catch_up_all(self, today: Optional[date] = None) -> CatchUpResult:
        engine = RecurringEngine(self.session, self.user_id)
        try:
            result = engine.run_all(today)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return result


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.is_favorite.desc(), Budget.name, Budget.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise ValueError("Budget not found")
        return budget

    def _check_category(self, category_id: str) -> None:
        forest = load_forest(self.session, self.user_id)
        if find_by_id(category_id, forest) is None:
            raise ValueError("Category not found")
        if effective_type(category_id, forest) != TransactionType.expense:
            raise ValueError("Budgets can only be set for expense categories")

    def create(self, data: BudgetIn) -> Budget:
        self._check_category(data.category_id)
        budget = Budget(user_id=self.user_id, **data.model_dump())
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, data: BudgetIn) -> Budget:
        budget = self.get(budget_id)
        if data.category_id != budget.category_id:
            self._check_category(data.category_id)
        for field_name, value in data.model_dump().items():
            setattr(budget, field_name, value)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()

    def details(self, on: Optional[date] = None) -> list[BudgetDetail]:
        data = UserData.load(self.session, self.user_id)
        return budget_details(data.budgets, data.forest, data.transactions, on or local_today())


class GoalService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, goal_id: int) -> Goal:
        goal = self.session.get(Goal, goal_id)
        if not goal or goal.user_id != self.user_id:
            raise ValueError("Goal not found")
        return goal

    def processed(self) -> list[ProcessedGoal]:
        data = UserData.load(self.session, self.user_id)
        return [process_goal(goal, data.forest, data.transactions) for goal in data.goals]

    def processed_one(self, goal_id: int) -> ProcessedGoal:
        goal = self.get(goal_id)
        data = UserData.load(self.session, self.user_id)
        return process_goal(goal, data.forest, data.transactions)

    def _check_link(self, linked_category_id: Optional[str]) -> None:
        if linked_category_id is None:
            return
        forest = load_forest(self.session, self.user_id)
        if find_by_id(linked_category_id, forest) is None:
            raise ValueError("Category not found")

    def create(self, data: GoalIn) -> Goal:
        self._check_link(data.linked_category_id)
        goal = Goal(user_id=self.user_id, **data.model_dump())
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def update(self, goal_id: int, data: GoalIn) -> Goal:
        goal = self.get(goal_id)
        if data.linked_category_id != goal.linked_category_id:
            self._check_link(data.linked_category_id)
        for field_name, value in data.model_dump().items():
            setattr(goal, field_name, value)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        self.session.delete(goal)
        self.session.commit()

    def contribute(self, goal_id: int, amount_cents: int) -> Goal:
        goal = self.get(goal_id)
        if goal.linked_category_id is not None:
            raise ValueError("Contributions to auto-tracked goals come from transactions")
        if amount_cents <= 0:
            raise ValueError("Contribution must be a positive amount")
        self.session.execute(
            update(Goal)
            .where(Goal.id == goal_id, Goal.user_id == self.user_id)
            .values(saved_amount_cents=Goal.saved_amount_cents + amount_cents)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        self.session.refresh(goal)
        return goal


class FormulaService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def aliases(self, data: Optional[UserData] = None) -> dict[str, str]:
        data = data or UserData.load(self.session, self.user_id)
        details = budget_details(data.budgets, data.forest, data.transactions, local_today())
        return build_namespace(
            data.transactions, details, data.category_names(), data.forest
        ).aliases

    def list(self) -> list[Formula]:
        stmt = (
            select(Formula)
            .where(Formula.user_id == self.user_id)
            .order_by(Formula.name, Formula.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, formula_id: int) -> Formula:
        formula = self.session.get(Formula, formula_id)
        if not formula or formula.user_id != self.user_id:
            raise ValueError("Formula not found")
        return formula

    def display(self, formula: Formula, aliases: Optional[dict[str, str]] = None) -> dict[str, object]:
        aliases = aliases if aliases is not None else self.aliases()
        return {
            "id": formula.id,
            "name": formula.name,
            "expression": prettify_expression(formula.expression, aliases),
            "sanitized_expression": formula.expression,
        }

    def _prepare(self, expression: str) -> str:
        sanitized = sanitize_expression(expression.strip(), self.aliases())
        parse_expression(sanitized)
        return sanitized

    def _check_name(self, name: str, exclude_id: Optional[int] = None) -> None:
        existing = self.session.scalar(
            select(Formula).where(Formula.user_id == self.user_id, Formula.name == name)
        )
        if existing and existing.id != exclude_id:
            raise ValueError("Formula with this name already exists")

    def create(self, data: FormulaIn) -> Formula:
        self._check_name(data.name.strip())
        formula = Formula(
            user_id=self.user_id,
            name=data.name.strip(),
            expression=self._prepare(data.expression),
        )
        self.session.add(formula)
        self.session.commit()
        self.session.refresh(formula)
        return formula

    def update(self, formula_id: int, data: FormulaIn) -> Formula:
        formula = self.get(formula_id)
        self._check_name(data.name.strip(), exclude_id=formula_id)
        formula.name = data.name.strip()
        formula.expression = self._prepare(data.expression)
        self.session.commit()
        self.session.refresh(formula)
        return formula

    def delete(self, formula_id: int) -> None:
        formula = self.get(formula_id)
        self.session.delete(formula)
        self.session.commit()

    def evaluate(
        self, formula_id: int, filters: Optional[WidgetFilters] = None
    ) -> tuple[Optional[float], Optional[str]]:
        formula = self.get(formula_id)
        filters = filters or WidgetFilters()
        data = UserData.load(self.session, self.user_id)
        transactions = [
            t
            for t in data.transactions
            if not (filters.start and filters.end) or filters.start <= t.date <= filters.end
        ]
        details = budget_details(
            data.budgets, data.forest, data.transactions, filters.end or local_today()
        )
        namespace = build_namespace(transactions, details, data.category_names(), data.forest)
        return evaluate_formula_safely(formula, namespace)


class WidgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def widget_data(self, payload: WidgetDataIn) -> WidgetResult:
        data = UserData.load(self.session, self.user_id)
        filters = WidgetFilters(
            start=payload.filters.start,
            end=payload.filters.end,
            categories=tuple(payload.filters.categories),
        )
        details = budget_details(
            data.budgets, data.forest, data.transactions, filters.end or local_today()
        )
        formulas = FormulaService(self.session, self.user_id).list()
        return widget_data(
            payload.widget,
            data.transactions,
            filters,
            details,
            formulas,
            data.category_names(),
            data.forest,
        )


class ReportService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def eoy(self, year: int) -> EOYReport:
        data = UserData.load(self.session, self.user_id)
        return compute_eoy_report(data.transactions, data.forest, year)

    def eoy_summary(self, year: int) -> str:
        return eoy_summary_text(self.eoy(year))

    def quarterly(self, year: int, quarter: int) -> QuarterlyReport:
        data = UserData.load(self.session, self.user_id)
        goals = [process_goal(g, data.forest, data.transactions) for g in data.goals]
        return compute_quarterly_report(
            data.transactions, data.forest, data.budgets, goals, year, quarter
        )

    def dashboard(
        self, starting_balance_cents: int = 0, today: Optional[date] = None
    ) -> DashboardAnalytics:
        data = UserData.load(self.session, self.user_id)
        return dashboard_analytics(
            data.transactions, starting_balance_cents, today or local_today()
        )


class InsightService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        client: Optional[TextServiceClient] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.client = client or TextServiceClient()

    def projection(self) -> str:
        transactions = TransactionService(self.session, self.user_id).list()
        return self.client.projection(historical_payload(transactions))

    def scan_receipt(self, receipt_image: str) -> ReceiptScan:
        return self.client.scan_receipt(receipt_image)


class MaintenanceService:
    """Recurring catch-up followed by the category-id backfill."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def migrate_categories(self, limit: Optional[int] = None) -> int:
        forest = load_forest(self.session, self.user_id)
        if not forest:
            return 0
        try:
            migrated = CategoryMigrator(self.session, self.user_id).backfill_category_ids(
                forest, limit
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return migrated

    def run(self, today: Optional[date] = None) -> dict[str, object]:
        result = RecurringService(self.session, self.user_id).catch_up_all(today)
        migrated = self.migrate_categories()
        return {"posted": result.posted, "failed": result.failed, "migrated": migrated}


def user_ids_with_data(session: Session) -> list[int]:
    ids: set[int] = set()
    for model in (RecurringTransaction, Transaction):
        ids.update(session.scalars(select(model.user_id).distinct()).all())
    return sorted(ids)
