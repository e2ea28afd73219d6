import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional, Sequence

from category_tree import Forest
from formulas import (
    FormulaError,
    FormulaNamespace,
    build_namespace,
    category_name,
    cents_to_units,
    evaluate_expression,
    sanitize_name,
)
from models import Formula, Transaction
from reports import MONTH_LABELS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WidgetFilters:
    start: Optional[date] = None
    end: Optional[date] = None
    categories: tuple[str, ...] = ()


@dataclass
class WidgetResult:
    kpis: dict[str, float]
    data: Optional[list[dict[str, Any]]]
    data_keys: list[str] = field(default_factory=list)
    original_data_keys: list[str] = field(default_factory=list)
    error: Optional[str] = None


def _labels(txn: Transaction, forest: Forest) -> tuple[str, str]:
    return category_name(txn, forest), txn.category


def filter_transactions(
    transactions: Sequence[Transaction],
    filters: WidgetFilters,
    widget_categories: Sequence[str] = (),
    forest: Forest = (),
) -> list[Transaction]:
    selected: list[Transaction] = []
    for txn in transactions:
        if filters.start and filters.end and not (filters.start <= txn.date <= filters.end):
            continue
        labels = _labels(txn, forest)
        if filters.categories and not any(label in filters.categories for label in labels):
            continue
        if widget_categories and not any(label in widget_categories for label in labels):
            continue
        selected.append(txn)
    return selected


def monthly_series(
    transactions: Sequence[Transaction], data_keys: Sequence[str], forest: Forest = ()
) -> list[dict[str, Any]]:
    """Month-keyed totals for ``income``/``expense`` or category names."""
    mapping = [(key, sanitize_name(key)) for key in data_keys]
    months: dict[str, dict[str, Any]] = {}
    for txn in transactions:
        month_key = f"{txn.date.year:04d}-{txn.date.month:02d}"
        row = months.get(month_key)
        if row is None:
            row = {
                "month_key": month_key,
                "month": f"{MONTH_LABELS[txn.date.month - 1]} {txn.date.year}",
            }
            row.update({safe: 0.0 for _raw, safe in mapping})
            months[month_key] = row
        labels = _labels(txn, forest)
        for raw, safe in mapping:
            if raw == txn.type.value or raw in labels:
                row[safe] += cents_to_units(txn.amount_cents)
    return [months[key] for key in sorted(months)]


def evaluate_formula_safely(
    formula: Formula, namespace: FormulaNamespace
) -> tuple[Optional[float], Optional[str]]:
    try:
        return evaluate_expression(formula.expression, namespace.values), None
    except FormulaError as exc:
        logger.error(f"formula_eval_failed: formula_id={formula.id} error={exc}")
        return None, str(exc)


def widget_data(
    widget: Any,
    transactions: Sequence[Transaction],
    filters: WidgetFilters,
    budget_details: Sequence[object],
    formulas: Sequence[Formula],
    category_names: Sequence[str] = (),
    forest: Forest = (),
) -> WidgetResult:
    selected = filter_transactions(transactions, filters, widget.categories, forest)
    namespace = build_namespace(selected, budget_details, category_names, forest)
    kpis = dict(namespace.values)

    if widget.type == "metric":
        formula = next((f for f in formulas if f.id == widget.formula_id), None)
        if formula is not None and formula.expression:
            value, error = evaluate_formula_safely(formula, namespace)
            return WidgetResult(
                kpis=kpis,
                data=[{"name": formula.name, "value": value, "formula": formula.expression}],
                error=error,
            )
        if widget.main_data_key and widget.main_data_key in kpis:
            return WidgetResult(
                kpis=kpis,
                data=[{"name": widget.title, "value": kpis[widget.main_data_key]}],
            )
        return WidgetResult(kpis=kpis, data=None)

    keys = list(widget.data_categories) or [
        k for k in (widget.main_data_key, widget.comparison_key) if k
    ]
    return WidgetResult(
        kpis=kpis,
        data=monthly_series(selected, keys, forest),
        data_keys=[sanitize_name(k) for k in keys],
        original_data_keys=keys,
    )
