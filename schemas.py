from __future__ import annotations

from datetime import date
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import BudgetPeriod, Frequency, TransactionType


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType


class SubCategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CategoryRenameIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    type: Optional[TransactionType] = None
    sub_categories: list[CategoryOut] = Field(default_factory=list)


class CategoryOptionOut(BaseModel):
    id: str
    label: str
    type: TransactionType
    depth: int


class TransactionIn(BaseModel):
    date: date
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., ge=0)
    type: TransactionType
    category: str = Field(default="", max_length=255)
    category_id: Optional[str] = Field(default=None, max_length=64)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    date: date
    description: str
    amount_cents: int
    type: TransactionType
    category: str
    category_id: Optional[str] = None
    origin_recurring_id: Optional[int] = None


class RecurringTransactionIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., ge=0)
    type: TransactionType
    category: str = Field(default="", max_length=255)
    category_id: Optional[str] = Field(default=None, max_length=64)
    frequency: Frequency
    start_date: date


class RecurringTransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    description: str
    amount_cents: int
    type: TransactionType
    category: str
    category_id: Optional[str] = None
    frequency: Frequency
    start_date: date
    last_added_date: Optional[date] = None
    next_occurrence: Optional[date] = None


class CatchUpOut(BaseModel):
    posted: int
    failed: list[int]


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    category_id: str = Field(..., min_length=1, max_length=64)
    amount_cents: int = Field(..., gt=0)
    period: BudgetPeriod = BudgetPeriod.monthly
    start_date: date
    end_date: Optional[date] = None
    is_favorite: bool = False

    @model_validator(mode="after")
    def _check_dates(self) -> BudgetIn:
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        return self


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    category_id: str
    amount_cents: int
    period: BudgetPeriod
    start_date: date
    end_date: Optional[date] = None
    is_favorite: bool


class BudgetDetailOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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
    is_favorite: bool


class GoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    target_amount_cents: int = Field(..., gt=0)
    saved_amount_cents: int = Field(default=0, ge=0)
    target_date: Optional[date] = None
    linked_category_id: Optional[str] = Field(default=None, max_length=64)
    contribution_start_date: Optional[date] = None


class ContributionIn(BaseModel):
    amount_cents: int


class ProcessedGoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    target_amount_cents: int
    saved_amount_cents: int
    target_date: Optional[date] = None
    linked_category_id: Optional[str] = None
    contribution_start_date: Optional[date] = None
    auto_tracking_active: bool
    is_complete: bool
    progress: float
    contributions: list[TransactionOut] = Field(default_factory=list)


class FormulaIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    expression: str = Field(..., min_length=1, max_length=2000)


class FormulaOut(BaseModel):
    id: int
    name: str
    expression: str
    sanitized_expression: str


class FormulaEvaluationOut(BaseModel):
    formula_id: int
    value: Optional[float] = None
    error: Optional[str] = None


class WidgetFiltersIn(BaseModel):
    start: Optional[date] = None
    end: Optional[date] = None
    categories: list[str] = Field(default_factory=list)


class WidgetSpecIn(BaseModel):
    title: str = ""
    type: Literal["metric", "bar", "line", "area", "pie", "scatter", "composed"]
    main_data_key: Optional[str] = None
    comparison_key: Optional[str] = None
    data_categories: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    formula_id: Optional[int] = None


class WidgetDataIn(BaseModel):
    widget: WidgetSpecIn
    filters: WidgetFiltersIn = Field(default_factory=WidgetFiltersIn)


class WidgetDataOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    kpis: dict[str, float]
    data: Optional[list[dict[str, Any]]] = None
    data_keys: list[str] = Field(default_factory=list)
    original_data_keys: list[str] = Field(default_factory=list)
    error: Optional[str] = None


class MonthlyPointOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    year: int
    month: int
    label: str
    income_cents: int
    expense_cents: int
    net_cents: int


class CategorySummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    total_cents: int
    percentage_of_total: float


class EOYReportOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    year: int
    total_income_cents: int
    total_expense_cents: int
    net_cents: int
    monthly: list[MonthlyPointOut]
    categories: list[CategorySummaryOut]
    main_categories: list[CategorySummaryOut]


class EOYSummaryOut(BaseModel):
    year: int
    summary: str


class BudgetComparisonOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    budget_id: int
    name: str
    category_name: str
    period: BudgetPeriod
    budgeted_cents: int
    actual_cents: int
    variance_cents: int
    progress: float


class GoalStatusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    goal_id: int
    name: str
    target_amount_cents: int
    saved_amount_cents: int
    progress: float


class QuarterlyReportOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    year: int
    quarter: int
    total_income_cents: int
    total_expense_cents: int
    net_cents: int
    profit_margin: float
    expense_to_income_ratio: float
    monthly: list[MonthlyPointOut]
    categories: list[CategorySummaryOut]
    main_categories: list[CategorySummaryOut]
    budgets: list[BudgetComparisonOut]
    goals: list[GoalStatusOut]


class DashboardOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_income_cents: int
    total_expense_cents: int
    current_balance_cents: int
    current_month_income_cents: int
    current_month_expense_cents: int
    savings_rate: float
    overview: list[MonthlyPointOut]


class MigrationOut(BaseModel):
    migrated: int


class ProjectionOut(BaseModel):
    projection: str


class ReceiptScanIn(BaseModel):
    receipt_image: str = Field(..., min_length=1)


class ReceiptScanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    date: date
    amount_cents: int
    description: str
