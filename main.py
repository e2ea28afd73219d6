import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from sqlalchemy.orm import Session

from database import PersistenceUnavailable, SessionLocal, check_connection
from formulas import FormulaError
from models import RecurringTransaction, TransactionType
from periods import Period, quarter_period, resolve_period, year_period
from scheduler import SchedulerManager
from schemas import (
    BudgetDetailOut,
    BudgetIn,
    BudgetOut,
    CatchUpOut,
    CategoryIn,
    CategoryOptionOut,
    CategoryOut,
    CategoryRenameIn,
    ContributionIn,
    DashboardOut,
    EOYReportOut,
    EOYSummaryOut,
    FormulaEvaluationOut,
    FormulaIn,
    FormulaOut,
    GoalIn,
    MigrationOut,
    ProcessedGoalOut,
    ProjectionOut,
    QuarterlyReportOut,
    ReceiptScanIn,
    ReceiptScanOut,
    RecurringTransactionIn,
    RecurringTransactionOut,
    SubCategoryIn,
    TransactionIn,
    TransactionOut,
    WidgetDataIn,
    WidgetDataOut,
    WidgetFiltersIn,
)
from services import (
    BudgetService,
    CategoryService,
    FormulaService,
    GoalService,
    InsightService,
    MaintenanceService,
    RecurringService,
    ReportService,
    TransactionService,
    WidgetService,
)
from widgets import WidgetFilters

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    try:
        check_connection()
    except PersistenceUnavailable:
        logger.exception("startup_failed: persistence unavailable")
        raise
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _status_for(exc: ValueError) -> int:
    return 404 if "not found" in str(exc).lower() else 400


def period_from_request(request: Request) -> Optional[Period]:
    period_slug = request.query_params.get("period")
    if not period_slug:
        return None
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def recurring_out(definition: RecurringTransaction) -> RecurringTransactionOut:
    out = RecurringTransactionOut.model_validate(definition)
    out.next_occurrence = RecurringService.next_occurrence(definition)
    return out


@app.get("/healthz")
def healthz():
    try:
        check_connection()
    except PersistenceUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"status": "ok"}


@app.get("/api/categories", response_model=list[CategoryOut])
def api_categories(db: Session = Depends(get_db)):
    return [CategoryOut.model_validate(node) for node in CategoryService(db).forest()]


@app.get("/api/categories/options", response_model=list[CategoryOptionOut])
def api_category_options(db: Session = Depends(get_db)):
    return CategoryService(db).options()


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def api_create_category(payload: CategoryIn, db: Session = Depends(get_db)):
    try:
        node = CategoryService(db).add_root(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return CategoryOut.model_validate(node)


@app.post(
    "/api/categories/{category_id}/subcategories",
    response_model=CategoryOut,
    status_code=201,
)
def api_create_subcategory(
    category_id: str, payload: SubCategoryIn, db: Session = Depends(get_db)
):
    try:
        node = CategoryService(db).add_subcategory(category_id, payload.name)
    except ValueError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc
    return CategoryOut.model_validate(node)


@app.patch("/api/categories/{category_id}", response_model=CategoryOut)
def api_rename_category(
    category_id: str, payload: CategoryRenameIn, db: Session = Depends(get_db)
):
    try:
        node = CategoryService(db).rename(category_id, payload.name)
    except ValueError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc
    return CategoryOut.model_validate(node)


@app.delete("/api/categories/{category_id}", status_code=204)
def api_delete_category(category_id: str, db: Session = Depends(get_db)):
    try:
        CategoryService(db).delete(category_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/transactions", response_model=list[TransactionOut])
def api_transactions(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    type_param = request.query_params.get("type")
    txn_type = None
    if type_param:
        try:
            txn_type = TransactionType(type_param)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid type") from exc
    limit = int(request.query_params.get("limit", "0") or 0)
    return TransactionService(db).list(
        period=period,
        txn_type=txn_type,
        category_id=request.query_params.get("category_id") or None,
        limit=min(max(limit, 0), 1000) or None,
    )


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def api_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        return TransactionService(db).get(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def api_create_transaction(payload: TransactionIn, db: Session = Depends(get_db)):
    try:
        return TransactionService(db).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def api_update_transaction(
    transaction_id: int, payload: TransactionIn, db: Session = Depends(get_db)
):
    try:
        return TransactionService(db).update(transaction_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/recurring", response_model=list[RecurringTransactionOut])
def api_recurring(db: Session = Depends(get_db)):
    return [recurring_out(d) for d in RecurringService(db).list()]


@app.post("/api/recurring/run", response_model=CatchUpOut)
def api_recurring_run(db: Session = Depends(get_db)):
    result = RecurringService(db).catch_up_all()
    return CatchUpOut(posted=result.posted, failed=result.failed)


@app.get("/api/recurring/{recurring_id}", response_model=RecurringTransactionOut)
def api_recurring_item(recurring_id: int, db: Session = Depends(get_db)):
    try:
        definition = RecurringService(db).get(recurring_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return recurring_out(definition)


@app.post("/api/recurring", response_model=RecurringTransactionOut, status_code=201)
def api_create_recurring(payload: RecurringTransactionIn, db: Session = Depends(get_db)):
    try:
        definition = RecurringService(db).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc
    return recurring_out(definition)


@app.put("/api/recurring/{recurring_id}", response_model=RecurringTransactionOut)
def api_update_recurring(
    recurring_id: int, payload: RecurringTransactionIn, db: Session = Depends(get_db)
):
    try:
        definition = RecurringService(db).update(recurring_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc
    return recurring_out(definition)


@app.delete("/api/recurring/{recurring_id}", status_code=204)
def api_delete_recurring(recurring_id: int, db: Session = Depends(get_db)):
    try:
        RecurringService(db).delete(recurring_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/budgets", response_model=list[BudgetOut])
def api_budgets(db: Session = Depends(get_db)):
    return BudgetService(db).list()


@app.get("/api/budgets/details", response_model=list[BudgetDetailOut])
def api_budget_details(on: Optional[date] = None, db: Session = Depends(get_db)):
    return [BudgetDetailOut.model_validate(d) for d in BudgetService(db).details(on)]


@app.get("/api/budgets/{budget_id}", response_model=BudgetOut)
def api_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        return BudgetService(db).get(budget_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def api_create_budget(payload: BudgetIn, db: Session = Depends(get_db)):
    try:
        return BudgetService(db).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc


@app.put("/api/budgets/{budget_id}", response_model=BudgetOut)
def api_update_budget(budget_id: int, payload: BudgetIn, db: Session = Depends(get_db)):
    try:
        return BudgetService(db).update(budget_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc


@app.delete("/api/budgets/{budget_id}", status_code=204)
def api_delete_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        BudgetService(db).delete(budget_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/goals", response_model=list[ProcessedGoalOut])
def api_goals(db: Session = Depends(get_db)):
    return [ProcessedGoalOut.model_validate(g) for g in GoalService(db).processed()]


@app.get("/api/goals/{goal_id}", response_model=ProcessedGoalOut)
def api_goal(goal_id: int, db: Session = Depends(get_db)):
    try:
        processed = GoalService(db).processed_one(goal_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ProcessedGoalOut.model_validate(processed)


@app.post("/api/goals", response_model=ProcessedGoalOut, status_code=201)
def api_create_goal(payload: GoalIn, db: Session = Depends(get_db)):
    service = GoalService(db)
    try:
        goal = service.create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc
    return ProcessedGoalOut.model_validate(service.processed_one(goal.id))


@app.put("/api/goals/{goal_id}", response_model=ProcessedGoalOut)
def api_update_goal(goal_id: int, payload: GoalIn, db: Session = Depends(get_db)):
    service = GoalService(db)
    try:
        service.update(goal_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc
    return ProcessedGoalOut.model_validate(service.processed_one(goal_id))


@app.delete("/api/goals/{goal_id}", status_code=204)
def api_delete_goal(goal_id: int, db: Session = Depends(get_db)):
    try:
        GoalService(db).delete(goal_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.post("/api/goals/{goal_id}/contributions", response_model=ProcessedGoalOut)
def api_contribute_goal(
    goal_id: int, payload: ContributionIn, db: Session = Depends(get_db)
):
    service = GoalService(db)
    try:
        service.contribute(goal_id, payload.amount_cents)
    except ValueError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc
    return ProcessedGoalOut.model_validate(service.processed_one(goal_id))


@app.get("/api/formulas", response_model=list[FormulaOut])
def api_formulas(db: Session = Depends(get_db)):
    service = FormulaService(db)
    aliases = service.aliases()
    return [service.display(f, aliases) for f in service.list()]


@app.get("/api/formulas/{formula_id}", response_model=FormulaOut)
def api_formula(formula_id: int, db: Session = Depends(get_db)):
    service = FormulaService(db)
    try:
        formula = service.get(formula_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return service.display(formula)


@app.post("/api/formulas", response_model=FormulaOut, status_code=201)
def api_create_formula(payload: FormulaIn, db: Session = Depends(get_db)):
    service = FormulaService(db)
    try:
        formula = service.create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return service.display(formula)


@app.put("/api/formulas/{formula_id}", response_model=FormulaOut)
def api_update_formula(formula_id: int, payload: FormulaIn, db: Session = Depends(get_db)):
    service = FormulaService(db)
    try:
        formula = service.update(formula_id, payload)
    except FormulaError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc
    return service.display(formula)


@app.delete("/api/formulas/{formula_id}", status_code=204)
def api_delete_formula(formula_id: int, db: Session = Depends(get_db)):
    try:
        FormulaService(db).delete(formula_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.post("/api/formulas/{formula_id}/evaluate", response_model=FormulaEvaluationOut)
def api_evaluate_formula(
    formula_id: int,
    filters: Optional[WidgetFiltersIn] = None,
    db: Session = Depends(get_db),
):
    filters = filters or WidgetFiltersIn()
    try:
        value, error = FormulaService(db).evaluate(
            formula_id,
            WidgetFilters(
                start=filters.start,
                end=filters.end,
                categories=tuple(filters.categories),
            ),
        )
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return FormulaEvaluationOut(formula_id=formula_id, value=value, error=error)


@app.post("/api/widgets/data", response_model=WidgetDataOut)
def api_widget_data(payload: WidgetDataIn, db: Session = Depends(get_db)):
    return WidgetDataOut.model_validate(WidgetService(db).widget_data(payload))


def _check_year(year: int) -> None:
    try:
        year_period(year)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/reports/eoy/{year}", response_model=EOYReportOut)
def api_eoy_report(year: int, db: Session = Depends(get_db)):
    _check_year(year)
    return EOYReportOut.model_validate(ReportService(db).eoy(year))


@app.get("/api/reports/eoy/{year}/summary", response_model=EOYSummaryOut)
def api_eoy_summary(year: int, db: Session = Depends(get_db)):
    _check_year(year)
    return EOYSummaryOut(year=year, summary=ReportService(db).eoy_summary(year))


@app.get("/api/reports/quarterly/{year}/{quarter}", response_model=QuarterlyReportOut)
def api_quarterly_report(year: int, quarter: int, db: Session = Depends(get_db)):
    try:
        quarter_period(year, quarter)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return QuarterlyReportOut.model_validate(ReportService(db).quarterly(year, quarter))


@app.get("/api/dashboard", response_model=DashboardOut)
def api_dashboard(
    starting_balance_cents: int = 0,
    today: Optional[date] = None,
    db: Session = Depends(get_db),
):
    return DashboardOut.model_validate(
        ReportService(db).dashboard(starting_balance_cents, today)
    )


@app.post("/api/maintenance/migrate-categories", response_model=MigrationOut)
def api_migrate_categories(limit: Optional[int] = None, db: Session = Depends(get_db)):
    return MigrationOut(migrated=MaintenanceService(db).migrate_categories(limit))


@app.post("/api/ai/projection", response_model=ProjectionOut)
def api_projection(db: Session = Depends(get_db)):
    try:
        projection = InsightService(db).projection()
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return ProjectionOut(projection=projection)


@app.post("/api/ai/scan-receipt", response_model=ReceiptScanOut)
def api_scan_receipt(payload: ReceiptScanIn, db: Session = Depends(get_db)):
    try:
        scan = InsightService(db).scan_receipt(payload.receipt_image)
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return ReceiptScanOut.model_validate(scan)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
