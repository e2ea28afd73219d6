from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from main import app, get_db


@pytest.fixture()
def client(engine):
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    # Not entered as a context manager, so the scheduler never starts.
    yield TestClient(app)
    app.dependency_overrides.clear()


def _make_tree(client):
    food = client.post("/api/categories", json={"name": "Food", "type": "expense"}).json()
    groceries = client.post(
        f"/api/categories/{food['id']}/subcategories", json={"name": "Groceries"}
    ).json()
    return food, groceries


def test_category_endpoints(client):
    food, groceries = _make_tree(client)

    forest = client.get("/api/categories").json()
    assert forest[0]["name"] == "Food"
    assert forest[0]["sub_categories"][0]["id"] == groceries["id"]

    options = client.get("/api/categories/options").json()
    assert [o["label"] for o in options] == ["Food", "Food > Groceries"]
    assert options[1]["type"] == "expense"

    resp = client.patch(f"/api/categories/{food['id']}", json={"name": "Eating"})
    assert resp.status_code == 200
    assert resp.json()["name"] == "Eating"

    assert client.patch("/api/categories/missing", json={"name": "X"}).status_code == 404
    assert client.delete(f"/api/categories/{food['id']}").status_code == 204
    assert client.get("/api/categories").json() == []


def test_transaction_crud_and_validation(client):
    _food, groceries = _make_tree(client)
    payload = {
        "date": "2024-03-02",
        "description": "Shop",
        "amount_cents": 4200,
        "type": "expense",
        "category_id": groceries["id"],
    }
    created = client.post("/api/transactions", json=payload)
    assert created.status_code == 201
    body = created.json()
    assert body["category"] == "Food > Groceries"

    mismatch = client.post("/api/transactions", json={**payload, "type": "income"})
    assert mismatch.status_code == 400

    negative = client.post("/api/transactions", json={**payload, "amount_cents": -1})
    assert negative.status_code == 422

    listed = client.get("/api/transactions", params={"type": "expense"}).json()
    assert [t["id"] for t in listed] == [body["id"]]

    assert client.delete(f"/api/transactions/{body['id']}").status_code == 204
    assert client.get(f"/api/transactions/{body['id']}").status_code == 404


def test_recurring_run_and_listing(client):
    _food, groceries = _make_tree(client)
    created = client.post(
        "/api/recurring",
        json={
            "description": "Veg box",
            "amount_cents": 2000,
            "type": "expense",
            "category_id": groceries["id"],
            "frequency": "weekly",
            "start_date": "2000-01-03",
        },
    ).json()
    assert created["next_occurrence"] == "2000-01-03"

    run = client.post("/api/recurring/run").json()
    assert run["failed"] == []
    assert run["posted"] > 52

    again = client.post("/api/recurring/run").json()
    assert again["posted"] == 0

    listed = client.get("/api/recurring").json()
    assert date.fromisoformat(listed[0]["next_occurrence"]) > date.fromisoformat(
        listed[0]["last_added_date"]
    )


def test_goal_contribution_endpoint(client):
    goal = client.post(
        "/api/goals", json={"name": "Holiday", "target_amount_cents": 10000}
    ).json()
    resp = client.post(f"/api/goals/{goal['id']}/contributions", json={"amount_cents": 2500})
    assert resp.status_code == 200
    assert resp.json()["saved_amount_cents"] == 2500
    assert resp.json()["progress"] == 25.0

    bad = client.post(f"/api/goals/{goal['id']}/contributions", json={"amount_cents": 0})
    assert bad.status_code == 400
    missing = client.post("/api/goals/999/contributions", json={"amount_cents": 10})
    assert missing.status_code == 404


def test_budget_details_endpoint(client):
    food, groceries = _make_tree(client)
    client.post(
        "/api/transactions",
        json={
            "date": "2024-03-02",
            "description": "Shop",
            "amount_cents": 4200,
            "type": "expense",
            "category_id": groceries["id"],
        },
    )
    client.post(
        "/api/budgets",
        json={
            "name": "Food",
            "category_id": food["id"],
            "amount_cents": 10000,
            "start_date": "2024-01-01",
        },
    )
    details = client.get("/api/budgets/details", params={"on": "2024-03-15"}).json()
    assert details[0]["spent_cents"] == 4200
    assert details[0]["category_path"] == "Food"


def test_formula_and_widget_endpoints(client):
    client.post(
        "/api/transactions",
        json={
            "date": "2024-03-02",
            "description": "Pay",
            "amount_cents": 500000,
            "type": "income",
        },
    )
    bad = client.post("/api/formulas", json={"name": "Bad", "expression": "1 +"})
    assert bad.status_code == 400

    formula = client.post(
        "/api/formulas", json={"name": "Half", "expression": "totalIncome / 2"}
    ).json()
    evaluated = client.post(f"/api/formulas/{formula['id']}/evaluate").json()
    assert evaluated["value"] == 2500.0

    widget = client.post(
        "/api/widgets/data",
        json={"widget": {"type": "metric", "formula_id": formula["id"]}},
    ).json()
    assert widget["data"][0]["value"] == 2500.0
    assert widget["kpis"]["totalIncome"] == 5000.0


def test_report_endpoints(client):
    client.post(
        "/api/transactions",
        json={
            "date": "2024-02-10",
            "description": "Pay",
            "amount_cents": 100000,
            "type": "income",
        },
    )
    eoy = client.get("/api/reports/eoy/2024").json()
    assert len(eoy["monthly"]) == 12
    assert eoy["net_cents"] == 100000

    summary = client.get("/api/reports/eoy/2024/summary").json()
    assert "2024" in summary["summary"]

    quarterly = client.get("/api/reports/quarterly/2024/1").json()
    assert quarterly["total_income_cents"] == 100000
    assert quarterly["profit_margin"] == 100.0
    assert client.get("/api/reports/quarterly/2024/5").status_code == 400

    dashboard = client.get(
        "/api/dashboard", params={"starting_balance_cents": 500, "today": "2024-02-20"}
    ).json()
    assert dashboard["current_balance_cents"] == 100500
    assert len(dashboard["overview"]) == 6


def test_ai_endpoints_without_configuration(client):
    resp = client.post("/api/ai/scan-receipt", json={"receipt_image": "data:image/png;base64,AA"})
    assert resp.status_code == 502


@pytest.mark.parametrize("year", [0, 10000])
def test_eoy_reports_reject_out_of_range_years(client, year):
    assert client.get(f"/api/reports/eoy/{year}").status_code == 400
    assert client.get(f"/api/reports/eoy/{year}/summary").status_code == 400
