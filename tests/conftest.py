import os
import tempfile

os.environ.setdefault("LEDGER_DATA_DIR", tempfile.mkdtemp(prefix="ledger-tests-"))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

import models  # noqa: F401
from category_tree import CategoryNode
from database import Base, configure_sqlite_transactions
from models import TransactionType


@pytest.fixture()
def engine():
    # One shared connection so the API tests see the same in-memory database.
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite_transactions(eng)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture()
def forest():
    return (
        CategoryNode(
            id="food",
            name="Food",
            type=TransactionType.expense,
            sub_categories=(
                CategoryNode(id="groceries", name="Groceries"),
                CategoryNode(id="restaurants", name="Restaurants"),
            ),
        ),
        CategoryNode(
            id="transport",
            name="Transport",
            type=TransactionType.expense,
            sub_categories=(CategoryNode(id="fuel", name="Fuel"),),
        ),
        CategoryNode(
            id="leisure",
            name="Leisure",
            type=TransactionType.expense,
            sub_categories=(CategoryNode(id="coffee", name="Coffee"),),
        ),
        CategoryNode(id="salary", name="Salary", type=TransactionType.income),
    )
