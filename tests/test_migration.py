from datetime import date

from sqlalchemy import select

from category_tree import rename_node
from migration import CategoryMigrator, plan_category_backfill
from models import Frequency, RecurringTransaction, Transaction, TransactionType


def _txn(category, category_id=None):
    return Transaction(
        user_id=1,
        date=date(2024, 3, 1),
        description="t",
        type=TransactionType.expense,
        amount_cents=100,
        category=category,
        category_id=category_id,
    )


def test_plan_matches_full_paths_only(forest):
    txns = [_txn("food > groceries"), _txn("Groceries"), _txn(""), _txn("Fuel", "fuel")]
    plan = plan_category_backfill(txns, forest, limit=10)
    assert [(p.transaction.category, p.node.id) for p in plan] == [
        ("food > groceries", "groceries")
    ]


def test_plan_respects_limit(forest):
    txns = [_txn("Food"), _txn("Transport"), _txn("Leisure")]
    assert len(plan_category_backfill(txns, forest, limit=2)) == 2


def test_backfill_is_non_destructive_and_repeatable(session, forest):
    tagged = _txn("Food > Groceries", "restaurants")
    session.add_all([_txn("Food > Groceries"), _txn("Transport > Fuel"), _txn("Nowhere"), tagged])
    session.commit()

    migrator = CategoryMigrator(session)
    assert migrator.backfill_category_ids(forest, limit=100) == 2
    session.commit()
    assert migrator.backfill_category_ids(forest, limit=100) == 0
    session.commit()

    values = sorted(
        (t.category, t.category_id or "") for t in session.scalars(select(Transaction)).all()
    )
    assert values == [
        ("Food > Groceries", "groceries"),
        ("Food > Groceries", "restaurants"),
        ("Nowhere", ""),
        ("Transport > Fuel", "fuel"),
    ]


def test_refresh_display_names_after_rename(session, forest):
    session.add_all(
        [
            _txn("Food > Groceries", "groceries"),
            _txn("Food", "food"),
            _txn("Transport > Fuel", "fuel"),
        ]
    )
    session.add(
        RecurringTransaction(
            user_id=1,
            description="Weekly shop",
            type=TransactionType.expense,
            amount_cents=5000,
            category="Food > Groceries",
            category_id="groceries",
            frequency=Frequency.weekly,
            start_date=date(2024, 1, 1),
        )
    )
    session.commit()

    renamed = rename_node(forest, ("food",), "Eating")
    updated = CategoryMigrator(session).refresh_display_names("food", renamed)
    session.commit()

    assert updated == 3
    labels = {t.category_id: t.category for t in session.scalars(select(Transaction)).all()}
    assert labels == {
        "groceries": "Eating > Groceries",
        "food": "Eating",
        "fuel": "Transport > Fuel",
    }
    definition = session.scalars(select(RecurringTransaction)).one()
    assert definition.category == "Eating > Groceries"


def test_backfill_reaches_rows_behind_unresolvable_ones(session, forest):
    session.add_all([_txn("Nowhere"), _txn("Nowhere"), _txn("Nowhere")])
    session.add(_txn("Food > Groceries"))
    session.commit()

    assert CategoryMigrator(session).backfill_category_ids(forest, limit=3) == 1
    session.commit()

    migrated = session.scalars(
        select(Transaction).where(Transaction.category_id.is_not(None))
    ).one()
    assert migrated.category_id == "groceries"
