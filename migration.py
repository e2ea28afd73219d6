import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from category_tree import (
    CategoryNode,
    Forest,
    collect_subtree,
    find_by_id,
    find_by_path,
    path_label,
)
from config import get_settings
from models import RecurringTransaction, Transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Backfill:
    transaction: Transaction
    node: CategoryNode


def plan_category_backfill(
    transactions: Iterable[Transaction], forest: Forest, limit: int
) -> list[Backfill]:
    """Match up to ``limit`` un-migrated transactions to tree nodes by path.

    Rows that do not resolve are skipped and do not count against ``limit``.
    """
    plan: list[Backfill] = []
    for txn in transactions:
        if len(plan) >= limit:
            break
        if txn.category_id is not None:
            continue
        node = find_by_path(txn.category, forest)
        if node is not None:
            plan.append(Backfill(txn, node))
    return plan


class CategoryMigrator:
    def __init__(self, session: Session, user_id: int = 1) -> None:
        self.session = session
        self.user_id = user_id

    def backfill_category_ids(self, forest: Forest, limit: Optional[int] = None) -> int:
        limit = limit if limit is not None else get_settings().migration_batch_size
        plan: list[Backfill] = []
        examined = 0
        last_id = 0
        while len(plan) < limit:
            page = self.session.scalars(
                select(Transaction)
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.category_id.is_(None),
                    Transaction.id > last_id,
                )
                .order_by(Transaction.id)
                .limit(limit)
            ).all()
            if not page:
                break
            examined += len(page)
            last_id = page[-1].id
            plan.extend(plan_category_backfill(page, forest, limit - len(plan)))
        for item in plan:
            item.transaction.category_id = item.node.id
        if plan:
            self.session.flush()
        logger.info(
            f"category_backfill: user_id={self.user_id} examined={examined} "
            f"migrated={len(plan)}"
        )
        return len(plan)

    def refresh_display_names(self, category_id: str, forest: Forest) -> int:
        """Rewrite denormalized ``category`` paths for rows under a renamed node."""
        node = find_by_id(category_id, forest)
        if node is None:
            return 0
        labels = {
            node_id: path_label(node_id, forest) or ""
            for node_id in collect_subtree(node).ids
        }
        txns = self.session.scalars(
            select(Transaction).where(
                Transaction.user_id == self.user_id,
                Transaction.category_id.in_(list(labels)),
            )
        ).all()
        definitions = self.session.scalars(
            select(RecurringTransaction).where(
                RecurringTransaction.user_id == self.user_id,
                RecurringTransaction.category_id.in_(list(labels)),
            )
        ).all()
        updated = 0
        for row in [*txns, *definitions]:
            label = labels[row.category_id]
            if row.category != label:
                row.category = label
                updated += 1
        if updated:
            self.session.flush()
        return updated
