from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Generic, Hashable, Iterator, Optional, Sequence, TypeVar

from rapidfuzz.distance import Levenshtein

from aggregation import totals
from errors import (
    AdapterError,
    CategoryInUseError,
    NotAuthenticatedError,
    NotFoundError,
    OperationInProgressError,
    PersistenceError,
    ValidationError,
)
from models import Budget, Category, Goal, Transaction, TransactionType
from periods import as_local, local_now
from persistence import RowStore
from reconciliation import FALLBACK_CATEGORY, SAVINGS_CATEGORY, ReconciliationEngine
from schemas import (
    BudgetIn,
    BudgetOut,
    CategoryIn,
    CategoryOut,
    GoalIn,
    GoalOut,
    MonthlyTotals,
    SlipGuess,
    SpendingSummary,
    TransactionIn,
    TransactionOut,
)

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES: dict[TransactionType, tuple[str, ...]] = {
    TransactionType.income: (
        "Salary",
        "Side income",
        "Refunds",
        "Gifts/Bonus",
        FALLBACK_CATEGORY,
    ),
    TransactionType.expense: (
        "Food",
        "Transport",
        "Housing",
        "Entertainment",
        "Shopping",
        "Health",
        "Education",
        "Bills/Services",
        SAVINGS_CATEGORY,
        "Debt payment",
        FALLBACK_CATEGORY,
    ),
}

CENT = Decimal("0.01")


def amount_to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_amount(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


T = TypeVar("T")


class EntityStore(Generic[T]):
    """Owner-scoped cache of one entity kind, kept in step with a RowStore.

    The cache is only written from rows returned by the remote call, so a
    failed call leaves it untouched.
    """

    model: type = None  # type: ignore[assignment]

    def __init__(self, rows: RowStore, owner_id: Optional[int]) -> None:
        self.rows = rows
        self.owner_id = owner_id
        self._cache: dict[int, T] = {}
        self._lock = threading.Lock()
        self._in_flight: set[Hashable] = set()

    # subclasses map rows to entities and define list ordering
    def _from_row(self, row: dict[str, Any]) -> T:
        raise NotImplementedError

    def _sort_key(self, entity: T) -> Any:
        return (entity.created_at, entity.id)

    def _require_owner(self) -> int:
        if self.owner_id is None:
            raise NotAuthenticatedError()
        return self.owner_id

    @contextmanager
    def _guard(self, key: Hashable) -> Iterator[None]:
        with self._lock:
            if key in self._in_flight:
                raise OperationInProgressError(
                    f"Another {self.model.__tablename__} operation is still running"
                )
            self._in_flight.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._in_flight.discard(key)

    def _merge(self, row: dict[str, Any]) -> T:
        entity = self._from_row(row)
        self._cache[entity.id] = entity
        return entity

    def refresh(self) -> list[T]:
        if self.owner_id is None:
            self._cache = {}
            return []
        rows = self.rows.select(self.model, self.owner_id)
        self._cache = {}
        for row in rows:
            self._merge(row)
        return self.list()

    def clear(self) -> None:
        self._cache = {}

    def list(self) -> list[T]:
        if self.owner_id is None:
            return []
        return sorted(self._cache.values(), key=self._sort_key)

    def get(self, entity_id: int) -> T:
        owner_id = self._require_owner()
        cached = self._cache.get(entity_id)
        if cached is not None:
            return cached
        rows = self.rows.select(self.model, owner_id, filters={"id": entity_id})
        if not rows:
            raise NotFoundError(f"{self.model.__name__} {entity_id} not found")
        return self._merge(rows[0])

    def fetch(self, entity_id: int) -> T:
        """Re-read one row from the remote, pruning the cache if it is gone."""
        owner_id = self._require_owner()
        rows = self.rows.select(self.model, owner_id, filters={"id": entity_id})
        if not rows:
            self._cache.pop(entity_id, None)
            raise NotFoundError(f"{self.model.__name__} {entity_id} not found")
        return self._merge(rows[0])

    def _insert(self, row: dict[str, Any]) -> T:
        owner_id = self._require_owner()
        inserted = self.rows.insert(self.model, [{**row, "user_id": owner_id}])
        if not inserted:
            raise PersistenceError(f"Failed to add {self.model.__tablename__}")
        return self._merge(inserted[0])

    def _update(self, entity_id: int, patch: dict[str, Any]) -> T:
        owner_id = self._require_owner()
        with self._guard(("update", entity_id)):
            row = self.rows.update(self.model, owner_id, entity_id, patch)
            if row is None:
                raise NotFoundError(f"{self.model.__name__} {entity_id} not found")
            return self._merge(row)

    def delete(self, entity_id: int) -> None:
        owner_id = self._require_owner()
        with self._guard(("delete", entity_id)):
            deleted = self.rows.delete(self.model, owner_id, entity_id)
            # the row is gone either way, so never leave a stale cache entry
            self._cache.pop(entity_id, None)
        if not deleted:
            logger.warning(
                f"delete_missing: table={self.model.__tablename__} "
                f"owner={owner_id} id={entity_id}"
            )
            raise NotFoundError(f"{self.model.__name__} {entity_id} was already deleted")
        logger.info(
            f"deleted: table={self.model.__tablename__} owner={owner_id} id={entity_id}"
        )


class TransactionStore(EntityStore[TransactionOut]):
    model = Transaction

    def _from_row(self, row: dict[str, Any]) -> TransactionOut:
        return TransactionOut(
            id=row["id"],
            type=row["type"],
            category=row["category"],
            amount=cents_to_amount(row["amount_cents"]),
            note=row.get("note") or "",
            created_at=row["created_at"],
        )

    def list(self) -> list[TransactionOut]:
        # newest first
        return sorted(
            super().list(), key=lambda t: (t.created_at, t.id), reverse=True
        )

    def create(self, data: TransactionIn) -> TransactionOut:
        owner_id = self._require_owner()
        key = (
            "create",
            data.type,
            data.category,
            amount_to_cents(data.amount),
            data.note,
        )
        created_at = as_local(data.created_at) if data.created_at else local_now()
        with self._guard(key):
            txn = self._insert(
                {
                    "type": data.type,
                    "category": data.category.strip(),
                    "amount_cents": amount_to_cents(data.amount),
                    "note": data.note,
                    "created_at": created_at,
                }
            )
        logger.info(
            f"transaction_created: owner={owner_id} id={txn.id} "
            f"type={txn.type.value} amount={txn.amount}"
        )
        return txn

    def update(self, txn: TransactionOut) -> TransactionOut:
        if txn.amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        return self._update(
            txn.id,
            {
                "type": txn.type,
                "category": txn.category.strip(),
                "amount_cents": amount_to_cents(txn.amount),
                "note": txn.note,
                "created_at": as_local(txn.created_at),
            },
        )


class CategoryStore(EntityStore[CategoryOut]):
    model = Category

    def __init__(
        self, rows: RowStore, owner_id: Optional[int], budgets: "BudgetStore"
    ) -> None:
        super().__init__(rows, owner_id)
        self.budgets = budgets

    def _from_row(self, row: dict[str, Any]) -> CategoryOut:
        return CategoryOut(
            id=row["id"], name=row["name"], type=row["type"], created_at=row["created_at"]
        )

    def names(self, txn_type: TransactionType) -> list[str]:
        return [c.name for c in self.list() if c.type == txn_type]

    def find(self, name: str, txn_type: TransactionType) -> Optional[CategoryOut]:
        for category in self.list():
            if category.type == txn_type and category.name == name:
                return category
        return None

    def _ensure_unique(
        self, name: str, txn_type: TransactionType, exclude_id: Optional[int] = None
    ) -> None:
        owner_id = self._require_owner()
        clashes = self.rows.select(
            Category, owner_id, filters={"name": name, "type": txn_type}
        )
        if any(row["id"] != exclude_id for row in clashes):
            raise ValidationError("Category with this name already exists")

    def create(self, data: CategoryIn) -> CategoryOut:
        name = data.name.strip()
        if not name:
            raise ValidationError("Category name cannot be empty")
        with self._guard(("create", data.type, name.lower())):
            self._ensure_unique(name, data.type)
            return self._insert({"name": name, "type": data.type})

    def add_defaults(self) -> list[CategoryOut]:
        owner_id = self._require_owner()
        existing = {
            (row["type"], row["name"]) for row in self.rows.select(Category, owner_id)
        }
        missing = [
            {"user_id": owner_id, "name": name, "type": txn_type}
            for txn_type, names in DEFAULT_CATEGORIES.items()
            for name in names
            if (txn_type, name) not in existing
        ]
        if not missing:
            return []
        with self._guard(("defaults",)):
            inserted = self.rows.insert(Category, missing)
        logger.info(f"default_categories_added: owner={owner_id} count={len(inserted)}")
        return [self._merge(row) for row in inserted]

    def update(self, category: CategoryOut) -> CategoryOut:
        """Rename a category; its budget row follows the new name."""
        owner_id = self._require_owner()
        name = category.name.strip()
        if not name:
            raise ValidationError("Category name cannot be empty")
        previous = self.get(category.id)
        self._ensure_unique(name, category.type, exclude_id=category.id)
        updated = self._update(category.id, {"name": name, "type": category.type})
        if previous.name != updated.name:
            self.budgets.rename_category(previous.name, updated.name)
            logger.info(
                f"category_renamed: owner={owner_id} id={updated.id} "
                f"from={previous.name!r} to={updated.name!r}"
            )
        return updated

    def delete(self, category_id: int) -> None:
        owner_id = self._require_owner()
        category = self.get(category_id)
        budgets = self.rows.select(
            Budget, owner_id, filters={"category": category.name}, limit=1
        )
        if budgets and budgets[0]["amount_cents"] > 0:
            raise CategoryInUseError(category.name)
        super().delete(category_id)


class BudgetStore(EntityStore[BudgetOut]):
    model = Budget

    def _from_row(self, row: dict[str, Any]) -> BudgetOut:
        return BudgetOut(
            id=row["id"],
            category=row["category"],
            amount=cents_to_amount(row["amount_cents"]),
            created_at=row["created_at"],
        )

    def _merge(self, row: dict[str, Any]) -> BudgetOut:
        # one budget per category name; ids may not be known before the first upsert
        entity = self._from_row(row)
        for budget_id, cached in list(self._cache.items()):
            if cached.category == entity.category and budget_id != entity.id:
                del self._cache[budget_id]
        self._cache[entity.id] = entity
        return entity

    def for_category(self, category: str) -> Optional[BudgetOut]:
        for budget in self.list():
            if budget.category == category:
                return budget
        return None

    def upsert(self, data: BudgetIn) -> BudgetOut:
        owner_id = self._require_owner()
        category = data.category.strip()
        with self._guard(("upsert", category)):
            row = self.rows.upsert(
                Budget,
                {
                    "user_id": owner_id,
                    "category": category,
                    "amount_cents": amount_to_cents(data.amount),
                },
                conflict_key=("user_id", "category"),
            )
            budget = self._merge(row)
        logger.info(
            f"budget_upserted: owner={owner_id} category={category!r} "
            f"amount={budget.amount}"
        )
        return budget

    create = upsert

    def update(self, budget: BudgetOut) -> BudgetOut:
        return self.upsert(BudgetIn(category=budget.category, amount=budget.amount))

    def rename_category(self, old_name: str, new_name: str) -> None:
        owner_id = self._require_owner()
        for row in self.rows.update_where(
            Budget, owner_id, {"category": old_name}, {"category": new_name}
        ):
            self._merge(row)


class GoalStore(EntityStore[GoalOut]):
    model = Goal

    def _from_row(self, row: dict[str, Any]) -> GoalOut:
        return GoalOut(
            id=row["id"],
            name=row["name"],
            type=row["type"],
            target_amount=cents_to_amount(row["target_amount_cents"]),
            current_amount=cents_to_amount(row["current_amount_cents"]),
            deadline=row.get("deadline"),
            created_at=row["created_at"],
        )

    def _sort_key(self, goal: GoalOut) -> Any:
        # deadline ascending, open-ended goals last
        return (goal.deadline is None, goal.deadline or date.max, goal.created_at, goal.id)

    def create(self, data: GoalIn) -> GoalOut:
        with self._guard(("create", data.name.strip().lower(), data.type)):
            return self._insert(
                {
                    "name": data.name.strip(),
                    "type": data.type,
                    "target_amount_cents": amount_to_cents(data.target_amount),
                    "current_amount_cents": amount_to_cents(data.current_amount),
                    "deadline": data.deadline,
                }
            )

    def update(self, goal: GoalOut) -> GoalOut:
        if goal.target_amount <= 0:
            raise ValidationError("Target amount must be greater than zero")
        if goal.current_amount < 0:
            raise ValidationError("Current amount cannot be negative")
        if goal.current_amount > goal.target_amount:
            raise ValidationError("Current amount cannot exceed the target amount")
        return self._update(
            goal.id,
            {
                "name": goal.name.strip(),
                "type": goal.type,
                "target_amount_cents": amount_to_cents(goal.target_amount),
                "current_amount_cents": amount_to_cents(goal.current_amount),
                "deadline": goal.deadline,
            },
        )


class Workspace:
    """The four stores of one owner plus the reconciliation engine."""

    def __init__(self, rows: RowStore, owner_id: Optional[int]) -> None:
        self.owner_id = owner_id
        self.transactions = TransactionStore(rows, owner_id)
        self.budgets = BudgetStore(rows, owner_id)
        self.categories = CategoryStore(rows, owner_id, self.budgets)
        self.goals = GoalStore(rows, owner_id)
        self.reconciliation = ReconciliationEngine(self)

    @property
    def stores(self) -> tuple[EntityStore, ...]:
        return (self.transactions, self.categories, self.budgets, self.goals)

    def refresh(self) -> None:
        for store in self.stores:
            store.refresh()

    def clear(self) -> None:
        for store in self.stores:
            store.clear()
        self.reconciliation.discard_all()


class WorkspaceRegistry:
    def __init__(self, rows: RowStore) -> None:
        self.rows = rows
        self._workspaces: dict[int, Workspace] = {}
        self._lock = threading.Lock()

    def get(self, owner_id: Optional[int]) -> Workspace:
        if owner_id is None:
            return Workspace(self.rows, None)
        with self._lock:
            workspace = self._workspaces.get(owner_id)
            if workspace is None:
                workspace = Workspace(self.rows, owner_id)
                workspace.refresh()
                self._workspaces[owner_id] = workspace
            return workspace

    def on_session_change(self, owner_id: int, active: bool) -> None:
        if not active:
            self.drop(owner_id)

    def drop(self, owner_id: int) -> None:
        with self._lock:
            workspace = self._workspaces.pop(owner_id, None)
        if workspace is not None:
            workspace.clear()
            logger.info(f"workspace_dropped: owner={owner_id}")


def _match_category(candidate: str, vocabulary: Sequence[str]) -> Optional[str]:
    wanted = candidate.strip().lower()
    if not wanted:
        return None
    for name in vocabulary:
        if name.lower() == wanted:
            return name
    best_distance: Optional[int] = None
    best: list[str] = []
    for name in vocabulary:
        dist = int(Levenshtein.distance(wanted, name.lower()))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [name]
        elif dist == best_distance:
            best.append(name)
    if best_distance is not None and best_distance <= 1 and len(best) == 1:
        return best[0]
    return None


def coerce_slip_guess(
    guess: SlipGuess, vocabulary: dict[TransactionType, list[str]]
) -> SlipGuess:
    if guess.amount <= 0:
        raise AdapterError("Slip analysis returned a non-positive amount")
    matched = _match_category(guess.category, vocabulary.get(guess.type, []))
    if matched is None:
        logger.info(
            f"slip_category_coerced: guessed={guess.category!r} "
            f"fallback={FALLBACK_CATEGORY!r}"
        )
        matched = FALLBACK_CATEGORY
    return guess.model_copy(
        update={"category": matched, "amount": guess.amount.quantize(CENT)}
    )


def import_slip(
    adapter, workspace: Workspace, image: bytes, mime_type: str
) -> SlipGuess:
    """Analyze a slip photo into a transaction draft; nothing is saved."""
    vocabulary = {
        txn_type: workspace.categories.names(txn_type) for txn_type in TransactionType
    }
    guess = adapter.analyze_slip(image, mime_type, vocabulary)
    return coerce_slip_guess(guess, vocabulary)


def summarize_spending(
    adapter, transactions: Sequence[TransactionOut]
) -> SpendingSummary:
    summary = adapter.analyze_spending(list(transactions))
    local = totals(transactions)
    return summary.model_copy(
        update={
            "monthly_totals": MonthlyTotals(income=local.income, expense=local.expense)
        }
    )

