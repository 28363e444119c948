import threading
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from aggregation import dashboard
from config import get_settings
from database import Base
from errors import (
    NotAuthenticatedError,
    NotFoundError,
    OperationInProgressError,
    PersistenceError,
)
from models import Transaction, TransactionType
from periods import resolve_window
from persistence import RowStore
from schemas import TransactionIn
from services import Workspace


def make_rows():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, RowStore(factory)


def lunch(amount: str = "120.50", **overrides) -> TransactionIn:
    fields = {
        "type": TransactionType.expense,
        "category": "Food",
        "amount": Decimal(amount),
        "note": "Lunch",
    }
    fields.update(overrides)
    return TransactionIn(**fields)


def test_create_then_list_contains_exactly_one_new_entry() -> None:
    _, rows = make_rows()
    ws = Workspace(rows, owner_id=1)

    txn = ws.transactions.create(lunch())

    listed = ws.transactions.list()
    assert [t.id for t in listed] == [txn.id]
    assert listed[0].type == TransactionType.expense
    assert listed[0].category == "Food"
    assert listed[0].amount == Decimal("120.50")
    assert listed[0].note == "Lunch"
    assert isinstance(listed[0].created_at, datetime)


def test_list_is_newest_first() -> None:
    _, rows = make_rows()
    ws = Workspace(rows, owner_id=1)
    older = ws.transactions.create(lunch(created_at=datetime(2024, 6, 1, 9, 0)))
    newer = ws.transactions.create(
        lunch("50", note="Dinner", created_at=datetime(2024, 6, 2, 19, 0))
    )

    assert [t.id for t in ws.transactions.list()] == [newer.id, older.id]


def test_update_replaces_fields_and_keeps_timestamp() -> None:
    _, rows = make_rows()
    ws = Workspace(rows, owner_id=1)
    txn = ws.transactions.create(lunch(created_at=datetime(2024, 6, 1, 9, 0)))

    updated = ws.transactions.update(
        txn.model_copy(update={"amount": Decimal("99.99"), "note": "Brunch"})
    )

    assert updated.amount == Decimal("99.99")
    assert updated.note == "Brunch"
    assert updated.created_at == datetime(2024, 6, 1, 9, 0)
    assert ws.transactions.list() == [updated]


def test_update_of_missing_transaction_raises_not_found() -> None:
    _, rows = make_rows()
    ws = Workspace(rows, owner_id=1)
    txn = ws.transactions.create(lunch())
    other = Workspace(rows, owner_id=1)
    other.transactions.delete(txn.id)

    with pytest.raises(NotFoundError):
        ws.transactions.update(txn.model_copy(update={"note": "gone"}))


def test_deleting_already_deleted_transaction_prunes_cache() -> None:
    _, rows = make_rows()
    ws = Workspace(rows, owner_id=1)
    txn = ws.transactions.create(lunch())

    # removed behind this workspace's back
    Workspace(rows, owner_id=1).transactions.delete(txn.id)

    with pytest.raises(NotFoundError):
        ws.transactions.delete(txn.id)
    assert ws.transactions.list() == []


def test_failed_remote_call_leaves_cache_untouched() -> None:
    engine, rows = make_rows()
    ws = Workspace(rows, owner_id=1)
    txn = ws.transactions.create(lunch())

    Transaction.__table__.drop(engine)

    with pytest.raises(PersistenceError):
        ws.transactions.create(lunch("10", note="Snack"))
    with pytest.raises(PersistenceError):
        ws.transactions.delete(txn.id)
    assert ws.transactions.list() == [txn]


def test_queries_are_scoped_to_owner() -> None:
    _, rows = make_rows()
    mine = Workspace(rows, owner_id=1)
    theirs = Workspace(rows, owner_id=2)
    txn = mine.transactions.create(lunch())

    theirs.refresh()
    assert theirs.transactions.list() == []
    with pytest.raises(NotFoundError):
        theirs.transactions.delete(txn.id)

    mine.refresh()
    assert [t.id for t in mine.transactions.list()] == [txn.id]


def test_no_owner_means_no_data_and_no_mutations() -> None:
    _, rows = make_rows()
    Workspace(rows, owner_id=1).transactions.create(lunch())

    anonymous = Workspace(rows, owner_id=None)
    anonymous.refresh()

    assert anonymous.transactions.list() == []
    with pytest.raises(NotAuthenticatedError):
        anonymous.transactions.create(lunch())


class BlockingRowStore(RowStore):
    def __init__(self, factory) -> None:
        super().__init__(factory)
        self.entered = threading.Event()
        self.release = threading.Event()

    def insert(self, model, rows):
        self.entered.set()
        self.release.wait(timeout=5)
        return super().insert(model, rows)


def test_double_submit_is_rejected_while_first_is_in_flight() -> None:
    _, plain = make_rows()
    rows = BlockingRowStore(plain.session_factory)
    ws = Workspace(rows, owner_id=1)
    results = []

    worker = threading.Thread(target=lambda: results.append(ws.transactions.create(lunch())))
    worker.start()
    assert rows.entered.wait(timeout=5)

    with pytest.raises(OperationInProgressError):
        ws.transactions.create(lunch())

    rows.release.set()
    worker.join(timeout=5)
    assert len(results) == 1
    assert len(ws.transactions.list()) == 1


def test_aware_timestamps_are_stored_as_local_time(monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "timezone", "Asia/Bangkok")
    _, rows = make_rows()
    ws = Workspace(rows, owner_id=1)

    aware = ws.transactions.create(
        lunch(created_at=datetime(2024, 6, 10, 10, 0, tzinfo=timezone.utc))
    )
    naive = ws.transactions.create(
        lunch("15", note="Coffee", created_at=datetime(2024, 6, 11, 8, 0))
    )

    assert aware.created_at == datetime(2024, 6, 10, 17, 0)
    assert aware.created_at.tzinfo is None
    assert [t.id for t in ws.transactions.list()] == [naive.id, aware.id]

    board = dashboard(
        ws.transactions.list(),
        [],
        resolve_window("thisWeek", now=datetime(2024, 6, 12, 10, 0)),
    )
    assert board.totals.expense == Decimal("135.50")

    ws.refresh()
    assert ws.transactions.get(aware.id).created_at == datetime(2024, 6, 10, 17, 0)


def test_update_can_move_the_timestamp() -> None:
    _, rows = make_rows()
    ws = Workspace(rows, owner_id=1)
    txn = ws.transactions.create(lunch(created_at=datetime(2024, 6, 1, 9, 0)))

    moved = ws.transactions.update(
        txn.model_copy(update={"created_at": datetime(2024, 5, 31, 20, 0)})
    )

    assert moved.created_at == datetime(2024, 5, 31, 20, 0)
    ws.refresh()
    assert ws.transactions.list()[0].created_at == datetime(2024, 5, 31, 20, 0)


def test_amounts_beyond_the_cents_column_are_rejected() -> None:
    with pytest.raises(ValueError):
        lunch("1e20")

    _, rows = make_rows()
    ws = Workspace(rows, owner_id=1)
    unchecked = TransactionIn.model_construct(
        type=TransactionType.expense,
        category="Food",
        amount=Decimal("1e20"),
        note="",
        created_at=None,
    )

    with pytest.raises(PersistenceError):
        ws.transactions.create(unchecked)
    assert ws.transactions.list() == []
