"""ContactStore / ContactSession behaviour on a temporary SQLite file."""

import sqlite3
from datetime import datetime, timezone

import pytest

import db_setup
from db_models import LinkPrecedence
from db_setup import ContactStore
from errors import ContactNotFound, DataInconsistency, StoreBusy, StoreUnavailable

PRIMARY = LinkPrecedence.PRIMARY
SECONDARY = LinkPrecedence.SECONDARY


def test_init_db_is_idempotent(store) -> None:
    store.init_db()
    with store.transaction() as contacts:
        assert contacts.find_by_email_or_phone("a@x.com", "1") == []


def test_find_by_email_or_phone_uses_supplied_fields_only(store) -> None:
    with store.transaction() as contacts:
        by_email = contacts.create("a@x.com", None, PRIMARY)
        by_phone = contacts.create(None, "1", PRIMARY)
        contacts.create("b@x.com", "2", PRIMARY)

    with store.transaction() as contacts:
        assert contacts.find_by_email_or_phone("a@x.com", "1") == [by_email, by_phone]
        assert contacts.find_by_email_or_phone(email="a@x.com") == [by_email]
        assert contacts.find_by_email_or_phone(phone="1") == [by_phone]
        assert contacts.find_by_email_or_phone() == []


def test_results_are_ordered_by_creation_time(store, clock) -> None:
    clock.set_next(
        datetime(2023, 1, 2, tzinfo=timezone.utc),
        datetime(2023, 1, 1, tzinfo=timezone.utc),
    )
    with store.transaction() as contacts:
        later = contacts.create("a@x.com", None, PRIMARY)
        earlier = contacts.create(None, "1", PRIMARY)

    with store.transaction() as contacts:
        found = contacts.find_by_email_or_phone("a@x.com", "1")
    assert [c.id for c in found] == [earlier.id, later.id]


def test_same_timestamp_falls_back_to_id_order(store, clock) -> None:
    moment = datetime(2023, 1, 1, tzinfo=timezone.utc)
    clock.set_next(moment, moment)
    with store.transaction() as contacts:
        first = contacts.create("a@x.com", None, PRIMARY)
        second = contacts.create("a@x.com", "1", PRIMARY)

    with store.transaction() as contacts:
        assert contacts.find_by_email_or_phone(email="a@x.com") == [first, second]


def test_find_by_id_or_linked_id_returns_cluster(store) -> None:
    with store.transaction() as contacts:
        primary = contacts.create("a@x.com", "1", PRIMARY)
        secondary = contacts.create("b@x.com", "1", SECONDARY, primary.id)
        other = contacts.create("c@x.com", "3", PRIMARY)

    with store.transaction() as contacts:
        assert contacts.find_by_id_or_linked_id({primary.id}) == [primary, secondary]
        assert contacts.find_by_id_or_linked_id([secondary.id, other.id]) == [secondary, other]
        assert contacts.find_by_id_or_linked_id([]) == []


def test_find_by_id_or_linked_id_accepts_large_id_sets(store) -> None:
    with store.transaction() as contacts:
        primary = contacts.create("a@x.com", "1", PRIMARY)
        secondary = contacts.create("b@x.com", "1", SECONDARY, primary.id)

    with store.transaction() as contacts:
        found = contacts.find_by_id_or_linked_id(range(1, 40001))
    assert found == [primary, secondary]


def test_find_by_id(store) -> None:
    with store.transaction() as contacts:
        created = contacts.create("a@x.com", None, PRIMARY)
        assert contacts.find_by_id(created.id) == created
        with pytest.raises(ContactNotFound):
            contacts.find_by_id(created.id + 100)


def test_find_exact_matches_missing_fields_as_null(store) -> None:
    with store.transaction() as contacts:
        both = contacts.create("a@x.com", "1", PRIMARY)
        email_only = contacts.create("b@x.com", None, PRIMARY)

    with store.transaction() as contacts:
        assert contacts.find_exact("a@x.com", "1") == both
        assert contacts.find_exact("b@x.com", None) == email_only
        with pytest.raises(ContactNotFound):
            contacts.find_exact("a@x.com", None)
        with pytest.raises(ContactNotFound):
            contacts.find_exact("a@x.com", "2")


def test_update_changes_link_only(store) -> None:
    with store.transaction() as contacts:
        keeper = contacts.create("a@x.com", None, PRIMARY)
        demoted = contacts.create(None, "1", PRIMARY)
        contacts.update(demoted.id, SECONDARY, keeper.id)

    with store.transaction() as contacts:
        updated = contacts.find_by_id(demoted.id)
    assert updated.link_precedence == SECONDARY
    assert updated.linked_id == keeper.id
    assert updated.phone_number == "1"
    assert updated.created_at == demoted.created_at
    assert updated.updated_at > demoted.updated_at


def test_update_missing_contact(store) -> None:
    with store.transaction() as contacts:
        with pytest.raises(ContactNotFound):
            contacts.update(42, SECONDARY, 1)


def test_schema_rejects_secondary_without_link(store) -> None:
    with pytest.raises(DataInconsistency):
        with store.transaction() as contacts:
            contacts.create("a@x.com", None, SECONDARY, None)


def test_schema_rejects_link_to_missing_contact(store) -> None:
    with pytest.raises(DataInconsistency):
        with store.transaction() as contacts:
            contacts.create("a@x.com", None, SECONDARY, 999)


def test_transaction_rolls_back_on_error(store) -> None:
    with pytest.raises(RuntimeError):
        with store.transaction() as contacts:
            contacts.create("a@x.com", None, PRIMARY)
            raise RuntimeError("boom")

    with store.transaction() as contacts:
        assert contacts.find_by_email_or_phone(email="a@x.com") == []


def test_locked_database_raises_store_busy(store) -> None:
    busy_store = ContactStore(store.db_name, timeout=0.05)
    blocker = sqlite3.connect(store.db_name, isolation_level=None)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(StoreBusy):
            with busy_store.transaction():
                pass
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()


def test_unopenable_database_raises_store_unavailable(tmp_path) -> None:
    broken = ContactStore(str(tmp_path / "missing" / "contacts.db"))
    with pytest.raises(StoreUnavailable):
        broken.init_db()


class RollbackFailingConnection:
    """Wraps a real connection; ROLLBACK takes effect and then reports an I/O error."""

    def __init__(self, conn):
        self._conn = conn

    @property
    def in_transaction(self):
        return self._conn.in_transaction

    def execute(self, query, *args):
        if query == "ROLLBACK":
            self._conn.execute(query)
            raise sqlite3.OperationalError("disk I/O error")
        return self._conn.execute(query, *args)

    def close(self):
        self._conn.close()


def test_failed_rollback_keeps_original_error(store, monkeypatch) -> None:
    connect = db_setup.get_db_connection
    monkeypatch.setattr(
        db_setup,
        "get_db_connection",
        lambda *args, **kwargs: RollbackFailingConnection(connect(*args, **kwargs)),
    )

    with pytest.raises(RuntimeError, match="boom"):
        with store.transaction() as contacts:
            contacts.create("a@x.com", None, PRIMARY)
            raise RuntimeError("boom")

    monkeypatch.undo()
    with store.transaction() as contacts:
        assert contacts.find_by_email_or_phone(email="a@x.com") == []
