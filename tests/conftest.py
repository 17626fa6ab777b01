from datetime import datetime, timedelta, timezone

import pytest

from db_setup import CONTACT_COLUMNS, ContactStore, get_db_connection, row_to_contact
from resolver import IdentityResolver


class FakeClock:
    """Advances one second per reading unless a time is queued."""

    def __init__(self, start: datetime = datetime(2023, 4, 1, tzinfo=timezone.utc)):
        self.current = start
        self.queued = []

    def set_next(self, *moments: datetime) -> None:
        self.queued.extend(moments)

    def __call__(self) -> datetime:
        if self.queued:
            return self.queued.pop(0)
        self.current += timedelta(seconds=1)
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock) -> ContactStore:
    store = ContactStore(str(tmp_path / "contacts.db"), timeout=0.5, clock=clock)
    store.init_db()
    return store


@pytest.fixture
def resolver(store) -> IdentityResolver:
    return IdentityResolver(store)


@pytest.fixture
def all_contacts(store):
    """Return every stored contact, oldest first."""

    def _all():
        conn = get_db_connection(store.db_name)
        try:
            rows = conn.execute(
                f"SELECT {CONTACT_COLUMNS} FROM Contact ORDER BY createdAt ASC, id ASC"
            ).fetchall()
        finally:
            conn.close()
        return [row_to_contact(row) for row in rows]

    return _all
