import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterable, Iterator, List, Optional

import structlog

from db_models import Contact, LinkPrecedence
from errors import ContactNotFound, DataInconsistency, StoreBusy, StoreUnavailable

DB_NAME = "contacts.db"

logger = structlog.get_logger()

CONTACT_COLUMNS = "id, phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt"

SCHEMA = [
    '''
        CREATE TABLE IF NOT EXISTS Contact (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            phoneNumber TEXT,
            email TEXT,
            linkedId INTEGER,
            linkPrecedence TEXT NOT NULL CHECK(linkPrecedence IN ('secondary', 'primary')),
            createdAt TEXT NOT NULL,
            updatedAt TEXT NOT NULL,
            FOREIGN KEY (linkedId) REFERENCES Contact (id),
            CHECK (
                (linkPrecedence = 'primary' AND linkedId IS NULL)
                OR (linkPrecedence = 'secondary' AND linkedId IS NOT NULL)
            )
        )
    ''',
    "CREATE INDEX IF NOT EXISTS ix_contact_email ON Contact (email)",
    "CREATE INDEX IF NOT EXISTS ix_contact_phone ON Contact (phoneNumber)",
    "CREATE INDEX IF NOT EXISTS ix_contact_linked ON Contact (linkedId)",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_lock_error(exc: sqlite3.Error) -> bool:
    message = str(exc).lower()
    return isinstance(exc, sqlite3.OperationalError) and ("locked" in message or "busy" in message)


def _rollback(conn: sqlite3.Connection):
    """Roll back an open transaction while another error is propagating.

    A failed ROLLBACK is logged, not raised, so the caller's exception is the
    one that surfaces. SQLite discards the transaction when the connection
    closes anyway.
    """
    if not conn.in_transaction:
        return
    try:
        conn.execute("ROLLBACK")
    except sqlite3.Error as exc:
        logger.warning("rollback_failed", error=str(exc))


def get_db_connection(db_name: str = DB_NAME, timeout: float = 5.0) -> sqlite3.Connection:
    # isolation_level=None: transactions are opened explicitly by ContactStore
    conn = sqlite3.connect(db_name, timeout=timeout, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_name: str = DB_NAME):
    conn = get_db_connection(db_name)
    try:
        for statement in SCHEMA:
            conn.execute(statement)
    finally:
        conn.close()


def row_to_contact(row: sqlite3.Row) -> Contact:
    return Contact(
        id=row["id"],
        email=row["email"],
        phone_number=row["phoneNumber"],
        linked_id=row["linkedId"],
        link_precedence=row["linkPrecedence"],
        created_at=row["createdAt"],
        updated_at=row["updatedAt"],
    )


class ContactSession:
    """Contact queries and commands bound to one open transaction.

    Every list returned is ordered oldest first: by ``createdAt`` and then by
    ``id`` so that rows created within the same clock tick still have a total
    order.
    """

    def __init__(self, conn: sqlite3.Connection, clock: Callable[[], datetime] = _utcnow):
        self._conn = conn
        self._clock = clock

    def _now(self) -> str:
        return self._clock().astimezone(timezone.utc).isoformat(timespec="microseconds")

    def _execute(self, query: str, params: Iterable = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(query, tuple(params))
        except sqlite3.IntegrityError as exc:
            # a CHECK or foreign key rejected the write; retrying cannot help
            raise DataInconsistency(f"Contact write violates store constraints: {exc}") from exc
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Contact store query failed: {exc}") from exc

    def _fetch(self, query: str, params: Iterable = ()) -> List[Contact]:
        cursor = self._execute(query, params)
        return [row_to_contact(row) for row in cursor.fetchall()]

    def find_by_email_or_phone(self, email: Optional[str] = None, phone: Optional[str] = None) -> List[Contact]:
        clauses = []
        params = []
        if email:
            clauses.append("email = ?")
            params.append(email)
        if phone:
            clauses.append("phoneNumber = ?")
            params.append(phone)
        if not clauses:
            return []

        query = f"""
            SELECT {CONTACT_COLUMNS} FROM Contact
            WHERE {" OR ".join(clauses)}
            ORDER BY createdAt ASC, id ASC
        """
        return self._fetch(query, params)

    def find_by_id_or_linked_id(self, ids: Iterable[int]) -> List[Contact]:
        ids = sorted(set(ids))
        if not ids:
            return []

        # one bound parameter however many ids, so SQLITE_MAX_VARIABLE_NUMBER never applies
        query = f"""
            WITH wanted(id) AS (SELECT value FROM json_each(?))
            SELECT {CONTACT_COLUMNS} FROM Contact
            WHERE id IN (SELECT id FROM wanted) OR linkedId IN (SELECT id FROM wanted)
            ORDER BY createdAt ASC, id ASC
        """
        return self._fetch(query, (json.dumps(ids),))

    def find_by_id(self, contact_id: int) -> Contact:
        cursor = self._execute(f"SELECT {CONTACT_COLUMNS} FROM Contact WHERE id = ?", (contact_id,))
        row = cursor.fetchone()
        if row is None:
            raise ContactNotFound(f"Contact {contact_id} not found")
        return row_to_contact(row)

    def find_exact(self, email: Optional[str] = None, phone: Optional[str] = None) -> Contact:
        """Return the oldest contact with exactly this email and phone.

        An omitted field only matches a NULL column.
        """
        cursor = self._execute(
            f"""
                SELECT {CONTACT_COLUMNS} FROM Contact
                WHERE email IS ? AND phoneNumber IS ?
                ORDER BY createdAt ASC, id ASC
                LIMIT 1
            """,
            (email, phone),
        )
        row = cursor.fetchone()
        if row is None:
            raise ContactNotFound("No contact with this email and phone number")
        return row_to_contact(row)

    def create(
        self,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        link_precedence: LinkPrecedence = LinkPrecedence.PRIMARY,
        linked_id: Optional[int] = None,
    ) -> Contact:
        now = self._now()
        cursor = self._execute(
            """
                INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
            (phone, email, linked_id, LinkPrecedence(link_precedence).value, now, now),
        )
        return Contact(
            id=cursor.lastrowid,
            email=email,
            phone_number=phone,
            linked_id=linked_id,
            link_precedence=link_precedence,
            created_at=now,
            updated_at=now,
        )

    def update(self, contact_id: int, link_precedence: LinkPrecedence, linked_id: Optional[int]) -> None:
        cursor = self._execute(
            """
                UPDATE Contact
                SET linkPrecedence = ?, linkedId = ?, updatedAt = ?
                WHERE id = ?
            """,
            (LinkPrecedence(link_precedence).value, linked_id, self._now(), contact_id),
        )
        if cursor.rowcount == 0:
            raise ContactNotFound(f"Contact {contact_id} not found")


class ContactStore:
    """SQLite-backed contact store.

    The store only holds configuration. Each call to :meth:`transaction`
    opens its own connection and takes the database write lock with
    ``BEGIN IMMEDIATE``, so concurrent transactions run one after another.
    """

    def __init__(
        self,
        db_name: str = DB_NAME,
        timeout: float = 5.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db_name = db_name
        self.timeout = timeout
        self._clock = clock

    def init_db(self):
        try:
            init_db(self.db_name)
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Could not initialise contact store: {exc}") from exc
        logger.info("contact_store_ready", db_name=self.db_name)

    @contextmanager
    def transaction(self) -> Iterator[ContactSession]:
        """Yield a session inside one write transaction.

        Commits when the block exits normally and rolls back on any
        exception. The connection is closed on every path.
        """
        try:
            conn = get_db_connection(self.db_name, self.timeout)
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Could not open contact store: {exc}") from exc

        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                if _is_lock_error(exc):
                    raise StoreBusy(f"Contact store is locked: {exc}") from exc
                raise StoreUnavailable(f"Could not start transaction: {exc}") from exc

            try:
                yield ContactSession(conn, self._clock)
            except BaseException:
                _rollback(conn)
                raise

            try:
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                _rollback(conn)
                if _is_lock_error(exc):
                    raise StoreBusy(f"Contact store is locked: {exc}") from exc
                raise StoreUnavailable(f"Could not commit transaction: {exc}") from exc
        finally:
            conn.close()
