"""
SecretPlan - SQLite Repository

Durable CredentialRepository on a single SQLite file.

Database structure:
- settings: public vault state and encrypted blobs, keyed by name
- credentials: index records + ciphertext container (nonce, ciphertext)
- credential_tags: one row per (credential, tag)
- retired_ids: ids of deleted credentials (never reused)
- audit_log: append-only, HMAC-chained rows; triggers reject UPDATE/DELETE

Every write commits before returning (synchronous=FULL). `atomic()`
groups several writes into one transaction.
"""

import contextlib
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from .errors import NotFoundError, StorageError
from .models import (
    AuditEntry,
    BreachState,
    Credential,
    CredentialFilter,
    EncryptedBlob,
    SettingBlob,
)
from .repository import CredentialRepository

logger = logging.getLogger(__name__)


# =============================================================================
# DATABASE SCHEMA
# =============================================================================

SCHEMA = """
-- Named blobs: nonce is NULL for public values (KDF salt/params)
CREATE TABLE IF NOT EXISTS settings (
    name TEXT PRIMARY KEY,
    nonce BLOB,
    value BLOB NOT NULL
);

-- Credential index records (plaintext metadata + opaque ciphertext)
CREATE TABLE IF NOT EXISTS credentials (
    id TEXT PRIMARY KEY,
    site TEXT NOT NULL,
    username TEXT NOT NULL,
    secret_nonce BLOB NOT NULL,
    secret_ciphertext BLOB NOT NULL,
    created_at TEXT NOT NULL,          -- ISO-8601 UTC, microseconds
    updated_at TEXT NOT NULL,
    expires_at TEXT,
    strength INTEGER NOT NULL CHECK (strength BETWEEN 0 AND 100),
    breach_state INTEGER NOT NULL DEFAULT 0 CHECK (breach_state IN (0, 1, 2))
);

CREATE INDEX IF NOT EXISTS idx_credentials_site ON credentials(site);
CREATE INDEX IF NOT EXISTS idx_credentials_username ON credentials(username);

CREATE TABLE IF NOT EXISTS credential_tags (
    credential_id TEXT NOT NULL REFERENCES credentials(id) ON DELETE CASCADE,
    tag TEXT NOT NULL,
    PRIMARY KEY (credential_id, tag)
);

CREATE INDEX IF NOT EXISTS idx_credential_tags_tag ON credential_tags(tag);

-- Deleted ids stay here so they are never handed out again
CREATE TABLE IF NOT EXISTS retired_ids (
    id TEXT PRIMARY KEY
);

-- Audit log (append-only, tamper-evident chain)
CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    action TEXT NOT NULL,
    subject_id TEXT,
    prev_mac BLOB,
    mac BLOB
);

CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp);

CREATE TRIGGER IF NOT EXISTS audit_log_no_update BEFORE UPDATE ON audit_log
BEGIN
    SELECT RAISE(ABORT, 'audit log is append-only');
END;

CREATE TRIGGER IF NOT EXISTS audit_log_no_delete BEFORE DELETE ON audit_log
BEGIN
    SELECT RAISE(ABORT, 'audit log is append-only');
END;
"""

# SQLite PRAGMAs for crash safety and integrity
PRAGMAS = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=FULL;
PRAGMA foreign_keys=ON;
PRAGMA secure_delete=ON;
"""

_CREDENTIAL_COLUMNS = """id, site, username, secret_nonce, secret_ciphertext,
                         created_at, updated_at, expires_at, strength, breach_state"""


def _to_db(dt: Optional[datetime]) -> Optional[str]:
    """Fixed-width ISO-8601 UTC text, so string order is time order."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _lower(value: Optional[str]) -> Optional[str]:
    # Python's lower() so non-ASCII matching agrees with MemoryRepository
    return value.lower() if value is not None else None


class SQLiteRepository(CredentialRepository):
    """
    CredentialRepository backed by sqlite3.

    Usage:
        repo = SQLiteRepository("vault.db")
        vault = Vault(repo)
        ...
        repo.close()
    """

    def __init__(self, db_path: str):
        """
        Open (or create) the database file and apply the schema.

        Raises:
            StorageError: file can't be opened or the schema can't be created
        """
        self.db_path = db_path
        self._lock = threading.RLock()
        self._depth = 0
        try:
            # Autocommit mode: transactions are opened explicitly in atomic()
            self.conn: Optional[sqlite3.Connection] = sqlite3.connect(
                db_path, isolation_level=None, check_same_thread=False
            )
            self.conn.row_factory = sqlite3.Row
            self.conn.create_function("py_lower", 1, _lower, deterministic=True)
            self.conn.executescript(PRAGMAS)
            self.conn.executescript(SCHEMA)
        except sqlite3.Error as exc:
            logger.error("Failed to open vault database %s: %s", db_path, exc)
            raise StorageError(f"cannot open vault database: {exc}") from exc

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    @contextlib.contextmanager
    def atomic(self) -> Iterator[None]:
        """
        Run the block in one transaction; nested blocks join the outer one.

        Commits on success, rolls back if the block raises.
        """
        with self._lock:
            conn = self._connection()
            outermost = self._depth == 0
            try:
                if outermost:
                    conn.execute("BEGIN IMMEDIATE")
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                if outermost:
                    conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if outermost and conn.in_transaction:
                    conn.execute("ROLLBACK")
                logger.error("Vault database error: %s", exc)
                raise StorageError(f"vault database error: {exc}") from exc
            except BaseException:
                if outermost and conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    @contextlib.contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._connection()
            except sqlite3.Error as exc:
                logger.error("Vault database error: %s", exc)
                raise StorageError(f"vault database error: {exc}") from exc

    def _connection(self) -> sqlite3.Connection:
        if self.conn is None:
            raise StorageError("repository is closed")
        return self.conn

    # =========================================================================
    # CREDENTIALS
    # =========================================================================

    def insert(self, credential: Credential) -> None:
        with self.atomic():
            conn = self._connection()
            retired = conn.execute(
                "SELECT 1 FROM retired_ids WHERE id = ?", (credential.id,)
            ).fetchone()
            if retired:
                raise StorageError(f"credential id {credential.id} already used")
            try:
                conn.execute(
                    f"""INSERT INTO credentials ({_CREDENTIAL_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    self._row_values(credential),
                )
            except sqlite3.IntegrityError as exc:
                raise StorageError(f"credential id {credential.id} already used") from exc
            self._write_tags(conn, credential)

    def update(self, credential: Credential) -> None:
        with self.atomic():
            conn = self._connection()
            values = self._row_values(credential)
            cur = conn.execute(
                """UPDATE credentials SET
                       site = ?, username = ?, secret_nonce = ?, secret_ciphertext = ?,
                       created_at = ?, updated_at = ?, expires_at = ?, strength = ?,
                       breach_state = ?
                   WHERE id = ?""",
                values[1:] + (credential.id,),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Credential {credential.id} not found")
            conn.execute("DELETE FROM credential_tags WHERE credential_id = ?", (credential.id,))
            self._write_tags(conn, credential)

    def delete(self, credential_id: str) -> None:
        with self.atomic():
            conn = self._connection()
            cur = conn.execute("DELETE FROM credentials WHERE id = ?", (credential_id,))
            if cur.rowcount == 0:
                raise NotFoundError(f"Credential {credential_id} not found")
            conn.execute("INSERT OR IGNORE INTO retired_ids (id) VALUES (?)", (credential_id,))

    def get(self, credential_id: str) -> Credential:
        with self._reading() as conn:
            row = conn.execute(
                f"SELECT {_CREDENTIAL_COLUMNS} FROM credentials WHERE id = ?",
                (credential_id,),
            ).fetchone()
            if not row:
                raise NotFoundError(f"Credential {credential_id} not found")
            return self._credential_from_row(conn, row)

    def list(self, filter: Optional[CredentialFilter] = None) -> List[Credential]:
        """
        Filtered listing, all conditions combined with AND.

        search_term is a case-insensitive substring match over site and
        username; tag is an exact (lowercased) tag match.
        """
        conditions = []
        params: list = []

        if filter is not None:
            if filter.search_term:
                conditions.append(
                    "(instr(py_lower(site), ?) > 0 OR instr(py_lower(username), ?) > 0)"
                )
                term = filter.search_term.lower()
                params.extend([term, term])

            if filter.tag:
                conditions.append(
                    "id IN (SELECT credential_id FROM credential_tags WHERE tag = ?)"
                )
                params.append(filter.tag.strip().lower())

            if filter.min_strength is not None:
                conditions.append("strength >= ?")
                params.append(int(filter.min_strength))

            if filter.breach_state is not None:
                conditions.append("breach_state = ?")
                params.append(int(filter.breach_state))

            if filter.expires_before is not None:
                conditions.append("expires_at IS NOT NULL AND expires_at < ?")
                params.append(_to_db(filter.expires_before))

        query = f"SELECT {_CREDENTIAL_COLUMNS} FROM credentials"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY py_lower(site), py_lower(username), id"

        with self._reading() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._credential_from_row(conn, row) for row in rows]

    # =========================================================================
    # SETTINGS
    # =========================================================================

    def get_setting(self, name: str) -> Optional[SettingBlob]:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT nonce, value FROM settings WHERE name = ?", (name,)
            ).fetchone()
        if not row:
            return None
        nonce = bytes(row["nonce"]) if row["nonce"] is not None else None
        return SettingBlob(value=bytes(row["value"]), nonce=nonce)

    def put_setting(self, name: str, blob: SettingBlob) -> None:
        with self.atomic():
            self._connection().execute(
                "INSERT OR REPLACE INTO settings (name, nonce, value) VALUES (?, ?, ?)",
                (name, blob.nonce, blob.value),
            )

    # =========================================================================
    # AUDIT LOG
    # =========================================================================

    def append_audit(self, entry: AuditEntry) -> None:
        with self.atomic():
            last = self._connection().execute("SELECT MAX(id) FROM audit_log").fetchone()[0]
            if last is not None and entry.id <= last:
                raise StorageError(f"audit id {entry.id} is not monotonic")
            try:
                self._connection().execute(
                    """INSERT INTO audit_log (id, timestamp, action, subject_id, prev_mac, mac)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (entry.id, _to_db(entry.timestamp), entry.action,
                     entry.subject_id, entry.prev_mac, entry.mac),
                )
            except sqlite3.IntegrityError as exc:
                raise StorageError(f"audit id {entry.id} already used") from exc

    def last_audit(self) -> Optional[AuditEntry]:
        rows = self.list_audit(limit=1, newest_first=True)
        return rows[0] if rows else None

    def list_audit(self, limit: Optional[int] = None, newest_first: bool = True) -> List[AuditEntry]:
        order = "DESC" if newest_first else "ASC"
        query = f"""SELECT id, timestamp, action, subject_id, prev_mac, mac
                    FROM audit_log ORDER BY id {order}"""
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (int(limit),)

        with self._reading() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            AuditEntry(
                id=row["id"],
                timestamp=_from_db(row["timestamp"]),
                action=row["action"],
                subject_id=row["subject_id"],
                prev_mac=bytes(row["prev_mac"]) if row["prev_mac"] is not None else None,
                mac=bytes(row["mac"]) if row["mac"] is not None else None,
            )
            for row in rows
        ]

    def close(self) -> None:
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    @staticmethod
    def _row_values(credential: Credential) -> tuple:
        if credential.secret_enc is None:
            raise StorageError(f"credential {credential.id} has no ciphertext")
        return (
            credential.id,
            credential.site,
            credential.username,
            credential.secret_enc.nonce,
            credential.secret_enc.ciphertext,
            _to_db(credential.created_at),
            _to_db(credential.updated_at),
            _to_db(credential.expires_at),
            int(credential.strength),
            int(credential.breach_state),
        )

    @staticmethod
    def _write_tags(conn: sqlite3.Connection, credential: Credential) -> None:
        conn.executemany(
            "INSERT INTO credential_tags (credential_id, tag) VALUES (?, ?)",
            [(credential.id, tag) for tag in sorted(credential.tags)],
        )

    @staticmethod
    def _credential_from_row(conn: sqlite3.Connection, row: sqlite3.Row) -> Credential:
        tags = conn.execute(
            "SELECT tag FROM credential_tags WHERE credential_id = ?", (row["id"],)
        ).fetchall()
        return Credential(
            id=row["id"],
            site=row["site"],
            username=row["username"],
            secret_enc=EncryptedBlob(
                nonce=bytes(row["secret_nonce"]),
                ciphertext=bytes(row["secret_ciphertext"]),
            ),
            tags=frozenset(t["tag"] for t in tags),
            created_at=_from_db(row["created_at"]),
            updated_at=_from_db(row["updated_at"]),
            expires_at=_from_db(row["expires_at"]),
            strength=row["strength"],
            breach_state=BreachState(row["breach_state"]),
        )
