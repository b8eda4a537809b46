"""
SecretPlan - Credential Repository

Storage contract used by the vault, plus an in-memory implementation.

The repository only ever sees the index record and the opaque ciphertext
container; it has no key and never decrypts. Three stores:
- credentials: one row per Credential, keyed by id
- settings: name → SettingBlob (public or encrypted)
- audit log: append-only; there is no update or delete

Ids are unique for the lifetime of a store: a deleted id is retired and
`insert` refuses it.
"""

import abc
import contextlib
from dataclasses import replace
from typing import Dict, Iterator, List, Optional, Set

from .errors import NotFoundError, StorageError
from .models import AuditEntry, Credential, CredentialFilter, SettingBlob, as_utc


class CredentialRepository(abc.ABC):
    """Durable storage for credentials, settings and audit rows."""

    # Credentials ---------------------------------------------------------

    @abc.abstractmethod
    def insert(self, credential: Credential) -> None:
        """Store a new row. StorageError if the id exists or was ever used."""

    @abc.abstractmethod
    def update(self, credential: Credential) -> None:
        """Replace an existing row. NotFoundError if absent."""

    @abc.abstractmethod
    def delete(self, credential_id: str) -> None:
        """Remove a row and retire its id. NotFoundError if absent."""

    @abc.abstractmethod
    def get(self, credential_id: str) -> Credential:
        """Fetch one row. NotFoundError if absent."""

    @abc.abstractmethod
    def list(self, filter: Optional[CredentialFilter] = None) -> List[Credential]:
        """Rows matching every set field of `filter`, ordered by site then username."""

    # Settings ------------------------------------------------------------

    @abc.abstractmethod
    def get_setting(self, name: str) -> Optional[SettingBlob]:
        """Stored blob for `name`, or None."""

    @abc.abstractmethod
    def put_setting(self, name: str, blob: SettingBlob) -> None:
        """Insert or replace the blob for `name`."""

    # Audit ---------------------------------------------------------------

    @abc.abstractmethod
    def append_audit(self, entry: AuditEntry) -> None:
        """Append one audit row. Fails only on storage errors."""

    @abc.abstractmethod
    def last_audit(self) -> Optional[AuditEntry]:
        """Row with the highest id, or None for an empty log."""

    @abc.abstractmethod
    def list_audit(self, limit: Optional[int] = None, newest_first: bool = True) -> List[AuditEntry]:
        """Audit rows ordered by id."""

    # Lifecycle -----------------------------------------------------------

    @abc.abstractmethod
    def atomic(self) -> contextlib.AbstractContextManager:
        """Context manager grouping writes into one all-or-nothing commit."""

    def close(self) -> None:
        """Release the underlying storage handle."""


def matches(credential: Credential, filter: Optional[CredentialFilter]) -> bool:
    """True if `credential` satisfies every set field of `filter`."""
    if filter is None:
        return True

    if filter.search_term:
        term = filter.search_term.lower()
        if term not in credential.site.lower() and term not in credential.username.lower():
            return False

    if filter.tag and filter.tag.strip().lower() not in credential.tags:
        return False

    if filter.min_strength is not None and credential.strength < filter.min_strength:
        return False

    if filter.breach_state is not None and credential.breach_state != filter.breach_state:
        return False

    if filter.expires_before is not None:
        expires_at = as_utc(credential.expires_at)
        if expires_at is None or expires_at >= as_utc(filter.expires_before):
            return False

    return True


class MemoryRepository(CredentialRepository):
    """
    Dict-backed repository.

    Used by tests and by callers that want a throwaway vault. `atomic()`
    snapshots the stores and restores them if the block raises.
    """

    def __init__(self):
        self._credentials: Dict[str, Credential] = {}
        self._retired: Set[str] = set()
        self._settings: Dict[str, SettingBlob] = {}
        self._audit: List[AuditEntry] = []
        self._closed = False

    def insert(self, credential: Credential) -> None:
        self._check_open()
        if credential.id in self._credentials or credential.id in self._retired:
            raise StorageError(f"credential id {credential.id} already used")
        self._credentials[credential.id] = replace(credential)

    def update(self, credential: Credential) -> None:
        self._check_open()
        if credential.id not in self._credentials:
            raise NotFoundError(f"Credential {credential.id} not found")
        self._credentials[credential.id] = replace(credential)

    def delete(self, credential_id: str) -> None:
        self._check_open()
        if credential_id not in self._credentials:
            raise NotFoundError(f"Credential {credential_id} not found")
        del self._credentials[credential_id]
        self._retired.add(credential_id)

    def get(self, credential_id: str) -> Credential:
        self._check_open()
        try:
            return replace(self._credentials[credential_id])
        except KeyError:
            raise NotFoundError(f"Credential {credential_id} not found") from None

    def list(self, filter: Optional[CredentialFilter] = None) -> List[Credential]:
        self._check_open()
        rows = [replace(c) for c in self._credentials.values() if matches(c, filter)]
        rows.sort(key=lambda c: (c.site.lower(), c.username.lower(), c.id))
        return rows

    def get_setting(self, name: str) -> Optional[SettingBlob]:
        self._check_open()
        return self._settings.get(name)

    def put_setting(self, name: str, blob: SettingBlob) -> None:
        self._check_open()
        self._settings[name] = blob

    def append_audit(self, entry: AuditEntry) -> None:
        self._check_open()
        if self._audit and entry.id <= self._audit[-1].id:
            raise StorageError(f"audit id {entry.id} is not monotonic")
        self._audit.append(entry)

    def last_audit(self) -> Optional[AuditEntry]:
        self._check_open()
        return self._audit[-1] if self._audit else None

    def list_audit(self, limit: Optional[int] = None, newest_first: bool = True) -> List[AuditEntry]:
        self._check_open()
        rows = list(reversed(self._audit)) if newest_first else list(self._audit)
        return rows[:limit] if limit is not None else rows

    @contextlib.contextmanager
    def atomic(self) -> Iterator[None]:
        self._check_open()
        snapshot = (
            dict(self._credentials),
            set(self._retired),
            dict(self._settings),
            list(self._audit),
        )
        try:
            yield
        except BaseException:
            self._credentials, self._retired, self._settings, self._audit = snapshot
            raise

    def close(self) -> None:
        self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            raise StorageError("repository is closed")
