"""Repository contract, run against both the in-memory and SQLite stores."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from secretplan.errors import NotFoundError, StorageError
from secretplan.models import (
    AuditEntry,
    BreachState,
    Credential,
    CredentialFilter,
    EncryptedBlob,
    SettingBlob,
)
from secretplan.repository import MemoryRepository
from secretplan.sqlite_repo import SQLiteRepository

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        r = MemoryRepository()
    else:
        r = SQLiteRepository(str(tmp_path / "repo.db"))
    yield r
    r.close()


def make(id, site="example.com", username="alice", **kwargs):
    kwargs.setdefault("secret_enc", EncryptedBlob(nonce=b"n" * 12, ciphertext=b"c" * 20))
    kwargs.setdefault("created_at", T0)
    kwargs.setdefault("updated_at", T0)
    return Credential(id=id, site=site, username=username, **kwargs)


def test_insert_and_get(repo):
    cred = make("c1", tags=frozenset({"work", "email"}), strength=42,
                expires_at=T0 + timedelta(days=30))
    repo.insert(cred)
    assert repo.get("c1") == cred


def test_get_missing_raises(repo):
    with pytest.raises(NotFoundError):
        repo.get("nope")


def test_duplicate_insert_rejected(repo):
    repo.insert(make("c1"))
    with pytest.raises(StorageError):
        repo.insert(make("c1"))


def test_deleted_id_is_never_reused(repo):
    repo.insert(make("c1"))
    repo.delete("c1")
    with pytest.raises(NotFoundError):
        repo.get("c1")
    with pytest.raises(StorageError):
        repo.insert(make("c1"))


def test_delete_missing_raises(repo):
    repo.insert(make("c1"))
    repo.delete("c1")
    with pytest.raises(NotFoundError):
        repo.delete("c1")


def test_update_replaces_row(repo):
    repo.insert(make("c1", tags=frozenset({"old"})))
    updated = make("c1", site="new.example", tags=frozenset({"new"}),
                   breach_state=BreachState.COMPROMISED, updated_at=T0 + timedelta(hours=1))
    repo.update(updated)
    assert repo.get("c1") == updated


def test_update_missing_raises(repo):
    with pytest.raises(NotFoundError):
        repo.update(make("ghost"))


def test_list_ordering(repo):
    repo.insert(make("c3", site="zeta.io"))
    repo.insert(make("c1", site="Alpha.com", username="bob"))
    repo.insert(make("c2", site="alpha.com", username="Alice"))
    assert [c.id for c in repo.list()] == ["c2", "c1", "c3"]


def test_list_filters(repo):
    repo.insert(make("c1", site="example.com", username="a@b.com", strength=30,
                     tags=frozenset({"work"})))
    repo.insert(make("c2", site="github.com", username="Example-User", strength=80,
                     breach_state=BreachState.SAFE, expires_at=T0 + timedelta(days=1)))
    repo.insert(make("c3", site="bank.com", username="carol", strength=90,
                     tags=frozenset({"finance", "work"}), expires_at=T0 + timedelta(days=60)))

    def ids(**kwargs):
        return [c.id for c in repo.list(CredentialFilter(**kwargs))]

    assert ids(search_term="EXAMPLE") == ["c1", "c2"]
    assert ids(tag="Work") == ["c3", "c1"]
    assert ids(min_strength=80) == ["c3", "c2"]
    assert ids(breach_state=BreachState.SAFE) == ["c2"]
    assert ids(breach_state=BreachState.UNKNOWN) == ["c3", "c1"]
    assert ids(expires_before=T0 + timedelta(days=7)) == ["c2"]
    assert ids(tag="work", min_strength=50) == ["c3"]
    assert ids(search_term="nothing") == []


def test_settings(repo):
    assert repo.get_setting("vault_state") is None
    repo.put_setting("vault_state", SettingBlob(value=b"{}"))
    repo.put_setting("app_settings", SettingBlob(value=b"ct", nonce=b"n" * 12))
    repo.put_setting("vault_state", SettingBlob(value=b'{"v":1}'))

    assert repo.get_setting("vault_state") == SettingBlob(value=b'{"v":1}')
    assert repo.get_setting("app_settings") == SettingBlob(value=b"ct", nonce=b"n" * 12)


def test_audit_append_and_list(repo):
    assert repo.last_audit() is None
    for i in range(1, 4):
        repo.append_audit(AuditEntry(i, T0 + timedelta(seconds=i), "create", f"c{i}",
                                     b"p" * 32 if i > 1 else None, bytes([i]) * 32))

    assert repo.last_audit().id == 3
    assert [e.id for e in repo.list_audit()] == [3, 2, 1]
    assert [e.id for e in repo.list_audit(limit=2)] == [3, 2]
    assert [e.id for e in repo.list_audit(newest_first=False)] == [1, 2, 3]
    assert repo.list_audit(newest_first=False)[0].timestamp == T0 + timedelta(seconds=1)


def test_audit_ids_must_increase(repo):
    repo.append_audit(AuditEntry(1, T0, "unlock", mac=b"m" * 32))
    with pytest.raises(StorageError):
        repo.append_audit(AuditEntry(1, T0, "lock", mac=b"m" * 32))


def test_atomic_rolls_back(repo):
    repo.insert(make("keep"))
    with pytest.raises(RuntimeError):
        with repo.atomic():
            repo.insert(make("c1"))
            repo.delete("keep")
            repo.append_audit(AuditEntry(1, T0, "create", "c1", mac=b"m" * 32))
            raise RuntimeError("boom")

    assert [c.id for c in repo.list()] == ["keep"]
    assert repo.last_audit() is None


def test_atomic_commits(repo):
    with repo.atomic():
        repo.insert(make("c1"))
        repo.append_audit(AuditEntry(1, T0, "create", "c1", mac=b"m" * 32))
    assert repo.get("c1").id == "c1"
    assert repo.last_audit().subject_id == "c1"


def test_closed_repository_raises(repo):
    repo.close()
    with pytest.raises(StorageError):
        repo.list()


def test_sqlite_persists_across_connections(tmp_path):
    path = str(tmp_path / "vault.db")
    repo = SQLiteRepository(path)
    repo.insert(make("c1", tags=frozenset({"work"})))
    repo.close()

    repo = SQLiteRepository(path)
    try:
        assert repo.get("c1").tags == frozenset({"work"})
    finally:
        repo.close()


def test_sqlite_audit_log_is_append_only(sqlite_repo):
    sqlite_repo.append_audit(AuditEntry(1, T0, "create", "c1", mac=b"m" * 32))
    with pytest.raises(sqlite3.DatabaseError):
        sqlite_repo.conn.execute("UPDATE audit_log SET action = 'reveal'")
    with pytest.raises(sqlite3.DatabaseError):
        sqlite_repo.conn.execute("DELETE FROM audit_log")
    assert sqlite_repo.last_audit().action == "create"


def test_sqlite_rejects_bad_breach_state(sqlite_repo):
    sqlite_repo.insert(make("c1"))
    with pytest.raises(sqlite3.IntegrityError):
        sqlite_repo.conn.execute("UPDATE credentials SET breach_state = 9")


def test_naive_expiry_filter(repo):
    """Naive datetimes in rows and filters are compared as UTC."""
    repo.insert(make("c1", expires_at=T0 + timedelta(days=1)))
    repo.insert(make("c2", expires_at=datetime(2024, 3, 1)))

    found = repo.list(CredentialFilter(expires_before=datetime(2024, 2, 1)))
    assert [c.id for c in found] == ["c1"]
