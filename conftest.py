"""Shared fixtures: cheap KDF costs, fake clocks and an offline breach source."""

from datetime import datetime, timedelta, timezone

import pytest

from secretplan.breach import BreachOracleClient, RangeSource
from secretplan.models import KdfParams
from secretplan.repository import MemoryRepository
from secretplan.sqlite_repo import SQLiteRepository
from secretplan.vault import Vault

# Argon2id at test speed; the real defaults take a noticeable fraction of a second
FAST_KDF = KdfParams(memory_cost=1024, time_cost=1, parallelism=1)

MASTER = "Tr0ub4dor&3"


class FakeRangeSource(RangeSource):
    """Serves range responses from a {full uppercase sha1: count} dict."""

    def __init__(self, breached=None, error=None):
        self.breached = dict(breached or {})
        self.error = error
        self.prefixes = []
        self.before_reply = None

    def fetch_range(self, prefix):
        self.prefixes.append(prefix)
        if self.before_reply:
            self.before_reply()
        if self.error:
            raise self.error
        return [(h[5:], n) for h, n in self.breached.items() if h.startswith(prefix)]


class FakeMonotonic:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def range_source():
    return FakeRangeSource()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def vault(range_source, monotonic, clock):
    """Freshly created, unlocked in-memory vault."""
    v = Vault(
        MemoryRepository(),
        breach_oracle=BreachOracleClient(range_source),
        clock=clock,
        monotonic=monotonic,
    )
    v.create(MASTER, FAST_KDF)
    yield v
    v.close()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "vault.db")


@pytest.fixture
def sqlite_repo(db_path):
    repo = SQLiteRepository(db_path)
    yield repo
    repo.close()
