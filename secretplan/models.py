"""
SecretPlan - Data Model

Plain dataclasses shared by every layer:
- Credential: index record, always cleartext except for `secret_enc`
- Secret: payload that is only ever decrypted on demand
- AuditEntry: one append-only row of the audit log
- KdfParams / AppSettings / CredentialFilter: parameters and options
"""

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Iterable, Optional

from . import config


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert to aware UTC; naive datetimes are taken to be UTC already."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_tags(tags: Optional[Iterable[str]]) -> FrozenSet[str]:
    """Lowercase, strip and de-duplicate tags; empty tags are dropped."""
    if not tags:
        return frozenset()
    if isinstance(tags, str):
        tags = [tags]
    return frozenset(t.strip().lower() for t in tags if t and t.strip())


class BreachState(enum.IntEnum):
    """Result of the last explicit breach check (stored as an integer)."""

    UNKNOWN = 0
    SAFE = 1
    COMPROMISED = 2


@dataclass(frozen=True)
class EncryptedBlob:
    """AEAD output: random nonce plus ciphertext (tag appended)."""

    nonce: bytes
    ciphertext: bytes

    def __repr__(self) -> str:
        return f"EncryptedBlob(nonce=<{len(self.nonce)} bytes>, ciphertext=<{len(self.ciphertext)} bytes>)"


@dataclass(frozen=True)
class KdfParams:
    """Argon2id cost parameters, persisted next to the salt."""

    memory_cost: int = config.ARGON2_MEMORY_COST   # KiB
    time_cost: int = config.ARGON2_TIME_COST
    parallelism: int = config.ARGON2_PARALLELISM

    def to_dict(self) -> dict:
        return {
            "memory_cost": self.memory_cost,
            "time_cost": self.time_cost,
            "parallelism": self.parallelism,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "KdfParams":
        return cls(
            memory_cost=int(data["memory_cost"]),
            time_cost=int(data["time_cost"]),
            parallelism=int(data["parallelism"]),
        )


@dataclass
class Secret:
    """Decrypted payload of a credential. Never cached, never logged."""

    password: str
    notes: Optional[str] = None
    totp_seed: Optional[str] = None
    custom_fields: Dict[str, str] = field(default_factory=dict)

    def __repr__(self) -> str:
        # Keep plaintext out of tracebacks and logs
        return f"Secret(password=<hidden>, fields={sorted(self.custom_fields)})"


@dataclass
class Credential:
    """
    Index record of one stored login.

    Everything except `secret_enc` is cleartext and searchable. The vault
    hands records back to callers with `secret_enc` stripped (see `public()`).
    """

    id: str
    site: str
    username: str
    secret_enc: Optional[EncryptedBlob] = field(default=None, repr=False)
    tags: FrozenSet[str] = frozenset()
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    strength: int = 0
    breach_state: BreachState = BreachState.UNKNOWN

    def public(self) -> "Credential":
        """Copy without the ciphertext container."""
        return replace(self, secret_enc=None)


@dataclass(frozen=True)
class AuditEntry:
    """One append-only audit row; `mac` chains it to the previous row."""

    id: int
    timestamp: datetime
    action: str
    subject_id: Optional[str] = None
    prev_mac: Optional[bytes] = field(default=None, repr=False)
    mac: Optional[bytes] = field(default=None, repr=False)


@dataclass(frozen=True)
class SettingBlob:
    """
    Value stored in the settings table.

    `nonce` is None for public values (KDF salt/params) that must be
    readable before any key exists.
    """

    value: bytes
    nonce: Optional[bytes] = None


@dataclass
class CredentialFilter:
    """Search criteria; every field is optional and they combine with AND."""

    search_term: Optional[str] = None
    tag: Optional[str] = None
    min_strength: Optional[int] = None
    breach_state: Optional[BreachState] = None
    expires_before: Optional[datetime] = None


@dataclass
class AppSettings:
    """User preferences stored encrypted in the settings table."""

    auto_lock_timeout: int = config.DEFAULT_AUTO_LOCK_MINUTES   # minutes, 0 = never

    def to_dict(self) -> dict:
        return {"auto_lock_timeout": self.auto_lock_timeout}

    @classmethod
    def from_dict(cls, data: dict) -> "AppSettings":
        return cls(
            auto_lock_timeout=int(data.get("auto_lock_timeout", config.DEFAULT_AUTO_LOCK_MINUTES)),
        )
