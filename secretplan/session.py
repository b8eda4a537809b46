"""
SecretPlan - Vault Session

One object per open vault holding the lock state and, while unlocked, the
key material. Nothing here is global: every Vault owns its own session, so
tests can run several side by side.

States:
    UNINITIALIZED ──create──▶ UNLOCKED ◀──unlock── LOCKED
                                  └──────lock/idle──────▶┘

Keys exist only in the UNLOCKED state and are wiped in place when the
session leaves it.
"""

import enum
import threading
import time
import weakref
from typing import Callable, Dict, List

from . import crypto
from .errors import VaultLockedError


class VaultState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class SessionKeys:
    """
    Key material of one unlocked session.

    Only obtainable from `VaultSession.keys` while UNLOCKED; every
    operation that needs a key receives it from there.
    """

    __slots__ = ("vault_id", "vault_key", "content_key", "audit_key")

    def __init__(self, vault_id: str, vault_key: bytearray, subkeys: Dict[str, bytearray]):
        self.vault_id = vault_id
        self.vault_key = vault_key
        self.content_key = subkeys["content_key"]
        self.audit_key = subkeys["audit_key"]

    @classmethod
    def from_vault_key(cls, vault_id: str, vault_key: bytearray) -> "SessionKeys":
        return cls(vault_id, vault_key, crypto.derive_subkeys(vault_key))

    def wipe(self) -> None:
        """Zero every key in place."""
        crypto.wipe(self.vault_key)
        crypto.wipe(self.content_key)
        crypto.wipe(self.audit_key)

    def __repr__(self) -> str:
        return f"<SessionKeys vault_id={self.vault_id}>"


def _wipe_held(held: List["SessionKeys"]) -> None:
    """Finalizer: wipe whatever keys a dropped session still holds."""
    for keys in held:
        keys.wipe()
    held.clear()


class VaultSession:
    """
    Lock state + key lifetime + the mutex serializing vault operations.

    The mutex is re-entrant so a guarded operation can lock the session
    (idle auto-lock) without deadlocking on itself.

    Keys still held when the session is garbage collected, or when the
    interpreter exits, are wiped by a finalizer.
    """

    def __init__(self, state: VaultState = VaultState.LOCKED,
                 monotonic: Callable[[], float] = time.monotonic):
        self.mutex = threading.RLock()
        self._state = state
        # At most one SessionKeys; shared with the finalizer, which must not reference self
        self._held: List[SessionKeys] = []
        self._finalizer = weakref.finalize(self, _wipe_held, self._held)
        self._monotonic = monotonic
        self._auto_lock_seconds = 0.0
        self._last_activity = monotonic()

    @property
    def state(self) -> VaultState:
        return self._state

    @property
    def keys(self) -> SessionKeys:
        """Keys of the current session; VaultLockedError unless UNLOCKED."""
        if self._state is not VaultState.UNLOCKED or not self._held:
            raise VaultLockedError()
        return self._held[0]

    def open(self, keys: SessionKeys, auto_lock_minutes: int = 0) -> None:
        """Enter UNLOCKED with `keys`, wiping any keys held before."""
        with self.mutex:
            for old in self._held:
                if old is not keys:
                    old.wipe()
            self._held[:] = [keys]
            self._state = VaultState.UNLOCKED
            self.set_auto_lock(auto_lock_minutes)
            self.touch()

    def close(self) -> None:
        """Wipe keys and enter LOCKED. No-op unless UNLOCKED."""
        with self.mutex:
            _wipe_held(self._held)
            if self._state is VaultState.UNLOCKED:
                self._state = VaultState.LOCKED

    def set_auto_lock(self, minutes: int) -> None:
        self._auto_lock_seconds = max(0, minutes) * 60.0

    def touch(self) -> None:
        """Record activity (resets the idle timer)."""
        self._last_activity = self._monotonic()

    def idle_expired(self) -> bool:
        """True if UNLOCKED and idle for longer than the auto-lock timeout."""
        if self._state is not VaultState.UNLOCKED or not self._auto_lock_seconds:
            return False
        return self._monotonic() - self._last_activity > self._auto_lock_seconds
