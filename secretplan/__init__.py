"""
SecretPlan - Local Encrypted Credential Vault

A zero-knowledge password vault: secrets are encrypted locally and only
ever decrypted on explicit request.

Key Features:
- Strong crypto: Argon2id + HKDF + AES-256-GCM
- Record binding: each ciphertext is tied to its vault and credential id
- Metadata search without decryption (site, username, tags, strength)
- Breach checks via k-anonymity (only a 5-char hash prefix leaves the machine)
- Tamper detection: HMAC-chained, append-only audit log
- Idle auto-lock; keys are wiped from memory on lock

Components:
- crypto.py: All cryptographic operations
- codec.py: Secret <-> bytes
- strength.py: Password strength score
- repository.py / sqlite_repo.py: Storage (in-memory and SQLite)
- breach.py: Pwned Passwords range client
- session.py: Lock state and key lifetime
- vault.py: The Vault manager tying it all together

Usage:
    from secretplan import Vault, Secret

    with Vault.open("vault.db") as vault:
        vault.create("master password")        # first run
        cred = vault.add_credential("github.com", "alice", Secret(password="..."))
        vault.reveal_secret(cred.id).password
"""

from .errors import (
    AuthenticationError,
    BreachCheckError,
    DecryptionError,
    KeyDerivationError,
    MalformedSecretError,
    NotFoundError,
    StorageError,
    VaultError,
    VaultLockedError,
    VaultStateError,
)
from .models import (
    AppSettings,
    AuditEntry,
    BreachState,
    Credential,
    CredentialFilter,
    KdfParams,
    Secret,
)
from .session import VaultState
from .vault import Vault

__version__ = "0.3.0"

__all__ = [
    "AppSettings",
    "AuditEntry",
    "AuthenticationError",
    "BreachCheckError",
    "BreachState",
    "Credential",
    "CredentialFilter",
    "DecryptionError",
    "KdfParams",
    "KeyDerivationError",
    "MalformedSecretError",
    "NotFoundError",
    "Secret",
    "StorageError",
    "Vault",
    "VaultError",
    "VaultLockedError",
    "VaultState",
    "VaultStateError",
]
