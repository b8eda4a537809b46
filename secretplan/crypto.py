"""
SecretPlan - Cryptography Module

Every cryptographic operation of the vault lives here:

    1. Master Password → Argon2id → Vault Key (32 bytes)
    2. Vault Key → HKDF → Subkeys (content, audit)
    3. Each secret → AES-256-GCM under the content key, with a fresh random
       nonce and associated data naming the owning record
    4. Audit rows → HMAC chain under the audit key

Key material is handed around as `bytearray` so it can be wiped in place
with `wipe()` once the session that owns it ends.
"""

import hmac
import hashlib
import json
import os
from typing import Dict, Iterable, Optional

from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from . import config
from .errors import DecryptionError, KeyDerivationError
from .models import EncryptedBlob, KdfParams


# =============================================================================
# Key Derivation
# =============================================================================

def generate_salt() -> bytes:
    """Random salt for a new vault (public, stored in plaintext)."""
    return os.urandom(config.SALT_SIZE)


def validate_kdf_params(kdf_params: KdfParams) -> None:
    """
    Reject parameters Argon2id cannot run with.

    Raises:
        KeyDerivationError: zero/negative costs, or memory below 8 KiB per lane
    """
    if kdf_params.parallelism < 1:
        raise KeyDerivationError("parallelism must be at least 1")
    if kdf_params.time_cost < 1:
        raise KeyDerivationError("time_cost must be at least 1")
    if kdf_params.memory_cost < 8 * kdf_params.parallelism:
        raise KeyDerivationError(
            f"memory_cost must be at least {8 * kdf_params.parallelism} KiB "
            f"for parallelism={kdf_params.parallelism}"
        )


def derive_key(master_password: str, salt: bytes, kdf_params: KdfParams) -> bytearray:
    """
    Derive the vault key from the master password using Argon2id.

    Deterministic for the same password, salt and parameters, which is
    what lets unlock reproduce the key created at vault creation.

    Args:
        master_password: User's master password
        salt: Random salt stored with the vault (NOT secret)
        kdf_params: memory_cost (KiB), time_cost, parallelism

    Returns:
        32-byte key as a wipeable bytearray

    Raises:
        KeyDerivationError: invalid parameters or salt
    """
    validate_kdf_params(kdf_params)
    if len(salt) < 8:
        raise KeyDerivationError("salt must be at least 8 bytes")

    try:
        raw = hash_secret_raw(
            secret=master_password.encode("utf-8"),
            salt=salt,
            time_cost=kdf_params.time_cost,
            memory_cost=kdf_params.memory_cost,
            parallelism=kdf_params.parallelism,
            hash_len=config.KEY_SIZE,
            type=Type.ID,
        )
    except HashingError as exc:
        raise KeyDerivationError(f"Argon2id failed: {exc}") from exc
    return bytearray(raw)


def derive_subkeys(vault_key: bytearray) -> Dict[str, bytearray]:
    """
    Derive independent subkeys from the vault key using HKDF.

    The `info` string gives domain separation, so the key encrypting
    secrets is never the key authenticating the audit log.

    Returns:
        Dictionary with:
        - content_key: encrypts secrets, settings and the unlock verifier
        - audit_key: HMAC key for the audit chain
    """
    def hkdf(info: str) -> bytearray:
        h = HKDF(
            algorithm=hashes.SHA256(),
            length=config.KEY_SIZE,
            salt=None,
            info=info.encode("utf-8"),
        )
        return bytearray(h.derive(bytes(vault_key)))

    return {
        "content_key": hkdf("secretplan-content-v1"),
        "audit_key": hkdf("secretplan-audit-v1"),
    }


def wipe(buf: Optional[bytearray]) -> None:
    """Overwrite key material in place. Safe to call on None or twice."""
    if buf is None:
        return
    for i in range(len(buf)):
        buf[i] = 0


# =============================================================================
# Canonical Associated Data
# =============================================================================

def canonical_ad(ad: dict) -> bytes:
    """
    Convert associated data to canonical JSON bytes.

    Same dict always produces the same bytes: keys sorted, compact
    separators, UTF-8 without escaping non-ASCII.
    """
    json_str = json.dumps(ad, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
    return json_str.encode("utf-8")


def credential_ad(vault_id: str, credential_id: str) -> bytes:
    """
    Associated data binding a secret to its owning record.

    Moving one row's ciphertext into another row changes `credential_id`
    and makes decryption fail.
    """
    return canonical_ad({
        "ctx": "credential_secret",
        "vault_id": vault_id,
        "credential_id": credential_id,
        "aead": config.AEAD_ALGO,
    })


# =============================================================================
# Encryption (AES-256-GCM)
# =============================================================================

def encrypt(plaintext: bytes, key: bytearray, associated_data: bytes) -> EncryptedBlob:
    """
    Encrypt with AES-256-GCM.

    The nonce is generated here for every call and is never accepted from
    the caller, so two encryptions can not share one.

    Args:
        plaintext: Data to encrypt
        key: 32-byte key
        associated_data: Context authenticated alongside the ciphertext

    Returns:
        EncryptedBlob(nonce, ciphertext) - ciphertext carries the 16-byte tag
    """
    nonce = os.urandom(config.NONCE_SIZE)
    aesgcm = AESGCM(bytes(key))
    ciphertext = aesgcm.encrypt(nonce, plaintext, associated_data)
    return EncryptedBlob(nonce=nonce, ciphertext=ciphertext)


def decrypt(nonce: bytes, ciphertext: bytes, key: bytearray, associated_data: bytes) -> bytes:
    """
    Decrypt AES-256-GCM ciphertext.

    Returns the whole plaintext or nothing.

    Raises:
        DecryptionError: wrong key, tampered ciphertext/nonce, or
            associated data that doesn't match encryption exactly
    """
    if len(nonce) != config.NONCE_SIZE or len(ciphertext) < config.TAG_SIZE:
        raise DecryptionError("authentication failed")
    aesgcm = AESGCM(bytes(key))
    try:
        return aesgcm.decrypt(nonce, ciphertext, associated_data)
    except InvalidTag as exc:
        raise DecryptionError("authentication failed") from exc


# =============================================================================
# Audit Log
# =============================================================================

def compute_audit_mac(
    audit_key: bytearray,
    entry_id: int,
    timestamp: str,
    action: str,
    subject_id: Optional[str],
    prev_mac: Optional[bytes],
) -> bytes:
    """
    Compute the HMAC of one audit row.

    Each row's MAC covers the previous row's MAC, so MAC1 → MAC2 → MAC3 ...
    forms a chain: editing, dropping or reordering a row breaks it.

    Args:
        audit_key: From derive_subkeys()
        entry_id: Monotonic row id
        timestamp: ISO-8601 timestamp as stored
        action: What happened ("create", "reveal", ...)
        subject_id: Credential id, if the action concerns one
        prev_mac: Previous row's MAC (None for the first row)

    Returns:
        32-byte HMAC-SHA256
    """
    message = {
        "id": entry_id,
        "ts": timestamp,
        "action": action,
        "subject_id": subject_id or "",
        "prev_mac": prev_mac.hex() if prev_mac else "",
    }
    return hmac.new(bytes(audit_key), canonical_ad(message), hashlib.sha256).digest()


def verify_audit_chain(audit_key: bytearray, entries: Iterable) -> bool:
    """
    Verify the audit log hasn't been tampered with.

    Args:
        audit_key: From derive_subkeys()
        entries: AuditEntry rows in ascending id order

    Returns:
        True if the chain is intact, False otherwise
    """
    prev_mac = None

    for entry in entries:
        if not constant_compare(entry.prev_mac or b"", prev_mac or b""):
            return False

        expected_mac = compute_audit_mac(
            audit_key,
            entry.id,
            entry.timestamp.isoformat(),
            entry.action,
            entry.subject_id,
            prev_mac,
        )
        if not constant_compare(expected_mac, entry.mac or b""):
            return False

        prev_mac = entry.mac

    return True


# =============================================================================
# Helpers
# =============================================================================

def constant_compare(a: bytes, b: bytes) -> bool:
    """Compare two byte strings in constant time (hmac.compare_digest)."""
    return hmac.compare_digest(a, b)
