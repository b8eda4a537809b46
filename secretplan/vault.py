"""
SecretPlan - Vault Manager

Orchestrates the crypto module, the secret codec and a repository:
- vault creation / unlock / lock (the session state machine)
- adding / updating / deleting / revealing credentials
- metadata search (never decrypts)
- breach checks against the k-anonymity oracle
- audit logging of every state change

Persisted settings:
- vault_state: public KDF salt + parameters and the vault id (plaintext)
- verifier: random bytes encrypted under the content key; decrypting it is
  the unlock check
- app_settings: encrypted AppSettings
"""

import contextlib
import json
import logging
import os
import time
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from . import codec, config, crypto
from .breach import BreachOracleClient
from .errors import (
    AuthenticationError,
    BreachCheckError,
    DecryptionError,
    KeyDerivationError,
    MalformedSecretError,
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
    SettingBlob,
    as_utc,
    normalize_tags,
    utcnow,
)
from .repository import CredentialRepository
from .session import SessionKeys, VaultSession, VaultState
from .strength import calculate_strength

logger = logging.getLogger(__name__)

VAULT_STATE_SETTING = "vault_state"
VERIFIER_SETTING = "verifier"
APP_SETTINGS_SETTING = "app_settings"

# Marks "argument not given" where None is a meaningful value (clear the field)
_UNSET = object()


class Vault:
    """
    Main vault class - the only holder of the session key.

    Usage:
        # Create new vault (leaves it unlocked)
        vault = Vault(SQLiteRepository("vault.db"))
        vault.create("master_password")

        # Later: unlock vault
        vault = Vault.open("vault.db")
        vault.unlock("master_password")

        # Add / find / reveal
        cred = vault.add_credential("github.com", "alice", Secret(password="..."))
        vault.search(CredentialFilter(search_term="git"))
        secret = vault.reveal_secret(cred.id)

        # Lock when done
        vault.lock()
    """

    def __init__(
        self,
        repository: CredentialRepository,
        breach_oracle: Optional[BreachOracleClient] = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """
        Attach to a repository. The vault starts LOCKED, or UNINITIALIZED
        if the repository holds no vault yet.

        Args:
            repository: Where records, settings and audit rows live
            breach_oracle: Breach checker; a Pwned Passwords client is
                created on first use if omitted
            clock: Wall clock for record and audit timestamps
            monotonic: Clock for the idle auto-lock timer
        """
        self.repository = repository
        self._breach_oracle = breach_oracle
        self._clock = clock
        initialized = repository.get_setting(VAULT_STATE_SETTING) is not None
        self.session = VaultSession(
            VaultState.LOCKED if initialized else VaultState.UNINITIALIZED,
            monotonic=monotonic,
        )

    @classmethod
    def open(cls, db_path: str = config.DEFAULT_VAULT_PATH, **kwargs) -> "Vault":
        """Vault on a SQLite file, creating the parent directory if needed."""
        from .sqlite_repo import SQLiteRepository

        directory = os.path.dirname(db_path)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)
        return cls(SQLiteRepository(db_path), **kwargs)

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    @property
    def state(self) -> VaultState:
        return self.session.state

    @property
    def is_unlocked(self) -> bool:
        return self.session.state is VaultState.UNLOCKED

    def create(self, master_password: str, kdf_params: Optional[KdfParams] = None) -> str:
        """
        Create a new vault with a master password.

        This:
        1. Generates salt and vault id, stores them with the KDF parameters
        2. Derives keys from the master password
        3. Stores the unlock verifier and default settings
        4. Leaves the vault UNLOCKED (creation is the first unlock)

        Args:
            master_password: User's master password
            kdf_params: Argon2id costs (defaults from config)

        Returns:
            Vault ID (UUID)

        Raises:
            VaultStateError: the repository already holds a vault
            KeyDerivationError: invalid KDF parameters
        """
        kdf_params = kdf_params or KdfParams()
        with self.session.mutex:
            if self.session.state is not VaultState.UNINITIALIZED:
                raise VaultStateError("Vault already exists. Use unlock() instead.")

            salt = crypto.generate_salt()
            vault_id = str(uuid.uuid4())
            vault_key = crypto.derive_key(master_password, salt, kdf_params)
            keys = SessionKeys.from_vault_key(vault_id, vault_key)
            settings = AppSettings()

            try:
                verifier = crypto.encrypt(
                    os.urandom(config.VERIFIER_SIZE), keys.content_key, self._verifier_ad(vault_id)
                )
                state = {
                    "vault_id": vault_id,
                    "schema_version": config.SCHEMA_VERSION,
                    "kdf": config.KDF_ALGO,
                    "kdf_params": kdf_params.to_dict(),
                    "kdf_salt": salt.hex(),
                    "aead": config.AEAD_ALGO,
                    "created_at": self._now().isoformat(),
                }
                with self.repository.atomic():
                    self.repository.put_setting(
                        VAULT_STATE_SETTING, SettingBlob(value=crypto.canonical_ad(state))
                    )
                    self.repository.put_setting(
                        VERIFIER_SETTING, SettingBlob(value=verifier.ciphertext, nonce=verifier.nonce)
                    )
                    self._store_settings(keys, settings)
                    self._audit(keys, "vault_create")
            except BaseException:
                keys.wipe()
                raise

            self.session.open(keys, settings.auto_lock_timeout)

        logger.info("Vault %s created", vault_id)
        return vault_id

    def unlock(self, master_password: str) -> None:
        """
        Unlock the vault with the master password.

        Re-derives the key from the stored salt/parameters and decrypts the
        verifier. Unlocking an already unlocked vault re-derives and
        replaces (wipes) the current keys.

        Raises:
            VaultStateError: no vault has been created yet
            AuthenticationError: wrong password or corrupt vault state;
                both cases run the KDF and fail the same way
        """
        with self.session.mutex:
            if self.session.state is VaultState.UNINITIALIZED:
                raise VaultStateError("Vault not initialized. Call create() first.")

            stored = self._load_vault_state()
            if stored is None:
                # Pay the KDF cost anyway so this path looks like a wrong password
                crypto.wipe(crypto.derive_key(master_password, bytes(config.SALT_SIZE), KdfParams()))
                logger.warning("Vault unlock failed")
                raise AuthenticationError()

            vault_id, salt, kdf_params = stored
            keys = SessionKeys.from_vault_key(
                vault_id, crypto.derive_key(master_password, salt, kdf_params)
            )
            try:
                self._check_verifier(keys)
                settings = self._load_settings(keys)
                self._audit(keys, "unlock")
            except BaseException:
                keys.wipe()
                raise

            self.session.open(keys, settings.auto_lock_timeout)

        logger.info("Vault %s unlocked", vault_id)

    def lock(self) -> None:
        """
        Lock the vault and wipe keys from memory.

        Locking a vault that isn't unlocked is a no-op.
        """
        with self.session.mutex:
            self._lock_now("lock")

    def close(self) -> None:
        """Lock and release the repository."""
        self.lock()
        self.repository.close()

    def __enter__(self) -> "Vault":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # =========================================================================
    # CREDENTIALS
    # =========================================================================

    def add_credential(
        self,
        site: str,
        username: str,
        secret: Secret,
        tags: Optional[Iterable[str]] = None,
        expires_at: Optional[datetime] = None,
    ) -> Credential:
        """
        Encrypt and store a new credential.

        The secret is bound (associated data) to a freshly generated id,
        its password is scored, and a "create" audit row is written in the
        same transaction.

        Returns:
            The stored index record (without ciphertext)
        """
        if not site or not site.strip():
            raise ValueError("site is required")

        with self._unlocked() as keys:
            credential_id = str(uuid.uuid4())
            now = self._now()
            credential = Credential(
                id=credential_id,
                site=site.strip(),
                username=username.strip(),
                secret_enc=self._seal(keys, credential_id, secret),
                tags=normalize_tags(tags),
                created_at=now,
                updated_at=now,
                expires_at=as_utc(expires_at),
                strength=calculate_strength(secret.password),
                breach_state=BreachState.UNKNOWN,
            )
            with self.repository.atomic():
                self.repository.insert(credential)
                self._audit(keys, "create", credential_id)

        logger.info("Credential %s created", credential_id)
        return credential.public()

    def update_credential(
        self,
        credential_id: str,
        *,
        site: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        notes=_UNSET,
        totp_seed=_UNSET,
        custom_fields: Optional[Mapping[str, str]] = None,
        tags: Optional[Iterable[str]] = None,
        expires_at=_UNSET,
    ) -> Credential:
        """
        Change fields of a stored credential.

        Omitted fields are left alone; `notes`, `totp_seed` and
        `expires_at` may be set to None to clear them. Any change to a
        secret field re-encrypts the whole secret under a fresh nonce.
        `strength` is recomputed when a password is given; `breach_state`
        is never touched here.

        Raises:
            NotFoundError: no credential with that id
        """
        with self._unlocked() as keys:
            current = self.repository.get(credential_id)
            changes = {}

            if site is not None:
                if not site.strip():
                    raise ValueError("site is required")
                changes["site"] = site.strip()
            if username is not None:
                changes["username"] = username.strip()
            if tags is not None:
                changes["tags"] = normalize_tags(tags)
            if expires_at is not _UNSET:
                changes["expires_at"] = as_utc(expires_at)

            secret_changed = (
                password is not None
                or notes is not _UNSET
                or totp_seed is not _UNSET
                or custom_fields is not None
            )
            if secret_changed:
                secret = self._open_secret(keys, current)
                if password is not None:
                    secret.password = password
                    changes["strength"] = calculate_strength(password)
                if notes is not _UNSET:
                    secret.notes = notes
                if totp_seed is not _UNSET:
                    secret.totp_seed = totp_seed
                if custom_fields is not None:
                    secret.custom_fields = dict(custom_fields)
                changes["secret_enc"] = self._seal(keys, credential_id, secret)
                del secret

            changes["updated_at"] = max(self._now(), current.updated_at)
            updated = replace(current, **changes)

            with self.repository.atomic():
                self.repository.update(updated)
                self._audit(keys, "update", credential_id)

        logger.info("Credential %s updated", credential_id)
        return updated.public()

    def delete_credential(self, credential_id: str) -> None:
        """
        Delete a credential. Its id is never reused.

        Raises:
            NotFoundError: no credential with that id (including one
                already deleted)
        """
        with self._unlocked() as keys:
            with self.repository.atomic():
                self.repository.delete(credential_id)
                self._audit(keys, "delete", credential_id)

        logger.info("Credential %s deleted", credential_id)

    def reveal_secret(self, credential_id: str) -> Secret:
        """
        Decrypt a credential's secret.

        The only call returning plaintext. Nothing is cached; callers must
        not persist or log the result.

        Raises:
            NotFoundError: unknown id
            DecryptionError: ciphertext tampered or bound to another record
            MalformedSecretError: decrypted bytes are not a valid secret
        """
        with self._unlocked() as keys:
            credential = self.repository.get(credential_id)
            secret = self._open_secret(keys, credential)
            self._audit(keys, "reveal", credential_id)
        return secret

    def get_credential(self, credential_id: str) -> Credential:
        """Index record by id (no decryption)."""
        with self._unlocked():
            return self.repository.get(credential_id).public()

    def search(
        self, filter: Union[CredentialFilter, Mapping, None] = None
    ) -> List[Credential]:
        """
        Records matching `filter` (all given fields must match).

        `filter` may be a CredentialFilter or a mapping of its field
        names. Only metadata is consulted; nothing is decrypted.
        """
        if isinstance(filter, Mapping):
            filter = CredentialFilter(**filter)
        if filter is not None and filter.expires_before is not None:
            filter = replace(filter, expires_before=as_utc(filter.expires_before))
        with self._unlocked():
            return [c.public() for c in self.repository.list(filter)]

    def list_credentials(self) -> List[Credential]:
        """All records, ordered by site then username."""
        return self.search()

    # =========================================================================
    # BREACH CHECK
    # =========================================================================

    def check_breach(self, credential_id: str) -> BreachState:
        """
        Check a credential's password against the breach oracle.

        The session mutex is held only to read the password and, later,
        to store the verdict; the network call runs without it, so lock()
        is never blocked by a slow lookup.

        Raises:
            BreachCheckError: the oracle failed, or the secret changed while
                the lookup was running; breach_state is left unchanged
            VaultLockedError: the vault was locked during the lookup
            NotFoundError: the credential is gone
        """
        with self._unlocked() as keys:
            credential = self.repository.get(credential_id)
            checked_blob = credential.secret_enc
            password = self._open_secret(keys, credential).password

        try:
            result = self.breach_oracle.check(password)
        finally:
            del password

        with self._unlocked() as keys:
            current = self.repository.get(credential_id)
            if current.secret_enc != checked_blob:
                raise BreachCheckError("credential changed during breach check; result discarded")
            with self.repository.atomic():
                self.repository.update(replace(current, breach_state=result))
                self._audit(keys, "breach_check", credential_id)

        logger.info("Credential %s breach check: %s", credential_id, result.name)
        return result

    @property
    def breach_oracle(self) -> BreachOracleClient:
        if self._breach_oracle is None:
            self._breach_oracle = BreachOracleClient()
        return self._breach_oracle

    # =========================================================================
    # SETTINGS & AUDIT
    # =========================================================================

    def get_settings(self) -> AppSettings:
        """Stored settings; defaults while locked."""
        with self.session.mutex:
            if not self.is_unlocked:
                return AppSettings()
        with self._unlocked() as keys:
            return self._load_settings(keys)

    def save_settings(self, settings: AppSettings) -> None:
        """Encrypt and store settings; applies the auto-lock timeout now."""
        if settings.auto_lock_timeout < 0:
            raise ValueError("auto_lock_timeout must be >= 0")
        with self._unlocked() as keys:
            with self.repository.atomic():
                self._store_settings(keys, settings)
                self._audit(keys, "settings_update")
            self.session.set_auto_lock(settings.auto_lock_timeout)

    def get_audit_log(self, limit: Optional[int] = config.DEFAULT_AUDIT_LIMIT) -> List[AuditEntry]:
        """Most recent audit rows first; `limit=None` returns every row."""
        if limit is not None and limit < 0:
            raise ValueError("limit must be >= 0")
        with self._unlocked():
            return self.repository.list_audit(limit=limit, newest_first=True)

    def verify_audit_log(self) -> bool:
        """
        Verify the audit log hasn't been tampered with.

        Returns:
            True if the HMAC chain over every row is intact
        """
        with self._unlocked() as keys:
            entries = self.repository.list_audit(newest_first=False)
            return crypto.verify_audit_chain(keys.audit_key, entries)

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    @contextlib.contextmanager
    def _unlocked(self) -> Iterator[SessionKeys]:
        """
        Hold the session mutex and yield the keys of an UNLOCKED session.

        Raises VaultLockedError otherwise, locking first if the session
        sat idle past its auto-lock timeout.
        """
        with self.session.mutex:
            if self.session.idle_expired():
                self._lock_now("auto_lock")
                raise VaultLockedError("Vault locked after inactivity. Call unlock() again.")
            keys = self.session.keys
            self.session.touch()
            yield keys

    def _lock_now(self, action: str) -> None:
        """Audit and wipe. Caller holds the mutex."""
        if self.session.state is not VaultState.UNLOCKED:
            return
        vault_id = self.session.keys.vault_id
        try:
            self._audit(self.session.keys, action)
        finally:
            self.session.close()
        logger.info("Vault %s locked (%s)", vault_id, action)

    def _now(self) -> datetime:
        return as_utc(self._clock())

    def _seal(self, keys: SessionKeys, credential_id: str, secret: Secret):
        return crypto.encrypt(
            codec.encode(secret),
            keys.content_key,
            crypto.credential_ad(keys.vault_id, credential_id),
        )

    def _open_secret(self, keys: SessionKeys, credential: Credential) -> Secret:
        plaintext = crypto.decrypt(
            credential.secret_enc.nonce,
            credential.secret_enc.ciphertext,
            keys.content_key,
            crypto.credential_ad(keys.vault_id, credential.id),
        )
        try:
            return codec.decode(plaintext)
        except MalformedSecretError:
            logger.error("Credential %s decrypted to a malformed secret", credential.id)
            raise

    @staticmethod
    def _verifier_ad(vault_id: str) -> bytes:
        return crypto.canonical_ad({"ctx": "vault_verifier", "vault_id": vault_id})

    @staticmethod
    def _settings_ad(vault_id: str) -> bytes:
        return crypto.canonical_ad({"ctx": "app_settings", "vault_id": vault_id})

    def _load_vault_state(self) -> Optional[Tuple[str, bytes, KdfParams]]:
        """(vault_id, salt, kdf_params), or None if missing or unreadable."""
        blob = self.repository.get_setting(VAULT_STATE_SETTING)
        if blob is None:
            return None
        try:
            state = json.loads(blob.value.decode("utf-8"))
            kdf_params = KdfParams.from_dict(state["kdf_params"])
            crypto.validate_kdf_params(kdf_params)
            return state["vault_id"], bytes.fromhex(state["kdf_salt"]), kdf_params
        except (ValueError, KeyError, TypeError, KeyDerivationError):
            logger.error("Vault state setting is unreadable")
            return None

    def _check_verifier(self, keys: SessionKeys) -> None:
        blob = self.repository.get_setting(VERIFIER_SETTING)
        if blob is None or blob.nonce is None:
            logger.warning("Vault unlock failed")
            raise AuthenticationError()
        try:
            crypto.decrypt(blob.nonce, blob.value, keys.content_key, self._verifier_ad(keys.vault_id))
        except DecryptionError:
            logger.warning("Vault unlock failed")
            raise AuthenticationError() from None

    def _load_settings(self, keys: SessionKeys) -> AppSettings:
        blob = self.repository.get_setting(APP_SETTINGS_SETTING)
        if blob is None or blob.nonce is None:
            return AppSettings()
        try:
            plaintext = crypto.decrypt(blob.nonce, blob.value, keys.content_key,
                                       self._settings_ad(keys.vault_id))
            return AppSettings.from_dict(json.loads(plaintext.decode("utf-8")))
        except (DecryptionError, ValueError, TypeError) as exc:
            logger.warning("Stored settings are unreadable: %s", exc)
            raise AuthenticationError() from None

    def _store_settings(self, keys: SessionKeys, settings: AppSettings) -> None:
        sealed = crypto.encrypt(
            crypto.canonical_ad(settings.to_dict()),
            keys.content_key,
            self._settings_ad(keys.vault_id),
        )
        self.repository.put_setting(
            APP_SETTINGS_SETTING, SettingBlob(value=sealed.ciphertext, nonce=sealed.nonce)
        )

    def _audit(self, keys: SessionKeys, action: str, subject_id: Optional[str] = None) -> None:
        """
        Append a MAC-chained row to the audit log.

        The row id is the previous id + 1 and the timestamp never goes
        backwards, even if the wall clock does.
        """
        last = self.repository.last_audit()
        entry_id = last.id + 1 if last else 1
        prev_mac = last.mac if last else None
        timestamp = self._now()
        if last and timestamp < last.timestamp:
            timestamp = last.timestamp

        mac = crypto.compute_audit_mac(
            keys.audit_key, entry_id, timestamp.isoformat(), action, subject_id, prev_mac
        )
        self.repository.append_audit(AuditEntry(
            id=entry_id,
            timestamp=timestamp,
            action=action,
            subject_id=subject_id,
            prev_mac=prev_mac,
            mac=mac,
        ))
