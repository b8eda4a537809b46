"""Exceptions raised by the vault core."""


class VaultError(Exception):
    """Base class for every error the vault core reports."""


class KeyDerivationError(VaultError):
    """KDF parameters are invalid or the KDF itself failed."""


class AuthenticationError(VaultError):
    """
    Wrong master password or corrupt vault.

    Both cases raise this error with the same message.
    """

    def __init__(self, message: str = "incorrect master password"):
        super().__init__(message)


class DecryptionError(VaultError):
    """Authentication tag check failed (wrong key or tampered data)."""


class MalformedSecretError(VaultError):
    """Decrypted payload is not a valid encoded secret."""


class NotFoundError(VaultError):
    """No credential with the requested id."""


class StorageError(VaultError):
    """The repository could not complete a read or write."""


class BreachCheckError(VaultError):
    """The breach oracle could not be queried; no verdict is available."""


class VaultLockedError(VaultError):
    """The operation requires an unlocked vault."""

    def __init__(self, message: str = "Vault is locked. Call unlock() first."):
        super().__init__(message)


class VaultStateError(VaultError):
    """The vault is not in the state the operation expects (e.g. already created)."""
