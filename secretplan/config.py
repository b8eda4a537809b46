"""
SecretPlan - Configuration

Module-level constants shared by the crypto, storage and breach modules.
Per-vault KDF parameters are chosen at creation time and stored in the
vault itself; the values below are only the defaults.
"""

import os


# =============================================================================
# Key material
# =============================================================================

KEY_SIZE = 32            # 256-bit AES key
NONCE_SIZE = 12          # 96-bit nonce for AES-GCM
TAG_SIZE = 16            # 128-bit authentication tag
SALT_SIZE = 16           # Argon2 salt (stored in plaintext, NOT secret)
VERIFIER_SIZE = 32       # Random payload encrypted as the unlock verifier

AEAD_ALGO = "aes256gcm"
KDF_ALGO = "argon2id"
SCHEMA_VERSION = 1

# Argon2id defaults (64 MiB, 3 passes, 4 lanes)
ARGON2_MEMORY_COST = 65536   # KiB
ARGON2_TIME_COST = 3
ARGON2_PARALLELISM = 4


# =============================================================================
# Breach oracle (Pwned Passwords range API)
# =============================================================================

BREACH_API_URL = "https://api.pwnedpasswords.com"
BREACH_PREFIX_LENGTH = 5
BREACH_TIMEOUT_SEC = 10.0
BREACH_USER_AGENT = "SecretPlan/0.3.0"


# =============================================================================
# Storage
# =============================================================================

DEFAULT_VAULT_PATH = os.environ.get(
    "SECRETPLAN_VAULT_PATH",
    os.path.join(os.path.expanduser("~"), ".secretplan", "vault.db"),
)

DEFAULT_AUDIT_LIMIT = 100
DEFAULT_AUTO_LOCK_MINUTES = 5
