"""
SecretPlan - Secret Codec

Serializes a Secret to the bytes the crypto module encrypts, and back.

Format: compact UTF-8 JSON object with named fields and a format version.
Unknown fields are ignored and missing optional fields take their defaults,
so records written before a field existed still decode.

    {"v":1,"password":"...","notes":null,"totp_seed":null,"custom_fields":{}}
"""

import json
from typing import Any, Dict, Optional

from .errors import MalformedSecretError
from .models import Secret

FORMAT_VERSION = 1

# Older field names still accepted on decode
_ALIASES = {"totp": "totp_seed"}


def encode(secret: Secret) -> bytes:
    """Encode a Secret as field-tagged JSON bytes."""
    payload = {
        "v": FORMAT_VERSION,
        "password": secret.password,
        "notes": secret.notes,
        "totp_seed": secret.totp_seed,
        "custom_fields": dict(secret.custom_fields),
    }
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8")


def decode(data: bytes) -> Secret:
    """
    Decode bytes produced by encode().

    Raises:
        MalformedSecretError: not UTF-8 JSON, not an object, missing
            password, or a field of the wrong type
    """
    try:
        payload = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedSecretError(f"secret payload is not valid JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise MalformedSecretError("secret payload must be a JSON object")

    for old, new in _ALIASES.items():
        if old in payload and new not in payload:
            payload[new] = payload[old]

    password = payload.get("password")
    if not isinstance(password, str):
        raise MalformedSecretError("secret payload has no password")

    return Secret(
        password=password,
        notes=_optional_str(payload, "notes"),
        totp_seed=_optional_str(payload, "totp_seed"),
        custom_fields=_string_map(payload.get("custom_fields")),
    )


def _optional_str(payload: Dict[str, Any], name: str) -> Optional[str]:
    value = payload.get(name)
    if value is not None and not isinstance(value, str):
        raise MalformedSecretError(f"field {name!r} must be a string")
    return value


def _string_map(value: Any) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedSecretError("field 'custom_fields' must be an object")
    for key, item in value.items():
        if not isinstance(item, str):
            raise MalformedSecretError(f"custom field {key!r} must be a string")
    return dict(value)
