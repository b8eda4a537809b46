"""Secret codec: encoding, decoding and malformed input."""

import json

import pytest

from secretplan import codec
from secretplan.errors import MalformedSecretError
from secretplan.models import Secret


def test_roundtrip_all_fields():
    secret = Secret(
        password="p4ss wörd",
        notes="line1\nline2",
        totp_seed="JBSWY3DPEHPK3PXP",
        custom_fields={"pin": "1234", "question": "blue"},
    )
    decoded = codec.decode(codec.encode(secret))
    assert decoded == secret


def test_encoding_is_versioned_json():
    payload = json.loads(codec.encode(Secret(password="x")))
    assert payload["v"] == codec.FORMAT_VERSION
    assert payload["password"] == "x"
    assert payload["custom_fields"] == {}


def test_missing_optional_fields_take_defaults():
    decoded = codec.decode(b'{"password":"only"}')
    assert decoded == Secret(password="only")


def test_unknown_fields_are_ignored():
    decoded = codec.decode(b'{"v":7,"password":"x","favicon":"abc"}')
    assert decoded.password == "x"


def test_old_totp_field_name_is_accepted():
    decoded = codec.decode(b'{"password":"x","totp":"SEED"}')
    assert decoded.totp_seed == "SEED"


@pytest.mark.parametrize("data", [
    b"\xff\xfe",                                   # not UTF-8
    b"not json",
    b"[1, 2]",                                     # not an object
    b'{"notes":"no password"}',
    b'{"password":5}',
    b'{"password":"x","notes":3}',
    b'{"password":"x","custom_fields":[]}',
    b'{"password":"x","custom_fields":{"a":1}}',
])
def test_malformed_input_is_rejected(data):
    with pytest.raises(MalformedSecretError):
        codec.decode(data)


def test_repr_hides_password():
    assert "hunter2" not in repr(Secret(password="hunter2"))
