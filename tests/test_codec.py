import json

import pytest

from qrlock.codec import EnvSecretProvider, StaticSecretProvider, TokenCodec, TokenPayload
from qrlock.errors import ConfigError, MalformedToken
from qrlock.settings import Settings

EXPIRY = 1_792_000_000


def test_sign_and_verify(codec):
    signature = codec.sign("tok-1", EXPIRY)
    assert len(signature) == 64
    assert signature == codec.sign("tok-1", EXPIRY)
    assert codec.verify("tok-1", EXPIRY, signature)


def test_any_change_breaks_the_signature(codec):
    signature = codec.sign("tok-1", EXPIRY)
    flipped = ("0" if signature[0] != "0" else "1") + signature[1:]

    assert not codec.verify("tok-1", EXPIRY, flipped)
    assert not codec.verify("tok-2", EXPIRY, signature)
    assert not codec.verify("tok-1", EXPIRY + 1, signature)
    assert not codec.verify("tok-1", EXPIRY, "")
    assert not codec.verify("tok-1", EXPIRY, "서명")


def test_signature_depends_on_secret(codec):
    other = TokenCodec(StaticSecretProvider("another-secret"))
    assert not other.verify("tok-1", EXPIRY, codec.sign("tok-1", EXPIRY))


def test_payload_wire_format():
    payload = TokenPayload(token_id="tok-1", expiry=EXPIRY, signature="ab")
    assert json.loads(payload.encode()) == {"tokenId": "tok-1", "expiry": EXPIRY, "signature": "ab"}
    assert TokenPayload.decode(payload.encode()) == payload
    assert TokenPayload.decode({"tokenId": "tok-1", "expiry": EXPIRY, "signature": "ab"}) == payload


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "{}",
        '{"tokenId": "tok-1", "expiry": 1}',
        '{"tokenId": "", "expiry": 1, "signature": "ab"}',
        '{"tokenId": "tok-1", "expiry": "soon", "signature": "ab"}',
    ],
)
def test_unreadable_payload_is_malformed(raw):
    with pytest.raises(MalformedToken):
        TokenPayload.decode(raw)


def test_missing_secret_fails_at_construction():
    with pytest.raises(ConfigError):
        TokenCodec(EnvSecretProvider(Settings(token_secret=None)))
    with pytest.raises(ConfigError):
        TokenCodec(EnvSecretProvider(Settings(token_secret="")))
    with pytest.raises(ConfigError):
        TokenCodec(StaticSecretProvider(""))


def test_secret_from_settings():
    codec = TokenCodec(EnvSecretProvider(Settings(token_secret="test-secret")))
    assert codec.sign("tok-1", EXPIRY) == TokenCodec(StaticSecretProvider("test-secret")).sign("tok-1", EXPIRY)
