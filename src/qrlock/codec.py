import hashlib
import hmac
import json
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from qrlock.errors import ConfigError, MalformedToken
from qrlock.settings import Settings


class SecretProvider(Protocol):
    def get_secret(self) -> bytes:
        ...


class EnvSecretProvider:
    """Reads the signing secret from settings (``QRLOCK_TOKEN_SECRET``)."""

    def __init__(self, settings: Settings):
        self._settings = settings

    def get_secret(self) -> bytes:
        secret = self._settings.token_secret
        if secret is None or not secret.get_secret_value():
            raise ConfigError("QRLOCK_TOKEN_SECRET is not set")
        return secret.get_secret_value().encode("utf-8")


class StaticSecretProvider:
    def __init__(self, secret: str | bytes):
        self._secret = secret.encode("utf-8") if isinstance(secret, str) else secret

    def get_secret(self) -> bytes:
        if not self._secret:
            raise ConfigError("Token secret is empty")
        return self._secret


class TokenPayload(BaseModel):
    """What travels inside the scannable code. Nothing else is trusted."""

    model_config = ConfigDict(populate_by_name=True)

    token_id: str = Field(alias="tokenId", min_length=1)
    expiry: int
    signature: str

    def encode(self) -> str:
        return json.dumps(
            self.model_dump(by_alias=True), separators=(",", ":"), ensure_ascii=False
        )

    @classmethod
    def decode(cls, raw: str | bytes | dict) -> "TokenPayload":
        try:
            if isinstance(raw, dict):
                return cls.model_validate(raw)
            return cls.model_validate_json(raw)
        except (ValidationError, ValueError) as e:
            raise MalformedToken() from e


class TokenCodec:
    """HMAC-SHA256 binding of a token id to its expiry."""

    def __init__(self, secret_provider: SecretProvider):
        # Resolve once so a missing secret fails at startup, not on first scan.
        self._secret = secret_provider.get_secret()

    def sign(self, token_id: str, expiry: int) -> str:
        message = f"{token_id}:{int(expiry)}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def verify(self, token_id: str, expiry: int, signature: str) -> bool:
        expected = self.sign(token_id, expiry)
        return hmac.compare_digest(expected.encode("ascii"), str(signature).encode("utf-8"))
