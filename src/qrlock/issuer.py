from datetime import datetime, timedelta
from typing import Callable
from uuid import uuid4

from loguru import logger
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError

from qrlock.codec import TokenCodec, TokenPayload
from qrlock.db import Database
from qrlock.errors import StorageError
from qrlock.models import LockToken, RestrictionPolicy, TokenPurpose
from qrlock.schema import RestrictionMode
from qrlock.utils.time import utc_now
from qrlock.window import encode_window

TOKEN_TTL = timedelta(hours=24)


class IssueRequest(BaseModel):
    purpose: TokenPurpose = TokenPurpose.INSTANT_LOCK
    duration_minutes: int = Field(gt=0)
    blocked_apps: list[str] = Field(default_factory=list)
    restriction_mode: RestrictionMode = RestrictionMode.APP
    name: str | None = None
    time_window: str | None = None
    days: list[str] = Field(default_factory=list)
    one_device_once: bool = False
    # None for self-issued tokens
    issuer_id: str | None = None

    @field_validator("blocked_apps")
    @classmethod
    def _strip_apps(cls, apps: list[str]) -> list[str]:
        return [a.strip() for a in apps if a and a.strip()]


class IssuedToken(BaseModel):
    token_id: str
    policy_id: str
    expiry: int
    payload: str


class TokenIssuer:
    """Creates a restriction policy and a signed token that references it."""

    def __init__(
        self,
        database: Database,
        codec: TokenCodec,
        clock: Callable[[], datetime] | None = None,
    ):
        self.database = database
        self.codec = codec
        self._clock = clock or utc_now

    def issue(self, request: IssueRequest) -> IssuedToken:
        # Raises ValueError before anything is written
        window = encode_window(request.time_window, request.days)

        token_id = str(uuid4())
        expiry = int((self._clock() + TOKEN_TTL).timestamp())
        signature = self.codec.sign(token_id, expiry)

        try:
            # Policy and token commit together or not at all
            with self.database.session_scope() as session:
                policy = RestrictionPolicy(
                    name=request.name,
                    purpose=request.purpose.value,
                    duration_minutes=request.duration_minutes,
                    restriction_mode=request.restriction_mode.value,
                    blocked_apps=request.blocked_apps,
                    time_window=window,
                    one_device_once=request.one_device_once,
                    created_by=request.issuer_id,
                )
                session.add(policy)
                session.flush()

                session.add(
                    LockToken(
                        id=token_id,
                        policy_id=policy.id,
                        issuer_id=request.issuer_id,
                        signature=signature,
                        expires_at=expiry,
                    )
                )
                policy_id = policy.id
        except SQLAlchemyError as e:
            logger.error(f"Token issuance failed: {e}")
            raise StorageError("Token issuance failed") from e

        logger.info(
            f"Issued {request.purpose.value} token {token_id} "
            f"(policy={policy_id}, window={window}, once={request.one_device_once})"
        )
        payload = TokenPayload(token_id=token_id, expiry=expiry, signature=signature)
        return IssuedToken(
            token_id=token_id, policy_id=policy_id, expiry=expiry, payload=payload.encode()
        )
