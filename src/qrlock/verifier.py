"""Redemption of scanned lock tokens.

Checks run in a fixed order and stop at the first failure:

1. signature        -> InvalidSignature
2. expiry           -> Expired
3. device lookup    -> DeviceNotFound
4. permission flag  -> PermissionRequired
5. policy lookup    -> PolicyNotFound
6. time window      -> OutOfWindow / MalformedWindow
7. one-time-use     -> AlreadyUsed
8. attendance side effect

One-time-use relies on the unique constraint of ``token_device_usage``:
the usage row is inserted unconditionally and a constraint violation is
the signal that the pair was already redeemed. There is no existence
check beforehand, so two concurrent scans cannot both succeed.
"""

from datetime import datetime
from typing import Callable

from loguru import logger
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from qrlock.codec import TokenCodec, TokenPayload
from qrlock.db import Database
from qrlock.errors import (
    AlreadyUsed,
    DeviceNotFound,
    Expired,
    InvalidSignature,
    MalformedWindow,
    OutOfWindow,
    PermissionRequired,
    PolicyNotFound,
    RedemptionFailed,
    TokenRejected,
)
from qrlock.models import AttendanceRecord, LockToken, RestrictionPolicy, TokenPurpose, UsageRecord
from qrlock.schema import ResolvedPolicy, RestrictionMode
from qrlock.store import find_device
from qrlock.utils.time import canonical_now, utc_now
from qrlock.window import (
    DEFAULT_LEAD_MINUTES,
    DEFAULT_OFFSET_HOURS,
    WindowStatus,
    evaluate,
    parse_window,
)

DEFAULT_POLICY_NAME = "Focus mode"


class ScanResult(BaseModel):
    """Structured outcome returned to the scanning client."""

    success: bool
    code: str | None = None
    message: str | None = None
    platform: str | None = None
    requires_permission: bool = False
    lock_policy: ResolvedPolicy | None = None

    @classmethod
    def rejected(cls, error: TokenRejected) -> "ScanResult":
        platform = getattr(error, "platform", None)
        return cls(
            success=False,
            code=error.code,
            message=error.message,
            platform=platform,
            requires_permission=isinstance(error, PermissionRequired),
        )


class TokenVerifier:
    def __init__(
        self,
        database: Database,
        codec: TokenCodec,
        clock: Callable[[], datetime] | None = None,
        offset_hours: int = DEFAULT_OFFSET_HOURS,
        lead_minutes: int = DEFAULT_LEAD_MINUTES,
    ):
        self.database = database
        self.codec = codec
        self._clock = clock or utc_now
        self.offset_hours = offset_hours
        self.lead_minutes = lead_minutes

    def scan(self, raw_payload: str | dict, device_ref: str) -> ScanResult:
        """Verifies a raw scanned payload and never raises for protocol failures."""
        try:
            payload = TokenPayload.decode(raw_payload)
            policy = self.verify(payload, device_ref)
        except TokenRejected as e:
            logger.info(f"Scan rejected for device {device_ref}: {e.code} ({e.message})")
            return ScanResult.rejected(e)
        return ScanResult(success=True, lock_policy=policy)

    def verify(self, payload: TokenPayload, device_ref: str) -> ResolvedPolicy:
        """Runs every check and returns the resolved policy, or raises TokenRejected."""
        if not self.codec.verify(payload.token_id, payload.expiry, payload.signature):
            raise InvalidSignature()

        now = self._clock()
        if payload.expiry < int(now.timestamp()):
            raise Expired()

        try:
            with self.database.session_scope() as session:
                return self._redeem(session, payload, device_ref, now)
        except TokenRejected:
            raise
        except (SQLAlchemyError, ValueError) as e:
            logger.error(f"Redemption of token {payload.token_id} failed: {e}")
            raise RedemptionFailed() from e

    def _redeem(
        self, session: Session, payload: TokenPayload, device_ref: str, now: datetime
    ) -> ResolvedPolicy:
        device = find_device(session, device_ref)
        if device is None:
            raise DeviceNotFound()

        if not device.has_enforcement_permission():
            raise PermissionRequired(device.platform)

        row = session.execute(
            select(LockToken, RestrictionPolicy)
            .join(RestrictionPolicy, LockToken.policy_id == RestrictionPolicy.id)
            .where(LockToken.id == payload.token_id)
        ).first()
        if row is None:
            raise PolicyNotFound()
        token, policy = row

        check = evaluate(
            policy.time_window,
            now,
            offset_hours=self.offset_hours,
            lead_minutes=self.lead_minutes,
        )
        if check.status == WindowStatus.MALFORMED:
            logger.error(f"Policy {policy.id} has a malformed window: {policy.time_window!r}")
            raise MalformedWindow(check.reason)
        if not check.valid:
            raise OutOfWindow(check.reason)

        if policy.one_device_once:
            self._record_usage(session, token.id, device.id)

        if TokenPurpose(policy.purpose).records_attendance:
            self._record_attendance(session, token.id, device.id, now)

        logger.info(f"Token {token.id} redeemed by device {device.id}")
        return self._resolve(token, policy)

    def _record_usage(self, session: Session, token_id: str, device_id: str):
        try:
            with session.begin_nested():
                session.add(UsageRecord(token_id=token_id, device_id=device_id))
                session.flush()
        except IntegrityError:
            raise AlreadyUsed() from None

    def _record_attendance(self, session: Session, token_id: str, device_id: str, now: datetime):
        # One attendance row per (token, device, day); retries on the same day are no-ops.
        day = canonical_now(now, self.offset_hours).date()
        try:
            with session.begin_nested():
                session.add(AttendanceRecord(token_id=token_id, device_id=device_id, day=day))
                session.flush()
        except IntegrityError:
            logger.debug(f"Attendance for {token_id}/{device_id} on {day} already recorded")

    def _resolve(self, token: LockToken, policy: RestrictionPolicy) -> ResolvedPolicy:
        time_range, days = None, []
        if policy.time_window:
            window = parse_window(policy.time_window)
            time_range = f"{window.start}-{window.end}"
            days = window.days
        return ResolvedPolicy(
            token_id=token.id,
            name=policy.name or DEFAULT_POLICY_NAME,
            purpose=policy.purpose,
            duration_minutes=policy.duration_minutes,
            restriction_mode=RestrictionMode.parse(policy.restriction_mode),
            blocked_apps=list(policy.blocked_apps or []),
            time_window=time_range,
            days=days,
        )
