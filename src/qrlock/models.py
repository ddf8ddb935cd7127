from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from qrlock.utils.time import utc_now

Base = declarative_base()


def _uuid() -> str:
    return str(uuid4())


class Platform(str, Enum):
    ANDROID = "ANDROID"
    IOS = "IOS"


class TokenPurpose(str, Enum):
    INSTANT_LOCK = "INSTANT_LOCK"
    SCHEDULED_LOCK = "SCHEDULED_LOCK"
    ATTENDANCE = "ATTENDANCE"
    LOCK_AND_ATTENDANCE = "LOCK_AND_ATTENDANCE"

    @property
    def records_attendance(self) -> bool:
        return self in (TokenPurpose.ATTENDANCE, TokenPurpose.LOCK_AND_ATTENDANCE)


class Device(Base):
    __tablename__ = "devices"

    id = Column(String(36), primary_key=True, default=_uuid)
    device_uuid = Column(String(255), unique=True, nullable=False, index=True)
    platform = Column(String(16), nullable=False)  # ANDROID / IOS
    device_model = Column(String(255), nullable=True)
    os_version = Column(String(64), nullable=True)
    app_version = Column(String(64), nullable=True)

    # One flag per enforcement-agent family
    accessibility_permission = Column(Boolean, default=False, nullable=False)
    screen_time_permission = Column(Boolean, default=False, nullable=False)

    last_seen_at = Column(DateTime, default=utc_now)
    last_permission_sync = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now)

    def has_enforcement_permission(self) -> bool:
        if self.platform == Platform.IOS.value:
            return bool(self.screen_time_permission)
        if self.platform == Platform.ANDROID.value:
            return bool(self.accessibility_permission)
        return False

    def to_dict(self):
        return {
            'id': self.id,
            'device_uuid': self.device_uuid,
            'platform': self.platform,
            'device_model': self.device_model,
            'accessibility_permission': self.accessibility_permission,
            'screen_time_permission': self.screen_time_permission,
            'last_seen_at': self.last_seen_at.isoformat() if self.last_seen_at else None,
        }


class RestrictionPolicy(Base):
    __tablename__ = "restriction_policies"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=True)
    purpose = Column(String(32), nullable=False, default=TokenPurpose.INSTANT_LOCK.value)
    duration_minutes = Column(Integer, nullable=False)
    restriction_mode = Column(String(8), nullable=False, default="APP")  # FULL / APP
    blocked_apps = Column(JSON, nullable=False, default=list)
    # "HH:mm-HH:mm[|days]", NULL means always valid
    time_window = Column(String(64), nullable=True)
    one_device_once = Column(Boolean, nullable=False, default=False)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utc_now)


class LockToken(Base):
    __tablename__ = "lock_tokens"

    id = Column(String(36), primary_key=True)
    policy_id = Column(
        String(36), ForeignKey("restriction_policies.id", ondelete="CASCADE"), nullable=True
    )
    issuer_id = Column(String(64), nullable=True)
    signature = Column(String(64), nullable=False)
    expires_at = Column(Integer, nullable=False)  # epoch seconds, as signed
    created_at = Column(DateTime, default=utc_now)


class UsageRecord(Base):
    __tablename__ = "token_device_usage"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_id = Column(String(36), ForeignKey("lock_tokens.id", ondelete="CASCADE"), nullable=False)
    device_id = Column(String(36), ForeignKey("devices.id"), nullable=False)
    used_at = Column(DateTime, default=utc_now)

    __table_args__ = (
        UniqueConstraint('token_id', 'device_id', name='uq_usage_token_device'),
    )


class AttendanceRecord(Base):
    __tablename__ = "attendance"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_id = Column(String(36), ForeignKey("lock_tokens.id", ondelete="CASCADE"), nullable=False)
    device_id = Column(String(36), ForeignKey("devices.id"), nullable=False)
    # Day in the canonical policy zone
    day = Column(Date, nullable=False)
    recorded_at = Column(DateTime, default=utc_now)

    __table_args__ = (
        UniqueConstraint('token_id', 'device_id', 'day', name='uq_attendance_token_device_day'),
    )
