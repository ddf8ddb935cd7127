import json
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from qrlock.utils.time import normalize_hhmm, parse_hhmm, to_local_days


class RestrictionMode(str, Enum):
    FULL = "FULL"  # whole device
    APP = "APP"  # listed apps only

    @classmethod
    def parse(cls, value: str | None) -> "RestrictionMode":
        """Accepts the loose spellings different sources use."""
        normalized = (value or "APP").strip().upper()
        if normalized in ("FULL", "PHONE", "DEVICE"):
            return cls.FULL
        if "APP" in normalized:
            return cls.APP
        raise ValueError(f"Unknown restriction mode: {value!r}")


class ScheduleOrigin(str, Enum):
    AUTHORITATIVE = "AUTHORITATIVE"  # guardian-managed, fetched remotely
    PRESET = "PRESET"  # user-owned, stored locally
    AD_HOC = "AD_HOC"  # created by redeeming a scheduled token


class ResolvedPolicy(BaseModel):
    """What a successful scan hands back to the redeeming device."""

    token_id: str
    name: str
    purpose: str
    duration_minutes: int
    restriction_mode: RestrictionMode
    blocked_apps: list[str] = Field(default_factory=list)
    time_window: str | None = None
    days: list[str] = Field(default_factory=list)

    @property
    def is_scheduled(self) -> bool:
        return self.time_window is not None


class Schedule(BaseModel):
    """The unit the reconciler merges, diffs and enforces."""

    id: str
    name: str = ""
    start_time: str
    end_time: str
    days: list[str] = Field(default_factory=list)
    mode: RestrictionMode = RestrictionMode.APP
    apps: list[str] = Field(default_factory=list)
    is_active: bool = True
    origin: ScheduleOrigin
    read_only: bool = False
    owner_id: str | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _check_time(cls, value: str) -> str:
        value = normalize_hhmm(value)
        parse_hhmm(value)
        return value

    @field_validator("days")
    @classmethod
    def _check_days(cls, days: list[str]) -> list[str]:
        return to_local_days(days)

    @property
    def enforcement_key(self) -> tuple[str, str]:
        return self.origin.value, self.id

    @property
    def display_key(self) -> str:
        return self.name.strip()

    def differs_from(self, other: "Schedule | None") -> bool:
        """True when enforcement must be re-issued for this schedule."""
        if other is None:
            return True
        return (
            self.is_active != other.is_active
            or self.start_time != other.start_time
            or self.end_time != other.end_time
            or list(self.days) != list(other.days)
            or self.mode != other.mode
            or list(self.apps) != list(other.apps)
        )

    @classmethod
    def from_authoritative(cls, record: dict[str, Any], current_user: str | None) -> "Schedule":
        """Normalizes a schedule record from the guardian-managed store."""
        days = record.get("days") or []
        if isinstance(days, str):
            days = json.loads(days) if days.strip().startswith("[") else days.split(",")
        apps = record.get("blocked_apps") or record.get("allowed_apps") or record.get("apps") or []
        if isinstance(apps, str):
            apps = json.loads(apps)
        created_by = record.get("created_by") or record.get("createdBy")
        return cls(
            id=str(record["id"]),
            name=record.get("name") or "",
            start_time=record.get("start_time") or record["startTime"],
            end_time=record.get("end_time") or record["endTime"],
            days=days,
            mode=RestrictionMode.parse(record.get("lock_type") or record.get("lockType")),
            apps=list(apps),
            is_active=bool(record.get("is_active", record.get("isActive", True))),
            origin=ScheduleOrigin.AUTHORITATIVE,
            read_only=created_by is None or str(created_by) != str(current_user),
            owner_id=str(created_by) if created_by is not None else None,
        )

    @classmethod
    def from_policy(cls, policy: ResolvedPolicy) -> "Schedule":
        """Builds the ad-hoc schedule for a redeemed scheduled token."""
        if not policy.time_window:
            raise ValueError("Policy has no time window")
        start, _, end = policy.time_window.partition("-")
        return cls(
            id=f"token-{policy.token_id}",
            name=policy.name,
            start_time=start,
            end_time=end,
            days=policy.days,
            mode=policy.restriction_mode,
            apps=policy.blocked_apps,
            is_active=True,
            origin=ScheduleOrigin.AD_HOC,
        )


class PresetKind(str, Enum):
    SCHEDULED = "SCHEDULED"
    INSTANT = "INSTANT"


class Preset(BaseModel):
    """A user-owned lock preset kept on the device."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    kind: PresetKind = PresetKind.SCHEDULED
    start_time: str | None = None
    end_time: str | None = None
    days: list[str] = Field(default_factory=list)
    mode: RestrictionMode = RestrictionMode.APP
    apps: list[str] = Field(default_factory=list)
    duration_minutes: int | None = None
    is_active: bool = True

    def to_schedule(self) -> Schedule:
        if self.kind != PresetKind.SCHEDULED or not (self.start_time and self.end_time):
            raise ValueError(f"Preset {self.id} is not a scheduled preset")
        return Schedule(
            id=self.id,
            name=self.name,
            start_time=self.start_time,
            end_time=self.end_time,
            days=self.days,
            mode=self.mode,
            apps=self.apps,
            is_active=self.is_active,
            origin=ScheduleOrigin.PRESET,
        )
