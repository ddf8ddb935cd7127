import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from qrlock.codec import TokenPayload
from qrlock.errors import AlreadyUsed, DeviceNotFound, OutOfWindow
from qrlock.issuer import IssueRequest
from qrlock.models import AttendanceRecord, RestrictionPolicy, TokenPurpose, UsageRecord
from qrlock.schema import RestrictionMode

KST = timezone(timedelta(hours=9))


def _issue(issuer, **overrides):
    fields = {"duration_minutes": 30, "blocked_apps": ["com.game"]}
    fields.update(overrides)
    return issuer.issue(IssueRequest(**fields))


def _count(database, model) -> int:
    with database.session_scope() as session:
        return session.execute(select(func.count()).select_from(model)).scalar_one()


def test_instant_token_is_accepted(issuer, verifier, device):
    issued = _issue(issuer, name="Quiet time", restriction_mode=RestrictionMode.FULL)

    result = verifier.scan(issued.payload, device["id"])

    assert result.success
    assert result.code is None
    policy = result.lock_policy
    assert policy.token_id == issued.token_id
    assert policy.name == "Quiet time"
    assert policy.duration_minutes == 30
    assert policy.restriction_mode == RestrictionMode.FULL
    assert policy.blocked_apps == ["com.game"]
    assert not policy.is_scheduled


def test_device_can_be_referenced_by_hardware_id(issuer, verifier, device):
    issued = _issue(issuer)
    assert verifier.scan(issued.payload, device["device_uuid"]).success


def test_unnamed_policy_gets_default_name(issuer, verifier, device):
    result = verifier.scan(_issue(issuer).payload, device["id"])
    assert result.lock_policy.name == "Focus mode"


def test_scheduled_lock_end_to_end(issuer, verifier, device, clock):
    issued = _issue(
        issuer,
        purpose=TokenPurpose.SCHEDULED_LOCK,
        duration_minutes=60,
        time_window="09:00-10:00",
        days=["MON"],
    )

    # Monday 08:55 is inside the ten minute lead
    result = verifier.scan(issued.payload, device["id"])
    assert result.success
    assert result.lock_policy.time_window == "09:00-10:00"
    assert result.lock_policy.days == ["월"]
    assert result.lock_policy.is_scheduled

    clock.set(datetime(2026, 10, 19, 8, 40, tzinfo=KST))
    result = verifier.scan(issued.payload, device["id"])
    assert not result.success
    assert result.code == "OUT_OF_WINDOW"


def test_malformed_payload(verifier, device):
    result = verifier.scan("definitely not a token", device["id"])
    assert (result.success, result.code) == (False, "MALFORMED_TOKEN")


def test_tampered_signature(issuer, verifier, device):
    payload = TokenPayload.decode(_issue(issuer).payload)
    last = payload.signature[-1]
    payload.signature = payload.signature[:-1] + ("0" if last != "0" else "1")
    result = verifier.scan(payload.encode(), device["id"])
    assert result.code == "INVALID_SIGNATURE"


def test_extended_expiry_is_rejected_by_signature(issuer, verifier, device):
    payload = TokenPayload.decode(_issue(issuer).payload)
    payload.expiry += 3600
    assert verifier.scan(payload.encode(), device["id"]).code == "INVALID_SIGNATURE"


def test_expired_token(issuer, verifier, device, clock):
    issued = _issue(issuer)

    clock.advance(hours=24)
    assert verifier.scan(issued.payload, device["id"]).success

    clock.advance(seconds=1)
    result = verifier.scan(issued.payload, device["id"])
    assert result.code == "EXPIRED"


def test_unknown_device(issuer, verifier):
    result = verifier.scan(_issue(issuer).payload, "no-such-device")
    assert result.code == "DEVICE_NOT_FOUND"


@pytest.mark.parametrize("platform", ["ANDROID", "IOS"])
def test_missing_permission_reports_platform(issuer, verifier, devices, platform):
    registered = devices.register(f"hw-{platform}", platform)

    result = verifier.scan(_issue(issuer).payload, registered["id"])

    assert result.code == "PERMISSION_REQUIRED"
    assert result.requires_permission
    assert result.platform == platform


def test_ios_needs_screen_time_not_accessibility(issuer, verifier, devices):
    registered = devices.register("hw-iphone", "IOS")
    devices.sync_permissions(registered["id"], accessibility=True)
    assert verifier.scan(_issue(issuer).payload, registered["id"]).code == "PERMISSION_REQUIRED"

    devices.sync_permissions(registered["id"], screen_time=True)
    assert verifier.scan(_issue(issuer).payload, registered["id"]).success


def test_signed_token_without_policy(verifier, codec, device, clock):
    expiry = int((clock() + timedelta(hours=1)).timestamp())
    payload = TokenPayload(token_id="ghost", expiry=expiry, signature=codec.sign("ghost", expiry))
    assert verifier.scan(payload.encode(), device["id"]).code == "POLICY_NOT_FOUND"


def test_corrupted_window_is_denied(issuer, verifier, device, database):
    issued = _issue(issuer, time_window="09:00-10:00")
    with database.session_scope() as session:
        session.execute(
            update(RestrictionPolicy)
            .where(RestrictionPolicy.id == issued.policy_id)
            .values(time_window="nine to ten")
        )

    result = verifier.scan(issued.payload, device["id"])
    assert result.code == "MALFORMED_WINDOW"


def test_checks_run_in_order(issuer, verifier, clock):
    # Expired and from an unknown device: expiry is checked first
    issued = _issue(issuer)
    clock.advance(days=2)
    assert verifier.scan(issued.payload, "no-such-device").code == "EXPIRED"


def test_one_device_once(issuer, verifier, device, devices, database):
    issued = _issue(issuer, one_device_once=True)

    assert verifier.scan(issued.payload, device["id"]).success
    second = verifier.scan(issued.payload, device["id"])
    assert second.code == "ALREADY_USED"

    other = devices.register("hw-android-2", "ANDROID")
    devices.sync_permissions(other["id"], accessibility=True)
    assert verifier.scan(issued.payload, other["id"]).success

    assert _count(database, UsageRecord) == 2


def test_reusable_token_records_no_usage(issuer, verifier, device, database):
    issued = _issue(issuer)
    assert verifier.scan(issued.payload, device["id"]).success
    assert verifier.scan(issued.payload, device["id"]).success
    assert _count(database, UsageRecord) == 0


def test_verify_raises_typed_errors(issuer, verifier, device):
    payload = TokenPayload.decode(_issue(issuer, one_device_once=True).payload)
    verifier.verify(payload, device["id"])
    with pytest.raises(AlreadyUsed):
        verifier.verify(payload, device["id"])
    with pytest.raises(DeviceNotFound):
        verifier.verify(payload, "nope")


def test_window_rejection_does_not_consume_the_token(issuer, verifier, device, clock):
    issued = _issue(issuer, time_window="09:00-10:00", one_device_once=True)
    clock.set(datetime(2026, 10, 19, 7, 0, tzinfo=KST))
    with pytest.raises(OutOfWindow):
        verifier.verify(TokenPayload.decode(issued.payload), device["id"])

    clock.set(datetime(2026, 10, 19, 9, 0, tzinfo=KST))
    assert verifier.scan(issued.payload, device["id"]).success


def test_concurrent_redemption_succeeds_once(issuer, verifier, device):
    issued = _issue(issuer, one_device_once=True)
    barrier = threading.Barrier(4)
    results = []

    def redeem():
        barrier.wait()
        results.append(verifier.scan(issued.payload, device["id"]))

    threads = [threading.Thread(target=redeem) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(r.success for r in results) == [False, False, False, True]
    assert {r.code for r in results if not r.success} == {"ALREADY_USED"}


def test_attendance_recorded_once_per_day(issuer, verifier, device, database, clock):
    issued = _issue(issuer, purpose=TokenPurpose.LOCK_AND_ATTENDANCE)

    assert verifier.scan(issued.payload, device["id"]).success
    assert verifier.scan(issued.payload, device["id"]).success
    assert _count(database, AttendanceRecord) == 1

    # Still before expiry, but a new day in the policy zone
    clock.advance(hours=20)
    assert verifier.scan(issued.payload, device["id"]).success
    assert _count(database, AttendanceRecord) == 2


def test_lock_only_purpose_records_no_attendance(issuer, verifier, device, database):
    assert verifier.scan(_issue(issuer).payload, device["id"]).success
    assert _count(database, AttendanceRecord) == 0


def test_storage_failure_is_opaque(issuer, verifier, device, monkeypatch):
    issued = _issue(issuer)

    def broken(*args):
        raise OperationalError("SELECT 1", {}, Exception("disk I/O error at /var/secret"))

    monkeypatch.setattr(verifier, "_redeem", broken)
    result = verifier.scan(issued.payload, device["id"])

    assert result.code == "REDEMPTION_FAILED"
    assert "secret" not in result.message


@pytest.mark.parametrize("column, value", [("purpose", "HOMEWORK_CHECK"), ("restriction_mode", "KIOSK")])
def test_unknown_stored_policy_values_fail_redemption(issuer, verifier, device, database, column, value):
    issued = _issue(issuer, one_device_once=True)
    with database.session_scope() as session:
        session.execute(
            update(RestrictionPolicy).where(RestrictionPolicy.id == issued.policy_id).values({column: value})
        )

    result = verifier.scan(issued.payload, device["id"])

    assert result.code == "REDEMPTION_FAILED"
    assert _count(database, UsageRecord) == 0
