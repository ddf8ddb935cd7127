from datetime import datetime, timedelta, timezone

import pytest

from qrlock.codec import StaticSecretProvider, TokenCodec
from qrlock.db import Database
from qrlock.issuer import TokenIssuer
from qrlock.store import DeviceRegistry
from qrlock.verifier import TokenVerifier

KST = timezone(timedelta(hours=9))


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime):
        self.now = now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    # 2026-10-19 is a Monday
    return FrozenClock(datetime(2026, 10, 19, 8, 55, tzinfo=KST))


@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'qrlock-test.db'}")
    db.create_all()
    yield db
    db.engine.dispose()


@pytest.fixture
def codec():
    return TokenCodec(StaticSecretProvider("test-secret"))


@pytest.fixture
def devices(database, clock):
    return DeviceRegistry(database, clock=clock)


@pytest.fixture
def device(devices):
    """An Android device that has granted the accessibility permission."""
    registered = devices.register("hw-android-1", "ANDROID", device_model="Pixel 8")
    return devices.sync_permissions(registered["id"], accessibility=True)


@pytest.fixture
def issuer(database, codec, clock):
    return TokenIssuer(database, codec, clock=clock)


@pytest.fixture
def verifier(database, codec, clock):
    return TokenVerifier(database, codec, clock=clock)
