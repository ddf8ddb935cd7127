from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from qrlock.db import Database
from qrlock.errors import StorageError
from qrlock.models import Device, Platform
from qrlock.utils.time import utc_now


def find_device(session: Session, device_ref: str) -> Device | None:
    """Looks a device up by primary id or by its stable hardware identifier."""
    return session.execute(
        select(Device).where(or_(Device.id == device_ref, Device.device_uuid == device_ref)).limit(1)
    ).scalar_one_or_none()


class DeviceRegistry:
    """Registration, heartbeat and permission sync for devices.

    Devices are created on first registration and never deleted.
    """

    def __init__(self, database: Database, clock=None):
        self.database = database
        self._clock = clock or utc_now

    def register(
        self,
        device_uuid: str,
        platform: Platform | str,
        device_model: str | None = None,
        os_version: str | None = None,
        app_version: str | None = None,
    ) -> dict:
        platform = Platform(platform.upper())
        now = self._clock()
        try:
            with self.database.session_scope() as session:
                device = find_device(session, device_uuid)
                if device is None:
                    device = Device(
                        device_uuid=device_uuid,
                        platform=platform.value,
                        device_model=device_model,
                    )
                    session.add(device)
                    logger.info(f"Registered new {platform.value} device {device_uuid}")
                if os_version is not None:
                    device.os_version = os_version
                if app_version is not None:
                    device.app_version = app_version
                device.last_seen_at = now
                session.flush()
                return device.to_dict()
        except SQLAlchemyError as e:
            logger.error(f"Failed to register device {device_uuid}: {e}")
            raise StorageError("Device registration failed") from e

    def sync_permissions(
        self,
        device_ref: str,
        accessibility: bool | None = None,
        screen_time: bool | None = None,
    ) -> dict | None:
        """Partial update of the permission flags. Returns None for unknown devices."""
        now = self._clock()
        try:
            with self.database.session_scope() as session:
                device = find_device(session, device_ref)
                if device is None:
                    return None
                if accessibility is not None:
                    device.accessibility_permission = accessibility
                if screen_time is not None:
                    device.screen_time_permission = screen_time
                device.last_permission_sync = now
                device.last_seen_at = now
                session.flush()
                return device.to_dict()
        except SQLAlchemyError as e:
            logger.error(f"Failed to sync permissions for {device_ref}: {e}")
            raise StorageError("Permission sync failed") from e

    def heartbeat(self, device_ref: str) -> bool:
        with self.database.session_scope() as session:
            device = find_device(session, device_ref)
            if device is None:
                return False
            device.last_seen_at = self._clock()
            return True

    def find(self, device_ref: str) -> dict | None:
        with self.database.session_scope() as session:
            device = find_device(session, device_ref)
            return device.to_dict() if device else None
