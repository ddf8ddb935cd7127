import json
from pathlib import Path
from typing import Any

import requests
from loguru import logger
from pydantic import BaseModel, ValidationError

from qrlock.errors import SourceUnavailable
from qrlock.schema import Preset, PresetKind, Schedule


class AuthoritativeScheduleClient:
    """Fetches guardian-managed schedules for one identity."""

    name = "authoritative"

    def __init__(
        self,
        base_url: str,
        identity: str,
        api_token: str | None = None,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.identity = identity
        self.api_token = api_token
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(self) -> list[dict[str, Any]]:
        url = f"{self.base_url}/parent-child/{self.identity}/schedules"
        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        try:
            resp = self.session.get(url, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.Timeout as e:
            raise SourceUnavailable(self.name, f"timed out after {self.timeout}s") from e
        except (requests.RequestException, ValueError) as e:
            raise SourceUnavailable(self.name, str(e)) from e

        if not isinstance(data, dict):
            raise SourceUnavailable(self.name, f"unexpected response body: {type(data).__name__}")
        if not data.get("success", True):
            raise SourceUnavailable(self.name, data.get("message") or "request refused")
        schedules = data.get("schedules") or []
        if not isinstance(schedules, list):
            raise SourceUnavailable(self.name, f"schedules is a {type(schedules).__name__}, not a list")
        logger.debug(f"Fetched {len(schedules)} authoritative schedule(s) for {self.identity}")
        return schedules


class _JsonListStore:
    """A list of pydantic models kept in one JSON file."""

    model: type[BaseModel]

    def __init__(self, path: Path):
        self.path = path

    def _load(self) -> list:
        if not self.path.exists():
            return []
        try:
            with open(self.path) as f:
                data = json.load(f)
            return [self.model(**item) for item in data]
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            logger.error(f"Failed to load {self.path.name}: {e}")
            return []

    def _save(self, items: list):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump([i.model_dump(mode="json") for i in items], f, indent=4, ensure_ascii=False)
        tmp.replace(self.path)


class PresetStore(_JsonListStore):
    """User-owned presets stored on the device."""

    model = Preset
    name = "preset"

    def all(self) -> list[Preset]:
        return self._load()

    def scheduled(self) -> list[Schedule]:
        schedules = []
        for preset in self._load():
            if preset.kind != PresetKind.SCHEDULED:
                continue
            try:
                schedules.append(preset.to_schedule())
            except (ValueError, ValidationError) as e:
                logger.warning(f"Skipping malformed preset {preset.id}: {e}")
        return schedules

    def fetch(self) -> list[Schedule]:
        return self.scheduled()

    def add(self, preset: Preset) -> Preset:
        presets = [p for p in self._load() if p.id != preset.id]
        presets.append(preset)
        self._save(presets)
        return preset

    def remove(self, preset_id: str) -> bool:
        presets = self._load()
        kept = [p for p in presets if p.id != preset_id]
        self._save(kept)
        return len(kept) != len(presets)


class AdHocScheduleStore(_JsonListStore):
    """Schedules created by redeeming scheduled tokens."""

    model = Schedule
    name = "ad-hoc"

    def fetch(self) -> list[Schedule]:
        return self._load()

    def add(self, schedule: Schedule) -> Schedule:
        schedules = [s for s in self._load() if s.id != schedule.id]
        schedules.append(schedule)
        self._save(schedules)
        logger.info(f"Stored ad-hoc schedule {schedule.id} ({schedule.start_time}-{schedule.end_time})")
        return schedule

    def remove(self, schedule_id: str) -> bool:
        schedules = self._load()
        kept = [s for s in schedules if s.id != schedule_id]
        self._save(kept)
        return len(kept) != len(schedules)


class ScheduleCache:
    """The last applied merged set plus the enforcement settings.

    The schedule list is read and overwritten as a single unit.
    """

    def __init__(self, path: Path, prevent_removal: bool = False, pre_lead_minutes: int = 5):
        self.path = path
        self._defaults = {
            "prevent_removal": prevent_removal,
            "pre_lead_minutes": pre_lead_minutes,
        }

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Failed to read schedule cache: {e}")
            return {}

    def _write(self, data: dict):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(data, f, indent=4, ensure_ascii=False)
        tmp.replace(self.path)

    def get_schedules(self) -> list[Schedule]:
        schedules = []
        for item in self._read().get("schedules", []):
            try:
                schedules.append(Schedule(**item))
            except ValidationError as e:
                logger.warning(f"Dropping unreadable cached schedule: {e}")
        return schedules

    def save_schedules(self, schedules: list[Schedule]):
        data = self._read()
        data["schedules"] = [s.model_dump(mode="json") for s in schedules]
        self._write(data)

    def get_prevent_removal(self) -> bool:
        return bool(self._read().get("prevent_removal", self._defaults["prevent_removal"]))

    def set_prevent_removal(self, value: bool):
        data = self._read()
        data["prevent_removal"] = value
        self._write(data)

    def get_pre_lead_minutes(self) -> int:
        return int(self._read().get("pre_lead_minutes", self._defaults["pre_lead_minutes"]))

    def set_pre_lead_minutes(self, value: int):
        data = self._read()
        data["pre_lead_minutes"] = value
        self._write(data)
