import json
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from qrlock.schema import RestrictionMode
from qrlock.utils.notifications import send_notification
from qrlock.utils.processes import is_screen_locked, kill_processes, lock_screen
from qrlock.utils.state import DaemonState
from qrlock.utils.time import LOCAL_DAYS, calculate_from_range, minutes_of_day

INSTANT_SOURCE = "instant"


class EnforcementAgent(Protocol):
    """The platform side that actually restricts the device."""

    def schedule_enforcement(
        self,
        schedule_id: str,
        start_time: str,
        end_time: str,
        days: list[str],
        mode: str,
        label: str,
        app_list_encoded: str,
        prevent_removal: bool,
        pre_lead_minutes: int,
    ) -> None: ...

    def cancel_enforcement(self, schedule_id: str) -> None: ...

    def restore_current_state(self) -> None: ...

    def start_immediate(
        self, duration_minutes: int, mode: str, apps: list[str], label: str
    ) -> None: ...

    def is_active(self) -> bool: ...

    def remaining_duration(self) -> int: ...

    def stop_immediate(self) -> bool: ...

    def stop_all_active(self) -> list[str]: ...


class EnforcementEntry(BaseModel):
    """A schedule as handed to the agent."""

    id: str
    start_time: str
    end_time: str
    days: list[str] = Field(default_factory=list)
    mode: RestrictionMode = RestrictionMode.APP
    label: str = ""
    apps: list[str] = Field(default_factory=list)
    prevent_removal: bool = False
    pre_lead_minutes: int = 5

    @classmethod
    def build(
        cls,
        schedule_id: str,
        start_time: str,
        end_time: str,
        days: list[str],
        mode: str,
        label: str,
        app_list_encoded: str,
        prevent_removal: bool,
        pre_lead_minutes: int,
    ) -> "EnforcementEntry":
        """Builds an entry from the arguments of ``schedule_enforcement``."""
        return cls(
            id=schedule_id,
            start_time=start_time,
            end_time=end_time,
            days=days,
            mode=RestrictionMode.parse(mode),
            label=label,
            apps=json.loads(app_list_encoded or "[]"),
            prevent_removal=prevent_removal,
            pre_lead_minutes=pre_lead_minutes,
        )


def _runs_on(entry: EnforcementEntry, day: datetime) -> bool:
    return not entry.days or LOCAL_DAYS[day.weekday()] in entry.days


def entry_remaining_seconds(entry: EnforcementEntry, now: datetime) -> int | None:
    """Seconds left if ``entry`` is enforcing at ``now``, else None.

    A window that spans midnight belongs to the day it starts on.
    """
    start = minutes_of_day(entry.start_time) * 60
    end = minutes_of_day(entry.end_time) * 60
    current = now.hour * 3600 + now.minute * 60 + now.second

    if start < end:
        if start <= current < end and _runs_on(entry, now):
            return end - current
        return None

    if current >= start and _runs_on(entry, now):
        return 24 * 3600 - current + end
    if current < end and _runs_on(entry, now - timedelta(days=1)):
        return end - current
    return None


class EnforcementRegistry:
    """The entries the agent enforces, persisted as JSON."""

    def __init__(self, path: Path):
        self.path = path
        self.entries: dict[str, EnforcementEntry] = {}
        self._last_mtime: float | None = None
        self.reload()

    def reload(self):
        if not self.path.exists():
            self._last_mtime = None
            self.entries = {}
            return

        current_mtime = self.path.stat().st_mtime
        if self._last_mtime == current_mtime:
            return

        try:
            with open(self.path) as f:
                data = json.load(f)
            self.entries = {e["id"]: EnforcementEntry(**e) for e in data}
            self._last_mtime = current_mtime
        except (json.JSONDecodeError, OSError, ValidationError, KeyError) as e:
            logger.error(f"Failed to load enforcement registry: {e}")

    def save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(
                [e.model_dump(mode="json") for e in self.entries.values()],
                f,
                indent=4,
                ensure_ascii=False,
            )
        tmp.replace(self.path)
        self._last_mtime = self.path.stat().st_mtime

    def put(self, entry: EnforcementEntry):
        self.reload()
        self.entries[entry.id] = entry
        self.save()
        logger.info(
            f"Scheduled enforcement {entry.id} ({entry.start_time}-{entry.end_time} {','.join(entry.days)})"
        )

    def remove(self, entry_id: str) -> bool:
        self.reload()
        if self.entries.pop(entry_id, None) is None:
            return False
        self.save()
        logger.info(f"Cancelled enforcement {entry_id}")
        return True

    def upcoming(self, now: datetime | None = None) -> list[tuple[EnforcementEntry, int, int, int]]:
        """Entries sorted by next activation delay, as (entry, delay, remaining, total)."""
        now = now or datetime.now()
        candidates = []
        for entry in self.entries.values():
            delay, duration, total = calculate_from_range(entry.start_time, entry.end_time, now)
            start_day = now + timedelta(seconds=delay)
            if delay == 0:
                if entry_remaining_seconds(entry, now) is None:
                    continue
            elif not _runs_on(entry, start_day):
                continue
            candidates.append((entry, delay, duration, total))
        candidates.sort(key=lambda c: c[1])
        return candidates


class LockSession:
    """One running restriction: app killing, plus screen locking in FULL mode."""

    def __init__(self, duration_seconds: int, mode: RestrictionMode, apps: list[str], label: str):
        self.duration_seconds = duration_seconds
        self.mode = mode
        self.apps = apps
        self.label = label
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._running = False
        self._target_end_time = 0.0

    @property
    def running(self) -> bool:
        return self._running

    def remaining(self) -> int:
        if not self._running:
            return 0
        return max(0, int(self._target_end_time - time.time()))

    def start(self):
        if self._running:
            logger.warning("Lock session is already running.")
            return

        logger.info(
            f"Starting lock '{self.label}': Duration={self.duration_seconds}s, "
            f"Mode={self.mode.value}, Apps={self.apps}"
        )
        self._stop_event.clear()
        self._running = True
        self._target_end_time = time.time() + self.duration_seconds
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self):
        if not self._running:
            return

        logger.info(f"Stopping lock '{self.label}'...")
        self._stop_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._running = False

    def _run(self):
        try:
            self._enforce()
        except Exception as e:
            logger.exception(f"Error in lock session: {e}")
        finally:
            self._running = False

    def _enforce(self):
        while time.time() < self._target_end_time:
            if self._stop_event.is_set():
                return

            if self.apps:
                kill_processes(self.apps)

            if self.mode == RestrictionMode.FULL and not is_screen_locked():
                lock_screen()

            if self._stop_event.wait(timeout=2):
                return

        logger.info(f"Lock '{self.label}' finished.")
        send_notification("Lock finished", "You can now resume using your device.")


class DesktopEnforcementAgent:
    """Enforces schedules on this machine from inside the daemon process.

    At most one lock session runs at a time. ``source_id`` is the schedule
    id that started it, or ``instant`` for a scan or manual start.
    """

    def __init__(self, registry: EnforcementRegistry, max_minutes: int, state: DaemonState | None = None):
        self.registry = registry
        self.max_minutes = max_minutes
        self.state = state
        self.session: LockSession | None = None
        self.source_id: str | None = None
        self._notified: set[tuple[str, str]] = set()
        self._suppressed: dict[str, float] = {}
        self._active_entry: EnforcementEntry | None = None
        self._lock = threading.RLock()

    def schedule_enforcement(
        self,
        schedule_id: str,
        start_time: str,
        end_time: str,
        days: list[str],
        mode: str,
        label: str,
        app_list_encoded: str,
        prevent_removal: bool,
        pre_lead_minutes: int,
    ) -> None:
        self.registry.put(
            EnforcementEntry.build(
                schedule_id,
                start_time,
                end_time,
                days,
                mode,
                label,
                app_list_encoded,
                prevent_removal,
                pre_lead_minutes,
            )
        )

    def cancel_enforcement(self, schedule_id: str) -> None:
        self.registry.remove(schedule_id)
        with self._lock:
            if self.source_id == schedule_id:
                self._stop_session()

    def restore_current_state(self, now: datetime | None = None) -> None:
        """Starts the lock for whichever schedule should be enforcing right now."""
        now = now or datetime.now()
        self.registry.reload()
        with self._lock:
            if self.is_active() and not self._still_scheduled():
                self._stop_session()
            if self.is_active():
                return
            self._stop_session()

            for entry, delay, _, _ in self.registry.upcoming(now):
                if self._suppressed.get(entry.id, 0) > time.time():
                    continue
                if delay == 0:
                    remaining = entry_remaining_seconds(entry, now)
                    self._start_session(entry.id, remaining, entry.mode, entry.apps, entry.label)
                    self._active_entry = entry
                    return
                self._maybe_notify(entry, delay, now)

    def _still_scheduled(self) -> bool:
        """False when the schedule behind the running lock was changed or removed."""
        if self.source_id == INSTANT_SOURCE:
            return True
        return self.registry.entries.get(self.source_id) == self._active_entry

    def _maybe_notify(self, entry: EnforcementEntry, delay: int, now: datetime):
        lead_secs = entry.pre_lead_minutes * 60
        key = (entry.id, (now + timedelta(seconds=delay)).strftime("%Y-%m-%d %H:%M"))
        if 0 < delay <= lead_secs and key not in self._notified:
            self._notified.add(key)
            send_notification(
                f"Lock starts in {max(1, delay // 60)} minutes",
                f"{entry.label or 'Scheduled lock'} begins at {entry.start_time}.",
            )

    def start_immediate(self, duration_minutes: int, mode: str, apps: list[str], label: str) -> None:
        minutes = min(duration_minutes, self.max_minutes)
        with self._lock:
            self._stop_session()
            self._start_session(INSTANT_SOURCE, minutes * 60, RestrictionMode.parse(mode), apps, label)

    def is_active(self) -> bool:
        return self.session is not None and self.session.running

    def remaining_duration(self) -> int:
        return self.session.remaining() if self.session else 0

    def stop_immediate(self) -> bool:
        with self._lock:
            if self.source_id != INSTANT_SOURCE or not self.is_active():
                return False
            self._stop_session()
            return True

    def stop_all_active(self) -> list[str]:
        """Stops the running lock unless its schedule forbids removal.

        A stopped schedule is not restarted until its current window ends.
        """
        with self._lock:
            if not self.is_active():
                return []
            entry = self.registry.entries.get(self.source_id)
            if entry and entry.prevent_removal:
                logger.warning(f"Lock {entry.id} cannot be removed before it ends.")
                return []
            stopped = [self.source_id]
            if entry:
                self._suppressed[entry.id] = time.time() + self.remaining_duration()
            self._stop_session()
            return stopped

    def shutdown(self):
        """Stops the running lock when the daemon exits."""
        with self._lock:
            self._stop_session()

    def active_info(self) -> dict | None:
        if not self.is_active():
            return None
        return {
            "source": self.source_id,
            "label": self.session.label,
            "mode": self.session.mode.value,
            "blocked_apps": self.session.apps,
            "remaining_secs": self.remaining_duration(),
        }

    def _start_session(self, source_id: str, seconds: int, mode: RestrictionMode, apps: list[str], label: str):
        seconds = min(seconds, self.max_minutes * 60)
        self.session = LockSession(seconds, mode, apps, label)
        self.source_id = source_id
        self.session.start()
        send_notification("Lock started", f"{label or 'Lock'} is active.")
        self._report()

    def _stop_session(self):
        if self.session:
            self.session.stop()
        self.session = None
        self.source_id = None
        self._active_entry = None
        self._report()

    def _report(self):
        if self.state:
            self.state.write(self.active_info())


class CommandPending(RuntimeError):
    pass


class DaemonClient:
    """The agent as seen from outside the daemon process.

    Registry changes go straight to the shared registry file. Session
    changes are sent to the daemon through the command file, and session
    status is read back from the daemon's state file.
    """

    STALE_AFTER_SECONDS = 30

    def __init__(self, registry: EnforcementRegistry, command_file: Path, state: DaemonState):
        self.registry = registry
        self.command_file = command_file
        self.state = state

    def send_command(self, command: dict):
        if self.command_file.exists():
            # Check if the file is stale
            mtime = self.command_file.stat().st_mtime
            if time.time() - mtime > self.STALE_AFTER_SECONDS:
                logger.warning("Found stale command file, removing...")
                self.command_file.unlink(missing_ok=True)
            else:
                raise CommandPending(f"Another command is already pending at {self.command_file}")

        self.command_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.command_file, "w") as f:
            json.dump(command, f)
        logger.debug(f"Sent daemon command: {command['command']}")

    def schedule_enforcement(self, *args, **kwargs) -> None:
        # A changed schedule that is enforcing right now is re-evaluated by the daemon's next restore.
        self.registry.put(EnforcementEntry.build(*args, **kwargs))

    def cancel_enforcement(self, schedule_id: str) -> None:
        self.registry.remove(schedule_id)

    def restore_current_state(self) -> None:
        try:
            self.send_command({"command": "restore"})
        except CommandPending:
            logger.debug("Command pending; the daemon restores state on its next tick.")

    def start_immediate(self, duration_minutes: int, mode: str, apps: list[str], label: str) -> None:
        self.send_command(
            {
                "command": "start_instant",
                "duration_mins": duration_minutes,
                "mode": mode,
                "blocked_apps": apps,
                "label": label,
            }
        )

    def _active(self) -> dict | None:
        state = self.state.read() or {}
        return state.get("active_lockout")

    def is_active(self) -> bool:
        return self._active() is not None

    def remaining_duration(self) -> int:
        active = self._active()
        return int(active.get("remaining_secs", 0)) if active else 0

    def stop_immediate(self) -> bool:
        active = self._active()
        if not active or active.get("source") != INSTANT_SOURCE:
            return False
        self.send_command({"command": "stop_lockout", "instant_only": True})
        return True

    def stop_all_active(self) -> list[str]:
        active = self._active()
        if not active:
            return []
        self.send_command({"command": "stop_lockout", "instant_only": False})
        return [active["source"]]
