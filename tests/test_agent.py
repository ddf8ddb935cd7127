import json
from datetime import datetime

import pytest

import qrlock.agent as agent_module
from qrlock.agent import (
    CommandPending,
    DaemonClient,
    DesktopEnforcementAgent,
    EnforcementEntry,
    EnforcementRegistry,
    entry_remaining_seconds,
)
from qrlock.utils.state import DaemonState

MONDAY = datetime(2026, 10, 19)


def at(day_offset: int, hour: int, minute: int = 0) -> datetime:
    return MONDAY.replace(day=19 + day_offset, hour=hour, minute=minute)


def entry(id="s1", start="20:00", end="21:00", days=("월",), **extra) -> EnforcementEntry:
    return EnforcementEntry(id=id, start_time=start, end_time=end, days=list(days), **extra)


class FakeSession:
    def __init__(self, duration_seconds, mode, apps, label):
        self.duration_seconds = duration_seconds
        self.mode = mode
        self.apps = apps
        self.label = label
        self.running = False

    def start(self):
        self.running = True

    def stop(self):
        self.running = False

    def remaining(self):
        return self.duration_seconds if self.running else 0


@pytest.fixture(autouse=True)
def quiet_desktop(monkeypatch):
    notes = []
    monkeypatch.setattr(agent_module, "LockSession", FakeSession)
    monkeypatch.setattr(agent_module, "send_notification", lambda summary, body: notes.append(summary))
    return notes


@pytest.fixture
def registry(tmp_path):
    return EnforcementRegistry(tmp_path / "enforcement.json")


@pytest.fixture
def state(tmp_path):
    return DaemonState(tmp_path / "state.json")


@pytest.fixture
def desktop(registry, state):
    return DesktopEnforcementAgent(registry, max_minutes=240, state=state)


def schedule(agent, id="s1", start="20:00", end="21:00", days=("월",), mode="APP", apps=("firefox",), prevent=False):
    agent.schedule_enforcement(id, start, end, list(days), mode, f"Lock {id}", json.dumps(list(apps)), prevent, 5)


@pytest.mark.parametrize(
    "now, expected",
    [
        (at(0, 19, 59), None),
        (at(0, 20, 0), 3600),
        (at(0, 20, 30), 1800),
        (at(0, 21, 0), None),
        (at(1, 20, 30), None),  # Tuesday
    ],
)
def test_remaining_for_same_day_window(now, expected):
    assert entry_remaining_seconds(entry(), now) == expected


def test_window_spanning_midnight_belongs_to_its_start_day():
    overnight = entry(start="23:00", end="01:00")
    assert entry_remaining_seconds(overnight, at(0, 23, 30)) == 5400
    assert entry_remaining_seconds(overnight, at(1, 0, 30)) == 1800  # Monday's window, Tuesday morning
    assert entry_remaining_seconds(overnight, at(2, 0, 30)) is None  # Tuesday's window is not scheduled


def test_empty_days_means_every_day():
    assert entry_remaining_seconds(entry(days=()), at(3, 20, 15)) == 2700


def test_registry_persists_and_upserts(registry, tmp_path):
    registry.put(entry())
    registry.put(entry(end="22:00"))
    registry.put(entry(id="s2"))

    reloaded = EnforcementRegistry(tmp_path / "enforcement.json")
    assert set(reloaded.entries) == {"s1", "s2"}
    assert reloaded.entries["s1"].end_time == "22:00"

    assert reloaded.remove("s2")
    assert not reloaded.remove("s2")


def test_upcoming_is_sorted_and_skips_other_days(registry):
    registry.put(entry("late", start="22:00", end="23:00"))
    registry.put(entry("soon", start="20:00", end="21:00"))
    registry.put(entry("tuesday", start="19:00", end="19:30", days=("화",)))

    upcoming = registry.upcoming(at(0, 18, 0))

    assert [(e.id, delay) for e, delay, _, _ in upcoming] == [("soon", 7200), ("late", 14400)]


def test_restore_starts_the_active_schedule(desktop, state):
    schedule(desktop, mode="FULL")

    desktop.restore_current_state(at(0, 20, 15))

    assert desktop.is_active()
    assert desktop.source_id == "s1"
    assert desktop.session.duration_seconds == 2700
    assert desktop.session.apps == ["firefox"]
    assert state.read()["active_lockout"]["source"] == "s1"


def test_restore_outside_any_window_does_nothing(desktop, quiet_desktop):
    schedule(desktop)
    desktop.restore_current_state(at(0, 12, 0))
    assert not desktop.is_active()
    assert quiet_desktop == []


def test_restore_warns_before_start_once(desktop, quiet_desktop):
    schedule(desktop)
    desktop.restore_current_state(at(0, 19, 56))
    desktop.restore_current_state(at(0, 19, 57))
    assert quiet_desktop == ["Lock starts in 4 minutes"]


def test_restore_keeps_a_running_lock(desktop):
    schedule(desktop)
    desktop.restore_current_state(at(0, 20, 15))
    session = desktop.session
    desktop.restore_current_state(at(0, 20, 16))
    assert desktop.session is session


def test_changed_schedule_restarts_on_restore(desktop):
    schedule(desktop)
    desktop.restore_current_state(at(0, 20, 15))

    schedule(desktop, apps=("firefox", "steam"))
    desktop.restore_current_state(at(0, 20, 16))

    assert desktop.session.apps == ["firefox", "steam"]


def test_cancel_stops_the_running_lock(desktop, registry):
    schedule(desktop)
    desktop.restore_current_state(at(0, 20, 15))

    desktop.cancel_enforcement("s1")

    assert not desktop.is_active()
    assert "s1" not in registry.entries


def test_session_length_is_capped(registry):
    capped = DesktopEnforcementAgent(registry, max_minutes=30)
    schedule(capped, start="20:00", end="23:00")
    capped.restore_current_state(at(0, 20, 0))
    assert capped.session.duration_seconds == 1800

    capped.start_immediate(600, "APP", [], "Scan")
    assert capped.remaining_duration() == 1800


def test_instant_lock(desktop):
    desktop.start_immediate(25, "FULL", ["steam"], "Class")
    assert desktop.is_active()
    assert desktop.source_id == "instant"
    assert desktop.remaining_duration() == 1500

    assert desktop.stop_immediate()
    assert not desktop.is_active()
    assert not desktop.stop_immediate()


def test_stop_immediate_leaves_scheduled_lock(desktop):
    schedule(desktop)
    desktop.restore_current_state(at(0, 20, 15))
    assert not desktop.stop_immediate()
    assert desktop.is_active()


def test_stop_all_active_suppresses_restart(desktop):
    schedule(desktop)
    desktop.restore_current_state(at(0, 20, 15))

    assert desktop.stop_all_active() == ["s1"]
    desktop.restore_current_state(at(0, 20, 16))

    assert not desktop.is_active()
    assert desktop.stop_all_active() == []


def test_prevent_removal_blocks_stop(desktop):
    schedule(desktop, prevent=True)
    desktop.restore_current_state(at(0, 20, 15))

    assert desktop.stop_all_active() == []
    assert desktop.is_active()


def test_daemon_client_writes_registry_and_commands(tmp_path, registry, state):
    command_file = tmp_path / "command.json"
    client = DaemonClient(registry, command_file, state)

    schedule(client)
    assert "s1" in EnforcementRegistry(registry.path).entries

    client.start_immediate(15, "APP", ["steam"], "Scan")
    assert json.loads(command_file.read_text()) == {
        "command": "start_instant",
        "duration_mins": 15,
        "mode": "APP",
        "blocked_apps": ["steam"],
        "label": "Scan",
    }

    with pytest.raises(CommandPending):
        client.start_immediate(15, "APP", [], "Again")

    # A pending command only delays the restore request
    client.restore_current_state()


def test_daemon_client_reads_state(tmp_path, registry, state):
    client = DaemonClient(registry, tmp_path / "command.json", state)
    assert not client.is_active()
    assert client.stop_all_active() == []

    state.write({"source": "instant", "remaining_secs": 90})
    assert client.is_active()
    assert client.remaining_duration() == 90
    assert client.stop_immediate()
    assert json.loads((tmp_path / "command.json").read_text())["instant_only"] is True
