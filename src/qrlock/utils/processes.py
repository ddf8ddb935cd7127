import subprocess

import psutil
from loguru import logger

from qrlock.utils.notifications import send_notification


def kill_processes(process_names: list[str]) -> set[str]:
    """Kills a list of processes by name if they are running."""
    killed_processes = set()
    process_names_set = set(process_names)

    for proc in psutil.process_iter(["name"]):
        try:
            if proc.info["name"] in process_names_set:
                logger.info(f"Killing {proc.info['name']} (PID: {proc.pid})")
                proc.kill()
                killed_processes.add(proc.info["name"])
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

    for killed_name in killed_processes:
        send_notification(f"Blocked {killed_name}", "App closed by an active lock.")
    return killed_processes


_LOCK_STATUS_COMMANDS = {
    "xdg-screensaver": (["xdg-screensaver", "status"], lambda out: "is locked" in out),
    "loginctl": (
        ["loginctl", "show-session", "self", "-p", "LockedHint", "--value"],
        lambda out: out.strip() == "yes",
    ),
    "gdbus-gnome": (
        [
            "gdbus",
            "call",
            "--session",
            "--dest",
            "org.gnome.ScreenSaver",
            "--object-path",
            "/org/gnome/ScreenSaver",
            "--method",
            "org.gnome.ScreenSaver.GetActive",
        ],
        lambda out: "(true,)" in out,
    ),
}

_screen_lock_method_cache: str | None = None


def _lock_method_reports_locked(method: str) -> bool:
    cmd, is_locked = _LOCK_STATUS_COMMANDS[method]
    result = subprocess.run(cmd, capture_output=True, text=True, timeout=2)
    return is_locked(result.stdout)


def is_screen_locked() -> bool:
    """Checks if the screen is locked, remembering the first method that works."""
    global _screen_lock_method_cache

    if _screen_lock_method_cache:
        try:
            if _lock_method_reports_locked(_screen_lock_method_cache):
                return True
        except (FileNotFoundError, subprocess.TimeoutExpired):
            _screen_lock_method_cache = None  # Invalidate cache if it failed

    if _screen_lock_method_cache is None:
        for method in _LOCK_STATUS_COMMANDS:
            try:
                if _lock_method_reports_locked(method):
                    _screen_lock_method_cache = method
                    return True
            except (FileNotFoundError, subprocess.TimeoutExpired):
                continue

    return False


_screen_lock_command_cache: list[str] | None = None

_LOCK_COMMANDS = (
    ["loginctl", "lock-session"],
    ["xdg-screensaver", "lock"],
    ["gnome-screensaver-command", "-l"],
)


def lock_screen():
    """Locks the screen using the first available method."""
    global _screen_lock_command_cache
    logger.debug("Attempting to lock screen...")

    if _screen_lock_command_cache:
        try:
            subprocess.run(_screen_lock_command_cache, check=False)
            return
        except FileNotFoundError:
            _screen_lock_command_cache = None

    for command in _LOCK_COMMANDS:
        try:
            subprocess.run(command, check=False)
            _screen_lock_command_cache = command
            return
        except FileNotFoundError:
            continue
    logger.warning("No screen lock command available.")
