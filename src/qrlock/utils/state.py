import json
import os
from datetime import datetime
from pathlib import Path

from loguru import logger


class DaemonState:
    """The daemon's state file, read by ``status`` and by other processes.

    Keeps the last written payload so unchanged state is not rewritten.
    """

    def __init__(self, path: Path):
        self.path = path
        self._last_written: dict | None = None

    def write(self, active_info: dict | None = None):
        state = {
            "pid": os.getpid(),
            "active_lockout": active_info,
        }
        if state == self._last_written:
            return  # No change, no need to write

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump({**state, "last_update": datetime.now().isoformat()}, f, indent=4)
            self._last_written = state
        except OSError as e:
            logger.error(f"Failed to write daemon state: {e}")

    def read(self) -> dict | None:
        if not self.path.exists():
            return None
        try:
            with open(self.path) as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError):
            return None

    def cleanup(self):
        """Removes the state file when the daemon stops."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove state file: {e}")


def is_pid_alive(pid: int | None) -> bool:
    if not pid:
        return False
    try:
        os.kill(pid, 0)
    except OSError:
        return False
    return True
