import json
import time

from loguru import logger
from rich.console import Console

from qrlock import services
from qrlock.agent import DesktopEnforcementAgent
from qrlock.reconciler import ScheduleReconciler, SingleFlight
from qrlock.settings import Settings, load_settings

console = Console()

TICK_SECONDS = 5


def process_command(settings: Settings, agent: DesktopEnforcementAgent) -> str | None:
    """Reads, deletes and executes a pending command. Returns its name."""
    if not settings.command_file.exists():
        return None

    try:
        with open(settings.command_file) as f:
            command_data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.error(f"Error reading command file: {e}")
        return None
    finally:
        settings.command_file.unlink(missing_ok=True)

    cmd = command_data.get("command")
    if cmd == "start_instant":
        console.print("[bold blue]Received command to start an instant lock.[/bold blue]")
        agent.start_immediate(
            command_data.get("duration_mins", 10),
            command_data.get("mode", "APP"),
            command_data.get("blocked_apps", []),
            command_data.get("label", "Instant lock"),
        )
    elif cmd == "stop_lockout":
        console.print("[bold red]Received command to stop the active lock.[/bold red]")
        if command_data.get("instant_only"):
            agent.stop_immediate()
        else:
            agent.stop_all_active()
    elif cmd == "restore":
        agent.restore_current_state()
    else:
        logger.warning(f"Ignoring unknown command: {cmd!r}")
        return None
    return cmd


class Daemon:
    """Owns the in-process agent and runs reconciliation on an interval."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.state = services.daemon_state(settings)
        self.agent = DesktopEnforcementAgent(
            services.enforcement_registry(settings),
            max_minutes=settings.MAX_LOCKOUT_MINUTES,
            state=self.state,
        )
        self.single_flight = SingleFlight()
        self._last_reconcile = 0.0

    def reconciler(self) -> ScheduleReconciler:
        return services.reconciler(self.settings, self.agent)

    def reconcile(self):
        key = self.settings.device_uuid or "local"
        try:
            return self.single_flight.run(key, self.reconciler().reconcile)
        finally:
            self._last_reconcile = time.monotonic()

    def tick(self):
        self.settings = load_settings()
        process_command(self.settings, self.agent)

        if time.monotonic() - self._last_reconcile >= self.settings.reconcile_interval_seconds:
            self.reconcile()
        else:
            self.agent.restore_current_state()

        self.state.write(self.agent.active_info())

    def run(self):
        console.print("[bold green]qrlock daemon started...[/bold green]")
        console.print(f"Data directory: [cyan]{self.settings.data_dir}[/cyan]")
        console.print("Reconciling schedules and watching for commands. Press Ctrl+C to stop.")

        self.state.write()
        try:
            while True:
                try:
                    self.tick()
                except Exception as e:
                    logger.exception(f"Daemon tick failed: {e}")
                time.sleep(TICK_SECONDS)
        finally:
            console.print("\n[yellow]Stopping daemon...[/yellow]")
            self.agent.shutdown()
            self.state.cleanup()


def run_daemon():
    """Main loop for the enforcement daemon."""
    Daemon(load_settings()).run()
