import os
import subprocess
import time
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from qrlock import services
from qrlock.agent import CommandPending
from qrlock.client import apply_scan
from qrlock.errors import ConfigError, StorageError
from qrlock.issuer import IssueRequest
from qrlock.models import Platform, TokenPurpose
from qrlock.schema import Preset, RestrictionMode
from qrlock.settings import load_settings, settings
from qrlock.store import DeviceRegistry
from qrlock.utils.logging import setup_logging
from qrlock.utils.state import is_pid_alive
from qrlock.utils.time import format_duration_seconds, to_hhmm

app = typer.Typer(help="qrlock - QR-code driven device locks")
device_app = typer.Typer(help="Register devices and sync their permissions")
preset_app = typer.Typer(help="Manage locally stored lock presets")
adhoc_app = typer.Typer(help="Manage schedules added by scanning tokens")
app.add_typer(device_app, name="device")
app.add_typer(preset_app, name="preset")
app.add_typer(adhoc_app, name="adhoc")
console = Console()

SERVICE_NAME = "qrlock.service"


def is_daemon_running() -> bool:
    """Checks if the daemon is running via state file and PID."""
    state = services.daemon_state(settings).read()
    return bool(state) and is_pid_alive(state.get("pid"))


def process_list_option(values: list[str] | None) -> list[str]:
    """Flattens repeated and comma separated option values into a clean list."""
    if not values:
        return []
    processed = []
    for value in values:
        processed.extend(x.strip() for x in value.split(",") if x.strip())
    return processed


def _fail(message: str):
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(1)


def _format_delay(delay_secs: int) -> str:
    if delay_secs == 0:
        return "NOW"
    if delay_secs < 60:
        return f"{delay_secs}s"
    if delay_secs < 3600:
        return f"{delay_secs // 60}m"
    return f"{delay_secs // 3600}h {(delay_secs % 3600) // 60}m"


@app.command(name="init-db")
def init_db(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Create the token and device tables."""
    setup_logging(verbose=verbose)
    services.database(settings)
    console.print(f"[green]Database ready:[/green] {settings.effective_database_url}")


@device_app.command("register")
def device_register(
    device_uuid: str = typer.Argument(..., help="Stable hardware identifier"),
    platform: Platform = typer.Option(Platform.ANDROID, "--platform", "-p", case_sensitive=False),
    model: str | None = typer.Option(None, "--model", help="Device model"),
    os_version: str | None = typer.Option(None, "--os", help="OS version"),
    app_version: str | None = typer.Option(None, "--app-version", help="App version"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Register a device, or refresh an already registered one."""
    setup_logging(verbose=verbose)
    registry = DeviceRegistry(services.database(settings))
    try:
        device = registry.register(device_uuid, platform, model, os_version, app_version)
    except StorageError as e:
        _fail(str(e))
    console.print(f"[green]Device registered:[/green] {device['id']} ({device['platform']})")


@device_app.command("permissions")
def device_permissions(
    device_ref: str = typer.Argument(..., help="Device id or hardware identifier"),
    accessibility: bool | None = typer.Option(
        None, "--accessibility/--no-accessibility", help="Android accessibility service"
    ),
    screen_time: bool | None = typer.Option(
        None, "--screen-time/--no-screen-time", help="iOS Screen Time authorization"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Record which enforcement permissions a device has granted."""
    setup_logging(verbose=verbose)
    registry = DeviceRegistry(services.database(settings))
    device = registry.sync_permissions(device_ref, accessibility=accessibility, screen_time=screen_time)
    if device is None:
        _fail(f"Unknown device {device_ref}")

    table = Table(title=f"Device {device['id']}")
    table.add_column("Permission", style="cyan")
    table.add_column("Granted", style="magenta")
    table.add_row("Accessibility", "Yes" if device["accessibility_permission"] else "No")
    table.add_row("Screen Time", "Yes" if device["screen_time_permission"] else "No")
    console.print(table)


@app.command()
def issue(
    duration: int = typer.Option(..., "--duration", "-l", help="Lock duration in minutes"),
    purpose: TokenPurpose = typer.Option(TokenPurpose.INSTANT_LOCK, "--purpose", case_sensitive=False),
    mode: RestrictionMode = typer.Option(RestrictionMode.APP, "--mode", "-m", case_sensitive=False),
    apps: list[str] | None = typer.Option(None, "--apps", "-a", help="Apps to block (comma separated)"),
    name: str | None = typer.Option(None, "--name", "-n", help="Policy name"),
    window: str | None = typer.Option(None, "--window", "-w", help="Allowed scan window, e.g. 09:00-10:00"),
    days: list[str] | None = typer.Option(None, "--days", "-d", help="Window days, e.g. MON,WED"),
    once: bool = typer.Option(False, "--once", help="Each device may redeem the token only once"),
    issuer_id: str | None = typer.Option(None, "--issuer", help="Issuing account id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Issue a signed token and print the payload to encode in a QR code."""
    setup_logging(verbose=verbose)
    try:
        request = IssueRequest(
            purpose=purpose,
            duration_minutes=duration,
            blocked_apps=process_list_option(apps),
            restriction_mode=mode,
            name=name,
            time_window=window,
            days=process_list_option(days),
            one_device_once=once,
            issuer_id=issuer_id,
        )
        issued = services.issuer(settings).issue(request)
    except (ValueError, ConfigError, StorageError) as e:
        _fail(str(e))

    console.print(f"[green]Issued token[/green] {issued.token_id}")
    console.print(f"Expires at: [magenta]{time.strftime('%Y-%m-%d %H:%M', time.localtime(issued.expiry))}[/magenta]")
    console.print(issued.payload, soft_wrap=True, highlight=False)


@app.command()
def scan(
    payload: str = typer.Argument(..., help="The scanned token payload (JSON)"),
    device_ref: str = typer.Option(..., "--device", help="Device id or hardware identifier"),
    apply: bool = typer.Option(True, "--apply/--no-apply", help="Apply the lock on this machine"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Redeem a scanned token for a device."""
    setup_logging(verbose=verbose)
    try:
        result = services.verifier(settings).scan(payload, device_ref)
    except ConfigError as e:
        _fail(str(e))

    if not result.success:
        console.print(f"[red]Rejected ({result.code}):[/red] {result.message}")
        if result.requires_permission:
            console.print(f"[yellow]Grant the enforcement permission for {result.platform} first.[/yellow]")
        raise typer.Exit(1)

    policy = result.lock_policy
    console.print(
        f"[green]Accepted:[/green] {policy.name} "
        f"({policy.restriction_mode.value}, {policy.duration_minutes}m)"
    )
    if not apply:
        return

    client = services.daemon_client(settings)
    try:
        schedule = apply_scan(result, client, services.adhoc_store(settings), settings.MAX_LOCKOUT_MINUTES)
    except CommandPending as e:
        _fail(f"{e}. Please wait a moment before trying again.")

    if schedule is not None:
        console.print(f"Scheduled [magenta]{schedule.start_time}-{schedule.end_time}[/magenta] {','.join(schedule.days)}")
        services.reconciler(settings, client).reconcile()
    elif not is_daemon_running():
        console.print("[yellow]Daemon is not running; the lock starts once it is.[/yellow]")


@app.command()
def reconcile(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Merge all schedule sources and update enforcement."""
    setup_logging(verbose=verbose)
    report = services.reconciler(settings, services.daemon_client(settings)).reconcile()

    console.print(f"[green]Reconciled {len(report.merged)} schedule(s).[/green]")
    if report.scheduled:
        console.print(f"Scheduled: [magenta]{', '.join(report.scheduled)}[/magenta]")
    if report.cancelled:
        console.print(f"Cancelled: [magenta]{', '.join(report.cancelled)}[/magenta]")
    if report.failed_sources:
        console.print(f"[yellow]Unavailable sources:[/yellow] {', '.join(report.failed_sources)}")
    if report.agent_failures:
        console.print(f"[red]Enforcement failures:[/red] {', '.join(report.agent_failures)}")


@app.command(name="list")
def list_schedules(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """List merged schedules, soonest first, plus any active lock."""
    setup_logging(verbose=verbose)
    schedules = {s.id: s for s in services.schedule_cache(settings).get_schedules()}
    upcoming = services.enforcement_registry(settings).upcoming()
    state = services.daemon_state(settings).read() or {}
    active = state.get("active_lockout")

    if not schedules and not active:
        console.print("[yellow]No scheduled or active locks found.[/yellow]")
        return

    if active:
        remaining = format_duration_seconds(active.get("remaining_secs", 0))
        console.print(
            f"[bold yellow]ACTIVE:[/bold yellow] {active.get('label') or active.get('source')} "
            f"({active.get('mode')}), ends in {remaining}"
        )

    table = Table(title="Scheduled Locks")
    table.add_column("#", justify="right", style="cyan", no_wrap=True)
    table.add_column("Name", style="white")
    table.add_column("Start", style="magenta")
    table.add_column("End", style="magenta")
    table.add_column("Days", style="magenta")
    table.add_column("In", style="green")
    table.add_column("Duration", style="blue")
    table.add_column("Mode", style="yellow")
    table.add_column("Apps", style="magenta")
    table.add_column("Origin", style="cyan")

    listed = set()
    for i, (entry, delay_secs, _, total_secs) in enumerate(upcoming, 1):
        sched = schedules.get(entry.id)
        listed.add(entry.id)
        table.add_row(
            str(i),
            entry.label,
            entry.start_time,
            entry.end_time,
            ",".join(entry.days) or "Every day",
            _format_delay(delay_secs),
            format_duration_seconds(total_secs),
            entry.mode.value,
            ", ".join(entry.apps) or "None",
            sched.origin.value if sched else "?",
        )
    for sched in schedules.values():
        if sched.id in listed:
            continue
        table.add_row(
            "-",
            sched.name,
            sched.start_time,
            sched.end_time,
            ",".join(sched.days) or "Every day",
            "Off" if not sched.is_active else "-",
            "-",
            sched.mode.value,
            ", ".join(sched.apps) or "None",
            sched.origin.value,
        )
    console.print(table)


@preset_app.command("add")
def preset_add(
    name: str = typer.Argument(..., help="Preset name"),
    start_time: str = typer.Argument(..., help="Start time (e.g. 8pm, 20:00)"),
    end_time: str = typer.Argument(..., help="End time (e.g. 9pm, 21:00)"),
    days: list[str] | None = typer.Option(None, "--days", "-d", help="Days, e.g. MON,TUE"),
    apps: list[str] | None = typer.Option(None, "--apps", "-a", help="Apps to block (comma separated)"),
    mode: RestrictionMode = typer.Option(RestrictionMode.APP, "--mode", "-m", case_sensitive=False),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Add a scheduled preset."""
    setup_logging(verbose=verbose)
    try:
        preset = Preset(
            name=name,
            start_time=to_hhmm(start_time),
            end_time=to_hhmm(end_time),
            days=process_list_option(days),
            apps=process_list_option(apps),
            mode=mode,
        )
        schedule = preset.to_schedule()
    except ValueError as e:
        _fail(str(e))

    services.preset_store(settings).add(preset)
    console.print(
        f"[green]Added preset[/green] {preset.id}: {schedule.start_time} - {schedule.end_time}"
    )
    console.print("[dim]Run `qrlock reconcile` (or wait for the daemon) to apply it.[/dim]")


@preset_app.command("remove")
def preset_remove(
    preset_id: str = typer.Argument(..., help="Preset id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Remove a preset."""
    setup_logging(verbose=verbose)
    if not services.preset_store(settings).remove(preset_id):
        _fail(f"No preset with id {preset_id}")
    console.print(f"[green]Removed preset[/green] {preset_id}")


@adhoc_app.command("list")
def adhoc_list() -> None:
    """List schedules added by scanned tokens."""
    schedules = services.adhoc_store(settings).fetch()
    if not schedules:
        console.print("[yellow]No scanned schedules.[/yellow]")
        return

    table = Table(title="Scanned Schedules")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Start", style="magenta")
    table.add_column("End", style="magenta")
    table.add_column("Days", style="magenta")
    table.add_column("Mode", style="yellow")
    table.add_column("Apps", style="magenta")
    for sched in schedules:
        table.add_row(
            sched.id,
            sched.name,
            sched.start_time,
            sched.end_time,
            ",".join(sched.days) or "Every day",
            sched.mode.value,
            ", ".join(sched.apps) or "None",
        )
    console.print(table)


@adhoc_app.command("remove")
def adhoc_remove(
    schedule_id: str = typer.Argument(..., help="Scanned schedule id (the token id)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Remove a scanned schedule; the next reconcile cancels its enforcement."""
    setup_logging(verbose=verbose)
    if not services.adhoc_store(settings).remove(schedule_id):
        _fail(f"No scanned schedule with id {schedule_id}")
    console.print(f"[green]Removed scanned schedule[/green] {schedule_id}")
    console.print("[dim]Run `qrlock reconcile` (or wait for the daemon) to apply it.[/dim]")


@app.command()
def instant(
    duration: int = typer.Option(10, "--duration", "-l", help="Lock duration in minutes"),
    apps: list[str] | None = typer.Option(None, "--apps", "-a", help="Apps to block"),
    mode: RestrictionMode = typer.Option(RestrictionMode.APP, "--mode", "-m", case_sensitive=False),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Start an instant lock via the running daemon."""
    setup_logging(verbose=verbose)

    if not is_daemon_running():
        _fail("Daemon is not running. Please start it with `qrlock start`.")
    if duration > settings.MAX_LOCKOUT_MINUTES:
        _fail(
            f"Instant lock duration ({duration}m) exceeds the maximum allowed "
            f"({settings.MAX_LOCKOUT_MINUTES}m). This is a guardrail to prevent permanent lockouts."
        )

    blocked_apps = process_list_option(apps)
    try:
        services.daemon_client(settings).start_immediate(duration, mode.value, blocked_apps, "Instant lock")
    except CommandPending as e:
        _fail(f"{e}. Please wait a moment before trying again.")

    console.print(f"[bold green]Requesting instant lock...[/bold green] Duration: {duration}m")
    if blocked_apps:
        console.print(f"Blocking apps: [magenta]{', '.join(blocked_apps)}[/magenta]")


@app.command()
def stop(
    instant_only: bool = typer.Option(False, "--instant-only", help="Only stop an instant lock"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Stop the active lock."""
    setup_logging(verbose=verbose)
    client = services.daemon_client(settings)
    try:
        if instant_only:
            stopped = ["instant"] if client.stop_immediate() else []
        else:
            stopped = client.stop_all_active()
    except CommandPending as e:
        _fail(f"{e}. Please wait a moment before trying again.")

    if not stopped:
        console.print("[yellow]No matching lock is active.[/yellow]")
        return
    console.print(f"[green]Requested stop for:[/green] {', '.join(stopped)}")


@app.command()
def config(
    lead_mins: int | None = typer.Option(None, "--lead", "-l", help="Minutes before a lock to notify"),
    prevent_removal: bool | None = typer.Option(
        None, "--prevent-removal/--allow-removal", help="Forbid stopping scheduled locks early"
    ),
    interval: int | None = typer.Option(None, "--interval", help="Seconds between reconciliations"),
    identity: str | None = typer.Option(None, "--identity", help="Linked account for guardian schedules"),
    api_url: str | None = typer.Option(None, "--api-url", help="Base URL of the schedule service"),
    max_lockout_mins: int | None = typer.Option(
        None, "--max-lockout", "-m", help="Maximum lock duration in minutes (guardrail)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Configure reconciliation and enforcement settings."""
    setup_logging(verbose=verbose)
    current_settings = load_settings()
    cache = services.schedule_cache(current_settings)

    if lead_mins is not None:
        current_settings.notify_lead_minutes = lead_mins
        cache.set_pre_lead_minutes(lead_mins)
    if prevent_removal is not None:
        current_settings.prevent_removal = prevent_removal
        cache.set_prevent_removal(prevent_removal)
    if interval is not None:
        current_settings.reconcile_interval_seconds = interval
    if identity is not None:
        current_settings.identity = identity or None
    if api_url is not None:
        current_settings.api_base_url = api_url
    if max_lockout_mins is not None:
        if max_lockout_mins < 1:
            _fail("Maximum lock duration must be at least 1 minute.")
        console.print(
            "\n[bold red]WARNING:[/bold red] Changing the maximum lock duration "
            "can lead to extended lockouts. Set this value carefully."
        )
        current_settings.MAX_LOCKOUT_MINUTES = max_lockout_mins

    current_settings.save()

    table = Table(title="Current Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("Lead Minutes", str(cache.get_pre_lead_minutes()))
    table.add_row("Prevent Removal", "Yes" if cache.get_prevent_removal() else "No")
    table.add_row("Reconcile Interval (s)", str(current_settings.reconcile_interval_seconds))
    table.add_row("Linked Identity", current_settings.identity or "-")
    table.add_row("Schedule Service", current_settings.api_base_url)
    table.add_row("Max Lock Duration (m)", str(current_settings.MAX_LOCKOUT_MINUTES))
    console.print(table)
    console.print("[green]Configuration saved![/green]")


@app.command()
def status(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Check the status of the daemon and the active lock."""
    setup_logging(verbose=verbose)

    state = services.daemon_state(settings).read() or {}
    daemon_pid = state.get("pid") if is_pid_alive(state.get("pid")) else None
    active_lockout = state.get("active_lockout") if daemon_pid else None

    console.print("[bold cyan]qrlock - Daemon Status[/bold cyan]")
    status_text = "[bold green]● Running[/bold green]" if daemon_pid else "[bold red]○ Stopped[/bold red]"
    console.print(f"Service Status: {status_text}")
    if daemon_pid:
        console.print(f"Daemon PID: [magenta]{daemon_pid}[/magenta]")

    if active_lockout:
        console.print(f"\n[bold yellow]ACTIVE LOCK ({active_lockout.get('mode')})[/bold yellow]")
        console.print(f"Name: {active_lockout.get('label')}")
        console.print(f"Remaining: {format_duration_seconds(active_lockout.get('remaining_secs', 0))}")
        apps = active_lockout.get("blocked_apps")
        if apps:
            console.print(f"Blocking: [magenta]{', '.join(apps)}[/magenta]")
    else:
        console.print("\nNo lock currently active.")

    if not daemon_pid:
        console.print("\n[dim]To start the daemon, run: [bold]qrlock start[/bold] or use systemd.[/dim]")


@app.command()
def start(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    foreground: bool = typer.Option(
        False, "--foreground", "-f", help="Run the daemon in this process instead of via systemd"
    ),
) -> None:
    """Start the enforcement daemon."""
    setup_logging(verbose=verbose)

    if foreground:
        from qrlock.daemon import run_daemon

        run_daemon()
        return

    service_file = Path(os.path.expanduser(f"~/.config/systemd/user/{SERVICE_NAME}"))
    if not service_file.exists():
        _fail(f"systemd service file not found at {service_file}. Use `qrlock start --foreground` instead.")

    if is_daemon_running():
        console.print("[yellow]Daemon is already running.[/yellow]")
        return

    console.print("Daemon is not running. Attempting to start it via systemd...")
    try:
        subprocess.run(
            ["systemctl", "--user", "start", SERVICE_NAME],
            check=True,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        _fail("`systemctl` command not found. This command requires a systemd-based OS.")
    except subprocess.CalledProcessError as e:
        console.print("[red]Error starting systemd service:[/red]")
        console.print(f"[dim]{e.stderr}[/dim]")
        raise typer.Exit(1)

    console.print("Waiting for daemon to initialize...")
    time.sleep(2)
    if is_daemon_running():
        console.print("[bold green]✔ Daemon started successfully via systemd.[/bold green]")
    else:
        console.print(
            "[bold red]✖ Error:[/bold red] Failed to start daemon. Check service "
            f"status with `systemctl --user status {SERVICE_NAME}`."
        )


if __name__ == "__main__":
    app()
