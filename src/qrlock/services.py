"""Builds the application objects from settings."""

from qrlock.agent import DaemonClient, EnforcementAgent, EnforcementRegistry
from qrlock.codec import EnvSecretProvider, TokenCodec
from qrlock.db import Database
from qrlock.issuer import TokenIssuer
from qrlock.reconciler import MergePolicy, ScheduleReconciler
from qrlock.settings import Settings
from qrlock.sources import AdHocScheduleStore, AuthoritativeScheduleClient, PresetStore, ScheduleCache
from qrlock.utils.state import DaemonState
from qrlock.verifier import TokenVerifier


def database(settings: Settings) -> Database:
    db = Database(settings.effective_database_url, echo=settings.debug)
    db.create_all()
    return db


def codec(settings: Settings) -> TokenCodec:
    return TokenCodec(EnvSecretProvider(settings))


def issuer(settings: Settings) -> TokenIssuer:
    return TokenIssuer(database(settings), codec(settings))


def verifier(settings: Settings) -> TokenVerifier:
    return TokenVerifier(
        database(settings),
        codec(settings),
        offset_hours=settings.window_utc_offset_hours,
        lead_minutes=settings.window_lead_minutes,
    )


def preset_store(settings: Settings) -> PresetStore:
    return PresetStore(settings.data_dir / "presets.json")


def adhoc_store(settings: Settings) -> AdHocScheduleStore:
    return AdHocScheduleStore(settings.data_dir / "adhoc_schedules.json")


def schedule_cache(settings: Settings) -> ScheduleCache:
    return ScheduleCache(
        settings.data_dir / "schedule_cache.json",
        prevent_removal=settings.prevent_removal,
        pre_lead_minutes=settings.notify_lead_minutes,
    )


def enforcement_registry(settings: Settings) -> EnforcementRegistry:
    return EnforcementRegistry(settings.data_dir / "enforcement.json")


def daemon_state(settings: Settings) -> DaemonState:
    return DaemonState(settings.state_file)


def daemon_client(settings: Settings) -> DaemonClient:
    return DaemonClient(enforcement_registry(settings), settings.command_file, daemon_state(settings))


def authoritative_client(settings: Settings) -> AuthoritativeScheduleClient | None:
    """None when the device is not linked to a guardian account."""
    if not settings.identity:
        return None
    return AuthoritativeScheduleClient(
        settings.api_base_url,
        settings.identity,
        api_token=settings.api_token.get_secret_value() if settings.api_token else None,
        timeout=settings.fetch_timeout_seconds,
    )


def reconciler(settings: Settings, agent: EnforcementAgent) -> ScheduleReconciler:
    return ScheduleReconciler(
        authoritative=authoritative_client(settings),
        presets=preset_store(settings),
        adhoc=adhoc_store(settings),
        cache=schedule_cache(settings),
        agent=agent,
        current_user=settings.identity,
        merge_policy=MergePolicy(settings.suppress_duplicate_names),
        keep_on_failure=settings.keep_schedules_on_fetch_failure,
    )
