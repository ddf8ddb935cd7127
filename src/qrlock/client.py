from loguru import logger

from qrlock.agent import EnforcementAgent
from qrlock.schema import Schedule
from qrlock.sources import AdHocScheduleStore
from qrlock.verifier import ScanResult


def apply_scan(
    result: ScanResult,
    agent: EnforcementAgent,
    adhoc_store: AdHocScheduleStore,
    max_minutes: int,
) -> Schedule | None:
    """Acts on a successful scan.

    Scheduled policies become ad-hoc schedules, which the caller picks up on
    its next reconcile. Anything else starts an immediate lock. Returns the
    stored schedule, if one was created.
    """
    if not result.success or result.lock_policy is None:
        logger.debug(f"Nothing to apply for rejected scan ({result.code})")
        return None

    policy = result.lock_policy
    if policy.is_scheduled:
        return adhoc_store.add(Schedule.from_policy(policy))

    minutes = min(policy.duration_minutes, max_minutes)
    if minutes < policy.duration_minutes:
        logger.warning(f"Capping lock '{policy.name}' at {max_minutes} minutes")
    agent.start_immediate(minutes, policy.restriction_mode.value, policy.blocked_apps, policy.name)
    return None
