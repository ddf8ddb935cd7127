"""Merges the schedule sources and brings the enforcement agent in line.

A pass runs fetch, normalize, merge, diff, apply, persist and restore, in
that order. Failures of a source or of the agent are logged and never abort
the pass.
"""

import json
import threading
from typing import Any, Callable, Protocol

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from qrlock.agent import EnforcementAgent
from qrlock.schema import Schedule, ScheduleOrigin
from qrlock.sources import ScheduleCache


class ScheduleSource(Protocol):
    name: str

    def fetch(self) -> list: ...


class ReconcileReport(BaseModel):
    merged: list[str] = Field(default_factory=list)
    scheduled: list[str] = Field(default_factory=list)
    cancelled: list[str] = Field(default_factory=list)
    suppressed: list[str] = Field(default_factory=list)
    failed_sources: list[str] = Field(default_factory=list)
    agent_failures: list[str] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.scheduled or self.cancelled)


class MergePolicy:
    """Precedence is AUTHORITATIVE, then PRESET, then AD_HOC.

    An id already merged always suppresses the later entry. Names (trimmed)
    suppress presets that repeat an authoritative schedule and ad-hoc
    entries that repeat anything merged before them.
    """

    def __init__(self, suppress_duplicate_names: bool = True):
        self.suppress_duplicate_names = suppress_duplicate_names

    def merge(
        self,
        authoritative: list[Schedule],
        presets: list[Schedule],
        adhoc: list[Schedule],
        report: ReconcileReport | None = None,
    ) -> list[Schedule]:
        merged: list[Schedule] = []
        ids: set[str] = set()
        authoritative_names: set[str] = set()
        merged_names: set[str] = set()

        def accept(schedule: Schedule, names: set[str]) -> bool:
            if schedule.id in ids:
                reason = "id"
            elif self.suppress_duplicate_names and schedule.display_key and schedule.display_key in names:
                reason = "name"
            else:
                return True
            logger.debug(f"Suppressed {schedule.origin.value} schedule {schedule.id} (duplicate {reason})")
            if report is not None:
                report.suppressed.append(schedule.id)
            return False

        for schedule in authoritative:
            if accept(schedule, set()):
                merged.append(schedule)
                ids.add(schedule.id)
                if schedule.display_key:
                    authoritative_names.add(schedule.display_key)
                    merged_names.add(schedule.display_key)

        for schedule in presets:
            if accept(schedule, authoritative_names):
                merged.append(schedule)
                ids.add(schedule.id)
                if schedule.display_key:
                    merged_names.add(schedule.display_key)

        for schedule in adhoc:
            if accept(schedule, merged_names):
                merged.append(schedule)
                ids.add(schedule.id)
                if schedule.display_key:
                    merged_names.add(schedule.display_key)

        return merged


class ScheduleReconciler:
    def __init__(
        self,
        authoritative: ScheduleSource | None,
        presets: ScheduleSource,
        adhoc: ScheduleSource,
        cache: ScheduleCache,
        agent: EnforcementAgent,
        current_user: str | None = None,
        merge_policy: MergePolicy | None = None,
        keep_on_failure: bool = True,
    ):
        self.authoritative = authoritative
        self.presets = presets
        self.adhoc = adhoc
        self.cache = cache
        self.agent = agent
        self.current_user = current_user
        self.merge_policy = merge_policy or MergePolicy()
        self.keep_on_failure = keep_on_failure

    def reconcile(self) -> ReconcileReport:
        report = ReconcileReport()
        previous = self.cache.get_schedules()

        authoritative = self._fetch(self.authoritative, ScheduleOrigin.AUTHORITATIVE, previous, report)
        presets = self._fetch(self.presets, ScheduleOrigin.PRESET, previous, report)
        adhoc = self._fetch(self.adhoc, ScheduleOrigin.AD_HOC, previous, report)

        merged = self.merge_policy.merge(authoritative, presets, adhoc, report)
        report.merged = [s.id for s in merged]

        self._apply(previous, merged, report)

        try:
            self.cache.save_schedules(merged)
        except OSError as e:
            logger.error(f"Failed to save schedule cache: {e}")

        self._call_agent(report, "restore", self.agent.restore_current_state)

        if report.changed:
            logger.info(
                f"Reconciled {len(merged)} schedule(s): "
                f"{len(report.scheduled)} scheduled, {len(report.cancelled)} cancelled"
            )
        else:
            logger.debug(f"Reconciled {len(merged)} schedule(s): no changes")
        return report

    def _fetch(
        self,
        source: ScheduleSource | None,
        origin: ScheduleOrigin,
        previous: list[Schedule],
        report: ReconcileReport,
    ) -> list[Schedule]:
        if source is None:
            return []
        try:
            raw = source.fetch()
        except Exception as e:
            logger.warning(f"Fetching {origin.value} schedules failed: {e}")
            report.failed_sources.append(origin.value)
            if not self.keep_on_failure:
                return []
            return [s for s in previous if s.origin == origin]

        if origin != ScheduleOrigin.AUTHORITATIVE:
            return list(raw)
        return self._normalize(raw)

    def _normalize(self, records: list[dict[str, Any]]) -> list[Schedule]:
        schedules = []
        for record in records:
            if not isinstance(record, dict):
                logger.warning(f"Skipping authoritative schedule that is not an object: {record!r}")
                continue
            try:
                schedules.append(Schedule.from_authoritative(record, self.current_user))
            except (KeyError, TypeError, AttributeError, ValueError, ValidationError) as e:
                logger.warning(f"Skipping malformed authoritative schedule {record.get('id')!r}: {e}")
        return schedules

    def _apply(self, previous: list[Schedule], merged: list[Schedule], report: ReconcileReport):
        previous_by_id = {s.id: s for s in previous}
        current_ids = {s.id for s in merged}

        for schedule_id in previous_by_id:
            if schedule_id not in current_ids:
                if self._call_agent(report, schedule_id, self.agent.cancel_enforcement, schedule_id):
                    report.cancelled.append(schedule_id)

        prevent_removal = self.cache.get_prevent_removal()
        pre_lead_minutes = self.cache.get_pre_lead_minutes()
        for schedule in merged:
            if not schedule.differs_from(previous_by_id.get(schedule.id)):
                continue
            if schedule.is_active:
                ok = self._call_agent(
                    report,
                    schedule.id,
                    self.agent.schedule_enforcement,
                    schedule.id,
                    schedule.start_time,
                    schedule.end_time,
                    schedule.days,
                    schedule.mode.value,
                    schedule.name,
                    json.dumps(schedule.apps, ensure_ascii=False),
                    prevent_removal,
                    pre_lead_minutes,
                )
                if ok:
                    report.scheduled.append(schedule.id)
            elif self._call_agent(report, schedule.id, self.agent.cancel_enforcement, schedule.id):
                report.cancelled.append(schedule.id)

    def _call_agent(self, report: ReconcileReport, label: str, fn: Callable, *args) -> bool:
        try:
            fn(*args)
            return True
        except Exception as e:
            logger.error(f"Enforcement agent call {fn.__name__} failed for {label}: {e}")
            report.agent_failures.append(label)
            return False


class SingleFlight:
    """At most one pass per key runs at a time; later callers wait their turn."""

    def __init__(self):
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def run(self, key: str, fn: Callable, *args, **kwargs):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            return fn(*args, **kwargs)
