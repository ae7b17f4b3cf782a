"""The ``ensure_schedule`` pipeline.

Stages run in order for one ``(patient_id, date)`` under a per-key lock:

1. ``reconcile``: sync the catalog with the care config (best-effort)
2. ``generate``: create missing instances and advance statuses (fatal)
3. ``reap``: delete instances whose item left the catalog (best-effort)
4. ``context``: load windows, events and snoozes for composition (fatal)

followed by pure composition. A best-effort stage that raises is logged
with its traceback and named in ``ScheduleResult.warnings``. A fatal stage
that raises aborts the call; store errors surface as ``PersistenceError``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import StrEnum
from typing import Any

from opentelemetry import trace

from regimen.composer import compose_schedule
from regimen.config import RegimenSettings
from regimen.core.logging import reset_patient_context, set_patient_context
from regimen.core.telemetry import get_tracer
from regimen.errors import PersistenceError, RegimenError
from regimen.generator import ensure_instances, index_windows, sort_instances
from regimen.locks import KeyedLocks, schedule_key
from regimen.models import DailyInstance, Event, Override, ScheduleResult
from regimen.reaper import reap_stale_instances
from regimen.reconciler import sync_catalog_with_config
from regimen.status import WindowIndex, record_completion
from regimen.stores.base import RegimenStores

logger = logging.getLogger(__name__)


class StageFailureMode(StrEnum):
    FATAL = "fatal"
    BEST_EFFORT = "best_effort"


@dataclass(frozen=True)
class Stage:
    name: str
    failure_mode: StageFailureMode


RECONCILE = Stage("reconcile", StageFailureMode.BEST_EFFORT)
GENERATE = Stage("generate", StageFailureMode.FATAL)
REAP = Stage("reap", StageFailureMode.BEST_EFFORT)
CONTEXT = Stage("context", StageFailureMode.FATAL)


@dataclass
class _CompositionContext:
    windows: WindowIndex = field(default_factory=dict)
    events: list[Event] = field(default_factory=list)
    overrides: list[Override] = field(default_factory=list)


class RegimenEngine:
    """Entry point that turns a patient's regimen into a day's schedule.

    One engine per process: its lock registry only serialises callers that
    share it.
    """

    def __init__(
        self,
        stores: RegimenStores,
        settings: RegimenSettings | None = None,
        *,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.stores = stores
        self.settings = settings or RegimenSettings()
        self.locks = locks or KeyedLocks()
        self._tracer = get_tracer()

    def _resolve_now(self, now: datetime | None) -> datetime:
        tz = self.settings.tzinfo
        if now is None:
            return datetime.now(tz)
        if now.tzinfo is not None:
            return now.astimezone(tz)
        return now

    async def _run_stage(
        self,
        stage: Stage,
        fn: Callable[[], Awaitable[Any]],
        warnings: list[str],
        *,
        patient_id: str,
        day: date,
    ) -> Any:
        with self._tracer.start_as_current_span(f"regimen.stage.{stage.name}") as span:
            span.set_attribute("regimen.stage.failure_mode", stage.failure_mode.value)
            try:
                return await fn()
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(exc)))
                if stage.failure_mode == StageFailureMode.FATAL:
                    if isinstance(exc, RegimenError):
                        raise
                    raise PersistenceError(
                        f"Stage {stage.name!r} failed for patient {patient_id} on {day}: {exc}"
                    ) from exc
                logger.warning(
                    "Stage %s failed for patient %s on %s; continuing",
                    stage.name,
                    patient_id,
                    day,
                    exc_info=True,
                )
                warnings.append(stage.name)
                return None

    # ------------------------------------------------------------------
    # Stage bodies
    # ------------------------------------------------------------------

    async def _reconcile(self, patient_id: str) -> bool:
        plan = await self.stores.catalog.get_active_plan(patient_id)
        return await sync_catalog_with_config(
            self.stores, plan.id if plan is not None else None, patient_id
        )

    async def _generate(self, patient_id: str, day: date, now: datetime) -> list[DailyInstance]:
        return await ensure_instances(
            self.stores,
            patient_id,
            day,
            now=now,
            grace_minutes=self.settings.grace_period_minutes,
        )

    async def _reap(self, patient_id: str, day: date) -> list[DailyInstance] | None:
        removed = await reap_stale_instances(self.stores, patient_id, day)
        if not removed:
            return None
        return sort_instances(await self.stores.instances.list_instances(patient_id, day))

    async def _load_context(self, patient_id: str, day: date) -> _CompositionContext:
        context = _CompositionContext()
        plan = await self.stores.catalog.get_active_plan(patient_id)
        if plan is not None:
            items = await self.stores.catalog.list_items(plan.id, active_only=False)
            context.windows = index_windows(items)
        context.events = [
            e for e in await self.stores.events.list_events_on_date(patient_id, day)
            if e.date == day
        ]
        context.overrides = await self.stores.overrides.list_overrides(patient_id, day)
        return context

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def ensure_schedule(
        self, patient_id: str, day: date, *, now: datetime | None = None
    ) -> ScheduleResult:
        """Reconcile, generate, reap and compose the schedule for *day*.

        Raises:
            PersistenceError: If instances or composition inputs could not be
                read or written.
        """
        now = self._resolve_now(now)
        token = set_patient_context(patient_id)
        try:
            with self._tracer.start_as_current_span("regimen.ensure_schedule") as span:
                span.set_attribute("regimen.patient_id", patient_id)
                span.set_attribute("regimen.date", day.isoformat())

                async with self.locks.hold(schedule_key(patient_id, day)):
                    warnings: list[str] = []
                    stage_kwargs = {"patient_id": patient_id, "day": day}

                    await self._run_stage(
                        RECONCILE, lambda: self._reconcile(patient_id), warnings, **stage_kwargs
                    )
                    instances = await self._run_stage(
                        GENERATE,
                        lambda: self._generate(patient_id, day, now),
                        warnings,
                        **stage_kwargs,
                    )
                    reaped = await self._run_stage(
                        REAP, lambda: self._reap(patient_id, day), warnings, **stage_kwargs
                    )
                    if reaped is not None:
                        instances = reaped
                    context = await self._run_stage(
                        CONTEXT,
                        lambda: self._load_context(patient_id, day),
                        warnings,
                        **stage_kwargs,
                    )

                result = compose_schedule(
                    day,
                    instances,
                    context.windows,
                    context.events,
                    context.overrides,
                    now=now,
                    adjacent_minutes=self.settings.adjacent_window_minutes,
                    warnings=warnings,
                )
                span.set_attribute("regimen.instance_count", len(instances))
                span.set_attribute("regimen.entry_count", result.stats.total)
                span.set_attribute("regimen.conflict_count", len(result.conflicts))
                if warnings:
                    span.set_attribute("regimen.warnings", warnings)
                return result
        finally:
            reset_patient_context(token)

    async def ensure_instances(
        self, patient_id: str, day: date, *, now: datetime | None = None
    ) -> list[DailyInstance]:
        """Generate and advance the instances for *day* without composing.

        Runs under the same per-key lock as :meth:`ensure_schedule`. Store
        errors propagate unwrapped.
        """
        now = self._resolve_now(now)
        async with self.locks.hold(schedule_key(patient_id, day)):
            return await self._generate(patient_id, day, now)

    async def complete_instance(
        self,
        patient_id: str,
        day: date,
        instance_id: str,
        outcome: str = "completed",
        log_id: str | None = None,
    ) -> DailyInstance | None:
        """Apply a completion outcome to one instance under the day's lock."""
        token = set_patient_context(patient_id)
        try:
            async with self.locks.hold(schedule_key(patient_id, day)):
                return await record_completion(
                    self.stores, patient_id, day, instance_id, outcome, log_id=log_id
                )
        finally:
            reset_patient_context(token)
