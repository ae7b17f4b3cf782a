"""Status engine: time-driven lifecycle of daily instances.

Persisted statuses move forward only::

    pending -> completed | skipped | missed
    missed  -> completed | skipped        (late completion)

``completed`` and ``skipped`` are terminal. A pending, unlogged instance is
marked ``missed`` once the clock passes its window end plus the grace
period. This check runs inside every ``ensure_instances`` call rather than
on a timer, so state heals lazily on access.

Presentation statuses (``upcoming``, ``availableNow``, ``snoozed``...) are
derived on read and never stored.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import assert_never

from regimen.config import DEFAULT_GRACE_PERIOD_MINUTES
from regimen.errors import InvalidTransitionError
from regimen.models import (
    DailyInstance,
    InstanceStatus,
    ItemType,
    Override,
    ScheduleStatus,
    TimeWindow,
    WindowKind,
)
from regimen.stores.base import RegimenStores
from regimen.timewindow import (
    MINUTES_PER_DAY,
    is_time_in_window,
    minutes_since_day_start,
    parse_clock,
    window_end_minutes,
    window_start_minutes,
)

logger = logging.getLogger(__name__)

WindowIndex = dict[tuple[str, str], TimeWindow]

_ALLOWED_TRANSITIONS: dict[InstanceStatus, frozenset[InstanceStatus]] = {
    InstanceStatus.pending: frozenset(
        {InstanceStatus.completed, InstanceStatus.skipped, InstanceStatus.missed}
    ),
    InstanceStatus.missed: frozenset({InstanceStatus.completed, InstanceStatus.skipped}),
    InstanceStatus.completed: frozenset(),
    InstanceStatus.skipped: frozenset(),
}

# External log outcomes and the instance status they resolve to.
COMPLETION_OUTCOMES: dict[str, InstanceStatus] = {
    "taken": InstanceStatus.completed,
    "completed": InstanceStatus.completed,
    "skipped": InstanceStatus.skipped,
}


def can_transition(current: InstanceStatus, target: InstanceStatus) -> bool:
    """True if a persisted instance may move from *current* to *target*."""
    return target in _ALLOWED_TRANSITIONS[current]


def fallback_window(instance: DailyInstance) -> TimeWindow:
    """Exact window at the instance's scheduled time.

    Used when the originating window is no longer on the item (edited away
    or item deleted before the reaper ran).
    """
    return TimeWindow(
        id=instance.window_id,
        kind=WindowKind.exact,
        label=instance.window_label,
        at=instance.scheduled_time,
    )


def resolve_window(instance: DailyInstance, windows: WindowIndex) -> TimeWindow:
    return windows.get(instance.key) or fallback_window(instance)


async def _find_instance(
    stores: RegimenStores, patient_id: str, day: date, instance_id: str
) -> DailyInstance | None:
    instances = await stores.instances.list_instances(patient_id, day)
    return next((i for i in instances if i.id == instance_id), None)


def missed_threshold(window: TimeWindow, grace_minutes: int = DEFAULT_GRACE_PERIOD_MINUTES) -> int:
    """Minute after which an unlogged pending instance becomes ``missed``."""
    return window_end_minutes(window) + grace_minutes


def should_mark_missed(
    instance: DailyInstance,
    window: TimeWindow,
    now_min: int,
    grace_minutes: int = DEFAULT_GRACE_PERIOD_MINUTES,
) -> bool:
    """True if *instance* is pending, unlogged and strictly past its threshold.

    *now_min* is relative to midnight of the instance's date, so it may be
    negative (earlier day) or exceed a day (later day).
    """
    if instance.status != InstanceStatus.pending or instance.log_id:
        return False
    return now_min > missed_threshold(window, grace_minutes)


async def advance_statuses(
    stores: RegimenStores,
    patient_id: str,
    day: date,
    instances: list[DailyInstance],
    windows: WindowIndex,
    *,
    now: datetime,
    grace_minutes: int = DEFAULT_GRACE_PERIOD_MINUTES,
) -> list[DailyInstance]:
    """Persist ``pending -> missed`` for every instance past its threshold.

    Returns the instance list with updated entries substituted in place.
    """
    now_min = minutes_since_day_start(day, now)
    advanced: list[DailyInstance] = []
    for instance in instances:
        window = resolve_window(instance, windows)
        if not should_mark_missed(instance, window, now_min, grace_minutes):
            advanced.append(instance)
            continue
        updated = await stores.instances.update_instance_status(
            patient_id, day, instance.id, InstanceStatus.missed, expected=InstanceStatus.pending
        )
        if updated is None:
            # Completed, skipped or removed since it was read.
            fresh = await _find_instance(stores, patient_id, day, instance.id)
            logger.info(
                "Instance %s changed before it could be marked missed; now %s",
                instance.id,
                fresh.status if fresh is not None else "removed",
            )
            if fresh is not None:
                advanced.append(fresh)
            continue
        logger.info(
            "Marked instance missed: %s (%s @ %s)",
            instance.id,
            instance.snapshot.item_name,
            instance.scheduled_time,
        )
        advanced.append(updated)
    return advanced


def _is_snoozed(override: Override | None, now_min: int) -> bool:
    return (
        override is not None
        and override.snooze_until_min is not None
        and now_min < override.snooze_until_min
    )


def presentation_status(
    instance: DailyInstance,
    window: TimeWindow,
    now_min: int,
    override: Override | None = None,
) -> ScheduleStatus:
    """Derive the display status of *instance* at *now_min*."""
    status = instance.status
    if status is InstanceStatus.completed or status is InstanceStatus.skipped:
        return ScheduleStatus.completed
    if status is InstanceStatus.missed:
        return ScheduleStatus.snoozed if _is_snoozed(override, now_min) else ScheduleStatus.missed
    if status is InstanceStatus.pending:
        if _is_snoozed(override, now_min):
            return ScheduleStatus.snoozed
        if is_time_in_window(now_min, window):
            return ScheduleStatus.available_now
        if now_min < window_start_minutes(window):
            return ScheduleStatus.upcoming
        return ScheduleStatus.missed
    assert_never(status)


async def record_completion(
    stores: RegimenStores,
    patient_id: str,
    day: date,
    instance_id: str,
    outcome: str,
    log_id: str | None = None,
) -> DailyInstance | None:
    """Apply an external completion event (``taken``/``completed``/``skipped``).

    Returns the updated instance, or ``None`` if it does not exist.

    Raises:
        ValueError: If *outcome* is not a known completion outcome.
        InvalidTransitionError: If the instance is already terminal.
    """
    target = COMPLETION_OUTCOMES.get(outcome)
    if target is None:
        raise ValueError(
            f"Unknown completion outcome {outcome!r}; expected one of "
            f"{sorted(COMPLETION_OUTCOMES)}"
        )

    instance = await _find_instance(stores, patient_id, day, instance_id)
    while instance is not None:
        if not can_transition(instance.status, target):
            raise InvalidTransitionError(instance_id, instance.status, target)
        updated = await stores.instances.update_instance_status(
            patient_id, day, instance_id, target, log_id=log_id, expected=instance.status
        )
        if updated is not None:
            logger.info(
                "Recorded %s for instance %s (%s)",
                target,
                instance_id,
                instance.snapshot.item_name,
            )
            return updated
        # Another writer moved it first; re-check against what it holds now.
        instance = await _find_instance(stores, patient_id, day, instance_id)
    return None


def _closeness_score(instance: DailyInstance, now_min: int) -> int:
    # Past windows rank by recency; future ones rank after every past one.
    scheduled = parse_clock(instance.scheduled_time) or 0
    diff = now_min - scheduled
    return diff if diff >= 0 else -diff + MINUTES_PER_DAY


async def sync_log_to_instance(
    stores: RegimenStores,
    patient_id: str,
    day: date,
    item_type: ItemType,
    *,
    now: datetime,
    item_name: str | None = None,
    log_id: str | None = None,
) -> DailyInstance | None:
    """Complete the pending instance that a log recorded elsewhere corresponds to.

    Picks an exact (case-insensitive) name match when *item_name* is given,
    otherwise the pending instance of *item_type* closest to *now*,
    preferring windows that already started. Never raises: failures are
    logged and reported as ``None``.
    """
    try:
        instances = await stores.instances.list_instances(patient_id, day)
        pending = [
            i
            for i in instances
            if i.snapshot.item_type == item_type and i.status == InstanceStatus.pending
        ]
        if not pending:
            return None

        target: DailyInstance | None = None
        if item_name:
            wanted = item_name.strip().lower()
            target = next((i for i in pending if i.snapshot.item_name.lower() == wanted), None)
        if target is None:
            now_min = minutes_since_day_start(day, now)
            target = min(pending, key=lambda i: _closeness_score(i, now_min))

        return await record_completion(
            stores, patient_id, day, target.id, "completed", log_id=log_id
        )
    except Exception:
        logger.warning(
            "Failed to sync %s log to an instance for patient %s on %s",
            item_type,
            patient_id,
            day,
            exc_info=True,
        )
        return None
