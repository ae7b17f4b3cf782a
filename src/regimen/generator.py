"""Instance generator: expand active plan items into dated daily instances.

``ensure_instances`` is idempotent. For one ``(patient_id, date)`` it leaves
exactly one instance per eligible ``(item_id, window_id)`` key, creating only
the missing ones. Existing instances are never rewritten apart from the
status advancement performed by :func:`regimen.status.advance_statuses`.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from regimen.config import DEFAULT_GRACE_PERIOD_MINUTES
from regimen.models import (
    DailyInstance,
    Frequency,
    InstanceSnapshot,
    Plan,
    PlanItem,
    TimeWindow,
)
from regimen.status import WindowIndex, advance_statuses
from regimen.stores.base import RegimenStores
from regimen.timewindow import parse_clock, scheduled_time

logger = logging.getLogger(__name__)


def weekday_index(day: date) -> int:
    """Weekday with 0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def should_generate_on_date(item: PlanItem, day: date) -> bool:
    """Whether *item* produces instances on *day*.

    The skip list always wins. ``daily`` items generate every day; ``weekly``
    and ``custom`` items only on the listed weekdays (an empty list means
    every day).
    """
    schedule = item.schedule
    if day in schedule.skip_dates:
        return False
    if schedule.frequency == Frequency.daily:
        return True
    if not schedule.days_of_week:
        return True
    return weekday_index(day) in schedule.days_of_week


def build_instance(
    plan: Plan, item: PlanItem, window: TimeWindow, patient_id: str, day: date
) -> DailyInstance:
    """New pending instance of *window* with a snapshot of the item as it is now."""
    return DailyInstance(
        plan_id=plan.id,
        item_id=item.id,
        window_id=window.id,
        window_label=window.label,
        patient_id=patient_id,
        date=day,
        scheduled_time=scheduled_time(window),
        generated_from_version=plan.version,
        snapshot=InstanceSnapshot.from_item(item),
    )


def index_windows(items: list[PlanItem]) -> WindowIndex:
    """Map ``(item_id, window_id)`` to the window for every item given."""
    return {(item.id, window.id): window for item in items for window in item.schedule.times}


def sort_instances(instances: list[DailyInstance]) -> list[DailyInstance]:
    # sorted() is stable, so ties keep insertion order.
    return sorted(instances, key=lambda i: parse_clock(i.scheduled_time) or 0)


async def ensure_instances(
    stores: RegimenStores,
    patient_id: str,
    day: date,
    *,
    now: datetime,
    grace_minutes: int = DEFAULT_GRACE_PERIOD_MINUTES,
) -> list[DailyInstance]:
    """Return the full instance set for *day*, generating whatever is missing.

    Missing plan or items yield ``[]``. Store errors propagate.
    """
    plan = await stores.catalog.get_active_plan(patient_id)
    if plan is None:
        logger.debug("No active plan for patient %s; nothing to generate", patient_id)
        return []

    items = await stores.catalog.list_items(plan.id, active_only=True)
    if not items:
        logger.debug("Plan %s has no active items; nothing to generate", plan.id)
        return []

    existing = await stores.instances.list_instances(patient_id, day)
    existing_keys = {instance.key for instance in existing}

    created: list[DailyInstance] = []
    for item in items:
        if not should_generate_on_date(item, day):
            continue
        for window in item.schedule.times:
            key = (item.id, window.id)
            if key in existing_keys:
                continue
            created.append(build_instance(plan, item, window, patient_id, day))
            # Guards against duplicate window ids on one item.
            existing_keys.add(key)

    if created:
        inserted = await stores.instances.upsert_instances(patient_id, day, created)
        logger.info(
            "Generated %d instance(s) for patient %s on %s (%d inserted)",
            len(created),
            patient_id,
            day,
            inserted,
        )
        # Re-read so rows written by a concurrent writer win over our copies.
        instances = await stores.instances.list_instances(patient_id, day)
    else:
        instances = existing

    # Windows of inactive items still matter for advancing their instances.
    all_items = await stores.catalog.list_items(plan.id, active_only=False)
    windows = index_windows(all_items)

    instances = await advance_statuses(
        stores,
        patient_id,
        day,
        instances,
        windows,
        now=now,
        grace_minutes=grace_minutes,
    )
    return sort_instances(instances)


async def ensure_instances_for_range(
    stores: RegimenStores,
    patient_id: str,
    start: date,
    end: date,
    *,
    now: datetime,
    grace_minutes: int = DEFAULT_GRACE_PERIOD_MINUTES,
) -> dict[date, list[DailyInstance]]:
    """Run :func:`ensure_instances` for every day in ``[start, end]``."""
    if end < start:
        raise ValueError(f"Range end {end} is before start {start}")
    result: dict[date, list[DailyInstance]] = {}
    day = start
    while day <= end:
        result[day] = await ensure_instances(
            stores, patient_id, day, now=now, grace_minutes=grace_minutes
        )
        day += timedelta(days=1)
    return result
