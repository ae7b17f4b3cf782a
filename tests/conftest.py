"""Shared fixtures and model factories for the regimen test suite.

2026-03-04 is a Wednesday; most tests run on it. Datetimes are naive wall
clock values, matching how the engine treats them.
"""

from __future__ import annotations

from datetime import date, datetime

import pytest

from regimen.models import (
    DailyInstance,
    Frequency,
    InstanceSnapshot,
    InstanceStatus,
    ItemSchedule,
    ItemType,
    MedicationDetails,
    Plan,
    PlanItem,
    TimeWindow,
    WindowKind,
    WindowLabel,
)
from regimen.stores.base import RegimenStores
from regimen.testing import memory_stores

PATIENT = "patient-1"
DAY = date(2026, 3, 4)  # Wednesday
TUESDAY = date(2026, 3, 3)


def at(hour: int, minute: int = 0, day: date = DAY) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute)


def exact(
    clock: str, *, window_id: str | None = None, label: WindowLabel = WindowLabel.morning
) -> TimeWindow:
    return TimeWindow(
        id=window_id or f"at-{clock}", kind=WindowKind.exact, label=label, at=clock
    )


def span(
    start: str,
    end: str,
    *,
    window_id: str | None = None,
    label: WindowLabel = WindowLabel.custom,
) -> TimeWindow:
    return TimeWindow(
        id=window_id or f"{start}-{end}",
        kind=WindowKind.window,
        label=label,
        start=start,
        end=end,
    )


def make_item(
    plan_id: str,
    name: str = "Aspirin",
    *,
    item_type: ItemType = ItemType.medication,
    windows: list[TimeWindow] | None = None,
    frequency: Frequency = Frequency.daily,
    days_of_week: list[int] | None = None,
    active: bool = True,
    dose: str | None = None,
    external_id: str | None = None,
) -> PlanItem:
    details = None
    if item_type == ItemType.medication:
        details = MedicationDetails(medication_id=external_id, dose=dose)
    return PlanItem(
        plan_id=plan_id,
        type=item_type,
        name=name,
        active=active,
        schedule=ItemSchedule(
            frequency=frequency,
            times=windows or [exact("08:00")],
            days_of_week=days_of_week or [],
        ),
        medication_details=details,
        external_id=external_id,
    )


def make_instance(
    item: PlanItem,
    window: TimeWindow | None = None,
    *,
    status: InstanceStatus = InstanceStatus.pending,
    day: date = DAY,
    log_id: str | None = None,
) -> DailyInstance:
    window = window or item.schedule.times[0]
    start = window.at if window.kind == WindowKind.exact else window.start
    return DailyInstance(
        plan_id=item.plan_id,
        item_id=item.id,
        window_id=window.id,
        window_label=window.label,
        patient_id=PATIENT,
        date=day,
        scheduled_time=start or "09:00",
        status=status,
        log_id=log_id,
        snapshot=InstanceSnapshot.from_item(item),
    )


@pytest.fixture
def stores() -> RegimenStores:
    """Fresh in-memory stores."""
    return memory_stores()


@pytest.fixture
def plan(stores: RegimenStores) -> Plan:
    """An active plan for ``PATIENT`` registered in the in-memory catalog."""
    return stores.catalog.add_plan(Plan(patient_id=PATIENT, start_date=DAY))


async def add_items(stores: RegimenStores, *items: PlanItem) -> None:
    for item in items:
        await stores.catalog.upsert_item(item)
