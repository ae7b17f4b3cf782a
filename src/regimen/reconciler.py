"""Config reconciler: keep the plan catalog in step with the care config.

The care config (what the patient wants tracked, per bucket) is owned
elsewhere and read-only here. ``sync_catalog_with_config`` compares it with
the plan's items and:

- creates items for enabled entries that have no counterpart
- re-activates matching items that were previously deactivated
- deactivates items whose entry is no longer enabled (never deletes them,
  so instances already generated for them keep their history)
- keeps the always-on wellness check pair present, renaming legacy
  wellness items in place instead of duplicating them

Catalog items are matched to configured medications by stable id first and
by case-insensitive name containment as a fallback. A fuzzy match against a
medication that carries an id backfills that id onto the item so later runs
match exactly.

The sync is idempotent. The pipeline runs it best-effort: any exception is
logged and generation proceeds with the catalog as it was.
"""

from __future__ import annotations

import asyncio
import logging

from regimen.models import (
    CareConfig,
    ConfiguredMedication,
    Frequency,
    ItemPriority,
    ItemSchedule,
    ItemType,
    MedicationDetails,
    PlanItem,
    TimeWindow,
    WindowKind,
    WindowLabel,
)
from regimen.stores.base import RegimenStores
from regimen.timewindow import default_window_for

logger = logging.getLogger(__name__)

LEGACY_CLEANUP_MARKER = "legacy-cleanup"

# Clock time used for exact-time items created for a part of day.
LABEL_CLOCK: dict[WindowLabel, str] = {
    WindowLabel.morning: "08:00",
    WindowLabel.afternoon: "13:00",
    WindowLabel.evening: "18:00",
    WindowLabel.night: "21:00",
    WindowLabel.custom: "09:00",
}

MORNING_WELLNESS = "Morning wellness check"
EVENING_WELLNESS = "Evening wellness check"
WELLNESS_DEFAULTS: tuple[tuple[str, WindowLabel, str], ...] = (
    (MORNING_WELLNESS, WindowLabel.morning, "08:00"),
    (EVENING_WELLNESS, WindowLabel.evening, "20:00"),
)
LEGACY_WELLNESS_NAMES = frozenset({"daily check-in", "wellness check"})

VITALS_DEFAULT_NAME = "Check vitals"
MEAL_NAMES: dict[WindowLabel, str] = {
    WindowLabel.morning: "Breakfast",
    WindowLabel.afternoon: "Lunch",
    WindowLabel.evening: "Dinner",
}

_ITEM_EMOJI: dict[ItemType, str] = {
    ItemType.medication: "💊",
    ItemType.vitals: "❤️",
    ItemType.nutrition: "🍽️",
    ItemType.wellness: "🌤️",
}

_background_tasks: set[asyncio.Task] = set()


# ---------------------------------------------------------------------------
# Item builders
# ---------------------------------------------------------------------------


def _unique_labels(labels: list[WindowLabel]) -> list[WindowLabel]:
    seen: list[WindowLabel] = []
    for label in labels:
        if label not in seen:
            seen.append(label)
    return seen or [WindowLabel.morning]


def exact_window(label: WindowLabel, at: str | None = None) -> TimeWindow:
    return TimeWindow(
        id=label.value, kind=WindowKind.exact, label=label, at=at or LABEL_CLOCK[label]
    )


def range_window(label: WindowLabel) -> TimeWindow:
    start, end = default_window_for(label)
    return TimeWindow(id=label.value, kind=WindowKind.window, label=label, start=start, end=end)


def medication_item(plan_id: str, med: ConfiguredMedication, priority: ItemPriority) -> PlanItem:
    return PlanItem(
        plan_id=plan_id,
        type=ItemType.medication,
        name=med.name,
        priority=priority,
        schedule=ItemSchedule(
            frequency=Frequency.daily,
            times=[exact_window(label) for label in _unique_labels(med.times_of_day)],
        ),
        medication_details=MedicationDetails(medication_id=med.id, dose=med.dosage),
        emoji=_ITEM_EMOJI[ItemType.medication],
        external_id=med.id,
    )


def _bucket_item(
    plan_id: str,
    item_type: ItemType,
    name: str,
    windows: list[TimeWindow],
    priority: ItemPriority,
) -> PlanItem:
    return PlanItem(
        plan_id=plan_id,
        type=item_type,
        name=name,
        priority=priority,
        schedule=ItemSchedule(frequency=Frequency.daily, times=windows),
        emoji=_ITEM_EMOJI.get(item_type),
    )


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def _stable_id(item: PlanItem) -> str | None:
    if item.external_id:
        return item.external_id
    if item.medication_details is not None:
        return item.medication_details.medication_id
    return None


def _names_overlap(a: str, b: str) -> bool:
    a, b = a.strip().lower(), b.strip().lower()
    if not a or not b:
        return False
    return a in b or b in a


def matches_medication(item: PlanItem, med: ConfiguredMedication) -> bool:
    """True if catalog *item* represents configured *med*.

    When both sides carry a stable id the ids decide. Otherwise the names
    are compared by case-insensitive containment in either direction.
    """
    item_id = _stable_id(item)
    if item_id and med.id:
        return item_id == med.id
    return _names_overlap(item.name, med.name)


def _is_legacy_wellness(item: PlanItem) -> bool:
    return item.name.strip().lower() in LEGACY_WELLNESS_NAMES


# ---------------------------------------------------------------------------
# Per-bucket sync
# ---------------------------------------------------------------------------


class _CatalogSync:
    """One reconciliation pass over a single plan's items."""

    def __init__(self, stores: RegimenStores, plan_id: str, items: list[PlanItem]) -> None:
        self.stores = stores
        self.plan_id = plan_id
        self.items = items
        self.changes = 0

    def of_type(self, item_type: ItemType) -> list[PlanItem]:
        return [item for item in self.items if item.type == item_type]

    async def save(self, item: PlanItem, reason: str) -> PlanItem:
        await self.stores.catalog.upsert_item(item)
        self.items = [i for i in self.items if i.id != item.id] + [item]
        self.changes += 1
        logger.info("Catalog %s: %s (%s, %s)", reason, item.name, item.type, item.id)
        return item

    async def set_active(self, item: PlanItem, active: bool) -> None:
        if item.active == active:
            return
        await self.save(
            item.model_copy(update={"active": active}),
            "re-activated" if active else "deactivated",
        )

    async def sync_medications(self, config: CareConfig) -> None:
        configured = config.active_medications()
        med_items = self.of_type(ItemType.medication)

        for med in configured:
            match = next((i for i in med_items if matches_medication(i, med)), None)
            if match is None:
                await self.save(medication_item(self.plan_id, med, config.meds.priority), "created")
                continue
            if med.id and not _stable_id(match):
                match = await self.save(
                    match.model_copy(update={"external_id": med.id}), "linked"
                )
            await self.set_active(match, True)

        for item in self.of_type(ItemType.medication):
            if item.active and not any(matches_medication(item, med) for med in configured):
                await self.set_active(item, False)

    async def sync_vitals(self, config: CareConfig) -> None:
        bucket = config.vitals
        existing = self.of_type(ItemType.vitals)
        if not bucket.enabled:
            for item in existing:
                await self.set_active(item, False)
            return
        if not existing:
            windows = [range_window(label) for label in _unique_labels(bucket.times_of_day)]
            await self.save(
                _bucket_item(
                    self.plan_id, ItemType.vitals, VITALS_DEFAULT_NAME, windows, bucket.priority
                ),
                "created",
            )
            return
        for item in existing:
            await self.set_active(item, True)

    async def sync_meals(self, config: CareConfig) -> None:
        bucket = config.meals
        existing = self.of_type(ItemType.nutrition)
        if not bucket.enabled:
            for item in existing:
                await self.set_active(item, False)
            return
        if not existing:
            for label in _unique_labels(bucket.times_of_day):
                name = MEAL_NAMES.get(label)
                if name is None:
                    continue
                await self.save(
                    _bucket_item(
                        self.plan_id,
                        ItemType.nutrition,
                        name,
                        [range_window(label)],
                        bucket.priority,
                    ),
                    "created",
                )
            return
        canonical = {name.lower() for name in MEAL_NAMES.values()}
        for item in existing:
            if item.name.strip().lower() in canonical:
                await self.set_active(item, True)

    async def sync_mood(self) -> None:
        # Mood is captured by the wellness checks.
        for item in self.of_type(ItemType.mood):
            await self.set_active(item, False)

    async def cleanup_legacy_wellness(self) -> None:
        """Rename legacy wellness items to the canonical pair and drop duplicates."""
        wellness = self.of_type(ItemType.wellness)
        taken = {item.name for item in wellness if not _is_legacy_wellness(item)}
        for item in wellness:
            if not _is_legacy_wellness(item):
                continue
            free = [default for default in WELLNESS_DEFAULTS if default[0] not in taken]
            if not free:
                await self.set_active(item, False)
                continue
            name = free[0][0]
            taken.add(name)
            await self.save(item.model_copy(update={"name": name}), "renamed")

        seen: set[str] = set()
        for item in self.of_type(ItemType.wellness):
            if not item.active:
                continue
            if item.name in seen:
                await self.set_active(item, False)
            seen.add(item.name)

    async def sync_wellness(self) -> None:
        wellness = self.of_type(ItemType.wellness)
        if not wellness:
            for name, label, at in WELLNESS_DEFAULTS:
                await self.save(
                    _bucket_item(
                        self.plan_id,
                        ItemType.wellness,
                        name,
                        [exact_window(label, at)],
                        ItemPriority.recommended,
                    ),
                    "created",
                )
            return
        # Always-on: canonical wellness items never stay deactivated.
        canonical = {name for name, _, _ in WELLNESS_DEFAULTS}
        active_names = {item.name for item in wellness if item.active}
        for item in wellness:
            if item.name in canonical and item.name not in active_names:
                await self.set_active(item, True)
                active_names.add(item.name)


async def _reschedule(stores: RegimenStores, patient_id: str) -> None:
    try:
        await stores.rescheduler.reschedule(patient_id)
    except Exception:
        logger.warning(
            "Notification reschedule failed for patient %s", patient_id, exc_info=True
        )


def _fire_reschedule(stores: RegimenStores, patient_id: str) -> asyncio.Task:
    task = asyncio.create_task(_reschedule(stores, patient_id))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def wait_for_reschedules() -> None:
    """Wait for in-flight notification reschedules started on the running loop."""
    loop = asyncio.get_running_loop()
    pending = [task for task in _background_tasks if task.get_loop() is loop]
    if pending:
        await asyncio.gather(*pending)


async def sync_catalog_with_config(
    stores: RegimenStores,
    plan_id: str | None,
    patient_id: str,
) -> bool:
    """Reconcile the catalog of *plan_id* with the patient's care config.

    With no plan, one is created when the config enables anything. Returns
    True if the catalog changed, in which case the notification
    rescheduler is invoked without being awaited.
    """
    config = await stores.config.get_config(patient_id)
    if config is None:
        logger.debug("No care config for patient %s; skipping catalog sync", patient_id)
        return False

    changed = False
    if plan_id is None:
        if not config.has_any_enabled():
            return False
        plan = await stores.catalog.create_plan(patient_id)
        plan_id = plan.id
        changed = True

    items = await stores.catalog.list_items(plan_id, active_only=False)
    sync = _CatalogSync(stores, plan_id, items)

    if not await stores.markers.has_marker(LEGACY_CLEANUP_MARKER, patient_id):
        await sync.cleanup_legacy_wellness()
        await stores.markers.set_marker(LEGACY_CLEANUP_MARKER, patient_id)

    await sync.sync_medications(config)
    await sync.sync_vitals(config)
    await sync.sync_meals(config)
    await sync.sync_mood()
    await sync.sync_wellness()

    changed = changed or sync.changes > 0
    if changed:
        logger.info(
            "Catalog sync for patient %s applied %d change(s)", patient_id, sync.changes
        )
        _fire_reschedule(stores, patient_id)
    return changed
