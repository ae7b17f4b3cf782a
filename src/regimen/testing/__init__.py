"""In-memory store implementations for tests and local dry runs.

They honour the same contracts as :mod:`regimen.stores.postgres`, including
insert-only instance upserts keyed by ``(item_id, window_id)``. All stored
models are deep-copied on the way in and out so callers cannot mutate store
state behind its back.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import UTC, date, datetime

from regimen.models import (
    CareConfig,
    DailyInstance,
    Event,
    InstanceStatus,
    Override,
    Plan,
    PlanItem,
    PlanStatus,
)
from regimen.stores.base import (
    CatalogStore,
    ConfigSource,
    EventSource,
    InstanceStore,
    MarkerStore,
    NotificationRescheduler,
    OverrideStore,
    RegimenStores,
)

__all__ = [
    "InMemoryCatalogStore",
    "InMemoryConfigSource",
    "InMemoryEventSource",
    "InMemoryInstanceStore",
    "InMemoryMarkerStore",
    "InMemoryOverrideStore",
    "RecordingRescheduler",
    "memory_stores",
]


class InMemoryCatalogStore(CatalogStore):
    def __init__(self) -> None:
        self.plans: dict[str, Plan] = {}
        self.items: dict[str, PlanItem] = {}

    def add_plan(self, plan: Plan) -> Plan:
        self.plans[plan.id] = plan.model_copy(deep=True)
        return plan

    async def get_active_plan(self, patient_id: str) -> Plan | None:
        for plan in reversed(list(self.plans.values())):
            if plan.patient_id == patient_id and plan.status == PlanStatus.active:
                return plan.model_copy(deep=True)
        return None

    async def create_plan(self, patient_id: str, *, timezone: str = "UTC") -> Plan:
        plan = Plan(patient_id=patient_id, timezone=timezone, start_date=datetime.now(UTC).date())
        return self.add_plan(plan)

    async def list_items(self, plan_id: str, *, active_only: bool = True) -> list[PlanItem]:
        return [
            item.model_copy(deep=True)
            for item in self.items.values()
            if item.plan_id == plan_id and (item.active or not active_only)
        ]

    async def upsert_item(self, item: PlanItem) -> PlanItem:
        self.items[item.id] = item.model_copy(deep=True)
        self._bump_version(item.plan_id)
        return item

    async def delete_item(self, plan_id: str, item_id: str) -> None:
        item = self.items.get(item_id)
        if item is not None and item.plan_id == plan_id:
            del self.items[item_id]
            self._bump_version(plan_id)

    def _bump_version(self, plan_id: str) -> None:
        plan = self.plans.get(plan_id)
        if plan is not None:
            self.plans[plan_id] = plan.model_copy(update={"version": plan.version + 1})


class InMemoryInstanceStore(InstanceStore):
    def __init__(self) -> None:
        self.rows: dict[tuple[str, date], list[DailyInstance]] = defaultdict(list)
        # Set to an exception instance to make every call raise it.
        self.fail_with: Exception | None = None

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def list_instances(self, patient_id: str, day: date) -> list[DailyInstance]:
        self._check()
        return [i.model_copy(deep=True) for i in self.rows[(patient_id, day)]]

    async def upsert_instances(
        self, patient_id: str, day: date, instances: list[DailyInstance]
    ) -> int:
        self._check()
        bucket = self.rows[(patient_id, day)]
        existing = {i.key for i in bucket}
        inserted = 0
        for instance in instances:
            if instance.key in existing:
                continue
            bucket.append(instance.model_copy(deep=True))
            existing.add(instance.key)
            inserted += 1
        return inserted

    async def update_instance_status(
        self,
        patient_id: str,
        day: date,
        instance_id: str,
        status: InstanceStatus,
        log_id: str | None = None,
        *,
        expected: InstanceStatus | None = None,
    ) -> DailyInstance | None:
        self._check()
        for stored in self.rows[(patient_id, day)]:
            if stored.id == instance_id:
                if expected is not None and stored.status != expected:
                    return None
                stored.status = status
                if log_id is not None:
                    stored.log_id = log_id
                stored.updated_at = datetime.now(UTC)
                return stored.model_copy(deep=True)
        return None

    async def remove_stale_instances(
        self, patient_id: str, day: date, valid_item_ids: set[str]
    ) -> int:
        self._check()
        bucket = self.rows[(patient_id, day)]
        kept = [i for i in bucket if i.item_id in valid_item_ids]
        removed = len(bucket) - len(kept)
        self.rows[(patient_id, day)] = kept
        return removed


class InMemoryOverrideStore(OverrideStore):
    def __init__(self) -> None:
        self.rows: dict[tuple[str, date, str, str], Override] = {}

    async def list_overrides(self, patient_id: str, day: date) -> list[Override]:
        return [
            override.model_copy()
            for (pid, d, _, _), override in self.rows.items()
            if pid == patient_id and d == day
        ]

    async def set_snooze(
        self,
        patient_id: str,
        day: date,
        item_id: str,
        window_id: str,
        until_min: int | None,
    ) -> None:
        key = (patient_id, day, item_id, window_id)
        if until_min is None:
            self.rows.pop(key, None)
            return
        self.rows[key] = Override(item_id=item_id, window_id=window_id, snooze_until_min=until_min)


class InMemoryEventSource(EventSource):
    def __init__(self) -> None:
        self.events: dict[str, list[Event]] = defaultdict(list)

    def add(self, patient_id: str, event: Event) -> Event:
        self.events[patient_id].append(event)
        return event

    async def list_events_on_date(self, patient_id: str, day: date) -> list[Event]:
        return [e.model_copy() for e in self.events[patient_id] if e.date == day]


class InMemoryConfigSource(ConfigSource):
    def __init__(self) -> None:
        self.configs: dict[str, CareConfig] = {}
        self.fail_with: Exception | None = None

    def set(self, config: CareConfig) -> None:
        self.configs[config.patient_id] = config.model_copy(deep=True)

    async def get_config(self, patient_id: str) -> CareConfig | None:
        if self.fail_with is not None:
            raise self.fail_with
        config = self.configs.get(patient_id)
        return config.model_copy(deep=True) if config is not None else None


class InMemoryMarkerStore(MarkerStore):
    def __init__(self) -> None:
        self.markers: set[tuple[str, str]] = set()

    async def has_marker(self, name: str, patient_id: str) -> bool:
        return (name, patient_id) in self.markers

    async def set_marker(self, name: str, patient_id: str) -> None:
        self.markers.add((name, patient_id))


class RecordingRescheduler(NotificationRescheduler):
    """Records reschedule calls; optionally raises to simulate a broken backend."""

    def __init__(self, fail_with: Exception | None = None) -> None:
        self.calls: list[str] = []
        self.fail_with = fail_with

    async def reschedule(self, patient_id: str) -> None:
        self.calls.append(patient_id)
        if self.fail_with is not None:
            raise self.fail_with


def memory_stores() -> RegimenStores:
    """Return a fresh, empty set of in-memory stores."""
    return RegimenStores(
        catalog=InMemoryCatalogStore(),
        instances=InMemoryInstanceStore(),
        overrides=InMemoryOverrideStore(),
        events=InMemoryEventSource(),
        config=InMemoryConfigSource(),
        markers=InMemoryMarkerStore(),
        rescheduler=RecordingRescheduler(),
    )
