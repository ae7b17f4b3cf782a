"""Storage abstractions consumed by the regimen engine.

The engine never talks to a database directly. Every pipeline stage receives
a :class:`RegimenStores` bundle and reads/writes through these interfaces,
so the same code runs against Postgres (:mod:`regimen.stores.postgres`) or
the in-memory implementations in :mod:`regimen.testing`.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from datetime import date

from regimen.models import (
    CareConfig,
    DailyInstance,
    Event,
    InstanceStatus,
    Override,
    Plan,
    PlanItem,
)


class CatalogStore(abc.ABC):
    """Plan catalog: the patient's active plan and its recurring items."""

    @abc.abstractmethod
    async def get_active_plan(self, patient_id: str) -> Plan | None:
        """Return the patient's active plan, or ``None``."""
        ...

    @abc.abstractmethod
    async def create_plan(self, patient_id: str, *, timezone: str = "UTC") -> Plan:
        """Create and return a new active plan for *patient_id*."""
        ...

    @abc.abstractmethod
    async def list_items(self, plan_id: str, *, active_only: bool = True) -> list[PlanItem]:
        """Return plan items in creation order."""
        ...

    @abc.abstractmethod
    async def upsert_item(self, item: PlanItem) -> PlanItem:
        """Insert *item* or replace the stored item with the same id."""
        ...

    @abc.abstractmethod
    async def delete_item(self, plan_id: str, item_id: str) -> None:
        """Hard-delete an item. No-op if it does not exist."""
        ...


class InstanceStore(abc.ABC):
    """Daily instances, keyed by ``(patient_id, date)``."""

    @abc.abstractmethod
    async def list_instances(self, patient_id: str, day: date) -> list[DailyInstance]:
        ...

    @abc.abstractmethod
    async def upsert_instances(
        self, patient_id: str, day: date, instances: list[DailyInstance]
    ) -> int:
        """Insert *instances*, skipping any whose ``(item_id, window_id)`` exists.

        Existing rows are never rewritten. Returns the number inserted.
        """
        ...

    @abc.abstractmethod
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
        """Set the status (and optionally the log reference) of one instance.

        With *expected*, the write only applies while the stored status still
        equals it, so a concurrent writer's change is never overwritten.

        Returns the updated instance, or ``None`` when it does not exist or
        its status no longer matches *expected*.
        """
        ...

    @abc.abstractmethod
    async def remove_stale_instances(
        self, patient_id: str, day: date, valid_item_ids: set[str]
    ) -> int:
        """Delete instances whose item id is not in *valid_item_ids*. Returns the count."""
        ...


class OverrideStore(abc.ABC):
    @abc.abstractmethod
    async def list_overrides(self, patient_id: str, day: date) -> list[Override]:
        ...

    @abc.abstractmethod
    async def set_snooze(
        self,
        patient_id: str,
        day: date,
        item_id: str,
        window_id: str,
        until_min: int | None,
    ) -> None:
        """Snooze one ``(item, window)`` until *until_min*; ``None`` clears it."""
        ...


class EventSource(abc.ABC):
    """Read-only source of one-off events (appointments)."""

    @abc.abstractmethod
    async def list_events_on_date(self, patient_id: str, day: date) -> list[Event]:
        ...


class ConfigSource(abc.ABC):
    """Read-only snapshot of what the patient wants tracked."""

    @abc.abstractmethod
    async def get_config(self, patient_id: str) -> CareConfig | None:
        ...


class MarkerStore(abc.ABC):
    """Persisted one-time markers (e.g. "legacy cleanup already ran")."""

    @abc.abstractmethod
    async def has_marker(self, name: str, patient_id: str) -> bool:
        ...

    @abc.abstractmethod
    async def set_marker(self, name: str, patient_id: str) -> None:
        ...


class NotificationRescheduler(abc.ABC):
    """Re-plans reminders after the catalog changes. Delivery is external."""

    @abc.abstractmethod
    async def reschedule(self, patient_id: str) -> None:
        ...


class NullRescheduler(NotificationRescheduler):
    """Rescheduler used when no notification backend is wired in."""

    async def reschedule(self, patient_id: str) -> None:
        return None


@dataclass
class RegimenStores:
    """Everything the pipeline reads from or writes to."""

    catalog: CatalogStore
    instances: InstanceStore
    overrides: OverrideStore
    events: EventSource
    config: ConfigSource
    markers: MarkerStore
    rescheduler: NotificationRescheduler
