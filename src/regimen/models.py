"""Domain models for the regimen engine.

Defines the closed enumerations (item type, priority, instance and schedule
status) and the pydantic models shared by the generator, status engine,
reconciler, schedule composer, and the storage layer:

- ``PlanItem`` / ``TimeWindow``: the recurring regimen definition
- ``DailyInstance``: one concrete, dated occurrence of an item's window
- ``ScheduleEntry`` / ``ScheduleConflict`` / ``ScheduleResult``: ephemeral
  presentation-layer output, recomputed on every composition
- ``CareConfig``: the external "what the user wants enabled" snapshot
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def new_id() -> str:
    """Return a fresh opaque identifier."""
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ItemType(StrEnum):
    """Kind of recurring regimen item."""

    medication = "medication"
    activity = "activity"
    vitals = "vitals"
    nutrition = "nutrition"
    hydration = "hydration"
    mood = "mood"
    sleep = "sleep"
    wellness = "wellness"
    custom = "custom"


class ItemPriority(StrEnum):
    required = "required"
    recommended = "recommended"
    optional = "optional"


class Frequency(StrEnum):
    daily = "daily"
    weekly = "weekly"
    custom = "custom"


class WindowKind(StrEnum):
    exact = "exact"
    window = "window"


class WindowLabel(StrEnum):
    """Coarse part-of-day label attached to every time window."""

    morning = "morning"
    afternoon = "afternoon"
    evening = "evening"
    night = "night"
    custom = "custom"


class PlanStatus(StrEnum):
    active = "active"
    paused = "paused"
    archived = "archived"


class InstanceStatus(StrEnum):
    """Persisted lifecycle status of a daily instance.

    ``completed`` and ``skipped`` are terminal. ``missed`` can still move to
    ``completed`` or ``skipped`` when a late completion event arrives.
    """

    pending = "pending"
    completed = "completed"
    skipped = "skipped"
    missed = "missed"


class ScheduleStatus(StrEnum):
    """Presentation state of a schedule entry (never persisted)."""

    upcoming = "upcoming"
    available_now = "availableNow"
    completed = "completed"
    missed = "missed"
    snoozed = "snoozed"
    info = "info"


class ScheduleSource(StrEnum):
    care_plan = "carePlan"
    appointment = "appointment"


class ConflictType(StrEnum):
    overlap = "overlap"
    adjacent = "adjacent"


class ActionType(StrEnum):
    """What tapping a schedule entry does."""

    log = "log"
    complete = "complete"
    open = "open"


# ---------------------------------------------------------------------------
# Catalog models
# ---------------------------------------------------------------------------


class TimeWindow(BaseModel):
    """An exact clock time or a start/end range within a day.

    Clock values are kept as raw ``HH:MM`` strings; malformed values are
    tolerated here and resolved to per-label defaults by
    :mod:`regimen.timewindow`.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    kind: WindowKind = WindowKind.exact
    label: WindowLabel = WindowLabel.custom
    custom_label: str | None = None
    start: str | None = None
    end: str | None = None
    at: str | None = None


class ItemSchedule(BaseModel):
    """Recurrence rule for a plan item."""

    frequency: Frequency = Frequency.daily
    times: list[TimeWindow] = Field(min_length=1)
    # 0 = Sunday ... 6 = Saturday; empty means every day.
    days_of_week: list[int] = Field(default_factory=list)
    skip_dates: list[date] = Field(default_factory=list)

    @field_validator("days_of_week")
    @classmethod
    def _drop_invalid_weekdays(cls, value: list[int]) -> list[int]:
        return [d for d in value if 0 <= d <= 6]


class MedicationDetails(BaseModel):
    medication_id: str | None = None
    dose: str | None = None
    unit: str | None = None
    route: str | None = None
    with_food: bool | None = None
    instructions: str | None = None


class Plan(BaseModel):
    """A patient's care plan (the catalog that owns plan items)."""

    id: str = Field(default_factory=new_id)
    patient_id: str
    timezone: str = "UTC"
    start_date: date | None = None
    end_date: date | None = None
    status: PlanStatus = PlanStatus.active
    version: int = 1
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class PlanItem(BaseModel):
    """A recurring regimen definition: what, how often, and when."""

    id: str = Field(default_factory=new_id)
    plan_id: str
    type: ItemType
    name: str
    instructions: str | None = None
    priority: ItemPriority = ItemPriority.recommended
    active: bool = True
    schedule: ItemSchedule
    medication_details: MedicationDetails | None = None
    emoji: str | None = None
    # Stable id of the external config entry this item was created from.
    external_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def window(self, window_id: str) -> TimeWindow | None:
        for window in self.schedule.times:
            if window.id == window_id:
                return window
        return None


# ---------------------------------------------------------------------------
# Daily instances
# ---------------------------------------------------------------------------


class InstanceSnapshot(BaseModel):
    """Display fields copied from a plan item when an instance is generated.

    Frozen: the snapshot records what the plan said at generation time and is
    never refreshed afterwards, even if the item is edited.
    """

    model_config = ConfigDict(frozen=True)

    item_name: str
    item_type: ItemType
    priority: ItemPriority
    emoji: str | None = None
    instructions: str | None = None
    dosage: str | None = None

    @classmethod
    def from_item(cls, item: PlanItem) -> InstanceSnapshot:
        dosage = item.medication_details.dose if item.medication_details else None
        return cls(
            item_name=item.name,
            item_type=item.type,
            priority=item.priority,
            emoji=item.emoji,
            instructions=item.instructions,
            dosage=dosage,
        )


class DailyInstance(BaseModel):
    """One concrete, dated occurrence of a plan item's time window."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=new_id)
    plan_id: str
    item_id: str
    window_id: str
    window_label: WindowLabel
    patient_id: str
    date: date
    scheduled_time: str  # HH:MM
    status: InstanceStatus = InstanceStatus.pending
    log_id: str | None = None
    generated_from_version: int | None = None
    snapshot: InstanceSnapshot = Field(frozen=True)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> tuple[str, str]:
        """Idempotency key within a (patient, date): ``(item_id, window_id)``."""
        return (self.item_id, self.window_id)


class Override(BaseModel):
    """A snooze on one (item, window) for a given day."""

    item_id: str
    window_id: str
    snooze_until_min: int | None = None


class Event(BaseModel):
    """A one-off event (appointment) sourced outside the regimen."""

    id: str = Field(default_factory=new_id)
    date: date
    time: str | None = None  # HH:MM, None means noon
    title: str
    provider: str | None = None
    specialty: str | None = None
    location: str | None = None
    duration_min: int = Field(default=60, ge=0)
    completed: bool = False
    cancelled: bool = False


# ---------------------------------------------------------------------------
# Schedule (presentation) models
# ---------------------------------------------------------------------------


class ScheduleEntry(BaseModel):
    """A unified timeline item built from an instance or an appointment."""

    id: str
    source: ScheduleSource
    title: str
    subtitle: str | None = None
    emoji: str | None = None
    start_min: int
    end_min: int | None = None
    due_min: int | None = None
    status: ScheduleStatus
    item_id: str | None = None
    window_id: str | None = None
    instance_id: str | None = None
    item_type: ItemType | None = None
    appointment_id: str | None = None
    action_label: str | None = None
    action_type: ActionType | None = None
    snoozed_until_min: int | None = None


class ScheduleConflict(BaseModel):
    type: ConflictType
    appointment_id: str
    appointment_title: str
    appointment_min: int
    item_id: str
    window_id: str
    routine_name: str
    window_start: int
    window_end: int
    message: str
    suggestion: str


class GroupedSchedule(BaseModel):
    active: list[ScheduleEntry] = Field(default_factory=list)
    upcoming: list[ScheduleEntry] = Field(default_factory=list)
    snoozed: list[ScheduleEntry] = Field(default_factory=list)
    info: list[ScheduleEntry] = Field(default_factory=list)
    completed: list[ScheduleEntry] = Field(default_factory=list)


class ScheduleStats(BaseModel):
    total: int = 0
    care_plan_items: int = 0
    appointments: int = 0
    completed: int = 0
    needs_attention: int = 0
    has_conflicts: bool = False
    all_complete: bool = False


class InstanceCounts(BaseModel):
    total: int = 0
    pending: int = 0
    completed: int = 0
    skipped: int = 0
    missed: int = 0


class DailySummary(BaseModel):
    """Instance-level view of a day, independent of presentation status.

    ``by_window`` holds every label, empty lists included, each sorted by
    scheduled time.
    """

    date: date
    instances: list[DailyInstance] = Field(default_factory=list)
    by_window: dict[WindowLabel, list[DailyInstance]] = Field(default_factory=dict)
    counts: InstanceCounts = Field(default_factory=InstanceCounts)
    next_pending: DailyInstance | None = None


class ScheduleResult(BaseModel):
    date: date
    entries: list[ScheduleEntry] = Field(default_factory=list)
    grouped: GroupedSchedule = Field(default_factory=GroupedSchedule)
    conflicts: list[ScheduleConflict] = Field(default_factory=list)
    stats: ScheduleStats = Field(default_factory=ScheduleStats)
    summary: DailySummary | None = None
    # Names of best-effort pipeline stages that failed on this call.
    warnings: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# External configuration snapshot
# ---------------------------------------------------------------------------


class ConfiguredMedication(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    name: str
    dosage: str | None = None
    times_of_day: list[WindowLabel] = Field(default_factory=lambda: [WindowLabel.morning])
    active: bool = True


class BucketSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = False
    priority: ItemPriority = ItemPriority.recommended
    times_of_day: list[WindowLabel] = Field(default_factory=lambda: [WindowLabel.morning])


class MedsBucketSettings(BucketSettings):
    medications: list[ConfiguredMedication] = Field(default_factory=list)


class CareConfig(BaseModel):
    """What the user wants tracked, per category ("bucket").

    Read-only to this engine. Wellness checks are always on regardless of the
    ``wellness.enabled`` flag.
    """

    model_config = ConfigDict(extra="ignore")

    patient_id: str
    version: int = 1
    meds: MedsBucketSettings = Field(default_factory=MedsBucketSettings)
    vitals: BucketSettings = Field(default_factory=BucketSettings)
    meals: BucketSettings = Field(
        default_factory=lambda: BucketSettings(
            times_of_day=[WindowLabel.morning, WindowLabel.afternoon, WindowLabel.evening]
        )
    )
    mood: BucketSettings = Field(default_factory=BucketSettings)
    wellness: BucketSettings = Field(
        default_factory=lambda: BucketSettings(
            enabled=True, times_of_day=[WindowLabel.morning, WindowLabel.evening]
        )
    )

    def has_any_enabled(self) -> bool:
        return any(
            bucket.enabled for bucket in (self.meds, self.vitals, self.meals, self.mood)
        ) or bool(self.active_medications())

    def active_medications(self) -> list[ConfiguredMedication]:
        if not self.meds.enabled:
            return []
        return [med for med in self.meds.medications if med.active]


def model_to_jsonable(model: BaseModel) -> dict[str, Any]:
    """Dump a model to a JSON-safe dict (dates as ISO strings)."""
    return model.model_dump(mode="json")
