"""Schedule composer: one sorted, conflict-annotated timeline per day.

Merges daily instances (through their presentation status) with one-off
events into ``ScheduleEntry`` records. Everything here is pure and
recomputed on every read.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime

from regimen.config import DEFAULT_ADJACENT_WINDOW_MINUTES
from regimen.generator import sort_instances
from regimen.models import (
    ActionType,
    ConflictType,
    DailyInstance,
    DailySummary,
    Event,
    GroupedSchedule,
    InstanceCounts,
    InstanceStatus,
    ItemType,
    Override,
    ScheduleConflict,
    ScheduleEntry,
    ScheduleResult,
    ScheduleSource,
    ScheduleStats,
    ScheduleStatus,
    TimeWindow,
    WindowKind,
    WindowLabel,
)
from regimen.status import WindowIndex, presentation_status, resolve_window
from regimen.timewindow import (
    format_minutes,
    minutes_since_day_start,
    parse_clock,
    window_end_minutes,
    window_start_minutes,
)

APPOINTMENT_DEFAULT_MINUTE = 12 * 60
# An appointment counts as available this long before it starts...
APPOINTMENT_LEAD_MINUTES = 30
# ...and as missed once this long has passed since it started.
APPOINTMENT_MISSED_AFTER_MINUTES = 60

STATUS_PRIORITY: dict[ScheduleStatus, int] = {
    ScheduleStatus.available_now: 0,
    ScheduleStatus.missed: 1,
    ScheduleStatus.upcoming: 2,
    ScheduleStatus.snoozed: 3,
    ScheduleStatus.info: 4,
    ScheduleStatus.completed: 5,
}

_LOGGABLE_TYPES = frozenset(
    {
        ItemType.medication,
        ItemType.vitals,
        ItemType.nutrition,
        ItemType.mood,
        ItemType.sleep,
        ItemType.hydration,
    }
)

_STATUS_DISPLAY: dict[ScheduleStatus, tuple[str, str]] = {
    ScheduleStatus.completed: ("Completed", "green"),
    ScheduleStatus.available_now: ("Available now", "blue"),
    ScheduleStatus.missed: ("Missed", "red"),
    ScheduleStatus.snoozed: ("Snoozed", "gray"),
    ScheduleStatus.upcoming: ("Upcoming", "yellow"),
    ScheduleStatus.info: ("Cancelled", "gray"),
}


@dataclass(frozen=True)
class RoutineWindow:
    """A recurring item's window on the day, as seen by conflict detection."""

    item_id: str
    window_id: str
    name: str
    start_min: int
    end_min: int


@dataclass(frozen=True)
class EntryDisplay:
    time_text: str
    status_text: str
    status_color: str


# ---------------------------------------------------------------------------
# Entry derivation
# ---------------------------------------------------------------------------


def _window_text(window: TimeWindow) -> str:
    start = window_start_minutes(window)
    if window.kind == WindowKind.exact and window.at:
        return format_minutes(start)
    return f"{format_minutes(start)} - {format_minutes(window_end_minutes(window))}"


def _item_action(item_type: ItemType) -> tuple[str, ActionType]:
    if item_type in _LOGGABLE_TYPES:
        return "Log", ActionType.log
    return "Mark done", ActionType.complete


def care_plan_entry(
    instance: DailyInstance,
    window: TimeWindow,
    now_min: int,
    override: Override | None = None,
) -> ScheduleEntry:
    snapshot = instance.snapshot
    action_label, action_type = _item_action(snapshot.item_type)
    subtitle = " · ".join(part for part in (snapshot.dosage, _window_text(window)) if part)
    return ScheduleEntry(
        id=f"careplan-{instance.id}",
        source=ScheduleSource.care_plan,
        title=snapshot.item_name,
        subtitle=subtitle,
        emoji=snapshot.emoji,
        start_min=window_start_minutes(window),
        end_min=window_end_minutes(window),
        due_min=parse_clock(instance.scheduled_time),
        status=presentation_status(instance, window, now_min, override),
        item_id=instance.item_id,
        window_id=instance.window_id,
        instance_id=instance.id,
        item_type=snapshot.item_type,
        action_label=action_label,
        action_type=action_type,
        snoozed_until_min=override.snooze_until_min if override is not None else None,
    )


def event_start_minute(event: Event) -> int:
    """Start of *event* in minutes; a missing or malformed time means noon."""
    parsed = parse_clock(event.time)
    return APPOINTMENT_DEFAULT_MINUTE if parsed is None else parsed


def appointment_status(event: Event, now_min: int) -> ScheduleStatus:
    start = event_start_minute(event)
    if event.completed:
        return ScheduleStatus.completed
    if event.cancelled:
        return ScheduleStatus.info
    if now_min > start + APPOINTMENT_MISSED_AFTER_MINUTES:
        return ScheduleStatus.missed
    if now_min >= start - APPOINTMENT_LEAD_MINUTES:
        return ScheduleStatus.available_now
    return ScheduleStatus.upcoming


def appointment_entry(event: Event, now_min: int) -> ScheduleEntry:
    start = event_start_minute(event)
    title = event.title
    if not title.strip() and event.provider:
        title = f"{event.specialty or 'Appointment'} with {event.provider}"
    return ScheduleEntry(
        id=f"appointment-{event.id}",
        source=ScheduleSource.appointment,
        title=title,
        subtitle=event.location or format_minutes(start),
        emoji="📅",
        start_min=start,
        end_min=start + event.duration_min,
        due_min=start,
        status=appointment_status(event, now_min),
        appointment_id=event.id,
        action_label="Details",
        action_type=ActionType.open,
    )


def sort_entries(entries: list[ScheduleEntry]) -> list[ScheduleEntry]:
    """Order by status bucket, then start minute. Stable for ties."""
    return sorted(entries, key=lambda e: (STATUS_PRIORITY[e.status], e.start_min))


def derive_entries(
    instances: list[DailyInstance],
    windows: WindowIndex,
    events: list[Event],
    overrides: list[Override],
    now_min: int,
) -> list[ScheduleEntry]:
    """Build the sorted timeline from instances and one-off events.

    *now_min* is relative to midnight of the scheduled day.
    """
    overrides_by_key = {(o.item_id, o.window_id): o for o in overrides}
    entries = [
        care_plan_entry(
            instance,
            resolve_window(instance, windows),
            now_min,
            overrides_by_key.get(instance.key),
        )
        for instance in instances
    ]
    entries.extend(appointment_entry(event, now_min) for event in events)
    return sort_entries(entries)


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


def routine_windows(instances: list[DailyInstance], windows: WindowIndex) -> list[RoutineWindow]:
    """Distinct recurring windows that have an instance on the day.

    Items sharing the same span form one routine, named after all of them
    and keyed by the first item, so an event conflicts with it once.
    """
    routines: dict[tuple[int, int], RoutineWindow] = {}
    seen: set[tuple[str, str]] = set()
    for instance in instances:
        if instance.key in seen:
            continue
        seen.add(instance.key)
        window = resolve_window(instance, windows)
        bounds = (window_start_minutes(window), window_end_minutes(window))
        name = instance.snapshot.item_name
        existing = routines.get(bounds)
        if existing is not None:
            if name not in existing.name.split(", "):
                routines[bounds] = replace(existing, name=f"{existing.name}, {name}")
            continue
        routines[bounds] = RoutineWindow(
            item_id=instance.item_id,
            window_id=instance.window_id,
            name=name,
            start_min=bounds[0],
            end_min=bounds[1],
        )
    return list(routines.values())


def detect_conflicts(
    events: list[Event],
    routines: list[RoutineWindow],
    *,
    adjacent_minutes: int = DEFAULT_ADJACENT_WINDOW_MINUTES,
) -> list[ScheduleConflict]:
    """Flag events that start inside a routine window or shortly before it.

    ``overlap``: the event starts within ``[start, end]`` of the window.
    ``adjacent``: the event starts within *adjacent_minutes* before the
    window opens. Cancelled events never conflict.
    """
    conflicts: list[ScheduleConflict] = []
    for event in events:
        if event.cancelled:
            continue
        start = event_start_minute(event)
        for routine in routines:
            if routine.start_min <= start <= routine.end_min:
                conflict_type = ConflictType.overlap
                message = f"{event.title} is during your {routine.name}"
                suggestion = "Routine tasks may need to shift around the appointment"
            elif routine.start_min - adjacent_minutes <= start < routine.start_min:
                conflict_type = ConflictType.adjacent
                message = f"{event.title} is close to your {routine.name}"
                suggestion = "Consider completing routine tasks before the appointment"
            else:
                continue
            conflicts.append(
                ScheduleConflict(
                    type=conflict_type,
                    appointment_id=event.id,
                    appointment_title=event.title,
                    appointment_min=start,
                    item_id=routine.item_id,
                    window_id=routine.window_id,
                    routine_name=routine.name,
                    window_start=routine.start_min,
                    window_end=routine.end_min,
                    message=message,
                    suggestion=suggestion,
                )
            )
    return conflicts


# ---------------------------------------------------------------------------
# Derived queries
# ---------------------------------------------------------------------------


def group_by_status(entries: list[ScheduleEntry]) -> GroupedSchedule:
    grouped = GroupedSchedule()
    for entry in entries:
        if entry.status in (ScheduleStatus.available_now, ScheduleStatus.missed):
            grouped.active.append(entry)
        elif entry.status == ScheduleStatus.upcoming:
            grouped.upcoming.append(entry)
        elif entry.status == ScheduleStatus.snoozed:
            grouped.snoozed.append(entry)
        elif entry.status == ScheduleStatus.info:
            grouped.info.append(entry)
        else:
            grouped.completed.append(entry)
    return grouped


def attention_count(entries: list[ScheduleEntry]) -> int:
    """Number of entries needing action now (available or missed)."""
    return sum(
        1
        for e in entries
        if e.status in (ScheduleStatus.available_now, ScheduleStatus.missed)
    )


def is_schedule_complete(entries: list[ScheduleEntry]) -> bool:
    """True if the day has recurring work and all of it is completed."""
    care_plan = [e for e in entries if e.source == ScheduleSource.care_plan]
    return bool(care_plan) and all(e.status == ScheduleStatus.completed for e in care_plan)


def entry_display(entry: ScheduleEntry) -> EntryDisplay:
    time_text = format_minutes(entry.start_min)
    status_text, color = _STATUS_DISPLAY[entry.status]
    if entry.status == ScheduleStatus.snoozed:
        status_text = f"Snoozed until {format_minutes(entry.snoozed_until_min or 0)}"
    return EntryDisplay(time_text=time_text, status_text=status_text, status_color=color)


def daily_summary(day: date, instances: list[DailyInstance], *, now: datetime) -> DailySummary:
    """Per-window groups, status counts and the next pending instance for *day*.

    The next pending instance is the earliest one not scheduled before *now*,
    falling back to the earliest pending instance of the day.
    """
    ordered = sort_instances(instances)
    by_window: dict[WindowLabel, list[DailyInstance]] = {label: [] for label in WindowLabel}
    for instance in ordered:
        by_window[instance.window_label].append(instance)

    counts = InstanceCounts(total=len(ordered))
    for instance in ordered:
        match instance.status:
            case InstanceStatus.pending:
                counts.pending += 1
            case InstanceStatus.completed:
                counts.completed += 1
            case InstanceStatus.skipped:
                counts.skipped += 1
            case InstanceStatus.missed:
                counts.missed += 1

    now_min = minutes_since_day_start(day, now)
    pending = [i for i in ordered if i.status == InstanceStatus.pending]
    next_pending = next(
        (i for i in pending if (parse_clock(i.scheduled_time) or 0) >= now_min),
        pending[0] if pending else None,
    )
    return DailySummary(
        date=day,
        instances=ordered,
        by_window=by_window,
        counts=counts,
        next_pending=next_pending,
    )


def compose_schedule(
    day: date,
    instances: list[DailyInstance],
    windows: WindowIndex,
    events: list[Event],
    overrides: list[Override],
    *,
    now: datetime,
    adjacent_minutes: int = DEFAULT_ADJACENT_WINDOW_MINUTES,
    warnings: list[str] | None = None,
) -> ScheduleResult:
    """Assemble the full :class:`ScheduleResult` for *day* as seen at *now*."""
    now_min = minutes_since_day_start(day, now)
    entries = derive_entries(instances, windows, events, overrides, now_min)
    grouped = group_by_status(entries)
    conflicts = detect_conflicts(
        events, routine_windows(instances, windows), adjacent_minutes=adjacent_minutes
    )
    stats = ScheduleStats(
        total=len(entries),
        care_plan_items=sum(1 for e in entries if e.source == ScheduleSource.care_plan),
        appointments=sum(1 for e in entries if e.source == ScheduleSource.appointment),
        completed=len(grouped.completed),
        needs_attention=len(grouped.active),
        has_conflicts=bool(conflicts),
        all_complete=is_schedule_complete(entries),
    )
    return ScheduleResult(
        date=day,
        entries=entries,
        grouped=grouped,
        conflicts=conflicts,
        stats=stats,
        summary=daily_summary(day, instances, now=now),
        warnings=list(warnings or []),
    )
