"""asyncpg-backed store implementations.

All stores share one pool and operate on the tables created by the
``regimen`` Alembic chain. The config source and marker store sit on top of
the JSONB ``state`` table via :mod:`regimen.core.state`.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, date, datetime
from typing import Any

import asyncpg
from pydantic import ValidationError

from regimen.core.state import (
    config_key,
    decode_jsonb,
    marker_key,
    state_get,
    state_set,
    state_set_if_absent,
)
from regimen.errors import ReconciliationError
from regimen.models import (
    CareConfig,
    DailyInstance,
    Event,
    InstanceSnapshot,
    InstanceStatus,
    ItemSchedule,
    MedicationDetails,
    Override,
    Plan,
    PlanItem,
    new_id,
)
from regimen.stores.base import (
    CatalogStore,
    ConfigSource,
    EventSource,
    InstanceStore,
    MarkerStore,
    NotificationRescheduler,
    NullRescheduler,
    OverrideStore,
    RegimenStores,
)

logger = logging.getLogger(__name__)


def _row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
    """Convert an asyncpg Record to a dict, parsing JSONB strings."""
    d = dict(row)
    for key in ("schedule", "medication_details", "snapshot"):
        if key in d and d[key] is not None:
            d[key] = decode_jsonb(d[key])
    return d


def _plan_from_row(row: asyncpg.Record) -> Plan:
    return Plan.model_validate(_row_to_dict(row))


def _item_from_row(row: asyncpg.Record) -> PlanItem:
    d = _row_to_dict(row)
    d["schedule"] = ItemSchedule.model_validate(d["schedule"])
    if d.get("medication_details") is not None:
        d["medication_details"] = MedicationDetails.model_validate(d["medication_details"])
    return PlanItem.model_validate(d)


def _instance_from_row(row: asyncpg.Record) -> DailyInstance:
    d = _row_to_dict(row)
    d["snapshot"] = InstanceSnapshot.model_validate(d["snapshot"])
    return DailyInstance.model_validate(d)


class PostgresCatalogStore(CatalogStore):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get_active_plan(self, patient_id: str) -> Plan | None:
        row = await self._pool.fetchrow(
            """
            SELECT * FROM plans
            WHERE patient_id = $1 AND status = 'active'
            ORDER BY created_at DESC
            LIMIT 1
            """,
            patient_id,
        )
        return _plan_from_row(row) if row is not None else None

    async def create_plan(self, patient_id: str, *, timezone: str = "UTC") -> Plan:
        row = await self._pool.fetchrow(
            """
            INSERT INTO plans (id, patient_id, timezone, start_date)
            VALUES ($1, $2, $3, $4)
            RETURNING *
            """,
            new_id(),
            patient_id,
            timezone,
            datetime.now(UTC).date(),
        )
        logger.info("Created plan %s for patient %s", row["id"], patient_id)
        return _plan_from_row(row)

    async def list_items(self, plan_id: str, *, active_only: bool = True) -> list[PlanItem]:
        if active_only:
            rows = await self._pool.fetch(
                "SELECT * FROM plan_items WHERE plan_id = $1 AND active = true "
                "ORDER BY created_at, id",
                plan_id,
            )
        else:
            rows = await self._pool.fetch(
                "SELECT * FROM plan_items WHERE plan_id = $1 ORDER BY created_at, id",
                plan_id,
            )
        return [_item_from_row(r) for r in rows]

    async def upsert_item(self, item: PlanItem) -> PlanItem:
        medication_details = (
            json.dumps(item.medication_details.model_dump(mode="json"))
            if item.medication_details is not None
            else None
        )
        async with self._pool.acquire() as conn, conn.transaction():
            row = await conn.fetchrow(
                """
                INSERT INTO plan_items (
                    id, plan_id, type, name, instructions, priority, active,
                    schedule, medication_details, emoji, external_id, created_at, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9::jsonb, $10, $11, $12, now())
                ON CONFLICT (id) DO UPDATE
                    SET type = EXCLUDED.type,
                        name = EXCLUDED.name,
                        instructions = EXCLUDED.instructions,
                        priority = EXCLUDED.priority,
                        active = EXCLUDED.active,
                        schedule = EXCLUDED.schedule,
                        medication_details = EXCLUDED.medication_details,
                        emoji = EXCLUDED.emoji,
                        external_id = EXCLUDED.external_id,
                        updated_at = now()
                RETURNING *
                """,
                item.id,
                item.plan_id,
                item.type.value,
                item.name,
                item.instructions,
                item.priority.value,
                item.active,
                json.dumps(item.schedule.model_dump(mode="json")),
                medication_details,
                item.emoji,
                item.external_id,
                item.created_at,
            )
            await conn.execute(
                "UPDATE plans SET version = version + 1, updated_at = now() WHERE id = $1",
                item.plan_id,
            )
        return _item_from_row(row)

    async def delete_item(self, plan_id: str, item_id: str) -> None:
        async with self._pool.acquire() as conn, conn.transaction():
            result = await conn.execute(
                "DELETE FROM plan_items WHERE plan_id = $1 AND id = $2",
                plan_id,
                item_id,
            )
            if result != "DELETE 0":
                await conn.execute(
                    "UPDATE plans SET version = version + 1, updated_at = now() WHERE id = $1",
                    plan_id,
                )


class PostgresInstanceStore(InstanceStore):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def list_instances(self, patient_id: str, day: date) -> list[DailyInstance]:
        rows = await self._pool.fetch(
            """
            SELECT * FROM daily_instances
            WHERE patient_id = $1 AND date = $2
            ORDER BY scheduled_time, created_at, id
            """,
            patient_id,
            day,
        )
        return [_instance_from_row(r) for r in rows]

    async def upsert_instances(
        self, patient_id: str, day: date, instances: list[DailyInstance]
    ) -> int:
        if not instances:
            return 0
        inserted = 0
        async with self._pool.acquire() as conn, conn.transaction():
            for instance in instances:
                new_row_id = await conn.fetchval(
                    """
                    INSERT INTO daily_instances (
                        id, plan_id, item_id, window_id, window_label, patient_id, date,
                        scheduled_time, status, log_id, generated_from_version, snapshot,
                        created_at, updated_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb, $13, $14)
                    ON CONFLICT (patient_id, date, item_id, window_id) DO NOTHING
                    RETURNING id
                    """,
                    instance.id,
                    instance.plan_id,
                    instance.item_id,
                    instance.window_id,
                    instance.window_label.value,
                    patient_id,
                    day,
                    instance.scheduled_time,
                    instance.status.value,
                    instance.log_id,
                    instance.generated_from_version,
                    json.dumps(instance.snapshot.model_dump(mode="json")),
                    instance.created_at,
                    instance.updated_at,
                )
                if new_row_id is not None:
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
        row = await self._pool.fetchrow(
            """
            UPDATE daily_instances
            SET status = $4,
                log_id = COALESCE($5, log_id),
                updated_at = now()
            WHERE patient_id = $1 AND date = $2 AND id = $3
              AND ($6::text IS NULL OR status = $6::text)
            RETURNING *
            """,
            patient_id,
            day,
            instance_id,
            status.value,
            log_id,
            expected.value if expected is not None else None,
        )
        return _instance_from_row(row) if row is not None else None

    async def remove_stale_instances(
        self, patient_id: str, day: date, valid_item_ids: set[str]
    ) -> int:
        rows = await self._pool.fetch(
            """
            DELETE FROM daily_instances
            WHERE patient_id = $1 AND date = $2 AND NOT (item_id = ANY($3::text[]))
            RETURNING id
            """,
            patient_id,
            day,
            sorted(valid_item_ids),
        )
        return len(rows)


class PostgresOverrideStore(OverrideStore):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def list_overrides(self, patient_id: str, day: date) -> list[Override]:
        rows = await self._pool.fetch(
            """
            SELECT item_id, window_id, snooze_until_min FROM schedule_overrides
            WHERE patient_id = $1 AND date = $2
            """,
            patient_id,
            day,
        )
        return [Override.model_validate(dict(r)) for r in rows]

    async def set_snooze(
        self,
        patient_id: str,
        day: date,
        item_id: str,
        window_id: str,
        until_min: int | None,
    ) -> None:
        if until_min is None:
            await self._pool.execute(
                """
                DELETE FROM schedule_overrides
                WHERE patient_id = $1 AND date = $2 AND item_id = $3 AND window_id = $4
                """,
                patient_id,
                day,
                item_id,
                window_id,
            )
            return
        await self._pool.execute(
            """
            INSERT INTO schedule_overrides (patient_id, date, item_id, window_id, snooze_until_min)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (patient_id, date, item_id, window_id) DO UPDATE
                SET snooze_until_min = EXCLUDED.snooze_until_min,
                    updated_at = now()
            """,
            patient_id,
            day,
            item_id,
            window_id,
            until_min,
        )


class PostgresEventSource(EventSource):
    """Appointments stored in the ``appointments`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def list_events_on_date(self, patient_id: str, day: date) -> list[Event]:
        rows = await self._pool.fetch(
            """
            SELECT id, date, time, title, provider, specialty, location,
                   duration_min, completed, cancelled
            FROM appointments
            WHERE patient_id = $1 AND date = $2
            ORDER BY time NULLS LAST, id
            """,
            patient_id,
            day,
        )
        return [Event.model_validate(dict(r)) for r in rows]

    async def add_event(self, patient_id: str, event: Event) -> Event:
        await self._pool.execute(
            """
            INSERT INTO appointments (
                id, patient_id, date, time, title, provider, specialty, location,
                duration_min, completed, cancelled
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            """,
            event.id,
            patient_id,
            event.date,
            event.time,
            event.title,
            event.provider,
            event.specialty,
            event.location,
            event.duration_min,
            event.completed,
            event.cancelled,
        )
        return event


class StateConfigSource(ConfigSource):
    """Care configuration kept as JSONB under ``regimen::config::{patient_id}``."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get_config(self, patient_id: str) -> CareConfig | None:
        raw = await state_get(self._pool, config_key(patient_id))
        if raw is None:
            return None
        if not isinstance(raw, dict):
            raise ReconciliationError(
                f"Care config for patient {patient_id!r} is not an object: {type(raw).__name__}"
            )
        try:
            return CareConfig.model_validate({**raw, "patient_id": patient_id})
        except ValidationError as exc:
            raise ReconciliationError(
                f"Invalid care config for patient {patient_id!r}: {exc}"
            ) from exc

    async def save_config(self, config: CareConfig) -> int:
        return await state_set(
            self._pool, config_key(config.patient_id), config.model_dump(mode="json")
        )


class StateMarkerStore(MarkerStore):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def has_marker(self, name: str, patient_id: str) -> bool:
        return await state_get(self._pool, marker_key(name, patient_id)) is not None

    async def set_marker(self, name: str, patient_id: str) -> None:
        await state_set_if_absent(
            self._pool,
            marker_key(name, patient_id),
            {"set_at": datetime.now(UTC).isoformat()},
        )


def postgres_stores(
    pool: asyncpg.Pool, rescheduler: NotificationRescheduler | None = None
) -> RegimenStores:
    """Wire every store to *pool*."""
    return RegimenStores(
        catalog=PostgresCatalogStore(pool),
        instances=PostgresInstanceStore(pool),
        overrides=PostgresOverrideStore(pool),
        events=PostgresEventSource(pool),
        config=StateConfigSource(pool),
        markers=StateMarkerStore(pool),
        rescheduler=rescheduler or NullRescheduler(),
    )
