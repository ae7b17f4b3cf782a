"""Key-value state store backed by PostgreSQL JSONB.

Provides async CRUD operations on the ``state`` table. The regimen engine
keeps two kinds of entries here:

- ``regimen::config::{patient_id}``: the external care configuration snapshot
- ``regimen::marker::{name}::{patient_id}``: persisted one-time markers
"""

from __future__ import annotations

import json
import logging
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)

CONFIG_KEY_PREFIX = "regimen::config::"
MARKER_KEY_PREFIX = "regimen::marker::"


def config_key(patient_id: str) -> str:
    return f"{CONFIG_KEY_PREFIX}{patient_id}"


def marker_key(name: str, patient_id: str) -> str:
    return f"{MARKER_KEY_PREFIX}{name}::{patient_id}"


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value, handling potential double-encoding.

    asyncpg returns JSONB columns as Python strings when no custom codec is
    registered. If the stored JSONB was double-encoded (a JSON string
    containing JSON text), a second pass is needed.
    """
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        logger.warning("Double-encoded JSONB detected, applying second decode pass")
        try:
            val = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            pass
    return val


async def state_get(pool: asyncpg.Pool, key: str) -> Any | None:
    """Return the JSONB value for *key*, or ``None`` if the key does not exist."""
    row = await pool.fetchval("SELECT value FROM state WHERE key = $1", key)
    if row is None:
        return None
    return decode_jsonb(row)


async def state_set(pool: asyncpg.Pool, key: str, value: Any) -> int:
    """Upsert *key* with *value* (any JSON-serialisable type).

    Returns:
        The new version number for the row after the upsert.
    """
    json_value = json.dumps(value)
    new_version: int = await pool.fetchval(
        """
        INSERT INTO state (key, value, updated_at, version)
        VALUES ($1, $2::jsonb, now(), 1)
        ON CONFLICT (key) DO UPDATE
            SET value = EXCLUDED.value,
                updated_at = now(),
                version = state.version + 1
        RETURNING version
        """,
        key,
        json_value,
    )
    return new_version


async def state_set_if_absent(pool: asyncpg.Pool, key: str, value: Any) -> bool:
    """Insert *key* only when it does not exist yet.

    Returns:
        True if this call created the key, False if it was already present.
    """
    json_value = json.dumps(value)
    inserted = await pool.fetchval(
        """
        INSERT INTO state (key, value, updated_at, version)
        VALUES ($1, $2::jsonb, now(), 1)
        ON CONFLICT (key) DO NOTHING
        RETURNING version
        """,
        key,
        json_value,
    )
    return inserted is not None
