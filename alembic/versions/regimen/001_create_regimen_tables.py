"""create_regimen_tables

Revision ID: regimen_001
Revises:
Create Date: 2026-01-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "regimen_001"
down_revision = None
branch_labels = ("regimen",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS state (
            key TEXT PRIMARY KEY,
            value JSONB NOT NULL DEFAULT '{}'::jsonb,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            version INTEGER NOT NULL DEFAULT 1
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS plans (
            id TEXT PRIMARY KEY,
            patient_id TEXT NOT NULL,
            timezone TEXT NOT NULL DEFAULT 'UTC',
            start_date DATE,
            end_date DATE,
            status TEXT NOT NULL DEFAULT 'active'
                CHECK (status IN ('active', 'paused', 'archived')),
            version INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS plan_items (
            id TEXT PRIMARY KEY,
            plan_id TEXT NOT NULL REFERENCES plans(id) ON DELETE CASCADE,
            type TEXT NOT NULL,
            name TEXT NOT NULL,
            instructions TEXT,
            priority TEXT NOT NULL DEFAULT 'recommended',
            active BOOLEAN NOT NULL DEFAULT true,
            schedule JSONB NOT NULL,
            medication_details JSONB,
            emoji TEXT,
            external_id TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    # No FK on item_id: rows orphaned by catalog deletes are purged by the reaper.
    op.execute("""
        CREATE TABLE IF NOT EXISTS daily_instances (
            id TEXT PRIMARY KEY,
            plan_id TEXT NOT NULL,
            item_id TEXT NOT NULL,
            window_id TEXT NOT NULL,
            window_label TEXT NOT NULL,
            patient_id TEXT NOT NULL,
            date DATE NOT NULL,
            scheduled_time TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'completed', 'skipped', 'missed')),
            log_id TEXT,
            generated_from_version INTEGER,
            snapshot JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (patient_id, date, item_id, window_id)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS schedule_overrides (
            patient_id TEXT NOT NULL,
            date DATE NOT NULL,
            item_id TEXT NOT NULL,
            window_id TEXT NOT NULL,
            snooze_until_min INTEGER,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (patient_id, date, item_id, window_id)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS appointments (
            id TEXT PRIMARY KEY,
            patient_id TEXT NOT NULL,
            date DATE NOT NULL,
            time TEXT,
            title TEXT NOT NULL,
            provider TEXT,
            specialty TEXT,
            location TEXT,
            duration_min INTEGER NOT NULL DEFAULT 60,
            completed BOOLEAN NOT NULL DEFAULT false,
            cancelled BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    # Indexes
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_plans_patient_status
            ON plans (patient_id, status)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_plan_items_plan_id
            ON plan_items (plan_id)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_appointments_patient_date
            ON appointments (patient_id, date)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS appointments")
    op.execute("DROP TABLE IF EXISTS schedule_overrides")
    op.execute("DROP TABLE IF EXISTS daily_instances")
    op.execute("DROP TABLE IF EXISTS plan_items")
    op.execute("DROP TABLE IF EXISTS plans")
    op.execute("DROP TABLE IF EXISTS state")
