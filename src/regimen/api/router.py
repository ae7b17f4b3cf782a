"""Regimen schedule endpoints.

Serves the composed daily schedule for a patient and accepts completion
events for individual daily instances.
"""

from __future__ import annotations

import logging
from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query

from regimen.api.models import CompleteInstanceRequest
from regimen.models import DailyInstance, ScheduleResult
from regimen.pipeline import RegimenEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/regimen", tags=["regimen"])


def _get_engine() -> RegimenEngine:
    """Dependency stub; overridden at app startup or in tests."""
    raise RuntimeError("RegimenEngine not initialized")


def _resolve_day(engine: RegimenEngine, day: date | None) -> date:
    if day is not None:
        return day
    return datetime.now(engine.settings.tzinfo).date()


# ---------------------------------------------------------------------------
# GET /patients/{patient_id}/schedule
# ---------------------------------------------------------------------------


@router.get("/patients/{patient_id}/schedule", response_model=ScheduleResult)
async def get_schedule(
    patient_id: str,
    day: date | None = Query(None, alias="date", description="Day to compose (default today)"),
    engine: RegimenEngine = Depends(_get_engine),
) -> ScheduleResult:
    """Ensure instances exist for the day and return the composed schedule."""
    return await engine.ensure_schedule(patient_id, _resolve_day(engine, day))


# ---------------------------------------------------------------------------
# POST /patients/{patient_id}/instances/{instance_id}/complete
# ---------------------------------------------------------------------------


@router.post(
    "/patients/{patient_id}/instances/{instance_id}/complete",
    response_model=DailyInstance,
)
async def complete_instance(
    patient_id: str,
    instance_id: str,
    body: CompleteInstanceRequest,
    day: date | None = Query(None, alias="date", description="Day of the instance (default today)"),
    engine: RegimenEngine = Depends(_get_engine),
) -> DailyInstance:
    """Mark a daily instance taken, completed or skipped."""
    updated = await engine.complete_instance(
        patient_id,
        _resolve_day(engine, day),
        instance_id,
        body.outcome,
        log_id=body.log_id,
    )
    if updated is None:
        raise HTTPException(status_code=404, detail=f"Instance not found: {instance_id}")
    return updated
