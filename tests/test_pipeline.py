"""Tests for regimen.pipeline: staged ensure_schedule under per-key locks."""

from __future__ import annotations

import asyncio
from datetime import date

import pytest
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from regimen.config import RegimenSettings
from regimen.core.logging import get_patient_context
from regimen.errors import InvalidTransitionError, PersistenceError
from regimen.models import (
    CareConfig,
    ConfiguredMedication,
    DailyInstance,
    Event,
    InstanceStatus,
    MedsBucketSettings,
    ScheduleStatus,
)
from regimen.pipeline import RegimenEngine, Stage, StageFailureMode
from regimen.testing import InMemoryInstanceStore
from tests.conftest import DAY, PATIENT, TUESDAY, add_items, at, make_item, span

pytestmark = pytest.mark.unit


def _reset_otel_global_state():
    trace._TRACER_PROVIDER_SET_ONCE = trace.Once()
    trace._TRACER_PROVIDER = None


@pytest.fixture(autouse=True)
def otel_exporter():
    """In-memory TracerProvider for every test."""
    _reset_otel_global_state()
    exporter = InMemorySpanExporter()
    provider = TracerProvider(resource=Resource.create({"service.name": "regimen-test"}))
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    yield exporter
    provider.shutdown()
    _reset_otel_global_state()


class SlowInstanceStore(InMemoryInstanceStore):
    """Yields inside reads so overlapping pipelines would interleave."""

    def __init__(self) -> None:
        super().__init__()
        self.active_reads = 0
        self.peak_reads = 0

    async def list_instances(self, patient_id: str, day: date) -> list[DailyInstance]:
        self.active_reads += 1
        self.peak_reads = max(self.peak_reads, self.active_reads)
        try:
            await asyncio.sleep(0.005)
            return await super().list_instances(patient_id, day)
        finally:
            self.active_reads -= 1


def test_stage_is_a_plain_record():
    stage = Stage("reap", StageFailureMode.BEST_EFFORT)
    assert stage.name == "reap"
    assert stage.failure_mode == StageFailureMode.BEST_EFFORT


async def test_ensure_schedule_end_to_end(stores, plan):
    await add_items(stores, make_item(plan.id, "Morning meds", windows=[span("09:30", "10:30")]))
    stores.events.add(PATIENT, Event(date=DAY, time="10:00", title="Dentist"))
    engine = RegimenEngine(stores)

    result = await engine.ensure_schedule(PATIENT, DAY, now=at(9, 45))

    assert [e.title for e in result.entries] == ["Morning meds", "Dentist"]
    assert all(e.status == ScheduleStatus.available_now for e in result.entries)
    assert result.stats.has_conflicts
    assert result.warnings == []


async def test_events_from_other_days_are_ignored(stores, plan):
    stores.events.add(PATIENT, Event(date=TUESDAY, time="10:00", title="Old"))
    engine = RegimenEngine(stores)

    result = await engine.ensure_schedule(PATIENT, DAY, now=at(9))

    assert result.entries == []


async def test_reconciled_catalog_is_generated_in_same_call(stores):
    stores.config.set(
        CareConfig(
            patient_id=PATIENT,
            meds=MedsBucketSettings(
                enabled=True, medications=[ConfiguredMedication(id="m1", name="Aspirin")]
            ),
        )
    )
    engine = RegimenEngine(stores)

    result = await engine.ensure_schedule(PATIENT, DAY, now=at(7))

    titles = {e.title for e in result.entries}
    assert "Aspirin" in titles
    assert "Morning wellness check" in titles


async def test_reconcile_failure_is_best_effort(stores, plan, caplog):
    await add_items(stores, make_item(plan.id))
    stores.config.fail_with = RuntimeError("config service down")
    engine = RegimenEngine(stores)

    result = await engine.ensure_schedule(PATIENT, DAY, now=at(7))

    assert result.warnings == ["reconcile"]
    assert len(result.entries) == 1
    assert "Stage reconcile failed" in caplog.text


async def test_reap_failure_is_best_effort(stores, plan, monkeypatch):
    await add_items(stores, make_item(plan.id))

    async def _boom(*args, **kwargs):
        raise RuntimeError("delete failed")

    monkeypatch.setattr(stores.instances, "remove_stale_instances", _boom)
    engine = RegimenEngine(stores)

    result = await engine.ensure_schedule(PATIENT, DAY, now=at(7))

    assert result.warnings == ["reap"]
    assert len(result.entries) == 1


async def test_generation_failure_is_fatal(stores, plan):
    await add_items(stores, make_item(plan.id))
    stores.instances.fail_with = ConnectionError("db down")
    engine = RegimenEngine(stores)

    with pytest.raises(PersistenceError) as exc_info:
        await engine.ensure_schedule(PATIENT, DAY, now=at(7))
    assert isinstance(exc_info.value.__cause__, ConnectionError)


async def test_reaped_instances_drop_out_of_the_schedule(stores, plan):
    keep = make_item(plan.id, "Aspirin")
    gone = make_item(plan.id, "Statin")
    await add_items(stores, keep, gone)
    engine = RegimenEngine(stores)
    await engine.ensure_schedule(PATIENT, DAY, now=at(7))

    await stores.catalog.delete_item(plan.id, gone.id)
    result = await engine.ensure_schedule(PATIENT, DAY, now=at(7))

    assert [e.title for e in result.entries] == ["Aspirin"]


async def test_concurrent_calls_for_one_key_are_serialised(stores, plan):
    stores.instances = SlowInstanceStore()
    await add_items(
        stores, make_item(plan.id, "Aspirin"), make_item(plan.id, "Statin")
    )
    engine = RegimenEngine(stores)

    results = await asyncio.gather(
        *(engine.ensure_schedule(PATIENT, DAY, now=at(7)) for _ in range(5))
    )

    assert stores.instances.peak_reads == 1
    assert len(stores.instances.rows[(PATIENT, DAY)]) == 2
    ids = {tuple(sorted(e.instance_id for e in r.entries)) for r in results}
    assert len(ids) == 1


async def test_grace_period_comes_from_settings(stores, plan):
    await add_items(stores, make_item(plan.id, windows=[span("15:00", "17:00")]))
    engine = RegimenEngine(stores, RegimenSettings(grace_period_minutes=0))

    [instance] = await engine.ensure_instances(PATIENT, DAY, now=at(17, 1))

    assert instance.status == InstanceStatus.missed


async def test_complete_instance(stores, plan):
    await add_items(stores, make_item(plan.id))
    engine = RegimenEngine(stores)
    [instance] = await engine.ensure_instances(PATIENT, DAY, now=at(8))

    updated = await engine.complete_instance(PATIENT, DAY, instance.id, "taken")
    assert updated.status == InstanceStatus.completed

    with pytest.raises(InvalidTransitionError):
        await engine.complete_instance(PATIENT, DAY, instance.id, "skipped")


async def test_patient_context_is_reset(stores):
    engine = RegimenEngine(stores)
    await engine.ensure_schedule(PATIENT, DAY, now=at(7))
    assert get_patient_context() is None


async def test_ensure_schedule_span(stores, plan, otel_exporter):
    await add_items(stores, make_item(plan.id))
    stores.config.fail_with = RuntimeError("config service down")
    engine = RegimenEngine(stores)

    await engine.ensure_schedule(PATIENT, DAY, now=at(7))

    spans = {s.name: s for s in otel_exporter.get_finished_spans()}
    root = spans["regimen.ensure_schedule"]
    assert root.attributes["regimen.patient_id"] == PATIENT
    assert root.attributes["regimen.date"] == "2026-03-04"
    assert root.attributes["regimen.instance_count"] == 1
    assert tuple(root.attributes["regimen.warnings"]) == ("reconcile",)
    reconcile = spans["regimen.stage.reconcile"]
    assert reconcile.parent.span_id == root.context.span_id
    assert reconcile.status.status_code == trace.StatusCode.ERROR
