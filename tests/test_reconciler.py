"""Tests for regimen.reconciler: catalog sync against the care config."""

from __future__ import annotations

import pytest

from regimen.generator import ensure_instances
from regimen.models import (
    BucketSettings,
    CareConfig,
    ConfiguredMedication,
    InstanceStatus,
    ItemType,
    MedsBucketSettings,
    WindowLabel,
)
from regimen.reconciler import (
    EVENING_WELLNESS,
    LEGACY_CLEANUP_MARKER,
    MORNING_WELLNESS,
    matches_medication,
    sync_catalog_with_config,
    wait_for_reschedules,
)
from regimen.status import record_completion
from regimen.testing import RecordingRescheduler
from tests.conftest import DAY, PATIENT, add_items, at, make_item

pytestmark = pytest.mark.unit


def _config(*meds: ConfiguredMedication, **buckets) -> CareConfig:
    return CareConfig(
        patient_id=PATIENT,
        meds=MedsBucketSettings(enabled=bool(meds), medications=list(meds)),
        **buckets,
    )


async def _items(stores, plan_id, item_type=None):
    items = await stores.catalog.list_items(plan_id, active_only=False)
    return [i for i in items if item_type is None or i.type == item_type]


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def test_stable_ids_decide_when_both_present(plan):
    item = make_item(plan.id, "Aspirin", external_id="med-1")
    assert matches_medication(item, ConfiguredMedication(id="med-1", name="Something else"))
    assert not matches_medication(item, ConfiguredMedication(id="med-2", name="Aspirin"))


def test_name_containment_is_the_fallback(plan):
    item = make_item(plan.id, "Aspirin 81mg")
    assert matches_medication(item, ConfiguredMedication(id="med-1", name="aspirin"))
    assert not matches_medication(item, ConfiguredMedication(name="Metformin"))


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


async def test_no_config_is_a_no_op(stores, plan):
    assert await sync_catalog_with_config(stores, plan.id, PATIENT) is False
    assert await _items(stores, plan.id) == []


async def test_creates_plan_when_config_enables_anything(stores):
    stores.config.set(_config(ConfiguredMedication(id="med-1", name="Aspirin")))

    changed = await sync_catalog_with_config(stores, None, PATIENT)

    plan = await stores.catalog.get_active_plan(PATIENT)
    assert changed
    assert plan is not None
    assert [i.name for i in await _items(stores, plan.id, ItemType.medication)] == ["Aspirin"]


async def test_no_plan_created_for_empty_config(stores):
    stores.config.set(_config())
    assert await sync_catalog_with_config(stores, None, PATIENT) is False
    assert await stores.catalog.get_active_plan(PATIENT) is None


async def test_medication_item_gets_one_window_per_time_of_day(stores, plan):
    med = ConfiguredMedication(
        id="med-1",
        name="Metformin",
        dosage="500 mg",
        times_of_day=[WindowLabel.morning, WindowLabel.evening],
    )
    stores.config.set(_config(med))

    await sync_catalog_with_config(stores, plan.id, PATIENT)

    [item] = await _items(stores, plan.id, ItemType.medication)
    assert [w.at for w in item.schedule.times] == ["08:00", "18:00"]
    assert item.external_id == "med-1"
    assert item.medication_details.dose == "500 mg"


async def test_sync_is_idempotent(stores, plan):
    stores.config.set(
        _config(
            ConfiguredMedication(id="med-1", name="Aspirin"),
            vitals=BucketSettings(enabled=True),
            meals=BucketSettings(
                enabled=True,
                times_of_day=[WindowLabel.morning, WindowLabel.afternoon, WindowLabel.evening],
            ),
        )
    )

    assert await sync_catalog_with_config(stores, plan.id, PATIENT) is True
    snapshot = sorted((i.name, i.active) for i in await _items(stores, plan.id))
    assert await sync_catalog_with_config(stores, plan.id, PATIENT) is False
    assert sorted((i.name, i.active) for i in await _items(stores, plan.id)) == snapshot
    assert ("Breakfast", True) in snapshot
    assert ("Check vitals", True) in snapshot


async def test_fuzzy_match_backfills_stable_id(stores, plan):
    legacy = make_item(plan.id, "Aspirin 81mg")
    await add_items(stores, legacy)
    stores.config.set(_config(ConfiguredMedication(id="med-1", name="Aspirin")))

    await sync_catalog_with_config(stores, plan.id, PATIENT)

    [item] = await _items(stores, plan.id, ItemType.medication)
    assert item.id == legacy.id
    assert item.external_id == "med-1"


async def test_removed_medication_is_deactivated_not_deleted(stores, plan):
    stores.config.set(_config(ConfiguredMedication(id="med-1", name="Aspirin")))
    await sync_catalog_with_config(stores, plan.id, PATIENT)

    stores.config.set(_config())
    changed = await sync_catalog_with_config(stores, plan.id, PATIENT)

    [item] = await _items(stores, plan.id, ItemType.medication)
    assert changed
    assert item.active is False


async def test_reenabled_medication_is_reactivated(stores, plan):
    await add_items(stores, make_item(plan.id, "Aspirin", external_id="med-1", active=False))
    stores.config.set(_config(ConfiguredMedication(id="med-1", name="Aspirin")))

    await sync_catalog_with_config(stores, plan.id, PATIENT)

    [item] = await _items(stores, plan.id, ItemType.medication)
    assert item.active is True


async def test_deactivation_never_touches_completed_instances(stores, plan):
    stores.config.set(_config(ConfiguredMedication(id="med-1", name="Aspirin")))
    await sync_catalog_with_config(stores, plan.id, PATIENT)
    instances = await ensure_instances(stores, PATIENT, DAY, now=at(8))
    [med_instance] = [i for i in instances if i.snapshot.item_type == ItemType.medication]
    await record_completion(stores, PATIENT, DAY, med_instance.id, "taken")

    stores.config.set(_config())
    await sync_catalog_with_config(stores, plan.id, PATIENT)
    after = await ensure_instances(stores, PATIENT, DAY, now=at(9))

    [kept] = [i for i in after if i.id == med_instance.id]
    assert kept.status == InstanceStatus.completed


async def test_wellness_pair_created_once(stores, plan):
    stores.config.set(_config())

    await sync_catalog_with_config(stores, plan.id, PATIENT)
    await sync_catalog_with_config(stores, plan.id, PATIENT)

    wellness = await _items(stores, plan.id, ItemType.wellness)
    assert sorted(i.name for i in wellness) == [EVENING_WELLNESS, MORNING_WELLNESS]
    assert {i.schedule.times[0].at for i in wellness} == {"08:00", "20:00"}


async def test_legacy_wellness_items_renamed_in_place(stores, plan):
    legacy = make_item(plan.id, "Daily check-in", item_type=ItemType.wellness)
    await add_items(stores, legacy)
    stores.config.set(_config())

    await sync_catalog_with_config(stores, plan.id, PATIENT)

    wellness = await _items(stores, plan.id, ItemType.wellness)
    assert [(i.id, i.name) for i in wellness] == [(legacy.id, MORNING_WELLNESS)]
    assert await stores.markers.has_marker(LEGACY_CLEANUP_MARKER, PATIENT)


async def test_legacy_cleanup_runs_once(stores, plan):
    await stores.markers.set_marker(LEGACY_CLEANUP_MARKER, PATIENT)
    await add_items(stores, make_item(plan.id, "Wellness check", item_type=ItemType.wellness))
    stores.config.set(_config())

    await sync_catalog_with_config(stores, plan.id, PATIENT)

    names = [i.name for i in await _items(stores, plan.id, ItemType.wellness)]
    assert names == ["Wellness check"]


async def test_mood_items_are_deactivated(stores, plan):
    await add_items(stores, make_item(plan.id, "Mood", item_type=ItemType.mood))
    stores.config.set(_config(mood=BucketSettings(enabled=True)))

    await sync_catalog_with_config(stores, plan.id, PATIENT)

    [mood] = await _items(stores, plan.id, ItemType.mood)
    assert mood.active is False


async def test_disabled_bucket_deactivates_its_items(stores, plan):
    stores.config.set(_config(vitals=BucketSettings(enabled=True)))
    await sync_catalog_with_config(stores, plan.id, PATIENT)

    stores.config.set(_config(vitals=BucketSettings(enabled=False)))
    await sync_catalog_with_config(stores, plan.id, PATIENT)

    [vitals] = await _items(stores, plan.id, ItemType.vitals)
    assert vitals.active is False


async def test_change_triggers_reschedule(stores, plan):
    stores.config.set(_config(ConfiguredMedication(id="med-1", name="Aspirin")))

    await sync_catalog_with_config(stores, plan.id, PATIENT)
    await wait_for_reschedules()

    assert stores.rescheduler.calls == [PATIENT]


async def test_reschedule_failure_is_swallowed(stores, plan):
    stores.rescheduler = RecordingRescheduler(fail_with=RuntimeError("push down"))
    stores.config.set(_config(ConfiguredMedication(id="med-1", name="Aspirin")))

    assert await sync_catalog_with_config(stores, plan.id, PATIENT) is True
    await wait_for_reschedules()

    assert stores.rescheduler.calls == [PATIENT]
