"""Stale-instance reaper.

Deletes the instances of a day whose originating item no longer exists in
the catalog. Deactivated items still exist, so their instances (completed
ones included) are kept.
"""

from __future__ import annotations

import logging
from datetime import date

from regimen.stores.base import RegimenStores

logger = logging.getLogger(__name__)


async def reap_stale_instances(stores: RegimenStores, patient_id: str, day: date) -> int:
    """Remove orphaned instances for ``(patient_id, day)``. Returns the count removed."""
    plan = await stores.catalog.get_active_plan(patient_id)
    if plan is None:
        return 0

    items = await stores.catalog.list_items(plan.id, active_only=False)
    valid_item_ids = {item.id for item in items}
    removed = await stores.instances.remove_stale_instances(patient_id, day, valid_item_ids)
    if removed:
        logger.info(
            "Removed %d stale instance(s) for patient %s on %s", removed, patient_id, day
        )
    return removed
