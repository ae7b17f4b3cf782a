"""Storage interfaces and their Postgres implementations."""

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

__all__ = [
    "CatalogStore",
    "ConfigSource",
    "EventSource",
    "InstanceStore",
    "MarkerStore",
    "NotificationRescheduler",
    "NullRescheduler",
    "OverrideStore",
    "RegimenStores",
]
