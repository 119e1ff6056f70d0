"""
nodeforge/deployment/reconcile.py

Removes registry devices that no longer belong to a server of the topology.

Runs once per pass, after rollout or teardown. A failed deletion is recorded
and the rest of the batch continues; a stale registry entry is untidy but does
not affect the running cluster.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AbstractSet, Optional

from nodeforge.errors import RegistryError
from nodeforge.models.registry import DeletionFailure, ReconcileReport, RegistryDevice
from nodeforge.registry.base import DeviceFilter, DeviceRegistry

logger = logging.getLogger(__name__)


async def reconcile_registry(
    registry: DeviceRegistry,
    expected_hostnames: AbstractSet[str],
    tag_filter: DeviceFilter,
) -> ReconcileReport:
    """
    Delete every device matching `tag_filter` whose hostname is not expected.

    Args:
        registry: Device registry to reconcile.
        expected_hostnames: Hostnames that should exist after this pass.
        tag_filter: Limits the diff to devices this cluster owns.

    Returns:
        ReconcileReport: deleted/kept hostnames and per-device failures.

    Raises:
        RegistryError: If the registry cannot be listed.
    """
    devices = await registry.list_devices(tag_filter)
    orphans = [d for d in devices if d.hostname not in expected_hostnames]
    report = ReconcileReport(
        kept=sorted(d.hostname for d in devices if d.hostname in expected_hostnames)
    )

    async def _delete(device: RegistryDevice) -> Optional[DeletionFailure]:
        try:
            await registry.delete_device(device.id)
        except RegistryError as exc:
            return DeletionFailure(
                hostname=device.hostname, device_id=device.id, error=str(exc)
            )
        return None

    results = await asyncio.gather(*(_delete(d) for d in orphans))
    for device, failure in zip(orphans, results):
        if failure is None:
            report.deleted.append(device.hostname)
        else:
            report.failures.append(failure)

    if report.deleted:
        logger.info("Deleted registry devices:\n%s", "\n".join(report.deleted))
    if report.failures:
        logger.warning(
            "Failed to delete registry devices:\n%s",
            "\n".join(f"{f.hostname}: {f.error}" for f in report.failures),
        )
    return report
