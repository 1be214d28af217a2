"""Device registry index keyed by Entra device id."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator

from .models import DeviceRecord

logger = logging.getLogger(__name__)


class DeviceRegistryIndex:
    """Read-only lookup from external (Entra device) id to device record.

    Built once per run from the full inventory and shared across all
    group iterations. Records without an external id cannot be keyed and
    are skipped. When two records share an external id the later one in
    iteration order wins.
    """

    def __init__(self, records: dict[str, DeviceRecord], skipped: int = 0, collisions: int = 0):
        self._records = records
        self.skipped = skipped
        self.collisions = collisions

    @classmethod
    def build(
        cls,
        devices: Iterable[DeviceRecord],
        log: logging.Logger | None = None,
    ) -> DeviceRegistryIndex:
        log = log or logger
        records: dict[str, DeviceRecord] = {}
        skipped = 0
        collisions = 0

        for device in devices:
            if device.external_id is None:
                skipped += 1
                continue
            if device.external_id in records:
                collisions += 1
                log.debug(
                    "Duplicate external id in inventory, keeping later record",
                    extra={
                        "external_id": device.external_id,
                        "replaced_device_id": records[device.external_id].id,
                        "device_id": device.id,
                    },
                )
            records[device.external_id] = device

        log.info(
            "Device registry built",
            extra={
                "indexed": len(records),
                "skipped_without_external_id": skipped,
                "duplicate_external_ids": collisions,
            },
        )
        return cls(records, skipped=skipped, collisions=collisions)

    def lookup(self, external_id: str | None) -> DeviceRecord | None:
        if not external_id:
            return None
        return self._records.get(external_id.lower())

    def __contains__(self, external_id: object) -> bool:
        return isinstance(external_id, str) and self.lookup(external_id) is not None

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[DeviceRecord]:
        return iter(self._records.values())
