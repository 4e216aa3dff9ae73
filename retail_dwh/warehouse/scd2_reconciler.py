"""
SCD Type 2 reconciler for warehouse dimensions.

Merges a full staging snapshot of one entity (product, customer) into its
dimension table:
- unchanged members are left alone
- changed members have their active version expired and a new version inserted
- new members get their first active version
- members missing from the snapshot are expired (logical delete)

Classification happens in memory; expirations and insertions are then applied
in one store transaction, so no natural key is ever left without its active
version after a failure.
"""

import os
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from retail_dwh.exceptions import ConsistencyError, ValidationError
from retail_dwh.models import DimensionRecord, ReconciliationResult, StagedRecord
from retail_dwh.utils.clock import utc_now
from retail_dwh.utils.logging_config import setup_logging
from retail_dwh.warehouse.entities import EntityDescriptor, get_descriptor
from retail_dwh.warehouse.store import WarehouseStore

logger = setup_logging(__name__, log_level=os.getenv('LOG_LEVEL', 'INFO'))


def _is_blank_key(natural_key: Any) -> bool:
    if natural_key is None:
        return True
    return isinstance(natural_key, str) and not natural_key.strip()


class DimensionReconciler:
    """
    Implements SCD Type 2 reconciliation for any entity descriptor.

    Args:
        store: Warehouse store holding the dimension tables
        clock: Source of "now" for end dates and new versions without a source timestamp
        duplicate_policy: 'latest' keeps the newest staged row per natural key,
            'reject' raises ValidationError on duplicates
    """

    def __init__(
        self,
        store: WarehouseStore,
        clock: Callable[[], datetime] = utc_now,
        duplicate_policy: str = 'latest'
    ):
        if duplicate_policy not in ('latest', 'reject'):
            raise ValueError(f"Unknown duplicate policy: {duplicate_policy!r}")
        self.store = store
        self.clock = clock
        self.duplicate_policy = duplicate_policy

    def reconcile(
        self,
        entity_type: Union[str, EntityDescriptor],
        incoming: Iterable[StagedRecord],
        current_active: Optional[Sequence[DimensionRecord]] = None
    ) -> ReconciliationResult:
        """
        Reconcile a staging snapshot against the active dimension versions.

        Args:
            entity_type: 'product', 'customer' or an EntityDescriptor
            incoming: Full staging snapshot for the entity
            current_active: Active versions; read from the store when omitted

        Returns:
            ReconciliationResult with expired, inserted and unchanged versions

        Raises:
            ValidationError: blank natural key, missing tracked attribute or rejected duplicate
            ConsistencyError: more than one active version for a natural key
        """
        descriptor = get_descriptor(entity_type)
        incoming = list(incoming)

        self._validate(descriptor, incoming)
        staged_by_key = self._deduplicate(descriptor, incoming)

        with self.store.transaction():
            if current_active is None:
                current_active = self.store.fetch_active_dimensions(descriptor)
            active_by_key = self._index_active(descriptor, current_active)

            now = self.clock()
            result, to_insert = self._classify(descriptor, staged_by_key, active_by_key, now)

            if result.expired:
                expired_count = self.store.expire_dimension_records(
                    descriptor, [r.surrogate_key for r in result.expired], now
                )
                if expired_count != len(result.expired):
                    raise ConsistencyError(
                        f"Expected to expire {len(result.expired)} active {descriptor.name} versions, "
                        f"store expired {expired_count}"
                    )
            if to_insert:
                result.inserted = self.store.insert_dimension_records(descriptor, to_insert)

        logger.info(f"SCD Type 2 reconciliation completed for {result.summary()}")
        return result

    def _validate(self, descriptor: EntityDescriptor, incoming: List[StagedRecord]) -> None:
        for position, staged in enumerate(incoming):
            if _is_blank_key(staged.natural_key):
                raise ValidationError(
                    f"Staged {descriptor.name} row {position} has no {descriptor.natural_key_column}"
                )
            missing = descriptor.missing_attributes(staged.attributes or {})
            if missing:
                raise ValidationError(
                    f"Staged {descriptor.name} {staged.natural_key} is missing attributes: {', '.join(missing)}"
                )

    def _deduplicate(
        self, descriptor: EntityDescriptor, incoming: List[StagedRecord]
    ) -> Dict[Any, StagedRecord]:
        staged_by_key: Dict[Any, StagedRecord] = {}
        duplicates = set()

        for staged in incoming:
            key = staged.natural_key
            best = staged_by_key.get(key)
            if best is None:
                staged_by_key[key] = staged
                continue

            duplicates.add(key)
            if self._supersedes(staged, best):
                staged_by_key[key] = staged

        if duplicates:
            if self.duplicate_policy == 'reject':
                raise ValidationError(
                    f"Staged {descriptor.name} batch has duplicate natural keys: {sorted(map(str, duplicates))}"
                )
            logger.warning(
                f"Staged {descriptor.name} batch has {len(duplicates)} duplicate natural keys; "
                f"keeping the latest row for each"
            )

        return staged_by_key

    @staticmethod
    def _supersedes(later: StagedRecord, best: StagedRecord) -> bool:
        """
        Order duplicates by (has timestamp, timestamp, feed position).

        Timestamped rows outrank rows without one; among equals the later row wins.
        """
        if later.source_updated_at is None:
            return best.source_updated_at is None
        if best.source_updated_at is None:
            return True
        return later.source_updated_at >= best.source_updated_at

    def _index_active(
        self, descriptor: EntityDescriptor, current_active: Sequence[DimensionRecord]
    ) -> Dict[Any, DimensionRecord]:
        active_by_key: Dict[Any, DimensionRecord] = {}
        for record in current_active:
            if not record.is_active:
                continue
            if record.natural_key in active_by_key:
                raise ConsistencyError(
                    f"More than one active {descriptor.name} version for natural key {record.natural_key}"
                )
            active_by_key[record.natural_key] = record
        return active_by_key

    def _classify(
        self,
        descriptor: EntityDescriptor,
        staged_by_key: Dict[Any, StagedRecord],
        active_by_key: Dict[Any, DimensionRecord],
        now: datetime
    ) -> Tuple[ReconciliationResult, List[DimensionRecord]]:
        result = ReconciliationResult(entity_type=descriptor.name)
        to_insert: List[DimensionRecord] = []

        for key, staged in staged_by_key.items():
            current = active_by_key.get(key)

            if current is None:
                logger.debug(f"New {descriptor.name} {key}")
                result.new_keys.append(key)
                to_insert.append(self._new_version(descriptor, staged, now))
                continue

            if descriptor.attributes_equal(current.attributes, staged.attributes):
                logger.debug(f"No changes detected for {descriptor.name} {key}, skipping")
                result.unchanged.append(current)
                continue

            logger.debug(f"Attribute change for {descriptor.name} {key}, expiring version {current.surrogate_key}")
            result.changed_keys.append(key)
            result.expired.append(self._expired_copy(current, now))
            to_insert.append(self._new_version(descriptor, staged, now, derived_metric=current.derived_metric))

        for key, current in active_by_key.items():
            if key not in staged_by_key:
                logger.debug(f"{descriptor.name} {key} missing from snapshot, expiring version {current.surrogate_key}")
                result.removed_keys.append(key)
                result.expired.append(self._expired_copy(current, now))

        return result, to_insert

    @staticmethod
    def _expired_copy(record: DimensionRecord, now: datetime) -> DimensionRecord:
        return replace(record, is_active=False, end_date=now, last_updated=now)

    @staticmethod
    def _new_version(
        descriptor: EntityDescriptor,
        staged: StagedRecord,
        now: datetime,
        derived_metric: Optional[int] = None
    ) -> DimensionRecord:
        return DimensionRecord(
            natural_key=staged.natural_key,
            attributes=descriptor.project(staged.attributes),
            is_active=True,
            start_date=staged.source_updated_at or now,
            end_date=None,
            last_updated=now,
            derived_metric=derived_metric,
        )
