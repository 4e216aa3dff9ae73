"""
Warehouse store interface and the in-memory implementation.

Components only talk to a WarehouseStore. Every mutating step runs inside
store.transaction(); nested transactions join the outermost one, so a step is
visible in full or not at all.
"""

import copy
import itertools
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from retail_dwh.exceptions import StoreError
from retail_dwh.models import (
    STATUS_RUNNING,
    STATUS_SUCCESS,
    AuditRecord,
    DimensionRecord,
    FactRecord,
    InventorySnapshot,
    StagedRecord,
    StagedSale,
)
from retail_dwh.warehouse.entities import ENTITIES, EntityDescriptor


class WarehouseStore(ABC):
    """Read/write access to staging, dimension, fact, inventory and audit data."""

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Commit everything written inside the block, or nothing if it raises."""

    # Staging

    @abstractmethod
    def fetch_staged_records(self, descriptor: EntityDescriptor) -> List[StagedRecord]:
        ...

    @abstractmethod
    def fetch_staged_sales(self) -> List[StagedSale]:
        ...

    @abstractmethod
    def clear_staging(self) -> None:
        ...

    # Dimensions

    @abstractmethod
    def fetch_active_dimensions(self, descriptor: EntityDescriptor) -> List[DimensionRecord]:
        ...

    @abstractmethod
    def fetch_dimension_history(
        self, descriptor: EntityDescriptor, natural_key: Any = None
    ) -> List[DimensionRecord]:
        """All versions (active and expired), ordered by surrogate key."""

    @abstractmethod
    def expire_dimension_records(
        self,
        descriptor: EntityDescriptor,
        surrogate_keys: Iterable[int],
        end_date: datetime,
    ) -> int:
        """Retire active versions; returns how many were expired."""

    @abstractmethod
    def insert_dimension_records(
        self, descriptor: EntityDescriptor, records: Iterable[DimensionRecord]
    ) -> List[DimensionRecord]:
        """Insert new versions and return them with surrogate keys assigned."""

    @abstractmethod
    def update_derived_metrics(
        self,
        descriptor: EntityDescriptor,
        metrics: Dict[int, int],
    ) -> int:
        """Write derived metric values keyed by surrogate key; active versions only."""

    # Facts

    @abstractmethod
    def append_facts(self, facts: Iterable[FactRecord]) -> List[FactRecord]:
        ...

    @abstractmethod
    def fetch_facts(self, sale_date_after: Optional[date] = None) -> List[FactRecord]:
        ...

    # Inventory

    @abstractmethod
    def fetch_inventory(self, product_ids: Optional[Iterable[Any]] = None) -> List[InventorySnapshot]:
        ...

    @abstractmethod
    def append_inventory(self, snapshots: Iterable[InventorySnapshot]) -> int:
        ...

    # Audit

    @abstractmethod
    def insert_audit_record(self, record: AuditRecord) -> AuditRecord:
        ...

    @abstractmethod
    def fetch_audit_record(self, audit_id: int) -> Optional[AuditRecord]:
        ...

    @abstractmethod
    def complete_audit_record(
        self,
        audit_id: int,
        status: str,
        run_end: datetime,
        error_message: Optional[str] = None,
    ) -> bool:
        """Close a Running record; returns False when no Running record matched."""

    @abstractmethod
    def fetch_audit_records(self, job_name: str) -> List[AuditRecord]:
        """All runs of a job, oldest first."""

    @abstractmethod
    def fetch_last_successful_run(self, job_name: str) -> Optional[AuditRecord]:
        """The Success record with the latest run_end, or None."""

    def close(self) -> None:
        """Release resources held by the store."""


class InMemoryWarehouseStore(WarehouseStore):
    """
    Process-local warehouse.

    Transactions snapshot the whole state on entry and restore it when the
    block raises. Records are copied on the way in and out, so callers can
    never mutate stored history.
    """

    def __init__(self):
        self._state = {
            'dimensions': {name: [] for name in ENTITIES},
            'staged': {name: [] for name in ENTITIES},
            'staged_sales': [],
            'facts': [],
            'inventory': {},
            'audit': [],
        }
        self._sequences = {
            'dimension': itertools.count(1),
            'fact': itertools.count(1),
            'audit': itertools.count(1),
        }
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._depth:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return

        saved = copy.deepcopy(self._state)
        self._depth = 1
        try:
            yield
        except BaseException:
            self._state = saved
            raise
        finally:
            self._depth = 0

    # Staging

    def stage_records(self, descriptor: EntityDescriptor, records: Iterable[StagedRecord]) -> None:
        """Load staged rows; stands in for the file ingestion collaborator."""
        self._dimension_bucket('staged', descriptor).extend(copy.deepcopy(list(records)))

    def stage_sales(self, sales: Iterable[StagedSale]) -> None:
        self._state['staged_sales'].extend(copy.deepcopy(list(sales)))

    def fetch_staged_records(self, descriptor: EntityDescriptor) -> List[StagedRecord]:
        return copy.deepcopy(self._dimension_bucket('staged', descriptor))

    def fetch_staged_sales(self) -> List[StagedSale]:
        return copy.deepcopy(self._state['staged_sales'])

    def clear_staging(self) -> None:
        for bucket in self._state['staged'].values():
            bucket.clear()
        self._state['staged_sales'].clear()

    # Dimensions

    def _dimension_bucket(self, kind: str, descriptor: EntityDescriptor) -> list:
        try:
            return self._state[kind][descriptor.name]
        except KeyError:
            raise StoreError(f"No {kind} storage for entity {descriptor.name!r}") from None

    def fetch_active_dimensions(self, descriptor: EntityDescriptor) -> List[DimensionRecord]:
        return [copy.deepcopy(r) for r in self._dimension_bucket('dimensions', descriptor) if r.is_active]

    def fetch_dimension_history(
        self, descriptor: EntityDescriptor, natural_key: Any = None
    ) -> List[DimensionRecord]:
        records = self._dimension_bucket('dimensions', descriptor)
        if natural_key is not None:
            records = [r for r in records if r.natural_key == natural_key]
        return copy.deepcopy(sorted(records, key=lambda r: r.surrogate_key))

    def expire_dimension_records(
        self,
        descriptor: EntityDescriptor,
        surrogate_keys: Iterable[int],
        end_date: datetime,
    ) -> int:
        wanted = set(surrogate_keys)
        expired = 0
        for record in self._dimension_bucket('dimensions', descriptor):
            if record.surrogate_key in wanted and record.is_active:
                record.is_active = False
                record.end_date = end_date
                record.last_updated = end_date
                expired += 1
        return expired

    def insert_dimension_records(
        self, descriptor: EntityDescriptor, records: Iterable[DimensionRecord]
    ) -> List[DimensionRecord]:
        bucket = self._dimension_bucket('dimensions', descriptor)
        inserted = []
        for record in records:
            stored = replace(
                copy.deepcopy(record),
                surrogate_key=next(self._sequences['dimension']),
            )
            bucket.append(stored)
            inserted.append(copy.deepcopy(stored))
        return inserted

    def update_derived_metrics(
        self,
        descriptor: EntityDescriptor,
        metrics: Dict[int, int],
    ) -> int:
        updated = 0
        for record in self._dimension_bucket('dimensions', descriptor):
            if record.is_active and record.surrogate_key in metrics:
                record.derived_metric = metrics[record.surrogate_key]
                updated += 1
        return updated

    # Facts

    def append_facts(self, facts: Iterable[FactRecord]) -> List[FactRecord]:
        appended = []
        for fact in facts:
            stored = replace(copy.deepcopy(fact), sale_key=next(self._sequences['fact']))
            self._state['facts'].append(stored)
            appended.append(copy.deepcopy(stored))
        return appended

    def fetch_facts(self, sale_date_after: Optional[date] = None) -> List[FactRecord]:
        return [
            copy.deepcopy(f) for f in self._state['facts']
            if sale_date_after is None or f.sale_date > sale_date_after
        ]

    # Inventory

    def fetch_inventory(self, product_ids: Optional[Iterable[Any]] = None) -> List[InventorySnapshot]:
        wanted = None if product_ids is None else set(product_ids)
        snapshots = [
            s for s in self._state['inventory'].values()
            if wanted is None or s.product_id in wanted
        ]
        return sorted(snapshots, key=lambda s: (s.product_id, s.inventory_date))

    def append_inventory(self, snapshots: Iterable[InventorySnapshot]) -> int:
        inventory = self._state['inventory']
        count = 0
        for snapshot in snapshots:
            key = (snapshot.product_id, snapshot.inventory_date)
            if key in inventory:
                raise StoreError(
                    f"Inventory snapshot already exists for product {snapshot.product_id} "
                    f"on {snapshot.inventory_date}"
                )
            inventory[key] = snapshot
            count += 1
        return count

    # Audit

    def insert_audit_record(self, record: AuditRecord) -> AuditRecord:
        stored = replace(copy.deepcopy(record), audit_id=next(self._sequences['audit']))
        self._state['audit'].append(stored)
        return copy.deepcopy(stored)

    def fetch_audit_record(self, audit_id: int) -> Optional[AuditRecord]:
        for record in self._state['audit']:
            if record.audit_id == audit_id:
                return copy.deepcopy(record)
        return None

    def complete_audit_record(
        self,
        audit_id: int,
        status: str,
        run_end: datetime,
        error_message: Optional[str] = None,
    ) -> bool:
        for record in self._state['audit']:
            if record.audit_id == audit_id and record.status == STATUS_RUNNING:
                record.status = status
                record.run_end = run_end
                record.error_message = error_message
                return True
        return False

    def fetch_audit_records(self, job_name: str) -> List[AuditRecord]:
        return [copy.deepcopy(r) for r in self._state['audit'] if r.job_name == job_name]

    def fetch_last_successful_run(self, job_name: str) -> Optional[AuditRecord]:
        successes = [
            r for r in self._state['audit']
            if r.job_name == job_name and r.status == STATUS_SUCCESS and r.run_end is not None
        ]
        if not successes:
            return None
        return copy.deepcopy(max(successes, key=lambda r: (r.run_end, r.audit_id)))
