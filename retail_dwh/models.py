"""
Record types shared by the load engine and its warehouse stores.

Staged rows are ephemeral inputs; dimension, fact, inventory and audit
records mirror the warehouse tables.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

# Literal status values written to the audit table
STATUS_RUNNING = 'Running'
STATUS_SUCCESS = 'Success'
STATUS_FAILURE = 'Failure'


@dataclass
class StagedRecord:
    """One staged source row for a dimension entity (product or customer)."""
    natural_key: Any
    attributes: Dict[str, Any]
    source_updated_at: Optional[datetime] = None
    source_file: Optional[str] = None
    loaded_at: Optional[datetime] = None


@dataclass
class StagedSale:
    """One staged sales transaction row."""
    sale_id: Any
    product_id: Any
    customer_id: Any
    quantity: int
    unit_price: int
    total_amount: int
    sale_date: date
    source_file: Optional[str] = None
    loaded_at: Optional[datetime] = None


@dataclass
class DimensionRecord:
    """
    One version of a dimension member.

    At most one version per natural key is active. Expired versions are
    history and are never modified again.
    """
    natural_key: Any
    attributes: Dict[str, Any]
    is_active: bool
    start_date: datetime
    last_updated: datetime
    end_date: Optional[datetime] = None
    derived_metric: Optional[int] = None
    surrogate_key: Optional[int] = None


@dataclass
class FactRecord:
    """One sales transaction in the fact table."""
    sale_id: Any
    product_id: Any
    customer_id: Any
    quantity: int
    unit_price: int
    total_amount: int
    sale_date: date
    loaded_at: datetime
    sale_key: Optional[int] = None


@dataclass(frozen=True)
class InventorySnapshot:
    """Beginning and ending on-hand quantity of one product on one day."""
    product_id: Any
    inventory_date: date
    boh: int
    eoh: int


@dataclass
class AuditRecord:
    """One load run as recorded in the audit table."""
    job_name: str
    run_start: datetime
    status: str = STATUS_RUNNING
    run_end: Optional[datetime] = None
    error_message: Optional[str] = None
    audit_id: Optional[int] = None


@dataclass(frozen=True)
class RunHandle:
    """Reference to a run started with AuditTracker.begin_run()."""
    audit_id: int
    job_name: str
    run_start: datetime


@dataclass
class ReconciliationResult:
    """Outcome of one SCD Type 2 reconciliation call."""
    entity_type: str
    expired: List[DimensionRecord] = field(default_factory=list)
    inserted: List[DimensionRecord] = field(default_factory=list)
    unchanged: List[DimensionRecord] = field(default_factory=list)
    new_keys: List[Any] = field(default_factory=list)
    changed_keys: List[Any] = field(default_factory=list)
    removed_keys: List[Any] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.expired or self.inserted)

    def summary(self) -> str:
        return (
            f"{self.entity_type}: new={len(self.new_keys)}, changed={len(self.changed_keys)}, "
            f"removed={len(self.removed_keys)}, unchanged={len(self.unchanged)}"
        )
