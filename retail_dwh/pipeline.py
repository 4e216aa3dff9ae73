#!/usr/bin/env python3
"""
Incremental warehouse load run.

One run, in order:
1. read the last successful boundary from the audit table
2. open a Running audit record
3. reconcile dim_product, then dim_customer (SCD Type 2)
4. append staged sales to fact_sales
5. roll up inventory_daily for sales after the boundary
6. refresh derived dimension metrics
7. clear staging and close the audit record as Success

Steps 3 to 7 share one store transaction. Any failure rolls all of them back,
closes the audit record as Failure with the error message and is re-raised;
later steps never run and the staged data is left for the retry.
"""

import os
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional

from retail_dwh.config import EngineSettings
from retail_dwh.exceptions import RunInterruptedError
from retail_dwh.models import STATUS_SUCCESS, AuditRecord, ReconciliationResult
from retail_dwh.utils.clock import utc_now
from retail_dwh.utils.logging_config import setup_logging
from retail_dwh.utils.signal_handler import GracefulShutdownHandler
from retail_dwh.warehouse.audit_tracker import AuditTracker
from retail_dwh.warehouse.derived_metrics import DerivedMetricsUpdater
from retail_dwh.warehouse.entities import CUSTOMER, PRODUCT
from retail_dwh.warehouse.fact_loader import FactLoader
from retail_dwh.warehouse.inventory_rollup import InventoryRollupEngine
from retail_dwh.warehouse.scd2_reconciler import DimensionReconciler
from retail_dwh.warehouse.store import WarehouseStore

logger = setup_logging(__name__, log_level=os.getenv('LOG_LEVEL', 'INFO'))


@dataclass
class RunSummary:
    """What one run did, returned to the caller and logged at the end."""
    audit: AuditRecord
    boundary: Optional[datetime]
    reconciliations: Dict[str, ReconciliationResult] = field(default_factory=dict)
    facts_loaded: int = 0
    snapshots_written: int = 0
    metrics_refreshed: Dict[str, int] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.audit.status == STATUS_SUCCESS


class IncrementalLoadPipeline:
    """
    Runs the load steps in order under one audit record.

    Args:
        store: Warehouse store
        settings: Engine settings; read from the environment when omitted
        clock: Source of "now" shared by all components
        shutdown_handler: Optional handler polled between steps
    """

    def __init__(
        self,
        store: WarehouseStore,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = utc_now,
        shutdown_handler: Optional[GracefulShutdownHandler] = None
    ):
        self.store = store
        self.settings = settings or EngineSettings.from_env()
        self.shutdown_handler = shutdown_handler

        self.audit_tracker = AuditTracker(store, clock=clock)
        self.reconciler = DimensionReconciler(
            store, clock=clock, duplicate_policy=self.settings.duplicate_policy
        )
        self.fact_loader = FactLoader(store, clock=clock)
        self.rollup_engine = InventoryRollupEngine(
            store, default_boh=self.settings.default_boh, fill_gaps=self.settings.fill_gaps
        )
        self.metrics_updater = DerivedMetricsUpdater(
            store, customer_spend_rate=self.settings.customer_spend_rate
        )

    def _check_shutdown(self, next_step: str) -> None:
        if self.shutdown_handler and self.shutdown_handler.should_shutdown:
            raise RunInterruptedError(
                f"Run interrupted by {self.shutdown_handler.received_signal} before {next_step}"
            )

    def _run_steps(self, boundary: Optional[datetime], summary: RunSummary) -> None:
        for descriptor in (PRODUCT, CUSTOMER):
            self._check_shutdown(f"{descriptor.name} reconciliation")
            staged = self.store.fetch_staged_records(descriptor)
            summary.reconciliations[descriptor.name] = self.reconciler.reconcile(descriptor, staged)

        self._check_shutdown("fact loading")
        summary.facts_loaded = self.fact_loader.load(self.store.fetch_staged_sales())

        self._check_shutdown("inventory rollup")
        snapshots = self.rollup_engine.compute_rollup(boundary)
        summary.snapshots_written = self.store.append_inventory(snapshots)

        for descriptor in (PRODUCT, CUSTOMER):
            self._check_shutdown(f"{descriptor.name} metric refresh")
            summary.metrics_refreshed[descriptor.name] = \
                self.metrics_updater.refresh_derived_metrics(descriptor)

        self.store.clear_staging()

    def run(self) -> RunSummary:
        """
        Execute one incremental load run.

        Returns:
            RunSummary with the completed Success audit record

        Raises:
            Whatever a step raised, after the audit record was closed as Failure
        """
        job_name = self.settings.job_name
        boundary = self.audit_tracker.last_successful_boundary(job_name)
        handle = self.audit_tracker.begin_run(job_name)
        logger.info(f"Starting incremental load {job_name} (boundary: {boundary})")

        summary = RunSummary(audit=self.store.fetch_audit_record(handle.audit_id), boundary=boundary)

        try:
            # The load steps and the Success audit update commit together
            with self.store.transaction():
                self._run_steps(boundary, summary)
                summary.audit = self.audit_tracker.complete_run(handle, 'success')

        except Exception as e:
            logger.error(f"Fatal error in incremental load {job_name}: {e}")
            summary.audit = self.audit_tracker.complete_run(
                handle, 'failure', f"{type(e).__name__}: {e}"
            )
            raise

        logger.info(
            f"Incremental load {job_name} completed: facts={summary.facts_loaded}, "
            f"snapshots={summary.snapshots_written}, "
            + ", ".join(result.summary() for result in summary.reconciliations.values())
        )
        return summary


def main():
    """Main entry point for one incremental load run."""
    from retail_dwh.warehouse.postgres_store import PostgresWarehouseStore

    settings = EngineSettings.from_env()
    run_logger = setup_logging(__name__, log_level=settings.log_level)
    run_logger.info("Starting warehouse load")

    shutdown_handler = GracefulShutdownHandler(__name__)
    try:
        store = PostgresWarehouseStore()
        shutdown_handler.register_cleanup(store.close)
        shutdown_handler.start_listening()

        IncrementalLoadPipeline(store, settings=settings, shutdown_handler=shutdown_handler).run()

    except Exception as e:
        run_logger.error(f"Fatal error in main: {e}")
        sys.exit(1)
    finally:
        shutdown_handler.stop_listening()
        shutdown_handler.cleanup()


if __name__ == "__main__":
    main()
