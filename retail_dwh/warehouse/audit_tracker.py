"""
Run audit bookkeeping for the warehouse load.

Every run writes one etl_audit row. The "last successful boundary" that gates
incremental processing is derived from these rows on every call and is never
kept anywhere else.
"""

import os
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from retail_dwh.exceptions import InvalidStateError
from retail_dwh.models import (
    STATUS_FAILURE,
    STATUS_RUNNING,
    STATUS_SUCCESS,
    AuditRecord,
    RunHandle,
)
from retail_dwh.utils.clock import utc_now
from retail_dwh.utils.logging_config import setup_logging
from retail_dwh.warehouse.store import WarehouseStore

logger = setup_logging(__name__, log_level=os.getenv('LOG_LEVEL', 'INFO'))

_COMPLETION_STATUSES = {
    'success': STATUS_SUCCESS,
    'failure': STATUS_FAILURE,
}


class AuditTracker:
    """
    Records run metadata and answers boundary queries.

    Tracks per run:
    - Job (package) name
    - Start and end time
    - Status: Running, Success or Failure
    - Error message for failed runs
    """

    def __init__(self, store: WarehouseStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def begin_run(self, job_name: str) -> RunHandle:
        """
        Start a run and persist its Running audit record immediately.

        Args:
            job_name: Name of the load job

        Returns:
            Handle used to complete the run
        """
        if not job_name:
            raise ValueError("job_name must not be empty")

        with self.store.transaction():
            record = self.store.insert_audit_record(
                AuditRecord(job_name=job_name, run_start=self.clock(), status=STATUS_RUNNING)
            )

        logger.info(f"Started run: {job_name} (audit ID: {record.audit_id})")
        return RunHandle(audit_id=record.audit_id, job_name=job_name, run_start=record.run_start)

    def complete_run(
        self,
        handle: RunHandle,
        status: str,
        error_message: Optional[str] = None
    ) -> AuditRecord:
        """
        Close a Running audit record.

        Args:
            handle: Handle returned by begin_run()
            status: 'success' or 'failure' (case-insensitive)
            error_message: Human-readable reason for a failure

        Returns:
            The completed audit record

        Raises:
            InvalidStateError: the record is unknown or no longer Running
        """
        try:
            final_status = _COMPLETION_STATUSES[str(status).lower()]
        except KeyError:
            raise ValueError(f"status must be 'success' or 'failure', got {status!r}") from None

        existing = self.store.fetch_audit_record(handle.audit_id)
        if existing is None:
            raise InvalidStateError(f"Unknown run handle: audit ID {handle.audit_id}")
        if existing.status != STATUS_RUNNING:
            raise InvalidStateError(
                f"Run {handle.audit_id} ({handle.job_name}) is already completed with status {existing.status}"
            )

        run_end = self.clock()
        with self.store.transaction():
            if not self.store.complete_audit_record(handle.audit_id, final_status, run_end, error_message):
                raise InvalidStateError(f"Run {handle.audit_id} ({handle.job_name}) is no longer Running")

        if final_status == STATUS_SUCCESS:
            logger.info(f"Completed run: {handle.job_name} (audit ID: {handle.audit_id}) with status {final_status}")
        else:
            logger.error(f"Run failed: {handle.job_name} (audit ID: {handle.audit_id}): {error_message}")

        return self.store.fetch_audit_record(handle.audit_id)

    def last_successful_boundary(self, job_name: str) -> Optional[datetime]:
        """
        End time of the latest successful run of a job.

        Args:
            job_name: Name of the load job

        Returns:
            run_end of the most recent Success record, or None on the first run
        """
        record = self.store.fetch_last_successful_run(job_name)
        boundary = record.run_end if record else None
        logger.debug(f"Last successful boundary for {job_name}: {boundary}")
        return boundary

    def get_last_run(self, job_name: str) -> Optional[AuditRecord]:
        """Latest run of a job regardless of status."""
        records = self.store.fetch_audit_records(job_name)
        if not records:
            return None
        return max(records, key=lambda r: (r.run_start, r.audit_id))

    def get_run_stats(self, job_name: str) -> Dict[str, Any]:
        """
        Summary of all runs of a job for monitoring.

        Returns:
            Dictionary with run counts per status and the last start time
        """
        records = self.store.fetch_audit_records(job_name)
        return {
            'total_runs': len(records),
            'successful_runs': sum(1 for r in records if r.status == STATUS_SUCCESS),
            'failed_runs': sum(1 for r in records if r.status == STATUS_FAILURE),
            'running_runs': sum(1 for r in records if r.status == STATUS_RUNNING),
            'last_run_start': max((r.run_start for r in records), default=None),
        }
