"""
Sales fact loader.

Appends one fact_sales row per staged sale. Facts keep the natural product
and customer identifiers they arrived with, so later dimension versions never
re-point historical facts. There is no de-duplication: each staged batch must
be loaded exactly once.
"""

import os
from datetime import datetime
from typing import Callable, Iterable

from retail_dwh.models import FactRecord, StagedSale
from retail_dwh.utils.clock import utc_now
from retail_dwh.utils.logging_config import setup_logging
from retail_dwh.warehouse.store import WarehouseStore

logger = setup_logging(__name__, log_level=os.getenv('LOG_LEVEL', 'INFO'))


class FactLoader:
    def __init__(self, store: WarehouseStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def load(self, staged_sales: Iterable[StagedSale]) -> int:
        """
        Append staged sales to the fact table in one transaction.

        Args:
            staged_sales: Staged sale rows from the current batch

        Returns:
            Number of fact rows appended
        """
        now = self.clock()
        facts = [
            FactRecord(
                sale_id=sale.sale_id,
                product_id=sale.product_id,
                customer_id=sale.customer_id,
                quantity=sale.quantity,
                unit_price=sale.unit_price,
                total_amount=sale.total_amount,
                sale_date=sale.sale_date,
                loaded_at=sale.loaded_at or now,
            )
            for sale in staged_sales
        ]

        if not facts:
            logger.info("No staged sales to load")
            return 0

        with self.store.transaction():
            appended = self.store.append_facts(facts)

        logger.info(f"Loaded {len(appended)} sales facts")
        return len(appended)
