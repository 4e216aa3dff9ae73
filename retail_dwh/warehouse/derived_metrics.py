"""
Derived dimension metrics.

Active product versions carry total quantity sold, active customer versions
carry total amount spent. Both are recomputed from the full fact history on
every refresh; expired versions keep the value they had when they were
retired.
"""

import os
from typing import Any, Callable, Iterable, List, Union

from retail_dwh.models import FactRecord
from retail_dwh.utils.logging_config import setup_logging
from retail_dwh.warehouse.entities import CUSTOMER, PRODUCT, EntityDescriptor, get_descriptor
from retail_dwh.warehouse.store import WarehouseStore

logger = setup_logging(__name__, log_level=os.getenv('LOG_LEVEL', 'INFO'))

USD_TO_NPR_RATE = 133


def convert(amount: int, rate: int = USD_TO_NPR_RATE) -> int:
    """Convert an amount with a fixed rate (default: USD to NPR)."""
    return int(amount * rate)


def _sum_facts(facts: Iterable[FactRecord], key_field: str, key: Any, value_field: str) -> int:
    return sum(getattr(f, value_field) or 0 for f in facts if getattr(f, key_field) == key)


def total_quantity_sold(facts: Iterable[FactRecord], product_id: Any) -> int:
    """Sum of fact quantities for a product; 0 when it never sold."""
    return _sum_facts(facts, 'product_id', product_id, 'quantity')


def total_amount_spent(facts: Iterable[FactRecord], customer_id: Any) -> int:
    """Sum of fact total amounts for a customer; 0 when they never bought."""
    return _sum_facts(facts, 'customer_id', customer_id, 'total_amount')


class DerivedMetricsUpdater:
    """
    Recomputes the derived metric of every active dimension version.

    Args:
        store: Warehouse store
        customer_spend_rate: Conversion rate applied to the customer spend metric
    """

    def __init__(
        self,
        store: WarehouseStore,
        customer_spend_rate: int = 1
    ):
        self.store = store
        self.customer_spend_rate = customer_spend_rate

    def refresh_derived_metrics(self, entity_type: Union[str, EntityDescriptor]) -> int:
        """
        Recompute and store the derived metric for all active versions of an entity.

        Returns:
            Number of dimension versions updated
        """
        descriptor = get_descriptor(entity_type)

        with self.store.transaction():
            facts = self.store.fetch_facts()
            active = self.store.fetch_active_dimensions(descriptor)

            metric = self._metric_function(descriptor)
            metrics = {record.surrogate_key: metric(facts, record.natural_key) for record in active}

            updated = self.store.update_derived_metrics(descriptor, metrics) if metrics else 0

        logger.info(f"Refreshed {descriptor.metric_column} for {updated} active {descriptor.name} records")
        return updated

    def _metric_function(self, descriptor: EntityDescriptor) -> Callable[[List[FactRecord], Any], int]:
        if descriptor.name == PRODUCT.name:
            return total_quantity_sold
        if descriptor.name == CUSTOMER.name:
            return lambda facts, key: convert(total_amount_spent(facts, key), self.customer_spend_rate)
        return lambda facts, key: _sum_facts(
            facts, descriptor.fact_key_field, key, descriptor.metric_fact_field
        )
