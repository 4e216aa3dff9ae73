"""
Daily inventory rollup.

For every active product and sale date after the incremental boundary:

    BOH(d) = EOH(d - 1 day) if that snapshot exists, else the default (100)
    EOH(d) = BOH(d) - quantity sold on d

Prior-day snapshots come from stored inventory or from earlier days of the
same rollup, so a batch that spans several days chains correctly. EOH may go
negative (oversell); it is passed through unclamped.

By default snapshots are produced only for days with sales, so trailing
no-sale days get no row and the chain stalls until the next sale. With
fill_gaps=True every missing day is emitted with zero sales.
"""

import os
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from retail_dwh.models import InventorySnapshot
from retail_dwh.utils.logging_config import setup_logging
from retail_dwh.warehouse.entities import PRODUCT
from retail_dwh.warehouse.store import WarehouseStore

logger = setup_logging(__name__, log_level=os.getenv('LOG_LEVEL', 'INFO'))

DEFAULT_BOH = 100
ONE_DAY = timedelta(days=1)


def boundary_date(as_of_boundary: Union[datetime, date, None]) -> Optional[date]:
    """Sale dates are compared on the calendar date of the boundary."""
    if as_of_boundary is None:
        return None
    if isinstance(as_of_boundary, datetime):
        return as_of_boundary.date()
    return as_of_boundary


class InventoryRollupEngine:
    """
    Computes new inventory_daily rows from sales facts and prior inventory.

    Args:
        store: Warehouse store (read only here; the caller persists the result)
        default_boh: Beginning on-hand for a product-day with no prior-day snapshot
        fill_gaps: Emit zero-sale snapshots for days without sales
    """

    def __init__(self, store: WarehouseStore, default_boh: int = DEFAULT_BOH, fill_gaps: bool = False):
        self.store = store
        self.default_boh = int(default_boh)
        self.fill_gaps = fill_gaps

    def compute_rollup(self, as_of_boundary: Union[datetime, date, None]) -> List[InventorySnapshot]:
        """
        Compute snapshots for sales strictly after the boundary.

        Args:
            as_of_boundary: Last successful run boundary; None processes all sales

        Returns:
            New snapshots ordered by product and date
        """
        after = boundary_date(as_of_boundary)
        active_products = {r.natural_key for r in self.store.fetch_active_dimensions(PRODUCT)}

        sold = self._aggregate_sales(after, active_products)
        if not sold:
            logger.info(f"No sales after {after} for active products; nothing to roll up")
            return []

        products = active_products if self.fill_gaps else {product_id for product_id, _ in sold}
        existing: Dict[Tuple[Any, date], InventorySnapshot] = {
            (s.product_id, s.inventory_date): s for s in self.store.fetch_inventory(products)
        }

        if self.fill_gaps:
            days = self._days_with_gaps_filled(sold, existing, products)
        else:
            days = sorted(sold)

        snapshots = []
        computed: Dict[Tuple[Any, date], InventorySnapshot] = {}
        for product_id, day in days:
            if (product_id, day) in existing:
                logger.warning(f"Inventory for product {product_id} on {day} already exists, skipping")
                continue

            previous = computed.get((product_id, day - ONE_DAY)) or existing.get((product_id, day - ONE_DAY))
            boh = previous.eoh if previous is not None else self.default_boh
            eoh = boh - sold.get((product_id, day), 0)

            snapshot = InventorySnapshot(product_id=product_id, inventory_date=day, boh=boh, eoh=eoh)
            computed[(product_id, day)] = snapshot
            snapshots.append(snapshot)

        logger.info(
            f"Computed {len(snapshots)} inventory snapshots for {len({s.product_id for s in snapshots})} "
            f"products after {after}"
        )
        return snapshots

    def _aggregate_sales(self, after: Optional[date], active_products: set) -> Dict[Tuple[Any, date], int]:
        sold: Dict[Tuple[Any, date], int] = defaultdict(int)
        for fact in self.store.fetch_facts(sale_date_after=after):
            if fact.product_id in active_products:
                sold[(fact.product_id, fact.sale_date)] += int(fact.quantity or 0)
        return dict(sold)

    def _days_with_gaps_filled(
        self,
        sold: Dict[Tuple[Any, date], int],
        existing: Dict[Tuple[Any, date], InventorySnapshot],
        products: set
    ) -> List[Tuple[Any, date]]:
        through = max(day for _, day in sold)

        first_sale: Dict[Any, date] = {}
        for product_id, day in sold:
            if product_id not in first_sale or day < first_sale[product_id]:
                first_sale[product_id] = day

        last_snapshot: Dict[Any, date] = {}
        for product_id, day in existing:
            if product_id not in last_snapshot or day > last_snapshot[product_id]:
                last_snapshot[product_id] = day

        days = []
        for product_id in sorted(products):
            starts = []
            if product_id in last_snapshot:
                starts.append(last_snapshot[product_id] + ONE_DAY)
            if product_id in first_sale:
                starts.append(first_sale[product_id])
            if not starts:
                continue

            day = min(starts)
            while day <= through:
                days.append((product_id, day))
                day += ONE_DAY

        return days
