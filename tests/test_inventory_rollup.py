"""
Unit Tests - Inventory Rollup Engine
"""
from datetime import date, datetime, timezone

import pytest

from factories import fact
from retail_dwh.models import InventorySnapshot
from retail_dwh.warehouse.entities import PRODUCT
from retail_dwh.warehouse.inventory_rollup import InventoryRollupEngine, boundary_date

D = date(2024, 1, 10)


def day(offset):
    return date.fromordinal(D.toordinal() + offset)


@pytest.fixture
def engine(store):
    return InventoryRollupEngine(store)


def by_key(snapshots):
    return {(s.product_id, s.inventory_date): s for s in snapshots}


class TestScenarios:

    def test_boh_chains_from_prior_day_eoh(self, engine, store, seed_products, seed_inventory):
        seed_products(1)
        seed_inventory(1, D, boh=50, eoh=40)
        store.append_facts([fact(1, 1, 5, day(1))])

        snapshots = engine.compute_rollup(datetime(2024, 1, 10, 23, 0, tzinfo=timezone.utc))

        assert snapshots == [InventorySnapshot(1, day(1), boh=40, eoh=35)]

    def test_first_snapshot_is_seeded_with_default(self, engine, store, seed_products):
        seed_products(2)
        store.append_facts([fact(1, 2, 20, D)])

        snapshots = engine.compute_rollup(None)

        assert snapshots == [InventorySnapshot(2, D, boh=100, eoh=80)]

    def test_default_applies_per_product(self, engine, store, seed_products, seed_inventory):
        seed_products(1, 2)
        seed_inventory(1, D, boh=100, eoh=60)
        store.append_facts([fact(1, 1, 10, day(1)), fact(2, 2, 10, day(1))])

        snapshots = by_key(engine.compute_rollup(D))

        assert snapshots[(1, day(1))].boh == 60
        assert snapshots[(2, day(1))].boh == 100

    def test_configured_default(self, store, seed_products):
        seed_products(1)
        store.append_facts([fact(1, 1, 5, D)])

        snapshots = InventoryRollupEngine(store, default_boh=250).compute_rollup(None)

        assert snapshots[0].boh == 250
        assert snapshots[0].eoh == 245


class TestAggregation:

    def test_quantities_summed_per_product_and_day(self, engine, store, seed_products):
        seed_products(1)
        store.append_facts([fact(1, 1, 5, D), fact(2, 1, 7, D), fact(3, 1, 1, D, customer_id=9)])

        (snapshot,) = engine.compute_rollup(None)

        assert snapshot.eoh == 100 - 13

    def test_only_sales_strictly_after_boundary(self, engine, store, seed_products):
        seed_products(1)
        store.append_facts([fact(1, 1, 5, day(-1)), fact(2, 1, 5, D), fact(3, 1, 5, day(1))])

        snapshots = engine.compute_rollup(datetime(2024, 1, 10, 8, 0, tzinfo=timezone.utc))

        assert [s.inventory_date for s in snapshots] == [day(1)]

    def test_inactive_products_excluded(self, engine, store, seed_products):
        (retired,) = seed_products(3)
        store.expire_dimension_records(PRODUCT, [retired.surrogate_key], datetime(2024, 1, 9, tzinfo=timezone.utc))
        seed_products(1)
        store.append_facts([fact(1, 1, 5, D), fact(2, 3, 5, D)])

        snapshots = engine.compute_rollup(None)

        assert [s.product_id for s in snapshots] == [1]

    def test_sales_of_unknown_products_excluded(self, engine, store, seed_products):
        seed_products(1)
        store.append_facts([fact(1, 99, 5, D)])

        assert engine.compute_rollup(None) == []

    def test_no_sales_no_snapshots(self, engine, store, seed_products, seed_inventory):
        seed_products(1)
        seed_inventory(1, D, boh=100, eoh=90)

        assert engine.compute_rollup(D) == []

    def test_negative_eoh_passes_through(self, engine, store, seed_products, seed_inventory):
        seed_products(1)
        seed_inventory(1, D, boh=10, eoh=3)
        store.append_facts([fact(1, 1, 8, day(1))])

        (snapshot,) = engine.compute_rollup(D)

        assert snapshot.boh == 3
        assert snapshot.eoh == -5


class TestChaining:

    def test_multi_day_batch_chains_within_rollup(self, engine, store, seed_products):
        seed_products(1)
        store.append_facts([fact(1, 1, 10, D), fact(2, 1, 5, day(1)), fact(3, 1, 20, day(2))])

        snapshots = engine.compute_rollup(None)

        assert snapshots == [
            InventorySnapshot(1, D, boh=100, eoh=90),
            InventorySnapshot(1, day(1), boh=90, eoh=85),
            InventorySnapshot(1, day(2), boh=85, eoh=65),
        ]

    def test_chain_holds_for_consecutive_dates(self, engine, store, seed_products, seed_inventory):
        seed_products(1, 2)
        seed_inventory(2, day(-1), boh=100, eoh=70)
        store.append_facts([
            fact(i, product_id, qty, day(offset))
            for i, (product_id, qty, offset) in enumerate(
                [(1, 3, 0), (1, 4, 1), (1, 1, 2), (2, 10, 0), (2, 2, 1)]
            )
        ])
        store.append_inventory(engine.compute_rollup(day(-1)))

        series = by_key(store.fetch_inventory())
        for (product_id, inventory_date), snapshot in series.items():
            following = series.get((product_id, date.fromordinal(inventory_date.toordinal() + 1)))
            if following is not None:
                assert following.boh == snapshot.eoh

    def test_trailing_gap_is_not_filled_by_default(self, engine, store, seed_products):
        seed_products(1)
        store.append_facts([fact(1, 1, 10, D), fact(2, 1, 5, day(2))])

        snapshots = by_key(engine.compute_rollup(None))

        assert (1, day(1)) not in snapshots
        # no D+1 snapshot, so D+2 starts again from the default
        assert snapshots[(1, day(2))].boh == 100

    def test_existing_snapshots_are_never_overwritten(self, engine, store, seed_products, seed_inventory):
        seed_products(1)
        seed_inventory(1, D, boh=100, eoh=77)
        store.append_facts([fact(1, 1, 10, D), fact(2, 1, 5, day(1))])

        snapshots = engine.compute_rollup(None)

        assert snapshots == [InventorySnapshot(1, day(1), boh=77, eoh=72)]

    def test_compute_does_not_write(self, engine, store, seed_products):
        seed_products(1)
        store.append_facts([fact(1, 1, 10, D)])

        engine.compute_rollup(None)

        assert store.fetch_inventory() == []


class TestGapFilling:

    @pytest.fixture
    def filling_engine(self, store):
        return InventoryRollupEngine(store, fill_gaps=True)

    def test_gap_between_sales_days_is_filled(self, filling_engine, store, seed_products):
        seed_products(1)
        store.append_facts([fact(1, 1, 10, D), fact(2, 1, 5, day(2))])

        snapshots = filling_engine.compute_rollup(None)

        assert snapshots == [
            InventorySnapshot(1, D, boh=100, eoh=90),
            InventorySnapshot(1, day(1), boh=90, eoh=90),
            InventorySnapshot(1, day(2), boh=90, eoh=85),
        ]

    def test_silent_product_is_carried_to_last_sale_day(self, filling_engine, store, seed_products, seed_inventory):
        seed_products(1, 2)
        seed_inventory(2, D, boh=100, eoh=60)
        store.append_facts([fact(1, 1, 10, day(1)), fact(2, 1, 5, day(2))])

        snapshots = by_key(filling_engine.compute_rollup(D))

        assert snapshots[(2, day(1))] == InventorySnapshot(2, day(1), boh=60, eoh=60)
        assert snapshots[(2, day(2))] == InventorySnapshot(2, day(2), boh=60, eoh=60)
        assert snapshots[(1, day(2))].boh == 90

    def test_product_without_history_or_sales_is_skipped(self, filling_engine, store, seed_products):
        seed_products(1, 2)
        store.append_facts([fact(1, 1, 10, D)])

        snapshots = filling_engine.compute_rollup(None)

        assert {s.product_id for s in snapshots} == {1}


def test_boundary_date_normalisation():
    assert boundary_date(None) is None
    assert boundary_date(D) == D
    assert boundary_date(datetime(2024, 1, 10, 23, 59, tzinfo=timezone.utc)) == D
