"""
Unit Tests - Derived Metrics
"""
from datetime import date

import pytest

from factories import fact, staged_customer, staged_product
from retail_dwh.warehouse.derived_metrics import (
    USD_TO_NPR_RATE,
    DerivedMetricsUpdater,
    convert,
    total_amount_spent,
    total_quantity_sold,
)
from retail_dwh.warehouse.entities import CUSTOMER, PRODUCT
from retail_dwh.warehouse.scd2_reconciler import DimensionReconciler

D = date(2024, 1, 10)


class TestHelpers:

    def test_convert_uses_npr_rate_by_default(self):
        assert USD_TO_NPR_RATE == 133
        assert convert(2) == 266

    def test_convert_with_rate(self):
        assert convert(10, rate=3) == 30

    def test_total_quantity_sold(self):
        facts = [fact(1, 1, 5, D), fact(2, 1, 7, D), fact(3, 2, 100, D)]

        assert total_quantity_sold(facts, 1) == 12
        assert total_quantity_sold(facts, 3) == 0
        assert total_quantity_sold([], 1) == 0

    def test_total_amount_spent(self):
        facts = [fact(1, 1, 5, D, customer_id=7), fact(2, 2, 1, D, customer_id=7, unit_price=99)]

        assert total_amount_spent(facts, 7) == 50 + 99
        assert total_amount_spent(facts, 8) == 0


class TestRefresh:

    @pytest.fixture
    def reconciler(self, store, clock):
        return DimensionReconciler(store, clock=clock)

    def test_product_metric_is_total_quantity(self, store, reconciler):
        reconciler.reconcile(PRODUCT, [staged_product(1), staged_product(2)])
        store.append_facts([fact(1, 1, 5, D), fact(2, 1, 3, D)])

        updated = DerivedMetricsUpdater(store).refresh_derived_metrics("product")

        metrics = {r.natural_key: r.derived_metric for r in store.fetch_active_dimensions(PRODUCT)}
        assert updated == 2
        assert metrics == {1: 8, 2: 0}

    def test_customer_metric_is_converted_spend(self, store, reconciler):
        reconciler.reconcile(CUSTOMER, [staged_customer(7)])
        store.append_facts([fact(1, 1, 2, D, customer_id=7, unit_price=10)])

        DerivedMetricsUpdater(store, customer_spend_rate=133).refresh_derived_metrics(CUSTOMER)

        (customer,) = store.fetch_active_dimensions(CUSTOMER)
        assert customer.derived_metric == 20 * 133

    def test_expired_versions_are_untouched(self, store, reconciler, clock):
        reconciler.reconcile(PRODUCT, [staged_product(1, price=10)])
        store.append_facts([fact(1, 1, 5, D)])
        DerivedMetricsUpdater(store).refresh_derived_metrics(PRODUCT)
        clock.advance(days=1)
        reconciler.reconcile(PRODUCT, [staged_product(1, price=12)])
        store.append_facts([fact(2, 1, 4, D)])

        DerivedMetricsUpdater(store).refresh_derived_metrics(PRODUCT)

        old, new = store.fetch_dimension_history(PRODUCT, 1)
        assert old.derived_metric == 5
        assert new.derived_metric == 9

    def test_refresh_is_idempotent(self, store, reconciler):
        reconciler.reconcile(PRODUCT, [staged_product(1)])
        store.append_facts([fact(1, 1, 5, D)])
        updater = DerivedMetricsUpdater(store)

        updater.refresh_derived_metrics(PRODUCT)
        first = store.fetch_dimension_history(PRODUCT)
        updater.refresh_derived_metrics(PRODUCT)

        assert store.fetch_dimension_history(PRODUCT) == first

    def test_no_active_records(self, store):
        assert DerivedMetricsUpdater(store).refresh_derived_metrics(PRODUCT) == 0
