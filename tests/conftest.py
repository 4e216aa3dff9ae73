"""
Test Suite Configuration
"""
import os
import tempfile
from datetime import date

import pytest

# Component loggers open their rotating log files at import time
os.environ.setdefault("LOG_DIR", os.path.join(tempfile.gettempdir(), "retail_dwh_test_logs"))

from factories import FixedClock, active_product  # noqa: E402
from retail_dwh.config import EngineSettings  # noqa: E402
from retail_dwh.models import InventorySnapshot  # noqa: E402
from retail_dwh.warehouse.entities import PRODUCT  # noqa: E402
from retail_dwh.warehouse.store import InMemoryWarehouseStore  # noqa: E402


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store() -> InMemoryWarehouseStore:
    return InMemoryWarehouseStore()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(job_name="test_load")


@pytest.fixture
def seed_products(store):
    """Insert active product versions directly into the store."""
    def _seed(*product_ids):
        return store.insert_dimension_records(PRODUCT, [active_product(pid) for pid in product_ids])
    return _seed


@pytest.fixture
def seed_inventory(store):
    """Insert one stored inventory snapshot."""
    def _seed(product_id, inventory_date: date, boh: int, eoh: int):
        store.append_inventory([InventorySnapshot(product_id, inventory_date, boh, eoh)])
    return _seed
