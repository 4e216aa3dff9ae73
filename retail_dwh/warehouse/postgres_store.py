"""
PostgreSQL warehouse store.

Holds the staging tables, the SCD Type 2 dimensions (dim_product,
dim_customer), fact_sales, inventory_daily and etl_audit. One store instance
owns one connection with autocommit off; store.transaction() maps to a single
database transaction and nested blocks join it.
"""

import os
import time
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

import psycopg2
from psycopg2 import sql
from psycopg2.extras import RealDictCursor, execute_values
from dotenv import load_dotenv

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
from retail_dwh.utils.logging_config import setup_logging
from retail_dwh.warehouse.entities import ENTITIES, EntityDescriptor
from retail_dwh.warehouse.store import WarehouseStore

load_dotenv()

logger = setup_logging(__name__, log_level=os.getenv('LOG_LEVEL', 'INFO'))

SCHEMA_DDL = """
    -- Staging: full snapshots written by the ingestion job, emptied after a successful run
    CREATE TABLE IF NOT EXISTS stg_products (
        product_id INTEGER,
        name VARCHAR(255),
        category VARCHAR(100),
        price INTEGER,
        updated_at TIMESTAMPTZ,
        load_file_name VARCHAR(255),
        loaded_at TIMESTAMPTZ
    );

    CREATE TABLE IF NOT EXISTS stg_customers (
        customer_id INTEGER,
        first_name VARCHAR(100),
        last_name VARCHAR(100),
        email VARCHAR(255),
        city VARCHAR(100),
        updated_at TIMESTAMPTZ,
        load_file_name VARCHAR(255),
        loaded_at TIMESTAMPTZ
    );

    CREATE TABLE IF NOT EXISTS stg_sales (
        sale_id BIGINT,
        product_id INTEGER,
        customer_id INTEGER,
        quantity INTEGER,
        price INTEGER,
        total_amount BIGINT,
        sale_date DATE,
        load_file_name VARCHAR(255),
        loaded_at TIMESTAMPTZ
    );

    -- SCD Type 2 dimensions
    CREATE TABLE IF NOT EXISTS dim_product (
        product_sk BIGSERIAL PRIMARY KEY,
        product_id INTEGER NOT NULL,
        name VARCHAR(255),
        category VARCHAR(100),
        price INTEGER,
        total_qty_sold BIGINT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        start_date TIMESTAMPTZ NOT NULL,
        end_date TIMESTAMPTZ,
        last_updated TIMESTAMPTZ NOT NULL,

        CONSTRAINT dim_product_active_check
            CHECK (is_active = TRUE OR end_date IS NOT NULL)
    );

    CREATE TABLE IF NOT EXISTS dim_customer (
        customer_sk BIGSERIAL PRIMARY KEY,
        customer_id INTEGER NOT NULL,
        first_name VARCHAR(100),
        last_name VARCHAR(100),
        email VARCHAR(255),
        city VARCHAR(100),
        total_amt_spent BIGINT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        start_date TIMESTAMPTZ NOT NULL,
        end_date TIMESTAMPTZ,
        last_updated TIMESTAMPTZ NOT NULL,

        CONSTRAINT dim_customer_active_check
            CHECK (is_active = TRUE OR end_date IS NOT NULL)
    );

    -- At most one active version per natural key
    CREATE UNIQUE INDEX IF NOT EXISTS idx_dim_product_active_key
        ON dim_product(product_id) WHERE is_active;
    CREATE UNIQUE INDEX IF NOT EXISTS idx_dim_customer_active_key
        ON dim_customer(customer_id) WHERE is_active;
    CREATE INDEX IF NOT EXISTS idx_dim_product_product_id ON dim_product(product_id);
    CREATE INDEX IF NOT EXISTS idx_dim_customer_customer_id ON dim_customer(customer_id);

    -- Sales facts, append-only
    CREATE TABLE IF NOT EXISTS fact_sales (
        sale_sk BIGSERIAL PRIMARY KEY,
        sale_id BIGINT,
        product_id INTEGER,
        customer_id INTEGER,
        qty INTEGER,
        price INTEGER,
        total_amt BIGINT,
        sale_date DATE NOT NULL,
        loaded_at TIMESTAMPTZ NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_fact_sales_sale_date ON fact_sales(sale_date);
    CREATE INDEX IF NOT EXISTS idx_fact_sales_product_id ON fact_sales(product_id);
    CREATE INDEX IF NOT EXISTS idx_fact_sales_customer_id ON fact_sales(customer_id);

    -- Daily inventory, extended forward only
    CREATE TABLE IF NOT EXISTS inventory_daily (
        product_id INTEGER NOT NULL,
        inventory_date DATE NOT NULL,
        boh INTEGER NOT NULL,
        eoh INTEGER NOT NULL,
        PRIMARY KEY (product_id, inventory_date)
    );

    -- Run audit
    CREATE TABLE IF NOT EXISTS etl_audit (
        audit_id BIGSERIAL PRIMARY KEY,
        package_name VARCHAR(200) NOT NULL,
        run_start TIMESTAMPTZ NOT NULL,
        run_end TIMESTAMPTZ,
        status VARCHAR(20) NOT NULL DEFAULT 'Running',
        error_message TEXT,

        CONSTRAINT etl_audit_status_check
            CHECK (status IN ('Running', 'Success', 'Failure'))
    );

    CREATE INDEX IF NOT EXISTS idx_etl_audit_package_status
        ON etl_audit(package_name, status);

    COMMENT ON TABLE dim_product IS 'SCD Type 2 product dimension';
    COMMENT ON TABLE dim_customer IS 'SCD Type 2 customer dimension';
    COMMENT ON TABLE inventory_daily IS 'Daily beginning/ending on-hand per product';
    COMMENT ON TABLE etl_audit IS 'One row per load run; drives the incremental boundary';
    COMMENT ON COLUMN dim_product.product_sk IS 'Surrogate key for each version';
    COMMENT ON COLUMN dim_product.is_active IS 'Flag indicating the current version';
    COMMENT ON COLUMN etl_audit.run_end IS 'Boundary for the next incremental run when status is Success';
"""

# FactRecord field -> fact_sales column
FACT_COLUMNS = (
    ('sale_id', 'sale_id'),
    ('product_id', 'product_id'),
    ('customer_id', 'customer_id'),
    ('quantity', 'qty'),
    ('unit_price', 'price'),
    ('total_amount', 'total_amt'),
    ('sale_date', 'sale_date'),
    ('loaded_at', 'loaded_at'),
)

AUDIT_COLUMNS = sql.SQL(
    "audit_id, package_name, run_start, run_end, status, error_message"
)


def _identifiers(names: Iterable[str]) -> sql.Composable:
    return sql.SQL(', ').join(sql.Identifier(name) for name in names)


class PostgresWarehouseStore(WarehouseStore):
    """
    Warehouse store backed by PostgreSQL through psycopg2.

    Args:
        connection: Existing psycopg2 connection; a new one is opened from
            WAREHOUSE_DB_* environment variables when omitted
        ensure_schema: Create tables and indexes if they do not exist
    """

    def __init__(self, connection=None, ensure_schema: bool = True):
        self.connection = connection
        self._depth = 0
        if self.connection is None:
            self._connect()
        if ensure_schema:
            self.create_schema()

    def _connect(self) -> None:
        """Connect to warehouse database with retry logic."""
        max_retries = int(os.getenv('WAREHOUSE_DB_CONNECT_RETRIES', '5'))
        retry_delay = int(os.getenv('WAREHOUSE_DB_RETRY_DELAY', '5'))

        for attempt in range(max_retries):
            try:
                self.connection = psycopg2.connect(
                    host=os.getenv('WAREHOUSE_DB_HOST', 'localhost'),
                    port=os.getenv('WAREHOUSE_DB_PORT', '5433'),
                    database=os.getenv('WAREHOUSE_DB_NAME', 'warehouse_db'),
                    user=os.getenv('WAREHOUSE_DB_USER', 'postgres'),
                    password=os.getenv('WAREHOUSE_DB_PASSWORD', 'postgres')
                )
                self.connection.autocommit = False
                logger.info("Successfully connected to warehouse_db")
                return
            except psycopg2.OperationalError as e:
                logger.warning(f"Connection attempt {attempt + 1} failed: {e}")
                if attempt < max_retries - 1:
                    time.sleep(retry_delay)
                else:
                    logger.error("Failed to connect to warehouse after all retries")
                    raise StoreError(f"Could not connect to warehouse: {e}") from e

    def create_schema(self) -> None:
        """Create warehouse tables and indexes if they don't exist."""
        with self._cursor() as cursor:
            cursor.execute(SCHEMA_DDL)
        logger.info("Created/verified warehouse schema")

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._depth:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return

        self._depth = 1
        try:
            yield
        except BaseException:
            self._rollback()
            raise
        else:
            try:
                self.connection.commit()
            except psycopg2.Error as e:
                self._rollback()
                logger.error(f"Failed to commit warehouse transaction: {e}")
                raise StoreError(f"Commit failed: {e}") from e
        finally:
            self._depth = 0

    def _rollback(self) -> None:
        try:
            self.connection.rollback()
        except psycopg2.Error as e:
            logger.error(f"Rollback failed: {e}")

    @contextmanager
    def _cursor(self, dict_rows: bool = False):
        with self.transaction():
            try:
                with self.connection.cursor(cursor_factory=RealDictCursor if dict_rows else None) as cursor:
                    yield cursor
            except psycopg2.Error as e:
                logger.error(f"Warehouse statement failed: {e}")
                raise StoreError(f"Warehouse statement failed: {e}") from e

    # Staging

    def fetch_staged_records(self, descriptor: EntityDescriptor) -> List[StagedRecord]:
        columns = (
            (descriptor.natural_key_column,) + descriptor.tracked_attributes
            + (descriptor.staging_timestamp_column, descriptor.staging_file_column, 'loaded_at')
        )
        query = sql.SQL("SELECT {columns} FROM {table}").format(
            columns=_identifiers(columns),
            table=sql.Identifier(descriptor.staging_table),
        )
        with self._cursor(dict_rows=True) as cursor:
            cursor.execute(query)
            rows = cursor.fetchall()

        return [
            StagedRecord(
                natural_key=row[descriptor.natural_key_column],
                attributes={name: row[name] for name in descriptor.tracked_attributes},
                source_updated_at=row[descriptor.staging_timestamp_column],
                source_file=row[descriptor.staging_file_column],
                loaded_at=row['loaded_at'],
            )
            for row in rows
        ]

    def fetch_staged_sales(self) -> List[StagedSale]:
        with self._cursor(dict_rows=True) as cursor:
            cursor.execute(sql.SQL("""
                SELECT sale_id, product_id, customer_id, quantity, price,
                       total_amount, sale_date, load_file_name, loaded_at
                FROM stg_sales
            """))
            rows = cursor.fetchall()

        return [
            StagedSale(
                sale_id=row['sale_id'],
                product_id=row['product_id'],
                customer_id=row['customer_id'],
                quantity=row['quantity'],
                unit_price=row['price'],
                total_amount=row['total_amount'],
                sale_date=row['sale_date'],
                source_file=row['load_file_name'],
                loaded_at=row['loaded_at'],
            )
            for row in rows
        ]

    def clear_staging(self) -> None:
        tables = [d.staging_table for d in ENTITIES.values()] + ['stg_sales']
        with self._cursor() as cursor:
            cursor.execute(sql.SQL("TRUNCATE {tables}").format(tables=_identifiers(tables)))
        logger.info(f"Cleared staging tables: {', '.join(tables)}")

    # Dimensions

    def _dimension_columns(self, descriptor: EntityDescriptor) -> tuple:
        return (
            (descriptor.surrogate_key_column, descriptor.natural_key_column)
            + descriptor.tracked_attributes
            + (descriptor.metric_column, 'is_active', 'start_date', 'end_date', 'last_updated')
        )

    def _row_to_dimension(self, descriptor: EntityDescriptor, row: Dict[str, Any]) -> DimensionRecord:
        return DimensionRecord(
            surrogate_key=row[descriptor.surrogate_key_column],
            natural_key=row[descriptor.natural_key_column],
            attributes={name: row[name] for name in descriptor.tracked_attributes},
            derived_metric=row[descriptor.metric_column],
            is_active=row['is_active'],
            start_date=row['start_date'],
            end_date=row['end_date'],
            last_updated=row['last_updated'],
        )

    def fetch_active_dimensions(self, descriptor: EntityDescriptor) -> List[DimensionRecord]:
        query = sql.SQL("""
            SELECT {columns} FROM {table}
            WHERE is_active = TRUE
            ORDER BY {surrogate_key}
        """).format(
            columns=_identifiers(self._dimension_columns(descriptor)),
            table=sql.Identifier(descriptor.dimension_table),
            surrogate_key=sql.Identifier(descriptor.surrogate_key_column),
        )
        with self._cursor(dict_rows=True) as cursor:
            cursor.execute(query)
            return [self._row_to_dimension(descriptor, row) for row in cursor.fetchall()]

    def fetch_dimension_history(
        self, descriptor: EntityDescriptor, natural_key: Any = None
    ) -> List[DimensionRecord]:
        query = sql.SQL("SELECT {columns} FROM {table}").format(
            columns=_identifiers(self._dimension_columns(descriptor)),
            table=sql.Identifier(descriptor.dimension_table),
        )
        params = ()
        if natural_key is not None:
            query += sql.SQL(" WHERE {key} = %s").format(key=sql.Identifier(descriptor.natural_key_column))
            params = (natural_key,)
        query += sql.SQL(" ORDER BY {surrogate_key}").format(
            surrogate_key=sql.Identifier(descriptor.surrogate_key_column)
        )
        with self._cursor(dict_rows=True) as cursor:
            cursor.execute(query, params)
            return [self._row_to_dimension(descriptor, row) for row in cursor.fetchall()]

    def expire_dimension_records(
        self,
        descriptor: EntityDescriptor,
        surrogate_keys: Iterable[int],
        end_date: datetime,
    ) -> int:
        keys = list(surrogate_keys)
        if not keys:
            return 0
        query = sql.SQL("""
            UPDATE {table}
            SET is_active = FALSE, end_date = %s, last_updated = %s
            WHERE {surrogate_key} = ANY(%s) AND is_active = TRUE
        """).format(
            table=sql.Identifier(descriptor.dimension_table),
            surrogate_key=sql.Identifier(descriptor.surrogate_key_column),
        )
        with self._cursor() as cursor:
            cursor.execute(query, (end_date, end_date, keys))
            logger.debug(f"Expired {cursor.rowcount} {descriptor.dimension_table} versions")
            return cursor.rowcount

    def insert_dimension_records(
        self, descriptor: EntityDescriptor, records: Iterable[DimensionRecord]
    ) -> List[DimensionRecord]:
        columns = (
            (descriptor.natural_key_column,) + descriptor.tracked_attributes
            + (descriptor.metric_column, 'is_active', 'start_date', 'end_date', 'last_updated')
        )
        query = sql.SQL("""
            INSERT INTO {table} ({columns})
            VALUES ({placeholders})
            RETURNING {surrogate_key}
        """).format(
            table=sql.Identifier(descriptor.dimension_table),
            columns=_identifiers(columns),
            placeholders=sql.SQL(', ').join(sql.Placeholder() * len(columns)),
            surrogate_key=sql.Identifier(descriptor.surrogate_key_column),
        )

        inserted = []
        with self._cursor() as cursor:
            for record in records:
                cursor.execute(query, (
                    (record.natural_key,)
                    + descriptor.tracked_values(record.attributes)
                    + (record.derived_metric, record.is_active, record.start_date,
                       record.end_date, record.last_updated)
                ))
                surrogate_key = cursor.fetchone()[0]
                logger.debug(
                    f"Inserted {descriptor.dimension_table} version {surrogate_key} for {record.natural_key}"
                )
                inserted.append(DimensionRecord(
                    surrogate_key=surrogate_key,
                    natural_key=record.natural_key,
                    attributes=dict(record.attributes),
                    derived_metric=record.derived_metric,
                    is_active=record.is_active,
                    start_date=record.start_date,
                    end_date=record.end_date,
                    last_updated=record.last_updated,
                ))
        return inserted

    def update_derived_metrics(
        self,
        descriptor: EntityDescriptor,
        metrics: Dict[int, int],
    ) -> int:
        query = sql.SQL("""
            UPDATE {table}
            SET {metric} = %s
            WHERE {surrogate_key} = %s AND is_active = TRUE
        """).format(
            table=sql.Identifier(descriptor.dimension_table),
            metric=sql.Identifier(descriptor.metric_column),
            surrogate_key=sql.Identifier(descriptor.surrogate_key_column),
        )
        updated = 0
        with self._cursor() as cursor:
            for surrogate_key, value in metrics.items():
                cursor.execute(query, (value, surrogate_key))
                updated += cursor.rowcount
        return updated

    # Facts

    def append_facts(self, facts: Iterable[FactRecord]) -> List[FactRecord]:
        query = sql.SQL("""
            INSERT INTO fact_sales ({columns})
            VALUES ({placeholders})
            RETURNING sale_sk
        """).format(
            columns=_identifiers(column for _, column in FACT_COLUMNS),
            placeholders=sql.SQL(', ').join(sql.Placeholder() * len(FACT_COLUMNS)),
        )

        appended = []
        with self._cursor() as cursor:
            for fact in facts:
                cursor.execute(query, tuple(getattr(fact, field) for field, _ in FACT_COLUMNS))
                sale_key = cursor.fetchone()[0]
                appended.append(FactRecord(
                    sale_key=sale_key,
                    **{field: getattr(fact, field) for field, _ in FACT_COLUMNS}
                ))
        return appended

    def fetch_facts(self, sale_date_after: Optional[date] = None) -> List[FactRecord]:
        query = sql.SQL("SELECT sale_sk, {columns} FROM fact_sales").format(
            columns=_identifiers(column for _, column in FACT_COLUMNS)
        )
        params = ()
        if sale_date_after is not None:
            query += sql.SQL(" WHERE sale_date > %s")
            params = (sale_date_after,)
        query += sql.SQL(" ORDER BY sale_sk")

        with self._cursor(dict_rows=True) as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()

        return [
            FactRecord(
                sale_key=row['sale_sk'],
                **{field: row[column] for field, column in FACT_COLUMNS}
            )
            for row in rows
        ]

    # Inventory

    def fetch_inventory(self, product_ids: Optional[Iterable[Any]] = None) -> List[InventorySnapshot]:
        query = sql.SQL("SELECT product_id, inventory_date, boh, eoh FROM inventory_daily")
        params = ()
        if product_ids is not None:
            query += sql.SQL(" WHERE product_id = ANY(%s)")
            params = (list(product_ids),)
        query += sql.SQL(" ORDER BY product_id, inventory_date")

        with self._cursor(dict_rows=True) as cursor:
            cursor.execute(query, params)
            return [InventorySnapshot(**row) for row in cursor.fetchall()]

    def append_inventory(self, snapshots: Iterable[InventorySnapshot]) -> int:
        rows = [(s.product_id, s.inventory_date, s.boh, s.eoh) for s in snapshots]
        if not rows:
            return 0
        with self._cursor() as cursor:
            execute_values(
                cursor,
                "INSERT INTO inventory_daily (product_id, inventory_date, boh, eoh) VALUES %s",
                rows,
            )
        logger.debug(f"Inserted {len(rows)} inventory_daily rows")
        return len(rows)

    # Audit

    def _row_to_audit(self, row: Dict[str, Any]) -> AuditRecord:
        return AuditRecord(
            audit_id=row['audit_id'],
            job_name=row['package_name'],
            run_start=row['run_start'],
            run_end=row['run_end'],
            status=row['status'],
            error_message=row['error_message'],
        )

    def insert_audit_record(self, record: AuditRecord) -> AuditRecord:
        with self._cursor() as cursor:
            cursor.execute(sql.SQL("""
                INSERT INTO etl_audit (package_name, run_start, run_end, status, error_message)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING audit_id
            """), (record.job_name, record.run_start, record.run_end, record.status, record.error_message))
            audit_id = cursor.fetchone()[0]

        return AuditRecord(
            audit_id=audit_id,
            job_name=record.job_name,
            run_start=record.run_start,
            run_end=record.run_end,
            status=record.status,
            error_message=record.error_message,
        )

    def fetch_audit_record(self, audit_id: int) -> Optional[AuditRecord]:
        with self._cursor(dict_rows=True) as cursor:
            cursor.execute(
                sql.SQL("SELECT {columns} FROM etl_audit WHERE audit_id = %s").format(columns=AUDIT_COLUMNS),
                (audit_id,)
            )
            row = cursor.fetchone()
        return self._row_to_audit(row) if row else None

    def complete_audit_record(
        self,
        audit_id: int,
        status: str,
        run_end: datetime,
        error_message: Optional[str] = None,
    ) -> bool:
        with self._cursor() as cursor:
            cursor.execute(sql.SQL("""
                UPDATE etl_audit
                SET status = %s, run_end = %s, error_message = %s
                WHERE audit_id = %s AND status = %s
            """), (status, run_end, error_message, audit_id, STATUS_RUNNING))
            return cursor.rowcount == 1

    def fetch_audit_records(self, job_name: str) -> List[AuditRecord]:
        with self._cursor(dict_rows=True) as cursor:
            cursor.execute(
                sql.SQL("""
                    SELECT {columns} FROM etl_audit
                    WHERE package_name = %s
                    ORDER BY run_start, audit_id
                """).format(columns=AUDIT_COLUMNS),
                (job_name,)
            )
            return [self._row_to_audit(row) for row in cursor.fetchall()]

    def fetch_last_successful_run(self, job_name: str) -> Optional[AuditRecord]:
        with self._cursor(dict_rows=True) as cursor:
            cursor.execute(
                sql.SQL("""
                    SELECT {columns} FROM etl_audit
                    WHERE package_name = %s AND status = %s AND run_end IS NOT NULL
                    ORDER BY run_end DESC, audit_id DESC
                    LIMIT 1
                """).format(columns=AUDIT_COLUMNS),
                (job_name, STATUS_SUCCESS)
            )
            row = cursor.fetchone()
        return self._row_to_audit(row) if row else None

    def close(self) -> None:
        """Close database connection."""
        if self.connection and not self.connection.closed:
            self.connection.close()
            logger.info("Warehouse database connection closed")
