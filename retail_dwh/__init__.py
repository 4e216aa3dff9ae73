"""
Retail warehouse load engine.

Reconciles full staging snapshots of products, customers and sales into
SCD Type 2 dimensions, an append-only sales fact table and a day-chained
inventory series, with every run recorded in an audit table.
"""

__version__ = "1.0.0"
