"""
Warehouse Module

This module provides the components that load and maintain the warehouse:
SCD Type 2 dimension reconciliation, fact loading, the daily inventory
rollup, derived dimension metrics and audit-driven run bookkeeping.
"""
