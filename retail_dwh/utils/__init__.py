"""Shared logging and process-lifecycle helpers."""
