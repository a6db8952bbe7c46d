"""Expense categorizer: idempotent ingestion, queued AI categorization, and user validation of suggestions."""
