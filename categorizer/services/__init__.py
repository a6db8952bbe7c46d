"""Services package: category catalog, work queue, ingestion fan-out, and suggestion validation."""
