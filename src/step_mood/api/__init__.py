"""HTTP ingestion and status API."""
