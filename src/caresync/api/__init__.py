"""HTTP API for operating the sync service."""
