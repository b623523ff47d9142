"""Ingest historical event-archive sites into normalized work catalogs."""
