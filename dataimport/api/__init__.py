"""HTTP API for the import engine."""
