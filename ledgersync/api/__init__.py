"""HTTP API for operating the sync engine."""
