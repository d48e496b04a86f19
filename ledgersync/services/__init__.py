"""Synchronization, posting and reconciliation services."""
