"""Change detection over the operational store (push or poll)."""
