"""Service layer: sync engine and domain services."""
