"""Core application wiring: shared state, connectivity and dependency injection."""
