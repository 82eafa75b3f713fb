"""Data layer modules for storage and services."""
