"""
Core layer: configuration, SQLite stores, normalization, scoring and errors.
SQLite is the canonical source of truth for records and the prompt cache.
"""
