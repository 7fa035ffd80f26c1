"""
Durable presence store

This package provides:
1. SQLStore: SQLAlchemy-backed table of named, time-stamped entries
2. Entry: one presence record
3. RegistryError and its subclasses: errors raised by the registry
"""

from .store import (
    DuplicateKey,
    Entry,
    NameExists,
    RegistryError,
    SQLStore,
    StoreError,
    build_table,
)

__all__ = [
    'DuplicateKey',
    'Entry',
    'NameExists',
    'RegistryError',
    'SQLStore',
    'StoreError',
    'build_table',
]
