"""
rollcall: a presence registry backed by a SQL table.

Named entities register, heartbeat while they are running and are reaped
once they go quiet for longer than the inactive threshold.
"""

from .config import RollcallConfig, load_config
from .hall import PresenceRegistry, open_registry
from .registry import DuplicateKey, Entry, NameExists, RegistryError, SQLStore, StoreError

__version__ = '0.1.0'
__all__ = [
    'DuplicateKey',
    'Entry',
    'NameExists',
    'PresenceRegistry',
    'RegistryError',
    'RollcallConfig',
    'SQLStore',
    'StoreError',
    'load_config',
    'open_registry',
]
