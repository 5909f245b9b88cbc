"""
Database migrations module.

Versioned, ordered migrations for the queue side of the state store.
Migrations are applied in order and tracked in a migrations table.
"""

from .runner import MigrationRunner, get_all_migrations

__all__ = ["MigrationRunner", "get_all_migrations"]
