"""
CLI runner module.

Provides commands:
- init-config: Write a default config file
- trigger: Queue a precision search
- work: Process queued searches (one round or as a daemon)
- status: Queue item, transaction history or queue counts
- retry-failed: Re-queue failed searches
- recover-stale: List searches whose lease expired
- mail-sync-completed: Report a finished mail sync
- serve: Run the JSON API
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
