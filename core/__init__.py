"""
Core utilities and configuration for the legacy recipe migration.

This package provides foundational components used by every phase:

Modules:
    config: Migration settings from environment, .env.migration and JSON config
    exceptions: Error taxonomy (categories, retry policies, categorize)
    retry: Category-aware retry engine
    logging: Console logging setup and per-phase JSON-lines log files
    recovery: File-backed recovery/checkpoint store
    tunnel: SSH local port forward to the legacy database host
    database: Read-only, cursor-streaming legacy database client

Usage:
    from core.config import load_settings
    from core.exceptions import categorize, MigrationPhase
    from core.retry import with_auto_retry
    from core.tunnel import create_ssh_tunnel
    from core.database import create_database_client

Example:
    settings = load_settings()
    tunnel = await create_ssh_tunnel(tunnel_config)
    try:
        client = await create_database_client(db_config)
        count = await client.stream_query("SELECT * FROM recipes ORDER BY id", on_row)
    finally:
        await tunnel.close()
"""

__all__ = [
    "config",
    "database",
    "exceptions",
    "logging",
    "recovery",
    "retry",
    "tunnel",
]
