"""
Post-migration verification.

Modules:
    post_migration: Counts, spot checks, field population, text artifacts
        and ownership of imported recipes, plus the Markdown report
"""

__all__ = ["post_migration"]
