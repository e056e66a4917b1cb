"""
Pydantic schemas for legacy rows and migration artifacts.

Schemas:
    legacy: Rows as exported from the legacy database
    recipe: Transformed users/recipes plus the transformation, validation,
        duplicate and import reports written between phases
    verification: The post-migration verification report

Artifacts are serialized with camelCase keys:

    recipe.to_artifact()   # {"id": ..., "legacyId": 42, "authorId": ...}
"""

__all__ = [
    "legacy",
    "recipe",
    "verification",
]
