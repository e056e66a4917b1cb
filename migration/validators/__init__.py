"""Recipe validation and duplicate detection."""

__all__ = ["recipe_validator", "duplicate_detector"]
