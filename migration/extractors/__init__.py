"""Legacy database extractors."""

__all__ = ["legacy_extractor"]
