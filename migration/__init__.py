"""
Legacy recipe migration pipeline.

Modules:
    artifacts: Timestamped phase directories and JSON artifact helpers
    positions: Position reconciliation for ordered ingredients/instructions
    phases: Extract, transform, validate, import and verify phase implementations
    runner: Phase orchestrator writing migration-summary.json
    cli: ``migrate`` command line entry point

Subpackages:
    extractors: Streaming legacy table export
    transformers: Ingredient parser, instruction cleaner, user/recipe transforms
    validators: Business-rule validation and duplicate detection
    loaders: Batch importer, idempotency tracking, progress and import reports
    verifiers: Post-migration verification against the import mappings

Architecture:
    Extract -> Transform -> Validate -> Import. Each phase reads the
    previous phase's artifacts from disk and writes its own, so any phase
    can be re-run on its own. Verify runs on request after Import.
"""

__all__ = [
    "artifacts",
    "positions",
    "phases",
    "runner",
    "cli",
]
