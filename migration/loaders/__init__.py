"""
Loaders for the target system.

Modules:
    batch_importer: Batched HTTP import with retries, dry run and stop on error
    idempotency: Persistent legacy-id mappings used to skip imported records
    progress: Completion percentage, throughput and ETA of a running import
    dry_run: Local "would import" checks and the dry-run report
    import_report: JSON and Markdown import reports
"""

__all__ = ["batch_importer", "idempotency", "progress", "dry_run", "import_report"]
