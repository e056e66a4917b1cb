"""
Import reports: ``import-report.json`` and its readable twin ``import-report.md``.
"""

from datetime import datetime
from typing import Any, Dict, List

from schemas.recipe import ImportResult, ImportStats


def _success_rate(succeeded: int, total: int) -> float:
    return round(succeeded * 100 / total, 1) if total else 0.0


def entity_summary(results: List[ImportResult], skipped: int) -> Dict[str, Any]:
    succeeded = sum(1 for r in results if r.success)
    errors_by_type: Dict[str, int] = {}
    for result in results:
        if not result.success:
            key = result.error_type or "unknown"
            errors_by_type[key] = errors_by_type.get(key, 0) + 1
    return {
        "total": len(results),
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "skipped": skipped,
        "withRetries": sum(1 for r in results if r.success and r.retry_count),
        "successRate": _success_rate(succeeded, len(results)),
        "errorsByType": errors_by_type,
        "failures": [r.to_artifact() for r in results if not r.success],
    }


def build_import_report(
    input_dir: str,
    config: Dict[str, Any],
    stats: ImportStats,
    results: Dict[str, List[ImportResult]],
    skipped: List[Dict[str, Any]],
    mappings: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Assemble the JSON import report.

    ``results`` maps entity name (``users``, ``recipes``) to the per-record
    outcomes in the order they were sent.
    """
    everything = [r for entity in results.values() for r in entity]
    duration_s = stats.duration / 1000
    return {
        "generatedAt": datetime.utcnow().isoformat() + "Z",
        "inputDir": input_dir,
        "config": config,
        "stats": stats.to_artifact(),
        "performance": {
            "recordsPerSecond": round(stats.total_records / duration_s, 2) if duration_s else 0.0,
            "averageBatchDuration": round(stats.average_batch_duration, 1),
        },
        **{
            name: entity_summary(entity_results, sum(1 for s in skipped if s["type"] == name))
            for name, entity_results in results.items()
        },
        "successes": [r.to_artifact() for r in everything if r.success],
        "failures": [r.to_artifact() for r in everything if not r.success],
        "skipped": skipped,
        "mappings": mappings,
    }


def render_import_report(report: Dict[str, Any], entities=("users", "recipes")) -> str:
    """Markdown rendering of a report built by ``build_import_report``."""
    config = report.get("config", {})
    stats = report.get("stats", {})
    lines = [
        "# Import Report",
        "",
        f"Generated: {report.get('generatedAt', '')}",
        f"Input: {report.get('inputDir', '')}",
        f"Mode: {'dry run' if config.get('dryRun') else 'live'} (batch size {config.get('batchSize')})",
        "",
        "## Summary",
        "",
        "| Entity | Total | Succeeded | Failed | Skipped | Success rate |",
        "|--------|------:|----------:|-------:|--------:|-------------:|",
    ]
    for name in entities:
        summary = report.get(name)
        if summary is None:
            continue
        lines.append(
            f"| {name.capitalize()} | {summary['total']} | {summary['succeeded']} | {summary['failed']} "
            f"| {summary['skipped']} | {summary['successRate']}% |"
        )

    performance = report.get("performance", {})
    lines += [
        "",
        f"Duration: {stats.get('duration', 0) / 1000:.1f}s, "
        f"{performance.get('recordsPerSecond', 0)} records/s, "
        f"average batch {performance.get('averageBatchDuration', 0)}ms",
    ]

    errors_by_type = stats.get("errorsByType") or {}
    if errors_by_type:
        lines += ["", "## Errors by Type", ""]
        for error_type, count in sorted(errors_by_type.items()):
            lines.append(f"- {error_type}: {count}")

    for name in entities:
        failures = (report.get(name) or {}).get("failures", [])
        if not failures:
            continue
        lines += ["", f"## Failed {name.capitalize()}", ""]
        for failure in failures:
            lines += [
                f"- Legacy ID: {failure['legacyId']}",
                f"  Error Type: {failure.get('errorType') or 'unknown'}",
                f"  Error: {failure.get('error')}",
                f"  Retry Count: {failure.get('retryCount', 0)}",
            ]

    if not report.get("failures"):
        lines += ["", "No records failed."]

    return "\n".join(lines) + "\n"
