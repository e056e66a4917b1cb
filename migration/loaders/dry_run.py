"""
Dry-run checks: what a live import would send and what it would flag.

Nothing here talks to the target API. Recipes go through the same business
rules as the validate phase; users get the checks the target applies to
accounts. Every record ends up as a DryRunEntry in ``dry-run-report.json``.
"""

import re
from typing import Any, Dict, List

from pydantic import ValidationError

from migration.validators.recipe_validator import UUID_PATTERN, RecipeValidator
from schemas.recipe import DryRunCounts, DryRunEntry, TransformedUser

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

ALREADY_IMPORTED = "Already imported; a live run would skip this record"

_recipe_validator = RecipeValidator()


def _schema_errors(error: ValidationError) -> List[str]:
    return [f"{'.'.join(str(p) for p in err['loc']) or 'record'}: {err['msg']}" for err in error.errors()]


def check_recipe(record: Dict[str, Any]) -> DryRunEntry:
    result = _recipe_validator.validate(record)
    errors = [f"{issue.field}: {issue.message}" for issue in result.errors]
    return DryRunEntry(
        legacy_id=record.get("legacyId", -1),
        label=record.get("title") or "",
        valid=not errors,
        errors=errors,
        warnings=[w.message for w in result.warnings],
        would_import=not errors
    )


def user_warnings(user: TransformedUser) -> List[str]:
    warnings = []
    if not user.image:
        warnings.append("No profile image")
    if user.name == user.email.split("@")[0]:
        warnings.append("Name is derived from the email address")
    return warnings


def check_user(record: Dict[str, Any]) -> DryRunEntry:
    legacy_id = record.get("legacyId", -1)
    label = record.get("email") or ""
    try:
        user = TransformedUser.parse_obj(record)
    except ValidationError as e:
        return DryRunEntry(legacy_id=legacy_id, label=label, valid=False, errors=_schema_errors(e), would_import=False)

    errors = []
    if not user.name.strip():
        errors.append("name: Name is required")
    if not EMAIL_PATTERN.match(user.email):
        errors.append("email: Invalid email format")
    if not UUID_PATTERN.match(user.id):
        errors.append("id: User id is not a valid UUID")

    return DryRunEntry(
        legacy_id=legacy_id,
        label=label,
        valid=not errors,
        errors=errors,
        warnings=user_warnings(user),
        would_import=not errors
    )


def mark_already_imported(entry: DryRunEntry) -> DryRunEntry:
    entry.already_imported = True
    entry.would_import = False
    entry.warnings.append(ALREADY_IMPORTED)
    return entry


def count_entries(entries: List[DryRunEntry]) -> DryRunCounts:
    return DryRunCounts(
        total=len(entries),
        valid=sum(1 for e in entries if e.valid),
        invalid=sum(1 for e in entries if not e.valid),
        with_warnings=sum(1 for e in entries if e.warnings),
        would_import=sum(1 for e in entries if e.would_import)
    )


def build_dry_run_report(entries: Dict[str, List[DryRunEntry]]) -> Dict[str, Any]:
    """``{"summary": {entity: counts}, entity: [entries]}`` for each entity."""
    return {
        "summary": {name: count_entries(items).to_artifact() for name, items in entries.items()},
        **{name: [e.to_artifact() for e in items] for name, items in entries.items()},
    }
