"""
Post-migration verification.

Checks what the import phase recorded against what the validate phase said
should be imported:

1. record counts per entity, with the legacy export counts alongside
2. spot checks on an evenly spread sample of imported recipes
3. population of required and optional recipe fields
4. HTML and mis-decoded text left in imported recipes
5. every imported recipe owned by an imported user

The target API is not queried. The id mappings written by the importer are
the record of what it accepted.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Set

from pydantic import ValidationError

from migration.loaders.idempotency import IdempotencyChecker
from migration.positions import validate_positions
from schemas.recipe import RecipeMapping, TransformedRecipe
from schemas.verification import (
    CheckStatus,
    FieldPopulationCheck,
    OwnershipIssue,
    RecordCountComparison,
    SpotCheckResult,
    TextArtifactCheck,
    VerificationReport,
    VerificationSummary,
)

logger = logging.getLogger(__name__)

HTML_PATTERNS = [re.compile(p) for p in (r"<[^>]+>", r"&lt;", r"&gt;", r"&amp;", r"&nbsp;", r"&quot;")]
# UTF-8 text decoded as Latin-1 / cp1252
ENCODING_PATTERNS = ("â€™", "â€œ", "â€", "Ã©", "Ã¨", "Ã ")

COUNT_MATCH_PERCENT = 99.0
COUNT_WARNING_PERCENT = 90.0
REQUIRED_POPULATION_PERCENT = 99.0
OPTIONAL_POPULATION_PERCENT = 50.0

REQUIRED_FIELDS = ("title", "ingredients", "instructions", "authorId")
OPTIONAL_FIELDS = ("description", "imageUrl", "sourceUrl", "prepTime", "cookTime", "servings")


def has_html_artifacts(text: Optional[str]) -> bool:
    if not text:
        return False
    return any(pattern.search(text) for pattern in HTML_PATTERNS)


def has_encoding_issues(text: Optional[str]) -> bool:
    if not text:
        return False
    return any(token in text for token in ENCODING_PATTERNS)


def sample_evenly(items: Sequence[Any], count: int) -> List[Any]:
    """``count`` items spread across ``items``, first one included."""
    if count <= 0 or not items:
        return []
    if count >= len(items):
        return list(items)
    step = len(items) / count
    return [items[int(i * step)] for i in range(count)]


def count_status(percentage: float) -> CheckStatus:
    if percentage >= COUNT_MATCH_PERCENT:
        return CheckStatus.PASS
    if percentage >= COUNT_WARNING_PERCENT:
        return CheckStatus.WARNING
    return CheckStatus.FAIL


def compare_counts(
    entity: str,
    expected_ids: Sequence[int],
    imported_ids: Set[int],
    legacy_count: Optional[int] = None
) -> RecordCountComparison:
    expected = list(dict.fromkeys(expected_ids))
    missing = [legacy_id for legacy_id in expected if legacy_id not in imported_ids]
    imported = len(expected) - len(missing)
    percentage = round(imported * 100 / len(expected), 2) if expected else 100.0
    return RecordCountComparison(
        entity=entity,
        legacy_count=legacy_count,
        expected_count=len(expected),
        imported_count=imported,
        difference=imported - len(expected),
        percentage_match=percentage,
        status=count_status(percentage),
        missing_legacy_ids=missing
    )


def _populated(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, dict)):
        return bool(value.strip() if isinstance(value, str) else value)
    return True


def check_field_population(recipes: Sequence[Dict[str, Any]]) -> List[FieldPopulationCheck]:
    checks = []
    total = len(recipes)
    for field, required in [(f, True) for f in REQUIRED_FIELDS] + [(f, False) for f in OPTIONAL_FIELDS]:
        populated = sum(1 for r in recipes if _populated(r.get(field)))
        rate = round(populated * 100 / total, 2) if total else 100.0
        if required:
            status = CheckStatus.PASS if rate >= REQUIRED_POPULATION_PERCENT else CheckStatus.FAIL
        else:
            status = CheckStatus.PASS if rate >= OPTIONAL_POPULATION_PERCENT else CheckStatus.WARNING
        checks.append(
            FieldPopulationCheck(
                field=field, required=required, populated=populated, total=total, population_rate=rate, status=status
            )
        )
    return checks


def find_text_artifacts(recipe: Dict[str, Any]) -> List[str]:
    found = []
    for field in ("title", "description"):
        value = recipe.get(field)
        if has_html_artifacts(value):
            found.append(f"HTML in {field}")
        if has_encoding_issues(value):
            found.append(f"Encoding issues in {field}")
    for index, instruction in enumerate(recipe.get("instructions") or []):
        content = instruction.get("content")
        if has_html_artifacts(content):
            found.append(f"HTML in instruction {index + 1}")
        if has_encoding_issues(content):
            found.append(f"Encoding issues in instruction {index + 1}")
    return found


def artifact_severity(count: int) -> str:
    if count > 3:
        return "high"
    if count > 1:
        return "medium"
    return "low"


def spot_check_recipe(recipe: Dict[str, Any], mapping: RecipeMapping, user_ids: Set[str]) -> SpotCheckResult:
    title = recipe.get("title") or ""
    artifacts = find_text_artifacts(recipe)
    issues = []

    try:
        model = TransformedRecipe.parse_obj(recipe)
        ordered = validate_positions(model.ingredients).is_valid and validate_positions(model.instructions).is_valid
    except ValidationError:
        model = None
        ordered = False
        issues.append("Record no longer matches the recipe schema")

    checks = {
        "titleMatch": mapping.title == title,
        "hasIngredients": bool(recipe.get("ingredients")),
        "hasInstructions": bool(recipe.get("instructions")),
        "authorMapped": recipe.get("authorId") in user_ids,
        "orderingPreserved": ordered,
        "noHtmlArtifacts": not any(a.startswith("HTML") for a in artifacts),
        "noEncodingIssues": not any(a.startswith("Encoding") for a in artifacts),
    }

    if not checks["titleMatch"]:
        issues.append(f"Title mismatch: {mapping.title!r} recorded, {title!r} validated")
    if not checks["hasIngredients"]:
        issues.append("No ingredients")
    if not checks["hasInstructions"]:
        issues.append("No instructions")
    if not checks["authorMapped"]:
        issues.append("Author is not an imported user")
    if model is not None and not ordered:
        issues.append("Ingredient or instruction positions are not contiguous from 0")
    if not checks["noHtmlArtifacts"]:
        issues.append("HTML artifacts in text fields")
    if not checks["noEncodingIssues"]:
        issues.append("Encoding issues in text fields")

    return SpotCheckResult(
        legacy_id=mapping.legacy_id,
        recipe_id=mapping.new_uuid,
        title=title,
        checks=checks,
        issues=issues,
        status=CheckStatus.PASS if not issues else CheckStatus.FAIL
    )


def summarize(report: VerificationReport) -> VerificationSummary:
    critical: List[str] = []
    recommendations: List[str] = []
    passed = failed = warnings = 0

    for comparison in report.record_counts:
        if comparison.status == CheckStatus.PASS:
            passed += 1
        elif comparison.status == CheckStatus.WARNING:
            warnings += 1
        else:
            failed += 1
            critical.append(
                f"{comparison.entity} count mismatch: {comparison.imported_count}/{comparison.expected_count} imported"
            )

    for check in report.spot_checks:
        if check.status == CheckStatus.PASS:
            passed += 1
        else:
            failed += 1
            critical.append(f"Recipe {check.legacy_id}: {check.issues[0]}")

    for check in report.field_population:
        if check.status == CheckStatus.PASS:
            passed += 1
        elif check.status == CheckStatus.WARNING:
            warnings += 1
        else:
            failed += 1
            critical.append(f"Required field {check.field} only {check.population_rate}% populated")

    if report.text_artifacts:
        warnings += 1
        recommendations.append(
            f"{len(report.text_artifacts)} recipes still contain HTML or encoding artifacts; review and clean them."
        )

    if report.ownership_issues:
        failed += 1
        critical.append(f"{len(report.ownership_issues)} recipes are not owned by an imported user")

    if failed:
        status = CheckStatus.FAIL
        recommendations.append("Verification failed. Address the critical issues before using the migrated data.")
    elif warnings:
        status = CheckStatus.WARNING
        recommendations.append("Verification passed with warnings. Review them before going live.")
    else:
        status = CheckStatus.PASS
        recommendations.append("Verification passed.")

    return VerificationSummary(
        overall_status=status,
        total_checks=passed + failed + warnings,
        passed_checks=passed,
        failed_checks=failed,
        warning_checks=warnings,
        critical_issues=critical,
        recommendations=recommendations
    )


class PostMigrationVerifier:
    """Compare validated records with the import mappings."""

    def __init__(self, spot_check_count: int = 10):
        self.spot_check_count = spot_check_count

    def verify(
        self,
        users: Sequence[Dict[str, Any]],
        recipes: Sequence[Dict[str, Any]],
        mappings: IdempotencyChecker,
        legacy_counts: Optional[Dict[str, int]] = None,
        validated_dir: str = "",
    ) -> VerificationReport:
        """
        Args:
            users: validated users (``users-normalized.json``)
            recipes: PASS and WARN recipes, the ones the importer was given
            mappings: loaded id mappings of the import phase
            legacy_counts: ``recordCounts`` from the raw export metadata
        """
        legacy_counts = legacy_counts or {}
        imported_users = {i for i, m in mappings.users.items() if m.migrated}
        imported_recipes = {i for i, m in mappings.recipes.items() if m.migrated}
        user_ids = {m.new_uuid for m in mappings.users.values() if m.migrated}

        record_counts = [
            compare_counts("users", [u.get("legacyId") for u in users], imported_users, legacy_counts.get("users")),
            compare_counts("recipes", [r.get("legacyId") for r in recipes], imported_recipes, legacy_counts.get("recipes")),
        ]
        for comparison in record_counts:
            logger.info(
                f"{comparison.entity}: {comparison.imported_count}/{comparison.expected_count} imported "
                f"({comparison.percentage_match}%, legacy rows: {comparison.legacy_count})"
            )

        imported = [r for r in recipes if r.get("legacyId") in imported_recipes]

        spot_checks = [
            spot_check_recipe(recipe, mappings.recipes[recipe["legacyId"]], user_ids)
            for recipe in sample_evenly(imported, self.spot_check_count)
        ]
        logger.info(
            f"Spot checks: {sum(1 for c in spot_checks if c.status == CheckStatus.PASS)}/{len(spot_checks)} passed"
        )

        text_artifacts = []
        for recipe in imported:
            found = find_text_artifacts(recipe)
            if found:
                text_artifacts.append(
                    TextArtifactCheck(
                        legacy_id=recipe["legacyId"],
                        title=recipe.get("title") or "",
                        artifacts=found,
                        severity=artifact_severity(len(found))
                    )
                )

        ownership_issues = [
            OwnershipIssue(
                legacy_id=recipe["legacyId"],
                author_id=recipe.get("authorId"),
                reason="Author is not an imported user"
            )
            for recipe in imported
            if recipe.get("authorId") not in user_ids
        ]

        report = VerificationReport(
            validated_dir=validated_dir,
            mapping_dir=str(mappings.mapping_dir),
            record_counts=record_counts,
            spot_checks=spot_checks,
            field_population=check_field_population(imported),
            text_artifacts=text_artifacts,
            ownership_issues=ownership_issues,
            summary=VerificationSummary(overall_status=CheckStatus.PASS)
        )
        report.summary = summarize(report)
        logger.info(f"Verification {report.summary.overall_status}: {len(report.summary.critical_issues)} critical issues")
        return report


def render_verification_report(report: VerificationReport) -> str:
    """Markdown version of ``verification-report.json``."""
    summary = report.summary
    lines = [
        "# Verification Report",
        "",
        f"**Overall Status:** {CheckStatus(summary.overall_status).value.upper()}",
        f"**Validated data:** {report.validated_dir}",
        f"**Mappings:** {report.mapping_dir}",
        "",
        "## Summary",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Total Checks | {summary.total_checks} |",
        f"| Passed | {summary.passed_checks} |",
        f"| Failed | {summary.failed_checks} |",
        f"| Warnings | {summary.warning_checks} |",
        "",
        "## Record Count Comparison",
        "",
        "| Entity | Legacy | Expected | Imported | Match | Status |",
        "|--------|-------:|---------:|---------:|------:|--------|",
    ]
    for c in report.record_counts:
        legacy = "n/a" if c.legacy_count is None else c.legacy_count
        lines.append(
            f"| {c.entity} | {legacy} | {c.expected_count} | {c.imported_count} | {c.percentage_match}% | {c.status} |"
        )

    passed = sum(1 for c in report.spot_checks if c.status == CheckStatus.PASS)
    lines += ["", "## Spot Checks", "", f"Passed: {passed}/{len(report.spot_checks)}"]
    for check in report.spot_checks:
        if check.status != CheckStatus.PASS:
            lines.append(f"- Recipe {check.legacy_id}: {check.title}")
            lines += [f"  - {issue}" for issue in check.issues]

    lines += ["", "## Field Population", ""]
    for check in report.field_population:
        kind = "required" if check.required else "optional"
        lines.append(f"- {check.field}: {check.population_rate}% populated ({kind}, {check.status})")

    if report.text_artifacts:
        lines += ["", "## HTML and Encoding Artifacts", ""]
        for artifact in report.text_artifacts:
            lines.append(f"- Recipe {artifact.legacy_id} ({artifact.severity}): {', '.join(artifact.artifacts)}")

    if summary.critical_issues:
        lines += ["", "## Critical Issues", ""]
        lines += [f"{n}. {issue}" for n, issue in enumerate(summary.critical_issues, start=1)]

    lines += ["", "## Recommendations", ""]
    lines += [f"{n}. {text}" for n, text in enumerate(summary.recommendations, start=1)]
    return "\n".join(lines) + "\n"
