"""
Business-rule validation for transformed recipes.

Each record is checked against the recipe schema first and then against
business rules. Rules append critical errors or warnings; the PASS/WARN/FAIL
status is always derived from those lists (see ``ValidationResult.status``).
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Set, Union

from pydantic import ValidationError

from schemas.recipe import (
    NIL_UUID,
    Severity,
    TransformedRecipe,
    ValidationIssue,
    ValidationResult,
    ValidationStats,
    ValidationStatus,
    ValidationWarning,
)

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE
)

MAX_TITLE_LENGTH = 500
MIN_INSTRUCTION_LENGTH = 10

RecordLike = Union[TransformedRecipe, Dict[str, Any]]


@dataclass
class BatchValidationResult:
    results: List[ValidationResult] = field(default_factory=list)
    stats: ValidationStats = field(default_factory=ValidationStats)

    def by_status(self, status: ValidationStatus) -> List[ValidationResult]:
        return [r for r in self.results if r.status == status]


def _as_dict(record: RecordLike) -> Dict[str, Any]:
    if isinstance(record, TransformedRecipe):
        return record.to_artifact()
    return dict(record)


def _is_integer(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and value.is_integer()


def summarize_results(results: List[ValidationResult]) -> ValidationStats:
    """Batch counters, always recomputed from the per-record results."""
    stats = ValidationStats(total=len(results))
    for result in results:
        if result.status == ValidationStatus.PASS:
            stats.passed += 1
        elif result.status == ValidationStatus.WARN:
            stats.warned += 1
        else:
            stats.failed += 1
        stats.critical_errors += sum(1 for e in result.errors if e.severity == Severity.CRITICAL)
        stats.warning_count += len(result.warnings)
    return stats


class RecipeValidator:
    """Validate transformed recipes. Stateless; one instance can be reused."""

    def validate(self, record: RecordLike) -> ValidationResult:
        data = _as_dict(record)
        result = ValidationResult(
            recipe_id=str(data["id"]) if data.get("id") is not None else None,
            legacy_id=data.get("legacyId") if _is_integer(data.get("legacyId")) else None,
            title=data.get("title") if isinstance(data.get("title"), str) else None
        )

        schema_fields = self._check_schema(data, result)

        self._check_title(data, result, schema_fields)
        self._check_ingredients(data, result, schema_fields)
        self._check_instructions(data, result, schema_fields)
        for name in ("servings", "prepTime", "cookTime"):
            self._check_non_negative_integer(data, name, result, schema_fields)
        self._check_author(data, result, schema_fields)
        self._check_optional_fields(data, result)

        return result

    def validate_batch(self, records: List[RecordLike]) -> BatchValidationResult:
        results = [self.validate(record) for record in records]
        batch = BatchValidationResult(results=results, stats=summarize_results(results))

        logger.info(
            f"Validated {batch.stats.total} recipes: {batch.stats.passed} pass, "
            f"{batch.stats.warned} warn, {batch.stats.failed} fail"
        )
        return batch

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _check_schema(self, data: Dict[str, Any], result: ValidationResult) -> Set[str]:
        """Record schema errors; returns the top-level fields they concern."""
        try:
            TransformedRecipe.parse_obj(data)
            return set()
        except ValidationError as e:
            fields: Set[str] = set()
            for err in e.errors():
                loc = [str(part) for part in err["loc"]]
                top = loc[0] if loc else "record"
                fields.add(top)
                result.errors.append(
                    ValidationIssue(field=".".join(loc) or "record", message=err["msg"], severity=Severity.CRITICAL)
                )
            return fields

    # ------------------------------------------------------------------
    # Business rules
    # ------------------------------------------------------------------

    def _check_title(self, data, result, skip):
        if "title" in skip:
            return
        title = (data.get("title") or "").strip()
        if not title:
            result.errors.append(ValidationIssue(field="title", message="Title is required"))
        elif len(title) > MAX_TITLE_LENGTH:
            result.errors.append(
                ValidationIssue(field="title", message=f"Title must be at most {MAX_TITLE_LENGTH} characters")
            )

    def _check_ingredients(self, data, result, skip):
        if "ingredients" in skip:
            return
        ingredients = data.get("ingredients") or []
        if not ingredients:
            result.errors.append(ValidationIssue(field="ingredients", message="At least one ingredient is required"))
            return

        unparsed = 0
        for index, ingredient in enumerate(ingredients):
            if not (ingredient.get("name") or "").strip():
                result.errors.append(
                    ValidationIssue(field=f"ingredients[{index}].name", message="Ingredient name is required")
                )
            amount = ingredient.get("amount")
            if isinstance(amount, (int, float)) and amount < 0:
                result.errors.append(
                    ValidationIssue(field=f"ingredients[{index}].amount", message="Ingredient amount cannot be negative")
                )
            if ingredient.get("parseSuccess") is False:
                unparsed += 1

        if unparsed:
            result.warnings.append(
                ValidationWarning(
                    field="ingredients",
                    message=f"{unparsed} ingredient(s) could not be parsed",
                    suggestion="Review the original text kept in the ingredient notes"
                )
            )

    def _check_instructions(self, data, result, skip):
        if "instructions" in skip:
            return
        instructions = data.get("instructions") or []
        if not instructions:
            result.errors.append(ValidationIssue(field="instructions", message="At least one instruction is required"))
            return

        for index, instruction in enumerate(instructions):
            content = (instruction.get("content") or "").strip()
            if not content:
                result.errors.append(
                    ValidationIssue(field=f"instructions[{index}].content", message="Instruction content is required")
                )
            elif len(content) < MIN_INSTRUCTION_LENGTH:
                result.warnings.append(
                    ValidationWarning(
                        field=f"instructions[{index}].content",
                        message="Instruction is unusually short",
                        suggestion="Check that the step was not truncated"
                    )
                )

    def _check_non_negative_integer(self, data, name, result, skip):
        if name in skip:
            return
        value = data.get(name)
        if value is None:
            return
        if not _is_integer(value):
            result.errors.append(ValidationIssue(field=name, message=f"{name} must be an integer"))
        elif value < 0:
            result.errors.append(ValidationIssue(field=name, message=f"{name} cannot be negative"))

    def _check_author(self, data, result, skip):
        if "authorId" in skip:
            return
        author_id = data.get("authorId")
        if not author_id:
            result.errors.append(ValidationIssue(field="authorId", message="Author is required"))
        elif author_id == NIL_UUID:
            result.errors.append(
                ValidationIssue(field="authorId", message="Author could not be mapped from the legacy user")
            )
        elif not UUID_PATTERN.match(str(author_id)):
            result.errors.append(ValidationIssue(field="authorId", message="Author id is not a valid UUID"))

    def _check_optional_fields(self, data, result):
        if not (data.get("description") or "").strip():
            result.warnings.append(
                ValidationWarning(field="description", message="Recipe has no description")
            )
        if not data.get("imageUrl") and not (data.get("imageMetadata") or {}).get("headerImage"):
            result.warnings.append(
                ValidationWarning(field="imageUrl", message="Recipe has no image")
            )
        if not data.get("sourceUrl"):
            result.warnings.append(
                ValidationWarning(field="sourceUrl", message="Recipe has no source URL")
            )
        if not data.get("tags"):
            result.warnings.append(
                ValidationWarning(field="tags", message="Recipe has no tags", suggestion="Add tags after import")
            )
