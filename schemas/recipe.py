"""
Pydantic schemas for transformed records and the reports that travel
between phases.

Artifacts are written with camelCase keys (``by_alias=True``), which is the
shape the target API consumes; Python code uses the snake_case attributes.
"""

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum

NIL_UUID = "00000000-0000-0000-0000-000000000000"


class ArtifactModel(BaseModel):
    """Base model serialised with camelCase keys."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        use_enum_values = True

    def to_artifact(self) -> Dict[str, Any]:
        return self.dict(by_alias=True)


# ============================================================================
# Recipe content
# ============================================================================

class Ingredient(ArtifactModel):
    id: str
    name: str
    amount: float = 0
    unit: str = ""
    display_amount: Optional[str] = None
    notes: Optional[str] = None
    category: Optional[str] = None
    position: int = 0


class ParsedIngredient(Ingredient):
    """Ingredient plus the outcome of free-text parsing"""
    parse_success: bool = True
    original_text: str = ""


class Instruction(ArtifactModel):
    id: str
    step: int
    content: str
    duration: Optional[int] = None
    position: int = 0


class CleanedInstruction(Instruction):
    original_html: Optional[str] = None


class ImageRef(ArtifactModel):
    blob_key: str
    filename: str


class RecipeImages(ArtifactModel):
    header_image: Optional[ImageRef] = None
    original_photos: List[ImageRef] = Field(default_factory=list)


class TransformedRecipe(ArtifactModel):
    """Recipe in the target schema, still carrying its legacy id"""

    id: str
    title: str
    description: Optional[str] = None
    ingredients: List[ParsedIngredient] = Field(default_factory=list)
    instructions: List[CleanedInstruction] = Field(default_factory=list)
    prep_time: Optional[int] = None
    cook_time: Optional[int] = None
    servings: Optional[int] = None
    difficulty: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    notes: Optional[str] = None
    image_url: Optional[str] = None
    original_recipe_photo_urls: List[str] = Field(default_factory=list)
    source_url: Optional[str] = None
    author_id: str
    visibility: str = "public"
    comments_enabled: bool = True
    view_count: int = 0
    like_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    legacy_id: int
    image_metadata: Optional[RecipeImages] = None


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class TransformedUser(ArtifactModel):
    id: str
    name: str
    email: str
    email_verified: Optional[datetime] = None
    password: Optional[str] = None
    image: Optional[str] = None
    role: UserRole = UserRole.USER
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    legacy_id: int


class UserMapping(ArtifactModel):
    legacy_id: int
    new_uuid: str
    email: str
    migrated: bool = False
    migrated_at: str


class RecipeMapping(ArtifactModel):
    legacy_id: int
    new_uuid: str
    title: str
    migrated: bool = False
    migrated_at: str


# ============================================================================
# Transformation reporting
# ============================================================================

class TransformError(ArtifactModel):
    phase: str  # 'user' | 'recipe'
    record_id: int
    field: Optional[str] = None
    error: str
    original_data: Optional[Dict[str, Any]] = None


class UnparseableItem(ArtifactModel):
    recipe_id: int
    recipe_title: str
    type: str  # 'ingredient' | 'instruction'
    original_text: str
    reason: str


class TransformationStats(ArtifactModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    ingredients_parsed: int = 0
    ingredients_unparsed: int = 0
    instructions_cleaned: int = 0
    instructions_empty: int = 0
    time_conversions: int = 0
    user_mappings: int = 0
    unmapped_users: int = 0
    images_found: int = 0
    original_photos_found: int = 0


class UserTransformationStats(ArtifactModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    admin_count: int = 0
    user_count: int = 0


# ============================================================================
# Validation
# ============================================================================

class ValidationStatus(str, Enum):
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"


class ValidationIssue(ArtifactModel):
    field: str
    message: str
    severity: Severity = Severity.CRITICAL


class ValidationWarning(ArtifactModel):
    field: str
    message: str
    suggestion: Optional[str] = None


class ValidationResult(ArtifactModel):
    """
    Outcome of validating one record.

    ``status`` is derived from the accumulated lists and never set directly.
    """
    recipe_id: Optional[str] = None
    legacy_id: Optional[int] = None
    title: Optional[str] = None
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationWarning] = Field(default_factory=list)

    @property
    def status(self) -> ValidationStatus:
        if any(e.severity == Severity.CRITICAL for e in self.errors):
            return ValidationStatus.FAIL
        if not self.errors and not self.warnings:
            return ValidationStatus.PASS
        return ValidationStatus.WARN

    def to_artifact(self) -> Dict[str, Any]:
        data = super().to_artifact()
        data["status"] = self.status.value
        return data


class ValidationStats(ArtifactModel):
    total: int = 0
    passed: int = 0
    warned: int = 0
    failed: int = 0
    critical_errors: int = 0
    warning_count: int = 0


# ============================================================================
# Import
# ============================================================================

class ImportErrorType(str, Enum):
    VALIDATION = "validation"
    NETWORK = "network"
    SERVER = "server"
    UNKNOWN = "unknown"


class ImportResult(ArtifactModel):
    success: bool
    legacy_id: int
    new_id: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[ImportErrorType] = None
    retry_count: int = 0


class BatchImportResult(ArtifactModel):
    batch_number: int
    total_batches: int
    results: List[ImportResult] = Field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0
    duration: float = 0  # milliseconds


class ImportStats(ArtifactModel):
    total_records: int = 0
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    duration: float = 0  # milliseconds
    average_batch_duration: float = 0
    errors_by_type: Dict[str, int] = Field(default_factory=dict)


class DryRunEntry(ArtifactModel):
    """What a live import would do with one record."""
    legacy_id: int
    label: str = ""  # recipe title or user email
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    would_import: bool
    already_imported: bool = False


class DryRunCounts(ArtifactModel):
    total: int = 0
    valid: int = 0
    invalid: int = 0
    with_warnings: int = 0
    would_import: int = 0


# ============================================================================
# Duplicate detection
# ============================================================================

class DuplicateConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class MatchReason(str, Enum):
    EXACT_TITLE = "exact-title"
    TITLE_AND_INGREDIENTS = "title-and-ingredients"
    FUZZY_TITLE = "fuzzy-title"
    FUZZY_TITLE_AND_INGREDIENTS = "fuzzy-title-and-ingredients"


class DuplicateGroup(ArtifactModel):
    recipes: List[TransformedRecipe]
    confidence: DuplicateConfidence
    match_reason: MatchReason
    normalized_title: str
    ingredient_fingerprint: Optional[str] = None
    # Recipe ids joined by high-confidence matches alone, first member first
    high_confidence_clusters: List[List[str]] = Field(default_factory=list)


class DuplicateReport(ArtifactModel):
    duplicate_groups: List[DuplicateGroup] = Field(default_factory=list)
    total_duplicates: int = 0
    high_confidence_count: int = 0
    medium_confidence_count: int = 0
    low_confidence_count: int = 0
    affected_recipes: int = 0
