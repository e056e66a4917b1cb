"""
Pydantic schemas for the post-migration verification report
"""

from pydantic import Field
from typing import Optional, List, Dict
from enum import Enum

from schemas.recipe import ArtifactModel


class CheckStatus(str, Enum):
    PASS = "pass"
    WARNING = "warning"
    FAIL = "fail"


class RecordCountComparison(ArtifactModel):
    entity: str
    legacy_count: Optional[int] = None  # rows exported from the legacy table
    expected_count: int  # importable records in the validated data
    imported_count: int
    difference: int
    percentage_match: float
    status: CheckStatus
    missing_legacy_ids: List[int] = Field(default_factory=list)


class SpotCheckResult(ArtifactModel):
    legacy_id: int
    recipe_id: Optional[str] = None
    title: str = ""
    checks: Dict[str, bool] = Field(default_factory=dict)
    issues: List[str] = Field(default_factory=list)
    status: CheckStatus


class FieldPopulationCheck(ArtifactModel):
    field: str
    required: bool
    populated: int
    total: int
    population_rate: float
    status: CheckStatus


class TextArtifactCheck(ArtifactModel):
    legacy_id: int
    title: str = ""
    artifacts: List[str] = Field(default_factory=list)
    severity: str  # 'low' | 'medium' | 'high'


class OwnershipIssue(ArtifactModel):
    legacy_id: int
    author_id: Optional[str] = None
    reason: str


class VerificationSummary(ArtifactModel):
    overall_status: CheckStatus
    total_checks: int = 0
    passed_checks: int = 0
    failed_checks: int = 0
    warning_checks: int = 0
    critical_issues: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class VerificationReport(ArtifactModel):
    validated_dir: str
    mapping_dir: str
    record_counts: List[RecordCountComparison] = Field(default_factory=list)
    spot_checks: List[SpotCheckResult] = Field(default_factory=list)
    field_population: List[FieldPopulationCheck] = Field(default_factory=list)
    text_artifacts: List[TextArtifactCheck] = Field(default_factory=list)
    ownership_issues: List[OwnershipIssue] = Field(default_factory=list)
    summary: VerificationSummary
