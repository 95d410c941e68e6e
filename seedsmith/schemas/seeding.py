from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_FALLBACK_STRATEGIES = ("simple_profiles", "accounts_only", "auth_only")


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class MappingSettings(BaseModel):
    strict_mode: bool = False
    enable_pattern_matching: bool = True
    enable_fuzzy_matching: bool = True
    minimum_confidence: float = 0.3
    custom_mappings: Dict[str, Dict[str, str]] = Field(default_factory=dict)

    @field_validator("minimum_confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value):
        if value is None:
            return 0.3
        return _clamp(float(value), 0.0, 1.0)


class SeedingOptions(BaseModel):
    """Options accepted by the orchestrator; out-of-range values are clamped."""

    primary_table: str = Field("profiles", min_length=1, max_length=200)
    requires_principal: bool = True
    enable_constraint_validation: bool = True
    enable_auto_fixes: bool = True
    enable_rollback: bool = True
    enable_schema_cache: bool = True
    enable_multiple_attempts: bool = True
    enable_progressive_enhancement: bool = True
    retry_count: int = 0
    step_timeout_seconds: Optional[float] = 30.0
    retry_backoff_seconds: float = 0.5
    cache_ttl_minutes: float = 30.0
    mapping: MappingSettings = Field(default_factory=MappingSettings)
    fallback_strategies: List[str] = Field(default_factory=lambda: list(DEFAULT_FALLBACK_STRATEGIES))

    @field_validator("retry_count", mode="before")
    @classmethod
    def _clamp_retries(cls, value):
        if value is None:
            return 0
        return int(_clamp(int(value), 0, 10))

    @field_validator("step_timeout_seconds", mode="before")
    @classmethod
    def _clamp_timeout(cls, value):
        if value is None:
            return None
        return _clamp(float(value), 0.1, 600.0)

    @field_validator("retry_backoff_seconds", "cache_ttl_minutes", mode="before")
    @classmethod
    def _non_negative(cls, value):
        return max(0.0, float(value or 0.0))

    @field_validator("fallback_strategies")
    @classmethod
    def _dedupe_strategies(cls, value: List[str]) -> List[str]:
        # Names resolve against the orchestrator's fallback registry at run time
        return list(dict.fromkeys(name.strip() for name in value if name.strip()))


class UserCreationRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    name: Optional[str] = Field(None, max_length=200)
    username: Optional[str] = Field(None, max_length=100)
    password: Optional[str] = None
    avatar: Optional[str] = None
    bio: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("email")
    @classmethod
    def _require_at(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("email must contain '@'")
        return value.strip()


class IssueRead(BaseModel):
    rule_id: str
    rule_type: str
    message: str
    severity: str
    field: Optional[str] = None


class AutoFixRead(BaseModel):
    rule_id: str
    field: str
    strategy: str
    fixed_value: Any = None


class ValidationRead(BaseModel):
    valid: bool
    errors: List[IssueRead] = Field(default_factory=list)
    warnings: List[IssueRead] = Field(default_factory=list)
    rules_checked: int = 0


class StepResultRead(BaseModel):
    step_id: str
    status: str
    attempts: int
    error: Optional[str] = None
    duration_ms: float


class AdaptationRead(BaseModel):
    strategies_used: List[str] = Field(default_factory=list)
    fallbacks_attempted: List[str] = Field(default_factory=list)
    fallbacks_triggered: List[str] = Field(default_factory=list)
    constraints_handled: int = 0
    framework_detected: str = "custom"
    adaptation_confidence: float = 0.0


class TimingsRead(BaseModel):
    introspection_ms: float = 0.0
    build_ms: float = 0.0
    execution_ms: float = 0.0
    total_ms: float = 0.0


class CreationResponse(BaseModel):
    success: bool
    entity_id: Optional[str] = None
    primary_table: Optional[str] = None
    workflow_id: Optional[str] = None
    error: Optional[str] = None
    steps: List[StepResultRead] = Field(default_factory=list)
    validation: Optional[ValidationRead] = None
    applied_fixes: List[AutoFixRead] = Field(default_factory=list)
    rollback_completed: Optional[bool] = None
    adaptation: AdaptationRead
    timings: TimingsRead
    recommendations: List[str] = Field(default_factory=list)


class TableRoleRead(BaseModel):
    table: str
    role: str
    confidence: float


class SchemaSummaryRead(BaseModel):
    fingerprint: str
    framework: str
    framework_version: str
    framework_confidence: float
    tables: List[str]
    roles: List[TableRoleRead]
    relationship_count: int
    analyzed_at: datetime


class CycleRead(BaseModel):
    tables: List[str]
    break_table: str
    break_column: str
    strategy: str


class SeedingPlanRead(BaseModel):
    seeding_order: List[str]
    dependency_levels: Dict[str, int]
    parallel_batches: List[List[str]]
    cycles: List[CycleRead]
    strategies: Dict[str, str]
    complexity: str
    warnings: List[str]


class MappingExportRead(BaseModel):
    mappings: Dict[str, Dict[str, str]]
    confidence: Dict[str, float]
    recommendations: List[str]


class SchemaValidationRead(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
