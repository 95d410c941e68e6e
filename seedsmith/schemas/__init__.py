from seedsmith.schemas.seeding import (
    AdaptationRead,
    AutoFixRead,
    CreationResponse,
    CycleRead,
    IssueRead,
    MappingExportRead,
    MappingSettings,
    SchemaSummaryRead,
    SchemaValidationRead,
    SeedingOptions,
    SeedingPlanRead,
    StepResultRead,
    TableRoleRead,
    TimingsRead,
    UserCreationRequest,
    ValidationRead,
)

__all__ = [
    "AdaptationRead",
    "AutoFixRead",
    "CreationResponse",
    "CycleRead",
    "IssueRead",
    "MappingExportRead",
    "MappingSettings",
    "SchemaSummaryRead",
    "SchemaValidationRead",
    "SeedingOptions",
    "SeedingPlanRead",
    "StepResultRead",
    "TableRoleRead",
    "TimingsRead",
    "UserCreationRequest",
    "ValidationRead",
]
