from fastapi import APIRouter, Depends, HTTPException, Request, status

from seedsmith.schemas import (
    AdaptationRead,
    AutoFixRead,
    CreationResponse,
    CycleRead,
    IssueRead,
    MappingExportRead,
    SchemaSummaryRead,
    SchemaValidationRead,
    SeedingPlanRead,
    StepResultRead,
    TableRoleRead,
    TimingsRead,
    UserCreationRequest,
    ValidationRead,
)
from seedsmith.services import SeedingOrchestrator, build_orchestrator
from seedsmith.services.column_mapper import ColumnMapper
from seedsmith.services.constraint_validator import ValidationIssue, ValidationResult
from seedsmith.services.schema_introspector import SchemaIntrospectionError
from seedsmith.services.seeding_orchestrator import CreationResult

router = APIRouter(prefix="/seeding", tags=["Seeding"])


def get_orchestrator(request: Request) -> SeedingOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        try:
            orchestrator = build_orchestrator()
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        request.app.state.orchestrator = orchestrator
    return orchestrator


def _analyze_or_503(orchestrator: SeedingOrchestrator):
    try:
        return orchestrator.analyze()
    except SchemaIntrospectionError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


def _issue(issue: ValidationIssue) -> IssueRead:
    return IssueRead(
        rule_id=issue.rule_id,
        rule_type=issue.rule_type.value,
        message=issue.message,
        severity=issue.severity.value,
        field=issue.field,
    )


def _validation(result: ValidationResult | None) -> ValidationRead | None:
    if result is None:
        return None
    return ValidationRead(
        valid=result.valid,
        errors=[_issue(issue) for issue in result.errors],
        warnings=[_issue(issue) for issue in result.warnings],
        rules_checked=result.rules_checked,
    )


def _creation_response(result: CreationResult) -> CreationResponse:
    execution = result.execution
    adaptation = result.adaptation
    return CreationResponse(
        success=result.success,
        entity_id=result.entity_id,
        primary_table=result.primary_table,
        workflow_id=result.workflow.id if result.workflow else None,
        error=result.error,
        steps=[
            StepResultRead(
                step_id=step.step_id,
                status=step.status.value,
                attempts=step.attempts,
                error=step.error,
                duration_ms=step.duration_ms,
            )
            for step in (execution.step_results.values() if execution else ())
        ],
        validation=_validation(result.validation),
        applied_fixes=[
            AutoFixRead(rule_id=fix.rule_id, field=fix.field, strategy=fix.strategy.value, fixed_value=fix.fixed_value)
            for fix in result.applied_fixes
        ],
        rollback_completed=execution.rollback_completed if execution and execution.rollback_required else None,
        adaptation=AdaptationRead(
            strategies_used=adaptation.strategies_used,
            fallbacks_attempted=adaptation.fallbacks_attempted,
            fallbacks_triggered=adaptation.fallbacks_triggered,
            constraints_handled=adaptation.constraints_handled,
            framework_detected=adaptation.framework_detected,
            adaptation_confidence=adaptation.adaptation_confidence,
        ),
        timings=TimingsRead(
            introspection_ms=result.timings.introspection_ms,
            build_ms=result.timings.build_ms,
            execution_ms=result.timings.execution_ms,
            total_ms=result.timings.total_ms,
        ),
        recommendations=result.recommendations,
    )


@router.get("/schema", response_model=SchemaSummaryRead)
def get_schema_summary(orchestrator: SeedingOrchestrator = Depends(get_orchestrator)) -> SchemaSummaryRead:
    analysis = _analyze_or_503(orchestrator)
    snapshot = analysis.snapshot
    return SchemaSummaryRead(
        fingerprint=analysis.fingerprint,
        framework=snapshot.framework,
        framework_version=snapshot.framework_version,
        framework_confidence=snapshot.framework_confidence,
        tables=snapshot.table_names,
        roles=[
            TableRoleRead(table=role.table, role=role.role, confidence=role.confidence)
            for role in snapshot.table_roles
        ],
        relationship_count=len(snapshot.relationships),
        analyzed_at=analysis.analyzed_at,
    )


@router.get("/mappings", response_model=MappingExportRead)
def get_mappings(orchestrator: SeedingOrchestrator = Depends(get_orchestrator)) -> MappingExportRead:
    analysis = _analyze_or_503(orchestrator)
    return MappingExportRead(
        mappings=ColumnMapper.export_mappings(analysis.mappings),
        confidence={table: table_map.confidence for table, table_map in analysis.mappings.items()},
        recommendations=analysis.recommendations,
    )


@router.get("/plan", response_model=SeedingPlanRead)
def get_seeding_plan(orchestrator: SeedingOrchestrator = Depends(get_orchestrator)) -> SeedingPlanRead:
    graph = _analyze_or_503(orchestrator).graph
    return SeedingPlanRead(
        seeding_order=graph.seeding_order,
        dependency_levels=graph.dependency_levels,
        parallel_batches=graph.parallel_batches(),
        cycles=[
            CycleRead(
                tables=list(cycle.tables),
                break_table=cycle.break_point.edge.from_table,
                break_column=cycle.break_point.edge.from_column,
                strategy=cycle.break_point.strategy,
            )
            for cycle in graph.cycles
        ],
        strategies={table: graph.strategy_for(table) for table in graph.seeding_order},
        complexity=graph.complexity,
        warnings=graph.warnings,
    )


@router.get("/validate", response_model=SchemaValidationRead)
def validate_schema(orchestrator: SeedingOrchestrator = Depends(get_orchestrator)) -> SchemaValidationRead:
    try:
        report = orchestrator.validate_schema()
    except SchemaIntrospectionError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SchemaValidationRead(valid=report.valid, errors=list(report.errors), warnings=list(report.warnings))


@router.post("/users", response_model=CreationResponse, status_code=status.HTTP_201_CREATED)
def create_user(
    payload: UserCreationRequest, orchestrator: SeedingOrchestrator = Depends(get_orchestrator)
) -> CreationResponse:
    response = _creation_response(orchestrator.create_user(payload))
    if not response.success:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=response.model_dump(mode="json"),
        )
    return response


@router.post("/cache/invalidate", status_code=status.HTTP_204_NO_CONTENT)
def invalidate_cache(orchestrator: SeedingOrchestrator = Depends(get_orchestrator)) -> None:
    orchestrator.invalidate()
