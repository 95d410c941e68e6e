from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Callable, Iterable, Mapping

from pydantic import BaseModel

from seedsmith.config import Settings, get_settings
from seedsmith.database import get_engine
from seedsmith.schemas.seeding import SeedingOptions
from seedsmith.services.column_mapper import ColumnMapper, MappingOptions, TableColumnMap
from seedsmith.services.constraint_handlers import ConstraintHandlerRegistry
from seedsmith.services.constraint_validator import AutoFix, ConstraintValidator, ValidationResult
from seedsmith.services.fallback_strategies import FallbackRegistry, build_default_fallback_registry
from seedsmith.services.field_generators import FieldValueGenerator, username_from
from seedsmith.services.options_loader import load_seeding_options
from seedsmith.services.relationship_graph import RelationshipGraph, RelationshipGrapher
from seedsmith.services.schema_cache import Clock, SchemaCache, utc_now
from seedsmith.services.schema_introspector import SchemaIntrospector
from seedsmith.services.schema_snapshot import SchemaSnapshot
from seedsmith.services.seeding_backend import (
    HttpPrincipalProvider,
    PrincipalProvider,
    SeedingBackend,
    SqlAlchemyBackend,
    TablePrincipalProvider,
)
from seedsmith.services.workflow_builder import (
    UserCreationWorkflow,
    WorkflowBuildError,
    WorkflowBuilder,
    WorkflowBuildOptions,
)
from seedsmith.services.workflow_executor import (
    CancellationToken,
    ExecutionOptions,
    ExecutionResult,
    WorkflowExecutor,
)

logger = logging.getLogger(__name__)

SchemaProvider = Callable[[], SchemaSnapshot]
BeforeHook = Callable[[dict], "dict | None"]
AfterHook = Callable[["CreationResult"], "CreationResult | None"]

LOW_FRAMEWORK_CONFIDENCE = 0.5


class FallbackExhaustedError(RuntimeError):
    """Raised when the primary workflow and every fallback strategy failed."""

    def __init__(self, primary_error: str | None, errors: Mapping[str, str]):
        self.primary_error = primary_error
        self.errors = dict(errors)
        details = "; ".join(f"{name}: {message}" for name, message in self.errors.items())
        super().__init__(f"All fallback strategies failed ({details}); primary error: {primary_error}")


@dataclass
class SchemaAnalysis:
    snapshot: SchemaSnapshot
    fingerprint: str
    mappings: dict[str, TableColumnMap]
    graph: RelationshipGraph
    validator: ConstraintValidator
    workflow: UserCreationWorkflow | None
    workflow_error: str | None
    recommendations: list[str]
    analyzed_at: datetime
    introspection_ms: float = 0.0
    build_ms: float = 0.0


@dataclass(frozen=True)
class SchemaInfo:
    framework: str
    framework_version: str
    framework_confidence: float
    fingerprint: str | None
    primary_table: str | None


@dataclass
class Timings:
    introspection_ms: float = 0.0
    build_ms: float = 0.0
    execution_ms: float = 0.0
    total_ms: float = 0.0


@dataclass
class AdaptationInfo:
    strategies_used: list[str] = field(default_factory=list)
    fallbacks_attempted: list[str] = field(default_factory=list)
    fallbacks_triggered: list[str] = field(default_factory=list)
    constraints_handled: int = 0
    framework_detected: str = "custom"
    adaptation_confidence: float = 0.0


@dataclass
class CreationResult:
    success: bool
    entity_id: str | None = None
    primary_table: str | None = None
    workflow: UserCreationWorkflow | None = None
    execution: ExecutionResult | None = None
    validation: ValidationResult | None = None
    applied_fixes: list[AutoFix] = field(default_factory=list)
    schema_info: SchemaInfo | None = None
    timings: Timings = field(default_factory=Timings)
    recommendations: list[str] = field(default_factory=list)
    adaptation: AdaptationInfo = field(default_factory=AdaptationInfo)
    error: str | None = None


@dataclass(frozen=True)
class SchemaValidationReport:
    valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


class SeedingOrchestrator:
    """Adaptive user creation: analyse the schema, run the workflow, fall back when needed.

    Every collaborator can be injected; nothing is shared between instances.
    """

    def __init__(
        self,
        schema_provider: SchemaProvider,
        backend: SeedingBackend,
        options: SeedingOptions | None = None,
        *,
        column_mapper: ColumnMapper | None = None,
        grapher: RelationshipGrapher | None = None,
        handlers: ConstraintHandlerRegistry | None = None,
        validator_factory: Callable[[], ConstraintValidator] | None = None,
        builder: WorkflowBuilder | None = None,
        generator: FieldValueGenerator | None = None,
        fallbacks: FallbackRegistry | None = None,
        clock: Clock = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        before_hooks: Iterable[BeforeHook] = (),
        after_hooks: Iterable[AfterHook] = (),
    ) -> None:
        self.schema_provider = schema_provider
        self.backend = backend
        self.options = options or SeedingOptions()
        mapping = self.options.mapping
        self.column_mapper = column_mapper or ColumnMapper(
            MappingOptions(
                strict_mode=mapping.strict_mode,
                enable_pattern_matching=mapping.enable_pattern_matching,
                enable_fuzzy_matching=mapping.enable_fuzzy_matching,
                minimum_confidence=mapping.minimum_confidence,
                custom_mappings=mapping.custom_mappings,
            )
        )
        self.grapher = grapher or RelationshipGrapher()
        self.validator_factory = validator_factory or (
            lambda: ConstraintValidator(lookup=backend, handlers=handlers)
        )
        self.builder = builder or WorkflowBuilder(self.column_mapper)
        self.generator = generator or FieldValueGenerator()
        self.fallbacks = fallbacks or build_default_fallback_registry()
        self.executor = WorkflowExecutor(
            backend,
            generator=self.generator,
            options=ExecutionOptions(
                enable_rollback=self.options.enable_rollback,
                enable_constraint_validation=self.options.enable_constraint_validation,
                enable_auto_fixes=self.options.enable_auto_fixes,
                default_timeout_seconds=self.options.step_timeout_seconds,
                retry_backoff_seconds=self.options.retry_backoff_seconds,
            ),
            sleep=sleep,
        )
        self.cache: SchemaCache[SchemaAnalysis] = SchemaCache(
            timedelta(minutes=self.options.cache_ttl_minutes), clock=clock
        )
        self.clock = clock
        self.before_hooks: list[BeforeHook] = list(before_hooks)
        self.after_hooks: list[AfterHook] = list(after_hooks)
        self._lock = Lock()

    def add_before_hook(self, hook: BeforeHook) -> None:
        self.before_hooks.append(hook)

    def add_after_hook(self, hook: AfterHook) -> None:
        self.after_hooks.append(hook)

    def invalidate(self) -> None:
        self.cache.clear()

    def close(self) -> None:
        close = getattr(self.backend, "close", None)
        if close is not None:
            close()

    def analyze(self, *, force: bool = False) -> SchemaAnalysis:
        """Return the current schema analysis, reusing the cache when allowed.

        A fresh cache entry skips introspection entirely. After expiry the
        schema is re-introspected and the previous analysis is reused when the
        fingerprint did not change.
        """

        use_cache = self.options.enable_schema_cache and not force
        with self._lock:
            if use_cache:
                cached = self.cache.current()
                if cached is not None:
                    logger.debug("Schema analysis cache hit (%s)", cached.fingerprint)
                    return cached

            started = time.perf_counter()
            snapshot = self.schema_provider()
            fingerprint = snapshot.fingerprint()
            introspection_ms = (time.perf_counter() - started) * 1000

            if use_cache:
                previous = self.cache.lookup(fingerprint)
                if previous is not None:
                    logger.debug("Schema unchanged (%s); refreshing cached analysis", fingerprint)
                    self.cache.store(fingerprint, previous)
                    return previous

            analysis = self._build_analysis(snapshot, fingerprint, introspection_ms)
            if self.options.enable_schema_cache:
                self.cache.store(fingerprint, analysis)
            return analysis

    def seeding_plan(self) -> RelationshipGraph:
        return self.analyze().graph

    def schema_info(self, analysis: SchemaAnalysis | None = None) -> SchemaInfo:
        analysis = analysis or self.analyze()
        snapshot = analysis.snapshot
        return SchemaInfo(
            framework=snapshot.framework,
            framework_version=snapshot.framework_version,
            framework_confidence=snapshot.framework_confidence,
            fingerprint=analysis.fingerprint,
            primary_table=analysis.workflow.primary_table if analysis.workflow else None,
        )

    def validate_schema(self) -> SchemaValidationReport:
        """Check the cached analysis against a freshly introspected snapshot."""

        analysis = self.analyze()
        current = self.schema_provider()
        mapping_check = self.column_mapper.validate_mappings(analysis.mappings, current)
        errors = list(mapping_check.errors)
        warnings = list(mapping_check.warnings)
        if analysis.workflow is not None:
            workflow_check = self.builder.validate_workflow(analysis.workflow, current)
            errors.extend(workflow_check.errors)
            warnings.extend(workflow_check.warnings)
        else:
            errors.append(analysis.workflow_error or "No workflow available")
        return SchemaValidationReport(valid=not errors, errors=tuple(errors), warnings=tuple(warnings))

    def create_user(
        self,
        request: BaseModel | Mapping[str, Any],
        *,
        cancel_token: CancellationToken | None = None,
    ) -> CreationResult:
        """Create one user; failures come back as ``success=False`` results, never as exceptions.

        Exceptions raised by hooks are treated like any other failure.
        """

        started = time.perf_counter()
        data = request.model_dump() if isinstance(request, BaseModel) else dict(request)
        try:
            for hook in self.before_hooks:
                data = hook(data) or data
            result = self._create(data, cancel_token)
            for hook in self.after_hooks:
                result = hook(result) or result
        except Exception as exc:  # noqa: BLE001
            logger.error("User creation failed: %s", exc)
            result = CreationResult(success=False, error=str(exc))
        result.timings.total_ms = (time.perf_counter() - started) * 1000
        return result

    def _build_analysis(self, snapshot: SchemaSnapshot, fingerprint: str, introspection_ms: float) -> SchemaAnalysis:
        started = time.perf_counter()
        mappings = self.column_mapper.map_schema(snapshot)
        graph = self.grapher.build_from_snapshot(snapshot)
        # Each analysis owns its validator; cached analyses are never re-initialized
        validator = self.validator_factory()
        validator.initialize(snapshot, mappings)

        workflow: UserCreationWorkflow | None = None
        workflow_error: str | None = None
        try:
            workflow = self.builder.build(
                snapshot,
                graph,
                mappings,
                validator,
                WorkflowBuildOptions(
                    primary_table=self.options.primary_table,
                    requires_principal=self.options.requires_principal,
                    enable_constraint_validation=self.options.enable_constraint_validation,
                    enable_rollback=self.options.enable_rollback,
                    retry_count=self.options.retry_count,
                    step_timeout_seconds=self.options.step_timeout_seconds,
                ),
            )
        except WorkflowBuildError as exc:
            logger.warning("No workflow for schema %s: %s", fingerprint, exc)
            workflow_error = str(exc)

        recommendations = [
            f"{item.table}: {item.message}"
            for table_map in mappings.values()
            for item in table_map.recommendations
        ]
        recommendations.extend(graph.warnings)
        if snapshot.framework_confidence < LOW_FRAMEWORK_CONFIDENCE:
            recommendations.append(
                f"Framework detection confidence is low ({snapshot.framework_confidence:.2f}); "
                "review custom mappings"
            )

        return SchemaAnalysis(
            snapshot=snapshot,
            fingerprint=fingerprint,
            mappings=mappings,
            graph=graph,
            validator=validator,
            workflow=workflow,
            workflow_error=workflow_error,
            recommendations=recommendations,
            analyzed_at=self.clock(),
            introspection_ms=introspection_ms,
            build_ms=(time.perf_counter() - started) * 1000,
        )

    def _create(self, data: dict[str, Any], cancel_token: CancellationToken | None) -> CreationResult:
        adaptation = AdaptationInfo()
        timings = Timings()
        analysis: SchemaAnalysis | None = None
        primary_error: str | None = None
        execution: ExecutionResult | None = None

        try:
            analysis = self.analyze()
            timings.introspection_ms = analysis.introspection_ms
            timings.build_ms = analysis.build_ms
            adaptation.framework_detected = analysis.snapshot.framework
            if analysis.workflow is None:
                raise WorkflowBuildError(analysis.workflow_error or "No workflow available")

            workflow = analysis.workflow
            adaptation.strategies_used.append("adaptive_workflow")
            if self.options.enable_constraint_validation:
                adaptation.strategies_used.append("constraint_validation")
            enhanced = self._enhance(data, analysis, adaptation)

            execution_started = time.perf_counter()
            execution = self.executor.execute(
                workflow, enhanced, cancel_token=cancel_token, validator=analysis.validator
            )
            timings.execution_ms = (time.perf_counter() - execution_started) * 1000

            table_map = analysis.mappings.get(workflow.primary_table)
            adaptation.adaptation_confidence = table_map.confidence if table_map else 0.0
            adaptation.constraints_handled = len(execution.applied_fixes)
            if execution.applied_fixes:
                adaptation.strategies_used.append("auto_fix")

            if execution.success:
                return CreationResult(
                    success=True,
                    entity_id=str(execution.entity_id) if execution.entity_id is not None else None,
                    primary_table=workflow.primary_table,
                    workflow=workflow,
                    execution=execution,
                    validation=execution.validation_results.get(workflow.primary_table),
                    applied_fixes=list(execution.applied_fixes),
                    schema_info=self.schema_info(analysis),
                    timings=timings,
                    recommendations=list(analysis.recommendations),
                    adaptation=adaptation,
                )
            primary_error = execution.error or "Workflow failed"
            if execution.cancelled:
                return self._failed(analysis, execution, adaptation, timings, primary_error)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Adaptive workflow failed: %s", exc)
            primary_error = str(exc)

        if not self.options.enable_multiple_attempts:
            return self._failed(analysis, execution, adaptation, timings, primary_error)

        try:
            return self._run_fallbacks(data, analysis, execution, adaptation, timings, primary_error)
        except FallbackExhaustedError as exc:
            return self._failed(analysis, execution, adaptation, timings, str(exc))

    def _run_fallbacks(
        self,
        data: Mapping[str, Any],
        analysis: SchemaAnalysis | None,
        execution: ExecutionResult | None,
        adaptation: AdaptationInfo,
        timings: Timings,
        primary_error: str | None,
    ) -> CreationResult:
        errors: dict[str, str] = {}
        for name in self.options.fallback_strategies:
            adaptation.fallbacks_attempted.append(name)
            try:
                outcome = self.fallbacks.get(name).execute(data, self.backend)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Fallback strategy %s failed: %s", name, exc)
                errors[name] = str(exc)
                continue

            logger.info("Fallback strategy %s created principal %s", name, outcome.principal_id)
            adaptation.fallbacks_triggered.append(name)
            adaptation.strategies_used.append(f"fallback:{name}")
            recommendations = list(analysis.recommendations) if analysis else []
            recommendations.append(f"Adaptive workflow failed ({primary_error}); created via {name}")
            recommendations.extend(outcome.notes)
            return CreationResult(
                success=True,
                entity_id=outcome.principal_id,
                primary_table=outcome.table,
                workflow=analysis.workflow if analysis else None,
                execution=execution,
                schema_info=self.schema_info(analysis) if analysis else None,
                timings=timings,
                recommendations=recommendations,
                adaptation=adaptation,
            )
        raise FallbackExhaustedError(primary_error, errors)

    def _failed(
        self,
        analysis: SchemaAnalysis | None,
        execution: ExecutionResult | None,
        adaptation: AdaptationInfo,
        timings: Timings,
        error: str | None,
    ) -> CreationResult:
        return CreationResult(
            success=False,
            primary_table=analysis.workflow.primary_table if analysis and analysis.workflow else None,
            workflow=analysis.workflow if analysis else None,
            execution=execution,
            validation=(
                execution.validation_results.get(analysis.workflow.primary_table)
                if execution and analysis and analysis.workflow
                else None
            ),
            applied_fixes=list(execution.applied_fixes) if execution else [],
            schema_info=self.schema_info(analysis) if analysis else None,
            timings=timings,
            recommendations=list(analysis.recommendations) if analysis else [],
            adaptation=adaptation,
            error=error,
        )

    def _enhance(
        self, data: Mapping[str, Any], analysis: SchemaAnalysis, adaptation: AdaptationInfo
    ) -> dict[str, Any]:
        enhanced = dict(data)
        if not self.options.enable_progressive_enhancement:
            return enhanced
        framework = analysis.snapshot.framework
        added = False
        if not enhanced.get("username") and framework == "makerkit":
            username = username_from(enhanced)
            if username:
                enhanced["username"] = username
                added = True
        if not enhanced.get("avatar") and framework == "custom":
            enhanced["avatar"] = self.generator.generate("avatar", enhanced)
            added = True
        if added:
            adaptation.strategies_used.append("progressive_enhancement")
        return enhanced


def build_orchestrator(settings: Settings | None = None) -> SeedingOrchestrator:
    """Wire an orchestrator against the configured database and principal backend."""

    settings = settings or get_settings()
    engine = get_engine(settings.database_url)
    if settings.principal_backend == "http":
        if not settings.auth_admin_url or not settings.auth_service_key:
            raise ValueError("AUTH_ADMIN_URL and AUTH_SERVICE_KEY are required when PRINCIPAL_BACKEND is 'http'")
        provider: PrincipalProvider = HttpPrincipalProvider(settings.auth_admin_url, settings.auth_service_key)
    else:
        provider = TablePrincipalProvider(engine, table=settings.principal_table, schema=settings.database_schema)

    overrides = {"primary_table": settings.primary_table} if settings.primary_table else None
    options = load_seeding_options(settings.seeding_options_path, overrides)
    introspector = SchemaIntrospector(engine, schema=settings.database_schema)
    backend = SqlAlchemyBackend(engine, schema=settings.database_schema, principal_provider=provider)
    logger.info(
        "Seeding orchestrator ready (primary table %s, principals via %s)",
        options.primary_table,
        settings.principal_backend,
    )
    return SeedingOrchestrator(introspector.introspect, backend, options)
