from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Mapping, Sequence

from seedsmith.services.column_mapper import ColumnMapper, TableColumnMap
from seedsmith.services.constraint_validator import ConstraintValidator
from seedsmith.services.field_generators import SEMANTIC_GENERATORS, generator_for_column
from seedsmith.services.relationship_graph import RelationshipGraph
from seedsmith.services.schema_snapshot import (
    SchemaSnapshot,
    SnapshotColumn,
    SnapshotRelationship,
    SnapshotTable,
)

logger = logging.getLogger(__name__)

PRINCIPAL_STEP_ID = "create_principal"


class StepType(str, Enum):
    CREATE_PRINCIPAL = "create_principal"
    INSERT_RECORD = "insert_record"
    VALIDATE_CONSTRAINT = "validate_constraint"
    EXECUTE_TRIGGER = "execute_trigger"
    CONDITIONAL_ACTION = "conditional_action"


class OnError(str, Enum):
    FAIL = "fail"
    SKIP = "skip"
    RETRY = "retry"
    CONTINUE = "continue"


class FieldSource(str, Enum):
    INPUT = "input"
    GENERATED = "generated"
    REFERENCE = "reference"
    COMPUTED = "computed"


class WorkflowBuildError(RuntimeError):
    """Raised when no creation workflow can be derived from a schema."""


@dataclass(frozen=True)
class WorkflowField:
    name: str
    source: FieldSource
    required: bool = False
    semantic_field: str | None = None
    input_key: str | None = None
    reference_step: str | None = None
    reference_field: str | None = None
    generator: str | None = None
    data_type: str | None = None


@dataclass(frozen=True)
class WorkflowStep:
    id: str
    step_type: StepType
    description: str
    table: str | None = None
    fields: tuple[WorkflowField, ...] = ()
    dependencies: tuple[str, ...] = ()
    on_error: OnError = OnError.FAIL
    retry_count: int = 0
    timeout_seconds: float | None = None
    key_column: str | None = None
    rule_id: str | None = None
    target_step: str | None = None
    trigger_name: str | None = None


@dataclass(frozen=True)
class UserCreationWorkflow:
    id: str
    name: str
    primary_table: str
    steps: tuple[WorkflowStep, ...]
    rollback_steps: tuple[WorkflowStep, ...]
    framework: str
    schema_fingerprint: str
    created_at: datetime

    def step(self, step_id: str) -> WorkflowStep | None:
        for step in self.steps + self.rollback_steps:
            if step.id == step_id:
                return step
        return None

    @property
    def insert_steps(self) -> list[WorkflowStep]:
        return [step for step in self.steps if step.step_type is StepType.INSERT_RECORD]


@dataclass(frozen=True)
class WorkflowBuildOptions:
    primary_table: str = "profiles"
    requires_principal: bool = True
    enable_constraint_validation: bool = True
    enable_rollback: bool = True
    retry_count: int = 0
    step_timeout_seconds: float | None = 30.0


@dataclass(frozen=True)
class WorkflowCheck:
    valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass
class _PrimaryResolution:
    table: SnapshotTable
    table_map: TableColumnMap
    synthesized: bool = False


def insert_step_id(table: str) -> str:
    return f"create_{table}_record"


class WorkflowBuilder:
    """Derive a user creation workflow from a schema snapshot and its analysis."""

    def __init__(self, column_mapper: ColumnMapper | None = None) -> None:
        self.column_mapper = column_mapper or ColumnMapper()

    def build(
        self,
        snapshot: SchemaSnapshot,
        graph: RelationshipGraph,
        mappings: Mapping[str, TableColumnMap],
        validator: ConstraintValidator | None = None,
        options: WorkflowBuildOptions | None = None,
    ) -> UserCreationWorkflow:
        options = options or WorkflowBuildOptions()
        primary = self._resolve_primary(snapshot, mappings, options.primary_table)
        primary_table = primary.table
        step_retries = options.retry_count
        default_on_error = OnError.RETRY if step_retries > 0 else OnError.FAIL

        steps: list[WorkflowStep] = []
        principal_deps: tuple[str, ...] = ()
        if options.requires_principal:
            steps.append(self._principal_step(default_on_error, step_retries, options.step_timeout_seconds))
            principal_deps = (PRINCIPAL_STEP_ID,)

        validate_ids: list[str] = []
        if options.enable_constraint_validation and validator is not None and validator.initialized:
            for rule in validator.pre_insert_rules(primary_table.name):
                step_id = f"validate_{rule.id}"
                validate_ids.append(step_id)
                steps.append(
                    WorkflowStep(
                        id=step_id,
                        step_type=StepType.VALIDATE_CONSTRAINT,
                        description=f"Validate {rule.name} on {primary_table.name}",
                        table=primary_table.name,
                        dependencies=principal_deps,
                        rule_id=rule.id,
                        target_step=insert_step_id(primary_table.name),
                        timeout_seconds=options.step_timeout_seconds,
                    )
                )

        # table -> step id for every table whose key is known before dependents run
        key_sources: dict[str, tuple[str, str]] = {}
        primary_key = self._key_column(primary_table)
        if options.requires_principal and primary_key:
            key_sources[primary_table.name] = (PRINCIPAL_STEP_ID, "id")
        if options.requires_principal:
            # principal rows are written by the principal step, never inserted directly
            for role in snapshot.tables_with_role("auth"):
                key_sources[role.table] = (PRINCIPAL_STEP_ID, "id")

        broken = graph.break_edges()
        parents = self._required_parents(snapshot, graph, primary_table.name, broken, set(key_sources))
        for parent_name in parents:
            parent = snapshot.table(parent_name)
            parent_deps = principal_deps + tuple(
                insert_step_id(rel.to_table)
                for rel in self._required_relationships(snapshot, parent_name, broken)
                if rel.to_table in parents and rel.to_table != parent_name
            )
            step = self._insert_step(
                parent,
                step_id=insert_step_id(parent_name),
                description=f"Create prerequisite {parent_name} record",
                table_map=mappings.get(parent_name),
                key_sources=key_sources,
                dependencies=tuple(dict.fromkeys(parent_deps)),
                on_error=default_on_error,
                retry_count=step_retries,
                timeout=options.step_timeout_seconds,
                broken=broken,
                relationships=snapshot.relationships_from(parent_name),
            )
            steps.append(step)
            key_sources[parent_name] = (step.id, self._key_column(parent) or "id")

        primary_fields = self._primary_fields(primary, key_sources, options, broken, snapshot)
        primary_step = WorkflowStep(
            id=insert_step_id(primary_table.name),
            step_type=StepType.INSERT_RECORD,
            description=f"Create {primary_table.name} record",
            table=primary_table.name,
            fields=primary_fields,
            dependencies=tuple(
                dict.fromkeys(principal_deps + tuple(validate_ids) + tuple(insert_step_id(p) for p in parents))
            ),
            on_error=default_on_error,
            retry_count=step_retries,
            timeout_seconds=options.step_timeout_seconds,
            key_column=primary_key,
        )
        steps.append(primary_step)
        key_sources[primary_table.name] = (primary_step.id, primary_key or "id")

        for rel in self._required_dependents(snapshot, primary_table.name, parents):
            dependent = snapshot.table(rel.from_table)
            steps.append(
                self._insert_step(
                    dependent,
                    step_id=insert_step_id(dependent.name),
                    description=f"Create related {dependent.name} record",
                    table_map=mappings.get(dependent.name),
                    key_sources=key_sources,
                    dependencies=(primary_step.id,),
                    on_error=OnError.SKIP,
                    retry_count=0,
                    timeout=options.step_timeout_seconds,
                    broken=broken,
                    relationships=snapshot.relationships_from(dependent.name),
                )
            )

        for trigger in primary_table.triggers:
            if not trigger.fires_on("INSERT"):
                continue
            steps.append(
                WorkflowStep(
                    id=f"trigger_{trigger.name}",
                    step_type=StepType.EXECUTE_TRIGGER,
                    description=f"Confirm trigger {trigger.name} on {primary_table.name}",
                    table=primary_table.name,
                    dependencies=(primary_step.id,),
                    on_error=OnError.CONTINUE,
                    trigger_name=trigger.name,
                )
            )

        rollback_steps: list[WorkflowStep] = []
        if options.enable_rollback:
            for step in reversed(steps):
                if step.step_type is not StepType.INSERT_RECORD:
                    continue
                rollback_steps.append(
                    WorkflowStep(
                        id=f"rollback_{step.id}",
                        step_type=StepType.CONDITIONAL_ACTION,
                        description=f"Delete {step.table} record created by {step.id}",
                        table=step.table,
                        on_error=OnError.CONTINUE,
                        key_column=step.key_column,
                        target_step=step.id,
                    )
                )

        workflow = UserCreationWorkflow(
            id=f"user_creation_{uuid.uuid4().hex[:12]}",
            name=f"{snapshot.framework} user creation",
            primary_table=primary_table.name,
            steps=tuple(steps),
            rollback_steps=tuple(rollback_steps),
            framework=snapshot.framework,
            schema_fingerprint=snapshot.fingerprint(),
            created_at=datetime.now(timezone.utc),
        )
        logger.info(
            "Built workflow %s for %s: %d steps, %d rollback steps",
            workflow.id,
            primary_table.name,
            len(workflow.steps),
            len(workflow.rollback_steps),
        )
        return workflow

    def validate_workflow(self, workflow: UserCreationWorkflow, snapshot: SchemaSnapshot) -> WorkflowCheck:
        errors: list[str] = []
        warnings: list[str] = []
        if workflow.schema_fingerprint != snapshot.fingerprint():
            warnings.append("Schema changed since the workflow was built")
        for step in workflow.steps:
            if step.table is None:
                continue
            table = snapshot.table(step.table)
            if table is None:
                errors.append(f"Step {step.id} targets missing table {step.table}")
                continue
            for item in step.fields:
                if step.step_type is StepType.INSERT_RECORD and table.column(item.name) is None:
                    errors.append(f"Step {step.id} writes missing column {step.table}.{item.name}")
        return WorkflowCheck(valid=not errors, errors=tuple(errors), warnings=tuple(warnings))

    def _resolve_primary(
        self,
        snapshot: SchemaSnapshot,
        mappings: Mapping[str, TableColumnMap],
        preferred: str,
    ) -> _PrimaryResolution:
        table = snapshot.table(preferred)
        if table is not None:
            table_map = mappings.get(table.name)
            if table_map is None or table_map.role != "user":
                table_map = self.column_mapper.map_table(table, "user")
            return _PrimaryResolution(table=table, table_map=table_map)

        for role in snapshot.tables_with_role("user"):
            candidate = snapshot.table(role.table)
            if candidate is None:
                continue
            logger.info("Primary table %s not found; using user table %s", preferred, candidate.name)
            table_map = mappings.get(candidate.name) or self.column_mapper.map_table(candidate, "user")
            return _PrimaryResolution(table=candidate, table_map=table_map)

        wanted = preferred.lower().split(".")[-1]
        for candidate in snapshot.tables:
            if candidate.name.lower().split(".")[-1] == wanted:
                logger.info("Synthesising user pattern for %s from its columns", candidate.name)
                return _PrimaryResolution(
                    table=candidate,
                    table_map=self.column_mapper.map_table(candidate, "user"),
                    synthesized=True,
                )

        raise WorkflowBuildError(f"No primary table could be resolved (requested {preferred!r})")

    @staticmethod
    def _principal_step(on_error: OnError, retries: int, timeout: float | None) -> WorkflowStep:
        return WorkflowStep(
            id=PRINCIPAL_STEP_ID,
            step_type=StepType.CREATE_PRINCIPAL,
            description="Create authentication principal",
            fields=(
                WorkflowField(name="email", source=FieldSource.INPUT, required=True, input_key="email", semantic_field="email"),
                WorkflowField(name="password", source=FieldSource.INPUT, input_key="password", generator="password"),
                WorkflowField(name="metadata", source=FieldSource.COMPUTED, input_key="metadata"),
            ),
            on_error=on_error,
            retry_count=retries,
            timeout_seconds=timeout,
        )

    @staticmethod
    def _key_column(table: SnapshotTable) -> str | None:
        keys = table.primary_key_columns
        return keys[0] if len(keys) == 1 else None

    @staticmethod
    def _required_relationships(
        snapshot: SchemaSnapshot, table: str, broken: set[tuple[str, str]]
    ) -> list[SnapshotRelationship]:
        return [
            rel
            for rel in snapshot.relationships_from(table)
            if rel.is_required
            and rel.to_table != table
            and snapshot.table(rel.to_table) is not None
            and (rel.from_table, rel.to_table) not in broken
        ]

    def _required_parents(
        self,
        snapshot: SchemaSnapshot,
        graph: RelationshipGraph,
        primary: str,
        broken: set[tuple[str, str]],
        provided: set[str],
    ) -> list[str]:
        found: set[str] = set()
        pending = [primary]
        while pending:
            current = pending.pop()
            for rel in self._required_relationships(snapshot, current, broken):
                if rel.to_table == primary or rel.to_table in found or rel.to_table in provided:
                    continue
                found.add(rel.to_table)
                pending.append(rel.to_table)
        position = {name: index for index, name in enumerate(graph.seeding_order)}
        return sorted(found, key=lambda name: position.get(name, len(position)))

    @staticmethod
    def _required_dependents(
        snapshot: SchemaSnapshot, primary: str, parents: Sequence[str]
    ) -> list[SnapshotRelationship]:
        seen: set[str] = set()
        dependents: list[SnapshotRelationship] = []
        for rel in snapshot.relationships_to(primary):
            if rel.nullable or rel.from_table == primary or rel.from_table in parents:
                continue
            if rel.from_table in seen or snapshot.table(rel.from_table) is None:
                continue
            role = snapshot.role_of(rel.from_table)
            if role is not None and role.role == "system":
                continue
            seen.add(rel.from_table)
            dependents.append(rel)
        return dependents

    def _reference_fields(
        self,
        table: SnapshotTable,
        snapshot_rels: Sequence[SnapshotRelationship],
        key_sources: Mapping[str, tuple[str, str]],
        broken: set[tuple[str, str]],
    ) -> dict[str, WorkflowField]:
        fields: dict[str, WorkflowField] = {}
        for rel in snapshot_rels:
            if rel.from_table != table.name or rel.to_table not in key_sources:
                continue
            if (rel.from_table, rel.to_table) in broken and rel.nullable:
                continue
            step_id, key_field = key_sources[rel.to_table]
            fields[rel.from_column] = WorkflowField(
                name=rel.from_column,
                source=FieldSource.REFERENCE,
                required=not rel.nullable,
                reference_step=step_id,
                reference_field=rel.to_column if step_id != PRINCIPAL_STEP_ID else key_field,
            )
        return fields

    def _insert_step(
        self,
        table: SnapshotTable,
        *,
        step_id: str,
        description: str,
        table_map: TableColumnMap | None,
        key_sources: Mapping[str, tuple[str, str]],
        dependencies: tuple[str, ...],
        on_error: OnError,
        retry_count: int,
        timeout: float | None,
        broken: set[tuple[str, str]],
        relationships: Sequence[SnapshotRelationship],
    ) -> WorkflowStep:
        key_column = self._key_column(table)
        references = self._reference_fields(table, relationships, key_sources, broken)
        fields: list[WorkflowField] = []
        for column in table.columns:
            if column.name in references:
                fields.append(references[column.name])
                continue
            generated = self._generated_field(column, table_map, key_column)
            if generated is not None:
                fields.append(generated)
        return WorkflowStep(
            id=step_id,
            step_type=StepType.INSERT_RECORD,
            description=description,
            table=table.name,
            fields=tuple(fields),
            dependencies=dependencies,
            on_error=on_error,
            retry_count=retry_count,
            timeout_seconds=timeout,
            key_column=key_column,
        )

    def _primary_fields(
        self,
        primary: _PrimaryResolution,
        key_sources: Mapping[str, tuple[str, str]],
        options: WorkflowBuildOptions,
        broken: set[tuple[str, str]],
        snapshot: SchemaSnapshot,
    ) -> tuple[WorkflowField, ...]:
        table = primary.table
        key_column = self._key_column(table)
        references = self._reference_fields(
            table,
            [rel for rel in snapshot.relationships_from(table.name) if rel.to_table != table.name],
            key_sources,
            broken,
        )
        fields: list[WorkflowField] = []
        for column in table.columns:
            if column.name == key_column and options.requires_principal:
                fields.append(
                    WorkflowField(
                        name=column.name,
                        source=FieldSource.REFERENCE,
                        required=True,
                        semantic_field="id",
                        reference_step=PRINCIPAL_STEP_ID,
                        reference_field="id",
                        data_type=column.data_type,
                    )
                )
                continue
            if column.name in references:
                fields.append(references[column.name])
                continue
            semantic = primary.table_map.field_for(column.name)
            if semantic is not None and semantic != "id":
                fields.append(
                    WorkflowField(
                        name=column.name,
                        source=FieldSource.INPUT,
                        required=not column.nullable,
                        semantic_field=semantic,
                        input_key=semantic,
                        generator=SEMANTIC_GENERATORS.get(semantic, generator_for_column(column)),
                        data_type=column.data_type,
                    )
                )
                continue
            generated = self._generated_field(column, primary.table_map, key_column)
            if generated is not None:
                fields.append(generated)
        return tuple(fields)

    @staticmethod
    def _generated_field(
        column: SnapshotColumn, table_map: TableColumnMap | None, key_column: str | None
    ) -> WorkflowField | None:
        if column.name == key_column:
            # Integer keys are left to the database sequence
            if column.default is None and any(item in column.normalized_type for item in ("uuid", "char", "text")):
                return WorkflowField(
                    name=column.name,
                    source=FieldSource.GENERATED,
                    required=True,
                    generator="uuid",
                    data_type=column.data_type,
                )
            return None
        if column.nullable or column.default is not None or column.is_foreign_key:
            return None
        semantic = table_map.field_for(column.name) if table_map is not None else None
        return WorkflowField(
            name=column.name,
            source=FieldSource.GENERATED,
            required=True,
            semantic_field=semantic,
            input_key=semantic,
            generator=SEMANTIC_GENERATORS.get(semantic, generator_for_column(column)) if semantic else generator_for_column(column),
            data_type=column.data_type,
        )
