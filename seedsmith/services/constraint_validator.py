"""
Constraint validation for seeding writes.

Derives validation rules from a schema snapshot and checks candidate records
against them before they are inserted. Supported rule types:
- not_null: column must receive a value
- unique: value must not collide with an existing record
- foreign_key: referenced record must exist
- check: database CHECK constraint, evaluated through a handler
- business_logic: named business rule, evaluated through a handler
- custom: engine-defined rules (email format on user tables)
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Protocol, Sequence

from seedsmith.services.column_mapper import TableColumnMap
from seedsmith.services.constraint_handlers import (
    ConstraintHandlerRegistry,
    build_default_handler_registry,
)
from seedsmith.services.schema_snapshot import (
    CHECK,
    FOREIGN_KEY,
    NOT_NULL,
    PRIMARY_KEY,
    UNIQUE,
    BusinessRule,
    SchemaSnapshot,
    SnapshotColumn,
    SnapshotConstraint,
    SnapshotTable,
)

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
TEXT_TYPES = ("text", "char", "citext")
NUMERIC_TYPES = ("int", "numeric", "decimal", "real", "double", "float", "serial")
TEMPORAL_TYPES = ("timestamp", "date", "time")
BOOLEAN_TYPES = ("bool",)


class RuleType(str, Enum):
    NOT_NULL = "not_null"
    UNIQUE = "unique"
    FOREIGN_KEY = "foreign_key"
    CHECK = "check"
    BUSINESS_LOGIC = "business_logic"
    CUSTOM = "custom"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class FixStrategy(str, Enum):
    PROVIDE_DEFAULT = "provide_default"
    MODIFY_VALUE = "modify_value"
    SKIP_FIELD = "skip_field"
    CREATE_DEPENDENCY = "create_dependency"


class ConstraintViolationError(RuntimeError):
    """Raised when a record still violates blocking rules after auto-fixing."""

    def __init__(self, table: str, issues: Sequence["ValidationIssue"]):
        self.table = table
        self.issues = list(issues)
        details = "; ".join(issue.message for issue in self.issues) or "constraint violation"
        super().__init__(f"{table}: {details}")


class RecordLookup(Protocol):
    def record_exists(self, table: str, column: str, value: Any) -> bool:
        ...

    def find_conflict(self, table: str, values: Mapping[str, Any], key_column: str | None = None) -> Any:
        ...


@dataclass(frozen=True)
class ValidationRule:
    id: str
    name: str
    table: str
    rule_type: RuleType
    severity: Severity
    message: str
    columns: tuple[str, ...] = ()
    referenced_table: str | None = None
    referenced_column: str | None = None
    auto_fix_strategy: FixStrategy | None = None
    pre_insert: bool = False
    constraint: SnapshotConstraint | BusinessRule | None = None

    @property
    def column(self) -> str | None:
        return self.columns[0] if self.columns else None


@dataclass(frozen=True)
class AutoFix:
    rule_id: str
    field: str
    original_value: Any
    fixed_value: Any
    strategy: FixStrategy
    applied: bool = False


@dataclass
class ValidationIssue:
    rule_id: str
    rule_type: RuleType
    message: str
    severity: Severity
    field: str | None = None


@dataclass
class ValidationResult:
    valid: bool = True
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    auto_fixes: list[AutoFix] = field(default_factory=list)
    rules_checked: int = 0
    duration_ms: float = 0.0


@dataclass(frozen=True)
class ValidationContext:
    table: str
    data: Mapping[str, Any]
    operation: str = "insert"
    existing_record: Mapping[str, Any] | None = None
    key_column: str | None = None


@dataclass
class AutoFixOutcome:
    data: dict[str, Any]
    applied: list[AutoFix]


@dataclass
class _RuleOutcome:
    valid: bool
    message: str = ""
    fixes: list[AutoFix] = field(default_factory=list)
    warning: str | None = None


def default_for_column(column: SnapshotColumn) -> Any:
    """Type-appropriate placeholder used when a NOT NULL column has no value."""

    data_type = column.normalized_type
    if "uuid" in data_type:
        return str(uuid.uuid4())
    if any(item in data_type for item in BOOLEAN_TYPES):
        return False
    if any(item in data_type for item in TEMPORAL_TYPES):
        return datetime.now(timezone.utc).isoformat()
    if any(item in data_type for item in NUMERIC_TYPES):
        return 0
    if "json" in data_type:
        return {}
    if any(item in data_type for item in TEXT_TYPES):
        return ""
    return None


def _is_generated_key(column: SnapshotColumn) -> bool:
    return column.is_primary_key and any(item in column.normalized_type for item in NUMERIC_TYPES)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


class ConstraintValidator:
    """Rule-based checker for candidate records, initialised from a snapshot."""

    def __init__(
        self,
        lookup: RecordLookup | None = None,
        handlers: ConstraintHandlerRegistry | None = None,
    ) -> None:
        self.lookup = lookup
        self.handlers = handlers if handlers is not None else build_default_handler_registry()
        self._rules: dict[str, list[ValidationRule]] = {}
        self._rules_by_id: dict[str, ValidationRule] = {}
        self._tables: dict[str, SnapshotTable] = {}

    @property
    def initialized(self) -> bool:
        return bool(self._tables)

    def initialize(
        self,
        snapshot: SchemaSnapshot,
        mappings: Mapping[str, TableColumnMap] | None = None,
    ) -> None:
        self.clear()
        mappings = mappings or {}
        for table in snapshot.tables:
            self._tables[table.name] = table
            rules = self._rules_for_table(table, snapshot, mappings.get(table.name))
            self._rules[table.name] = rules
            for rule in rules:
                self._rules_by_id[rule.id] = rule
        logger.info(
            "Constraint validator initialised with %d rules across %d tables",
            len(self._rules_by_id),
            len(self._tables),
        )

    def clear(self) -> None:
        self._rules.clear()
        self._rules_by_id.clear()
        self._tables.clear()

    def rules_for(self, table: str) -> list[ValidationRule]:
        return list(self._rules.get(table, []))

    def rule(self, rule_id: str) -> ValidationRule | None:
        return self._rules_by_id.get(rule_id)

    def pre_insert_rules(self, table: str) -> list[ValidationRule]:
        """Error-severity business rules that must be checked before inserting into ``table``."""

        return [
            rule
            for rule in self._rules.get(table, [])
            if rule.pre_insert and rule.severity is Severity.ERROR
        ]

    def validate_operation(self, context: ValidationContext) -> ValidationResult:
        started = time.perf_counter()
        result = ValidationResult()
        for rule in self._rules.get(context.table, []):
            self._check(rule, context, result)
        result.valid = not result.errors
        result.duration_ms = (time.perf_counter() - started) * 1000
        if not result.valid:
            logger.debug(
                "Validation of %s on %s failed: %s",
                context.operation,
                context.table,
                [issue.message for issue in result.errors],
            )
        return result

    def validate_rule(self, rule_id: str, context: ValidationContext) -> ValidationResult:
        rule = self._rules_by_id.get(rule_id)
        if rule is None:
            raise KeyError(f"Unknown validation rule: {rule_id}")
        started = time.perf_counter()
        result = ValidationResult()
        self._check(rule, context, result)
        result.valid = not result.errors
        result.duration_ms = (time.perf_counter() - started) * 1000
        return result

    def apply_auto_fixes(self, data: Mapping[str, Any], fixes: Sequence[AutoFix]) -> AutoFixOutcome:
        """Apply fixes to a copy of ``data``; returns the new data and the fixes applied.

        Applying the same fixes twice yields the same data.
        """

        fixed = dict(data)
        applied: list[AutoFix] = []
        for fix in fixes:
            if fix.strategy is FixStrategy.PROVIDE_DEFAULT:
                if not _is_blank(fixed.get(fix.field)):
                    continue
                fixed[fix.field] = fix.fixed_value
            elif fix.strategy is FixStrategy.MODIFY_VALUE:
                fixed[fix.field] = fix.fixed_value
            elif fix.strategy is FixStrategy.SKIP_FIELD:
                if fix.field not in fixed:
                    continue
                del fixed[fix.field]
            elif fix.strategy is FixStrategy.CREATE_DEPENDENCY:
                logger.info(
                    "Dependency for %s=%r must be created before insertion",
                    fix.field,
                    fix.original_value,
                )
                continue
            applied.append(replace(fix, applied=True))
        return AutoFixOutcome(data=fixed, applied=applied)

    def _check(self, rule: ValidationRule, context: ValidationContext, result: ValidationResult) -> None:
        result.rules_checked += 1
        try:
            outcome = self._evaluate_rule(rule, context)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Rule %s could not be evaluated: %s", rule.id, exc)
            result.warnings.append(
                ValidationIssue(
                    rule_id=rule.id,
                    rule_type=rule.rule_type,
                    message=f"Rule {rule.name} could not be evaluated: {exc}",
                    severity=Severity.WARNING,
                    field=rule.column,
                )
            )
            return

        if outcome.warning:
            result.warnings.append(
                ValidationIssue(
                    rule_id=rule.id,
                    rule_type=rule.rule_type,
                    message=outcome.warning,
                    severity=Severity.WARNING,
                    field=rule.column,
                )
            )
        if outcome.valid:
            return

        issue = ValidationIssue(
            rule_id=rule.id,
            rule_type=rule.rule_type,
            message=outcome.message or rule.message,
            severity=rule.severity,
            field=rule.column,
        )
        if rule.severity is Severity.ERROR:
            result.errors.append(issue)
        else:
            result.warnings.append(issue)
        result.auto_fixes.extend(outcome.fixes)

    def _evaluate_rule(self, rule: ValidationRule, context: ValidationContext) -> _RuleOutcome:
        if rule.rule_type is RuleType.NOT_NULL:
            return self._validate_not_null(rule, context)
        if rule.rule_type is RuleType.UNIQUE:
            return self._validate_unique(rule, context)
        if rule.rule_type is RuleType.FOREIGN_KEY:
            return self._validate_foreign_key(rule, context)
        if rule.rule_type in (RuleType.CHECK, RuleType.BUSINESS_LOGIC):
            return self._validate_with_handler(rule, context)
        if rule.rule_type is RuleType.CUSTOM:
            return self._validate_email(rule, context)
        return _RuleOutcome(valid=True)

    def _validate_not_null(self, rule: ValidationRule, context: ValidationContext) -> _RuleOutcome:
        column_name = rule.column
        value = context.data.get(column_name)
        if not _is_blank(value):
            return _RuleOutcome(valid=True)
        column = self._tables[rule.table].column(column_name)
        if column_name not in context.data and column is not None and (
            column.default is not None or _is_generated_key(column)
        ):
            # Omitted columns receive their server-side default
            return _RuleOutcome(valid=True)
        if context.operation == "update" and column_name not in context.data:
            return _RuleOutcome(valid=True)

        fixes: list[AutoFix] = []
        if column is not None:
            default = default_for_column(column)
            if default is not None:
                fixes.append(
                    AutoFix(
                        rule_id=rule.id,
                        field=column_name,
                        original_value=value,
                        fixed_value=default,
                        strategy=FixStrategy.PROVIDE_DEFAULT,
                    )
                )
        return _RuleOutcome(valid=False, message=f"{column_name} is required", fixes=fixes)

    def _validate_unique(self, rule: ValidationRule, context: ValidationContext) -> _RuleOutcome:
        values = {column: context.data.get(column) for column in rule.columns}
        if any(value is None for value in values.values()):
            # NULLs never collide
            return _RuleOutcome(valid=True)
        if self.lookup is None:
            return _RuleOutcome(valid=True, warning=f"Uniqueness of {', '.join(rule.columns)} not verified: no lookup configured")

        key_column = context.key_column or self._key_column(rule.table)
        conflict = self.lookup.find_conflict(rule.table, values, key_column)
        if conflict is None:
            return _RuleOutcome(valid=True)
        if context.operation == "update" and context.existing_record is not None and key_column:
            if str(context.existing_record.get(key_column)) == str(conflict):
                return _RuleOutcome(valid=True)

        fixes: list[AutoFix] = []
        if len(rule.columns) == 1:
            column = self._tables[rule.table].column(rule.column)
            original = values[rule.column]
            if column is not None and isinstance(original, str) and any(item in column.normalized_type for item in TEXT_TYPES):
                fixes.append(
                    AutoFix(
                        rule_id=rule.id,
                        field=rule.column,
                        original_value=original,
                        fixed_value=_with_unique_suffix(original),
                        strategy=FixStrategy.MODIFY_VALUE,
                    )
                )
        return _RuleOutcome(
            valid=False,
            message=f"{', '.join(rule.columns)} must be unique; value already used",
            fixes=fixes,
        )

    def _validate_foreign_key(self, rule: ValidationRule, context: ValidationContext) -> _RuleOutcome:
        column_name = rule.column
        value = context.data.get(column_name)
        column = self._tables[rule.table].column(column_name)
        if value is None:
            if column is None or column.nullable:
                return _RuleOutcome(valid=True)
            return _RuleOutcome(valid=False, message=f"{column_name} must reference {rule.referenced_table}")
        if self.lookup is None:
            return _RuleOutcome(valid=True, warning=f"Reference {column_name} -> {rule.referenced_table} not verified: no lookup configured")
        if self.lookup.record_exists(rule.referenced_table, rule.referenced_column, value):
            return _RuleOutcome(valid=True)
        return _RuleOutcome(
            valid=False,
            message=f"{column_name}={value!r} does not exist in {rule.referenced_table}.{rule.referenced_column}",
            fixes=[
                AutoFix(
                    rule_id=rule.id,
                    field=column_name,
                    original_value=value,
                    fixed_value=value,
                    strategy=FixStrategy.CREATE_DEPENDENCY,
                )
            ],
        )

    def _validate_with_handler(self, rule: ValidationRule, context: ValidationContext) -> _RuleOutcome:
        handler = self.handlers.find(rule.constraint) if rule.constraint is not None else None
        if handler is None:
            return _RuleOutcome(valid=True, warning=f"{rule.name} not verified: no handler registered")
        outcome = handler.apply(rule.constraint, context.data)
        if outcome.valid:
            return _RuleOutcome(valid=True, warning="; ".join(outcome.warnings) or None)
        fixes = [
            AutoFix(
                rule_id=rule.id,
                field=fix.field,
                original_value=context.data.get(fix.field),
                fixed_value=fix.value,
                strategy=FixStrategy(fix.strategy),
            )
            for fix in outcome.fixes
        ]
        return _RuleOutcome(valid=False, message=outcome.message or rule.message, fixes=fixes)

    @staticmethod
    def _validate_email(rule: ValidationRule, context: ValidationContext) -> _RuleOutcome:
        value = context.data.get(rule.column)
        if value is None or EMAIL_PATTERN.match(str(value)):
            return _RuleOutcome(valid=True)
        return _RuleOutcome(valid=False, message=f"{rule.column} is not a valid email address")

    def _key_column(self, table: str) -> str | None:
        keys = self._tables[table].primary_key_columns
        return keys[0] if len(keys) == 1 else None

    def _rules_for_table(
        self,
        table: SnapshotTable,
        snapshot: SchemaSnapshot,
        table_map: TableColumnMap | None,
    ) -> list[ValidationRule]:
        rules: list[ValidationRule] = []

        not_null_columns = [column.name for column in table.columns if not column.nullable]
        for constraint in table.constraints_of(NOT_NULL):
            for name in constraint.columns:
                if name not in not_null_columns:
                    not_null_columns.append(name)
        for name in not_null_columns:
            rules.append(
                ValidationRule(
                    id=f"{table.name}.{name}.not_null",
                    name=f"{name} not null",
                    table=table.name,
                    rule_type=RuleType.NOT_NULL,
                    severity=Severity.ERROR,
                    message=f"{name} is required",
                    columns=(name,),
                    auto_fix_strategy=FixStrategy.PROVIDE_DEFAULT,
                )
            )

        for constraint in table.constraints:
            if constraint.constraint_type in (UNIQUE, PRIMARY_KEY) and constraint.columns:
                rules.append(
                    ValidationRule(
                        id=f"{table.name}.{constraint.name}.unique",
                        name=constraint.name,
                        table=table.name,
                        rule_type=RuleType.UNIQUE,
                        severity=Severity.ERROR,
                        message=f"{', '.join(constraint.columns)} must be unique",
                        columns=tuple(constraint.columns),
                        auto_fix_strategy=FixStrategy.MODIFY_VALUE,
                        constraint=constraint,
                    )
                )
            elif constraint.constraint_type == FOREIGN_KEY and constraint.referenced_table:
                for index, name in enumerate(constraint.columns):
                    referenced = (
                        constraint.referenced_columns[index]
                        if index < len(constraint.referenced_columns)
                        else "id"
                    )
                    rules.append(
                        ValidationRule(
                            id=f"{table.name}.{constraint.name}.{name}.foreign_key",
                            name=constraint.name,
                            table=table.name,
                            rule_type=RuleType.FOREIGN_KEY,
                            severity=Severity.ERROR,
                            message=f"{name} must reference an existing {constraint.referenced_table}",
                            columns=(name,),
                            referenced_table=constraint.referenced_table,
                            referenced_column=referenced,
                            auto_fix_strategy=FixStrategy.CREATE_DEPENDENCY,
                            constraint=constraint,
                        )
                    )
            elif constraint.constraint_type == CHECK:
                rules.append(
                    ValidationRule(
                        id=f"{table.name}.{constraint.name}.check",
                        name=constraint.name,
                        table=table.name,
                        rule_type=RuleType.CHECK,
                        severity=Severity.ERROR,
                        message=f"Check constraint {constraint.name} violated",
                        columns=tuple(constraint.columns),
                        auto_fix_strategy=FixStrategy.MODIFY_VALUE,
                        constraint=constraint,
                    )
                )

        for business_rule in snapshot.rules_for(table.name):
            rules.append(
                ValidationRule(
                    id=f"{table.name}.{business_rule.name}.business_logic",
                    name=business_rule.name,
                    table=table.name,
                    rule_type=RuleType.BUSINESS_LOGIC,
                    severity=Severity.ERROR if business_rule.requires_validation else Severity.WARNING,
                    message=business_rule.description or f"Business rule {business_rule.name} violated",
                    pre_insert=business_rule.requires_validation,
                    constraint=business_rule,
                )
            )

        role = snapshot.role_of(table.name)
        email_column = table_map.column_for("email") if table_map is not None else None
        if role is not None and role.role == "user" and email_column:
            rules.append(
                ValidationRule(
                    id=f"{table.name}.{email_column}.email_format",
                    name="email format",
                    table=table.name,
                    rule_type=RuleType.CUSTOM,
                    severity=Severity.WARNING,
                    message=f"{email_column} must be a valid email address",
                    columns=(email_column,),
                )
            )
        return rules


def _with_unique_suffix(value: str) -> str:
    suffix = uuid.uuid4().hex[:6]
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local}+{suffix}@{domain}"
    return f"{value}_{suffix}"
