"""Immutable description of a relational schema as seen by the seeding engine."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field

TABLE_ROLES = ("user", "content", "association", "system", "auth")

PRIMARY_KEY = "PRIMARY KEY"
FOREIGN_KEY = "FOREIGN KEY"
UNIQUE = "UNIQUE"
CHECK = "CHECK"
NOT_NULL = "NOT NULL"


@dataclass(frozen=True)
class SnapshotColumn:
    name: str
    data_type: str
    nullable: bool = True
    is_primary_key: bool = False
    is_foreign_key: bool = False
    default: str | None = None
    max_length: int | None = None

    @property
    def normalized_type(self) -> str:
        return (self.data_type or "").strip().lower()


@dataclass(frozen=True)
class SnapshotConstraint:
    name: str
    constraint_type: str
    columns: tuple[str, ...] = ()
    referenced_table: str | None = None
    referenced_columns: tuple[str, ...] = ()
    check_expression: str | None = None
    deferrable: bool = False
    on_delete: str | None = None


@dataclass(frozen=True)
class SnapshotTrigger:
    name: str
    timing: str
    events: tuple[str, ...]
    function_name: str | None = None

    def fires_on(self, event: str) -> bool:
        return event.upper() in {item.upper() for item in self.events}


@dataclass(frozen=True)
class SnapshotTable:
    name: str
    columns: tuple[SnapshotColumn, ...]
    constraints: tuple[SnapshotConstraint, ...] = ()
    triggers: tuple[SnapshotTrigger, ...] = ()
    schema: str | None = None

    @property
    def column_names(self) -> list[str]:
        return [column.name for column in self.columns]

    @property
    def primary_key_columns(self) -> list[str]:
        declared = [
            name
            for constraint in self.constraints
            if constraint.constraint_type == PRIMARY_KEY
            for name in constraint.columns
        ]
        if declared:
            return declared
        return [column.name for column in self.columns if column.is_primary_key]

    def column(self, name: str) -> SnapshotColumn | None:
        for column in self.columns:
            if column.name == name:
                return column
        return None

    def constraints_of(self, constraint_type: str) -> list[SnapshotConstraint]:
        return [item for item in self.constraints if item.constraint_type == constraint_type]


@dataclass(frozen=True)
class SnapshotRelationship:
    from_table: str
    from_column: str
    to_table: str
    to_column: str
    cardinality: str = "one_to_many"
    cascade_delete: bool = False
    nullable: bool = True
    deferrable: bool = False
    constraint_name: str | None = None

    @property
    def is_required(self) -> bool:
        return not self.nullable


@dataclass(frozen=True)
class TableRole:
    table: str
    role: str
    confidence: float = 1.0
    evidence: tuple[str, ...] = ()


@dataclass(frozen=True)
class BusinessRule:
    table: str
    name: str
    description: str = ""
    rule_type: str = "business_rule"
    condition: str = ""
    requires_validation: bool = False


@dataclass(frozen=True)
class SchemaSnapshot:
    """Tables, relationships and classifications produced by schema introspection.

    Snapshots are immutable; components never mutate them and a changed schema
    is represented by a new snapshot with a different fingerprint.
    """

    tables: tuple[SnapshotTable, ...]
    relationships: tuple[SnapshotRelationship, ...] = ()
    table_roles: tuple[TableRole, ...] = ()
    business_rules: tuple[BusinessRule, ...] = ()
    framework: str = "custom"
    framework_version: str = "unknown"
    framework_confidence: float = 0.0
    _fingerprint: str | None = field(default=None, compare=False, repr=False)

    @property
    def table_names(self) -> list[str]:
        return [table.name for table in self.tables]

    def table(self, name: str) -> SnapshotTable | None:
        for table in self.tables:
            if table.name == name:
                return table
        return None

    def role_of(self, table_name: str) -> TableRole | None:
        for role in self.table_roles:
            if role.table == table_name:
                return role
        return None

    def tables_with_role(self, role: str) -> list[TableRole]:
        matches = [item for item in self.table_roles if item.role == role]
        return sorted(matches, key=lambda item: -item.confidence)

    def rules_for(self, table_name: str) -> list[BusinessRule]:
        return [rule for rule in self.business_rules if rule.table == table_name]

    def relationships_from(self, table_name: str) -> list[SnapshotRelationship]:
        return [rel for rel in self.relationships if rel.from_table == table_name]

    def relationships_to(self, table_name: str) -> list[SnapshotRelationship]:
        return [rel for rel in self.relationships if rel.to_table == table_name]

    def fingerprint(self) -> str:
        """Stable hash of the structural content of the snapshot."""

        if self._fingerprint is not None:
            return self._fingerprint
        payload = {
            "framework": [self.framework, self.framework_version],
            "tables": [
                {
                    "name": table.name,
                    "columns": [
                        [c.name, c.normalized_type, c.nullable, c.is_primary_key, c.is_foreign_key]
                        for c in table.columns
                    ],
                    "constraints": sorted(
                        [c.constraint_type, c.name, list(c.columns), c.check_expression or ""]
                        for c in table.constraints
                    ),
                    "triggers": sorted(t.name for t in table.triggers),
                }
                for table in sorted(self.tables, key=lambda item: item.name)
            ],
            "relationships": sorted(
                [r.from_table, r.from_column, r.to_table, r.to_column, r.nullable]
                for r in self.relationships
            ),
        }
        digest = hashlib.sha256(
            json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        ).hexdigest()[:16]
        object.__setattr__(self, "_fingerprint", digest)
        return digest
