from __future__ import annotations

import logging
import re
from typing import Iterable

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from seedsmith.services.schema_snapshot import (
    CHECK,
    FOREIGN_KEY,
    PRIMARY_KEY,
    UNIQUE,
    BusinessRule,
    SchemaSnapshot,
    SnapshotColumn,
    SnapshotConstraint,
    SnapshotRelationship,
    SnapshotTable,
    SnapshotTrigger,
    TableRole,
)

logger = logging.getLogger(__name__)

AUTH_TABLE_NAMES = {"auth_users", "users_auth", "identities", "sessions", "refresh_tokens"}
USER_TABLE_PATTERN = re.compile(r"(user|profile|account|member|person|customer)s?$", re.IGNORECASE)
CONTENT_COLUMNS = {"title", "content", "body", "subject", "headline"}
SYSTEM_TABLE_PATTERN = re.compile(r"(^_|migration|schema_version|audit|log$|logs$|config|settings)", re.IGNORECASE)

MAKERKIT_TABLES = {"accounts", "accounts_memberships", "roles"}

_TRIGGER_QUERY = text(
    """
    SELECT trigger_name, action_timing, event_manipulation, action_statement
    FROM information_schema.triggers
    WHERE event_object_table = :table AND event_object_schema = :schema
    ORDER BY trigger_name
    """
)


class SchemaIntrospectionError(Exception):
    """Raised when the target schema cannot be read."""


def classify_table_role(table: SnapshotTable, foreign_key_count: int) -> TableRole:
    """Heuristic role of a table from its name and columns."""

    name = table.name.lower()
    columns = {column.name.lower() for column in table.columns}
    evidence: list[str] = []

    if name in AUTH_TABLE_NAMES or name.startswith("auth_"):
        return TableRole(table=table.name, role="auth", confidence=0.9, evidence=("auth table name",))

    if SYSTEM_TABLE_PATTERN.search(name):
        return TableRole(table=table.name, role="system", confidence=0.7, evidence=("system table name",))

    non_key_columns = [
        column
        for column in table.columns
        if not column.is_primary_key and not column.is_foreign_key
        and column.name.lower() not in {"created_at", "updated_at"}
    ]
    if foreign_key_count >= 2 and len(non_key_columns) <= 2:
        return TableRole(
            table=table.name,
            role="association",
            confidence=0.8,
            evidence=(f"{foreign_key_count} foreign keys", "few payload columns"),
        )

    if USER_TABLE_PATTERN.search(name):
        confidence = 0.6
        evidence.append("user-like table name")
        if columns & {"email", "email_address"}:
            confidence += 0.2
            evidence.append("email column")
        if any("name" in column for column in columns):
            confidence += 0.1
            evidence.append("name column")
        return TableRole(table=table.name, role="user", confidence=min(confidence, 1.0), evidence=tuple(evidence))

    if columns & CONTENT_COLUMNS:
        return TableRole(
            table=table.name,
            role="content",
            confidence=0.7,
            evidence=tuple(f"{column} column" for column in sorted(columns & CONTENT_COLUMNS)),
        )

    if columns & {"email", "email_address"}:
        return TableRole(table=table.name, role="user", confidence=0.5, evidence=("email column",))

    return TableRole(table=table.name, role="system", confidence=0.3, evidence=("no distinguishing features",))


def detect_framework(tables: Iterable[SnapshotTable]) -> tuple[str, str, float]:
    by_name = {table.name: table for table in tables}
    present = MAKERKIT_TABLES & set(by_name)
    accounts = by_name.get("accounts")
    if accounts is not None and accounts.column("is_personal_account") is not None:
        return "makerkit", "v2" if "accounts_memberships" in by_name else "v1", 0.6 + 0.1 * len(present)
    if len(present) >= 2:
        return "makerkit", "unknown", 0.2 * len(present)
    if "profiles" in by_name and ("auth_users" in by_name or "users" not in by_name):
        return "supabase", "unknown", 0.5
    return "custom", "unknown", 0.0


def derive_business_rules(table: SnapshotTable) -> list[BusinessRule]:
    rules: list[BusinessRule] = []
    if table.column("is_personal_account") is not None:
        for column in ("organization_id", "organisation_id", "org_id"):
            if table.column(column) is not None:
                rules.append(
                    BusinessRule(
                        table=table.name,
                        name="personal_account_without_organization",
                        description="Personal account must not have an organization id",
                        rule_type="conditional_insert",
                        condition=f"is_personal_account IMPLIES {column} IS NULL",
                        requires_validation=True,
                    )
                )
                break
    return rules


class SchemaIntrospector:
    """Build a :class:`SchemaSnapshot` from a live database through SQLAlchemy's inspector."""

    def __init__(self, engine: Engine, *, schema: str | None = None, exclude_tables: Iterable[str] = ()) -> None:
        self.engine = engine
        self.schema = schema
        self.exclude_tables = set(exclude_tables)

    def introspect(self) -> SchemaSnapshot:
        try:
            inspector = inspect(self.engine)
            table_names = [
                name
                for name in sorted(inspector.get_table_names(schema=self.schema))
                if name not in self.exclude_tables
            ]
            tables: list[SnapshotTable] = []
            relationships: list[SnapshotRelationship] = []
            for name in table_names:
                table, table_relationships = self._read_table(inspector, name)
                tables.append(table)
                relationships.extend(table_relationships)
        except SQLAlchemyError as exc:
            raise SchemaIntrospectionError(f"Failed to introspect schema: {exc}") from exc

        foreign_key_counts = {table.name: 0 for table in tables}
        for rel in relationships:
            foreign_key_counts[rel.from_table] = foreign_key_counts.get(rel.from_table, 0) + 1

        roles = tuple(classify_table_role(table, foreign_key_counts[table.name]) for table in tables)
        rules = tuple(rule for table in tables for rule in derive_business_rules(table))
        framework, version, confidence = detect_framework(tables)
        snapshot = SchemaSnapshot(
            tables=tuple(tables),
            relationships=tuple(relationships),
            table_roles=roles,
            business_rules=rules,
            framework=framework,
            framework_version=version,
            framework_confidence=min(confidence, 1.0),
        )
        logger.info(
            "Introspected %d tables, %d relationships (framework %s, fingerprint %s)",
            len(tables),
            len(relationships),
            framework,
            snapshot.fingerprint(),
        )
        return snapshot

    def _read_table(self, inspector, name: str) -> tuple[SnapshotTable, list[SnapshotRelationship]]:
        pk = inspector.get_pk_constraint(name, schema=self.schema) or {}
        pk_columns = tuple(pk.get("constrained_columns") or ())
        foreign_keys = inspector.get_foreign_keys(name, schema=self.schema)
        fk_columns = {column for fk in foreign_keys for column in fk.get("constrained_columns") or ()}
        unique_constraints = inspector.get_unique_constraints(name, schema=self.schema)

        columns = []
        for info in inspector.get_columns(name, schema=self.schema):
            column_type = info.get("type")
            default = info.get("default")
            if info.get("autoincrement") is True and default is None and info["name"] in pk_columns:
                default = "autoincrement"
            columns.append(
                SnapshotColumn(
                    name=info["name"],
                    data_type=str(column_type).lower() if column_type is not None else "unknown",
                    nullable=bool(info.get("nullable", True)) and info["name"] not in pk_columns,
                    is_primary_key=info["name"] in pk_columns,
                    is_foreign_key=info["name"] in fk_columns,
                    default=str(default) if default is not None else None,
                    max_length=getattr(column_type, "length", None),
                )
            )
        nullable_by_name = {column.name: column.nullable for column in columns}

        constraints: list[SnapshotConstraint] = []
        if pk_columns:
            constraints.append(
                SnapshotConstraint(name=pk.get("name") or f"{name}_pkey", constraint_type=PRIMARY_KEY, columns=pk_columns)
            )
        for unique in unique_constraints:
            constraints.append(
                SnapshotConstraint(
                    name=unique.get("name") or f"{name}_{'_'.join(unique['column_names'])}_key",
                    constraint_type=UNIQUE,
                    columns=tuple(unique["column_names"]),
                )
            )
        for check in self._check_constraints(inspector, name):
            constraints.append(
                SnapshotConstraint(
                    name=check.get("name") or f"{name}_check",
                    constraint_type=CHECK,
                    check_expression=check.get("sqltext"),
                )
            )

        relationships: list[SnapshotRelationship] = []
        unique_sets = {tuple(unique["column_names"]) for unique in unique_constraints} | {pk_columns}
        for fk in foreign_keys:
            constrained = tuple(fk.get("constrained_columns") or ())
            referred = tuple(fk.get("referred_columns") or ())
            options = fk.get("options") or {}
            on_delete = (options.get("ondelete") or "").upper() or None
            deferrable = bool(options.get("deferrable"))
            constraint_name = fk.get("name") or f"{name}_{'_'.join(constrained)}_fkey"
            constraints.append(
                SnapshotConstraint(
                    name=constraint_name,
                    constraint_type=FOREIGN_KEY,
                    columns=constrained,
                    referenced_table=fk.get("referred_table"),
                    referenced_columns=referred,
                    deferrable=deferrable,
                    on_delete=on_delete,
                )
            )
            for index, column in enumerate(constrained):
                relationships.append(
                    SnapshotRelationship(
                        from_table=name,
                        from_column=column,
                        to_table=fk.get("referred_table"),
                        to_column=referred[index] if index < len(referred) else "id",
                        cardinality="one_to_one" if constrained in unique_sets else "one_to_many",
                        cascade_delete=on_delete == "CASCADE",
                        nullable=nullable_by_name.get(column, True),
                        deferrable=deferrable,
                        constraint_name=constraint_name,
                    )
                )

        table = SnapshotTable(
            name=name,
            columns=tuple(columns),
            constraints=tuple(constraints),
            triggers=tuple(self._triggers(name)),
            schema=self.schema,
        )
        return table, relationships

    def _check_constraints(self, inspector, name: str) -> list[dict]:
        try:
            return list(inspector.get_check_constraints(name, schema=self.schema))
        except NotImplementedError:
            return []

    def _triggers(self, name: str) -> list[SnapshotTrigger]:
        if self.engine.dialect.name != "postgresql":
            return []
        triggers: dict[str, SnapshotTrigger] = {}
        with self.engine.connect() as connection:
            rows = connection.execute(_TRIGGER_QUERY, {"table": name, "schema": self.schema or "public"})
            for trigger_name, timing, event, statement in rows:
                existing = triggers.get(trigger_name)
                events = (existing.events if existing else ()) + (event,)
                function_match = re.search(r"EXECUTE (?:FUNCTION|PROCEDURE) ([\w.]+)", statement or "")
                triggers[trigger_name] = SnapshotTrigger(
                    name=trigger_name,
                    timing=timing,
                    events=events,
                    function_name=function_match.group(1) if function_match else None,
                )
        return list(triggers.values())
