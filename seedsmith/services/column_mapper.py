from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from seedsmith.services.schema_snapshot import (
    FOREIGN_KEY,
    UNIQUE,
    SchemaSnapshot,
    SnapshotColumn,
    SnapshotTable,
)

logger = logging.getLogger(__name__)

EXACT_MATCH_WEIGHT = 0.5
ALIAS_MATCH_WEIGHT = 0.4
PATTERN_MATCH_WEIGHT = 0.3
FUZZY_MATCH_WEIGHT = 0.2
DATA_TYPE_WEIGHT = 0.15
CONSTRAINT_WEIGHT = 0.1
REQUIRED_PARITY_WEIGHT = 0.05

FUZZY_THRESHOLD = 0.7
RENAME_THRESHOLD = 0.8
LOW_CONFIDENCE_THRESHOLD = 0.7
STRICT_MINIMUM_CONFIDENCE = 0.7
MAX_ALTERNATIVES = 3

DATA_TYPE_COMPATIBILITY: dict[str, tuple[str, ...]] = {
    "string": ("text", "varchar", "character varying", "char", "character", "citext"),
    "number": ("integer", "bigint", "smallint", "decimal", "numeric", "real", "double precision", "float"),
    "boolean": ("boolean", "bool"),
    "date": ("timestamp", "timestamptz", "date", "time", "timetz", "datetime"),
    "uuid": ("uuid",),
    "email": ("text", "varchar", "character varying", "citext"),
    "url": ("text", "varchar", "character varying"),
    "json": ("json", "jsonb"),
}


@dataclass(frozen=True)
class SemanticField:
    name: str
    description: str
    aliases: tuple[str, ...] = ()
    patterns: tuple[re.Pattern[str], ...] = ()
    data_type: str = "string"
    required: bool = False
    category: str = "metadata"


def _field(
    name: str,
    description: str,
    *,
    aliases: Sequence[str] = (),
    patterns: Sequence[str] = (),
    data_type: str = "string",
    required: bool = False,
    category: str = "metadata",
) -> SemanticField:
    return SemanticField(
        name=name,
        description=description,
        aliases=tuple(aliases),
        patterns=tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns),
        data_type=data_type,
        required=required,
        category=category,
    )


SEMANTIC_FIELD_CATALOG: dict[str, tuple[SemanticField, ...]] = {
    "user": (
        _field(
            "id",
            "Primary identifier for the user",
            aliases=("user_id", "account_id", "profile_id"),
            patterns=(r"^.*_?id$",),
            data_type="uuid",
            required=True,
            category="identity",
        ),
        _field(
            "email",
            "User email address",
            aliases=("email_address", "user_email", "mail"),
            patterns=(r"email", r"mail"),
            data_type="email",
            required=True,
            category="identity",
        ),
        _field(
            "name",
            "User display name",
            aliases=("full_name", "display_name", "username", "first_name", "last_name"),
            patterns=(r"name$", r"^name"),
            required=True,
            category="profile",
        ),
        _field(
            "username",
            "Unique handle for the user",
            aliases=("handle", "user_name", "login"),
            patterns=(r"user.*name", r"handle"),
            category="profile",
        ),
        _field(
            "avatar",
            "User profile picture",
            aliases=("avatar_url", "picture_url", "profile_image", "image_url", "photo_url"),
            patterns=(r"avatar", r"picture", r"image", r"photo"),
            data_type="url",
            category="profile",
        ),
        _field(
            "bio",
            "User biography or description",
            aliases=("about", "description", "profile_text", "summary"),
            patterns=(r"bio", r"about", r"description"),
            category="profile",
        ),
        _field(
            "created_at",
            "Record creation timestamp",
            aliases=("created", "date_created", "inserted_at"),
            patterns=(r"created", r"inserted"),
            data_type="date",
        ),
        _field(
            "updated_at",
            "Record update timestamp",
            aliases=("updated", "modified_at", "date_updated"),
            patterns=(r"updated", r"modified"),
            data_type="date",
        ),
    ),
    "content": (
        _field(
            "title",
            "Content title",
            aliases=("name", "subject", "headline"),
            patterns=(r"title", r"subject"),
            required=True,
            category="profile",
        ),
        _field(
            "content",
            "Main content body",
            aliases=("body", "text", "description", "message"),
            patterns=(r"content", r"body", r"text"),
            category="profile",
        ),
        _field(
            "author",
            "Content author reference",
            aliases=("user_id", "creator_id", "owner_id", "account_id"),
            patterns=(r"user.*id", r"author.*id", r"creator.*id", r"owner.*id"),
            data_type="uuid",
            required=True,
            category="relationship",
        ),
        _field(
            "category",
            "Content category",
            aliases=("type", "kind", "tag"),
            patterns=(r"category", r"type"),
        ),
        _field(
            "published",
            "Publication status",
            aliases=("is_published", "public", "visible"),
            patterns=(r"publish", r"public", r"visible"),
            data_type="boolean",
        ),
    ),
    "association": (),
    "system": (),
    "auth": (),
}


@dataclass(frozen=True)
class MappingOptions:
    strict_mode: bool = False
    enable_pattern_matching: bool = True
    enable_fuzzy_matching: bool = True
    minimum_confidence: float = 0.3
    custom_mappings: Mapping[str, Mapping[str, str]] = field(default_factory=dict)

    @property
    def effective_minimum(self) -> float:
        if self.strict_mode:
            return max(self.minimum_confidence, STRICT_MINIMUM_CONFIDENCE)
        return self.minimum_confidence


@dataclass
class ColumnMapping:
    semantic_field: str
    actual_column: str
    confidence: float
    evidence: list[str] = field(default_factory=list)
    data_type_match: bool = False
    constraint_match: bool = False
    alternative_columns: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class MappingRecommendation:
    kind: str
    message: str
    priority: str
    impact: str
    table: str | None = None
    semantic_field: str | None = None
    current_column: str | None = None
    suggested_column: str | None = None


@dataclass
class TableColumnMap:
    table_name: str
    role: str
    mappings: list[ColumnMapping] = field(default_factory=list)
    unmapped_columns: list[str] = field(default_factory=list)
    unmapped_semantic_fields: list[str] = field(default_factory=list)
    confidence: float = 1.0
    recommendations: list[MappingRecommendation] = field(default_factory=list)

    def column_for(self, semantic_field: str) -> str | None:
        for mapping in self.mappings:
            if mapping.semantic_field == semantic_field:
                return mapping.actual_column
        return None

    def field_for(self, column: str) -> str | None:
        for mapping in self.mappings:
            if mapping.actual_column == column:
                return mapping.semantic_field
        return None

    def as_dict(self) -> dict[str, str]:
        return {mapping.semantic_field: mapping.actual_column for mapping in self.mappings}


@dataclass(frozen=True)
class MappingValidation:
    valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass
class _Candidate:
    column: SnapshotColumn
    score: float
    evidence: list[str]
    data_type_match: bool
    constraint_match: bool


def levenshtein_distance(left: str, right: str) -> int:
    if len(left) < len(right):
        left, right = right, left
    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            cost = 0 if left_char == right_char else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(left: str, right: str) -> float:
    """Normalised edit-distance similarity in [0, 1]."""

    left = left.lower()
    right = right.lower()
    longest = max(len(left), len(right))
    if longest == 0:
        return 1.0
    return (longest - levenshtein_distance(left, right)) / longest


def is_type_compatible(semantic_type: str, column_type: str) -> bool:
    compatible = DATA_TYPE_COMPATIBILITY.get(semantic_type, ())
    normalized = (column_type or "").lower()
    return any(candidate in normalized for candidate in compatible)


class ColumnMapper:
    """Resolve semantic fields (email, name, ...) to concrete columns of a table."""

    def __init__(
        self,
        options: MappingOptions | None = None,
        catalog: Mapping[str, Sequence[SemanticField]] | None = None,
    ) -> None:
        self.options = options or MappingOptions()
        self.catalog = catalog if catalog is not None else SEMANTIC_FIELD_CATALOG

    def semantic_fields(self, role: str) -> Sequence[SemanticField]:
        return self.catalog.get(role, ())

    def map_schema(self, snapshot: SchemaSnapshot) -> dict[str, TableColumnMap]:
        results: dict[str, TableColumnMap] = {}
        for table in snapshot.tables:
            role = snapshot.role_of(table.name)
            results[table.name] = self.map_table(table, role.role if role else "system")
        logger.info(
            "Mapped %d tables (mean confidence %.2f)",
            len(results),
            sum(item.confidence for item in results.values()) / len(results) if results else 1.0,
        )
        return results

    def map_table(self, table: SnapshotTable, role: str) -> TableColumnMap:
        fields = list(self.semantic_fields(role))
        available: list[SnapshotColumn] = list(table.columns)
        mappings: list[ColumnMapping] = []
        claimed_fields: set[str] = set()

        custom = self.options.custom_mappings.get(table.name, {})
        for semantic_name, column_name in custom.items():
            column = table.column(column_name)
            if column is None or column not in available:
                logger.warning(
                    "Custom mapping %s.%s -> %s ignored: column not available",
                    table.name,
                    semantic_name,
                    column_name,
                )
                continue
            mappings.append(
                ColumnMapping(
                    semantic_field=semantic_name,
                    actual_column=column.name,
                    confidence=1.0,
                    evidence=["custom mapping"],
                    data_type_match=True,
                    constraint_match=True,
                )
            )
            available.remove(column)
            claimed_fields.add(semantic_name)

        for semantic in fields:
            if semantic.name in claimed_fields:
                continue
            mapping = self._map_field(table, semantic, available)
            if mapping is None:
                continue
            mappings.append(mapping)
            claimed_fields.add(semantic.name)
            available = [column for column in available if column.name != mapping.actual_column]

        unmapped_fields = [semantic.name for semantic in fields if semantic.name not in claimed_fields]
        unmapped_columns = [column.name for column in available]
        table_map = TableColumnMap(
            table_name=table.name,
            role=role,
            mappings=mappings,
            unmapped_columns=unmapped_columns,
            unmapped_semantic_fields=unmapped_fields,
        )
        table_map.confidence = self._table_confidence(table_map, len(fields))
        table_map.recommendations = self._recommend(table_map, fields)
        logger.debug(
            "Table %s (%s): %d mappings, confidence %.2f",
            table.name,
            role,
            len(mappings),
            table_map.confidence,
        )
        return table_map

    def score_column(
        self, semantic: SemanticField, column: SnapshotColumn, table: SnapshotTable | None = None
    ) -> tuple[float, list[str], bool, bool]:
        """Return the raw (unclamped) score, evidence, type match and constraint match.

        Args:
            semantic: Field being resolved.
            column: Candidate column.
            table: Owning table, used for constraint compatibility.
        """

        score = 0.0
        evidence: list[str] = []
        name = column.name.lower()

        if name == semantic.name.lower():
            score += EXACT_MATCH_WEIGHT
            evidence.append("exact name match")

        if name in (alias.lower() for alias in semantic.aliases):
            score += ALIAS_MATCH_WEIGHT
            evidence.append("alias match")

        if self.options.enable_pattern_matching:
            for pattern in semantic.patterns:
                if pattern.search(column.name):
                    score += PATTERN_MATCH_WEIGHT
                    evidence.append(f"pattern match: {pattern.pattern}")
                    break

        if self.options.enable_fuzzy_matching:
            ratio = similarity(semantic.name, column.name)
            if ratio > FUZZY_THRESHOLD:
                score += ratio * FUZZY_MATCH_WEIGHT
                evidence.append(f"fuzzy match: {ratio:.2f}")

        data_type_match = is_type_compatible(semantic.data_type, column.data_type)
        if data_type_match:
            score += DATA_TYPE_WEIGHT
            evidence.append("data type compatible")

        constraint_match = self._constraint_compatible(semantic, column, table)
        if constraint_match:
            score += CONSTRAINT_WEIGHT
            evidence.append("constraint compatible")

        if semantic.required == (not column.nullable):
            score += REQUIRED_PARITY_WEIGHT
            evidence.append("nullability matches")

        return score, evidence, data_type_match, constraint_match

    def validate_mappings(
        self, mappings: Mapping[str, TableColumnMap], snapshot: SchemaSnapshot
    ) -> MappingValidation:
        errors: list[str] = []
        warnings: list[str] = []
        for table_name, table_map in mappings.items():
            table = snapshot.table(table_name)
            if table is None:
                errors.append(f"Table {table_name} no longer exists")
                continue
            for mapping in table_map.mappings:
                if table.column(mapping.actual_column) is None:
                    errors.append(
                        f"Column {table_name}.{mapping.actual_column} mapped to "
                        f"{mapping.semantic_field} no longer exists"
                    )
                elif mapping.confidence < LOW_CONFIDENCE_THRESHOLD:
                    warnings.append(
                        f"Low confidence mapping {table_name}.{mapping.semantic_field} -> "
                        f"{mapping.actual_column} ({mapping.confidence:.2f})"
                    )
        return MappingValidation(valid=not errors, errors=tuple(errors), warnings=tuple(warnings))

    @staticmethod
    def export_mappings(mappings: Mapping[str, TableColumnMap]) -> dict[str, dict[str, str]]:
        """Serialise mappings as ``table -> semantic field -> column``.

        The result can be fed back as ``MappingOptions.custom_mappings``.
        """

        return {
            table_name: table_map.as_dict()
            for table_name, table_map in mappings.items()
            if table_map.mappings
        }

    def _map_field(
        self, table: SnapshotTable, semantic: SemanticField, available: Sequence[SnapshotColumn]
    ) -> ColumnMapping | None:
        minimum = self.options.effective_minimum
        candidates: list[_Candidate] = []
        for column in available:
            score, evidence, type_match, constraint_match = self.score_column(semantic, column, table)
            if score > 0 and min(1.0, score) >= minimum:
                candidates.append(_Candidate(column, score, evidence, type_match, constraint_match))

        # sorted() is stable, so equal scores keep column declaration order
        candidates = sorted(candidates, key=lambda item: -item.score)
        if not candidates:
            return None

        best = candidates[0]
        confidence = min(1.0, best.score)

        return ColumnMapping(
            semantic_field=semantic.name,
            actual_column=best.column.name,
            confidence=confidence,
            evidence=best.evidence,
            data_type_match=best.data_type_match,
            constraint_match=best.constraint_match,
            alternative_columns=[item.column.name for item in candidates[1 : MAX_ALTERNATIVES + 1]],
        )

    @staticmethod
    def _constraint_compatible(
        semantic: SemanticField, column: SnapshotColumn, table: SnapshotTable | None
    ) -> bool:
        if semantic.category == "identity" and semantic.data_type == "uuid":
            return column.is_primary_key
        if semantic.category == "relationship":
            return column.is_foreign_key or bool(
                table
                and any(column.name in item.columns for item in table.constraints_of(FOREIGN_KEY))
            )
        if semantic.data_type == "email" and table is not None:
            return any(item.columns == (column.name,) for item in table.constraints_of(UNIQUE))
        return False

    @staticmethod
    def _table_confidence(table_map: TableColumnMap, field_count: int) -> float:
        if field_count == 0:
            return 1.0
        total = sum(mapping.confidence for mapping in table_map.mappings)
        coverage = min(1.0, len(table_map.mappings) / field_count)
        return min(1.0, (total / field_count) * coverage)

    def _recommend(
        self, table_map: TableColumnMap, fields: Sequence[SemanticField]
    ) -> list[MappingRecommendation]:
        recommendations: list[MappingRecommendation] = []
        for mapping in table_map.mappings:
            if mapping.confidence < LOW_CONFIDENCE_THRESHOLD and mapping.alternative_columns:
                recommendations.append(
                    MappingRecommendation(
                        kind="use_alternative",
                        message=(
                            f"Low confidence mapping for {mapping.semantic_field}; consider "
                            f"{', '.join(mapping.alternative_columns)}"
                        ),
                        priority="medium",
                        impact="Improved mapping accuracy",
                        table=table_map.table_name,
                        semantic_field=mapping.semantic_field,
                        current_column=mapping.actual_column,
                        suggested_column=mapping.alternative_columns[0],
                    )
                )

        by_name = {semantic.name: semantic for semantic in fields}
        for field_name in table_map.unmapped_semantic_fields:
            semantic = by_name[field_name]
            if semantic.required:
                recommendations.append(
                    MappingRecommendation(
                        kind="add_column",
                        message=f"Required field {field_name} has no matching column",
                        priority="high",
                        impact="Seeding may fail or produce incomplete records",
                        table=table_map.table_name,
                        semantic_field=field_name,
                    )
                )
            for column_name in table_map.unmapped_columns:
                ratio = similarity(field_name, column_name)
                if ratio > RENAME_THRESHOLD:
                    recommendations.append(
                        MappingRecommendation(
                            kind="column_rename",
                            message=(
                                f"Column {column_name} looks like {field_name} "
                                f"(similarity {ratio:.2f})"
                            ),
                            priority="low",
                            impact="Clearer schema semantics",
                            table=table_map.table_name,
                            semantic_field=field_name,
                            current_column=column_name,
                            suggested_column=field_name,
                        )
                    )
        return recommendations
