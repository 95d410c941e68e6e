from seedsmith.services.column_mapper import (
    ColumnMapper,
    MappingOptions,
    SemanticField,
    levenshtein_distance,
    similarity,
)
from seedsmith.services.schema_snapshot import (
    UNIQUE,
    SchemaSnapshot,
    SnapshotColumn,
    SnapshotConstraint,
    SnapshotTable,
    TableRole,
)


def _users_table(*columns: SnapshotColumn, constraints=()) -> SnapshotTable:
    return SnapshotTable(
        name="users",
        columns=(SnapshotColumn("id", "uuid", nullable=False, is_primary_key=True),) + columns,
        constraints=tuple(constraints),
    )


def test_edit_distance_helpers():
    assert levenshtein_distance("kitten", "sitting") == 3
    assert levenshtein_distance("", "abc") == 3
    assert similarity("email", "email") == 1.0
    assert similarity("email", "emial") == 0.6


def test_exact_match_is_clamped_to_full_confidence():
    table = _users_table(
        SnapshotColumn("email", "text", nullable=False),
        constraints=[SnapshotConstraint("users_email_key", UNIQUE, ("email",))],
    )

    table_map = ColumnMapper().map_table(table, "user")

    email = next(item for item in table_map.mappings if item.semantic_field == "email")
    assert email.actual_column == "email"
    assert email.confidence == 1.0
    assert "exact name match" in email.evidence
    assert email.constraint_match is True


def test_alias_match_resolves_renamed_column():
    table = _users_table(SnapshotColumn("email_address", "varchar(255)", nullable=False))

    table_map = ColumnMapper().map_table(table, "user")

    assert table_map.column_for("email") == "email_address"
    mapping = next(item for item in table_map.mappings if item.semantic_field == "email")
    assert "alias match" in mapping.evidence


def test_mappings_stay_within_table_and_unit_interval():
    table = _users_table(
        SnapshotColumn("display_name", "text", nullable=False),
        SnapshotColumn("avatar_url", "text"),
        SnapshotColumn("about", "text"),
        SnapshotColumn("created", "timestamptz", nullable=False, default="now()"),
    )

    table_map = ColumnMapper().map_table(table, "user")

    assert table_map.mappings
    for mapping in table_map.mappings:
        assert mapping.actual_column in table.column_names
        assert 0.0 <= mapping.confidence <= 1.0
    assert 0.0 <= table_map.confidence <= 1.0
    claimed = [mapping.actual_column for mapping in table_map.mappings]
    assert len(claimed) == len(set(claimed))


def test_equal_scores_prefer_declaration_order():
    phone = SemanticField(name="phone", description="Contact number", aliases=("mobile", "cell"))
    table = SnapshotTable(
        name="contacts",
        columns=(SnapshotColumn("mobile", "text"), SnapshotColumn("cell", "text")),
    )
    mapper = ColumnMapper(catalog={"user": (phone,)})

    table_map = mapper.map_table(table, "user")

    mapping = table_map.mappings[0]
    assert mapping.actual_column == "mobile"
    assert mapping.alternative_columns == ["cell"]


def test_alternatives_exclude_columns_below_minimum_confidence():
    phone = SemanticField(name="phone", description="Contact number", aliases=("mobile", "cell"))
    table = SnapshotTable(
        name="contacts",
        columns=(SnapshotColumn("mobile", "text"), SnapshotColumn("notes", "text"), SnapshotColumn("cell", "text")),
    )
    mapper = ColumnMapper(MappingOptions(minimum_confidence=0.3), catalog={"user": (phone,)})

    mapping = mapper.map_table(table, "user").mappings[0]

    assert mapping.actual_column == "mobile"
    assert mapping.alternative_columns == ["cell"]
    assert mapper.score_column(phone, table.column("notes"), table)[0] < 0.3


def test_custom_mapping_wins_with_full_confidence():
    table = _users_table(
        SnapshotColumn("email", "text", nullable=False),
        SnapshotColumn("backup_contact", "text"),
    )
    mapper = ColumnMapper(MappingOptions(custom_mappings={"users": {"email": "backup_contact"}}))

    table_map = mapper.map_table(table, "user")

    assert table_map.column_for("email") == "backup_contact"
    mapping = next(item for item in table_map.mappings if item.semantic_field == "email")
    assert mapping.confidence == 1.0
    assert mapping.evidence == ["custom mapping"]


def test_custom_mapping_to_missing_column_is_ignored():
    table = _users_table(SnapshotColumn("email", "text", nullable=False))
    mapper = ColumnMapper(MappingOptions(custom_mappings={"users": {"email": "does_not_exist"}}))

    table_map = mapper.map_table(table, "user")

    assert table_map.column_for("email") == "email"


def test_strict_mode_rejects_weak_matches():
    table = _users_table(SnapshotColumn("contact_mail", "text"))

    relaxed = ColumnMapper().map_table(table, "user")
    strict = ColumnMapper(MappingOptions(strict_mode=True)).map_table(table, "user")

    assert relaxed.column_for("email") == "contact_mail"
    assert strict.column_for("email") is None
    assert "email" in strict.unmapped_semantic_fields


def test_missing_required_fields_are_recommended():
    table = _users_table()

    table_map = ColumnMapper().map_table(table, "user")

    add_column = {item.semantic_field for item in table_map.recommendations if item.kind == "add_column"}
    assert {"email", "name"} <= add_column
    assert all(item.priority == "high" for item in table_map.recommendations if item.kind == "add_column")


def test_tables_without_catalog_fields_are_fully_confident():
    snapshot = SchemaSnapshot(
        tables=(SnapshotTable(name="migrations", columns=(SnapshotColumn("version", "text"),)),),
        table_roles=(TableRole("migrations", "system", 0.7),),
    )

    mappings = ColumnMapper().map_schema(snapshot)

    assert mappings["migrations"].mappings == []
    assert mappings["migrations"].confidence == 1.0
    assert mappings["migrations"].unmapped_columns == ["version"]


def test_validate_mappings_reports_dropped_columns(profiles_snapshot):
    mapper = ColumnMapper()
    mappings = mapper.map_schema(profiles_snapshot)
    profiles = profiles_snapshot.table("profiles")
    trimmed = SchemaSnapshot(
        tables=(
            profiles_snapshot.table("auth_users"),
            profiles_snapshot.table("accounts"),
            SnapshotTable(
                name="profiles",
                columns=tuple(column for column in profiles.columns if column.name != "bio"),
                constraints=profiles.constraints,
            ),
        ),
        relationships=profiles_snapshot.relationships,
        table_roles=profiles_snapshot.table_roles,
    )

    check = mapper.validate_mappings(mappings, trimmed)

    assert check.valid is False
    assert any("profiles.bio" in error for error in check.errors)
    assert mapper.validate_mappings(mappings, profiles_snapshot).valid is True


def test_exported_mappings_can_be_fed_back(profiles_snapshot):
    mapper = ColumnMapper()
    exported = ColumnMapper.export_mappings(mapper.map_schema(profiles_snapshot))

    assert exported["profiles"]["email"] == "email"
    assert "auth_users" not in exported

    replay = ColumnMapper(MappingOptions(custom_mappings=exported)).map_table(
        profiles_snapshot.table("profiles"), "user"
    )
    assert replay.as_dict() == exported["profiles"]
    assert all(mapping.confidence == 1.0 for mapping in replay.mappings)
