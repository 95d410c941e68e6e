import re
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from seedsmith.config import Settings
from seedsmith.schemas import SeedingOptions, UserCreationRequest
from seedsmith.services.constraint_validator import ConstraintValidator
from seedsmith.services.fallback_strategies import AuthOnlyStrategy, FallbackOutcome, FallbackRegistry
from seedsmith.services.field_generators import FieldValueGenerator
from seedsmith.services.schema_introspector import SchemaIntrospector
from seedsmith.services.schema_snapshot import (
    FOREIGN_KEY,
    PRIMARY_KEY,
    SchemaSnapshot,
    SnapshotColumn,
    SnapshotConstraint,
    SnapshotRelationship,
    SnapshotTable,
    TableRole,
)
from seedsmith.services.seeding_backend import SqlAlchemyBackend, TablePrincipalProvider
from seedsmith.services.seeding_orchestrator import SeedingOrchestrator, build_orchestrator
from seedsmith.services.workflow_executor import CancellationToken

REQUEST = {"email": "ada@example.com", "name": "Ada Lovelace"}


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class CountingProvider:
    def __init__(self, *snapshots: SchemaSnapshot) -> None:
        self.snapshots = list(snapshots)
        self.calls = 0

    def __call__(self) -> SchemaSnapshot:
        snapshot = self.snapshots[min(self.calls, len(self.snapshots) - 1)]
        self.calls += 1
        return snapshot


def _orchestrator(provider, backend, **options) -> SeedingOrchestrator:
    options.setdefault("retry_backoff_seconds", 0)
    return SeedingOrchestrator(provider, backend, SeedingOptions(**options), generator=FieldValueGenerator(seed=42))


def _without_bio(snapshot: SchemaSnapshot) -> SchemaSnapshot:
    profiles = snapshot.table("profiles")
    trimmed = SnapshotTable(
        name="profiles",
        columns=tuple(column for column in profiles.columns if column.name != "bio"),
        constraints=profiles.constraints,
    )
    return SchemaSnapshot(
        tables=(snapshot.table("auth_users"), snapshot.table("accounts"), trimmed),
        relationships=snapshot.relationships,
        table_roles=snapshot.table_roles,
        framework=snapshot.framework,
        framework_confidence=snapshot.framework_confidence,
    )


def _makerkit_snapshot() -> SchemaSnapshot:
    auth_users = SnapshotTable(
        name="auth_users",
        columns=(SnapshotColumn("id", "uuid", nullable=False, is_primary_key=True),),
        constraints=(SnapshotConstraint("auth_users_pkey", PRIMARY_KEY, ("id",)),),
    )
    accounts = SnapshotTable(
        name="accounts",
        columns=(
            SnapshotColumn("id", "uuid", nullable=False, is_primary_key=True, is_foreign_key=True),
            SnapshotColumn("name", "character varying", nullable=False),
            SnapshotColumn("email", "character varying"),
            SnapshotColumn("username", "character varying"),
            SnapshotColumn("is_personal_account", "boolean", nullable=False, default="true"),
        ),
        constraints=(SnapshotConstraint("accounts_pkey", PRIMARY_KEY, ("id",)),),
    )
    return SchemaSnapshot(
        tables=(auth_users, accounts),
        relationships=(
            SnapshotRelationship("accounts", "id", "auth_users", "id", cardinality="one_to_one", nullable=False),
        ),
        table_roles=(TableRole("auth_users", "auth", 0.9), TableRole("accounts", "user", 0.9)),
        framework="makerkit",
        framework_version="v1",
        framework_confidence=0.7,
    )


def test_create_user_runs_the_adaptive_workflow(orchestrator, recording_backend):
    result = orchestrator.create_user(UserCreationRequest(**REQUEST))

    assert result.success is True
    assert result.error is None
    assert result.primary_table == "profiles"
    assert result.entity_id == recording_backend.records["auth_users"][0]["id"]
    assert result.adaptation.strategies_used == ["adaptive_workflow", "constraint_validation"]
    assert result.adaptation.fallbacks_attempted == []
    assert result.adaptation.framework_detected == "supabase"
    assert result.adaptation.adaptation_confidence > 0
    assert result.schema_info.primary_table == "profiles"
    assert result.validation.valid is True
    assert result.timings.total_ms >= result.timings.execution_ms > 0


def test_analysis_cache_ttl_and_fingerprint_reuse(profiles_snapshot, recording_backend):
    provider = CountingProvider(profiles_snapshot)
    clock = FakeClock()
    orchestrator = SeedingOrchestrator(provider, recording_backend, SeedingOptions(cache_ttl_minutes=10), clock=clock)

    first = orchestrator.analyze()
    assert orchestrator.analyze() is first
    assert provider.calls == 1

    clock.now += timedelta(minutes=11)
    assert orchestrator.analyze() is first
    assert provider.calls == 2

    orchestrator.invalidate()
    rebuilt = orchestrator.analyze()
    assert rebuilt is not first
    assert rebuilt.fingerprint == first.fingerprint
    assert provider.calls == 3

    orchestrator.analyze(force=True)
    assert provider.calls == 4


def test_changed_schema_is_reanalysed_after_expiry(profiles_snapshot, recording_backend):
    provider = CountingProvider(profiles_snapshot, _without_bio(profiles_snapshot))
    clock = FakeClock()
    orchestrator = SeedingOrchestrator(provider, recording_backend, SeedingOptions(cache_ttl_minutes=1), clock=clock)

    first = orchestrator.analyze()
    clock.now += timedelta(minutes=2)
    second = orchestrator.analyze()

    assert second is not first
    assert second.fingerprint != first.fingerprint
    assert all(field.name != "bio" for field in second.workflow.step("create_profiles_record").fields)


def test_reanalysis_builds_a_fresh_validator(profiles_snapshot, recording_backend):
    built = []

    def validator_factory():
        validator = ConstraintValidator(lookup=recording_backend)
        built.append(validator)
        return validator

    provider = CountingProvider(profiles_snapshot, _without_bio(profiles_snapshot))
    clock = FakeClock()
    orchestrator = SeedingOrchestrator(
        provider,
        recording_backend,
        SeedingOptions(cache_ttl_minutes=1, retry_backoff_seconds=0),
        validator_factory=validator_factory,
        clock=clock,
    )

    first = orchestrator.analyze()
    first_rules = [rule.id for rule in first.validator.rules_for("profiles")]
    clock.now += timedelta(minutes=2)
    second = orchestrator.analyze()

    assert built == [first.validator, second.validator]
    assert first.validator.initialized is True
    assert [rule.id for rule in first.validator.rules_for("profiles")] == first_rules

    recording_backend.records["profiles"].append({"id": "existing", "email": "ada@example.com"})
    result = orchestrator.create_user(REQUEST)

    assert result.success is True
    assert result.adaptation.constraints_handled == 1
    assert result.validation.valid is True


def test_disabled_cache_always_introspects(profiles_snapshot, recording_backend):
    provider = CountingProvider(profiles_snapshot)
    orchestrator = SeedingOrchestrator(provider, recording_backend, SeedingOptions(enable_schema_cache=False))

    orchestrator.analyze()
    orchestrator.analyze()

    assert provider.calls == 2
    assert orchestrator.cache.entry is None


def test_seeding_plan_and_schema_info(orchestrator):
    graph = orchestrator.seeding_plan()
    info = orchestrator.schema_info()

    assert graph.seeding_order.index("accounts") < graph.seeding_order.index("profiles")
    assert info.framework == "supabase"
    assert info.primary_table == "profiles"
    assert info.fingerprint == orchestrator.analyze().fingerprint


def test_low_framework_confidence_is_recommended(recording_backend, profiles_snapshot):
    snapshot = SchemaSnapshot(
        tables=profiles_snapshot.tables,
        relationships=profiles_snapshot.relationships,
        table_roles=profiles_snapshot.table_roles,
        framework="custom",
        framework_confidence=0.1,
    )
    analysis = _orchestrator(lambda: snapshot, recording_backend).analyze()

    assert any("Framework detection confidence is low" in item for item in analysis.recommendations)


def test_missing_workflow_falls_back_to_simple_profiles(recording_backend):
    orchestrator = _orchestrator(lambda: SchemaSnapshot(tables=()), recording_backend)

    result = orchestrator.create_user(REQUEST)

    assert result.success is True
    assert result.adaptation.fallbacks_attempted == ["simple_profiles"]
    assert result.adaptation.fallbacks_triggered == ["simple_profiles"]
    assert result.adaptation.strategies_used == ["fallback:simple_profiles"]
    assert result.primary_table == "profiles"
    principal_id = recording_backend.records["auth_users"][0]["id"]
    assert result.entity_id == principal_id
    assert recording_backend.records["profiles"] == [
        {"id": principal_id, "email": "ada@example.com", "name": "Ada Lovelace"}
    ]
    assert any("created via simple_profiles" in item for item in result.recommendations)


def test_failed_workflow_rolls_back_then_falls_back(profiles_snapshot, backend_factory):
    backend = backend_factory(fail_tables={"profiles"})
    orchestrator = _orchestrator(lambda: profiles_snapshot, backend)

    result = orchestrator.create_user(REQUEST)

    assert result.success is True
    assert result.execution.failed_step == "create_profiles_record"
    assert result.execution.rollback_completed is True
    assert backend.records["accounts"] == []
    assert result.adaptation.fallbacks_triggered == ["simple_profiles"]
    assert result.primary_table is None
    assert any("profiles record not created" in item for item in result.recommendations)


def test_fallbacks_cascade_in_configured_order(backend_factory):
    backend = backend_factory(fail_tables={"accounts"})
    orchestrator = _orchestrator(
        lambda: SchemaSnapshot(tables=()),
        backend,
        fallback_strategies=["accounts_only", "auth_only"],
    )

    result = orchestrator.create_user(REQUEST)

    assert result.success is True
    assert result.adaptation.fallbacks_attempted == ["accounts_only", "auth_only"]
    assert result.adaptation.fallbacks_triggered == ["auth_only"]
    assert result.primary_table is None
    assert "Only the authentication principal was created" in result.recommendations


def test_exhausted_fallbacks_return_a_failed_result(backend_factory):
    orchestrator = _orchestrator(lambda: SchemaSnapshot(tables=()), backend_factory(fail_principal=True))

    result = orchestrator.create_user(REQUEST)

    assert result.success is False
    assert result.error.startswith("All fallback strategies failed")
    assert result.adaptation.fallbacks_attempted == ["simple_profiles", "accounts_only", "auth_only"]
    assert result.adaptation.fallbacks_triggered == []


def test_multiple_attempts_can_be_disabled(recording_backend):
    orchestrator = _orchestrator(lambda: SchemaSnapshot(tables=()), recording_backend, enable_multiple_attempts=False)

    result = orchestrator.create_user(REQUEST)

    assert result.success is False
    assert result.adaptation.fallbacks_attempted == []
    assert recording_backend.principal_calls == 0


def test_cancelled_run_does_not_fall_back(orchestrator, recording_backend):
    token = CancellationToken()
    token.cancel()

    result = orchestrator.create_user(REQUEST, cancel_token=token)

    assert result.success is False
    assert result.error == "Workflow cancelled"
    assert result.adaptation.fallbacks_attempted == []
    assert recording_backend.principal_calls == 0


def test_hooks_wrap_creation(orchestrator, recording_backend):
    def shout_name(data):
        return {**data, "name": data["name"].upper()}

    def tag(result):
        result.recommendations.append("tagged")

    orchestrator.add_before_hook(shout_name)
    orchestrator.add_after_hook(tag)

    result = orchestrator.create_user(REQUEST)

    assert result.success is True
    assert recording_backend.records["profiles"][0]["name"] == "ADA LOVELACE"
    assert result.recommendations[-1] == "tagged"


def test_failing_hook_yields_failed_result(orchestrator, recording_backend):
    def reject(data):
        raise ValueError("domain not allowed")

    orchestrator.add_before_hook(reject)

    result = orchestrator.create_user(REQUEST)

    assert result.success is False
    assert result.error == "domain not allowed"
    assert recording_backend.principal_calls == 0


def test_progressive_enhancement_derives_username(recording_backend):
    orchestrator = _orchestrator(_makerkit_snapshot, recording_backend, primary_table="accounts")

    result = orchestrator.create_user(REQUEST)

    assert result.success is True
    assert "progressive_enhancement" in result.adaptation.strategies_used
    assert re.fullmatch(r"ada\d{4}", recording_backend.records["accounts"][0]["username"])


def test_progressive_enhancement_can_be_disabled(recording_backend):
    orchestrator = _orchestrator(
        _makerkit_snapshot,
        recording_backend,
        primary_table="accounts",
        enable_progressive_enhancement=False,
    )

    result = orchestrator.create_user({**REQUEST, "username": "countess"})

    assert result.success is True
    assert "progressive_enhancement" not in result.adaptation.strategies_used
    assert recording_backend.records["accounts"][0]["username"] == "countess"


def test_validate_schema_reports_drift(profiles_snapshot, recording_backend):
    stable = _orchestrator(lambda: profiles_snapshot, recording_backend)
    assert stable.validate_schema().valid is True

    drifting = _orchestrator(CountingProvider(profiles_snapshot, _without_bio(profiles_snapshot)), recording_backend)
    report = drifting.validate_schema()

    assert report.valid is False
    assert any("profiles.bio" in error for error in report.errors)


def test_validate_schema_without_workflow(recording_backend):
    report = _orchestrator(lambda: SchemaSnapshot(tables=()), recording_backend).validate_schema()

    assert report.valid is False
    assert report.errors


def test_end_to_end_against_sqlite(profiles_engine):
    backend = SqlAlchemyBackend(profiles_engine, principal_provider=TablePrincipalProvider(profiles_engine))
    orchestrator = _orchestrator(SchemaIntrospector(profiles_engine).introspect, backend)

    first = orchestrator.create_user(REQUEST)
    second = orchestrator.create_user(REQUEST)

    assert first.success is True, first.error
    assert second.success is True, second.error
    assert second.adaptation.constraints_handled == 1
    assert "auto_fix" in second.adaptation.strategies_used
    with profiles_engine.connect() as connection:
        rows = connection.execute(
            text(
                "SELECT p.id, p.email, a.name FROM profiles p JOIN accounts a ON a.id = p.account_id"
            )
        ).all()
    assert len(rows) == 2
    assert {row.id for row in rows} == {first.entity_id, second.entity_id}
    emails = {row.email for row in rows}
    assert "ada@example.com" in emails
    assert len(emails) == 2
    assert {row.name for row in rows} == {"Ada Lovelace"}


def test_build_orchestrator_requires_auth_settings_for_http():
    settings = Settings(database_url="sqlite://", principal_backend="http")

    with pytest.raises(ValueError, match="AUTH_ADMIN_URL"):
        build_orchestrator(settings)


def test_build_orchestrator_wires_sqlalchemy_backend(tmp_path):
    options_path = tmp_path / "seeding.yaml"
    options_path.write_text("seeding:\n  retry_count: 2\n  primary_table: accounts\n", encoding="utf-8")
    settings = Settings(database_url="sqlite://", primary_table="members", seeding_options_path=str(options_path))

    orchestrator = build_orchestrator(settings)
    try:
        assert isinstance(orchestrator.backend, SqlAlchemyBackend)
        assert isinstance(orchestrator.backend.principal_provider, TablePrincipalProvider)
        assert orchestrator.options.retry_count == 2
        assert orchestrator.options.primary_table == "members"
    finally:
        orchestrator.close()


def test_progressive_enhancement_adds_avatar_for_custom_schemas(recording_backend):
    users = SnapshotTable(
        name="users",
        columns=(
            SnapshotColumn("id", "integer", nullable=False, is_primary_key=True),
            SnapshotColumn("email", "text", nullable=False),
            SnapshotColumn("avatar", "text"),
        ),
        constraints=(SnapshotConstraint("users_pkey", PRIMARY_KEY, ("id",)),),
    )
    snapshot = SchemaSnapshot(tables=(users,), table_roles=(TableRole("users", "user", 0.8),), framework="custom")
    orchestrator = _orchestrator(lambda: snapshot, recording_backend, primary_table="users", requires_principal=False)

    result = orchestrator.create_user(REQUEST)

    assert result.success is True, result.error
    assert result.entity_id == "1"
    assert "progressive_enhancement" in result.adaptation.strategies_used
    assert recording_backend.records["users"][0]["avatar"].startswith("http")
    assert recording_backend.principal_calls == 0


def test_injected_fallback_registry(recording_backend):
    class StubProfiles:
        name = "simple_profiles"

        def execute(self, request, backend):
            return FallbackOutcome(strategy=self.name, principal_id="stub-1", table="members")

    registry = FallbackRegistry([AuthOnlyStrategy()])
    orchestrator = SeedingOrchestrator(
        lambda: SchemaSnapshot(tables=()),
        recording_backend,
        SeedingOptions(fallback_strategies=["simple_profiles", "auth_only"]),
        fallbacks=registry,
    )

    unregistered = orchestrator.create_user(REQUEST)
    assert unregistered.adaptation.fallbacks_attempted == ["simple_profiles", "auth_only"]
    assert unregistered.adaptation.fallbacks_triggered == ["auth_only"]

    registry.register(StubProfiles())
    stubbed = orchestrator.create_user(REQUEST)
    assert stubbed.entity_id == "stub-1"
    assert stubbed.primary_table == "members"


def test_profiles_with_required_account_end_to_end(recording_backend):
    accounts = SnapshotTable(
        name="accounts",
        columns=(
            SnapshotColumn("id", "uuid", nullable=False, is_primary_key=True),
            SnapshotColumn("is_personal_account", "boolean", nullable=False),
        ),
        constraints=(SnapshotConstraint("accounts_pkey", PRIMARY_KEY, ("id",)),),
    )
    profiles = SnapshotTable(
        name="profiles",
        columns=(
            SnapshotColumn("id", "uuid", nullable=False, is_primary_key=True),
            SnapshotColumn("username", "text", nullable=False),
            SnapshotColumn("account_id", "uuid", nullable=False, is_foreign_key=True),
        ),
        constraints=(
            SnapshotConstraint("profiles_pkey", PRIMARY_KEY, ("id",)),
            SnapshotConstraint(
                "profiles_account_id_fkey",
                FOREIGN_KEY,
                ("account_id",),
                referenced_table="accounts",
                referenced_columns=("id",),
            ),
        ),
    )
    snapshot = SchemaSnapshot(
        tables=(accounts, profiles),
        relationships=(SnapshotRelationship("profiles", "account_id", "accounts", "id", nullable=False),),
        table_roles=(TableRole("profiles", "user", 0.9),),
    )
    orchestrator = _orchestrator(lambda: snapshot, recording_backend)

    result = orchestrator.create_user({"email": "a@b.com", "name": "A B"})

    assert result.success is True, result.error
    assert result.entity_id is not None
    assert result.validation.valid is True
    completed = result.execution.completed_steps
    assert completed.index("create_principal") < completed.index("create_accounts_record")
    assert completed.index("create_accounts_record") < completed.index("create_profiles_record")
    account = recording_backend.records["accounts"][0]
    profile = recording_backend.records["profiles"][0]
    assert profile["account_id"] == account["id"]
    assert profile["username"]
    assert account["is_personal_account"] is not None


def test_fallback_names_resolve_against_the_injected_registry(recording_backend):
    class MembersOnly:
        name = "members_only"

        def execute(self, request, backend):
            return FallbackOutcome(strategy=self.name, principal_id="member-1", table="members")

    registry = FallbackRegistry([AuthOnlyStrategy(), MembersOnly()])
    orchestrator = SeedingOrchestrator(
        lambda: SchemaSnapshot(tables=()),
        recording_backend,
        SeedingOptions(fallback_strategies=["teleport", "members_only"]),
        fallbacks=registry,
    )

    result = orchestrator.create_user(REQUEST)

    assert result.success is True
    assert result.adaptation.fallbacks_attempted == ["teleport", "members_only"]
    assert result.adaptation.fallbacks_triggered == ["members_only"]
    assert result.entity_id == "member-1"
    assert SeedingOptions(fallback_strategies=["members_only", " members_only "]).fallback_strategies == [
        "members_only"
    ]


def test_options_file_primary_table_applies_without_setting(tmp_path):
    options_path = tmp_path / "seeding.yaml"
    options_path.write_text("seeding:\n  primary_table: accounts\n", encoding="utf-8")
    settings = Settings(database_url="sqlite://", seeding_options_path=str(options_path))

    orchestrator = build_orchestrator(settings)
    try:
        assert settings.primary_table is None
        assert orchestrator.options.primary_table == "accounts"
    finally:
        orchestrator.close()
