import os
import sys
import uuid
from collections import defaultdict
from pathlib import Path

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

TEST_DATABASE_URL = "sqlite://"
os.environ.setdefault("DATABASE_URL", TEST_DATABASE_URL)

from seedsmith.main import app  # noqa: E402
from seedsmith.routers.seeding import get_orchestrator  # noqa: E402
from seedsmith.schemas import SeedingOptions  # noqa: E402
from seedsmith.services.field_generators import FieldValueGenerator  # noqa: E402
from seedsmith.services.schema_snapshot import (  # noqa: E402
    FOREIGN_KEY,
    PRIMARY_KEY,
    UNIQUE,
    SchemaSnapshot,
    SnapshotColumn,
    SnapshotConstraint,
    SnapshotRelationship,
    SnapshotTable,
    TableRole,
)
from seedsmith.services.seeding_backend import SeedingBackendError  # noqa: E402
from seedsmith.services.seeding_orchestrator import SeedingOrchestrator  # noqa: E402


class RecordingBackend:
    """In-memory seeding backend that records every write."""

    def __init__(self, fail_tables=(), fail_principal: bool = False) -> None:
        self.records: dict[str, list[dict]] = defaultdict(list)
        self.deleted: list[tuple[str, object]] = []
        self.fail_tables = set(fail_tables)
        self.fail_principal = fail_principal
        self.principal_calls = 0

    def create_principal(self, email, password=None, metadata=None) -> str:
        self.principal_calls += 1
        if self.fail_principal:
            raise SeedingBackendError("auth service unavailable")
        principal_id = str(uuid.uuid4())
        self.records["auth_users"].append({"id": principal_id, "email": email})
        return principal_id

    def insert_record(self, table, data, key_column=None) -> dict:
        if table in self.fail_tables:
            raise SeedingBackendError(f"insert into {table} rejected")
        row = dict(data)
        if key_column and key_column not in row:
            row[key_column] = len(self.records[table]) + 1
        self.records[table].append(row)
        return row

    def delete_record(self, table, key_column, key_value) -> None:
        self.deleted.append((table, key_value))
        self.records[table] = [row for row in self.records[table] if row.get(key_column) != key_value]

    def record_exists(self, table, column, value) -> bool:
        return any(str(row.get(column)) == str(value) for row in self.records[table])

    def find_conflict(self, table, values, key_column=None):
        for row in self.records[table]:
            if all(str(row.get(name)) == str(value) for name, value in values.items()):
                return row.get(key_column) if key_column else True
        return None


def build_profiles_snapshot() -> SchemaSnapshot:
    auth_users = SnapshotTable(
        name="auth_users",
        columns=(
            SnapshotColumn("id", "uuid", nullable=False, is_primary_key=True),
            SnapshotColumn("email", "text", nullable=False),
        ),
        constraints=(SnapshotConstraint("auth_users_pkey", PRIMARY_KEY, ("id",)),),
    )
    accounts = SnapshotTable(
        name="accounts",
        columns=(
            SnapshotColumn("id", "uuid", nullable=False, is_primary_key=True),
            SnapshotColumn("name", "text", nullable=False),
        ),
        constraints=(SnapshotConstraint("accounts_pkey", PRIMARY_KEY, ("id",)),),
    )
    profiles = SnapshotTable(
        name="profiles",
        columns=(
            SnapshotColumn("id", "uuid", nullable=False, is_primary_key=True, is_foreign_key=True),
            SnapshotColumn("email", "text", nullable=False),
            SnapshotColumn("name", "text", nullable=False),
            SnapshotColumn("account_id", "uuid", nullable=False, is_foreign_key=True),
            SnapshotColumn("bio", "text"),
        ),
        constraints=(
            SnapshotConstraint("profiles_pkey", PRIMARY_KEY, ("id",)),
            SnapshotConstraint("profiles_email_key", UNIQUE, ("email",)),
            SnapshotConstraint(
                "profiles_id_fkey", FOREIGN_KEY, ("id",), referenced_table="auth_users", referenced_columns=("id",)
            ),
            SnapshotConstraint(
                "profiles_account_id_fkey",
                FOREIGN_KEY,
                ("account_id",),
                referenced_table="accounts",
                referenced_columns=("id",),
            ),
        ),
    )
    return SchemaSnapshot(
        tables=(auth_users, accounts, profiles),
        relationships=(
            SnapshotRelationship("profiles", "id", "auth_users", "id", cardinality="one_to_one", nullable=False),
            SnapshotRelationship("profiles", "account_id", "accounts", "id", nullable=False),
        ),
        table_roles=(
            TableRole("auth_users", "auth", 0.9),
            TableRole("accounts", "user", 0.6),
            TableRole("profiles", "user", 0.9),
        ),
        framework="supabase",
        framework_confidence=0.5,
    )


PROFILES_DDL = (
    "CREATE TABLE auth_users (id TEXT PRIMARY KEY, email TEXT NOT NULL)",
    "CREATE TABLE accounts (id TEXT PRIMARY KEY, name TEXT NOT NULL)",
    "CREATE TABLE profiles ("
    " id TEXT PRIMARY KEY REFERENCES auth_users (id),"
    " email TEXT NOT NULL,"
    " name TEXT NOT NULL,"
    " account_id TEXT NOT NULL REFERENCES accounts (id),"
    " bio TEXT,"
    " CONSTRAINT profiles_email_key UNIQUE (email))",
)


@pytest.fixture()
def engine():
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    yield engine
    engine.dispose()


@pytest.fixture()
def profiles_engine(engine):
    with engine.begin() as connection:
        for statement in PROFILES_DDL:
            connection.execute(text(statement))
    return engine


@pytest.fixture()
def backend_factory():
    return RecordingBackend


@pytest.fixture()
def recording_backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture()
def profiles_snapshot() -> SchemaSnapshot:
    return build_profiles_snapshot()


@pytest.fixture()
def orchestrator(profiles_snapshot, recording_backend) -> SeedingOrchestrator:
    return SeedingOrchestrator(
        lambda: profiles_snapshot,
        recording_backend,
        SeedingOptions(retry_backoff_seconds=0),
        generator=FieldValueGenerator(seed=1234),
    )


class PrefixedTestClient(TestClient):
    api_prefix = "/api"

    def request(self, method: str, url: str, *args, **kwargs):  # type: ignore[override]
        if url.startswith("/"):
            url = f"{self.api_prefix}{url}"
        return super().request(method, url, *args, **kwargs)


@pytest.fixture()
def client(orchestrator: SeedingOrchestrator) -> Generator[TestClient, None, None]:
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    client = PrefixedTestClient(app)
    try:
        yield client
    finally:
        app.dependency_overrides.pop(get_orchestrator, None)
