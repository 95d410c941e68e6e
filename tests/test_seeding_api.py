from http import HTTPStatus

from seedsmith.main import app
from seedsmith.routers.seeding import get_orchestrator
from seedsmith.schemas import SeedingOptions
from seedsmith.services.schema_introspector import SchemaIntrospectionError
from seedsmith.services.seeding_orchestrator import SeedingOrchestrator

PAYLOAD = {"email": "ada@example.com", "name": "Ada Lovelace"}


def test_health_check(client):
    response = client.get("http://testserver/health")
    assert response.status_code == HTTPStatus.OK
    assert response.json() == {"status": "ok"}


def test_schema_summary(client, profiles_snapshot):
    response = client.get("/seeding/schema")
    assert response.status_code == HTTPStatus.OK
    data = response.json()
    assert data["fingerprint"] == profiles_snapshot.fingerprint()
    assert data["framework"] == "supabase"
    assert data["tables"] == ["auth_users", "accounts", "profiles"]
    assert data["relationship_count"] == 2
    assert {"table": "profiles", "role": "user", "confidence": 0.9} in data["roles"]


def test_mappings_export(client):
    response = client.get("/seeding/mappings")
    assert response.status_code == HTTPStatus.OK
    data = response.json()
    assert data["mappings"]["profiles"]["email"] == "email"
    assert data["mappings"]["profiles"]["bio"] == "bio"
    assert set(data["confidence"]) >= {"profiles", "accounts"}
    assert isinstance(data["recommendations"], list)


def test_seeding_plan(client):
    response = client.get("/seeding/plan")
    assert response.status_code == HTTPStatus.OK
    data = response.json()
    order = data["seeding_order"]
    assert order.index("auth_users") < order.index("profiles")
    assert order.index("accounts") < order.index("profiles")
    assert data["dependency_levels"]["profiles"] == 1
    assert data["cycles"] == []
    assert data["strategies"]["profiles"] == "dependent"
    assert sum(len(batch) for batch in data["parallel_batches"]) == 3


def test_validate_schema(client):
    response = client.get("/seeding/validate")
    assert response.status_code == HTTPStatus.OK
    assert response.json()["valid"] is True


def test_create_user(client, recording_backend):
    response = client.post("/seeding/users", json=PAYLOAD)
    assert response.status_code == HTTPStatus.CREATED
    data = response.json()
    assert data["success"] is True
    assert data["entity_id"] == recording_backend.records["auth_users"][0]["id"]
    assert data["primary_table"] == "profiles"
    assert [step["status"] for step in data["steps"]] == ["completed", "completed", "completed"]
    assert data["validation"]["valid"] is True
    assert data["rollback_completed"] is None
    assert data["adaptation"]["strategies_used"] == ["adaptive_workflow", "constraint_validation"]
    assert data["timings"]["total_ms"] > 0


def test_create_user_reports_applied_fixes(client, recording_backend):
    recording_backend.records["profiles"].append({"id": "existing", "email": PAYLOAD["email"]})

    response = client.post("/seeding/users", json=PAYLOAD)
    assert response.status_code == HTTPStatus.CREATED
    data = response.json()
    assert [fix["strategy"] for fix in data["applied_fixes"]] == ["modify_value"]
    assert data["adaptation"]["constraints_handled"] == 1


def test_create_user_rejects_invalid_payload(client):
    response = client.post("/seeding/users", json={"email": "not-an-email"})
    assert response.status_code == HTTPStatus.UNPROCESSABLE_ENTITY


def test_create_user_failure_returns_structured_detail(client, profiles_snapshot, backend_factory):
    failing = SeedingOrchestrator(
        lambda: profiles_snapshot,
        backend_factory(fail_principal=True),
        SeedingOptions(retry_backoff_seconds=0),
    )
    app.dependency_overrides[get_orchestrator] = lambda: failing

    response = client.post("/seeding/users", json=PAYLOAD)
    assert response.status_code == HTTPStatus.UNPROCESSABLE_ENTITY
    detail = response.json()["detail"]
    assert detail["success"] is False
    assert detail["error"].startswith("All fallback strategies failed")
    assert detail["adaptation"]["fallbacks_attempted"] == ["simple_profiles", "accounts_only", "auth_only"]
    assert detail["steps"][0] == {
        "step_id": "create_principal",
        "status": "failed",
        "attempts": 1,
        "error": "auth service unavailable",
        "duration_ms": detail["steps"][0]["duration_ms"],
    }


def test_introspection_failure_is_unavailable(client, recording_backend):
    def broken():
        raise SchemaIntrospectionError("connection refused")

    app.dependency_overrides[get_orchestrator] = lambda: SeedingOrchestrator(broken, recording_backend)

    response = client.get("/seeding/schema")
    assert response.status_code == HTTPStatus.SERVICE_UNAVAILABLE
    assert response.json()["detail"] == "connection refused"


def test_cache_invalidation(client, orchestrator):
    client.get("/seeding/schema")
    assert orchestrator.cache.entry is not None

    response = client.post("/seeding/cache/invalidate")
    assert response.status_code == HTTPStatus.NO_CONTENT
    assert orchestrator.cache.entry is None
