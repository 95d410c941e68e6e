"""Schema-independent creation paths used when the adaptive workflow fails."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Protocol

from seedsmith.services.seeding_backend import SeedingBackend, SeedingBackendError

logger = logging.getLogger(__name__)


class UnknownFallbackStrategy(KeyError):
    """Raised when a configured fallback strategy name is not registered."""


@dataclass
class FallbackOutcome:
    strategy: str
    principal_id: str
    table: str | None = None
    record: dict[str, Any] | None = None
    notes: list[str] = field(default_factory=list)


class FallbackStrategy(Protocol):
    name: str

    def execute(self, request: Mapping[str, Any], backend: SeedingBackend) -> FallbackOutcome:
        ...


def _display_name(request: Mapping[str, Any]) -> str:
    name = request.get("name")
    if name:
        return str(name)
    email = str(request.get("email") or "")
    return email.split("@", 1)[0] or "user"


def _create_principal(request: Mapping[str, Any], backend: SeedingBackend) -> str:
    email = request.get("email")
    if not email:
        raise SeedingBackendError("An email address is required to create a principal")
    return str(backend.create_principal(email, request.get("password"), dict(request.get("metadata") or {})))


class SimpleProfilesStrategy:
    """Principal plus a minimal ``profiles`` row; a failed profile write is tolerated."""

    name = "simple_profiles"
    table = "profiles"

    def execute(self, request: Mapping[str, Any], backend: SeedingBackend) -> FallbackOutcome:
        principal_id = _create_principal(request, backend)
        outcome = FallbackOutcome(strategy=self.name, principal_id=principal_id)
        record = {"id": principal_id, "email": request.get("email"), "name": _display_name(request)}
        try:
            outcome.record = backend.insert_record(self.table, record, "id")
            outcome.table = self.table
        except SeedingBackendError as exc:
            logger.warning("Fallback %s could not write %s: %s", self.name, self.table, exc)
            outcome.notes.append(f"{self.table} record not created: {exc}")
        return outcome


class AccountsOnlyStrategy:
    """Principal plus an ``accounts`` row; the account write must succeed."""

    name = "accounts_only"
    table = "accounts"

    def execute(self, request: Mapping[str, Any], backend: SeedingBackend) -> FallbackOutcome:
        principal_id = _create_principal(request, backend)
        record = {
            "id": str(uuid.uuid4()),
            "primary_owner_user_id": principal_id,
            "name": _display_name(request),
            "email": request.get("email"),
        }
        created = backend.insert_record(self.table, record, "id")
        return FallbackOutcome(strategy=self.name, principal_id=principal_id, table=self.table, record=created)


class AuthOnlyStrategy:
    name = "auth_only"

    def execute(self, request: Mapping[str, Any], backend: SeedingBackend) -> FallbackOutcome:
        principal_id = _create_principal(request, backend)
        return FallbackOutcome(
            strategy=self.name,
            principal_id=principal_id,
            notes=["Only the authentication principal was created"],
        )


class FallbackRegistry:
    def __init__(self, strategies: Iterable[FallbackStrategy] = ()) -> None:
        self._strategies: dict[str, FallbackStrategy] = {}
        for strategy in strategies:
            self.register(strategy)

    def register(self, strategy: FallbackStrategy) -> None:
        self._strategies[strategy.name] = strategy

    def get(self, name: str) -> FallbackStrategy:
        try:
            return self._strategies[name]
        except KeyError as exc:
            raise UnknownFallbackStrategy(name) from exc


def build_default_fallback_registry() -> FallbackRegistry:
    return FallbackRegistry([SimpleProfilesStrategy(), AccountsOnlyStrategy(), AuthOnlyStrategy()])
