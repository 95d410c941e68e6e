from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Callable, Mapping, Protocol

import requests
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class SeedingBackendError(RuntimeError):
    """Raised when the target database or auth service rejects an operation."""


class PrincipalProvider(Protocol):
    def create_principal(self, email: str, password: str | None = None, metadata: Mapping[str, Any] | None = None) -> str:
        ...


class SeedingBackend(Protocol):
    """Write and lookup operations the executor and validator depend on."""

    def create_principal(self, email: str, password: str | None = None, metadata: Mapping[str, Any] | None = None) -> str:
        ...

    def insert_record(self, table: str, data: Mapping[str, Any], key_column: str | None = None) -> dict[str, Any]:
        ...

    def delete_record(self, table: str, key_column: str, key_value: Any) -> None:
        ...

    def record_exists(self, table: str, column: str, value: Any) -> bool:
        ...

    def find_conflict(self, table: str, values: Mapping[str, Any], key_column: str | None = None) -> Any:
        ...


def _encode_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


class SqlAlchemyBackend:
    """Seeding backend that issues parameterised statements through SQLAlchemy.

    Each call runs in its own transaction; multi-step atomicity is provided by
    the executor's compensating rollback, not by the database.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        schema: str | None = None,
        principal_provider: PrincipalProvider | None = None,
    ) -> None:
        self.engine = engine
        self.schema = schema
        self.principal_provider = principal_provider
        self._preparer = engine.dialect.identifier_preparer

    def close(self) -> None:
        close = getattr(self.principal_provider, "close", None)
        if close is not None:
            close()

    def _quote(self, identifier: str) -> str:
        return self._preparer.quote(identifier)

    def _qualified(self, table: str) -> str:
        if self.schema:
            return f"{self._quote(self.schema)}.{self._quote(table)}"
        return self._quote(table)

    def create_principal(self, email: str, password: str | None = None, metadata: Mapping[str, Any] | None = None) -> str:
        if self.principal_provider is None:
            raise SeedingBackendError("No principal provider configured")
        return self.principal_provider.create_principal(email, password, metadata)

    def insert_record(self, table: str, data: Mapping[str, Any], key_column: str | None = None) -> dict[str, Any]:
        columns = list(data)
        params = {f"p{index}": _encode_value(data[name]) for index, name in enumerate(columns)}
        if columns:
            column_sql = ", ".join(self._quote(name) for name in columns)
            value_sql = ", ".join(f":p{index}" for index in range(len(columns)))
            statement = f"INSERT INTO {self._qualified(table)} ({column_sql}) VALUES ({value_sql})"
        else:
            statement = f"INSERT INTO {self._qualified(table)} DEFAULT VALUES"

        returning = key_column is not None and key_column not in data and getattr(self.engine.dialect, "insert_returning", False)
        if returning:
            statement += f" RETURNING {self._quote(key_column)}"

        row = dict(data)
        try:
            with self.engine.begin() as connection:
                result = connection.execute(text(statement), params)
                if key_column is not None and key_column not in data:
                    if returning:
                        row[key_column] = result.scalar_one()
                    else:
                        row[key_column] = result.lastrowid
        except SQLAlchemyError as exc:
            raise SeedingBackendError(f"Insert into {table} failed: {exc}") from exc
        logger.debug("Inserted %s record %s", table, row.get(key_column) if key_column else "")
        return row

    def delete_record(self, table: str, key_column: str, key_value: Any) -> None:
        statement = text(f"DELETE FROM {self._qualified(table)} WHERE {self._quote(key_column)} = :key")
        try:
            with self.engine.begin() as connection:
                connection.execute(statement, {"key": _encode_value(key_value)})
        except SQLAlchemyError as exc:
            raise SeedingBackendError(f"Delete from {table} failed: {exc}") from exc

    def record_exists(self, table: str, column: str, value: Any) -> bool:
        statement = text(
            f"SELECT 1 FROM {self._qualified(table)} WHERE {self._quote(column)} = :value LIMIT 1"
        )
        try:
            with self.engine.connect() as connection:
                return connection.execute(statement, {"value": _encode_value(value)}).first() is not None
        except SQLAlchemyError as exc:
            raise SeedingBackendError(f"Lookup on {table}.{column} failed: {exc}") from exc

    def find_conflict(self, table: str, values: Mapping[str, Any], key_column: str | None = None) -> Any:
        """Return the key (or ``True`` without a key column) of a row holding ``values``."""

        if not values:
            return None
        predicates = " AND ".join(f"{self._quote(name)} = :v{index}" for index, name in enumerate(values))
        params = {f"v{index}": _encode_value(value) for index, value in enumerate(values.values())}
        selected = self._quote(key_column) if key_column else "1"
        statement = text(f"SELECT {selected} FROM {self._qualified(table)} WHERE {predicates} LIMIT 1")
        try:
            with self.engine.connect() as connection:
                row = connection.execute(statement, params).first()
        except SQLAlchemyError as exc:
            raise SeedingBackendError(f"Conflict lookup on {table} failed: {exc}") from exc
        if row is None:
            return None
        return row[0] if key_column else True


class TablePrincipalProvider:
    """Create principals as rows of a plain SQL table (``id``, ``email``)."""

    def __init__(self, engine: Engine, *, table: str = "auth_users", schema: str | None = None) -> None:
        self.backend = SqlAlchemyBackend(engine, schema=schema)
        self.table = table

    def create_principal(self, email: str, password: str | None = None, metadata: Mapping[str, Any] | None = None) -> str:
        principal_id = str(uuid.uuid4())
        self.backend.insert_record(self.table, {"id": principal_id, "email": email})
        logger.info("Created principal %s in %s", principal_id, self.table)
        return principal_id


RequestFunc = Callable[[str, Mapping[str, str], Mapping[str, Any], float], Any]


class HttpPrincipalProvider:
    """Create principals through an auth admin REST API (``/auth/v1/admin/users``)."""

    USERS_PATH = "/auth/v1/admin/users"

    def __init__(
        self,
        base_url: str,
        service_key: str,
        *,
        request_func: RequestFunc | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.url = f"{base_url.rstrip('/')}{self.USERS_PATH}"
        self.headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
        }
        self._request_func = request_func
        self._timeout = timeout
        self._session: requests.Session | None = None

    def create_principal(self, email: str, password: str | None = None, metadata: Mapping[str, Any] | None = None) -> str:
        payload: dict[str, Any] = {"email": email, "email_confirm": True, "user_metadata": dict(metadata or {})}
        if password:
            payload["password"] = password
        try:
            response = self._post(payload)
        except requests.RequestException as exc:
            raise SeedingBackendError(f"Principal creation failed for {email}: {exc}") from exc

        status_code = getattr(response, "status_code", 500)
        if status_code >= 400:
            raise SeedingBackendError(
                f"Principal creation failed for {email} ({status_code}): {self._extract_detail(response)}"
            )
        body = response.json()
        principal_id = body.get("id") or (body.get("user") or {}).get("id")
        if not principal_id:
            raise SeedingBackendError("Auth service response did not include a principal id")
        return str(principal_id)

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None

    def _post(self, payload: Mapping[str, Any]):
        if self._request_func is not None:
            return self._request_func(self.url, self.headers, payload, self._timeout)
        if self._session is None:
            self._session = requests.Session()
        return self._session.post(self.url, headers=self.headers, json=dict(payload), timeout=self._timeout)

    @staticmethod
    def _extract_detail(response: Any) -> str:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, Mapping):
            message = payload.get("msg") or payload.get("message") or payload.get("error_description") or payload.get("error")
            if message:
                return str(message)
        text = getattr(response, "text", None)
        if text:
            return str(text).strip()
        return "unknown error"
