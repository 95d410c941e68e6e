from __future__ import annotations

import re
import secrets
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from faker import Faker

from seedsmith.services.schema_snapshot import SnapshotColumn

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")

# Column-name hints checked in order; first hit decides the generator
_NAME_HINTS: tuple[tuple[str, str], ...] = (
    ("email", "email"),
    ("user_name", "username"),
    ("username", "username"),
    ("handle", "username"),
    ("slug", "slug"),
    ("avatar", "avatar"),
    ("picture", "avatar"),
    ("image", "avatar"),
    ("photo", "avatar"),
    ("url", "url"),
    ("name", "full_name"),
    ("title", "title"),
    ("bio", "paragraph"),
    ("description", "paragraph"),
    ("content", "paragraph"),
    ("body", "paragraph"),
    ("phone", "phone"),
)

SEMANTIC_GENERATORS = {
    "id": "uuid",
    "email": "email",
    "name": "full_name",
    "username": "username",
    "avatar": "avatar",
    "bio": "paragraph",
    "created_at": "timestamp",
    "updated_at": "timestamp",
    "title": "title",
    "content": "paragraph",
    "category": "word",
    "published": "boolean",
}


def slugify(value: str) -> str:
    return _SLUG_STRIP.sub("-", value.lower()).strip("-")


def username_from(context: Mapping[str, Any]) -> str | None:
    """Derive a handle from an email local part or a display name."""

    email = context.get("email")
    if isinstance(email, str) and "@" in email:
        local = re.sub(r"[^a-z0-9_]", "", email.split("@", 1)[0].lower())
        if local:
            return f"{local}{secrets.randbelow(9000) + 1000}"
    name = context.get("name")
    if isinstance(name, str) and name.strip():
        return slugify(name).replace("-", "_")
    return None


class FieldValueGenerator:
    """Role-appropriate fake values for generated workflow fields."""

    def __init__(self, faker: Faker | None = None, *, seed: int | None = None) -> None:
        self.faker = faker or Faker()
        if seed is not None:
            self.faker.seed_instance(seed)
        self._generators: dict[str, Callable[[Mapping[str, Any]], Any]] = {
            "uuid": lambda _ctx: str(uuid.uuid4()),
            "timestamp": lambda _ctx: datetime.now(timezone.utc).isoformat(),
            "email": lambda _ctx: self.faker.unique.email(),
            "full_name": lambda ctx: ctx.get("name") or self.faker.name(),
            "username": lambda ctx: username_from(ctx) or self.faker.unique.user_name(),
            "slug": lambda ctx: slugify(ctx.get("name") or self.faker.slug()),
            "avatar": lambda _ctx: self.faker.image_url(),
            "url": lambda _ctx: self.faker.url(),
            "title": lambda _ctx: self.faker.sentence(nb_words=4).rstrip("."),
            "paragraph": lambda _ctx: self.faker.paragraph(),
            "word": lambda _ctx: self.faker.word(),
            "phone": lambda _ctx: self.faker.phone_number(),
            "password": lambda _ctx: self.faker.password(length=16),
            "boolean": lambda _ctx: False,
            "integer": lambda _ctx: 0,
            "json": lambda _ctx: {},
            "text": lambda _ctx: self.faker.word(),
        }

    def register(self, name: str, generator: Callable[[Mapping[str, Any]], Any]) -> None:
        self._generators[name] = generator

    def supports(self, name: str) -> bool:
        return name in self._generators

    def generate(self, name: str, context: Mapping[str, Any] | None = None) -> Any:
        try:
            generator = self._generators[name]
        except KeyError as exc:
            raise ValueError(f"Unknown value generator: {name}") from exc
        return generator(context or {})


def generator_for_column(column: SnapshotColumn) -> str:
    """Pick a generator name from a column's name and type."""

    data_type = column.normalized_type
    if "uuid" in data_type:
        return "uuid"
    if "bool" in data_type:
        return "boolean"
    if any(item in data_type for item in ("timestamp", "date", "time")):
        return "timestamp"
    if any(item in data_type for item in ("int", "numeric", "decimal", "real", "double", "float")):
        return "integer"
    if "json" in data_type:
        return "json"
    lowered = column.name.lower()
    for hint, generator in _NAME_HINTS:
        if hint in lowered:
            return generator
    return "text"
