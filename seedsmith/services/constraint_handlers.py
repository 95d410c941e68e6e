"""Strategy objects that evaluate CHECK constraints and named business rules.

A handler declares which constraints it understands (``matches``) and
evaluates a candidate record against one (``apply``). Handlers are collected
in a :class:`ConstraintHandlerRegistry` that is injected into the validator.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Protocol, Union

from seedsmith.services.schema_snapshot import BusinessRule, SnapshotConstraint

logger = logging.getLogger(__name__)

Constraint = Union[SnapshotConstraint, BusinessRule]

_CAST_PATTERN = re.compile(
    r"::(?:character varying|timestamp with time zone|timestamp without time zone|"
    r"double precision|[a-zA-Z_]+)(?:\[\])?"
)
_PAREN_IDENTIFIER = re.compile(r"(?<!\w)\((\w+)\)")
_QUOTED_VALUE = re.compile(r"'((?:[^']|'')*)'")
_ANY_ARRAY = re.compile(r"^(\w+)\s*=\s*ANY\s*\(+\s*ARRAY\s*\[(.*)\]\s*\)+$", re.IGNORECASE)
_IN_LIST = re.compile(r"^(\w+)\s+IN\s*\((.*)\)$", re.IGNORECASE)
_IS_NOT_NULL = re.compile(r"^(\w+)\s+IS\s+NOT\s+NULL$", re.IGNORECASE)
_COMPARISON = re.compile(r"^(\w+)\s*(>=|<=|<>|!=|=|>|<)\s*(-?\d+(?:\.\d+)?)$")
_LENGTH = re.compile(
    r"^(?:char_length|length|character_length)\s*\(\s*(\w+)\s*\)\s*(>=|<=|<>|!=|=|>|<)\s*(\d+)$",
    re.IGNORECASE,
)

_OPERATORS = {
    ">=": lambda left, right: left >= right,
    "<=": lambda left, right: left <= right,
    ">": lambda left, right: left > right,
    "<": lambda left, right: left < right,
    "=": lambda left, right: left == right,
    "<>": lambda left, right: left != right,
    "!=": lambda left, right: left != right,
}


@dataclass(frozen=True)
class HandlerFix:
    field: str
    value: Any
    strategy: str


@dataclass
class HandlerResult:
    valid: bool
    message: str = ""
    fixes: list[HandlerFix] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class ConstraintHandler(Protocol):
    name: str

    def matches(self, constraint: Constraint) -> bool:
        ...

    def apply(self, constraint: Constraint, data: Mapping[str, Any]) -> HandlerResult:
        ...


def constraint_text(constraint: Constraint) -> str:
    """Name plus expression (or rule description/condition), lower-cased."""

    if isinstance(constraint, BusinessRule):
        parts = [constraint.name, constraint.description, constraint.condition]
    else:
        parts = [constraint.name, constraint.check_expression or ""]
    return " ".join(part for part in parts if part).lower()


def normalize_check_expression(expression: str) -> str:
    """Strip casts, the CHECK keyword and redundant parentheses from an expression."""

    text = expression.strip()
    if text.upper().startswith("CHECK"):
        text = text[5:].strip()
    text = _CAST_PATTERN.sub("", text)
    previous = None
    while previous != text:
        previous = text
        text = _PAREN_IDENTIFIER.sub(r"\1", text)
    text = text.strip()
    while text.startswith("(") and text.endswith(")") and _balanced(text[1:-1]):
        text = text[1:-1].strip()
    return re.sub(r"\s+", " ", text)


def _balanced(text: str) -> bool:
    depth = 0
    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0


def _is_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "t", "1", "yes"}
    return bool(value)


class PersonalAccountSlugHandler:
    """Personal accounts carry no slug; team accounts must have one."""

    name = "personal_account_slug"

    def matches(self, constraint: Constraint) -> bool:
        text = constraint_text(constraint)
        return "is_personal_account" in text and "slug" in text

    def apply(self, constraint: Constraint, data: Mapping[str, Any]) -> HandlerResult:
        personal = _is_truthy(data.get("is_personal_account", True))
        slug = data.get("slug")
        if personal and slug is not None:
            return HandlerResult(
                valid=False,
                message="Personal accounts must not have a slug",
                fixes=[HandlerFix(field="slug", value=None, strategy="modify_value")],
            )
        if not personal and not slug:
            return HandlerResult(valid=False, message="Team accounts require a slug")
        return HandlerResult(valid=True)


class PersonalAccountOrganizationHandler:
    """A personal account must not be attached to an organization."""

    name = "personal_account_organization"

    def matches(self, constraint: Constraint) -> bool:
        text = constraint_text(constraint)
        return ("is_personal_account" in text or "personal account" in text) and (
            "organization" in text or "organisation" in text
        )

    def apply(self, constraint: Constraint, data: Mapping[str, Any]) -> HandlerResult:
        if not _is_truthy(data.get("is_personal_account", True)):
            return HandlerResult(valid=True)
        field_name = next(
            (key for key in ("organization_id", "organisation_id", "org_id") if data.get(key) is not None),
            None,
        )
        if field_name is None:
            return HandlerResult(valid=True)
        return HandlerResult(
            valid=False,
            message="Personal account must not have an organization id",
            fixes=[HandlerFix(field=field_name, value=None, strategy="skip_field")],
        )


class NotNullCheckHandler:
    name = "check_not_null"

    def matches(self, constraint: Constraint) -> bool:
        return _expression_match(constraint, _IS_NOT_NULL) is not None

    def apply(self, constraint: Constraint, data: Mapping[str, Any]) -> HandlerResult:
        column = _expression_match(constraint, _IS_NOT_NULL).group(1)
        if data.get(column) is None:
            return HandlerResult(valid=False, message=f"{column} must not be null")
        return HandlerResult(valid=True)


class EnumCheckHandler:
    """``col IN ('a', 'b')`` and ``col = ANY (ARRAY['a', 'b'])`` checks."""

    name = "check_enum"

    def matches(self, constraint: Constraint) -> bool:
        return self._parse(constraint) is not None

    def apply(self, constraint: Constraint, data: Mapping[str, Any]) -> HandlerResult:
        column, allowed = self._parse(constraint)
        value = data.get(column)
        if value is None or str(value) in allowed:
            return HandlerResult(valid=True)
        return HandlerResult(
            valid=False,
            message=f"{column} must be one of {', '.join(allowed)}",
            fixes=[HandlerFix(field=column, value=allowed[0], strategy="modify_value")] if allowed else [],
        )

    @staticmethod
    def _parse(constraint: Constraint) -> tuple[str, list[str]] | None:
        for pattern in (_ANY_ARRAY, _IN_LIST):
            match = _expression_match(constraint, pattern)
            if match:
                values = [item.replace("''", "'") for item in _QUOTED_VALUE.findall(match.group(2))]
                return match.group(1), values
        return None


class ComparisonCheckHandler:
    """Numeric comparisons against a literal, e.g. ``quantity >= 0``."""

    name = "check_comparison"

    def matches(self, constraint: Constraint) -> bool:
        return _expression_match(constraint, _COMPARISON) is not None

    def apply(self, constraint: Constraint, data: Mapping[str, Any]) -> HandlerResult:
        column, operator, literal = _expression_match(constraint, _COMPARISON).groups()
        value = data.get(column)
        if value is None:
            return HandlerResult(valid=True)
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return HandlerResult(valid=False, message=f"{column} must be numeric")
        if _OPERATORS[operator](numeric, float(literal)):
            return HandlerResult(valid=True)
        return HandlerResult(valid=False, message=f"{column} must satisfy {column} {operator} {literal}")


class LengthCheckHandler:
    name = "check_length"

    def matches(self, constraint: Constraint) -> bool:
        return _expression_match(constraint, _LENGTH) is not None

    def apply(self, constraint: Constraint, data: Mapping[str, Any]) -> HandlerResult:
        column, operator, literal = _expression_match(constraint, _LENGTH).groups()
        value = data.get(column)
        if value is None:
            return HandlerResult(valid=True)
        if _OPERATORS[operator](len(str(value)), int(literal)):
            return HandlerResult(valid=True)
        return HandlerResult(
            valid=False, message=f"Length of {column} must satisfy {operator} {literal}"
        )


def _expression_match(constraint: Constraint, pattern: re.Pattern[str]) -> re.Match[str] | None:
    if isinstance(constraint, BusinessRule):
        expression = constraint.condition
    else:
        expression = constraint.check_expression
    if not expression:
        return None
    return pattern.match(normalize_check_expression(expression))


class ConstraintHandlerRegistry:
    """Ordered collection of handlers; the first matching handler wins."""

    def __init__(self, handlers: Iterable[ConstraintHandler] = ()) -> None:
        self._handlers: list[ConstraintHandler] = list(handlers)

    def __len__(self) -> int:
        return len(self._handlers)

    def register(self, handler: ConstraintHandler, *, first: bool = False) -> None:
        if first:
            self._handlers.insert(0, handler)
        else:
            self._handlers.append(handler)

    def find(self, constraint: Constraint) -> ConstraintHandler | None:
        for handler in self._handlers:
            if handler.matches(constraint):
                logger.debug("Constraint %s handled by %s", constraint.name, handler.name)
                return handler
        return None


def build_default_handler_registry() -> ConstraintHandlerRegistry:
    return ConstraintHandlerRegistry(
        [
            PersonalAccountSlugHandler(),
            PersonalAccountOrganizationHandler(),
            NotNullCheckHandler(),
            EnumCheckHandler(),
            ComparisonCheckHandler(),
            LengthCheckHandler(),
        ]
    )
