"""Load seeding options from YAML and merge layered overrides.

Values are merged as a typed tree: every node is a scalar, a list or a map,
and each kind has a merge policy. Maps merge key by key (``deep``), lists
follow the configured list policy and scalars are replaced.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from seedsmith.schemas.seeding import SeedingOptions

logger = logging.getLogger(__name__)


class MergePolicy(str, Enum):
    REPLACE = "replace"
    APPEND = "append"
    UNIQUE = "unique"
    DEEP = "deep"


class OptionsLoadError(ValueError):
    """Raised when an options document cannot be read or validated."""


def node_kind(value: Any) -> str:
    if isinstance(value, Mapping):
        return "map"
    if isinstance(value, (list, tuple)):
        return "list"
    return "scalar"


def merge_values(
    base: Any,
    override: Any,
    *,
    list_policy: MergePolicy = MergePolicy.REPLACE,
    map_policy: MergePolicy = MergePolicy.DEEP,
    path_policies: Mapping[str, MergePolicy | str] | None = None,
    _path: str = "",
) -> Any:
    """Merge ``override`` onto ``base`` according to the kind of each node.

    Args:
        base: Existing value.
        override: Incoming value; ``None`` leaves ``base`` untouched.
        list_policy: Policy for list nodes (replace, append or unique).
        map_policy: Policy for map nodes (deep or replace).
        path_policies: Per dotted-path policy overrides, e.g. ``{"fallback_strategies": "unique"}``.

    Returns:
        A new merged value; inputs are not modified.
    """

    if override is None:
        return base
    path_policies = path_policies or {}
    base_kind = node_kind(base)
    override_kind = node_kind(override)
    if base is None or base_kind != override_kind:
        return _copy(override)

    policy = MergePolicy(path_policies[_path]) if _path in path_policies else None
    if override_kind == "map":
        if (policy or map_policy) is MergePolicy.REPLACE:
            return _copy(override)
        merged = {key: _copy(value) for key, value in base.items()}
        for key, value in override.items():
            child_path = f"{_path}.{key}" if _path else str(key)
            merged[key] = merge_values(
                base.get(key),
                value,
                list_policy=list_policy,
                map_policy=map_policy,
                path_policies=path_policies,
                _path=child_path,
            )
        return merged

    if override_kind == "list":
        effective = policy or list_policy
        if effective is MergePolicy.APPEND:
            return list(base) + list(override)
        if effective is MergePolicy.UNIQUE:
            return list(dict.fromkeys(list(base) + list(override)))
        return list(override)

    return override


def _copy(value: Any) -> Any:
    kind = node_kind(value)
    if kind == "map":
        return {key: _copy(item) for key, item in value.items()}
    if kind == "list":
        return [_copy(item) for item in value]
    return value


def read_options_document(path: str | Path) -> dict[str, Any]:
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise OptionsLoadError(f"Cannot read seeding options from {path}: {exc}") from exc
    try:
        document = yaml.safe_load(raw) or {}
    except yaml.YAMLError as exc:
        raise OptionsLoadError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(document, dict):
        raise OptionsLoadError(f"Seeding options in {path} must be a mapping")
    # Accept either a bare options mapping or one nested under "seeding"
    return document.get("seeding", document)


def load_seeding_options(
    path: str | Path | None = None,
    overrides: Mapping[str, Any] | None = None,
    *,
    list_policy: MergePolicy = MergePolicy.REPLACE,
) -> SeedingOptions:
    merged: Any = SeedingOptions().model_dump()
    if path:
        merged = merge_values(merged, read_options_document(path), list_policy=list_policy)
        logger.info("Loaded seeding options from %s", path)
    if overrides:
        merged = merge_values(merged, dict(overrides), list_policy=list_policy)
    try:
        return SeedingOptions(**merged)
    except ValidationError as exc:
        raise OptionsLoadError(f"Invalid seeding options: {exc}") from exc
