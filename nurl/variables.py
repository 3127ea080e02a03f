"""nurl variables - scope merging and {{placeholder}} interpolation."""

import datetime
import json
import logging
import random
import re
import string
import uuid
from collections import ChainMap
from collections.abc import Mapping
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")

MergedScope = ChainMap

_MISSING = object()


class Builtin(Enum):
    """Dynamic values available as {{$name}} placeholders."""

    UUID = "uuid"
    TIMESTAMP = "timestamp"
    TIMESTAMP_UNIX = "timestamp_unix"
    RANDOM_INT = "random_int"
    RANDOM_STRING = "random_string"
    RANDOM_EMAIL = "random_email"
    DATE = "date"
    TIME = "time"
    UNRECOGNIZED = None

    @classmethod
    def from_name(cls, name: str) -> "Builtin":
        """Map ``$uuid`` (or ``uuid``) to a member, UNRECOGNIZED otherwise."""
        key = name[1:] if name.startswith("$") else name
        for member in cls:
            if member.value == key:
                return member
        return cls.UNRECOGNIZED

    def generate(self) -> str | None:
        now = datetime.datetime.now(datetime.timezone.utc)
        if self is Builtin.UUID:
            return str(uuid.uuid4())
        if self is Builtin.TIMESTAMP:
            return now.isoformat()
        if self is Builtin.TIMESTAMP_UNIX:
            return str(int(now.timestamp()))
        if self is Builtin.RANDOM_INT:
            return str(random.randint(0, 999999))
        if self is Builtin.RANDOM_STRING:
            return _random_string(16)
        if self is Builtin.RANDOM_EMAIL:
            return f"{_random_string(10).lower()}@example.com"
        if self is Builtin.DATE:
            return now.date().isoformat()
        if self is Builtin.TIME:
            return now.strftime("%H:%M:%S")
        return None


def _random_string(length: int) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(random.choice(alphabet) for _ in range(length))


def resolve_scope(
    global_vars: Mapping[str, Any] | None = None,
    collection_env_vars: Mapping[str, Any] | None = None,
    chain_context: Mapping[str, Any] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> MergedScope:
    """Merge the variable layers, narrowest first.

    Priority: overrides > chain context > collection environment > globals.
    The first map of the returned ChainMap is a fresh dict, so writing to
    the scope never touches the stored mappings.
    """
    return ChainMap(
        {},
        dict(overrides or {}),
        dict(chain_context or {}),
        dict(collection_env_vars or {}),
        dict(global_vars or {}),
    )


def render_value(value: Any) -> str:
    """Canonical text form of a variable value."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, dict | list):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def _lookup(name: str, scope: Mapping[str, Any]) -> Any:
    if name.startswith("$"):
        value = Builtin.from_name(name).generate()
        return _MISSING if value is None else value
    return scope.get(name, _MISSING)


def count_placeholders(text: str) -> int:
    return len(PLACEHOLDER_RE.findall(text))


def _substitute_once(text: str, scope: Mapping[str, Any]) -> str:
    def _replace(m: re.Match) -> str:
        value = _lookup(m.group(1).strip(), scope)
        if value is _MISSING or value is None:
            return m.group(0)
        return render_value(value)

    return PLACEHOLDER_RE.sub(_replace, text)


def interpolate_string(template: str, scope: Mapping[str, Any] | None = None) -> str:
    """Expand {{name}} placeholders in template.

    - {{$uuid}}, {{$timestamp}}, ... -> fresh built-in value per occurrence
    - {{name}} -> narrowest scope layer holding name
    - unknown names and None values are left verbatim

    Values may themselves contain placeholders, so the string is re-scanned
    until a pass stops reducing the placeholder count.
    """
    if not isinstance(template, str):
        return template
    scope = scope if scope is not None else {}

    text = template
    before = count_placeholders(text)
    while before:
        text = _substitute_once(text, scope)
        after = count_placeholders(text)
        if after >= before:
            if after:
                logger.debug("Unresolved placeholders left in %r", text)
            break
        before = after
    return text


def interpolate_structure(value: Any, scope: Mapping[str, Any] | None = None) -> Any:
    """Recursively interpolate every string inside dicts and lists."""
    if isinstance(value, str):
        return interpolate_string(value, scope)
    if isinstance(value, dict):
        return {k: interpolate_structure(v, scope) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate_structure(item, scope) for item in value]
    return value


def scope_from_workspace(
    workspace,
    collection: str | None = None,
    chain_context: Mapping[str, Any] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> MergedScope:
    """Build a scope from a variable store (anything with the Workspace API)."""
    env_vars = workspace.get_collection_env_vars(collection) if collection else {}
    return resolve_scope(workspace.get_global_vars(), env_vars, chain_context, overrides)


def parse_var_args(var_specs) -> dict[str, str]:
    """Parse -v key=value pairs into a dict."""
    variables = {}
    for spec in var_specs:
        if "=" in spec:
            k, val = spec.split("=", 1)
            variables[k.strip()] = val.strip()
    return variables
