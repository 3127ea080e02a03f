"""nurl filters - dot-path extraction and response rendering."""

from __future__ import annotations

import json
import re
from typing import Any

# ---------------------------------------------------------------------------
# Segment types returned by _parse_path_segments:
#   str  → dict key (exact match)
#   int  → list index
# ---------------------------------------------------------------------------

_INT_RE = re.compile(r"^\d+$")
_BRACKETS_RE = re.compile(r"^([^\[]*)((?:\[[^\]]*\])+)$")


def _parse_path_segments(path: str) -> list[str | int]:
    """Parse a dot-path into typed segments.

    Supports:
      field                  → key
      nested.field           → key, key
      items.0.name           → key, 0, key  (numeric dot segment = index)
      items[0].name          → key, 0, key
      matrix[1][0]           → key, 1, 0
      odd[key]               → "odd[key]" (non-numeric brackets stay a key)
    """
    segments: list[str | int] = []

    for part in path.strip().split("."):
        part = part.strip()
        if not part:
            continue

        m = _BRACKETS_RE.match(part)
        brackets = [b.strip() for b in re.findall(r"\[([^\]]*)\]", m.group(2))] if m else []
        if brackets and all(_INT_RE.match(b) for b in brackets):
            key_part = m.group(1).strip()
            if key_part:
                segments.append(key_part)
            segments.extend(int(b) for b in brackets)
        elif _INT_RE.match(part):
            segments.append(int(part))
        else:
            segments.append(part)

    return segments


def _step(current: Any, seg: str | int) -> tuple[bool, Any]:
    if isinstance(seg, int):
        if isinstance(current, list) and seg < len(current):
            return True, current[seg]
        # numeric-looking keys are still valid mapping keys
        if isinstance(current, dict) and str(seg) in current:
            return True, current[str(seg)]
        return False, None
    if isinstance(current, dict) and seg in current:
        return True, current[seg]
    return False, None


def extract_by_path(value: Any, dot_path: str) -> Any:
    """Extract the value at dot_path, or None.

    Used for chain ``extract`` mappings, e.g. ``body.data.user.id``,
    ``body.items.0.name`` or ``body.items[0].name``. Never raises: a missing
    key, an out-of-range index, a None along the way or indexing into a
    scalar all yield None.
    """
    if not isinstance(dot_path, str):
        return None
    segments = _parse_path_segments(dot_path)

    current = value
    for seg in segments:
        if current is None:
            return None
        found, current = _step(current, seg)
        if not found:
            return None
    return current


def format_output(
    result,  # RequestResult from executor.py
    verbose: bool = False,
    raw: bool = False,
) -> str:
    """Format a request result for CLI output.

    STATUS: 200 OK
    TIME: 45ms
    HEADERS: (verbose only)
    BODY:
    {...}
    """
    if result.error:
        return f"ERROR: {result.error}"

    if raw:
        body = result.body
        if isinstance(body, dict | list):
            return json.dumps(body, indent=2)
        return str(body) if body is not None else ""

    lines: list[str] = []
    status = f"STATUS: {result.status_code}"
    if result.reason:
        status += f" {result.reason}"
    lines.append(status)
    lines.append(f"TIME: {int(result.elapsed_ms)}ms")

    if verbose and result.headers:
        lines.append("HEADERS:")
        for key, value in result.headers.items():
            lines.append(f"  {key}: {value}")

    body = result.body
    if body is not None and body != "":
        lines.append("BODY:")
        if isinstance(body, dict | list):
            lines.append(json.dumps(body, indent=2))
        else:
            lines.append(str(body))

    return "\n".join(lines)
