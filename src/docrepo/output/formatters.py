"""Human/JSON output helpers.

Commands hand a plain payload dict to :func:`format_payload`, which renders
it as indented key-value text for humans or as a JSON envelope (--json).
"""

from __future__ import annotations

import json as _json
from typing import Any


def _format_data_human(data: dict[str, Any]) -> str:
    """Format payload data as indented key-value pairs."""
    lines: list[str] = []
    for key, value in data.items():
        if isinstance(value, list) and value and all(isinstance(v, dict) for v in value):
            lines.append(f"  {key}:")
            lines.extend(
                f"    - {_json.dumps(v, separators=(',', ':'), default=str)}" for v in value
            )
        elif isinstance(value, (dict, list)):
            lines.append(f"  {key}: {_json.dumps(value, separators=(',', ':'), default=str)}")
        else:
            lines.append(f"  {key}: {value}")
    return "\n".join(lines)


def format_payload(
    op: str,
    data: dict[str, Any] | None = None,
    *,
    ok: bool = True,
    error: str | None = None,
    json_output: bool = False,
) -> str:
    """Format one command outcome for display.

    Args:
        op: Command name, e.g. ``"insert"``.
        data: Payload for successful (or partially successful) outcomes.
        ok: Whether the command succeeded.
        error: Failure message when ``ok`` is False.
        json_output: If True, return JSON; otherwise human-readable text.
    """
    if json_output:
        envelope: dict[str, Any] = {"ok": ok, "op": op, "data": data or {}}
        if error is not None:
            envelope["error"] = error
        return _json.dumps(envelope, indent=2, default=str)
    if ok:
        parts = [f"OK: {op}"]
        if data:
            parts.append(_format_data_human(data))
        return "\n".join(parts)
    parts = [f"ERROR: {op}: {error or 'Unknown error'}"]
    if data:
        parts.append(_format_data_human(data))
    return "\n".join(parts)
