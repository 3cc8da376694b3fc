# app/infra/pg_helpers.py
"""Small helpers shared by the asyncpg repositories."""
from __future__ import annotations

import json
from typing import Any, Iterable


def parse_jsonb(raw: Any) -> Any:
    """Decode a jsonb column value (asyncpg returns jsonb as text by default)."""
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


def affected_rows(status: str) -> int:
    """Row count from an asyncpg command status, e.g. ``"UPDATE 3"`` -> 3."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError, IndexError):
        return 0


def build_update_clause(
    fields: dict[str, Any],
    allowed: Iterable[str],
    first_param: int = 2,
) -> tuple[str, list[Any]]:
    """
    Build ``SET a = $2, b = $3, updated_at = now()`` for a partial update.

    Keys outside ``allowed`` are ignored, so column names never come from
    user input. Returns ("", []) when nothing is left to update.
    """
    allowed = set(allowed)
    columns = [k for k in fields if k in allowed]
    if not columns:
        return "", []

    assignments = [f"{col} = ${i}" for i, col in enumerate(columns, start=first_param)]
    assignments.append("updated_at = now()")
    return "SET " + ", ".join(assignments), [fields[col] for col in columns]
