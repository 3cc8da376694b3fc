# app/infra/audit_log.py
"""
Audit logging for administrative operations.

Records directory management actions (category/website edits, role
changes, image uploads) to a dedicated audit logger, separate from the
application log, with structured context.

Events are logged at INFO level to a logger named "audit" so they
can be routed to a separate file / sink via logging configuration.
"""
from __future__ import annotations

import logging
from typing import Any

_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    entity: str | None = None,
    entity_id: Any = None,
    detail: str = "",
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Record an audit event.

    Args:
        action: Action name (e.g., "website.create", "user.role")
        entity: Kind of object affected ("category", "website", "image", ...)
        entity_id: Identifier of the affected object (if applicable)
        detail: Human-readable detail
        extra: Additional structured context
    """
    entity_ref = "" if entity_id is None else str(entity_id)
    record = {
        "audit_action": action,
        "entity": entity or "",
        "entity_id": entity_ref,
        "detail": detail,
    }
    if extra:
        record.update(extra)

    _audit_logger.info(
        f"AUDIT: {action} {entity or '-'}={entity_ref or '-'} {detail}".rstrip(),
        extra=record,
    )
