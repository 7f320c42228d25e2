"""
NIMEX Marketplace — Audit Trail
Field-level history of escrow and wallet rows in the AuditLog table.

Entries are added to the caller's session, so an audit row commits or rolls
back together with the change it describes.
"""
import json
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncSession

from nimex.models import AuditLog

logger = logging.getLogger("nimex.audit")


def _serialize_value(value):
    """JSON-safe form of a column value; money stays exact as a string."""
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, (Decimal, uuid.UUID)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):  # Enum
        return value.value
    return str(value)


def _describe(instance) -> tuple[dict, dict]:
    """
    (changes, snapshot) for a loaded instance.

    changes maps each modified column to {"old": ..., "new": ...} from the
    unflushed attribute history; snapshot holds every column's current value.
    """
    state = inspect(instance)
    changes, snapshot = {}, {}
    for column in state.mapper.column_attrs:
        key = column.key
        snapshot[key] = _serialize_value(getattr(instance, key, None))

        history = state.attrs[key].history
        if history.has_changes():
            changes[key] = {
                "old": _serialize_value(history.deleted[0] if history.deleted else None),
                "new": _serialize_value(history.added[0] if history.added else None),
            }
    return changes, snapshot


def record_change(
    session: AsyncSession,
    action: str,
    instance,
    actor_id: Optional[str] = None,
) -> AuditLog:
    """
    Queue an AuditLog row for the pending changes on ``instance``.

    Call after modifying the instance and before the session flushes; a
    flush clears the attribute history.
    """
    changes, snapshot = _describe(instance)
    entry = AuditLog(
        action=action,
        table_name=instance.__tablename__,
        record_id=str(instance.id),
        actor_id=actor_id,
        changes=json.dumps(changes, default=str),
        snapshot=json.dumps(snapshot, default=str),
    )
    session.add(entry)

    logger.debug(
        "📝 Audit: %s on %s [%s] by %s — %s",
        action, entry.table_name, entry.record_id, actor_id or "system", sorted(changes),
    )
    return entry
