"""Best-effort audit recorder.

Each audit row is written inside a SAVEPOINT of the caller's transaction.  If
the write fails only the savepoint is rolled back: the business operation
carries on and commits without its audit row.  Failures are logged, never
raised.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from settlement.models.audit import AuditLog
from settlement.services.errors import AuditWriteFailure

logger = logging.getLogger("settlement.audit")

MODULE_LOANS = "LOANS"
MODULE_COMMISSIONS = "COMMISSIONS"
MODULE_FINANCIAL = "FINANCIAL"


async def _write(db: AsyncSession, entry: AuditLog) -> None:
    try:
        async with db.begin_nested():
            db.add(entry)
            await db.flush()
    except Exception as exc:
        raise AuditWriteFailure(str(exc)) from exc


async def record_audit(
    db: AsyncSession,
    *,
    actor_id: Optional[int],
    module: str,
    action: str,
    entity_id: Optional[int] = None,
    ip: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> None:
    """Append an audit entry.  Never raises."""
    entry = AuditLog(
        user_id=actor_id,
        module=module,
        action=action,
        entity_id=entity_id,
        ip_address=ip[:45] if ip else None,
        details=details,
    )
    try:
        await _write(db, entry)
    except AuditWriteFailure as exc:
        logger.warning(
            "Failed to record audit %s/%s for entity %s: %s",
            module, action, entity_id, exc,
        )
