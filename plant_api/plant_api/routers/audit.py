"""Audit log query and chain-verification endpoints.

Both endpoints require the ``READ_AUDIT`` permission, which only the
administrator role holds.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query

from plant_api.dependencies import SessionDep
from plant_api.middleware.rbac import Permission, Role, require_permission
from plant_core.state.repository import AuditRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/audit", tags=["audit"])


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("")
async def query_audit_log(
    session: SessionDep,
    action: str | None = Query(default=None, description="Filter by action type."),
    table_name: str | None = Query(default=None, description="Filter by affected table."),
    record_id: str | None = Query(default=None, description="Filter by affected record ID."),
    since: datetime | None = Query(default=None, description="Only entries at or after this timestamp."),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _role: Role = Depends(require_permission(Permission.READ_AUDIT)),
) -> list[dict[str, Any]]:
    """Query the append-only audit log with optional filters.

    Returns entries most recent first.
    """
    repo = AuditRepository(session)
    entries = await repo.query(
        action=action,
        table_name=table_name,
        record_id=record_id,
        since=since,
        limit=limit,
        offset=offset,
    )
    return [
        {
            "id": entry.id,
            "seq": entry.seq,
            "actor_id": entry.actor_id,
            "action": entry.action,
            "table_name": entry.table_name,
            "record_id": entry.record_id,
            "old_values": entry.old_values,
            "new_values": entry.new_values,
            "previous_hash": entry.previous_hash,
            "entry_hash": entry.entry_hash,
            "created_at": entry.created_at.isoformat() if entry.created_at else None,
        }
        for entry in entries
    ]


@router.get("/verify")
async def verify_audit_chain(
    session: SessionDep,
    limit: int = Query(default=1000, ge=1, le=10000),
    _role: Role = Depends(require_permission(Permission.READ_AUDIT)),
) -> dict[str, Any]:
    """Verify the integrity of the audit log hash chain.

    Returns the verification result and the number of entries checked.
    """
    repo = AuditRepository(session)
    is_valid, entries_checked = await repo.verify_chain(limit=limit)
    return {
        "is_valid": is_valid,
        "entries_checked": entries_checked,
    }
