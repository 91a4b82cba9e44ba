"""
LeadHub CRM - Lead Event Logger

Append-only audit trail per lead (collection lead_events).
Single function to call from any route/service.
"""

from typing import Any, Dict, List, Optional

from config import new_id, now_iso


async def log_lead_event(
    db,
    tenant_id: str,
    lead_id: str,
    event_type: str,
    payload: Optional[Dict[str, Any]] = None,
    actor_user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Write a single event to lead_events.

    Args:
        event_type: LEAD_CREATED | LEAD_UPDATED | HEAT_CHANGED | LEAD_ASSIGNED | LEADS_MERGED
        payload: free-form dict (quality analysis, old/new heat, moved fields, ...)
        actor_user_id: user behind the action, None for system actions

    Events are never updated afterwards, except for lead_id when a merge
    re-owns them.
    """
    event = {
        "id": new_id(),
        "tenant_id": tenant_id,
        "lead_id": lead_id,
        "event_type": str(getattr(event_type, "value", event_type)),
        "payload": payload or {},
        "actor_user_id": actor_user_id,
        "created_at": now_iso(),
    }
    await db.lead_events.insert_one(event)
    event.pop("_id", None)
    return event


async def list_lead_events(db, tenant_id: str, lead_id: str, limit: int = 500) -> List[Dict[str, Any]]:
    """History of one lead, oldest first"""
    cursor = db.lead_events.find(
        {"tenant_id": tenant_id, "lead_id": lead_id},
        {"_id": 0},
    ).sort("created_at", 1)
    return await cursor.to_list(limit)
