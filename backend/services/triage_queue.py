"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  LeadHub CRM - Triage Queue State Machine                                    ║
║                                                                              ║
║  Un triage item = "ce lead a besoin d'un humain"                             ║
║  Collection: triage_items (conversation_id = lead_id)                        ║
║                                                                              ║
║  TRANSITIONS:                                                                ║
║  NEW -> IN_PROGRESS   assignation (auto ou manuelle)                         ║
║  NEW -> CLOSED        dismiss par un agent                                   ║
║  IN_PROGRESS -> CLOSED résolu par un agent                                   ║
║  CLOSED -> NEW        réouverture sur nouvel inbound (même ligne)            ║
║                                                                              ║
║  INVARIANT:                                                                  ║
║  - Au plus UN item non-CLOSED par (tenant, conversation)                     ║
║    -> toujours lire le dernier item avant d'écrire                           ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

from config import new_id, now_iso
from models.triage import OPEN_TRIAGE_STATUSES, TriageStatus

logger = logging.getLogger("triage_queue")


# ════════════════════════════════════════════════════════════════════════════
# VALID STATE TRANSITIONS
# ════════════════════════════════════════════════════════════════════════════

VALID_TRIAGE_TRANSITIONS = {
    "NEW": ["IN_PROGRESS", "CLOSED"],
    "IN_PROGRESS": ["CLOSED"],
    "CLOSED": ["NEW"],
}

DEFAULT_TRIAGE_TYPE = "HUMAN_ATTENTION"
PREVIEW_MAX_CHARS = 280


class TriageTransitionError(Exception):
    """Raised when a triage status change is not allowed"""
    pass


class TriageItemNotFoundError(TriageTransitionError):
    pass


def validate_triage_transition(item_id: str, from_status: str, to_status: str) -> bool:
    valid_next = VALID_TRIAGE_TRANSITIONS.get(from_status, [])
    if to_status not in valid_next:
        raise TriageTransitionError(
            f"INVALID TRANSITION: triage item {item_id} cannot go from '{from_status}' to '{to_status}'. "
            f"Valid transitions from '{from_status}': {valid_next}"
        )
    return True


# ════════════════════════════════════════════════════════════════════════════
# READS
# ════════════════════════════════════════════════════════════════════════════

async def get_triage_item(db, tenant_id: str, item_id: str) -> Dict[str, Any]:
    item = await db.triage_items.find_one({"tenant_id": tenant_id, "id": item_id}, {"_id": 0})
    if not item:
        raise TriageItemNotFoundError(f"Triage item {item_id} not found")
    return item


async def get_latest_triage_item(db, tenant_id: str, conversation_id: str) -> Optional[Dict[str, Any]]:
    cursor = db.triage_items.find(
        {"tenant_id": tenant_id, "conversation_id": conversation_id},
        {"_id": 0},
    ).sort("created_at", -1).limit(1)
    rows = await cursor.to_list(1)
    return rows[0] if rows else None


async def list_triage_items(
    db,
    tenant_id: str,
    status: Optional[str] = None,
    assigned_to: Optional[str] = None,
    unassigned: bool = False,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {"tenant_id": tenant_id}
    if status:
        query["status"] = status.upper()
    if unassigned:
        query["assigned_to"] = None
    elif assigned_to:
        query["assigned_to"] = assigned_to

    cursor = db.triage_items.find(query, {"_id": 0}).sort("created_at", -1).limit(limit)
    return await cursor.to_list(limit)


async def compute_open_load(db, tenant_id: str) -> Dict[str, int]:
    """Nombre d'items ouverts (non-CLOSED) par agent assigné"""
    pipeline = [
        {"$match": {
            "tenant_id": tenant_id,
            "status": {"$in": OPEN_TRIAGE_STATUSES},
            "assigned_to": {"$ne": None},
        }},
        {"$group": {"_id": "$assigned_to", "count": {"$sum": 1}}},
    ]
    load: Dict[str, int] = {}
    rows = await db.triage_items.aggregate(pipeline).to_list(10000)
    for row in rows:
        if row.get("_id"):
            load[row["_id"]] = row["count"]
    return load


# ════════════════════════════════════════════════════════════════════════════
# UPSERT (hot path, appelé par l'ingestion)
# ════════════════════════════════════════════════════════════════════════════

async def upsert_triage_for_conversation(
    db,
    tenant_id: str,
    conversation_id: str,
    end_user_phone: Optional[str] = None,
    message_preview: Optional[str] = None,
    reason: Optional[str] = None,
    triage_type: str = DEFAULT_TRIAGE_TYPE,
    assigned_to: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Un item ouvert existe -> noop
    Dernier item CLOSED   -> réouverture (même ligne, assigned_to conservé)
    Aucun item            -> création (assigned_to = propriétaire actuel du lead)

    Returns: {"action": "noop" | "reopen" | "create", "id", "item"}
    """
    existing = await get_latest_triage_item(db, tenant_id, conversation_id)
    now = now_iso()
    preview = (message_preview or "")[:PREVIEW_MAX_CHARS] or None

    if existing and existing.get("status") != TriageStatus.CLOSED.value:
        await db.triage_items.update_one(
            {"tenant_id": tenant_id, "id": existing["id"]},
            {"$set": {"last_inbound_at": now, "updated_at": now}},
        )
        return {"action": "noop", "id": existing["id"], "item": existing}

    if existing:
        item = await _reopen(db, tenant_id, existing, preview, now)
        logger.info(f"[TRIAGE] Reopened {item['id']} for conversation {conversation_id}")
        return {"action": "reopen", "id": item["id"], "item": item}

    item = {
        "id": new_id(),
        "tenant_id": tenant_id,
        "conversation_id": conversation_id,
        "lead_id": conversation_id,
        "type": triage_type,
        "status": TriageStatus.NEW.value,
        "assigned_to": assigned_to,
        "end_user_phone": end_user_phone,
        "message_preview": preview,
        "reason": reason,
        "reopen_count": 0,
        "created_at": now,
        "updated_at": now,
        "last_inbound_at": now,
    }
    await db.triage_items.insert_one(item)
    item.pop("_id", None)
    logger.info(f"[TRIAGE] Created {item['id']} for conversation {conversation_id} ({reason})")
    return {"action": "create", "id": item["id"], "item": item}


def _without_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc:
        doc.pop("_id", None)
    return doc


async def _reopen(db, tenant_id: str, item: Dict[str, Any], preview: Optional[str], now: str) -> Dict[str, Any]:
    """CLOSED -> NEW, même ligne; assigned_to est conservé"""
    validate_triage_transition(item["id"], item.get("status"), TriageStatus.NEW.value)
    update: Dict[str, Any] = {
        "status": TriageStatus.NEW.value,
        "closed_at": None,
        "closed_reason": None,
        "reopened_at": now,
        "updated_at": now,
        "last_inbound_at": now,
    }
    if preview:
        update["message_preview"] = preview
    reopened = await db.triage_items.find_one_and_update(
        {"tenant_id": tenant_id, "id": item["id"], "status": TriageStatus.CLOSED.value},
        {"$set": update, "$inc": {"reopen_count": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if not reopened:
        raise TriageTransitionError(f"Triage item {item['id']} changed state during reopen")
    return _without_id(reopened)


# ════════════════════════════════════════════════════════════════════════════
# AGENT / ADMIN ACTIONS
# ════════════════════════════════════════════════════════════════════════════

async def claim_triage_item(
    db,
    tenant_id: str,
    item_id: str,
    agent_id: str,
    expected_assigned_to: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """
    NEW -> IN_PROGRESS, seulement si l'item est toujours NEW et que son
    assigned_to vaut encore expected_assigned_to (None pour l'auto-assignation).
    None si un autre appel l'a pris entre-temps.
    """
    now = now_iso()
    claimed = await db.triage_items.find_one_and_update(
        {
            "tenant_id": tenant_id,
            "id": item_id,
            "status": TriageStatus.NEW.value,
            "assigned_to": expected_assigned_to,
        },
        {"$set": {
            "status": TriageStatus.IN_PROGRESS.value,
            "assigned_to": agent_id,
            "assigned_at": now,
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    return _without_id(claimed)


async def reassign_triage_item(db, tenant_id: str, item_id: str, agent_id: str) -> Dict[str, Any]:
    """IN_PROGRESS reste IN_PROGRESS, seul le propriétaire change"""
    item = await get_triage_item(db, tenant_id, item_id)
    if item.get("status") != TriageStatus.IN_PROGRESS.value:
        raise TriageTransitionError(
            f"Triage item {item_id} is {item.get('status')}, only IN_PROGRESS items can be reassigned"
        )
    now = now_iso()
    updated = await db.triage_items.find_one_and_update(
        {"tenant_id": tenant_id, "id": item_id, "status": TriageStatus.IN_PROGRESS.value},
        {"$set": {
            "assigned_to": agent_id,
            "previous_assigned_to": item.get("assigned_to"),
            "assigned_at": now,
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise TriageTransitionError(f"Triage item {item_id} changed state during reassignment")
    logger.info(f"[TRIAGE] {item_id} reassigned {item.get('assigned_to')} -> {agent_id}")
    return _without_id(updated)


async def close_triage_item(
    db,
    tenant_id: str,
    item_id: str,
    reason: Optional[str] = None,
    closed_by: Optional[str] = None,
) -> Dict[str, Any]:
    item = await get_triage_item(db, tenant_id, item_id)
    from_status = item.get("status")
    validate_triage_transition(item_id, from_status, TriageStatus.CLOSED.value)

    now = now_iso()
    updated = await db.triage_items.find_one_and_update(
        {"tenant_id": tenant_id, "id": item_id, "status": from_status},
        {"$set": {
            "status": TriageStatus.CLOSED.value,
            "closed_at": now,
            "closed_reason": reason,
            "closed_by": closed_by,
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise TriageTransitionError(f"Triage item {item_id} changed state during close")
    logger.info(f"[TRIAGE] Closed {item_id} ({from_status} -> CLOSED) reason={reason}")
    return _without_id(updated)


async def reopen_triage_item(db, tenant_id: str, item_id: str) -> Dict[str, Any]:
    """CLOSED -> NEW, refusé si un autre item est déjà ouvert pour la conversation"""
    item = await get_triage_item(db, tenant_id, item_id)
    validate_triage_transition(item_id, item.get("status"), TriageStatus.NEW.value)

    other_open = await db.triage_items.find_one(
        {
            "tenant_id": tenant_id,
            "conversation_id": item.get("conversation_id"),
            "status": {"$in": OPEN_TRIAGE_STATUSES},
        },
        {"_id": 0, "id": 1},
    )
    if other_open:
        raise TriageTransitionError(
            f"Conversation {item.get('conversation_id')} already has open triage item {other_open['id']}"
        )

    reopened = await _reopen(db, tenant_id, item, None, now_iso())
    logger.info(f"[TRIAGE] Reopened {item_id} manually")
    return reopened


async def close_open_items_for_conversation(db, tenant_id: str, conversation_id: str, reason: str) -> int:
    """Ferme tous les items ouverts d'une conversation (fusion de leads)"""
    now = now_iso()
    result = await db.triage_items.update_many(
        {
            "tenant_id": tenant_id,
            "conversation_id": conversation_id,
            "status": {"$in": OPEN_TRIAGE_STATUSES},
        },
        {"$set": {
            "status": TriageStatus.CLOSED.value,
            "closed_at": now,
            "closed_reason": reason,
            "updated_at": now,
        }},
    )
    return result.modified_count
