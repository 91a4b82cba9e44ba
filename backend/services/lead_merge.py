"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  LeadHub CRM - Lead Merge Engine                                             ║
║                                                                              ║
║  Action admin (hors hot path): 1 lead principal + N secondaires              ║
║                                                                              ║
║  - Identité (name/phone/email): celle du principal gagne, trous comblés      ║
║  - score = max, heat = la plus chaude                                        ║
║  - Events et messages des secondaires -> re-possédés par le principal        ║
║  - Secondaires: status MERGED + merged_into_lead_id, jamais supprimés        ║
║  - Un event LEADS_MERGED sur le principal liste chaque champ déplacé         ║
║                                                                              ║
║  Best effort, pas atomique: un échec de re-possession est loggé et ne        ║
║  défait pas la fusion déjà appliquée.                                        ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from config import now_iso
from models.lead import INACTIVE_LEAD_STATUSES, LeadEventType, LeadStatus, heat_rank
from services.event_logger import log_lead_event
from services.inbound_normalizer import normalize_email, normalize_phone
from services.lead_ingest import LeadValidationError, require_tenant
from services.triage_queue import close_open_items_for_conversation

logger = logging.getLogger("lead_merge")

IDENTITY_FIELDS = ("name", "phone", "email")


class LeadNotFoundError(Exception):
    pass


async def find_duplicate_leads(
    db,
    tenant_id: str,
    phone: Optional[str] = None,
    email: Optional[str] = None,
    exclude_lead_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Leads actifs du tenant avec le même phone OU le même email"""
    tenant_id = require_tenant(tenant_id)
    phone = normalize_phone(phone)
    email = normalize_email(email)
    if not phone and not email:
        raise LeadValidationError("phone_or_email_required")

    matchers = []
    if phone:
        matchers.append({"phone": phone})
    if email:
        matchers.append({"email": email})

    query: Dict[str, Any] = {
        "tenant_id": tenant_id,
        "status": {"$nin": INACTIVE_LEAD_STATUSES},
        "$or": matchers,
    }
    if exclude_lead_id:
        query["id"] = {"$ne": exclude_lead_id}

    return await db.leads.find(query, {"_id": 0}).sort("created_at", 1).to_list(100)


async def merge_leads(
    db,
    tenant_id: str,
    primary_lead_id: str,
    secondary_lead_ids: List[str],
    actor_user_id: Optional[str] = None,
) -> Dict[str, Any]:
    tenant_id = require_tenant(tenant_id)
    secondary_ids = []
    for lead_id in secondary_lead_ids or []:
        if lead_id and lead_id not in secondary_ids:
            secondary_ids.append(lead_id)
    if not primary_lead_id or not secondary_ids:
        raise LeadValidationError("invalid_merge_params")
    if primary_lead_id in secondary_ids:
        raise LeadValidationError("primary lead cannot be merged into itself")

    primary = await db.leads.find_one({"tenant_id": tenant_id, "id": primary_lead_id}, {"_id": 0})
    if not primary:
        raise LeadNotFoundError("primary_lead_not_found")
    if primary.get("status") == LeadStatus.MERGED.value:
        raise LeadValidationError(f"primary lead {primary_lead_id} is already merged")

    found = await db.leads.find(
        {"tenant_id": tenant_id, "id": {"$in": secondary_ids}}, {"_id": 0}
    ).to_list(len(secondary_ids))
    by_id = {lead["id"]: lead for lead in found}
    secondaries = [
        by_id[i] for i in secondary_ids
        if i in by_id and by_id[i].get("status") != LeadStatus.MERGED.value
    ]
    if not secondaries:
        raise LeadNotFoundError("secondary_leads_not_found")

    # ═══════ Fusion des champs (en mémoire) ═══════
    merged = dict(primary)
    history: Dict[str, Any] = {
        "merged_at": now_iso(),
        "merged_by": actor_user_id,
        "secondary_lead_ids": [s["id"] for s in secondaries],
        "skipped_lead_ids": [i for i in secondary_ids if i not in {s["id"] for s in secondaries}],
        "data_transferred": [],
        "failures": [],
    }
    for secondary in secondaries:
        for field in IDENTITY_FIELDS:
            if not merged.get(field) and secondary.get(field):
                merged[field] = secondary[field]
                history["data_transferred"].append({"field": field, "from": secondary["id"]})

        if (secondary.get("score") or 0) > (merged.get("score") or 0):
            history["data_transferred"].append({
                "field": "score", "from": secondary["id"],
                "old": merged.get("score"), "new": secondary.get("score"),
            })
            merged["score"] = secondary.get("score")

        if heat_rank(secondary.get("heat")) > heat_rank(merged.get("heat")):
            history["data_transferred"].append({
                "field": "heat", "from": secondary["id"],
                "old": merged.get("heat"), "new": secondary.get("heat"),
            })
            merged["heat"] = secondary.get("heat")

    # ═══════ 1. Principal (erreur propagée, rien n'est encore écrit) ═══════
    now = now_iso()
    updates = {field: merged.get(field) for field in IDENTITY_FIELDS}
    updates.update({"heat": merged.get("heat"), "updated_at": now, "last_activity_at": now})
    updated_primary = await db.leads.find_one_and_update(
        {"tenant_id": tenant_id, "id": primary_lead_id},
        {"$set": updates, "$max": {"score": merged.get("score") or 0}},
        return_document=ReturnDocument.AFTER,
    )
    if updated_primary:
        updated_primary.pop("_id", None)

    # ═══════ 2. Secondaires (best effort) ═══════
    for secondary in secondaries:
        await _retire_secondary(db, tenant_id, primary_lead_id, secondary, now, history)

    # ═══════ 3. Audit ═══════
    try:
        await log_lead_event(
            db, tenant_id, primary_lead_id, LeadEventType.LEADS_MERGED, history, actor_user_id=actor_user_id
        )
    except PyMongoError as e:
        logger.error(f"[MERGE] LEADS_MERGED event failed for lead {primary_lead_id}: {e}")

    logger.info(
        f"[MERGE] tenant={tenant_id} primary={primary_lead_id} "
        f"merged={history['secondary_lead_ids']} failures={len(history['failures'])}"
    )
    return {
        "lead": updated_primary or merged,
        "merged_count": len(secondaries),
        "merged_history": history,
    }


async def _retire_secondary(db, tenant_id: str, primary_lead_id: str, secondary: Dict[str, Any], now: str, history: Dict[str, Any]):
    secondary_id = secondary["id"]
    steps = [
        ("status", lambda: db.leads.update_one(
            {"tenant_id": tenant_id, "id": secondary_id},
            {"$set": {
                "status": LeadStatus.MERGED.value,
                "notes": f"Merged into lead {primary_lead_id}",
                "merged_into_lead_id": primary_lead_id,
                "merged_at": now,
                "updated_at": now,
            }},
        )),
        ("events", lambda: db.lead_events.update_many(
            {"tenant_id": tenant_id, "lead_id": secondary_id},
            {"$set": {"lead_id": primary_lead_id}},
        )),
        ("messages", lambda: db.lead_messages.update_many(
            {"tenant_id": tenant_id, "lead_id": secondary_id},
            {"$set": {"lead_id": primary_lead_id}},
        )),
        ("triage", lambda: close_open_items_for_conversation(db, tenant_id, secondary_id, "merged")),
    ]
    for step, operation in steps:
        try:
            await operation()
        except PyMongoError as e:
            logger.error(f"[MERGE] {step} transfer failed for lead {secondary_id}: {e}")
            history["failures"].append({"step": step, "lead_id": secondary_id, "error": str(e)})
        else:
            if step in ("events", "messages"):
                history["data_transferred"].append({"field": step, "from": secondary_id})
