"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  LeadHub CRM - Lead Ingest (dedup + upsert)                                  ║
║                                                                              ║
║  FLUX:                                                                       ║
║  1. Idempotence: (tenant, channel, external_id) déjà vu -> lead inchangé     ║
║  2. Identité: phone exact, sinon email exact (pas de fuzzy)                  ║
║  3. Création ou mise à jour (backfill identité, heat/score jamais baissés)   ║
║  4. Message INBOUND + event LEAD_CREATED / LEAD_UPDATED                      ║
║  5. Triage item (création / réouverture) + auto-assignation si non suivi     ║
║                                                                              ║
║  ÉCHECS:                                                                     ║
║  - Écriture du lead en échec -> propagé (HTTP 500)                           ║
║  - Étapes suivantes (message, audit, triage, assignation) -> loggées,        ║
║    le lead reste valide mais incomplet                                       ║
║                                                                              ║
║  LIMITE CONNUE: lookup puis insert sans verrou; deux events simultanés pour  ║
║  un même nouveau numéro peuvent créer deux leads (fusion manuelle ensuite).  ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import new_id, now_iso
from models.inbound import InboundEvent
from models.lead import (
    INACTIVE_LEAD_STATUSES,
    LeadEventType,
    LeadStatus,
    MessageDirection,
    escalate_heat,
)
from models.triage import TriageStatus
from services.event_logger import log_lead_event
from services.inbound_normalizer import normalize_channel, normalize_inbound
from services.lead_quality import analyze_lead_quality, should_qualify
from services.triage_queue import TriageTransitionError, upsert_triage_for_conversation

logger = logging.getLogger("lead_ingest")

MAX_MERGE_HOPS = 5


class LeadValidationError(ValueError):
    """Entrée rejetée avant toute écriture"""
    pass


def require_tenant(tenant_id: Optional[str]) -> str:
    if not tenant_id or not str(tenant_id).strip():
        raise LeadValidationError("tenant_id is required")
    return str(tenant_id).strip()


# ════════════════════════════════════════════════════════════════════════════
# IDENTITY
# ════════════════════════════════════════════════════════════════════════════

async def follow_merged(db, tenant_id: str, lead: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Lead MERGED -> lead principal (suit merged_into_lead_id)"""
    hops = 0
    while lead and lead.get("status") == LeadStatus.MERGED.value and lead.get("merged_into_lead_id"):
        if hops >= MAX_MERGE_HOPS:
            logger.warning(f"[INGEST] Merge chain too long from lead {lead['id']}")
            break
        target = await db.leads.find_one(
            {"tenant_id": tenant_id, "id": lead["merged_into_lead_id"]}, {"_id": 0}
        )
        if not target:
            break
        lead = target
        hops += 1
    return lead


async def find_existing_lead(db, tenant_id: str, phone: Optional[str], email: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Phone exact, sinon email exact.
    Les leads actifs passent avant les MERGED; un MERGED seul est suivi
    jusqu'à son principal.
    """
    for field, value in (("phone", phone), ("email", email)):
        if not value:
            continue
        active = await db.leads.find(
            {"tenant_id": tenant_id, field: value, "status": {"$nin": INACTIVE_LEAD_STATUSES}},
            {"_id": 0},
        ).sort("created_at", 1).limit(1).to_list(1)
        if active:
            return active[0]

    for field, value in (("phone", phone), ("email", email)):
        if not value:
            continue
        merged = await db.leads.find_one({"tenant_id": tenant_id, field: value}, {"_id": 0})
        if merged:
            return await follow_merged(db, tenant_id, merged)
    return None


# ════════════════════════════════════════════════════════════════════════════
# UPSERT
# ════════════════════════════════════════════════════════════════════════════

async def upsert_inbound_lead(
    db,
    tenant_id: str,
    event: InboundEvent,
    selector=None,
    auto_assign: bool = True,
) -> Dict[str, Any]:
    """
    Returns:
        {lead, message, is_new, already_seen, assignment_result, quality_analysis, triage}
    """
    tenant_id = require_tenant(tenant_id)
    channel = normalize_channel(event.channel)
    source = (event.source or channel).lower()
    lead_input = event.lead
    body = event.message.body
    external_id = event.message.external_id
    analysis = analyze_lead_quality(body or "")

    # ═══════ 1. Idempotence ═══════
    if external_id:
        seen = await _already_seen(db, tenant_id, channel, external_id, analysis)
        if seen:
            return seen

    # ═══════ 2-3. Identité + écriture du lead (erreurs propagées) ═══════
    existing = await find_existing_lead(db, tenant_id, lead_input.phone, lead_input.email)
    if existing:
        lead = await _update_existing(db, tenant_id, existing, event, channel, analysis)
        is_new = False
    else:
        lead = await _create_lead(db, tenant_id, event, channel, source, analysis)
        is_new = True

    # ═══════ 4. Message + audit (best effort) ═══════
    message = None
    try:
        message = await _insert_message(db, tenant_id, lead["id"], channel, event)
    except DuplicateKeyError:
        logger.info(f"[INGEST] Message {channel}/{external_id} inserted concurrently, already seen")
        seen = await _already_seen(db, tenant_id, channel, external_id, analysis)
        if is_new and (not seen or seen["lead"]["id"] != lead["id"]):
            logger.warning(
                f"[INGEST] Orphan lead {lead['id']} left by concurrent delivery {channel}/{external_id}, merge it"
            )
        return seen or {
            "lead": lead,
            "message": None,
            "is_new": False,
            "already_seen": True,
            "assignment_result": None,
            "quality_analysis": analysis,
            "triage": None,
        }
    except PyMongoError as e:
        logger.error(f"[INGEST] Message insert failed for lead {lead['id']}: {e}")

    event_payload = {
        "source": source,
        "channel": channel,
        "quality_analysis": analysis,
        "external_id": external_id,
    }
    try:
        await log_lead_event(
            db, tenant_id, lead["id"],
            LeadEventType.LEAD_CREATED if is_new else LeadEventType.LEAD_UPDATED,
            event_payload,
        )
        if not is_new and lead.get("heat") != existing.get("heat"):
            await log_lead_event(
                db, tenant_id, lead["id"], LeadEventType.HEAT_CHANGED,
                {"old_heat": existing.get("heat"), "new_heat": lead.get("heat"),
                 "trigger": "inbound_reanalysis"},
            )
    except PyMongoError as e:
        logger.error(f"[INGEST] Audit event failed for lead {lead['id']}: {e}")

    # ═══════ 5. Triage (à chaque inbound) + assignation ═══════
    triage = None
    assignment_result = None
    try:
        triage = await upsert_triage_for_conversation(
            db, tenant_id, lead["id"],
            end_user_phone=lead.get("phone"),
            message_preview=body,
            reason=event.triage_reason or f"{channel} inbound",
            assigned_to=lead.get("assigned_user_id"),
        )
    except (PyMongoError, TriageTransitionError) as e:
        logger.error(f"[INGEST] Triage upsert failed for lead {lead['id']}: {e}")

    # Item NEW sans propriétaire seulement: un lead déjà suivi garde son agent
    if triage and auto_assign and selector is not None:
        item = triage["item"]
        if item.get("status") == TriageStatus.NEW.value and not item.get("assigned_to"):
            result = await selector.assign_triage_item(db, tenant_id, triage["id"], seed=lead["id"])
            assignment_result = result.to_dict()
            if result.success:
                lead["assigned_user_id"] = result.agent_id

    logger.info(
        f"[INGEST] tenant={tenant_id} lead={lead['id']} {'created' if is_new else 'updated'} "
        f"channel={channel} heat={lead.get('heat')} score={lead.get('score')}"
    )
    return {
        "lead": lead,
        "message": message,
        "is_new": is_new,
        "already_seen": False,
        "assignment_result": assignment_result,
        "quality_analysis": analysis,
        "triage": {"action": triage["action"], "id": triage["id"]} if triage else None,
    }


async def ingest_inbound(db, tenant_id: str, source: Any, payload: Any, selector=None, auto_assign: bool = True) -> Dict[str, Any]:
    """Normalisation + upsert (point d'entrée des routes)"""
    event = normalize_inbound(source, payload)
    return await upsert_inbound_lead(db, tenant_id, event, selector=selector, auto_assign=auto_assign)


async def _already_seen(db, tenant_id: str, channel: str, external_id: str, analysis: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    existing_msg = await db.lead_messages.find_one(
        {"tenant_id": tenant_id, "channel": channel, "external_id": external_id},
        {"_id": 0, "id": 1, "lead_id": 1},
    )
    if not existing_msg or not existing_msg.get("lead_id"):
        return None

    lead = await db.leads.find_one({"tenant_id": tenant_id, "id": existing_msg["lead_id"]}, {"_id": 0})
    lead = await follow_merged(db, tenant_id, lead)
    if not lead:
        return None

    logger.info(f"[INGEST] Duplicate delivery {channel}/{external_id} -> lead {lead['id']}")
    return {
        "lead": lead,
        "message": {"id": existing_msg["id"], "lead_id": existing_msg["lead_id"], "deduped": True},
        "is_new": False,
        "already_seen": True,
        "assignment_result": None,
        "quality_analysis": analysis,
        "triage": None,
    }


async def _create_lead(db, tenant_id: str, event: InboundEvent, channel: str, source: str, analysis: Dict[str, Any]) -> Dict[str, Any]:
    now = now_iso()
    lead = {
        "id": new_id(),
        "tenant_id": tenant_id,
        "name": event.lead.name,
        "phone": event.lead.phone,
        "email": event.lead.email,
        "channel": channel,
        "source": source,
        "status": (LeadStatus.QUALIFIED if should_qualify(analysis) else LeadStatus.NEW).value,
        "heat": analysis["heat"],
        "score": int(analysis["score"]),
        "assigned_user_id": None,
        "notes": None,
        "merged_into_lead_id": None,
        "created_at": now,
        "updated_at": now,
        "last_activity_at": now,
    }
    await db.leads.insert_one(lead)
    lead.pop("_id", None)
    return lead


async def _update_existing(
    db,
    tenant_id: str,
    existing: Dict[str, Any],
    event: InboundEvent,
    channel: str,
    analysis: Dict[str, Any],
) -> Dict[str, Any]:
    now = now_iso()
    updates: Dict[str, Any] = {
        "updated_at": now,
        "last_activity_at": now,
        "heat": escalate_heat(existing.get("heat"), analysis["heat"]),
    }
    # Backfill seulement, jamais d'écrasement
    for field in ("name", "phone", "email"):
        value = getattr(event.lead, field)
        if value and not existing.get(field):
            updates[field] = value
    if not existing.get("channel"):
        updates["channel"] = channel
    if existing.get("status") == LeadStatus.NEW.value and should_qualify(analysis):
        updates["status"] = LeadStatus.QUALIFIED.value

    updated = await db.leads.find_one_and_update(
        {"tenant_id": tenant_id, "id": existing["id"]},
        {"$set": updates, "$max": {"score": int(analysis["score"])}},
        return_document=ReturnDocument.AFTER,
    )
    if updated:
        updated.pop("_id", None)
        return updated
    return {**existing, **updates}


async def _insert_message(db, tenant_id: str, lead_id: str, channel: str, event: InboundEvent) -> Dict[str, Any]:
    message = {
        "id": new_id(),
        "tenant_id": tenant_id,
        "lead_id": lead_id,
        "direction": MessageDirection.INBOUND.value,
        "channel": channel,
        "body": event.message.body,
        "external_id": event.message.external_id,
        "raw_payload": event.message.raw_payload,
        "created_at": now_iso(),
    }
    await db.lead_messages.insert_one(message)
    message.pop("_id", None)
    return message
