"""
LeadHub CRM - Routes Ingest

POST /crm/ingest                       bearer session, tenant du user
POST /crm/ingest/webhook               x-webhook-secret, body.tenantId
POST /integrations/{source}/webhook    x-webhook-secret, ?tenant_id= (indiamart, justdial)

Succès dès que le lead est écrit; un échec d'assignation ne fait jamais
échouer la requête.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from pymongo.errors import PyMongoError

from models.inbound import IngestPayload
from routes.auth import get_current_user, verify_webhook_secret
from routes.deps import get_db, get_selector
from services.lead_ingest import LeadValidationError, ingest_inbound

logger = logging.getLogger("lead_ingest")

router = APIRouter(tags=["Ingest"])

INTEGRATION_SOURCES = ("indiamart", "justdial")


async def _run_ingest(db, selector, tenant_id: Optional[str], source: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
    try:
        result = await ingest_inbound(db, tenant_id, source, payload, selector=selector)
    except LeadValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PyMongoError as e:
        logger.error(f"[INGEST] Ingest failed for tenant {tenant_id}: {e}")
        raise HTTPException(status_code=500, detail="ingest_failed")
    return {"success": True, **result}


@router.post("/crm/ingest")
async def ingest_authenticated(
    data: IngestPayload,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
    selector=Depends(get_selector),
):
    """Ingestion pour le tenant de l'utilisateur connecté"""
    payload = data.model_dump()
    return await _run_ingest(db, selector, user["tenant_id"], data.source, payload)


@router.post("/crm/ingest/webhook")
async def ingest_webhook(
    data: IngestPayload,
    _secret: bool = Depends(verify_webhook_secret),
    db=Depends(get_db),
    selector=Depends(get_selector),
):
    """Ingestion non authentifiée (secret partagé), tenant explicite"""
    if not data.tenantId:
        raise HTTPException(status_code=400, detail="tenantId is required")
    payload = data.model_dump()
    return await _run_ingest(db, selector, data.tenantId, data.source, payload)


@router.post("/integrations/{source}/webhook")
async def integration_webhook(
    source: str,
    tenant_id: Optional[str] = None,
    payload: Dict[str, Any] = Body(...),
    _secret: bool = Depends(verify_webhook_secret),
    db=Depends(get_db),
    selector=Depends(get_selector),
):
    """Webhooks marketplace: champs provider mappés par le normalizer"""
    source = source.lower()
    if source not in INTEGRATION_SOURCES:
        raise HTTPException(status_code=404, detail=f"Unknown integration: {source}")
    tenant_id = tenant_id or payload.get("tenantId") or payload.get("tenant_id")
    if not tenant_id:
        raise HTTPException(status_code=400, detail="tenant_id is required")
    return await _run_ingest(db, selector, tenant_id, source, payload)
