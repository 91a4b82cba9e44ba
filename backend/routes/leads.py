"""
LeadHub CRM - Routes Leads (doublons, fusion, historique)
"""

from fastapi import APIRouter, Depends, HTTPException

from models.lead import LeadFindDuplicates, LeadMergeRequest
from routes.auth import get_current_user, require_tenant_admin
from routes.deps import get_db
from services.event_logger import list_lead_events
from services.lead_ingest import LeadValidationError
from services.lead_merge import LeadNotFoundError, find_duplicate_leads, merge_leads

router = APIRouter(prefix="/crm/leads", tags=["Leads"])


@router.post("/find-duplicates")
async def find_duplicates(
    data: LeadFindDuplicates,
    user: dict = Depends(require_tenant_admin),
    db=Depends(get_db),
):
    """Leads actifs partageant le phone ou l'email"""
    try:
        duplicates = await find_duplicate_leads(
            db, user["tenant_id"], phone=data.phone, email=data.email, exclude_lead_id=data.excludeLeadId
        )
    except LeadValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "duplicates": duplicates, "count": len(duplicates)}


@router.post("/merge")
async def merge(
    data: LeadMergeRequest,
    user: dict = Depends(require_tenant_admin),
    db=Depends(get_db),
):
    """Fusionne les secondaires dans le lead principal"""
    try:
        result = await merge_leads(
            db, user["tenant_id"], data.primaryLeadId, data.secondaryLeadIds, actor_user_id=user.get("id")
        )
    except LeadValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LeadNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, **result}


@router.get("/{lead_id}/events")
async def lead_events(lead_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    lead = await db.leads.find_one({"tenant_id": user["tenant_id"], "id": lead_id}, {"_id": 0, "id": 1})
    if not lead:
        raise HTTPException(status_code=404, detail="Lead non trouvé")
    events = await list_lead_events(db, user["tenant_id"], lead_id)
    return {"events": events, "count": len(events)}
