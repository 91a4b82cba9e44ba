"""
LeadHub CRM - Routes Triage (queue + config d'assignation)
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from models.assignment import AssignmentConfigUpdate
from models.triage import TriageAssign, TriageClose
from routes.auth import get_current_user, require_tenant_admin
from routes.deps import get_db, get_selector
from services.assignment_config import config_to_dict, get_assignment_config, update_assignment_config
from services.assignment_engine import AgentNotAvailableError
from services.triage_queue import (
    TriageItemNotFoundError,
    TriageTransitionError,
    close_triage_item,
    list_triage_items,
    reopen_triage_item,
)

router = APIRouter(prefix="/triage", tags=["Triage"])


def _raise_for_transition(e: TriageTransitionError):
    if isinstance(e, TriageItemNotFoundError):
        raise HTTPException(status_code=404, detail=str(e))
    raise HTTPException(status_code=409, detail=str(e))


# ==================== QUEUE ====================

@router.get("")
async def list_items(
    status: Optional[str] = None,
    assigned_to: Optional[str] = None,
    unassigned: bool = False,
    limit: int = 100,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    """Liste les items du tenant (plus récents d'abord)"""
    items = await list_triage_items(
        db, user["tenant_id"], status=status, assigned_to=assigned_to,
        unassigned=unassigned, limit=min(max(limit, 1), 500),
    )
    return {"items": items, "count": len(items)}


@router.post("/{item_id}/assign")
async def assign_item(
    item_id: str,
    data: TriageAssign,
    user: dict = Depends(require_tenant_admin),
    db=Depends(get_db),
    selector=Depends(get_selector),
):
    """Assignation manuelle (NEW) ou réassignation (IN_PROGRESS)"""
    try:
        item = await selector.assign_manually(
            db, user["tenant_id"], item_id, data.assigned_to, assigned_by=user.get("id")
        )
    except AgentNotAvailableError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TriageTransitionError as e:
        _raise_for_transition(e)
    return {"success": True, "item": item}


@router.post("/{item_id}/close")
async def close_item(
    item_id: str,
    data: TriageClose,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    try:
        item = await close_triage_item(db, user["tenant_id"], item_id, reason=data.reason, closed_by=user.get("id"))
    except TriageTransitionError as e:
        _raise_for_transition(e)
    return {"success": True, "item": item}


@router.post("/{item_id}/reopen")
async def reopen_item(
    item_id: str,
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
    selector=Depends(get_selector),
):
    """CLOSED -> NEW puis auto-assignation si activée"""
    try:
        item = await reopen_triage_item(db, user["tenant_id"], item_id)
    except TriageTransitionError as e:
        _raise_for_transition(e)

    result = await selector.assign_triage_item(db, user["tenant_id"], item_id, seed=item.get("conversation_id"))
    if result.success:
        item = await db.triage_items.find_one({"tenant_id": user["tenant_id"], "id": item_id}, {"_id": 0})
    return {"success": True, "item": item, "assignment_result": result.to_dict()}


# ==================== ASSIGNMENT CONFIG ====================

@router.get("/assignment/config")
async def read_config(user: dict = Depends(get_current_user), db=Depends(get_db)):
    config = await get_assignment_config(db, user["tenant_id"])
    return {"config": config_to_dict(config)}


@router.put("/assignment/config")
async def write_config(
    data: AssignmentConfigUpdate,
    user: dict = Depends(require_tenant_admin),
    db=Depends(get_db),
    selector=Depends(get_selector),
):
    """Modification admin, validée par AssignmentConfigUpdate"""
    config = await update_assignment_config(db, user["tenant_id"], data, updated_by=user.get("id"))
    selector.invalidate_scores(user["tenant_id"])
    return {"success": True, "config": config_to_dict(config)}


@router.get("/assignment/status")
async def assignment_status(
    user: dict = Depends(get_current_user),
    db=Depends(get_db),
    selector=Depends(get_selector),
):
    return await selector.assignment_status(db, user["tenant_id"])
