"""
LeadHub CRM - Auth dependencies
Bearer session -> user (tenant_id, role), webhook shared secret.
"""

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

import config
from config import now_iso
from routes.deps import get_db

security = HTTPBearer(auto_error=False)

TENANT_ADMIN_ROLES = ("OWNER", "ADMIN", "MANAGER")


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db=Depends(get_db),
):
    """Récupère l'utilisateur connecté depuis le token."""
    if not credentials:
        raise HTTPException(status_code=401, detail="Non authentifié")

    session = await db.sessions.find_one({
        "token": credentials.credentials,
        "expires_at": {"$gt": now_iso()}
    })
    if not session:
        raise HTTPException(status_code=401, detail="Session expirée")

    user = await db.users.find_one(
        {"id": session["user_id"]},
        {"_id": 0, "password": 0}
    )
    if not user:
        raise HTTPException(status_code=401, detail="Utilisateur non trouvé")

    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Compte désactivé")

    if not user.get("tenant_id"):
        raise HTTPException(status_code=403, detail="Aucun tenant associé")

    return user


async def require_tenant_admin(user: dict = Depends(get_current_user)):
    """OWNER / ADMIN / MANAGER du tenant."""
    if str(user.get("role", "")).upper() not in TENANT_ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Accès admin requis")
    return user


async def verify_webhook_secret(x_webhook_secret: Optional[str] = Header(default=None)):
    """Header x-webhook-secret == CRM_WEBHOOK_SECRET"""
    expected = config.CRM_WEBHOOK_SECRET
    if not expected:
        raise HTTPException(status_code=500, detail="server_not_configured")
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected):
        raise HTTPException(status_code=401, detail="invalid_webhook_secret")
    return True
