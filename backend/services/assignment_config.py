"""
LeadHub CRM - Service Assignment Config

Configuration d'assignation par tenant.
Collection: assignment_config (un doc par tenant_id)

- Créée paresseusement avec les defaults à la première lecture
- La lecture ne lève jamais: erreur store ou doc illisible -> defaults
- Modifiée uniquement par un admin tenant (route PUT)
"""

import logging
from math import ceil
from typing import Any, Dict, Optional

from pydantic import ValidationError
from pymongo.errors import PyMongoError

from config import now_iso
from models.assignment import AssignmentConfig, AssignmentConfigUpdate, AssignmentRules

logger = logging.getLogger("assignment_config")


def default_assignment_config(tenant_id: str) -> AssignmentConfig:
    return AssignmentConfig(tenant_id=tenant_id)


async def get_assignment_config(db, tenant_id: str) -> AssignmentConfig:
    """Retourne la config du tenant (défauts si absente ou illisible)"""
    try:
        doc = await db.assignment_config.find_one({"tenant_id": tenant_id}, {"_id": 0})
        if not doc:
            config = default_assignment_config(tenant_id)
            data = config.model_dump(mode="json")
            data["created_at"] = now_iso()
            data["updated_at"] = data["created_at"]
            await db.assignment_config.update_one(
                {"tenant_id": tenant_id},
                {"$setOnInsert": data},
                upsert=True,
            )
            logger.info(f"[ASSIGN] Default assignment config created for tenant {tenant_id}")
            return config
        return AssignmentConfig(**doc)
    except PyMongoError as e:
        logger.warning(f"[ASSIGN] assignment_config unavailable for tenant {tenant_id}, using defaults: {e}")
    except ValidationError as e:
        logger.warning(f"[ASSIGN] Invalid stored assignment_config for tenant {tenant_id}, using defaults: {e}")
    return default_assignment_config(tenant_id)


async def update_assignment_config(
    db,
    tenant_id: str,
    update: AssignmentConfigUpdate,
    updated_by: Optional[str] = None,
) -> AssignmentConfig:
    """
    Applique une modification admin.

    Les champs absents de la requête restent inchangés; `rules` est remplacé
    en bloc (déjà validé par AssignmentRules).
    """
    current = await get_assignment_config(db, tenant_id)
    merged = current.model_dump()
    merged.update(update.model_dump(exclude_unset=True))
    config = AssignmentConfig(**merged)

    data = config.model_dump(mode="json")
    data["updated_at"] = now_iso()
    data["updated_by"] = updated_by
    await db.assignment_config.update_one(
        {"tenant_id": tenant_id},
        {"$set": data, "$setOnInsert": {"created_at": data["updated_at"]}},
        upsert=True,
    )
    logger.info(
        f"[ASSIGN] Config updated for tenant {tenant_id} by {updated_by}: "
        f"strategy={config.strategy.value} auto_assign={config.auto_assign}"
    )
    return config


def resolve_caps(rules: AssignmentRules) -> Dict[str, Optional[int]]:
    """
    Bornes journalières effectives.

    max_per_day = day.max, sinon ceil(week.max / 7), sinon ceil(month.max / 30)
    (idem pour min_per_day).
    """
    caps = rules.caps

    def per_day(attr: str) -> Optional[int]:
        day = getattr(caps.day, attr)
        if day is not None:
            return day
        week = getattr(caps.week, attr)
        if week is not None:
            return ceil(week / 7)
        month = getattr(caps.month, attr)
        if month is not None:
            return ceil(month / 30)
        return None

    return {"min_per_day": per_day("min"), "max_per_day": per_day("max")}


def config_to_dict(config: AssignmentConfig) -> Dict[str, Any]:
    """Rendu JSON (routes)"""
    return config.model_dump(mode="json")
