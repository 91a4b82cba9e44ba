"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  LeadHub CRM - Modèle Lead                                                   ║
║                                                                              ║
║  RÈGLES FONDAMENTALES:                                                       ║
║  1. Un lead est toujours scopé par tenant_id                                 ║
║  2. heat et score ne baissent JAMAIS sur activité entrante                   ║
║  3. Un lead n'est jamais supprimé: fusion = status MERGED                    ║
║  4. lead_events est append-only (seul le lead_id peut changer, fusion)       ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from typing import Optional, List
from pydantic import BaseModel
from enum import Enum


class LeadStatus(str, Enum):
    NEW = "NEW"
    CONTACTED = "CONTACTED"
    QUALIFIED = "QUALIFIED"
    PROPOSAL = "PROPOSAL"
    NEGOTIATION = "NEGOTIATION"
    WON = "WON"
    LOST = "LOST"
    MERGED = "MERGED"


class LeadHeat(str, Enum):
    """Ordered: COLD < WARM < HOT < ON_FIRE"""
    COLD = "COLD"
    WARM = "WARM"
    HOT = "HOT"
    ON_FIRE = "ON_FIRE"


class LeadChannel(str, Enum):
    """Known inbound channels. Stored as upper-case strings, others are accepted."""
    WHATSAPP = "WHATSAPP"
    WEBSITE = "WEBSITE"
    INDIAMART = "INDIAMART"
    JUSTDIAL = "JUSTDIAL"
    EMAIL = "EMAIL"


class MessageDirection(str, Enum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class LeadEventType(str, Enum):
    LEAD_CREATED = "LEAD_CREATED"
    LEAD_UPDATED = "LEAD_UPDATED"
    HEAT_CHANGED = "HEAT_CHANGED"
    LEAD_ASSIGNED = "LEAD_ASSIGNED"
    LEADS_MERGED = "LEADS_MERGED"


HEAT_RANK = {
    LeadHeat.COLD.value: 1,
    LeadHeat.WARM.value: 2,
    LeadHeat.HOT.value: 3,
    LeadHeat.ON_FIRE.value: 4,
}

# Statuts hors pipeline actif
INACTIVE_LEAD_STATUSES = [LeadStatus.MERGED.value]


def heat_rank(heat: Optional[str]) -> int:
    """Unknown or missing heat ranks as COLD"""
    return HEAT_RANK.get(str(heat or LeadHeat.COLD.value).upper(), 1)


def escalate_heat(current: Optional[str], candidate: Optional[str]) -> str:
    """Return the hotter of the two heat levels (never lowers)."""
    current_norm = str(current or LeadHeat.COLD.value).upper()
    candidate_norm = str(candidate or LeadHeat.COLD.value).upper()
    if current_norm not in HEAT_RANK:
        current_norm = LeadHeat.COLD.value
    if candidate_norm not in HEAT_RANK:
        candidate_norm = LeadHeat.COLD.value
    return candidate_norm if HEAT_RANK[candidate_norm] > HEAT_RANK[current_norm] else current_norm


class LeadFindDuplicates(BaseModel):
    """Recherche de doublons (phone OU email)"""
    phone: Optional[str] = None
    email: Optional[str] = None
    excludeLeadId: Optional[str] = None


class LeadMergeRequest(BaseModel):
    """Fusion manuelle: un lead principal + un ou plusieurs secondaires"""
    primaryLeadId: str
    secondaryLeadIds: List[str]
