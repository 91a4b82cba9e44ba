"""
LeadHub CRM - Canonical inbound event

Every channel payload (chat provider, marketplace webhook, web form, email)
is mapped to this shape by services.inbound_normalizer before ingestion.
"""

from typing import Any, Optional
from pydantic import BaseModel, ConfigDict


class InboundLead(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class InboundMessage(BaseModel):
    body: Optional[str] = None
    external_id: Optional[str] = None
    raw_payload: Any = None


class InboundEvent(BaseModel):
    source: str
    channel: str
    lead: InboundLead
    message: InboundMessage
    triage_reason: Optional[str] = None


class IngestPayload(BaseModel):
    """
    Corps brut des endpoints d'ingestion.
    Champs provider-specific acceptés tels quels (extra="allow").
    """
    model_config = ConfigDict(extra="allow")

    source: Optional[str] = None
    channel: Optional[str] = None
    tenantId: Optional[str] = None
