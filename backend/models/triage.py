"""
LeadHub CRM - Triage queue models
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel


class TriageStatus(str, Enum):
    NEW = "NEW"                  # jamais touché par un agent
    IN_PROGRESS = "IN_PROGRESS"  # assigné / pris en charge
    CLOSED = "CLOSED"            # résolu


OPEN_TRIAGE_STATUSES = [TriageStatus.NEW.value, TriageStatus.IN_PROGRESS.value]


class TriageAssign(BaseModel):
    assigned_to: str


class TriageClose(BaseModel):
    reason: Optional[str] = None
