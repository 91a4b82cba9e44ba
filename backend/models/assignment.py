"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  LeadHub CRM - Assignment config (une ligne par tenant)                      ║
║                                                                              ║
║  Strategies:                                                                 ║
║  - LEAST_ACTIVE: plus petite charge ouverte, tie-break hash stable           ║
║  - ROUND_ROBIN: en réalité un picker pondéré (score/charge/capacité)         ║
║  - AUTO_TRAIN: tirage aléatoire pondéré par la performance commerciale       ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class AssignmentStrategy(str, Enum):
    LEAST_ACTIVE = "LEAST_ACTIVE"
    ROUND_ROBIN = "ROUND_ROBIN"
    AUTO_TRAIN = "AUTO_TRAIN"


VALID_STRATEGIES = [s.value for s in AssignmentStrategy]


def _normalize_strategy(value):
    if isinstance(value, str):
        value = value.strip().upper()
        if value not in VALID_STRATEGIES:
            raise ValueError(f"Invalid strategy: {value}. Valid: {VALID_STRATEGIES}")
    return value


class CapWindow(BaseModel):
    """Bornes min/max d'assignations sur une fenêtre (jour, semaine, mois)"""
    min: Optional[int] = Field(default=None, ge=0)
    max: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_bounds(self):
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"cap min ({self.min}) greater than max ({self.max})")
        return self


class AssignmentCaps(BaseModel):
    day: CapWindow = Field(default_factory=CapWindow)
    week: CapWindow = Field(default_factory=CapWindow)
    month: CapWindow = Field(default_factory=CapWindow)


class AutoTrainWeights(BaseModel):
    conversion: float = Field(default=0.5, ge=0)
    repeat: float = Field(default=0.3, ge=0)
    revenue: float = Field(default=0.2, ge=0)


class AssignmentRules(BaseModel):
    """Tunables propres aux strategies (ex custom_rules JSON)"""
    model_config = ConfigDict(extra="ignore")

    caps: AssignmentCaps = Field(default_factory=AssignmentCaps)
    weights: AutoTrainWeights = Field(default_factory=AutoTrainWeights)
    window_days: int = Field(default=30, ge=1, le=365)


class AssignmentConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tenant_id: str
    strategy: AssignmentStrategy = AssignmentStrategy.LEAST_ACTIVE
    auto_assign: bool = True
    consider_capacity: bool = True
    consider_score: bool = False
    rules: AssignmentRules = Field(default_factory=AssignmentRules)

    @field_validator("strategy", mode="before")
    @classmethod
    def normalize_strategy(cls, v):
        return _normalize_strategy(v)


class AssignmentConfigUpdate(BaseModel):
    """Modification par un admin tenant"""
    model_config = ConfigDict(extra="forbid")

    strategy: Optional[AssignmentStrategy] = None
    auto_assign: Optional[bool] = None
    consider_capacity: Optional[bool] = None
    consider_score: Optional[bool] = None
    rules: Optional[AssignmentRules] = None

    @field_validator("strategy", mode="before")
    @classmethod
    def normalize_strategy(cls, v):
        return _normalize_strategy(v)
