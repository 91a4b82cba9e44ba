"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  LeadHub CRM - Models Package                                                ║
║                                                                              ║
║  Exports tous les modèles pour import facile                                 ║
║  from models import LeadStatus, InboundEvent, AssignmentConfig, etc.         ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

# Lead
from .lead import (
    LeadStatus,
    LeadHeat,
    LeadChannel,
    MessageDirection,
    LeadEventType,
    HEAT_RANK,
    INACTIVE_LEAD_STATUSES,
    heat_rank,
    escalate_heat,
    LeadFindDuplicates,
    LeadMergeRequest,
)

# Inbound (événement canonique)
from .inbound import (
    InboundLead,
    InboundMessage,
    InboundEvent,
    IngestPayload,
)

# Triage
from .triage import (
    TriageStatus,
    OPEN_TRIAGE_STATUSES,
    TriageAssign,
    TriageClose,
)

# Assignment
from .assignment import (
    AssignmentStrategy,
    VALID_STRATEGIES,
    CapWindow,
    AssignmentCaps,
    AutoTrainWeights,
    AssignmentRules,
    AssignmentConfig,
    AssignmentConfigUpdate,
)

__all__ = [
    # Lead
    "LeadStatus",
    "LeadHeat",
    "LeadChannel",
    "MessageDirection",
    "LeadEventType",
    "HEAT_RANK",
    "INACTIVE_LEAD_STATUSES",
    "heat_rank",
    "escalate_heat",
    "LeadFindDuplicates",
    "LeadMergeRequest",
    # Inbound
    "InboundLead",
    "InboundMessage",
    "InboundEvent",
    "IngestPayload",
    # Triage
    "TriageStatus",
    "OPEN_TRIAGE_STATUSES",
    "TriageAssign",
    "TriageClose",
    # Assignment
    "AssignmentStrategy",
    "VALID_STRATEGIES",
    "CapWindow",
    "AssignmentCaps",
    "AutoTrainWeights",
    "AssignmentRules",
    "AssignmentConfig",
    "AssignmentConfigUpdate",
]
