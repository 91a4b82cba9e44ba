"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  LeadHub CRM - Moteur d'Assignation                                          ║
║                                                                              ║
║  Choisit UN agent pour un triage item ouvert, ou aucun.                      ║
║                                                                              ║
║  STRATÉGIES:                                                                 ║
║  - LEAST_ACTIVE: charge ouverte minimale, tie-break hash(seed:agent)         ║
║  - ROUND_ROBIN:  picker pondéré (score / charge / capacité + jitter stable)  ║
║  - AUTO_TRAIN:   tirage aléatoire pondéré par la performance commerciale,    ║
║                  fallback sur le picker pondéré si aucun agent éligible      ║
║                                                                              ║
║  RÈGLES:                                                                     ║
║  - Un agent à capacité (charge >= capacity) n'est JAMAIS choisi              ║
║  - "Aucun agent" n'est pas une erreur: l'item reste NEW dans la queue        ║
║  - L'assignation ne lève jamais vers l'ingestion                             ║
║  - Écriture conditionnelle: un item déjà pris n'est pas réassigné            ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
import random
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

from config import auto_assign_globally_disabled, now_iso, start_of_day_iso
from models.assignment import AssignmentConfig, AssignmentRules, AssignmentStrategy
from models.lead import LeadEventType
from models.triage import TriageStatus
from services.assignment_config import get_assignment_config, resolve_caps
from services.event_logger import log_lead_event
from services.kpi_scorer import KpiScorer, compute_sales_performance, normalize_min_max
from services.triage_queue import (
    TriageTransitionError,
    claim_triage_item,
    compute_open_load,
    get_triage_item,
    reassign_triage_item,
)

logger = logging.getLogger("assignment_engine")

AUTO_TRAIN_MIN_WEIGHT = 0.05
AUTO_TRAIN_FAIRNESS_BOOST = 0.5


class AgentNotAvailableError(ValueError):
    """Agent inconnu ou inactif pour ce tenant"""
    pass


class AssignmentResult:
    """Resultat d'une tentative d'assignation"""

    def __init__(
        self,
        success: bool,
        agent: Optional[Dict[str, Any]] = None,
        strategy: Optional[str] = None,
        reason: str = "",
        triage_id: Optional[str] = None,
    ):
        self.success = success
        self.agent = agent
        self.strategy = strategy
        self.reason = reason
        self.triage_id = triage_id

    @property
    def agent_id(self) -> Optional[str]:
        return self.agent.get("id") if self.agent else None

    def to_dict(self) -> Dict[str, Any]:
        assigned = None
        if self.agent:
            assigned = {"id": self.agent.get("id"), "name": self.agent.get("name")}
        return {
            "success": self.success,
            "assigned_agent": assigned,
            "strategy": self.strategy,
            "reason": self.reason,
            "triage_id": self.triage_id,
        }


# ════════════════════════════════════════════════════════════════════════════
# PURE PICKERS
# ════════════════════════════════════════════════════════════════════════════

def stable_hash(value: str) -> int:
    """FNV-1a 32 bits, tie-break reproductible (pas crypto)"""
    h = 2166136261
    for ch in value:
        h ^= ord(ch)
        h = (h * 16777619) & 0xFFFFFFFF
    return h


def _capacity(agent: Dict[str, Any]) -> int:
    try:
        return int(agent.get("capacity") or 0)
    except (TypeError, ValueError):
        return 0


def is_at_capacity(agent: Dict[str, Any], load: int, config: AssignmentConfig) -> bool:
    capacity = _capacity(agent)
    return config.consider_capacity and capacity > 0 and load >= capacity


def pick_least_active(
    agents: List[Dict[str, Any]],
    load_by: Dict[str, int],
    config: AssignmentConfig,
    seed: str,
) -> Optional[Dict[str, Any]]:
    best = None
    best_load = None
    for agent in agents:
        agent_id = str(agent["id"])
        load = load_by.get(agent_id, 0)
        if is_at_capacity(agent, load, config):
            continue

        if best is None or load < best_load:
            best, best_load = agent, load
        elif load == best_load:
            if stable_hash(f"{seed}:{agent_id}") > stable_hash(f"{seed}:{best['id']}"):
                best = agent
    return best


def agent_weight(agent: Dict[str, Any], load: int, config: AssignmentConfig, seed: str) -> float:
    capacity = _capacity(agent)
    if config.consider_score:
        score_norm = max(0.0, min(1.0, float(agent.get("score") or 0) / 100))
    else:
        score_norm = 0.5
    load_norm = 1 / (1 + load)
    cap_norm = max(0.0, min(1.0, 1 - load / capacity)) if capacity > 0 else 0.5

    base = (0.65 if config.consider_score else 0.35) * score_norm + 0.30 * load_norm + 0.05 * cap_norm
    jitter = (stable_hash(f"{seed}:{agent['id']}") % 1000) / 1_000_000
    return base + jitter


def pick_weighted(
    agents: List[Dict[str, Any]],
    load_by: Dict[str, int],
    config: AssignmentConfig,
    seed: str,
) -> Optional[Dict[str, Any]]:
    """ROUND_ROBIN: argmax d'un poids, pas une rotation"""
    best = None
    best_weight = None
    for agent in agents:
        load = load_by.get(str(agent["id"]), 0)
        if is_at_capacity(agent, load, config):
            continue
        weight = agent_weight(agent, load, config, seed)
        if best is None or weight > best_weight:
            best, best_weight = agent, weight
    return best


def pick_auto_train(
    agents: List[Dict[str, Any]],
    load_by: Dict[str, int],
    config: AssignmentConfig,
    performance: Dict[str, Dict[str, float]],
    daily_counts: Dict[str, int],
    rng: random.Random,
) -> Optional[Dict[str, Any]]:
    """
    Tirage proportionnel à:
        w.conversion * conversion + w.repeat * repeat + w.revenue * revenue
    (features normalisées min-max entre agents), +0.5 sous le plancher
    journalier, exclu au plafond journalier, poids minimum 0.05.
    """
    rules: AssignmentRules = config.rules
    caps = resolve_caps(rules)
    min_per_day, max_per_day = caps["min_per_day"], caps["max_per_day"]
    weights = rules.weights

    agent_ids = [str(a["id"]) for a in agents]
    empty = {"conversion_rate": 0.0, "repeat_rate": 0.0, "revenue": 0.0}
    conversion = normalize_min_max({a: performance.get(a, empty)["conversion_rate"] for a in agent_ids})
    repeat = normalize_min_max({a: performance.get(a, empty)["repeat_rate"] for a in agent_ids})
    revenue = normalize_min_max({a: performance.get(a, empty)["revenue"] for a in agent_ids})

    candidates = []
    for agent in agents:
        agent_id = str(agent["id"])
        assigned_today = daily_counts.get(agent_id, 0)
        if max_per_day and assigned_today >= max_per_day:
            continue
        if is_at_capacity(agent, load_by.get(agent_id, 0), config):
            continue

        weight = (
            weights.conversion * conversion[agent_id]
            + weights.repeat * repeat[agent_id]
            + weights.revenue * revenue[agent_id]
        )
        if min_per_day and assigned_today < min_per_day:
            weight += AUTO_TRAIN_FAIRNESS_BOOST
        candidates.append((agent, max(AUTO_TRAIN_MIN_WEIGHT, weight)))

    if not candidates:
        return None

    pick = rng.random() * sum(w for _, w in candidates)
    for agent, weight in candidates:
        pick -= weight
        if pick <= 0:
            return agent
    return candidates[-1][0]


# ════════════════════════════════════════════════════════════════════════════
# STORE READS
# ════════════════════════════════════════════════════════════════════════════

async def list_active_agents(db, tenant_id: str) -> List[Dict[str, Any]]:
    return await db.agents.find(
        {"tenant_id": tenant_id, "is_active": True},
        {"_id": 0},
    ).sort("created_at", 1).to_list(500)


async def get_daily_assignment_counts(db, tenant_id: str) -> Dict[str, int]:
    """Leads créés aujourd'hui (UTC) par agent assigné"""
    pipeline = [
        {"$match": {
            "tenant_id": tenant_id,
            "created_at": {"$gte": start_of_day_iso()},
            "assigned_user_id": {"$ne": None},
        }},
        {"$group": {"_id": "$assigned_user_id", "count": {"$sum": 1}}},
    ]
    rows = await db.leads.aggregate(pipeline).to_list(1000)
    return {row["_id"]: row["count"] for row in rows if row.get("_id")}


# ════════════════════════════════════════════════════════════════════════════
# SELECTOR
# ════════════════════════════════════════════════════════════════════════════

class AssignmentSelector:
    """
    Point d'entrée de l'assignation.

    Possède le KpiScorer (et donc le cache KPI) et la source d'aléa
    d'AUTO_TRAIN; une instance par process (app.state.selector).
    """

    def __init__(self, kpi_scorer: Optional[KpiScorer] = None, rng: Optional[random.Random] = None):
        self.kpi_scorer = kpi_scorer if kpi_scorer is not None else KpiScorer()
        self.rng = rng if rng is not None else random.Random()

    def invalidate_scores(self, tenant_id: Optional[str] = None):
        self.kpi_scorer.cache.invalidate(tenant_id)

    async def select(
        self,
        db,
        tenant_id: str,
        seed: str,
        config: Optional[AssignmentConfig] = None,
    ) -> AssignmentResult:
        """Choix sans écriture. success=False + reason si personne n'est éligible."""
        if config is None:
            config = await get_assignment_config(db, tenant_id)
        strategy = config.strategy.value

        agents = await list_active_agents(db, tenant_id)
        if not agents:
            return AssignmentResult(False, strategy=strategy, reason="no_agents")

        load_by = await compute_open_load(db, tenant_id)

        if config.consider_score or config.strategy == AssignmentStrategy.AUTO_TRAIN:
            scores = await self.kpi_scorer.compute_scores(db, tenant_id, [a["id"] for a in agents], load_by)
            for agent in agents:
                if agent["id"] in scores:
                    agent["score"] = scores[agent["id"]]

        picked = None
        if config.strategy == AssignmentStrategy.AUTO_TRAIN:
            performance = await compute_sales_performance(
                db, tenant_id, [a["id"] for a in agents], config.rules.window_days
            )
            daily_counts = await get_daily_assignment_counts(db, tenant_id)
            picked = pick_auto_train(agents, load_by, config, performance, daily_counts, self.rng)
            if picked is None:
                logger.info(f"[ASSIGN] AUTO_TRAIN found no candidate for tenant {tenant_id}, weighted fallback")
                strategy = AssignmentStrategy.ROUND_ROBIN.value
                picked = pick_weighted(agents, load_by, config, seed)
        elif config.strategy == AssignmentStrategy.ROUND_ROBIN:
            picked = pick_weighted(agents, load_by, config, seed)
        else:
            picked = pick_least_active(agents, load_by, config, seed)

        if picked is None:
            return AssignmentResult(False, strategy=strategy, reason="all_agents_at_capacity")
        return AssignmentResult(True, agent=picked, strategy=strategy)

    async def assign_triage_item(
        self,
        db,
        tenant_id: str,
        triage_id: str,
        seed: Optional[str] = None,
        assigned_by: str = "AUTO_ASSIGN",
    ) -> AssignmentResult:
        """
        Auto-assignation d'un item NEW.

        Ne lève jamais: erreur store -> reason="store_error", toute autre
        exception -> reason="error" (loggée avec la trace).
        """
        if auto_assign_globally_disabled():
            return AssignmentResult(False, reason="disabled_env", triage_id=triage_id)

        try:
            config = await get_assignment_config(db, tenant_id)
            if not config.auto_assign:
                return AssignmentResult(False, strategy=config.strategy.value,
                                        reason="auto_assign_disabled", triage_id=triage_id)

            item = await db.triage_items.find_one({"tenant_id": tenant_id, "id": triage_id}, {"_id": 0})
            if not item:
                return AssignmentResult(False, reason="not_found", triage_id=triage_id)
            if item.get("assigned_to") or item.get("status") != TriageStatus.NEW.value:
                return AssignmentResult(False, reason="already_assigned", triage_id=triage_id)

            result = await self.select(db, tenant_id, seed or triage_id, config)
            result.triage_id = triage_id
            if not result.success:
                logger.info(f"[ASSIGN] No assignee for triage {triage_id} ({result.reason}), left in queue")
                return result

            return await apply_assignment(db, tenant_id, item, result, assigned_by)
        except PyMongoError as e:
            logger.error(f"[ASSIGN] Auto-assign failed for triage {triage_id}: {e}")
            return AssignmentResult(False, reason="store_error", triage_id=triage_id)
        except Exception as e:
            logger.error(f"[ASSIGN] Unexpected error assigning triage {triage_id}: {e}", exc_info=True)
            return AssignmentResult(False, reason="error", triage_id=triage_id)

    async def assign_manually(
        self,
        db,
        tenant_id: str,
        triage_id: str,
        agent_id: str,
        assigned_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Assignation (NEW) ou réassignation (IN_PROGRESS) par un humain"""
        agent = await db.agents.find_one(
            {"tenant_id": tenant_id, "id": agent_id, "is_active": True}, {"_id": 0}
        )
        if not agent:
            raise AgentNotAvailableError(f"Agent {agent_id} not found or inactive")

        item = await get_triage_item(db, tenant_id, triage_id)
        if item.get("status") == TriageStatus.IN_PROGRESS.value:
            updated = await reassign_triage_item(db, tenant_id, triage_id, agent_id)
        elif item.get("status") == TriageStatus.NEW.value:
            updated = await claim_triage_item(
                db, tenant_id, triage_id, agent_id, expected_assigned_to=item.get("assigned_to")
            )
            if not updated:
                raise TriageTransitionError(f"Triage item {triage_id} was assigned concurrently")
        else:
            raise TriageTransitionError(
                f"Triage item {triage_id} is {item.get('status')}, reopen it before assigning"
            )

        await _record_lead_owner(db, tenant_id, item, agent_id, assigned_by or "MANUAL", "MANUAL")
        self.invalidate_scores(tenant_id)
        return updated

    async def assignment_status(self, db, tenant_id: str) -> Dict[str, Any]:
        config = await get_assignment_config(db, tenant_id)
        try:
            agents = await list_active_agents(db, tenant_id)
        except PyMongoError as e:
            logger.warning(f"[ASSIGN] Agents unavailable for tenant {tenant_id}: {e}")
            agents = []
        globally_disabled = auto_assign_globally_disabled()
        return {
            "enabled": config.auto_assign and bool(agents) and not globally_disabled,
            "globally_disabled": globally_disabled,
            "active_agents": len(agents),
            "config": config.model_dump(mode="json"),
        }


async def apply_assignment(
    db,
    tenant_id: str,
    item: Dict[str, Any],
    result: AssignmentResult,
    assigned_by: str,
) -> AssignmentResult:
    """NEW -> IN_PROGRESS conditionnel, puis propriétaire du lead + audit"""
    claimed = await claim_triage_item(db, tenant_id, item["id"], result.agent_id)
    if not claimed:
        logger.info(f"[ASSIGN] Triage {item['id']} taken concurrently, skipping")
        return AssignmentResult(False, strategy=result.strategy, reason="already_assigned", triage_id=item["id"])

    await _record_lead_owner(db, tenant_id, item, result.agent_id, assigned_by, result.strategy)
    logger.info(
        f"[ASSIGN] Triage {item['id']} -> agent {result.agent_id} "
        f"(strategy={result.strategy}, by={assigned_by})"
    )
    return result


async def _record_lead_owner(db, tenant_id: str, item: Dict[str, Any], agent_id: str, assigned_by: str, strategy: str):
    lead_id = item.get("lead_id") or item.get("conversation_id")
    if not lead_id:
        return
    await db.leads.update_one(
        {"tenant_id": tenant_id, "id": lead_id},
        {"$set": {"assigned_user_id": agent_id, "updated_at": now_iso()}},
    )
    await log_lead_event(
        db, tenant_id, lead_id, LeadEventType.LEAD_ASSIGNED,
        {"assigned_to": agent_id, "assigned_by": assigned_by, "strategy": strategy,
         "triage_id": item.get("id")},
    )
