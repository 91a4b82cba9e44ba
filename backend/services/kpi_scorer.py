"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  LeadHub CRM - KPI Scorer                                                    ║
║                                                                              ║
║  Score 0-100 par agent, fenêtre glissante:                                   ║
║    0.45 wins (pipeline items en stage gagné, attribués via triage)           ║
║    0.25 vitesse de clôture (inverse du temps moyen de clôture)               ║
║    0.20 activité (items triage touchés récemment)                            ║
║    0.10 charge ouverte (inverse)                                             ║
║  Chaque signal est normalisé min-max sur les agents du tenant.               ║
║  Donnée manquante ou signal plat -> 0.5 (neutre, ne pénalise pas un nouveau) ║
║                                                                              ║
║  Cache mémoire par tenant, TTL fixe, recalcul paresseux à l'expiration.      ║
║  Stale accepté: l'équité se dégrade doucement, jamais incorrectement.        ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from pymongo.errors import PyMongoError

from config import (
    KPI_LOOKBACK_DAYS_ACTIVITY,
    KPI_LOOKBACK_DAYS_WINS,
    KPI_SCORE_CACHE_SECONDS,
    days_ago_iso,
    parse_iso,
)

logger = logging.getLogger("kpi_scorer")

NEUTRAL = 0.5

KPI_WEIGHTS = {
    "wins": 0.45,
    "close_speed": 0.25,
    "activity": 0.20,
    "load": 0.10,
}


def normalize_min_max(values: Dict[str, Optional[float]]) -> Dict[str, float]:
    """
    Min-max vers [0, 1].

    None -> 0.5; toutes les valeurs connues égales -> 0.5 pour tous.
    """
    known = [v for v in values.values() if v is not None]
    if not known:
        return {key: NEUTRAL for key in values}

    low, high = min(known), max(known)
    spread = high - low
    normalized = {}
    for key, value in values.items():
        if value is None or spread <= 0:
            normalized[key] = NEUTRAL
        else:
            normalized[key] = max(0.0, min(1.0, (value - low) / spread))
    return normalized


# ════════════════════════════════════════════════════════════════════════════
# CACHE
# ════════════════════════════════════════════════════════════════════════════

class KpiScoreCache:
    """Scores par tenant: {tenant_id: (computed_at, scores)}"""

    def __init__(self, ttl_seconds: float = KPI_SCORE_CACHE_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Any] = {}

    def get(self, tenant_id: str) -> Optional[Dict[str, int]]:
        entry = self._entries.get(tenant_id)
        if entry is None:
            return None
        computed_at, scores = entry
        if self._clock() - computed_at >= self.ttl_seconds:
            del self._entries[tenant_id]
            return None
        return scores

    def set(self, tenant_id: str, scores: Dict[str, int]):
        self._entries[tenant_id] = (self._clock(), dict(scores))

    def invalidate(self, tenant_id: Optional[str] = None):
        """Un tenant, ou tout le cache si tenant_id est None"""
        if tenant_id is None:
            self._entries.clear()
        else:
            self._entries.pop(tenant_id, None)


# ════════════════════════════════════════════════════════════════════════════
# SCORER
# ════════════════════════════════════════════════════════════════════════════

class KpiScorer:

    def __init__(
        self,
        cache: Optional[KpiScoreCache] = None,
        wins_lookback_days: int = KPI_LOOKBACK_DAYS_WINS,
        activity_lookback_days: int = KPI_LOOKBACK_DAYS_ACTIVITY,
    ):
        self.cache = cache if cache is not None else KpiScoreCache()
        self.wins_lookback_days = wins_lookback_days
        self.activity_lookback_days = activity_lookback_days

    async def compute_scores(
        self,
        db,
        tenant_id: str,
        agent_ids: Iterable[str],
        open_load: Optional[Dict[str, int]] = None,
    ) -> Dict[str, int]:
        """Scores 0-100 des agents (servis depuis le cache tant que le TTL court)"""
        cached = self.cache.get(tenant_id)
        if cached is not None:
            return cached

        agent_ids = [str(a) for a in agent_ids]
        if not agent_ids:
            return {}

        wins = await self._wins_by_agent(db, tenant_id, agent_ids)
        activity, avg_close_hours = await self._activity_by_agent(db, tenant_id, agent_ids)
        open_load = open_load or {}

        wins_norm = normalize_min_max(wins)
        activity_norm = normalize_min_max(activity)
        # Plus rapide / moins chargé = mieux
        close_norm = normalize_min_max({
            a: (-avg_close_hours[a] if avg_close_hours.get(a) is not None else None) for a in agent_ids
        })
        load_norm = normalize_min_max({a: -float(open_load.get(a, 0)) for a in agent_ids})

        scores = {}
        for agent_id in agent_ids:
            composite = (
                KPI_WEIGHTS["wins"] * wins_norm[agent_id]
                + KPI_WEIGHTS["close_speed"] * close_norm[agent_id]
                + KPI_WEIGHTS["activity"] * activity_norm[agent_id]
                + KPI_WEIGHTS["load"] * load_norm[agent_id]
            )
            scores[agent_id] = int(round(100 * max(0.0, min(1.0, composite))))

        self.cache.set(tenant_id, scores)
        logger.info(f"[KPI] Scores computed for tenant {tenant_id}: {len(scores)} agents")
        return scores

    async def _wins_by_agent(self, db, tenant_id: str, agent_ids: List[str]) -> Dict[str, Optional[float]]:
        """Deals gagnés: stage is_won -> conversation -> assignee triage"""
        wins: Dict[str, Optional[float]] = {a: 0 for a in agent_ids}
        since = days_ago_iso(self.wins_lookback_days)
        try:
            won_stages = await db.pipeline_stages.find(
                {"tenant_id": tenant_id, "is_won": True}, {"_id": 0, "id": 1}
            ).to_list(50)
            if not won_stages:
                return wins

            won_items = await db.pipeline_items.find(
                {
                    "tenant_id": tenant_id,
                    "stage_id": {"$in": [s["id"] for s in won_stages]},
                    "updated_at": {"$gte": since},
                },
                {"_id": 0, "conversation_id": 1},
            ).sort("updated_at", -1).to_list(300)
            conversation_ids = list({i["conversation_id"] for i in won_items if i.get("conversation_id")})
            if not conversation_ids:
                return wins

            triage_rows = await db.triage_items.find(
                {
                    "tenant_id": tenant_id,
                    "conversation_id": {"$in": conversation_ids},
                    "assigned_to": {"$ne": None},
                },
                {"_id": 0, "assigned_to": 1},
            ).to_list(1000)
            for row in triage_rows:
                agent_id = row.get("assigned_to")
                if agent_id in wins:
                    wins[agent_id] += 1
        except PyMongoError as e:
            logger.warning(f"[KPI] Wins unavailable for tenant {tenant_id}: {e}")
        return wins

    async def _activity_by_agent(self, db, tenant_id: str, agent_ids: List[str]):
        """Touches récentes + temps moyen de clôture (heures)"""
        activity: Dict[str, Optional[float]] = {a: 0 for a in agent_ids}
        close_sums = {a: [0.0, 0] for a in agent_ids}
        since = days_ago_iso(self.activity_lookback_days)
        try:
            rows = await db.triage_items.find(
                {
                    "tenant_id": tenant_id,
                    "assigned_to": {"$ne": None},
                    "updated_at": {"$gte": since},
                },
                {"_id": 0, "assigned_to": 1, "status": 1, "created_at": 1, "closed_at": 1},
            ).to_list(2000)
            for row in rows:
                agent_id = row.get("assigned_to")
                if agent_id not in activity:
                    continue
                activity[agent_id] += 1

                if row.get("status") != "CLOSED":
                    continue
                created = parse_iso(row.get("created_at"))
                closed = parse_iso(row.get("closed_at"))
                if created and closed and closed >= created:
                    close_sums[agent_id][0] += (closed - created).total_seconds() / 3600
                    close_sums[agent_id][1] += 1
        except PyMongoError as e:
            logger.warning(f"[KPI] Activity unavailable for tenant {tenant_id}: {e}")

        avg_close_hours = {
            a: (total / count if count else None) for a, (total, count) in close_sums.items()
        }
        return activity, avg_close_hours


# ════════════════════════════════════════════════════════════════════════════
# SALES PERFORMANCE (entrées AUTO_TRAIN)
# ════════════════════════════════════════════════════════════════════════════

def _amount(value: Any) -> float:
    """Montant de commande; illisible ('N/A', dict, ...) -> 0"""
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


async def compute_sales_performance(db, tenant_id: str, agent_ids: Iterable[str], window_days: int = 30) -> Dict[str, Dict[str, float]]:
    """
    Visites, commandes, CA et clients récurrents par agent sur window_days.

    conversion_rate = orders / visits (0 sans visite)
    repeat_rate     = clients avec >= 2 commandes / orders (0 sans commande)
    """
    stats = {
        str(a): {"visits": 0, "orders": 0, "revenue": 0.0, "repeat_customers": 0}
        for a in agent_ids
    }
    since = days_ago_iso(window_days)

    visits = await db.visits.find(
        {"tenant_id": tenant_id, "created_at": {"$gte": since}},
        {"_id": 0, "agent_id": 1},
    ).to_list(10000)
    for visit in visits:
        stat = stats.get(visit.get("agent_id"))
        if stat:
            stat["visits"] += 1

    orders = await db.orders.find(
        {"tenant_id": tenant_id, "created_at": {"$gte": since}},
        {"_id": 0, "agent_id": 1, "customer_id": 1, "actual_amount": 1},
    ).to_list(10000)
    orders_per_customer: Dict[Any, int] = {}
    for order in orders:
        agent_id = order.get("agent_id")
        stat = stats.get(agent_id)
        if not stat:
            continue
        stat["orders"] += 1
        stat["revenue"] += _amount(order.get("actual_amount"))
        key = (agent_id, order.get("customer_id"))
        orders_per_customer[key] = orders_per_customer.get(key, 0) + 1

    for (agent_id, _customer), count in orders_per_customer.items():
        if count >= 2:
            stats[agent_id]["repeat_customers"] += 1

    for stat in stats.values():
        stat["conversion_rate"] = stat["orders"] / stat["visits"] if stat["visits"] else 0.0
        stat["repeat_rate"] = stat["repeat_customers"] / stat["orders"] if stat["orders"] else 0.0
    return stats
