"""
LeadHub CRM - API Backend
Ingestion, déduplication, triage et assignation des leads

Démarre avec:
    uvicorn server:app --host 0.0.0.0 --port 8001 --reload
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from config import client, db, CORS_ORIGINS
from services.assignment_engine import AssignmentSelector
from services.kpi_scorer import KpiScorer, KpiScoreCache

# Configuration logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("leadhub")

# Créer l'app
app = FastAPI(
    title="LeadHub CRM",
    description="Lead ingestion, deduplication, triage and assignment",
    version="1.0.0"
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Un selector par process: il porte le cache KPI
app.state.selector = AssignmentSelector(kpi_scorer=KpiScorer(cache=KpiScoreCache()))

# ==================== IMPORT DES ROUTES ====================

from routes import ingest, leads, triage

# Routes avec préfixe /api
app.include_router(ingest.router, prefix="/api")
app.include_router(leads.router, prefix="/api")
app.include_router(triage.router, prefix="/api")


# ==================== ROUTE RACINE ====================

@app.get("/")
async def root():
    return {
        "name": "LeadHub CRM API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs"
    }


# ==================== STARTUP ====================

async def ensure_indexes(database):
    """Index MongoDB (idempotent)"""
    await database.users.create_index("id", unique=True)
    await database.sessions.create_index("token")
    await database.sessions.create_index("expires_at")
    await database.leads.create_index([("tenant_id", 1), ("id", 1)], unique=True)
    await database.leads.create_index([("tenant_id", 1), ("phone", 1)])
    await database.leads.create_index([("tenant_id", 1), ("email", 1)])
    await database.leads.create_index([("tenant_id", 1), ("created_at", 1)])
    # Idempotence: un seul message par (tenant, channel, external_id)
    await database.lead_messages.create_index(
        [("tenant_id", 1), ("channel", 1), ("external_id", 1)],
        unique=True,
        partialFilterExpression={"external_id": {"$type": "string"}},
        name="uniq_message_external_id",
    )
    await database.lead_messages.create_index([("tenant_id", 1), ("lead_id", 1)])
    await database.lead_events.create_index([("tenant_id", 1), ("lead_id", 1), ("created_at", 1)])
    await database.triage_items.create_index([("tenant_id", 1), ("conversation_id", 1), ("created_at", -1)])
    await database.triage_items.create_index([("tenant_id", 1), ("status", 1), ("assigned_to", 1)])
    await database.assignment_config.create_index("tenant_id", unique=True)
    await database.agents.create_index([("tenant_id", 1), ("is_active", 1)])


@app.on_event("startup")
async def startup():
    logger.info("🚀 LeadHub CRM démarré")
    await ensure_indexes(db)
    logger.info("✅ Index MongoDB créés")


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
