"""
Configuration et utilitaires partagés
LeadHub CRM - environment, Mongo client, shared helpers
"""

import os
import uuid
from datetime import datetime, timezone, timedelta
from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
from pathlib import Path

# Charger .env
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'leadhub_crm')

client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]

# Webhook ingest (shared secret, header x-webhook-secret)
CRM_WEBHOOK_SECRET = os.environ.get('CRM_WEBHOOK_SECRET') or os.environ.get('WEBHOOK_SECRET')

CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')

# Triage / assignment tunables
KPI_SCORE_CACHE_SECONDS = float(os.environ.get('TRIAGE_KPI_SCORE_CACHE_SECONDS', 5 * 60))
KPI_LOOKBACK_DAYS_WINS = int(os.environ.get('TRIAGE_KPI_WINS_LOOKBACK_DAYS', 45))
KPI_LOOKBACK_DAYS_ACTIVITY = int(os.environ.get('TRIAGE_KPI_ACTIVITY_LOOKBACK_DAYS', 14))


def auto_assign_globally_disabled() -> bool:
    """Kill switch: TRIAGE_AUTO_ASSIGN=false coupe l'auto-assignation partout"""
    return os.environ.get('TRIAGE_AUTO_ASSIGN', '').strip().lower() == 'false'


# ==================== HELPERS ====================

def new_id() -> str:
    """Identifiant de document (uuid4)"""
    return str(uuid.uuid4())

def now_iso() -> str:
    """Retourne la date/heure actuelle en ISO"""
    return datetime.now(timezone.utc).isoformat()

def days_ago_iso(days: float) -> str:
    """Borne ISO pour les fenêtres glissantes"""
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()

def start_of_day_iso() -> str:
    """Minuit UTC du jour courant"""
    now = datetime.now(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0).isoformat()

def parse_iso(value: str):
    """Parse une date ISO stockée (None si illisible)"""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
