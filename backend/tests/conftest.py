"""
Fixtures partagées: base Mongo en mémoire (mongomock-motor), agents, sessions.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from mongomock_motor import AsyncMongoMockClient

from tests.factories import TENANT


@pytest.fixture
def db():
    client = AsyncMongoMockClient()
    return client[f"leadhub_test_{uuid.uuid4().hex[:8]}"]


@pytest.fixture
def add_agent(db):
    """Crée un agent actif (created_at croissant = ordre de création)"""
    counter = {"n": 0}

    async def _add(agent_id, tenant_id=TENANT, capacity=None, score=None, is_active=True, name=None):
        counter["n"] += 1
        agent = {
            "id": agent_id,
            "tenant_id": tenant_id,
            "name": name or agent_id.title(),
            "is_active": is_active,
            "capacity": capacity,
            "score": score,
            "created_at": f"2026-01-01T00:00:{counter['n']:02d}+00:00",
        }
        await db.agents.insert_one(dict(agent))
        return agent

    return _add


@pytest.fixture
def add_open_items(db):
    """N triage items IN_PROGRESS déjà assignés à un agent"""

    async def _add(agent_id, count, tenant_id=TENANT):
        for _ in range(count):
            await db.triage_items.insert_one({
                "id": str(uuid.uuid4()),
                "tenant_id": tenant_id,
                "conversation_id": str(uuid.uuid4()),
                "status": "IN_PROGRESS",
                "assigned_to": agent_id,
                "created_at": datetime.now(timezone.utc).isoformat(),
                "updated_at": datetime.now(timezone.utc).isoformat(),
            })

    return _add


@pytest.fixture
def add_user(db):
    """User + session valide, retourne le bearer token"""

    async def _add(role="ADMIN", tenant_id=TENANT, user_id=None):
        user_id = user_id or str(uuid.uuid4())
        token = uuid.uuid4().hex
        await db.users.insert_one({
            "id": user_id,
            "email": f"{user_id}@example.com",
            "tenant_id": tenant_id,
            "role": role,
            "is_active": True,
        })
        await db.sessions.insert_one({
            "token": token,
            "user_id": user_id,
            "expires_at": (datetime.now(timezone.utc) + timedelta(days=1)).isoformat(),
        })
        return token

    return _add
