"""
Lead Ingest - idempotence, identité, heat monotone, triage, auto-assignation
"""

import logging
import random

import pytest
from pymongo.errors import PyMongoError

from config import now_iso
from models.assignment import AssignmentConfigUpdate
import services.lead_ingest as lead_ingest
from services.assignment_engine import AssignmentSelector
from services.assignment_config import update_assignment_config
from services.lead_ingest import LeadValidationError, ingest_inbound, upsert_inbound_lead
from services.triage_queue import close_triage_item
from tests.factories import TENANT, OTHER_TENANT, make_event

BUY_NOW = "I want to buy 500 units urgently, bulk order"
PHONE = "919000000001"


async def _events(db, lead_id, event_type=None):
    query = {"tenant_id": TENANT, "lead_id": lead_id}
    if event_type:
        query["event_type"] = event_type
    return await db.lead_events.find(query, {"_id": 0}).to_list(100)


class TestCreateLead:

    @pytest.mark.asyncio
    async def test_purchase_message_creates_qualified_hot_lead(self, db):
        result = await upsert_inbound_lead(db, TENANT, make_event(BUY_NOW, phone=PHONE))

        lead = result["lead"]
        assert result["is_new"] is True
        assert result["already_seen"] is False
        assert lead["status"] == "QUALIFIED"
        assert lead["heat"] in ("HOT", "ON_FIRE")
        assert lead["score"] >= 80
        assert lead["phone"] == PHONE
        assert lead["tenant_id"] == TENANT
        assert result["quality_analysis"]["intent"] == "purchase"
        print(f"✅ Lead created: {lead['status']} {lead['heat']} {lead['score']}")

    @pytest.mark.asyncio
    async def test_message_and_created_event_are_written(self, db):
        result = await upsert_inbound_lead(db, TENANT, make_event("hello", phone=PHONE, external_id="wamid-1"))
        lead_id = result["lead"]["id"]

        messages = await db.lead_messages.find({"lead_id": lead_id}, {"_id": 0}).to_list(10)
        assert len(messages) == 1
        assert messages[0]["direction"] == "INBOUND"
        assert messages[0]["channel"] == "WHATSAPP"
        assert messages[0]["external_id"] == "wamid-1"

        events = await _events(db, lead_id)
        assert [e["event_type"] for e in events] == ["LEAD_CREATED"]
        assert events[0]["payload"]["quality_analysis"]["heat"] == "COLD"

    @pytest.mark.asyncio
    async def test_cold_message_creates_new_lead(self, db):
        result = await upsert_inbound_lead(db, TENANT, make_event("hello", phone=PHONE))
        assert result["lead"]["status"] == "NEW"
        assert result["lead"]["heat"] == "COLD"

    @pytest.mark.asyncio
    async def test_missing_tenant_is_rejected_before_any_write(self, db):
        with pytest.raises(LeadValidationError):
            await upsert_inbound_lead(db, "", make_event("hello", phone=PHONE))
        assert await db.leads.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_ingest_inbound_normalizes_provider_payload(self, db):
        result = await ingest_inbound(db, TENANT, "indiamart", {
            "sender_mobile": "+91 90000 00001",
            "message": "Need price for 200 units",
            "query_id": "IM-1",
        })
        assert result["lead"]["phone"] == PHONE
        assert result["lead"]["channel"] == "INDIAMART"
        assert result["lead"]["source"] == "indiamart"


class TestIdempotency:

    @pytest.mark.asyncio
    async def test_same_external_id_twice_is_a_noop(self, db):
        event = make_event(BUY_NOW, phone=PHONE, external_id="wamid-42")
        first = await upsert_inbound_lead(db, TENANT, event)
        second = await upsert_inbound_lead(db, TENANT, event)

        assert second["already_seen"] is True
        assert second["is_new"] is False
        assert second["lead"]["id"] == first["lead"]["id"]
        assert second["message"]["deduped"] is True
        assert second["assignment_result"] is None
        assert await db.leads.count_documents({"tenant_id": TENANT}) == 1
        assert await db.lead_messages.count_documents({"tenant_id": TENANT}) == 1
        assert len(await _events(db, first["lead"]["id"])) == 1
        print("✅ Duplicate webhook delivery ignored")

    @pytest.mark.asyncio
    async def test_external_id_is_scoped_by_channel_and_tenant(self, db):
        await upsert_inbound_lead(db, TENANT, make_event("hi", phone=PHONE, external_id="x-1"))
        other_channel = await upsert_inbound_lead(
            db, TENANT, make_event("hi", phone=PHONE, external_id="x-1", channel="EMAIL", source="email")
        )
        other_tenant = await upsert_inbound_lead(db, OTHER_TENANT, make_event("hi", phone=PHONE, external_id="x-1"))

        assert other_channel["already_seen"] is False
        assert other_tenant["already_seen"] is False
        assert other_tenant["lead"]["id"] != other_channel["lead"]["id"]

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_caught_by_unique_index(self, db, monkeypatch):
        await db.lead_messages.create_index(
            [("tenant_id", 1), ("channel", 1), ("external_id", 1)], unique=True
        )
        event = make_event("hi", phone=PHONE, external_id="race-1")
        await upsert_inbound_lead(db, TENANT, event)

        async def _not_seen(*args, **kwargs):
            return None

        monkeypatch.setattr(lead_ingest, "_already_seen", _not_seen)
        result = await upsert_inbound_lead(db, TENANT, event)

        assert result["already_seen"] is True
        assert await db.lead_messages.count_documents({"external_id": "race-1"}) == 1

    @pytest.mark.asyncio
    async def test_lost_race_returns_lead_owning_the_message(self, db, monkeypatch, caplog):
        await db.lead_messages.create_index(
            [("tenant_id", 1), ("channel", 1), ("external_id", 1)], unique=True
        )
        winner = await upsert_inbound_lead(db, TENANT, make_event("hi", phone=PHONE, external_id="race-2"))

        real_already_seen = lead_ingest._already_seen
        calls = {"n": 0}

        async def _stale_first_check(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return await real_already_seen(*args, **kwargs)

        monkeypatch.setattr(lead_ingest, "_already_seen", _stale_first_check)
        caplog.set_level(logging.WARNING, logger="lead_ingest")
        result = await upsert_inbound_lead(
            db, TENANT, make_event("hi", phone="919000000099", external_id="race-2")
        )

        assert result["already_seen"] is True
        assert result["lead"]["id"] == winner["lead"]["id"]
        assert result["message"]["deduped"] is True
        orphan = await db.leads.find_one({"tenant_id": TENANT, "id": {"$ne": winner["lead"]["id"]}})
        assert f"Orphan lead {orphan['id']}" in caplog.text


class TestIdentityResolution:

    @pytest.mark.asyncio
    async def test_phone_match_updates_existing_lead(self, db):
        first = await upsert_inbound_lead(db, TENANT, make_event("hello", phone=PHONE, name="Ravi"))
        second = await upsert_inbound_lead(db, TENANT, make_event("hello again", phone=PHONE, name="Someone Else"))

        assert second["is_new"] is False
        assert second["lead"]["id"] == first["lead"]["id"]
        assert second["lead"]["name"] == "Ravi"

    @pytest.mark.asyncio
    async def test_email_match_when_phone_missing(self, db):
        first = await upsert_inbound_lead(db, TENANT, make_event("hello", email="ravi@example.com"))
        second = await upsert_inbound_lead(db, TENANT, make_event("hello", phone=PHONE, email="ravi@example.com"))

        assert second["lead"]["id"] == first["lead"]["id"]
        # backfill only
        assert second["lead"]["phone"] == PHONE

    @pytest.mark.asyncio
    async def test_tenants_never_share_leads(self, db):
        a = await upsert_inbound_lead(db, TENANT, make_event("hello", phone=PHONE))
        b = await upsert_inbound_lead(db, OTHER_TENANT, make_event("hello", phone=PHONE))
        assert a["lead"]["id"] != b["lead"]["id"]
        assert b["is_new"] is True


class TestMonotonicHeat:

    @pytest.mark.asyncio
    async def test_cold_follow_up_never_lowers_heat_or_score(self, db):
        first = await upsert_inbound_lead(db, TENANT, make_event(BUY_NOW, phone=PHONE))
        second = await upsert_inbound_lead(db, TENANT, make_event("ok thanks", phone=PHONE))

        assert second["quality_analysis"]["heat"] == "COLD"
        assert second["lead"]["heat"] == first["lead"]["heat"]
        assert second["lead"]["score"] == first["lead"]["score"]
        assert second["lead"]["status"] == "QUALIFIED"
        assert second["lead"]["last_activity_at"] >= first["lead"]["last_activity_at"]

    @pytest.mark.asyncio
    async def test_sequence_is_non_decreasing_in_any_order(self, db):
        bodies = ["ok thanks", "I want to buy", "hello", BUY_NOW, "ok"]
        heat_order = {"COLD": 1, "WARM": 2, "HOT": 3, "ON_FIRE": 4}
        last_heat, last_score = 0, 0
        for body in bodies:
            lead = (await upsert_inbound_lead(db, TENANT, make_event(body, phone=PHONE)))["lead"]
            assert heat_order[lead["heat"]] >= last_heat
            assert lead["score"] >= last_score
            last_heat, last_score = heat_order[lead["heat"]], lead["score"]

    @pytest.mark.asyncio
    async def test_escalation_is_audited(self, db):
        first = await upsert_inbound_lead(db, TENANT, make_event("hello", phone=PHONE))
        await upsert_inbound_lead(db, TENANT, make_event(BUY_NOW, phone=PHONE))

        changes = await _events(db, first["lead"]["id"], "HEAT_CHANGED")
        assert len(changes) == 1
        assert changes[0]["payload"]["old_heat"] == "COLD"
        assert changes[0]["payload"]["new_heat"] == "ON_FIRE"

    @pytest.mark.asyncio
    async def test_new_lead_auto_qualifies_on_later_purchase(self, db):
        await upsert_inbound_lead(db, TENANT, make_event("hello", phone=PHONE))
        result = await upsert_inbound_lead(db, TENANT, make_event("I want to buy", phone=PHONE))
        assert result["lead"]["status"] == "QUALIFIED"


class TestTriageOnIngest:

    @pytest.mark.asyncio
    async def test_unassigned_lead_gets_one_open_item(self, db):
        first = await upsert_inbound_lead(db, TENANT, make_event("hello", phone=PHONE))
        second = await upsert_inbound_lead(db, TENANT, make_event("anyone?", phone=PHONE))

        assert first["triage"]["action"] == "create"
        assert second["triage"]["action"] == "noop"
        open_items = await db.triage_items.count_documents(
            {"tenant_id": TENANT, "conversation_id": first["lead"]["id"], "status": {"$ne": "CLOSED"}}
        )
        assert open_items == 1

    @pytest.mark.asyncio
    async def test_closed_item_is_reopened_not_duplicated(self, db):
        first = await upsert_inbound_lead(db, TENANT, make_event("hello", phone=PHONE))
        await db.triage_items.update_one({"id": first["triage"]["id"]}, {"$set": {"status": "CLOSED"}})

        again = await upsert_inbound_lead(db, TENANT, make_event("back again", phone=PHONE))

        assert again["triage"]["action"] == "reopen"
        assert again["triage"]["id"] == first["triage"]["id"]
        assert await db.triage_items.count_documents({"conversation_id": first["lead"]["id"]}) == 1

    @pytest.mark.asyncio
    async def test_no_selector_leaves_item_in_queue(self, db):
        result = await upsert_inbound_lead(db, TENANT, make_event(BUY_NOW, phone=PHONE))
        assert result["assignment_result"] is None
        item = await db.triage_items.find_one({"id": result["triage"]["id"]})
        assert item["status"] == "NEW"


class TestAutoAssignOnIngest:

    @pytest.mark.asyncio
    async def test_new_lead_is_assigned(self, db, add_agent):
        await add_agent("alice")
        selector = AssignmentSelector(rng=random.Random(7))

        result = await upsert_inbound_lead(db, TENANT, make_event(BUY_NOW, phone=PHONE), selector=selector)

        assert result["assignment_result"]["success"] is True
        assert result["assignment_result"]["assigned_agent"]["id"] == "alice"
        assert result["lead"]["assigned_user_id"] == "alice"

        stored = await db.leads.find_one({"id": result["lead"]["id"]})
        assert stored["assigned_user_id"] == "alice"
        item = await db.triage_items.find_one({"id": result["triage"]["id"]})
        assert item["status"] == "IN_PROGRESS"
        assert item["assigned_to"] == "alice"
        assert len(await _events(db, stored["id"], "LEAD_ASSIGNED")) == 1

    @pytest.mark.asyncio
    async def test_followed_lead_keeps_open_item_and_agent(self, db, add_agent):
        await add_agent("alice")
        await add_agent("bob")
        selector = AssignmentSelector(rng=random.Random(7))
        first = await upsert_inbound_lead(db, TENANT, make_event("hello", phone=PHONE), selector=selector)
        owner = first["lead"]["assigned_user_id"]

        again = await upsert_inbound_lead(db, TENANT, make_event("more", phone=PHONE), selector=selector)

        assert again["triage"] == {"action": "noop", "id": first["triage"]["id"]}
        assert again["assignment_result"] is None
        assert again["lead"]["assigned_user_id"] == owner

    @pytest.mark.asyncio
    async def test_closed_item_of_assigned_lead_reopens_for_same_agent(self, db, add_agent):
        await add_agent("alice")
        selector = AssignmentSelector(rng=random.Random(7))
        first = await upsert_inbound_lead(db, TENANT, make_event(BUY_NOW, phone=PHONE), selector=selector)
        await close_triage_item(db, TENANT, first["triage"]["id"], reason="done")
        await add_agent("bob", capacity=50)

        again = await upsert_inbound_lead(db, TENANT, make_event("need help again", phone=PHONE), selector=selector)

        assert again["triage"] == {"action": "reopen", "id": first["triage"]["id"]}
        assert again["assignment_result"] is None
        item = await db.triage_items.find_one({"id": first["triage"]["id"]})
        assert item["status"] == "NEW"
        assert item["assigned_to"] == "alice"
        stored = await db.leads.find_one({"id": first["lead"]["id"]})
        assert stored["assigned_user_id"] == "alice"
        assert len(await _events(db, stored["id"], "LEAD_ASSIGNED")) == 1
        print("✅ Reopened conversation stays with its agent")

    @pytest.mark.asyncio
    async def test_assigned_lead_without_item_gets_one_for_its_owner(self, db):
        first = await upsert_inbound_lead(db, TENANT, make_event("hello", phone=PHONE))
        await db.leads.update_one({"id": first["lead"]["id"]}, {"$set": {"assigned_user_id": "alice"}})
        await db.triage_items.delete_many({"conversation_id": first["lead"]["id"]})

        again = await upsert_inbound_lead(
            db, TENANT, make_event("more", phone=PHONE), selector=AssignmentSelector(rng=random.Random(7))
        )

        assert again["triage"]["action"] == "create"
        assert again["assignment_result"] is None
        item = await db.triage_items.find_one({"id": again["triage"]["id"]})
        assert item["status"] == "NEW"
        assert item["assigned_to"] == "alice"

    @pytest.mark.asyncio
    async def test_bad_order_row_does_not_fail_ingest(self, db, add_agent):
        await add_agent("alice")
        await update_assignment_config(db, TENANT, AssignmentConfigUpdate(strategy="AUTO_TRAIN"))
        await db.orders.insert_one({
            "tenant_id": TENANT, "agent_id": "alice", "customer_id": "c1",
            "actual_amount": "N/A", "created_at": now_iso(),
        })

        result = await upsert_inbound_lead(
            db, TENANT, make_event(BUY_NOW, phone=PHONE), selector=AssignmentSelector(rng=random.Random(7))
        )

        assert await db.leads.count_documents({"id": result["lead"]["id"]}) == 1
        assert result["triage"]["action"] == "create"
        assert result["assignment_result"]["success"] is True
        assert result["assignment_result"]["assigned_agent"]["id"] == "alice"

    @pytest.mark.asyncio
    async def test_no_agents_is_not_an_error(self, db):
        selector = AssignmentSelector(rng=random.Random(7))
        result = await upsert_inbound_lead(db, TENANT, make_event("hello", phone=PHONE), selector=selector)

        assert result["assignment_result"]["success"] is False
        assert result["assignment_result"]["reason"] == "no_agents"
        assert result["lead"]["assigned_user_id"] is None

    @pytest.mark.asyncio
    async def test_auto_assign_flag_off(self, db, add_agent):
        await add_agent("alice")
        selector = AssignmentSelector(rng=random.Random(7))
        result = await upsert_inbound_lead(
            db, TENANT, make_event("hello", phone=PHONE), selector=selector, auto_assign=False
        )
        assert result["assignment_result"] is None
        assert result["triage"]["action"] == "create"


class TestPartialFailures:

    @pytest.mark.asyncio
    async def test_message_insert_failure_is_swallowed(self, db, monkeypatch):
        async def _boom(*args, **kwargs):
            raise PyMongoError("lead_messages unavailable")

        monkeypatch.setattr(lead_ingest, "_insert_message", _boom)
        result = await upsert_inbound_lead(db, TENANT, make_event("hello", phone=PHONE))

        assert result["message"] is None
        assert await db.leads.count_documents({"tenant_id": TENANT}) == 1

    @pytest.mark.asyncio
    async def test_lead_write_failure_propagates(self, db, monkeypatch):
        async def _boom(*args, **kwargs):
            raise PyMongoError("leads unavailable")

        monkeypatch.setattr(lead_ingest, "_create_lead", _boom)
        with pytest.raises(PyMongoError):
            await upsert_inbound_lead(db, TENANT, make_event("hello", phone=PHONE))
