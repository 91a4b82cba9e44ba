"""
Fusion de leads - champs, re-possession des events/messages, audit, doublons
"""

import pytest
from pymongo.errors import PyMongoError

import services.lead_merge as lead_merge
from services.lead_ingest import LeadValidationError, upsert_inbound_lead
from services.lead_merge import LeadNotFoundError, find_duplicate_leads, merge_leads
from tests.factories import TENANT, OTHER_TENANT, make_event


async def _lead(db, body, phone=None, email=None, name=None, external_id=None, tenant_id=TENANT):
    result = await upsert_inbound_lead(
        db, tenant_id, make_event(body, phone=phone, email=email, name=name, external_id=external_id)
    )
    return result["lead"]


class TestMergeLeads:

    @pytest.mark.asyncio
    async def test_fields_score_and_heat(self, db):
        primary = await _lead(db, "hello", phone="911111111111")
        secondary = await _lead(
            db, "urgent bulk order, I want to buy 500 units today", email="buyer@example.com", name="Ravi"
        )

        result = await merge_leads(db, TENANT, primary["id"], [secondary["id"]], actor_user_id="admin-1")

        lead = result["lead"]
        assert result["merged_count"] == 1
        assert lead["id"] == primary["id"]
        assert lead["phone"] == "911111111111"
        assert lead["email"] == "buyer@example.com"
        assert lead["name"] == "Ravi"
        assert lead["score"] == max(primary["score"], secondary["score"])
        assert lead["heat"] == secondary["heat"]
        moved = {entry["field"] for entry in result["merged_history"]["data_transferred"]}
        assert {"email", "name", "score", "heat", "events", "messages"} <= moved
        print("✅ Fusion des champs OK")

    @pytest.mark.asyncio
    async def test_primary_identity_wins(self, db):
        primary = await _lead(db, "hi", phone="911111111111", email="first@example.com")
        secondary = await _lead(db, "hi", phone="922222222222", email="second@example.com")

        result = await merge_leads(db, TENANT, primary["id"], [secondary["id"]])

        assert result["lead"]["phone"] == "911111111111"
        assert result["lead"]["email"] == "first@example.com"

    @pytest.mark.asyncio
    async def test_secondary_retired_not_deleted(self, db):
        primary = await _lead(db, "hi", phone="911111111111")
        secondary = await _lead(db, "hi", phone="922222222222")

        await merge_leads(db, TENANT, primary["id"], [secondary["id"]])

        stored = await db.leads.find_one({"id": secondary["id"]}, {"_id": 0})
        assert stored["status"] == "MERGED"
        assert stored["merged_into_lead_id"] == primary["id"]
        assert primary["id"] in stored["notes"]
        assert await db.leads.count_documents({"tenant_id": TENANT}) == 2

    @pytest.mark.asyncio
    async def test_events_and_messages_reowned(self, db):
        primary = await _lead(db, "hi", phone="911111111111", external_id="m-1")
        secondary = await _lead(db, "hi", phone="922222222222", external_id="m-2")

        await merge_leads(db, TENANT, primary["id"], [secondary["id"]])

        assert await db.lead_events.count_documents({"lead_id": secondary["id"]}) == 0
        assert await db.lead_messages.count_documents({"lead_id": secondary["id"]}) == 0
        assert await db.lead_messages.count_documents({"lead_id": primary["id"]}) == 2
        events = await db.lead_events.find({"lead_id": primary["id"]}).sort("created_at", 1).to_list(20)
        types = [e["event_type"] for e in events]
        assert types.count("LEAD_CREATED") == 2
        assert types[-1] == "LEADS_MERGED"

    @pytest.mark.asyncio
    async def test_audit_event_payload(self, db):
        primary = await _lead(db, "hi", phone="911111111111")
        secondary = await _lead(db, "hi", email="x@example.com")

        await merge_leads(db, TENANT, primary["id"], [secondary["id"]], actor_user_id="admin-1")

        event = await db.lead_events.find_one({"lead_id": primary["id"], "event_type": "LEADS_MERGED"})
        assert event["actor_user_id"] == "admin-1"
        assert event["payload"]["secondary_lead_ids"] == [secondary["id"]]
        assert event["payload"]["merged_by"] == "admin-1"
        assert event["payload"]["failures"] == []

    @pytest.mark.asyncio
    async def test_secondary_triage_closed(self, db):
        primary = await _lead(db, "hi", phone="911111111111")
        secondary = await _lead(db, "hi", phone="922222222222")

        await merge_leads(db, TENANT, primary["id"], [secondary["id"]])

        item = await db.triage_items.find_one({"conversation_id": secondary["id"]})
        assert item["status"] == "CLOSED"
        assert item["closed_reason"] == "merged"
        primary_item = await db.triage_items.find_one({"conversation_id": primary["id"]})
        assert primary_item["status"] == "NEW"

    @pytest.mark.asyncio
    async def test_ingest_after_merge_targets_primary(self, db):
        primary = await _lead(db, "hi", email="a@example.com")
        secondary = await _lead(db, "hi", phone="922222222222")
        await merge_leads(db, TENANT, primary["id"], [secondary["id"]])

        again = await upsert_inbound_lead(db, TENANT, make_event("me again", phone="922222222222"))

        assert again["is_new"] is False
        assert again["lead"]["id"] == primary["id"]

    @pytest.mark.asyncio
    async def test_already_merged_secondary_skipped(self, db):
        primary = await _lead(db, "hi", phone="911111111111")
        other = await _lead(db, "hi", phone="922222222222")
        retired = await _lead(db, "hi", phone="933333333333")
        await merge_leads(db, TENANT, other["id"], [retired["id"]])

        result = await merge_leads(db, TENANT, primary["id"], [other["id"], retired["id"]])

        assert result["merged_count"] == 1
        assert result["merged_history"]["skipped_lead_ids"] == [retired["id"]]

    @pytest.mark.asyncio
    async def test_reown_failure_is_recorded(self, db, monkeypatch):
        primary = await _lead(db, "hi", phone="911111111111")
        secondary = await _lead(db, "hi", phone="922222222222")

        async def broken(*args, **kwargs):
            raise PyMongoError("triage down")

        monkeypatch.setattr(lead_merge, "close_open_items_for_conversation", broken)
        result = await merge_leads(db, TENANT, primary["id"], [secondary["id"]])

        failures = result["merged_history"]["failures"]
        assert [f["step"] for f in failures] == ["triage"]
        stored = await db.leads.find_one({"id": secondary["id"]})
        assert stored["status"] == "MERGED"

    @pytest.mark.asyncio
    async def test_retire_steps_run_one_after_another(self, db, monkeypatch):
        primary = await _lead(db, "hi", phone="911111111111")
        secondary = await _lead(db, "hello", phone="922222222222")
        seen = {}

        async def closing(db_, tenant_id, conversation_id, reason):
            seen["status"] = (await db.leads.find_one({"id": conversation_id}))["status"]
            seen["messages_left"] = await db.lead_messages.count_documents({"lead_id": conversation_id})
            seen["events_left"] = await db.lead_events.count_documents({"lead_id": conversation_id})
            return 0

        monkeypatch.setattr(lead_merge, "close_open_items_for_conversation", closing)
        result = await merge_leads(db, TENANT, primary["id"], [secondary["id"]])

        assert seen == {"status": "MERGED", "messages_left": 0, "events_left": 0}
        assert result["merged_history"]["failures"] == []


class TestMergeValidation:

    @pytest.mark.asyncio
    async def test_invalid_params(self, db):
        lead = await _lead(db, "hi", phone="911111111111")
        with pytest.raises(LeadValidationError):
            await merge_leads(db, TENANT, lead["id"], [])
        with pytest.raises(LeadValidationError):
            await merge_leads(db, TENANT, lead["id"], [lead["id"]])
        with pytest.raises(LeadValidationError):
            await merge_leads(db, "", lead["id"], ["x"])

    @pytest.mark.asyncio
    async def test_not_found(self, db):
        lead = await _lead(db, "hi", phone="911111111111")
        with pytest.raises(LeadNotFoundError):
            await merge_leads(db, TENANT, "missing", [lead["id"]])
        with pytest.raises(LeadNotFoundError):
            await merge_leads(db, TENANT, lead["id"], ["missing"])

    @pytest.mark.asyncio
    async def test_cross_tenant_lead_not_found(self, db):
        primary = await _lead(db, "hi", phone="911111111111")
        foreign = await _lead(db, "hi", phone="922222222222", tenant_id=OTHER_TENANT)
        with pytest.raises(LeadNotFoundError):
            await merge_leads(db, TENANT, primary["id"], [foreign["id"]])

    @pytest.mark.asyncio
    async def test_merged_primary_rejected(self, db):
        a = await _lead(db, "hi", phone="911111111111")
        b = await _lead(db, "hi", phone="922222222222")
        c = await _lead(db, "hi", phone="933333333333")
        await merge_leads(db, TENANT, a["id"], [b["id"]])
        with pytest.raises(LeadValidationError):
            await merge_leads(db, TENANT, b["id"], [c["id"]])


class TestFindDuplicates:

    @pytest.mark.asyncio
    async def test_phone_or_email(self, db):
        by_phone = await _lead(db, "hi", phone="911111111111")
        by_email = await _lead(db, "hi", email="dup@example.com")
        await _lead(db, "hi", phone="922222222222")
        await _lead(db, "hi", phone="911111111111", tenant_id=OTHER_TENANT)

        found = await find_duplicate_leads(db, TENANT, phone="+91 11111 11111", email="DUP@example.com")

        assert {lead["id"] for lead in found} == {by_phone["id"], by_email["id"]}

    @pytest.mark.asyncio
    async def test_excludes_lead_and_merged(self, db):
        a = await _lead(db, "hi", phone="911111111111")
        b = await _lead(db, "hi", email="b@example.com")
        await db.leads.update_one({"id": b["id"]}, {"$set": {"phone": "911111111111"}})
        await merge_leads(db, TENANT, a["id"], [b["id"]])

        assert await find_duplicate_leads(db, TENANT, phone="911111111111", exclude_lead_id=a["id"]) == []

    @pytest.mark.asyncio
    async def test_requires_phone_or_email(self, db):
        with pytest.raises(LeadValidationError):
            await find_duplicate_leads(db, TENANT, phone="  ", email=None)
