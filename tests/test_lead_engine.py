import unittest
import asyncio
import sys
import os

# Add parent dir to path to import services
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from engine_fixtures import build_components, event_types
from services.errors import ConflictError, DuplicateLeadError, NotFoundError, ValidationError

PAYMENT = {"amount": 45000, "mode": "UPI", "transaction_id": "TXN-1001"}

class TestLeadEngine(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.c = await build_components()
        self.admin = await self.c.users.bootstrap("admin@mastry.in", "Admin")
        self.leads = self.c.leads

    async def asyncTearDown(self):
        await self.c.engine.dispose()

    async def _create(self, phone="98765 43210", **extra):
        data = {"first_name": "Asha", "last_name": "Rao", "phone_raw": phone, "country_code": "+91"}
        data.update(extra)
        return await self.leads.create_lead(data, self.admin["id"])

    async def test_create_sets_initial_state(self):
        lead = await self._create(email="asha@example.com")

        self.assertEqual(lead["version"], 1)
        self.assertEqual(lead["status"], "new_lead")
        self.assertEqual(lead["phone_normalized"], "+919876543210")
        self.assertEqual(lead["full_name"], "Asha Rao")
        self.assertEqual(lead["assigned_to"], self.admin["id"])
        self.assertEqual(lead["merged_identities"], {"emails": [], "names": []})

        activities = await self.c.activity_log.get_activities_for_lead(lead["id"])
        self.assertEqual(event_types(activities), ["lead_created"])
        self.assertEqual(activities[0]["event_data"], {"source": "Manual Entry"})

    async def test_create_requires_phone_and_name(self):
        with self.assertRaises(ValidationError):
            await self.leads.create_lead({"first_name": "Asha", "phone_raw": "n/a"}, "system")
        with self.assertRaises(ValidationError):
            await self.leads.create_lead({"first_name": "", "phone_raw": "9876543210"}, "system")
        with self.assertRaises(ValidationError):
            await self._create(email="asha@tempmail.com")

    async def test_source_enrichment(self):
        lead = await self._create(source="Meta Form", source_details={"campaign": "spring"})
        self.assertIn("Meta Lead Form", lead["source_details"])
        self.assertEqual(lead["source_details"]["campaign"], "spring")

    async def test_duplicate_phone_in_another_format(self):
        first = await self._create()

        check = await self.leads.check_duplicate("+91-9876543210")
        self.assertTrue(check["exists"])
        self.assertEqual(check["lead"]["id"], first["id"])

        with self.assertRaises(DuplicateLeadError) as ctx:
            await self.leads.create_lead({"first_name": "Asha", "phone_raw": "+91-9876543210"}, "system")
        self.assertEqual(ctx.exception.existing_lead_id, first["id"])
        self.assertEqual(len(await self.leads.list_leads()), 1)

    async def test_round_robin_assignment(self):
        u2 = await self.c.users.invite_user("ravi@mastry.in", "Ravi")
        u3 = await self.c.users.invite_user("meera@mastry.in", "Meera")

        assigned = []
        for i in range(4):
            lead = await self._create(phone=f"987654321{i}")
            assigned.append(lead["assigned_to"])
        self.assertEqual(assigned, [self.admin["id"], u2["id"], u3["id"], self.admin["id"]])

    async def test_update_increments_version(self):
        lead = await self._create()
        updated = await self.leads.update_lead(lead["id"], {"status": "eligible"}, "agent-1", expected_version=1)
        self.assertEqual(updated["version"], 2)
        self.assertEqual(updated["status"], "eligible")

        activities = await self.c.activity_log.get_activities_for_lead(lead["id"])
        self.assertEqual(activities[0]["event_type"], "status_changed")
        self.assertEqual(activities[0]["event_data"], {"from": "new_lead", "to": "eligible"})
        self.assertEqual(activities[0]["performed_by"], "agent-1")

    async def test_stale_version_conflicts(self):
        lead = await self._create()
        await self.leads.update_lead(lead["id"], {"first_name": "Ashwini"}, "agent-1", expected_version=1)

        with self.assertRaises(ConflictError) as ctx:
            await self.leads.update_lead(lead["id"], {"first_name": "Asha"}, "agent-2", expected_version=1)
        self.assertEqual(ctx.exception.current_version, 2)

        current = await self.leads.get_lead(lead["id"])
        self.assertEqual(current["version"], 2)
        self.assertEqual(current["full_name"], "Ashwini Rao")

    async def test_enrolled_requires_payment(self):
        lead = await self._create()
        with self.assertRaises(ValidationError):
            await self.leads.update_lead(lead["id"], {"status": "enrolled"}, "agent-1")
        self.assertEqual((await self.leads.get_lead(lead["id"]))["version"], 1)

        enrolled = await self.leads.update_lead(
            lead["id"], {"status": "enrolled", "payment_details": PAYMENT}, "agent-1",
        )
        self.assertEqual(enrolled["status"], "enrolled")
        self.assertEqual(enrolled["payment_details"]["transaction_id"], "TXN-1001")

        types = event_types(await self.c.activity_log.get_activities_for_lead(lead["id"]))
        self.assertIn("status_changed", types)
        self.assertIn("payment_added", types)

    async def test_invalid_payment_details(self):
        lead = await self._create()
        with self.assertRaises(ValidationError):
            await self.leads.update_lead(lead["id"], {"payment_details": {**PAYMENT, "mode": "EMI"}}, "agent-1")
        with self.assertRaises(ValidationError):
            await self.leads.update_lead(lead["id"], {"payment_details": {**PAYMENT, "amount": -5}}, "agent-1")

    async def test_rejected_requires_reason(self):
        lead = await self._create()
        with self.assertRaises(ValidationError):
            await self.leads.update_lead(lead["id"], {"status": "rejected"}, "agent-1")
        rejected = await self.leads.update_lead(
            lead["id"], {"status": "rejected", "rejection_reason": "Below age limit"}, "agent-1",
        )
        self.assertEqual(rejected["status"], "rejected")

    async def test_rejects_unknown_status_and_fields(self):
        lead = await self._create()
        with self.assertRaises(ValidationError):
            await self.leads.update_lead(lead["id"], {"status": "archived"}, "agent-1")
        with self.assertRaises(ValidationError):
            await self.leads.update_lead(lead["id"], {"version": 99}, "agent-1")

    async def test_silent_status_change(self):
        lead = await self._create()
        updated = await self.leads.update_lead(lead["id"], {"status": "follow_ups"}, "system", silent=True)
        self.assertEqual(updated["status"], "follow_ups")
        types = event_types(await self.c.activity_log.get_activities_for_lead(lead["id"]))
        self.assertNotIn("status_changed", types)

    async def test_phone_change_checks_duplicates(self):
        first = await self._create()
        second = await self._create(phone="9988776655")
        with self.assertRaises(DuplicateLeadError):
            await self.leads.update_lead(second["id"], {"phone_raw": "+91 98765 43210"}, "agent-1")

        moved = await self.leads.update_lead(second["id"], {"phone_raw": "+44 7911 123456"}, "agent-1")
        self.assertEqual(moved["phone_normalized"], "+447911123456")
        self.assertEqual(moved["country_code"], "+44")
        self.assertNotEqual(first["phone_normalized"], moved["phone_normalized"])

    async def test_soft_delete_and_restore(self):
        lead = await self._create()
        deleted = await self.leads.delete_lead(lead["id"], "agent-1")
        self.assertEqual(deleted["version"], 2)
        self.assertIsNotNone(deleted["deleted_at"])

        self.assertEqual(await self.leads.list_leads(), [])
        self.assertEqual([l["id"] for l in await self.leads.list_trash()], [lead["id"]])
        with self.assertRaises(NotFoundError):
            await self.leads.update_lead(lead["id"], {"first_name": "X"}, "agent-1")

        restored = await self.leads.restore_lead(lead["id"], "agent-1")
        self.assertIsNone(restored["deleted_at"])
        self.assertEqual(restored["version"], 3)

        types = event_types(await self.c.activity_log.get_activities_for_lead(lead["id"]))
        self.assertEqual(types[:2], ["lead_restored", "lead_deleted"])

    async def test_enrolled_lead_keeps_its_payment(self):
        lead = await self._create()
        await self.leads.update_lead(lead["id"], {"payment_details": PAYMENT}, "agent-1")
        with self.assertRaises(ValidationError):
            await self.leads.update_lead(lead["id"], {"status": "enrolled", "payment_details": None}, "agent-1")

        # Payment already on the record satisfies the move
        enrolled = await self.leads.update_lead(lead["id"], {"status": "enrolled"}, "agent-1")
        self.assertEqual(enrolled["status"], "enrolled")
        with self.assertRaises(ValidationError):
            await self.leads.update_lead(lead["id"], {"payment_details": None}, "agent-1")

        current = await self.leads.get_lead(lead["id"])
        self.assertEqual(current["version"], enrolled["version"])
        self.assertEqual(current["payment_details"]["transaction_id"], "TXN-1001")

    async def test_rejected_lead_keeps_its_reason(self):
        lead = await self._create()
        rejected = await self.leads.update_lead(
            lead["id"], {"status": "rejected", "rejection_reason": "Below age limit"}, "agent-1",
        )
        for reason in (None, "   "):
            with self.assertRaises(ValidationError):
                await self.leads.update_lead(lead["id"], {"rejection_reason": reason}, "agent-1")

        # Leaving the stage lets the reason go
        reopened = await self.leads.update_lead(lead["id"], {"status": "follow_ups", "rejection_reason": None}, "agent-1")
        self.assertEqual(reopened["version"], rejected["version"] + 1)
        self.assertIsNone(reopened["rejection_reason"])

    async def test_rejects_malformed_collections(self):
        lead = await self._create()
        for updates in ({"tags": "hot"}, {"custom_fields": "x"}, {"source_details": ["campaign"]}):
            with self.assertRaises(ValidationError):
                await self.leads.update_lead(lead["id"], updates, "agent-1")
        self.assertEqual((await self.leads.get_lead(lead["id"]))["version"], 1)

        with self.assertRaises(ValidationError):
            await self._create(phone="9988776655", tags="hot")
        with self.assertRaises(ValidationError):
            await self._create(phone="9988776655", custom_fields="x")

        updated = await self.leads.update_lead(lead["id"], {"tags": ["hot"], "custom_fields": {"batch": "Jan"}}, "agent-1")
        self.assertEqual(updated["tags"], ["hot"])
        self.assertEqual(updated["custom_fields"], {"batch": "Jan"})

    async def test_concurrent_updates_on_same_version(self):
        lead = await self._create()
        results = await asyncio.gather(
            self.leads.update_lead(lead["id"], {"first_name": "Ashwini"}, "agent-1", expected_version=1),
            self.leads.update_lead(lead["id"], {"first_name": "Anita"}, "agent-2", expected_version=1),
            return_exceptions=True,
        )
        winners = [r for r in results if isinstance(r, dict)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        self.assertEqual(len(winners), 1)
        self.assertEqual(len(conflicts), 1)
        self.assertEqual(conflicts[0].current_version, 2)

        current = await self.leads.get_lead(lead["id"])
        self.assertEqual(current["version"], 2)
        self.assertEqual(current["first_name"], winners[0]["first_name"])

    async def test_restore_brings_back_the_same_record(self):
        lead = await self._create(email="asha@example.com", tags=["webinar"])
        before = await self.leads.update_lead(lead["id"], {
            "status": "enrolled",
            "payment_details": PAYMENT,
            "tags": ["webinar", "hot"],
            "custom_fields": {"batch": "Jan"},
        }, "agent-1")

        await self.leads.delete_lead(lead["id"], "agent-1")
        restored = await self.leads.restore_lead(lead["id"], "agent-1")

        bookkeeping = {"version", "updated_at", "deleted_at", "deleted_by"}
        strip = lambda record: {k: v for k, v in record.items() if k not in bookkeeping}
        self.assertEqual(strip(restored), strip(before))
        self.assertEqual(restored["version"], before["version"] + 2)

    async def test_restore_blocked_when_phone_taken(self):
        lead = await self._create()
        await self.leads.delete_lead(lead["id"], "agent-1")
        replacement = await self._create(phone="+91 98765 43210")

        with self.assertRaises(DuplicateLeadError) as ctx:
            await self.leads.restore_lead(lead["id"], "agent-1")
        self.assertEqual(ctx.exception.existing_lead_id, replacement["id"])

    async def test_purge_and_empty_trash(self):
        a = await self._create()
        b = await self._create(phone="9988776655")
        with self.assertRaises(ValidationError):
            await self.leads.purge_lead(a["id"])

        await self.leads.delete_lead(a["id"], "agent-1")
        await self.leads.purge_lead(a["id"])
        with self.assertRaises(NotFoundError):
            await self.leads.get_lead(a["id"])
        # The audit trail outlives the lead
        self.assertTrue(await self.c.activity_log.get_activities_for_lead(a["id"]))

        await self.leads.delete_lead(b["id"], "agent-1")
        self.assertEqual(await self.leads.empty_trash(), 1)
        self.assertEqual(await self.leads.list_trash(), [])

    async def test_bulk_update_reports_per_record(self):
        a = await self._create()
        b = await self._create(phone="9988776655")

        results = await self.leads.bulk_update([a["id"], "missing", b["id"]], {"status": "eligible"}, "agent-1")
        self.assertEqual([r["success"] for r in results], [True, False, True])
        self.assertEqual(results[1]["error_type"], "NotFoundError")
        self.assertEqual(results[0]["version"], 2)

        activities = await self.c.activity_log.get_activities_for_lead(b["id"])
        self.assertEqual(activities[0]["event_data"], {"from": "new_lead", "to": "eligible", "is_bulk": True})

    async def test_bulk_validation_failure_leaves_records_untouched(self):
        a = await self._create()
        results = await self.leads.bulk_update([a["id"]], {"status": "enrolled"}, "agent-1")
        self.assertFalse(results[0]["success"])
        self.assertEqual(results[0]["error_type"], "ValidationError")
        self.assertEqual((await self.leads.get_lead(a["id"]))["version"], 1)

    async def test_bulk_tags(self):
        a = await self._create(tags=["webinar"])
        b = await self._create(phone="9988776655")

        await self.leads.bulk_add_tags([a["id"], b["id"]], ["hot", "webinar"], "agent-1")
        self.assertEqual((await self.leads.get_lead(a["id"]))["tags"], ["webinar", "hot"])
        self.assertEqual((await self.leads.get_lead(b["id"]))["tags"], ["hot", "webinar"])

        await self.leads.bulk_remove_tags([a["id"]], ["webinar"], "agent-1")
        self.assertEqual((await self.leads.get_lead(a["id"]))["tags"], ["hot"])

        activities = await self.c.activity_log.get_activities_for_lead(a["id"])
        self.assertEqual(event_types(activities)[:2], ["tags_removed", "tags_added"])
        self.assertTrue(activities[0]["event_data"]["is_bulk"])

    async def test_bulk_delete_and_reassign(self):
        agent = await self.c.users.invite_user("ravi@mastry.in", "Ravi")
        a = await self._create()
        b = await self._create(phone="9988776655")

        results = await self.leads.bulk_reassign([a["id"], b["id"]], agent["id"], "admin")
        self.assertTrue(all(r["success"] for r in results))
        self.assertEqual((await self.leads.get_lead(a["id"]))["assigned_to"], agent["id"])

        results = await self.leads.bulk_delete([a["id"], a["id"]], "admin")
        self.assertEqual([r["success"] for r in results], [True, False])
        activities = await self.c.activity_log.get_activities_for_lead(a["id"])
        self.assertEqual(activities[0]["event_data"], {"is_bulk": True})

    async def test_reassign_to_unknown_agent(self):
        lead = await self._create()
        with self.assertRaises(ValidationError):
            await self.leads.update_lead(lead["id"], {"assigned_to": "nobody"}, "admin")

    async def test_list_filters(self):
        await self._create(tags=["webinar"])
        await self.leads.create_lead({"first_name": "Kiran", "phone_raw": "9988776655", "source": "Deftform"}, "system")

        self.assertEqual(len(await self.leads.list_leads(tag="webinar")), 1)
        self.assertEqual(len(await self.leads.list_leads(source="Deftform")), 1)
        self.assertEqual([l["first_name"] for l in await self.leads.list_leads(search="kiran")], ["Kiran"])
        self.assertEqual(len(await self.leads.list_leads(search="98765")), 1)

    async def test_events_reach_subscribers(self):
        await self.c.dispatcher.save_webhook("Sheets", "https://hooks.example.com/all", ["lead_created", "status_changed"])
        lead = await self._create()
        await self.leads.update_lead(lead["id"], {"status": "eligible"}, "agent-1")
        await self.leads.update_lead(lead["id"], {"first_name": "Ashu"}, "agent-1")

        events = [call["event"] for call in self.c.webhook_transport.calls]
        self.assertEqual(events, ["lead_created", "status_changed"])

if __name__ == '__main__':
    unittest.main()
