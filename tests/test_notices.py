"""Tests for hoa_dues.notices -- dues notice batches, orphans, payment confirmations.

Covers:
- One pending communication + one event per valid owner address
- Event payload matches the record it points at
- Invalid / duplicate / missing addresses produce nothing
- Actor validation
- Orphaned pending notices
- Payment confirmation requests
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from hoa_dues.errors import NotFoundError, ValidationFailure
from hoa_dues.models import DUES_EMAIL_SUBJECT, PAYMENT_EMAIL_SUBJECT, SEND_MAIL_EVENT_TYPE
from hoa_dues.notices import NoticeGenerator
from hoa_dues.store import COMMUNICATIONS, OWNERS, PAYMENTS, PatchOperation


@pytest.fixture
def generator(store, bus):
    return NoticeGenerator(store, bus)


def _comms(store):
    return list(store.query(COMMUNICATIONS, order_by="CreateTs"))


# ============================================================================
# Dues notice batch
# ============================================================================

class TestDuesNoticeBatch:

    def test_one_notice_per_valid_address(self, generator, store, bus, today):
        created = generator.create_dues_notice_batch("treasurer", today=today)
        assert created == 3
        assert len(_comms(store)) == 3
        assert len(bus.events) == 3
        addresses = sorted((e.data["parcelId"], e.data["emailAddr"]) for e in bus.events)
        assert addresses == [
            ("R100", "a@example.com"),
            ("R100", "b@example.com"),
            ("R200", "c@example.com"),
        ]

    def test_records_are_pending(self, generator, store, today):
        generator.create_dues_notice_batch("treasurer", today=today)
        for doc in _comms(store):
            assert doc["SentStatus"] == "N"
            assert doc["CommID"] == 9999
            assert doc["CommType"] == "Dues Notice"
            assert doc["CommDesc"] == "Sent to Owner email"
            assert doc["Email"] == 1
            assert doc["LastChangedBy"] == "treasurer"
            assert doc["CreateTs"]

    def test_event_points_at_its_record(self, generator, store, bus, today):
        generator.create_dues_notice_batch("treasurer", today=today)
        for event in bus.events:
            assert event.subject == DUES_EMAIL_SUBJECT
            assert event.event_type == SEND_MAIL_EVENT_TYPE
            record = store.get(COMMUNICATIONS, event.data["id"], event.data["parcelId"])
            assert record["EmailAddr"] == event.data["emailAddr"]
            assert event.data["mailType"] == "DuesNotice"

    def test_event_carries_total_due(self, generator, bus, today):
        generator.create_dues_notice_batch("treasurer", today=today)
        totals = {e.data["parcelId"]: e.data["totalDue"] for e in bus.events}
        assert totals == {"R100": 150.0, "R200": 310.25}

    def test_record_ids_unique(self, generator, store, today):
        generator.create_dues_notice_batch("treasurer", today=today)
        ids = [doc["id"] for doc in _comms(store)]
        assert len(set(ids)) == len(ids)

    def test_duplicate_addresses_collapse(self, generator, store, bus, today):
        store.patch(OWNERS, "3", "R200", [PatchOperation.set("EmailAddr2", "C@Example.com")])
        generator.create_dues_notice_batch("treasurer", today=today)
        assert sum(1 for e in bus.events if e.data["parcelId"] == "R200") == 1

    @pytest.mark.parametrize("email,email2", [
        ("", ""),
        ("   ", None),
        ("not-an-email", "bad-address"),
    ])
    def test_owing_account_without_valid_address_gets_nothing(self, generator, store, bus, today, email, email2):
        store.patch(OWNERS, "3", "R200", [
            PatchOperation.set("EmailAddr", email),
            PatchOperation.set("EmailAddr2", email2),
        ])
        assert generator.create_dues_notice_batch("treasurer", today=today) == 2
        assert {doc["Parcel_ID"] for doc in _comms(store)} == {"R100"}
        assert {e.data["parcelId"] for e in bus.events} == {"R100"}

    def test_no_current_owner_skipped(self, generator, store, bus, today):
        store.patch(OWNERS, "3", "R200", [PatchOperation.set("CurrentOwner", 0)])
        assert generator.create_dues_notice_batch("treasurer", today=today) == 2
        assert {e.data["parcelId"] for e in bus.events} == {"R100"}

    @pytest.mark.parametrize("actor", ["", "   ", None])
    def test_actor_required(self, generator, store, bus, actor):
        with pytest.raises(ValidationFailure):
            generator.create_dues_notice_batch(actor)
        assert _comms(store) == []
        assert bus.events == []

    def test_actor_trimmed(self, generator, store, today):
        generator.create_dues_notice_batch("  treasurer  ", today=today)
        assert {doc["LastChangedBy"] for doc in _comms(store)} == {"treasurer"}

    def test_nothing_owed_creates_nothing(self, generator, store, bus, today):
        for parcel_id in ("R100", "R200"):
            store.patch("hoa_assessments", f"{parcel_id}-2025", parcel_id, [PatchOperation.set("Paid", 1)])
        store.patch("hoa_assessments", "R200-2024", "R200", [PatchOperation.set("Paid", 1)])
        assert generator.create_dues_notice_batch("treasurer", today=today) == 0
        assert bus.events == []


# ============================================================================
# Orphans
# ============================================================================

class TestOrphanedNotices:

    def test_fresh_notices_are_not_orphans(self, generator, today):
        generator.create_dues_notice_batch("treasurer", today=today)
        assert generator.find_orphaned_notices() == []

    def test_old_pending_notices_listed(self, generator, store, today):
        generator.create_dues_notice_batch("treasurer", today=today)
        later = datetime.now(timezone.utc) + timedelta(days=2)
        orphans = generator.find_orphaned_notices(now=later)
        assert len(orphans) == 3

        sent = orphans[0]
        store.patch(COMMUNICATIONS, sent.id, sent.parcel_id, [PatchOperation.set("SentStatus", "Y")])
        remaining = generator.find_orphaned_notices(now=later)
        assert sent.id not in {c.id for c in remaining}
        assert len(remaining) == 2

    def test_explicit_age(self, generator, today):
        generator.create_dues_notice_batch("treasurer", today=today)
        later = datetime.now(timezone.utc) + timedelta(minutes=5)
        assert len(generator.find_orphaned_notices(timedelta(minutes=1), now=later)) == 3


# ============================================================================
# Payment confirmations
# ============================================================================

class TestPaymentConfirmation:

    def test_publishes_event(self, generator, bus):
        assert generator.request_payment_confirmation("P1", "R100") is True
        event = bus.events[0]
        assert event.subject == PAYMENT_EMAIL_SUBJECT
        assert event.event_type == SEND_MAIL_EVENT_TYPE
        assert event.data == {
            "id": "P1",
            "parcelId": "R100",
            "totalDue": 150.0,
            "emailAddr": "Payer@Example.org",
            "mailType": "PaymentConfirmation",
        }

    def test_already_sent(self, generator, store, bus):
        store.patch(PAYMENTS, "P1", "R100", [PatchOperation.set("paidEmailSent", "Y")])
        assert generator.request_payment_confirmation("P1", "R100") is False
        assert bus.events == []

    def test_invalid_payer_email(self, generator, store, bus, docs):
        store.create(PAYMENTS, docs.payment("P9", "R100", 2, "not-an-email", "2025-02-01"))
        assert generator.request_payment_confirmation("P9", "R100") is False
        assert bus.events == []

    def test_missing_payment(self, generator):
        with pytest.raises(NotFoundError):
            generator.request_payment_confirmation("P404", "R100")
