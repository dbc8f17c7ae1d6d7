"""Tests for hoa_dues.dispatch -- the N -> Y dispatch consumer.

Covers:
- Confirmed send marks the record sent with the dispatch audit fields
- Re-delivered events never send twice
- Provider failure leaves the record pending and raises DeliveryFailure
- Record update failure after a send raises DispatchRecordError
- Rendered content and recipient
- Payment confirmations mark paidEmailSent
- Outbox-driven runs: delivered, retried and parked events
"""

from decimal import Decimal

import pytest

from hoa_dues.dispatch import (
    RECORD_KINDS,
    DispatchConsumer,
    DispatchOutcome,
    mark_sent_operations,
)
from hoa_dues.errors import DeliveryFailure, DispatchRecordError, NotFoundError, ValidationFailure
from hoa_dues.events import STATUS_DELIVERED, STATUS_PARKED, STATUS_PENDING, OutboxEventBus
from hoa_dues.models import DispatchEvent, MailType
from hoa_dues.notices import NoticeGenerator
from hoa_dues.store import COMMUNICATIONS, PAYMENTS, PatchOp


def _consumer(store, sender):
    return DispatchConsumer(store, sender, sender_address="treasurer@example.org")


def _queue_notices(store, bus, today):
    NoticeGenerator(store, bus).create_dues_notice_batch("treasurer", today=today)
    return [event.data for event in bus.drain()]


def _record(store, payload):
    return store.get(COMMUNICATIONS, payload["id"], payload["parcelId"])


# ============================================================================
# Happy path
# ============================================================================

class TestDispatchSend:

    def test_send_marks_record_sent(self, store, bus, sender, today):
        payloads = _queue_notices(store, bus, today)
        consumer = _consumer(store, sender)

        for payload in payloads:
            assert consumer.handle_payload(payload) is DispatchOutcome.SENT

        assert len(sender.sent) == 3
        for payload in payloads:
            record = _record(store, payload)
            assert record["SentStatus"] == "Y"
            assert record["LastChangedBy"] == "SendMail"
            assert record["LastChangedTs"]

    def test_message_content(self, store, bus, sender, today):
        payload = next(p for p in _queue_notices(store, bus, today) if p["parcelId"] == "R200")
        _consumer(store, sender).handle_payload(payload)

        message = sender.sent[0]
        assert message.recipients == ("c@example.com",)
        assert message.sender_address == "treasurer@example.org"
        assert message.subject == "GRHA Dues Notice"
        assert "R200" in message.html_body
        assert "$310.25" in message.html_body
        assert "Oct 1, 2024 thru Sept 30, 2025" in message.html_body
        assert "Total Outstanding" in message.text_body

    def test_event_total_is_shown(self, store, sender):
        store.create(COMMUNICATIONS, {"id": "c1", "Parcel_ID": "R100", "SentStatus": "N",
                                      "EmailAddr": "a@example.com"})
        event = DispatchEvent(id="c1", parcel_id="R100", email_addr="a@example.com",
                              total_due=Decimal("123.45"))
        _consumer(store, sender).handle(event)
        assert "$123.45" in sender.sent[0].html_body

    def test_falls_back_to_record_address(self, store, sender):
        store.create(COMMUNICATIONS, {"id": "c1", "Parcel_ID": "R100", "SentStatus": "N",
                                      "EmailAddr": "a@example.com"})
        _consumer(store, sender).handle_payload({"id": "c1", "parcelId": "R100", "totalDue": 150})
        assert sender.sent[0].recipients == ("a@example.com",)


# ============================================================================
# Idempotency
# ============================================================================

class TestAlreadySent:

    def test_second_delivery_sends_nothing(self, store, bus, sender, today):
        payload = _queue_notices(store, bus, today)[0]
        consumer = _consumer(store, sender)
        consumer.handle_payload(payload)
        before = _record(store, payload)

        assert consumer.handle_payload(payload) is DispatchOutcome.ALREADY_SENT
        assert len(sender.sent) == 1
        assert _record(store, payload) == before

    def test_mark_sent_operations_overwrite_only(self):
        ops = mark_sent_operations(RECORD_KINDS[MailType.DUES_NOTICE], "SendMail", "2025-01-01T00:00:00+00:00")
        assert {op.op for op in ops} == {PatchOp.SET}
        assert [op.path for op in ops] == ["SentStatus", "LastChangedBy", "LastChangedTs"]


# ============================================================================
# Failures
# ============================================================================

class TestDispatchFailures:

    def test_provider_failure_leaves_record_pending(self, store, bus, failing_sender, today):
        payload = _queue_notices(store, bus, today)[0]
        with pytest.raises(DeliveryFailure) as exc_info:
            _consumer(store, failing_sender).handle_payload(payload)

        assert exc_info.value.retryable is True
        assert exc_info.value.event["parcelId"] == payload["parcelId"]
        assert _record(store, payload)["SentStatus"] == "N"

    def test_retry_after_provider_failure_sends_once(self, store, bus, sender, today):
        payload = _queue_notices(store, bus, today)[0]
        sender.fail = True
        consumer = _consumer(store, sender)
        with pytest.raises(DeliveryFailure):
            consumer.handle_payload(payload)

        sender.fail = False
        assert consumer.handle_payload(payload) is DispatchOutcome.SENT
        assert len(sender.sent) == 1

    def test_patch_failure_after_send(self, flaky_store, bus, sender, today):
        payload = _queue_notices(flaky_store, bus, today)[0]
        flaky_store.fail_patches = True

        with pytest.raises(DispatchRecordError) as exc_info:
            _consumer(flaky_store, sender).handle_payload(payload)

        assert len(sender.sent) == 1
        assert exc_info.value.retryable is False
        assert exc_info.value.message_id == "<msg-1@test>"
        assert _record(flaky_store, payload)["SentStatus"] == "N"

    def test_patch_failure_logged_critical(self, flaky_store, bus, sender, today, caplog):
        payload = _queue_notices(flaky_store, bus, today)[0]
        flaky_store.fail_patches = True
        with pytest.raises(DispatchRecordError):
            _consumer(flaky_store, sender).handle_payload(payload)
        assert any(r.levelname == "CRITICAL" for r in caplog.records)

    def test_missing_record(self, store, sender):
        with pytest.raises(NotFoundError):
            _consumer(store, sender).handle_payload({"id": "nope", "parcelId": "R100"})
        assert sender.sent == []

    def test_malformed_payload(self, store, sender):
        with pytest.raises(ValidationFailure):
            _consumer(store, sender).handle_payload({"parcelId": "R100"})


# ============================================================================
# Payment confirmations
# ============================================================================

class TestPaymentConfirmationDispatch:

    def test_marks_payment_sent(self, store, bus, sender):
        NoticeGenerator(store, bus).request_payment_confirmation("P1", "R100")
        payload = bus.drain()[0].data

        assert _consumer(store, sender).handle_payload(payload) is DispatchOutcome.SENT

        payment = store.get(PAYMENTS, "P1", "R100")
        assert payment["paidEmailSent"] == "Y"
        assert payment["LastChangedBy"] == "SendMail"
        message = sender.sent[0]
        assert message.subject == "GRHA Payment Confirmation"
        assert message.recipients == ("Payer@Example.org",)
        assert "Thank you for your payment" in message.html_body
        assert "Jan 15, 2025" in message.html_body
        assert "TX-P1" in message.html_body

    def test_already_confirmed(self, store, sender):
        payload = {"id": "P1", "parcelId": "R100", "mailType": "PaymentConfirmation",
                   "emailAddr": "payer@example.org"}
        consumer = _consumer(store, sender)
        consumer.handle_payload(payload)
        assert consumer.handle_payload(payload) is DispatchOutcome.ALREADY_SENT
        assert len(sender.sent) == 1


# ============================================================================
# Outbox runs
# ============================================================================

class TestRunOutbox:

    @pytest.fixture
    def outbox(self, tmp_path):
        return OutboxEventBus(tmp_path / "outbox.db", max_attempts=3)

    def test_all_delivered(self, store, outbox, sender, today):
        NoticeGenerator(store, outbox).create_dues_notice_batch("treasurer", today=today)
        report = _consumer(store, sender).run_outbox(outbox)

        assert report.delivered == 3
        assert outbox.count(STATUS_DELIVERED) == 3
        assert all(doc["SentStatus"] == "Y" for doc in store.query(COMMUNICATIONS))

    def test_provider_failures_are_retried(self, store, outbox, failing_sender, today):
        NoticeGenerator(store, outbox).create_dues_notice_batch("treasurer", today=today)
        report = _consumer(store, failing_sender).run_outbox(outbox)

        assert report.retried == 3
        assert outbox.count(STATUS_PENDING) == 3
        assert all(doc["SentStatus"] == "N" for doc in store.query(COMMUNICATIONS))

    def test_record_error_is_parked_not_retried(self, flaky_store, outbox, sender, today):
        NoticeGenerator(flaky_store, outbox).create_dues_notice_batch("treasurer", today=today)
        flaky_store.fail_patches = True
        report = _consumer(flaky_store, sender).run_outbox(outbox)

        assert report.parked == 3
        assert outbox.count(STATUS_PARKED) == 3
        assert len(sender.sent) == 3

    def test_second_run_is_a_no_op(self, store, outbox, sender, today):
        NoticeGenerator(store, outbox).create_dues_notice_batch("treasurer", today=today)
        consumer = _consumer(store, sender)
        consumer.run_outbox(outbox)
        report = consumer.run_outbox(outbox)
        assert report.processed == 0
        assert len(sender.sent) == 3
