"""
HOA Dues Engine -- Dispatch Consumer

Handles one dispatch event: render the email, send it, mark the record sent.

Record state machine (communications: SentStatus, payments: paidEmailSent):

    N (pending) --confirmed send--> Y (sent)

  - The record is read first.  Already Y: nothing is sent again.
  - Send not confirmed: DeliveryFailure is raised, the record stays N and
    the transport retries or parks the event.
  - Send confirmed: one atomic patch sets the status to Y plus the
    LastChangedBy / LastChangedTs audit fields.  The patch only overwrites
    fields, so applying it twice leaves the same end state.
  - Send confirmed but the patch failed: DispatchRecordError is raised and
    logged at CRITICAL; a retry would email the recipient again.

Usage:
    consumer = DispatchConsumer(store, sender, sender_address="treasurer@example.org")
    consumer.handle_payload({"id": "...", "parcelId": "R1", "totalDue": 150.0,
                             "emailAddr": "owner@example.com"})
    consumer.run_outbox(outbox_bus)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from .aggregator import AccountAggregator
from .config import NoticeSettings
from .errors import DeliveryFailure, DispatchRecordError
from .events import ConsumeReport, OutboxEventBus, PublishedEvent
from .lookups import ConfigLookup
from .mailer import EmailSender, OutboundEmail
from .models import DispatchEvent, MailType, Payment, SentStatus
from .store import COMMUNICATIONS, PAYMENTS, DocumentStore, PatchOperation, now_iso
from .template_engine import RenderedEmail, TemplateEngine

logger = logging.getLogger(__name__)


class DispatchOutcome(Enum):
    SENT = "sent"
    ALREADY_SENT = "already_sent"


@dataclass(frozen=True)
class RecordKind:
    """Where a mail type's pending/sent record lives."""
    collection: str
    status_field: str
    address_field: str


RECORD_KINDS: dict[MailType, RecordKind] = {
    MailType.DUES_NOTICE: RecordKind(COMMUNICATIONS, "SentStatus", "EmailAddr"),
    MailType.PAYMENT_CONFIRMATION: RecordKind(PAYMENTS, "paidEmailSent", "payer_email"),
}


def mark_sent_operations(kind: RecordKind, actor: str, timestamp: str) -> list[PatchOperation]:
    """Overwrite-only operations that move a record to sent."""
    return [
        PatchOperation.set(kind.status_field, SentStatus.SENT.value),
        PatchOperation.set("LastChangedBy", actor),
        PatchOperation.set("LastChangedTs", timestamp),
    ]


class DispatchConsumer:
    """Sends the email for a dispatch event and records completion."""

    def __init__(
        self,
        store: DocumentStore,
        sender: EmailSender,
        templates: Optional[TemplateEngine] = None,
        sender_address: str = "",
        settings: Optional[NoticeSettings] = None,
    ) -> None:
        self.store = store
        self.sender = sender
        self.templates = templates or TemplateEngine()
        self.sender_address = sender_address
        self.settings = settings or NoticeSettings()
        self.aggregator = AccountAggregator(store, self.settings.payment_lookback_days)
        self.config = ConfigLookup(store)

    # -------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------

    def handle(self, event: DispatchEvent) -> DispatchOutcome:
        kind = RECORD_KINDS[event.mail_type]
        record = self.store.get(kind.collection, event.id, event.parcel_id)

        if SentStatus.from_value(record.get(kind.status_field)) is SentStatus.SENT:
            logger.info(
                "%s record %s already sent, skipping (parcel %s)",
                event.mail_type.value, event.id, event.parcel_id,
            )
            return DispatchOutcome.ALREADY_SENT

        rendered = self._render(event, record)
        recipient = event.email_addr or str(record.get(kind.address_field) or "").strip()
        message = OutboundEmail(
            subject=rendered.subject,
            html_body=rendered.html_body,
            text_body=rendered.text_body,
            sender_address=self.sender_address,
            recipients=(recipient,) if recipient else (),
        )

        result = self.sender.send(message)
        if not result.succeeded:
            logger.error(
                "%s send failed: parcel %s, id %s, email %s, totalDue %s: %s",
                event.mail_type.value, event.parcel_id, event.id, recipient,
                event.total_due, result.error or "no detail",
            )
            raise DeliveryFailure(
                f"{event.mail_type.value} send failed for {event.parcel_id}/{event.id}: {result.error}",
                event=event.context(),
            )

        try:
            self.store.patch(
                kind.collection,
                event.id,
                event.parcel_id,
                mark_sent_operations(kind, self.settings.dispatch_actor, now_iso()),
            )
        except Exception as exc:
            logger.critical(
                "Email SENT but %s record %s (parcel %s) was NOT marked sent; "
                "a retry will email %s again. message_id=%s error=%s",
                kind.collection, event.id, event.parcel_id, recipient, result.message_id, exc,
            )
            raise DispatchRecordError(
                f"Sent {event.mail_type.value} {event.id} but could not update {kind.collection}",
                event=event.context(),
                message_id=result.message_id,
            ) from exc

        logger.info(
            "Sent %s to %s and updated %s record, parcel %s",
            event.mail_type.value, recipient, kind.collection, event.parcel_id,
        )
        return DispatchOutcome.SENT

    def handle_payload(self, payload: Mapping[str, Any]) -> DispatchOutcome:
        """Parse a raw bus payload and handle it."""
        return self.handle(DispatchEvent.from_payload(dict(payload)))

    def handle_published(self, event: PublishedEvent) -> DispatchOutcome:
        logger.debug("Event %s %s/%s", event.event_id, event.subject, event.event_type)
        return self.handle_payload(event.data)

    def run_outbox(self, bus: OutboxEventBus, limit: int = 100) -> ConsumeReport:
        """Drain due events from the outbox through ``handle``."""
        report = bus.consume(self.handle_published, limit=limit)
        logger.info(
            "Dispatch run: %d delivered, %d retried, %d parked",
            report.delivered, report.retried, report.parked,
        )
        return report

    # -------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------

    def _render(self, event: DispatchEvent, record: dict[str, Any]) -> RenderedEmail:
        hoa = self.config.hoa_info()
        snapshot = self.aggregator.get_account(event.parcel_id)
        if event.mail_type is MailType.PAYMENT_CONFIRMATION:
            return self.templates.render_payment_confirmation(
                Payment.from_doc(record),
                hoa,
                snapshot,
                subject_suffix=self.settings.payment_subject_suffix,
            )
        return self.templates.render_dues_notice(
            snapshot,
            hoa,
            total_due=event.total_due,
            subject_suffix=self.settings.subject_suffix,
        )
