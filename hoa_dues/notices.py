"""
HOA Dues Engine -- Notice Generator

Turns "amount owed" into pending communication records and dispatch events:

    BulkAccountBuilder (dues owed) -> per valid owner address:
        create hoa_communications record  (SentStatus = "N")
        publish DuesEmailRequest/SendMail {id, parcelId, totalDue, emailAddr, mailType}

Fan-out is at-least-once.  A failure between creating a record and
publishing its event leaves a pending record with no event;
``find_orphaned_notices`` lists those for an operator.  Nothing re-drives
them automatically.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from .bulk import AccountFilters, BulkAccountBuilder
from .config import NoticeSettings
from .errors import ValidationFailure
from .events import EventPublisher
from .models import (
    DUES_EMAIL_SUBJECT,
    PAYMENT_EMAIL_SUBJECT,
    SEND_MAIL_EVENT_TYPE,
    AccountSnapshot,
    Communication,
    DispatchEvent,
    MailType,
    Payment,
    SentStatus,
)
from .recipients import valid_recipients
from .store import COMMUNICATIONS, PAYMENTS, DocumentStore, now_iso

logger = logging.getLogger(__name__)


class NoticeGenerator:
    """Creates dues-notice communications and publishes their dispatch events."""

    def __init__(
        self,
        store: DocumentStore,
        publisher: EventPublisher,
        builder: Optional[BulkAccountBuilder] = None,
        settings: Optional[NoticeSettings] = None,
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.settings = settings or NoticeSettings()
        self.builder = builder or BulkAccountBuilder(store, self.settings.threshold)

    # -------------------------------------------------------------------
    # Dues notices
    # -------------------------------------------------------------------

    def create_dues_notice_batch(self, actor: str, *, today: Optional[date] = None) -> int:
        """Create one pending notice per valid owner address of every
        account that owes dues.

        Returns:
            Number of notices created (records written and events published).
        """
        if not actor or not actor.strip():
            raise ValidationFailure("actor is required", "actor")
        actor = actor.strip()

        accounts = self.builder.list_accounts(AccountFilters(dues_owed=True), today=today)
        created = 0
        skipped = 0
        for snapshot in accounts:
            count = self._notify_account(snapshot, actor)
            if count == 0:
                skipped += 1
            created += count

        logger.info(
            "Dues notice batch by %s: %d notice(s) for %d account(s), %d account(s) without a valid email",
            actor, created, len(accounts) - skipped, skipped,
        )
        return created

    def _notify_account(self, snapshot: AccountSnapshot, actor: str) -> int:
        owner = snapshot.current_owner
        if owner is None:
            logger.warning("Property %s owes %s but has no current owner", snapshot.parcel_id, snapshot.total_due)
            return 0

        addresses = valid_recipients([owner.email_addr, owner.email_addr2])
        if not addresses:
            logger.debug("Property %s has no valid owner email, skipping", snapshot.parcel_id)
            return 0

        for address in addresses:
            now = now_iso()
            comm = Communication(
                id=str(uuid.uuid4()),
                parcel_id=snapshot.parcel_id,
                owner_id=owner.owner_id,
                comm_id=self.settings.comm_id,
                create_ts=now,
                comm_type=self.settings.comm_type,
                comm_desc=self.settings.comm_desc,
                mailing_name=owner.mailing_name,
                email=True,
                email_addr=address,
                sent_status=SentStatus.PENDING,
                last_changed_by=actor,
                last_changed_ts=now,
            )
            self.store.create(COMMUNICATIONS, comm.to_doc())

            event = DispatchEvent(
                id=comm.id,
                parcel_id=snapshot.parcel_id,
                email_addr=address,
                total_due=snapshot.total_due,
                mail_type=MailType.DUES_NOTICE,
            )
            self.publisher.publish(DUES_EMAIL_SUBJECT, SEND_MAIL_EVENT_TYPE, event.to_payload())
            logger.debug("Queued dues notice %s for %s <%s>", comm.id, snapshot.parcel_id, address)
        return len(addresses)

    def find_orphaned_notices(
        self,
        older_than: Optional[timedelta] = None,
        *,
        now: Optional[datetime] = None,
    ) -> list[Communication]:
        """Pending dues-notice records created before ``now - older_than``."""
        older_than = older_than if older_than is not None else timedelta(hours=self.settings.orphan_age_hours)
        cutoff = (now or datetime.now(timezone.utc)) - older_than

        def _is_orphan(doc: dict) -> bool:
            comm = Communication.from_doc(doc)
            if comm.comm_type != self.settings.comm_type or comm.is_sent:
                return False
            try:
                created = datetime.fromisoformat(comm.create_ts)
            except ValueError:
                return False
            if created.tzinfo is None:
                created = created.replace(tzinfo=timezone.utc)
            return created < cutoff

        return [
            Communication.from_doc(doc)
            for doc in self.store.query(COMMUNICATIONS, where=_is_orphan, order_by="CreateTs")
        ]

    # -------------------------------------------------------------------
    # Payment confirmations
    # -------------------------------------------------------------------

    def request_payment_confirmation(self, payment_id: str, parcel_id: str) -> bool:
        """Publish a payment-confirmation event for one payment.

        Returns False (and publishes nothing) when the confirmation was
        already sent or the payer has no valid email.
        """
        payment = Payment.from_doc(self.store.get(PAYMENTS, payment_id, parcel_id))
        if payment.paid_email_sent is SentStatus.SENT:
            logger.info("Payment %s confirmation already sent", payment_id)
            return False
        addresses = valid_recipients([payment.payer_email])
        if not addresses:
            logger.warning("Payment %s has no valid payer email", payment_id)
            return False

        event = DispatchEvent(
            id=payment.id,
            parcel_id=payment.parcel_id,
            email_addr=addresses[0],
            total_due=payment.payment_amt,
            mail_type=MailType.PAYMENT_CONFIRMATION,
        )
        self.publisher.publish(PAYMENT_EMAIL_SUBJECT, SEND_MAIL_EVENT_TYPE, event.to_payload())
        return True
