"""
HOA Dues Engine -- Account Aggregator

Builds one ``AccountSnapshot`` for a parcel by reading every collection
that describes it:

    hoa_properties    the parcel itself (missing is not an error here)
    hoa_owners        owner history, newest OwnerID first
    hoa_payments      recent electronic payments (extra contact emails)
    hoa_assessments   fiscal-year ledger -> derived views -> dues totals
    hoa_config        payment instructions and fee (only when money is owed)
    hoa_sales         sale history

Read-only.  Store errors propagate unchanged; the aggregator never
substitutes defaults for money fields.

Usage:
    from hoa_dues.aggregator import AccountAggregator

    aggregator = AccountAggregator(store)
    snapshot = aggregator.get_account("R12345")
    snapshot = aggregator.get_account("R12345", fiscal_year="LATEST")
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Mapping, Optional

from .calculator import calc_total_dues, derive_all
from .errors import NotFoundError, ValidationFailure
from .lookups import (
    ConfigLookup,
    OFFLINE_PAYMENT_INSTRUCTIONS,
    ONLINE_PAYMENT_INSTRUCTIONS,
    PAYMENT_FEE,
)
from .models import (
    AccountSnapshot,
    Assessment,
    Communication,
    ConfigEntry,
    Owner,
    Payment,
    Property,
    Sale,
)
from .money import Money
from .recipients import dedupe_addresses
from .store import (
    ASSESSMENTS,
    COMMUNICATIONS,
    OWNERS,
    PAYMENTS,
    PROPERTIES,
    SALES,
    DocumentStore,
)

logger = logging.getLogger(__name__)

LATEST_FISCAL_YEAR = "LATEST"

PAYMENT_CONFIG_KEYS = (OFFLINE_PAYMENT_INSTRUCTIONS, ONLINE_PAYMENT_INSTRUCTIONS, PAYMENT_FEE)


# ---------------------------------------------------------------------------
# Helpers shared with the bulk builder
# ---------------------------------------------------------------------------

def payment_terms(
    total_due: Decimal,
    only_current_year_owed: bool,
    config: Mapping[str, str],
) -> tuple[str, Decimal]:
    """Instructions text and fee to show for a balance.

    Nothing is shown when nothing is owed.  Online instructions are only
    offered when the balance is the current year's dues alone.

    Raises:
        ValidationFailure: money is owed and ``paymentFee`` is blank,
            missing or not an amount.
    """
    if total_due <= 0:
        return "", Decimal("0")
    raw_fee = config.get(PAYMENT_FEE)
    if raw_fee is None or not str(raw_fee).strip():
        raise ValidationFailure(f"{PAYMENT_FEE} is not configured", PAYMENT_FEE)
    fee = Money.coerce(raw_fee, PAYMENT_FEE).amount
    if only_current_year_owed:
        return config.get(ONLINE_PAYMENT_INSTRUCTIONS, ""), fee
    return config.get(OFFLINE_PAYMENT_INSTRUCTIONS, ""), fee


def current_owner_of(owners: list[Owner]) -> Optional[Owner]:
    for owner in owners:
        if owner.current_owner:
            return owner
    return None


def _parse_fiscal_year(fiscal_year: str | int) -> int:
    try:
        return int(str(fiscal_year).strip())
    except ValueError:
        raise ValidationFailure(f"not a fiscal year: {fiscal_year!r}", "fiscal_year") from None


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------

class AccountAggregator:
    """Single-parcel account lookups.

    Attributes:
        store: The injected document store.
        config: Lookup over the ``hoa_config`` collection.
        payment_lookback_days: How far back payments contribute emails.
        recent_notice_limit: Default row cap for ``list_recent_notice_emails``.
    """

    def __init__(
        self,
        store: DocumentStore,
        payment_lookback_days: int = 365,
        recent_notice_limit: int = 200,
    ) -> None:
        self.store = store
        self.config = ConfigLookup(store)
        self.payment_lookback_days = payment_lookback_days
        self.recent_notice_limit = recent_notice_limit

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------

    def get_account(
        self,
        property_id: str,
        owner_id: Optional[int | str] = None,
        fiscal_year: Optional[str | int] = None,
        sale_date: Optional[str] = None,
        *,
        today: Optional[date] = None,
    ) -> AccountSnapshot:
        """Assemble the account snapshot for one parcel.

        Args:
            property_id: Parcel id (also the partition key).
            owner_id: Restrict owners to this one record.  Default: full
                owner history, newest first.
            fiscal_year: None or "" for the full ledger, "LATEST" for the
                most recent year only, otherwise one exact fiscal year.
            sale_date: Restrict sales to this SALEDT.  Default: all sales,
                newest first.
            today: Reference date for delinquency.  Defaults to today.

        Returns:
            A freshly built AccountSnapshot.
        """
        today = today or date.today()
        snapshot = AccountSnapshot(parcel_id=property_id)

        snapshot.property_rec = self._fetch_property(property_id)
        snapshot.owners = self._fetch_owners(property_id, owner_id)

        current = current_owner_of(snapshot.owners)
        if current is not None:
            snapshot.dues_email_addr = current.email_addr
            snapshot.email_addresses = dedupe_addresses(current.email_addresses)
            self._add_payment_emails(snapshot, current, today)

        records = self._fetch_assessments(property_id, fiscal_year)
        snapshot.assessments = derive_all(records, today)

        totals = calc_total_dues(records)
        snapshot.calc_lines = list(totals.lines)
        snapshot.total_due = totals.total_due
        snapshot.only_current_year_owed = totals.only_current_year_owed

        if snapshot.total_due > 0:
            config = {key: self.config.get(key) for key in PAYMENT_CONFIG_KEYS}
            snapshot.payment_instructions, snapshot.payment_fee = payment_terms(
                snapshot.total_due, snapshot.only_current_year_owed, config,
            )

        snapshot.sales = self._fetch_sales(property_id, sale_date)

        logger.debug(
            "Built account %s: %d owner(s), %d assessment(s), total due %s",
            property_id, len(snapshot.owners), len(snapshot.assessments), snapshot.total_due,
        )
        return snapshot

    def list_communications(self, property_id: str) -> list[Communication]:
        """Communications for one parcel, newest first."""
        return [
            Communication.from_doc(doc)
            for doc in self.store.query(
                COMMUNICATIONS, partition_key=property_id, order_by="CreateTs", descending=True,
            )
        ]

    def list_recent_notice_emails(self, limit: Optional[int] = None) -> list[Communication]:
        """Email communications across all parcels, newest first."""
        limit = limit if limit is not None else self.recent_notice_limit
        return [
            Communication.from_doc(doc)
            for doc in self.store.query(
                COMMUNICATIONS,
                where=lambda d: Communication.from_doc(d).email,
                order_by="CreateTs",
                descending=True,
                limit=limit,
            )
        ]

    def get_config_value(self, name: str) -> str:
        return self.config.get(name)

    def list_config(self) -> list[ConfigEntry]:
        return self.config.list_entries()

    # -------------------------------------------------------------------
    # Internal fetches
    # -------------------------------------------------------------------

    def _fetch_property(self, property_id: str) -> Optional[Property]:
        try:
            return Property.from_doc(self.store.get(PROPERTIES, property_id, property_id))
        except NotFoundError:
            logger.info("Property %s not found", property_id)
            return None

    def _fetch_owners(self, property_id: str, owner_id: Optional[int | str]) -> list[Owner]:
        if owner_id is not None and str(owner_id).strip():
            try:
                doc = self.store.get(OWNERS, str(owner_id).strip(), property_id)
            except NotFoundError:
                logger.info("Owner %s not found for property %s", owner_id, property_id)
                return []
            return [Owner.from_doc(doc)]
        return [
            Owner.from_doc(doc)
            for doc in self.store.query(
                OWNERS, partition_key=property_id, order_by="OwnerID", descending=True,
            )
        ]

    def _add_payment_emails(self, snapshot: AccountSnapshot, owner: Owner, today: date) -> None:
        """Append payer emails from the last lookback window.  Never removes."""
        cutoff = today - timedelta(days=self.payment_lookback_days)
        known = {addr.lower() for addr in snapshot.email_addresses}
        for doc in self.store.query(PAYMENTS, partition_key=snapshot.parcel_id):
            payment = Payment.from_doc(doc)
            if payment.owner_id != owner.owner_id:
                continue
            if payment.payment_date is None or payment.payment_date < cutoff:
                continue
            email = payment.payer_email.strip().lower()
            if email and email not in known:
                snapshot.email_addresses.append(email)
                known.add(email)

    def _fetch_assessments(
        self,
        property_id: str,
        fiscal_year: Optional[str | int],
    ) -> list[Assessment]:
        if fiscal_year is None or str(fiscal_year).strip() == "":
            docs = self.store.query(
                ASSESSMENTS, partition_key=property_id, order_by="FY", descending=True,
            )
        elif str(fiscal_year).strip().upper() == LATEST_FISCAL_YEAR:
            docs = self.store.query(
                ASSESSMENTS, partition_key=property_id, order_by="FY", descending=True, limit=1,
            )
        else:
            fy = _parse_fiscal_year(fiscal_year)
            docs = self.store.query(
                ASSESSMENTS,
                partition_key=property_id,
                where=lambda d: Assessment.from_doc(d).fy == fy,
            )
        return [Assessment.from_doc(doc) for doc in docs]

    def _fetch_sales(self, property_id: str, sale_date: Optional[str]) -> list[Sale]:
        if sale_date:
            docs = self.store.query(
                SALES,
                partition_key=property_id,
                where=lambda d: str(d.get("SALEDT", "")).strip() == str(sale_date).strip(),
            )
        else:
            docs = self.store.query(
                SALES, partition_key=property_id, order_by="CreateTimestamp", descending=True,
            )
        return [Sale.from_doc(doc) for doc in docs]
