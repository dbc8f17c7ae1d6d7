"""
HOA Dues Engine -- Bulk Account Builder

Builds account snapshots for the whole membership roll from three bulk
queries (properties, current owners, assessments) and an in-memory join by
parcel id, instead of one aggregator call per parcel.

Filters (``AccountFilters``), any combination:
    dues_owed             keep accounts owing at least the threshold (0.01)
    skip_email            drop parcels that opted into email (UseEmail == 1)
    current_year_paid     assessments limited to the latest FY, paid
    current_year_unpaid   latest FY, unpaid and collectible; also applies
                          the dues-owed threshold
    test_email            only the parcel named by config duesEmailTestParcel

The latest FY is the maximum across every assessment, computed once.

Snapshots built here agree with ``AccountAggregator.get_account`` for the
same data on the property, current owner, derived assessments, totals and
payment terms.  They carry no payment-derived emails and no sales, which
would need per-parcel queries.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Mapping, Optional

from .aggregator import current_owner_of, payment_terms
from .calculator import calc_total_dues, derive_all
from .lookups import ConfigLookup, DUES_EMAIL_TEST_PARCEL
from .models import AccountSnapshot, Assessment, Owner, Property
from .recipients import dedupe_addresses
from .store import ASSESSMENTS, OWNERS, PROPERTIES, DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_DUES_OWED_THRESHOLD = Decimal("0.01")


@dataclass(frozen=True)
class AccountFilters:
    """Selection flags for ``BulkAccountBuilder.list_accounts``."""
    dues_owed: bool = False
    skip_email: bool = False
    current_year_paid: bool = False
    current_year_unpaid: bool = False
    test_email: bool = False


def build_account_from_lists(
    prop: Property,
    owners: list[Owner],
    assessments: list[Assessment],
    today: date,
    config: Optional[Mapping[str, str]] = None,
) -> AccountSnapshot:
    """Join pre-fetched rows for one parcel into a snapshot.

    ``owners`` and ``assessments`` may hold rows for other parcels; only
    those matching ``prop.parcel_id`` are used.
    """
    parcel_id = prop.parcel_id
    own = sorted(
        (o for o in owners if o.parcel_id == parcel_id),
        key=lambda o: o.owner_id,
        reverse=True,
    )
    records = sorted(
        (a for a in assessments if a.parcel_id == parcel_id),
        key=lambda a: a.fy,
        reverse=True,
    )

    snapshot = AccountSnapshot(parcel_id=parcel_id, property_rec=prop, owners=own)
    current = current_owner_of(own)
    if current is not None:
        snapshot.dues_email_addr = current.email_addr
        snapshot.email_addresses = dedupe_addresses(current.email_addresses)

    snapshot.assessments = derive_all(records, today)
    totals = calc_total_dues(records)
    snapshot.calc_lines = list(totals.lines)
    snapshot.total_due = totals.total_due
    snapshot.only_current_year_owed = totals.only_current_year_owed

    if config is not None:
        snapshot.payment_instructions, snapshot.payment_fee = payment_terms(
            snapshot.total_due, snapshot.only_current_year_owed, config,
        )
    return snapshot


class BulkAccountBuilder:
    """Snapshots for every parcel in one pass."""

    def __init__(
        self,
        store: DocumentStore,
        dues_owed_threshold: Decimal = DEFAULT_DUES_OWED_THRESHOLD,
    ) -> None:
        self.store = store
        self.config = ConfigLookup(store)
        self.dues_owed_threshold = dues_owed_threshold

    def list_accounts(
        self,
        filters: AccountFilters = AccountFilters(),
        *,
        today: Optional[date] = None,
    ) -> list[AccountSnapshot]:
        """Build and filter snapshots for the membership roll, ordered by parcel id."""
        today = today or date.today()

        test_parcel: Optional[str] = None
        if filters.test_email:
            test_parcel = self.config.get(DUES_EMAIL_TEST_PARCEL).strip()
            if not test_parcel:
                logger.warning("Test mode requested but %s is not configured", DUES_EMAIL_TEST_PARCEL)
                return []

        fy: Optional[int] = None
        if filters.current_year_paid or filters.current_year_unpaid:
            fy = self._max_fiscal_year()
            if fy is None:
                logger.info("No assessments on file; nothing to list")
                return []

        properties = self._fetch_properties(test_parcel)
        owners_by_parcel = self._group(
            Owner.from_doc(doc)
            for doc in self.store.query(OWNERS, where=lambda d: Owner.from_doc(d).current_owner)
        )
        assessments_by_parcel = self._group(
            a for a in (
                Assessment.from_doc(doc)
                for doc in self.store.query(ASSESSMENTS, order_by="FY", descending=True)
            )
            if self._assessment_selected(a, filters, fy)
        )
        config = self.config.as_dict()

        accounts: list[AccountSnapshot] = []
        for prop in properties:
            snapshot = build_account_from_lists(
                prop,
                owners_by_parcel.get(prop.parcel_id, []),
                assessments_by_parcel.get(prop.parcel_id, []),
                today,
                config,
            )
            if (filters.dues_owed or filters.current_year_unpaid) and \
                    snapshot.total_due < self.dues_owed_threshold:
                continue
            if filters.skip_email and prop.use_email:
                continue
            accounts.append(snapshot)

        logger.info(
            "Listed %d of %d properties (filters: %s)", len(accounts), len(properties), filters,
        )
        return accounts

    # -------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------

    def _max_fiscal_year(self) -> Optional[int]:
        doc = next(self.store.query(ASSESSMENTS, order_by="FY", descending=True, limit=1), None)
        if doc is None:
            return None
        return Assessment.from_doc(doc).fy

    def _fetch_properties(self, test_parcel: Optional[str]) -> list[Property]:
        where = None
        if test_parcel:
            where = lambda d: str(d.get("Parcel_ID", "")) == test_parcel  # noqa: E731
        return [
            Property.from_doc(doc)
            for doc in self.store.query(PROPERTIES, where=where, order_by="Parcel_ID")
        ]

    @staticmethod
    def _assessment_selected(assessment: Assessment, filters: AccountFilters, fy: Optional[int]) -> bool:
        if filters.current_year_paid:
            return assessment.fy == fy and assessment.paid
        if filters.current_year_unpaid:
            return assessment.fy == fy and not assessment.paid and not assessment.non_collectible
        return True

    @staticmethod
    def _group(rows) -> dict[str, list]:
        grouped: dict[str, list] = defaultdict(list)
        for row in rows:
            grouped[row.parcel_id].append(row)
        return grouped
