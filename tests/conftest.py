"""Shared fixtures: a seeded membership roll, event buses and email senders.

Seeded parcels (reference date 2025-03-01, latest fiscal year 2025):

    R100  owner #2 (current, two emails) + owner #1 (prior)
          FY2025 unpaid $150, FY2024 paid            -> owes $150, current year only
    R200  owner #3 (one valid email, one invalid)
          FY2025 unpaid $150, FY2024 unpaid $150 + $10.25 interest
                                                     -> owes $310.25, past years too
    R300  owner #4 (no email)  FY2025 paid           -> owes nothing
    R400  owner #5             FY2025 non-collectible -> owes nothing
"""

from datetime import date
from types import SimpleNamespace

import pytest

from hoa_dues.errors import ThrottledError
from hoa_dues.events import InMemoryEventBus
from hoa_dues.mailer import OutboundEmail, SendResult
from hoa_dues.store import (
    ASSESSMENTS,
    COMMUNICATIONS,
    CONFIG,
    OWNERS,
    PAYMENTS,
    PROPERTIES,
    SALES,
    InMemoryDocumentStore,
    SqliteDocumentStore,
)

TODAY = date(2025, 3, 1)

HOA_CONFIG = {
    "hoaName": "Grand Ridge Homeowners Association",
    "hoaNameShort": "GRHA",
    "hoaAddress1": "PO Box 100",
    "hoaAddress2": "Springfield, OH 45501",
    "duesUrl": "https://example.org/dues",
    "duesNotes": "<i>Thank you for supporting the neighborhood.</i>",
    "OnlinePaymentInstructions": "Pay online with a card or bank transfer.",
    "OfflinePaymentInstructions": "Past dues must be paid by check.",
    "paymentFee": "3.50",
    "duesEmailTestParcel": "R300",
}


def property_doc(parcel_id, location, owner_id, use_email=0, **extra):
    doc = {
        "id": parcel_id,
        "Parcel_ID": parcel_id,
        "OwnerID": owner_id,
        "Mailing_Name": "",
        "Parcel_Location": location,
        "Owner_Name1": "",
        "Owner_Name2": "",
        "Owner_Phone": "",
        "UseEmail": use_email,
        "Comments": "",
    }
    doc.update(extra)
    return doc


def owner_doc(owner_id, parcel_id, current, mailing_name, email="", email2="", **extra):
    doc = {
        "id": str(owner_id),
        "OwnerID": owner_id,
        "Parcel_ID": parcel_id,
        "CurrentOwner": 1 if current else 0,
        "Owner_Name1": mailing_name,
        "Owner_Name2": "",
        "Mailing_Name": mailing_name,
        "Owner_Phone": "555-0100",
        "EmailAddr": email,
        "EmailAddr2": email2,
    }
    doc.update(extra)
    return doc


def assessment_doc(parcel_id, fy, dues=150.0, paid=0, **extra):
    doc = {
        "id": f"{parcel_id}-{fy}",
        "Parcel_ID": parcel_id,
        "FY": fy,
        "OwnerID": 0,
        "DuesAmt": dues,
        "Paid": paid,
        "NonCollectible": 0,
        "DateDue": "",
        "DatePaid": "",
        "Lien": 0,
        "Disposition": "",
        "FilingFee": 0.0,
        "ReleaseFee": 0.0,
        "AssessmentInterest": 0.0,
        "FilingFeeInterest": 0.0,
        "BankFee": 0.0,
        "StopInterestCalc": 0,
    }
    doc.update(extra)
    return doc


def payment_doc(payment_id, parcel_id, owner_id, email, payment_date, amount=150.0, sent="N"):
    return {
        "id": payment_id,
        "Parcel_ID": parcel_id,
        "OwnerID": owner_id,
        "payer_email": email,
        "payer_name": "Pat Payer",
        "payment_date": payment_date,
        "payment_amt": amount,
        "txn_id": f"TX-{payment_id}",
        "paidEmailSent": sent,
    }


def seed_documents(store):
    """Load the reference membership roll into ``store``."""
    for name, value in HOA_CONFIG.items():
        store.create(CONFIG, {"id": name, "ConfigName": name, "ConfigValue": value, "ConfigDesc": ""})

    store.create(PROPERTIES, property_doc("R100", "12 Oak Lane", 2, use_email=1))
    store.create(PROPERTIES, property_doc("R200", "14 Oak Lane", 3))
    store.create(PROPERTIES, property_doc("R300", "16 Oak Lane", 4))
    store.create(PROPERTIES, property_doc("R400", "18 Oak Lane", 5))

    store.create(OWNERS, owner_doc(1, "R100", False, "Previous Owner", "prior@example.com"))
    store.create(OWNERS, owner_doc(2, "R100", True, "Alex Adams", "a@example.com", "b@example.com"))
    store.create(OWNERS, owner_doc(3, "R200", True, "Casey Clark", "c@example.com", "bad-address"))
    store.create(OWNERS, owner_doc(4, "R300", True, "Dana Diaz"))
    store.create(OWNERS, owner_doc(5, "R400", True, "Eli Evans", "e@example.com"))

    store.create(ASSESSMENTS, assessment_doc("R100", 2025))
    store.create(ASSESSMENTS, assessment_doc("R100", 2024, paid=1, DatePaid="2023-11-02"))
    store.create(ASSESSMENTS, assessment_doc("R200", 2025))
    store.create(ASSESSMENTS, assessment_doc("R200", 2024, AssessmentInterest=10.25))
    store.create(ASSESSMENTS, assessment_doc("R300", 2025, paid=1))
    store.create(ASSESSMENTS, assessment_doc("R400", 2025, NonCollectible=1))

    store.create(PAYMENTS, payment_doc("P1", "R100", 2, "Payer@Example.org", "2025-01-15"))
    store.create(PAYMENTS, payment_doc("P2", "R100", 2, "old@example.org", "2023-01-15"))
    store.create(PAYMENTS, payment_doc("P3", "R100", 2, "A@EXAMPLE.COM", "2025-02-01"))
    store.create(PAYMENTS, payment_doc("P4", "R100", 1, "prior-payer@example.org", "2025-02-01"))

    store.create(SALES, {
        "id": "S1", "Parcel_ID": "R100", "SALEDT": "2019-06-01", "PRICE": "250000",
        "OLDOWN": "Original Builder", "OWNERNAME1": "Previous Owner",
        "CreateTimestamp": "2019-06-05T00:00:00+00:00",
    })
    store.create(SALES, {
        "id": "S2", "Parcel_ID": "R100", "SALEDT": "2022-08-15", "PRICE": "310000",
        "OLDOWN": "Previous Owner", "OWNERNAME1": "Alex Adams",
        "CreateTimestamp": "2022-08-20T00:00:00+00:00",
    })
    return store


class RecordingSender:
    """EmailSender double that records messages and can be told to fail."""

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send(self, message: OutboundEmail) -> SendResult:
        if self.fail:
            return SendResult(False, error="provider unavailable")
        self.sent.append(message)
        return SendResult(True, message_id=f"<msg-{len(self.sent)}@test>")


class PatchFailingStore(InMemoryDocumentStore):
    """In-memory store whose patches on one collection always fail."""

    def __init__(self, failing_collection=COMMUNICATIONS):
        super().__init__()
        self.failing_collection = failing_collection
        self.fail_patches = False

    def patch(self, collection, key, partition_key, operations):
        if self.fail_patches and collection == self.failing_collection:
            raise ThrottledError("store busy")
        return super().patch(collection, key, partition_key, operations)


@pytest.fixture
def today():
    return TODAY


@pytest.fixture
def store():
    return seed_documents(InMemoryDocumentStore())


@pytest.fixture
def sqlite_store(tmp_path):
    return seed_documents(SqliteDocumentStore(tmp_path / "hoa.db"))


@pytest.fixture
def flaky_store():
    return seed_documents(PatchFailingStore())


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def failing_sender():
    return RecordingSender(fail=True)


@pytest.fixture
def docs():
    """Document builders for tests that need records beyond the seeded roll."""
    return SimpleNamespace(
        property=property_doc,
        owner=owner_doc,
        assessment=assessment_doc,
        payment=payment_doc,
        seed=seed_documents,
        hoa_config=dict(HOA_CONFIG),
    )
