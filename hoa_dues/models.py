"""Data models for the HOA dues engine.

All models are plain dataclasses with type hints.  Each stored entity knows
how to read itself from a store document (``from_doc``) and write itself
back (``to_doc``); document field names keep the collection's existing
spelling (``Parcel_ID``, ``EmailAddr2``, ``paidEmailSent``) while the Python
attributes are snake_case.

Stored records and derived views are separate types: ``Assessment`` is what
the store holds, ``AssessmentView`` is what the calculator derives from it
(due date, defaulted paid date, delinquency flag).  Deriving never mutates
the stored record.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Self

from .errors import ValidationFailure
from .money import Money

# ---------------------------------------------------------------------------
# Field coercion helpers
# ---------------------------------------------------------------------------

_TRUE_STRINGS = {"1", "y", "yes", "true", "on"}

_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%Y/%m/%d")


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _flag(value: Any) -> bool:
    """Stored 0/1 flags; also tolerates booleans and 'Y' / 'on' strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return int(value) == 1
    return _text(value).lower() in _TRUE_STRINGS


def _int(value: Any, default: int = 0) -> int:
    if value is None or _text(value) == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            raise ValidationFailure(f"not an integer: {value!r}") from None


def _money(value: Any, field_name: str = "") -> Decimal:
    return Money.coerce(value, field_name).amount


def _money_out(value: Decimal) -> float:
    return float(value)


def parse_date(value: Any, field_name: str = "") -> date | None:
    """Parse a stored date into a ``date``.

    Accepts ``date``/``datetime`` objects, ISO strings (with or without a
    time part) and US style ``MM/DD/YYYY``.  Blank values give None.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = _text(value)
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    # Drop any time component ("10/01/2024 00:00:00")
    head = re.split(r"[ T]", text, maxsplit=1)[0]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(head, fmt).date()
        except ValueError:
            continue
    raise ValidationFailure(f"unrecognized date: {value!r}", field_name)


def date_str(d: date | None) -> str:
    """Format a date as YYYY-MM-DD; empty string for None."""
    if d is None:
        return ""
    return d.strftime("%Y-%m-%d")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SentStatus(Enum):
    """Pending -> sent status shared by communications and payments."""

    PENDING = "N"
    SENT = "Y"

    @classmethod
    def from_value(cls, raw: Any) -> SentStatus:
        return cls.SENT if _text(raw).upper() == "Y" else cls.PENDING


class MailType(Enum):
    """Which notice a dispatch event asks for."""

    DUES_NOTICE = "DuesNotice"
    PAYMENT_CONFIRMATION = "PaymentConfirmation"

    @classmethod
    def from_value(cls, raw: Any) -> MailType:
        """Parse the event discriminator.  Missing means a dues notice."""
        text = _text(raw)
        if not text:
            return cls.DUES_NOTICE
        for member in cls:
            if member.value.lower() == text.lower():
                return member
        raise ValidationFailure(f"unknown mailType: {raw!r}", "mailType")


# ---------------------------------------------------------------------------
# Stored entities
# ---------------------------------------------------------------------------

@dataclass
class Property:
    """One parcel in the association (``hoa_properties``)."""

    parcel_id: str
    owner_id: int = 0
    mailing_name: str = ""
    parcel_location: str = ""
    owner_name1: str = ""
    owner_name2: str = ""
    owner_phone: str = ""
    use_email: bool = False
    comments: str = ""
    last_changed_by: str = ""
    last_changed_ts: str = ""

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> Self:
        return cls(
            parcel_id=_text(doc.get("Parcel_ID") or doc.get("id")),
            owner_id=_int(doc.get("OwnerID")),
            mailing_name=_text(doc.get("Mailing_Name")),
            parcel_location=_text(doc.get("Parcel_Location")),
            owner_name1=_text(doc.get("Owner_Name1")),
            owner_name2=_text(doc.get("Owner_Name2")),
            owner_phone=_text(doc.get("Owner_Phone")),
            use_email=_flag(doc.get("UseEmail")),
            comments=_text(doc.get("Comments")),
            last_changed_by=_text(doc.get("LastChangedBy")),
            last_changed_ts=_text(doc.get("LastChangedTs")),
        )

    def to_doc(self) -> dict[str, Any]:
        return {
            "id": self.parcel_id,
            "Parcel_ID": self.parcel_id,
            "OwnerID": self.owner_id,
            "Mailing_Name": self.mailing_name,
            "Parcel_Location": self.parcel_location,
            "Owner_Name1": self.owner_name1,
            "Owner_Name2": self.owner_name2,
            "Owner_Phone": self.owner_phone,
            "UseEmail": int(self.use_email),
            "Comments": self.comments,
            "LastChangedBy": self.last_changed_by,
            "LastChangedTs": self.last_changed_ts,
        }


@dataclass
class Owner:
    """An owner of a parcel (``hoa_owners``).  History is kept; exactly one
    record per parcel has ``current_owner`` set."""

    owner_id: int
    parcel_id: str
    current_owner: bool = False
    owner_name1: str = ""
    owner_name2: str = ""
    date_purchased: str = ""
    mailing_name: str = ""
    owner_phone: str = ""
    email_addr: str = ""
    email_addr2: str = ""
    alternate_mailing: bool = False
    alt_address_line1: str = ""
    alt_address_line2: str = ""
    alt_city: str = ""
    alt_state: str = ""
    alt_zip: str = ""
    comments: str = ""
    last_changed_by: str = ""
    last_changed_ts: str = ""

    @property
    def email_addresses(self) -> list[str]:
        """Non-blank primary / secondary addresses, in that order."""
        return [addr for addr in (self.email_addr, self.email_addr2) if addr]

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> Self:
        return cls(
            owner_id=_int(doc.get("OwnerID", doc.get("id"))),
            parcel_id=_text(doc.get("Parcel_ID")),
            current_owner=_flag(doc.get("CurrentOwner")),
            owner_name1=_text(doc.get("Owner_Name1")),
            owner_name2=_text(doc.get("Owner_Name2")),
            date_purchased=_text(doc.get("DatePurchased")),
            mailing_name=_text(doc.get("Mailing_Name")),
            owner_phone=_text(doc.get("Owner_Phone")),
            email_addr=_text(doc.get("EmailAddr")),
            email_addr2=_text(doc.get("EmailAddr2")),
            alternate_mailing=_flag(doc.get("AlternateMailing")),
            alt_address_line1=_text(doc.get("Alt_Address_Line1")),
            alt_address_line2=_text(doc.get("Alt_Address_Line2")),
            alt_city=_text(doc.get("Alt_City")),
            alt_state=_text(doc.get("Alt_State")),
            alt_zip=_text(doc.get("Alt_Zip")),
            comments=_text(doc.get("Comments")),
            last_changed_by=_text(doc.get("LastChangedBy")),
            last_changed_ts=_text(doc.get("LastChangedTs")),
        )

    def to_doc(self) -> dict[str, Any]:
        return {
            "id": str(self.owner_id),
            "OwnerID": self.owner_id,
            "Parcel_ID": self.parcel_id,
            "CurrentOwner": int(self.current_owner),
            "Owner_Name1": self.owner_name1,
            "Owner_Name2": self.owner_name2,
            "DatePurchased": self.date_purchased,
            "Mailing_Name": self.mailing_name,
            "Owner_Phone": self.owner_phone,
            "EmailAddr": self.email_addr,
            "EmailAddr2": self.email_addr2,
            "AlternateMailing": int(self.alternate_mailing),
            "Alt_Address_Line1": self.alt_address_line1,
            "Alt_Address_Line2": self.alt_address_line2,
            "Alt_City": self.alt_city,
            "Alt_State": self.alt_state,
            "Alt_Zip": self.alt_zip,
            "Comments": self.comments,
            "LastChangedBy": self.last_changed_by,
            "LastChangedTs": self.last_changed_ts,
        }


@dataclass(frozen=True)
class Assessment:
    """One fiscal year's dues record for a parcel (``hoa_assessments``).

    ``stored_date_due`` is whatever the document carries; it is never used
    for calculations (see ``calculator.derive_assessment``).
    """

    id: str
    parcel_id: str
    fy: int
    owner_id: int = 0
    dues_amt: Decimal = Decimal("0")
    paid: bool = False
    non_collectible: bool = False
    stored_date_due: str = ""
    date_paid: str = ""
    payment_method: str = ""
    # Lien
    lien: bool = False
    lien_ref_no: str = ""
    date_filed: str = ""
    disposition: str = ""
    filing_fee: Decimal = Decimal("0")
    release_fee: Decimal = Decimal("0")
    date_released: str = ""
    lien_date_paid: str = ""
    amount_paid: Decimal = Decimal("0")
    lien_comment: str = ""
    # Accruals
    assessment_interest: Decimal = Decimal("0")
    filing_fee_interest: Decimal = Decimal("0")
    bank_fee: Decimal = Decimal("0")
    stop_interest_calc: bool = False
    interest_not_paid: bool = False
    comments: str = ""
    last_changed_by: str = ""
    last_changed_ts: str = ""

    @property
    def lien_open(self) -> bool:
        return self.lien and self.disposition.lower() in ("", "open")

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> Self:
        return cls(
            id=_text(doc.get("id")),
            parcel_id=_text(doc.get("Parcel_ID")),
            fy=_int(doc.get("FY")),
            owner_id=_int(doc.get("OwnerID")),
            dues_amt=_money(doc.get("DuesAmt"), "DuesAmt"),
            paid=_flag(doc.get("Paid")),
            non_collectible=_flag(doc.get("NonCollectible")),
            stored_date_due=_text(doc.get("DateDue")),
            date_paid=_text(doc.get("DatePaid")),
            payment_method=_text(doc.get("PaymentMethod")),
            lien=_flag(doc.get("Lien")),
            lien_ref_no=_text(doc.get("LienRefNo")),
            date_filed=_text(doc.get("DateFiled")),
            disposition=_text(doc.get("Disposition")),
            filing_fee=_money(doc.get("FilingFee"), "FilingFee"),
            release_fee=_money(doc.get("ReleaseFee"), "ReleaseFee"),
            date_released=_text(doc.get("DateReleased")),
            lien_date_paid=_text(doc.get("LienDatePaid")),
            amount_paid=_money(doc.get("AmountPaid"), "AmountPaid"),
            lien_comment=_text(doc.get("LienComment")),
            assessment_interest=_money(doc.get("AssessmentInterest"), "AssessmentInterest"),
            filing_fee_interest=_money(doc.get("FilingFeeInterest"), "FilingFeeInterest"),
            bank_fee=_money(doc.get("BankFee"), "BankFee"),
            stop_interest_calc=_flag(doc.get("StopInterestCalc")),
            interest_not_paid=_flag(doc.get("InterestNotPaid")),
            comments=_text(doc.get("Comments")),
            last_changed_by=_text(doc.get("LastChangedBy")),
            last_changed_ts=_text(doc.get("LastChangedTs")),
        )

    def to_doc(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "Parcel_ID": self.parcel_id,
            "FY": self.fy,
            "OwnerID": self.owner_id,
            "DuesAmt": _money_out(self.dues_amt),
            "Paid": int(self.paid),
            "NonCollectible": int(self.non_collectible),
            "DateDue": self.stored_date_due,
            "DatePaid": self.date_paid,
            "PaymentMethod": self.payment_method,
            "Lien": int(self.lien),
            "LienRefNo": self.lien_ref_no,
            "DateFiled": self.date_filed,
            "Disposition": self.disposition,
            "FilingFee": _money_out(self.filing_fee),
            "ReleaseFee": _money_out(self.release_fee),
            "DateReleased": self.date_released,
            "LienDatePaid": self.lien_date_paid,
            "AmountPaid": _money_out(self.amount_paid),
            "LienComment": self.lien_comment,
            "AssessmentInterest": _money_out(self.assessment_interest),
            "FilingFeeInterest": _money_out(self.filing_fee_interest),
            "BankFee": _money_out(self.bank_fee),
            "StopInterestCalc": int(self.stop_interest_calc),
            "InterestNotPaid": int(self.interest_not_paid),
            "Comments": self.comments,
            "LastChangedBy": self.last_changed_by,
            "LastChangedTs": self.last_changed_ts,
        }


@dataclass
class Communication:
    """One notice send attempt (``hoa_communications``)."""

    id: str
    parcel_id: str
    owner_id: int = 0
    comm_id: int = 9999
    create_ts: str = ""
    comm_type: str = ""
    comm_desc: str = ""
    mailing_name: str = ""
    email: bool = False
    email_addr: str = ""
    sent_status: SentStatus = SentStatus.PENDING
    last_changed_by: str = ""
    last_changed_ts: str = ""

    @property
    def is_sent(self) -> bool:
        return self.sent_status is SentStatus.SENT

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> Self:
        return cls(
            id=_text(doc.get("id")),
            parcel_id=_text(doc.get("Parcel_ID")),
            owner_id=_int(doc.get("OwnerID")),
            comm_id=_int(doc.get("CommID"), 9999),
            create_ts=_text(doc.get("CreateTs")),
            comm_type=_text(doc.get("CommType")),
            comm_desc=_text(doc.get("CommDesc")),
            mailing_name=_text(doc.get("Mailing_Name")),
            email=_flag(doc.get("Email")),
            email_addr=_text(doc.get("EmailAddr")),
            sent_status=SentStatus.from_value(doc.get("SentStatus")),
            last_changed_by=_text(doc.get("LastChangedBy")),
            last_changed_ts=_text(doc.get("LastChangedTs")),
        )

    def to_doc(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "Parcel_ID": self.parcel_id,
            "CommID": self.comm_id,
            "CreateTs": self.create_ts,
            "OwnerID": self.owner_id,
            "CommType": self.comm_type,
            "CommDesc": self.comm_desc,
            "Mailing_Name": self.mailing_name,
            "Email": int(self.email),
            "EmailAddr": self.email_addr,
            "SentStatus": self.sent_status.value,
            "LastChangedBy": self.last_changed_by,
            "LastChangedTs": self.last_changed_ts,
        }


@dataclass
class Payment:
    """An electronic payment (``hoa_payments``)."""

    id: str
    parcel_id: str
    owner_id: int = 0
    payer_email: str = ""
    payer_name: str = ""
    payment_date: date | None = None
    payment_amt: Decimal = Decimal("0")
    txn_id: str = ""
    paid_email_sent: SentStatus = SentStatus.PENDING
    last_changed_ts: str = ""

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> Self:
        return cls(
            id=_text(doc.get("id")),
            parcel_id=_text(doc.get("Parcel_ID")),
            owner_id=_int(doc.get("OwnerID")),
            payer_email=_text(doc.get("payer_email")),
            payer_name=_text(doc.get("payer_name")),
            payment_date=parse_date(doc.get("payment_date"), "payment_date"),
            payment_amt=_money(doc.get("payment_amt"), "payment_amt"),
            txn_id=_text(doc.get("txn_id")),
            paid_email_sent=SentStatus.from_value(doc.get("paidEmailSent")),
            last_changed_ts=_text(doc.get("LastChangedTs")),
        )

    def to_doc(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "Parcel_ID": self.parcel_id,
            "OwnerID": self.owner_id,
            "payer_email": self.payer_email,
            "payer_name": self.payer_name,
            "payment_date": date_str(self.payment_date),
            "payment_amt": _money_out(self.payment_amt),
            "txn_id": self.txn_id,
            "paidEmailSent": self.paid_email_sent.value,
            "LastChangedTs": self.last_changed_ts,
        }


@dataclass
class Sale:
    """Historical sale of a parcel (``hoa_sales``).  Read-only here."""

    id: str
    parcel_id: str
    sale_date: str = ""
    price: str = ""
    old_owner: str = ""
    new_owner: str = ""
    create_timestamp: str = ""
    welcome_sent: str = ""

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> Self:
        return cls(
            id=_text(doc.get("id")),
            parcel_id=_text(doc.get("Parcel_ID")),
            sale_date=_text(doc.get("SALEDT")),
            price=_text(doc.get("PRICE")),
            old_owner=_text(doc.get("OLDOWN")),
            new_owner=_text(doc.get("OWNERNAME1")),
            create_timestamp=_text(doc.get("CreateTimestamp")),
            welcome_sent=_text(doc.get("WelcomeSent")),
        )


@dataclass
class ConfigEntry:
    """Name/value pair from ``hoa_config``."""

    name: str
    value: str = ""
    description: str = ""
    last_changed_by: str = ""
    last_changed_ts: str = ""

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> Self:
        return cls(
            name=_text(doc.get("ConfigName") or doc.get("id")),
            value=_text(doc.get("ConfigValue")),
            description=_text(doc.get("ConfigDesc")),
            last_changed_by=_text(doc.get("LastChangedBy")),
            last_changed_ts=_text(doc.get("LastChangedTs")),
        )


# ---------------------------------------------------------------------------
# Derived values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AssessmentView:
    """An assessment with its derived dates and delinquency flag."""

    assessment: Assessment
    date_due: date
    date_paid: date | None
    dues_due: bool

    @property
    def fy(self) -> int:
        return self.assessment.fy

    @property
    def paid(self) -> bool:
        return self.assessment.paid

    @property
    def dues_amt(self) -> Decimal:
        return self.assessment.dues_amt

    def to_doc(self) -> dict[str, Any]:
        """Stored document with the derived fields filled in."""
        doc = self.assessment.to_doc()
        doc["DateDue"] = date_str(self.date_due)
        doc["DatePaid"] = date_str(self.date_paid)
        doc["DuesDue"] = self.dues_due
        return doc


@dataclass(frozen=True)
class DuesCalcLine:
    """One line of the outstanding-balance breakdown."""

    fy: int
    description: str
    amount: Decimal


@dataclass(frozen=True)
class DuesTotals:
    lines: tuple[DuesCalcLine, ...] = ()
    only_current_year_owed: bool = True
    total_due: Decimal = Decimal("0")


@dataclass
class AccountSnapshot:
    """Consolidated, read-only view of one property's dues state.

    Built fresh on every call by ``AccountAggregator.get_account`` or
    ``BulkAccountBuilder.list_accounts``; never cached.
    """

    parcel_id: str
    property_rec: Property | None = None
    owners: list[Owner] = field(default_factory=list)
    assessments: list[AssessmentView] = field(default_factory=list)
    email_addresses: list[str] = field(default_factory=list)
    dues_email_addr: str = ""
    sales: list[Sale] = field(default_factory=list)
    calc_lines: list[DuesCalcLine] = field(default_factory=list)
    total_due: Decimal = Decimal("0")
    only_current_year_owed: bool = True
    payment_instructions: str = ""
    payment_fee: Decimal = Decimal("0")

    @property
    def current_owner(self) -> Owner | None:
        for owner in self.owners:
            if owner.current_owner:
                return owner
        return None

    @property
    def latest_assessment(self) -> AssessmentView | None:
        if not self.assessments:
            return None
        return max(self.assessments, key=lambda a: a.fy)

    @property
    def online_payment_eligible(self) -> bool:
        return self.total_due > 0 and self.only_current_year_owed


# ---------------------------------------------------------------------------
# Dispatch event
# ---------------------------------------------------------------------------

DUES_EMAIL_SUBJECT = "DuesEmailRequest"
PAYMENT_EMAIL_SUBJECT = "PaymentEmailRequest"
SEND_MAIL_EVENT_TYPE = "SendMail"


@dataclass(frozen=True)
class DispatchEvent:
    """Payload carried from the notice generator to the dispatch consumer.

    Wire format: ``{"id", "parcelId", "totalDue", "emailAddr", "mailType"}``.
    """

    id: str
    parcel_id: str
    email_addr: str
    total_due: Decimal = Decimal("0")
    mail_type: MailType = MailType.DUES_NOTICE

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "parcelId": self.parcel_id,
            "totalDue": _money_out(self.total_due),
            "emailAddr": self.email_addr,
            "mailType": self.mail_type.value,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Self:
        record_id = _text(payload.get("id"))
        parcel_id = _text(payload.get("parcelId"))
        if not record_id:
            raise ValidationFailure("missing record id", "id")
        if not parcel_id:
            raise ValidationFailure("missing parcel id", "parcelId")
        return cls(
            id=record_id,
            parcel_id=parcel_id,
            email_addr=_text(payload.get("emailAddr")),
            total_due=_money(payload.get("totalDue"), "totalDue"),
            mail_type=MailType.from_value(payload.get("mailType")),
        )

    def context(self) -> dict[str, Any]:
        """Flat dict for log lines and exception payloads."""
        return self.to_payload()
