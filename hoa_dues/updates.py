"""
HOA Dues Engine -- Record Updates

Typed patch requests for the records an administrator edits, validated
once when built (``from_form`` accepts the raw HTML form fields) and
translated to store patch operations inside ``AccountUpdater``.

    PropertyPatch      UseEmail, Comments
    OwnerPatch         names, phone, emails, comments, alternate mailing address
    AssessmentUpdate   full replace of the editable assessment fields
    ConfigUpdate       one hoa_config name/value

Checkbox fields follow HTML form rules: the value "on" means checked and a
missing field means unchecked.

Owner edits on the current owner are mirrored onto the property's owner
fields.  These are two separate single-document writes; if the second one
fails the property keeps its old owner fields until the next edit, and the
error is raised to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from decimal import Decimal
from typing import Any, Mapping, Optional

from .errors import NotFoundError, ValidationFailure
from .models import Assessment, ConfigEntry, Owner, Property
from .money import Money
from .recipients import is_valid_email
from .store import (
    ASSESSMENTS,
    CONFIG,
    CONFIG_PARTITION,
    OWNERS,
    PROPERTIES,
    DocumentStore,
    PatchOperation,
    now_iso,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Form parsing helpers
# ---------------------------------------------------------------------------

def _checkbox(form: Mapping[str, Any], name: str) -> bool:
    return str(form.get(name, "") or "").strip().lower() == "on"


def _form_text(form: Mapping[str, Any], name: str) -> Optional[str]:
    if name not in form:
        return None
    return str(form[name] or "").strip()


def _form_money(form: Mapping[str, Any], name: str) -> Decimal:
    raw = str(form.get(name, "") or "").strip()
    if not raw:
        return Decimal("0")
    return Money.parse(raw, name).amount


def _form_int(form: Mapping[str, Any], name: str, default: int = 0) -> int:
    raw = str(form.get(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationFailure(f"not a whole number: {raw!r}", name) from None


def _required(form: Mapping[str, Any], name: str) -> str:
    value = str(form.get(name, "") or "").strip()
    if not value:
        raise ValidationFailure("required field is missing", name)
    return value


def _audit(actor: str, timestamp: str) -> list[PatchOperation]:
    return [
        PatchOperation.set("LastChangedBy", actor),
        PatchOperation.set("LastChangedTs", timestamp),
    ]


# ---------------------------------------------------------------------------
# Patch requests
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PropertyPatch:
    use_email: Optional[bool] = None
    comments: Optional[str] = None

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> PropertyPatch:
        return cls(use_email=_checkbox(form, "UseEmail"), comments=_form_text(form, "Comments"))

    def operations(self) -> list[PatchOperation]:
        ops: list[PatchOperation] = []
        if self.use_email is not None:
            ops.append(PatchOperation.set("UseEmail", int(self.use_email)))
        if self.comments is not None:
            ops.append(PatchOperation.set("Comments", self.comments))
        return ops


# attribute -> document field; None values are left untouched
_OWNER_FIELDS = {
    "owner_name1": "Owner_Name1",
    "owner_name2": "Owner_Name2",
    "date_purchased": "DatePurchased",
    "mailing_name": "Mailing_Name",
    "owner_phone": "Owner_Phone",
    "email_addr": "EmailAddr",
    "email_addr2": "EmailAddr2",
    "comments": "Comments",
    "alt_address_line1": "Alt_Address_Line1",
    "alt_address_line2": "Alt_Address_Line2",
    "alt_city": "Alt_City",
    "alt_state": "Alt_State",
    "alt_zip": "Alt_Zip",
}

# Owner fields copied onto the property record for the current owner
_PROPERTY_OWNER_FIELDS = ("owner_name1", "owner_name2", "mailing_name", "owner_phone")


@dataclass(frozen=True)
class OwnerPatch:
    owner_name1: Optional[str] = None
    owner_name2: Optional[str] = None
    date_purchased: Optional[str] = None
    mailing_name: Optional[str] = None
    owner_phone: Optional[str] = None
    email_addr: Optional[str] = None
    email_addr2: Optional[str] = None
    comments: Optional[str] = None
    alternate_mailing: Optional[bool] = None
    alt_address_line1: Optional[str] = None
    alt_address_line2: Optional[str] = None
    alt_city: Optional[str] = None
    alt_state: Optional[str] = None
    alt_zip: Optional[str] = None

    def __post_init__(self) -> None:
        for name in ("email_addr", "email_addr2"):
            value = getattr(self, name)
            if value and not is_valid_email(value):
                raise ValidationFailure(f"invalid email address: {value!r}", _OWNER_FIELDS[name])

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> OwnerPatch:
        values: dict[str, Any] = {
            attr: _form_text(form, doc_field) for attr, doc_field in _OWNER_FIELDS.items()
        }
        values["alternate_mailing"] = _checkbox(form, "AlternateMailing")
        return cls(**values)

    def operations(self) -> list[PatchOperation]:
        ops = [
            PatchOperation.set(doc_field, getattr(self, attr))
            for attr, doc_field in _OWNER_FIELDS.items()
            if getattr(self, attr) is not None
        ]
        if self.alternate_mailing is not None:
            ops.append(PatchOperation.set("AlternateMailing", int(self.alternate_mailing)))
        return ops

    def property_operations(self) -> list[PatchOperation]:
        return [
            PatchOperation.set(_OWNER_FIELDS[attr], getattr(self, attr))
            for attr in _PROPERTY_OWNER_FIELDS
            if getattr(self, attr) is not None
        ]


@dataclass(frozen=True)
class AssessmentUpdate:
    """Every editable assessment field.  ``DateDue`` is derived and is
    never written from input."""

    owner_id: int = 0
    dues_amt: Decimal = Decimal("0")
    paid: bool = False
    non_collectible: bool = False
    date_paid: str = ""
    payment_method: str = ""
    lien: bool = False
    lien_ref_no: str = ""
    date_filed: str = ""
    disposition: str = ""
    filing_fee: Decimal = Decimal("0")
    release_fee: Decimal = Decimal("0")
    date_released: str = ""
    lien_date_paid: str = ""
    amount_paid: Decimal = Decimal("0")
    stop_interest_calc: bool = False
    filing_fee_interest: Decimal = Decimal("0")
    assessment_interest: Decimal = Decimal("0")
    interest_not_paid: bool = False
    bank_fee: Decimal = Decimal("0")
    lien_comment: str = ""
    comments: str = ""

    _DOC_FIELDS = {
        "owner_id": "OwnerID",
        "dues_amt": "DuesAmt",
        "paid": "Paid",
        "non_collectible": "NonCollectible",
        "date_paid": "DatePaid",
        "payment_method": "PaymentMethod",
        "lien": "Lien",
        "lien_ref_no": "LienRefNo",
        "date_filed": "DateFiled",
        "disposition": "Disposition",
        "filing_fee": "FilingFee",
        "release_fee": "ReleaseFee",
        "date_released": "DateReleased",
        "lien_date_paid": "LienDatePaid",
        "amount_paid": "AmountPaid",
        "stop_interest_calc": "StopInterestCalc",
        "filing_fee_interest": "FilingFeeInterest",
        "assessment_interest": "AssessmentInterest",
        "interest_not_paid": "InterestNotPaid",
        "bank_fee": "BankFee",
        "lien_comment": "LienComment",
        "comments": "Comments",
    }

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> AssessmentUpdate:
        values: dict[str, Any] = {}
        for f in fields(cls):
            doc_field = cls._DOC_FIELDS[f.name]
            if f.type in ("bool", bool):
                values[f.name] = _checkbox(form, doc_field)
            elif f.type in ("Decimal", Decimal):
                values[f.name] = _form_money(form, doc_field)
            elif f.type in ("int", int):
                values[f.name] = _form_int(form, doc_field)
            else:
                values[f.name] = _form_text(form, doc_field) or ""
        return cls(**values)

    def apply_to(self, document: Mapping[str, Any]) -> dict[str, Any]:
        """Copy of ``document`` with every editable field overwritten."""
        updated = dict(document)
        for attr, doc_field in self._DOC_FIELDS.items():
            value = getattr(self, attr)
            if isinstance(value, bool):
                value = int(value)
            elif isinstance(value, Decimal):
                value = float(value)
            updated[doc_field] = value
        return updated


@dataclass(frozen=True)
class ConfigUpdate:
    name: str
    value: str = ""
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValidationFailure("required field is missing", "ConfigName")

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> ConfigUpdate:
        return cls(
            name=_required(form, "ConfigName"),
            value=_form_text(form, "ConfigValue") or "",
            description=_form_text(form, "ConfigDesc") or "",
        )


# ---------------------------------------------------------------------------
# Updater
# ---------------------------------------------------------------------------

class AccountUpdater:
    """Applies typed patch requests to the store, stamping audit fields."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def update_property(self, parcel_id: str, patch: PropertyPatch, actor: str) -> Property:
        ops = _audit(actor, now_iso()) + patch.operations()
        doc = self.store.patch(PROPERTIES, parcel_id, parcel_id, ops)
        logger.info("Property %s updated by %s", parcel_id, actor)
        return Property.from_doc(doc)

    def update_owner(self, parcel_id: str, owner_id: int | str, patch: OwnerPatch, actor: str) -> Owner:
        """Patch an owner; mirror name/phone onto the property when the
        owner is the current one."""
        timestamp = now_iso()
        doc = self.store.patch(
            OWNERS, str(owner_id), parcel_id, _audit(actor, timestamp) + patch.operations(),
        )
        owner = Owner.from_doc(doc)
        logger.info("Owner %s/%s updated by %s", parcel_id, owner_id, actor)

        if owner.current_owner:
            prop_ops = patch.property_operations()
            if prop_ops:
                try:
                    self.store.patch(PROPERTIES, parcel_id, parcel_id, _audit(actor, timestamp) + prop_ops)
                except Exception:
                    logger.error(
                        "Owner %s/%s updated but property owner fields were not; "
                        "property record is stale until the next owner edit",
                        parcel_id, owner_id,
                    )
                    raise
        return owner

    def update_assessment(
        self,
        parcel_id: str,
        assessment_id: str,
        update: AssessmentUpdate,
        actor: str,
    ) -> Assessment:
        current = self.store.get(ASSESSMENTS, assessment_id, parcel_id)
        document = update.apply_to(current)
        document["LastChangedBy"] = actor
        document["LastChangedTs"] = now_iso()
        self.store.replace(ASSESSMENTS, document)
        logger.info("Assessment %s (FY %s) for %s updated by %s",
                    assessment_id, current.get("FY"), parcel_id, actor)
        return Assessment.from_doc(document)

    def update_config(self, update: ConfigUpdate, actor: str) -> ConfigEntry:
        """Create or overwrite one config value."""
        timestamp = now_iso()
        name = update.name.strip()
        try:
            doc = self.store.patch(CONFIG, name, CONFIG_PARTITION, [
                PatchOperation.set("ConfigDesc", update.description),
                PatchOperation.set("ConfigValue", update.value),
                *_audit(actor, timestamp),
            ])
        except NotFoundError:
            doc = self.store.create(CONFIG, {
                "id": name,
                "ConfigName": name,
                "ConfigDesc": update.description,
                "ConfigValue": update.value,
                "LastChangedBy": actor,
                "LastChangedTs": timestamp,
            })
        logger.info("Config %s updated by %s", name, actor)
        return ConfigEntry.from_doc(doc)
