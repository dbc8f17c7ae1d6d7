"""Reads of the ``hoa_config`` name/value collection.

Config documents are keyed by ``ConfigName`` in the fixed ``hoa_config``
partition.  Missing names resolve to a caller-supplied default; the engine
never treats a missing display string as an error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import NotFoundError
from .models import ConfigEntry
from .store import CONFIG, CONFIG_PARTITION, DocumentStore

logger = logging.getLogger(__name__)

# Keys the engine reads
OFFLINE_PAYMENT_INSTRUCTIONS = "OfflinePaymentInstructions"
ONLINE_PAYMENT_INSTRUCTIONS = "OnlinePaymentInstructions"
PAYMENT_FEE = "paymentFee"
DUES_EMAIL_TEST_PARCEL = "duesEmailTestParcel"
HOA_NAME = "hoaName"
HOA_NAME_SHORT = "hoaNameShort"
HOA_ADDRESS1 = "hoaAddress1"
HOA_ADDRESS2 = "hoaAddress2"
DUES_URL = "duesUrl"
DUES_NOTES = "duesNotes"


@dataclass(frozen=True)
class HoaInfo:
    """Display strings used in outgoing email."""
    name: str = ""
    name_short: str = ""
    address1: str = ""
    address2: str = ""
    dues_url: str = ""
    dues_notes: str = ""


class ConfigLookup:
    """Key -> string lookups against the config collection."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def get(self, name: str, default: str = "") -> str:
        try:
            doc = self.store.get(CONFIG, name, CONFIG_PARTITION)
        except NotFoundError:
            # Older documents carry a generated id; fall back to a scan
            doc = next(
                self.store.query(
                    CONFIG,
                    partition_key=CONFIG_PARTITION,
                    where=lambda d: d.get("ConfigName") == name,
                    limit=1,
                ),
                None,
            )
        if doc is None:
            logger.debug("Config value %s not set, using default", name)
            return default
        value = doc.get("ConfigValue")
        return default if value is None else str(value)

    def list_entries(self) -> list[ConfigEntry]:
        """All config entries ordered by name."""
        return [
            ConfigEntry.from_doc(doc)
            for doc in self.store.query(CONFIG, partition_key=CONFIG_PARTITION, order_by="ConfigName")
        ]

    def as_dict(self) -> dict[str, str]:
        return {entry.name: entry.value for entry in self.list_entries()}

    def hoa_info(self) -> HoaInfo:
        values = self.as_dict()
        return HoaInfo(
            name=values.get(HOA_NAME, ""),
            name_short=values.get(HOA_NAME_SHORT, ""),
            address1=values.get(HOA_ADDRESS1, ""),
            address2=values.get(HOA_ADDRESS2, ""),
            dues_url=values.get(DUES_URL, ""),
            dues_notes=values.get(DUES_NOTES, ""),
        )
