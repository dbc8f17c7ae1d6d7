"""Recipient address validation and de-duplication."""

from __future__ import annotations

import logging
import re
from typing import Iterable

logger = logging.getLogger(__name__)

# local@domain.tld -- no whitespace, one @, dotted domain with a 2+ letter TLD
_EMAIL_RE = re.compile(
    r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?)*\.[A-Za-z]{2,}$"
)


def is_valid_email(address: str | None) -> bool:
    """True for a syntactically plausible single email address."""
    if not address:
        return False
    address = address.strip()
    if ".." in address or address.startswith(".") or "@." in address or ".@" in address:
        return False
    return bool(_EMAIL_RE.match(address))


def dedupe_addresses(addresses: Iterable[str | None]) -> list[str]:
    """Drop blanks and case-insensitive duplicates, keeping first-seen order
    and the original spelling."""
    seen: set[str] = set()
    result: list[str] = []
    for addr in addresses:
        if not addr or not addr.strip():
            continue
        cleaned = addr.strip()
        key = cleaned.lower()
        if key not in seen:
            seen.add(key)
            result.append(cleaned)
    return result


def valid_recipients(addresses: Iterable[str | None]) -> list[str]:
    """Blank-free, regex-valid, de-duplicated recipient list."""
    valid: list[str] = []
    for addr in dedupe_addresses(addresses):
        if is_valid_email(addr):
            valid.append(addr)
        else:
            logger.debug("Skipping invalid email address: %r", addr)
    return valid
