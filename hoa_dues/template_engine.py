"""
HOA Dues Engine -- Template Engine

Renders the Jinja2 HTML email templates for the two notice types and
produces subject / HTML / plain-text triples ready for the mailer.

Responsibilities:
  1. Load HTML templates from hoa_dues/templates/ (or a configured dir)
  2. Build the variable context from an AccountSnapshot or Payment plus
     the HOA display strings from hoa_config
  3. Render the HTML body
  4. Generate a plain-text version from the rendered HTML
  5. Build the subject line ("<short name> Dues Notice")
  6. Format dates (Mon DD, YYYY) and currency ($X,XXX.XX) consistently

Usage:
    from hoa_dues.template_engine import TemplateEngine

    engine = TemplateEngine()
    rendered = engine.render_dues_notice(snapshot, hoa_info)
    print(rendered.subject)
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from .config import PACKAGE_TEMPLATE_DIR, TemplatePaths
from .lookups import HoaInfo
from .models import AccountSnapshot, Payment
from .money import format_currency


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Date format: "Feb 05, 2026"
_DATE_FORMAT = "%b %d, %Y"

DUES_NOTICE_TITLE = "Member Dues Notice"


# ---------------------------------------------------------------------------
# Helper: Format Utilities
# ---------------------------------------------------------------------------

def format_date(d: date | None) -> str:
    """Format a date as 'Mon DD, YYYY' (e.g. 'Feb 05, 2026').

    Returns empty string for None.
    """
    if d is None:
        return ""
    return d.strftime(_DATE_FORMAT)


def build_subject_line(hoa_name_short: str, suffix: str = "Dues Notice") -> str:
    """'<HOA short name> Dues Notice', or just the suffix without a name."""
    hoa_name_short = hoa_name_short.strip()
    return f"{hoa_name_short} {suffix}" if hoa_name_short else suffix


def html_to_plaintext(html_content: str) -> str:
    """Convert rendered HTML email body to a reasonable plain-text version.

    Strips tags, keeps link targets, and preserves basic line structure for
    the text/plain part of the message.
    """
    text = html_content

    # Replace common block elements with newlines
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</(?:div|h[1-6]|tr)>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</p>", "\n\n", text, flags=re.IGNORECASE)

    # Extract link text + URL from anchor tags
    text = re.sub(
        r'<a[^>]+href=["\']([^"\']+)["\'][^>]*>(.*?)</a>',
        r"\2 (\1)",
        text,
        flags=re.IGNORECASE | re.DOTALL,
    )

    # Strip all remaining HTML tags
    text = re.sub(r"<[^>]+>", "", text)

    # Decode HTML entities
    text = html.unescape(text)

    # Strip each line, then collapse runs of blank lines
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = re.sub(r"\n{3,}", "\n\n", text)

    return text.strip()


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html_body: str
    text_body: str


# ---------------------------------------------------------------------------
# Template Engine
# ---------------------------------------------------------------------------

class TemplateEngine:
    """Jinja2-based renderer for dues notices and payment confirmations.

    Attributes:
        env: The Jinja2 Environment configured with the template directory.
        template_dir: Path to the templates directory.
        paths: Template file names.
    """

    def __init__(
        self,
        template_dir: str | Path | None = None,
        paths: Optional[TemplatePaths] = None,
    ) -> None:
        self.paths = paths or TemplatePaths()
        if template_dir is not None:
            self.template_dir = Path(template_dir)
        elif paths is not None:
            self.template_dir = paths.resolved_dir
        else:
            self.template_dir = PACKAGE_TEMPLATE_DIR

        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )

        # Register custom filters
        self.env.filters["format_date"] = format_date
        self.env.filters["format_currency"] = format_currency

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------

    def render_dues_notice(
        self,
        snapshot: AccountSnapshot,
        hoa: HoaInfo,
        total_due: Optional[Decimal] = None,
        subject_suffix: str = "Dues Notice",
    ) -> RenderedEmail:
        """Render the dues notice for one account.

        ``total_due`` overrides the snapshot total (the value carried on the
        dispatch event); by default the snapshot's own total is shown.
        """
        context = self._dues_context(snapshot, hoa, total_due)
        body = self._render(self.paths.dues_notice, context)
        return RenderedEmail(
            subject=build_subject_line(hoa.name_short, subject_suffix),
            html_body=body,
            text_body=html_to_plaintext(body),
        )

    def render_payment_confirmation(
        self,
        payment: Payment,
        hoa: HoaInfo,
        snapshot: Optional[AccountSnapshot] = None,
        subject_suffix: str = "Payment Confirmation",
    ) -> RenderedEmail:
        context = {
            "hoa": hoa,
            "payment": payment,
            "parcel_id": payment.parcel_id,
            "location": snapshot.property_rec.parcel_location if snapshot and snapshot.property_rec else "",
            "payer_name": payment.payer_name,
            "payment_amount": payment.payment_amt,
            "payment_date": payment.payment_date,
            "remaining_due": snapshot.total_due if snapshot else None,
        }
        body = self._render(self.paths.payment_confirmation, context)
        return RenderedEmail(
            subject=build_subject_line(hoa.name_short, subject_suffix),
            html_body=body,
            text_body=html_to_plaintext(body),
        )

    def get_available_templates(self) -> list[str]:
        if not self.template_dir.is_dir():
            return []
        return sorted(p.name for p in self.template_dir.glob("*.html"))

    # -------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------

    def _render(self, template_file: str, context: dict[str, Any]) -> str:
        template = self.env.get_template(template_file)
        return template.render(**context)

    @staticmethod
    def _dues_context(
        snapshot: AccountSnapshot,
        hoa: HoaInfo,
        total_due: Optional[Decimal],
    ) -> dict[str, Any]:
        latest = snapshot.latest_assessment
        owner = snapshot.current_owner or (snapshot.owners[0] if snapshot.owners else None)
        prop = snapshot.property_rec

        fiscal_year = latest.fy if latest else None
        return {
            "hoa": hoa,
            "title": DUES_NOTICE_TITLE,
            "fiscal_year": fiscal_year,
            "period_start_year": fiscal_year - 1 if fiscal_year else None,
            "current_dues_amount": latest.dues_amt if latest and not latest.paid else None,
            "total_due": snapshot.total_due if total_due is None else total_due,
            "due_date": latest.date_due if latest else None,
            "parcel_id": snapshot.parcel_id,
            "mailing_name": owner.mailing_name if owner else (prop.mailing_name if prop else ""),
            "location": prop.parcel_location if prop else "",
            "phone": owner.owner_phone if owner else "",
            "email": snapshot.dues_email_addr,
            "email2": owner.email_addr2 if owner else "",
            "online_eligible": snapshot.online_payment_eligible,
            "payment_instructions": snapshot.payment_instructions,
            "payment_fee": snapshot.payment_fee,
        }
