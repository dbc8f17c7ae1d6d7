"""Tests for hoa_dues.template_engine -- Jinja2 rendering of notices.

Covers:
- Date / subject / plain-text helpers
- Dues notice content for current-year-only and past-due accounts
- Autoescaping of stored text; dues notes rendered as HTML
- Payment confirmation content
- Custom template directories
"""

from datetime import date
from decimal import Decimal

import pytest

from hoa_dues.aggregator import AccountAggregator
from hoa_dues.config import TemplatePaths
from hoa_dues.lookups import ConfigLookup, HoaInfo
from hoa_dues.models import AccountSnapshot, Owner, Payment
from hoa_dues.template_engine import (
    TemplateEngine,
    build_subject_line,
    format_date,
    html_to_plaintext,
)


@pytest.fixture
def engine():
    return TemplateEngine()


@pytest.fixture
def hoa(store):
    return ConfigLookup(store).hoa_info()


# ============================================================================
# Helpers
# ============================================================================

class TestHelpers:

    def test_format_date(self):
        assert format_date(date(2026, 2, 5)) == "Feb 05, 2026"
        assert format_date(None) == ""

    @pytest.mark.parametrize("short,suffix,expected", [
        ("GRHA", "Dues Notice", "GRHA Dues Notice"),
        ("  GRHA ", "Dues Notice", "GRHA Dues Notice"),
        ("", "Dues Notice", "Dues Notice"),
        ("GRHA", "Payment Confirmation", "GRHA Payment Confirmation"),
    ])
    def test_subject_line(self, short, suffix, expected):
        assert build_subject_line(short, suffix) == expected

    def test_html_to_plaintext(self):
        text = html_to_plaintext(
            '<b>Total:</b> $5.00<br><a href="https://example.org/pay">Pay here</a><p>Thanks &amp; bye</p>'
        )
        assert "Total: $5.00" in text
        assert "Pay here (https://example.org/pay)" in text
        assert "Thanks & bye" in text
        assert "<" not in text


# ============================================================================
# Dues notice
# ============================================================================

class TestDuesNotice:

    def test_current_year_notice(self, engine, store, hoa, today):
        snapshot = AccountAggregator(store).get_account("R100", today=today)
        rendered = engine.render_dues_notice(snapshot, hoa)

        assert rendered.subject == "GRHA Dues Notice"
        body = rendered.html_body
        assert "Grand Ridge Homeowners Association" in body
        assert "Member Dues Notice for Fiscal Year <b>2025</b>" in body
        assert "Oct 1, 2024 thru Sept 30, 2025" in body
        assert "Current Dues Amount: </b>$150.00" in body
        assert "*****Total Outstanding:</b> $150.00" in body
        assert "October 1, 2024" in body
        assert "Alex Adams" in body
        assert "12 Oak Lane" in body
        assert "b@example.com" in body
        assert "https://example.org/dues" in body
        assert "Pay online with a card or bank transfer." in body
        assert "online processing fee of $3.50" in body
        assert "PO Box 100" in body
        assert "<i>Thank you for supporting the neighborhood.</i>" in body

    def test_past_due_notice(self, engine, store, hoa, today):
        snapshot = AccountAggregator(store).get_account("R200", today=today)
        body = engine.render_dues_notice(snapshot, hoa).html_body

        assert "$310.25" in body
        assert "Past dues must be paid by check." in body
        assert "online processing fee" not in body

    def test_total_override(self, engine, store, hoa, today):
        snapshot = AccountAggregator(store).get_account("R100", today=today)
        body = engine.render_dues_notice(snapshot, hoa, total_due=Decimal("99.99")).html_body
        assert "*****Total Outstanding:</b> $99.99" in body

    def test_plain_text_part(self, engine, store, hoa, today):
        snapshot = AccountAggregator(store).get_account("R100", today=today)
        text = engine.render_dues_notice(snapshot, hoa).text_body
        assert "Parcel Id: R100" in text
        assert "<b>" not in text

    def test_stored_text_is_escaped(self, engine):
        snapshot = AccountSnapshot(
            parcel_id="R1",
            owners=[Owner(owner_id=1, parcel_id="R1", current_owner=True, mailing_name="<script>x</script>")],
        )
        body = engine.render_dues_notice(snapshot, HoaInfo(name="HOA")).html_body
        assert "<script>" not in body
        assert "&lt;script&gt;" in body

    def test_empty_snapshot_renders(self, engine):
        rendered = engine.render_dues_notice(AccountSnapshot(parcel_id="R1"), HoaInfo())
        assert rendered.subject == "Dues Notice"
        assert "$0.00" in rendered.html_body


# ============================================================================
# Payment confirmation
# ============================================================================

class TestPaymentConfirmation:

    def test_content(self, engine, hoa):
        payment = Payment(
            id="P1", parcel_id="R100", payer_name="Pat Payer", payment_date=date(2025, 1, 15),
            payment_amt=Decimal("150"), txn_id="TX-1",
        )
        rendered = engine.render_payment_confirmation(payment, hoa)
        assert rendered.subject == "GRHA Payment Confirmation"
        assert "Dear Pat Payer" in rendered.html_body
        assert "$150.00" in rendered.html_body
        assert "Jan 15, 2025" in rendered.html_body
        assert "TX-1" in rendered.html_body
        assert "Remaining balance" not in rendered.html_body

    def test_remaining_balance(self, engine, hoa):
        payment = Payment(id="P1", parcel_id="R1", payment_amt=Decimal("50"))
        snapshot = AccountSnapshot(parcel_id="R1", total_due=Decimal("100"))
        body = engine.render_payment_confirmation(payment, hoa, snapshot).html_body
        assert "Remaining balance:</b> $100.00" in body


# ============================================================================
# Template directory
# ============================================================================

class TestTemplateDirectory:

    def test_packaged_templates(self, engine):
        assert engine.get_available_templates() == ["dues_notice.html", "payment_confirmation.html"]

    def test_custom_directory(self, tmp_path):
        (tmp_path / "notice.html").write_text("Owes {{ total_due | format_currency }}", encoding="utf-8")
        engine = TemplateEngine(tmp_path, TemplatePaths(dues_notice="notice.html"))
        rendered = engine.render_dues_notice(AccountSnapshot(parcel_id="R1", total_due=Decimal("5")), HoaInfo())
        assert rendered.html_body.strip() == "Owes $5.00"

    def test_paths_select_directory(self, tmp_path):
        engine = TemplateEngine(paths=TemplatePaths(template_dir=str(tmp_path)))
        assert engine.template_dir == tmp_path
        assert engine.get_available_templates() == []
