"""Tests for hoa_dues.reports -- the .xlsx dues report."""

from openpyxl import load_workbook

from hoa_dues.bulk import AccountFilters, BulkAccountBuilder
from hoa_dues.reports import REPORT_COLUMNS, write_dues_report


class TestWriteDuesReport:

    def test_rows_and_totals(self, store, today, tmp_path):
        accounts = BulkAccountBuilder(store).list_accounts(AccountFilters(dues_owed=True), today=today)
        path = write_dues_report(accounts, tmp_path / "out" / "dues.xlsx")

        assert path.exists()
        ws = load_workbook(path).active
        assert ws.title == "Dues Report"
        assert [c.value for c in ws[1]] == [header for header, _ in REPORT_COLUMNS]

        assert ws.cell(row=2, column=1).value == "R100"
        assert ws.cell(row=2, column=2).value == "12 Oak Lane"
        assert ws.cell(row=2, column=3).value == "Alex Adams"
        assert ws.cell(row=2, column=4).value == "a@example.com"
        assert ws.cell(row=2, column=5).value == 150.0
        assert ws.cell(row=2, column=6).value == "Y"
        assert ws.cell(row=2, column=7).value == 2025
        assert ws.cell(row=2, column=8).value == "N"

        assert ws.cell(row=3, column=1).value == "R200"
        assert ws.cell(row=3, column=6).value == "N"

        assert ws.cell(row=5, column=1).value == "2 properties"
        assert ws.cell(row=5, column=5).value == 460.25
        assert ws.freeze_panes == "A2"

    def test_empty_report(self, tmp_path):
        path = write_dues_report([], tmp_path / "empty.xlsx", title="Nothing Owed")
        ws = load_workbook(path).active
        assert ws.title == "Nothing Owed"
        assert ws.cell(row=3, column=1).value == "0 properties"
        assert ws.cell(row=3, column=5).value == 0
