from __future__ import annotations

from typing import Optional

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.table import Table, TableStyleInfo

from bizledger.domain.errors import NotFoundError, ValidationError
from bizledger.domain.models import LEDGER_BILL, ClientBalance, PeriodSales, ProductSales, StockValue


def _money(cell):
    cell.number_format = "#,##0.00"


def _bold_row(ws, r):
    for c in ws[r]:
        c.font = Font(bold=True)


def _pct(cell):
    cell.number_format = "0.00%"


def _set_widths(ws, widths: dict[str, int]):
    for col, w in widths.items():
        ws.column_dimensions[col].width = w


def _add_table(ws, name: str, start_row: int, start_col: int, end_row: int, end_col: int):
    ref = f"{get_column_letter(start_col)}{start_row}:{get_column_letter(end_col)}{end_row}"
    tab = Table(displayName=name, ref=ref)
    tab.tableStyleInfo = TableStyleInfo(
        name="TableStyleMedium9",
        showRowStripes=True,
        showColumnStripes=False,
    )
    ws.add_table(tab)


def _window(start_iso: Optional[str], end_iso: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    if start_iso and end_iso and start_iso >= end_iso:
        raise ValidationError("Report start must be before its end.")
    return start_iso, end_iso


class ReportingService:
    def __init__(self, repo):
        self.repo = repo

    def dashboard(self, low_stock_threshold: float = 10.0) -> dict[str, float]:
        return self.repo.dashboard_stats(low_stock_threshold)

    def monthly_sales_totals(self, months: int = 6) -> list[PeriodSales]:
        return self.repo.monthly_sales_totals(months)

    def daily_sales(self, start_iso: Optional[str] = None, end_iso: Optional[str] = None) -> list[PeriodSales]:
        return self.repo.sales_by_period("day", *_window(start_iso, end_iso))

    def yearly_sales(self) -> list[PeriodSales]:
        return self.repo.sales_by_period("year")

    def product_sales(self, start_iso: Optional[str] = None, end_iso: Optional[str] = None) -> list[ProductSales]:
        return self.repo.product_sales_report(*_window(start_iso, end_iso))

    def top_products(
        self, limit: int = 10, start_iso: Optional[str] = None, end_iso: Optional[str] = None
    ) -> list[ProductSales]:
        if limit <= 0:
            raise ValidationError("Limit must be > 0.")
        return self.repo.product_sales_report(*_window(start_iso, end_iso), limit=int(limit))

    def outstanding_balances(self) -> list[ClientBalance]:
        return self.repo.clients_with_balances(outstanding_only=True)

    def stock_valuation(self) -> list[StockValue]:
        return self.repo.stock_valuation()

    def export_client_statement_excel(self, path: str, client_id: int) -> None:
        client = self.repo.get_client_by_id(int(client_id))
        if not client:
            raise NotFoundError("Client not found.")

        wb = Workbook()
        ws = wb.active
        ws.title = "Statement"
        ws["A1"] = f"Statement: {client.name}"
        ws["A1"].font = Font(bold=True, size=14)
        ws["A2"] = client.phone or ""

        ws.append([])
        ws.append(["Date", "Type", "Bill", "Note", "Debit", "Credit", "Balance"])
        _bold_row(ws, 4)

        running = 0.0
        out_row = 5
        for e in self.repo.ledger_entries_for_client(int(client_id)):
            debit = e.amount if e.type == LEDGER_BILL else 0.0
            credit = 0.0 if e.type == LEDGER_BILL else e.amount
            running += debit - credit
            ws.append([e.date, e.type, e.bill_id or "", e.note or "", debit, credit, running])
            for col in ("E", "F", "G"):
                _money(ws[f"{col}{out_row}"])
            out_row += 1

        ws[f"F{out_row + 1}"] = "Balance"
        ws[f"F{out_row + 1}"].font = Font(bold=True)
        ws[f"G{out_row + 1}"] = running
        _money(ws[f"G{out_row + 1}"])

        ws.freeze_panes = "A5"
        _set_widths(ws, {"A": 22, "B": 10, "C": 8, "D": 28, "E": 14, "F": 14, "G": 14})
        if out_row > 5:
            _add_table(ws, "StatementEntries", 4, 1, out_row - 1, 7)

        wb.save(path)

    def export_demand_batch_excel(self, path: str, batch_id: int) -> None:
        batch = self.repo.get_batch_by_id(int(batch_id))
        if not batch:
            raise NotFoundError("Demand batch not found.")

        wb = Workbook()

        # -------- 1) Totals --------
        ws = wb.active
        ws.title = "Totals"
        ws["A1"] = f"Demand {batch.demand_date}"
        ws["A1"].font = Font(bold=True, size=14)
        ws["A2"] = "Closed" if batch.closed else "Open"

        ws.append([])
        ws.append(["Product", "Total Qty"])
        _bold_row(ws, 4)
        totals = self.repo.batch_totals(int(batch_id))
        for t in totals:
            ws.append([t.product_name, float(t.total_qty)])
        _set_widths(ws, {"A": 34, "B": 14})
        if totals:
            _add_table(ws, "DemandTotals", 4, 1, 4 + len(totals), 2)

        # -------- 2) By client --------
        ws2 = wb.create_sheet("By Client")
        ws2.append(["Client", "Product", "Qty"])
        _bold_row(ws2, 1)
        lines = self.repo.batch_client_details(int(batch_id))
        for line in lines:
            ws2.append([line.client_name, line.product_name, float(line.qty)])
        ws2.freeze_panes = "A2"
        _set_widths(ws2, {"A": 28, "B": 34, "C": 10})
        if lines:
            _add_table(ws2, "DemandByClient", 1, 1, 1 + len(lines), 3)

        wb.save(path)

    def export_sales_report_excel(self, path: str, start_iso: str, end_iso: str) -> None:
        """Sales workbook for ``start_iso <= bill date < end_iso``."""
        start_iso, end_iso = _window(start_iso, end_iso)
        daily = self.repo.sales_by_period("day", start_iso, end_iso)
        monthly = self.repo.sales_by_period("month", start_iso, end_iso)
        products = self.repo.product_sales_report(start_iso, end_iso)
        debtors = self.repo.clients_with_balances(outstanding_only=True)

        bills = sum(d.bills for d in daily)
        revenue = sum(d.revenue for d in daily)
        outstanding = sum(c.balance for c in debtors)

        wb = Workbook()

        # -------- 1) Summary --------
        ws = wb.active
        ws.title = "Summary"
        ws["A1"] = "Sales Summary"
        ws["A1"].font = Font(bold=True, size=14)

        ws["A3"] = "Window"
        ws["B3"] = f"{start_iso}  ->  {end_iso}"

        rows = [
            ("Bills", int(bills), "int"),
            ("Revenue", float(revenue), "money"),
            ("Average bill", float(revenue / bills) if bills else 0.0, "money"),
            ("Products sold", len(products), "int"),
            ("Outstanding (all clients)", float(outstanding), "money"),
        ]
        for i, (label, val, kind) in enumerate(rows):
            r = 5 + i
            ws[f"A{r}"] = label
            ws[f"B{r}"] = val
            if kind == "money":
                _money(ws[f"B{r}"])
        _set_widths(ws, {"A": 28, "B": 34})

        # -------- 2) Daily / Monthly --------
        for title, table_name, label, series in (
            ("Daily", "DailySales", "Date", daily),
            ("Monthly", "MonthlySales", "Month", monthly),
        ):
            wsp = wb.create_sheet(title)
            wsp.append([label, "Bills", "Revenue"])
            _bold_row(wsp, 1)
            for out_row, p in enumerate(series, start=2):
                wsp.append([p.period, int(p.bills), float(p.revenue)])
                _money(wsp[f"C{out_row}"])
            wsp.freeze_panes = "A2"
            _set_widths(wsp, {"A": 14, "B": 10, "C": 16})
            if series:
                _add_table(wsp, table_name, 1, 1, 1 + len(series), 3)

        # -------- 3) Products --------
        ws3 = wb.create_sheet("Products")
        ws3.append(["Product", "Qty", "Revenue", "Bills", "Share %"])
        _bold_row(ws3, 1)
        for out_row, p in enumerate(products, start=2):
            share = (p.revenue / revenue) if revenue else 0.0
            ws3.append([p.product_name, float(p.quantity), float(p.revenue), int(p.bills), float(share)])
            _money(ws3[f"C{out_row}"])
            _pct(ws3[f"E{out_row}"])
        ws3.freeze_panes = "A2"
        _set_widths(ws3, {"A": 34, "B": 10, "C": 16, "D": 8, "E": 10})
        if products:
            _add_table(ws3, "ProductSales", 1, 1, 1 + len(products), 5)

        # -------- 4) Outstanding --------
        ws4 = wb.create_sheet("Outstanding")
        ws4.append(["Client", "Phone", "Balance"])
        _bold_row(ws4, 1)
        for out_row, c in enumerate(debtors, start=2):
            ws4.append([c.name, c.phone or "", float(c.balance)])
            _money(ws4[f"C{out_row}"])
        ws4.freeze_panes = "A2"
        _set_widths(ws4, {"A": 28, "B": 18, "C": 16})
        if debtors:
            _add_table(ws4, "OutstandingBalances", 1, 1, 1 + len(debtors), 3)

        wb.save(path)
