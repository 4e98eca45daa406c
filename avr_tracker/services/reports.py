"""Spend reports, a simple forecast and the Excel export of a report.

Everything here is computed from approved expenses only.
"""
import io
import logging
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Tuple

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill

from avr_tracker.core.config import get_settings
from avr_tracker.core.errors import ValidationError
from avr_tracker.schemas.expense import Expense, ExpenseStatus
from avr_tracker.schemas.project import DATE_FORMAT
from avr_tracker.services.document_store import DocumentStore, Query, server_timestamp
from avr_tracker.services.expenses import decode_expenses, expenses_collection, fold_approved
from avr_tracker.services.project_admin import ProjectService

logger = logging.getLogger(__name__)

PERIODS = ("this_month", "last_month", "this_quarter", "this_year")

MONTH_NAMES = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

HEADER_FILL = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
HEADER_FONT = Font(color="FFFFFF", bold=True)


def _month_start(year: int, month: int) -> datetime:
    # month may run past 12 or below 1
    year += (month - 1) // 12
    month = (month - 1) % 12 + 1
    return datetime(year, month, 1, tzinfo=timezone.utc)


def period_bounds(period: str, now: datetime) -> Tuple[datetime, datetime]:
    """[start, end) of a named period, in UTC."""
    if period == "this_month":
        return _month_start(now.year, now.month), _month_start(now.year, now.month + 1)
    if period == "last_month":
        return _month_start(now.year, now.month - 1), _month_start(now.year, now.month)
    if period == "this_quarter":
        first = (now.month - 1) // 3 * 3 + 1
        return _month_start(now.year, first), _month_start(now.year, first + 3)
    if period == "this_year":
        return _month_start(now.year, 1), _month_start(now.year + 1, 1)
    raise ValidationError(f"Unknown period {period!r}. Use one of: {', '.join(PERIODS)}")


def expense_day(expense: Expense) -> Optional[date]:
    try:
        return datetime.strptime(expense.date, DATE_FORMAT).date()
    except ValueError:
        return None


def _breakdown(expenses: List[Expense], key) -> List[dict]:
    totals: Dict[str, float] = defaultdict(float)
    counts: Dict[str, int] = defaultdict(int)
    for expense in expenses:
        name = key(expense)
        totals[name] += expense.amount
        counts[name] += 1
    rows = [{"name": name, "total": round(total, 2), "count": counts[name]} for name, total in totals.items()]
    return sorted(rows, key=lambda r: r["total"], reverse=True)


class ReportService:
    def __init__(self, store: DocumentStore):
        self.store = store
        self.settings = get_settings()
        self.projects = ProjectService(store)

    def approved_expenses(self, project_id: str) -> List[Expense]:
        query = Query(expenses_collection(project_id)).where("status", "==", ExpenseStatus.APPROVED)
        expenses, skipped = decode_expenses(self.store.query(query))
        if skipped:
            logger.warning("Report for project %s ignores %d malformed expenses", project_id, skipped)
        return expenses

    def _bucket(self, expense: Expense) -> str:
        """The department an expense is reported under."""
        return self.settings.OTHER_EXPENSES_BUCKET if expense.is_anonymous else expense.department

    def report(
        self,
        project_id: str,
        department: Optional[str] = None,
        period: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        project = self.projects.get(project_id)
        expenses = self.approved_expenses(project_id)

        filters_applied = {}
        if period:
            start, end = period_bounds(period, now or server_timestamp())
            expenses = [e for e in expenses if start <= e.created_at < end]
            filters_applied["period"] = period
        if department:
            expenses = [e for e in expenses if self._bucket(e) == department]
            filters_applied["department"] = department

        expenses.sort(key=lambda e: e.created_at, reverse=True)
        by_department = fold_approved(expenses, self.settings.OTHER_EXPENSES_BUCKET)
        total = sum(e.amount for e in expenses)

        return {
            "project_id": project_id,
            "project_name": project.name,
            "budget": project.budget,
            "total_amount": round(total, 2),
            "expense_count": len(expenses),
            "filters_applied": filters_applied,
            "by_department": [
                {"department": name, "total": round(amount, 2), "allocated": project.departments.get(name, 0.0)}
                for name, amount in sorted(by_department.items(), key=lambda kv: kv[1], reverse=True)
            ],
            "by_category": _breakdown(expenses, lambda e: e.categories[0] if e.categories else "Other"),
            "by_payment_mode": _breakdown(expenses, lambda e: e.mode_of_payment.value),
            "expenses": [
                {
                    "id": e.id,
                    "date": e.date,
                    "amount": e.amount,
                    "department": self._bucket(e),
                    "categories": ", ".join(e.categories),
                    "description": e.description,
                    "mode_of_payment": e.mode_of_payment.value,
                    "submitted_by": e.submitted_by,
                    "approved_by": e.approved_by or "",
                }
                for e in expenses
            ],
        }

    def forecast(self, project_id: str, months: int = 6, now: Optional[datetime] = None) -> List[dict]:
        """Budget, actual and forecast (actual grown by FORECAST_GROWTH) for the
        last ``months`` months, current month included."""
        if months < 1 or months > 24:
            raise ValidationError("Forecast covers between 1 and 24 months")
        project = self.projects.get(project_id)
        now = now or server_timestamp()

        actuals: Dict[Tuple[int, int], float] = defaultdict(float)
        for expense in self.approved_expenses(project_id):
            day = expense_day(expense)
            if day is not None:
                actuals[(day.year, day.month)] += expense.amount

        rows = []
        for offset in range(months - 1, -1, -1):
            start = _month_start(now.year, now.month - offset)
            actual = actuals.get((start.year, start.month), 0.0)
            rows.append({
                "month": MONTH_NAMES[start.month - 1],
                "year": start.year,
                "budget": project.budget,
                "actual": round(actual, 2),
                "forecast": round(actual * self.settings.FORECAST_GROWTH, 2),
            })
        return rows

    def export_workbook(self, report: dict) -> bytes:
        wb = Workbook()

        # Sheet 1: Summary
        summary = wb.active
        summary.title = "Summary"
        summary["A1"] = f"{report['project_name']} - Expense Report"
        summary["A1"].font = Font(size=16, bold=True)
        summary["A3"] = "Budget:"
        summary["B3"] = report["budget"]
        summary["A4"] = "Approved Spend:"
        summary["B4"] = report["total_amount"]
        summary["B4"].font = Font(bold=True, size=14)
        summary["A5"] = "Expenses:"
        summary["B5"] = report["expense_count"]
        summary["A6"] = "Report Date:"
        summary["B6"] = datetime.now().strftime("%Y-%m-%d %H:%M")
        row = 7
        for name, value in report["filters_applied"].items():
            summary.cell(row=row, column=1, value=f"{name.replace('_', ' ').title()}:")
            summary.cell(row=row, column=2, value=value)
            row += 1

        # Sheet 2: Expenses
        sheet = wb.create_sheet("Expenses")
        headers = ["ID", "Date", "Amount", "Department", "Categories", "Description", "Payment Mode",
                   "Submitted By", "Approved By"]
        keys = ["id", "date", "amount", "department", "categories", "description", "mode_of_payment",
                "submitted_by", "approved_by"]
        self._header(sheet, headers)
        for row, expense in enumerate(report["expenses"], 2):
            for col, key in enumerate(keys, 1):
                sheet.cell(row=row, column=col, value=expense[key])
        total_row = len(report["expenses"]) + 3
        sheet.cell(row=total_row, column=2, value="TOTAL:").font = Font(bold=True)
        sheet.cell(row=total_row, column=3, value=report["total_amount"]).font = Font(bold=True)

        # Sheet 3: By Department
        departments = wb.create_sheet("By Department")
        self._header(departments, ["Department", "Allocated", "Approved", "Percentage"])
        for row, entry in enumerate(report["by_department"], 2):
            departments.cell(row=row, column=1, value=entry["department"])
            departments.cell(row=row, column=2, value=entry["allocated"])
            departments.cell(row=row, column=3, value=entry["total"])
            share = (entry["total"] / report["total_amount"] * 100) if report["total_amount"] > 0 else 0
            departments.cell(row=row, column=4, value=f"{share:.1f}%")

        for ws in wb:
            for col in range(1, 10):
                ws.column_dimensions[chr(64 + col)].width = 18

        out = io.BytesIO()
        wb.save(out)
        return out.getvalue()

    @staticmethod
    def _header(sheet, headers):
        for col, header in enumerate(headers, 1):
            cell = sheet.cell(row=1, column=col, value=header)
            cell.fill = HEADER_FILL
            cell.font = HEADER_FONT
            cell.alignment = Alignment(horizontal="center")
