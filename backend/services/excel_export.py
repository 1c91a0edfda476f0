"""
Excel payment report for one company.

Creates a 3-tab .xlsx file:
  Tab 1: "Creator Totals"    one row per creator (from CreatorPaymentSummary)
  Tab 2: "Paid Line Items"   one row per frozen payment (from PaidLineItem)
  Tab 3: "Integrity Issues"  records left out of the totals (from IntegrityIssue)

Every amount in the workbook is a FROZEN amount; live rates never appear.

File naming: "Creator Payments {company_id} {YYYY-MM-DD}.xlsx"

Formatting:
  - Bold header rows on all tabs
  - Auto-fit column widths (with min/max constraints)
  - Freeze top row (header) on all tabs
  - Currency format for amount columns ($#,##0.00)
  - Comma-separated number format for view counts (#,##0)
"""

import os
import logging
from datetime import date, datetime
from typing import Optional

from openpyxl import Workbook
from openpyxl.styles import Font, Alignment
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

import config
from models.schemas import CreatorPaymentSummary, IntegrityIssue, PaidLineItem

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
MIN_COL_WIDTH = 10      # Minimum column width (characters)
MAX_COL_WIDTH = 50      # Maximum column width (avoid super-wide columns)
HEADER_FONT = Font(bold=True)
CURRENCY_FORMAT = '$#,##0.00'
NUMBER_FORMAT = '#,##0'

KIND_LABELS = {"base_cpm": "Base + CPM", "tier": "Tier Bonus"}


# ===========================================================================
# Public API
# ===========================================================================

def generate_report(
    summaries: list[CreatorPaymentSummary],
    line_items: list[PaidLineItem],
    issues: list[IntegrityIssue],
    company_id: str,
    output_dir: Optional[str] = None,
    report_date: Optional[date] = None,
) -> str:
    """
    Generate the .xlsx payment report with 3 tabs.

    Args:
        summaries:   Per-creator frozen totals for Tab 1
        line_items:  Per-payment rows for Tab 2
        issues:      Inconsistent records for Tab 3
        company_id:  Company the report covers (for filename)
        output_dir:  Directory to save the file (defaults to config.OUTPUT_DIR)
        report_date: Date stamped in the filename (defaults to today)

    Returns:
        Absolute file path of the generated .xlsx report.
    """
    if output_dir is None:
        output_dir = config.OUTPUT_DIR
    if report_date is None:
        report_date = date.today()

    os.makedirs(output_dir, exist_ok=True)

    filename = f"Creator Payments {company_id} {report_date.isoformat()}.xlsx"
    filepath = os.path.abspath(os.path.join(output_dir, filename))

    logger.info(f"Generating report: {filepath}")

    wb = Workbook()

    # Tab 1: Creator Totals (default sheet, rename it)
    ws1 = wb.active
    ws1.title = "Creator Totals"
    _build_creator_totals(ws1, summaries)

    ws2 = wb.create_sheet("Paid Line Items")
    _build_line_items(ws2, line_items)

    ws3 = wb.create_sheet("Integrity Issues")
    _build_integrity_issues(ws3, issues)

    wb.save(filepath)
    logger.info(
        f"Report saved: {filepath} "
        f"({len(summaries)} creators, {len(line_items)} paid line items, "
        f"{len(issues)} integrity issues)"
    )

    return filepath


# ===========================================================================
# Tab 1: Creator Totals
# ===========================================================================

def _build_creator_totals(
    ws: Worksheet,
    summaries: list[CreatorPaymentSummary],
) -> None:
    """
    Tab 1: One row per creator with frozen totals.

    Columns:
      Creator Name | Videos | Base+CPM Paid Videos |
      Base + CPM Paid | Tier Bonuses Paid | Total Paid

    Sorted by Total Paid descending, then Creator Name.
    """
    headers = [
        "Creator Name",
        "Videos",
        "Base+CPM Paid Videos",
        "Base + CPM Paid",
        "Tier Bonuses Paid",
        "Total Paid",
    ]
    ws.append(headers)

    sorted_summaries = sorted(summaries, key=lambda s: (-s.total_paid, s.creator_name))

    for s in sorted_summaries:
        ws.append([
            s.creator_name,
            s.video_count,
            s.paid_video_count,
            s.base_cpm_paid_total,
            s.tier_paid_total,
            s.total_paid,
        ])

    _format_header_row(ws)
    _freeze_top_row(ws)

    for col_idx in [2, 3]:
        _apply_column_format(ws, col_idx=col_idx, fmt=NUMBER_FORMAT, start_row=2)
    for col_idx in [4, 5, 6]:
        _apply_column_format(ws, col_idx=col_idx, fmt=CURRENCY_FORMAT, start_row=2)

    _auto_fit_columns(ws)


# ===========================================================================
# Tab 2: Paid Line Items
# ===========================================================================

def _build_line_items(
    ws: Worksheet,
    line_items: list[PaidLineItem],
) -> None:
    """
    Tab 2: One row per frozen payment.

    Columns:
      Creator Name | Video | Video ID | Payment | Tier | Views |
      Base Amount | CPM Amount | Amount Paid | Paid At

    Sorted by Creator Name, then Paid At.
    """
    headers = [
        "Creator Name",
        "Video",
        "Video ID",
        "Payment",
        "Tier",
        "Views",
        "Base Amount",
        "CPM Amount",
        "Amount Paid",
        "Paid At",
    ]
    ws.append(headers)

    for item in sorted(line_items, key=_line_item_sort_key):
        ws.append([
            item.creator_name,
            item.video_title,
            item.video_id,
            KIND_LABELS.get(item.kind, item.kind),
            item.tier_name,
            item.views,
            item.base_amount,
            item.cpm_amount,
            item.amount,
            _format_datetime(item.paid_at),
        ])

    _format_header_row(ws)
    _freeze_top_row(ws)

    _apply_column_format(ws, col_idx=6, fmt=NUMBER_FORMAT, start_row=2)
    for col_idx in [7, 8, 9]:
        _apply_column_format(ws, col_idx=col_idx, fmt=CURRENCY_FORMAT, start_row=2)

    _auto_fit_columns(ws)


def _line_item_sort_key(item: PaidLineItem) -> tuple:
    """Creator Name ascending, then Paid At ascending; missing timestamps last."""
    paid_at = item.paid_at.replace(tzinfo=None) if item.paid_at else datetime.max
    return (item.creator_name or "", paid_at, item.video_id)


# ===========================================================================
# Tab 3: Integrity Issues
# ===========================================================================

def _build_integrity_issues(
    ws: Worksheet,
    issues: list[IntegrityIssue],
) -> None:
    """
    Tab 3: Records whose paid flag and frozen amount disagree. These are
    excluded from Tabs 1-2 and need manual review.
    """
    ws.append(["Record Type", "Record ID", "Video ID", "Reason"])

    for issue in issues:
        ws.append([
            issue.record_type,
            issue.record_id,
            issue.video_id,
            issue.reason,
        ])

    _format_header_row(ws)
    _freeze_top_row(ws)
    _auto_fit_columns(ws)


# ===========================================================================
# Formatting helpers
# ===========================================================================

def _format_header_row(ws: Worksheet) -> None:
    """Bold the entire header row (row 1)."""
    for cell in ws[1]:
        cell.font = HEADER_FONT
        cell.alignment = Alignment(horizontal="center", vertical="center")


def _freeze_top_row(ws: Worksheet) -> None:
    """Freeze the top row so the header stays visible when scrolling."""
    ws.freeze_panes = "A2"


def _apply_column_format(
    ws: Worksheet,
    col_idx: int,
    fmt: str,
    start_row: int = 2,
) -> None:
    """
    Apply a number format to all data cells in a column.

    Args:
        ws:        Worksheet
        col_idx:   1-based column index
        fmt:       Number format string (e.g., '$#,##0.00' or '#,##0')
        start_row: First data row (skip header)
    """
    for row in range(start_row, ws.max_row + 1):
        cell = ws.cell(row=row, column=col_idx)
        if cell.value is not None:
            cell.number_format = fmt


def _auto_fit_columns(ws: Worksheet) -> None:
    """
    Auto-fit column widths based on cell content, within
    MIN_COL_WIDTH..MAX_COL_WIDTH.
    """
    for col_idx in range(1, ws.max_column + 1):
        max_length = 0
        col_letter = get_column_letter(col_idx)

        for row in range(1, ws.max_row + 1):
            cell = ws.cell(row=row, column=col_idx)
            if cell.value is not None:
                max_length = max(max_length, len(str(cell.value)))

        # 2 chars of padding
        adjusted_width = max(max_length + 2, MIN_COL_WIDTH)
        ws.column_dimensions[col_letter].width = min(adjusted_width, MAX_COL_WIDTH)


def _format_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Format a datetime as YYYY-MM-DD HH:MM:SS, or None if missing."""
    if dt is None:
        return None
    return dt.strftime("%Y-%m-%d %H:%M:%S")


# ===========================================================================
# Standalone test — run with: cd backend && python -m services.excel_export
# ===========================================================================

if __name__ == "__main__":
    from decimal import Decimal

    logging.basicConfig(level=logging.DEBUG, format="%(levelname)s: %(message)s")

    summaries = [
        CreatorPaymentSummary(
            creator_id="c-alice", creator_name="Alice", video_count=2,
            paid_video_count=1, base_cpm_paid_total=Decimal("25"),
            tier_paid_total=Decimal("10"), total_paid=Decimal("35"),
        ),
        CreatorPaymentSummary(creator_id="c-bob", creator_name="Bob", video_count=1),
    ]
    line_items = [
        PaidLineItem(
            creator_id="c-alice", creator_name="Alice", video_id="v-1",
            video_title="Unboxing", kind="base_cpm", views=7500,
            base_amount=Decimal("10"), cpm_amount=Decimal("15"), amount=Decimal("25"),
            paid_at=datetime(2026, 2, 21, 12, 0, 0),
        ),
        PaidLineItem(
            creator_id="c-alice", creator_name="Alice", video_id="v-1",
            video_title="Unboxing", kind="tier", tier_name="5K views", views=7500,
            amount=Decimal("10"), paid_at=datetime(2026, 2, 21, 12, 5, 0),
        ),
    ]
    issues = [
        IntegrityIssue(
            record_type="video", record_id="v-9", video_id="v-9",
            reason="Video v-9 is marked base+CPM paid but has no frozen amount/timestamp",
        ),
    ]

    filepath = generate_report(
        summaries, line_items, issues, company_id="acme", output_dir="/tmp/payment_test",
    )
    print(f"\nReport generated: {filepath}")
