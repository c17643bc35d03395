"""
Bank statement spreadsheet reader.

Bank exports are report-style sheets: a letterhead, a header block, then
one transaction per row in fixed columns, interleaved with opening-balance
and footer lines. A BankStatementConfig pins down where the data is for
one bank's layout.

DESIGN DECISION: Everything that can be read deterministically from the row
(date, direction, amount, reference) is read here, never by the LLM. The
model only cleans up the free-text columns later.
"""

import datetime as dt
import re
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence, Union

import structlog
from openpyxl import load_workbook
from pydantic import BaseModel, ConfigDict, Field

from ledger_intake.models.action import ActionVerb


logger = structlog.get_logger(__name__)

STATEMENT_DATE_PATTERN = re.compile(r"^\s*(\d{1,2})/(\d{1,2})/(\d{4})")


class StatementColumns(BaseModel):
    """Zero-based column indexes."""

    date: int
    remitter: int
    remitter_bank: int
    details: int
    transaction_no: int
    debit: int
    credit: int
    balance: int


class BankStatementConfig(BaseModel):
    """Layout of one bank's statement export."""

    model_config = ConfigDict(frozen=True)

    bank: str
    account_name: str = Field(
        default="Bank",
        description="Vault the statement's account maps to"
    )
    currency: str = "VND"
    header_row: int = Field(..., ge=0, description="Zero-based row of the column titles")
    data_start_row: int = Field(..., ge=0, description="Zero-based first row that may hold data")
    columns: StatementColumns
    skip_pattern: str = "Số dư đầu kỳ|Phiếu này|Diễn giải|Description|Opening balance"

    def skips(self, value: Any) -> bool:
        return bool(re.search(self.skip_pattern, str(value), re.IGNORECASE))


TECHCOMBANK_DEBIT_CONFIG = BankStatementConfig(
    bank="techcombank",
    header_row=33,
    data_start_row=35,
    columns=StatementColumns(
        date=1,
        remitter=7,
        remitter_bank=16,
        details=24,
        transaction_no=32,
        debit=45,
        credit=53,
        balance=59,
    ),
)


class BankStatementRow(BaseModel):
    """One transaction line of a statement."""

    row_number: int = Field(..., description="One-based spreadsheet row")
    date: dt.date
    remitter: str = ""
    remitter_bank: str = ""
    details: str = ""
    transaction_no: str = ""
    debit: Optional[Decimal] = None
    credit: Optional[Decimal] = None
    balance: Optional[Decimal] = None

    @property
    def is_debit(self) -> bool:
        return self.debit is not None and self.debit > 0

    @property
    def amount(self) -> Decimal:
        return self.debit if self.is_debit else (self.credit or Decimal("0"))

    @property
    def verb(self) -> ActionVerb:
        """Money leaving the account is a spend, money arriving is income."""
        return ActionVerb.SPEND if self.is_debit else ActionVerb.INCOME

    def describe(self) -> str:
        direction = "Paid to" if self.is_debit else "Received from"
        return (
            f"Date: {self.date.strftime('%d/%m/%Y')} | {self.verb.value} | "
            f"{direction}: {self.remitter or 'Unknown'} | "
            f"Bank: {self.remitter_bank or 'Unknown'} | "
            f"Desc: {self.details or 'N/A'} | Amount: {self.amount:,}"
        )


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _parse_statement_amount(value: Any) -> Optional[Decimal]:
    """'52,000' -> 52000. Blank or zero cells mean no amount."""
    if value is None or isinstance(value, bool):
        return None
    text = str(value).replace(",", "").strip()
    if not text:
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount


def _parse_statement_date(value: Any) -> Optional[dt.date]:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    match = STATEMENT_DATE_PATTERN.match(_cell_text(value))
    if match is None:
        return None
    day, month, year = (int(part) for part in match.groups())
    try:
        return dt.date(year, month, day)
    except ValueError:
        return None


def _cell(row: Sequence[Any], index: int) -> Any:
    return row[index] if index < len(row) else None


def rows_from_values(
    values: Iterable[Sequence[Any]],
    config: BankStatementConfig,
    start_row: Optional[int] = None,
) -> list[BankStatementRow]:
    """
    Pick transaction rows out of raw sheet values.

    Args:
        values: Row value sequences beginning at zero-based row `start_row`.
        config: Sheet layout.
        start_row: Zero-based index of the first row in `values`;
            defaults to config.data_start_row.
    """
    cols = config.columns
    first = config.data_start_row if start_row is None else start_row
    rows = []

    for offset, row in enumerate(values):
        if not row:
            continue
        date_value = _cell(row, cols.date)
        if date_value is None or config.skips(date_value):
            continue
        tx_date = _parse_statement_date(date_value)
        if tx_date is None:
            continue

        debit = _parse_statement_amount(_cell(row, cols.debit))
        credit = _parse_statement_amount(_cell(row, cols.credit))
        if debit is None and credit is None:
            continue

        rows.append(BankStatementRow(
            row_number=first + offset + 1,
            date=tx_date,
            remitter=_cell_text(_cell(row, cols.remitter)),
            remitter_bank=_cell_text(_cell(row, cols.remitter_bank)),
            details=_cell_text(_cell(row, cols.details)),
            transaction_no=_cell_text(_cell(row, cols.transaction_no)),
            debit=debit,
            credit=credit,
            balance=_parse_statement_amount(_cell(row, cols.balance)),
        ))

    return rows


def read_bank_statement(
    path: Union[str, Path],
    config: BankStatementConfig = TECHCOMBANK_DEBIT_CONFIG,
) -> list[BankStatementRow]:
    """Read the transaction rows from the first sheet of an .xlsx statement."""
    workbook = load_workbook(filename=str(path), read_only=True, data_only=True)
    try:
        sheet = workbook.worksheets[0]
        values = sheet.iter_rows(min_row=config.data_start_row + 1, values_only=True)
        rows = rows_from_values(values, config)
    finally:
        workbook.close()

    logger.info(
        "statement_parsed",
        path=str(path),
        bank=config.bank,
        rows=len(rows),
    )
    return rows
