"""Bank statement ingestion."""

from ledger_intake.services.statements.excel import (
    TECHCOMBANK_DEBIT_CONFIG,
    BankStatementConfig,
    BankStatementRow,
    StatementColumns,
    read_bank_statement,
    rows_from_values,
)

__all__ = [
    "BankStatementConfig",
    "BankStatementRow",
    "StatementColumns",
    "TECHCOMBANK_DEBIT_CONFIG",
    "read_bank_statement",
    "rows_from_values",
]
